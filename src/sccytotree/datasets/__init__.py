from .mock_data import make_mock_cytometry, make_linear_cytometry

__all__ = ["make_mock_cytometry", "make_linear_cytometry"]
