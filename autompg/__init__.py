"""Auto-MPG displacement study: data preparation, nested OLS models and report."""

__version__ = "0.1.0"
