"""Build-and-test orchestration for Sailfish OS / Aurora OS applications."""

__version__ = "0.3.0"
