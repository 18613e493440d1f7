"""Redirect a PE image's import calls through generated stubs in a new code section."""

__version__ = "0.1.0"
__all__ = ["__version__"]