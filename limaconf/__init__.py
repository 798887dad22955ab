"""Instance configuration loading, defaults and validation, with host network settings."""

__version__ = "0.1.0"