"""Plan validation gate and session stage machine."""

__version__ = "0.1.0"
