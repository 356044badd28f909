"""Turn-based collaborative story writing with fair, expiring locks."""

__version__ = "0.1.0"
