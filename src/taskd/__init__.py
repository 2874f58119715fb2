"""taskd - user-level process supervisor."""

__version__ = "0.3.0"
