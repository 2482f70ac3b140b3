"""BondApp local-first sync layer."""

__version__ = "0.1.0"
