"""schema-fleet: versioned table schemas rolled out across tenant databases."""

__version__ = "0.4.0"
