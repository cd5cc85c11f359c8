"""recordbase: schema-on-write HTTP record store."""

__version__ = "0.1.0"
