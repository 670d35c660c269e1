"""andesite - relational data-access core for database-backed services."""

__version__ = "0.1.0"
