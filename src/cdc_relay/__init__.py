"""PostgreSQL change capture relay."""

__version__ = "0.1.0"
