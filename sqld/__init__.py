"""SQL daemon serving an SQLite database over the PostgreSQL wire protocol and HTTP."""

__version__ = "0.1.0"