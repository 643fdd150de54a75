"""Document store over SQLAlchemy."""
