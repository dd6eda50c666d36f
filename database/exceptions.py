"""Database exceptions."""


class DatabaseError(Exception):
    """Base class for database failures."""
    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when the database cannot be reached after retries."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema creation or migration fails."""
    pass
