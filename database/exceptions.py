"""Database exceptions."""
from errors import BazaarError, ErrorCodes


class DatabaseError(BazaarError):
    """Base exception for database errors"""
    code = ErrorCodes.STORAGE_ERROR
    status_code = 500


class DatabaseSchemaError(DatabaseError):
    """Raised when the schema cannot be loaded or migrated"""
    pass


__all__ = ['DatabaseError', 'DatabaseSchemaError']
