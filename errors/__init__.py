"""Shared error base for the marketplace core.

Every package defines its own exception family (ListingError, StorageError,
CurrencyError, ...) deriving from BazaarError so the HTTP layer can map any
of them to a status code and a JSON body without knowing the package.
"""
from typing import Any, Dict, Optional


class ErrorCodes:
    """Machine readable error codes carried on BazaarError.code"""
    LISTING_NOT_FOUND = 'LISTING_NOT_FOUND'
    LISTING_NOT_AVAILABLE = 'LISTING_NOT_AVAILABLE'
    LISTING_ALREADY_SOLD = 'LISTING_ALREADY_SOLD'
    INVALID_LISTING = 'INVALID_LISTING'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    UNAUTHORIZED = 'UNAUTHORIZED'

    ITEM_NOT_FOUND = 'ITEM_NOT_FOUND'
    ITEM_NOT_OWNED = 'ITEM_NOT_OWNED'
    ITEM_LOCKED = 'ITEM_LOCKED'

    PAYMENT_REQUIRED = 'PAYMENT_REQUIRED'
    PAYMENT_VERIFICATION_FAILED = 'PAYMENT_VERIFICATION_FAILED'
    INSUFFICIENT_BALANCE = 'INSUFFICIENT_BALANCE'
    DUPLICATE_TRANSACTION = 'DUPLICATE_TRANSACTION'

    TIER_NOT_FOUND = 'TIER_NOT_FOUND'
    INVALID_TIER = 'INVALID_TIER'
    ITEM_GENERATION_FAILED = 'ITEM_GENERATION_FAILED'
    ITEM_GRANT_FAILED = 'ITEM_GRANT_FAILED'

    RECONCILIATION_REQUIRED = 'RECONCILIATION_REQUIRED'
    RATE_LIMITED = 'RATE_LIMITED'
    NOT_SUPPORTED = 'NOT_SUPPORTED'
    LEDGER_ERROR = 'LEDGER_ERROR'
    STORAGE_ERROR = 'STORAGE_ERROR'
    VALIDATION_ERROR = 'VALIDATION_ERROR'


class BazaarError(Exception):
    """Base exception for all marketplace errors"""

    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an HTTP error body."""
        body = {'code': self.code, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return {'error': body}


__all__ = ['BazaarError', 'ErrorCodes']
