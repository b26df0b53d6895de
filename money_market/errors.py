"""
Domain Errors Module

Every failure the core reports is one of these exceptions. Each carries a
stable code and the HTTP status the API layer should answer with.
"""

from typing import Any, Dict, Optional


class MoneyMarketError(Exception):
    """Base class for all money market domain errors"""

    code = "MONEY_MARKET_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response body"""
        result = {
            "detail": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidInputError(MoneyMarketError):
    """Malformed or out-of-range argument, raised before any state changes"""
    code = "INVALID_INPUT"
    status_code = 400


class InvalidRangeError(InvalidInputError):
    """End time precedes start time in an interest calculation"""
    code = "INVALID_RANGE"


class InvalidRateError(InvalidInputError):
    """Interest rate outside [0, 100] percent"""
    code = "INVALID_RATE"


class NotAuthorizedError(MoneyMarketError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class NotFoundError(MoneyMarketError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidStateError(MoneyMarketError):
    """Operation attempted against a record not in the expected state"""
    code = "INVALID_STATE"
    status_code = 409


class ExpiredError(MoneyMarketError):
    code = "EXPIRED"
    status_code = 409


class DuplicateSignatureError(MoneyMarketError):
    code = "DUPLICATE_SIGNATURE"
    status_code = 409


class ConflictError(MoneyMarketError):
    """Uniqueness violation or stale optimistic write"""
    code = "CONFLICT"
    status_code = 409


class LedgerRejectedError(MoneyMarketError):
    """
    The external ledger refused or failed an operation.

    ``ledger_status`` holds the status string reported by the ledger
    (or NETWORK_ERROR when the service could not be reached).
    """
    code = "LEDGER_REJECTED"
    status_code = 502

    def __init__(self, message: str, ledger_status: str = "UNKNOWN",
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("ledger_status", ledger_status)
        super().__init__(message, details)
        self.ledger_status = ledger_status
