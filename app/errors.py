from __future__ import annotations


class LedgerError(Exception):
    """Base class for the failures the stock ledger reports to its callers."""

    code = 'LEDGER_ERROR'


class ValidationError(LedgerError, ValueError):
    code = 'VALIDATION_ERROR'


class InsufficientStock(LedgerError):
    code = 'INSUFFICIENT_STOCK'

    def __init__(self, *, material_reference: str, available: int, requested: int) -> None:
        self.material_reference = material_reference
        self.available = available
        self.requested = requested
        super().__init__(
            f'Insufficient stock for {material_reference}: available={available}, requested={requested}'
        )


class AuthorizationError(LedgerError, PermissionError):
    code = 'FORBIDDEN'


class NotFoundError(LedgerError, LookupError):
    code = 'NOT_FOUND'


class ConflictError(LedgerError):
    code = 'CONFLICT'
