"""Error taxonomy for the stock allocation engine.

Business-rule failures subclass ``BusinessRuleError`` so callers (pages,
automation) can branch on the concrete type.  Infrastructure failures are
``DataStoreError`` and always propagate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


class PlantError(Exception):
    """Base class for all errors raised by fishplant."""


class BusinessRuleError(PlantError):
    """A recoverable failure the caller is expected to handle."""


class ValidationError(BusinessRuleError, ValueError):
    """Malformed input, rejected before shared state is read."""


class NotFoundError(BusinessRuleError):
    """A referenced record does not exist."""


class InsufficientStockError(BusinessRuleError):

    def __init__(self, message: str, *, shortfall: float = 0.0, shortfalls: Optional[dict[int, float]] = None) -> None:
        super().__init__(message)
        self.shortfall = float(shortfall)
        self.shortfalls = dict(shortfalls or {})


class CapacityExceededError(BusinessRuleError):

    def __init__(self, message: str, *, required_kg: float = 0.0, available_kg: float = 0.0) -> None:
        super().__init__(message)
        self.required_kg = float(required_kg)
        self.available_kg = float(available_kg)


class ConcurrencyConflictError(BusinessRuleError):
    """State changed between planning and commit."""


class DuplicateRequestError(BusinessRuleError):
    """An identical pending request already exists."""


class DataStoreError(PlantError):
    """The record store failed or violated a constraint unexpectedly."""


@dataclass
class OperationResult:
    ok: bool
    message: str
    error: Optional[BusinessRuleError] = None
    value: Any = None
    noop: bool = False
    details: dict = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, value: Any = None, *, noop: bool = False, **details: Any) -> "OperationResult":
        return cls(ok=True, message=message, value=value, noop=noop, details=details)

    @classmethod
    def failure(cls, error: BusinessRuleError, value: Any = None) -> "OperationResult":
        return cls(ok=False, message=str(error), error=error, value=value)
