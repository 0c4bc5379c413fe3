"""Error taxonomy for the task pipeline.

Only `InsufficientBalance` (and request validation) is meant to reach the HTTP
boundary. The rest are raised and handled inside the pipeline:
- ConfigurationError becomes a FAILED run row.
- ProviderError is caught per run so fan-out continues.
- ParseError downgrades to a best-effort textual result.
- PersistenceError stops the current orchestration step.
"""

from __future__ import annotations


class GeoscanError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(GeoscanError):
    """No usable provider (missing, disabled, or incomplete config)."""


class ProviderError(GeoscanError):
    """Network, HTTP, or model failure during a provider call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(GeoscanError):
    """Model output could not be parsed into the expected JSON shape."""


class PersistenceError(GeoscanError):
    """Database read/write failure."""


class InvalidTransition(GeoscanError):
    """Task status change not allowed by the lifecycle state machine."""


class AccountNotFound(GeoscanError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account {user_id} does not exist")
        self.user_id = user_id


class InsufficientBalance(GeoscanError):
    """Point balance is lower than the amount to debit."""

    def __init__(
        self,
        *,
        user_id: str,
        required_points: int,
        current_points: int,
        cost_units: int | None = None,
        quota_units: int = 0,
    ) -> None:
        super().__init__(
            f"Insufficient balance: {required_points} points required, "
            f"{current_points} available"
        )
        self.user_id = user_id
        self.required_points = required_points
        self.current_points = current_points
        self.cost_units = cost_units if cost_units is not None else required_points
        self.quota_units = quota_units

    def to_payload(self) -> dict[str, object]:
        return {
            "error": "insufficient_balance",
            "message": str(self),
            "required_points": self.required_points,
            "current_points": self.current_points,
            "cost_units": self.cost_units,
            "quota_units": self.quota_units,
        }
