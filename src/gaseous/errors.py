"""Error taxonomy for the gasless pipeline and the sponsorship engine.

Callers decide retry behaviour from the class alone:

- ``ValidationError``: the input is wrong; fix it before trying again.
- ``TransientError``: an external dependency failed or timed out; retry with backoff.
- ``RelayRejected``: the bundler validated and refused the operation.
- ``QuotaDenied``: sponsorship policy said no; wait for a window reset or an admin.
- ``AuthorizationError``: an admin action from a non-admin identity.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class GaslessError(Exception):
    """Base class for every error raised by gaseous."""


class ConfigurationError(GaslessError):
    """Raised when a required network or factory setting is missing."""


class ValidationError(GaslessError):
    """Raised for malformed or incomplete operations. Never retry unchanged."""


class MalformedOperation(ValidationError):
    """Client-side encoding bug detected before or during relay."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NonceInUseError(ValidationError):
    """Raised when a second operation is built for a sender with one in flight."""

    def __init__(self, sender: str, nonce: int):
        self.sender = sender
        self.nonce = nonce
        super().__init__(
            f"Sender {sender} already has an operation in flight with nonce {nonce}"
        )


class TransientError(GaslessError):
    """Network or timeout failure on an external dependency. Retryable."""


class LedgerUnavailable(TransientError):
    """The ledger RPC could not answer a query."""

    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"Ledger query {method} failed: {reason}")


class RelayUnreachable(TransientError):
    """The bundler could not be reached or did not answer in time."""

    def __init__(self, reason: str, *, status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Bundler unreachable: {reason}")


class RelayRejected(GaslessError):
    """The bundler validated the operation and refused it."""

    def __init__(
        self,
        reason: str,
        *,
        code: Optional[int] = None,
        data: Any = None,
        out_of_gas: bool = False,
    ):
        self.reason = reason
        self.code = code
        self.data = data
        self.out_of_gas = out_of_gas
        super().__init__(f"Bundler rejected operation: {reason}")


class OutOfGasRejection(RelayRejected):
    """Rejection caused by an underfunded gas limit; raise the limits and rebuild."""

    def __init__(self, reason: str, *, code: Optional[int] = None, data: Any = None):
        super().__init__(reason, code=code, data=data, out_of_gas=True)


class DenialReason(str, Enum):
    """Sponsorship rule that refused a request, in evaluation order."""
    PAUSED = "paused"
    BLACKLISTED = "blacklisted"
    NOT_WHITELISTED = "not_whitelisted"
    DAILY_LIMIT = "daily_limit"
    MONTHLY_LIMIT = "monthly_limit"
    PER_USER_LIMIT = "per_user_limit"
    INVALID_AMOUNT = "invalid_amount"


class QuotaDenied(GaslessError):
    """Sponsorship refused by policy.

    Only the rule name is reported, never counters of other users.
    """

    def __init__(self, reason: DenialReason, user: Optional[str] = None):
        self.reason = reason
        self.user = user
        super().__init__(f"Sponsorship denied: {reason.value}")


class AuthorizationError(GaslessError):
    """Admin action attempted by a non-admin identity."""

    def __init__(self, caller: str, action: str):
        self.caller = caller
        self.action = action
        super().__init__(f"{caller} is not authorized to call {action}")
