"""
Sponsorship engine: decides whether the paymaster pays for an operation.

Evaluation is an ordered short-circuit chain; the first failing rule is
the reported reason:

1. paused
2. user blacklisted
3. whitelist enabled and neither the call target nor the user is whitelisted
4. requested amount is not a positive integer
5. daily spend would exceed the daily limit
6. monthly spend would exceed the monthly limit
7. the user's lifetime spend would exceed the per-user limit

Limits are inclusive: spending exactly up to a limit is allowed.

All state lives in one :class:`SpendingQuota` guarded by one lock, so the
check and the charge in :meth:`SponsorshipEngine.sponsor` cannot interleave
with another request.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..config import SponsorshipDefaults, get_config
from ..errors import AuthorizationError, DenialReason, QuotaDenied, ValidationError
from ..erc4337.user_operation import UserOperation, decode_call_targets
from ..logging_utils import PipelineLogger, get_pipeline_logger
from .quota import SpendingQuota, normalize_address

logger = logging.getLogger(__name__)

Target = Union[str, Sequence[str], None]


@dataclass(frozen=True)
class SponsorshipDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    charged_at: Optional[float] = None  # set by sponsor() when the amount was charged

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class QuotaEvent:
    """Notification emitted after a successful admin change."""
    name: str
    values: Dict[str, Any]
    admin: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "values": self.values,
            "admin": self.admin,
            "timestamp": self.timestamp.isoformat(),
        }


QuotaListener = Callable[[QuotaEvent], None]


def estimate_max_cost(user_op: UserOperation) -> int:
    """Most the paymaster can be charged for ``user_op``, in wei."""
    gas_total = (
        int(user_op.call_gas_limit)
        + int(user_op.verification_gas_limit)
        + int(user_op.pre_verification_gas)
    )
    return max(0, gas_total * int(user_op.max_fee_per_gas))


def _targets(target: Target) -> Tuple[str, ...]:
    if target is None:
        return ()
    if isinstance(target, str):
        return (normalize_address(target),)
    return tuple(normalize_address(t) for t in target)


def _check_amount(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount in wei")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")


class SponsorshipEngine:
    """Quota state machine of one paymaster instance."""

    def __init__(
        self,
        admin: str,
        *,
        defaults: Optional[SponsorshipDefaults] = None,
        clock: Callable[[], float] = time.time,
        plog: Optional[PipelineLogger] = None,
    ):
        self._admin = normalize_address(admin)
        self._clock = clock
        self._lock = threading.Lock()
        self._quota = SpendingQuota.fresh(clock(), defaults or get_config().sponsorship)
        self._listeners: List[QuotaListener] = []
        self._plog = plog or get_pipeline_logger()

    @property
    def admin(self) -> str:
        return self._admin

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _decide(self, user: str, value: int, targets: Tuple[str, ...], now: float) -> SponsorshipDecision:
        # Caller holds the lock. Reads windows as of ``now`` without resetting them.
        q = self._quota
        if q.paused:
            return SponsorshipDecision(False, DenialReason.PAUSED)
        if user in q.blacklisted_users:
            return SponsorshipDecision(False, DenialReason.BLACKLISTED)
        if q.whitelist_enabled and user not in q.whitelisted_users:
            if not targets or any(t not in q.whitelisted_contracts for t in targets):
                return SponsorshipDecision(False, DenialReason.NOT_WHITELISTED)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return SponsorshipDecision(False, DenialReason.INVALID_AMOUNT)
        daily_spent, _ = q.daily_at(now)
        if daily_spent + value > q.daily_limit:
            return SponsorshipDecision(False, DenialReason.DAILY_LIMIT)
        monthly_spent, _ = q.monthly_at(now)
        if monthly_spent + value > q.monthly_limit:
            return SponsorshipDecision(False, DenialReason.MONTHLY_LIMIT)
        if q.user_spent(user) + value > q.per_user_limit:
            return SponsorshipDecision(False, DenialReason.PER_USER_LIMIT)
        return SponsorshipDecision(True)

    def evaluate(
        self,
        user: str,
        value: int,
        target: Target = None,
        now: Optional[float] = None,
    ) -> SponsorshipDecision:
        """Side-effect free decision for sponsoring ``value`` wei for ``user``.

        Args:
            user: Address the spend is attributed to (the operation sender)
            value: Requested sponsorship in wei, must be positive
            target: Contract(s) the operation calls; only consulted while the
                whitelist is enabled
            now: Evaluation time, defaults to the engine clock
        """
        key = normalize_address(user)
        targets = _targets(target)
        with self._lock:
            return self._decide(key, value, targets, self._clock() if now is None else now)

    def can_sponsor(self, user: str, value: int, target: Target = None) -> bool:
        decision = self.evaluate(user, value, target)
        self._plog.log_sponsorship_decision(
            user, value, decision.allowed, decision.reason.value if decision.reason else None
        )
        return decision.allowed

    def charge_sponsorship(self, user: str, value: int) -> None:
        """Record ``value`` wei paid for ``user``.

        Expired windows are reset first, inside the same critical section,
        so the charge always lands in the current window.
        """
        _check_amount("value", value)
        key = normalize_address(user)
        with self._lock:
            self._charge_locked(key, value, self._clock())

    def _charge_locked(self, user: str, value: int, now: float) -> None:
        if self._quota.apply_rollover(now):
            logger.info("Sponsorship spending window rolled over")
        self._quota.add_spend(user, value)
        self._plog.log_sponsorship_charge(user, value)

    def sponsor(self, user: str, value: int, target: Target = None) -> SponsorshipDecision:
        """Check and charge as one atomic step.

        Raises:
            QuotaDenied: with the first rule that refused; nothing is charged
        """
        key = normalize_address(user)
        targets = _targets(target)
        with self._lock:
            now = self._clock()
            decision = self._decide(key, value, targets, now)
            if decision.allowed:
                self._charge_locked(key, value, now)
                decision = SponsorshipDecision(True, charged_at=now)

        self._plog.log_sponsorship_decision(
            user, value, decision.allowed, decision.reason.value if decision.reason else None
        )
        if not decision.allowed:
            raise QuotaDenied(decision.reason, user=user)
        return decision

    def sponsor_operation(self, user_op: UserOperation) -> int:
        """Sponsor ``user_op`` for its maximum cost; returns the amount charged."""
        cost = estimate_max_cost(user_op)
        self.sponsor(user_op.sender, cost, decode_call_targets(user_op.call_data))
        return cost

    def refund_sponsorship(self, user: str, value: int, charged_at: float) -> None:
        """Reverse a charge for an operation the relay provably never accepted.

        The per-user total is always reduced; a window counter only while
        the window the charge landed in is still the current one.
        """
        _check_amount("value", value)
        key = normalize_address(user)
        with self._lock:
            if self._quota.apply_rollover(self._clock()):
                logger.info("Sponsorship spending window rolled over")
            self._quota.remove_spend(key, value, charged_at)
        self._plog.log_sponsorship_charge(key, value, refunded=True)

    @staticmethod
    def estimate_max_cost(user_op: UserOperation) -> int:
        return estimate_max_cost(user_op)

    def snapshot(self, user: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate counters, limits and, when given, ``user``'s own spend."""
        with self._lock:
            q = self._quota
            now = self._clock()
            daily_spent, daily_start = q.daily_at(now)
            monthly_spent, monthly_start = q.monthly_at(now)
            data: Dict[str, Any] = {
                "paused": q.paused,
                "whitelist_enabled": q.whitelist_enabled,
                "daily_limit": q.daily_limit,
                "monthly_limit": q.monthly_limit,
                "per_user_limit": q.per_user_limit,
                "daily_spent": daily_spent,
                "daily_window_start": daily_start,
                "monthly_spent": monthly_spent,
                "monthly_window_start": monthly_start,
            }
            if user is not None:
                key = normalize_address(user)
                data["user_spent"] = q.user_spent(key)
                data["user_blacklisted"] = key in q.blacklisted_users
                data["user_whitelisted"] = key in q.whitelisted_users
        return data

    def is_contract_whitelisted(self, contract: str) -> bool:
        with self._lock:
            return normalize_address(contract) in self._quota.whitelisted_contracts

    def is_user_blacklisted(self, user: str) -> bool:
        with self._lock:
            return normalize_address(user) in self._quota.blacklisted_users

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def subscribe(self, listener: QuotaListener) -> Callable[[], None]:
        """Register ``listener`` for admin events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _require_admin(self, caller: str, action: str) -> None:
        # Caller holds the lock, so a concurrent transfer_admin cannot interleave.
        try:
            key = normalize_address(caller)
        except ValueError:
            key = None
        if key != self._admin:
            logger.warning(f"Rejected {action} from non-admin {caller}")
            raise AuthorizationError(caller, action)

    def _emit(self, name: str, values: Dict[str, Any], admin: str) -> None:
        event = QuotaEvent(name=name, values=values, admin=admin)
        self._plog.write_audit_log(f"quota_{name}", event.to_dict())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Quota event listener failed for {name}")

    def set_spending_limits(
        self,
        caller: str,
        daily_limit: Optional[int] = None,
        monthly_limit: Optional[int] = None,
        per_user_limit: Optional[int] = None,
    ) -> None:
        """Update any of the three limits; ``None`` keeps the current one, zero disables."""
        with self._lock:
            self._require_admin(caller, "set_spending_limits")
            for name, value in (
                ("daily_limit", daily_limit),
                ("monthly_limit", monthly_limit),
                ("per_user_limit", per_user_limit),
            ):
                if value is not None:
                    _check_amount(name, value)
            q = self._quota
            if daily_limit is not None:
                q.daily_limit = daily_limit
            if monthly_limit is not None:
                q.monthly_limit = monthly_limit
            if per_user_limit is not None:
                q.per_user_limit = per_user_limit
            values = {
                "daily_limit": q.daily_limit,
                "monthly_limit": q.monthly_limit,
                "per_user_limit": q.per_user_limit,
            }
            admin = self._admin
        self._emit("spending_limits_updated", values, admin)

    def set_contract_whitelist(self, caller: str, contract: str, allowed: bool) -> None:
        with self._lock:
            self._require_admin(caller, "set_contract_whitelist")
            key = normalize_address(contract)
            _toggle(self._quota.whitelisted_contracts, key, allowed)
            admin = self._admin
        self._emit("contract_whitelisted", {"contract": key, "allowed": allowed}, admin)

    def set_user_whitelist(self, caller: str, user: str, allowed: bool) -> None:
        with self._lock:
            self._require_admin(caller, "set_user_whitelist")
            key = normalize_address(user)
            _toggle(self._quota.whitelisted_users, key, allowed)
            admin = self._admin
        self._emit("user_whitelisted", {"user": key, "allowed": allowed}, admin)

    def set_user_blacklist(self, caller: str, user: str, blocked: bool) -> None:
        with self._lock:
            self._require_admin(caller, "set_user_blacklist")
            key = normalize_address(user)
            _toggle(self._quota.blacklisted_users, key, blocked)
            admin = self._admin
        self._emit("user_blacklisted", {"user": key, "blocked": blocked}, admin)

    def set_use_whitelist(self, caller: str, enabled: bool) -> None:
        with self._lock:
            self._require_admin(caller, "set_use_whitelist")
            self._quota.whitelist_enabled = bool(enabled)
            admin = self._admin
        self._emit("whitelist_toggled", {"enabled": bool(enabled)}, admin)

    def set_paused(self, caller: str, paused: bool) -> None:
        with self._lock:
            self._require_admin(caller, "set_paused")
            self._quota.paused = bool(paused)
            admin = self._admin
        self._emit("paused_changed", {"paused": bool(paused)}, admin)

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        with self._lock:
            self._require_admin(caller, "transfer_admin")
            key = normalize_address(new_admin)
            previous = self._admin
            self._admin = key
        self._emit("admin_transferred", {"previous_admin": previous, "new_admin": key}, previous)


def _toggle(members: set, key: str, present: bool) -> None:
    if present:
        members.add(key)
    else:
        members.discard(key)
