"""Operation builder: assembles unsigned UserOperations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from web3 import Web3

from ..config import GaslessConfig, NetworkConfig, get_config
from ..errors import NonceInUseError, TransientError, ValidationError
from ..ledger import FeeEstimate, LedgerClient
from ..logging_utils import OperationType, get_pipeline_logger
from .user_operation import UserOperation, hex_to_bytes, is_empty_hex, zero_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GasHints:
    """Caller overrides for gas limits and fee bounds. ``None`` keeps the default."""
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    pre_verification_gas: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


class OperationBuilder:
    """
    Builds unsigned UserOperations for smart accounts.

    - Nonce comes from the EntryPoint at build time unless given explicitly.
    - Fees come from the ledger; on failure conservative floors are used
      so the fee bounds are never zero.
    - Gas limits are generous fixed defaults, no simulation.
    - One operation in flight per sender: a second build for the same
      sender fails until :meth:`release` is called.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        network: Optional[NetworkConfig] = None,
        config: Optional[GaslessConfig] = None,
    ):
        self._ledger = ledger
        self._config = config or get_config()
        self._network = network or ledger.network
        self._in_flight: Dict[str, int] = {}
        self._next_nonce_floor: Dict[str, int] = {}  # after confirmed ops, ledger may lag
        self._lock = asyncio.Lock()

    async def estimate_fees(self) -> FeeEstimate:
        """Current fee bounds, or the configured floors when estimation fails."""
        floors = self._config.fee_floors
        plog = get_pipeline_logger()
        try:
            estimate = await self._ledger.estimate_fees(floors.base_fee_multiplier)
        except TransientError as e:
            logger.warning(f"Fee estimation failed on {self._network.name}, using floors: {e}")
            plog.log_fee_estimate(
                self._network.name, floors.max_fee_per_gas, floors.max_priority_fee_per_gas, is_floor=True
            )
            return FeeEstimate(floors.max_fee_per_gas, floors.max_priority_fee_per_gas)

        priority = estimate.max_priority_fee_per_gas or floors.max_priority_fee_per_gas
        max_fee = estimate.max_fee_per_gas or floors.max_fee_per_gas
        is_floor = not estimate.max_fee_per_gas or not estimate.max_priority_fee_per_gas
        max_fee = max(max_fee, priority)
        plog.log_fee_estimate(self._network.name, max_fee, priority, is_floor=is_floor)
        return FeeEstimate(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority)

    async def build(
        self,
        sender: str,
        call_data: str,
        *,
        nonce: Optional[int] = None,
        init_code: str = "0x",
        gas_hints: Optional[GasHints] = None,
    ) -> UserOperation:
        """Assemble an unsigned operation and reserve the sender until released.

        Args:
            sender: Smart account address
            call_data: Encoded call the account executes (see ``encode_execute``)
            nonce: Explicit nonce; read from the EntryPoint when omitted
            init_code: Deployment recipe for an undeployed account, else "0x"
            gas_hints: Optional overrides for gas limits and fee bounds

        Returns:
            UserOperation with an empty signature and empty paymasterAndData
        """
        if not Web3.is_address(sender):
            raise ValidationError(f"sender is not an address: {sender}")
        if is_empty_hex(call_data):
            raise ValidationError("callData is required")
        try:
            hex_to_bytes(call_data)
            hex_to_bytes(init_code)
        except ValueError as e:
            raise ValidationError(f"callData and initCode must be hex: {e}") from e

        sender = Web3.to_checksum_address(sender)
        key = sender.lower()
        hints = gas_hints or GasHints()
        plog = get_pipeline_logger()

        async with self._lock:
            if key in self._in_flight:
                raise NonceInUseError(sender, self._in_flight[key])
            self._in_flight[key] = -1 if nonce is None else nonce

        try:
            async with plog.operation_context(
                OperationType.BUILD_OPERATION, self._network.name, sender=sender
            ) as ctx:
                if nonce is None:
                    nonce = await self._ledger.get_nonce(sender, self._network.entry_point)
                    nonce = max(nonce, self._next_nonce_floor.get(key, 0))
                if nonce < 0:
                    raise ValidationError("nonce must not be negative")

                fees = await self._resolve_fees(hints)
                user_op = UserOperation(
                    sender=sender,
                    nonce=nonce,
                    init_code=init_code or zero_hex(),
                    call_data=call_data,
                    call_gas_limit=hints.call_gas_limit or self._config.gas.call_gas_limit,
                    verification_gas_limit=(
                        hints.verification_gas_limit or self._default_verification_gas(init_code)
                    ),
                    pre_verification_gas=(
                        hints.pre_verification_gas or self._config.gas.pre_verification_gas
                    ),
                    max_fee_per_gas=fees.max_fee_per_gas,
                    max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
                    paymaster_and_data=zero_hex(),
                    signature=zero_hex(),
                )
                ctx.metadata["nonce"] = nonce
        except BaseException:
            async with self._lock:
                self._in_flight.pop(key, None)
            raise

        async with self._lock:
            self._in_flight[key] = nonce
        return user_op

    async def _resolve_fees(self, hints: GasHints) -> FeeEstimate:
        if hints.max_fee_per_gas and hints.max_priority_fee_per_gas:
            return FeeEstimate(hints.max_fee_per_gas, hints.max_priority_fee_per_gas)
        estimate = await self.estimate_fees()
        priority = hints.max_priority_fee_per_gas or estimate.max_priority_fee_per_gas
        max_fee = hints.max_fee_per_gas or max(estimate.max_fee_per_gas, priority)
        return FeeEstimate(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority)

    def _default_verification_gas(self, init_code: str) -> int:
        if is_empty_hex(init_code):
            return self._config.gas.verification_gas_limit
        return self._config.gas.deploy_verification_gas_limit

    def in_flight_nonce(self, sender: str) -> Optional[int]:
        return self._in_flight.get(sender.lower())

    async def release(self, sender: str, *, confirmed: bool = True) -> None:
        """Free the sender once its operation is confirmed or abandoned.

        A confirmed nonce is never handed out again even if the ledger has
        not caught up yet; an abandoned one may be reused.
        """
        key = sender.lower()
        async with self._lock:
            released = self._in_flight.pop(key, None)
            if confirmed and released is not None and released >= 0:
                floor = self._next_nonce_floor.get(key, 0)
                self._next_nonce_floor[key] = max(floor, released + 1)
        if released is not None:
            logger.debug(f"Released sender {sender} (nonce {released})")
