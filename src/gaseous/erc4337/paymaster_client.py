"""Client for a remote ERC-4337 paymaster (``pm_sponsorUserOperation``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from web3 import Web3

from ..config import GaslessConfig, NetworkConfig, get_config
from ..errors import ConfigurationError, RelayRejected, RelayUnreachable
from ..logging_utils import OperationType, get_pipeline_logger
from ..rpc import JsonRpcClient, RPCError, RPCTransportError
from .user_operation import UserOperation, hex_to_bytes, is_empty_hex

logger = logging.getLogger(__name__)


@dataclass
class SponsoredUserOperation:
    paymaster_and_data: str
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    pre_verification_gas: Optional[int] = None

    @property
    def paymaster(self) -> str:
        raw = hex_to_bytes(self.paymaster_and_data)
        return Web3.to_checksum_address(raw[:20]) if len(raw) >= 20 else ""


def _optional_quantity(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16)


class PaymasterClient:
    """Pimlico-compatible paymaster client (sponsor model)."""

    def __init__(
        self,
        network: Optional[NetworkConfig] = None,
        *,
        config: Optional[GaslessConfig] = None,
        url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_config()
        self._network = network or self._config.get_network()
        endpoint = url or self._network.paymaster_url
        if not endpoint:
            raise ConfigurationError(f"No paymaster URL configured for {self._network.name}")
        self._rpc = JsonRpcClient(
            endpoint,
            timeout_seconds=self._config.timeouts.bundler_seconds,
            http_client=http_client,
        )

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        sponsorship_policy_id: Optional[str] = None,
    ) -> SponsoredUserOperation:
        """Ask the paymaster to sponsor ``user_op``; returns its paymasterAndData."""
        context = {"sponsorshipPolicyId": sponsorship_policy_id or f"gaseous-{self._network.name}"}
        try:
            result = await self._rpc.call(
                "pm_sponsorUserOperation",
                [user_op.to_rpc(), self._network.entry_point, context],
            )
        except RPCTransportError as e:
            raise RelayUnreachable(f"paymaster: {e.reason}", status_code=e.status_code) from e
        except RPCError as e:
            raise RelayRejected(f"paymaster refused sponsorship: {e.message}", code=e.code, data=e.data) from e

        if not isinstance(result, dict) or not isinstance(result.get("paymasterAndData"), str):
            raise RelayRejected("paymaster returned an invalid sponsorship payload")
        if is_empty_hex(result["paymasterAndData"]):
            raise RelayRejected("paymaster returned empty paymasterAndData")
        return SponsoredUserOperation(
            paymaster_and_data=result["paymasterAndData"],
            call_gas_limit=_optional_quantity(result.get("callGasLimit")),
            verification_gas_limit=_optional_quantity(result.get("verificationGasLimit")),
            pre_verification_gas=_optional_quantity(result.get("preVerificationGas")),
        )

    async def sponsor(
        self,
        user_op: UserOperation,
        sponsorship_policy_id: Optional[str] = None,
    ) -> UserOperation:
        """Return an unsigned copy of ``user_op`` carrying the paymaster's data.

        Gas limits the paymaster returns are applied in the same copy,
        since its signature covers them.
        """
        plog = get_pipeline_logger()
        async with plog.operation_context(
            OperationType.SPONSOR_OPERATION, self._network.name, sender=user_op.sender
        ) as ctx:
            sponsored = await self.sponsor_user_operation(user_op, sponsorship_policy_id)
            ctx.metadata["paymaster"] = sponsored.paymaster

        changes: dict[str, Any] = {"paymaster_and_data": sponsored.paymaster_and_data}
        if sponsored.call_gas_limit:
            changes["call_gas_limit"] = sponsored.call_gas_limit
        if sponsored.verification_gas_limit:
            changes["verification_gas_limit"] = sponsored.verification_gas_limit
        if sponsored.pre_verification_gas:
            changes["pre_verification_gas"] = sponsored.pre_verification_gas
        return user_op.replace(**changes)

    async def close(self) -> None:
        await self._rpc.close()
