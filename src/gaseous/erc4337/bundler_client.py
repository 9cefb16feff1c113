"""ERC-4337 bundler client (relay)."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..config import GaslessConfig, NetworkConfig, get_config
from ..errors import MalformedOperation, OutOfGasRejection, RelayRejected, RelayUnreachable
from ..logging_utils import OperationType, get_pipeline_logger
from ..rpc import JsonRpcClient, RPCError, RPCTransportError
from .user_operation import UserOperation

logger = logging.getLogger(__name__)

INVALID_PARAMS_CODE = -32602

# EntryPoint revert codes and bundler messages that mean the gas limits were too low
OUT_OF_GAS_PATTERN = re.compile(
    r"\bAA(40|41|51|95)\b|out of gas|gas too low|gas limit too low|"
    r"(callGasLimit|verificationGasLimit|preVerificationGas) too low",
    re.IGNORECASE,
)
USER_OP_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def classify_rejection(error: RPCError) -> Exception:
    """Map a bundler JSON-RPC error to the relay error taxonomy."""
    text = f"{error.message} {error.data if error.data is not None else ''}"
    if OUT_OF_GAS_PATTERN.search(text):
        return OutOfGasRejection(error.message, code=error.code, data=error.data)
    if error.code == INVALID_PARAMS_CODE:
        return MalformedOperation(f"bundler rejected params: {error.message}")
    return RelayRejected(error.message, code=error.code, data=error.data)


class BundlerClient:
    """Submits signed operations to a bundler and tracks their inclusion.

    Submission is never retried here: a timed-out request may still have
    been accepted, so a blind resend could relay the operation twice.
    """

    def __init__(
        self,
        network: Optional[NetworkConfig] = None,
        *,
        config: Optional[GaslessConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config or get_config()
        self._network = network or self._config.get_network()
        self._rpc = JsonRpcClient(
            self._network.bundler_url,
            timeout_seconds=self._config.timeouts.bundler_seconds,
            http_client=http_client,
        )

    @property
    def entry_point(self) -> str:
        return self._network.entry_point

    async def _call(self, method: str, params: list[Any]) -> Any:
        try:
            return await self._rpc.call(method, params)
        except RPCTransportError as e:
            raise RelayUnreachable(e.reason, status_code=e.status_code) from e
        except RPCError as e:
            raise classify_rejection(e) from e

    async def submit(self, user_op: UserOperation, *, is_deployed: Optional[bool] = None) -> str:
        """Relay a signed operation and return its 32-byte hash.

        Raises:
            MalformedOperation: the operation is incomplete or the bundler
                refused its encoding
            RelayUnreachable: transport failure or timeout, safe to retry
            RelayRejected: the bundler validated and refused the operation
        """
        user_op.validate_relayable(is_deployed)

        plog = get_pipeline_logger()
        async with plog.operation_context(
            OperationType.RELAY_SUBMIT,
            self._network.name,
            sender=user_op.sender,
            nonce=user_op.nonce,
        ) as ctx:
            result = await self._call("eth_sendUserOperation", [user_op.to_rpc(), self.entry_point])
            if not isinstance(result, str) or not USER_OP_HASH_PATTERN.match(result):
                raise MalformedOperation(f"bundler returned an invalid operation hash: {result!r}")
            ctx.metadata["user_op_hash"] = result

        plog.log_user_operation_submitted(
            user_op_hash=result,
            network=self._network.name,
            sender=user_op.sender,
            nonce=user_op.nonce,
            sponsored=user_op.is_sponsored,
        )
        return result

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> dict[str, int]:
        result = await self._call("eth_estimateUserOperationGas", [user_op.to_rpc(), self.entry_point])
        if not isinstance(result, dict):
            raise RelayRejected("bundler returned an invalid gas estimate payload")
        estimate: dict[str, int] = {}
        for key in ("callGasLimit", "verificationGasLimit", "preVerificationGas"):
            value = result.get(key)
            if value is None:
                continue
            estimate[key] = value if isinstance(value, int) else int(str(value), 16)
        return estimate

    async def supported_entry_points(self) -> list[str]:
        result = await self._call("eth_supportedEntryPoints", [])
        if not isinstance(result, list):
            raise RelayRejected("bundler returned an invalid entry point list")
        return [str(address) for address in result]

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[dict[str, Any]]:
        result = await self._call("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RelayRejected("bundler returned an invalid receipt payload")
        return result

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> dict[str, Any]:
        """Poll until the operation is included or the timeout elapses."""
        timeouts = self._config.timeouts
        timeout_seconds = timeout_seconds if timeout_seconds is not None else timeouts.receipt_timeout_seconds
        poll_seconds = poll_seconds if poll_seconds is not None else timeouts.receipt_poll_seconds

        plog = get_pipeline_logger()
        async with plog.operation_context(
            OperationType.RECEIPT_TRACKING, self._network.name, user_op_hash=user_op_hash
        ):
            waited = 0.0
            while True:
                try:
                    receipt = await self.get_user_operation_receipt(user_op_hash)
                except RelayUnreachable as e:
                    logger.warning(f"Receipt lookup for {user_op_hash} failed, still polling: {e}")
                    receipt = None
                if receipt:
                    return receipt
                if waited >= timeout_seconds:
                    break
                await sleep(poll_seconds)
                waited += poll_seconds
        raise TimeoutError(f"UserOperation not included within {timeout_seconds}s: {user_op_hash}")

    async def close(self) -> None:
        await self._rpc.close()
