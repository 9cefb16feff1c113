"""Read-only ledger queries consumed by the pipeline.

Three facts come from the ledger: code presence at an address, current fee
bounds, and the EntryPoint nonce for a sender. Every query is a bounded
request; failures surface as ``LedgerUnavailable`` so callers never mistake
"could not ask" for a negative answer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .config import GaslessConfig, NetworkConfig, get_config
from .errors import LedgerUnavailable
from .rpc import JsonRpcClient, RPCError, RPCTransportError, retry_async

logger = logging.getLogger(__name__)

GET_NONCE_SELECTOR = Web3.keccak(text="getNonce(address,uint192)")[:4]


@dataclass(frozen=True)
class FeeEstimate:
    """EIP-1559 fee bounds in wei."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


def _quantity(method: str, value: Any) -> int:
    if value in (None, "", "0x"):
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return int(str(value), 16)
    except ValueError as e:
        raise LedgerUnavailable(method, f"invalid quantity {value!r}") from e


class LedgerClient:
    """JSON-RPC client for the ledger node."""

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
            self._network.rpc_url,
            timeout_seconds=self._config.timeouts.rpc_seconds,
            http_client=http_client,
        )

    @property
    def network(self) -> NetworkConfig:
        return self._network

    async def _query(self, method: str, params: list[Any]) -> Any:
        try:
            return await retry_async(
                lambda: self._rpc.call(method, params),
                self._config.retry,
                retry_on=(RPCTransportError,),
                description=f"ledger {method}",
            )
        except RPCTransportError as e:
            raise LedgerUnavailable(method, e.reason) from e
        except RPCError as e:
            raise LedgerUnavailable(method, e.message) from e

    async def get_code(self, address: str) -> str:
        """Return the bytecode at ``address`` ("0x" when nothing is deployed)."""
        result = await self._query("eth_getCode", [Web3.to_checksum_address(address), "latest"])
        if result is None:
            return "0x"
        if not isinstance(result, str):
            raise LedgerUnavailable("eth_getCode", "invalid code payload")
        return result

    async def estimate_fees(self, base_fee_multiplier: int = 2) -> FeeEstimate:
        """Estimate EIP-1559 fee bounds from the latest block.

        ``maxFeePerGas = baseFee * multiplier + priorityFee``, the usual
        headroom for a few blocks of base fee growth.
        """
        raw_priority = await self._query("eth_maxPriorityFeePerGas", [])
        priority = _quantity("eth_maxPriorityFeePerGas", raw_priority)
        block = await self._query("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise LedgerUnavailable("eth_getBlockByNumber", "invalid block payload")
        base_fee = _quantity("eth_getBlockByNumber", block.get("baseFeePerGas"))
        return FeeEstimate(
            max_fee_per_gas=base_fee * base_fee_multiplier + priority,
            max_priority_fee_per_gas=priority,
        )

    async def call(self, to: str, data: bytes) -> bytes:
        """Run ``eth_call`` against the latest block."""
        result = await self._query(
            "eth_call",
            [{"to": Web3.to_checksum_address(to), "data": "0x" + data.hex()}, "latest"],
        )
        if not isinstance(result, str):
            raise LedgerUnavailable("eth_call", "invalid call result")
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError as e:
            raise LedgerUnavailable("eth_call", "call result is not hex") from e

    async def get_nonce(self, sender: str, entry_point: Optional[str] = None, key: int = 0) -> int:
        """Next nonce for ``sender`` according to ``EntryPoint.getNonce``."""
        entry_point = entry_point or self._network.entry_point
        calldata = GET_NONCE_SELECTOR + encode(
            ["address", "uint192"], [Web3.to_checksum_address(sender), key]
        )
        raw = await self.call(entry_point, calldata)
        if len(raw) < 32:
            raise LedgerUnavailable("eth_call", "short getNonce result")
        try:
            (nonce,) = decode(["uint256"], raw[:32])
        except DecodingError as e:
            raise LedgerUnavailable("eth_call", f"undecodable getNonce result: {e}") from e
        return int(nonce)

    async def close(self) -> None:
        await self._rpc.close()
