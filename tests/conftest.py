"""
Pytest configuration for gaseous tests.

JSON-RPC endpoints are faked with ``httpx.MockTransport``; nothing leaves
the process.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from gaseous.config import GaslessConfig, NetworkConfig, RetrySettings, set_config
from gaseous.erc4337.signing import LocalAccountSigner
from gaseous.erc4337.user_operation import UserOperation, zero_hex

GWEI = 10**9

FACTORY = "0x9406cc6185a346906296840746125a0e44976454"
IMPLEMENTATION = "0x8abb13360b87be5eeb1b98647a016add927a136c"
# Stand-in creation code: only determinism matters for these tests.
PROXY_CREATION_CODE = "0x60806040526040516101f03803806101f0833981016040819052"

OWNER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32

USER_OP_HASH = "0x" + "ab" * 32


class FakeRPC:
    """Routes JSON-RPC requests by method and records every call."""

    def __init__(self):
        self.routes: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, list]] = []

    def on(
        self,
        method: str,
        result: Any = None,
        *,
        error: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        raises: Optional[Exception] = None,
        handler: Optional[Callable[[list], Any]] = None,
    ) -> "FakeRPC":
        self.routes[method] = {
            "result": result,
            "error": error,
            "status_code": status_code,
            "raises": raises,
            "handler": handler,
        }
        return self

    def methods(self) -> List[str]:
        return [method for method, _ in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        self.calls.append((method, params))
        route = self.routes.get(method)
        if route is None:
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": payload["id"],
                    "error": {"code": -32601, "message": f"method not found: {method}"},
                },
            )
        if route["raises"] is not None:
            raise route["raises"]
        if route["status_code"] is not None:
            return httpx.Response(route["status_code"], text="service unavailable")
        if route["error"] is not None:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": payload["id"], "error": route["error"]}
            )
        result = route["handler"](params) if route["handler"] else route["result"]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def encode_uint(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


@pytest.fixture
def network() -> NetworkConfig:
    return NetworkConfig(
        chain_id=84532,
        name="testnet",
        rpc_url="https://rpc.test.invalid",
        bundler_url="https://bundler.test.invalid",
        factory_address=FACTORY,
        account_implementation=IMPLEMENTATION,
        proxy_creation_code=PROXY_CREATION_CODE,
        paymaster_url="https://paymaster.test.invalid",
        is_testnet=True,
    )


@pytest.fixture
def config(network) -> GaslessConfig:
    return GaslessConfig(
        networks={"testnet": network},
        retry=RetrySettings(max_attempts=3, initial_delay_seconds=0.0, jitter_factor=0.0),
        default_network="testnet",
    )


@pytest.fixture(autouse=True)
def _global_config(config):
    set_config(config)
    yield
    set_config(None)


@pytest.fixture
def ledger_rpc() -> FakeRPC:
    """Ledger node with an undeployed account, nonce 0 and 5 gwei base fee."""
    rpc = FakeRPC()
    rpc.on("eth_getCode", "0x")
    rpc.on("eth_maxPriorityFeePerGas", hex(1 * GWEI))
    rpc.on("eth_getBlockByNumber", {"number": "0x10", "baseFeePerGas": hex(5 * GWEI)})
    rpc.on("eth_call", handler=lambda params: encode_uint(0))
    return rpc


@pytest.fixture
def bundler_rpc() -> FakeRPC:
    rpc = FakeRPC()
    rpc.on("eth_sendUserOperation", USER_OP_HASH)
    return rpc


@pytest.fixture
def owner_signer() -> LocalAccountSigner:
    return LocalAccountSigner(OWNER_KEY)


@pytest.fixture
def other_signer() -> LocalAccountSigner:
    return LocalAccountSigner(OTHER_KEY)


@pytest.fixture
def sample_user_op() -> UserOperation:
    return UserOperation(
        sender="0x1111111111111111111111111111111111111111",
        nonce=1,
        init_code=zero_hex(),
        call_data="0xdeadbeef",
        call_gas_limit=200_000,
        verification_gas_limit=250_000,
        pre_verification_gas=60_000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
    )


class FakeClock:
    """Manually advanced clock for window rollover tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
