"""SimpleAccount helpers for counterfactual address prediction and deployment.

The smart account for an owner lives at a CREATE2 address fixed by
``(factory, owner, salt)``, so it is known before anything is deployed.
The first UserOperation of an undeployed account carries ``initCode``
(factory address followed by ``createAccount(owner, salt)`` calldata); the
factory returns the existing account when the address already holds code,
so deployment through initCode is idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode, encode
from web3 import Web3

from ..config import NetworkConfig
from ..errors import ConfigurationError, LedgerUnavailable
from ..ledger import LedgerClient
from ..logging_utils import OperationType, get_pipeline_logger
from .user_operation import hex_to_bytes, is_empty_hex, zero_hex

logger = logging.getLogger(__name__)

DEFAULT_SALT = 0

INITIALIZE_SELECTOR = Web3.keccak(text="initialize(address)")[:4]
CREATE_ACCOUNT_SELECTOR = Web3.keccak(text="createAccount(address,uint256)")[:4]
GET_ADDRESS_SELECTOR = Web3.keccak(text="getAddress(address,uint256)")[:4]


def create2_address(deployer: str, salt: int, init_code: bytes) -> str:
    """keccak256(0xff ++ deployer ++ salt ++ keccak256(init_code))[12:]"""
    create2_input = (
        b"\xff"
        + bytes.fromhex(Web3.to_checksum_address(deployer)[2:])
        + salt.to_bytes(32, "big")
        + Web3.keccak(init_code)
    )
    return Web3.to_checksum_address("0x" + Web3.keccak(create2_input)[-20:].hex())


def predict_account_address(
    factory: str,
    implementation: str,
    owner: str,
    salt: int = DEFAULT_SALT,
    proxy_creation_code: str = "",
) -> str:
    """Predict the address ``SimpleAccountFactory.getAddress(owner, salt)`` returns.

    The factory deploys ``ERC1967Proxy(implementation, initialize(owner))``
    with CREATE2 using ``salt`` directly, so the init code hash is
    ``keccak256(proxyCreationCode ++ abi.encode(implementation, initData))``.

    Args:
        factory: SimpleAccountFactory address (CREATE2 deployer)
        implementation: SimpleAccount implementation behind the proxy
        owner: EOA that will own the account
        salt: CREATE2 salt, 0 for the single default account per owner
        proxy_creation_code: ERC1967Proxy creation bytecode of the factory build

    Returns:
        Predicted smart account address (checksummed)
    """
    if is_empty_hex(proxy_creation_code):
        raise ConfigurationError("proxy creation code is required to predict account addresses")
    if salt < 0:
        raise ValueError("salt must not be negative")

    init_data = INITIALIZE_SELECTOR + encode(["address"], [Web3.to_checksum_address(owner)])
    deployment_code = hex_to_bytes(proxy_creation_code) + encode(
        ["address", "bytes"],
        [Web3.to_checksum_address(implementation), init_data],
    )
    return create2_address(factory, salt, deployment_code)


def build_account_init_code(factory: str, owner: str, salt: int = DEFAULT_SALT) -> str:
    """Build initCode for the first UserOperation of an undeployed account.

    initCode = factory address ++ createAccount(owner, salt)
    """
    calldata = CREATE_ACCOUNT_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(owner), salt]
    )
    factory_bytes = bytes.fromhex(Web3.to_checksum_address(factory)[2:])
    return "0x" + (factory_bytes + calldata).hex()


@dataclass(frozen=True)
class ResolvedAccount:
    """Smart account for an owner.

    ``is_deployed`` is ``None`` when the code query failed; ``init_code`` is
    then ``None`` as well, because choosing it would be a guess.
    """
    owner: str
    salt: int
    address: str
    is_deployed: Optional[bool]
    init_code: Optional[str]

    @property
    def status_known(self) -> bool:
        return self.is_deployed is not None


class AccountResolver:
    """Derives smart account addresses and asks the ledger whether they exist.

    Deployment status is queried on every call and never cached: the
    account can be deployed at any time through any path.
    """

    def __init__(self, ledger: LedgerClient, network: Optional[NetworkConfig] = None):
        self._ledger = ledger
        self._network = network or ledger.network

    def derive_address(self, owner: str, salt: int = DEFAULT_SALT) -> str:
        return predict_account_address(
            factory=self._network.factory_address,
            implementation=self._network.account_implementation,
            owner=owner,
            salt=salt,
            proxy_creation_code=self._network.proxy_creation_code,
        )

    def init_code_for(self, owner: str, salt: int = DEFAULT_SALT) -> str:
        return build_account_init_code(self._network.factory_address, owner, salt)

    async def deployment_status(self, address: str) -> Optional[bool]:
        """True/False from one code query, ``None`` when the query failed."""
        try:
            code = await self._ledger.get_code(address)
        except LedgerUnavailable as e:
            logger.warning(f"Deployment status of {address} unknown: {e}")
            return None
        return not is_empty_hex(code)

    async def require_deployment_status(self, address: str) -> bool:
        """Like :meth:`deployment_status` but raises instead of returning unknown."""
        code = await self._ledger.get_code(address)
        return not is_empty_hex(code)

    async def resolve(self, owner: str, salt: int = DEFAULT_SALT) -> ResolvedAccount:
        plog = get_pipeline_logger()
        async with plog.operation_context(
            OperationType.RESOLVE_ACCOUNT, self._network.name, salt=salt
        ) as ctx:
            address = self.derive_address(owner, salt)
            is_deployed = await self.deployment_status(address)
            if is_deployed is None:
                init_code = None
            elif is_deployed:
                init_code = zero_hex()
            else:
                init_code = self.init_code_for(owner, salt)
            ctx.metadata.update({"address": address, "is_deployed": is_deployed})

        return ResolvedAccount(
            owner=Web3.to_checksum_address(owner),
            salt=salt,
            address=address,
            is_deployed=is_deployed,
            init_code=init_code,
        )

    async def factory_address(self, owner: str, salt: int = DEFAULT_SALT) -> str:
        """Ask the factory contract for the address (``getAddress`` view call).

        Used to check that the configured implementation and proxy code
        reproduce what the deployed factory computes.
        """
        calldata = GET_ADDRESS_SELECTOR + encode(
            ["address", "uint256"], [Web3.to_checksum_address(owner), salt]
        )
        raw = await self._ledger.call(self._network.factory_address, calldata)
        (address,) = decode(["address"], raw[:32])
        return Web3.to_checksum_address(address)
