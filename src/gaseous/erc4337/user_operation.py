"""UserOperation primitives for ERC-4337 (EntryPoint v0.6 layout)."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from ..errors import MalformedOperation, ValidationError

EXECUTE_SELECTOR = Web3.keccak(text="execute(address,uint256,bytes)")[:4]
EXECUTE_BATCH_SELECTOR = Web3.keccak(text="executeBatch(address[],bytes[])")[:4]

INT_FIELDS = (
    "nonce",
    "call_gas_limit",
    "verification_gas_limit",
    "pre_verification_gas",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
)
BYTES_FIELDS = ("init_code", "call_data", "paymaster_and_data", "signature")

RPC_FIELD_NAMES = {
    "sender": "sender",
    "nonce": "nonce",
    "init_code": "initCode",
    "call_data": "callData",
    "call_gas_limit": "callGasLimit",
    "verification_gas_limit": "verificationGasLimit",
    "pre_verification_gas": "preVerificationGas",
    "max_fee_per_gas": "maxFeePerGas",
    "max_priority_fee_per_gas": "maxPriorityFeePerGas",
    "paymaster_and_data": "paymasterAndData",
    "signature": "signature",
}


def zero_hex() -> str:
    return "0x"


def is_empty_hex(value: Optional[str]) -> bool:
    return value is None or value in ("", "0x", "0X")


def hex_to_bytes(value: str) -> bytes:
    if is_empty_hex(value):
        return b""
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def _to_hex_int(field: str, value: int) -> str:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedOperation(f"{field} must be an integer", field=field)
    if value < 0:
        raise MalformedOperation(f"{field} must not be negative", field=field)
    return hex(value)


def _parse_quantity(field: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.startswith(("0x", "0X")):
        try:
            return int(value, 16)
        except ValueError as e:
            raise MalformedOperation(f"{field} is not a hex quantity", field=field) from e
    raise MalformedOperation(f"{field} must be a 0x-prefixed hex quantity", field=field)


def encode_execute(target: str, value: int, payload: bytes = b"") -> str:
    """Encode SimpleAccount ``execute(address,uint256,bytes)`` calldata."""
    encoded = encode(
        ["address", "uint256", "bytes"],
        [Web3.to_checksum_address(target), value, payload],
    )
    return "0x" + (EXECUTE_SELECTOR + encoded).hex()


def encode_execute_batch(targets: Sequence[str], payloads: Sequence[bytes]) -> str:
    """Encode SimpleAccount ``executeBatch(address[],bytes[])`` calldata."""
    if len(targets) != len(payloads):
        raise ValidationError("executeBatch needs one payload per target")
    encoded = encode(
        ["address[]", "bytes[]"],
        [[Web3.to_checksum_address(t) for t in targets], list(payloads)],
    )
    return "0x" + (EXECUTE_BATCH_SELECTOR + encoded).hex()


def decode_call_targets(call_data: str) -> tuple[str, ...]:
    """Contracts an ``execute``/``executeBatch`` call reaches; empty for other calldata."""
    raw = hex_to_bytes(call_data)
    selector, body = raw[:4], raw[4:]
    try:
        if selector == EXECUTE_SELECTOR:
            target, _, _ = decode(["address", "uint256", "bytes"], body)
            return (Web3.to_checksum_address(target),)
        if selector == EXECUTE_BATCH_SELECTOR:
            targets, _ = decode(["address[]", "bytes[]"], body)
            return tuple(Web3.to_checksum_address(t) for t in targets)
    except DecodingError as e:
        raise MalformedOperation(f"callData does not decode: {e}", field="call_data") from e
    return ()


@dataclass(frozen=True)
class UserOperation:
    """One action for a smart account, immutable once signed.

    Any change made through :meth:`replace` drops the signature, so a
    mutated operation is always a new, unsigned one.
    """

    sender: str
    nonce: int
    init_code: str
    call_data: str
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: str = "0x"
    signature: str = "0x"

    @property
    def is_signed(self) -> bool:
        return not is_empty_hex(self.signature)

    @property
    def is_sponsored(self) -> bool:
        return not is_empty_hex(self.paymaster_and_data)

    @property
    def has_init_code(self) -> bool:
        return not is_empty_hex(self.init_code)

    def replace(self, **changes: Any) -> "UserOperation":
        """Return a copy with ``changes`` applied and the signature cleared."""
        if "signature" in changes:
            raise ValidationError("use with_signature() to attach a signature")
        changes["signature"] = zero_hex()
        return dataclasses.replace(self, **changes)

    def with_signature(self, signature: str) -> "UserOperation":
        if is_empty_hex(signature):
            raise ValidationError("signature must not be empty")
        return dataclasses.replace(self, signature=signature)

    def with_paymaster_and_data(self, paymaster_and_data: str) -> "UserOperation":
        return self.replace(paymaster_and_data=paymaster_and_data)

    def validate_relayable(self, is_deployed: Optional[bool] = None) -> None:
        """Raise :class:`MalformedOperation` unless the operation can be relayed.

        ``is_deployed`` is checked against ``initCode`` only when known.
        """
        if not isinstance(self.sender, str) or not Web3.is_address(self.sender):
            raise MalformedOperation("sender must be a 20-byte address", field="sender")
        for name in INT_FIELDS:
            _to_hex_int(name, getattr(self, name))
        for name in BYTES_FIELDS:
            value = getattr(self, name)
            try:
                hex_to_bytes(value)
            except (TypeError, ValueError, AttributeError) as e:
                raise MalformedOperation(f"{name} is not valid hex", field=name) from e
        if is_empty_hex(self.call_data):
            raise MalformedOperation("callData is required", field="call_data")
        for name in ("call_gas_limit", "verification_gas_limit", "pre_verification_gas"):
            if getattr(self, name) <= 0:
                raise MalformedOperation(f"{name} must be positive", field=name)
        if self.max_fee_per_gas <= 0 or self.max_priority_fee_per_gas <= 0:
            raise MalformedOperation("fee bounds must be positive", field="max_fee_per_gas")
        if self.max_priority_fee_per_gas > self.max_fee_per_gas:
            raise MalformedOperation(
                "maxPriorityFeePerGas exceeds maxFeePerGas", field="max_priority_fee_per_gas"
            )
        if not self.is_signed:
            raise MalformedOperation("operation is not signed", field="signature")
        if is_deployed is True and self.has_init_code:
            raise MalformedOperation("initCode must be empty for a deployed sender", field="init_code")
        if is_deployed is False and not self.has_init_code:
            raise MalformedOperation("initCode is required for an undeployed sender", field="init_code")

    def pack(self) -> bytes:
        """ABI-encode the signed fields the way EntryPoint v0.6 hashes them."""
        return encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "bytes32",
            ],
            [
                Web3.to_checksum_address(self.sender),
                self.nonce,
                Web3.keccak(hex_to_bytes(self.init_code)),
                Web3.keccak(hex_to_bytes(self.call_data)),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                Web3.keccak(hex_to_bytes(self.paymaster_and_data)),
            ],
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """``EntryPoint.getUserOpHash``: binds the fields, the entry point and the chain."""
        return Web3.keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [Web3.keccak(self.pack()), Web3.to_checksum_address(entry_point), chain_id],
            )
        )

    def to_rpc(self) -> dict[str, Any]:
        """Wire form: integers as 0x-prefixed hex, byte fields as given."""
        payload: dict[str, Any] = {}
        for attr, rpc_name in RPC_FIELD_NAMES.items():
            value = getattr(self, attr)
            payload[rpc_name] = _to_hex_int(attr, value) if attr in INT_FIELDS else value
        return payload

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "UserOperation":
        kwargs: dict[str, Any] = {}
        for attr, rpc_name in RPC_FIELD_NAMES.items():
            if rpc_name not in data:
                if attr in ("paymaster_and_data", "signature"):
                    continue
                raise MalformedOperation(f"{rpc_name} missing", field=attr)
            value = data[rpc_name]
            kwargs[attr] = _parse_quantity(attr, value) if attr in INT_FIELDS else value
        return cls(**kwargs)
