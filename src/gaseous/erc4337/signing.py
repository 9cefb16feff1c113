"""Signing binder: attaches the owner's authorization to a UserOperation.

The owner key is never held here. A signer is any object with an
``address`` and an async ``sign_message`` producing an EIP-191 personal
signature, which is what SimpleAccount v0.6 checks against
``toEthSignedMessageHash(userOpHash)``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ..errors import MalformedOperation, ValidationError
from ..logging_utils import OperationType, get_pipeline_logger
from .user_operation import UserOperation, hex_to_bytes, is_empty_hex

logger = logging.getLogger(__name__)

STATIC_AUTHORIZATION_MESSAGE = "Sign this message to authorize the gasless transaction."


class SigningMode(str, Enum):
    """What the owner signs."""
    USER_OP_HASH = "user_op_hash"  # EntryPoint v0.6 userOpHash
    STATIC_MESSAGE = "static_message"  # fixed text, does not bind the operation


class OperationSigner(Protocol):
    """External signing capability for the owner key."""

    @property
    def address(self) -> str:  # pragma: no cover - protocol
        ...

    async def sign_message(self, message: bytes) -> str:  # pragma: no cover - protocol
        """Return a 0x-prefixed EIP-191 signature over ``message``."""
        ...


class LocalAccountSigner:
    """eth-account backed signer for development and tests."""

    def __init__(self, private_key: str | bytes):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_message(self, message: bytes) -> str:
        signed = self._account.sign_message(encode_defunct(primitive=message))
        return Web3.to_hex(signed.signature)


class SigningBinder:
    """Binds operations to an owner signature for one EntryPoint and chain."""

    def __init__(
        self,
        entry_point: str,
        chain_id: int,
        mode: SigningMode = SigningMode.USER_OP_HASH,
        network: str = "unknown",
    ):
        self._entry_point = Web3.to_checksum_address(entry_point)
        self._chain_id = chain_id
        self._mode = mode
        self._network = network

    @property
    def mode(self) -> SigningMode:
        return self._mode

    def user_op_hash(self, operation: UserOperation) -> bytes:
        return operation.hash(self._entry_point, self._chain_id)

    def signing_payload(self, operation: UserOperation) -> bytes:
        if self._mode == SigningMode.STATIC_MESSAGE:
            logger.warning(
                "Signing the static authorization message: the signature does not bind "
                f"the operation content (sender={operation.sender}, nonce={operation.nonce})"
            )
            return STATIC_AUTHORIZATION_MESSAGE.encode("utf-8")
        return self.user_op_hash(operation)

    async def sign(self, operation: UserOperation, signer: OperationSigner) -> UserOperation:
        """Return ``operation`` with its signature attached.

        The input is never modified; if the signer fails, its error
        propagates and no signed operation exists.
        """
        if operation.is_signed:
            raise ValidationError("operation is already signed; rebuild it to sign again")

        payload = self.signing_payload(operation)
        plog = get_pipeline_logger()
        async with plog.operation_context(
            OperationType.SIGN_OPERATION,
            self._network,
            sender=operation.sender,
            mode=self._mode.value,
        ):
            signature = await signer.sign_message(payload)

        if not isinstance(signature, str) or is_empty_hex(signature):
            raise MalformedOperation("signer returned an empty signature", field="signature")
        try:
            raw = hex_to_bytes(signature)
        except ValueError as e:
            raise MalformedOperation("signer returned non-hex signature", field="signature") from e
        if not signature.startswith("0x"):
            signature = "0x" + raw.hex()
        return operation.with_signature(signature)

    def recover_signer(self, operation: UserOperation) -> str:
        """Address that produced ``operation.signature`` for this binder's payload."""
        if not operation.is_signed:
            raise ValidationError("operation is not signed")
        payload = (
            STATIC_AUTHORIZATION_MESSAGE.encode("utf-8")
            if self._mode == SigningMode.STATIC_MESSAGE
            else self.user_op_hash(operation)
        )
        return Account.recover_message(
            encode_defunct(primitive=payload),
            signature=hex_to_bytes(operation.signature),
        )

    def verify_signature(self, operation: UserOperation, expected_signer: str) -> bool:
        try:
            recovered = self.recover_signer(operation)
        except (ValueError, ValidationError) as e:
            logger.debug(f"Signature verification failed: {e}")
            return False
        return recovered.lower() == expected_signer.lower()
