"""
Tests for gaseous.erc4337.signing.
"""
from __future__ import annotations

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from gaseous.config import ENTRY_POINT_V06
from gaseous.errors import MalformedOperation, ValidationError
from gaseous.erc4337.signing import (
    STATIC_AUTHORIZATION_MESSAGE,
    LocalAccountSigner,
    SigningBinder,
    SigningMode,
)

CHAIN_ID = 84532


class FailingSigner:
    address = "0x9999999999999999999999999999999999999999"

    async def sign_message(self, message: bytes) -> str:
        raise RuntimeError("user rejected the request")


class EmptySigner:
    address = "0x9999999999999999999999999999999999999999"

    async def sign_message(self, message: bytes) -> str:
        return "0x"


@pytest.fixture
def binder() -> SigningBinder:
    return SigningBinder(ENTRY_POINT_V06, CHAIN_ID)


class TestLocalAccountSigner:
    """Tests for the eth-account signer."""

    @pytest.mark.asyncio
    async def test_personal_sign_recovers(self, owner_signer):
        signature = await owner_signer.sign_message(b"hello")

        assert signature.startswith("0x")
        assert len(signature) == 2 + 65 * 2
        recovered = Account.recover_message(encode_defunct(primitive=b"hello"), signature=signature)
        assert recovered == owner_signer.address


class TestSigningBinder:
    """Tests for SigningBinder.sign()."""

    @pytest.mark.asyncio
    async def test_signs_user_op_hash(self, binder, owner_signer, sample_user_op):
        signed = await binder.sign(sample_user_op, owner_signer)

        assert signed.is_signed
        assert binder.verify_signature(signed, owner_signer.address)
        recovered = Account.recover_message(
            encode_defunct(primitive=sample_user_op.hash(ENTRY_POINT_V06, CHAIN_ID)),
            signature=signed.signature,
        )
        assert recovered == owner_signer.address

    @pytest.mark.asyncio
    async def test_only_signature_changes(self, binder, owner_signer, sample_user_op):
        signed = await binder.sign(sample_user_op, owner_signer)

        assert signed.replace() == sample_user_op
        assert not sample_user_op.is_signed

    @pytest.mark.asyncio
    async def test_wrong_signer_fails_verification(self, binder, owner_signer, other_signer, sample_user_op):
        signed = await binder.sign(sample_user_op, other_signer)
        assert not binder.verify_signature(signed, owner_signer.address)

    @pytest.mark.asyncio
    async def test_signature_does_not_carry_to_other_operation(self, binder, owner_signer, sample_user_op):
        signed = await binder.sign(sample_user_op, owner_signer)
        tampered = signed.replace(nonce=2).with_signature(signed.signature)

        assert not binder.verify_signature(tampered, owner_signer.address)

    @pytest.mark.asyncio
    async def test_other_chain_fails_verification(self, owner_signer, sample_user_op):
        signed = await SigningBinder(ENTRY_POINT_V06, CHAIN_ID).sign(sample_user_op, owner_signer)
        assert not SigningBinder(ENTRY_POINT_V06, 1).verify_signature(signed, owner_signer.address)

    @pytest.mark.asyncio
    async def test_already_signed_rejected(self, binder, owner_signer, sample_user_op):
        signed = await binder.sign(sample_user_op, owner_signer)

        with pytest.raises(ValidationError):
            await binder.sign(signed, owner_signer)

    @pytest.mark.asyncio
    async def test_signer_failure_propagates(self, binder, sample_user_op):
        with pytest.raises(RuntimeError, match="user rejected"):
            await binder.sign(sample_user_op, FailingSigner())
        assert not sample_user_op.is_signed

    @pytest.mark.asyncio
    async def test_empty_signature_is_malformed(self, binder, sample_user_op):
        with pytest.raises(MalformedOperation):
            await binder.sign(sample_user_op, EmptySigner())

    def test_unsigned_does_not_verify(self, binder, sample_user_op):
        assert not binder.verify_signature(sample_user_op, "0x9999999999999999999999999999999999999999")


class TestStaticMessageMode:
    """The fixed-message mode stays available but is flagged."""

    @pytest.mark.asyncio
    async def test_signs_fixed_message_and_warns(self, owner_signer, sample_user_op, caplog):
        binder = SigningBinder(ENTRY_POINT_V06, CHAIN_ID, SigningMode.STATIC_MESSAGE)

        with caplog.at_level("WARNING", logger="gaseous.erc4337.signing"):
            signed = await binder.sign(sample_user_op, owner_signer)

        recovered = Account.recover_message(
            encode_defunct(text=STATIC_AUTHORIZATION_MESSAGE), signature=signed.signature
        )
        assert recovered == owner_signer.address
        assert any("does not bind" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_static_signature_is_replayable(self, owner_signer, sample_user_op):
        binder = SigningBinder(ENTRY_POINT_V06, CHAIN_ID, SigningMode.STATIC_MESSAGE)
        signed = await binder.sign(sample_user_op, owner_signer)
        other = sample_user_op.replace(nonce=99).with_signature(signed.signature)

        assert binder.verify_signature(other, owner_signer.address)
