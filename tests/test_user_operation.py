"""
Tests for gaseous.erc4337.user_operation.

Tests cover:
- Wire encoding (hex quantities, field names)
- Signature dropping on mutation
- Relayability validation
- Canonical hash binding
- execute / executeBatch calldata layout
"""
from __future__ import annotations

import dataclasses

import pytest

from gaseous.config import ENTRY_POINT_V06
from gaseous.errors import MalformedOperation, ValidationError
from gaseous.erc4337.user_operation import (
    EXECUTE_BATCH_SELECTOR,
    EXECUTE_SELECTOR,
    UserOperation,
    decode_call_targets,
    encode_execute,
    encode_execute_batch,
)

TARGET = "0x2222222222222222222222222222222222222222"


class TestWireEncoding:
    """Tests for to_rpc / from_rpc."""

    def test_integers_are_prefixed_hex(self, sample_user_op):
        payload = sample_user_op.to_rpc()

        assert payload["nonce"] == "0x1"
        assert payload["callGasLimit"] == "0x30d40"
        assert payload["maxFeePerGas"] == hex(2_000_000_000)
        assert payload["initCode"] == "0x"
        assert payload["signature"] == "0x"
        assert set(payload) == {
            "sender",
            "nonce",
            "initCode",
            "callData",
            "callGasLimit",
            "verificationGasLimit",
            "preVerificationGas",
            "maxFeePerGas",
            "maxPriorityFeePerGas",
            "paymasterAndData",
            "signature",
        }

    def test_zero_nonce_encodes_as_0x0(self, sample_user_op):
        op = sample_user_op.replace(nonce=0)
        assert op.to_rpc()["nonce"] == "0x0"

    def test_negative_integer_is_rejected(self, sample_user_op):
        op = dataclasses.replace(sample_user_op, nonce=-1)
        with pytest.raises(MalformedOperation) as exc:
            op.to_rpc()
        assert exc.value.field == "nonce"

    def test_from_rpc_parses_wire_form(self, sample_user_op):
        signed = sample_user_op.with_signature("0x1234")
        parsed = UserOperation.from_rpc(signed.to_rpc())
        assert parsed == signed

    def test_from_rpc_requires_hex_quantities(self, sample_user_op):
        payload = sample_user_op.to_rpc()
        payload["nonce"] = "12"
        with pytest.raises(MalformedOperation):
            UserOperation.from_rpc(payload)

    def test_from_rpc_missing_field(self, sample_user_op):
        payload = sample_user_op.to_rpc()
        del payload["callData"]
        with pytest.raises(MalformedOperation):
            UserOperation.from_rpc(payload)


class TestSignatureBinding:
    """Mutating an operation always yields an unsigned one."""

    def test_replace_drops_signature(self, sample_user_op):
        signed = sample_user_op.with_signature("0xaa")
        changed = signed.replace(call_gas_limit=300_000)

        assert signed.is_signed
        assert not changed.is_signed
        assert changed.call_gas_limit == 300_000

    def test_paymaster_data_drops_signature(self, sample_user_op):
        signed = sample_user_op.with_signature("0xaa")
        sponsored = signed.with_paymaster_and_data("0x" + "33" * 20)

        assert sponsored.is_sponsored
        assert not sponsored.is_signed

    def test_replace_cannot_set_signature(self, sample_user_op):
        with pytest.raises(ValidationError):
            sample_user_op.replace(signature="0xaa")

    def test_empty_signature_rejected(self, sample_user_op):
        with pytest.raises(ValidationError):
            sample_user_op.with_signature("0x")


class TestValidateRelayable:
    """Tests for validate_relayable()."""

    def test_signed_operation_passes(self, sample_user_op):
        sample_user_op.with_signature("0xaa").validate_relayable(is_deployed=True)

    def test_unsigned_operation_fails(self, sample_user_op):
        with pytest.raises(MalformedOperation) as exc:
            sample_user_op.validate_relayable()
        assert exc.value.field == "signature"

    @pytest.mark.parametrize("field", ["max_fee_per_gas", "max_priority_fee_per_gas"])
    def test_zero_fee_fails(self, sample_user_op, field):
        op = sample_user_op.replace(**{field: 0}).with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable()

    def test_priority_above_max_fee_fails(self, sample_user_op):
        op = sample_user_op.replace(max_priority_fee_per_gas=3_000_000_000).with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable()

    def test_empty_call_data_fails(self, sample_user_op):
        op = sample_user_op.replace(call_data="0x").with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable()

    def test_bad_sender_fails(self, sample_user_op):
        op = sample_user_op.replace(sender="0x1234").with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable()

    def test_init_code_for_deployed_sender_fails(self, sample_user_op):
        op = sample_user_op.replace(init_code="0x" + "44" * 24).with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable(is_deployed=True)
        op.validate_relayable(is_deployed=False)

    def test_missing_init_code_for_undeployed_sender_fails(self, sample_user_op):
        op = sample_user_op.with_signature("0xaa")
        with pytest.raises(MalformedOperation):
            op.validate_relayable(is_deployed=False)

    def test_unknown_deployment_skips_init_code_check(self, sample_user_op):
        sample_user_op.with_signature("0xaa").validate_relayable(is_deployed=None)


class TestHash:
    """Tests for the canonical operation hash."""

    def test_hash_is_32_bytes_and_stable(self, sample_user_op):
        first = sample_user_op.hash(ENTRY_POINT_V06, 84532)
        second = sample_user_op.hash(ENTRY_POINT_V06, 84532)
        assert len(first) == 32
        assert first == second

    @pytest.mark.parametrize(
        "changes",
        [
            {"nonce": 2},
            {"call_data": "0xdeadbeee"},
            {"init_code": "0x01"},
            {"call_gas_limit": 200_001},
            {"verification_gas_limit": 250_001},
            {"pre_verification_gas": 60_001},
            {"max_fee_per_gas": 2_000_000_001},
            {"max_priority_fee_per_gas": 1_000_000_001},
            {"paymaster_and_data": "0x01"},
            {"sender": "0x3333333333333333333333333333333333333333"},
        ],
    )
    def test_every_field_changes_hash(self, sample_user_op, changes):
        changed = sample_user_op.replace(**changes)
        assert changed.hash(ENTRY_POINT_V06, 84532) != sample_user_op.hash(ENTRY_POINT_V06, 84532)

    def test_hash_binds_chain_and_entry_point(self, sample_user_op):
        base = sample_user_op.hash(ENTRY_POINT_V06, 84532)
        assert sample_user_op.hash(ENTRY_POINT_V06, 8453) != base
        assert sample_user_op.hash("0x0000000071727de22e5e9d8baf0edac6f37da032", 84532) != base

    def test_signature_is_not_hashed(self, sample_user_op):
        signed = sample_user_op.with_signature("0xaa")
        assert signed.hash(ENTRY_POINT_V06, 1) == sample_user_op.hash(ENTRY_POINT_V06, 1)


class TestExecuteEncoding:
    """Tests for SimpleAccount calldata encoding."""

    def test_execute_selector(self):
        assert EXECUTE_SELECTOR.hex() == "b61d27f6"

    def test_execute_layout(self):
        call_data = encode_execute(TARGET, 5, b"\xde\xad\xbe\xef")
        raw = bytes.fromhex(call_data[2:])

        assert call_data.startswith("0xb61d27f6")
        # selector, address, value, offset, length, one padded word
        assert len(raw) == 4 + 32 * 5
        assert raw[4:36] == bytes(12) + bytes.fromhex(TARGET[2:])
        assert int.from_bytes(raw[36:68], "big") == 5
        assert int.from_bytes(raw[68:100], "big") == 0x60
        assert int.from_bytes(raw[100:132], "big") == 4
        assert raw[132:136] == b"\xde\xad\xbe\xef"
        assert raw[136:] == bytes(28)

    def test_execute_empty_payload(self):
        raw = bytes.fromhex(encode_execute(TARGET, 0)[2:])
        assert len(raw) == 4 + 32 * 4
        assert int.from_bytes(raw[100:132], "big") == 0

    def test_execute_batch(self):
        call_data = encode_execute_batch([TARGET, TARGET], [b"\x01", b""])
        assert call_data.startswith("0x" + EXECUTE_BATCH_SELECTOR.hex())

    def test_execute_batch_length_mismatch(self):
        with pytest.raises(ValidationError):
            encode_execute_batch([TARGET], [])

    def test_decode_call_targets(self):
        other = "0x4444444444444444444444444444444444444444"
        assert decode_call_targets(encode_execute(TARGET, 1)) == (
            "0x2222222222222222222222222222222222222222",
        )
        targets = decode_call_targets(encode_execute_batch([TARGET, other], [b"", b""]))
        assert [t.lower() for t in targets] == [TARGET, other]
        assert decode_call_targets("0xdeadbeef") == ()

    def test_decode_truncated_execute(self):
        with pytest.raises(MalformedOperation):
            decode_call_targets("0xb61d27f6" + "00" * 10)
