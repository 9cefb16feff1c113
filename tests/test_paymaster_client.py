"""
Tests for gaseous.erc4337.paymaster_client.
"""
from __future__ import annotations

import dataclasses

import pytest

from gaseous.config import ENTRY_POINT_V06
from gaseous.errors import ConfigurationError, RelayRejected, RelayUnreachable
from gaseous.erc4337.paymaster_client import PaymasterClient

from conftest import FakeRPC

PAYMASTER = "0x" + "77" * 20
PAYMASTER_AND_DATA = PAYMASTER + "00" * 64


@pytest.fixture
def paymaster_rpc() -> FakeRPC:
    return FakeRPC().on(
        "pm_sponsorUserOperation",
        {
            "paymasterAndData": PAYMASTER_AND_DATA,
            "preVerificationGas": "0xea60",
            "verificationGasLimit": "0x30d40",
            "callGasLimit": "0x186a0",
        },
    )


@pytest.fixture
def paymaster(network, config, paymaster_rpc) -> PaymasterClient:
    return PaymasterClient(network, config=config, http_client=paymaster_rpc.client())


class TestPaymasterClient:
    """Tests for PaymasterClient."""

    @pytest.mark.asyncio
    async def test_sponsor_fills_paymaster_and_data(self, paymaster, paymaster_rpc, sample_user_op):
        sponsored = await paymaster.sponsor(sample_user_op)

        assert sponsored.paymaster_and_data == PAYMASTER_AND_DATA
        assert sponsored.pre_verification_gas == 60_000
        assert sponsored.verification_gas_limit == 200_000
        assert sponsored.call_gas_limit == 100_000
        assert not sponsored.is_signed
        method, params = paymaster_rpc.calls[0]
        assert method == "pm_sponsorUserOperation"
        assert params[1] == ENTRY_POINT_V06
        assert params[2] == {"sponsorshipPolicyId": "gaseous-testnet"}

    @pytest.mark.asyncio
    async def test_sponsor_drops_existing_signature(self, paymaster, sample_user_op):
        sponsored = await paymaster.sponsor(sample_user_op.with_signature("0xaa"))
        assert not sponsored.is_signed

    @pytest.mark.asyncio
    async def test_policy_id_is_forwarded(self, paymaster, paymaster_rpc, sample_user_op):
        await paymaster.sponsor(sample_user_op, "sp_custom")
        assert paymaster_rpc.calls[0][1][2] == {"sponsorshipPolicyId": "sp_custom"}

    @pytest.mark.asyncio
    async def test_paymaster_address(self, paymaster, sample_user_op):
        result = await paymaster.sponsor_user_operation(sample_user_op)
        assert result.paymaster.lower() == PAYMASTER

    @pytest.mark.asyncio
    async def test_refusal_is_rejected(self, paymaster, paymaster_rpc, sample_user_op):
        paymaster_rpc.on("pm_sponsorUserOperation", error={"code": -32000, "message": "policy exhausted"})

        with pytest.raises(RelayRejected, match="policy exhausted"):
            await paymaster.sponsor(sample_user_op)

    @pytest.mark.asyncio
    async def test_outage_is_unreachable(self, paymaster, paymaster_rpc, sample_user_op):
        paymaster_rpc.on("pm_sponsorUserOperation", status_code=502)

        with pytest.raises(RelayUnreachable):
            await paymaster.sponsor(sample_user_op)

    @pytest.mark.asyncio
    async def test_invalid_payload(self, paymaster, paymaster_rpc, sample_user_op):
        paymaster_rpc.on("pm_sponsorUserOperation", {"paymasterAndData": "0x"})

        with pytest.raises(RelayRejected):
            await paymaster.sponsor(sample_user_op)

    def test_url_required(self, network, config):
        with pytest.raises(ConfigurationError):
            PaymasterClient(dataclasses.replace(network, paymaster_url=""), config=config)
