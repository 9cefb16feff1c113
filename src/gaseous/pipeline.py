"""
End-to-end gasless send: resolve → build → sponsor → sign → submit.

The owner only ever signs; the smart account pays nothing itself when a
paymaster sponsors the operation. Each sender has at most one operation
between build and confirmation; failures before the bundler accepts the
operation free the sender again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .config import GaslessConfig, NetworkConfig, get_config
from .errors import LedgerUnavailable, RelayRejected, ValidationError
from .erc4337.account import DEFAULT_SALT, AccountResolver, ResolvedAccount
from .erc4337.builder import GasHints, OperationBuilder
from .erc4337.bundler_client import BundlerClient
from .erc4337.paymaster_client import PaymasterClient
from .erc4337.signing import OperationSigner, SigningBinder, SigningMode
from .erc4337.user_operation import UserOperation, decode_call_targets, encode_execute
from .ledger import LedgerClient
from .sponsorship.engine import SponsorshipDecision, SponsorshipEngine, estimate_max_cost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmittedOperation:
    """An operation the bundler accepted."""
    user_op_hash: str
    user_op: UserOperation
    account: ResolvedAccount
    sponsored_wei: int = 0


class GaslessSender:
    """Sends calls from an owner's smart account without the owner paying gas.

    Args:
        resolver: Derives the account and its deployment status
        builder: Assembles operations and serializes nonces per sender
        binder: Attaches the owner's signature
        bundler: Relays signed operations
        paymaster: Optional remote paymaster filling ``paymasterAndData``
        engine: Optional local quota gate charged before relay
    """

    def __init__(
        self,
        resolver: AccountResolver,
        builder: OperationBuilder,
        binder: SigningBinder,
        bundler: BundlerClient,
        *,
        paymaster: Optional[PaymasterClient] = None,
        engine: Optional[SponsorshipEngine] = None,
    ):
        self._resolver = resolver
        self._builder = builder
        self._binder = binder
        self._bundler = bundler
        self._paymaster = paymaster
        self._engine = engine
        self._owned: list[Any] = []

    @classmethod
    def for_network(
        cls,
        network: Optional[str] = None,
        *,
        config: Optional[GaslessConfig] = None,
        engine: Optional[SponsorshipEngine] = None,
        signing_mode: SigningMode = SigningMode.USER_OP_HASH,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "GaslessSender":
        """Wire every component from configuration for ``network``."""
        config = config or get_config()
        net: NetworkConfig = config.get_network(network)
        ledger = LedgerClient(net, config=config, http_client=http_client)
        bundler = BundlerClient(net, config=config, http_client=http_client)
        paymaster = (
            PaymasterClient(net, config=config, http_client=http_client)
            if net.paymaster_url
            else None
        )
        sender = cls(
            AccountResolver(ledger, net),
            OperationBuilder(ledger, network=net, config=config),
            SigningBinder(net.entry_point, net.chain_id, signing_mode, network=net.name),
            bundler,
            paymaster=paymaster,
            engine=engine,
        )
        sender._owned = [c for c in (ledger, bundler, paymaster) if c is not None]
        return sender

    @property
    def builder(self) -> OperationBuilder:
        return self._builder

    async def send(
        self,
        signer: OperationSigner,
        target: str,
        value: int = 0,
        data: bytes = b"",
        *,
        salt: int = DEFAULT_SALT,
        gas_hints: Optional[GasHints] = None,
        sponsorship_policy_id: Optional[str] = None,
    ) -> SubmittedOperation:
        """Call ``target`` from the signer's smart account."""
        return await self.send_call_data(
            signer,
            encode_execute(target, value, data),
            salt=salt,
            gas_hints=gas_hints,
            sponsorship_policy_id=sponsorship_policy_id,
        )

    async def send_call_data(
        self,
        signer: OperationSigner,
        call_data: str,
        *,
        salt: int = DEFAULT_SALT,
        gas_hints: Optional[GasHints] = None,
        sponsorship_policy_id: Optional[str] = None,
    ) -> SubmittedOperation:
        account = await self._resolver.resolve(signer.address, salt)
        if not account.status_known:
            raise LedgerUnavailable("eth_getCode", f"deployment status of {account.address} unknown")

        user_op = await self._builder.build(
            account.address,
            call_data,
            init_code=account.init_code,
            gas_hints=gas_hints,
        )
        try:
            if self._paymaster is not None:
                user_op = await self._paymaster.sponsor(user_op, sponsorship_policy_id)
            signed = await self._binder.sign(user_op, signer)
            sponsored_wei = 0
            charge: Optional[SponsorshipDecision] = None
            if self._engine is not None:
                sponsored_wei = estimate_max_cost(signed)
                charge = self._engine.sponsor(
                    signed.sender, sponsored_wei, decode_call_targets(signed.call_data)
                )
            try:
                user_op_hash = await self._bundler.submit(signed, is_deployed=account.is_deployed)
            except (ValidationError, RelayRejected):
                # never relayed; an unreachable bundler may still include it, so no refund there
                if charge is not None:
                    self._engine.refund_sponsorship(signed.sender, sponsored_wei, charge.charged_at)
                raise
        except BaseException:
            await self._builder.release(account.address, confirmed=False)
            raise

        logger.info(f"Submitted {user_op_hash} for {account.address} (nonce {signed.nonce})")
        return SubmittedOperation(
            user_op_hash=user_op_hash,
            user_op=signed,
            account=account,
            sponsored_wei=sponsored_wei,
        )

    async def wait_for_confirmation(
        self,
        submitted: SubmittedOperation,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Wait for inclusion, then free the sender for its next operation.

        On timeout the sender stays reserved, since the bundler may still
        include the operation; call :meth:`abandon` to give it up.
        """
        receipt = await self._bundler.wait_for_receipt(submitted.user_op_hash, timeout_seconds)
        await self._builder.release(submitted.user_op.sender, confirmed=True)
        return receipt

    async def abandon(self, sender: str) -> None:
        await self._builder.release(sender, confirmed=False)

    async def close(self) -> None:
        for client in self._owned:
            await client.close()
        self._owned = []
