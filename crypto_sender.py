"""
Chain-agnostic entry point: validate, route, execute, normalize.

    sender = (
        CryptoSender("ethereum", "mainnet", "https://rpc.example")
        .with_contract_address("0xdAC17F958D2ee523a2206206994597C13D831ec7")
        .with_await_confirmation()
    )
    result = sender.send(private_key, "0xabc...", Decimal("12.5"))
"""

from __future__ import annotations

import logging
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Protocol, Sequence

from btc_sender import BitcoinSender
from eth_sender import EthereumSender
from send_common import (
    BACKGROUND,
    BatchItemResult,
    BatchResult,
    CallContext,
    CryptoSenderError,
    GatewayError,
    Result,
    SenderConfig,
    TransferRequest,
    ValidationError,
    check_address_network,
    to_decimal,
)
from tron_sender import TronSender

logger = logging.getLogger(__name__)


class ChainSender(Protocol):
    chain: str

    def send(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        to_address: str,
        amount: Decimal,
    ) -> Result: ...


# One shared multi-output transaction funds a whole batch on these chains.
UTXO_CHAINS = frozenset({"bitcoin"})

DEFAULT_SENDERS = MappingProxyType(
    {
        "bitcoin": BitcoinSender(),
        "ethereum": EthereumSender(),
        "tron": TronSender(),
    }
)


class CryptoSender:
    """Sends value on the configured chain; reconfigure with the with_* methods."""

    def __init__(
        self,
        chain: str,
        network: str,
        gateway_url: str,
        *,
        config: SenderConfig | None = None,
        senders: Mapping[str, ChainSender] | None = None,
    ) -> None:
        self.config = config or SenderConfig(chain=chain, network=network, gateway_url=gateway_url)  # type: ignore[arg-type]
        self._senders = senders if senders is not None else DEFAULT_SENDERS
        try:
            self._sender: ChainSender = self._senders[self.config.chain]
        except KeyError as exc:
            raise ValidationError(f"No sender registered for chain {self.config.chain!r}.") from exc

    @classmethod
    def from_config(
        cls, config: SenderConfig, senders: Mapping[str, ChainSender] | None = None
    ) -> CryptoSender:
        return cls(config.chain, config.network, config.gateway_url, config=config, senders=senders)

    def _derive(self, config: SenderConfig) -> CryptoSender:
        return CryptoSender.from_config(config, self._senders)

    # -- configuration ------------------------------------------------------

    def with_api_key(self, api_key: str) -> CryptoSender:
        return self._derive(self.config.with_api_key(api_key))

    def with_nonce(self, nonce: int | None) -> CryptoSender:
        return self._derive(self.config.with_nonce(nonce))

    def with_balance(self, balance: Decimal | None) -> CryptoSender:
        return self._derive(self.config.with_balance(balance))

    def with_last_hash(self, last_hash: str | None) -> CryptoSender:
        return self._derive(self.config.with_last_hash(last_hash))

    def with_tx_position(self, position: int | None) -> CryptoSender:
        return self._derive(self.config.with_tx_position(position))

    def with_tip_boost(self, tip_boost: Decimal | float | str | None) -> CryptoSender:
        return self._derive(self.config.with_tip_boost(tip_boost))

    def with_await_confirmation(self, wait: bool = True) -> CryptoSender:
        return self._derive(self.config.with_await_confirmation(wait))

    def with_contract_address(self, contract_address: str | None) -> CryptoSender:
        return self._derive(self.config.with_contract_address(contract_address))

    # -- operations ---------------------------------------------------------

    def send(
        self,
        private_key: str,
        to_address: str,
        amount: Decimal | float | str,
        ctx: CallContext = BACKGROUND,
    ) -> Result:
        """Send `amount` (in whole coins/tokens) to one address."""
        check_address_network(self.config, to_address)
        return self._sender.send(self.config, ctx, private_key, to_address, to_decimal(amount))

    def send_to_many(
        self,
        private_key: str,
        transfers: Sequence[TransferRequest],
        ctx: CallContext = BACKGROUND,
    ) -> BatchResult:
        """
        Pay several recipients.

        UTXO chains fund every recipient from one transaction, so any error
        fails the whole batch. Account chains submit one transaction per
        recipient in order, chaining nonces; failures are collected unless a
        request sets terminate_on_fail, in which case the partial result is
        returned with `error` set.
        """
        if len(transfers) < 1:
            raise ValidationError("invalid transfers length: at least one recipient is required")
        check_address_network(self.config, transfers[0].address)

        if self.config.chain in UTXO_CHAINS:
            return self._send_to_many_utxo(private_key, transfers, ctx)
        return self._send_to_many_sequential(private_key, transfers, ctx)

    def _send_to_many_utxo(
        self,
        private_key: str,
        transfers: Sequence[TransferRequest],
        ctx: CallContext,
    ) -> BatchResult:
        for t in transfers:
            try:
                check_address_network(self.config, t.address)
            except ValidationError as exc:
                raise ValidationError(f"invalid address found: {t.address}") from exc

        result = self._sender.send_many(self.config, ctx, private_key, transfers)  # type: ignore[attr-defined]
        return BatchResult(
            success=[
                BatchItemResult(
                    address=t.address,
                    amount=t.amount,
                    tx_hash=result.tx_hash,
                    tx_position=n + 1,
                    data=result.data,
                )
                for n, t in enumerate(transfers)
            ]
        )

    def _send_to_many_sequential(
        self,
        private_key: str,
        transfers: Sequence[TransferRequest],
        ctx: CallContext,
    ) -> BatchResult:
        batch = BatchResult()
        nonce = self.config.nonce
        for t in transfers:
            if ctx.expired():
                batch.error = GatewayError("context deadline exceeded")
                logger.warning(
                    "batch stopped by deadline after %d of %d transfers",
                    len(batch.success) + len(batch.failed),
                    len(transfers),
                )
                return batch

            cfg = self.config.with_nonce(nonce)
            try:
                check_address_network(cfg, t.address)
                result = self._sender.send(cfg, ctx, private_key, t.address, t.amount)
            except CryptoSenderError as exc:
                logger.warning("transfer to %s failed: %s", t.address, exc)
                batch.failed.append(BatchItemResult(address=t.address, amount=t.amount, error=exc))
                if t.terminate_on_fail:
                    batch.error = exc
                    return batch
                continue

            batch.success.append(
                BatchItemResult(
                    address=t.address,
                    amount=t.amount,
                    tx_hash=result.tx_hash,
                    nonce=result.nonce,
                    data=result.data,
                )
            )
            if result.nonce is not None:
                nonce = result.nonce + 1
        return batch
