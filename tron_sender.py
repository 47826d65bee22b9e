"""
Tron sender for native TRX and TRC-20 tokens, built on tronpy.

tronpy reports node-side rejections by raising rather than returning a
failed result, so every client call goes through TronGateway._call, which
maps those exceptions onto the send_common taxonomy.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

import httpx
from tronpy import Tron
from tronpy.exceptions import (
    AddressNotFound,
    ApiError,
    BadAddress,
    BadSignature,
    TaposError,
    TransactionError,
    TransactionNotFound,
    TvmError,
    UnknownError,
)
from tronpy.exceptions import ValidationError as TronValidationError
from tronpy.keys import PrivateKey
from tronpy.providers import HTTPProvider

from send_common import (
    BACKGROUND,
    CallContext,
    GatewayError,
    Result,
    SenderConfig,
    SenderConfigError,
    SigningError,
    ValidationError,
    native_units,
    to_smallest_unit,
)

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT = 60.0

# Raised by the node when it refuses a transaction (CONTRACT_VALIDATE_ERROR,
# SIGERROR, TAPOS_ERROR, expiration, unknown codes).
_REJECTION_ERRORS = (TronValidationError, BadSignature, TaposError, TransactionError, UnknownError)
_ADDRESS_ERRORS = (BadAddress, AddressNotFound)
_GATEWAY_ERRORS = (ApiError, TvmError, TransactionNotFound, httpx.HTTPError)


def _broadcast_ok(ret: dict[str, Any]) -> bool:
    return ret.get("result") is True or ret.get("code") == "SUCCESS"


def strip_hash_prefix(tx_hash: str) -> str:
    return tx_hash[2:] if tx_hash.startswith("0x") else tx_hash


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TronGateway:
    """Facade over a tronpy client; address errors become ValidationError, the rest GatewayError."""

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 10.0,
        ctx: CallContext = BACKGROUND,
    ) -> None:
        self.ctx = ctx
        try:
            provider = HTTPProvider(endpoint_uri=url, timeout=ctx.timeout(timeout), api_key=api_key)
            self.client = Tron(provider=provider)
        except (ValueError, *_GATEWAY_ERRORS) as exc:
            raise GatewayError(f"Cannot connect to {url}: {exc}") from exc

    def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        if self.ctx.expired():
            raise GatewayError("context deadline exceeded")
        logger.debug("tron %s", what)
        try:
            return fn()
        except _ADDRESS_ERRORS as exc:
            raise ValidationError(f"{what} failed: invalid address: {exc}") from exc
        except _REJECTION_ERRORS as exc:
            raise GatewayError(f"{what} failed: {type(exc).__name__}: {exc}") from exc
        except _GATEWAY_ERRORS as exc:
            raise GatewayError(f"{what} failed: {exc}") from exc

    def transfer(self, from_address: str, to_address: str, amount_sun: int):
        return self._call(
            "transfer",
            lambda: self.client.trx.transfer(from_address, to_address, amount_sun).build(),
        )

    def token_decimals(self, contract_address: str) -> int:
        def _decimals() -> int:
            return int(self.client.get_contract(contract_address).functions.decimals())

        return self._call("decimals", _decimals)

    def token_transfer(
        self,
        contract_address: str,
        owner: str,
        to_address: str,
        value: int,
        fee_limit: int,
    ):
        def _build():
            contract = self.client.get_contract(contract_address)
            return (
                contract.functions.transfer(to_address, value)
                .with_owner(owner)
                .fee_limit(fee_limit)
                .build()
            )

        return self._call("token transfer", _build)

    def broadcast(self, signed_txn, kind: str = "trx") -> dict[str, Any]:
        """Submit a signed transaction; a node rejection is reported as "<kind> transaction failed"."""
        return self._call(f"{kind} transaction", signed_txn.broadcast)

    def wait(self, ret, timeout: float) -> None:
        self._call("wait", lambda: ret.wait(timeout=timeout))


GatewayFactory = Callable[[str, str, float, CallContext], TronGateway]


def _load_key(private_key: str) -> PrivateKey:
    try:
        raw = bytes.fromhex(strip_hash_prefix(private_key.strip()))
        return PrivateKey(raw)
    except ValueError as exc:
        raise SigningError(f"Invalid private key: {exc}") from exc


def _sign(txn, key: PrivateKey):
    try:
        return txn.sign(key)
    except (ValueError, TransactionError) as exc:
        raise SigningError(f"Failed to sign transaction: {exc}") from exc


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------


class TronSender:
    chain = "tron"

    def __init__(self, gateway_factory: GatewayFactory = TronGateway) -> None:
        self.gateway_factory = gateway_factory

    def send(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        to_address: str,
        amount: Decimal,
    ) -> Result:
        if not cfg.api_key:
            raise SenderConfigError("A gateway API key is required for tron sends.")

        gateway = self.gateway_factory(cfg.gateway_url, cfg.api_key, cfg.request_timeout, ctx)
        key = _load_key(private_key)
        from_address = key.public_key.to_base58check_address()

        if cfg.contract_address:
            decimals = gateway.token_decimals(cfg.contract_address)
            value = to_smallest_unit(amount, decimals)
            txn = gateway.token_transfer(
                cfg.contract_address, from_address, to_address, value, cfg.tron_fee_limit_sun
            )
            ret = gateway.broadcast(_sign(txn, key), kind="trc20")
            if not _broadcast_ok(ret):
                raise GatewayError(f"trc20 transaction failed: {ret}")
            tx_hash = strip_hash_prefix(str(ret.get("txid") or txn.txid))
        else:
            txn = gateway.transfer(from_address, to_address, native_units("tron", amount))
            # The id is fixed by the unsigned envelope.
            tx_hash = strip_hash_prefix(str(txn.txid))
            ret = gateway.broadcast(_sign(txn, key))
            if not _broadcast_ok(ret):
                raise GatewayError(f"trx transaction failed: {ret}")

        logger.info("broadcast tron tx %s from %s", tx_hash, from_address)

        if cfg.await_confirmation:
            gateway.wait(ret, ctx.timeout(RECEIPT_TIMEOUT))

        return Result(tx_hash=tx_hash)
