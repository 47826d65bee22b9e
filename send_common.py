"""
Shared types, configuration and pure helpers for the multi-chain sender.

Implements:
- error taxonomy used by every chain sender
- immutable sender configuration (with .env support)
- address prefix classification against the configured chain/network
- fixed-point conversion of decimal amounts to satoshi / wei / sun / token units
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_DOWN, Context, Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Literal, NamedTuple

from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

Chain = Literal["bitcoin", "ethereum", "tron"]
Network = Literal["mainnet", "testnet"]

CHAINS: tuple[str, ...] = ("bitcoin", "ethereum", "tron")
NETWORKS: tuple[str, ...] = ("mainnet", "testnet")

# Smallest-unit exponent per native coin.
CHAIN_DECIMALS = MappingProxyType({"bitcoin": 8, "ethereum": 18, "tron": 6})

DEFAULT_TIMEOUT = 10.0
DEFAULT_TRON_FEE_LIMIT_SUN = 30_000_000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CryptoSenderError(Exception):
    """Base class for every error raised by the sender."""


class ValidationError(CryptoSenderError):
    """Address/network mismatch, empty batch or malformed destination."""


class InsufficientFundsError(CryptoSenderError):
    """No qualifying UTXO, or native/token balance below the request."""


class ConversionError(CryptoSenderError):
    """A decimal amount could not be expressed in integer chain units."""


class GatewayError(CryptoSenderError):
    """RPC, connection or broadcast failure reported by a chain gateway."""


class SigningError(CryptoSenderError):
    """Private key import or signature computation failed."""


class SenderConfigError(CryptoSenderError):
    """Environment configuration is missing or unusable."""


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallContext:
    """
    Per-call deadline threaded through every gateway request.

    `deadline` is a time.monotonic() timestamp; None means each request only
    uses the configured request timeout.
    """

    deadline: float | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> CallContext:
        return cls(deadline=time.monotonic() + seconds)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def timeout(self, default: float) -> float:
        """Timeout for the next gateway request, bounded by the deadline."""
        if self.deadline is None:
            return default
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise GatewayError("context deadline exceeded")
        return min(default, remaining)


BACKGROUND = CallContext()


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SenderConfig:
    """
    Configuration for one sender.

    Values never change in place; use the with_* methods to derive a new
    configuration between calls.
    """

    chain: Chain
    network: Network
    gateway_url: str
    contract_address: str | None = None
    api_key: str | None = None
    nonce: int | None = None
    tip_boost: Decimal | None = None
    await_confirmation: bool = False
    balance: Decimal | None = None
    last_hash: str | None = None
    tx_position: int | None = None
    tron_fee_limit_sun: int = DEFAULT_TRON_FEE_LIMIT_SUN
    request_timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        if self.chain not in CHAINS:
            raise ValidationError(f"Unsupported chain {self.chain!r}.")
        if self.network not in NETWORKS:
            raise ValidationError(f"Unsupported network {self.network!r}.")

    def with_api_key(self, api_key: str) -> SenderConfig:
        return replace(self, api_key=api_key)

    def with_nonce(self, nonce: int | None) -> SenderConfig:
        return replace(self, nonce=nonce)

    def with_balance(self, balance: Decimal | None) -> SenderConfig:
        return replace(self, balance=balance)

    def with_last_hash(self, last_hash: str | None) -> SenderConfig:
        return replace(self, last_hash=last_hash)

    def with_tx_position(self, position: int | None) -> SenderConfig:
        return replace(self, tx_position=position)

    def with_tip_boost(self, tip_boost: Decimal | float | str | None) -> SenderConfig:
        boost = None if tip_boost is None else to_decimal(tip_boost)
        return replace(self, tip_boost=boost)

    def with_await_confirmation(self, wait: bool = True) -> SenderConfig:
        return replace(self, await_confirmation=wait)

    def with_contract_address(self, contract_address: str | None) -> SenderConfig:
        return replace(self, contract_address=contract_address or None)

    @classmethod
    def from_env(cls) -> SenderConfig:
        """
        Build a SenderConfig from environment variables or a .env file.

        - CRYPTO_SENDER_CHAIN: bitcoin, ethereum or tron (required).
        - CRYPTO_SENDER_NETWORK: mainnet or testnet (defaults to testnet).
        - CRYPTO_SENDER_GATEWAY_URL: node/gateway endpoint (required).
        - CRYPTO_SENDER_CONTRACT_ADDRESS: token contract for ERC-20/TRC-20 sends.
        - CRYPTO_SENDER_API_KEY: gateway API key (required for tron).
        - CRYPTO_SENDER_NONCE: optional starting nonce override.
        - CRYPTO_SENDER_TIP_BOOST: optional fraction added to the suggested tip.
        - CRYPTO_SENDER_AWAIT_CONFIRMATION: wait for inclusion before returning.
        - CRYPTO_SENDER_TRON_FEE_LIMIT_SUN: fee limit for TRC-20 transfers.
        - CRYPTO_SENDER_TIMEOUT: per-request timeout in seconds.
        """
        raw_chain = (os.getenv("CRYPTO_SENDER_CHAIN") or "").strip().lower()
        if raw_chain not in CHAINS:
            raise SenderConfigError(
                f"Invalid CRYPTO_SENDER_CHAIN={raw_chain!r}. "
                f"Expected one of: {', '.join(CHAINS)}."
            )

        raw_network = os.getenv("CRYPTO_SENDER_NETWORK", "testnet").strip().lower()
        if raw_network not in NETWORKS:
            raise SenderConfigError(
                f"Invalid CRYPTO_SENDER_NETWORK={raw_network!r}. "
                "Expected 'mainnet' or 'testnet'."
            )

        gateway_url = (os.getenv("CRYPTO_SENDER_GATEWAY_URL") or "").strip()
        if not gateway_url:
            raise SenderConfigError(
                "CRYPTO_SENDER_GATEWAY_URL is required. "
                "Set it in your environment or .env file."
            )

        nonce_raw = os.getenv("CRYPTO_SENDER_NONCE")
        tip_boost_raw = os.getenv("CRYPTO_SENDER_TIP_BOOST")
        fee_limit_raw = os.getenv("CRYPTO_SENDER_TRON_FEE_LIMIT_SUN")
        timeout_raw = os.getenv("CRYPTO_SENDER_TIMEOUT")
        try:
            nonce = int(nonce_raw) if nonce_raw else None
            tip_boost = Decimal(tip_boost_raw) if tip_boost_raw else None
            fee_limit = int(fee_limit_raw) if fee_limit_raw else DEFAULT_TRON_FEE_LIMIT_SUN
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT
        except (ValueError, InvalidOperation) as exc:
            raise SenderConfigError(f"Invalid numeric setting: {exc}") from exc

        await_env = os.getenv("CRYPTO_SENDER_AWAIT_CONFIRMATION", "false").lower()
        await_confirmation = await_env in ("true", "1", "yes", "on")

        return cls(
            chain=raw_chain,  # type: ignore[arg-type]
            network=raw_network,  # type: ignore[arg-type]
            gateway_url=gateway_url,
            contract_address=os.getenv("CRYPTO_SENDER_CONTRACT_ADDRESS") or None,
            api_key=os.getenv("CRYPTO_SENDER_API_KEY") or None,
            nonce=nonce,
            tip_boost=tip_boost,
            await_confirmation=await_confirmation,
            tron_fee_limit_sun=fee_limit,
            request_timeout=timeout,
        )


@dataclass(frozen=True)
class TransferRequest:
    address: str
    amount: Decimal
    terminate_on_fail: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))


@dataclass(frozen=True)
class UnspentOutput:
    """One spendable output as reported by an Electrum-style gateway."""

    tx_hash: str
    tx_pos: int
    value: int
    height: int = 0


@dataclass
class Result:
    tx_hash: str
    tx_position: int = 0
    nonce: int | None = None
    balance: int | None = None
    data: str = ""


@dataclass
class BatchItemResult:
    address: str
    amount: Decimal
    tx_hash: str = ""
    tx_position: int = 0
    nonce: int | None = None
    data: str = ""
    error: Exception | None = None


@dataclass
class BatchResult:
    success: list[BatchItemResult] = field(default_factory=list)
    failed: list[BatchItemResult] = field(default_factory=list)
    # Set when the batch stopped before every request was attempted.
    error: Exception | None = None

    @property
    def terminated(self) -> bool:
        return self.error is not None


# ---------------------------------------------------------------------------
# Address / network classification
# ---------------------------------------------------------------------------


class AddressLabel(NamedTuple):
    chain: str
    network: str | None


# Only bitcoin encodes the network in its address format.
ADDRESS_PREFIXES = MappingProxyType(
    {
        "T": AddressLabel("tron", None),
        "0x": AddressLabel("ethereum", None),
        "1": AddressLabel("bitcoin", "mainnet"),
        "3": AddressLabel("bitcoin", "mainnet"),
        "bc1": AddressLabel("bitcoin", "mainnet"),
        "2": AddressLabel("bitcoin", "testnet"),
        "m": AddressLabel("bitcoin", "testnet"),
        "n": AddressLabel("bitcoin", "testnet"),
        "tb1": AddressLabel("bitcoin", "testnet"),
    }
)
_PREFIXES_LONGEST_FIRST = tuple(sorted(ADDRESS_PREFIXES, key=len, reverse=True))


def classify_address(address: str) -> AddressLabel | None:
    """Return the (chain, network) label implied by the address prefix."""
    for prefix in _PREFIXES_LONGEST_FIRST:
        if address.startswith(prefix):
            return ADDRESS_PREFIXES[prefix]
    return None


def expected_label(cfg: SenderConfig) -> AddressLabel:
    network = cfg.network if cfg.chain == "bitcoin" else None
    return AddressLabel(cfg.chain, network)


def check_address_network(cfg: SenderConfig, address: str) -> AddressLabel:
    label = classify_address(address)
    if label is None or label != expected_label(cfg):
        raise ValidationError(f"invalid network or address: {address!r}")
    return label


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------

# Wide enough for any uint256 value at 18+ decimals.
_UNIT_CONTEXT = Context(prec=100)


def to_decimal(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        # str() keeps the shortest repr, avoiding binary expansion noise.
        amount = str(amount)
    try:
        return Decimal(amount)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConversionError(f"Invalid amount {amount!r}.") from exc


def to_smallest_unit(amount: Decimal | float | int | str, decimals: int) -> int:
    """
    Convert a decimal amount to integer chain units, truncating toward zero.

    to_smallest_unit(Decimal("1.5"), 18) == 1500000000000000000
    """
    value = to_decimal(amount)
    if not value.is_finite():
        raise ConversionError(f"Amount {amount!r} is not a finite number.")
    if value < 0:
        raise ConversionError(f"Amount {amount!r} must not be negative.")
    if decimals < 0:
        raise ConversionError(f"Invalid decimals {decimals}.")
    try:
        scaled = value.scaleb(decimals, context=_UNIT_CONTEXT)
        units = scaled.quantize(Decimal(1), rounding=ROUND_DOWN, context=_UNIT_CONTEXT)
    except InvalidOperation as exc:
        raise ConversionError(f"Cannot convert {amount!r} at {decimals} decimals.") from exc
    return int(units)


def from_smallest_unit(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals, context=_UNIT_CONTEXT)


def native_units(chain: str, amount: Decimal | float | int | str) -> int:
    return to_smallest_unit(amount, CHAIN_DECIMALS[chain])
