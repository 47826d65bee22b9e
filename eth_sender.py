"""
Ethereum (account/nonce) sender for native ETH and ERC-20 tokens.

Every transaction uses EIP-1559 dynamic fees. Native transfers carry a fixed
21000 gas limit; token transfers let the node estimate gas for the
`transfer(address,uint256)` call.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from send_common import (
    BACKGROUND,
    CallContext,
    GatewayError,
    InsufficientFundsError,
    Result,
    SenderConfig,
    SigningError,
    ValidationError,
    native_units,
    to_smallest_unit,
)

logger = logging.getLogger(__name__)

NATIVE_GAS_LIMIT = 21000
MIN_TIP_WEI = 1_000_000_000  # 1 gwei floor when the node suggests zero
RECEIPT_TIMEOUT = 120.0

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class Web3Gateway:
    """Thin facade over a web3 HTTP provider; library errors become GatewayError."""

    def __init__(self, url: str, timeout: float = 10.0, ctx: CallContext = BACKGROUND) -> None:
        self.ctx = ctx
        try:
            self.w3 = Web3(
                Web3.HTTPProvider(url, request_kwargs={"timeout": ctx.timeout(timeout)})
            )
        except (ValueError, Web3Exception) as exc:
            raise GatewayError(f"Cannot dial {url}: {exc}") from exc

    def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        if self.ctx.expired():
            raise GatewayError("context deadline exceeded")
        logger.debug("eth %s", what)
        try:
            return fn()
        except TimeExhausted as exc:
            raise GatewayError(f"{what} timed out: {exc}") from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise GatewayError(f"{what} failed: {exc}") from exc

    def chain_id(self) -> int:
        return int(self._call("chain_id", lambda: self.w3.eth.chain_id))

    def balance_at(self, address: str) -> int:
        return int(self._call("balance_at", lambda: self.w3.eth.get_balance(address)))

    def nonce_at(self, address: str) -> int:
        return int(self._call("nonce_at", lambda: self.w3.eth.get_transaction_count(address)))

    def suggest_fee_cap(self) -> int:
        return int(self._call("suggest_fee_cap", lambda: self.w3.eth.gas_price))

    def suggest_tip_cap(self) -> int:
        return int(self._call("suggest_tip_cap", lambda: self.w3.eth.max_priority_fee))

    def _token(self, contract_address: str):
        return self.w3.eth.contract(address=_checksum(contract_address, "contract"), abi=ERC20_ABI)

    def token_balance(self, contract_address: str, owner: str) -> int:
        token = self._token(contract_address)
        return int(self._call("balanceOf", lambda: token.functions.balanceOf(owner).call()))

    def token_decimals(self, contract_address: str) -> int:
        token = self._token(contract_address)
        return int(self._call("decimals", lambda: token.functions.decimals().call()))

    def build_token_transfer(
        self, contract_address: str, to: str, amount: int, tx_params: dict[str, Any]
    ) -> dict[str, Any]:
        token = self._token(contract_address)
        return self._call(
            "build transfer",
            lambda: token.functions.transfer(to, amount).build_transaction(tx_params),
        )

    def send_raw_transaction(self, raw: bytes) -> None:
        self._call("send_raw_transaction", lambda: self.w3.eth.send_raw_transaction(raw))

    def wait_mined(self, tx_hash: str, timeout: float) -> None:
        self._call(
            f"wait for {tx_hash}",
            lambda: self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
        )


GatewayFactory = Callable[[str, float, CallContext], Web3Gateway]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_account(private_key: str):
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as exc:
        raise SigningError(f"Invalid private key: {exc}") from exc


def _checksum(address: str, role: str = "destination") -> str:
    try:
        return Web3.to_checksum_address(address)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid {role} address {address!r}.") from exc


def boost_tip(tip: int, tip_boost: Decimal | None) -> int:
    if not tip_boost:
        return tip
    return tip + int(Decimal(tip) * tip_boost)


def _sign(account, tx: dict[str, Any]):
    try:
        return account.sign_transaction(tx)
    except (ValueError, TypeError) as exc:
        raise SigningError(f"Failed to sign transaction: {exc}") from exc


def _raw_hex(raw: bytes, tx_hash: str) -> str:
    try:
        return Web3.to_hex(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("tx marshal error for %s: %s", tx_hash, exc)
        return ""


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------


class EthereumSender:
    chain = "ethereum"

    def __init__(self, gateway_factory: GatewayFactory = Web3Gateway) -> None:
        self.gateway_factory = gateway_factory

    def send(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        to_address: str,
        amount: Decimal,
    ) -> Result:
        gateway = self.gateway_factory(cfg.gateway_url, cfg.request_timeout, ctx)
        account = _load_account(private_key)
        from_address = account.address
        to = _checksum(to_address)
        contract = _checksum(cfg.contract_address, "contract") if cfg.contract_address else None

        chain_id = gateway.chain_id()
        balance = gateway.balance_at(from_address)
        nonce = cfg.nonce if cfg.nonce is not None else gateway.nonce_at(from_address)
        fee_cap = gateway.suggest_fee_cap()
        tip = boost_tip(gateway.suggest_tip_cap(), cfg.tip_boost)

        if contract:
            signed = self._token_transfer(
                contract, gateway, account, to, amount, chain_id, nonce, tip, fee_cap
            )
        else:
            value = native_units("ethereum", amount)
            if balance <= value:
                raise InsufficientFundsError(
                    f"amount should be less than balance: {value} wei requested, "
                    f"{balance} wei available"
                )
            tx = {
                "type": 2,
                "chainId": chain_id,
                "nonce": nonce,
                "maxFeePerGas": max(fee_cap, tip),
                "maxPriorityFeePerGas": tip,
                "gas": NATIVE_GAS_LIMIT,
                "to": to,
                "value": value,
                "data": b"",
            }
            signed = _sign(account, tx)

        tx_hash = Web3.to_hex(signed.hash)
        gateway.send_raw_transaction(signed.raw_transaction)
        logger.info("broadcast ethereum tx %s nonce=%d", tx_hash, nonce)

        if cfg.await_confirmation:
            gateway.wait_mined(tx_hash, ctx.timeout(RECEIPT_TIMEOUT))

        return Result(
            tx_hash=tx_hash,
            nonce=nonce,
            balance=balance,
            data=_raw_hex(signed.raw_transaction, tx_hash),
        )

    def _token_transfer(
        self,
        contract: str,
        gateway: Web3Gateway,
        account,
        to: str,
        amount: Decimal,
        chain_id: int,
        nonce: int,
        tip: int,
        fee_cap: int,
    ):
        token_balance = gateway.token_balance(contract, account.address)
        decimals = gateway.token_decimals(contract)
        value = to_smallest_unit(amount, decimals)
        if token_balance < value:
            raise InsufficientFundsError(
                f"token balance {token_balance} is below requested {value} units"
            )

        if tip == 0:
            tip = MIN_TIP_WEI
        fee_cap = max(fee_cap * 2, tip)
        tx = gateway.build_token_transfer(
            contract,
            to,
            value,
            {
                "chainId": chain_id,
                "from": account.address,
                "nonce": nonce,
                "maxFeePerGas": fee_cap,
                "maxPriorityFeePerGas": tip,
            },
        )
        logger.debug("erc20 transfer nonce=%d feecap=%d tip=%d", nonce, fee_cap, tip)
        return _sign(account, tx)
