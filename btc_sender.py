"""
Bitcoin (UTXO) sender.

Spends one unspent output of the sender's native SegWit (P2WPKH) address to
one or more destinations. The change output always comes first; its value
is what remains of the input after the destinations, a fixed 50 sat margin,
and the size-based fee reported by the Electrum-style gateway.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Sequence

import requests
from bitcoin import SelectParams
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    CTxInWitness,
    Hash160,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_0,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinAddress, CBitcoinSecret

from send_common import (
    BACKGROUND,
    CallContext,
    GatewayError,
    InsufficientFundsError,
    Result,
    SenderConfig,
    SigningError,
    TransferRequest,
    UnspentOutput,
    ValidationError,
    native_units,
)

logger = logging.getLogger(__name__)

TX_VERSION = 2
# Default sequence minus two: final enough for relay, still enforces lock-time.
INPUT_SEQUENCE = 0xFFFFFFFF - 2
CHANGE_MARGIN_SATS = 50
JSONRPC_ID = "1101"

_PARAMS_LOCK = threading.Lock()


@dataclass(frozen=True)
class ChainInfo:
    height: int
    fee_per_kb: int


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class ElectrumGateway:
    """JSON-RPC client for an Electrum daemon (getaddressunspent/getinfo/broadcast)."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        ctx: CallContext = BACKGROUND,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.ctx = ctx

    def _call(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "method": method, "id": JSONRPC_ID, "params": params}
        logger.debug("electrum %s %s", method, self.url)
        try:
            resp = requests.post(
                self.url,
                json=body,
                headers={"Accept": "application/json"},
                timeout=self.ctx.timeout(self.timeout),
            )
        except requests.RequestException as exc:
            raise GatewayError(f"Gateway request {method} failed: {exc}") from exc
        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise GatewayError(f"Gateway request {method} failed: {error_msg}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayError(f"Gateway returned invalid JSON for {method}.") from exc
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected {method} response: {data!r}")
        if data.get("error"):
            raise GatewayError(f"Gateway error for {method}: {data['error']}")
        return data.get("result")

    def get_address_unspent(self, address: str) -> list[UnspentOutput]:
        result = self._call("getaddressunspent", [address]) or []
        return [
            UnspentOutput(
                tx_hash=str(u.get("tx_hash", "")),
                tx_pos=int(u.get("tx_pos", 0)),
                value=int(u.get("value", 0)),
                height=int(u.get("height", 0) or 0),
            )
            for u in result
        ]

    def get_chain_info(self) -> ChainInfo:
        result = self._call("getinfo", []) or {}
        return ChainInfo(
            height=int(result.get("blockchain_height", 0)),
            fee_per_kb=int(result.get("fee_per_kb", 0)),
        )

    def broadcast(self, raw_hex: str) -> str:
        txid = self._call("broadcast", [raw_hex])
        if not txid:
            raise GatewayError("Broadcast returned no transaction id.")
        return str(txid).strip()


GatewayFactory = Callable[[str, float, CallContext], ElectrumGateway]


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def select_unspent(unspents: Sequence[UnspentOutput], target_sats: int) -> UnspentOutput:
    """First output, in gateway order, whose value strictly exceeds the target."""
    for u in unspents:
        if u.value > target_sats:
            return u
    raise InsufficientFundsError(
        f"insufficient balance: no unspent output above {target_sats} sats"
    )


def compute_change(input_sats: int, total_sats: int, size: int, fee_per_kb: int) -> int:
    return input_sats - CHANGE_MARGIN_SATS - total_sats - (size * fee_per_kb // 1000)


def _p2wpkh_script(pubkey_hash: bytes) -> CScript:
    return CScript([OP_0, pubkey_hash])


def _load_secret(wif: str, network: str) -> CBitcoinSecret:
    SelectParams("mainnet" if network == "mainnet" else "testnet")
    try:
        privkey = CBitcoinSecret(wif)
    except Exception as exc:  # noqa: BLE001
        raise SigningError(f"Invalid WIF: {exc}") from exc
    if not privkey.pub.is_compressed:
        raise SigningError("P2WPKH spending requires a compressed-key WIF.")
    return privkey


def _destination_script(address: str) -> CScript:
    try:
        return CBitcoinAddress(address).to_scriptPubKey()
    except Exception as exc:  # noqa: BLE001
        raise ValidationError(f"Cannot decode destination {address!r}: {exc}") from exc


def build_spend_transaction(
    utxo: UnspentOutput,
    change_script: CScript,
    destinations: Sequence[tuple[CScript, int]],
    height: int,
    fee_per_kb: int,
) -> CMutableTransaction:
    """
    Assemble the unsigned spend: one input, change at index 0, then destinations.

    The change value is filled in last so the size used for the fee covers
    every output.
    """
    txin = CMutableTxIn(COutPoint(lx(utxo.tx_hash), utxo.tx_pos), nSequence=INPUT_SEQUENCE)
    # Placeholder; nValue serializes to a fixed 8 bytes.
    change_out = CMutableTxOut(utxo.value, change_script)
    txouts = [change_out]
    txouts.extend(CMutableTxOut(value, script) for script, value in destinations)

    tx = CMutableTransaction([txin], txouts, nLockTime=height, nVersion=TX_VERSION)

    total_sats = sum(value for _, value in destinations)
    size = len(tx.serialize())
    change_sats = compute_change(utxo.value, total_sats, size, fee_per_kb)
    if change_sats <= 0:
        raise InsufficientFundsError(
            f"insufficient balance: output {utxo.tx_hash}:{utxo.tx_pos} holds "
            f"{utxo.value} sats, not enough for {total_sats} sats plus fees"
        )
    tx.vout[0].nValue = change_sats
    return tx


def sign_p2wpkh_input(tx: CMutableTransaction, privkey: CBitcoinSecret, amount_sats: int) -> None:
    """Attach a BIP143 SIGHASH_ALL witness to input 0."""
    pubkey = privkey.pub
    # For P2WPKH, the scriptCode for signing is the P2PKH template.
    script_code = CScript([OP_DUP, OP_HASH160, Hash160(pubkey), OP_EQUALVERIFY, OP_CHECKSIG])
    try:
        sighash = SignatureHash(script_code, tx, 0, SIGHASH_ALL, amount=amount_sats, sigversion=1)
        sig = privkey.sign(sighash) + bytes([SIGHASH_ALL])
    except Exception as exc:  # noqa: BLE001
        raise SigningError(f"Failed to sign input: {exc}") from exc
    tx.wit.vtxinwit[0] = CTxInWitness(CScriptWitness([sig, pubkey]))


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------


class BitcoinSender:
    chain = "bitcoin"

    def __init__(self, gateway_factory: GatewayFactory = ElectrumGateway) -> None:
        self.gateway_factory = gateway_factory

    def send(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        to_address: str,
        amount: Decimal,
    ) -> Result:
        return self._send(cfg, ctx, private_key, [(to_address, native_units("bitcoin", amount))])

    def send_many(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        transfers: Sequence[TransferRequest],
    ) -> Result:
        destinations = [(t.address, native_units("bitcoin", t.amount)) for t in transfers]
        return self._send(cfg, ctx, private_key, destinations)

    def _send(
        self,
        cfg: SenderConfig,
        ctx: CallContext,
        private_key: str,
        destinations: list[tuple[str, int]],
    ) -> Result:
        # Key and address encoding read python-bitcoinlib's global chain params.
        with _PARAMS_LOCK:
            privkey = _load_secret(private_key, cfg.network)
            pubkey_hash = Hash160(privkey.pub)
            change_script = _p2wpkh_script(pubkey_hash)
            spend_address = str(CBitcoinAddress.from_scriptPubKey(change_script))

            outputs = []
            for address, value in destinations:
                if address == spend_address:
                    logger.warning("send to self: %s", address)
                outputs.append((_destination_script(address), value))
        total_sats = sum(value for _, value in outputs)

        gateway = self.gateway_factory(cfg.gateway_url, cfg.request_timeout, ctx)
        unspents = gateway.get_address_unspent(spend_address)
        utxo = select_unspent(unspents, total_sats)
        info = gateway.get_chain_info()

        tx = build_spend_transaction(utxo, change_script, outputs, info.height, info.fee_per_kb)
        sign_p2wpkh_input(tx, privkey, utxo.value)
        raw_hex = b2x(tx.serialize())

        txid = gateway.broadcast(raw_hex)
        logger.info(
            "broadcast bitcoin tx %s spending %s:%s to %d output(s)",
            txid,
            utxo.tx_hash,
            utxo.tx_pos,
            len(outputs),
        )
        # The first destination follows the change output.
        return Result(tx_hash=txid, tx_position=1, data=raw_hex)
