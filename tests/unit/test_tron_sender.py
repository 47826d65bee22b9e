import sys
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from tronpy import Tron  # noqa: E402
from tronpy.exceptions import AddressNotFound  # noqa: E402
from tronpy.keys import PrivateKey  # noqa: E402
from tronpy.providers import HTTPProvider  # noqa: E402

from crypto_sender import CryptoSender  # noqa: E402
from send_common import (  # noqa: E402
    BACKGROUND,
    GatewayError,
    SenderConfig,
    SenderConfigError,
    SigningError,
    TransferRequest,
    ValidationError,
)
from tron_sender import TronGateway, TronSender, strip_hash_prefix  # noqa: E402

PRIVATE_KEY = "11" * 32
FROM_ADDRESS = PrivateKey(bytes.fromhex(PRIVATE_KEY)).public_key.to_base58check_address()
TO_ADDRESS = "TJRabPrwbZy45sbavfcjinPJC18kjpRTv8"
TOKEN = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeTxn:
    def __init__(self, txid):
        self.txid = txid
        self.signed_with = None

    def sign(self, key):
        self.signed_with = key
        return self


class FakeTronGateway:
    def __init__(self, ret=None, decimals=6, token_txid="0x" + "ab" * 32):
        self.ret = dict(ret if ret is not None else {"result": True, "txid": "cd" * 32})
        self.decimals = decimals
        self.token_txid = token_txid
        self.transfers = []
        self.token_transfers = []
        self.broadcasted = []
        self.waited = []

    def transfer(self, from_address, to_address, amount_sun):
        self.transfers.append((from_address, to_address, amount_sun))
        return FakeTxn("cd" * 32)

    def token_decimals(self, contract):
        return self.decimals

    def token_transfer(self, contract, owner, to_address, value, fee_limit):
        self.token_transfers.append((contract, owner, to_address, value, fee_limit))
        return FakeTxn("ab" * 32)

    def broadcast(self, signed, kind="trx"):
        self.broadcasted.append(signed)
        if "txid" in self.ret and self.token_transfers:
            return {**self.ret, "txid": self.token_txid}
        return self.ret

    def wait(self, ret, timeout):
        self.waited.append(ret)


def _sender(fake, seen=None):
    def factory(url, api_key, timeout, ctx):
        if seen is not None:
            seen.update(url=url, api_key=api_key)
        return fake

    return TronSender(gateway_factory=factory)


def _cfg(**kwargs):
    cfg = SenderConfig(chain="tron", network="mainnet", gateway_url="https://api.trongrid.io")
    cfg = cfg.with_api_key("test-api-key")
    for name, value in kwargs.items():
        cfg = getattr(cfg, f"with_{name}")(value)
    return cfg


# ---------------------------------------------------------------------------
# Native TRX
# ---------------------------------------------------------------------------


def test_native_send_converts_to_sun_and_uses_envelope_txid():
    fake = FakeTronGateway()
    seen = {}
    result = _sender(fake, seen).send(_cfg(), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1.25"))

    assert seen == {"url": "https://api.trongrid.io", "api_key": "test-api-key"}
    assert fake.transfers == [(FROM_ADDRESS, TO_ADDRESS, 1_250_000)]
    assert fake.broadcasted[0].signed_with is not None
    assert result.tx_hash == "cd" * 32
    assert fake.waited == []


def test_native_send_failed_broadcast():
    # A result without an error code passes through tronpy unraised.
    fake = FakeTronGateway(ret={"result": False})
    with pytest.raises(GatewayError, match="transaction failed"):
        _sender(fake).send(_cfg(), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1"))


def test_success_code_counts_as_success():
    fake = FakeTronGateway(ret={"code": "SUCCESS"})
    result = _sender(fake).send(_cfg(), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1"))
    assert result.tx_hash == "cd" * 32


def test_await_confirmation_waits():
    fake = FakeTronGateway()
    _sender(fake).send(_cfg(await_confirmation=True), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1"))
    assert len(fake.waited) == 1


def test_api_key_is_required():
    fake = FakeTronGateway()
    cfg = SenderConfig(chain="tron", network="mainnet", gateway_url="https://api.trongrid.io")
    seen = {}
    with pytest.raises(SenderConfigError, match="API key"):
        _sender(fake, seen).send(cfg, BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1"))
    assert seen == {}


def test_invalid_private_key():
    fake = FakeTronGateway()
    with pytest.raises(SigningError):
        _sender(fake).send(_cfg(), BACKGROUND, "zz" * 32, TO_ADDRESS, Decimal("1"))
    assert fake.transfers == []


# ---------------------------------------------------------------------------
# TRC-20
# ---------------------------------------------------------------------------


def test_token_send_uses_contract_decimals_and_strips_prefix():
    fake = FakeTronGateway(decimals=18)
    result = _sender(fake).send(
        _cfg(contract_address=TOKEN), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("0.5")
    )

    contract, owner, to_address, value, fee_limit = fake.token_transfers[0]
    assert contract == TOKEN
    assert owner == FROM_ADDRESS
    assert to_address == TO_ADDRESS
    assert value == 500_000_000_000_000_000
    assert fee_limit == 30_000_000
    assert fake.transfers == []
    assert result.tx_hash == "ab" * 32


def test_token_send_failed_broadcast():
    fake = FakeTronGateway(ret={"result": False})
    with pytest.raises(GatewayError):
        _sender(fake).send(_cfg(contract_address=TOKEN), BACKGROUND, PRIVATE_KEY, TO_ADDRESS, Decimal("1"))


def test_strip_hash_prefix():
    assert strip_hash_prefix("0xabc") == "abc"
    assert strip_hash_prefix("abc") == "abc"


# ---------------------------------------------------------------------------
# TronGateway error mapping
# ---------------------------------------------------------------------------


NODE = Tron(provider=HTTPProvider("http://tron.local", api_key="test-api-key"))


def _node_rejection(code, message="balance is not sufficient"):
    """A broadcast that fails the way tronpy reports node errors."""

    def broadcast():
        NODE._handle_api_error({"code": code, "message": message.encode().hex()})
        return {"result": True}

    return broadcast


class RejectedTxn:
    def __init__(self, code):
        self.txid = "ef" * 32
        self.broadcast = _node_rejection(code)

    def sign(self, key):
        return self


class _Builder:
    def __init__(self, txn):
        self.txn = txn

    def build(self):
        return self.txn


class _Trx:
    def __init__(self, code):
        self.code = code
        self.transfers = []

    def transfer(self, from_address, to_address, amount):
        self.transfers.append(to_address)
        return _Builder(RejectedTxn(self.code))


class RejectingClient:
    def __init__(self, code="CONTRACT_VALIDATE_ERROR"):
        self.trx = _Trx(code)

    def get_contract(self, address):
        raise AddressNotFound("contract address not found")


def _gateway(client=None):
    gateway = TronGateway("http://tron.local", "test-api-key", timeout=5.0)
    if client is not None:
        gateway.client = client
    return gateway


@pytest.mark.parametrize(
    "code",
    ["CONTRACT_VALIDATE_ERROR", "SIGERROR", "TAPOS_ERROR", "TRANSACTION_EXPIRATION_ERROR", "OTHER_ERROR"],
)
def test_gateway_maps_node_rejections(code):
    with pytest.raises(GatewayError, match="trx transaction failed"):
        _gateway().broadcast(RejectedTxn(code))


def test_gateway_labels_token_rejections():
    with pytest.raises(GatewayError, match="trc20 transaction failed"):
        _gateway().broadcast(RejectedTxn("CONTRACT_VALIDATE_ERROR"), kind="trc20")


def test_gateway_bad_recipient_is_validation_error():
    with pytest.raises(ValidationError, match="invalid address"):
        _gateway().transfer(FROM_ADDRESS, "not-a-tron-address", 1_000_000)


def test_gateway_unknown_contract_is_validation_error():
    with pytest.raises(ValidationError):
        _gateway(RejectingClient()).token_decimals(TOKEN)


def test_rejected_sends_are_recorded_and_batch_continues():
    client = RejectingClient()
    gateway = _gateway(client)
    sender = CryptoSender(
        "tron",
        "mainnet",
        "http://tron.local",
        senders={"tron": TronSender(gateway_factory=lambda url, api_key, timeout, ctx: gateway)},
    ).with_api_key("test-api-key")
    transfers = [
        TransferRequest(TO_ADDRESS, Decimal("1")),
        TransferRequest(TOKEN, Decimal("2")),
    ]

    batch = sender.send_to_many(PRIVATE_KEY, transfers)

    assert batch.success == []
    assert [i.address for i in batch.failed] == [TO_ADDRESS, TOKEN]
    assert all(isinstance(i.error, GatewayError) for i in batch.failed)
    assert "balance is not sufficient" in str(batch.failed[0].error)
    assert client.trx.transfers == [TO_ADDRESS, TOKEN]
    assert batch.error is None
