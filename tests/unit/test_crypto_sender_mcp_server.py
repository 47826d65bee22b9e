import asyncio
import json
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import crypto_sender  # noqa: E402
import crypto_sender_mcp_server as server  # noqa: E402
from send_common import GatewayError, Result  # noqa: E402

ETH_A = "0x52908400098527886E0F7030069857D2E4169EE7"
ETH_B = "0x8617E340B3D01FA5F11F306F4090FD50E238070D"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingSender:
    chain = "ethereum"

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    def send(self, cfg, ctx, private_key, to_address, amount):
        self.calls.append(
            {
                "private_key": private_key,
                "to": to_address,
                "amount": amount,
                "nonce": cfg.nonce,
                "contract": cfg.contract_address,
                "await": cfg.await_confirmation,
            }
        )
        if to_address in self.fail_for:
            raise GatewayError("nonce too low")
        nonce = cfg.nonce if cfg.nonce is not None else 3
        return Result(tx_hash="0x" + "ab" * 32, nonce=nonce, data="0x02f8")


@pytest.fixture
def fake_sender(monkeypatch):
    fake = RecordingSender()
    monkeypatch.setattr(crypto_sender, "DEFAULT_SENDERS", {"ethereum": fake})
    monkeypatch.setenv("CRYPTO_SENDER_CHAIN", "ethereum")
    monkeypatch.setenv("CRYPTO_SENDER_NETWORK", "mainnet")
    monkeypatch.setenv("CRYPTO_SENDER_GATEWAY_URL", "http://geth")
    monkeypatch.setenv("CRYPTO_SENDER_PRIVATE_KEY", "0x" + "11" * 32)
    return fake


def _parse(response):
    return json.loads(response[0].text)


def _call(name, arguments):
    return _parse(asyncio.run(server.call_tool(name, arguments)))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def test_list_tools():
    tools = asyncio.run(server.list_tools())
    names = {tool.name for tool in tools}
    assert names == {"crypto_send", "crypto_send_to_many"}


def test_send_success(fake_sender):
    data = _call(
        "crypto_send",
        {"to_address": ETH_A, "amount": "0.25", "nonce": 12, "await_confirmation": True},
    )

    assert data["success"] is True
    assert data["chain"] == "ethereum"
    assert data["tx_hash"] == "0x" + "ab" * 32
    assert data["nonce"] == 12
    call = fake_sender.calls[0]
    assert call["to"] == ETH_A
    assert str(call["amount"]) == "0.25"
    assert call["await"] is True


def test_send_passes_contract_address(fake_sender):
    token = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    _call("crypto_send", {"to_address": ETH_A, "amount": "1", "contract_address": token})
    assert fake_sender.calls[0]["contract"] == token


def test_send_missing_to_address(fake_sender):
    data = _call("crypto_send", {"amount": "1"})
    assert data["success"] is False
    assert "to_address" in data["error"]
    assert fake_sender.calls == []


def test_send_rejects_non_positive_amount(fake_sender):
    data = _call("crypto_send", {"to_address": ETH_A, "amount": "0"})
    assert data["success"] is False
    assert fake_sender.calls == []


def test_send_without_private_key(fake_sender, monkeypatch):
    monkeypatch.delenv("CRYPTO_SENDER_PRIVATE_KEY")
    data = _call("crypto_send", {"to_address": ETH_A, "amount": "1"})
    assert data["success"] is False
    assert "CRYPTO_SENDER_PRIVATE_KEY" in data["error"]


def test_send_reports_wrong_network_address(fake_sender):
    data = _call("crypto_send", {"to_address": "TJRabPrwbZy45sbavfcjinPJC18kjpRTv8", "amount": "1"})
    assert data["success"] is False
    assert "invalid network or address" in data["error"]


def test_send_to_many_payload(fake_sender):
    fake_sender.fail_for.add(ETH_B)
    data = _call(
        "crypto_send_to_many",
        {
            "transfers": [
                {"address": ETH_A, "amount": "1"},
                {"address": ETH_B, "amount": "2", "terminate_on_fail": True},
                {"address": ETH_A, "amount": "3"},
            ]
        },
    )

    assert data["success"] is True
    assert data["terminated"] is True
    assert data["error"] == "nonce too low"
    assert data["succeeded"] == [
        {"address": ETH_A, "amount": "1", "tx_hash": "0x" + "ab" * 32, "tx_position": 0, "nonce": 3}
    ]
    assert data["failed"] == [{"address": ETH_B, "amount": "2", "error": "nonce too low"}]
    assert len(fake_sender.calls) == 2


def test_send_to_many_requires_list(fake_sender):
    data = _call("crypto_send_to_many", {"transfers": "nope"})
    assert data["success"] is False


def test_unknown_tool():
    data = _call("crypto_bogus", {})
    assert data["success"] is False
    assert "Unknown tool" in data["error"]
