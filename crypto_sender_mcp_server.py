#!/usr/bin/env python3
"""
MCP server for multi-chain transfers.

Wraps crypto_sender.CryptoSender as MCP tools. Chain, network and gateway come
from the CRYPTO_SENDER_* environment; the signing key is read from
CRYPTO_SENDER_PRIVATE_KEY on every call and never returned.
"""

from __future__ import annotations

import asyncio
import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from crypto_sender import CryptoSender
from send_common import (
    BatchItemResult,
    CallContext,
    SenderConfig,
    SenderConfigError,
    TransferRequest,
)

REPO_ROOT = Path(__file__).resolve().parent
load_dotenv(REPO_ROOT / ".env")

app = Server("crypto_sender")


def _error_response(message: str) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": False, "error": message}))]


def _ok(payload: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps({"success": True, **payload}))]


def _parse_decimal(value: Any, field_name: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"Invalid {field_name}. Must be a number.") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise ValueError(f"Invalid {field_name}. Must be greater than zero.")
    return parsed


def _private_key() -> str:
    key = os.getenv("CRYPTO_SENDER_PRIVATE_KEY")
    if not key:
        raise SenderConfigError(
            "CRYPTO_SENDER_PRIVATE_KEY is not set. "
            "Set it in your environment or .env file."
        )
    return key


def _build_sender(arguments: dict[str, Any]) -> CryptoSender:
    cfg = SenderConfig.from_env()
    contract = arguments.get("contract_address")
    if contract:
        cfg = cfg.with_contract_address(str(contract).strip())
    nonce = arguments.get("nonce")
    if nonce is not None:
        cfg = cfg.with_nonce(int(nonce))
    if arguments.get("await_confirmation") is not None:
        cfg = cfg.with_await_confirmation(bool(arguments["await_confirmation"]))
    return CryptoSender.from_config(cfg)


def _context(arguments: dict[str, Any]) -> CallContext:
    timeout = arguments.get("timeout_seconds")
    if timeout is None:
        return CallContext()
    return CallContext.with_timeout(float(timeout))


def _item_json(item: BatchItemResult) -> dict[str, Any]:
    out: dict[str, Any] = {"address": item.address, "amount": str(item.amount)}
    if item.error is not None:
        out["error"] = str(item.error)
        return out
    out.update(
        {
            "tx_hash": item.tx_hash,
            "tx_position": item.tx_position,
            "nonce": item.nonce,
        }
    )
    return out


_SENDER_OPTIONS = {
    "contract_address": {
        "type": "string",
        "description": "Token contract (ERC-20 / TRC-20); omit for native coin",
    },
    "nonce": {"type": "integer", "description": "Optional starting nonce (account chains)"},
    "await_confirmation": {
        "type": "boolean",
        "description": "Wait until the transaction is included before returning",
    },
    "timeout_seconds": {"type": "number", "description": "Overall deadline for the call"},
}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="crypto_send",
            description=(
                "Send coins or tokens to one address on the configured chain "
                "(bitcoin, ethereum or tron). Requires explicit user confirmation."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "to_address": {"type": "string", "description": "Recipient address"},
                    "amount": {
                        "type": "string",
                        "description": "Amount in whole coins/tokens, e.g. '0.015'",
                    },
                    **_SENDER_OPTIONS,
                },
                "required": ["to_address", "amount"],
            },
        ),
        Tool(
            name="crypto_send_to_many",
            description=(
                "Pay several recipients. Bitcoin uses one shared transaction; "
                "ethereum and tron send one transaction per recipient in order."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "transfers": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "address": {"type": "string"},
                                "amount": {"type": "string"},
                                "terminate_on_fail": {"type": "boolean"},
                            },
                            "required": ["address", "amount"],
                        },
                    },
                    **_SENDER_OPTIONS,
                },
                "required": ["transfers"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "crypto_send":
        return await _handle_send(arguments)
    if name == "crypto_send_to_many":
        return await _handle_send_to_many(arguments)

    return _error_response(f"Unknown tool: {name}")


async def _handle_send(arguments: dict[str, Any]) -> List[TextContent]:
    to_address = (arguments.get("to_address") or "").strip()
    if not to_address:
        return _error_response("Missing to_address.")

    try:
        amount = _parse_decimal(arguments.get("amount"), "amount")
        sender = await asyncio.to_thread(_build_sender, arguments)
        result = await asyncio.to_thread(
            sender.send, _private_key(), to_address, amount, _context(arguments)
        )
        return _ok(
            {
                "chain": sender.config.chain,
                "network": sender.config.network,
                "tx_hash": result.tx_hash,
                "tx_position": result.tx_position,
                "nonce": result.nonce,
                "raw_tx": result.data,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_send_to_many(arguments: dict[str, Any]) -> List[TextContent]:
    raw_transfers = arguments.get("transfers")
    if not isinstance(raw_transfers, list):
        return _error_response("Missing transfers. Expected a list.")

    try:
        transfers = [
            TransferRequest(
                address=str(t.get("address", "")).strip(),
                amount=_parse_decimal(t.get("amount"), "amount"),
                terminate_on_fail=bool(t.get("terminate_on_fail", False)),
            )
            for t in raw_transfers
        ]
        sender = await asyncio.to_thread(_build_sender, arguments)
        batch = await asyncio.to_thread(
            sender.send_to_many, _private_key(), transfers, _context(arguments)
        )
        return _ok(
            {
                "chain": sender.config.chain,
                "network": sender.config.network,
                "succeeded": [_item_json(i) for i in batch.success],
                "failed": [_item_json(i) for i in batch.failed],
                "terminated": batch.terminated,
                "error": str(batch.error) if batch.error else None,
            }
        )
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def main() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
