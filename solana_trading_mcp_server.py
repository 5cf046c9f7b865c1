#!/usr/bin/env python3
"""
MCP server for Solana wallet and Jupiter swap operations.

Tools:
- create_wallet / import_wallet: keypair handling, nothing is stored
- get_token_balance: SPL token balance via the associated token account
- get_swap_quote / execute_swap: Jupiter quote, then sign, send and confirm

Wraps solana_wallet.py and jupiter_swap.py as MCP tools. Every call returns
exactly one result; failures come back as text with isError set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from jupiter_swap import (  # noqa: E402
    SwapQuoteRequest,
    execute_swap,
    get_swap_quote,
    slippage_to_bps,
)
from solana_wallet import (  # noqa: E402
    SolanaConfig,
    create_wallet,
    get_token_balance,
    import_wallet,
)

logger = logging.getLogger(__name__)

app = Server("solana_trading")


class InvalidArguments(ValueError):
    """Tool arguments are missing or have the wrong shape."""

    pass


class UnknownCommand(LookupError):
    """No tool is registered under the requested name."""

    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def _serialize(result: Any) -> str:
    if isinstance(result, str):
        return result
    if hasattr(result, "to_dict"):
        result = result.to_dict()
    return json.dumps(result, indent=2, default=str)


def _require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if value is None:
        raise InvalidArguments(f"Missing '{key}' parameter.")
    if not isinstance(value, str) or not value.strip():
        raise InvalidArguments(f"Invalid '{key}' parameter. Must be a non-empty string.")
    return value.strip()


# ---------------------------------------------------------------------------
# Typed arguments, one per tool
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateWalletArgs:
    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> CreateWalletArgs:
        return cls()


@dataclass(frozen=True)
class ImportWalletArgs:
    private_key: str

    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> ImportWalletArgs:
        return cls(private_key=_require_str(arguments, "privateKey"))


@dataclass(frozen=True)
class GetTokenBalanceArgs:
    wallet_address: str
    token_mint: str

    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> GetTokenBalanceArgs:
        return cls(
            wallet_address=_require_str(arguments, "walletAddress"),
            token_mint=_require_str(arguments, "tokenMint"),
        )


@dataclass(frozen=True)
class GetSwapQuoteArgs:
    request: SwapQuoteRequest

    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> GetSwapQuoteArgs:
        input_mint = _require_str(arguments, "inputMint")
        output_mint = _require_str(arguments, "outputMint")
        amount = _require_str(arguments, "amount")
        if not (amount.isascii() and amount.isdigit()) or int(amount) <= 0:
            raise InvalidArguments(
                "Invalid 'amount' parameter. Must be a positive integer in the "
                "token's smallest unit, as a string."
            )

        slippage = arguments.get("slippage")
        if slippage is None:
            raise InvalidArguments("Missing 'slippage' parameter.")
        try:
            slippage_bps = slippage_to_bps(slippage)
        except ValueError as exc:
            raise InvalidArguments(str(exc)) from exc

        return cls(
            request=SwapQuoteRequest(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount,
                slippage_bps=slippage_bps,
            )
        )


@dataclass(frozen=True)
class ExecuteSwapArgs:
    quote: dict[str, Any]
    wallet_private_key: str

    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> ExecuteSwapArgs:
        quote = arguments.get("quote")
        if quote is None:
            raise InvalidArguments("Missing 'quote' parameter.")
        if not isinstance(quote, dict) or not quote:
            raise InvalidArguments(
                "Invalid 'quote' parameter. Pass the object returned by get_swap_quote."
            )
        return cls(
            quote=quote,
            wallet_private_key=_require_str(arguments, "walletPrivateKey"),
        )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_create_wallet(args: CreateWalletArgs) -> Any:
    return await asyncio.to_thread(create_wallet)


async def _handle_import_wallet(args: ImportWalletArgs) -> Any:
    return import_wallet(args.private_key)


async def _handle_get_token_balance(args: GetTokenBalanceArgs) -> str:
    cfg = await asyncio.to_thread(SolanaConfig.from_env)
    return await asyncio.to_thread(
        get_token_balance, cfg, args.wallet_address, args.token_mint
    )


async def _handle_get_swap_quote(args: GetSwapQuoteArgs) -> Any:
    cfg = await asyncio.to_thread(SolanaConfig.from_env)
    return await asyncio.to_thread(get_swap_quote, cfg, args.request)


async def _handle_execute_swap(args: ExecuteSwapArgs) -> Any:
    cfg = await asyncio.to_thread(SolanaConfig.from_env)
    return await asyncio.to_thread(execute_swap, cfg, args.quote, args.wallet_private_key)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    tool: Tool
    parse: Callable[[dict[str, Any]], Any]
    handler: Callable[[Any], Awaitable[Any]]


COMMANDS: dict[str, Command] = {
    "create_wallet": Command(
        tool=Tool(
            name="create_wallet",
            description="Create a new Solana wallet",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        parse=CreateWalletArgs.from_arguments,
        handler=_handle_create_wallet,
    ),
    "import_wallet": Command(
        tool=Tool(
            name="import_wallet",
            description="Import an existing Solana wallet using private key",
            inputSchema={
                "type": "object",
                "properties": {
                    "privateKey": {
                        "type": "string",
                        "description": "Base58 encoded private key",
                    },
                },
                "required": ["privateKey"],
            },
        ),
        parse=ImportWalletArgs.from_arguments,
        handler=_handle_import_wallet,
    ),
    "get_token_balance": Command(
        tool=Tool(
            name="get_token_balance",
            description="Get token balance for a wallet",
            inputSchema={
                "type": "object",
                "properties": {
                    "walletAddress": {
                        "type": "string",
                        "description": "Solana wallet address",
                    },
                    "tokenMint": {"type": "string", "description": "Token mint address"},
                },
                "required": ["walletAddress", "tokenMint"],
            },
        ),
        parse=GetTokenBalanceArgs.from_arguments,
        handler=_handle_get_token_balance,
    ),
    "get_swap_quote": Command(
        tool=Tool(
            name="get_swap_quote",
            description="Get a quote for swapping tokens",
            inputSchema={
                "type": "object",
                "properties": {
                    "inputMint": {
                        "type": "string",
                        "description": "Input token mint address",
                    },
                    "outputMint": {
                        "type": "string",
                        "description": "Output token mint address",
                    },
                    "amount": {
                        "type": "string",
                        "description": "Amount of input tokens (in smallest units)",
                    },
                    "slippage": {
                        "type": "number",
                        "description": "Slippage tolerance in percent (0-100)",
                    },
                },
                "required": ["inputMint", "outputMint", "amount", "slippage"],
            },
        ),
        parse=GetSwapQuoteArgs.from_arguments,
        handler=_handle_get_swap_quote,
    ),
    "execute_swap": Command(
        tool=Tool(
            name="execute_swap",
            description=(
                "Execute a token swap. Signs locally, sends without preflight and "
                "waits for confirmation. Not retried."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "quote": {
                        "type": "object",
                        "description": "Quote object from get_swap_quote",
                    },
                    "walletPrivateKey": {
                        "type": "string",
                        "description": "Base58 encoded private key of the wallet",
                    },
                },
                "required": ["quote", "walletPrivateKey"],
            },
        ),
        parse=ExecuteSwapArgs.from_arguments,
        handler=_handle_execute_swap,
    ),
}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [command.tool for command in COMMANDS.values()]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> CallToolResult:
    try:
        command = COMMANDS.get(name)
        if command is None:
            raise UnknownCommand(f"Unknown tool: {name}")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidArguments("Invalid arguments. Expected an object.")

        args = command.parse(arguments)
        result = await command.handler(args)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Error in %s: %s", name, exc)
        return _text_result(str(exc) or type(exc).__name__, is_error=True)

    return _text_result(_serialize(result))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    # stdout carries the MCP stream
    logging.basicConfig(
        level=os.getenv("SOLANA_LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def main() -> None:
    _configure_logging()
    async with stdio_server() as (read_stream, write_stream):
        logger.info("Solana trading MCP server running on stdio")
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    run()
