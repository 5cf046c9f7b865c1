"""Unit tests for the Solana trading MCP server dispatch layer."""

import asyncio
import base64
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import jupiter_swap  # noqa: E402
import solana_trading_mcp_server as server  # noqa: E402
from solana_wallet import SolanaConfig  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(name, arguments):
    return asyncio.run(server.call_tool(name, arguments))


def _text(result):
    assert len(result.content) == 1
    assert result.content[0].type == "text"
    return result.content[0].text


def _make_dummy_cfg(*_args, **_kwargs):
    return SolanaConfig(confirm_timeout=0.05, confirm_poll_interval=0.001)


def _patch_config(monkeypatch):
    monkeypatch.setattr(
        server, "SolanaConfig",
        type("SolanaConfig", (), {"from_env": classmethod(_make_dummy_cfg)}),
    )


QUOTE_ARGS = {
    "inputMint": "So11111111111111111111111111111111111111112",
    "outputMint": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "amount": "1000000",
    "slippage": 1,
}


# ---------------------------------------------------------------------------
# Tool list
# ---------------------------------------------------------------------------


def test_list_tools_has_all_commands():
    tools = asyncio.run(server.list_tools())
    names = [tool.name for tool in tools]
    assert names == [
        "create_wallet",
        "import_wallet",
        "get_token_balance",
        "get_swap_quote",
        "execute_swap",
    ]


def test_list_tools_required_arguments():
    tools = {tool.name: tool for tool in asyncio.run(server.list_tools())}
    assert tools["create_wallet"].inputSchema["required"] == []
    assert tools["import_wallet"].inputSchema["required"] == ["privateKey"]
    assert tools["get_token_balance"].inputSchema["required"] == [
        "walletAddress", "tokenMint",
    ]
    assert tools["get_swap_quote"].inputSchema["properties"]["slippage"]["type"] == "number"
    assert tools["execute_swap"].inputSchema["properties"]["quote"]["type"] == "object"


# ---------------------------------------------------------------------------
# Wallet tools
# ---------------------------------------------------------------------------


def test_create_wallet_returns_json():
    first = _call("create_wallet", {})
    second = _call("create_wallet", None)

    assert not first.isError
    wallet = json.loads(_text(first))
    assert set(wallet) == {"publicKey", "privateKey"}
    assert wallet["publicKey"] != json.loads(_text(second))["publicKey"]


def test_import_wallet_returns_public_key():
    keypair = Keypair()
    encoded = base58.b58encode(bytes(keypair)).decode()

    result = _call("import_wallet", {"privateKey": encoded})

    assert not result.isError
    assert json.loads(_text(result)) == {
        "publicKey": str(keypair.pubkey()),
        "privateKey": encoded,
    }


def test_import_wallet_invalid_key():
    result = _call("import_wallet", {"privateKey": "not-base58!!"})
    assert result.isError is True
    assert "Invalid private key" in _text(result)


def test_import_wallet_missing_key():
    result = _call("import_wallet", {})
    assert result.isError is True
    assert "privateKey" in _text(result)


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


def test_get_token_balance_missing_mint_skips_handler(monkeypatch):
    calls = []
    monkeypatch.setattr(server, "get_token_balance", lambda *a: calls.append(a) or "1")

    result = _call("get_token_balance", {"walletAddress": "W"})

    assert result.isError is True
    assert "tokenMint" in _text(result)
    assert calls == []


def test_get_token_balance_passes_string_through(monkeypatch):
    _patch_config(monkeypatch)
    calls = []

    def mock_balance(cfg, wallet_address, token_mint):
        calls.append((wallet_address, token_mint))
        return "42.000001"

    monkeypatch.setattr(server, "get_token_balance", mock_balance)

    result = _call("get_token_balance", {"walletAddress": " W ", "tokenMint": "M"})

    assert not result.isError
    assert _text(result) == "42.000001"
    assert calls == [("W", "M")]


def test_get_token_balance_wrong_type():
    result = _call("get_token_balance", {"walletAddress": 5, "tokenMint": "M"})
    assert result.isError is True
    assert "walletAddress" in _text(result)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


def test_get_swap_quote_serializes_quote(monkeypatch):
    _patch_config(monkeypatch)
    quote = {"inAmount": "1000000", "outAmount": "171234", "routePlan": []}
    requests_seen = []

    def mock_quote(cfg, request):
        requests_seen.append(request)
        return quote

    monkeypatch.setattr(server, "get_swap_quote", mock_quote)

    result = _call("get_swap_quote", QUOTE_ARGS)

    assert not result.isError
    assert _text(result) == json.dumps(quote, indent=2)
    assert requests_seen[0].slippage_bps == 100
    assert requests_seen[0].amount == "1000000"


def test_get_swap_quote_rejects_fractional_bps(monkeypatch):
    calls = []
    monkeypatch.setattr(server, "get_swap_quote", lambda *a: calls.append(a))

    result = _call("get_swap_quote", dict(QUOTE_ARGS, slippage=0.005))

    assert result.isError is True
    assert "basis points" in _text(result)
    assert calls == []


def test_get_swap_quote_rejects_bad_amount():
    for amount in ("1.5", "-3", "0", "abc"):
        result = _call("get_swap_quote", dict(QUOTE_ARGS, amount=amount))
        assert result.isError is True
        assert "amount" in _text(result)


def test_get_swap_quote_missing_slippage():
    args = dict(QUOTE_ARGS)
    del args["slippage"]
    result = _call("get_swap_quote", args)
    assert result.isError is True
    assert "slippage" in _text(result)


def test_get_swap_quote_unavailable(monkeypatch):
    _patch_config(monkeypatch)

    def mock_quote(cfg, request):
        raise jupiter_swap.QuoteUnavailable("Failed to get swap quote (HTTP 400).")

    monkeypatch.setattr(server, "get_swap_quote", mock_quote)

    result = _call("get_swap_quote", QUOTE_ARGS)
    assert result.isError is True
    assert _text(result) == "Failed to get swap quote (HTTP 400)."


# ---------------------------------------------------------------------------
# Swap execution
# ---------------------------------------------------------------------------


def test_execute_swap_requires_object_quote():
    result = _call("execute_swap", {"quote": "abc", "walletPrivateKey": "k"})
    assert result.isError is True
    assert "quote" in _text(result)


def test_execute_swap_returns_result(monkeypatch):
    _patch_config(monkeypatch)

    def mock_execute(cfg, quote, key):
        return jupiter_swap.SwapResult(txid="5xyz", status="confirmed")

    monkeypatch.setattr(server, "execute_swap", mock_execute)

    result = _call("execute_swap", {"quote": {"inAmount": "1"}, "walletPrivateKey": "k"})

    assert not result.isError
    assert json.loads(_text(result)) == {"txid": "5xyz", "status": "confirmed"}


def test_execute_swap_on_chain_failure_is_error_response(monkeypatch):
    _patch_config(monkeypatch)
    user = Keypair()
    ix = transfer(
        TransferParams(from_pubkey=user.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1)
    )
    unsigned = VersionedTransaction.populate(
        Message.new_with_blockhash([ix], user.pubkey(), Hash.default()),
        [Signature.default()],
    )

    def fake_post(url, json=None, timeout=None):
        payload = {"swapTransaction": base64.b64encode(bytes(unsigned)).decode()}
        return SimpleNamespace(ok=True, status_code=200, json=lambda: payload)

    class FakeRpcClient:
        def send_raw_transaction(self, raw, opts=None):
            return SimpleNamespace(value=Signature.default())

        def get_signature_statuses(self, signatures):
            status = SimpleNamespace(err="InstructionError(2, Custom(6001))",
                                     confirmation_status=None)
            return SimpleNamespace(value=[status])

    monkeypatch.setattr(jupiter_swap.requests, "post", fake_post)
    monkeypatch.setattr(jupiter_swap, "rpc_client", lambda cfg: FakeRpcClient())

    result = _call("execute_swap", {
        "quote": {"inAmount": "1"},
        "walletPrivateKey": base58.b58encode(bytes(user)).decode(),
    })

    assert result.isError is True
    assert "Custom(6001)" in _text(result)
    assert str(Signature.default()) in _text(result)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_unknown_tool_then_next_request_still_served():
    result = _call("nonexistent_tool", {})
    assert result.isError is True
    assert _text(result) == "Unknown tool: nonexistent_tool"

    follow_up = _call("create_wallet", {})
    assert not follow_up.isError


def test_invalid_arguments_not_a_dict():
    result = _call("import_wallet", "not_a_dict")
    assert result.isError is True
    assert "Invalid arguments" in _text(result)


def test_handler_exception_without_message(monkeypatch):
    def boom():
        raise RuntimeError()

    monkeypatch.setattr(server, "create_wallet", boom)

    result = _call("create_wallet", {})
    assert result.isError is True
    assert _text(result) == "RuntimeError"
