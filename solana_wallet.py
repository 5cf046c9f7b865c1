"""
Solana wallet operations for the trading MCP server.

Implements:
- SolanaConfig loaded from environment variables / .env
- Keypair creation and import from base58 secret keys
- SPL token balance lookup through the associated token account (ATA)

Nothing here persists key material: wallets are built per call and handed
back to the caller.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

import base58
from solana.rpc.api import Client
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
)

logger = logging.getLogger(__name__)

SolanaCommitment = Literal["processed", "confirmed", "finalized"]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_JUPITER_API_URL = "https://quote-api.jup.ag/v6"

SECRET_KEY_LENGTH = 64
SEED_LENGTH = 32

SPL_TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


class SolanaConfigError(Exception):
    """Invalid configuration value for the Solana trading server."""

    pass


class InvalidKey(ValueError):
    """A base58 secret key could not be decoded into a Solana keypair."""

    pass


class BalanceQueryError(RuntimeError):
    """Token account resolution or balance lookup failed."""

    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default).strip()
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, ValueError) as exc:
        raise SolanaConfigError(f"Invalid {name}={raw!r}. Must be a number.") from exc
    if not parsed.is_finite():
        raise SolanaConfigError(f"Invalid {name}={raw!r}. Must be a finite number.")
    value = float(parsed)
    if value <= 0:
        raise SolanaConfigError(f"Invalid {name}={raw!r}. Must be greater than zero.")
    return value


@dataclass
class SolanaConfig:
    """
    Configuration for Solana RPC and Jupiter access.

    Values are sourced from environment variables or a .env file:
    - SOLANA_RPC_URL: JSON-RPC endpoint (defaults to public mainnet-beta).
    - JUPITER_API_URL: Jupiter swap API base URL (v6 quote/swap endpoints).
    - SOLANA_COMMITMENT: processed, confirmed or finalized (default confirmed).
    - SOLANA_HTTP_TIMEOUT / SOLANA_RPC_TIMEOUT: per-request timeouts in seconds.
    - SOLANA_CONFIRM_TIMEOUT: how long to poll for a swap confirmation.
    - SOLANA_CONFIRM_POLL_INTERVAL: delay between confirmation polls.
    - SOLANA_CREATE_MISSING_ATA: if true, a balance lookup for a wallet with
      no token account creates it, paid by a throwaway keypair. Off by
      default so balance lookups never write to the chain.
    """

    rpc_url: str = DEFAULT_RPC_URL
    jupiter_api_url: str = DEFAULT_JUPITER_API_URL
    commitment: SolanaCommitment = "confirmed"
    http_timeout: float = 10.0
    rpc_timeout: float = 10.0
    confirm_timeout: float = 60.0
    confirm_poll_interval: float = 0.5
    create_missing_token_account: bool = False

    @classmethod
    def from_env(cls) -> SolanaConfig:
        rpc_url = os.getenv("SOLANA_RPC_URL", "").strip() or DEFAULT_RPC_URL
        jupiter_api_url = (
            os.getenv("JUPITER_API_URL", "").strip() or DEFAULT_JUPITER_API_URL
        ).rstrip("/")

        raw_commitment = os.getenv("SOLANA_COMMITMENT", "confirmed").strip().lower()
        if raw_commitment not in {"processed", "confirmed", "finalized"}:
            raise SolanaConfigError(
                f"Invalid SOLANA_COMMITMENT={raw_commitment!r}. "
                "Expected 'processed', 'confirmed' or 'finalized'."
            )

        create_env = os.getenv("SOLANA_CREATE_MISSING_ATA", "false").lower()
        create_missing = create_env in ("true", "1", "yes", "on")

        return cls(
            rpc_url=rpc_url,
            jupiter_api_url=jupiter_api_url,
            commitment=raw_commitment,  # type: ignore[arg-type]
            http_timeout=_env_float("SOLANA_HTTP_TIMEOUT", "10"),
            rpc_timeout=_env_float("SOLANA_RPC_TIMEOUT", "10"),
            confirm_timeout=_env_float("SOLANA_CONFIRM_TIMEOUT", "60"),
            confirm_poll_interval=_env_float("SOLANA_CONFIRM_POLL_INTERVAL", "0.5"),
            create_missing_token_account=create_missing,
        )


def rpc_client(cfg: SolanaConfig) -> Client:
    """Build a synchronous RPC client for one tool invocation."""
    return Client(cfg.rpc_url, commitment=cfg.commitment, timeout=cfg.rpc_timeout)


# ---------------------------------------------------------------------------
# Wallet custody
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Wallet:
    public_key: str
    private_key: str

    def to_dict(self) -> dict[str, str]:
        return {"publicKey": self.public_key, "privateKey": self.private_key}


def keypair_from_base58(private_key_b58: str) -> Keypair:
    """
    Decode a base58 64-byte secret key into a Keypair.

    The public half stored in the secret key must match the one derived from
    its 32-byte seed. Errors carry no key material.
    """
    try:
        raw = base58.b58decode(private_key_b58.strip())
    except (ValueError, AttributeError):
        raise InvalidKey("Invalid private key: not a base58 string.") from None

    if len(raw) != SECRET_KEY_LENGTH:
        raise InvalidKey(
            f"Invalid private key: expected {SECRET_KEY_LENGTH} bytes, got {len(raw)}."
        )

    try:
        keypair = Keypair.from_seed(raw[:SEED_LENGTH])
    except ValueError:
        raise InvalidKey("Invalid private key.") from None

    if bytes(keypair) != raw:
        raise InvalidKey("Invalid private key: public key does not match secret key.")
    return keypair


def create_wallet() -> Wallet:
    keypair = Keypair()
    return Wallet(
        public_key=str(keypair.pubkey()),
        private_key=base58.b58encode(bytes(keypair)).decode("ascii"),
    )


def import_wallet(private_key_b58: str) -> Wallet:
    keypair = keypair_from_base58(private_key_b58)
    return Wallet(public_key=str(keypair.pubkey()), private_key=private_key_b58)


# ---------------------------------------------------------------------------
# Token balances
# ---------------------------------------------------------------------------


def _parse_pubkey(value: str, field_name: str) -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as exc:
        raise BalanceQueryError(f"Invalid {field_name}: {value!r}") from exc


def _token_program_for_mint(client: Client, mint: Pubkey) -> Pubkey:
    info = client.get_account_info(mint).value
    if info is None:
        raise BalanceQueryError(f"Token mint not found: {mint}")
    if info.owner not in SPL_TOKEN_PROGRAMS:
        raise BalanceQueryError(f"Account {mint} is not an SPL token mint.")
    return info.owner


def _create_token_account(
    client: Client, owner: Pubkey, mint: Pubkey, token_program: Pubkey
) -> None:
    """Create the owner's ATA, paid by a disposable keypair."""
    payer = Keypair()
    logger.warning(
        "Creating token account for owner %s mint %s (payer %s)",
        owner,
        mint,
        payer.pubkey(),
    )
    ix = create_associated_token_account(
        payer=payer.pubkey(), owner=owner, mint=mint, token_program_id=token_program
    )
    blockhash = client.get_latest_blockhash().value.blockhash
    message = Message.new_with_blockhash([ix], payer.pubkey(), blockhash)
    tx = Transaction([payer], message, blockhash)
    signature = client.send_transaction(tx).value
    client.confirm_transaction(signature)


def get_token_balance(cfg: SolanaConfig, wallet_address: str, token_mint: str) -> str:
    """
    Return the UI balance of token_mint held by wallet_address.

    Looks up the wallet's associated token account. A missing account counts
    as a zero balance; it is only created when
    cfg.create_missing_token_account is set.
    """
    owner = _parse_pubkey(wallet_address, "wallet address")
    mint = _parse_pubkey(token_mint, "token mint")

    try:
        client = rpc_client(cfg)
        token_program = _token_program_for_mint(client, mint)
        ata = get_associated_token_address(owner, mint, token_program_id=token_program)

        if client.get_account_info(ata).value is None:
            if cfg.create_missing_token_account:
                _create_token_account(client, owner, mint, token_program)
            else:
                logger.debug("No token account %s for owner %s", ata, owner)
            return "0"

        balance: Any = client.get_token_account_balance(ata).value
    except BalanceQueryError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise BalanceQueryError(f"Failed to fetch token balance: {exc}") from exc

    return balance.ui_amount_string or "0"
