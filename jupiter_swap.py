"""
Jupiter swap quotes and execution for the trading MCP server.

Implements:
- Quote lookup against the Jupiter v6 /quote endpoint
- Swap execution: /swap preparation, local signing, raw broadcast
  (preflight skipped) and confirmation polling

Quotes are opaque: whatever Jupiter returns from /quote is sent back
unchanged as quoteResponse. Each execution is a single attempt; a failed
stage is reported, never retried, because a retried quote may be stale.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal

import requests
from solana.rpc.api import Client
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from solana_wallet import SolanaConfig, keypair_from_base58, rpc_client

logger = logging.getLogger(__name__)

SwapStatus = Literal["confirmed", "failed"]

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}
_STATUS_ORDER = [
    TransactionConfirmationStatus.Processed,
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SwapError(RuntimeError):
    """Base class for quote and swap pipeline failures."""

    def __init__(self, message: str, txid: str | None = None) -> None:
        super().__init__(message)
        self.txid = txid


class QuoteUnavailable(SwapError):
    """Jupiter did not return a quote."""


class PreparationError(SwapError):
    """Jupiter did not return a swap transaction for the quote."""


class MalformedTransaction(SwapError):
    """The swap transaction payload could not be decoded or signed."""


class BroadcastError(SwapError):
    """The RPC node rejected or did not accept the signed transaction."""


class ExecutionError(SwapError):
    """The transaction landed but failed on chain."""

    def __init__(self, message: str, txid: str, error: Any) -> None:
        super().__init__(message, txid=txid)
        self.error = error


class ConfirmationError(SwapError):
    """The outcome of a broadcast transaction could not be determined in time."""


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


def slippage_to_bps(slippage: Any) -> int:
    """
    Convert a slippage percentage (0-100) to integer basis points.

    Uses exact decimal arithmetic: 0.5 -> 50, 1 -> 100. Values that do not
    map to a whole number of basis points (e.g. 0.005) are rejected.
    """
    if isinstance(slippage, bool) or not isinstance(slippage, (int, float, Decimal)):
        raise ValueError("Invalid slippage. Must be a number.")
    try:
        value = Decimal(str(slippage))
    except InvalidOperation as exc:
        raise ValueError("Invalid slippage. Must be a number.") from exc
    if not value.is_finite() or value < 0 or value > 100:
        raise ValueError("Invalid slippage. Must be between 0 and 100.")

    bps = value * 100
    if bps != bps.to_integral_value():
        raise ValueError(
            f"Invalid slippage {slippage}. Must be a whole number of basis points (0.01%)."
        )
    return int(bps)


@dataclass(frozen=True)
class SwapQuoteRequest:
    input_mint: str
    output_mint: str
    amount: str
    slippage_bps: int

    @classmethod
    def from_percent(
        cls, input_mint: str, output_mint: str, amount: str, slippage: Any
    ) -> SwapQuoteRequest:
        return cls(input_mint, output_mint, amount, slippage_to_bps(slippage))

    def to_params(self) -> dict[str, Any]:
        return {
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "amount": self.amount,
            "slippageBps": self.slippage_bps,
        }


def get_swap_quote(cfg: SolanaConfig, request: SwapQuoteRequest) -> Any:
    """Fetch a quote from Jupiter. The response body is returned as-is."""
    url = f"{cfg.jupiter_api_url}/quote"
    try:
        resp = requests.get(url, params=request.to_params(), timeout=cfg.http_timeout)
    except requests.RequestException as exc:
        raise QuoteUnavailable(f"Failed to get swap quote: {exc}") from exc

    if not resp.ok:
        raise QuoteUnavailable(f"Failed to get swap quote (HTTP {resp.status_code}).")
    try:
        return resp.json()
    except ValueError as exc:
        raise QuoteUnavailable("Failed to get swap quote: response is not JSON.") from exc


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def sign_transaction(payload: bytes, keypair: Keypair) -> VersionedTransaction:
    """
    Deserialize a Jupiter swap transaction and add the keypair's signature.

    Accepts legacy and v0 wire formats. Other signatures already on the
    transaction are kept as they are.
    """
    try:
        tx = VersionedTransaction.from_bytes(payload)
    except Exception as exc:  # noqa: BLE001
        raise MalformedTransaction(f"Could not decode swap transaction: {exc}") from exc

    message = tx.message
    num_signers = message.header.num_required_signatures
    signers = list(message.account_keys[:num_signers])
    pubkey = keypair.pubkey()
    if pubkey not in signers:
        raise MalformedTransaction(
            f"Swap transaction does not require a signature from {pubkey}."
        )

    signatures = list(tx.signatures)
    if len(signatures) != num_signers:
        raise MalformedTransaction(
            f"Swap transaction has {len(signatures)} signatures for {num_signers} signers."
        )
    signatures[signers.index(pubkey)] = keypair.sign_message(to_bytes_versioned(message))
    return VersionedTransaction.populate(message, signatures)


# ---------------------------------------------------------------------------
# Execution pipeline
# ---------------------------------------------------------------------------


class SwapStage(str, Enum):
    PREPARING = "preparing"
    SIGNING = "signing"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class SwapResult:
    txid: str
    status: SwapStatus

    def to_dict(self) -> dict[str, str]:
        return {"txid": self.txid, "status": self.status}


def _status_rank(status: Any) -> int:
    for rank, known in enumerate(_STATUS_ORDER):
        if status == known:
            return rank
    return 0


class SwapExecution:
    """
    One swap attempt for one quote.

    Stages run in order PREPARING -> SIGNING -> BROADCASTING -> CONFIRMING and
    end in CONFIRMED or FAILED. A failing stage raises the SwapError subclass
    that names it; past BROADCASTING the error carries the txid.
    """

    def __init__(
        self, cfg: SolanaConfig, quote: Any, keypair: Keypair, client: Client
    ) -> None:
        self.cfg = cfg
        self.quote = quote
        self.keypair = keypair
        self.client = client
        self.stage = SwapStage.PREPARING
        self.txid: str | None = None
        self.error: SwapError | None = None
        self._payload = b""
        self._signed: VersionedTransaction | None = None
        self._signature: Any = None

    def run(self) -> SwapResult:
        steps = {
            SwapStage.PREPARING: self._prepare,
            SwapStage.SIGNING: self._sign,
            SwapStage.BROADCASTING: self._broadcast,
            SwapStage.CONFIRMING: self._confirm,
        }
        while self.stage in steps:
            current = self.stage
            try:
                self.stage = steps[current]()
            except SwapError as exc:
                self.error = exc
                self.stage = SwapStage.FAILED
                logger.warning("Swap failed while %s: %s", current.value, exc)
                raise
            logger.debug("Swap stage %s -> %s", current.value, self.stage.value)

        if self.txid is None:
            raise ConfirmationError("Swap finished without a transaction id.")
        logger.info("Swap confirmed: %s", self.txid)
        return SwapResult(txid=self.txid, status="confirmed")

    def _prepare(self) -> SwapStage:
        body = {
            "quoteResponse": self.quote,
            "userPublicKey": str(self.keypair.pubkey()),
        }
        try:
            resp = requests.post(
                f"{self.cfg.jupiter_api_url}/swap",
                json=body,
                timeout=self.cfg.http_timeout,
            )
        except requests.RequestException as exc:
            raise PreparationError(f"Failed to prepare swap transaction: {exc}") from exc

        if not resp.ok:
            raise PreparationError(
                f"Failed to prepare swap transaction (HTTP {resp.status_code})."
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise PreparationError(
                "Failed to prepare swap transaction: response is not JSON."
            ) from exc

        encoded = data.get("swapTransaction") if isinstance(data, dict) else None
        if not isinstance(encoded, str) or not encoded:
            raise PreparationError(
                "Failed to prepare swap transaction: no swapTransaction in response."
            )
        try:
            self._payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedTransaction("swapTransaction is not valid base64.") from exc
        return SwapStage.SIGNING

    def _sign(self) -> SwapStage:
        self._signed = sign_transaction(self._payload, self.keypair)
        return SwapStage.BROADCASTING

    def _broadcast(self) -> SwapStage:
        if self._signed is None:
            raise MalformedTransaction("No signed swap transaction to send.")
        try:
            resp = self.client.send_raw_transaction(
                bytes(self._signed), opts=TxOpts(skip_preflight=True)
            )
        except Exception as exc:  # noqa: BLE001
            raise BroadcastError(f"Failed to send swap transaction: {exc}") from exc

        self._signature = resp.value
        self.txid = str(resp.value)
        logger.info("Swap transaction sent: %s", self.txid)
        return SwapStage.CONFIRMING

    def _confirm(self) -> SwapStage:
        target = _COMMITMENT_RANK[self.cfg.commitment]
        deadline = time.monotonic() + self.cfg.confirm_timeout
        while True:
            try:
                statuses = self.client.get_signature_statuses([self._signature]).value
            except Exception as exc:  # noqa: BLE001
                raise ConfirmationError(
                    f"Could not check status of transaction {self.txid}: {exc}",
                    txid=self.txid,
                ) from exc

            status = statuses[0] if statuses else None
            if status is not None:
                if status.err is not None:
                    raise ExecutionError(
                        f"Transaction {self.txid} failed: {status.err}",
                        txid=self.txid,
                        error=status.err,
                    )
                if _status_rank(status.confirmation_status) >= target:
                    return SwapStage.CONFIRMED

            if time.monotonic() >= deadline:
                raise ConfirmationError(
                    f"Transaction {self.txid} was not confirmed within "
                    f"{self.cfg.confirm_timeout:g}s.",
                    txid=self.txid,
                )
            time.sleep(self.cfg.confirm_poll_interval)


def execute_swap(cfg: SolanaConfig, quote: Any, wallet_private_key: str) -> SwapResult:
    """Prepare, sign, broadcast and confirm the swap described by quote."""
    keypair = keypair_from_base58(wallet_private_key)
    execution = SwapExecution(cfg, quote, keypair, rpc_client(cfg))
    return execution.run()
