"""
Ledger network clients.

LedgerNetwork is the narrow surface the anchoring client needs from a
ledger: block height, wallet balance, sending a memo transaction, waiting
for its confirmation, and reading a transaction back.

- SolanaRpcNetwork: Solana JSON-RPC over httpx, transactions built with
  solders and signed with the wallet's Ed25519 key
- InMemoryLedgerNetwork: a stub ledger for development and tests

Failures are raised as LedgerNetworkError subclasses whose messages carry
the words the anchoring client classifies on (timeout, 429, network,
blockhash, insufficient, failed).
"""

import base64
import itertools
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message as SolanaMessage
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from ..observability import get_logger
from .clock import Clock, SystemClock
from .signer import WalletSigner

logger = get_logger(__name__)

MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
LAMPORTS_PER_SOL = 1_000_000_000

# Simulation errors that mean the wallet cannot pay
_FUNDING_ERRORS = ("InsufficientFundsForFee", "InsufficientFundsForRent", "AccountNotFound")


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerNetworkError(Exception):
    """Base exception for ledger communication failures."""
    pass


class LedgerRpcError(LedgerNetworkError):
    """The RPC node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Optional[int], message: str, data: Any = None):
        self.method = method
        self.code = code
        self.data = data
        super().__init__(f"RPC error from {method} ({code}): {message}")


class TransactionFailedError(LedgerNetworkError):
    """The transaction landed but its execution failed."""
    pass


class BlockhashExpiredError(LedgerNetworkError):
    """The transaction's blockhash expired before it was confirmed."""
    pass


class ConfirmationTimeoutError(LedgerNetworkError):
    """No confirmation within the allowed time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class LedgerTransaction:
    """A confirmed transaction as read back from the ledger."""
    signature: str
    slot: Optional[int]
    block_time: Optional[int]
    fee: Optional[int]
    memos: list[str] = field(default_factory=list)
    err: Any = None


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerNetwork(ABC):
    """Operations the anchoring client needs from a ledger."""

    @property
    @abstractmethod
    def wallet_address(self) -> str:
        ...

    @abstractmethod
    def get_block_height(self) -> int:
        ...

    @abstractmethod
    def get_balance_lamports(self) -> int:
        ...

    @abstractmethod
    def send_memo_transaction(self, memo: bytes) -> str:
        """
        Submit a transaction carrying memo. Returns its signature.

        Does not wait for confirmation.
        """
        ...

    @abstractmethod
    def confirm_transaction(self, signature: str, timeout: float) -> None:
        """
        Block until the transaction is confirmed.

        Raises:
            TransactionFailedError: Execution failed
            BlockhashExpiredError: It can no longer land
            ConfirmationTimeoutError: Not confirmed in time
        """
        ...

    @abstractmethod
    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        ...

    def close(self) -> None:
        return None


# ============================================================
# SOLANA JSON-RPC
# ============================================================

class SolanaRpcNetwork(LedgerNetwork):
    """
    Solana JSON-RPC client.

    The anchoring transaction is a 1-lamport transfer from the wallet to
    itself followed by a memo instruction. The self-transfer makes the
    wallet the fee payer and signer of record.
    """

    COMMITMENT = "confirmed"
    POLL_INTERVAL_SECONDS = 1.0

    def __init__(
        self,
        rpc_url: str,
        signer: WalletSigner,
        timeout: float = 30.0,
        clock: Optional[Clock] = None,
        client: Optional[httpx.Client] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        """
        Args:
            rpc_url: JSON-RPC endpoint
            signer: Wallet signer (fee payer)
            timeout: Per-request timeout in seconds
            clock: Clock used while polling for confirmation
            client: Preconfigured httpx client (tests pass one with a MockTransport)
            poll_interval: Seconds between confirmation polls
        """
        self._rpc_url = rpc_url
        self._signer = signer
        self._clock = clock or SystemClock()
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._poll_interval = poll_interval
        self._ids = itertools.count(1)
        self._last_valid_heights: dict[str, int] = {}
        self._memo_program = Pubkey.from_string(MEMO_PROGRAM_ID)

    @property
    def wallet_address(self) -> str:
        return self._signer.address

    def close(self) -> None:
        self._client.close()

    def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise LedgerNetworkError(f"RPC timeout calling {method}: {e}") from e
        except httpx.RequestError as e:
            raise LedgerNetworkError(f"Network error calling {method}: {e}") from e

        if response.status_code == 429:
            raise LedgerNetworkError(f"RPC node returned 429 (rate limit) for {method}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise LedgerNetworkError(
                f"Network error calling {method}: HTTP {response.status_code}"
            ) from e

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerNetworkError(f"Network error calling {method}: response is not JSON") from e

        error = body.get("error")
        if error:
            message = error.get("message", "unknown error")
            data = error.get("data")
            err = data.get("err") if isinstance(data, dict) else None
            if any(name in str(err) for name in _FUNDING_ERRORS):
                message = f"{message} (insufficient funds: {err})"
            raise LedgerRpcError(method, error.get("code"), message, data)
        return body.get("result")

    def get_block_height(self) -> int:
        return int(self._rpc("getBlockHeight", [{"commitment": self.COMMITMENT}]))

    def get_balance_lamports(self) -> int:
        result = self._rpc("getBalance", [self.wallet_address, {"commitment": self.COMMITMENT}])
        return int(result["value"])

    def send_memo_transaction(self, memo: bytes) -> str:
        latest = self._rpc("getLatestBlockhash", [{"commitment": self.COMMITMENT}])["value"]
        blockhash = Hash.from_string(latest["blockhash"])
        payer = self._signer.pubkey

        instructions = [
            transfer(TransferParams(from_pubkey=payer, to_pubkey=payer, lamports=1)),
            Instruction(self._memo_program, bytes(memo), []),
        ]
        message = SolanaMessage.new_with_blockhash(instructions, payer, blockhash)
        signature = Signature.from_bytes(self._signer.sign(bytes(message)))
        transaction = Transaction.populate(message, [signature])

        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        sent = self._rpc("sendTransaction", [encoded, {
            "encoding": "base64",
            "skipPreflight": False,
            "preflightCommitment": self.COMMITMENT,
            "maxRetries": 3,
        }])
        self._last_valid_heights[sent] = int(latest["lastValidBlockHeight"])
        logger.debug("Transaction submitted", signature=sent, memo_bytes=len(memo))
        return sent

    def confirm_transaction(self, signature: str, timeout: float) -> None:
        deadline = self._clock.monotonic() + timeout
        last_valid_height = self._last_valid_heights.get(signature)
        try:
            while True:
                result = self._rpc("getSignatureStatuses", [[signature]])
                status = (result.get("value") or [None])[0]
                if status:
                    if status.get("err"):
                        raise TransactionFailedError(
                            f"Transaction failed: {status['err']}"
                        )
                    if status.get("confirmationStatus") in ("confirmed", "finalized"):
                        return
                elif last_valid_height is not None and self.get_block_height() > last_valid_height:
                    raise BlockhashExpiredError(
                        "Blockhash expired before the transaction was confirmed"
                    )

                if self._clock.monotonic() >= deadline:
                    raise ConfirmationTimeoutError(
                        f"Confirmation timeout after {timeout:.0f}s"
                    )
                self._clock.sleep(self._poll_interval)
        finally:
            self._last_valid_heights.pop(signature, None)

    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        result = self._rpc("getTransaction", [signature, {
            "encoding": "jsonParsed",
            "commitment": self.COMMITMENT,
            "maxSupportedTransactionVersion": 0,
        }])
        if result is None:
            return None

        memos = []
        instructions = result.get("transaction", {}).get("message", {}).get("instructions", [])
        for ix in instructions:
            if ix.get("program") == "spl-memo" or ix.get("programId") == MEMO_PROGRAM_ID:
                parsed = ix.get("parsed")
                if isinstance(parsed, str):
                    memos.append(parsed)

        meta = result.get("meta") or {}
        return LedgerTransaction(
            signature=signature,
            slot=result.get("slot"),
            block_time=result.get("blockTime"),
            fee=meta.get("fee"),
            memos=memos,
            err=meta.get("err"),
        )


# ============================================================
# IN-MEMORY STUB
# ============================================================

class InMemoryLedgerNetwork(LedgerNetwork):
    """
    Stub ledger that confirms everything instantly.

    Transactions are really signed by the wallet key so signatures are
    unique and well-formed. Failures can be queued with fail_next_send()
    and fail_next_confirm(); connected=False makes every call fail like an
    unreachable node. calls counts every operation by name.
    """

    FEE_LAMPORTS = 5000

    def __init__(
        self,
        signer: Optional[WalletSigner] = None,
        balance_lamports: int = LAMPORTS_PER_SOL,
        clock: Optional[Clock] = None,
    ):
        self._signer = signer or WalletSigner.generate()
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._nonce = itertools.count()

        self.balance_lamports = balance_lamports
        self.block_height = 1
        self.connected = True
        self.transactions: dict[str, LedgerTransaction] = {}
        self.calls: Counter = Counter()
        self._send_errors: list[Exception] = []
        self._confirm_errors: list[Exception] = []

    @property
    def wallet_address(self) -> str:
        return self._signer.address

    def fail_next_send(self, *errors: Exception) -> None:
        with self._lock:
            self._send_errors.extend(errors)

    def fail_next_confirm(self, *errors: Exception) -> None:
        with self._lock:
            self._confirm_errors.extend(errors)

    def _check_connected(self, method: str) -> None:
        self.calls[method] += 1
        if not self.connected:
            raise LedgerNetworkError(f"Network error calling {method}: ledger unreachable")

    def get_block_height(self) -> int:
        with self._lock:
            self._check_connected("getBlockHeight")
            return self.block_height

    def get_balance_lamports(self) -> int:
        with self._lock:
            self._check_connected("getBalance")
            return self.balance_lamports

    def send_memo_transaction(self, memo: bytes) -> str:
        with self._lock:
            self._check_connected("sendTransaction")
            if self._send_errors:
                raise self._send_errors.pop(0)
            if self.balance_lamports < self.FEE_LAMPORTS:
                raise LedgerRpcError(
                    "sendTransaction", -32002,
                    "Transaction simulation failed (insufficient funds: InsufficientFundsForFee)",
                )

            nonce = next(self._nonce).to_bytes(8, "big")
            signature = str(Signature.from_bytes(self._signer.sign(bytes(memo) + nonce)))
            self.transactions[signature] = LedgerTransaction(
                signature=signature,
                slot=self.block_height,
                block_time=int(self._clock.now().timestamp()),
                fee=self.FEE_LAMPORTS,
                memos=[bytes(memo).decode("utf-8")],
            )
            self.balance_lamports -= self.FEE_LAMPORTS
            self.block_height += 1
            return signature

    def confirm_transaction(self, signature: str, timeout: float) -> None:
        with self._lock:
            self._check_connected("getSignatureStatuses")
            if self._confirm_errors:
                raise self._confirm_errors.pop(0)
            if signature not in self.transactions:
                raise ConfirmationTimeoutError(
                    "Confirmation timeout: transaction unknown to ledger"
                )

    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        with self._lock:
            self._check_connected("getTransaction")
            return self.transactions.get(signature)

    @property
    def memo_count(self) -> int:
        return len(self.transactions)
