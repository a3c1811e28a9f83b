"""
Anchoring Client

Writes a compact proof record for each batch into a Solana memo
transaction and reads it back for verification.

KEY CAPABILITY:
    "Given a batch and a transaction signature, prove the ledger holds
    this batch's hash"

record_batch() never raises for ledger problems. Every outcome comes back
as an AnchorResult whose error kind says whether a retry can help:

    TIMEOUT, RATE_LIMITED, NETWORK_ERROR, BLOCKHASH_EXPIRED,
    CLIENT_UNHEALTHY, UNKNOWN_ERROR              -> retryable
    PAYLOAD_TOO_LARGE, INSUFFICIENT_FUNDS,
    INVALID_TRANSACTION                          -> final
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from ..config import AnchoringConfig, SolanaConfig
from ..observability import get_logger
from ..schemas import BatchRecord
from . import proof
from .clock import Clock, SystemClock
from .ledger_client import LAMPORTS_PER_SOL, LedgerNetwork

logger = get_logger(__name__)

CRITICAL_BALANCE_SOL = 0.05
LOW_BALANCE_SOL = 0.1


class AnchorErrorKind(str, Enum):
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    CLIENT_UNHEALTHY = "CLIENT_UNHEALTHY"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    BLOCKHASH_EXPIRED = "BLOCKHASH_EXPIRED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        return self not in _FINAL_KINDS


_FINAL_KINDS = frozenset({
    AnchorErrorKind.MALFORMED_MESSAGE,
    AnchorErrorKind.PAYLOAD_TOO_LARGE,
    AnchorErrorKind.INSUFFICIENT_FUNDS,
    AnchorErrorKind.INVALID_TRANSACTION,
})


def classify_error(error: BaseException | str) -> AnchorErrorKind:
    """
    Map a ledger failure to an error kind by its message.

    Checked in order; the first match wins.
    """
    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return AnchorErrorKind.TIMEOUT
    if "429" in message or "rate limit" in message or "too many requests" in message:
        return AnchorErrorKind.RATE_LIMITED
    if "network" in message or "connection" in message:
        return AnchorErrorKind.NETWORK_ERROR
    if "blockhash" in message:
        return AnchorErrorKind.BLOCKHASH_EXPIRED
    if "insufficient" in message or "balance" in message:
        return AnchorErrorKind.INSUFFICIENT_FUNDS
    if "invalid" in message or "failed" in message:
        return AnchorErrorKind.INVALID_TRANSACTION
    return AnchorErrorKind.UNKNOWN_ERROR


class PayloadTooLargeError(ValueError):
    """The proof record does not fit in the memo byte budget."""

    def __init__(self, size: int, budget: int):
        self.size = size
        self.budget = budget
        super().__init__(f"Proof record is {size} bytes; memo budget is {budget}")


class VerificationError(Exception):
    """Raised when a transaction does not hold a readable proof record."""
    pass


class BalanceTier(str, Enum):
    OK = "ok"
    LOW = "low"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


def balance_tier(balance_sol: Optional[float]) -> BalanceTier:
    if balance_sol is None:
        return BalanceTier.UNKNOWN
    if balance_sol < CRITICAL_BALANCE_SOL:
        return BalanceTier.CRITICAL
    if balance_sol < LOW_BALANCE_SOL:
        return BalanceTier.LOW
    return BalanceTier.OK


@dataclass
class AnchorResult:
    """Outcome of one anchoring attempt."""
    success: bool
    signature: Optional[str] = None
    error: Optional[AnchorErrorKind] = None
    message: Optional[str] = None
    retryable: bool = False
    duration_ms: float = 0.0
    memo_bytes: Optional[int] = None
    reused_signature: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["error"] = self.error.value if self.error else None
        return data


@dataclass
class HealthReport:
    """Ledger connectivity and wallet funding at one point in time."""
    healthy: bool
    connected: bool
    checked_at: datetime
    wallet: str
    network: str
    block_height: Optional[int] = None
    balance_sol: Optional[float] = None
    tier: BalanceTier = BalanceTier.UNKNOWN
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "connected": self.connected,
            "checked_at": self.checked_at.isoformat(),
            "wallet": self.wallet,
            "network": self.network,
            "block_height": self.block_height,
            "balance_sol": self.balance_sol,
            "balance_tier": self.tier.value,
            "error": self.error,
        }


@dataclass
class LedgerVerification:
    """A proof record read back from a confirmed transaction."""
    signature: str
    record: dict[str, Any]
    raw_record: dict[str, Any]
    block_time: Optional[int]
    slot: Optional[int]
    fee: Optional[int]
    explorer_url: str
    matches: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class AnchoringClient:
    """
    Submits and verifies proof records on the ledger.

    Health is checked explicitly with check_health() and cached. While the
    cached report says unhealthy, record_batch() fails fast without touching
    the network; callers refresh health before each pass.
    """

    def __init__(
        self,
        network: LedgerNetwork,
        config: Optional[AnchoringConfig] = None,
        solana: Optional[SolanaConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self._network = network
        self._config = config or AnchoringConfig()
        self._solana = solana or SolanaConfig()
        self._clock = clock or SystemClock()
        self._health: Optional[HealthReport] = None

    @property
    def network(self) -> LedgerNetwork:
        return self._network

    @property
    def wallet_address(self) -> str:
        return self._network.wallet_address

    @property
    def health(self) -> Optional[HealthReport]:
        """Last health report, or None before the first check."""
        return self._health

    @property
    def is_healthy(self) -> bool:
        return self._health is not None and self._health.healthy

    def check_health(self) -> HealthReport:
        """Query block height and wallet balance, and cache the result."""
        now = self._clock.now()
        wallet = self._network.wallet_address
        network_name = self._solana.network
        try:
            height = self._network.get_block_height()
            balance_sol = self._network.get_balance_lamports() / LAMPORTS_PER_SOL
        except Exception as e:
            logger.warning("Ledger health check failed", error=str(e), wallet=wallet)
            report = HealthReport(
                healthy=False,
                connected=False,
                checked_at=now,
                wallet=wallet,
                network=network_name,
                error=str(e),
            )
        else:
            tier = balance_tier(balance_sol)
            healthy = balance_sol >= self._config.min_balance_sol
            report = HealthReport(
                healthy=healthy,
                connected=True,
                checked_at=now,
                wallet=wallet,
                network=network_name,
                block_height=height,
                balance_sol=balance_sol,
                tier=tier,
                error=None if healthy else "Wallet balance below minimum",
            )
            if tier != BalanceTier.OK:
                logger.warning(
                    "Anchoring wallet balance is low",
                    balance_sol=balance_sol,
                    tier=tier.value,
                    wallet=wallet,
                )

        self._health = report
        return report

    def encode_proof(self, batch: BatchRecord, batch_hash: Optional[str] = None) -> bytes:
        """
        Encode the proof record for a batch within the byte budget.

        With the "shrink" oversize policy the auxiliary block is dropped
        when the full record does not fit.

        Raises:
            PayloadTooLargeError: The record cannot be made to fit
        """
        batch_hash = batch_hash or batch.batch_hash
        created_at = self._clock.now()
        budget = self._config.byte_budget
        origin = {"wallet": self._network.wallet_address, "network": self._solana.network}

        memo = proof.encode(proof.build_record(batch, batch_hash, created_at, **origin))
        if len(memo) <= budget:
            return memo

        if self._config.oversize_policy == "shrink":
            header_only = proof.encode(
                proof.build_record(batch, batch_hash, created_at, include_aux=False, **origin)
            )
            if len(header_only) <= budget:
                logger.info(
                    "Proof record shrunk to fit memo budget",
                    batch_id=batch.id,
                    full_bytes=len(memo),
                    shrunk_bytes=len(header_only),
                )
                return header_only

        raise PayloadTooLargeError(len(memo), budget)

    @staticmethod
    def _notify_submitted(callback: Callable[[str], None], batch_id: str, signature: str) -> None:
        # The transaction is already out; a failing callback must not stop
        # us waiting for its confirmation
        try:
            callback(signature)
        except Exception as e:
            logger.error(
                "Failed to record submitted transaction",
                batch_id=batch_id,
                signature=signature,
                error=str(e),
            )

    def _already_anchored(self, batch: BatchRecord, batch_hash: str, signature: str) -> bool:
        """True if an earlier, unconfirmed submission for this batch has since landed."""
        try:
            tx = self._network.get_transaction(signature)
        except Exception as e:
            logger.debug("Could not look up earlier submission", signature=signature, error=str(e))
            return False
        if tx is None or tx.err:
            return False
        for memo in tx.memos:
            try:
                record = proof.expand(proof.decode(memo))
            except proof.ProofRecordError:
                continue
            if record.get("batch_id") == batch.id and record.get("batch_hash") == batch_hash:
                return True
        return False

    def record_batch(
        self,
        batch: BatchRecord,
        batch_hash: Optional[str] = None,
        previous_signature: Optional[str] = None,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> AnchorResult:
        """
        Anchor one batch and wait for confirmation.

        Args:
            batch: The persisted batch
            batch_hash: Hash to anchor (defaults to batch.batch_hash)
            previous_signature: Signature of an earlier submission whose
                confirmation was never observed; if it has landed since, it
                is reported as the result instead of sending again
            on_submitted: Called with the signature as soon as the
                transaction is sent, before waiting for confirmation
        """
        start = self._clock.monotonic()
        batch_hash = batch_hash or batch.batch_hash

        def elapsed_ms() -> float:
            return round((self._clock.monotonic() - start) * 1000, 2)

        if self._health is None:
            self.check_health()
        if not self.is_healthy:
            return AnchorResult(
                success=False,
                error=AnchorErrorKind.CLIENT_UNHEALTHY,
                message=self._health.error if self._health else "Ledger health unknown",
                retryable=True,
                duration_ms=elapsed_ms(),
            )

        if previous_signature and self._already_anchored(batch, batch_hash, previous_signature):
            logger.info(
                "Earlier submission confirmed on ledger",
                batch_id=batch.id,
                signature=previous_signature,
            )
            return AnchorResult(
                success=True,
                signature=previous_signature,
                duration_ms=elapsed_ms(),
                reused_signature=True,
            )

        try:
            memo = self.encode_proof(batch, batch_hash)
        except PayloadTooLargeError as e:
            logger.error("Proof record too large", batch_id=batch.id, size=e.size, budget=e.budget)
            return AnchorResult(
                success=False,
                error=AnchorErrorKind.PAYLOAD_TOO_LARGE,
                message=str(e),
                retryable=False,
                duration_ms=elapsed_ms(),
                memo_bytes=e.size,
            )

        logger.info("Recording batch to ledger", batch_id=batch.id, message_count=batch.message_count)
        signature = None
        try:
            signature = self._network.send_memo_transaction(memo)
            if on_submitted is not None:
                self._notify_submitted(on_submitted, batch.id, signature)
            self._network.confirm_transaction(signature, self._solana.confirm_timeout_seconds)
        except Exception as e:
            kind = classify_error(e)
            logger.warning(
                "Failed to record batch",
                batch_id=batch.id,
                signature=signature,
                error=str(e),
                error_kind=kind.value,
                retryable=kind.retryable,
            )
            return AnchorResult(
                success=False,
                signature=signature,
                error=kind,
                message=str(e),
                retryable=kind.retryable,
                duration_ms=elapsed_ms(),
                memo_bytes=len(memo),
            )

        duration = elapsed_ms()
        logger.info(
            "Batch recorded on ledger",
            batch_id=batch.id,
            signature=signature,
            duration_ms=duration,
            memo_bytes=len(memo),
        )
        return AnchorResult(
            success=True,
            signature=signature,
            duration_ms=duration,
            memo_bytes=len(memo),
        )

    def verify_batch(self, signature: str) -> LedgerVerification:
        """
        Read a proof record back from the ledger.

        Raises:
            VerificationError: No transaction, no memo, or no readable record
            LedgerNetworkError: The ledger could not be queried
        """
        tx = self._network.get_transaction(signature)
        if tx is None:
            raise VerificationError(f"Transaction {signature} not found")
        if not tx.memos:
            raise VerificationError(f"Memo instruction not found in transaction {signature}")

        raw = None
        last_error = None
        for memo in tx.memos:
            try:
                raw = proof.decode(memo)
                break
            except proof.ProofRecordError as e:
                last_error = e
        if raw is None:
            raise VerificationError(f"Failed to parse memo data: {last_error}")

        return LedgerVerification(
            signature=signature,
            record=proof.expand(raw),
            raw_record=raw,
            block_time=tx.block_time,
            slot=tx.slot,
            fee=tx.fee,
            explorer_url=self.explorer_url(signature),
        )

    @staticmethod
    def compare_with_batch(verification: LedgerVerification, batch: BatchRecord) -> dict[str, bool]:
        """Field-by-field comparison of an on-chain record with the stored batch."""
        record = verification.record
        matches = {
            "batch_id": record.get("batch_id") == batch.id,
            "message_count": record.get("message_count") == batch.message_count,
            "batch_hash": record.get("batch_hash") == batch.batch_hash,
        }
        matches["all_match"] = all(matches.values())
        verification.matches = matches
        return matches

    def explorer_url(self, signature: str) -> str:
        cluster = "" if self._solana.is_mainnet else f"?cluster={self._solana.network}"
        return f"https://explorer.solana.com/tx/{signature}{cluster}"
