# Core pipeline services
from .clock import Clock, SystemClock, ManualClock
from .hasher import Hasher, CanonicalSerializationError, ContentVerification
from .accumulator import (
    AccumulatorState,
    BatchAccumulator,
    BatchPersistenceError,
)
from .signer import WalletSigner, WalletKeyError
from .ledger_client import (
    LedgerNetwork,
    LedgerNetworkError,
    LedgerRpcError,
    LedgerTransaction,
    TransactionFailedError,
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    SolanaRpcNetwork,
    InMemoryLedgerNetwork,
)
from .anchor import (
    AnchoringClient,
    AnchorErrorKind,
    AnchorResult,
    BalanceTier,
    HealthReport,
    LedgerVerification,
    PayloadTooLargeError,
    VerificationError,
    classify_error,
)
from .dispatch import AnchorDispatcher, DispatchSummary
from .reconciler import RetryReconciler, PassResult
from .anchor_scheduler import (
    WindowedScheduler,
    TimeWindow,
    window_for,
    previous_window,
)
from .tasks import PeriodicTask

__all__ = [
    "Clock",
    "SystemClock",
    "ManualClock",
    "Hasher",
    "CanonicalSerializationError",
    "ContentVerification",
    "AccumulatorState",
    "BatchAccumulator",
    "BatchPersistenceError",
    "WalletSigner",
    "WalletKeyError",
    "LedgerNetwork",
    "LedgerNetworkError",
    "LedgerRpcError",
    "LedgerTransaction",
    "TransactionFailedError",
    "BlockhashExpiredError",
    "ConfirmationTimeoutError",
    "SolanaRpcNetwork",
    "InMemoryLedgerNetwork",
    "AnchoringClient",
    "AnchorErrorKind",
    "AnchorResult",
    "BalanceTier",
    "HealthReport",
    "LedgerVerification",
    "PayloadTooLargeError",
    "VerificationError",
    "classify_error",
    "AnchorDispatcher",
    "DispatchSummary",
    "RetryReconciler",
    "PassResult",
    "WindowedScheduler",
    "TimeWindow",
    "window_for",
    "previous_window",
    "PeriodicTask",
]
