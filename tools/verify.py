#!/usr/bin/env python3
"""
Telemetry Batch Verifier

Checks a stored batch end to end:
1. Every message hash is recomputed from its device, receive time and payload
2. The batch hash is recomputed from the message hashes
3. The proof record is read back from the ledger transaction and compared
   with the stored batch

Usage:
    python -m tools.verify <batch_id>
    python -m tools.verify <batch_id> --verbose
    python -m tools.verify <batch_id> --json

Exit codes:
    0 - VERIFIED: Stored contents match the on-chain record
    1 - TAMPERED: A recomputed hash or the on-chain record does not match
    2 - NOT_ANCHORED: The batch has no confirmed anchor (or the ledger is unreachable)
    3 - NOT_FOUND: No batch with that id
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from telemetry_anchor.core import (  # noqa: E402
    AnchoringClient,
    Hasher,
    LedgerNetworkError,
    VerificationError,
)
from telemetry_anchor.db import BatchStore  # noqa: E402
from telemetry_anchor.schemas import AnchorStatus  # noqa: E402


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    NOT_ANCHORED = "NOT_ANCHORED"
    NOT_FOUND = "NOT_FOUND"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.NOT_ANCHORED: 2,
    VerificationResult.NOT_FOUND: 3,
}


@dataclass
class VerificationReport:
    result: VerificationResult
    batch_id: str
    message_count: int = 0
    signature: Optional[str] = None
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.result]

    def to_dict(self) -> dict:
        return {
            "result": self.result.value,
            "batch_id": self.batch_id,
            "message_count": self.message_count,
            "signature": self.signature,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "warnings": self.warnings,
            "details": self.details,
        }


# ============================================================
# Batch Verifier
# ============================================================

class BatchVerifier:
    """Verifies one stored batch against its recomputed hashes and the ledger."""

    def __init__(self, store: BatchStore, client: Optional[AnchoringClient], verbose: bool = False):
        self.store = store
        self.client = client
        self.verbose = verbose

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self, batch_id: str) -> VerificationReport:
        report = VerificationReport(result=VerificationResult.VERIFIED, batch_id=batch_id)

        self.log(f"Loading batch {batch_id}...")
        record = self.store.get_batch(batch_id)
        if record is None:
            report.checks_failed.append("Batch not found in store")
            report.result = VerificationResult.NOT_FOUND
            return report

        report.message_count = record.message_count
        report.signature = record.anchor.signature
        report.details["anchor_status"] = record.anchor.status.value
        report.details["stored_batch_hash"] = record.batch_hash

        # 1-2. Recompute hashes from stored messages
        self.log("Recomputing message and batch hashes...")
        messages = self.store.get_messages(batch_id)
        content = Hasher.verify_batch_contents(record, messages)
        report.details["computed_batch_hash"] = content.computed_batch_hash
        if content.mismatched_message_ids:
            report.checks_failed.append(
                f"{len(content.mismatched_message_ids)} message hashes do not match their contents"
            )
            report.details["mismatched_message_ids"] = content.mismatched_message_ids[:20]
        if content.computed_batch_hash != record.batch_hash:
            report.checks_failed.append("Recomputed batch hash does not match stored batch hash")
        if not content.valid:
            report.result = VerificationResult.TAMPERED
            return report
        report.checks_passed.append(f"All {content.message_count} message hashes recomputed")
        report.checks_passed.append("Batch hash recomputed")

        # 3. Ledger
        if record.anchor.status != AnchorStatus.CONFIRMED or not record.anchor.signature:
            report.checks_failed.append(f"Batch is not anchored (status {record.anchor.status.value})")
            if record.anchor.last_error:
                report.details["last_error"] = record.anchor.last_error
            report.result = VerificationResult.NOT_ANCHORED
            return report

        if self.client is None:
            report.warnings.append("Anchoring is disabled; on-chain record not checked")
            report.result = VerificationResult.NOT_ANCHORED
            return report

        self.log(f"Fetching transaction {record.anchor.signature}...")
        try:
            verification = self.client.verify_batch(record.anchor.signature)
        except VerificationError as e:
            report.checks_failed.append(f"On-chain record unreadable: {e}")
            report.result = VerificationResult.TAMPERED
            return report
        except LedgerNetworkError as e:
            report.checks_failed.append(f"Ledger unreachable: {e}")
            report.result = VerificationResult.NOT_ANCHORED
            return report

        report.details["explorer_url"] = verification.explorer_url
        report.details["block_time"] = verification.block_time
        report.details["slot"] = verification.slot
        report.details["on_chain_record"] = verification.record
        origin = verification.record.get("origin") or {}
        if origin.get("wallet"):
            report.details["anchored_by"] = origin["wallet"]

        matches = self.client.compare_with_batch(verification, record)
        for name, ok in matches.items():
            if name == "all_match":
                continue
            if ok:
                report.checks_passed.append(f"On-chain {name} matches")
            else:
                report.checks_failed.append(f"On-chain {name} does not match")
        if not matches["all_match"]:
            report.result = VerificationResult.TAMPERED
        return report


# ============================================================
# CLI
# ============================================================

_BANNERS = {
    VerificationResult.VERIFIED: "[VERIFIED] - Stored batch matches its on-chain record",
    VerificationResult.TAMPERED: "[TAMPERED] - Hash mismatch detected",
    VerificationResult.NOT_ANCHORED: "[NOT_ANCHORED] - No confirmed on-chain record",
    VerificationResult.NOT_FOUND: "[NOT_FOUND] - No such batch",
}


def print_report(report: VerificationReport, json_output: bool = False):
    """Print verification report."""
    if json_output:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return

    print("\n" + "=" * 60)
    print(f"  {_BANNERS[report.result]}")
    print("=" * 60)

    print(f"\nBatch ID:  {report.batch_id}")
    print(f"Messages:  {report.message_count}")
    if report.signature:
        print(f"Signature: {report.signature}")
    if report.details.get("explorer_url"):
        print(f"Explorer:  {report.details['explorer_url']}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def build_verifier(verbose: bool = False) -> BatchVerifier:
    """Verifier over the configured store and ledger. Only reads from the ledger."""
    from telemetry_anchor.config import Settings
    from telemetry_anchor.core import SolanaRpcNetwork, WalletSigner
    from telemetry_anchor.main import create_batch_store

    settings = Settings.from_env()
    store = create_batch_store(settings)
    client = None
    if settings.solana.enabled:
        key = settings.solana.private_key
        signer = WalletSigner.from_secret(key) if key else WalletSigner.generate()
        network = SolanaRpcNetwork(
            settings.solana.rpc_url,
            signer,
            timeout=settings.solana.rpc_timeout_seconds,
        )
        client = AnchoringClient(network, settings.anchoring, settings.solana)
    return BatchVerifier(store, client, verbose=verbose)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify a stored telemetry batch against its on-chain proof record",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=NOT_ANCHORED, 3=NOT_FOUND",
    )
    parser.add_argument("batch_id", type=str, help="Id of the batch to verify")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON",
    )

    args = parser.parse_args(argv)

    verifier = build_verifier(verbose=args.verbose)
    report = verifier.verify(args.batch_id)
    print_report(report, json_output=args.json)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
