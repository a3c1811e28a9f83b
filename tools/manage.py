#!/usr/bin/env python3
"""
Telemetry Anchor Management CLI

Commands:
- run: Run the pipeline (stream consumer, scheduler, reconciler)
- init-schema: Create the PostgreSQL tables
- anchor-window: Anchor one time window now
- reconcile: Run one retry pass now
- list-batches: List stored batches, newest first
- stats: Print pipeline statistics
- health: Check the batch store and the ledger
- generate-wallet: Generate an anchoring wallet keypair
- publish-sample: Publish sample telemetry entries to the stream

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage run
    python -m tools.manage anchor-window --start 2024-05-01T10:00:00Z
    python -m tools.manage list-batches --limit 20 --json
"""

import argparse
import json
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _build(with_consumer: bool = False):
    from telemetry_anchor.main import build_pipeline
    return build_pipeline(with_consumer=with_consumer)


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cmd_run(args):
    """Run the pipeline until interrupted."""
    from telemetry_anchor.observability import setup_logging

    setup_logging()
    pipeline = _build(with_consumer=True)
    pipeline.run_forever()


def cmd_init_schema(args):
    """Create tables and indexes."""
    from telemetry_anchor.config import Settings
    from telemetry_anchor.db import InMemoryBatchStore
    from telemetry_anchor.main import create_batch_store

    store = create_batch_store(Settings.from_env())
    if isinstance(store, InMemoryBatchStore):
        print("No database configured (set DATABASE_URL). Nothing to do.")
        return 1
    store.init_schema()
    print("[OK] Schema created")


def cmd_anchor_window(args):
    """Anchor the batches of one window."""
    from telemetry_anchor.core import TimeWindow, WindowedScheduler, previous_window, window_for

    pipeline = _build()
    if pipeline.dispatcher is None:
        print("Anchoring is disabled (SOLANA_ENABLED=false)")
        return 1

    config = pipeline.settings.anchoring
    if args.start:
        window = window_for(_parse_time(args.start), config.window_seconds)
    else:
        window = previous_window(pipeline.clock.now(), config.window_seconds)
    if args.end:
        window = TimeWindow(start=window.start, end=_parse_time(args.end))

    scheduler = pipeline.scheduler or WindowedScheduler(
        pipeline.store, pipeline.dispatcher, config, pipeline.clock
    )
    print(f"Anchoring window {window}...")
    summary = scheduler.trigger_manual(window)
    if summary is None:
        print("[FAIL] Skipped: anchoring client unhealthy or a tick is already running")
        return 1
    print(json.dumps(summary.to_dict(), indent=2))


def cmd_reconcile(args):
    """Run one retry pass."""
    pipeline = _build()
    if pipeline.reconciler is None:
        print("Anchoring is disabled (SOLANA_ENABLED=false)")
        return 1

    result = pipeline.reconciler.run_pass()
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.ran else 1


def cmd_list_batches(args):
    """List stored batches."""
    pipeline = _build()
    batches = pipeline.store.list_batches(limit=args.limit, offset=args.offset)

    if args.json:
        print(json.dumps([b.model_dump(mode="json") for b in batches], indent=2))
        return

    if not batches:
        print("No batches stored.")
        return

    for b in batches:
        print(
            f"{b.id}  {b.anchor.status.value:<11}  {b.message_count:>6} msgs  "
            f"{b.start_timestamp.isoformat()} .. {b.end_timestamp.isoformat()}  "
            f"retries={b.anchor.retry_count}"
        )
        if b.anchor.signature:
            print(f"    signature: {b.anchor.signature}")
        if b.anchor.last_error:
            print(f"    last error: {b.anchor.last_error}")


def cmd_stats(args):
    """Print pipeline statistics."""
    pipeline = _build()
    if pipeline.client is not None:
        pipeline.client.check_health()
    print(json.dumps(pipeline.get_statistics(), indent=2, default=str))


def cmd_health(args):
    """Run health checks."""
    pipeline = _build()
    status = pipeline.check_health()

    print("=== Telemetry Anchor Health Check ===\n")
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        print(f"{name}: {marker}")
        for key, value in check.items():
            if key != "status" and value is not None:
                print(f"  {key}: {value}")
    print(f"\n=== Health Check Complete ({status.duration_ms} ms) ===")
    return 0 if status.healthy else 1


def cmd_generate_wallet(args):
    """Generate an anchoring wallet."""
    from telemetry_anchor.core import WalletSigner

    signer = WalletSigner.generate()
    print("\n[OK] Wallet generated")
    print(f"  Address: {signer.address}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {signer.secret_base58()}")
    print("\n  Set this environment variable:")
    print(f"  SOLANA_PRIVATE_KEY={signer.secret_base58()}")
    print("\n  Fund it on devnet with:")
    print(f"  solana airdrop 1 {signer.address} --url devnet")


def sample_entry(device_id: str, received_at: datetime) -> dict:
    """One plausible telemetry entry in stream field form."""
    return {
        "messageId": str(uuid4()),
        "topic": f"tenants/demo/sites/plant-1/devices/{device_id}/telemetry",
        "payload": {
            "temperature": round(random.uniform(18.0, 26.0), 2),
            "humidity": round(random.uniform(30.0, 60.0), 1),
            "battery": random.randint(20, 100),
        },
        "receivedAt": received_at.isoformat().replace("+00:00", "Z"),
        "tenantId": "demo",
        "siteId": "plant-1",
        "deviceId": device_id,
        "location": {
            "lat": round(52.52 + random.uniform(-0.01, 0.01), 6),
            "lon": round(13.405 + random.uniform(-0.01, 0.01), 6),
        },
    }


def cmd_publish_sample(args):
    """Publish sample entries to the stream."""
    from telemetry_anchor.config import StreamConfig
    from telemetry_anchor.stream import RedisStreamConsumer

    publisher = RedisStreamConsumer(StreamConfig.from_env())
    now = datetime.now(timezone.utc)
    for i in range(args.count):
        device_id = args.device_id or f"sensor-{i % args.devices + 1:03d}"
        publisher.publish(sample_entry(device_id, now + timedelta(milliseconds=i)))
    publisher.close()
    print(f"[OK] Published {args.count} entries to {publisher.config.stream}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Telemetry Anchor Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("run", help="Run the pipeline")
    subparsers.add_parser("init-schema", help="Create the PostgreSQL tables")

    p_window = subparsers.add_parser("anchor-window", help="Anchor one time window now")
    p_window.add_argument("--start", help="Any time inside the window (default: last elapsed window)")
    p_window.add_argument("--end", help="Override the window end")

    subparsers.add_parser("reconcile", help="Run one retry pass now")

    p_list = subparsers.add_parser("list-batches", help="List stored batches")
    p_list.add_argument("--limit", type=int, default=50)
    p_list.add_argument("--offset", type=int, default=0)
    p_list.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers.add_parser("stats", help="Print pipeline statistics")
    subparsers.add_parser("health", help="Check the batch store and the ledger")
    subparsers.add_parser("generate-wallet", help="Generate an anchoring wallet")

    p_publish = subparsers.add_parser("publish-sample", help="Publish sample telemetry entries")
    p_publish.add_argument("--count", type=int, default=100)
    p_publish.add_argument("--devices", type=int, default=5)
    p_publish.add_argument("--device-id", help="Use one device id for every entry")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "run": cmd_run,
        "init-schema": cmd_init_schema,
        "anchor-window": cmd_anchor_window,
        "reconcile": cmd_reconcile,
        "list-batches": cmd_list_batches,
        "stats": cmd_stats,
        "health": cmd_health,
        "generate-wallet": cmd_generate_wallet,
        "publish-sample": cmd_publish_sample,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
