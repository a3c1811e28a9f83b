"""
Telemetry Anchor - batching, hashing and on-chain anchoring of device telemetry.

Messages are read from a Redis stream, folded into batches, hashed
deterministically, persisted, and a compact proof record for each batch is
written to the Solana ledger as a memo transaction.
"""

__version__ = "0.1.0"
