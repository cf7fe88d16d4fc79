"""Ledger: balances and the append-only transaction log."""

from .ledger_service import (
    ConversionResult,
    LedgerReceipt,
    LedgerService,
    ReversalResult,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)

__all__ = [
    "ConversionResult",
    "LedgerReceipt",
    "LedgerService",
    "ReversalResult",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
