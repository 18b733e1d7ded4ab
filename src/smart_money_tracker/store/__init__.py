"""Storage layer - Record store, ring buffer and aggregate schemas."""

from smart_money_tracker.store.record_store import (
    Partition,
    RecordStore,
    RecordStoreConfig,
    RecordStoreError,
    RecordSubstrate,
    RecordTooLarge,
    StoreUnavailable,
    SubstrateError,
    hash_key,
)
from smart_money_tracker.store.ring import Ring
from smart_money_tracker.store.schemas import (
    IndexRecord,
    PriceMove,
    SignalOutcome,
    SignalRecord,
    TokenAggregate,
    TrackedToken,
    WalletAggregate,
    apply_price,
    mark_security,
    merge_index_signal,
    merge_token_signal,
    merge_wallet_appearance,
    partition_participants,
    record_delivery,
)

__all__ = [
    "IndexRecord",
    "Partition",
    "PriceMove",
    "RecordStore",
    "RecordStoreConfig",
    "RecordStoreError",
    "RecordSubstrate",
    "RecordTooLarge",
    "Ring",
    "SignalOutcome",
    "SignalRecord",
    "StoreUnavailable",
    "SubstrateError",
    "TokenAggregate",
    "TrackedToken",
    "WalletAggregate",
    "apply_price",
    "hash_key",
    "mark_security",
    "merge_index_signal",
    "merge_token_signal",
    "merge_wallet_appearance",
    "partition_participants",
    "record_delivery",
]
