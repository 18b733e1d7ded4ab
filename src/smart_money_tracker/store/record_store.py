"""Durable record store on a size-limited messaging substrate.

Each record is one channel message::

    #<key with non-alphanumerics replaced by _>
    {"...": "...", "_t": 1700000000000, "_exp": 1700604800000}

Records are grouped into partitions (index, signal, token, wallet), each with
its own target channel and retention policy. Reads are served from an
in-process cache. A substrate can only hand back its pinned message, so every
flush also writes a directory document to the index target and pins it::

    {"version": 1, "updated_at": 1700000000000,
     "stores": {"501": {"token": {"So1...": {"h": 42, "r": {...}}}}}}

``load`` restores every partition's records and message handles from that
directory, so a fresh process keeps editing and sweeping records written by an
earlier one. Chains sharing one index chat keep their
own namespace inside the same directory.

Lifecycle per process::

    store = RecordStore(substrate, targets)
    await store.load(Partition.INDEX)      # once, before any get()
    store.stage(Partition.TOKEN, key, {...})
    await store.flush()                    # once, at the end of the cycle
    await store.sweep(Partition.SIGNAL)    # from the maintenance job
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from smart_money_tracker.models import to_epoch_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORD_CHARS = 3800
INDEX_ANCHOR_KEY = "main"
DEFAULT_NAMESPACE = "default"

DIRECTORY_FILENAME = "records.json"
DIRECTORY_VERSION = 1

STORED_AT_FIELD = "_t"
EXPIRES_AT_FIELD = "_exp"
METADATA_FIELDS = (STORED_AT_FIELD, EXPIRES_AT_FIELD)

SHORT_RETENTION = timedelta(days=7)
LONG_RETENTION = timedelta(days=30)
QUALITY_RETENTION_THRESHOLD = 0.5

_KEY_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


class Partition(str, Enum):
    """Logical record types, each stored and swept independently."""

    INDEX = "index"
    SIGNAL = "signal"
    TOKEN = "token"
    WALLET = "wallet"


class SubstrateError(Exception):
    """Raised by a substrate when a send/edit/delete/pin/read fails."""


class RecordStoreError(Exception):
    """Base exception for record store errors."""


class RecordTooLarge(RecordStoreError):
    """Raised when a serialized record exceeds the substrate ceiling."""

    def __init__(self, partition: Partition, key: str, size: int, limit: int) -> None:
        super().__init__(f"Record {partition.value}/{key} too large: {size}/{limit} chars")
        self.partition = partition
        self.key = key
        self.size = size
        self.limit = limit


class StoreUnavailable(RecordStoreError):
    """Raised when the substrate cannot be reached to bootstrap the store."""


class RecordSubstrate(Protocol):
    async def send(self, target: str, text: str) -> int:
        raise NotImplementedError

    async def edit(self, target: str, handle: int, text: str) -> None:
        raise NotImplementedError

    async def delete(self, target: str, handle: int) -> None:
        raise NotImplementedError

    async def send_file(self, target: str, filename: str, text: str) -> int:
        raise NotImplementedError

    async def edit_file(self, target: str, handle: int, filename: str, text: str) -> None:
        raise NotImplementedError

    async def read_anchor(self, target: str) -> tuple[int, str] | None:
        """Return the pinned message's handle and text (or file contents)."""
        raise NotImplementedError

    async def pin(self, target: str, handle: int) -> None:
        raise NotImplementedError


RetentionPolicy = Callable[[Mapping[str, Any]], timedelta | None]


def never_expires(record: Mapping[str, Any]) -> timedelta | None:
    return None


def short_retention(record: Mapping[str, Any]) -> timedelta | None:
    return SHORT_RETENTION


def quality_retention(record: Mapping[str, Any]) -> timedelta | None:
    """Keep well-scored aggregates for 30 days, everything else for 7."""
    try:
        score = float(record.get("average_score") or 0.0)
    except (TypeError, ValueError):
        score = 0.0
    return LONG_RETENTION if score >= QUALITY_RETENTION_THRESHOLD else SHORT_RETENTION


DEFAULT_RETENTION: dict[Partition, RetentionPolicy] = {
    Partition.INDEX: never_expires,
    Partition.SIGNAL: short_retention,
    Partition.TOKEN: quality_retention,
    Partition.WALLET: quality_retention,
}


def hash_key(key: str) -> str:
    """Header line identifying a record's key in its message text."""
    return "#" + _KEY_UNSAFE.sub("_", key)


def strip_metadata(record: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k not in METADATA_FIELDS}


@dataclass(frozen=True)
class RecordStoreConfig:
    max_record_chars: int = DEFAULT_MAX_RECORD_CHARS
    retention: Mapping[Partition, RetentionPolicy] = field(default_factory=lambda: dict(DEFAULT_RETENTION))
    namespace: str = DEFAULT_NAMESPACE


class RecordStore:
    """Key/value records persisted as messages, cached in-process.

    The store enforces only the hard size ceiling. Callers keep their own
    bounded collections capped (see ``store.ring.Ring``); an oversized record
    raises ``RecordTooLarge`` and is never truncated.

    The cache is not safe for concurrent use from multiple tasks. One
    pipeline cycle owns a store instance at a time.
    """

    def __init__(
        self,
        substrate: RecordSubstrate,
        targets: Mapping[Partition, str],
        *,
        config: RecordStoreConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        missing = [p.value for p in Partition if not targets.get(p)]
        if missing:
            raise ValueError(f"No substrate target for partitions: {', '.join(missing)}")

        self._substrate = substrate
        self._targets = dict(targets)
        self._cfg = config or RecordStoreConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

        self._cache: dict[Partition, dict[str, dict[str, Any]]] = {p: {} for p in Partition}
        self._handles: dict[Partition, dict[str, int]] = {p: {} for p in Partition}
        self._dirty: dict[Partition, set[str]] = {p: set() for p in Partition}
        self._loaded: set[Partition] = set()

        self._directory_handle: int | None = None
        self._directory_pinned: int | None = None
        self._directory_dirty = False
        # Other namespaces found in a shared directory, written back untouched
        self._foreign: dict[str, Any] = {}

    # -- serialization -----------------------------------------------------

    def _expiry(self, partition: Partition, record: Mapping[str, Any]) -> int | None:
        stored_at = record.get(STORED_AT_FIELD)
        if stored_at is None:
            expires_at = record.get(EXPIRES_AT_FIELD)
            return int(expires_at) if expires_at is not None else None
        retention = self._cfg.retention.get(partition, short_retention)(record)
        if retention is None:
            return None
        return int(stored_at) + int(retention.total_seconds() * 1000)

    def _stamp(self, partition: Partition, payload: Mapping[str, Any]) -> dict[str, Any]:
        record = strip_metadata(payload)
        record[STORED_AT_FIELD] = to_epoch_ms(self._clock())
        record[EXPIRES_AT_FIELD] = self._expiry(partition, record)
        return record

    def _encode(self, partition: Partition, key: str, record: Mapping[str, Any]) -> str:
        body = json.dumps(record, separators=(",", ":"), ensure_ascii=False)
        if len(body) > self._cfg.max_record_chars:
            raise RecordTooLarge(partition, key, len(body), self._cfg.max_record_chars)
        return f"{hash_key(key)}\n{body}"

    # -- reads -------------------------------------------------------------

    def get(self, partition: Partition, key: str) -> dict[str, Any] | None:
        """Cache-only read; returns a copy including ``_t``/``_exp``."""
        record = self._cache[partition].get(key)
        return dict(record) if record is not None else None

    def handle(self, partition: Partition, key: str) -> int | None:
        return self._handles[partition].get(key)

    def keys(self, partition: Partition) -> list[str]:
        return list(self._cache[partition])

    def is_loaded(self, partition: Partition) -> bool:
        return partition in self._loaded

    @property
    def dirty_count(self) -> int:
        return sum(len(keys) for keys in self._dirty.values())

    # -- writes ------------------------------------------------------------

    async def store(self, partition: Partition, key: str, payload: Mapping[str, Any]) -> int:
        """Write ``payload`` as a new message and return its handle.

        Raises:
            RecordTooLarge: If the serialized record exceeds the ceiling.
            SubstrateError: If the substrate rejects the send.
        """
        record = self._stamp(partition, payload)
        text = self._encode(partition, key, record)
        handle = await self._substrate.send(self._targets[partition], text)

        self._cache[partition][key] = record
        self._handles[partition][key] = handle
        self._dirty[partition].discard(key)
        self._directory_dirty = True
        logger.debug("Stored %s/%s as message %s", partition.value, key, handle)
        return handle

    async def update(self, partition: Partition, key: str, payload: Mapping[str, Any]) -> int:
        """Merge ``payload`` into the cached record and edit it in place.

        Falls back to ``store`` when the key has no handle yet or when the
        substrate refuses the edit (for example, the message was deleted).
        """
        handle = self._handles[partition].get(key)
        existing = self._cache[partition].get(key) or {}
        merged = {**strip_metadata(existing), **strip_metadata(payload)}
        if handle is None:
            return await self.store(partition, key, merged)

        record = self._stamp(partition, merged)
        text = self._encode(partition, key, record)
        try:
            await self._substrate.edit(self._targets[partition], handle, text)
        except SubstrateError as e:
            logger.warning(
                "Edit of %s/%s (message %s) failed, re-storing: %s",
                partition.value,
                key,
                handle,
                e,
            )
            return await self.store(partition, key, merged)

        self._cache[partition][key] = record
        self._dirty[partition].discard(key)
        self._directory_dirty = True
        return handle

    async def upsert(self, partition: Partition, key: str, payload: Mapping[str, Any]) -> int:
        if key in self._handles[partition]:
            return await self.update(partition, key, payload)
        return await self.store(partition, key, payload)

    def stage(self, partition: Partition, key: str, payload: Mapping[str, Any]) -> None:
        """Replace the cached record and defer the substrate write to ``flush``.

        Raises:
            RecordTooLarge: If the serialized record exceeds the ceiling.
        """
        record = self._stamp(partition, payload)
        self._encode(partition, key, record)
        self._cache[partition][key] = record
        self._dirty[partition].add(key)

    async def flush(self) -> int:
        """Write every staged record, then the directory if anything moved.

        Records that fail to write stay dirty and are retried on the next
        flush of this instance. They are listed in the directory without a
        handle, so a later process writes them too. Returns the number of
        records written.
        """
        written = 0
        for partition in Partition:
            for key in sorted(self._dirty[partition]):
                record = self._cache[partition].get(key)
                if record is None:
                    self._dirty[partition].discard(key)
                    continue
                try:
                    await self.upsert(partition, key, strip_metadata(record))
                    written += 1
                except (SubstrateError, RecordTooLarge) as e:
                    logger.error("Failed to flush %s/%s: %s", partition.value, key, e)

        if written:
            logger.info("Flushed %d record(s)", written)
        await self._write_directory()
        return written

    # -- directory ---------------------------------------------------------

    def _directory_entries(self) -> dict[str, dict[str, Any]]:
        entries: dict[str, dict[str, Any]] = {}
        for partition in Partition:
            records = self._cache[partition]
            if not records:
                continue
            entries[partition.value] = {
                key: {"h": self._handles[partition].get(key), "r": record} for key, record in records.items()
            }
        return entries

    def _encode_directory(self) -> str:
        document = {
            "version": DIRECTORY_VERSION,
            "updated_at": to_epoch_ms(self._clock()),
            "stores": {**self._foreign, self._cfg.namespace: self._directory_entries()},
        }
        return json.dumps(document, separators=(",", ":"), ensure_ascii=False)

    async def _write_directory(self) -> None:
        if not self._directory_dirty:
            return
        target = self._targets[Partition.INDEX]
        text = self._encode_directory()

        handle = self._directory_handle
        if handle is not None:
            try:
                await self._substrate.edit_file(target, handle, DIRECTORY_FILENAME, text)
            except SubstrateError as e:
                logger.warning("Edit of record directory (message %s) failed, re-sending: %s", handle, e)
                handle = None
        if handle is None:
            try:
                handle = await self._substrate.send_file(target, DIRECTORY_FILENAME, text)
            except SubstrateError as e:
                logger.error("Failed to write record directory: %s", e)
                return

        self._directory_handle = handle
        self._directory_dirty = False
        if self._directory_pinned == handle:
            return
        try:
            await self._substrate.pin(target, handle)
            self._directory_pinned = handle
            logger.debug("Pinned record directory message %s", handle)
        except SubstrateError as e:
            logger.warning("Failed to pin record directory: %s", e)

    def _restore_directory(self, handle: int, text: str) -> bool:
        try:
            document = json.loads(text)
        except ValueError as e:
            logger.warning("Corrupt record directory: %s", e)
            return False
        stores = document.get("stores") if isinstance(document, dict) else None
        if not isinstance(stores, dict):
            logger.warning("Pinned document is not a record directory")
            return False

        self._directory_handle = handle
        self._directory_pinned = handle
        self._foreign = {name: entries for name, entries in stores.items() if name != self._cfg.namespace}
        own = stores.get(self._cfg.namespace)
        if not isinstance(own, dict):
            logger.info("Record directory has no %r namespace yet, starting empty", self._cfg.namespace)
            return False

        restored = 0
        for name, entries in own.items():
            try:
                partition = Partition(name)
            except ValueError:
                logger.warning("Unknown partition %r in record directory", name)
                continue
            if not isinstance(entries, dict):
                continue
            for key, entry in entries.items():
                record = entry.get("r") if isinstance(entry, dict) else None
                if not isinstance(record, dict) or key in self._cache[partition]:
                    continue
                self._cache[partition][key] = record
                if entry.get("h") is None:
                    self._dirty[partition].add(key)
                else:
                    self._handles[partition][key] = int(entry["h"])
                restored += 1
            self._loaded.add(partition)

        logger.info("Loaded %d record(s) from directory message %s", restored, handle)
        return True

    def _restore_text_anchor(self, partition: Partition, handle: int, text: str) -> bool:
        """Recover a bare index record pinned before directories were written."""
        header, _, body = text.partition("\n")
        if partition is not Partition.INDEX or header.strip() != hash_key(INDEX_ANCHOR_KEY):
            logger.warning("Pinned message in %s target is not an anchor record", partition.value)
            return False
        try:
            record = json.loads(body)
        except ValueError as e:
            logger.warning("Corrupt %s anchor record: %s", partition.value, e)
            return False
        if not isinstance(record, dict):
            logger.warning("Unexpected %s anchor payload type: %s", partition.value, type(record).__name__)
            return False

        self._cache[partition][INDEX_ANCHOR_KEY] = record
        self._handles[partition][INDEX_ANCHOR_KEY] = handle
        # Replace the bare pin with a directory on the next flush
        self._directory_dirty = True
        logger.info("Loaded %s anchor from message %s", partition.value, handle)
        return True

    # -- lifecycle ---------------------------------------------------------

    async def load(self, partition: Partition = Partition.INDEX) -> bool:
        """Bootstrap the cache from the message pinned in the partition's target.

        The pinned record directory lives in the index target and restores
        every partition at once. Returns True when records were recovered.

        Raises:
            StoreUnavailable: If the substrate cannot be read.
        """
        self._loaded.add(partition)
        try:
            anchor = await self._substrate.read_anchor(self._targets[partition])
        except SubstrateError as e:
            raise StoreUnavailable(f"Cannot read {partition.value} anchor: {e}") from e
        if anchor is None:
            logger.info("No %s anchor found, starting empty", partition.value)
            return False

        handle, text = anchor
        if text.lstrip().startswith("{"):
            return self._restore_directory(handle, text)
        return self._restore_text_anchor(partition, handle, text)

    async def sweep(self, partition: Partition, now: datetime | None = None) -> int:
        """Delete and evict records past their retention. Returns the count."""
        now_ms = to_epoch_ms(now or self._clock())
        expired = [
            key
            for key, record in self._cache[partition].items()
            if (expires_at := self._expiry(partition, record)) is not None and expires_at < now_ms
        ]
        target = self._targets[partition]
        for key in expired:
            handle = self._handles[partition].pop(key, None)
            if handle is not None:
                try:
                    await self._substrate.delete(target, handle)
                except SubstrateError as e:
                    logger.debug("Delete of %s/%s ignored: %s", partition.value, key, e)
            del self._cache[partition][key]
            self._dirty[partition].discard(key)

        if expired:
            self._directory_dirty = True
            logger.info("Swept %d expired %s record(s)", len(expired), partition.value)
        return len(expired)
