# src/taskkeep/storage/gateway.py

"""
Persistence Gateway: capacity-aware, write-behind persistence of the task envelope.

Discipline (replaces locking on a single event loop):
- the caller mutates memory first,
- write() updates the read cache immediately,
- the physical write lands last, debounced so bursts coalesce into one write.

Key invariants:
- read() never returns a state older than the last confirmed write: while a write is
  pending or in flight the cache is returned regardless of TTL,
- corruption of the persisted envelope is logged and replaced by an empty envelope,
  never raised,
- a quota failure triggers exactly one cleanup + retry; a second failure is a
  StorageFullError (raised from flush(), emitted as a notification from the timer),
- a write that fails stays pending and is retried by the next flush (aclose() included).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from ..core.errors import CorruptedStateError, QuotaExceededError, StorageFullError
from ..core.events import EventBus, EventKind, Notification
from ..core.ports import KeyValueStore
from ..tasks.task_models import TaskEnvelope, UsageStats

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "taskkeep.tasks"
CORRUPT_SUFFIX = ".corrupt"


def encode_envelope(envelope: TaskEnvelope) -> str:
    return json.dumps(envelope.to_dict(), ensure_ascii=False, separators=(",", ":"))


def decode_envelope(raw: str) -> TaskEnvelope:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise CorruptedStateError(f"envelope is not valid JSON: {e}") from e
    return TaskEnvelope.from_dict(data)


class PersistenceGateway:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
        cache_ttl_seconds: float = 5.0,
        debounce_seconds: float = 0.1,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._kv = kv
        self._key = storage_key
        self._ttl = max(0.0, float(cache_ttl_seconds))
        self._debounce = max(0.0, float(debounce_seconds))
        self._events = events
        self._clock = clock

        self._cache: TaskEnvelope | None = None
        self._cache_at = 0.0
        self._pending: TaskEnvelope | None = None
        self._flushing = False
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._flush_lock = asyncio.Lock()
        self._recovery: Callable[[], int] | None = None
        self._last_write_bytes = 0

        self.physical_writes = 0

    @property
    def storage_key(self) -> str:
        return self._key

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None or self._flushing

    def set_quota_recovery(self, recovery: Callable[[], int] | None) -> None:
        """Install the cleanup hook run once before retrying a quota-failed write."""
        self._recovery = recovery

    # ---- read path ----

    def read(self) -> TaskEnvelope:
        if self._cache is not None:
            fresh = (self._clock() - self._cache_at) < self._ttl
            if fresh or self.has_pending_write:
                return self._cache

        envelope = self._read_physical()
        self._cache = envelope
        self._cache_at = self._clock()
        return envelope

    def _read_physical(self) -> TaskEnvelope:
        try:
            raw = self._kv.get_item(self._key)
        except Exception as e:
            logger.exception("Host store read failed key=%s", self._key)
            self._report(e)
            return self._cache or TaskEnvelope.empty()

        if raw is None:
            return TaskEnvelope.empty()

        try:
            envelope = decode_envelope(raw)
        except CorruptedStateError as e:
            self._handle_corruption(raw, e)
            return TaskEnvelope.empty()

        logger.debug("Read envelope key=%s tasks=%d", self._key, len(envelope.tasks))
        return envelope

    def _handle_corruption(self, raw: str, err: CorruptedStateError) -> None:
        backup_key = self._key + CORRUPT_SUFFIX
        logger.error("Persisted envelope is corrupted (%s); starting from an empty list.", err)
        # Keep the unreadable payload around for manual recovery, space permitting.
        try:
            self._kv.set_item(backup_key, raw)
            logger.warning("Corrupted payload saved under key=%s", backup_key)
        except Exception:
            logger.warning("Could not back up corrupted payload (key=%s)", backup_key, exc_info=True)
        self._report(err, detail={"backup_key": backup_key})

    # ---- write path ----

    def write(self, envelope: TaskEnvelope) -> None:
        self._cache = envelope
        self._cache_at = self._clock()
        self._pending = envelope

        if self._flushing:
            # Picked up by the flush in progress (e.g. a purge during quota recovery).
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._flush_blocking_reported()
            return

        self._schedule_flush(loop)

    def _schedule_flush(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        loop = asyncio.get_running_loop()
        self._flush_task = loop.create_task(self._flush_reported())

    async def _flush_reported(self) -> None:
        try:
            await self.flush()
        except StorageFullError as e:
            logger.error("Write dropped: %s", e)
            self._report(e)
        except Exception as e:
            logger.exception("Debounced write failed key=%s", self._key)
            self._report(e)

    def _take_pending(self) -> TaskEnvelope | None:
        envelope, self._pending = self._pending, None
        return envelope

    def _keep_unwritten(self, envelope: TaskEnvelope) -> None:
        """A failed write stays pending so the next flush (or aclose) retries it."""
        if self._pending is None:
            self._pending = envelope

    async def flush(self) -> None:
        """Write the pending envelope now. Raises StorageFullError if cleanup did not help."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        async with self._flush_lock:
            envelope = self._take_pending()
            if envelope is None:
                return
            self._flushing = True
            try:
                try:
                    n = await asyncio.to_thread(self._store, envelope)
                except QuotaExceededError as first:
                    envelope = self._recover_capacity(envelope, first)
                    try:
                        n = await asyncio.to_thread(self._store, envelope)
                    except QuotaExceededError as e:
                        raise self._storage_full(e) from e
                self._confirm(envelope, n)
            except Exception:
                self._keep_unwritten(envelope)
                raise
            finally:
                self._flushing = False

            if self._pending is not None:
                self._schedule_flush()

    def flush_now(self) -> None:
        """Blocking variant of flush() for callers without an event loop."""
        envelope = self._take_pending()
        if envelope is None:
            return
        self._flushing = True
        try:
            try:
                n = self._store(envelope)
            except QuotaExceededError as first:
                envelope = self._recover_capacity(envelope, first)
                try:
                    n = self._store(envelope)
                except QuotaExceededError as e:
                    raise self._storage_full(e) from e
            self._confirm(envelope, n)
        except Exception:
            self._keep_unwritten(envelope)
            raise
        finally:
            self._flushing = False

    def _flush_blocking_reported(self) -> None:
        try:
            self.flush_now()
        except StorageFullError as e:
            logger.error("Write dropped: %s", e)
            self._report(e)
        except Exception as e:
            logger.exception("Write failed key=%s", self._key)
            self._report(e)

    def _store(self, envelope: TaskEnvelope) -> int:
        payload = encode_envelope(envelope)
        self._kv.set_item(self._key, payload)
        return len(payload.encode("utf-8"))

    def _confirm(self, envelope: TaskEnvelope, nbytes: int) -> None:
        self.physical_writes += 1
        self._last_write_bytes = nbytes
        if self._cache is envelope:
            self._cache_at = self._clock()
        logger.debug("Envelope written key=%s tasks=%d bytes=%d", self._key, len(envelope.tasks), nbytes)

    def _recover_capacity(self, envelope: TaskEnvelope, err: QuotaExceededError) -> TaskEnvelope:
        logger.warning("Storage quota exceeded (%s); purging expired deletions and retrying once.", err)
        purged = 0
        if self._recovery is not None:
            try:
                purged = int(self._recovery())
            except Exception:
                logger.exception("Quota recovery hook failed")
        logger.info("Quota recovery purged %d task(s)", purged)
        # The purge wrote a smaller envelope through write(); retry with that one.
        return self._take_pending() or envelope

    def _storage_full(self, err: QuotaExceededError) -> StorageFullError:
        logger.error("Storage still full after cleanup: %s", err)
        return StorageFullError()

    async def aclose(self) -> None:
        """Flush anything pending (shutdown hook)."""
        await self.flush()
        if self._flush_task is not None and not self._flush_task.done():
            with contextlib.suppress(Exception):
                await self._flush_task

    # ---- auxiliary JSON documents ----

    def load_document(self, key: str) -> Any | None:
        try:
            raw = self._kv.get_item(key)
        except Exception:
            logger.exception("Host store read failed key=%s", key)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Document key=%s is not valid JSON; ignoring it.", key)
            return None

    def save_document(self, key: str, data: Any) -> None:
        payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
        try:
            self._kv.set_item(key, payload)
        except QuotaExceededError as e:
            raise StorageFullError(f"Local storage is full; could not save {key}.") from e

    # ---- observability ----

    def get_usage_stats(self) -> UsageStats:
        try:
            used = int(self._kv.usage_bytes())
            capacity = int(getattr(self._kv, "capacity_bytes", 0) or 0)
            envelope_bytes = self._last_write_bytes
            if not envelope_bytes and self._cache is not None:
                envelope_bytes = len(encode_envelope(self._cache).encode("utf-8"))
            return UsageStats(
                used_bytes=used,
                estimated_capacity_bytes=capacity,
                envelope_bytes=envelope_bytes,
            )
        except Exception:
            logger.debug("Usage stats unavailable", exc_info=True)
            return UsageStats(ok=False)

    def _report(self, err: Exception, detail: Any = None) -> None:
        if self._events is None:
            return
        self._events.emit(Notification(kind=EventKind.STORAGE_ERROR, error=err, detail=detail))
