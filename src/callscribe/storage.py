"""Offline-first call record store with a durable sync queue."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from .errors import RecordNotFound, StorageFailure
from .models import (
    CallRecord,
    StorageInfo,
    StructuredCallData,
    SyncOperation,
    SyncQueueEntry,
    utc_now,
)
from .session_io import (
    TEMP_SUFFIX,
    build_envelope,
    load_sync_entry,
    read_json,
    save_sync_entry,
    write_json_atomic,
)

logger = logging.getLogger("callscribe")

SYNC_PENDING = "pending"
SYNC_DONE = "synced"
RECORD_SUFFIX = ".call.json"
STATE_FILE = "store_state.json"
CACHE_LIMIT = 64

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def timestamp_slug(dt: datetime | None = None) -> str:
    now = dt or datetime.now()
    return now.strftime("%Y-%m-%d")


def build_recording_basename(call_id: str, dt: datetime | None = None) -> str:
    return f"{timestamp_slug(dt)}--{call_id}"


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def ensure_structure(base_dir: str) -> dict:
    root = base_dir or os.getcwd()
    paths = {
        "root": root,
        "calls": os.path.join(root, "Calls"),
        "sync_queue": os.path.join(root, "SyncQueue"),
        "recordings": os.path.join(root, "Recordings"),
        "cache": os.path.join(root, "Cache"),
        "logs": os.path.join(root, "Logs"),
    }
    for path in paths.values():
        ensure_dir(path)
    return paths


class _IndexEntry:
    __slots__ = ("seq", "sync_state")

    def __init__(self, seq: int, sync_state: str) -> None:
        self.seq = seq
        self.sync_state = sync_state


class PersistenceStore:
    """Durable local store for StructuredCallData.

    Each record lives in ``Calls/<id>.call.json`` next to a sync state flag and
    an insertion sequence number. Records that the remote store has not yet
    confirmed have exactly one upload entry in ``SyncQueue``. The record file is
    the commit point of ``save``: when it exists with state ``pending``, startup
    recovery makes sure its upload entry exists as well.
    """

    def __init__(self, base_dir: str) -> None:
        self.paths = ensure_structure(base_dir)
        self._lock = threading.RLock()
        self._index: Dict[str, _IndexEntry] = {}
        self._cache: "OrderedDict[str, StructuredCallData]" = OrderedDict()
        self._next_seq = 1
        self._recover()

    # paths

    def _check_id(self, call_id: str) -> None:
        if not call_id or not _SAFE_ID.match(call_id):
            raise StorageFailure(f"invalid call id: {call_id!r}")

    def _record_path(self, call_id: str) -> str:
        return os.path.join(self.paths["calls"], f"{call_id}{RECORD_SUFFIX}")

    def _queue_path(self, call_id: str, operation: SyncOperation) -> str:
        return os.path.join(
            self.paths["sync_queue"], f"{call_id}.{operation.value}.json"
        )

    def recording_path(self, call_id: str, dt: datetime | None = None) -> str:
        self._check_id(call_id)
        basename = build_recording_basename(call_id, dt)
        return os.path.join(self.paths["recordings"], f"{basename}.wav")

    # recovery

    def _recover(self) -> None:
        with self._lock:
            for key in ("calls", "sync_queue"):
                folder = self.paths[key]
                for name in os.listdir(folder):
                    if name.endswith(TEMP_SUFFIX):
                        logger.warning("Removing interrupted write %s", name)
                        os.unlink(os.path.join(folder, name))

            for name in os.listdir(self.paths["calls"]):
                if not name.endswith(RECORD_SUFFIX):
                    continue
                call_id = name[: -len(RECORD_SUFFIX)]
                try:
                    envelope = read_json(os.path.join(self.paths["calls"], name))
                    seq = int(envelope["seq"])
                    state = envelope.get("sync_state", SYNC_PENDING)
                except (OSError, ValueError, KeyError, TypeError):
                    logger.error("Unreadable call record %s skipped during recovery", name)
                    continue
                self._index[call_id] = _IndexEntry(seq, state)
                self._next_seq = max(self._next_seq, seq + 1)

            for call_id, entry in self._index.items():
                upload_path = self._queue_path(call_id, SyncOperation.UPLOAD)
                if entry.sync_state == SYNC_PENDING and not os.path.exists(upload_path):
                    logger.info("Recreating missing sync entry for %s", call_id)
                    save_sync_entry(upload_path, SyncQueueEntry(call_id=call_id))

            suffix = f".{SyncOperation.UPLOAD.value}.json"
            for name in os.listdir(self.paths["sync_queue"]):
                if not name.endswith(suffix):
                    continue
                call_id = name[: -len(suffix)]
                entry = self._index.get(call_id)
                if entry is None or entry.sync_state != SYNC_PENDING:
                    logger.info("Dropping orphan sync entry for %s", call_id)
                    os.unlink(os.path.join(self.paths["sync_queue"], name))

    # records

    def save(self, data: StructuredCallData) -> str:
        self._check_id(data.id)
        with self._lock:
            record_path = self._record_path(data.id)
            upload_path = self._queue_path(data.id, SyncOperation.UPLOAD)
            previous = self._index.get(data.id)
            seq = previous.seq if previous else self._next_seq
            envelope = build_envelope(data, seq, SYNC_PENDING)
            try:
                previous_envelope = read_json(record_path) if previous else None
                write_json_atomic(record_path, envelope)
            except (OSError, ValueError) as exc:
                raise StorageFailure(f"could not write call {data.id}: {exc}") from exc

            try:
                if not os.path.exists(upload_path):
                    save_sync_entry(upload_path, SyncQueueEntry(call_id=data.id))
                delete_path = self._queue_path(data.id, SyncOperation.DELETE)
                if os.path.exists(delete_path):
                    os.unlink(delete_path)
            except OSError as exc:
                self._rollback(record_path, previous_envelope)
                raise StorageFailure(
                    f"could not queue call {data.id} for sync: {exc}"
                ) from exc

            if previous is None:
                self._next_seq += 1
            self._index[data.id] = _IndexEntry(seq, SYNC_PENDING)
            self._remember(data)
            logger.info("Saved call %s (seq %s)", data.id, seq)
            return data.id

    def _rollback(self, record_path: str, previous_envelope: Optional[dict]) -> None:
        try:
            if previous_envelope is None:
                if os.path.exists(record_path):
                    os.unlink(record_path)
            else:
                write_json_atomic(record_path, previous_envelope)
        except OSError:
            logger.exception("Rollback of %s failed", record_path)

    def load(self, call_id: str) -> StructuredCallData:
        self._check_id(call_id)
        with self._lock:
            if call_id in self._cache:
                self._cache.move_to_end(call_id)
                return self._cache[call_id]
            if call_id not in self._index:
                raise RecordNotFound(call_id)
            try:
                envelope = read_json(self._record_path(call_id))
                data = StructuredCallData.from_dict(envelope["data"])
            except FileNotFoundError as exc:
                self._index.pop(call_id, None)
                raise RecordNotFound(call_id) from exc
            except (OSError, ValueError, KeyError, TypeError) as exc:
                raise StorageFailure(f"call record {call_id} is corrupt: {exc}") from exc
            self._remember(data)
            return data

    def _remember(self, data: StructuredCallData) -> None:
        self._cache[data.id] = data
        self._cache.move_to_end(data.id)
        while len(self._cache) > CACHE_LIMIT:
            self._cache.popitem(last=False)

    def exists(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._index

    def list(self, limit: int = 20, offset: int = 0) -> List[CallRecord]:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be >= 0")
        with self._lock:
            ordered = sorted(self._index.items(), key=lambda item: item[1].seq)
            seen = set()
            ids: List[str] = []
            for call_id, _entry in ordered:
                if call_id in seen:
                    continue
                seen.add(call_id)
                ids.append(call_id)
            page: List[CallRecord] = []
            for call_id in ids[offset : offset + limit]:
                data = self.load(call_id)
                page.append(
                    data.to_record(synced=self._index[call_id].sync_state == SYNC_DONE)
                )
            return page

    def count(self) -> int:
        with self._lock:
            return len(self._index)

    def delete(self, call_id: str) -> None:
        self._check_id(call_id)
        with self._lock:
            entry = self._index.get(call_id)
            if entry is None:
                raise RecordNotFound(call_id)
            audio_ref = None
            try:
                audio_ref = self.load(call_id).audio_ref
            except StorageFailure:
                logger.warning("Deleting unreadable call record %s", call_id)
            try:
                if entry.sync_state == SYNC_DONE:
                    save_sync_entry(
                        self._queue_path(call_id, SyncOperation.DELETE),
                        SyncQueueEntry(call_id=call_id, operation=SyncOperation.DELETE),
                    )
                os.unlink(self._record_path(call_id))
                upload_path = self._queue_path(call_id, SyncOperation.UPLOAD)
                if os.path.exists(upload_path):
                    os.unlink(upload_path)
            except OSError as exc:
                raise StorageFailure(f"could not delete call {call_id}: {exc}") from exc
            self._index.pop(call_id, None)
            self._cache.pop(call_id, None)
            if audio_ref and self._owns(audio_ref) and os.path.exists(audio_ref):
                try:
                    os.unlink(audio_ref)
                except OSError:
                    logger.warning("Could not remove audio %s", audio_ref)
            logger.info("Deleted call %s", call_id)

    def _owns(self, path: str) -> bool:
        recordings = os.path.abspath(self.paths["recordings"])
        return os.path.abspath(path).startswith(recordings + os.sep)

    # sync queue

    def _queued(self, operation: SyncOperation) -> List[SyncQueueEntry]:
        suffix = f".{operation.value}.json"
        entries: List[SyncQueueEntry] = []
        for name in os.listdir(self.paths["sync_queue"]):
            if not name.endswith(suffix):
                continue
            try:
                entries.append(load_sync_entry(os.path.join(self.paths["sync_queue"], name)))
            except (OSError, ValueError, KeyError) as exc:
                raise StorageFailure(f"sync entry {name} is corrupt: {exc}") from exc
        return entries

    def pending_sync(self) -> List[str]:
        with self._lock:
            entries = self._queued(SyncOperation.UPLOAD)
            entries.sort(
                key=lambda e: self._index[e.call_id].seq if e.call_id in self._index else 0
            )
            return [e.call_id for e in entries]

    def pending_deletions(self) -> List[str]:
        with self._lock:
            entries = sorted(self._queued(SyncOperation.DELETE), key=lambda e: e.enqueued_at)
            return [e.call_id for e in entries]

    def sync_entry(
        self, call_id: str, operation: SyncOperation = SyncOperation.UPLOAD
    ) -> Optional[SyncQueueEntry]:
        self._check_id(call_id)
        with self._lock:
            path = self._queue_path(call_id, operation)
            if not os.path.exists(path):
                return None
            return load_sync_entry(path)

    def is_synced(self, call_id: str) -> bool:
        with self._lock:
            entry = self._index.get(call_id)
            if entry is None:
                raise RecordNotFound(call_id)
            return entry.sync_state == SYNC_DONE

    def mark_synced(self, call_id: str) -> None:
        """Record a confirmed upload.

        When the record was deleted while its upload was in flight, the remote
        copy is queued for deletion instead.
        """
        self._check_id(call_id)
        with self._lock:
            entry = self._index.get(call_id)
            upload_path = self._queue_path(call_id, SyncOperation.UPLOAD)
            try:
                if entry is not None:
                    data = self.load(call_id)
                    write_json_atomic(
                        self._record_path(call_id),
                        build_envelope(data, entry.seq, SYNC_DONE),
                    )
                    entry.sync_state = SYNC_DONE
                else:
                    logger.info("Call %s deleted during upload, queueing remote delete", call_id)
                    save_sync_entry(
                        self._queue_path(call_id, SyncOperation.DELETE),
                        SyncQueueEntry(call_id=call_id, operation=SyncOperation.DELETE),
                    )
                if os.path.exists(upload_path):
                    os.unlink(upload_path)
            except OSError as exc:
                raise StorageFailure(f"could not mark {call_id} synced: {exc}") from exc
            logger.info("Call %s confirmed remote", call_id)

    def drop_upload(self, call_id: str) -> None:
        self._check_id(call_id)
        with self._lock:
            path = self._queue_path(call_id, SyncOperation.UPLOAD)
            try:
                if os.path.exists(path):
                    os.unlink(path)
            except OSError as exc:
                raise StorageFailure(f"could not clear upload entry {call_id}: {exc}") from exc

    def mark_remote_deleted(self, call_id: str) -> None:
        self._check_id(call_id)
        with self._lock:
            path = self._queue_path(call_id, SyncOperation.DELETE)
            try:
                if os.path.exists(path):
                    os.unlink(path)
            except OSError as exc:
                raise StorageFailure(f"could not clear delete entry {call_id}: {exc}") from exc

    def record_sync_failure(
        self,
        call_id: str,
        error: str,
        operation: SyncOperation = SyncOperation.UPLOAD,
    ) -> Optional[SyncQueueEntry]:
        self._check_id(call_id)
        with self._lock:
            path = self._queue_path(call_id, operation)
            if not os.path.exists(path):
                return None
            try:
                entry = load_sync_entry(path)
                entry.retry_count += 1
                entry.last_attempt = utc_now()
                entry.last_error = error
                save_sync_entry(path, entry)
            except (OSError, ValueError, KeyError) as exc:
                raise StorageFailure(f"could not update sync entry {call_id}: {exc}") from exc
            return entry

    # housekeeping

    def storage_info(self) -> StorageInfo:
        with self._lock:
            used = 0
            count = 0
            for dirpath, _dirs, files in os.walk(self.paths["root"]):
                for name in files:
                    try:
                        used += os.path.getsize(os.path.join(dirpath, name))
                    except OSError:
                        continue
                    count += 1
            available = shutil.disk_usage(self.paths["root"]).free
            return StorageInfo(
                used_bytes=used,
                available_bytes=available,
                file_count=count,
                pending_sync_count=len(self._queued(SyncOperation.UPLOAD)),
            )

    def clear_cache(self) -> None:
        with self._lock:
            dropped = len(self._cache)
            self._cache.clear()
            cache_dir = self.paths["cache"]
            for name in os.listdir(cache_dir):
                path = os.path.join(cache_dir, name)
                try:
                    if os.path.isdir(path):
                        shutil.rmtree(path)
                    else:
                        os.unlink(path)
                except OSError:
                    logger.warning("Could not remove cache entry %s", path)
            logger.info("Cleared store cache (%s records)", dropped)

    def last_sync_time(self) -> Optional[datetime]:
        path = os.path.join(self.paths["root"], STATE_FILE)
        with self._lock:
            if not os.path.exists(path):
                return None
            try:
                value = read_json(path).get("last_sync_time")
            except (OSError, ValueError) as exc:
                raise StorageFailure(f"store state is corrupt: {exc}") from exc
            return datetime.fromisoformat(value) if value else None

    def update_last_sync_time(self, when: Optional[datetime] = None) -> None:
        path = os.path.join(self.paths["root"], STATE_FILE)
        with self._lock:
            try:
                write_json_atomic(path, {"last_sync_time": (when or utc_now()).isoformat()})
            except OSError as exc:
                raise StorageFailure(f"could not write store state: {exc}") from exc

    def dump_record(self, call_id: str) -> str:
        return json.dumps(self.load(call_id).to_dict(), indent=2, ensure_ascii=False)
