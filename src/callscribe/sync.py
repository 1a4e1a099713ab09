"""Background reconciliation of the local sync queue with a remote blob store."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from .errors import RecordNotFound, StorageFailure, SyncFailure
from .models import SyncOperation
from .session_io import encode_call_data, write_bytes_atomic
from .storage import PersistenceStore

logger = logging.getLogger("callscribe")


def blob_key(call_id: str) -> str:
    return f"calls/{call_id}/call_data.json"


class BlobStore(Protocol):
    async def put(self, key: str, payload: bytes) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class DirectoryBlobStore:
    """Blob store backed by a directory, such as a mounted share or synced folder.

    Puts overwrite atomically and deletes of missing keys succeed, so both are
    idempotent per key.
    """

    def __init__(self, root: str) -> None:
        self.root = root

    def _path(self, key: str) -> str:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise SyncFailure(f"invalid blob key: {key!r}")
        return os.path.join(self.root, *parts)

    def _put_sync(self, key: str, payload: bytes) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_bytes_atomic(path, payload)

    def _delete_sync(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.unlink(path)
        folder = os.path.dirname(path)
        if os.path.isdir(folder) and not os.listdir(folder):
            os.rmdir(folder)

    async def put(self, key: str, payload: bytes) -> None:
        try:
            await asyncio.to_thread(self._put_sync, key, payload)
        except OSError as exc:
            raise SyncFailure(f"could not write blob {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except OSError as exc:
            raise SyncFailure(f"could not delete blob {key}: {exc}") from exc

    def read(self, key: str) -> bytes:
        with open(self._path(key), "rb") as handle:
            return handle.read()

    def exists(self, key: str) -> bool:
        return os.path.exists(self._path(key))


@dataclass
class SyncReport:
    uploaded: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SyncWorker:
    """Drains the store's sync queue into a blob store.

    Entries are removed only after the blob store confirms the write, so
    delivery is at-least-once. Failed entries stay queued with an incremented
    retry count; there is no retry limit.
    """

    def __init__(
        self,
        store: PersistenceStore,
        blob_store: BlobStore,
        interval_s: float = 60.0,
        upload_timeout_s: float = 30.0,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.interval_s = interval_s
        self.upload_timeout_s = upload_timeout_s
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._run_lock: Optional[asyncio.Lock] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SyncReport:
        if self._run_lock is None:
            self._run_lock = asyncio.Lock()
        async with self._run_lock:
            return await self._drain()

    async def _drain(self) -> SyncReport:
        report = SyncReport()
        pending = await asyncio.to_thread(self.store.pending_sync)
        for call_id in pending:
            if await self._upload(call_id):
                report.uploaded.append(call_id)
            else:
                report.failed.append(call_id)

        deletions = await asyncio.to_thread(self.store.pending_deletions)
        for call_id in deletions:
            if await self._delete(call_id):
                report.deleted.append(call_id)
            else:
                report.failed.append(call_id)

        if report.uploaded or report.deleted:
            await asyncio.to_thread(self.store.update_last_sync_time)
        if pending or deletions:
            logger.info(
                "Sync pass: %s uploaded, %s deleted, %s failed",
                len(report.uploaded),
                len(report.deleted),
                len(report.failed),
            )
        return report

    async def _upload(self, call_id: str) -> bool:
        try:
            data = await asyncio.to_thread(self.store.load, call_id)
        except RecordNotFound:
            # deleted after it was listed
            await asyncio.to_thread(self.store.drop_upload, call_id)
            return True
        except StorageFailure as exc:
            logger.error("Cannot sync %s: %s", call_id, exc)
            await self._record_failure(call_id, str(exc), SyncOperation.UPLOAD)
            return False

        try:
            await asyncio.wait_for(
                self.blob_store.put(blob_key(call_id), encode_call_data(data)),
                self.upload_timeout_s,
            )
        except asyncio.TimeoutError:
            await self._record_failure(
                call_id, f"upload timed out after {self.upload_timeout_s:.1f}s", SyncOperation.UPLOAD
            )
            return False
        except Exception as exc:
            await self._record_failure(call_id, str(exc) or type(exc).__name__, SyncOperation.UPLOAD)
            return False

        try:
            await asyncio.to_thread(self.store.mark_synced, call_id)
        except StorageFailure as exc:
            logger.error("Uploaded %s but could not mark it synced: %s", call_id, exc)
            return False
        return True

    async def _delete(self, call_id: str) -> bool:
        try:
            await asyncio.wait_for(
                self.blob_store.delete(blob_key(call_id)), self.upload_timeout_s
            )
        except asyncio.TimeoutError:
            await self._record_failure(call_id, "remote delete timed out", SyncOperation.DELETE)
            return False
        except Exception as exc:
            await self._record_failure(call_id, str(exc) or type(exc).__name__, SyncOperation.DELETE)
            return False
        await asyncio.to_thread(self.store.mark_remote_deleted, call_id)
        return True

    async def _record_failure(self, call_id: str, error: str, operation: SyncOperation) -> None:
        logger.warning("Sync %s of %s failed: %s", operation.value, call_id, error)
        try:
            await asyncio.to_thread(self.store.record_sync_failure, call_id, error, operation)
        except StorageFailure:
            logger.exception("Could not record sync failure for %s", call_id)

    def wake(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def _loop(self) -> None:
        assert self._wake is not None
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sync pass failed")
            try:
                await asyncio.wait_for(self._wake.wait(), self.interval_s)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def start(self) -> None:
        if self.running:
            return
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Sync worker started (every %.0fs)", self.interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sync worker stopped")
