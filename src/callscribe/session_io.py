"""Call record and sync entry persistence."""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Dict

from .models import StructuredCallData, SyncQueueEntry

TEMP_SUFFIX = ".tmp"


def write_json_atomic(path: str, payload: Any) -> None:
    """Write JSON to ``path`` so readers see either the old file or the new one."""
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=".", suffix=TEMP_SUFFIX
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_bytes_atomic(path: str, payload: bytes) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def encode_call_data(data: StructuredCallData) -> bytes:
    return json.dumps(data.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")


def decode_call_data(payload: bytes) -> StructuredCallData:
    return StructuredCallData.from_dict(json.loads(payload.decode("utf-8")))


def build_envelope(data: StructuredCallData, seq: int, sync_state: str) -> Dict[str, Any]:
    return {"seq": seq, "sync_state": sync_state, "data": data.to_dict()}


def save_sync_entry(path: str, entry: SyncQueueEntry) -> None:
    write_json_atomic(path, entry.to_dict())


def load_sync_entry(path: str) -> SyncQueueEntry:
    return SyncQueueEntry.from_dict(read_json(path))
