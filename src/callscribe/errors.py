"""Error taxonomy for the call pipeline."""

from __future__ import annotations


class CallScribeError(Exception):
    """Base class for every error raised by callscribe."""


class PermissionDenied(CallScribeError):
    pass


class DeviceError(CallScribeError):
    pass


class RecognitionError(CallScribeError):
    pass


class RecognitionUnavailable(RecognitionError):
    pass


class RecognitionTimeout(RecognitionError):
    pass


class RecognitionSessionActive(RecognitionError):
    pass


class SummarizationFailure(CallScribeError):
    pass


class StorageFailure(CallScribeError):
    pass


class RecordNotFound(StorageFailure, KeyError):
    def __init__(self, call_id: str) -> None:
        super().__init__(call_id)
        self.call_id = call_id

    def __str__(self) -> str:
        return f"call record not found: {self.call_id}"


class SyncFailure(CallScribeError):
    pass


class InvalidConfiguration(CallScribeError):
    pass


class InvalidStateTransition(CallScribeError):
    pass


class SessionAlreadyActive(InvalidStateTransition):
    pass
