class CallIngestionError(Exception):
    pass


class InputError(CallIngestionError):
    """The unit cannot be parsed into a call event. Never retried."""


class StorageError(CallIngestionError):
    pass


class DuplicateCallRecordError(StorageError):
    """Raised by a store when its unique external-id constraint rejects a write."""

    def __init__(self, message: str, existing_record_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_record_id = existing_record_id


class AnalysisDispatchError(CallIngestionError):
    pass


class UnsupportedEventError(CallIngestionError):
    """The unit is a well-formed event that does not describe a finished recording."""
