"""Error taxonomy for ingestion runs and the read path.

Hard errors (``SourceUnreachableError``, ``RunTimeoutError``) abort a connector
run and end up in the run's ``error`` field. ``MalformedRecordError`` is soft:
the offending record is skipped and the run goes on. ``NotFoundError`` and
``AlreadyRunningError`` are raised to callers of the registry, the coordinator
and the item store.
"""


class IngestError(Exception):
    """Base class for all errors raised by the ingestion core."""

    kind: str = "internal"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(IngestError):
    """Unknown connector id or news item id."""

    kind = "not_found"
    status_code = 404


class AlreadyRunningError(IngestError):
    """A run for this connector is already in flight."""

    kind = "already_running"
    status_code = 409

    def __init__(self, connector_id: str):
        super().__init__(f"Connector {connector_id} is already running")
        self.connector_id = connector_id


class SourceUnreachableError(IngestError):
    """Transport, HTTP status or auth failure while reaching a source."""

    kind = "source_unreachable"
    status_code = 502


class RunTimeoutError(IngestError):
    """The run's deadline was exceeded mid-fetch."""

    kind = "timeout"
    status_code = 504


class MalformedRecordError(IngestError):
    """A single raw record could not be normalized."""

    kind = "malformed_record"
    status_code = 422


class DuplicateConnectorError(IngestError, ValueError):
    """A connector with the same id is already registered."""

    kind = "duplicate_connector"
    status_code = 409


# Errors that abort a run, by kind
RUN_ERRORS: dict[str, type[IngestError]] = {
    cls.kind: cls for cls in (SourceUnreachableError, RunTimeoutError)
}


def run_error_status(kind: str | None) -> int:
    """HTTP status for a failed run; 502 unless the kind maps to its own status."""
    error_cls = RUN_ERRORS.get(kind or "")
    return error_cls.status_code if error_cls else SourceUnreachableError.status_code
