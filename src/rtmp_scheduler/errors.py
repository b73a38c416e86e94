"""Error kinds raised by the streaming core."""

from __future__ import annotations


class StreamError(Exception):
    """Base class for streaming errors.

    ``status_code`` is the HTTP status the REST layer answers with,
    ``code`` a short machine-readable identifier.
    """

    status_code = 500
    code = "stream_error"


class AlreadyActive(StreamError):
    """A stream with the same id is already running."""

    status_code = 409
    code = "already_active"

    def __init__(self, stream_id: str):
        super().__init__(f"Stream already active for {stream_id}")
        self.stream_id = stream_id


class SourceMissing(StreamError):
    """The backing media file is not on disk."""

    status_code = 404
    code = "source_missing"


class InvalidTarget(StreamError):
    """Malformed RTMP URL or undersized stream key."""

    status_code = 400
    code = "invalid_target"


class RecordNotFound(StreamError):
    """No such persisted record."""

    status_code = 404
    code = "not_found"


class LaunchFailure(StreamError):
    """The transcoder process could not be spawned."""

    status_code = 500
    code = "launch_failure"


class RuntimeFailure(StreamError):
    """The transcoder exited abnormally after launch."""

    status_code = 500
    code = "runtime_failure"


class NotStartable(StreamError):
    """The record's state does not allow a start request."""

    status_code = 400
    code = "not_startable"
