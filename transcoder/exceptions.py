class TranscodeError(Exception):
    """Base error for a job that cannot finish.

    ``reason`` is the short message relayed to the job's subscribers; the
    exception text itself may carry more detail for the server log.
    """

    reason = "transcoding failed"

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or reason or self.reason)
        if reason is not None:
            self.reason = reason


class SourceUnavailableError(TranscodeError):
    reason = "source unavailable"


class EncodeError(TranscodeError):
    reason = "encode failed"


class UploadError(TranscodeError):
    reason = "upload failed"
