from __future__ import annotations


class ScanRelayError(RuntimeError):
    pass


class ProcessError(ScanRelayError):
    """Scanner binary missing, crashed, or timed out."""


class MalformedReportError(ScanRelayError):
    """Report file missing or not valid JSON."""


class SchemaMismatchError(ScanRelayError):
    """Report JSON lacks the top-level shape the tool is expected to emit."""


class MissingCredentialsError(ScanRelayError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing API credentials: {', '.join(self.missing)}")


class ConfigurationError(ScanRelayError):
    pass


class UploadError(ScanRelayError):
    def __init__(self, message: str, status: int | None = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)
