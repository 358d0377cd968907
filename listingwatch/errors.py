"""Exception taxonomy for the monitoring engine.

Per-record errors (MalformedRecord) are counted and skipped. Per-scan errors
abort the run and are surfaced on the ScanRun. AlreadyRunning is rejected at
trigger time and is not a scan failure.
"""


class ListingWatchError(Exception):
    """Base class for all engine errors."""


class MalformedRecord(ListingWatchError):
    """A raw listing record could not be turned into a Listing."""

    def __init__(self, reason: str, record: dict | None = None):
        self.reason = reason
        self.record = record
        super().__init__(reason)


class FetchError(ListingWatchError):
    """A crawl source failed to return a page."""

    def __init__(self, page: int, reason: str):
        self.page = page
        self.reason = reason
        super().__init__(f"Page {page}: {reason}")


class CrawlFailed(ListingWatchError):
    """Too many pages failed for the scan to be trusted."""

    def __init__(self, failed: int, requested: int, errors: list[str] | None = None):
        self.failed = failed
        self.requested = requested
        self.errors = errors or []
        msg = f"{failed}/{requested} pages failed to fetch"
        if self.errors:
            msg += f" (last error: {self.errors[-1]})"
        super().__init__(msg)


class VersionConflict(ListingWatchError):
    """The baseline changed between scan start and commit."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Baseline version conflict: expected {expected}, found {actual}"
        )


class AlreadyRunning(ListingWatchError):
    """A scan was requested while another one is still running."""

    def __init__(self, scan_id: str | None = None):
        self.scan_id = scan_id
        msg = "A scan is already running"
        if scan_id:
            msg += f" ({scan_id})"
        super().__init__(msg)


class ScanCancelled(ListingWatchError):
    """The in-flight scan was cancelled by an external stop signal."""


class ScanTimeout(ListingWatchError):
    """The scan exceeded its wall-clock budget."""
