"""The monitoring capability the API and scheduler depend on."""

from abc import ABC, abstractmethod
from typing import List, Optional

from listingwatch.api.schemas import ChangeRecord, ScanRun


class MonitoringSystem(ABC):
    @abstractmethod
    async def start_scan(self, segment: Optional[str] = None, page_budget: Optional[int] = None,
                         trigger: str = "manual") -> str:
        """Start a scan in the background and return its id.

        Raises AlreadyRunning if a scan is in flight.
        """

    @abstractmethod
    async def run_scan(self, segment: Optional[str] = None, page_budget: Optional[int] = None,
                       trigger: str = "manual") -> ScanRun:
        """Start a scan and wait for its final state."""

    @abstractmethod
    async def cancel(self) -> bool:
        """Cancel the in-flight scan. Returns False if there was nothing to cancel."""

    @abstractmethod
    async def get_status(self) -> Optional[ScanRun]:
        """The running scan, else the most recent one."""

    @abstractmethod
    async def get_run(self, scan_id: str) -> Optional[ScanRun]:
        ...

    @abstractmethod
    async def list_runs(self, limit: int = 20) -> List[ScanRun]:
        ...

    @abstractmethod
    async def get_change_log(self, since: Optional[str] = None, scan_id: Optional[str] = None,
                             limit: Optional[int] = None) -> List[ChangeRecord]:
        ...
