"""Debounced automatic sync after local changes."""
import asyncio
import logging
from typing import Callable, Optional

from wordplay.config import settings
from wordplay.exceptions import AuthExpiredError, WordPlayError
from wordplay.models.progress_models import SyncStrategy
from wordplay.services.record_store import RecordStore
from wordplay.services.sync_service import SyncService

logger = logging.getLogger(__name__)


class AutoSyncService:
    """Listens to record store changes and runs a merge sync once they settle.

    Changes arriving within ``debounce_seconds`` of each other coalesce into
    a single sync. A sync that has started is never cancelled; changes made
    while it runs schedule one more sync afterwards.
    """

    def __init__(
        self,
        store: RecordStore,
        sync_service: SyncService,
        debounce_seconds: Optional[float] = None,
    ):
        """Initialize the service with the store to watch and the sync to run."""
        self.store = store
        self.sync_service = sync_service
        self.debounce_seconds = (
            settings.sync.debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.running = False
        self.sync_count = 0
        self._task: Optional[asyncio.Task] = None
        self._syncing = False
        self._pending = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self) -> None:
        """Start listening for changes."""
        if self.running:
            return
        self.running = True
        self._unsubscribe = self.store.subscribe(self._on_change)
        logger.info("Auto-sync listener started (debounce %.1fs)", self.debounce_seconds)

    async def stop(self) -> None:
        """Stop listening; waits for a running sync to finish."""
        if not self.running:
            return
        self.running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task and not self._task.done():
            if not self._syncing:
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Auto-sync listener stopped")

    def _on_change(self, reason: str) -> None:
        if not self.running or not self.store.auto_sync_enabled():
            return
        if self._syncing:
            self._pending = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping auto-sync for '%s'", reason)
            return
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = loop.create_task(self._sync_after_delay())

    async def _sync_after_delay(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._syncing = True
        try:
            while True:
                self._pending = False
                await self._run_sync()
                if not (self._pending and self.running):
                    break
                await asyncio.sleep(self.debounce_seconds)
        finally:
            self._syncing = False

    async def _run_sync(self) -> None:
        if self.sync_service.is_syncing:
            logger.debug("A sync is already running, auto-sync will retry after it")
            self._pending = True
            return
        self.sync_count += 1
        try:
            await self.sync_service.sync(SyncStrategy.MERGE)
        except AuthExpiredError as e:
            logger.warning("Auto-sync stopped until the next sign-in: %s", e)
            self.running = False
            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None
        except WordPlayError as e:
            logger.error("Auto-sync failed: %s", e)
