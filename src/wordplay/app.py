"""Application wiring: one store, one sync service, one auto-sync listener."""
import logging
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from wordplay.config import settings
from wordplay.models.base import SessionLocal, init_db
from wordplay.monitoring import start_monitoring
from wordplay.services.auto_sync import AutoSyncService
from wordplay.services.blob_storage import BlobStorage, GoogleDriveStorage
from wordplay.services.record_store import RecordStore
from wordplay.services.sync_service import SyncService


class WordPlayApp:
    """Main application class.

    Builds the record store once per session and hands it to the services
    that need it.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        storage: Optional[BlobStorage] = None,
    ):
        """Initialize the application."""
        self.logger = logging.getLogger(__name__)
        if session_factory is None:
            init_db()
            session_factory = SessionLocal
        self.db: Session = session_factory()
        self.store = RecordStore(self.db)
        self.storage = storage or GoogleDriveStorage()
        self.sync_service = SyncService(self.store, self.storage)
        self.auto_sync = AutoSyncService(self.store, self.sync_service)
        self.running = False

    async def start(self) -> None:
        """Start background services."""
        if self.running:
            return
        if settings.monitoring.enabled:
            start_monitoring(settings.monitoring.port)
            self.logger.info("Metrics server started on port %d", settings.monitoring.port)
        await self.auto_sync.start()
        self.running = True
        self.logger.info("Application started")

    async def stop(self) -> None:
        """Stop background services and release resources."""
        try:
            await self.auto_sync.stop()
            if isinstance(self.storage, GoogleDriveStorage):
                await self.storage.aclose()
        finally:
            self.db.close()
            self.running = False
            self.logger.info("Application stopped")
