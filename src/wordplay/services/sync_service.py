"""Sync orchestrator: upload, download and merge against remote blob storage."""
import logging
import time
from copy import deepcopy
from dataclasses import replace
from typing import Callable, Optional

from wordplay import monitoring
from wordplay.config import SyncSettings, settings
from wordplay.exceptions import (
    AuthExpiredError,
    MalformedSnapshotError,
    SyncInProgressError,
    ValidationError,
    WordPlayError,
)
from wordplay.models.progress_models import (
    ConflictChoice,
    MergeResult,
    Snapshot,
    SyncMetadata,
    SyncStatus,
    SyncStrategy,
    utcnow,
)
from wordplay.services import merge_engine, snapshot_codec
from wordplay.services.blob_storage import BlobStorage
from wordplay.services.merge_engine import MergePolicy
from wordplay.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class SyncService:
    """Keeps the local record store and the remote snapshot file in step.

    Only one sync may run at a time; a second request while one is running
    raises SyncInProgressError. A failed sync never changes local learning
    data: merged state is committed locally only after the upload succeeded.
    """

    def __init__(
        self,
        store: RecordStore,
        storage: BlobStorage,
        policy: Optional[MergePolicy] = None,
        sync_settings: Optional[SyncSettings] = None,
        clock: Callable = utcnow,
    ):
        """Initialize the service with the local store and the remote storage."""
        self.store = store
        self.storage = storage
        self.sync_settings = sync_settings or settings.sync
        self.policy = policy or MergePolicy.from_settings(self.sync_settings)
        self.clock = clock
        self._in_progress = False
        # A persisted is_syncing flag means the process died mid-sync
        self._status = replace(store.sync_status(), is_syncing=False)

    @property
    def status(self) -> SyncStatus:
        """Current sync status (a copy)."""
        return deepcopy(self._status)

    @property
    def is_syncing(self) -> bool:
        return self._in_progress

    def _save_status(self, **changes) -> None:
        self._status = replace(self._status, **changes)
        self.store.save_sync_status(self._status)

    # --- public API -------------------------------------------------------

    async def sync(self, strategy: SyncStrategy = SyncStrategy.MERGE) -> SyncStatus:
        """Run one sync with the given strategy and return the resulting status."""
        strategy = SyncStrategy(strategy)
        if self._in_progress:
            raise SyncInProgressError("A sync is already in progress")

        self._in_progress = True
        self._save_status(is_syncing=True, error=None)
        started = time.monotonic()
        outcome = "error"
        logger.info("Starting %s sync", strategy.value)
        try:
            if strategy is SyncStrategy.UPLOAD:
                await self._upload(self.store.export_snapshot(self.clock()))
                self._save_status(conflicts=[])
            elif strategy is SyncStrategy.DOWNLOAD:
                await self._download()
            else:
                await self._merge()
            outcome = "success"
            self._save_status(logged_out=False)
        except AuthExpiredError as e:
            outcome = "auth_expired"
            logger.warning("Sync stopped, remote session expired: %s", e)
            self._save_status(error=str(e), logged_out=True)
            raise
        except WordPlayError as e:
            logger.error("%s sync failed: %s", strategy.value.capitalize(), e)
            self._save_status(error=str(e))
            raise
        finally:
            self._in_progress = False
            self._save_status(is_syncing=False)
            monitoring.sync_operations.labels(strategy=strategy.value, outcome=outcome).inc()
            monitoring.sync_duration.labels(strategy=strategy.value).observe(time.monotonic() - started)
        return self.status

    async def upload(self) -> SyncStatus:
        """Overwrite the remote snapshot with local data."""
        return await self.sync(SyncStrategy.UPLOAD)

    async def download(self) -> SyncStatus:
        """Replace local data with the remote snapshot, if there is one."""
        return await self.sync(SyncStrategy.DOWNLOAD)

    async def merge(self) -> SyncStatus:
        """Merge local and remote data and store the result on both sides."""
        return await self.sync(SyncStrategy.MERGE)

    def resolve_conflict(self, item_id: str, choice: ConflictChoice) -> SyncStatus:
        """Settle an outstanding conflict by keeping the local or the remote record."""
        if self._in_progress:
            raise SyncInProgressError("Cannot resolve conflicts while a sync is in progress")
        now = self.clock()
        current = MergeResult(self.store.export_snapshot(now), list(self._status.conflicts))
        resolved = merge_engine.resolve_conflict(current, item_id, choice, now)
        self.store.replace_all(resolved.snapshot)
        self._save_status(conflicts=resolved.conflicts)
        return self.status

    # --- strategies -------------------------------------------------------

    async def _locate_remote(self) -> Optional[str]:
        folder_id = await self.storage.find_or_create_folder(self.sync_settings.folder_name)
        return await self.storage.find_file(folder_id, self.sync_settings.file_name)

    async def _fetch_remote(self, file_id: str) -> Snapshot:
        blob = await self.storage.fetch_content(file_id)
        snapshot, metadata = snapshot_codec.deserialize_envelope(blob)
        if metadata and metadata.checksum:
            actual = snapshot_codec.checksum(snapshot_codec.serialize(snapshot))
            if actual != metadata.checksum:
                raise MalformedSnapshotError(
                    f"Remote snapshot checksum mismatch (expected {metadata.checksum}, got {actual})"
                )
        try:
            return self.store.validate_snapshot(snapshot)
        except ValidationError as e:
            raise MalformedSnapshotError(f"Remote snapshot has an invalid record: {e}") from e

    async def _upload(self, snapshot: Snapshot) -> SyncMetadata:
        now = self.clock()
        previous = self.store.sync_metadata()
        metadata = SyncMetadata(
            last_sync_time=now,
            checksum=snapshot_codec.checksum(snapshot_codec.serialize(snapshot)),
            record_count=len(snapshot.records),
            device_id=self.store.device_id(),
            sync_version=(previous.sync_version if previous else 0) + 1,
        )
        blob = snapshot_codec.serialize(snapshot, metadata)

        folder_id = await self.storage.find_or_create_folder(self.sync_settings.folder_name)
        file_id = await self.storage.find_file(folder_id, self.sync_settings.file_name)
        if file_id:
            await self.storage.update_file(file_id, blob)
        else:
            file_id = await self.storage.create_file(folder_id, self.sync_settings.file_name, blob)

        self.store.save_sync_metadata(metadata)
        self._save_status(
            last_sync_time=now, record_count=metadata.record_count, checksum=metadata.checksum
        )
        logger.info("Synced %d records to remote storage", metadata.record_count)
        return metadata

    async def _download(self) -> bool:
        file_id = await self._locate_remote()
        if not file_id:
            logger.info("No remote data found")
            return False

        snapshot = await self._fetch_remote(file_id)
        self.store.replace_all(snapshot, notify=False)

        now = self.clock()
        previous = self.store.sync_metadata()
        checksum = snapshot_codec.checksum(snapshot_codec.serialize(snapshot))
        self.store.save_sync_metadata(SyncMetadata(
            last_sync_time=now,
            checksum=checksum,
            record_count=len(snapshot.records),
            device_id=self.store.device_id(),
            sync_version=previous.sync_version if previous else 0,
        ))
        self._save_status(
            last_sync_time=now, record_count=len(snapshot.records), checksum=checksum, conflicts=[]
        )
        logger.info("Downloaded %d records from remote storage", len(snapshot.records))
        return True

    async def _merge(self) -> None:
        file_id = await self._locate_remote()
        if not file_id:
            logger.info("No remote data found, uploading local data")
            await self._upload(self.store.export_snapshot(self.clock()))
            return

        remote = await self._fetch_remote(file_id)
        now = self.clock()
        revision = self.store.revision
        local = self.store.export_snapshot(now)
        result = merge_engine.merge(local, remote, now, self.policy, pending=self._status.conflicts)

        await self._upload(result.snapshot)

        merged = result.snapshot
        if self.store.revision != revision:
            logger.info("Local data changed during sync, keeping the newer local changes")
            merged = merge_engine.rebase(merged, local, self.store.export_snapshot(now))
        self.store.replace_all(merged, notify=False)

        new_conflicts = len(result.conflicts) - len(
            [c for c in result.conflicts if c in self._status.conflicts]
        )
        if new_conflicts:
            monitoring.sync_conflicts.inc(new_conflicts)
        self._save_status(conflicts=result.conflicts)
