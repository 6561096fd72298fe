"""
Moniteur de synchronisation de l'appareil terrain.

Suit la connectivité, l'indicateur de synchronisation en cours et le nombre
d'éléments du cache local non acquittés par la base centrale :
actions en attente, visites terminées, échantillons de position.

- « Synchroniser maintenant » est ignoré (non mis en file) hors-ligne ou
  pendant une synchronisation déjà en cours.
- Les compteurs sont recalculés à intervalle fixe (APScheduler) et
  immédiatement après chaque fin de synchronisation.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from app.config import settings
from app.database import SessionLocal
from app.schemas.sync import SyncCounts, SyncItem, SyncResponse, SyncRunResult, SyncStatus
from app.services import sync_service
from app.services.local_cache import LOCATIONS, PENDING_ACTIONS, VISITS, LocalCache

logger = logging.getLogger(__name__)

POLL_JOB_ID = "sync_status_poll"
ONLINE_NOTIFICATION_SECONDS = 5


class SyncGateway(Protocol):
    def push(self, items: List[SyncItem], device_id: str) -> SyncResponse: ...


class RecordStoreSyncGateway:
    """Passerelle par défaut : écrit les éléments dans la base centrale (idempotent sur client_uuid)."""

    def __init__(self, session_factory=SessionLocal, on_change: Callable[[str], None] = None):
        self._session_factory = session_factory
        self._on_change = on_change

    def push(self, items: List[SyncItem], device_id: str) -> SyncResponse:
        db = self._session_factory()
        try:
            return sync_service.sync_field_items(db, items, device_id, on_change=self._on_change)
        finally:
            db.close()


class SyncStatusMonitor:

    def __init__(
        self,
        cache: LocalCache,
        gateway: SyncGateway,
        scheduler=None,
        clock: Callable[[], datetime] = None,
        poll_seconds: int = None,
        batch_size: int = None,
        device_id: str = None,
        online: bool = True,
        on_complete: Callable[[SyncRunResult], None] = None,
    ):
        self.cache = cache
        self.gateway = gateway
        self.scheduler = scheduler
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.poll_seconds = poll_seconds or settings.SYNC_POLL_SECONDS
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.device_id = device_id or settings.DEVICE_ID
        self._on_complete = on_complete

        self._lock = threading.Lock()
        self._online = online
        self._syncing = False
        self._came_online_at: Optional[datetime] = None
        self._counts = SyncCounts()
        self._last_result: Optional[SyncRunResult] = None

    # ----------------------------------------------------------------
    # Cycle de vie
    # ----------------------------------------------------------------

    def start(self) -> None:
        if self.scheduler is not None:
            self.scheduler.add_job(
                self.refresh_counts,
                trigger="interval",
                seconds=self.poll_seconds,
                id=POLL_JOB_ID,
                replace_existing=True,
            )
        self.refresh_counts()
        logger.info("Moniteur de synchronisation démarré, compteurs toutes les %d s", self.poll_seconds)

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.get_job(POLL_JOB_ID) is not None:
            self.scheduler.remove_job(POLL_JOB_ID)

    # ----------------------------------------------------------------
    # État
    # ----------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def status(self) -> SyncStatus:
        counts = self._counts
        last = self._last_result
        return SyncStatus(
            is_online=self._online,
            is_syncing=self._syncing,
            just_came_online=self._just_came_online(),
            counts=counts,
            pending_count=counts.total,
            last_result=last,
            has_errors=bool(last and last.failed > 0),
        )

    def refresh_counts(self) -> SyncCounts:
        counts = SyncCounts(
            pending_actions=self.cache.count_unsynced(PENDING_ACTIONS),
            unsynced_visits=self.cache.count_unsynced(VISITS),
            unsynced_locations=self.cache.count_unsynced(LOCATIONS),
        )
        self._counts = counts
        return counts

    def set_online(self, online: bool) -> SyncStatus:
        """Enregistre une transition de connectivité ; le retour en ligne déclenche une synchronisation."""
        came_online = False
        with self._lock:
            if online and not self._online:
                self._came_online_at = self._clock()
                came_online = True
            elif not online:
                self._came_online_at = None
            self._online = online

        if came_online:
            logger.info("Connexion rétablie : synchronisation des éléments en attente")
            self.sync_now()
        elif not online:
            logger.info("Appareil hors-ligne : les éléments restent dans le cache local")
        return self.status()

    # ----------------------------------------------------------------
    # Synchronisation
    # ----------------------------------------------------------------

    def sync_now(self) -> SyncRunResult:
        """Pousse les éléments non acquittés vers la base centrale. No-op hors-ligne ou déjà en cours."""
        with self._lock:
            if not self._online:
                return SyncRunResult(started=False, skipped_reason="offline")
            if self._syncing:
                return SyncRunResult(started=False, skipped_reason="already_syncing")
            self._syncing = True

        try:
            result = self._push_pending()
        finally:
            with self._lock:
                self._syncing = False

        self._last_result = result
        self.refresh_counts()
        if self._on_complete is not None:
            self._on_complete(result)
        return result

    def _push_pending(self) -> SyncRunResult:
        entries = self.cache.list_unsynced(limit=self.batch_size)
        if not entries:
            return SyncRunResult(started=True, finished_at=self._clock())

        stores: Dict[str, str] = {}
        items: List[SyncItem] = []
        for store, key, value in entries:
            stores[key] = store
            items.append(SyncItem(
                client_uuid=key,
                kind=store,
                record_id=value.get("record_id"),
                payload=value,
                captured_at=value.get("captured_at") or self._clock(),
            ))

        try:
            response = self.gateway.push(items, self.device_id)
        except Exception as exc:
            logger.error("Synchronisation échouée (%d éléments conservés) : %s", len(items), exc)
            return SyncRunResult(started=True, failed=len(items), finished_at=self._clock())

        acknowledged = defaultdict(list)
        for key in list(response.accepted) + list(response.duplicate):
            if key in stores:
                acknowledged[stores[key]].append(key)
        synced = sum(self.cache.acknowledge(store, keys) for store, keys in acknowledged.items())

        logger.info("Synchronisation terminée : %d acquittés sur %d", synced, len(items))
        return SyncRunResult(
            started=True,
            synced=synced,
            failed=len(items) - synced,
            finished_at=self._clock(),
        )

    def _just_came_online(self) -> bool:
        if self._came_online_at is None:
            return False
        return (self._clock() - self._came_online_at).total_seconds() <= ONLINE_NOTIFICATION_SECONDS
