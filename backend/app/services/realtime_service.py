"""
Rechargement de l'ensemble de travail coordinateur sur notification temps réel.

Les notifications arrivant dans une courte fenêtre (quelques secondes) sont
coalescées : un seul rechargement est planifié (job APScheduler « date »),
les suivantes sont comptées mais ne déclenchent rien de plus.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.config import settings
from app.database import SessionLocal
from app.schemas.realtime import WorkingSetSnapshot
from app.services import permit_service, workflow_service

logger = logging.getLogger(__name__)

RELOAD_JOB_ID = "working_set_reload"


class ReloadCoalescer:

    def __init__(
        self,
        reload: Callable[[], None],
        scheduler=None,
        window_seconds: float = None,
        clock: Callable[[], datetime] = None,
    ):
        self._reload = reload
        self.scheduler = scheduler
        self.window_seconds = settings.RELOAD_COALESCE_SECONDS if window_seconds is None else window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._pending = False
        self._coalesced = 0

    @property
    def pending(self) -> bool:
        return self._pending

    def notify(self, source: str = "") -> bool:
        """Retourne True si un rechargement a été planifié, False s'il a été coalescé."""
        with self._lock:
            if self._pending:
                self._coalesced += 1
                logger.debug("Notification %s coalescée (%d en attente)", source, self._coalesced)
                return False
            self._pending = True

        if self.scheduler is not None:
            self.scheduler.add_job(
                self.fire,
                trigger="date",
                run_date=self._clock() + timedelta(seconds=self.window_seconds),
                id=RELOAD_JOB_ID,
                replace_existing=True,
            )
        logger.debug("Rechargement planifié dans %.1f s (%s)", self.window_seconds, source)
        return True

    def fire(self) -> None:
        """Exécute le rechargement planifié (appelé par le scheduler à la fin de la fenêtre)."""
        with self._lock:
            if not self._pending:
                return
            self._pending = False
            coalesced, self._coalesced = self._coalesced, 0

        try:
            self._reload()
            logger.info("Ensemble de travail rechargé (%d notifications coalescées)", coalesced)
        except Exception as exc:
            logger.error("Erreur lors du rechargement de l'ensemble de travail : %s", exc)


class CoordinatorWorkingSet:
    """Instantané des compteurs par statut et des permis par localité."""

    def __init__(self, session_factory=SessionLocal, clock: Callable[[], datetime] = None):
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._snapshot: Optional[WorkingSetSnapshot] = None
        self._reload_count = 0

    @property
    def snapshot(self) -> Optional[WorkingSetSnapshot]:
        return self._snapshot

    def reload(self) -> WorkingSetSnapshot:
        db = self._session_factory()
        try:
            badges = workflow_service.status_badges(db)
            localities = permit_service.locality_permit_statuses(db)
        finally:
            db.close()
        self._reload_count += 1
        self._snapshot = WorkingSetSnapshot(
            badges=badges,
            localities=localities,
            loaded_at=self._clock(),
            reload_count=self._reload_count,
        )
        return self._snapshot
