"""
Assemblage des collaborateurs côté appareil terrain et coordinateur.

Le runtime est construit au démarrage de l'API (lifespan) et stocké dans
app.state : les routers le reçoivent par injection de dépendance, jamais
par état global.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from app.config import settings
from app.services.active_visit_service import ActiveVisitSession, SessionRepository
from app.services.geolocation import PushGeolocationProvider
from app.services.local_cache import LocalCache
from app.services.notification_service import LoggingNotificationSink, NotificationSink
from app.services.realtime_service import CoordinatorWorkingSet, ReloadCoalescer
from app.services.sync_status_service import RecordStoreSyncGateway, SyncStatusMonitor

logger = logging.getLogger(__name__)


@dataclass
class FieldRuntime:
    repository: SessionRepository
    geolocation: PushGeolocationProvider
    session: ActiveVisitSession
    monitor: SyncStatusMonitor
    working_set: CoordinatorWorkingSet
    coalescer: ReloadCoalescer


def build_runtime(scheduler=None, notifier: NotificationSink = None) -> FieldRuntime:
    notifier = notifier or LoggingNotificationSink()
    cache = LocalCache(settings.LOCAL_CACHE_URL)
    repository = SessionRepository(cache)
    geolocation = PushGeolocationProvider()
    working_set = CoordinatorWorkingSet()
    coalescer = ReloadCoalescer(working_set.reload, scheduler=scheduler)

    session = ActiveVisitSession(repository, geolocation, scheduler=scheduler, notifier=notifier)
    monitor = SyncStatusMonitor(
        cache,
        RecordStoreSyncGateway(on_change=coalescer.notify),
        scheduler=scheduler,
    )
    return FieldRuntime(
        repository=repository,
        geolocation=geolocation,
        session=session,
        monitor=monitor,
        working_set=working_set,
        coalescer=coalescer,
    )


def start_runtime(runtime: FieldRuntime) -> None:
    """Initialise le cache local, restaure une éventuelle visite active et lance le moniteur."""
    runtime.repository.init()
    runtime.session.restore()
    runtime.monitor.start()


def stop_runtime(runtime: FieldRuntime) -> None:
    """Arrête les tâches ; la visite active reste dans le cache pour le prochain démarrage."""
    runtime.session.shutdown()
    runtime.monitor.stop()
    runtime.repository.teardown()


def get_runtime(request: Request) -> FieldRuntime:
    """Dépendance FastAPI : runtime construit par le lifespan."""
    return request.app.state.runtime
