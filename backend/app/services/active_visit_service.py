"""
Visite active côté collecteur (une seule par appareil).

Cycle : aucune → active ⇄ paused → fermée (complétion | abandon).

Deux tâches périodiques indépendantes modifient la même session :
- le suivi GPS (callbacks du fournisseur de géolocalisation)
- le tick d'une seconde qui rafraîchit le temps écoulé affiché
Toutes les mises à jour passent par une file ordonnée unique, vidée sous
un verrou : chaque entrée est une fusion pure snapshot → snapshot.

Le snapshot est recopié dans le cache local sous une clé fixe à chaque
mise à jour, sauf quand seul le temps affiché change (recalculé depuis
started_at) : la visite survit à un redémarrage (voir restore()).
"""

import logging
import queue
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import InvalidTransition, NoActiveSession, RecordNotFound, SessionAlreadyOpen
from app.models.site_visit import SiteVisitRecord, VisitStatus
from app.schemas.active_visit import (
    ActiveVisitSnapshot,
    CompletionBlock,
    CompletionProof,
    CompletionReadiness,
    CompletionResponse,
    Coordinates,
    OpenVisitResponse,
)
from app.services import workflow_service
from app.services.geo import distance_between, within_radius
from app.services.geolocation import (
    PERMISSION_DENIED,
    GeolocationProvider,
    PositionFailure,
    PositionFix,
    WatchOptions,
)
from app.services.local_cache import APP_STATE, LOCATIONS, PENDING_ACTIONS, VISITS, LocalCache
from app.services.notification_service import NotificationSink, notify_safely

logger = logging.getLogger(__name__)

ACTIVE_VISIT_KEY = "active_visit"
TICK_JOB_ID = "active_visit_tick"

Merge = Callable[[Optional[ActiveVisitSnapshot]], Optional[ActiveVisitSnapshot]]

PERMISSION_WARNING = (
    "Localisation refusée : autorisez l'accès à la position dans les réglages de l'appareil. "
    "La visite reste ouverte mais ne pourra pas être terminée sans position."
)


class SessionRepository:
    """Dépôt de la visite active : une seule entrée dans le cache local, sous une clé fixe."""

    def __init__(self, cache: LocalCache):
        self.cache = cache

    def init(self) -> None:
        self.cache.init()

    def teardown(self) -> None:
        self.cache.close()

    def load(self) -> Optional[ActiveVisitSnapshot]:
        raw = self.cache.get(APP_STATE, ACTIVE_VISIT_KEY)
        if raw is None:
            return None
        try:
            return ActiveVisitSnapshot.model_validate(raw)
        except ValueError as exc:
            logger.error("Visite active illisible dans le cache, supprimée : %s", exc)
            self.clear()
            return None

    def save(self, snapshot: ActiveVisitSnapshot) -> None:
        self.cache.put(APP_STATE, ACTIVE_VISIT_KEY, snapshot.model_dump(mode="json"))

    def clear(self) -> None:
        self.cache.delete(APP_STATE, ACTIVE_VISIT_KEY)


def _persisted_state(snapshot: ActiveVisitSnapshot) -> dict:
    return snapshot.model_dump(exclude={"elapsed_seconds"})


def elapsed_seconds(snapshot: ActiveVisitSnapshot, now: datetime) -> int:
    """
    Temps écoulé = horloge murale − started_at − durée cumulée des pauses.
    Figé à paused_at tant que la visite est en pause.
    """
    end = snapshot.paused_at if snapshot.status == "paused" and snapshot.paused_at else now
    seconds = (end - snapshot.started_at).total_seconds() - snapshot.paused_seconds
    return max(0, int(seconds))


def has_live_fix(
    snapshot: ActiveVisitSnapshot,
    now: Optional[datetime] = None,
    timeout_s: Optional[float] = None,
) -> bool:
    """Vrai si le GPS est actif et que le dernier fix ne dépasse pas le délai du suivi."""
    if not snapshot.gps_active or snapshot.fix_at is None:
        return False
    if now is not None and timeout_s is not None:
        return (now - snapshot.fix_at).total_seconds() <= timeout_s
    return True


def completion_readiness(
    snapshot: ActiveVisitSnapshot,
    radius_m: float,
    now: Optional[datetime] = None,
    timeout_s: Optional[float] = None,
) -> CompletionReadiness:
    """
    Porte de complétion : au moins une photo ET distance ≤ rayon (bornes incluses).
    L'absence de preuve bloque quelle que soit la distance ; une position
    manquante, révoquée ou périmée bloque toujours (fail-closed). Le dernier
    fix reste affiché mais ne compte plus.
    """
    distance = distance_between(snapshot.coordinates, snapshot.target_coordinates)
    if snapshot.photo_count < 1:
        return CompletionReadiness(ready=False, reason=CompletionBlock.NO_EVIDENCE, distance_m=distance)
    if distance is None or not has_live_fix(snapshot, now, timeout_s):
        return CompletionReadiness(ready=False, reason=CompletionBlock.LOCATION_UNAVAILABLE, distance_m=distance)
    if not within_radius(distance, radius_m):
        return CompletionReadiness(ready=False, reason=CompletionBlock.TOO_FAR, distance_m=distance)
    return CompletionReadiness(ready=True, distance_m=distance)


class ActiveVisitSession:
    """Session de visite terrain : file de mises à jour, suivi GPS, tick et porte de complétion."""

    def __init__(
        self,
        repository: SessionRepository,
        geolocation: GeolocationProvider,
        scheduler=None,
        notifier: NotificationSink = None,
        clock: Callable[[], datetime] = None,
        radius_m: float = None,
        watch_options: WatchOptions = None,
        tick_seconds: int = None,
    ):
        self.repository = repository
        self.geolocation = geolocation
        self.scheduler = scheduler
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.radius_m = settings.COMPLETION_RADIUS_M if radius_m is None else radius_m
        self.watch_options = watch_options or WatchOptions(
            high_accuracy=settings.GPS_HIGH_ACCURACY,
            timeout_ms=settings.GPS_TIMEOUT_MS,
            max_age_ms=settings.GPS_MAX_AGE_MS,
        )
        self.tick_seconds = tick_seconds or settings.ELAPSED_TICK_SECONDS

        self._updates: "queue.SimpleQueue[Merge]" = queue.SimpleQueue()
        self._drain_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._snapshot: Optional[ActiveVisitSnapshot] = None
        self._watch_id: Optional[int] = None

    # ----------------------------------------------------------------
    # Lecture
    # ----------------------------------------------------------------

    @property
    def snapshot(self) -> Optional[ActiveVisitSnapshot]:
        return self._snapshot

    @property
    def is_open(self) -> bool:
        return self._snapshot is not None

    def readiness(self) -> Optional[CompletionReadiness]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return self._evaluate_gate(snapshot)

    # ----------------------------------------------------------------
    # Cycle de vie
    # ----------------------------------------------------------------

    def restore(self) -> Optional[ActiveVisitSnapshot]:
        """Recharge la visite active depuis le cache local (au démarrage) et relance suivi + tick."""
        with self._lifecycle_lock:
            snapshot = self.repository.load()
            if snapshot is None:
                return None
            now = self._clock()
            self._submit(lambda _: snapshot.model_copy(update={
                "gps_active": False,
                "elapsed_seconds": elapsed_seconds(snapshot, now),
            }))
            self._start_watch()
            self._start_tick()
        logger.info("Visite active %s restaurée depuis le cache local", snapshot.id)
        return self._snapshot

    def open(self, db: Session, record_id: uuid.UUID, collector_id: Optional[uuid.UUID] = None) -> OpenVisitResponse:
        """
        Démarre la visite d'une visite APPROVED.
        Échoue si une visite est déjà ouverte sur l'appareil. Une permission de
        localisation refusée n'empêche pas l'ouverture (mode dégradé + avertissement).
        """
        with self._lifecycle_lock:
            current = self._snapshot or self.repository.load()
            if current is not None:
                raise SessionAlreadyOpen(current.id)

            record = db.get(SiteVisitRecord, record_id)
            if record is None:
                raise RecordNotFound(record_id)
            if record.status != VisitStatus.APPROVED:
                raise InvalidTransition(
                    record.status.value, "ACTIVE",
                    f"La visite doit être approuvée avant d'être démarrée (statut {record.status.value}).",
                )

            target = None
            if record.latitude is not None and record.longitude is not None:
                target = Coordinates(latitude=record.latitude, longitude=record.longitude)
            else:
                logger.warning("Visite %s sans coordonnées de site : complétion impossible", record.id)

            snapshot = ActiveVisitSnapshot(
                id=record.id,
                site_code=record.site_code,
                site_name=record.site_name,
                state=record.state,
                locality=record.locality,
                activity=record.activity,
                collector_id=collector_id or record.assigned_to,
                started_at=self._clock(),
                target_coordinates=target,
            )
            self._submit(lambda _: snapshot)
            self._start_watch()
            self._start_tick()

        warning = None
        if self.geolocation.permission_state() == PERMISSION_DENIED:
            warning = PERMISSION_WARNING
            logger.warning("Visite %s ouverte en mode dégradé : localisation refusée", record_id)

        notify_safely(self.notifier, "Visite démarrée", f"{snapshot.site_name} ({snapshot.site_code})")
        logger.info("Visite active ouverte : %s", record_id)
        return OpenVisitResponse(session=self._snapshot, warning=warning)

    def abandon(self) -> None:
        """Abandon explicite : détruit la session sans changer le statut de la visite."""
        snapshot = self._require_open()
        self._teardown()
        notify_safely(self.notifier, "Visite abandonnée", f"{snapshot.site_name} ({snapshot.site_code})", "warning")
        logger.info("Visite active abandonnée : %s", snapshot.id)

    def shutdown(self) -> None:
        """Arrêt du processus : stoppe suivi et tick, conserve le snapshot pour restore()."""
        self._stop_watch()
        self._stop_tick()

    # ----------------------------------------------------------------
    # Événements terrain
    # ----------------------------------------------------------------

    def position_update(
        self,
        coordinates: Coordinates,
        accuracy: Optional[float] = None,
        fix_at: Optional[datetime] = None,
    ) -> None:
        """Écrase la position courante et marque le GPS actif ; consigne un échantillon hors-ligne."""
        snapshot = self._snapshot
        if snapshot is None:
            return
        fix_at = fix_at or self._clock()
        if accuracy is not None:
            coordinates = coordinates.model_copy(update={"accuracy": accuracy})

        self._submit(lambda s: s.model_copy(update={
            "coordinates": coordinates,
            "fix_at": fix_at,
            "gps_active": True,
        }) if s is not None else None)

        self.repository.cache.enqueue(LOCATIONS, {
            "record_id": str(snapshot.id),
            "latitude": coordinates.latitude,
            "longitude": coordinates.longitude,
            "accuracy": coordinates.accuracy,
            "captured_at": fix_at.isoformat(),
        })

    def position_error(self, failure: PositionFailure) -> None:
        """Erreur du suivi GPS : GPS inactif, le dernier fix est conservé."""
        logger.warning("Erreur GPS (%s) : %s", failure.code, failure.message)
        self._submit(lambda s: s.model_copy(update={"gps_active": False}) if s is not None else None)

    def add_photo(self) -> ActiveVisitSnapshot:
        self._require_open()
        return self._submit(lambda s: s.model_copy(update={"photo_count": s.photo_count + 1}) if s is not None else None)

    def set_notes(self, notes: str) -> ActiveVisitSnapshot:
        """Remplace les notes et les persiste immédiatement, connecté ou non."""
        snapshot = self._require_open()
        updated = self._submit(lambda s: s.model_copy(update={"notes": notes}) if s is not None else None)
        self.repository.cache.enqueue(PENDING_ACTIONS, {
            "action": "update_notes",
            "record_id": str(snapshot.id),
            "notes": notes,
            "captured_at": self._clock().isoformat(),
        })
        return updated

    def pause(self) -> ActiveVisitSnapshot:
        self._require_open()
        now = self._clock()

        def _pause(s):
            if s is None or s.status == "paused":
                return s
            return s.model_copy(update={
                "status": "paused",
                "paused_at": now,
                "elapsed_seconds": elapsed_seconds(s, now),
            })

        return self._submit(_pause)

    def resume(self) -> ActiveVisitSnapshot:
        self._require_open()
        now = self._clock()

        def _resume(s):
            if s is None or s.status == "active":
                return s
            paused_for = (now - s.paused_at).total_seconds() if s.paused_at else 0.0
            resumed = s.model_copy(update={
                "status": "active",
                "paused_at": None,
                "paused_seconds": s.paused_seconds + max(0.0, paused_for),
            })
            return resumed.model_copy(update={"elapsed_seconds": elapsed_seconds(resumed, now)})

        return self._submit(_resume)

    def tick(self) -> None:
        """
        Tick périodique : rafraîchit le temps affiché (seulement si active) et
        marque le GPS inactif si le dernier fix dépasse le délai du suivi.
        """
        now = self._clock()
        timeout_s = self._fix_timeout_s

        def _tick(s):
            if s is None:
                return None
            update = {}
            if s.gps_active and s.fix_at is not None and (now - s.fix_at).total_seconds() > timeout_s:
                update["gps_active"] = False
            if s.status == "active":
                update["elapsed_seconds"] = elapsed_seconds(s, now)
            return s.model_copy(update=update) if update else s

        self._submit(_tick)

    # ----------------------------------------------------------------
    # Complétion
    # ----------------------------------------------------------------

    def attempt_complete(self, db: Session) -> CompletionResponse:
        """
        Évalue la porte de complétion.
        - Échec : retourne la raison bloquante, sans effet de bord.
        - Succès : passe la visite à COMPLETED, consigne le résumé hors-ligne,
          puis détruit la session. Si l'écriture échoue, la session reste intacte.
        """
        snapshot = self._require_open()
        readiness = self._evaluate_gate(snapshot)
        if not readiness.ready:
            logger.info("Complétion refusée pour %s : %s", snapshot.id, readiness.reason.value)
            return CompletionResponse(completed=False, readiness=readiness, record_id=snapshot.id)

        proof = CompletionProof(
            record_id=snapshot.id,
            photo_count=snapshot.photo_count,
            distance_m=readiness.distance_m,
            radius_m=self.radius_m,
            coordinates=snapshot.coordinates,
            collector_id=snapshot.collector_id,
        )
        workflow_service.complete_visit(db, proof)

        now = self._clock()
        self.repository.cache.enqueue(VISITS, {
            "record_id": str(snapshot.id),
            "site_code": snapshot.site_code,
            "started_at": snapshot.started_at.isoformat(),
            "completed_at": now.isoformat(),
            "duration_seconds": elapsed_seconds(snapshot, now),
            "photo_count": snapshot.photo_count,
            "notes": snapshot.notes,
            "latitude": snapshot.coordinates.latitude,
            "longitude": snapshot.coordinates.longitude,
            "distance_m": readiness.distance_m,
        })
        self._teardown()

        notify_safely(self.notifier, "Visite terminée", f"{snapshot.site_name} ({snapshot.site_code})")
        return CompletionResponse(completed=True, readiness=readiness, record_id=snapshot.id)

    # ----------------------------------------------------------------
    # Interne
    # ----------------------------------------------------------------

    def _submit(self, merge: Merge) -> Optional[ActiveVisitSnapshot]:
        """Ajoute une fusion à la file puis vide la file dans l'ordre, sous verrou."""
        self._updates.put(merge)
        with self._drain_lock:
            before = self._snapshot
            current = before
            while True:
                try:
                    pending = self._updates.get_nowait()
                except queue.Empty:
                    break
                current = pending(current)
            self._snapshot = current
            if current is not before:
                if current is None:
                    self.repository.clear()
                elif before is None or _persisted_state(current) != _persisted_state(before):
                    self.repository.save(current)
            return current

    @property
    def _fix_timeout_s(self) -> float:
        return self.watch_options.timeout_ms / 1000

    def _evaluate_gate(self, snapshot: ActiveVisitSnapshot) -> CompletionReadiness:
        return completion_readiness(snapshot, self.radius_m, now=self._clock(), timeout_s=self._fix_timeout_s)

    def _require_open(self) -> ActiveVisitSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise NoActiveSession()
        return snapshot

    def _teardown(self) -> None:
        with self._lifecycle_lock:
            self._stop_watch()
            self._stop_tick()
            self._submit(lambda _: None)

    def _on_fix(self, fix: PositionFix) -> None:
        self.position_update(
            Coordinates(latitude=fix.latitude, longitude=fix.longitude),
            accuracy=fix.accuracy,
            fix_at=fix.timestamp,
        )

    def _start_watch(self) -> None:
        if self._watch_id is None:
            self._watch_id = self.geolocation.watch(self._on_fix, self.position_error, self.watch_options)

    def _stop_watch(self) -> None:
        if self._watch_id is not None:
            self.geolocation.clear_watch(self._watch_id)
            self._watch_id = None

    def _start_tick(self) -> None:
        if self.scheduler is None:
            return
        self.scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self.tick_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
        )

    def _stop_tick(self) -> None:
        if self.scheduler is None:
            return
        if self.scheduler.get_job(TICK_JOB_ID) is not None:
            self.scheduler.remove_job(TICK_JOB_ID)
