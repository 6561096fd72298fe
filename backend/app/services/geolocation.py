"""
Fournisseur de géolocalisation de l'appareil terrain.

Le suivi est continu : watch(on_fix, on_error, options) enregistre deux
callbacks appelés à la cadence du fournisseur. L'implémentation livrée est
alimentée par l'API terrain (positions poussées par le client mobile).
Un fix plus ancien que max_age est écarté ; une permission refusée est
signalée par on_error, jamais par une attente bloquante.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from app.exceptions import PermissionDenied

logger = logging.getLogger(__name__)

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_PROMPT = "prompt"


@dataclass(frozen=True)
class WatchOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_age_ms: int = 5000


@dataclass(frozen=True)
class PositionFix:
    latitude: float
    longitude: float
    accuracy: Optional[float]
    timestamp: datetime


@dataclass(frozen=True)
class PositionFailure:
    code: str          # PERMISSION_DENIED, POSITION_UNAVAILABLE, TIMEOUT
    message: str = ""


FixCallback = Callable[[PositionFix], None]
ErrorCallback = Callable[[PositionFailure], None]


class GeolocationProvider(Protocol):
    def watch(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...

    def permission_state(self) -> str: ...


class PushGeolocationProvider:
    """Fournisseur alimenté de l'extérieur (positions reçues par l'API terrain)."""

    def __init__(self, clock: Callable[[], datetime] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._watches: Dict[int, Tuple[FixCallback, ErrorCallback, WatchOptions]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._permission = PERMISSION_PROMPT

    def watch(self, on_fix: FixCallback, on_error: ErrorCallback, options: WatchOptions) -> int:
        with self._lock:
            watch_id = next(self._ids)
            self._watches[watch_id] = (on_fix, on_error, options)
        logger.debug("Suivi GPS %d démarré (haute précision=%s)", watch_id, options.high_accuracy)
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        with self._lock:
            self._watches.pop(watch_id, None)
        logger.debug("Suivi GPS %d arrêté", watch_id)

    def permission_state(self) -> str:
        return self._permission

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    def set_permission(self, state: str) -> None:
        """Met à jour la permission rapportée par l'appareil ; un refus coupe le flux de positions."""
        self._permission = state
        if state == PERMISSION_DENIED:
            self.push_error(PositionFailure("PERMISSION_DENIED", "Permission de localisation refusée."))

    def push_fix(self, fix: PositionFix) -> int:
        """Distribue un fix aux suivis actifs ; retourne le nombre de suivis servis."""
        if self._permission == PERMISSION_DENIED:
            raise PermissionDenied("Position reçue alors que la localisation est refusée sur l'appareil.")
        delivered = 0
        now = self._clock()
        for on_fix, on_error, options in self._snapshot():
            age_ms = (now - fix.timestamp).total_seconds() * 1000
            if age_ms > options.max_age_ms:
                logger.debug("Fix GPS périmé ignoré (%.0f ms)", age_ms)
                continue
            on_fix(fix)
            delivered += 1
        return delivered

    def push_error(self, failure: PositionFailure) -> None:
        for _, on_error, _ in self._snapshot():
            on_error(failure)

    def _snapshot(self):
        with self._lock:
            return list(self._watches.values())
