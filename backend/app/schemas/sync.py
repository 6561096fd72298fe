"""
Schémas Pydantic pour la synchronisation offline → online.
Endpoints : POST /api/sync/field-items, GET /api/sync/status, POST /api/sync/now
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

VALID_KINDS = {"pending_actions", "visits", "locations"}
MAX_BATCH_SIZE = 500


class SyncItem(BaseModel):
    """Un élément généré côté appareil terrain, potentiellement hors-ligne."""

    client_uuid: uuid.UUID        # Clé du cache local, clé d'idempotence
    kind: str                     # pending_actions, visits, locations
    record_id: Optional[uuid.UUID] = None
    payload: Dict[str, Any] = {}
    captured_at: datetime         # Timestamp local au moment de la saisie (avant réseau)

    @field_validator("kind")
    @classmethod
    def valid_kind(cls, v: str) -> str:
        if v not in VALID_KINDS:
            raise ValueError(f"Type d'élément invalide. Valeurs acceptées : {VALID_KINDS}")
        return v


class SyncRequest(BaseModel):
    """Corps de la requête batch de synchronisation."""

    items: List[SyncItem]
    device_id: str = ""

    @field_validator("items")
    @classmethod
    def items_not_too_large(cls, v: List[SyncItem]) -> List[SyncItem]:
        if len(v) > MAX_BATCH_SIZE:
            raise ValueError(f"Batch trop grand : maximum {MAX_BATCH_SIZE} éléments par requête.")
        return v


class SyncResponse(BaseModel):
    """Rapport de synchronisation retourné par le serveur."""

    accepted: List[str]           # client_uuids insérés avec succès
    duplicate: List[str]          # client_uuids déjà présents en base (idempotence)
    total_received: int
    total_inserted: int


class SyncCounts(BaseModel):
    """Éléments du cache local non acquittés par la base centrale."""
    pending_actions: int = 0
    unsynced_visits: int = 0
    unsynced_locations: int = 0

    @property
    def total(self) -> int:
        return self.pending_actions + self.unsynced_visits + self.unsynced_locations


class SyncRunResult(BaseModel):
    """Résultat d'une demande de synchronisation (éventuellement ignorée)."""
    started: bool
    skipped_reason: Optional[str] = None   # offline, already_syncing
    synced: int = 0
    failed: int = 0
    finished_at: Optional[datetime] = None


class SyncStatus(BaseModel):
    is_online: bool
    is_syncing: bool
    just_came_online: bool
    counts: SyncCounts
    pending_count: int
    last_result: Optional[SyncRunResult] = None
    has_errors: bool = False


class ConnectivityUpdate(BaseModel):
    online: bool
