"""
Schémas Pydantic pour les visites de site et les commandes coordinateur.

Note : on importe datetime en tant que module (dt) pour éviter le conflit de nommage
entre les champs `date` et le type `datetime.date` dans Pydantic v2.
"""

import uuid
import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.site_visit import VisitStatus


class ExpectedWindow(BaseModel):
    """Fenêtre de visite attendue (bornes incluses, granularité jour)."""
    start: dt.date
    end: dt.date


class PermitOverride(BaseModel):
    """Marque « poursuivre sans permis local » posée sur toutes les visites d'une localité."""
    state: str
    locality: str
    applied_by: Optional[uuid.UUID] = None
    applied_at: dt.datetime


class VisitExtensions(BaseModel):
    """
    Structure d'extension versionnée d'une visite.
    Remplace le sac de métadonnées libre : chaque usage connu a son champ optionnel.
    """
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    permit_override: Optional[PermitOverride] = None
    expected_window: Optional[ExpectedWindow] = None


class SiteVisitResponse(BaseModel):
    id: uuid.UUID
    site_code: str
    site_name: str
    state: str
    locality: str
    hub_office: Optional[str]
    activity: Optional[str]
    main_activity: Optional[str] = None
    latitude: Optional[float]
    longitude: Optional[float]
    status: VisitStatus
    assigned_to: Optional[uuid.UUID]
    assigned_at: Optional[dt.datetime]
    visit_date: Optional[dt.date]
    verified_by: Optional[uuid.UUID] = None
    verified_at: Optional[dt.datetime] = None
    verification_notes: Optional[str] = None
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[dt.datetime] = None
    approval_notes: Optional[str] = None
    rejected_by: Optional[uuid.UUID] = None
    rejected_at: Optional[dt.datetime] = None
    rejection_reason: Optional[str] = None
    completed_by: Optional[uuid.UUID] = None
    completed_at: Optional[dt.datetime] = None
    extensions: VisitExtensions = Field(default_factory=VisitExtensions)
    version: int

    model_config = ConfigDict(from_attributes=True)


class SiteVisitPage(BaseModel):
    """Page de résultats de l'API de recherche."""
    items: List[SiteVisitResponse]
    total: int
    page: int
    page_size: int


class StatusBadges(BaseModel):
    """Compteurs par statut, recalculés après chaque commande."""
    assigned: int = 0
    permits_attached: int = 0
    verified: int = 0
    approved: int = 0
    completed: int = 0
    rejected: int = 0
    total: int = 0


# --- Commandes unitaires ---

class AttachPermitRequest(BaseModel):
    actor_id: Optional[uuid.UUID] = None


class VerifyRequest(BaseModel):
    # Optionnels ici : l'absence est signalée par le service (ValidationError, aucune mutation)
    expected_date: Optional[dt.date] = None
    expected_window: Optional[ExpectedWindow] = None
    notes: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None


class ApproveRequest(BaseModel):
    notes: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None


class TransitionResult(BaseModel):
    """Réponse d'une commande unitaire : visite à jour + compteurs."""
    record: SiteVisitResponse
    badges: StatusBadges


# --- Commandes en lot ---

class BulkSelection(BaseModel):
    """Sélection explicite (record_ids) ou toute une localité (state + locality)."""
    record_ids: Optional[List[uuid.UUID]] = None
    state: Optional[str] = None
    locality: Optional[str] = None


class BulkAttachPermitRequest(BaseModel):
    selection: BulkSelection
    actor_id: Optional[uuid.UUID] = None


class BulkVerifyRequest(BaseModel):
    selection: BulkSelection
    expected_date: Optional[dt.date] = None
    expected_window: Optional[ExpectedWindow] = None
    notes: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None


class BulkApproveRequest(BaseModel):
    selection: BulkSelection
    notes: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None


class BulkFailure(BaseModel):
    record_id: uuid.UUID
    error: str         # ValidationError, InvalidTransition, StoreError, RecordNotFound
    reason: str


class BulkResult(BaseModel):
    """Rapport d'une commande en lot : les échecs sont collectés, jamais annulés."""
    succeeded_ids: List[uuid.UUID] = []
    failed: List[BulkFailure] = []
    badges: Optional[StatusBadges] = None

    @property
    def failed_ids(self) -> List[uuid.UUID]:
        return [f.record_id for f in self.failed]
