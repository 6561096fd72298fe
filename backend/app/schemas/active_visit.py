"""
Schémas Pydantic de la visite active côté collecteur.

Le snapshot est immuable : chaque mise à jour produit une copie (model_copy),
ce qui permet d'appliquer des fusions pures depuis la file ordonnée de la session.
"""

import enum
import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    accuracy: Optional[float] = None   # Mètres

    @field_validator("latitude")
    @classmethod
    def valid_latitude(cls, v: float) -> float:
        if not -90.0 <= v <= 90.0:
            raise ValueError("Latitude hors plage [-90, 90].")
        return v

    @field_validator("longitude")
    @classmethod
    def valid_longitude(cls, v: float) -> float:
        if not -180.0 <= v <= 180.0:
            raise ValueError("Longitude hors plage [-180, 180].")
        return v


class ActiveVisitSnapshot(BaseModel):
    """État persisté de la visite active (clé unique du cache local)."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID                   # = id de la visite sous-jacente
    site_code: str
    site_name: str
    state: str
    locality: str
    activity: Optional[str] = None
    collector_id: Optional[uuid.UUID] = None
    started_at: datetime
    coordinates: Optional[Coordinates] = None
    fix_at: Optional[datetime] = None
    target_coordinates: Optional[Coordinates] = None
    photo_count: int = 0
    notes: str = ""
    status: Literal["active", "paused"] = "active"
    gps_active: bool = False
    paused_at: Optional[datetime] = None
    paused_seconds: float = 0.0
    elapsed_seconds: int = 0        # Valeur affichée, rafraîchie par le tick


class CompletionBlock(str, enum.Enum):
    NO_EVIDENCE = "NO_EVIDENCE"
    LOCATION_UNAVAILABLE = "LOCATION_UNAVAILABLE"
    TOO_FAR = "TOO_FAR"


class CompletionReadiness(BaseModel):
    ready: bool
    reason: Optional[CompletionBlock] = None
    distance_m: Optional[float] = None


class CompletionProof(BaseModel):
    """Preuve produite par la porte de complétion, exigée par le workflow."""
    model_config = ConfigDict(frozen=True)

    record_id: uuid.UUID
    photo_count: int
    distance_m: float
    radius_m: float
    coordinates: Coordinates
    collector_id: Optional[uuid.UUID] = None


# --- Requêtes / réponses de l'API terrain ---

class OpenVisitRequest(BaseModel):
    record_id: uuid.UUID
    collector_id: Optional[uuid.UUID] = None


class OpenVisitResponse(BaseModel):
    session: ActiveVisitSnapshot
    warning: Optional[str] = None   # Permission GPS refusée : mode dégradé


class PositionUpdate(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None


class PositionError(BaseModel):
    code: Literal["PERMISSION_DENIED", "POSITION_UNAVAILABLE", "TIMEOUT"] = "POSITION_UNAVAILABLE"
    message: Optional[str] = None


class PermissionUpdate(BaseModel):
    state: Literal["granted", "denied", "prompt"]


class NotesUpdate(BaseModel):
    notes: str


class ActiveVisitStatus(BaseModel):
    session: Optional[ActiveVisitSnapshot]
    readiness: Optional[CompletionReadiness] = None


class CompletionResponse(BaseModel):
    completed: bool
    readiness: CompletionReadiness
    record_id: Optional[uuid.UUID] = None
