"""
Schémas Pydantic pour le registre des permis et la porte de permis.
"""

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.schemas.site_visit import BulkResult


class PermitGateResult(str, enum.Enum):
    STATE_PERMIT_REQUIRED = "STATE_PERMIT_REQUIRED"
    LOCAL_PERMIT_REQUIRED = "LOCAL_PERMIT_REQUIRED"
    CLEAR = "CLEAR"


class StatePermitResponse(BaseModel):
    id: uuid.UUID
    state: str
    permit_file_name: Optional[str]
    verified: bool
    uploaded_by: Optional[uuid.UUID]
    uploaded_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class LocalityPermitResponse(BaseModel):
    id: uuid.UUID
    state: str
    locality: str
    permit_file_name: Optional[str]
    uploaded_by: Optional[uuid.UUID]
    uploaded_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class GateEvaluation(BaseModel):
    record_id: uuid.UUID
    result: PermitGateResult


class LocalityPermitStatus(BaseModel):
    """Agrégat par localité des visites en attente (ASSIGNED) et de leur porte de permis."""
    state: str
    locality: str
    gate: PermitGateResult
    site_count: int
    record_ids: List[uuid.UUID]


class LocalityOverrideRequest(BaseModel):
    state: str
    locality: str
    actor_id: Optional[uuid.UUID] = None

    @field_validator("state", "locality")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("L'état et la localité sont obligatoires.")
        return v.strip()


class LocalityOverrideResult(BaseModel):
    """Résultat de « poursuivre sans permis » : visites marquées + transition en lot."""
    state: str
    locality: str
    marked_count: int
    transition: BulkResult
