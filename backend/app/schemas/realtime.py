"""
Schémas Pydantic des notifications de changement temps réel
et de l'ensemble de travail coordinateur.
"""

import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel

from app.schemas.permit import LocalityPermitStatus
from app.schemas.site_visit import StatusBadges


class ChangeEvent(BaseModel):
    """Événement de changement émis par le magasin de données (INSERT / UPDATE / DELETE)."""
    table: str
    type: Literal["INSERT", "UPDATE", "DELETE"] = "UPDATE"
    record_id: Optional[uuid.UUID] = None


class ChangeAck(BaseModel):
    scheduled: bool     # False : coalescé avec un rechargement déjà planifié


class WorkingSetSnapshot(BaseModel):
    badges: StatusBadges
    localities: List[LocalityPermitStatus]
    loaded_at: datetime
    reload_count: int
