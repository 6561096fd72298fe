"""
Modèles SQLAlchemy des permis (état et localité).

Registre append-only : une ligne n'est jamais modifiée. La vérification d'un
permis d'état ajoute un nouveau fait vérifié plutôt que de modifier l'upload.
"""

import uuid
from sqlalchemy import Boolean, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class StatePermit(Base):
    """Permis fédéral/étatique couvrant tout un état."""
    __tablename__ = "state_permits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    state = Column(String(100), nullable=False, index=True)
    permit_file_name = Column(String(255), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)
    uploaded_by = Column(UUID(as_uuid=True), nullable=True)
    uploaded_at = Column(DateTime, server_default=func.now())


class LocalityPermit(Base):
    """Permis local, significatif seulement une fois le permis d'état vérifié."""
    __tablename__ = "locality_permits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    state = Column(String(100), nullable=False, index=True)
    locality = Column(String(100), nullable=False)
    permit_file_name = Column(String(255), nullable=True)
    uploaded_by = Column(UUID(as_uuid=True), nullable=True)
    uploaded_at = Column(DateTime, server_default=func.now())
