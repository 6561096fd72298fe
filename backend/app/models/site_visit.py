"""
Modèle SQLAlchemy des visites de site (SiteVisitRecord).

Cycle de vie : ASSIGNED → PERMITS_ATTACHED → VERIFIED → APPROVED → COMPLETED,
avec REJECTED atteignable depuis ASSIGNED / PERMITS_ATTACHED / VERIFIED.
Une visite n'est jamais supprimée par ce service.
"""

import enum
import uuid
from sqlalchemy import JSON, Column, Date, DateTime, Enum, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class VisitStatus(str, enum.Enum):
    ASSIGNED = "ASSIGNED"
    PERMITS_ATTACHED = "PERMITS_ATTACHED"
    VERIFIED = "VERIFIED"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class SiteVisitRecord(Base):
    """Une visite de suivi planifiée puis exécutée sur un site physique."""
    __tablename__ = "site_visits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_code = Column(String(50), nullable=False)
    site_name = Column(String(255), nullable=False)
    state = Column(String(100), nullable=False)
    locality = Column(String(100), nullable=False)
    hub_office = Column(String(100), nullable=True)
    activity = Column(String(255), nullable=True)        # Ex: "Food Distribution"
    main_activity = Column(String(255), nullable=True)

    # Coordonnées du site (cible de la porte GPS)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    status = Column(Enum(VisitStatus, native_enum=False, length=20), nullable=False, default=VisitStatus.ASSIGNED)
    assigned_to = Column(UUID(as_uuid=True), nullable=True)   # Collecteur propriétaire
    assigned_at = Column(DateTime, server_default=func.now())
    visit_date = Column(Date, nullable=True)                  # NULL tant que le statut précède VERIFIED

    verified_by = Column(UUID(as_uuid=True), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    verification_notes = Column(Text, nullable=True)

    approved_by = Column(UUID(as_uuid=True), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_notes = Column(Text, nullable=True)

    rejected_by = Column(UUID(as_uuid=True), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    completed_by = Column(UUID(as_uuid=True), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Structure d'extension versionnée (voir app.schemas.site_visit.VisitExtensions)
    extensions = Column(JSON, nullable=False, default=dict)

    # Verrou optimiste : un UPDATE sur une version périmée lève StaleDataError
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
