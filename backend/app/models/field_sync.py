"""
Modèle SQLAlchemy des éléments terrain synchronisés (offline-first).

Architecture offline-first :
- client_uuid : clé du cache local de l'appareil, clé d'idempotence
- captured_at : timestamp local du client (avant sync réseau)
- Les éléments sont créés dans le cache SQLite local, puis synchronisés via POST /api/sync/field-items
"""

import uuid
from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class FieldSyncItem(Base):
    """Élément terrain acquitté : action en attente, visite terminée ou échantillon de position."""
    __tablename__ = "field_sync_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_uuid = Column(UUID(as_uuid=True), unique=True, nullable=False)  # Clé idempotence (offline-first)

    kind = Column(String(30), nullable=False)         # pending_actions, visits, locations
    record_id = Column(UUID(as_uuid=True), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)

    captured_at = Column(DateTime, nullable=False)     # Timestamp client (offline)
    device_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
