"""
Modèle SQLAlchemy du cache local durable de l'appareil terrain.

Un seul magasin clé/valeur, partitionné par `store` :
- app_state       : état applicatif (ex: visite active sous la clé fixe "active_visit")
- pending_actions : actions saisies hors-ligne, en attente d'acquittement
- visits          : résumés de visites terminées non synchronisés
- locations       : échantillons de position non synchronisés
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, String, func

from app.database import LocalBase


class CacheEntry(LocalBase):
    __tablename__ = "cache_entries"

    store = Column(String(30), primary_key=True)
    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    synced = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
