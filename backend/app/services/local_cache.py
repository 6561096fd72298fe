"""
Cache local durable de l'appareil terrain (clé/valeur sur SQLite).

Survit aux redémarrages du processus. Utilisé par :
- le dépôt de session (visite active sous une clé fixe)
- la file offline (actions en attente, visites terminées, échantillons de position)
- le moniteur de synchronisation (comptage des éléments non acquittés)
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from app.database import LocalBase, make_local_engine
from app.models.local_cache import CacheEntry

logger = logging.getLogger(__name__)

APP_STATE = "app_state"
PENDING_ACTIONS = "pending_actions"
VISITS = "visits"
LOCATIONS = "locations"

SYNCABLE_STORES = (PENDING_ACTIONS, VISITS, LOCATIONS)


class LocalCache:
    """Magasin clé/valeur partitionné par `store`, adossé à son propre moteur SQLAlchemy."""

    def __init__(self, url: str):
        self.url = url
        self.engine = make_local_engine(url)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init(self) -> None:
        """Crée les tables du cache si nécessaire."""
        LocalBase.metadata.create_all(self.engine)
        logger.info("Cache local initialisé (%s)", self.url)

    def close(self) -> None:
        self.engine.dispose()

    # --- Clé/valeur ---

    def get(self, store: str, key: str) -> Optional[Any]:
        with self._session_factory() as db:
            entry = db.get(CacheEntry, (store, key))
            return entry.value if entry else None

    def put(self, store: str, key: str, value: Any, synced: bool = True) -> None:
        with self._session_factory() as db:
            entry = db.get(CacheEntry, (store, key))
            if entry is None:
                db.add(CacheEntry(store=store, key=key, value=value, synced=synced))
            else:
                entry.value = value
                entry.synced = synced
            db.commit()

    def delete(self, store: str, key: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(CacheEntry).where(CacheEntry.store == store, CacheEntry.key == key))
            db.commit()

    # --- File offline ---

    def enqueue(self, store: str, value: Dict[str, Any]) -> str:
        """Ajoute un élément non synchronisé ; la clé générée sert de client_uuid."""
        key = str(uuid.uuid4())
        self.put(store, key, value, synced=False)
        return key

    def count_unsynced(self, store: str) -> int:
        with self._session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(CacheEntry)
                .where(CacheEntry.store == store, CacheEntry.synced.is_(False))
            ).scalar() or 0

    def list_unsynced(self, stores: Iterable[str] = SYNCABLE_STORES, limit: int = 200) -> List[Tuple[str, str, Any]]:
        """Retourne (store, key, value) des éléments non acquittés, les plus anciens d'abord."""
        with self._session_factory() as db:
            rows = db.execute(
                select(CacheEntry)
                .where(CacheEntry.store.in_(list(stores)), CacheEntry.synced.is_(False))
                .order_by(CacheEntry.created_at)
                .limit(limit)
            ).scalars().all()
            return [(row.store, row.key, row.value) for row in rows]

    def acknowledge(self, store: str, keys: List[str]) -> int:
        """Supprime les éléments acquittés par le serveur ; retourne le nombre supprimé."""
        if not keys:
            return 0
        with self._session_factory() as db:
            result = db.execute(
                delete(CacheEntry)
                .where(
                    CacheEntry.store == store,
                    CacheEntry.key.in_(keys),
                    CacheEntry.synced.is_(False),
                )
            )
            db.commit()
            return result.rowcount or 0
