"""
Service de synchronisation offline → online (réception côté base centrale).

Stratégie : append-only + idempotence
- Chaque élément terrain a un client_uuid unique (clé du cache local) → pas de conflit possible
- Un UUID déjà connu est silencieusement ignoré (renvoyé dans `duplicate`)
- Doublons intra-batch gérés en mémoire (autoflush=False)
- Une notification de changement est émise pour les visites concernées (rechargement coalescé)
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.field_sync import FieldSyncItem
from app.schemas.sync import SyncItem, SyncResponse

logger = logging.getLogger(__name__)


def sync_field_items(
    db: Session,
    items: List[SyncItem],
    device_id: str = "",
    on_change: Optional[Callable[[str], None]] = None,
) -> SyncResponse:
    """
    Insère en batch les éléments reçus depuis un appareil terrain.

    Pour chaque élément :
    1. Vérifie que client_uuid n'a pas déjà été reçu dans CE batch (set en mémoire)
    2. Vérifie que client_uuid n'existe pas déjà en base de données
    3. Si nouveau → crée l'enregistrement FieldSyncItem
    4. Si doublon → l'ajoute à la liste `duplicate` (aucune erreur levée)

    Toute la transaction est commitée en une seule fois.
    """
    accepted: List[str] = []
    duplicate: List[str] = []

    # Nécessaire car autoflush=False → les INSERTs en attente ne sont pas visibles via SELECT
    seen_in_batch: set = set()

    for item in items:
        client_uuid_str = str(item.client_uuid)

        # 1. Doublon intra-batch
        if item.client_uuid in seen_in_batch:
            duplicate.append(client_uuid_str)
            logger.debug("Doublon intra-batch ignoré : %s", client_uuid_str)
            continue

        # 2. Doublon inter-batch (déjà en base)
        existing = db.execute(
            select(FieldSyncItem).where(FieldSyncItem.client_uuid == item.client_uuid)
        ).scalar()

        if existing:
            duplicate.append(client_uuid_str)
            logger.debug("UUID déjà synchronisé, ignoré : %s", client_uuid_str)
            continue

        # 3. Nouvel élément → insérer
        db.add(FieldSyncItem(
            client_uuid=item.client_uuid,
            kind=item.kind,
            record_id=item.record_id,
            payload=item.payload,
            captured_at=item.captured_at,
            device_id=device_id or None,
        ))
        seen_in_batch.add(item.client_uuid)
        accepted.append(client_uuid_str)

    db.commit()

    logger.info(
        "Sync device=%s : %d reçus, %d insérés, %d doublons",
        device_id or "inconnu", len(items), len(accepted), len(duplicate),
    )

    if accepted and on_change is not None:
        on_change("field_sync_items")

    return SyncResponse(
        accepted=accepted,
        duplicate=duplicate,
        total_received=len(items),
        total_inserted=len(accepted),
    )
