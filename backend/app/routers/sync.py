"""
Router pour la synchronisation offline → online.

Côté base centrale : réception idempotente des éléments terrain.
Côté appareil : état du moniteur (connectivité, éléments en attente) et
déclenchement manuel.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.runtime import FieldRuntime, get_runtime
from app.schemas.sync import ConnectivityUpdate, SyncRequest, SyncResponse, SyncRunResult, SyncStatus
from app.services import sync_service

router = APIRouter(prefix="/api/sync", tags=["Synchronisation offline"])


@router.post(
    "/field-items",
    response_model=SyncResponse,
    summary="Synchroniser les éléments terrain (offline → online)",
)
def sync_field_items(
    data: SyncRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """
    Reçoit un batch d'éléments générés hors-ligne (actions, visites, positions).

    Comportement :
    - Idempotent : un client_uuid déjà connu est ignoré (pas d'erreur)
    - Doublons intra-batch et inter-batch gérés séparément
    - Retourne le rapport : UUIDs acceptés / doublons / totaux
    """
    return sync_service.sync_field_items(
        db, data.items, data.device_id, on_change=runtime.coalescer.notify,
    )


@router.get("/status", response_model=SyncStatus, summary="État de synchronisation de l'appareil")
def get_sync_status(runtime: FieldRuntime = Depends(get_runtime)):
    return runtime.monitor.status()


@router.post("/now", response_model=SyncRunResult, summary="Synchroniser maintenant")
def sync_now(runtime: FieldRuntime = Depends(get_runtime)):
    """Sans effet hors-ligne ou si une synchronisation est déjà en cours (skipped_reason)."""
    return runtime.monitor.sync_now()


@router.post("/connectivity", response_model=SyncStatus, summary="Signaler un changement de connectivité")
def set_connectivity(data: ConnectivityUpdate, runtime: FieldRuntime = Depends(get_runtime)):
    """Le passage hors-ligne → en ligne déclenche une synchronisation."""
    return runtime.monitor.set_online(data.online)
