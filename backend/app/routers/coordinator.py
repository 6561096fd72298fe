"""
Router coordinateur : notifications de changement et ensemble de travail.
Une rafale de changements ne provoque qu'un seul rechargement.
"""

from fastapi import APIRouter, Depends

from app.runtime import FieldRuntime, get_runtime
from app.schemas.realtime import ChangeAck, ChangeEvent, WorkingSetSnapshot

router = APIRouter(prefix="/api/v1/coordinator", tags=["Coordinateur"])


@router.post("/changes", response_model=ChangeAck, summary="Notifier un changement de données")
def notify_change(event: ChangeEvent, runtime: FieldRuntime = Depends(get_runtime)):
    """scheduled=false si le changement est absorbé par un rechargement déjà planifié."""
    return ChangeAck(scheduled=runtime.coalescer.notify(event.table))


@router.get("/working-set", response_model=WorkingSetSnapshot, summary="Ensemble de travail coordinateur")
def get_working_set(runtime: FieldRuntime = Depends(get_runtime)):
    """Compteurs par statut et statut des permis par localité, au dernier rechargement."""
    snapshot = runtime.working_set.snapshot
    if snapshot is None:
        snapshot = runtime.working_set.reload()
    return snapshot
