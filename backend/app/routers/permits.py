"""
Router pour le registre des permis (états et localités).
Le fichier lui-même n'est pas conservé : seul son nom est enregistré
comme preuve de dépôt.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from app.database import get_db
from app.exceptions import FieldTrackError
from app.routers.errors import to_http_exception
from app.runtime import FieldRuntime, get_runtime
from app.schemas.permit import (
    LocalityOverrideRequest,
    LocalityOverrideResult,
    LocalityPermitResponse,
    LocalityPermitStatus,
    PermitGateResult,
    StatePermitResponse,
)
from app.services import permit_service

router = APIRouter(prefix="/api/v1/permits", tags=["Permis"])


def _file_name(file: Optional[UploadFile]) -> Optional[str]:
    if file is None or not file.filename:
        return None
    return file.filename


@router.get("/state", response_model=List[StatePermitResponse], summary="Lister les permis d'état")
def list_state_permits(state: Optional[str] = None, db: Session = Depends(get_db)):
    return permit_service.list_state_permits(db, state=state)


@router.post("/state", response_model=StatePermitResponse, status_code=201, summary="Déposer un permis d'état")
def upload_state_permit(
    state: str = Form(...),
    uploaded_by: Optional[uuid.UUID] = Form(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """Le permis déposé n'ouvre la porte qu'après vérification."""
    try:
        permit = permit_service.upload_state_permit(db, state, _file_name(file), uploaded_by)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("state_permits")
    return permit


@router.post("/state/{state}/verify", response_model=StatePermitResponse, summary="Vérifier un permis d'état")
def verify_state_permit(
    state: str,
    verified_by: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    try:
        permit = permit_service.verify_state_permit(db, state, verified_by)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("state_permits")
    return permit


@router.get("/locality", response_model=List[LocalityPermitResponse], summary="Lister les permis locaux")
def list_locality_permits(state: Optional[str] = None, db: Session = Depends(get_db)):
    return permit_service.list_locality_permits(db, state=state)


@router.post("/locality", response_model=LocalityPermitResponse, status_code=201, summary="Déposer un permis local")
def upload_locality_permit(
    state: str = Form(...),
    locality: str = Form(...),
    uploaded_by: Optional[uuid.UUID] = Form(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    try:
        permit = permit_service.upload_locality_permit(db, state, locality, _file_name(file), uploaded_by)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("locality_permits")
    return permit


@router.get(
    "/localities/status",
    response_model=List[LocalityPermitStatus],
    summary="Statut des permis par localité",
)
def get_locality_statuses(
    gate: Optional[PermitGateResult] = None,
    assigned_to: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
):
    """
    Agrégat des visites ASSIGNED par (état, localité), filtrable par résultat de porte
    et par collecteur assigné.
    Sert à l'onglet « permis locaux requis » du coordinateur.
    """
    return permit_service.locality_permit_statuses(db, gate=gate, assigned_to=assigned_to)


@router.post(
    "/locality/override",
    response_model=LocalityOverrideResult,
    summary="Poursuivre sans permis local",
)
def apply_locality_override(
    data: LocalityOverrideRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """
    Marque toutes les visites de la localité puis les fait passer à PERMITS_ATTACHED.
    Refusé (422) tant que le permis d'état n'est pas vérifié.
    """
    try:
        result = permit_service.apply_locality_override(db, data.state, data.locality, data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("site_visits")
    return result
