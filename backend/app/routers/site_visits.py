"""
Router coordinateur pour les visites de site.
Lecture paginée, compteurs par statut, transitions unitaires et en lot.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.exceptions import FieldTrackError
from app.models.site_visit import VisitStatus
from app.routers.errors import to_http_exception
from app.runtime import FieldRuntime, get_runtime
from app.schemas.permit import GateEvaluation
from app.schemas.site_visit import (
    ApproveRequest,
    AttachPermitRequest,
    BulkApproveRequest,
    BulkAttachPermitRequest,
    BulkResult,
    BulkVerifyRequest,
    RejectRequest,
    SiteVisitPage,
    SiteVisitResponse,
    StatusBadges,
    TransitionResult,
    VerifyRequest,
)
from app.services import permit_service, site_visit_service, workflow_service

router = APIRouter(prefix="/api/v1/site-visits", tags=["Visites de site"])


def _transition_result(db: Session, runtime: FieldRuntime, record) -> TransitionResult:
    """Réponse commune des commandes : visite + compteurs recalculés, rechargement notifié."""
    runtime.coalescer.notify("site_visits")
    return TransitionResult(
        record=workflow_service.to_response(record),
        badges=workflow_service.status_badges(db),
    )


@router.get("", response_model=SiteVisitPage, summary="Rechercher les visites")
def list_site_visits(
    status: Optional[VisitStatus] = None,
    hub_office: Optional[str] = None,
    state: Optional[str] = None,
    locality: Optional[str] = None,
    activity: Optional[str] = None,
    assigned_to: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=site_visit_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    """Filtres combinables : statut, hub, état, localité, activité, collecteur, recherche libre."""
    return site_visit_service.list_site_visits(
        db,
        status=status,
        hub_office=hub_office,
        state=state,
        locality=locality,
        activity=activity,
        assigned_to=assigned_to,
        search=search,
        page=page,
        page_size=page_size,
    )


@router.get("/badges", response_model=StatusBadges, summary="Compteurs par statut")
def get_badges(assigned_to: Optional[uuid.UUID] = None, db: Session = Depends(get_db)):
    return workflow_service.status_badges(db, assigned_to=assigned_to)


# --- Commandes en lot (déclarées avant les routes /{record_id}) ---

@router.post("/bulk/attach-permit", response_model=BulkResult, summary="Rattacher les permis en lot")
def bulk_attach_permit(
    data: BulkAttachPermitRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """Boucle séquentielle : les échecs sont rapportés par visite, les réussites conservées."""
    try:
        result = workflow_service.bulk_attach_permit(db, data.selection, actor_id=data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("site_visits")
    return result


@router.post("/bulk/verify", response_model=BulkResult, summary="Vérifier en lot")
def bulk_verify(
    data: BulkVerifyRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """
    Applique la même date (et fenêtre) attendue à toute la sélection.
    Une visite de distribution sans fenêtre valide échoue seule, sans bloquer le lot.
    """
    try:
        result = workflow_service.bulk_verify(
            db,
            data.selection,
            expected_date=data.expected_date,
            expected_window=data.expected_window,
            notes=data.notes,
            actor_id=data.actor_id,
        )
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("site_visits")
    return result


@router.post("/bulk/approve", response_model=BulkResult, summary="Approuver en lot")
def bulk_approve(
    data: BulkApproveRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    try:
        result = workflow_service.bulk_approve(db, data.selection, notes=data.notes, actor_id=data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    runtime.coalescer.notify("site_visits")
    return result


# --- Visite unitaire ---

@router.get("/{record_id}", response_model=SiteVisitResponse, summary="Détail d'une visite")
def get_site_visit(record_id: uuid.UUID, db: Session = Depends(get_db)):
    try:
        return site_visit_service.get_site_visit(db, record_id)
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.get("/{record_id}/permit-gate", response_model=GateEvaluation, summary="Évaluer la porte de permis")
def evaluate_permit_gate(record_id: uuid.UUID, db: Session = Depends(get_db)):
    """STATE_PERMIT_REQUIRED, LOCAL_PERMIT_REQUIRED ou CLEAR. Aucune mutation."""
    try:
        return permit_service.evaluate_record(db, record_id)
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.post("/{record_id}/attach-permit", response_model=TransitionResult, summary="Rattacher les permis")
def attach_permit(
    record_id: uuid.UUID,
    data: AttachPermitRequest = AttachPermitRequest(),
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """ASSIGNED → PERMITS_ATTACHED. Idempotent sur une visite déjà PERMITS_ATTACHED."""
    try:
        record = workflow_service.attach_permit(db, record_id, actor_id=data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    return _transition_result(db, runtime, record)


@router.post("/{record_id}/verify", response_model=TransitionResult, summary="Vérifier une visite")
def verify(
    record_id: uuid.UUID,
    data: VerifyRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """
    PERMITS_ATTACHED | REJECTED → VERIFIED.
    Date attendue obligatoire ; fenêtre obligatoire pour les activités de distribution (422 sinon).
    """
    try:
        record = workflow_service.verify(
            db,
            record_id,
            expected_date=data.expected_date,
            expected_window=data.expected_window,
            notes=data.notes,
            actor_id=data.actor_id,
        )
    except FieldTrackError as e:
        raise to_http_exception(e)
    return _transition_result(db, runtime, record)


@router.post("/{record_id}/reject", response_model=TransitionResult, summary="Rejeter une visite")
def reject(
    record_id: uuid.UUID,
    data: RejectRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """ASSIGNED | PERMITS_ATTACHED | VERIFIED → REJECTED. Motif obligatoire."""
    try:
        record = workflow_service.reject(db, record_id, reason=data.reason, actor_id=data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    return _transition_result(db, runtime, record)


@router.post("/{record_id}/approve", response_model=TransitionResult, summary="Approuver une visite")
def approve(
    record_id: uuid.UUID,
    data: ApproveRequest = ApproveRequest(),
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """VERIFIED → APPROVED."""
    try:
        record = workflow_service.approve(db, record_id, notes=data.notes, actor_id=data.actor_id)
    except FieldTrackError as e:
        raise to_http_exception(e)
    return _transition_result(db, runtime, record)
