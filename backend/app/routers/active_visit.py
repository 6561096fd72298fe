"""
Router terrain pour la visite active de l'appareil.

Une seule visite active par appareil. Les positions GPS sont poussées par
le client mobile puis distribuées aux suivis ouverts par la session.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.exceptions import FieldTrackError
from app.routers.errors import to_http_exception
from app.runtime import FieldRuntime, get_runtime
from app.schemas.active_visit import (
    ActiveVisitSnapshot,
    ActiveVisitStatus,
    CompletionResponse,
    NotesUpdate,
    OpenVisitRequest,
    OpenVisitResponse,
    PermissionUpdate,
    PositionError,
    PositionUpdate,
)
from app.services.geolocation import PositionFailure, PositionFix

router = APIRouter(prefix="/api/field/active-visit", tags=["Visite active"])


def _status(runtime: FieldRuntime) -> ActiveVisitStatus:
    return ActiveVisitStatus(session=runtime.session.snapshot, readiness=runtime.session.readiness())


@router.get("", response_model=ActiveVisitStatus, summary="Visite active et préparation à la complétion")
def get_active_visit(runtime: FieldRuntime = Depends(get_runtime)):
    """session=null si aucune visite n'est ouverte sur l'appareil."""
    return _status(runtime)


@router.post("/open", response_model=OpenVisitResponse, status_code=201, summary="Démarrer une visite")
def open_visit(
    data: OpenVisitRequest,
    db: Session = Depends(get_db),
    runtime: FieldRuntime = Depends(get_runtime),
):
    """
    Ouvre la visite d'une visite APPROVED.
    409 si une visite est déjà en cours. Une localisation refusée donne un avertissement, pas une erreur.
    """
    try:
        return runtime.session.open(db, data.record_id, data.collector_id)
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.post("/position", response_model=ActiveVisitStatus, summary="Pousser une position GPS")
def push_position(data: PositionUpdate, runtime: FieldRuntime = Depends(get_runtime)):
    fix = PositionFix(
        latitude=data.latitude,
        longitude=data.longitude,
        accuracy=data.accuracy,
        timestamp=data.timestamp or datetime.now(timezone.utc),
    )
    try:
        runtime.geolocation.push_fix(fix)
    except FieldTrackError as e:
        raise to_http_exception(e)
    return _status(runtime)


@router.post("/position-error", response_model=ActiveVisitStatus, summary="Signaler une erreur GPS")
def push_position_error(data: PositionError, runtime: FieldRuntime = Depends(get_runtime)):
    """Le GPS passe inactif ; la dernière position connue est conservée."""
    runtime.geolocation.push_error(PositionFailure(data.code, data.message or ""))
    return _status(runtime)


@router.post("/permission", response_model=ActiveVisitStatus, summary="Mettre à jour la permission de localisation")
def set_permission(data: PermissionUpdate, runtime: FieldRuntime = Depends(get_runtime)):
    runtime.geolocation.set_permission(data.state)
    return _status(runtime)


@router.post("/photos", response_model=ActiveVisitSnapshot, summary="Enregistrer une photo")
def add_photo(runtime: FieldRuntime = Depends(get_runtime)):
    try:
        return runtime.session.add_photo()
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.put("/notes", response_model=ActiveVisitSnapshot, summary="Modifier les notes")
def set_notes(data: NotesUpdate, runtime: FieldRuntime = Depends(get_runtime)):
    """Les notes sont persistées immédiatement dans le cache local."""
    try:
        return runtime.session.set_notes(data.notes)
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.post("/pause", response_model=ActiveVisitSnapshot, summary="Mettre en pause")
def pause(runtime: FieldRuntime = Depends(get_runtime)):
    try:
        return runtime.session.pause()
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.post("/resume", response_model=ActiveVisitSnapshot, summary="Reprendre")
def resume(runtime: FieldRuntime = Depends(get_runtime)):
    try:
        return runtime.session.resume()
    except FieldTrackError as e:
        raise to_http_exception(e)


@router.post("/complete", response_model=CompletionResponse, summary="Terminer la visite")
def complete(db: Session = Depends(get_db), runtime: FieldRuntime = Depends(get_runtime)):
    """
    Porte de complétion : au moins une photo et une position dans le rayon.
    Un refus n'est pas une erreur HTTP : completed=false avec la raison bloquante.
    """
    try:
        result = runtime.session.attempt_complete(db)
    except FieldTrackError as e:
        raise to_http_exception(e)
    if result.completed:
        runtime.coalescer.notify("site_visits")
    return result


@router.delete("", status_code=204, summary="Abandonner la visite")
def abandon(runtime: FieldRuntime = Depends(get_runtime)):
    """Détruit la session sans modifier le statut de la visite."""
    try:
        runtime.session.abandon()
    except FieldTrackError as e:
        raise to_http_exception(e)
