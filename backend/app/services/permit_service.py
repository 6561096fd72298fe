"""
Registre des permis et porte de permis.

Hiérarchie : un permis d'état vérifié est requis avant tout permis local ;
un permis local (ou une dérogation « poursuivre sans permis » posée sur la
localité) libère ensuite les visites en attente.
"""

import uuid
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import RecordNotFound, StoreError, ValidationError
from app.models.permit import LocalityPermit, StatePermit
from app.models.site_visit import SiteVisitRecord, VisitStatus
from app.schemas.permit import (
    GateEvaluation,
    LocalityOverrideResult,
    LocalityPermitResponse,
    LocalityPermitStatus,
    PermitGateResult,
    StatePermitResponse,
)
from app.schemas.site_visit import BulkSelection, PermitOverride
from app.services.extensions import read_extensions, write_extensions

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------
# Registre (faits append-only)
# ----------------------------------------------------------------

def has_verified_state_permit(db: Session, state: str) -> bool:
    return db.execute(
        select(StatePermit.id)
        .where(StatePermit.state == state, StatePermit.verified.is_(True))
        .limit(1)
    ).first() is not None


def has_locality_permit(db: Session, state: str, locality: str) -> bool:
    return db.execute(
        select(LocalityPermit.id)
        .where(LocalityPermit.state == state, LocalityPermit.locality == locality)
        .limit(1)
    ).first() is not None


def has_pending_records(db: Session, state: str, locality: str) -> bool:
    """Vrai si la localité compte au moins une visite ASSIGNED."""
    return db.execute(
        select(SiteVisitRecord.id)
        .where(
            SiteVisitRecord.state == state,
            SiteVisitRecord.locality == locality,
            SiteVisitRecord.status == VisitStatus.ASSIGNED,
        )
        .limit(1)
    ).first() is not None


def upload_state_permit(
    db: Session,
    state: str,
    permit_file_name: Optional[str] = None,
    uploaded_by: Optional[uuid.UUID] = None,
) -> StatePermitResponse:
    """Enregistre l'upload d'un permis d'état (non vérifié)."""
    if not state or not state.strip():
        raise ValidationError("L'état du permis est obligatoire.")
    permit = StatePermit(
        state=state.strip(),
        permit_file_name=permit_file_name,
        verified=False,
        uploaded_by=uploaded_by,
    )
    _commit_new(db, permit)
    logger.info("Permis d'état déposé : %s (%s)", permit.state, permit_file_name or "sans fichier")
    return StatePermitResponse.model_validate(permit)


def verify_state_permit(
    db: Session,
    state: str,
    verified_by: Optional[uuid.UUID] = None,
) -> StatePermitResponse:
    """
    Vérifie le permis d'un état en ajoutant un fait vérifié au registre.
    L'upload d'origine n'est jamais modifié. Idempotent : retourne le fait
    vérifié existant s'il y en a déjà un.
    """
    existing = db.execute(
        select(StatePermit)
        .where(StatePermit.state == state, StatePermit.verified.is_(True))
        .order_by(StatePermit.uploaded_at.desc())
    ).scalars().first()
    if existing:
        return StatePermitResponse.model_validate(existing)

    upload = db.execute(
        select(StatePermit)
        .where(StatePermit.state == state)
        .order_by(StatePermit.uploaded_at.desc())
    ).scalars().first()
    if upload is None:
        raise ValidationError(f"Aucun permis d'état déposé pour {state}.")

    permit = StatePermit(
        state=state,
        permit_file_name=upload.permit_file_name,
        verified=True,
        uploaded_by=verified_by,
    )
    _commit_new(db, permit)
    logger.info("Permis d'état vérifié : %s", state)
    return StatePermitResponse.model_validate(permit)


def upload_locality_permit(
    db: Session,
    state: str,
    locality: str,
    permit_file_name: Optional[str] = None,
    uploaded_by: Optional[uuid.UUID] = None,
) -> LocalityPermitResponse:
    """Enregistre un permis local pour (état, localité)."""
    if not state or not state.strip() or not locality or not locality.strip():
        raise ValidationError("L'état et la localité du permis sont obligatoires.")
    permit = LocalityPermit(
        state=state.strip(),
        locality=locality.strip(),
        permit_file_name=permit_file_name,
        uploaded_by=uploaded_by,
    )
    _commit_new(db, permit)
    if not has_verified_state_permit(db, permit.state):
        # Le permis local reste inopérant tant que le permis d'état n'est pas vérifié
        logger.warning(
            "Permis local %s/%s déposé sans permis d'état vérifié", permit.state, permit.locality,
        )
    logger.info("Permis local déposé : %s / %s", permit.state, permit.locality)
    return LocalityPermitResponse.model_validate(permit)


def list_state_permits(db: Session, state: Optional[str] = None) -> List[StatePermitResponse]:
    query = select(StatePermit).order_by(StatePermit.uploaded_at.desc())
    if state:
        query = query.where(StatePermit.state == state)
    return [StatePermitResponse.model_validate(p) for p in db.execute(query).scalars().all()]


def list_locality_permits(db: Session, state: Optional[str] = None) -> List[LocalityPermitResponse]:
    query = select(LocalityPermit).order_by(LocalityPermit.uploaded_at.desc())
    if state:
        query = query.where(LocalityPermit.state == state)
    return [LocalityPermitResponse.model_validate(p) for p in db.execute(query).scalars().all()]


# ----------------------------------------------------------------
# Porte de permis (classification pure)
# ----------------------------------------------------------------

def evaluate(db: Session, record: SiteVisitRecord) -> PermitGateResult:
    """
    Classe une visite en attente :
    1. STATE_PERMIT_REQUIRED si aucun permis d'état vérifié
    2. LOCAL_PERMIT_REQUIRED si ni permis local ni dérogation sur la localité,
       et seulement si la localité a encore des visites ASSIGNED
    3. CLEAR sinon
    Aucune mutation.
    """
    if not has_verified_state_permit(db, record.state):
        return PermitGateResult.STATE_PERMIT_REQUIRED
    if has_locality_permit(db, record.state, record.locality):
        return PermitGateResult.CLEAR
    if read_extensions(record).permit_override is not None:
        return PermitGateResult.CLEAR
    if not has_pending_records(db, record.state, record.locality):
        return PermitGateResult.CLEAR
    return PermitGateResult.LOCAL_PERMIT_REQUIRED


def evaluate_record(db: Session, record_id: uuid.UUID) -> GateEvaluation:
    record = db.get(SiteVisitRecord, record_id)
    if record is None:
        raise RecordNotFound(record_id)
    return GateEvaluation(record_id=record.id, result=evaluate(db, record))


def locality_permit_statuses(
    db: Session,
    gate: Optional[PermitGateResult] = None,
    assigned_to: Optional[uuid.UUID] = None,
) -> List[LocalityPermitStatus]:
    """
    Agrège les visites en attente (ASSIGNED) par (état, localité),
    optionnellement limitées aux visites assignées à un collecteur.
    Une localité sans visite ASSIGNED n'apparaît jamais dans l'agrégat.
    """
    query = select(SiteVisitRecord).where(SiteVisitRecord.status == VisitStatus.ASSIGNED)
    if assigned_to is not None:
        query = query.where(SiteVisitRecord.assigned_to == assigned_to)
    records = db.execute(
        query.order_by(SiteVisitRecord.state, SiteVisitRecord.locality)
    ).scalars().all()

    groups: "OrderedDict[tuple, list]" = OrderedDict()
    for record in records:
        groups.setdefault((record.state, record.locality), []).append(record)

    statuses = []
    for (state, locality), members in groups.items():
        result = evaluate(db, members[0])
        if gate is not None and result != gate:
            continue
        statuses.append(
            LocalityPermitStatus(
                state=state,
                locality=locality,
                gate=result,
                site_count=len(members),
                record_ids=[m.id for m in members],
            )
        )
    return statuses


def apply_locality_override(
    db: Session,
    state: str,
    locality: str,
    actor_id: Optional[uuid.UUID] = None,
) -> LocalityOverrideResult:
    """
    « Poursuivre sans permis local » pour une localité.

    Étapes :
    1. Exige un permis d'état vérifié (la dérogation ne porte que sur la localité)
    2. Marque toutes les visites de la localité (extensions.permit_override)
    3. Fait passer en lot les visites ASSIGNED à PERMITS_ATTACHED

    La dérogation n'est pas un permis et ne s'étend pas aux autres localités.
    """
    from app.services import workflow_service

    if not has_verified_state_permit(db, state):
        raise ValidationError(
            f"Le permis d'état de {state} doit être vérifié avant de poursuivre sans permis local."
        )

    records = db.execute(
        select(SiteVisitRecord)
        .where(SiteVisitRecord.state == state, SiteVisitRecord.locality == locality)
    ).scalars().all()

    override = PermitOverride(
        state=state,
        locality=locality,
        applied_by=actor_id,
        applied_at=datetime.now(timezone.utc),
    )
    for record in records:
        ext = read_extensions(record)
        write_extensions(record, ext.model_copy(update={"permit_override": override}))

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Échec de la dérogation %s/%s : %s", state, locality, exc)
        raise StoreError(f"Impossible d'enregistrer la dérogation : {exc}") from exc

    pending_ids = [r.id for r in records if r.status == VisitStatus.ASSIGNED]
    transition = workflow_service.bulk_attach_permit(
        db, BulkSelection(record_ids=pending_ids), actor_id=actor_id, allow_empty=True,
    )

    logger.info(
        "Dérogation de permis %s/%s : %d visites marquées, %d transitions, %d échecs",
        state, locality, len(records), len(transition.succeeded_ids), len(transition.failed),
    )
    return LocalityOverrideResult(
        state=state,
        locality=locality,
        marked_count=len(records),
        transition=transition,
    )


def _commit_new(db: Session, obj) -> None:
    db.add(obj)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"Écriture refusée par la base : {exc}") from exc
    db.refresh(obj)
