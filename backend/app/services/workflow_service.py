"""
Machine à états de vérification / approbation des visites (coordinateurs).

ASSIGNED → PERMITS_ATTACHED → VERIFIED → APPROVED → COMPLETED
REJECTED depuis ASSIGNED / PERMITS_ATTACHED / VERIFIED, ré-entrée à VERIFIED.

Chaque transition vérifie son statut source et lève InvalidTransition sans
mutation sinon. COMPLETED n'est atteignable que par la porte de complétion
de la visite active (complete_visit exige une CompletionProof).

Les variantes en lot sont une boucle séquentielle de transitions
indépendantes (un commit par visite) : les échecs sont collectés, jamais
annulés.
"""

import uuid
import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.exceptions import (
    FieldTrackError,
    InvalidTransition,
    RecordNotFound,
    StoreError,
    ValidationError,
)
from app.models.site_visit import SiteVisitRecord, VisitStatus
from app.schemas.active_visit import CompletionProof
from app.schemas.permit import PermitGateResult
from app.schemas.site_visit import (
    BulkFailure,
    BulkResult,
    BulkSelection,
    ExpectedWindow,
    SiteVisitResponse,
    StatusBadges,
)
from app.services import permit_service
from app.services.extensions import read_extensions, write_extensions

logger = logging.getLogger(__name__)

# Statuts source autorisés par transition
ATTACH_SOURCES: FrozenSet[VisitStatus] = frozenset({VisitStatus.ASSIGNED})
VERIFY_SOURCES: FrozenSet[VisitStatus] = frozenset({VisitStatus.PERMITS_ATTACHED, VisitStatus.REJECTED})
REJECT_SOURCES: FrozenSet[VisitStatus] = frozenset(
    {VisitStatus.ASSIGNED, VisitStatus.PERMITS_ATTACHED, VisitStatus.VERIFIED}
)
APPROVE_SOURCES: FrozenSet[VisitStatus] = frozenset({VisitStatus.VERIFIED})
COMPLETE_SOURCES: FrozenSet[VisitStatus] = frozenset({VisitStatus.APPROVED})


def is_distribution_activity(activity: Optional[str]) -> bool:
    """Vrai si l'activité fait partie des activités de distribution (comparaison insensible à la casse)."""
    if not activity:
        return False
    names = {a.strip().lower() for a in settings.DISTRIBUTION_ACTIVITIES}
    return activity.strip().lower() in names


# ----------------------------------------------------------------
# Transitions unitaires
# ----------------------------------------------------------------

def attach_permit(
    db: Session,
    record_id: uuid.UUID,
    actor_id: Optional[uuid.UUID] = None,
) -> SiteVisitRecord:
    """
    ASSIGNED → PERMITS_ATTACHED, si la porte de permis est CLEAR (permis local ou dérogation).
    Idempotent : une visite déjà en PERMITS_ATTACHED est retournée telle quelle.
    """
    record = _get_record(db, record_id)
    if record.status == VisitStatus.PERMITS_ATTACHED:
        logger.debug("attach_permit sans effet, déjà PERMITS_ATTACHED : %s", record.id)
        return record
    _require_source(record, ATTACH_SOURCES, VisitStatus.PERMITS_ATTACHED)

    gate = permit_service.evaluate(db, record)
    if gate != PermitGateResult.CLEAR:
        raise InvalidTransition(
            record.status.value,
            VisitStatus.PERMITS_ATTACHED.value,
            f"Permis manquant pour {record.state} / {record.locality} : {gate.value}.",
        )

    record.status = VisitStatus.PERMITS_ATTACHED
    _commit(db, record)
    logger.info("Visite %s : permis rattachés (%s / %s)", record.id, record.state, record.locality)
    return record


def verify(
    db: Session,
    record_id: uuid.UUID,
    expected_date: Optional[date],
    expected_window: Optional[ExpectedWindow] = None,
    notes: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> SiteVisitRecord:
    """
    PERMITS_ATTACHED | REJECTED → VERIFIED.

    Validation (avant toute mutation) :
    - date de visite attendue obligatoire
    - activité de distribution : fenêtre {start, end} obligatoire, start ≤ end,
      et la date attendue dans [start, end] (bornes incluses, au jour près)

    Fixe visit_date (jusque-là NULL) et conserve la fenêtre dans les extensions.
    """
    record = _get_record(db, record_id)
    _require_source(record, VERIFY_SOURCES, VisitStatus.VERIFIED)

    visit_day = _validate_expected_date(record, expected_date, expected_window)

    record.status = VisitStatus.VERIFIED
    record.visit_date = visit_day
    record.verified_by = actor_id
    record.verified_at = _now()
    record.verification_notes = notes
    if expected_window is not None:
        ext = read_extensions(record)
        write_extensions(record, ext.model_copy(update={"expected_window": expected_window}))
    _commit(db, record)
    logger.info("Visite %s vérifiée, date prévue %s", record.id, visit_day)
    return record


def reject(
    db: Session,
    record_id: uuid.UUID,
    reason: Optional[str],
    actor_id: Optional[uuid.UUID] = None,
) -> SiteVisitRecord:
    """ASSIGNED | PERMITS_ATTACHED | VERIFIED → REJECTED. Le motif est obligatoire."""
    if reason is None or not reason.strip():
        raise ValidationError("Le motif de rejet est obligatoire.")
    record = _get_record(db, record_id)
    _require_source(record, REJECT_SOURCES, VisitStatus.REJECTED)

    record.status = VisitStatus.REJECTED
    record.rejection_reason = reason.strip()
    record.rejected_by = actor_id
    record.rejected_at = _now()
    _commit(db, record)
    logger.info("Visite %s rejetée : %s", record.id, record.rejection_reason)
    return record


def approve(
    db: Session,
    record_id: uuid.UUID,
    notes: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> SiteVisitRecord:
    """VERIFIED → APPROVED."""
    record = _get_record(db, record_id)
    _require_source(record, APPROVE_SOURCES, VisitStatus.APPROVED)

    record.status = VisitStatus.APPROVED
    record.approval_notes = notes
    record.approved_by = actor_id
    record.approved_at = _now()
    _commit(db, record)
    logger.info("Visite %s approuvée", record.id)
    return record


def complete_visit(db: Session, proof: CompletionProof) -> SiteVisitRecord:
    """
    APPROVED → COMPLETED.
    Appelé uniquement par la porte de complétion de la visite active :
    la preuve doit attester au moins une photo et une distance dans le rayon.
    """
    if proof.photo_count < 1 or not 0.0 <= proof.distance_m <= proof.radius_m:
        raise ValidationError("Preuve de complétion invalide : photo ou proximité manquante.")

    record = _get_record(db, proof.record_id)
    _require_source(record, COMPLETE_SOURCES, VisitStatus.COMPLETED)

    record.status = VisitStatus.COMPLETED
    record.completed_by = proof.collector_id
    record.completed_at = _now()
    _commit(db, record)
    logger.info(
        "Visite %s terminée : %d photo(s), %.1f m du site",
        record.id, proof.photo_count, proof.distance_m,
    )
    return record


# ----------------------------------------------------------------
# Transitions en lot
# ----------------------------------------------------------------

def bulk_attach_permit(
    db: Session,
    selection: BulkSelection,
    actor_id: Optional[uuid.UUID] = None,
    allow_empty: bool = False,
) -> BulkResult:
    """Rattache les permis sur une sélection (explicite ou toute une localité)."""
    ids = _resolve_selection(db, selection, ATTACH_SOURCES | {VisitStatus.PERMITS_ATTACHED}, allow_empty)
    return _run_bulk(db, ids, "attach_permit", lambda rid: attach_permit(db, rid, actor_id))


def bulk_verify(
    db: Session,
    selection: BulkSelection,
    expected_date: Optional[date],
    expected_window: Optional[ExpectedWindow] = None,
    notes: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> BulkResult:
    """Vérifie une sélection avec la même date (et fenêtre) attendue."""
    ids = _resolve_selection(db, selection, VERIFY_SOURCES)
    return _run_bulk(
        db, ids, "verify",
        lambda rid: verify(db, rid, expected_date, expected_window, notes, actor_id),
    )


def bulk_approve(
    db: Session,
    selection: BulkSelection,
    notes: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> BulkResult:
    ids = _resolve_selection(db, selection, APPROVE_SOURCES)
    return _run_bulk(db, ids, "approve", lambda rid: approve(db, rid, notes, actor_id))


# ----------------------------------------------------------------
# Compteurs par statut
# ----------------------------------------------------------------

def status_badges(db: Session, assigned_to: Optional[uuid.UUID] = None) -> StatusBadges:
    """Compte les visites par statut (optionnellement pour un collecteur)."""
    query = select(SiteVisitRecord.status, func.count()).group_by(SiteVisitRecord.status)
    if assigned_to is not None:
        query = query.where(SiteVisitRecord.assigned_to == assigned_to)
    counts: Dict[str, int] = {}
    for status, count in db.execute(query).all():
        key = status.value if isinstance(status, VisitStatus) else str(status)
        counts[key.lower()] = count
    return StatusBadges(**counts, total=sum(counts.values()))


def to_response(record: SiteVisitRecord) -> SiteVisitResponse:
    return SiteVisitResponse.model_validate(record)


# ----------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _get_record(db: Session, record_id: uuid.UUID) -> SiteVisitRecord:
    record = db.get(SiteVisitRecord, record_id)
    if record is None:
        raise RecordNotFound(record_id)
    return record


def _require_source(record: SiteVisitRecord, sources: FrozenSet[VisitStatus], target: VisitStatus) -> None:
    if record.status not in sources:
        raise InvalidTransition(record.status.value, target.value)


def _validate_expected_date(
    record: SiteVisitRecord,
    expected_date: Optional[date],
    window: Optional[ExpectedWindow],
) -> date:
    if expected_date is None:
        raise ValidationError("La date de visite attendue est obligatoire.")
    day = expected_date.date() if isinstance(expected_date, datetime) else expected_date

    if window is not None and window.start > window.end:
        raise ValidationError("La fenêtre de visite est invalide : début postérieur à la fin.")

    if is_distribution_activity(record.activity):
        if window is None:
            raise ValidationError(
                f"Une fenêtre de visite est obligatoire pour l'activité « {record.activity} »."
            )
        if not window.start <= day <= window.end:
            raise ValidationError(
                f"La date prévue {day} est hors de la fenêtre [{window.start}, {window.end}]."
            )
    return day


def _commit(db: Session, record: SiteVisitRecord) -> None:
    """Commit d'une transition ; tout refus de la base devient StoreError (pas de retry)."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Conflit de version sur la visite %s", record.id)
        raise StoreError(
            "La visite a été modifiée entre-temps par un autre coordinateur. Rechargez et réessayez."
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Écriture refusée pour la visite %s : %s", record.id, exc)
        raise StoreError(f"Écriture refusée par la base : {exc}") from exc
    db.refresh(record)


def _resolve_selection(
    db: Session,
    selection: BulkSelection,
    sources: FrozenSet[VisitStatus],
    allow_empty: bool = False,
) -> List[uuid.UUID]:
    """
    Sélection explicite : les ids tels quels (dédupliqués, ordre conservé).
    Sélection par localité : les visites de la localité éligibles à la transition.
    """
    if selection.record_ids is not None:
        if not selection.record_ids and not allow_empty:
            raise ValidationError("La sélection est vide.")
        return list(dict.fromkeys(selection.record_ids))

    if not selection.state or not selection.locality:
        raise ValidationError("Sélection invalide : fournir record_ids ou state + locality.")

    try:
        return list(db.execute(
            select(SiteVisitRecord.id)
            .where(
                SiteVisitRecord.state == selection.state,
                SiteVisitRecord.locality == selection.locality,
                SiteVisitRecord.status.in_(list(sources)),
            )
            .order_by(SiteVisitRecord.site_code)
        ).scalars().all())
    except SQLAlchemyError as exc:
        raise StoreError(f"Impossible de charger la sélection : {exc}") from exc


def _run_bulk(
    db: Session,
    record_ids: List[uuid.UUID],
    operation: str,
    apply: Callable[[uuid.UUID], SiteVisitRecord],
) -> BulkResult:
    """Boucle séquentielle : chaque visite est une transition indépendante."""
    succeeded: List[uuid.UUID] = []
    failed: List[BulkFailure] = []

    for record_id in record_ids:
        try:
            apply(record_id)
            succeeded.append(record_id)
        except FieldTrackError as exc:
            db.rollback()
            failed.append(BulkFailure(record_id=record_id, error=type(exc).__name__, reason=str(exc)))
            logger.debug("%s en lot : échec pour %s (%s)", operation, record_id, exc)

    logger.info(
        "%s en lot : %d demandées, %d réussies, %d échecs",
        operation, len(record_ids), len(succeeded), len(failed),
    )
    return BulkResult(succeeded_ids=succeeded, failed=failed, badges=status_badges(db))
