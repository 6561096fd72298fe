"""
Tests unitaires pour le registre des permis et la porte de permis.
Couverture : classification, agrégat par localité, dérogation « poursuivre sans permis ».
"""

import uuid

import pytest

from conftest import add_locality_permit, add_state_permit, make_record

from app.exceptions import RecordNotFound, ValidationError
from app.models.permit import StatePermit
from app.models.site_visit import VisitStatus
from app.schemas.permit import PermitGateResult
from app.services import permit_service, workflow_service
from app.services.extensions import read_extensions


# ============================================================
# Porte de permis
# ============================================================

def test_exemple_kutum_north_darfur(db_session):
    """Sans permis → STATE ; permis d'état vérifié → LOCAL ; dérogation → PERMITS_ATTACHED."""
    r1 = make_record(db_session)
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.STATE_PERMIT_REQUIRED

    add_state_permit(db_session, verified=True)
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.LOCAL_PERMIT_REQUIRED

    result = permit_service.apply_locality_override(db_session, "North Darfur", "Kutum")

    db_session.refresh(r1)
    assert r1.status == VisitStatus.PERMITS_ATTACHED
    assert result.marked_count == 1
    assert result.transition.succeeded_ids == [r1.id]


def test_permis_etat_non_verifie(db_session):
    """Un permis d'état déposé mais non vérifié ne compte pas."""
    r1 = make_record(db_session)
    add_state_permit(db_session, verified=False)
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.STATE_PERMIT_REQUIRED


def test_permis_local_ouvre_la_porte(db_session):
    r1 = make_record(db_session)
    add_state_permit(db_session)
    add_locality_permit(db_session)
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.CLEAR


def test_permis_local_ne_depasse_pas_le_permis_etat(db_session):
    """Un permis local sans permis d'état vérifié n'ouvre rien."""
    r1 = make_record(db_session)
    add_locality_permit(db_session)
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.STATE_PERMIT_REQUIRED


def test_permis_local_limite_a_sa_localite(db_session):
    r_kutum = make_record(db_session)
    r_kebkabiya = make_record(db_session, site_code="ND-KBK-001", locality="Kebkabiya")
    add_state_permit(db_session)
    add_locality_permit(db_session, locality="Kutum")

    assert permit_service.evaluate(db_session, r_kutum) == PermitGateResult.CLEAR
    assert permit_service.evaluate(db_session, r_kebkabiya) == PermitGateResult.LOCAL_PERMIT_REQUIRED


def test_localite_sans_visite_assigned_jamais_local_requis(db_session):
    """Visite rejetée, seule de sa localité : la porte ne réclame plus de permis local."""
    add_state_permit(db_session)
    r1 = make_record(db_session)
    workflow_service.reject(db_session, r1.id, reason="Site inaccessible")

    assert permit_service.locality_permit_statuses(db_session) == []
    assert permit_service.evaluate(db_session, r1) == PermitGateResult.CLEAR
    assert permit_service.evaluate_record(db_session, r1.id).result == PermitGateResult.CLEAR


def test_localite_avec_visite_assigned_reste_local_requis(db_session):
    add_state_permit(db_session)
    rejected = make_record(db_session, status=VisitStatus.REJECTED)
    make_record(db_session, site_code="ND-KTM-002")

    assert permit_service.evaluate(db_session, rejected) == PermitGateResult.LOCAL_PERMIT_REQUIRED


def test_evaluate_record_introuvable(db_session):
    with pytest.raises(RecordNotFound):
        permit_service.evaluate_record(db_session, uuid.uuid4())


# ============================================================
# Agrégat par localité
# ============================================================

def test_localite_sans_visite_assigned_exclue(db_session):
    """Une localité sans visite ASSIGNED n'apparaît jamais comme LOCAL_PERMIT_REQUIRED."""
    add_state_permit(db_session)
    make_record(db_session, locality="Kutum")
    make_record(db_session, site_code="ND-TWL-001", locality="Tawila", status=VisitStatus.VERIFIED)

    statuses = permit_service.locality_permit_statuses(
        db_session, gate=PermitGateResult.LOCAL_PERMIT_REQUIRED,
    )

    assert [s.locality for s in statuses] == ["Kutum"]
    assert statuses[0].site_count == 1


def test_agregat_par_collecteur(db_session):
    collector = uuid.uuid4()
    add_state_permit(db_session)
    make_record(db_session, site_code="ND-KTM-001", locality="Kutum", assigned_to=collector)
    make_record(db_session, site_code="ND-KBK-001", locality="Kebkabiya", assigned_to=uuid.uuid4())
    make_record(db_session, site_code="ND-TWL-001", locality="Tawila")

    statuses = permit_service.locality_permit_statuses(db_session, assigned_to=collector)

    assert [s.locality for s in statuses] == ["Kutum"]
    assert statuses[0].site_count == 1


def test_agregat_par_localite(db_session):
    add_state_permit(db_session)
    add_locality_permit(db_session, locality="Kutum")
    make_record(db_session, site_code="ND-KTM-001", locality="Kutum")
    make_record(db_session, site_code="ND-KTM-002", locality="Kutum")
    make_record(db_session, site_code="ND-KBK-001", locality="Kebkabiya")

    statuses = {s.locality: s for s in permit_service.locality_permit_statuses(db_session)}

    assert statuses["Kutum"].gate == PermitGateResult.CLEAR
    assert statuses["Kutum"].site_count == 2
    assert statuses["Kebkabiya"].gate == PermitGateResult.LOCAL_PERMIT_REQUIRED


# ============================================================
# Dérogation par localité
# ============================================================

def test_derogation_sans_permis_etat_refusee(db_session):
    r1 = make_record(db_session)

    with pytest.raises(ValidationError):
        permit_service.apply_locality_override(db_session, "North Darfur", "Kutum")

    db_session.refresh(r1)
    assert r1.status == VisitStatus.ASSIGNED
    assert read_extensions(r1).permit_override is None


def test_derogation_marque_toute_la_localite(db_session):
    """Toutes les visites de la localité sont marquées, seules les ASSIGNED transitent."""
    add_state_permit(db_session)
    pending = make_record(db_session, site_code="ND-KTM-001")
    verified = make_record(db_session, site_code="ND-KTM-002", status=VisitStatus.VERIFIED)
    elsewhere = make_record(db_session, site_code="ND-KBK-001", locality="Kebkabiya")

    result = permit_service.apply_locality_override(db_session, "North Darfur", "Kutum")

    for r in (pending, verified, elsewhere):
        db_session.refresh(r)
    assert result.marked_count == 2
    assert pending.status == VisitStatus.PERMITS_ATTACHED
    assert verified.status == VisitStatus.VERIFIED
    assert read_extensions(verified).permit_override is not None
    assert elsewhere.status == VisitStatus.ASSIGNED
    assert read_extensions(elsewhere).permit_override is None


def test_derogation_sans_visite_en_attente(db_session):
    add_state_permit(db_session)
    make_record(db_session, status=VisitStatus.APPROVED)

    result = permit_service.apply_locality_override(db_session, "North Darfur", "Kutum")

    assert result.transition.succeeded_ids == []
    assert result.transition.failed == []


# ============================================================
# Registre
# ============================================================

def test_verification_permis_etat(db_session):
    """La vérification ajoute un fait vérifié sans modifier le dépôt d'origine."""
    upload = permit_service.upload_state_permit(db_session, "North Darfur", "nd-permit.pdf")
    assert upload.verified is False
    assert permit_service.has_verified_state_permit(db_session, "North Darfur") is False

    verified = permit_service.verify_state_permit(db_session, "North Darfur")

    assert verified.verified is True
    assert verified.permit_file_name == "nd-permit.pdf"
    assert permit_service.has_verified_state_permit(db_session, "North Darfur") is True
    assert db_session.query(StatePermit).count() == 2


def test_verification_permis_etat_idempotente(db_session):
    permit_service.upload_state_permit(db_session, "North Darfur", "nd-permit.pdf")
    first = permit_service.verify_state_permit(db_session, "North Darfur")
    second = permit_service.verify_state_permit(db_session, "North Darfur")

    assert first.id == second.id
    assert db_session.query(StatePermit).count() == 2


def test_verification_sans_depot(db_session):
    with pytest.raises(ValidationError):
        permit_service.verify_state_permit(db_session, "South Darfur")


def test_depot_etat_vide(db_session):
    with pytest.raises(ValidationError):
        permit_service.upload_state_permit(db_session, "  ")


def test_depot_permis_local(db_session):
    permit = permit_service.upload_locality_permit(db_session, "North Darfur", " Kutum ", "kutum.pdf")
    assert permit.locality == "Kutum"
    assert permit_service.has_locality_permit(db_session, "North Darfur", "Kutum") is True
    assert len(permit_service.list_locality_permits(db_session, state="North Darfur")) == 1
