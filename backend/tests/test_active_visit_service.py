"""
Tests unitaires pour la visite active côté collecteur.
Couverture : ouverture unique, suivi GPS, pause / reprise, porte de complétion
(preuve photo, rayon inclusif), persistance et restauration.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_record

from app.exceptions import (
    InvalidTransition,
    NoActiveSession,
    PermissionDenied,
    RecordNotFound,
    SessionAlreadyOpen,
    StoreError,
)
from app.models.site_visit import VisitStatus
from app.schemas.active_visit import CompletionBlock, Coordinates
from app.services.active_visit_service import (
    PERMISSION_WARNING,
    TICK_JOB_ID,
    ActiveVisitSession,
    SessionRepository,
)
from app.services.geolocation import PositionFailure, PositionFix, PushGeolocationProvider
from app.services.local_cache import LOCATIONS, PENDING_ACTIONS, VISITS, LocalCache

SITE_LAT = 13.5
SITE_LON = 25.35
METRES_PAR_DEGRE = 111194.93


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 10, 8, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    repo = SessionRepository(LocalCache("sqlite://"))
    repo.init()
    yield repo
    repo.teardown()


@pytest.fixture
def geolocation(clock):
    return PushGeolocationProvider(clock=clock)


@pytest.fixture
def session(repository, geolocation, clock):
    return ActiveVisitSession(repository, geolocation, notifier=MagicMock(), clock=clock)


@pytest.fixture
def approved(db_session):
    return make_record(
        db_session,
        site_code="ND-FSH-007",
        site_name="Abu Shouk Camp",
        latitude=SITE_LAT,
        longitude=SITE_LON,
        status=VisitStatus.APPROVED,
    )


def fix_north_of_site(clock, metres: float) -> PositionFix:
    return PositionFix(
        latitude=SITE_LAT + metres / METRES_PAR_DEGRE,
        longitude=SITE_LON,
        accuracy=5.0,
        timestamp=clock(),
    )


# ============================================================
# Ouverture
# ============================================================

def test_ouverture(session, approved, db_session, geolocation):
    response = session.open(db_session, approved.id)

    snapshot = response.session
    assert response.warning is None
    assert snapshot.id == approved.id
    assert snapshot.target_coordinates == Coordinates(latitude=SITE_LAT, longitude=SITE_LON)
    assert snapshot.photo_count == 0
    assert snapshot.status == "active"
    assert geolocation.active_watches == 1
    assert session.repository.load() == snapshot


def test_double_ouverture_refusee(session, approved, db_session):
    session.open(db_session, approved.id)
    other = make_record(db_session, site_code="ND-FSH-008", status=VisitStatus.APPROVED)

    with pytest.raises(SessionAlreadyOpen):
        session.open(db_session, other.id)

    assert session.snapshot.id == approved.id


def test_ouverture_visite_non_approuvee(session, db_session):
    r = make_record(db_session, status=VisitStatus.VERIFIED)

    with pytest.raises(InvalidTransition):
        session.open(db_session, r.id)

    assert session.is_open is False


def test_ouverture_visite_introuvable(session, db_session):
    with pytest.raises(RecordNotFound):
        session.open(db_session, uuid.uuid4())


def test_ouverture_localisation_refusee(session, approved, db_session, geolocation):
    """Permission refusée : la visite s'ouvre en mode dégradé avec un avertissement."""
    geolocation.set_permission("denied")

    response = session.open(db_session, approved.id)

    assert response.warning == PERMISSION_WARNING
    assert session.is_open is True
    assert session.snapshot.gps_active is False


def test_notification_en_echec_ignoree(repository, geolocation, clock, approved, db_session):
    notifier = MagicMock()
    notifier.notify.side_effect = RuntimeError("canal indisponible")
    session = ActiveVisitSession(repository, geolocation, notifier=notifier, clock=clock)

    session.open(db_session, approved.id)

    assert session.is_open is True


def test_tick_planifie_puis_retire(repository, geolocation, clock, approved, db_session):
    scheduler = MagicMock()
    session = ActiveVisitSession(repository, geolocation, scheduler=scheduler, clock=clock)

    session.open(db_session, approved.id)
    scheduler.add_job.assert_called_once()
    assert scheduler.add_job.call_args.kwargs["id"] == TICK_JOB_ID
    assert scheduler.add_job.call_args.kwargs["seconds"] == 1

    session.abandon()
    scheduler.remove_job.assert_called_once_with(TICK_JOB_ID)


# ============================================================
# Suivi GPS
# ============================================================

def test_position_recue(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)

    delivered = geolocation.push_fix(fix_north_of_site(clock, 10.0))

    assert delivered == 1
    assert session.snapshot.gps_active is True
    assert session.snapshot.coordinates.accuracy == 5.0
    assert session.repository.cache.count_unsynced(LOCATIONS) == 1


def test_position_perimee_ignoree(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    stale = fix_north_of_site(clock, 10.0)
    clock.advance(6)

    assert geolocation.push_fix(stale) == 0
    assert session.snapshot.coordinates is None


def test_erreur_gps_conserve_la_position(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    geolocation.push_fix(fix_north_of_site(clock, 10.0))
    last = session.snapshot.coordinates

    geolocation.push_error(PositionFailure("TIMEOUT", "Délai dépassé"))

    assert session.snapshot.gps_active is False
    assert session.snapshot.coordinates == last


def test_tick_marque_gps_inactif(session, approved, db_session, geolocation, clock):
    """Un fix plus ancien que le délai du suivi rend le GPS inactif."""
    session.open(db_session, approved.id)
    geolocation.push_fix(fix_north_of_site(clock, 10.0))

    clock.advance(11)
    session.tick()

    assert session.snapshot.gps_active is False
    assert session.snapshot.coordinates is not None


# ============================================================
# Photos, notes, pause / reprise
# ============================================================

def test_photos_et_notes(session, approved, db_session):
    session.open(db_session, approved.id)

    session.add_photo()
    session.add_photo()
    session.set_notes("Accès par la route nord")

    persisted = session.repository.load()
    assert persisted.photo_count == 2
    assert persisted.notes == "Accès par la route nord"
    assert session.repository.cache.count_unsynced(PENDING_ACTIONS) == 1


def test_commandes_sans_visite(session):
    with pytest.raises(NoActiveSession):
        session.add_photo()
    with pytest.raises(NoActiveSession):
        session.pause()
    with pytest.raises(NoActiveSession):
        session.abandon()


def test_pause_fige_le_temps_ecoule(session, approved, db_session, clock):
    """La pause fige le temps affiché ; la reprise repart de la valeur figée."""
    session.open(db_session, approved.id)

    clock.advance(30)
    session.tick()
    assert session.snapshot.elapsed_seconds == 30

    session.pause()
    clock.advance(60)
    session.tick()
    assert session.snapshot.status == "paused"
    assert session.snapshot.elapsed_seconds == 30

    session.resume()
    assert session.snapshot.elapsed_seconds == 30

    clock.advance(10)
    session.tick()
    assert session.snapshot.elapsed_seconds == 40


def test_pause_garde_le_suivi_gps(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    session.pause()

    geolocation.push_fix(fix_north_of_site(clock, 5.0))

    assert geolocation.active_watches == 1
    assert session.snapshot.gps_active is True


def test_pause_repetee_sans_effet(session, approved, db_session, clock):
    session.open(db_session, approved.id)
    session.pause()
    paused_at = session.snapshot.paused_at
    clock.advance(5)

    session.pause()

    assert session.snapshot.paused_at == paused_at


# ============================================================
# Porte de complétion
# ============================================================

def test_completion_a_24_9_metres(session, approved, db_session, geolocation, clock):
    """Fix à 24,9 m et une photo : visite COMPLETED, session détruite, nouvelle ouverture permise."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 24.9))

    result = session.attempt_complete(db_session)

    assert result.completed is True
    assert result.readiness.distance_m == pytest.approx(24.9, abs=0.01)
    db_session.refresh(approved)
    assert approved.status == VisitStatus.COMPLETED
    assert session.is_open is False
    assert session.repository.load() is None
    assert geolocation.active_watches == 0
    assert session.repository.cache.count_unsynced(VISITS) == 1

    other = make_record(db_session, site_code="ND-FSH-008", status=VisitStatus.APPROVED)
    assert session.open(db_session, other.id).session.id == other.id


def test_completion_sans_photo(session, approved, db_session, geolocation, clock):
    """Aucune photo : échec quelle que soit la distance, sans effet de bord."""
    session.open(db_session, approved.id)
    geolocation.push_fix(fix_north_of_site(clock, 0.0))

    result = session.attempt_complete(db_session)

    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.NO_EVIDENCE
    assert session.is_open is True
    db_session.refresh(approved)
    assert approved.status == VisitStatus.APPROVED


def test_completion_sans_position(session, approved, db_session):
    session.open(db_session, approved.id)
    session.add_photo()

    result = session.attempt_complete(db_session)

    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.LOCATION_UNAVAILABLE


def test_completion_trop_loin(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 40.0))

    result = session.attempt_complete(db_session)

    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.TOO_FAR
    assert session.is_open is True


@pytest.mark.parametrize("distance, completed", [(25.0, True), (25.1, False)])
def test_completion_borne_du_rayon(session, approved, db_session, geolocation, clock, distance, completed):
    """Rayon inclusif : 25,0 m réussit, 25,1 m échoue."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 1.0))

    with patch("app.services.active_visit_service.distance_between", return_value=distance):
        result = session.attempt_complete(db_session)

    assert result.completed is completed
    assert session.is_open is not completed


def test_completion_ecriture_refusee(session, approved, db_session, geolocation, clock):
    """Si l'écriture échoue, la session reste intacte."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 3.0))

    with patch("app.services.active_visit_service.workflow_service.complete_visit",
               side_effect=StoreError("refus")):
        with pytest.raises(StoreError):
            session.attempt_complete(db_session)

    assert session.is_open is True
    assert session.snapshot.photo_count == 1


# ============================================================
# Abandon et restauration
# ============================================================

def test_abandon(session, approved, db_session, geolocation):
    session.open(db_session, approved.id)

    session.abandon()

    assert session.is_open is False
    assert session.repository.load() is None
    assert geolocation.active_watches == 0
    db_session.refresh(approved)
    assert approved.status == VisitStatus.APPROVED


def test_restauration_apres_redemarrage(repository, geolocation, clock, approved, db_session):
    first = ActiveVisitSession(repository, geolocation, clock=clock)
    first.open(db_session, approved.id)
    first.add_photo()
    first.set_notes("Point d'eau hors service")
    first.shutdown()

    restarted = ActiveVisitSession(repository, PushGeolocationProvider(clock=clock), clock=clock)
    snapshot = restarted.restore()

    assert snapshot.id == approved.id
    assert snapshot.photo_count == 1
    assert snapshot.notes == "Point d'eau hors service"
    assert snapshot.gps_active is False
    assert restarted.geolocation.active_watches == 1

    with pytest.raises(SessionAlreadyOpen):
        restarted.open(db_session, approved.id)


def test_restauration_sans_visite(session):
    assert session.restore() is None
    assert session.is_open is False


def test_cache_illisible_efface(repository):
    repository.cache.put("app_state", "active_visit", {"id": "pas-un-uuid"})

    assert repository.load() is None
    assert repository.cache.get("app_state", "active_visit") is None


def test_position_refusee_sans_permission(session, approved, db_session, geolocation, clock):
    """Permission refusée : le fournisseur rejette les positions, la complétion reste bloquée."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.set_permission("denied")

    with pytest.raises(PermissionDenied):
        geolocation.push_fix(fix_north_of_site(clock, 1.0))

    assert session.is_open is True
    assert session.readiness().reason == CompletionBlock.LOCATION_UNAVAILABLE


def test_completion_bloquee_apres_revocation_de_la_permission(session, approved, db_session, geolocation, clock):
    """Permission retirée après un fix valide : le dernier fix reste affiché mais ne permet plus de terminer."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 5.0))
    assert session.readiness().ready is True

    geolocation.set_permission("denied")
    result = session.attempt_complete(db_session)

    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.LOCATION_UNAVAILABLE
    assert result.readiness.distance_m == pytest.approx(5.0, abs=0.01)
    assert session.snapshot.coordinates is not None
    assert session.is_open is True
    db_session.refresh(approved)
    assert approved.status == VisitStatus.APPROVED


def test_completion_bloquee_fix_plus_ancien_que_le_delai(session, approved, db_session, geolocation, clock):
    """Sans tick, un fix plus ancien que le délai du suivi ne compte plus."""
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 5.0))

    clock.advance(11)
    result = session.attempt_complete(db_session)

    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.LOCATION_UNAVAILABLE
    assert session.is_open is True


def test_completion_bloquee_apres_tick_gps_inactif(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 5.0))

    clock.advance(3600)
    session.tick()
    result = session.attempt_complete(db_session)

    assert session.snapshot.gps_active is False
    assert result.completed is False
    assert result.readiness.reason == CompletionBlock.LOCATION_UNAVAILABLE


def test_completion_reprend_avec_un_nouveau_fix(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    session.add_photo()
    geolocation.push_fix(fix_north_of_site(clock, 5.0))
    clock.advance(60)
    session.tick()

    geolocation.push_fix(fix_north_of_site(clock, 5.0))
    result = session.attempt_complete(db_session)

    assert result.completed is True


# ============================================================
# Persistance du tick
# ============================================================

def test_tick_ne_reecrit_pas_le_cache(session, approved, db_session, clock):
    """Le temps affiché est recalculé à chaque tick sans réécrire le cache local."""
    session.open(db_session, approved.id)

    with patch.object(session.repository, "save", wraps=session.repository.save) as save:
        clock.advance(5)
        session.tick()
        clock.advance(5)
        session.tick()

    save.assert_not_called()
    assert session.snapshot.elapsed_seconds == 10


def test_tick_persiste_la_perte_du_gps(session, approved, db_session, geolocation, clock):
    session.open(db_session, approved.id)
    geolocation.push_fix(fix_north_of_site(clock, 5.0))

    with patch.object(session.repository, "save", wraps=session.repository.save) as save:
        clock.advance(11)
        session.tick()

    save.assert_called_once()
    assert session.repository.load().gps_active is False


def test_restauration_recalcule_le_temps_ecoule(repository, geolocation, clock, approved, db_session):
    first = ActiveVisitSession(repository, geolocation, clock=clock)
    first.open(db_session, approved.id)
    clock.advance(30)
    first.tick()
    first.shutdown()

    clock.advance(15)
    restarted = ActiveVisitSession(repository, PushGeolocationProvider(clock=clock), clock=clock)

    assert restarted.restore().elapsed_seconds == 45
