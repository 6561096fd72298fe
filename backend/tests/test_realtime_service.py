"""
Tests unitaires pour le rechargement coalescé de l'ensemble de travail coordinateur.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

from conftest import add_state_permit, make_record

from app.models.site_visit import VisitStatus
from app.schemas.permit import PermitGateResult
from app.services.realtime_service import RELOAD_JOB_ID, CoordinatorWorkingSet, ReloadCoalescer

NOW = datetime(2026, 3, 10, 8, 0, 0, tzinfo=timezone.utc)


def test_rafale_coalescee_en_un_rechargement():
    """Plusieurs notifications dans la fenêtre → un seul job planifié, un seul rechargement."""
    reload = MagicMock()
    scheduler = MagicMock()
    coalescer = ReloadCoalescer(reload, scheduler=scheduler, window_seconds=3.0, clock=lambda: NOW)

    assert coalescer.notify("site_visits") is True
    assert coalescer.notify("state_permits") is False
    assert coalescer.notify("site_visits") is False
    assert coalescer.pending is True

    scheduler.add_job.assert_called_once()
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == RELOAD_JOB_ID
    assert kwargs["trigger"] == "date"
    assert (kwargs["run_date"] - NOW).total_seconds() == 3.0

    coalescer.fire()
    reload.assert_called_once()
    assert coalescer.pending is False


def test_nouvelle_fenetre_apres_rechargement():
    reload = MagicMock()
    scheduler = MagicMock()
    coalescer = ReloadCoalescer(reload, scheduler=scheduler, window_seconds=3.0, clock=lambda: NOW)

    coalescer.notify()
    coalescer.fire()

    assert coalescer.notify() is True
    assert scheduler.add_job.call_count == 2


def test_fire_sans_notification_sans_effet():
    reload = MagicMock()
    coalescer = ReloadCoalescer(reload, window_seconds=3.0)

    coalescer.fire()

    reload.assert_not_called()


def test_erreur_de_rechargement_journalisee():
    """Un rechargement en échec ne bloque pas les fenêtres suivantes."""
    reload = MagicMock(side_effect=RuntimeError("base indisponible"))
    coalescer = ReloadCoalescer(reload, window_seconds=3.0)

    coalescer.notify()
    coalescer.fire()

    assert coalescer.pending is False
    assert coalescer.notify() is True


def test_ensemble_de_travail(db_session, session_factory):
    add_state_permit(db_session)
    make_record(db_session, site_code="ND-KTM-001")
    make_record(db_session, site_code="ND-KTM-002", status=VisitStatus.APPROVED)
    working_set = CoordinatorWorkingSet(session_factory=session_factory, clock=lambda: NOW)

    assert working_set.snapshot is None
    snapshot = working_set.reload()

    assert snapshot.badges.assigned == 1
    assert snapshot.badges.approved == 1
    assert snapshot.localities[0].gate == PermitGateResult.LOCAL_PERMIT_REQUIRED
    assert snapshot.loaded_at == NOW
    assert snapshot.reload_count == 1
    assert working_set.reload().reload_count == 2
