"""
Configuration partagée pour tous les tests.

- client     : override get_db (mock) et get_runtime (mock) pour éviter toute
               connexion réelle à PostgreSQL et tout état partagé entre tests
- db_session : session SQLAlchemy sur une base SQLite en mémoire, pour les
               tests de services qui ont besoin de vraies requêtes
"""

import os
import uuid

# Le lifespan construit le cache local : base en mémoire pendant les tests
os.environ.setdefault("LOCAL_CACHE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import MagicMock

import app.models  # noqa: F401
from app.database import Base, get_db
from app.main import app
from app.models.local_cache import CacheEntry
from app.models.permit import LocalityPermit, StatePermit
from app.models.site_visit import SiteVisitRecord, VisitStatus
from app.runtime import get_runtime


@pytest.fixture
def mock_runtime():
    """Runtime terrain mocké : session, moniteur et coalesceur contrôlés par le test."""
    return MagicMock()


@pytest.fixture
def client(mock_runtime):
    """Client HTTP de test avec la BDD et le runtime mockés."""
    mock_db = MagicMock()
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_runtime] = lambda: mock_runtime
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    """Session sur une base SQLite en mémoire, tables créées à chaque test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_session):
    """Fabrique de sessions partageant la même base en mémoire que db_session."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())


# --- Helpers ---

def make_record(db, **kwargs) -> SiteVisitRecord:
    """Crée et commite une visite de site (par défaut ASSIGNED, à Kutum / North Darfur)."""
    record = SiteVisitRecord(
        id=kwargs.pop("id", uuid.uuid4()),
        site_code=kwargs.pop("site_code", "ND-KTM-001"),
        site_name=kwargs.pop("site_name", "Kutum Health Centre"),
        state=kwargs.pop("state", "North Darfur"),
        locality=kwargs.pop("locality", "Kutum"),
        hub_office=kwargs.pop("hub_office", "El Fasher"),
        activity=kwargs.pop("activity", "Health Monitoring"),
        latitude=kwargs.pop("latitude", 14.2),
        longitude=kwargs.pop("longitude", 24.66),
        status=kwargs.pop("status", VisitStatus.ASSIGNED),
        **kwargs,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def add_state_permit(db, state="North Darfur", verified=True) -> StatePermit:
    permit = StatePermit(state=state, permit_file_name="state.pdf", verified=verified)
    db.add(permit)
    db.commit()
    return permit


def add_locality_permit(db, state="North Darfur", locality="Kutum") -> LocalityPermit:
    permit = LocalityPermit(state=state, locality=locality, permit_file_name="local.pdf")
    db.add(permit)
    db.commit()
    return permit


def count_rows(cache, store) -> int:
    """Nombre de lignes d'un magasin du cache local, acquittées ou non."""
    with sessionmaker(bind=cache.engine)() as db:
        return db.execute(
            select(func.count()).select_from(CacheEntry).where(CacheEntry.store == store)
        ).scalar()
