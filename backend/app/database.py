"""
Configuration des connexions base de données.

Deux moteurs SQLAlchemy coexistent :
- engine       : base centrale PostgreSQL (visites, permis, éléments synchronisés)
- local_engine : cache local durable de l'appareil terrain (SQLite)
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings

# Moteur SQLAlchemy synchrone
engine = create_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Base séparée : les tables du cache local ne doivent jamais être créées côté serveur
LocalBase = declarative_base()


def make_local_engine(url: str):
    """
    Construit le moteur du cache local.
    SQLite est partagé entre le thread API et les jobs APScheduler,
    d'où check_same_thread=False ; une base en mémoire garde une seule connexion.
    """
    if not url.startswith("sqlite"):
        return create_engine(url)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_db():
    """Dépendance FastAPI : fournit une session BDD et la ferme après usage."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
