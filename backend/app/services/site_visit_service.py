"""
API de lecture des visites pour la couche présentation.
Filtres : statut, hub, état, localité, activité, recherche libre ; paginé.
"""

import uuid
import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.exceptions import RecordNotFound
from app.models.site_visit import SiteVisitRecord, VisitStatus
from app.schemas.site_visit import SiteVisitPage, SiteVisitResponse

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


def list_site_visits(
    db: Session,
    status: Optional[VisitStatus] = None,
    hub_office: Optional[str] = None,
    state: Optional[str] = None,
    locality: Optional[str] = None,
    activity: Optional[str] = None,
    assigned_to: Optional[uuid.UUID] = None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> SiteVisitPage:
    """
    Retourne une page de visites filtrées, triées par date d'assignation décroissante.
    La recherche porte sur le code, le nom du site et la localité (insensible à la casse).
    """
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    conditions = []
    if status is not None:
        conditions.append(SiteVisitRecord.status == status)
    if hub_office:
        conditions.append(SiteVisitRecord.hub_office == hub_office)
    if state:
        conditions.append(SiteVisitRecord.state == state)
    if locality:
        conditions.append(SiteVisitRecord.locality == locality)
    if activity:
        conditions.append(SiteVisitRecord.activity == activity)
    if assigned_to is not None:
        conditions.append(SiteVisitRecord.assigned_to == assigned_to)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            or_(
                func.lower(SiteVisitRecord.site_code).like(pattern),
                func.lower(SiteVisitRecord.site_name).like(pattern),
                func.lower(SiteVisitRecord.locality).like(pattern),
            )
        )

    total = db.execute(
        select(func.count()).select_from(SiteVisitRecord).where(*conditions)
    ).scalar() or 0

    records = db.execute(
        select(SiteVisitRecord)
        .where(*conditions)
        .order_by(SiteVisitRecord.assigned_at.desc(), SiteVisitRecord.site_code)
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).scalars().all()

    return SiteVisitPage(
        items=[SiteVisitResponse.model_validate(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
    )


def get_site_visit(db: Session, record_id: uuid.UUID) -> SiteVisitResponse:
    record = db.get(SiteVisitRecord, record_id)
    if record is None:
        raise RecordNotFound(record_id)
    return SiteVisitResponse.model_validate(record)
