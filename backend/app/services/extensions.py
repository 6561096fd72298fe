"""
Lecture / écriture de la structure d'extension versionnée des visites.
"""

from app.models.site_visit import SiteVisitRecord
from app.schemas.site_visit import VisitExtensions


def read_extensions(record: SiteVisitRecord) -> VisitExtensions:
    return VisitExtensions.model_validate(record.extensions or {})


def write_extensions(record: SiteVisitRecord, extensions: VisitExtensions) -> None:
    # Réassignation complète : la colonne JSON n'est pas suivie en mutation
    record.extensions = extensions.model_dump(mode="json", exclude_none=True)
