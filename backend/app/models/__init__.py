# Importe tous les modèles pour enregistrer leurs tables dans Base.metadata
# (et LocalBase.metadata pour le cache local) avant la création des tables.

from app.models.site_visit import SiteVisitRecord, VisitStatus  # noqa: F401
from app.models.permit import LocalityPermit, StatePermit  # noqa: F401
from app.models.field_sync import FieldSyncItem  # noqa: F401
from app.models.local_cache import CacheEntry  # noqa: F401
