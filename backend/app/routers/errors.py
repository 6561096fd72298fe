"""
Traduction des erreurs métier en réponses HTTP.
"""

from fastapi import HTTPException

from app.exceptions import (
    FieldTrackError,
    InvalidTransition,
    PermissionDenied,
    RecordNotFound,
    StoreError,
    ValidationError,
)

STATUS_CODES = (
    (RecordNotFound, 404),
    (ValidationError, 422),
    (InvalidTransition, 409),
    (PermissionDenied, 403),
    (StoreError, 503),
)


def to_http_exception(exc: FieldTrackError) -> HTTPException:
    """404 introuvable, 422 validation, 409 transition invalide, 403 permission refusée, 503 écriture refusée."""
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
