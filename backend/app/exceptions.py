"""
Exceptions métier du cycle de vie des visites terrain.

Toutes les erreurs levées par les services héritent de FieldTrackError ;
les routers les traduisent en codes HTTP (voir app.routers.errors).
"""


class FieldTrackError(Exception):
    """Erreur métier de base."""
    pass


class RecordNotFound(FieldTrackError):
    """Visite introuvable dans la base centrale."""

    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__(f"Visite {record_id} introuvable.")


class ValidationError(FieldTrackError):
    """Donnée manquante ou hors plage (date, fenêtre, motif de rejet). Aucune mutation."""
    pass


class InvalidTransition(FieldTrackError):
    """Le statut source ne permet pas la transition demandée. Aucune mutation."""

    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Transition impossible de '{from_state}' vers '{to_state}'."
        super().__init__(self.reason)


class SessionAlreadyOpen(InvalidTransition):
    """Une visite active existe déjà sur cet appareil."""

    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__(
            "active", "active",
            f"Une visite est déjà en cours sur cet appareil ({record_id}).",
        )


class NoActiveSession(InvalidTransition):
    """Aucune visite active sur cet appareil."""

    def __init__(self):
        super().__init__("none", "active", "Aucune visite en cours sur cet appareil.")


class StoreError(FieldTrackError):
    """L'écriture a été refusée par la base (conflit de version, contrainte). Pas de retry."""
    pass


class PermissionDenied(FieldTrackError):
    """Permission d'accès à la localisation refusée sur l'appareil."""
    pass
