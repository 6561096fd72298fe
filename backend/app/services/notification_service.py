"""
Puits de notifications « fire-and-forget » pour les acquittements utilisateur.
La livraison réelle (push, toast) est externe : un échec n'interrompt jamais la commande.
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, title: str, message: str, level: str = "info") -> None: ...


class LoggingNotificationSink:
    """Implémentation par défaut : trace les notifications dans les logs."""

    def notify(self, title: str, message: str, level: str = "info") -> None:
        log = logger.warning if level in ("warning", "error") else logger.info
        log("[Notification] %s : %s", title, message)


def notify_safely(sink: NotificationSink, title: str, message: str, level: str = "info") -> None:
    """Envoie une notification sans jamais propager d'erreur."""
    if sink is None:
        return
    try:
        sink.notify(title, message, level)
    except Exception as exc:
        logger.warning("Notification non délivrée (%s) : %s", title, exc)
