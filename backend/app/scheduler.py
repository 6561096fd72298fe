"""
Planificateur APScheduler partagé par les tâches périodiques du service :
- tick d'une seconde de la visite active (temps écoulé, péremption du GPS)
- recalcul des compteurs de synchronisation toutes les SYNC_POLL_SECONDS
- rechargement coalescé de l'ensemble de travail coordinateur

Les jobs sont ajoutés par leurs propriétaires (voir app.runtime) ;
ce module ne gère que le démarrage et l'arrêt.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

# Les ticks manqués ne sont pas rattrapés : seule la dernière valeur affichée compte
scheduler = BackgroundScheduler(job_defaults={"coalesce": True, "max_instances": 1})


def start_scheduler() -> None:
    """Démarre le planificateur en arrière-plan (appelé au démarrage de l'API)."""
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler démarré.")


def stop_scheduler() -> None:
    """Arrête le planificateur proprement (appelé à l'arrêt de l'API)."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler arrêté.")
