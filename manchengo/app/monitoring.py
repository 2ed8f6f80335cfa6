"""
Boucle de monitoring des alertes.

Tâche asyncio démarrée au lancement de l'API : toutes les
ALERT_POLL_INTERVAL_SECONDS, un passage `run_checks` dans sa propre session
(thread séparé, la session SQLAlchemy est synchrone). Une erreur est loguée
et la boucle continue au passage suivant.
"""

import asyncio
import logging

from manchengo.app.db.session import SessionLocal
from manchengo.app.settings import ALERT_POLL_INTERVAL_SECONDS
from manchengo.services.alerts import run_checks

logger = logging.getLogger(__name__)


def run_once() -> dict[str, int]:
    db = SessionLocal()
    try:
        summary = run_checks(db)
        db.commit()
        return summary
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def monitor_loop(interval: float = ALERT_POLL_INTERVAL_SECONDS) -> None:
    logger.info("Alert monitor started (every %ss)", interval)
    while True:
        try:
            await asyncio.to_thread(run_once)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Alert check failed")
        await asyncio.sleep(interval)
