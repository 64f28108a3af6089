"""RQ jobs."""
import logging

logger = logging.getLogger(__name__)


def process_deployment_run(run_id: int) -> str:
    """Выполнить все фазы deployment run. Возвращает итоговую фазу."""
    from apps.backend.services.analytics import AnalyticsEmitter
    from apps.backend.services.deployment import run_deployment

    try:
        phase = run_deployment(run_id, analytics=AnalyticsEmitter())
    except Exception:
        logger.exception("process_deployment_run_failed run_id=%s", run_id)
        raise
    logger.info("process_deployment_run_done run_id=%s phase=%s", run_id, phase)
    return phase


def run_watchdog() -> dict:
    """Периодический цикл: зависшие run, неактивные сессии, истекшие подписки."""
    from apps.backend.services.deploy_watchdog import run_watchdog_cycle

    result = run_watchdog_cycle()
    logger.info("watchdog_cycle result=%s", result)
    return result
