"""
Background jobs executed by rq workers (`rq worker` with the app on PYTHONPATH).

Jobs look up the service graph themselves so they can be enqueued by dotted
path ('app.jobs.resync_wallets') without pickling anything but arguments.
"""
import logging
from typing import List, Optional

from app.config import TASK_MONITOR_JOB_TIMEOUT
from app.services.registry import get_services

logger = logging.getLogger('jobs')


def _resolve_wallets(services, project_id, wallet_ids):
    """Return {project_id: [wallet_id, ...]} for the resync scope."""
    projects = services.repos.projects
    if wallet_ids:
        scope = {}
        for wallet_id in wallet_ids:
            wallet = projects.get_wallet(wallet_id)
            if wallet is None:
                logger.warning("Resync skipping unknown wallet %s", wallet_id)
                continue
            scope.setdefault(wallet.project_id, []).append(wallet.id)
        return scope
    if project_id:
        return {project_id: [w.id for w in projects.list_wallets(project_id, active_only=True)]}
    return {
        p.id: [w.id for w in projects.list_wallets(p.id, active_only=True)]
        for p in projects.list_projects(status='active')
    }


def resync_wallets(project_id: Optional[str] = None, wallet_ids: Optional[List[str]] = None,
                   height: Optional[int] = None):
    """
    Refresh cohorts and adoption stages for the wallets touched by an indexer
    event, rescore them, and drop their cached views.
    """
    services = get_services()
    scope = _resolve_wallets(services, project_id, wallet_ids)
    processed, failed = 0, []
    for pid, ids in scope.items():
        if not ids:
            continue
        # stages feed the adoption component, so they go first
        services.cohorts.refresh_project(pid, wallet_ids=ids)
        result = services.performance.batch_calculate_productivity_scores(ids)
        processed += result['processed']
        failed.extend(result['failed'])
        services.performance.invalidate_project(pid)
    services.cache.clear('health:*')
    logger.info(
        "Resync at height %s: %d wallets rescored across %d projects (%d failed)",
        height, processed, len(scope), len(failed),
    )
    return {'height': height, 'projects': len(scope), 'processed': processed, 'failed': failed}


def run_task_monitoring():
    """Periodic sweep over pending recommendation tasks."""
    return get_services().tasks.run_periodic_monitoring()


def enqueue_task_monitoring():
    from app.extensions import get_queue
    job = get_queue().enqueue(run_task_monitoring, job_timeout=TASK_MONITOR_JOB_TIMEOUT)
    logger.info("Task monitoring job %s enqueued", job.id)
    return job
