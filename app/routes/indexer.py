"""
Indexer routes — block/transaction notifications and worker status.
"""
import logging

from flask import Blueprint

from app.routes.api import json_body, success
from app.services.indexer_events import parse_event
from app.services.registry import get_services

logger = logging.getLogger('routes.indexer')

bp = Blueprint('indexer', __name__)


@bp.route('/api/indexer/events', methods=['POST'])
def receive_event():
    """Accept one event (or {"events": [...]}) and queue it for resync."""
    data = json_body()
    payloads = data['events'] if isinstance(data.get('events'), list) else [data]
    events = [parse_event(p) for p in payloads]

    worker = get_services().resync
    worker.start()
    accepted = sum(1 for event in events if worker.submit(event))
    if accepted < len(events):
        logger.warning("Resync queue full: accepted %d of %d events", accepted, len(events))
    return success({'accepted': accepted, 'dropped': len(events) - accepted}, status=202)


@bp.route('/api/indexer/status')
def status():
    return success(get_services().resync.status())
