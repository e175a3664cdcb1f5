"""
Indexer events → wallet resync.

The indexer posts a notification every time it finishes a block (or, when
enabled, a transaction). Each notification is pushed onto a bounded queue
drained by one daemon thread; the thread rate-limits per wallet set and hands
the actual resync to an rq job so the web process never does the heavy work.

Dropped (queue full), throttled and failed events are logged and counted;
none of them ever reaches the HTTP caller as an error.
"""
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from app.config import RESYNC_JOB_TIMEOUT, RESYNC_MIN_INTERVAL_SECONDS, RESYNC_QUEUE_SIZE
from app.errors import ValidationError

logger = logging.getLogger('services.indexer_events')

EVENT_TYPES = ('block_processed', 'transaction_processed')

_STOP = object()


@dataclass
class IndexerEvent:
    event_type: str
    height: Optional[int] = None
    txid: Optional[str] = None
    project_id: Optional[str] = None
    wallet_ids: List[str] = field(default_factory=list)
    received_at: datetime = field(default_factory=datetime.now)

    @property
    def scope_key(self) -> str:
        """Rate-limit key: the wallet set, else the project, else everything."""
        if self.wallet_ids:
            return 'wallets:' + ','.join(sorted(set(self.wallet_ids)))
        if self.project_id:
            return f'project:{self.project_id}'
        return '*'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type,
            'height': self.height,
            'txid': self.txid,
            'project_id': self.project_id,
            'wallet_ids': list(self.wallet_ids),
            'received_at': self.received_at.isoformat(),
        }


def parse_event(payload: Any) -> IndexerEvent:
    if not isinstance(payload, dict):
        raise ValidationError('Event payload must be a JSON object')
    event_type = payload.get('event_type') or payload.get('type') or 'block_processed'
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type '{event_type}'", details={'allowed': list(EVENT_TYPES)})

    height = payload.get('height')
    if height is not None:
        try:
            height = int(height)
        except (TypeError, ValueError):
            raise ValidationError('height must be an integer', details={'height': payload.get('height')})
        if height < 0:
            raise ValidationError('height must be non-negative', details={'height': height})
    elif event_type == 'block_processed':
        raise ValidationError('block_processed events require a height')

    txid = payload.get('txid')
    if event_type == 'transaction_processed' and not txid:
        raise ValidationError('transaction_processed events require a txid')

    wallet_ids = payload.get('wallet_ids') or []
    if not isinstance(wallet_ids, list) or not all(isinstance(w, str) and w for w in wallet_ids):
        raise ValidationError('wallet_ids must be a list of wallet ids')

    return IndexerEvent(
        event_type=event_type,
        height=height,
        txid=txid,
        project_id=payload.get('project_id') or None,
        wallet_ids=wallet_ids,
    )


class RateLimiter:
    """Sliding window: at most `max_calls` per `interval` seconds per key.

    Keys whose window has emptied are swept at most once per interval, so the
    table only holds keys seen within the last interval or two.
    """

    def __init__(self, interval: float = RESYNC_MIN_INTERVAL_SECONDS, max_calls: int = 1,
                 clock: Callable[[], float] = time.monotonic):
        if max_calls < 1:
            raise ValueError('max_calls must be at least 1')
        self.interval = interval
        self.max_calls = max_calls
        self._clock = clock
        self._calls: Dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.interval:
                self._sweep(now)
            window = self._calls.setdefault(key, deque())
            while window and now - window[0] >= self.interval:
                window.popleft()
            if len(window) >= self.max_calls:
                return False
            window.append(now)
            return True

    def _sweep(self, now):
        # caller holds the lock
        stale = [k for k, window in self._calls.items() if not window or now - window[-1] >= self.interval]
        for key in stale:
            del self._calls[key]
        self._last_sweep = now
        if stale:
            logger.debug("Rate limiter dropped %d idle keys", len(stale))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._calls)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._calls.clear()
            else:
                self._calls.pop(key, None)


def enqueue_resync(event: IndexerEvent):
    """Default handler: hand the resync to an rq worker."""
    from app.extensions import get_queue
    job = get_queue().enqueue(
        'app.jobs.resync_wallets',
        project_id=event.project_id,
        wallet_ids=event.wallet_ids or None,
        height=event.height,
        job_timeout=RESYNC_JOB_TIMEOUT,
    )
    logger.info("Resync job %s enqueued for %s (height=%s)", job.id, event.scope_key, event.height)
    return job


class ResyncWorker:
    """Bounded event queue drained by one daemon thread."""

    def __init__(self, handler: Callable[[IndexerEvent], Any] = enqueue_resync,
                 rate_limiter: Optional[RateLimiter] = None, maxsize: int = RESYNC_QUEUE_SIZE):
        self.handler = handler
        self.rate_limiter = rate_limiter or RateLimiter()
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._stats = {'received': 0, 'processed': 0, 'throttled': 0, 'failed': 0, 'dropped': 0}
        self.last_event: Optional[Dict[str, Any]] = None

    def _bump(self, name):
        with self._lock:
            self._stats[name] += 1

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name='indexer-resync', daemon=True)
            self._thread.start()
        logger.info("Resync worker started (queue size %d)", self._queue.maxsize)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Resync queue full, worker will stop after draining")
        thread.join(timeout)
        with self._lock:
            self._thread = None
        logger.info("Resync worker stopped")

    def submit(self, event: IndexerEvent) -> bool:
        """Queue an event without blocking. False when the queue is full."""
        self._bump('received')
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._bump('dropped')
            logger.warning("Resync queue full, dropping %s event (height=%s)", event.event_type, event.height)
            return False
        return True

    def join(self) -> None:
        """Block until every queued event has been handled."""
        self._queue.join()

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.process(event)
            finally:
                self._queue.task_done()

    def process(self, event: IndexerEvent) -> bool:
        if not self.rate_limiter.allow(event.scope_key):
            self._bump('throttled')
            logger.info("Throttling resync for %s (height=%s)", event.scope_key, event.height)
            return False
        try:
            self.handler(event)
        except Exception as e:
            self._bump('failed')
            logger.error("Resync failed for %s: %s", event.scope_key, e, exc_info=True)
            return False
        self._bump('processed')
        with self._lock:
            self.last_event = event.to_dict()
        return True

    def status(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            last_event = self.last_event
        return {
            'running': self.running,
            'queued': self._queue.qsize(),
            'queue_size': self._queue.maxsize,
            'min_interval_seconds': self.rate_limiter.interval,
            'last_event': last_event,
            **stats,
        }
