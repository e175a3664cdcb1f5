"""
Performance layer — shared query cache and chunked batch operations.

QueryCache keeps JSON snapshots in Redis under a common prefix, each written
with SETEX so Redis owns expiry. Producers run before the write
(compute-then-publish): two concurrent misses on the same key may both
compute and the last writer wins. A Redis outage degrades to uncached reads.
"""
import dataclasses
import json
import logging
import threading
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from app.config import BATCH_SIZE, QUERY_CACHE_TTL, ZATOSHI_PER_ZEC
from app.errors import ValidationError
from app.repositories.base import ActivitySample, Repositories, WalletRecord
from app.services.productivity import calculate_productivity_score

logger = logging.getLogger('services.performance')

_MISSING = object()


def _to_json(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f'{type(value).__name__} is not cacheable')


class QueryCache:
    """Redis-backed TTL memoizer with hit/miss/eviction counters.

    Values round-trip through JSON: dates come back as ISO strings, Decimals
    as strings and dataclasses as dicts. Counters are per process.
    """

    def __init__(self, redis_client, default_ttl: int = QUERY_CACHE_TTL, prefix: str = 'qcache'):
        self.redis = redis_client
        self.default_ttl = default_ttl
        self.prefix = prefix
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _key(self, key: str) -> str:
        return f'{self.prefix}:{key}'

    def _count(self, hits=0, misses=0, evictions=0):
        with self._lock:
            self.hits += hits
            self.misses += misses
            self.evictions += evictions

    def get(self, key: str, default=None):
        value = self._lookup(key)
        return default if value is _MISSING else value

    def _lookup(self, key):
        try:
            raw = self.redis.get(self._key(key))
        except RedisError as e:
            logger.debug("Cache read skipped for %s: %s", key, e)
            raw = None
        if raw is None:
            self._count(misses=1)
            return _MISSING
        self._count(hits=1)
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> Any:
        """Store `value` and return it as a later hit would see it."""
        payload = json.dumps(value, default=_to_json)
        try:
            self.redis.setex(self._key(key), ttl if ttl is not None else self.default_ttl, payload)
        except RedisError as e:
            logger.debug("Cache write skipped for %s: %s", key, e)
        return json.loads(payload)

    def cached_query(self, key: str, producer: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        value = self._lookup(key)
        if value is not _MISSING:
            return value
        return self.set(key, producer(), ttl)

    def _scan(self, pattern: str = '*') -> List[str]:
        try:
            return list(self.redis.scan_iter(match=self._key(pattern)))
        except RedisError as e:
            logger.warning("Cache scan failed for %s: %s", pattern, e)
            return []

    def invalidate(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(self._key(key)))
        except RedisError as e:
            logger.warning("Cache invalidate failed for %s: %s", key, e)
            return False

    def clear(self, pattern: Optional[str] = None) -> int:
        """Drop every key matching a glob pattern (all keys when None)."""
        keys = self._scan(pattern or '*')
        if not keys:
            return 0
        try:
            self.redis.delete(*keys)
        except RedisError as e:
            logger.warning("Cache clear failed for %s: %s", pattern, e)
            return 0
        return len(keys)

    def clear_expired(self) -> int:
        """Delete entries that lost their TTL; Redis expires the rest itself."""
        doomed = []
        for key in self._scan():
            try:
                if self.redis.ttl(key) == -1:
                    doomed.append(key)
            except RedisError as e:
                logger.warning("Cache TTL check failed for %s: %s", key, e)
                return 0
        if doomed:
            try:
                self.redis.delete(*doomed)
            except RedisError as e:
                logger.warning("Cache sweep failed: %s", e)
                return 0
            self._count(evictions=len(doomed))
            logger.debug("Swept %d cache entries without expiry", len(doomed))
        return len(doomed)

    def stats(self) -> Dict[str, Any]:
        entries = len(self._scan())
        with self._lock:
            lookups = self.hits + self.misses
            return {
                'entries': entries,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'hit_rate': round(self.hits / lookups * 100, 2) if lookups else 0.0,
            }


def chunked(items: List, size: int = BATCH_SIZE) -> Iterable[List]:
    if size <= 0:
        raise ValueError('chunk size must be positive')
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PerformanceService:
    """Cached hot queries plus chunked batch writers."""

    def __init__(self, repos: Repositories, cache: QueryCache, batch_size: int = BATCH_SIZE):
        self.repos = repos
        self.cache = cache
        self.batch_size = batch_size
        self._counters = {'batches_run': 0, 'items_processed': 0, 'items_failed': 0}
        self._counters_lock = threading.Lock()

    def _count(self, batches=0, processed=0, failed=0):
        with self._counters_lock:
            self._counters['batches_run'] += batches
            self._counters['items_processed'] += processed
            self._counters['items_failed'] += failed

    # ── Cached queries ───────────────────────────────────────────────────────

    def cached_query(self, key: str, producer: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        return self.cache.cached_query(key, producer, ttl)

    def get_project_wallets(self, project_id: str, active_only: bool = False) -> List[WalletRecord]:
        rows = self.cache.cached_query(
            f'wallets:{project_id}:{int(active_only)}',
            lambda: self.repos.projects.list_wallets(project_id, active_only=active_only),
        )
        return [self._wallet_from_cache(row) for row in rows]

    @staticmethod
    def _wallet_from_cache(row: Dict[str, Any]) -> WalletRecord:
        created_at = row.get('created_at')
        return WalletRecord(**{
            **row,
            'created_at': datetime.fromisoformat(created_at) if created_at else None,
        })

    def get_aggregated_metrics(self, project_id: str, days: int = 30) -> Dict[str, Any]:
        """Project totals over the last `days` days of indexer rows."""
        return self.cache.cached_query(
            f'aggregated:{project_id}:{days}',
            lambda: self._aggregate(project_id, days),
        )

    def _aggregate(self, project_id, days):
        wallets = self.repos.projects.list_wallets(project_id)
        wallet_ids = [w.id for w in wallets]
        since = date.today() - timedelta(days=days)
        samples = self.repos.metrics.list_activity(wallet_ids, since=since) if wallet_ids else []
        scores = self.repos.metrics.latest_scores(wallet_ids) if wallet_ids else {}

        active_ids = {s.wallet_id for s in samples if s.is_active or s.transaction_count > 0}
        total_volume = sum(s.total_volume_zatoshi or 0 for s in samples)
        score_values = [s.total_score for s in scores.values()]
        return {
            'total_wallets': len(wallets),
            'active_wallets': len(active_ids),
            'total_transactions': sum(s.transaction_count or 0 for s in samples),
            'total_volume_zec': round(total_volume / ZATOSHI_PER_ZEC, 8),
            'avg_productivity_score': (
                round(sum(score_values) / len(score_values), 2) if score_values else 0.0
            ),
            'scored_wallets': len(score_values),
            'period_days': days,
        }

    def get_wallets_with_scores(self, project_id: str) -> List[Dict[str, Any]]:
        def _load():
            wallets = self.repos.projects.list_wallets(project_id)
            scores = self.repos.metrics.latest_scores([w.id for w in wallets]) if wallets else {}
            rows = []
            for wallet in wallets:
                score = scores.get(wallet.id)
                rows.append({
                    'wallet_id': wallet.id,
                    'wallet_type': wallet.wallet_type,
                    'privacy_mode': wallet.privacy_mode,
                    'is_active': wallet.is_active,
                    'total_score': score.total_score if score else None,
                    'status': score.status if score else None,
                    'risk_level': score.risk_level if score else None,
                })
            return rows
        return self.cache.cached_query(f'wallet_scores:{project_id}', _load)

    def warmup_cache(self, project_id: str) -> Dict[str, Any]:
        """Pre-populate the most frequent per-project queries."""
        started = time.monotonic()
        warmed = []
        for name, loader in (
            ('wallets', lambda: self.get_project_wallets(project_id)),
            ('aggregated', lambda: self.get_aggregated_metrics(project_id)),
            ('wallet_scores', lambda: self.get_wallets_with_scores(project_id)),
        ):
            loader()
            warmed.append(name)
        elapsed_ms = round((time.monotonic() - started) * 1000, 1)
        logger.info("Cache warmed for project %s (%s) in %sms", project_id, ', '.join(warmed), elapsed_ms)
        return {'project_id': project_id, 'warmed': warmed, 'elapsed_ms': elapsed_ms}

    def invalidate_project(self, project_id: str) -> int:
        return sum(
            self.cache.clear(pattern)
            for pattern in (f'wallets:{project_id}:*', f'aggregated:{project_id}:*',
                            f'wallet_scores:{project_id}', f'dashboard:{project_id}')
        )

    def clear_expired_cache(self) -> int:
        return self.cache.clear_expired()

    # ── Batch operations ─────────────────────────────────────────────────────

    def batch_calculate_productivity_scores(self, wallet_ids: List[str],
                                            as_of: Optional[date] = None) -> Dict[str, Any]:
        """Score wallets chunk by chunk; one bad wallet never fails its chunk."""
        as_of = as_of or date.today()
        unique_ids = list(dict.fromkeys(wallet_ids))
        scores, failed, batches = [], [], 0

        for chunk in chunked(unique_ids, self.batch_size):
            batches += 1
            samples = self.repos.metrics.list_activity(chunk, since=as_of - timedelta(days=60), until=as_of)
            stages = self.repos.metrics.list_adoption_stages(chunk)
            samples_by_wallet, stages_by_wallet = {}, {}
            for sample in samples:
                samples_by_wallet.setdefault(sample.wallet_id, []).append(sample)
            for stage in stages:
                stages_by_wallet.setdefault(stage.wallet_id, []).append(stage)

            chunk_scores = []
            for wallet_id in chunk:
                try:
                    chunk_scores.append(calculate_productivity_score(
                        wallet_id,
                        samples_by_wallet.get(wallet_id, []),
                        stages_by_wallet.get(wallet_id, []),
                        as_of=as_of,
                    ))
                except (TypeError, ValueError) as e:
                    logger.warning("Scoring failed for wallet %s: %s", wallet_id, e)
                    failed.append(wallet_id)
            if chunk_scores:
                self.repos.metrics.add_scores(chunk_scores)
            scores.extend(chunk_scores)

        self._count(batches=batches, processed=len(scores), failed=len(failed))
        logger.info(
            "Batch scoring: %d wallets in %d batches (%d failed)",
            len(scores), batches, len(failed),
        )
        return {
            'processed': len(scores),
            'failed': failed,
            'batches': batches,
            'scores': [s.to_dict() for s in scores],
        }

    def batch_update_activity_metrics(self, records: List[Any]) -> Dict[str, Any]:
        """Upsert indexer rows (dicts or ActivitySample) in fixed-size chunks."""
        samples = [self._to_sample(r) for r in records]
        written, batches = 0, 0
        for chunk in chunked(samples, self.batch_size):
            written += self.repos.metrics.upsert_activity(chunk)
            batches += 1
        self.cache.clear('aggregated:*')
        self._count(batches=batches, processed=written)
        logger.info("Upserted %d activity rows in %d batches", written, batches)
        return {'processed': written, 'batches': batches}

    @staticmethod
    def _to_sample(record) -> ActivitySample:
        if isinstance(record, ActivitySample):
            return record
        if not isinstance(record, dict):
            raise ValidationError('Activity records must be objects')
        missing = [k for k in ('wallet_id', 'activity_date') if not record.get(k)]
        if missing:
            raise ValidationError('Activity record missing required fields', details={'missing': missing})
        data = dict(record)
        if isinstance(data['activity_date'], str):
            try:
                data['activity_date'] = date.fromisoformat(data['activity_date'])
            except ValueError:
                raise ValidationError('activity_date must be YYYY-MM-DD',
                                      details={'activity_date': data['activity_date']})
        known = ActivitySample.__dataclass_fields__.keys()
        return ActivitySample(**{k: v for k, v in data.items() if k in known})

    def get_performance_stats(self) -> Dict[str, Any]:
        with self._counters_lock:
            counters = dict(self._counters)
        return {'cache': self.cache.stats(), 'batch': counters, 'batch_size': self.batch_size}
