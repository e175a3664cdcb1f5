"""Tests for app.services.performance — QueryCache and batch operations."""
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.errors import ValidationError
from app.repositories.base import WalletRecord
from app.services.performance import PerformanceService, QueryCache, chunked


@pytest.fixture
def perf(repos, cache):
    return PerformanceService(repos, cache, batch_size=2)


# ---------------------------------------------------------------------------
# QueryCache
# ---------------------------------------------------------------------------

class TestQueryCache:

    def test_cached_query_calls_producer_once(self, cache):
        calls = []

        def producer():
            calls.append(1)
            return {'value': 42}

        assert cache.cached_query('k', producer) == {'value': 42}
        assert cache.cached_query('k', producer) == {'value': 42}
        assert len(calls) == 1
        assert cache.stats()['hits'] == 1
        assert cache.stats()['misses'] == 1

    def test_stored_as_json_with_ttl(self, cache, fake_redis):
        cache.set('k', {'when': date(2026, 6, 1), 'price': Decimal('0.001')}, ttl=30)
        assert fake_redis.get('qcache:k') == '{"when": "2026-06-01", "price": "0.001"}'
        assert fake_redis.ttl('qcache:k') == 30

    def test_miss_and_hit_return_same_shape(self, cache):
        record = WalletRecord(id='w1', project_id='p', owner_id='', address='a', created_at=datetime(2026, 1, 1))
        first = cache.cached_query('k', lambda: [record])
        assert first == [{
            'id': 'w1', 'project_id': 'p', 'owner_id': '', 'address': 'a', 'wallet_type': 't',
            'privacy_mode': 'private', 'is_active': True, 'created_at': '2026-01-01T00:00:00',
        }]
        assert cache.cached_query('k', lambda: []) == first

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.set('k', 'v', ttl=10)
        clock.now += 9
        assert cache.get('k') == 'v'
        clock.now += 1
        assert cache.get('k') is None

    def test_cached_none_is_a_hit(self, cache):
        calls = []
        cache.cached_query('k', lambda: calls.append(1))
        cache.cached_query('k', lambda: calls.append(1))
        assert len(calls) == 1

    def test_clear_by_pattern(self, cache):
        cache.set('aggregated:p1:30', 1)
        cache.set('aggregated:p2:30', 2)
        cache.set('wallets:p1:0', 3)
        assert cache.clear('aggregated:*') == 2
        assert cache.get('wallets:p1:0') == 3

    def test_clear_all_leaves_foreign_keys(self, cache, fake_redis):
        fake_redis.set('run:abc', 'x')
        cache.set('a', 1)
        cache.set('b', 2)
        assert cache.clear() == 2
        assert cache.stats()['entries'] == 0
        assert fake_redis.get('run:abc') == 'x'

    def test_clear_expired_drops_entries_without_ttl(self, cache, fake_redis):
        cache.set('fresh', 1, ttl=500)
        fake_redis.set('qcache:stuck', '2')
        assert cache.clear_expired() == 1
        assert cache.get('fresh') == 1
        assert cache.get('stuck') is None
        assert cache.stats()['evictions'] == 1

    def test_shared_between_instances(self, fake_redis):
        QueryCache(fake_redis).set('k', {'n': 1})
        assert QueryCache(fake_redis).get('k') == {'n': 1}

    def test_redis_down_falls_through_to_producer(self):
        down = MagicMock()
        for name in ('get', 'setex', 'scan_iter', 'delete'):
            getattr(down, name).side_effect = RedisConnectionError('redis down')
        cache = QueryCache(down)
        assert cache.cached_query('k', lambda: {'n': 1}) == {'n': 1}
        assert cache.clear() == 0
        assert cache.stats()['entries'] == 0

    def test_hit_rate(self, cache):
        assert cache.stats()['hit_rate'] == 0.0
        cache.set('k', 1)
        cache.get('k')
        cache.get('missing')
        assert cache.stats()['hit_rate'] == 50.0

class TestChunked:

    def test_splits_evenly_with_remainder(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert list(chunked([], 3)) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


# ---------------------------------------------------------------------------
# PerformanceService
# ---------------------------------------------------------------------------

class TestBatchScoring:

    def test_scores_in_chunks_and_persists(self, perf, repos, add_activity):
        ids = ['w1', 'w2', 'w3', 'w4', 'w5']
        for wallet_id in ids:
            add_activity(wallet_id, 1, transaction_count=3)
        result = perf.batch_calculate_productivity_scores(ids)
        assert result['processed'] == 5
        assert result['batches'] == 3
        assert result['failed'] == []
        assert set(repos.metrics.latest_scores(ids)) == set(ids)

    def test_duplicate_ids_scored_once(self, perf, repos):
        result = perf.batch_calculate_productivity_scores(['w1', 'w1', 'w2'])
        assert result['processed'] == 2
        assert len(repos.metrics.list_scores()) == 2

    def test_counters_reported(self, perf):
        perf.batch_calculate_productivity_scores(['w1', 'w2', 'w3'])
        stats = perf.get_performance_stats()
        assert stats['batch']['batches_run'] == 2
        assert stats['batch']['items_processed'] == 3
        assert stats['batch_size'] == 2


class TestBatchActivity:

    def test_upserts_dict_records(self, perf, repos):
        result = perf.batch_update_activity_metrics([
            {'wallet_id': 'w1', 'activity_date': '2026-06-01', 'transaction_count': 2, 'is_active': True},
            {'wallet_id': 'w1', 'activity_date': '2026-06-02', 'transaction_count': 1, 'unknown': 'x'},
            {'wallet_id': 'w2', 'activity_date': '2026-06-01'},
        ])
        assert result == {'processed': 3, 'batches': 2}
        rows = repos.metrics.list_activity(['w1'])
        assert [r.activity_date for r in rows] == [date(2026, 6, 1), date(2026, 6, 2)]

    def test_same_day_is_replaced(self, perf, repos):
        perf.batch_update_activity_metrics([{'wallet_id': 'w1', 'activity_date': '2026-06-01', 'transaction_count': 1}])
        perf.batch_update_activity_metrics([{'wallet_id': 'w1', 'activity_date': '2026-06-01', 'transaction_count': 9}])
        rows = repos.metrics.list_activity(['w1'])
        assert len(rows) == 1
        assert rows[0].transaction_count == 9

    def test_missing_fields_rejected(self, perf):
        with pytest.raises(ValidationError) as exc:
            perf.batch_update_activity_metrics([{'transaction_count': 1}])
        assert exc.value.details['missing'] == ['wallet_id', 'activity_date']

    def test_bad_date_rejected(self, perf):
        with pytest.raises(ValidationError):
            perf.batch_update_activity_metrics([{'wallet_id': 'w1', 'activity_date': '06/01/2026'}])

    def test_non_object_rejected(self, perf):
        with pytest.raises(ValidationError):
            perf.batch_update_activity_metrics(['w1'])


class TestCachedProjectQueries:

    def test_aggregated_metrics(self, perf, make_project, make_wallet, add_activity, add_score):
        make_project()
        make_wallet('w1')
        make_wallet('w2')
        add_activity('w1', 1, transaction_count=4, total_volume_zatoshi=150_000_000)
        add_activity('w1', 2, transaction_count=0)
        add_score('w1', 80)
        add_score('w2', 40)

        metrics = perf.get_aggregated_metrics('proj-1')
        assert metrics['total_wallets'] == 2
        assert metrics['active_wallets'] == 1
        assert metrics['total_transactions'] == 4
        assert metrics['total_volume_zec'] == 1.5
        assert metrics['avg_productivity_score'] == 60.0
        assert metrics['scored_wallets'] == 2

    def test_results_cached_until_invalidated(self, perf, make_project, make_wallet):
        make_project()
        make_wallet('w1')
        assert perf.get_aggregated_metrics('proj-1')['total_wallets'] == 1
        make_wallet('w2')
        assert perf.get_aggregated_metrics('proj-1')['total_wallets'] == 1
        assert perf.invalidate_project('proj-1') >= 1
        assert perf.get_aggregated_metrics('proj-1')['total_wallets'] == 2

    def test_wallets_with_scores(self, perf, make_project, make_wallet, add_score):
        make_project()
        make_wallet('w1', privacy_mode='public')
        make_wallet('w2')
        add_score('w1', 75)
        rows = {r['wallet_id']: r for r in perf.get_wallets_with_scores('proj-1')}
        assert rows['w1']['status'] == 'healthy'
        assert rows['w2']['total_score'] is None

    def test_warmup_populates_cache(self, perf, cache, make_project, make_wallet):
        make_project()
        make_wallet('w1')
        result = perf.warmup_cache('proj-1')
        assert result['warmed'] == ['wallets', 'aggregated', 'wallet_scores']
        assert cache.stats()['entries'] == 3

    def test_cached_wallets_come_back_as_records(self, perf, make_project, make_wallet):
        make_project()
        make_wallet('w1', created_at=datetime(2026, 2, 1, 12, 30))
        perf.get_project_wallets('proj-1')
        cached = perf.get_project_wallets('proj-1')
        assert perf.cache.stats()['hits'] == 1
        assert isinstance(cached[0], WalletRecord)
        assert cached[0].created_at == datetime(2026, 2, 1, 12, 30)
