"""
Benchmarks service — percentile math, snapshot persistence, gap detection.

Benchmarks are dated percentile snapshots (p25/p50/p75/p90) computed from a
category's peer sample. Snapshots are append-only; the most recent
as_of_date per (benchmark_type, category) is the current benchmark.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from app.config import BENCHMARK_HISTORY_LIMIT, BENCHMARK_RETENTION_DAYS
from app.errors import ValidationError
from app.repositories.base import BenchmarkRecord, BenchmarkRepository

logger = logging.getLogger('services.benchmarks')


class TargetPercentile(str, Enum):
    P25 = 'p25'
    P50 = 'p50'
    P75 = 'p75'
    P90 = 'p90'

    @classmethod
    def parse(cls, value: Union[str, 'TargetPercentile', None]) -> 'TargetPercentile':
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.P50
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Invalid target percentile '{value}'",
                details={'allowed': [p.value for p in cls]},
            )


PERCENTILE_RANGES = ['below_25', '25_50', '50_75', '75_90', 'above_90']


@dataclass
class PerformanceGap:
    gap: Optional[float]
    percentage: Optional[float]
    status: str            # above_target / below_target / exact / no_benchmark
    target_value: Optional[float] = None
    current_value: Optional[float] = None

    def to_dict(self):
        return {
            'gap': self.gap,
            'percentage': self.percentage,
            'status': self.status,
            'target_value': self.target_value,
            'current_value': self.current_value,
        }


# ── Percentile math ───────────────────────────────────────────────────────────

def _percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation between closest ranks; index = p/100 * (n - 1)."""
    index = (p / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    weight = index - lower
    return float(sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight)


def calculate_percentiles(values: Sequence[float]) -> Dict[str, float]:
    """p25/p50/p75/p90 of values. Empty input → all zeros."""
    if not values:
        return {'p25': 0.0, 'p50': 0.0, 'p75': 0.0, 'p90': 0.0}
    ordered = sorted(float(v) for v in values)
    return {
        'p25': _percentile(ordered, 25),
        'p50': _percentile(ordered, 50),
        'p75': _percentile(ordered, 75),
        'p90': _percentile(ordered, 90),
    }


def _as_mapping(benchmark) -> Optional[Dict[str, float]]:
    if benchmark is None:
        return None
    if isinstance(benchmark, BenchmarkRecord):
        return {'p25': benchmark.p25, 'p50': benchmark.p50, 'p75': benchmark.p75, 'p90': benchmark.p90}
    return benchmark


def get_percentile_range(value: float, benchmark, lower_is_better: bool = False) -> str:
    """Bucket value against a benchmark's percentiles ('unknown' without one).

    With lower_is_better the buckets mirror: a value at or under p25 ranks
    'above_90', one over p90 ranks 'below_25'.
    """
    bench = _as_mapping(benchmark)
    if bench is None:
        return 'unknown'
    if lower_is_better:
        if value > bench['p90']:
            return 'below_25'
        if value > bench['p75']:
            return '25_50'
        if value > bench['p50']:
            return '50_75'
        if value > bench['p25']:
            return '75_90'
        return 'above_90'
    if value < bench['p25']:
        return 'below_25'
    if value < bench['p50']:
        return '25_50'
    if value < bench['p75']:
        return '50_75'
    if value < bench['p90']:
        return '75_90'
    return 'above_90'


def calculate_performance_gap(value: float, benchmark,
                              target: Union[str, TargetPercentile] = TargetPercentile.P50,
                              lower_is_better: bool = False) -> PerformanceGap:
    """Gap between value and the benchmark's target percentile.

    gap keeps the sign of value - target; status reads it against the
    metric's direction. Callers must check status == 'no_benchmark' before
    using gap/percentage.
    """
    bench = _as_mapping(benchmark)
    if bench is None:
        return PerformanceGap(gap=None, percentage=None, status='no_benchmark', current_value=value)

    key = TargetPercentile.parse(target).value
    target_value = float(bench[key])
    gap = float(value) - target_value
    percentage = round(gap / target_value * 100, 2) if target_value != 0 else 0.0

    better = -gap if lower_is_better else gap
    if better > 0:
        status = 'above_target'
    elif better < 0:
        status = 'below_target'
    else:
        status = 'exact'

    return PerformanceGap(
        gap=round(gap, 4),
        percentage=percentage,
        status=status,
        target_value=target_value,
        current_value=value,
    )


# ── Persistence ───────────────────────────────────────────────────────────────

class BenchmarkService:
    """Stores and serves benchmark snapshots."""

    def __init__(self, repo: BenchmarkRepository):
        self.repo = repo

    def store_benchmark(self, benchmark_type: str, category: str, percentiles: Dict[str, float],
                        sample_size: int, as_of_date: Optional[date] = None) -> BenchmarkRecord:
        """Append a snapshot. Same (type, category, date) twice → ValidationError."""
        if not benchmark_type or not category:
            raise ValidationError(
                'benchmark_type and category are required',
                details={'benchmark_type': benchmark_type, 'category': category},
            )
        missing = [p.value for p in TargetPercentile if p.value not in percentiles]
        if missing:
            raise ValidationError('Missing percentile values', details={'missing': missing})

        values = [float(percentiles[p.value]) for p in TargetPercentile]
        if values != sorted(values):
            raise ValidationError(
                'Percentiles must be non-decreasing (p25 <= p50 <= p75 <= p90)',
                details={p.value: v for p, v in zip(TargetPercentile, values)},
            )
        if sample_size is None or int(sample_size) < 0:
            raise ValidationError('sample_size must be a non-negative integer', details={'sample_size': sample_size})

        record = BenchmarkRecord(
            benchmark_type=benchmark_type,
            category=category,
            as_of_date=as_of_date or date.today(),
            p25=values[0], p50=values[1], p75=values[2], p90=values[3],
            sample_size=int(sample_size),
        )
        stored = self.repo.add(record)
        logger.info(
            "Stored benchmark %s/%s as of %s (n=%d)",
            benchmark_type, category, stored.as_of_date, stored.sample_size,
        )
        return stored

    def calculate_and_store_benchmark(self, benchmark_type: str, category: str,
                                      values: Sequence[float],
                                      as_of_date: Optional[date] = None) -> BenchmarkRecord:
        """Compute percentiles from a peer sample and store them."""
        if not values:
            raise ValidationError('Cannot build a benchmark from an empty sample')
        return self.store_benchmark(
            benchmark_type, category, calculate_percentiles(values), len(values), as_of_date,
        )

    def get_latest_benchmark(self, benchmark_type: str, category: str) -> Optional[BenchmarkRecord]:
        return self.repo.latest(benchmark_type, category)

    def get_benchmarks_by_category(self, category: str) -> List[BenchmarkRecord]:
        return self.repo.latest_by_category(category)

    def get_benchmark_history(self, benchmark_type: str, category: str,
                              limit: int = BENCHMARK_HISTORY_LIMIT) -> List[BenchmarkRecord]:
        return self.repo.history(benchmark_type, category, limit)

    def get_benchmark_categories(self) -> List[str]:
        return sorted({r.category for r in self.repo.list_all()})

    def get_benchmark_statistics(self) -> Dict:
        """Counts and date span of stored snapshots, per category."""
        rows = self.repo.list_all()
        by_category = {}
        for row in rows:
            entry = by_category.setdefault(row.category, {
                'snapshots': 0, 'benchmark_types': set(),
                'first_date': row.as_of_date, 'last_date': row.as_of_date,
            })
            entry['snapshots'] += 1
            entry['benchmark_types'].add(row.benchmark_type)
            entry['first_date'] = min(entry['first_date'], row.as_of_date)
            entry['last_date'] = max(entry['last_date'], row.as_of_date)

        return {
            'total_snapshots': len(rows),
            'categories': {
                category: {
                    'snapshots': e['snapshots'],
                    'benchmark_types': sorted(e['benchmark_types']),
                    'first_date': e['first_date'].isoformat(),
                    'last_date': e['last_date'].isoformat(),
                }
                for category, e in sorted(by_category.items())
            },
        }

    def cleanup_old_benchmarks(self, days_to_keep: int = BENCHMARK_RETENTION_DAYS) -> int:
        cutoff = date.today() - timedelta(days=days_to_keep)
        deleted = self.repo.delete_before(cutoff)
        if deleted:
            logger.info("Removed %d benchmark snapshots older than %s", deleted, cutoff)
        return deleted
