"""
Benchmark routes — stored snapshots, history, and ad-hoc percentile / gap
calculations.
"""
import logging
from datetime import date

from flask import Blueprint, request

from app.config import BENCHMARK_HISTORY_LIMIT, BENCHMARK_RETENTION_DAYS
from app.errors import NotFoundError, ValidationError
from app.routes.api import int_arg, json_body, success
from app.services.benchmarks import calculate_percentiles, calculate_performance_gap, get_percentile_range
from app.services.registry import get_services

logger = logging.getLogger('routes.benchmarks')

bp = Blueprint('benchmarks', __name__)


def _parse_date(raw):
    if raw is None:
        return None
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        raise ValidationError('as_of_date must be YYYY-MM-DD', details={'as_of_date': raw})


def _numbers(values, name='values'):
    if not isinstance(values, list):
        raise ValidationError(f'{name} must be a list of numbers')
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a list of numbers')


@bp.route('/api/benchmarks/categories')
def categories():
    return success(get_services().benchmarks.get_benchmark_categories())


@bp.route('/api/benchmarks/statistics')
def statistics():
    return success(get_services().benchmarks.get_benchmark_statistics())


@bp.route('/api/benchmarks/<category>')
def by_category(category):
    rows = get_services().benchmarks.get_benchmarks_by_category(category)
    return success([r.to_dict() for r in rows])


@bp.route('/api/benchmarks/<category>/<benchmark_type>')
def latest(category, benchmark_type):
    row = get_services().benchmarks.get_latest_benchmark(benchmark_type, category)
    if row is None:
        raise NotFoundError(f'No {benchmark_type} benchmark for category {category}')
    return success(row.to_dict())


@bp.route('/api/benchmarks/<category>/<benchmark_type>/history')
def history(category, benchmark_type):
    limit = int_arg('limit', BENCHMARK_HISTORY_LIMIT, minimum=1, maximum=365)
    rows = get_services().benchmarks.get_benchmark_history(benchmark_type, category, limit=limit)
    return success([r.to_dict() for r in rows])


@bp.route('/api/benchmarks', methods=['POST'])
def store():
    """Store a snapshot from explicit percentiles or from a raw peer sample."""
    data = json_body()
    service = get_services().benchmarks
    as_of = _parse_date(data.get('as_of_date'))
    if 'values' in data:
        record = service.calculate_and_store_benchmark(
            data.get('benchmark_type'), data.get('category'), _numbers(data['values']), as_of,
        )
    else:
        record = service.store_benchmark(
            data.get('benchmark_type'), data.get('category'),
            data.get('percentiles') or {}, data.get('sample_size', 0), as_of,
        )
    return success(record.to_dict(), status=201)


@bp.route('/api/benchmarks/cleanup', methods=['POST'])
def cleanup():
    days = int_arg('days_to_keep', BENCHMARK_RETENTION_DAYS, minimum=1)
    deleted = get_services().benchmarks.cleanup_old_benchmarks(days)
    return success({'deleted': deleted, 'days_to_keep': days})


# ── Calculators ──────────────────────────────────────────────────────────────

@bp.route('/api/benchmarks/percentiles', methods=['POST'])
def percentiles():
    return success(calculate_percentiles(_numbers(json_body().get('values'))))


@bp.route('/api/benchmarks/gap', methods=['POST'])
def gap():
    data = json_body()
    try:
        value = float(data.get('value'))
    except (TypeError, ValueError):
        raise ValidationError('value must be a number')
    benchmark = data.get('benchmark')
    if benchmark is None and data.get('category') and data.get('benchmark_type'):
        record = get_services().benchmarks.get_latest_benchmark(data['benchmark_type'], data['category'])
        benchmark = record.to_dict() if record else None
    if benchmark is not None:
        if not isinstance(benchmark, dict):
            raise ValidationError('benchmark must be an object with p25/p50/p75/p90')
        benchmark = dict(zip(('p25', 'p50', 'p75', 'p90'),
                             _numbers([benchmark.get(k) for k in ('p25', 'p50', 'p75', 'p90')], 'benchmark')))
    result = calculate_performance_gap(value, benchmark, request.args.get('target') or data.get('target'))
    return success({
        **result.to_dict(),
        'percentile_range': get_percentile_range(value, benchmark),
    })
