"""
Centralized configuration — env vars, thresholds, pricing, cache and batch sizes.
"""
import os
from decimal import Decimal


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Storage backend ───────────────────────────────────────────────────────────
# MOCK_STORAGE=1 swaps the SQL repositories for in-memory ones (demo / UI dev).
MOCK_STORAGE = bool(os.getenv('MOCK_STORAGE'))

# ── Payment Gateway (Zcash paywall) ──────────────────────────────────────────
PAYMENT_GATEWAY_URL = os.getenv('PAYMENT_GATEWAY_URL', 'http://localhost:3001')
PAYMENT_GATEWAY_API_KEY = os.getenv('PAYMENT_GATEWAY_API_KEY')
PAYMENT_GATEWAY_TIMEOUT = float(os.getenv('PAYMENT_GATEWAY_TIMEOUT', '10'))
MOCK_PAYMENTS = bool(os.getenv('MOCK_PAYMENTS'))
PAYMENT_GATEWAY_FAILURE_THRESHOLD = int(os.getenv('PAYMENT_GATEWAY_FAILURE_THRESHOLD', '3'))
PAYMENT_GATEWAY_RESET_TIMEOUT = int(os.getenv('PAYMENT_GATEWAY_RESET_TIMEOUT', '120'))  # seconds
INVOICE_EXPIRY_MINUTES = 30

# ── Monetization ──────────────────────────────────────────────────────────────
PRICE_PER_WALLET_ZEC = Decimal(os.getenv('PRICE_PER_WALLET_ZEC', '0.001'))
OWNER_SHARE_PERCENT = Decimal(os.getenv('OWNER_SHARE_PERCENT', '70'))
PLATFORM_FEE_PERCENT = Decimal(os.getenv('PLATFORM_FEE_PERCENT', '30'))

if OWNER_SHARE_PERCENT + PLATFORM_FEE_PERCENT != 100:
    raise ValueError(
        f'OWNER_SHARE_PERCENT ({OWNER_SHARE_PERCENT}) + PLATFORM_FEE_PERCENT '
        f'({PLATFORM_FEE_PERCENT}) must equal 100'
    )

WITHDRAWAL_FEE_FIXED_ZEC = Decimal('0.0005')
WITHDRAWAL_FEE_PERCENT = Decimal('2')
WITHDRAWAL_FEE_MINIMUM_ZEC = Decimal('0.001')   # floor on the total fee
ZATOSHI_PER_ZEC = 100_000_000

MARKETPLACE_DEFAULT_LIMIT = 50

# ── Benchmarks ────────────────────────────────────────────────────────────────
BENCHMARK_HISTORY_LIMIT = 30
BENCHMARK_RETENTION_DAYS = 365

# ── Comparison — gap classification + market position ────────────────────────
GAP_SIGNIFICANCE_PERCENT = 10      # |gap%| above this leaves the at_target bucket
GAP_SEVERITY_HIGH_PERCENT = 30
GAP_SEVERITY_MEDIUM_PERCENT = 20

POSITION_THRESHOLDS = {
    'top_performer': float(os.getenv('POSITION_TOP_PERFORMER', '4.5')),
    'above_average': float(os.getenv('POSITION_ABOVE_AVERAGE', '3.5')),
    'average': float(os.getenv('POSITION_AVERAGE', '2.5')),
}

COMPARISON_METRICS = ['productivity', 'retention', 'adoption', 'churn']

# ── Alerts ────────────────────────────────────────────────────────────────────
DEFAULT_ALERT_THRESHOLDS = {
    'retention': {
        'drop_percentage': 15,
        'critical_level': 40,
        'warning_level': 55,
    },
    'churn': {
        'high_risk_percentage': 30,
        'rate_increase': 10,
        'critical_rate': 40,
    },
    'funnel': {
        'conversion_drop': 20,
        'stage_drop_threshold': 40,
        'critical_conversion': 30,
    },
    'shielded': {
        'spike_multiplier': 2.5,
        'drop_multiplier': 0.4,
        'volume_threshold': 1_000_000,  # zatoshi
    },
}

ADOPTION_STAGES = ['created', 'first_tx', 'feature_usage', 'recurring', 'high_value']

# ── Recommendations ───────────────────────────────────────────────────────────
DECLINING_SCORE_THRESHOLD = 50
DECLINING_HIGH_SEVERITY_THRESHOLD = 35
MAX_WALLET_RECOMMENDATIONS = 10

# ── Task completion monitor ──────────────────────────────────────────────────
TASK_COMPLETION_THRESHOLD = 0.8
ACTIVITY_RESUMED_DAYS = 7

# ── Dashboard / performance ──────────────────────────────────────────────────
DASHBOARD_CACHE_TTL = int(os.getenv('DASHBOARD_CACHE_TTL', '300'))  # seconds
QUERY_CACHE_TTL = int(os.getenv('QUERY_CACHE_TTL', '300'))
BATCH_SIZE = int(os.getenv('BATCH_SIZE', '100'))
DASHBOARD_TOP_RECOMMENDATIONS = 5

# ── Indexer resync ────────────────────────────────────────────────────────────
RESYNC_QUEUE_SIZE = int(os.getenv('RESYNC_QUEUE_SIZE', '100'))
RESYNC_MIN_INTERVAL_SECONDS = int(os.getenv('RESYNC_MIN_INTERVAL_SECONDS', '60'))
RESYNC_JOB_TIMEOUT = int(os.getenv('RESYNC_JOB_TIMEOUT', '300'))
TASK_MONITOR_JOB_TIMEOUT = 1800
