"""
Competitive insights — what top performers in a category achieve and how a
project should move towards them.

Everything here is derived from the latest benchmark snapshots plus a
project comparison (services/comparison.py); the category tables are fixed.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from app.repositories.base import BenchmarkRecord
from app.services.benchmarks import TargetPercentile
from app.services.comparison import ComparisonService

logger = logging.getLogger('services.competitive_insights')

_PATTERN_COPY = {
    'productivity': (
        [
            'Top 10% of {category} projects achieve productivity scores above {p90}',
            'Median performers maintain scores around {p50}',
            'To be competitive, aim for scores above {p75}',
        ],
        ['Consistent user engagement', 'High retention rates',
         'Effective onboarding processes', 'Regular feature usage'],
    ),
    'retention': (
        [
            'Top performers maintain {p90}%+ retention rates',
            'Industry median is around {p50}%',
            'Competitive projects achieve {p75}%+ retention',
        ],
        ['Value-driven feature set', 'Regular engagement campaigns',
         'Strong community building', 'Responsive user support'],
    ),
    'adoption': (
        [
            'Leading projects achieve {p90}%+ adoption rates',
            'Average adoption rates hover around {p50}%',
            'Strong performers maintain {p75}%+ adoption',
        ],
        ['Streamlined onboarding', 'Clear value proposition',
         'Progressive feature discovery', 'Incentivized early adoption'],
    ),
    'churn': (
        [
            'Top performers keep churn below {p90}%',
            'Industry median churn is around {p50}%',
            'Competitive projects maintain churn under {p75}%',
        ],
        ['Proactive user engagement', 'Early warning systems',
         'Continuous value delivery', 'Strong retention programs'],
    ),
}

EMERGING_PATTERNS = {
    'defi': ['Increased focus on user experience and simplicity',
             'Integration of social features for community building',
             'Emphasis on security and transparency'],
    'gamefi': ['Shift towards sustainable tokenomics',
               'Focus on gameplay quality over pure earning',
               'Integration of social and competitive elements'],
    'social_fi': ['Privacy-first approaches gaining traction',
                  'Monetization models evolving beyond ads',
                  'Community governance becoming standard'],
    'nft': ['Utility-focused NFTs over pure collectibles',
            'Integration with real-world assets',
            'Focus on creator empowerment'],
}
DEFAULT_EMERGING_PATTERNS = ['Market-specific patterns still emerging',
                             'Monitor competitor innovations closely',
                             'Focus on user feedback and iteration']

CATEGORY_INSIGHTS = {
    'defi': {'key_metrics': ['TVL growth', 'Transaction volume', 'User retention'],
             'success_factors': ['Security audits', 'Liquidity depth', 'User experience'],
             'common_pitfalls': ['Complex UX', 'High fees', 'Security vulnerabilities']},
    'gamefi': {'key_metrics': ['Daily active users', 'Session length', 'Token economy health'],
               'success_factors': ['Engaging gameplay', 'Balanced economy', 'Community engagement'],
               'common_pitfalls': ['Unsustainable tokenomics', 'Pay-to-win mechanics', 'Poor gameplay']},
    'social_fi': {'key_metrics': ['User engagement', 'Content creation rate', 'Network effects'],
                  'success_factors': ['Privacy features', 'Content quality', 'Community moderation'],
                  'common_pitfalls': ['Spam and bots', 'Privacy concerns', 'Monetization challenges']},
}
DEFAULT_CATEGORY_INSIGHTS = {'key_metrics': ['User growth', 'Engagement', 'Retention'],
                             'success_factors': ['Product quality', 'User experience', 'Community'],
                             'common_pitfalls': ['Poor execution', 'Lack of differentiation',
                                                 'Weak value proposition']}

POSITION_POINTS = {'top_performer': 40, 'above_average': 30, 'average': 20, 'below_average': 10}
POSITIONING_SCORES = {'top_performer': 90, 'above_average': 70, 'average': 50, 'below_average': 30}
QUICK_WIN_MAX_GAP_PERCENT = 15


# ── Patterns and trends ──────────────────────────────────────────────────────

def _metric_pattern(metric: str, benchmark: BenchmarkRecord) -> Dict[str, Any]:
    insights, drivers = _PATTERN_COPY[metric]
    values = {
        'category': benchmark.category,
        'p50': round(benchmark.p50), 'p75': round(benchmark.p75), 'p90': round(benchmark.p90),
    }
    return {
        'available': True,
        'top_performer_threshold': benchmark.p90,
        'median_performance': benchmark.p50,
        'competitive_threshold': benchmark.p75,
        'insights': [line.format(**values) for line in insights],
        'key_drivers': list(drivers),
    }


def analyze_successful_patterns(benchmarks: List[BenchmarkRecord], category: str = None) -> Dict[str, Any]:
    if not benchmarks:
        return {'available': False, 'message': f'No benchmark data available for {category}'}

    by_type = {b.benchmark_type: b for b in benchmarks}
    patterns = {
        metric: _metric_pattern(metric, by_type[metric]) if metric in by_type else {'available': False}
        for metric in _PATTERN_COPY
    }
    factors = []
    for pattern in patterns.values():
        for driver in pattern.get('key_drivers', []):
            if driver not in factors:
                factors.append(driver)
    return {
        'available': True,
        'category': category or benchmarks[0].category,
        'patterns': patterns,
        'success_factors': factors[:8],
        'sample_size': benchmarks[0].sample_size,
    }


def assess_market_maturity(benchmarks: List[BenchmarkRecord]) -> Dict[str, Any]:
    productivity = next((b for b in benchmarks if b.benchmark_type == 'productivity'), None)
    if productivity is None:
        return {'level': 'unknown', 'insights': []}

    spread = productivity.p90 - productivity.p25
    median = productivity.p50
    if spread < 20 and median > 70:
        level, insights = 'mature', ['Market shows high consolidation with established leaders',
                                     'High barriers to entry for new projects',
                                     'Focus on differentiation and niche positioning']
    elif spread < 30 and median > 50:
        level, insights = 'growing', ['Market is consolidating with clear leaders emerging',
                                      'Opportunities exist for well-executed projects',
                                      'Focus on execution excellence and user experience']
    else:
        level, insights = 'emerging', ['Market is still developing with high variance',
                                       'Significant opportunities for innovation',
                                       'Focus on finding product-market fit']
    return {'level': level, 'spread': spread, 'median': median, 'insights': insights}


def assess_competitive_intensity(benchmarks: List[BenchmarkRecord]) -> Dict[str, Any]:
    sample_size = benchmarks[0].sample_size if benchmarks else 0
    if sample_size > 100:
        intensity, insights = 'high', ['Highly competitive market with many players',
                                       'Differentiation is critical for success',
                                       'Focus on unique value propositions']
    elif sample_size > 50:
        intensity, insights = 'moderate', ['Growing competitive landscape',
                                           'Opportunities for market share capture',
                                           'Focus on execution and user acquisition']
    else:
        intensity, insights = 'low', ['Less crowded market with room for growth',
                                      'First-mover advantages available',
                                      'Focus on rapid iteration and learning']
    return {'intensity': intensity, 'sample_size': sample_size, 'insights': insights}


def identify_competitive_trends(benchmarks: List[BenchmarkRecord], category: str) -> Dict[str, Any]:
    if not benchmarks:
        return {'available': False, 'message': f'No trend data available for {category}'}
    return {
        'available': True,
        'category': category,
        'trends': {
            'market_maturity': assess_market_maturity(benchmarks),
            'competitive_intensity': assess_competitive_intensity(benchmarks),
            'emerging_patterns': list(EMERGING_PATTERNS.get(category, DEFAULT_EMERGING_PATTERNS)),
            'category_insights': dict(CATEGORY_INSIGHTS.get(category, DEFAULT_CATEGORY_INSIGHTS)),
        },
        'analysis_date': datetime.now().isoformat(),
    }


# ── Positioning ──────────────────────────────────────────────────────────────

def _gaps(comparison):
    return comparison.get('performance_gaps') or {'underperforming': [], 'outperforming': [], 'at_target': []}


def _position(comparison):
    return (comparison.get('overall_position') or {}).get('position', 'unknown')


def calculate_positioning_score(comparison: Dict[str, Any]) -> int:
    gaps = _gaps(comparison)
    score = POSITIONING_SCORES.get(_position(comparison), 0)
    score -= len(gaps['underperforming']) * 5
    score += len(gaps['outperforming']) * 5
    return max(0, min(100, score))


def analyze_market_positioning(comparison: Dict[str, Any], trends: Dict[str, Any] = None) -> Dict[str, Any]:
    gaps = _gaps(comparison)
    return {
        'current_position': comparison.get('overall_position'),
        'competitive_gaps': len(gaps['underperforming']),
        'competitive_strengths': len(gaps['outperforming']),
        'positioning_score': calculate_positioning_score(comparison),
        'recommendations': [
            'Focus on closing critical performance gaps',
            'Leverage existing strengths in marketing',
            'Monitor competitor movements closely',
        ],
    }


def _strategy_for_metric(metric: str, pattern: Dict[str, Any]) -> List[str]:
    drivers = ', '.join(pattern.get('key_drivers', []))
    strategies = {
        'productivity': [f'Focus on {drivers}', 'Implement data-driven optimization cycles',
                         'Benchmark against top performers regularly', 'Invest in user engagement initiatives'],
        'retention': [f'Prioritize {drivers}', 'Implement early warning systems for churn',
                      'Create re-engagement campaigns', 'Build strong community connections'],
        'adoption': [f'Optimize {drivers}', 'Reduce friction in onboarding',
                     'Provide clear value demonstrations', 'Implement progressive feature rollout'],
        'churn': [f'Address {drivers}', 'Identify and fix churn triggers',
                  'Improve product value delivery', 'Enhance user support systems'],
    }
    return strategies.get(metric, ['Analyze top performers', 'Implement best practices', 'Monitor progress'])


def generate_strategic_recommendations(comparison: Dict[str, Any], patterns: Dict[str, Any],
                                       trends: Dict[str, Any]) -> List[Dict[str, Any]]:
    recommendations = []
    metric_patterns = patterns.get('patterns', {}) if patterns.get('available') else {}

    for gap in _gaps(comparison)['underperforming']:
        pattern = metric_patterns.get(gap['metric'])
        if not pattern or not pattern.get('available'):
            continue
        recommendations.append({
            'area': gap['metric'],
            'priority': {'high': 10, 'medium': 7}.get(gap['severity'], 5),
            'type': 'strategic',
            'title': f"Strategic {gap['metric']} improvement",
            'current_state': (f"Currently at {gap['current']}, {abs(gap['gap_percentage'])}% "
                              f"{'above' if gap['gap_percentage'] > 0 else 'below'} target"),
            'target_state': f"Aim for {pattern['competitive_threshold']} to be competitive",
            'strategy': _strategy_for_metric(gap['metric'], pattern),
            'timeline': '1-2 months' if gap['severity'] == 'high' else '2-4 months',
            'expected_impact': 'High' if gap['severity'] == 'high' else 'Medium',
        })

    position = _position(comparison)
    if position != 'top_performer':
        strategy = [
            'Conduct comprehensive competitive analysis',
            'Identify unique value propositions',
            'Focus on underperforming metrics first',
        ]
        if trends.get('available'):
            strategy.append(f"Align with {trends['category']} market trends")
            strategy.extend(trends['trends']['emerging_patterns'][:2])
        recommendations.append({
            'area': 'market_positioning',
            'priority': 8,
            'type': 'strategic',
            'title': 'Improve overall market position',
            'current_state': f'Currently {position}',
            'target_state': 'Move towards top_performer status',
            'strategy': strategy,
            'timeline': '3-6 months',
            'expected_impact': 'High',
        })

    recommendations.sort(key=lambda r: r['priority'], reverse=True)
    return recommendations


def identify_quick_wins(comparison: Dict[str, Any], patterns: Dict[str, Any] = None) -> List[Dict[str, Any]]:
    """Low-severity gaps within 15% of target, all tagged effort='Low'."""
    wins = []
    for gap in _gaps(comparison)['underperforming']:
        if gap['severity'] != 'low' or abs(gap['gap_percentage']) >= QUICK_WIN_MAX_GAP_PERCENT:
            continue
        wins.append({
            'metric': gap['metric'],
            'current': gap['current'],
            'target': gap['target'],
            'gap': abs(gap['gap']),
            'effort': 'Low',
            'impact': 'Medium',
            'actions': [
                f"Small improvements in {gap['metric']} can close the gap",
                'Focus on incremental optimizations',
                'Monitor progress weekly',
            ],
        })
    return wins


def calculate_competitive_advantage(comparison: Dict[str, Any], patterns: Dict[str, Any] = None) -> Dict[str, Any]:
    gaps = _gaps(comparison)
    score = POSITION_POINTS.get(_position(comparison), 0)
    score += len(gaps['outperforming']) * 15
    score -= len(gaps['underperforming']) * 10
    score += len(gaps['at_target']) * 5
    score = max(0, min(100, score))

    if score >= 70:
        level, description = 'Strong', 'Strong competitive position with clear advantages'
    elif score >= 40:
        level, description = 'Moderate', 'Moderate competitive position with room for improvement'
    else:
        level, description = 'Weak', 'Weak competitive position requiring significant improvement'
    return {'score': score, 'level': level, 'description': description}


class CompetitiveInsightsService:

    def __init__(self, comparison: ComparisonService):
        self.comparison = comparison

    def generate_competitive_insights(self, project_id: str, target=TargetPercentile.P75) -> Dict[str, Any]:
        result = self.comparison.compare_project_to_market(project_id, target)
        category = result['category']
        benchmarks = self.comparison.repos.benchmarks.latest_by_category(category)

        patterns = analyze_successful_patterns(benchmarks, category)
        trends = identify_competitive_trends(benchmarks, category)
        return {
            'project_id': project_id,
            'project_name': result.get('project_name') or result['project_metrics']['project_name'],
            'category': category,
            'competitive_position': result['overall_position'],
            'advantage_score': calculate_competitive_advantage(result, patterns),
            'insights': {
                'successful_patterns': patterns,
                'market_trends': trends,
                'strategic_recommendations': generate_strategic_recommendations(result, patterns, trends),
                'market_positioning': analyze_market_positioning(result, trends),
                'quick_wins': identify_quick_wins(result, patterns),
            },
            'generated_at': datetime.now().isoformat(),
        }
