"""
Recommendation engine — turns weak productivity components into ranked tasks.

Wallet recommendations come from declining score components (< 50), project
recommendations from the project's health distribution. Every stored
recommendation gets a linked Task holding a baseline metrics snapshot, which
the task monitor later compares against.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from app.config import (
    DECLINING_HIGH_SEVERITY_THRESHOLD, DECLINING_SCORE_THRESHOLD, MAX_WALLET_RECOMMENDATIONS,
)
from app.errors import NotFoundError
from app.repositories.base import RecommendationRecord, Repositories, ScoreRecord, TaskRecord
from app.services.productivity import calculate_productivity_score

logger = logging.getLogger('services.recommendations')

RECOMMENDATION_TYPES = {
    'marketing': {'name': 'Marketing Campaign', 'typical_timeline': '2-4 weeks', 'effort_level': 'Medium'},
    'onboarding': {'name': 'Onboarding Optimization', 'typical_timeline': '1-3 weeks', 'effort_level': 'Medium'},
    'feature_enhancement': {'name': 'Feature Enhancement', 'typical_timeline': '4-8 weeks', 'effort_level': 'High'},
    'retention': {'name': 'Retention Initiative', 'typical_timeline': '2-6 weeks', 'effort_level': 'Medium'},
    'engagement': {'name': 'Engagement Campaign', 'typical_timeline': '1-2 weeks', 'effort_level': 'Low'},
}

COMPONENTS = ('retention', 'adoption', 'activity', 'diversity', 'churn')
SCORE_TARGET = 70
SNAPSHOT_WINDOW_DAYS = 30

# component → (type, title, description, actions, indicators, (high, medium) priority, timeline)
_COMPONENT_PLAYBOOK = {
    'retention': (
        'retention', 'Improve wallet retention',
        'Retention score is {score}/100. Implement strategies to keep this wallet engaged.',
        ['Send personalized re-engagement email', 'Offer exclusive features or benefits',
         'Provide usage tips and best practices', 'Schedule follow-up check-ins'],
        {'activity_increase': True, 'transaction_frequency': 'weekly', 'retention_score_target': SCORE_TARGET},
        (9, 7), '2-4 weeks',
    ),
    'adoption': (
        'onboarding', 'Optimize onboarding experience',
        'Adoption score is {score}/100. Help this wallet progress through adoption stages.',
        ['Send guided tutorial or walkthrough', 'Highlight key features not yet used',
         'Provide incentives for feature exploration', 'Simplify complex workflows'],
        {'activity_increase': True, 'adoption_score_target': SCORE_TARGET},
        (8, 6), '1-3 weeks',
    ),
    'activity': (
        'engagement', 'Increase wallet activity',
        'Activity score is {score}/100. Encourage more frequent interactions.',
        ['Send activity-based notifications', 'Offer time-limited promotions',
         'Gamify user interactions', 'Provide activity streaks or rewards'],
        {'activity_increase': True, 'transaction_frequency': 'daily', 'activity_score_target': SCORE_TARGET},
        (8, 6), '1-2 weeks',
    ),
    'diversity': (
        'feature_enhancement', 'Broaden transaction mix',
        'Diversity score is {score}/100. This wallet uses few transaction types.',
        ['Surface swaps and bridges in the main flow', 'Promote shielded transfers',
         'Explain multi-feature workflows', 'Reward first use of a new feature'],
        {'activity_increase': True, 'diversity_score_target': 50},
        (7, 5), '2-4 weeks',
    ),
    'churn': (
        'retention', 'Prevent wallet churn',
        'Churn risk score is {score}/100. Immediate action needed to prevent disengagement.',
        ['Reach out with personalized support', 'Identify and address pain points',
         'Offer special retention incentives', 'Conduct user feedback survey',
         'Provide VIP support access'],
        {'activity_resumed': 7, 'churn_score_target': SCORE_TARGET},
        (10, 10), '1 week',
    ),
}


def identify_declining_metrics(scores) -> List[Dict[str, Any]]:
    """Components below 50, 'high' severity below 35. Accepts a ScoreRecord or dict."""
    if isinstance(scores, ScoreRecord):
        scores = scores.to_dict()
    declining = []
    for name in COMPONENTS:
        value = scores.get(f'{name}_score')
        if value is None or value >= DECLINING_SCORE_THRESHOLD:
            continue
        declining.append({
            'name': name,
            'score': value,
            'severity': 'high' if value < DECLINING_HIGH_SEVERITY_THRESHOLD else 'medium',
        })
    return declining


def recommendation_for_metric(metric: Dict[str, Any], wallet_id: Optional[str] = None) -> RecommendationRecord:
    rec_type, title, description, actions, indicators, priorities, timeline = _COMPONENT_PLAYBOOK[metric['name']]
    high = metric['severity'] == 'high'
    priority = priorities[0] if high else priorities[1]
    return RecommendationRecord(
        type=rec_type,
        title=title,
        priority=priority,
        wallet_id=wallet_id,
        description=description.format(score=metric['score']),
        current_state={f"{metric['name']}_score": metric['score']},
        target_state={k: v for k, v in indicators.items() if k.endswith('_target')},
        timeline=timeline,
        expected_impact='Critical' if metric['name'] == 'churn' else ('High' if high else 'Medium'),
        effort_level=RECOMMENDATION_TYPES[rec_type]['effort_level'],
        actions=list(actions),
        completion_indicators=dict(indicators),
    )


def general_recommendation(total_score: float, wallet_id: Optional[str] = None) -> RecommendationRecord:
    return RecommendationRecord(
        type='marketing',
        title='Comprehensive engagement campaign',
        priority=8,
        wallet_id=wallet_id,
        description=f'Overall productivity score is {total_score}/100. Launch multi-channel engagement initiative.',
        current_state={'total_score': total_score},
        target_state={'total_score_target': SCORE_TARGET},
        timeline='4-6 weeks',
        expected_impact='High',
        effort_level=RECOMMENDATION_TYPES['marketing']['effort_level'],
        actions=['Audit current user experience', 'Identify key friction points',
                 'Launch targeted marketing campaign', 'Improve product value proposition',
                 'Enhance customer support'],
        completion_indicators={'activity_increase': True, 'total_score_target': SCORE_TARGET},
    )


def analyze_project_health(wallets: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Tallies over wallet status / risk_level / total_score.

    Empty input gives total_wallets=0 and average_score=None; callers must
    check for None rather than read it as 0.
    """
    total = len(wallets)
    health = {k: sum(1 for w in wallets if w.get('status') == k) for k in ('healthy', 'at_risk', 'churn')}
    risk = {k: sum(1 for w in wallets if w.get('risk_level') == k) for k in ('low', 'medium', 'high')}

    def pct(count):
        return round(count / total * 100, 2) if total else 0.0

    return {
        'total_wallets': total,
        'health_distribution': health,
        'risk_distribution': risk,
        'health_percentage': pct(health['healthy']),
        'at_risk_percentage': pct(health['at_risk']),
        'churn_percentage': pct(health['churn']),
        'average_score': (
            round(sum(w.get('total_score') or 0 for w in wallets) / total, 2) if total else None
        ),
    }


def project_level_recommendations(analysis: Dict[str, Any], project_id: Optional[str] = None) -> List[RecommendationRecord]:
    recs = []

    def add(rec_type, title, description, priority, actions, impact, timeline, indicators, current):
        recs.append(RecommendationRecord(
            type=rec_type, title=title, priority=priority, project_id=project_id,
            description=description, current_state=current,
            target_state={k: v for k, v in indicators.items() if k.endswith('_target')},
            timeline=timeline, expected_impact=impact,
            effort_level=RECOMMENDATION_TYPES[rec_type]['effort_level'],
            actions=actions, completion_indicators=indicators,
        ))

    if analysis['churn_percentage'] > 30:
        add('retention', 'Address high churn rate',
            f"{analysis['churn_percentage']}% of wallets are churning. Implement retention strategies.",
            10, ['Analyze common churn patterns', 'Improve product value delivery', 'Launch win-back campaign',
                 'Enhance onboarding process', 'Implement early warning system'],
            'Critical', '2-4 weeks', {'health_percentage_target': 60},
            {'churn_percentage': analysis['churn_percentage']})

    if analysis['at_risk_percentage'] > 40:
        add('engagement', 'Re-engage at-risk wallets',
            f"{analysis['at_risk_percentage']}% of wallets are at risk. Proactive engagement needed.",
            9, ['Segment at-risk wallets by behavior', 'Create targeted re-engagement campaigns',
                'Offer personalized incentives', 'Improve feature discoverability'],
            'High', '2-3 weeks', {'health_percentage_target': 50},
            {'at_risk_percentage': analysis['at_risk_percentage']})

    average = analysis['average_score']
    if average is not None and average < 50:
        add('feature_enhancement', 'Improve overall product experience',
            f'Average productivity score is {average}/100. Comprehensive improvements needed.',
            8, ['Conduct user research and feedback sessions', 'Identify and fix major pain points',
                'Enhance core features', 'Improve user interface and experience', 'Add requested features'],
            'High', '6-8 weeks', {'total_score_target': SCORE_TARGET}, {'average_score': average})

    if analysis['health_percentage'] < 40:
        add('marketing', 'Boost user acquisition and activation',
            f"Only {analysis['health_percentage']}% of wallets are healthy. Focus on quality growth.",
            7, ['Optimize user acquisition channels', 'Improve activation rate', 'Enhance onboarding experience',
                'Build community engagement', 'Implement referral program'],
            'Medium', '4-6 weeks', {'health_percentage_target': 40},
            {'health_percentage': analysis['health_percentage']})
    return recs


# ── Metric snapshots (task baselines) ────────────────────────────────────────

def wallet_snapshot(repos: Repositories, wallet_id: str, as_of: Optional[date] = None) -> Dict[str, Any]:
    """Latest scores plus 30-day activity totals for one wallet."""
    as_of = as_of or date.today()
    score = repos.metrics.latest_scores([wallet_id]).get(wallet_id)
    samples = repos.metrics.list_activity(
        [wallet_id], since=as_of - timedelta(days=SNAPSHOT_WINDOW_DAYS), until=as_of,
    )
    active = [s for s in samples if s.is_active or s.transaction_count > 0]
    snapshot = {
        'total_score': score.total_score if score else 0.0,
        'transaction_count': sum(s.transaction_count or 0 for s in samples),
        'active_days': len(active),
        'last_activity_date': max(s.activity_date for s in active).isoformat() if active else None,
        'window_days': SNAPSHOT_WINDOW_DAYS,
        'captured_at': datetime.now().isoformat(),
    }
    for name in COMPONENTS:
        snapshot[f'{name}_score'] = getattr(score, f'{name}_score') if score else 0.0
    return snapshot


def project_snapshot(repos: Repositories, project_id: str) -> Dict[str, Any]:
    wallets = repos.projects.list_wallets(project_id, active_only=True)
    scores = repos.metrics.latest_scores([w.id for w in wallets]) if wallets else {}
    analysis = analyze_project_health([s.to_dict() for s in scores.values()])
    snapshot = {
        'total_score': analysis['average_score'] or 0.0,
        'health_percentage': analysis['health_percentage'],
        'at_risk_percentage': analysis['at_risk_percentage'],
        'churn_percentage': analysis['churn_percentage'],
        'captured_at': datetime.now().isoformat(),
    }
    for name in COMPONENTS:
        values = [getattr(s, f'{name}_score') or 0.0 for s in scores.values()]
        snapshot[f'{name}_score'] = round(sum(values) / len(values), 2) if values else 0.0
    return snapshot


class RecommendationService:

    def __init__(self, repos: Repositories):
        self.repos = repos

    def _current_score(self, wallet_id: str) -> ScoreRecord:
        score = self.repos.metrics.latest_scores([wallet_id]).get(wallet_id)
        if score is not None:
            return score
        today = date.today()
        samples = self.repos.metrics.list_activity([wallet_id], since=today - timedelta(days=60), until=today)
        stages = self.repos.metrics.list_adoption_stages([wallet_id])
        score = calculate_productivity_score(wallet_id, samples, stages, as_of=today)
        self.repos.metrics.add_scores([score])
        return score

    def generate_wallet_recommendations(self, wallet_id: str, persist: bool = True) -> Dict[str, Any]:
        wallet = self.repos.projects.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f'Wallet {wallet_id} not found')

        score = self._current_score(wallet_id)
        recs = [recommendation_for_metric(m, wallet_id) for m in identify_declining_metrics(score)]
        if score.total_score < DECLINING_SCORE_THRESHOLD:
            recs.append(general_recommendation(score.total_score, wallet_id))
        recs.sort(key=lambda r: r.priority, reverse=True)
        recs = recs[:MAX_WALLET_RECOMMENDATIONS]

        if persist and recs:
            baseline = wallet_snapshot(self.repos, wallet_id)
            recs = [self._store(rec, baseline) for rec in recs]

        logger.info("Generated %d recommendations for wallet %s (score %s)", len(recs), wallet_id, score.total_score)
        return {
            'wallet_id': wallet_id,
            'total_score': score.total_score,
            'status': score.status,
            'risk_level': score.risk_level,
            'recommendations': [r.to_dict() for r in recs],
            'generated_at': datetime.now().isoformat(),
        }

    def generate_project_recommendations(self, project_id: str, persist: bool = True) -> Dict[str, Any]:
        if self.repos.projects.get_project(project_id) is None:
            raise NotFoundError(f'Project {project_id} not found')

        wallets = self.repos.projects.list_wallets(project_id, active_only=True)
        if not wallets:
            return {
                'project_id': project_id,
                'recommendations': [],
                'message': 'No active wallets found for this project',
            }

        scores = self.repos.metrics.latest_scores([w.id for w in wallets])
        rows = [
            {
                'wallet_id': w.id,
                'total_score': scores[w.id].total_score if w.id in scores else None,
                'status': scores[w.id].status if w.id in scores else None,
                'risk_level': scores[w.id].risk_level if w.id in scores else None,
            }
            for w in wallets
        ]
        analysis = analyze_project_health(rows)
        recs = project_level_recommendations(analysis, project_id)

        high_risk = sum(1 for r in rows if r['risk_level'] == 'high')
        if high_risk:
            recs.append(RecommendationRecord(
                type='retention',
                title=f'Address {high_risk} high-risk wallets',
                priority=9,
                project_id=project_id,
                description=f'{high_risk} wallets are at high risk of churning',
                current_state={'high_risk_wallets': high_risk},
                target_state={'health_percentage_target': 50},
                timeline='1-2 weeks',
                expected_impact='High',
                effort_level=RECOMMENDATION_TYPES['retention']['effort_level'],
                actions=['Identify common patterns among high-risk wallets',
                         'Launch targeted re-engagement campaign',
                         'Provide personalized support and incentives', 'Monitor progress weekly'],
                completion_indicators={'health_percentage_target': 50},
            ))
        recs.sort(key=lambda r: r.priority, reverse=True)

        if persist and recs:
            baseline = project_snapshot(self.repos, project_id)
            recs = [self._store(rec, baseline) for rec in recs]

        return {
            'project_id': project_id,
            'total_wallets': len(wallets),
            'project_health': analysis,
            'recommendations': [r.to_dict() for r in recs],
            'generated_at': datetime.now().isoformat(),
        }

    def _store(self, rec: RecommendationRecord, baseline: Dict[str, Any]) -> RecommendationRecord:
        stored = self.repos.recommendations.add_recommendation(rec)
        self.repos.recommendations.add_task(TaskRecord(
            recommendation_id=stored.id, status='pending', baseline_metrics=dict(baseline),
        ))
        return stored

    def get_wallet_recommendations(self, wallet_id: str) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.repos.recommendations.list_recommendations(wallet_id=wallet_id)]

    def get_project_recommendations(self, project_id: str) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.repos.recommendations.list_recommendations(project_id=project_id)]
