"""
Alert enrichment — urgency, priority, impact, timeline and action items.

Deterministic rule tables keyed by alert type and severity. No model calls:
the same alert and context always produce the same enriched alert.

Context keys understood:
  trend                'worsening' | 'stable' | 'improving'
  affected_percentage  share of wallets affected (0-100); generate_alert_packages
                       derives it from each alert's data when not given
"""
from typing import Any, Dict, List, Optional

RETENTION_TYPES = ('retention_drop', 'retention_critical', 'retention_warning')
CHURN_TYPES = ('churn_critical', 'high_risk_wallets', 'combined_risk')
FUNNEL_TYPES = ('funnel_drop_off', 'low_conversion')
SHIELDED_TYPES = ('shielded_spike', 'shielded_drop', 'shielded_volume_change')

URGENCY_BASE = {'critical': 90, 'warning': 60, 'info': 30}
URGENT_TYPES = ('retention_critical', 'churn_critical', 'combined_risk')

# (min score, level, response time), checked top down
URGENCY_LEVELS = [
    (80, 'critical', 'Immediate (24-48 hours)'),
    (60, 'high', '2-5 days'),
    (40, 'medium', '1 week'),
    (0, 'low', '1-2 weeks'),
]

PRIORITY_SEVERITY_POINTS = {'critical': 40, 'warning': 25, 'info': 10}
PRIORITY_TYPE_POINTS = {
    'retention_critical': 30,
    'churn_critical': 30,
    'combined_risk': 30,
    'retention_drop': 25,
    'high_risk_wallets': 25,
    'funnel_drop_off': 20,
    'low_conversion': 15,
    'shielded_drop': 15,
    'shielded_spike': 10,
}
PRIORITY_TREND_POINTS = {'worsening': 10, 'stable': 5}

IMPACT_TABLE = {
    'retention_critical': ('High - Significant user loss expected',
                           'High - Direct revenue impact from churned users',
                           'High - Negative word-of-mouth affects acquisition', 'High'),
    'churn_critical': ('High - Significant user loss expected',
                       'High - Direct revenue impact from churned users',
                       'High - Negative word-of-mouth affects acquisition', 'High'),
    'combined_risk': ('High - Large share of wallets churned or at risk',
                      'High - Direct revenue impact from churned users',
                      'Medium - Shrinking active base slows growth', 'High'),
    'retention_drop': ('Medium - Moderate user loss risk', 'Medium - Potential revenue decline',
                       'Medium - May slow growth trajectory', 'Medium'),
    'high_risk_wallets': ('Medium - Moderate user loss risk', 'Medium - Potential revenue decline',
                          'Medium - May slow growth trajectory', 'Medium'),
    'funnel_drop_off': ('Medium - Reduced user activation', 'Medium - Lower conversion to paying users',
                        'High - Directly limits growth potential', 'Medium-High'),
    'low_conversion': ('Low-Medium - Affects new user experience', 'Medium - Reduces monetization potential',
                       'Medium - Limits effective growth', 'Medium'),
    'shielded_spike': ('Low - May indicate increased engagement', 'Low - Minimal direct impact',
                       'Low-Medium - Could indicate new use case', 'Low'),
    'shielded_drop': ('Low-Medium - Affects privacy-focused users', 'Low - Limited user segment',
                      'Low - Niche feature impact', 'Low-Medium'),
}

TIMELINES = {
    'critical': {'investigation': '24-48 hours', 'planning': '1-2 days',
                 'implementation': '1-2 weeks', 'validation': '1 week', 'total': '2-4 weeks'},
    'warning': {'investigation': '1-3 days', 'planning': '2-5 days',
                'implementation': '1-3 weeks', 'validation': '1-2 weeks', 'total': '4-6 weeks'},
    'info': {'investigation': '3-5 days', 'planning': '1 week',
             'implementation': '2-4 weeks', 'validation': '2-3 weeks', 'total': '6-8 weeks'},
}


def _suggestion(category, suggestion, rationale, expected_outcome=None):
    item = {'category': category, 'suggestion': suggestion, 'rationale': rationale}
    if expected_outcome:
        item['expected_outcome'] = expected_outcome
    return item


def _action(action, owner, timeline, priority):
    return {'action': action, 'owner': owner, 'timeline': timeline, 'priority': priority}


# ── Suggestions ──────────────────────────────────────────────────────────────

def _retention_suggestions(alert):
    items = []
    if alert['severity'] == 'critical':
        items += [
            _suggestion('immediate_action', 'Launch emergency re-engagement campaign for at-risk users',
                        'Critical retention levels require immediate intervention to prevent further losses',
                        'Stabilize retention within 1-2 weeks'),
            _suggestion('investigation', 'Conduct urgent user interviews to identify pain points',
                        'Understanding why users are leaving is crucial for effective intervention',
                        'Identify top 3 churn drivers within 3-5 days'),
        ]
    items += [
        _suggestion('engagement', 'Implement personalized email campaigns targeting inactive users',
                    'Personalized outreach has shown 3-5x higher re-engagement rates',
                    '10-15% improvement in retention over 4 weeks'),
        _suggestion('product', 'Add value-driving features or improve existing feature discoverability',
                    'Users stay when they consistently derive value from the product',
                    'Increase feature adoption by 20-30%'),
        _suggestion('community', 'Build community engagement through forums, events, or social channels',
                    'Strong community connections significantly improve retention',
                    'Create network effects that boost retention by 15-25%'),
    ]
    return items


def _churn_suggestions(alert):
    items = [
        _suggestion('prevention', 'Implement early warning system to identify at-risk users before they churn',
                    'Proactive intervention is 5x more effective than reactive win-back',
                    'Reduce churn rate by 20-30%'),
        _suggestion('retention', 'Create VIP support program for high-value or at-risk users',
                    'Personalized support significantly reduces churn among engaged users',
                    'Improve retention of high-value users by 40%'),
        _suggestion('product', 'Analyze common patterns among churned users and fix identified issues',
                    'Addressing root causes prevents future churn',
                    'Eliminate top churn drivers within 2-3 weeks'),
        _suggestion('incentives', 'Offer retention incentives or loyalty rewards to at-risk users',
                    'Strategic incentives can tip the balance for users considering leaving',
                    'Retain 30-40% of at-risk users'),
    ]
    if alert['severity'] == 'critical':
        items.append(_suggestion(
            'emergency', 'Conduct emergency product review and implement quick wins',
            'Critical churn levels indicate fundamental product or market fit issues',
            'Stabilize churn within 2-3 weeks'))
    return items


def _funnel_suggestions(alert):
    items = []
    if alert['type'] == 'funnel_drop_off':
        stage = (alert.get('data') or {}).get('to_stage', 'unknown')
        items += [
            _suggestion('optimization', f'Optimize the {stage} stage to reduce friction and improve conversion',
                        f'High drop-off at {stage} indicates a significant barrier to progression',
                        'Reduce drop-off by 20-30%'),
            _suggestion('analysis', f'Conduct user testing specifically for the {stage} stage',
                        'Direct user feedback reveals hidden friction points',
                        'Identify and fix top 3 friction points'),
            _suggestion('incentives', f'Add progressive incentives to encourage {stage} completion',
                        'Strategic incentives can overcome hesitation at critical stages',
                        'Increase stage completion by 15-25%'),
        ]
    items += [
        _suggestion('onboarding', 'Simplify onboarding flow and reduce steps to value',
                    'Every additional step in onboarding reduces conversion by 10-20%',
                    'Improve overall funnel conversion by 25-35%'),
        _suggestion('education', 'Add contextual help and tooltips at key decision points',
                    'Users need guidance at critical moments to progress confidently',
                    'Reduce confusion-related drop-offs by 30%'),
    ]
    return items


def _shielded_suggestions(alert):
    items = []
    if alert['type'] == 'shielded_spike':
        items += [
            _suggestion('monitoring', 'Monitor for unusual patterns that might indicate coordinated activity',
                        'Sudden spikes can indicate both positive adoption or potential issues',
                        'Understand spike cause within 24-48 hours'),
            _suggestion('opportunity', 'Investigate if spike represents new user segment or use case',
                        'Activity spikes often reveal new growth opportunities',
                        'Identify and capitalize on new use cases'),
        ]
    elif alert['type'] == 'shielded_drop':
        items += [
            _suggestion('investigation', 'Investigate technical issues or UX problems with shielded features',
                        'Sudden drops often indicate technical or usability problems',
                        'Identify and resolve issues within 1 week'),
            _suggestion('engagement', 'Re-engage privacy-focused users with targeted communications',
                        'Privacy-focused users are often high-value and worth retaining',
                        'Restore 50-70% of previous activity levels'),
        ]
    items.append(_suggestion('education', 'Educate users on privacy features and benefits',
                             "Many users don't fully understand or utilize privacy features",
                             'Increase shielded transaction adoption by 20-30%'))
    return items


def generate_suggestions(alert: Dict[str, Any], context: Optional[Dict] = None) -> List[Dict]:
    alert_type = alert.get('type')
    if alert_type in RETENTION_TYPES:
        return _retention_suggestions(alert)
    if alert_type in CHURN_TYPES:
        return _churn_suggestions(alert)
    if alert_type in FUNNEL_TYPES:
        return _funnel_suggestions(alert)
    if alert_type in SHIELDED_TYPES:
        return _shielded_suggestions(alert)
    return [_suggestion('general', 'Review the alert data and investigate the underlying cause',
                        'Understanding the root cause is the first step to resolution')]


# ── Action items ─────────────────────────────────────────────────────────────

def generate_action_items(alert: Dict[str, Any], context: Optional[Dict] = None) -> List[Dict]:
    """Critical alerts always open with P0 emergency actions."""
    severity = alert.get('severity')
    alert_type = alert.get('type')
    items = []

    if severity == 'critical':
        items += [
            _action('Convene emergency response team', 'Product Lead', 'Immediate (within 24 hours)', 'P0'),
            _action('Analyze root cause and create action plan', 'Analytics Team', '24-48 hours', 'P0'),
        ]

    if alert_type in ('retention_drop', 'retention_critical', 'retention_warning'):
        items += [
            _action('Launch re-engagement email campaign', 'Marketing Team', '2-3 days',
                    'P0' if severity == 'critical' else 'P1'),
            _action('Conduct user interviews with churned users', 'Product Team', '1 week', 'P1'),
            _action('Implement retention improvements', 'Engineering Team', '2-3 weeks', 'P1'),
        ]
    elif alert_type in CHURN_TYPES:
        items += [
            _action('Identify and segment at-risk users', 'Analytics Team', '1-2 days', 'P0'),
            _action('Create personalized retention offers', 'Product Team', '3-5 days', 'P1'),
            _action('Launch targeted retention campaign', 'Marketing Team', '1 week', 'P1'),
        ]
    elif alert_type in FUNNEL_TYPES:
        items += [
            _action('Conduct funnel analysis and identify friction points', 'Product Analytics', '2-3 days', 'P1'),
            _action('Run A/B tests on funnel improvements', 'Product Team', '1-2 weeks', 'P1'),
            _action('Implement winning variations', 'Engineering Team', '2-3 weeks', 'P2'),
        ]
    elif alert_type in SHIELDED_TYPES:
        items += [
            _action('Investigate cause of activity change', 'Analytics Team', '1-2 days', 'P1'),
            _action('Monitor for continued trends', 'Operations Team', 'Ongoing', 'P2'),
        ]

    items.append(_action('Review alert resolution and document learnings', 'Product Lead',
                         '1 week after resolution', 'P2'))
    return items


# ── Scores ───────────────────────────────────────────────────────────────────

def calculate_urgency(alert: Dict[str, Any], context: Optional[Dict] = None) -> Dict[str, Any]:
    context = context or {}
    score = URGENCY_BASE.get(alert.get('severity'), 30)
    if alert.get('type') in URGENT_TYPES:
        score = min(100, score + 10)
    if context.get('trend') == 'worsening':
        score = min(100, score + 10)

    for minimum, level, response_time in URGENCY_LEVELS:
        if score >= minimum:
            break
    return {
        'level': level,
        'score': score,
        'response_time': response_time,
        'rationale': f"Based on {alert.get('severity')} severity and {alert.get('type')} type",
    }


def calculate_priority_score(alert: Dict[str, Any], context: Optional[Dict] = None) -> int:
    """0-100: severity (40) + alert type (30) + affected share (20) + trend (10)."""
    context = context or {}
    score = PRIORITY_SEVERITY_POINTS.get(alert.get('severity'), 10)
    score += PRIORITY_TYPE_POINTS.get(alert.get('type'), 10)

    affected = context.get('affected_percentage')
    if affected:
        if affected >= 50:
            score += 20
        elif affected >= 30:
            score += 15
        elif affected >= 10:
            score += 10
        else:
            score += 5
    else:
        score += 10

    score += PRIORITY_TREND_POINTS.get(context.get('trend'), 3)
    return min(100, score)


def estimate_impact(alert: Dict[str, Any], context: Optional[Dict] = None) -> Dict[str, str]:
    row = IMPACT_TABLE.get(alert.get('type'))
    if row is None:
        return {'user': 'Unknown', 'revenue': 'Unknown', 'growth': 'Unknown', 'overall': 'Medium'}
    user, revenue, growth, overall = row
    return {'user': user, 'revenue': revenue, 'growth': growth, 'overall': overall}


def suggest_timeline(alert: Dict[str, Any], context: Optional[Dict] = None) -> Dict[str, str]:
    return dict(TIMELINES.get(alert.get('severity'), TIMELINES['warning']))


def generate_alert_content(alert: Dict[str, Any], context: Optional[Dict] = None) -> Dict[str, Any]:
    """Alert + urgency, priority_score, estimated_impact, timeline, action_items, ai_suggestions."""
    context = context or {}
    return {
        **alert,
        'ai_suggestions': generate_suggestions(alert, context),
        'action_items': generate_action_items(alert, context),
        'urgency': calculate_urgency(alert, context),
        'priority_score': calculate_priority_score(alert, context),
        'estimated_impact': estimate_impact(alert, context),
        'timeline': suggest_timeline(alert, context),
    }


# alert data keys that measure the affected share, most specific first
AFFECTED_KEYS = ('combined_percentage', 'churn_rate', 'high_risk_percentage', 'drop_off_percentage')


def affected_percentage(alert: Dict[str, Any]) -> Optional[float]:
    """Share of wallets an alert covers, read from its data; None when it carries none."""
    data = alert.get('data') or {}
    for key in AFFECTED_KEYS:
        if data.get(key) is not None:
            return min(100.0, round(float(data[key]), 2))
    return None


def generate_alert_packages(alerts: List[Dict[str, Any]], context: Optional[Dict] = None) -> List[Dict[str, Any]]:
    """Enrich each alert; affected_percentage comes from the alert unless the context pins it."""
    context = context or {}
    packages = []
    for alert in alerts:
        alert_context = dict(context)
        if alert_context.get('affected_percentage') is None:
            alert_context['affected_percentage'] = affected_percentage(alert)
        packages.append(generate_alert_content(alert, alert_context))
    return packages
