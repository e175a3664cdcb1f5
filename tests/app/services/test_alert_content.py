"""Tests for app.services.alert_content — deterministic alert enrichment."""
import pytest

from app.services.alert_content import (
    calculate_priority_score,
    calculate_urgency,
    estimate_impact,
    generate_action_items,
    generate_alert_content,
    generate_alert_packages,
    generate_suggestions,
    suggest_timeline,
)


def _alert(alert_type, severity, **data):
    return {'type': alert_type, 'severity': severity, 'title': 't', 'message': 'm', 'data': data}


class TestUrgency:

    @pytest.mark.parametrize('alert_type,severity,trend,level,score', [
        ('churn_critical', 'critical', 'worsening', 'critical', 100),
        ('retention_drop', 'critical', None, 'critical', 90),
        ('retention_warning', 'warning', 'stable', 'high', 60),
        ('funnel_drop_off', 'warning', 'worsening', 'high', 70),
        ('shielded_spike', 'info', 'worsening', 'medium', 40),
        ('shielded_spike', 'info', None, 'low', 30),
    ])
    def test_levels(self, alert_type, severity, trend, level, score):
        urgency = calculate_urgency(_alert(alert_type, severity), {'trend': trend})
        assert urgency['level'] == level
        assert urgency['score'] == score

    def test_response_time_for_critical(self):
        assert calculate_urgency(_alert('combined_risk', 'critical'))['response_time'] == 'Immediate (24-48 hours)'


class TestPriorityScore:

    def test_maximum(self):
        ctx = {'trend': 'worsening', 'affected_percentage': 60}
        assert calculate_priority_score(_alert('churn_critical', 'critical'), ctx) == 100

    def test_no_context(self):
        # 10 severity + 10 type + 10 unknown reach + 3 unknown trend
        assert calculate_priority_score(_alert('shielded_spike', 'info')) == 33

    def test_small_reach_improving(self):
        ctx = {'trend': 'improving', 'affected_percentage': 5}
        assert calculate_priority_score(_alert('low_conversion', 'warning'), ctx) == 48

    def test_deterministic(self):
        alert = _alert('retention_drop', 'warning')
        assert calculate_priority_score(alert, {'trend': 'stable'}) == calculate_priority_score(alert, {'trend': 'stable'})


class TestActionItems:

    def test_critical_starts_with_p0(self):
        items = generate_action_items(_alert('retention_critical', 'critical'))
        assert [i['priority'] for i in items[:3]] == ['P0', 'P0', 'P0']
        assert items[0]['action'] == 'Convene emergency response team'
        assert items[-1]['priority'] == 'P2'

    def test_warning_has_no_emergency(self):
        items = generate_action_items(_alert('funnel_drop_off', 'warning'))
        assert all(i['priority'] != 'P0' for i in items)
        assert len(items) == 4

    def test_unknown_type_gets_review_only(self):
        items = generate_action_items(_alert('mystery', 'info'))
        assert [i['action'] for i in items] == ['Review alert resolution and document learnings']


class TestSuggestions:

    def test_critical_churn_adds_emergency(self):
        categories = [s['category'] for s in generate_suggestions(_alert('churn_critical', 'critical'))]
        assert categories[-1] == 'emergency'
        assert 'emergency' not in [
            s['category'] for s in generate_suggestions(_alert('high_risk_wallets', 'warning'))
        ]

    def test_funnel_names_the_stage(self):
        suggestions = generate_suggestions(_alert('funnel_drop_off', 'warning', to_stage='first_tx'))
        assert 'first_tx' in suggestions[0]['suggestion']

    def test_shielded_drop(self):
        categories = [s['category'] for s in generate_suggestions(_alert('shielded_drop', 'warning'))]
        assert categories == ['investigation', 'engagement', 'education']

    def test_fallback(self):
        assert generate_suggestions(_alert('mystery', 'info'))[0]['category'] == 'general'


class TestImpactAndTimeline:

    def test_known_impact(self):
        assert estimate_impact(_alert('funnel_drop_off', 'warning'))['overall'] == 'Medium-High'

    def test_unknown_impact(self):
        assert estimate_impact(_alert('mystery', 'info'))['user'] == 'Unknown'

    def test_timeline_by_severity(self):
        assert suggest_timeline(_alert('x', 'critical'))['total'] == '2-4 weeks'
        assert suggest_timeline(_alert('x', 'unknown'))['total'] == '4-6 weeks'

    def test_timeline_is_a_copy(self):
        suggest_timeline(_alert('x', 'info'))['total'] = 'never'
        assert suggest_timeline(_alert('x', 'info'))['total'] == '6-8 weeks'


class TestGenerateAlertContent:

    def test_keeps_alert_and_adds_enrichment(self):
        alert = _alert('churn_critical', 'critical', churn_rate=55.0)
        content = generate_alert_content(alert, {'trend': 'worsening'})
        assert content['type'] == 'churn_critical'
        assert content['data'] == {'churn_rate': 55.0}
        for key in ('ai_suggestions', 'action_items', 'urgency', 'priority_score', 'estimated_impact', 'timeline'):
            assert key in content

    def test_same_input_same_output(self):
        alert = _alert('retention_drop', 'warning')
        assert generate_alert_content(alert, {'trend': 'stable'}) == generate_alert_content(alert, {'trend': 'stable'})

    def test_packages(self):
        packages = generate_alert_packages([_alert('low_conversion', 'warning'), _alert('shielded_spike', 'info')])
        assert [p['type'] for p in packages] == ['low_conversion', 'shielded_spike']

    def test_packages_take_reach_from_alert_data(self):
        packages = generate_alert_packages([
            _alert('funnel_drop_off', 'warning', drop_off_percentage=55.0),
            _alert('funnel_drop_off', 'warning', drop_off_percentage=5.0),
            _alert('high_risk_wallets', 'warning', high_risk_percentage=35.0),
            _alert('combined_risk', 'critical', churn_rate=20.0, combined_percentage=70.0),
        ], {'trend': 'stable'})
        # severity + type + reach + stable trend
        assert [p['priority_score'] for p in packages] == [
            25 + 20 + 20 + 5, 25 + 20 + 5 + 5, 25 + 25 + 15 + 5, 40 + 30 + 20 + 5,
        ]

    def test_context_reach_wins_over_alert_data(self):
        alert = _alert('funnel_drop_off', 'warning', drop_off_percentage=55.0)
        (package,) = generate_alert_packages([alert], {'trend': 'stable', 'affected_percentage': 5})
        assert package['priority_score'] == 55
