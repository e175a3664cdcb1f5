"""Tests for app.services.alerts — rule families, thresholds and project checks."""
from datetime import date, timedelta

import pytest

from app.errors import NotFoundError, ValidationError
from app.repositories.base import CohortRecord, ScoreRecord
from app.services.alerts import (
    AlertService,
    check_churn_alerts,
    check_funnel_alerts,
    check_retention_alerts,
    check_shielded_alerts,
    merge_thresholds,
    summarize,
    validate_thresholds,
)

DEFAULTS = merge_thresholds()


def _cohort(week_1, weeks_ago=0):
    return CohortRecord(
        project_id='proj-1', cohort_type='weekly',
        cohort_period=date(2026, 6, 1) - timedelta(weeks=weeks_ago), retention_week_1=week_1,
    )


def _score(status, risk):
    return ScoreRecord(wallet_id='w', total_score=0, status=status, risk_level=risk)


def _days(today_txs, other_txs, today_volume=0, other_volume=0, days=7):
    start = date(2026, 6, 30)
    rows = [{'date': start, 'shielded_tx_count': today_txs, 'shielded_volume_zatoshi': today_volume}]
    rows += [
        {'date': start - timedelta(days=n), 'shielded_tx_count': other_txs, 'shielded_volume_zatoshi': other_volume}
        for n in range(1, days)
    ]
    return rows


def _types(alerts):
    return [(a['type'], a['severity']) for a in alerts]


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

class TestThresholds:

    def test_merge_is_per_key(self):
        merged = merge_thresholds({'retention': {'warning_level': 60}})
        assert merged['retention'] == {'drop_percentage': 15, 'critical_level': 40, 'warning_level': 60}
        assert merged['churn'] == DEFAULTS['churn']

    def test_merge_does_not_mutate_defaults(self):
        merge_thresholds({'churn': {'critical_rate': 99}})
        assert merge_thresholds()['churn']['critical_rate'] == 40

    @pytest.mark.parametrize('thresholds,bad_key', [
        ({'weather': {}}, 'weather'),
        ({'churn': 5}, 'churn'),
        ({'churn': {'bogus': 1}}, 'churn.bogus'),
        ({'churn': {'critical_rate': -1}}, 'churn.critical_rate'),
        ({'churn': {'critical_rate': 'high'}}, 'churn.critical_rate'),
        ({'churn': {'critical_rate': True}}, 'churn.critical_rate'),
    ])
    def test_validate_rejects(self, thresholds, bad_key):
        with pytest.raises(ValidationError) as exc:
            validate_thresholds(thresholds)
        assert bad_key in exc.value.details

    def test_validate_accepts_partial(self):
        validate_thresholds({'shielded': {'spike_multiplier': 3.5}})


# ---------------------------------------------------------------------------
# Rule families
# ---------------------------------------------------------------------------

class TestRetentionAlerts:

    def test_needs_two_cohorts(self):
        assert check_retention_alerts([_cohort(10)], DEFAULTS['retention']) == []

    def test_critical_drop(self):
        alerts = check_retention_alerts([_cohort(60), _cohort(80, weeks_ago=1)], DEFAULTS['retention'])
        assert _types(alerts) == [('retention_drop', 'critical')]
        assert alerts[0]['data']['drop_percentage'] == 25.0

    def test_warning_drop(self):
        alerts = check_retention_alerts([_cohort(68), _cohort(80, weeks_ago=1)], DEFAULTS['retention'])
        assert _types(alerts) == [('retention_drop', 'warning')]

    def test_low_levels(self):
        alerts = check_retention_alerts(
            [_cohort(35), _cohort(36, weeks_ago=1), _cohort(50, weeks_ago=2)], DEFAULTS['retention'],
        )
        assert ('retention_critical', 'critical') in _types(alerts)
        assert ('retention_warning', 'warning') not in _types(alerts)
        assert ('retention_critical', 'critical') in _types(alerts[1:])

    def test_zero_retention_is_critical(self):
        alerts = check_retention_alerts([_cohort(0.0), _cohort(60, weeks_ago=1)], DEFAULTS['retention'])
        assert _types(alerts) == [('retention_drop', 'critical'), ('retention_critical', 'critical')]
        assert alerts[0]['data']['drop_percentage'] == 100.0

    def test_missing_values_skipped(self):
        assert check_retention_alerts([_cohort(None), _cohort(80, weeks_ago=1)], DEFAULTS['retention']) == []


class TestChurnAlerts:

    def test_no_wallets(self):
        assert check_churn_alerts([], DEFAULTS['churn']) == []

    def test_all_three_fire(self):
        scores = [
            _score('churn', 'high'), _score('churn', 'high'), _score('at_risk', 'medium'),
            _score('healthy', 'low'), None,
        ]
        alerts = check_churn_alerts(scores, DEFAULTS['churn'])
        assert _types(alerts) == [
            ('churn_critical', 'critical'),
            ('high_risk_wallets', 'warning'),
            ('combined_risk', 'critical'),
        ]
        assert alerts[0]['data']['total_wallets'] == 5

    def test_healthy_project_is_quiet(self):
        assert check_churn_alerts([_score('healthy', 'low')] * 4, DEFAULTS['churn']) == []


class TestFunnelAlerts:

    def test_created_defaults_to_total(self):
        alerts = check_funnel_alerts({}, 10, DEFAULTS['funnel'])
        assert _types(alerts) == [('funnel_drop_off', 'critical')]
        assert alerts[0]['data']['from_count'] == 10

    def test_drop_offs_and_conversion(self):
        alerts = check_funnel_alerts({'created': 10, 'first_tx': 5, 'feature_usage': 2}, 10, DEFAULTS['funnel'])
        assert _types(alerts) == [
            ('funnel_drop_off', 'warning'),      # created → first_tx, 50%
            ('funnel_drop_off', 'warning'),      # first_tx → feature_usage, 60%
            ('funnel_drop_off', 'critical'),     # feature_usage → recurring, 100%
            ('low_conversion', 'warning'),
        ]
        assert alerts[-1]['data']['stage'] == 'feature_usage'

    def test_no_wallets(self):
        assert check_funnel_alerts({'created': 0}, 0, DEFAULTS['funnel']) == []


class TestShieldedAlerts:

    def test_needs_a_week(self):
        assert check_shielded_alerts(_days(100, 1, days=6), DEFAULTS['shielded']) == []

    def test_spike(self):
        alerts = check_shielded_alerts(_days(30, 5), DEFAULTS['shielded'])
        assert _types(alerts) == [('shielded_spike', 'info')]

    def test_drop_needs_meaningful_average(self):
        assert _types(check_shielded_alerts(_days(2, 20), DEFAULTS['shielded'])) == [('shielded_drop', 'warning')]
        assert check_shielded_alerts(_days(0, 5), DEFAULTS['shielded']) == []

    def test_volume_change(self):
        alerts = check_shielded_alerts(
            _days(5, 5, today_volume=300_000_000, other_volume=100_000_000), DEFAULTS['shielded'],
        )
        assert _types(alerts) == [('shielded_volume_change', 'info')]
        assert alerts[0]['title'] == 'Significant shielded volume increase'


def test_summarize_counts_by_severity():
    alerts = [{'severity': 'critical'}, {'severity': 'info'}, {'severity': 'critical'}]
    assert summarize(alerts) == {'total': 3, 'critical': 2, 'warning': 0, 'info': 1}


# ---------------------------------------------------------------------------
# AlertService
# ---------------------------------------------------------------------------

@pytest.fixture
def alerts(services) -> AlertService:
    return services.alerts


class TestAlertService:

    def test_unknown_project(self, alerts):
        with pytest.raises(NotFoundError):
            alerts.check_project_alerts('nope')

    def test_empty_project_is_quiet(self, alerts, make_project):
        make_project()
        result = alerts.check_project_alerts('proj-1')
        assert result['summary'] == {'total': 0, 'critical': 0, 'warning': 0, 'info': 0}

    def test_project_check(self, alerts, make_project, make_wallet, add_score):
        make_project()
        make_wallet('w1')
        make_wallet('w2')
        add_score('w1', 10)
        add_score('w2', 20)
        result = alerts.check_project_alerts('proj-1')
        assert [a['type'] for a in result['churn_alerts']] == ['churn_critical', 'high_risk_wallets', 'combined_risk']
        assert [a['type'] for a in result['funnel_alerts']] == ['funnel_drop_off']
        assert result['summary'] == {'total': 4, 'critical': 3, 'warning': 1, 'info': 0}
        assert len(AlertService.flatten(result)) == 4

    def test_inactive_wallets_excluded_from_churn(self, alerts, make_project, make_wallet, add_score):
        make_project()
        make_wallet('w1', is_active=False)
        add_score('w1', 10)
        assert alerts.check_project_alerts('proj-1')['churn_alerts'] == []

    def test_overrides_apply_to_one_check(self, alerts, make_project, make_wallet, add_score):
        make_project()
        make_wallet('w1')
        add_score('w1', 10)
        result = alerts.check_project_alerts('proj-1', {'churn': {'critical_rate': 101}})
        assert 'churn_critical' not in [a['type'] for a in result['churn_alerts']]
        assert alerts.get_alert_configuration('proj-1')['churn']['critical_rate'] == 40

    def test_stored_configuration(self, alerts, make_project):
        make_project()
        alerts.update_alert_configuration('proj-1', {'retention': {'warning_level': 60}})
        alerts.update_alert_configuration('proj-1', {'retention': {'critical_level': 30}})
        config = alerts.get_alert_configuration('proj-1')
        assert config['retention'] == {'drop_percentage': 15, 'critical_level': 30, 'warning_level': 60}

    def test_invalid_configuration_not_stored(self, alerts, make_project, repos):
        make_project()
        with pytest.raises(ValidationError):
            alerts.update_alert_configuration('proj-1', {'churn': {'critical_rate': 0}})
        assert repos.projects.get_alert_thresholds('proj-1') == {}

    def test_shielded_daily_rollup(self, alerts, make_project, make_wallet, add_activity):
        make_project()
        make_wallet('w1')
        make_wallet('w2')
        add_activity('w1', 0, shielded_count=20)
        add_activity('w2', 0, shielded_count=20)
        for n in range(1, 7):
            add_activity('w1', n, shielded_count=2)
        result = alerts.check_project_alerts('proj-1')
        assert [a['type'] for a in result['shielded_alerts']] == ['shielded_spike']
        assert result['shielded_alerts'][0]['data']['current_txs'] == 40
