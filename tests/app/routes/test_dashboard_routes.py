"""Tests for the dashboard blueprint — dashboard, export, time series and performance admin."""
import pytest


@pytest.fixture
def project(make_project, make_wallet, add_activity, add_score):
    make_project()
    make_wallet('w1')
    make_wallet('w2')
    add_activity('w1', 1, transaction_count=3)
    add_activity('w2', 1, transaction_count=2)
    add_score('w1', 80)
    add_score('w2', 30)


class TestDashboardRoutes:

    def test_dashboard(self, client, project):
        data = client.get('/api/projects/proj-1/dashboard').get_json()['data']
        assert data['project_id'] == 'proj-1'
        assert {'overview', 'productivity', 'cohorts', 'adoption', 'alerts', 'alert_summary'} <= set(data)

    def test_unknown_project(self, client):
        resp = client.get('/api/projects/nope/dashboard')
        assert resp.status_code == 404
        assert resp.get_json()['error'] == 'NOT_FOUND'

    def test_export_json(self, client, project):
        data = client.get('/api/projects/proj-1/export').get_json()['data']
        assert data['format'] == 'json'
        assert data['data']['project_id'] == 'proj-1'

    def test_export_csv(self, client, project):
        resp = client.get('/api/projects/proj-1/export?format=csv')
        assert resp.status_code == 200
        assert resp.mimetype == 'text/csv'
        assert resp.headers['Content-Disposition'] == 'attachment; filename=analytics_proj-1.csv'
        assert resp.get_data(as_text=True).strip()

    def test_export_unsupported(self, client, project):
        resp = client.get('/api/projects/proj-1/export?format=xml')
        assert resp.status_code == 400
        assert 'allowed' in resp.get_json()['details']


class TestTimeSeriesRoutes:

    def test_transactions(self, client, project):
        data = client.get('/api/projects/proj-1/timeseries/transactions?days=7').get_json()['data']
        assert [p['value'] for p in data] == [5]

    def test_active_wallets(self, client, project):
        data = client.get('/api/projects/proj-1/timeseries/active_wallets').get_json()['data']
        assert [p['value'] for p in data] == [2]

    def test_unknown_metric(self, client, project):
        assert client.get('/api/projects/proj-1/timeseries/revenue').status_code == 400

    @pytest.mark.parametrize('days', ['0', '366', 'many'])
    def test_days_bounds(self, client, project, days):
        assert client.get(f'/api/projects/proj-1/timeseries/transactions?days={days}').status_code == 400


class TestWalletHealthRoutes:

    def test_all_projects(self, client, project):
        data = client.get('/api/wallet-health').get_json()['data']
        assert data['total_wallets'] == 2
        assert data['by_status']['healthy']['count'] == 1

    def test_filtered(self, client, project):
        data = client.get('/api/wallet-health?project_id=proj-1').get_json()['data']
        assert data['by_risk_level']['high']['count'] == 1

    def test_unknown_project(self, client):
        assert client.get('/api/wallet-health?project_id=nope').status_code == 404


# ---------------------------------------------------------------------------
# Performance admin
# ---------------------------------------------------------------------------

class TestPerformanceRoutes:

    def test_stats(self, client):
        data = client.get('/api/performance/stats').get_json()['data']
        assert {'cache', 'batch', 'batch_size'} <= set(data)

    def test_clear_by_pattern(self, client, project):
        client.get('/api/projects/proj-1/dashboard')
        cleared = client.post('/api/performance/cache/clear', json={'pattern': 'dashboard:*'}).get_json()['data']
        assert cleared['cleared'] >= 1

    def test_warmup(self, client, project):
        data = client.post('/api/projects/proj-1/cache/warmup').get_json()['data']
        assert data['warmed'] == ['wallets', 'aggregated', 'wallet_scores']
        stats = client.get('/api/performance/stats').get_json()['data']
        assert stats['cache']['entries'] >= 3

    def test_warmup_unknown_project(self, client):
        assert client.post('/api/projects/nope/cache/warmup').status_code == 404

    def test_ingest_activity(self, client, project, repos):
        resp = client.post('/api/activity', json={'records': [
            {'wallet_id': 'w1', 'activity_date': '2026-06-01', 'transaction_count': 4, 'is_active': True},
        ]})
        assert resp.status_code == 201
        assert resp.get_json()['data'] == {'processed': 1, 'batches': 1}
        assert any(s.transaction_count == 4 for s in repos.metrics.list_activity(['w1']))

    @pytest.mark.parametrize('payload', [
        {},
        {'records': 'w1'},
        {'records': [{'wallet_id': 'w1'}]},
        {'records': [{'wallet_id': 'w1', 'activity_date': '06/01/2026'}]},
        {'records': ['w1']},
    ])
    def test_ingest_rejects(self, client, payload):
        assert client.post('/api/activity', json=payload).status_code == 400

    def test_recalculate_wallets(self, client, project):
        data = client.post('/api/scores/recalculate', json={'wallet_ids': ['w1', 'w1']}).get_json()['data']
        assert data['processed'] == 1
        assert 'scores' not in data

    def test_recalculate_project(self, client, project):
        data = client.post('/api/scores/recalculate', json={'project_id': 'proj-1'}).get_json()['data']
        assert data['processed'] == 2
        assert data['failed'] == []

    def test_recalculate_requires_target(self, client):
        assert client.post('/api/scores/recalculate', json={}).status_code == 400
