"""Tests for app.services.payment_gateway — HTTP client and the in-memory gateway."""
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.errors import NotFoundError, UpstreamError, ValidationError
from app.services.circuit_breaker import CircuitOpenError
from app.services.payment_gateway import HttpPaymentGateway, MockPaymentGateway


class PassThroughBreaker:
    def __init__(self):
        self.calls = 0

    def call(self, func, *args, **kwargs):
        self.calls += 1
        return func(*args, **kwargs)


def _response(status=200, body=None):
    resp = MagicMock()
    resp.status_code = status
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body or {}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f'{status} error')
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def breaker():
    b = PassThroughBreaker()
    with patch('app.services.payment_gateway.get_breaker', return_value=b):
        yield b


@pytest.fixture
def client(session, breaker):
    return HttpPaymentGateway(base_url='http://gw.test/', api_key='secret', timeout=3, session=session)


# ---------------------------------------------------------------------------
# HttpPaymentGateway
# ---------------------------------------------------------------------------

class TestHttpPaymentGateway:

    def test_headers(self, client, session):
        assert session.headers['Authorization'] == 'Bearer secret'
        assert session.headers['Content-Type'] == 'application/json'

    def test_create_invoice(self, client, session, breaker):
        session.request.return_value = _response(body={'invoice': {
            'id': 42, 'z_address': 'zs1abc', 'qr_code': 'qr', 'expires_at': '2026-07-01T00:00:00',
        }})
        invoice = client.create_invoice('buyer', Decimal('0.001'), 'wallet_data_w1', email='b@example.com')

        assert invoice['invoice_id'] == '42'
        assert invoice['address'] == 'zs1abc'
        assert invoice['payment_uri'] == 'zcash:zs1abc?amount=0.001&memo=wallet_data_w1'
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert (method, url) == ('POST', 'http://gw.test/api/invoice/create')
        assert kwargs['json']['amount_zec'] == '0.001'
        assert kwargs['timeout'] == 3
        assert breaker.calls == 1

    def test_check_payment(self, client, session):
        session.request.return_value = _response(body={
            'paid': True, 'invoice': {'paid_txid': 'tx9', 'paid_at': '2026-06-30T10:00:00'},
        })
        assert client.check_payment('42') == {'paid': True, 'txid': 'tx9', 'paid_at': '2026-06-30T10:00:00'}

    def test_unpaid_invoice(self, client, session):
        session.request.return_value = _response(body={'paid': False})
        assert client.check_payment('42')['paid'] is False

    def test_create_withdrawal(self, client, session):
        session.request.return_value = _response(body={'withdrawal': {'id': 'w-7'}})
        assert client.create_withdrawal('owner-1', 'zs1dest', Decimal('0.5')) == {'withdrawal_id': 'w-7'}

    def test_not_found(self, client, session):
        session.request.return_value = _response(status=404)
        with pytest.raises(NotFoundError):
            client.check_payment('missing')

    @pytest.mark.parametrize('status', [500, 503, 401, 429])
    def test_server_errors_are_upstream(self, client, session, status):
        session.request.return_value = _response(status=status)
        with pytest.raises(UpstreamError) as exc:
            client.check_payment('42')
        assert exc.value.service == 'payment_gateway'
        assert exc.value.message == UpstreamError.public_message

    @pytest.mark.parametrize('status', [400, 422])
    def test_rejected_input_is_validation_error(self, client, session, status):
        session.request.return_value = _response(status=status, body={'error': 'invalid z-address'})
        with pytest.raises(ValidationError) as exc:
            client.create_withdrawal('owner-1', 'bogus', Decimal('0.5'))
        assert 'invalid z-address' in exc.value.message
        assert exc.value.details == {'status': status}

    def test_rejection_without_json_body(self, client, session):
        session.request.return_value = _response(status=400, body=ValueError('not json'))
        with pytest.raises(ValidationError):
            client.create_invoice('buyer', Decimal('0.001'), 'wallet_data_w1')

    def test_other_client_errors_are_upstream(self, client, session):
        session.request.return_value = _response(status=409, body={'message': 'duplicate'})
        with pytest.raises(UpstreamError) as exc:
            client.create_withdrawal('owner-1', 'zs1dest', Decimal('0.5'))
        assert exc.value.context['status'] == 409

    def test_success_without_id_is_upstream(self, client, session):
        session.request.return_value = _response(body={'withdrawal': {'status': 'queued'}})
        with pytest.raises(UpstreamError):
            client.create_withdrawal('owner-1', 'zs1dest', Decimal('0.5'))

    def test_transport_error(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(UpstreamError) as exc:
            client.create_withdrawal('owner-1', 'zs1dest', Decimal('1'))
        assert 'refused' in exc.value.detail

    def test_invalid_json(self, client, session):
        session.request.return_value = _response(body=ValueError('not json'))
        with pytest.raises(UpstreamError):
            client.check_payment('42')

    def test_open_circuit(self, session):
        breaker = MagicMock()
        breaker.call.side_effect = CircuitOpenError('payment_gateway', retry_after=30)
        with patch('app.services.payment_gateway.get_breaker', return_value=breaker):
            gateway = HttpPaymentGateway(base_url='http://gw.test', session=session)
            with pytest.raises(UpstreamError) as exc:
                gateway.check_payment('42')
        assert exc.value.context['retry_after'] == 30
        session.request.assert_not_called()


# ---------------------------------------------------------------------------
# MockPaymentGateway
# ---------------------------------------------------------------------------

class TestMockPaymentGateway:

    def test_invoice_lifecycle(self):
        gateway = MockPaymentGateway()
        invoice = gateway.create_invoice('buyer', Decimal('0.001'), 'wallet_data_w1')
        assert invoice['invoice_id'].startswith('inv_')
        assert invoice['payment_uri'].endswith('amount=0.001&memo=wallet_data_w1')
        assert gateway.check_payment(invoice['invoice_id'])['paid'] is False

        gateway.mark_paid(invoice['invoice_id'], txid='tx1')
        status = gateway.check_payment(invoice['invoice_id'])
        assert status['paid'] is True
        assert status['txid'] == 'tx1'
        assert status['paid_at'] is not None

    def test_unknown_invoice(self):
        gateway = MockPaymentGateway()
        with pytest.raises(NotFoundError):
            gateway.check_payment('inv_nope')
        with pytest.raises(NotFoundError):
            gateway.mark_paid('inv_nope')

    def test_withdrawal_recorded(self):
        gateway = MockPaymentGateway()
        result = gateway.create_withdrawal('owner-1', 'zs1dest', Decimal('0.2'))
        assert gateway.withdrawals[result['withdrawal_id']]['to_address'] == 'zs1dest'
