"""
Payment Gateway client (external Zcash paywall).

Three calls: create_invoice, check_payment, create_withdrawal. The HTTP client
goes through the 'payment_gateway' circuit breaker; any transport failure or
open circuit surfaces as UpstreamError so callers can tell the user to retry.
MockPaymentGateway (MOCK_PAYMENTS=1, tests) keeps invoices in memory and lets
the caller flip them to paid.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from app.config import (
    INVOICE_EXPIRY_MINUTES, PAYMENT_GATEWAY_API_KEY, PAYMENT_GATEWAY_FAILURE_THRESHOLD,
    PAYMENT_GATEWAY_RESET_TIMEOUT, PAYMENT_GATEWAY_TIMEOUT, PAYMENT_GATEWAY_URL,
)
from app.errors import NotFoundError, UpstreamError, ValidationError
from app.services.circuit_breaker import CircuitOpenError, get_breaker

logger = logging.getLogger('services.payment_gateway')


class PaymentGateway(ABC):

    @abstractmethod
    def create_invoice(self, user_id: str, amount_zec: Decimal, item_id: str,
                       email: Optional[str] = None) -> Dict[str, Any]:
        """Return {invoice_id, address, qr_code, payment_uri, expires_at}."""

    @abstractmethod
    def check_payment(self, invoice_id: str) -> Dict[str, Any]:
        """Return {paid: bool, txid, paid_at}."""

    @abstractmethod
    def create_withdrawal(self, user_id: str, to_address: str, amount_zec: Decimal) -> Dict[str, Any]:
        """Return {withdrawal_id}."""


def _payment_uri(address, amount_zec, item_id):
    return f'zcash:{address}?amount={amount_zec}&memo={item_id}'


class HttpPaymentGateway(PaymentGateway):

    def __init__(self, base_url: str = PAYMENT_GATEWAY_URL, api_key: Optional[str] = PAYMENT_GATEWAY_API_KEY,
                 timeout: float = PAYMENT_GATEWAY_TIMEOUT, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers['Content-Type'] = 'application/json'
        if api_key:
            self._session.headers['Authorization'] = f'Bearer {api_key}'

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f'{self.base_url}{path}'
        cb = get_breaker(
            'payment_gateway',
            failure_threshold=PAYMENT_GATEWAY_FAILURE_THRESHOLD,
            reset_timeout=PAYMENT_GATEWAY_RESET_TIMEOUT,
        )
        try:
            resp = cb.call(self._send, method, url, **kwargs)
        except CircuitOpenError as e:
            raise UpstreamError(str(e), service='payment_gateway',
                                context={'path': path, 'retry_after': e.retry_after})
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f'{method} {path} failed: {e}', service='payment_gateway',
                                context={'path': path})

        if resp.status_code == 404:
            raise NotFoundError(f'Payment gateway resource not found: {path}')
        if resp.status_code >= 400:
            raise self._rejection(method, path, resp)
        try:
            return resp.json()
        except ValueError:
            raise UpstreamError(f'{method} {path} returned invalid JSON', service='payment_gateway',
                                context={'path': path, 'status': resp.status_code})

    @staticmethod
    def _rejection(method, path, resp):
        """400/422 mean the gateway refused our input; any other 4xx is an upstream fault."""
        try:
            body = resp.json()
        except ValueError:
            body = {}
        reason = (body.get('error') or body.get('message')) if isinstance(body, dict) else None
        if resp.status_code in (400, 422):
            return ValidationError(f'Payment gateway rejected the request: {reason or resp.status_code}',
                                   details={'status': resp.status_code})
        return UpstreamError(f'{method} {path} returned {resp.status_code}: {reason}', service='payment_gateway',
                             context={'path': path, 'status': resp.status_code})

    @staticmethod
    def _id(payload: Dict[str, Any], path: str) -> str:
        if not isinstance(payload, dict) or payload.get('id') is None:
            raise UpstreamError(f'{path} response has no id', service='payment_gateway', context={'path': path})
        return str(payload['id'])

    def _send(self, method, url, **kwargs):
        resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        # 404 is an answer, not an outage; keep it out of the breaker's failure count
        if resp.status_code >= 500 or resp.status_code in (401, 403, 429):
            resp.raise_for_status()
        return resp

    def create_invoice(self, user_id, amount_zec, item_id, email=None):
        data = self._request('POST', '/api/invoice/create', json={
            'user_id': user_id,
            'email': email,
            'type': 'one_time',
            'amount_zec': str(amount_zec),
            'item_id': item_id,
        })
        invoice = data.get('invoice', data)
        address = invoice.get('z_address') or invoice.get('address')
        logger.info("Invoice %s created for %s (%s ZEC)", invoice.get('id'), item_id, amount_zec)
        return {
            'invoice_id': self._id(invoice, '/api/invoice/create'),
            'address': address,
            'qr_code': invoice.get('qr_code'),
            'payment_uri': invoice.get('payment_uri') or _payment_uri(address, amount_zec, item_id),
            'expires_at': invoice.get('expires_at'),
        }

    def check_payment(self, invoice_id):
        data = self._request('POST', '/api/invoice/check', json={'invoice_id': invoice_id})
        invoice = data.get('invoice') or {}
        return {
            'paid': bool(data.get('paid')),
            'txid': invoice.get('paid_txid'),
            'paid_at': invoice.get('paid_at'),
        }

    def create_withdrawal(self, user_id, to_address, amount_zec):
        data = self._request('POST', '/api/withdraw/create', json={
            'user_id': user_id,
            'to_address': to_address,
            'amount_zec': str(amount_zec),
        })
        withdrawal_id = self._id(data.get('withdrawal', data), '/api/withdraw/create')
        logger.info("Gateway withdrawal %s created for %s", withdrawal_id, user_id)
        return {'withdrawal_id': withdrawal_id}


class MockPaymentGateway(PaymentGateway):
    """In-memory gateway. mark_paid() simulates the on-chain payment."""

    def __init__(self):
        self._lock = threading.Lock()
        self.invoices = {}
        self.withdrawals = {}

    def create_invoice(self, user_id, amount_zec, item_id, email=None):
        invoice_id = f'inv_{uuid.uuid4().hex[:16]}'
        address = f'zs1mock{uuid.uuid4().hex}'
        expires_at = datetime.now() + timedelta(minutes=INVOICE_EXPIRY_MINUTES)
        with self._lock:
            self.invoices[invoice_id] = {'paid': False, 'txid': None, 'paid_at': None}
        return {
            'invoice_id': invoice_id,
            'address': address,
            'qr_code': f'data:image/png;base64,MOCK-{invoice_id}',
            'payment_uri': _payment_uri(address, amount_zec, item_id),
            'expires_at': expires_at.isoformat(),
        }

    def mark_paid(self, invoice_id: str, txid: Optional[str] = None):
        with self._lock:
            if invoice_id not in self.invoices:
                raise NotFoundError(f'Invoice {invoice_id} not found')
            self.invoices[invoice_id] = {
                'paid': True,
                'txid': txid or uuid.uuid4().hex,
                'paid_at': datetime.now().isoformat(),
            }

    def check_payment(self, invoice_id):
        with self._lock:
            status = self.invoices.get(invoice_id)
        if status is None:
            raise NotFoundError(f'Invoice {invoice_id} not found')
        return dict(status)

    def create_withdrawal(self, user_id, to_address, amount_zec):
        withdrawal_id = f'wd_{uuid.uuid4().hex[:16]}'
        with self._lock:
            self.withdrawals[withdrawal_id] = {
                'user_id': user_id, 'to_address': to_address, 'amount_zec': amount_zec,
            }
        return {'withdrawal_id': withdrawal_id}
