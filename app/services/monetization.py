"""
Monetization gate — paid access to monetizable wallets and owner earnings.

Flow:
  1. create_data_access_payment  invoice via the Payment Gateway, pending row
  2. check_payment_status        first 'paid' observation flips the row and
                                 credits the owner (70/30 split) exactly once
  3. request_withdrawal          owner cashes out pending earnings

Balance checks and the earnings they consume run under a per-owner lock, and
the repository re-validates the plan atomically, so two concurrent
withdrawals can never spend the same earning.
"""
import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from app.config import (
    MARKETPLACE_DEFAULT_LIMIT, OWNER_SHARE_PERCENT, PLATFORM_FEE_PERCENT,
    PRICE_PER_WALLET_ZEC, WITHDRAWAL_FEE_FIXED_ZEC, WITHDRAWAL_FEE_MINIMUM_ZEC,
    WITHDRAWAL_FEE_PERCENT,
)
from app.errors import (
    AccessDeniedError, AnalyticsError, InsufficientBalanceError, NotFoundError, ValidationError,
)
from app.repositories.base import (
    EarningRecord, PaymentRecord, Repositories, WithdrawalPlan, WithdrawalRecord,
)
from app.services.payment_gateway import PaymentGateway
from app.services.performance import QueryCache
from app.services.privacy import PrivacyMode

logger = logging.getLogger('services.monetization')

ZEC_QUANTUM = Decimal('0.00000001')
MARKETPLACE_PREVIEW_DAYS = 30


def to_zec(value) -> Decimal:
    """Parse an amount into an 8-decimal ZEC Decimal. Raises ValidationError."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f'Invalid ZEC amount: {value!r}')
    if not amount.is_finite():
        raise ValidationError(f'Invalid ZEC amount: {value!r}')
    return amount.quantize(ZEC_QUANTUM)


def split_payment(amount_zec: Decimal):
    """(owner_share, platform_fee); the two always add up to amount_zec."""
    owner = (amount_zec * OWNER_SHARE_PERCENT / 100).quantize(ZEC_QUANTUM)
    return owner, amount_zec - owner


def estimate_withdrawal_fee(amount) -> Dict[str, Any]:
    amount = to_zec(amount)
    if amount <= 0:
        raise ValidationError('Withdrawal amount must be positive')

    percent_fee = (amount * WITHDRAWAL_FEE_PERCENT / 100).quantize(ZEC_QUANTUM)
    fee = max(WITHDRAWAL_FEE_FIXED_ZEC + percent_fee, WITHDRAWAL_FEE_MINIMUM_ZEC)
    net = amount - fee
    if net <= 0:
        raise ValidationError(
            f'Amount too low after fees: {amount} ZEC does not cover the {fee} ZEC fee',
            details={'amount_zec': str(amount), 'fee_zec': str(fee)},
        )
    return {
        'amount_zec': amount,
        'fee_zec': fee,
        'net_zec': net,
        'fee_breakdown': {
            'fixed': WITHDRAWAL_FEE_FIXED_ZEC,
            'percent': percent_fee,
            'total': fee,
        },
    }


def plan_withdrawal(pending: List[EarningRecord], amount: Decimal) -> WithdrawalPlan:
    """Consume pending earnings oldest first; the last row may be split."""
    plan = WithdrawalPlan()
    remaining = amount
    for earning in pending:
        if remaining <= 0:
            break
        if earning.amount_zec <= remaining:
            plan.consumed_ids.append(earning.id)
            remaining -= earning.amount_zec
        else:
            plan.split = (earning.id, remaining)
            remaining = Decimal('0')
    if remaining > 0:
        raise InsufficientBalanceError('Insufficient balance for withdrawal')
    return plan


def _iso(value):
    return value.isoformat() if value else None


class MonetizationService:

    def __init__(self, repos: Repositories, gateway: PaymentGateway, cache: Optional[QueryCache] = None):
        self.repos = repos
        self.gateway = gateway
        self.cache = cache
        self._owner_locks = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._owner_locks[owner_id]

    # ── Payments ─────────────────────────────────────────────────────────────

    def create_data_access_payment(self, requester_id: str, wallet_id: str,
                                   requester_email: Optional[str] = None) -> Dict[str, Any]:
        if not requester_id:
            raise ValidationError('requester_id is required')
        wallet = self.repos.projects.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f'Wallet {wallet_id} not found')
        if wallet.privacy_mode != PrivacyMode.MONETIZABLE.value:
            raise AccessDeniedError('Wallet is not available for monetization')
        if requester_id == wallet.owner_id:
            raise ValidationError('Wallet owners already have full access')

        if self.repos.payments.has_paid_access(requester_id, wallet_id):
            paid = next(p for p in self.repos.payments.find_payments(requester_id, wallet_id) if p.status == 'paid')
            return {
                'status': 'already_paid',
                'invoice_id': paid.invoice_id,
                'wallet_id': wallet_id,
                'paid_at': _iso(paid.paid_at),
            }

        invoice = self.gateway.create_invoice(
            requester_id, PRICE_PER_WALLET_ZEC, f'wallet_data_{wallet_id}', email=requester_email,
        )
        expires_at = invoice.get('expires_at')
        self.repos.payments.add_payment(PaymentRecord(
            invoice_id=invoice['invoice_id'],
            requester_id=requester_id,
            wallet_id=wallet_id,
            owner_id=wallet.owner_id,
            amount_zec=PRICE_PER_WALLET_ZEC,
            requester_email=requester_email,
            payment_address=invoice.get('address'),
            expires_at=datetime.fromisoformat(expires_at) if isinstance(expires_at, str) else expires_at,
        ))
        logger.info("Data access invoice %s: requester=%s wallet=%s", invoice['invoice_id'], requester_id, wallet_id)
        return {
            'status': 'pending',
            'invoice_id': invoice['invoice_id'],
            'wallet_id': wallet_id,
            'payment_address': invoice.get('address'),
            'amount_zec': PRICE_PER_WALLET_ZEC,
            'qr_code': invoice.get('qr_code'),
            'payment_uri': invoice.get('payment_uri'),
            'expires_at': expires_at if isinstance(expires_at, str) else _iso(expires_at),
        }

    def check_payment_status(self, invoice_id: str) -> Dict[str, Any]:
        payment = self.repos.payments.get_payment(invoice_id)
        if payment is None:
            raise NotFoundError(f'Invoice {invoice_id} not found')
        if payment.status == 'paid':
            return self._payment_status(payment)

        status = self.gateway.check_payment(invoice_id)
        if not status.get('paid'):
            return self._payment_status(payment)

        owner_share, platform_fee = split_payment(payment.amount_zec)
        updated = self.repos.payments.mark_payment_paid(
            invoice_id, status.get('txid'), datetime.now(),
            EarningRecord(
                owner_id=payment.owner_id, wallet_id=payment.wallet_id, payment_id=payment.id,
                amount_zec=owner_share, platform_fee_zec=platform_fee,
            ),
        )
        if updated is None:
            # another poll got there first
            updated = self.repos.payments.get_payment(invoice_id)
        else:
            logger.info(
                "Invoice %s paid: owner %s credited %s ZEC (platform fee %s)",
                invoice_id, payment.owner_id, owner_share, platform_fee,
            )
            if self.cache is not None:
                self.cache.clear('marketplace:*')
        return self._payment_status(updated)

    @staticmethod
    def _payment_status(payment: PaymentRecord) -> Dict[str, Any]:
        return {
            'invoice_id': payment.invoice_id,
            'wallet_id': payment.wallet_id,
            'paid': payment.status == 'paid',
            'status': payment.status,
            'amount_zec': payment.amount_zec,
            'paid_at': _iso(payment.paid_at),
            'txid': payment.txid,
        }

    def has_access_to_wallet(self, requester_id: str, wallet_id: str) -> bool:
        return self.repos.payments.has_paid_access(requester_id, wallet_id)

    # ── Earnings + withdrawals ───────────────────────────────────────────────

    def get_owner_earnings(self, owner_id: str) -> Dict[str, Any]:
        earnings = self.repos.payments.list_earnings(owner_id)
        zero = Decimal('0')
        pending = sum((e.amount_zec for e in earnings if e.status == 'pending'), zero)
        withdrawn = sum((e.amount_zec for e in earnings if e.status == 'withdrawn'), zero)
        return {
            'owner_id': owner_id,
            'total_sales': len({e.payment_id for e in earnings if e.payment_id is not None}),
            'total_earnings_zec': sum((e.amount_zec for e in earnings), zero),
            'total_fees_zec': sum((e.platform_fee_zec for e in earnings), zero),
            'pending_earnings_zec': pending,
            'withdrawn_earnings_zec': withdrawn,
            'available_for_withdrawal_zec': pending,
        }

    def request_withdrawal(self, owner_id: str, to_address: str, amount) -> Dict[str, Any]:
        """Reserve earnings, pay out through the gateway, then mark the withdrawal submitted.

        A gateway failure releases the reserved earnings and re-raises; nothing
        is paid out unless the reservation was written first.
        """
        if not to_address:
            raise ValidationError('to_address is required')
        estimate = estimate_withdrawal_fee(amount)
        amount = estimate['amount_zec']

        with self._owner_lock(owner_id):
            pending = self.repos.payments.list_earnings(owner_id, status='pending')
            available = sum((e.amount_zec for e in pending), Decimal('0'))
            if amount > available:
                logger.warning("Withdrawal refused for %s: %s > %s available", owner_id, amount, available)
                raise InsufficientBalanceError(
                    f'Insufficient balance for withdrawal: requested {amount} ZEC, available {available} ZEC'
                )
            plan = plan_withdrawal(pending, amount)
            reserved = self.repos.payments.apply_withdrawal(WithdrawalRecord(
                owner_id=owner_id,
                to_address=to_address,
                amount_zec=amount,
                fee_zec=estimate['fee_zec'],
                net_zec=estimate['net_zec'],
                status='processing',
            ), plan)

        try:
            gateway_result = self.gateway.create_withdrawal(owner_id, to_address, estimate['net_zec'])
        except AnalyticsError as e:
            self.repos.payments.release_withdrawal(reserved.id)
            logger.warning("Withdrawal %s for %s failed at the gateway, earnings released: %s",
                           reserved.id, owner_id, e.message)
            raise
        withdrawal = self.repos.payments.complete_withdrawal(reserved.id, gateway_result['withdrawal_id'])

        logger.info(
            "Withdrawal %s for %s: %s ZEC (fee %s, %d earnings consumed%s)",
            withdrawal.id, owner_id, amount, estimate['fee_zec'], len(plan.consumed_ids),
            ', 1 split' if plan.split else '',
        )
        return {
            **self._withdrawal_dict(withdrawal),
            'remaining_balance_zec': available - amount,
        }

    @staticmethod
    def _withdrawal_dict(w: WithdrawalRecord) -> Dict[str, Any]:
        return {
            'withdrawal_id': w.id,
            'gateway_withdrawal_id': w.gateway_withdrawal_id,
            'owner_id': w.owner_id,
            'to_address': w.to_address,
            'amount_zec': w.amount_zec,
            'fee_zec': w.fee_zec,
            'net_zec': w.net_zec,
            'status': w.status,
            'requested_at': _iso(w.created_at),
        }

    def get_withdrawal_history(self, owner_id: str) -> List[Dict[str, Any]]:
        return [self._withdrawal_dict(w) for w in self.repos.payments.list_withdrawals(owner_id)]

    # ── Marketplace ──────────────────────────────────────────────────────────

    def get_marketplace_listing(self, min_productivity_score: Optional[float] = None,
                                wallet_type: Optional[str] = None,
                                limit: int = MARKETPLACE_DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """Monetizable wallets only, best score first. Listings never carry the address."""
        if limit is None:
            limit = MARKETPLACE_DEFAULT_LIMIT
        if int(limit) <= 0:
            raise ValidationError('limit must be a positive integer')
        limit = int(limit)

        key = f'marketplace:{min_productivity_score}:{wallet_type}:{limit}'
        if self.cache is None:
            return self._build_listing(min_productivity_score, wallet_type, limit)
        return self.cache.cached_query(
            key, lambda: self._build_listing(min_productivity_score, wallet_type, limit),
        )

    def _build_listing(self, min_score, wallet_type, limit):
        wallets = self.repos.projects.list_wallets_by_mode(PrivacyMode.MONETIZABLE.value)
        if wallet_type:
            wallets = [w for w in wallets if w.wallet_type == wallet_type]
        ids = [w.id for w in wallets]
        if not ids:
            return []

        scores = self.repos.metrics.latest_scores(ids)
        if min_score is not None:
            wallets = [
                w for w in wallets
                if w.id in scores and scores[w.id].total_score >= float(min_score)
            ]
        counts = self.repos.payments.purchase_counts(ids)
        since = date.today() - timedelta(days=MARKETPLACE_PREVIEW_DAYS)
        activity = defaultdict(list)
        for sample in self.repos.metrics.list_activity(ids, since=since):
            activity[sample.wallet_id].append(sample)

        listings = []
        for wallet in wallets:
            samples = activity[wallet.id]
            score = scores.get(wallet.id)
            listings.append({
                'wallet_id': wallet.id,
                'wallet_type': wallet.wallet_type,
                'price_zec': PRICE_PER_WALLET_ZEC,
                'metrics_preview': {
                    'active_days': sum(1 for s in samples if s.is_active or s.transaction_count > 0),
                    'total_transactions': sum(s.transaction_count or 0 for s in samples),
                    'productivity_score': score.total_score if score else None,
                    'status': score.status if score else None,
                },
                'popularity': {'purchase_count': counts.get(wallet.id, 0)},
            })

        listings.sort(key=lambda l: (
            l['metrics_preview']['productivity_score'] is not None,
            l['metrics_preview']['productivity_score'] or 0,
            l['popularity']['purchase_count'],
        ), reverse=True)
        return listings[:limit]

    def get_platform_split(self) -> Dict[str, Any]:
        return {
            'price_per_wallet_zec': PRICE_PER_WALLET_ZEC,
            'owner_share_percent': OWNER_SHARE_PERCENT,
            'platform_fee_percent': PLATFORM_FEE_PERCENT,
        }
