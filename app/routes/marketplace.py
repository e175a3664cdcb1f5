"""
Marketplace routes — listings, data-access invoices, owner earnings and
withdrawals.
"""
import logging

from flask import Blueprint, request

from app.errors import AccessDeniedError
from app.routes.api import current_user_id, float_arg, int_arg, json_body, success
from app.config import MARKETPLACE_DEFAULT_LIMIT
from app.services.monetization import estimate_withdrawal_fee
from app.services.registry import get_services

logger = logging.getLogger('routes.marketplace')

bp = Blueprint('marketplace', __name__)


@bp.route('/api/marketplace')
def marketplace():
    listings = get_services().monetization.get_marketplace_listing(
        min_productivity_score=float_arg('min_productivity_score'),
        wallet_type=request.args.get('wallet_type') or None,
        limit=int_arg('limit', MARKETPLACE_DEFAULT_LIMIT, minimum=1, maximum=500),
    )
    return success(listings, total=len(listings))


@bp.route('/api/marketplace/pricing')
def pricing():
    return success(get_services().monetization.get_platform_split())


# ── Data access payments ─────────────────────────────────────────────────────

@bp.route('/api/wallets/<wallet_id>/purchase', methods=['POST'])
def purchase(wallet_id):
    data = json_body()
    result = get_services().monetization.create_data_access_payment(
        current_user_id(), wallet_id, requester_email=data.get('email'),
    )
    status = 200 if result['status'] == 'already_paid' else 201
    return success(result, status=status)


@bp.route('/api/payments/<invoice_id>')
def payment_status(invoice_id):
    return success(get_services().monetization.check_payment_status(invoice_id))


@bp.route('/api/wallets/<wallet_id>/purchase/status')
def purchase_access(wallet_id):
    has_access = get_services().monetization.has_access_to_wallet(current_user_id(), wallet_id)
    return success({'wallet_id': wallet_id, 'has_access': has_access})


# ── Earnings + withdrawals ───────────────────────────────────────────────────

def _require_self(owner_id):
    if current_user_id() != owner_id:
        raise AccessDeniedError('Earnings are only visible to their owner')


@bp.route('/api/owners/<owner_id>/earnings')
def earnings(owner_id):
    _require_self(owner_id)
    return success(get_services().monetization.get_owner_earnings(owner_id))


@bp.route('/api/owners/<owner_id>/withdrawals', methods=['GET'])
def withdrawal_history(owner_id):
    _require_self(owner_id)
    return success(get_services().monetization.get_withdrawal_history(owner_id))


@bp.route('/api/owners/<owner_id>/withdrawals', methods=['POST'])
def request_withdrawal(owner_id):
    _require_self(owner_id)
    data = json_body()
    result = get_services().monetization.request_withdrawal(
        owner_id, data.get('to_address'), data.get('amount_zec'),
    )
    return success(result, status=201, message='Withdrawal submitted')


@bp.route('/api/withdrawals/estimate')
def withdrawal_estimate():
    return success(estimate_withdrawal_fee(request.args.get('amount_zec')))
