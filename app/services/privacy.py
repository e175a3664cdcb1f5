"""
Privacy access gate — per-wallet visibility tiers and access decisions.

Modes are absolute (any transition allowed, default private):
  private      owner only
  public       anyone, aggregated behavioral metrics only (never the address)
  monetizable  full data for requesters who paid for access

The aggregated view never carries address or identity fields. That omission
is enforced here, in one place, and every other module goes through it.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from app.config import ZATOSHI_PER_ZEC
from app.errors import AccessDeniedError, NotFoundError, ValidationError
from app.repositories.base import (
    MetricsRepository, PaymentRepository, PrivacyAuditRecord, ProjectRepository, WalletRecord,
)
from app.services.performance import QueryCache

logger = logging.getLogger('services.privacy')

IDENTITY_FIELDS = ('id', 'wallet_id', 'address', 'project_id', 'owner_id')
AGGREGATE_WINDOW_DAYS = 30


class PrivacyMode(str, Enum):
    PRIVATE = 'private'
    PUBLIC = 'public'
    MONETIZABLE = 'monetizable'

    @classmethod
    def parse(cls, value) -> 'PrivacyMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Invalid privacy mode '{value}'",
                details={'allowed': [m.value for m in cls]},
            )


class DataLevel(str, Enum):
    FULL = 'full'
    AGGREGATED = 'aggregated'
    NONE = 'none'


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    data_level: str = DataLevel.NONE.value
    requires_payment: bool = False

    def to_dict(self):
        return {
            'allowed': self.allowed,
            'reason': self.reason,
            'data_level': self.data_level,
            'requires_payment': self.requires_payment,
        }


def anonymize_wallet_data(record: Dict[str, Any]) -> Dict[str, Any]:
    """Strip identity fields from a wallet dict."""
    return {k: v for k, v in record.items() if k not in IDENTITY_FIELDS}


def validate_privacy_transition(old_mode, new_mode, has_paid_access: bool = False) -> Dict[str, Any]:
    """Any transition is allowed; returns warnings the caller may surface."""
    old = PrivacyMode.parse(old_mode) if old_mode is not None else PrivacyMode.PRIVATE
    new = PrivacyMode.parse(new_mode)
    warnings = []
    if old == new:
        warnings.append('Privacy mode is unchanged')
    if old == PrivacyMode.MONETIZABLE and new != PrivacyMode.MONETIZABLE and has_paid_access:
        warnings.append('Requesters who already paid will lose access to this wallet')
    if old == PrivacyMode.PRIVATE and new != PrivacyMode.PRIVATE:
        warnings.append('Wallet data will become visible to other users')
    return {'valid': True, 'old_mode': old.value, 'new_mode': new.value, 'warnings': warnings}


class PrivacyService:

    def __init__(self, projects: ProjectRepository, metrics: MetricsRepository,
                 payments: PaymentRepository, cache: Optional[QueryCache] = None):
        self.projects = projects
        self.metrics = metrics
        self.payments = payments
        self.cache = cache

    def _get_wallet(self, wallet_id: str) -> WalletRecord:
        wallet = self.projects.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f'Wallet {wallet_id} not found')
        return wallet

    def _invalidate(self, wallet: WalletRecord):
        if self.cache is None:
            return
        self.cache.clear(f'wallet:{wallet.id}:*')
        self.cache.clear('marketplace:*')
        self.cache.clear(f'privacy_stats:{wallet.project_id}')

    # ── Preferences ──────────────────────────────────────────────────────────

    def set_privacy_preference(self, wallet_id: str, mode, actor_id: Optional[str] = None) -> Dict[str, Any]:
        new_mode = PrivacyMode.parse(mode)
        wallet = self._get_wallet(wallet_id)
        if actor_id is not None and actor_id != wallet.owner_id:
            raise AccessDeniedError('Only the wallet owner can change its privacy mode')

        transition = validate_privacy_transition(
            wallet.privacy_mode, new_mode,
            has_paid_access=bool(self.payments.purchase_counts([wallet_id]).get(wallet_id)),
        )
        updated = self.projects.update_privacy_mode(wallet_id, new_mode.value)
        self.projects.add_privacy_audit(PrivacyAuditRecord(
            wallet_id=wallet_id, old_mode=wallet.privacy_mode,
            new_mode=new_mode.value, actor_id=actor_id,
        ))
        self._invalidate(wallet)
        logger.info("Wallet %s privacy %s → %s", wallet_id, wallet.privacy_mode, new_mode.value)
        return {
            'wallet_id': updated.id,
            'privacy_mode': updated.privacy_mode,
            'previous_mode': wallet.privacy_mode,
            'warnings': transition['warnings'],
        }

    def get_privacy_preference(self, wallet_id: str) -> Dict[str, Any]:
        wallet = self._get_wallet(wallet_id)
        return {
            'wallet_id': wallet.id,
            'privacy_mode': wallet.privacy_mode,
            'project_id': wallet.project_id,
        }

    def set_project_privacy(self, project_id: str, mode, actor_id: Optional[str] = None) -> Dict[str, Any]:
        new_mode = PrivacyMode.parse(mode)
        project = self.projects.get_project(project_id)
        if project is None:
            raise NotFoundError(f'Project {project_id} not found')
        if actor_id is not None and actor_id != project.owner_id:
            raise AccessDeniedError('Only the project owner can change privacy settings')

        updated = 0
        for wallet in self.projects.list_wallets(project_id):
            if wallet.privacy_mode == new_mode.value:
                continue
            self.set_privacy_preference(wallet.id, new_mode, actor_id=actor_id)
            updated += 1
        return {'project_id': project_id, 'privacy_mode': new_mode.value, 'updated_count': updated}

    def batch_update_privacy(self, updates: List[Dict[str, Any]], actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Apply many {wallet_id, privacy_mode} changes; each item succeeds or fails alone."""
        results = []
        for item in updates:
            wallet_id = item.get('wallet_id')
            try:
                outcome = self.set_privacy_preference(wallet_id, item.get('privacy_mode'), actor_id=actor_id)
                results.append({'wallet_id': wallet_id, 'success': True, 'privacy_mode': outcome['privacy_mode']})
            except (ValidationError, NotFoundError, AccessDeniedError) as e:
                results.append({'wallet_id': wallet_id, 'success': False, 'error': e.message})
        succeeded = sum(1 for r in results if r['success'])
        return {
            'total': len(results),
            'succeeded': succeeded,
            'failed': len(results) - succeeded,
            'results': results,
        }

    def get_project_privacy_stats(self, project_id: str) -> Dict[str, Any]:
        def _load():
            wallets = self.projects.list_wallets(project_id)
            counts = {m.value: 0 for m in PrivacyMode}
            for wallet in wallets:
                counts[wallet.privacy_mode] = counts.get(wallet.privacy_mode, 0) + 1
            total = len(wallets)
            return {
                'project_id': project_id,
                'total_wallets': total,
                'counts': counts,
                'percentages': {
                    mode: round(count / total * 100, 2) if total else 0.0
                    for mode, count in counts.items()
                },
            }
        if self.cache is None:
            return _load()
        return self.cache.cached_query(f'privacy_stats:{project_id}', _load)

    def get_privacy_audit_log(self, wallet_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        self._get_wallet(wallet_id)
        return [
            {
                'wallet_id': r.wallet_id,
                'old_mode': r.old_mode,
                'new_mode': r.new_mode,
                'actor_id': r.actor_id,
                'changed_at': r.created_at.isoformat() if r.created_at else None,
            }
            for r in self.projects.list_privacy_audit(wallet_id, limit)
        ]

    # ── Access decisions ─────────────────────────────────────────────────────

    def check_data_access(self, wallet_id: str, requester_id: str,
                          has_paid: Optional[bool] = None) -> AccessDecision:
        wallet = self._get_wallet(wallet_id)

        if requester_id is not None and requester_id == wallet.owner_id:
            return AccessDecision(True, 'Owner has full access', DataLevel.FULL.value)

        mode = PrivacyMode.parse(wallet.privacy_mode)
        if mode == PrivacyMode.PRIVATE:
            return AccessDecision(False, 'Wallet data is private')
        if mode == PrivacyMode.PUBLIC:
            return AccessDecision(True, 'Public wallet: aggregated data only', DataLevel.AGGREGATED.value)

        if has_paid is None:
            has_paid = bool(requester_id) and self.payments.has_paid_access(requester_id, wallet_id)
        if has_paid:
            return AccessDecision(True, 'Access purchased', DataLevel.FULL.value)
        return AccessDecision(False, 'Payment required to access this wallet', requires_payment=True)

    def get_wallet_data(self, wallet_id: str, level) -> Dict[str, Any]:
        level = DataLevel(level)
        if level == DataLevel.NONE:
            raise AccessDeniedError()
        wallet = self._get_wallet(wallet_id)

        def _load():
            return self._behavioral_metrics(wallet)

        metrics = (self.cache.cached_query(f'wallet:{wallet_id}:metrics', _load)
                   if self.cache is not None else _load())

        if level == DataLevel.AGGREGATED:
            return anonymize_wallet_data({**metrics, 'wallet_type': wallet.wallet_type, 'data_level': level.value})

        return {
            'wallet_id': wallet.id,
            'project_id': wallet.project_id,
            'address': wallet.address,
            'wallet_type': wallet.wallet_type,
            'privacy_mode': wallet.privacy_mode,
            'is_active': wallet.is_active,
            'created_at': wallet.created_at.isoformat() if wallet.created_at else None,
            **metrics,
            'data_level': level.value,
        }

    def get_wallet_data_for(self, wallet_id: str, requester_id: str) -> Dict[str, Any]:
        """Access check + data at the granted level. Denial raises AccessDeniedError."""
        decision = self.check_data_access(wallet_id, requester_id)
        if not decision.allowed:
            raise AccessDeniedError(decision.reason, requires_payment=decision.requires_payment)
        return self.get_wallet_data(wallet_id, decision.data_level)

    def _behavioral_metrics(self, wallet: WalletRecord) -> Dict[str, Any]:
        since = date.today() - timedelta(days=AGGREGATE_WINDOW_DAYS)
        samples = self.metrics.list_activity([wallet.id], since=since)
        score = self.metrics.latest_scores([wallet.id]).get(wallet.id)

        tx_total = sum(s.transaction_count or 0 for s in samples)
        shielded = sum(s.shielded_count or 0 for s in samples)
        active_days = sum(1 for s in samples if s.is_active or s.transaction_count > 0)
        return {
            'period_days': AGGREGATE_WINDOW_DAYS,
            'total_transactions': tx_total,
            'active_days': active_days,
            'avg_daily_transactions': round(tx_total / AGGREGATE_WINDOW_DAYS, 2),
            'total_volume_zec': round(sum(s.total_volume_zatoshi or 0 for s in samples) / ZATOSHI_PER_ZEC, 8),
            'total_fees_zec': round(sum(s.total_fees_zatoshi or 0 for s in samples) / ZATOSHI_PER_ZEC, 8),
            'shielded_ratio': round(shielded / tx_total * 100, 2) if tx_total else 0.0,
            'productivity_score': score.total_score if score else None,
            'status': score.status if score else None,
            'risk_level': score.risk_level if score else None,
        }

    def filter_wallets_by_privacy(self, wallets: List[WalletRecord], requester_id: str) -> List[Dict[str, Any]]:
        """Wallets the requester may see, each reduced to its granted level."""
        visible = []
        for wallet in wallets:
            decision = self.check_data_access(wallet.id, requester_id)
            if decision.allowed:
                visible.append(self.get_wallet_data(wallet.id, decision.data_level))
        return visible
