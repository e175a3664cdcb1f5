"""
Wallet activity models.

WalletActivityMetric rows come from the external indexer (one per wallet per
day) and are read-only here apart from the batch upsert used by resyncs.
ProductivityScore rows are append-only: each recomputation adds a row and the
newest calculated_at per wallet is authoritative.
"""
from sqlalchemy import (
    Column, Integer, BigInteger, Text, Float, Boolean, Date, DateTime,
    ForeignKey, UniqueConstraint, Index,
)
from sqlalchemy.sql import func

from app.database import Base


class WalletActivityMetric(Base):
    __tablename__ = 'wallet_activity_metrics'
    __table_args__ = (
        UniqueConstraint('wallet_id', 'activity_date', name='uq_activity_wallet_date'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    activity_date = Column(Date, nullable=False)
    transaction_count = Column(Integer, default=0)
    total_volume_zatoshi = Column(BigInteger, default=0)
    total_fees_zatoshi = Column(BigInteger, default=0)
    shielded_count = Column(Integer, default=0)
    transparent_count = Column(Integer, default=0)
    shielded_volume_zatoshi = Column(BigInteger, default=0)
    transfers_count = Column(Integer, default=0)
    swaps_count = Column(Integer, default=0)
    bridges_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ProductivityScore(Base):
    __tablename__ = 'wallet_productivity_scores'
    __table_args__ = (
        Index('ix_scores_wallet_calculated', 'wallet_id', 'calculated_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    total_score = Column(Float, nullable=False)
    retention_score = Column(Float, default=0.0)
    adoption_score = Column(Float, default=0.0)
    activity_score = Column(Float, default=0.0)
    diversity_score = Column(Float, default=0.0)
    churn_score = Column(Float, default=0.0)
    status = Column(Text, nullable=False)       # healthy / at_risk / churn
    risk_level = Column(Text, nullable=False)   # low / medium / high
    calculated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WalletCohort(Base):
    __tablename__ = 'wallet_cohorts'
    __table_args__ = (
        UniqueConstraint('project_id', 'cohort_type', 'cohort_period', name='uq_cohort_project_period'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Text, ForeignKey('projects.id'), nullable=False)
    cohort_type = Column(Text, nullable=False, default='weekly')  # weekly / monthly
    cohort_period = Column(Date, nullable=False)
    wallet_count = Column(Integer, default=0)
    retention_week_1 = Column(Float, nullable=True)
    retention_week_2 = Column(Float, nullable=True)
    retention_week_3 = Column(Float, nullable=True)
    retention_week_4 = Column(Float, nullable=True)


class WalletAdoptionStage(Base):
    __tablename__ = 'wallet_adoption_stages'
    __table_args__ = (
        UniqueConstraint('wallet_id', 'stage_name', name='uq_adoption_wallet_stage'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    stage_name = Column(Text, nullable=False)
    achieved_at = Column(DateTime(timezone=True), nullable=True)
    time_to_achieve_hours = Column(Float, nullable=True)
