"""
Monetization models — paid data access, owner earnings, withdrawals.

Amounts are stored as Numeric(16, 8) ZEC. An Earning row is created once per
paid DataAccessPayment and moves pending → withdrawn; partially withdrawn
rows are split so the withdrawn part is its own row.
"""
from sqlalchemy import Column, Integer, Text, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.sql import func

from app.database import Base


class DataAccessPayment(Base):
    __tablename__ = 'data_access_payments'
    __table_args__ = (
        Index('ix_payments_requester_wallet', 'requester_id', 'wallet_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(Text, nullable=False, unique=True)
    requester_id = Column(Text, nullable=False)
    requester_email = Column(Text, nullable=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    owner_id = Column(Text, nullable=False)
    amount_zec = Column(Numeric(16, 8), nullable=False)
    status = Column(Text, nullable=False, default='pending')  # pending / paid
    payment_address = Column(Text, nullable=True)
    txid = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Earning(Base):
    __tablename__ = 'earnings'
    __table_args__ = (
        Index('ix_earnings_owner_status', 'owner_id', 'status'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Text, nullable=False)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    payment_id = Column(Integer, ForeignKey('data_access_payments.id'), nullable=False)
    amount_zec = Column(Numeric(16, 8), nullable=False)
    platform_fee_zec = Column(Numeric(16, 8), nullable=False)
    status = Column(Text, nullable=False, default='pending')  # pending / withdrawn
    withdrawal_id = Column(Integer, ForeignKey('withdrawals.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Withdrawal(Base):
    __tablename__ = 'withdrawals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Text, nullable=False)
    to_address = Column(Text, nullable=False)
    amount_zec = Column(Numeric(16, 8), nullable=False)
    fee_zec = Column(Numeric(16, 8), nullable=False)
    net_zec = Column(Numeric(16, 8), nullable=False)
    status = Column(Text, nullable=False, default='processing')  # processing / submitted / failed
    gateway_withdrawal_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
