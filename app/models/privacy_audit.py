"""
PrivacyAuditLog model — append-only trail of privacy mode changes.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.sql import func

from app.database import Base


class PrivacyAuditLog(Base):
    __tablename__ = 'privacy_audit_log'
    __table_args__ = (
        Index('ix_privacy_audit_wallet', 'wallet_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=False)
    actor_id = Column(Text, nullable=True)
    old_mode = Column(Text, nullable=True)
    new_mode = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
