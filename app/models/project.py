"""
Project + Wallet models — ownership chain (user → project → wallet) and the
per-wallet privacy mode. Rows are written by the onboarding side; the
analytics core only mutates privacy_mode and alert configuration.
"""
from sqlalchemy import Column, Text, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.sql import func

from app.database import Base


class Project(Base):
    __tablename__ = 'projects'

    id = Column(Text, primary_key=True)
    owner_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    category = Column(Text, nullable=False, default='other')  # defi / gamefi / social_fi / nft / ...
    status = Column(Text, default='active')
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Wallet(Base):
    __tablename__ = 'wallets'
    __table_args__ = (
        Index('ix_wallets_project_id', 'project_id'),
        Index('ix_wallets_privacy_mode', 'privacy_mode'),
    )

    id = Column(Text, primary_key=True)
    project_id = Column(Text, ForeignKey('projects.id'), nullable=False)
    address = Column(Text, nullable=False)
    wallet_type = Column(Text, default='t')   # t / z / u
    privacy_mode = Column(Text, nullable=False, default='private')
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AlertConfiguration(Base):
    """Per-project threshold overrides, merged over DEFAULT_ALERT_THRESHOLDS."""
    __tablename__ = 'alert_configurations'

    project_id = Column(Text, ForeignKey('projects.id'), primary_key=True)
    thresholds = Column(JSON, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
