"""
Recommendation + RecommendationTask models.

Every persisted recommendation gets exactly one task. The task keeps the
metric snapshot taken at creation time (baseline) and is closed by the task
completion monitor once enough completion indicators are met.
"""
from sqlalchemy import Column, Integer, Text, Float, DateTime, JSON, ForeignKey, Index
from sqlalchemy.sql import func

from app.database import Base


class Recommendation(Base):
    __tablename__ = 'recommendations'
    __table_args__ = (
        Index('ix_recommendations_wallet', 'wallet_id'),
        Index('ix_recommendations_project', 'project_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Text, ForeignKey('projects.id'), nullable=True)
    wallet_id = Column(Text, ForeignKey('wallets.id'), nullable=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, default='')
    priority = Column(Integer, nullable=False, default=5)
    current_state = Column(JSON, default=dict)
    target_state = Column(JSON, default=dict)
    timeline = Column(Text, default='')
    expected_impact = Column(Text, default='')
    effort_level = Column(Text, default='Medium')
    actions = Column(JSON, default=list)
    completion_indicators = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RecommendationTask(Base):
    __tablename__ = 'recommendation_tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    recommendation_id = Column(Integer, ForeignKey('recommendations.id'), nullable=False, unique=True)
    status = Column(Text, nullable=False, default='pending')  # pending / completed
    baseline_metrics = Column(JSON, default=dict)
    completion_percentage = Column(Float, default=0.0)
    effectiveness_score = Column(Float, nullable=True)
    effectiveness_level = Column(Text, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
