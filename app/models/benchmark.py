"""
Benchmark model — dated percentile snapshot per (benchmark_type, category).

Append-only: one row per as_of_date, never overwritten. The latest
as_of_date per (type, category) is the current benchmark.
"""
from sqlalchemy import Column, Integer, Text, Float, Date, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func

from app.database import Base


class Benchmark(Base):
    __tablename__ = 'benchmarks'
    __table_args__ = (
        UniqueConstraint('benchmark_type', 'category', 'as_of_date', name='uq_benchmark_type_category_date'),
        Index('ix_benchmarks_category', 'category'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    benchmark_type = Column(Text, nullable=False)   # productivity / retention / adoption / churn / ...
    category = Column(Text, nullable=False)
    as_of_date = Column(Date, nullable=False)
    p25 = Column(Float, nullable=False)
    p50 = Column(Float, nullable=False)
    p75 = Column(Float, nullable=False)
    p90 = Column(Float, nullable=False)
    sample_size = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
