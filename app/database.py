"""
Database engine + session factory.

Always initializes — defaults to SQLite for local dev, Postgres in production.
get_session() always returns a real session; import_models() registers every
model on Base.metadata (Alembic env + test fixtures call it).
"""
import importlib

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from app.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


# Hosted Postgres URLs often use postgres:// but SQLAlchemy 2.x requires postgresql://
url = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

if url.startswith('sqlite'):
    engine = create_engine(url, connect_args={'check_same_thread': False})
else:
    engine = create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

MODEL_MODULES = [
    'app.models.project',
    'app.models.activity',
    'app.models.benchmark',
    'app.models.recommendation',
    'app.models.monetization',
    'app.models.privacy_audit',
]


def get_session():
    """Return a new DB session."""
    return SessionLocal()


def import_models():
    """Import every model module so Base.metadata knows about all tables."""
    for name in MODEL_MODULES:
        importlib.import_module(name)
