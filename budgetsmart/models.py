"""Database models for BudgetSmart."""

from datetime import datetime, timezone
import os
import sqlite3
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker


def now_utc():
    return datetime.now(timezone.utc)


Base = declarative_base()

PLACEHOLDER_IMAGE = "/images/placeholder.png"


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key support for SQLite (no-op for other backends)."""
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Seller(Base):
    """Sellers registered manually or through a storefront URL."""

    __tablename__ = "sellers"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    website = Column(Text, nullable=True)

    # Normalized name, unique so concurrent registrations converge on one row
    seller_key = Column(String(255), unique=True, nullable=False, index=True)

    created_at = Column(DateTime, default=now_utc)

    items = relationship("Item", back_populates="seller", cascade="all, delete-orphan")
    ingestion_jobs = relationship("IngestionJob", back_populates="seller", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Seller(id={self.id}, name='{self.name}')>"


class Item(Base):
    """Catalog items. Rows are immutable once written."""

    __tablename__ = "items"

    id = Column(Integer, primary_key=True)
    seller_id = Column(Integer, ForeignKey("sellers.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    image = Column(Text, nullable=True, default=PLACEHOLDER_IMAGE)

    # sha1 over normalized name + seller + rounded price
    fingerprint = Column(String(40), unique=True, nullable=False, index=True)
    source = Column(String(20), default="manual")  # 'manual', 'website'

    created_at = Column(DateTime, default=now_utc)

    seller = relationship("Seller", back_populates="items")

    def __repr__(self):
        return f"<Item(name='{self.name}', price={self.price}, seller_id={self.seller_id})>"


class IngestionJob(Base):
    """Status record for one storefront ingestion run."""

    __tablename__ = "ingestion_jobs"

    id = Column(Integer, primary_key=True)
    job_uuid = Column(String(36), unique=True, nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("sellers.id", ondelete="CASCADE"), nullable=False, index=True)
    source_url = Column(Text, nullable=False)

    status = Column(String(20), default="pending")  # 'pending', 'running', 'succeeded', 'failed'

    candidates_found = Column(Integer, default=0)
    items_inserted = Column(Integer, default=0)
    duplicates_skipped = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=now_utc)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    seller = relationship("Seller", back_populates="ingestion_jobs")

    def __repr__(self):
        return f"<IngestionJob(job_uuid='{self.job_uuid}', status='{self.status}')>"

    def as_dict(self):
        return {
            "job_id": self.job_uuid,
            "seller_id": self.seller_id,
            "source_url": self.source_url,
            "status": self.status,
            "candidates_found": self.candidates_found or 0,
            "items_inserted": self.items_inserted or 0,
            "duplicates_skipped": self.duplicates_skipped or 0,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# Database initialization functions

def get_engine(config: dict, backend: Optional[str] = None):
    """Create database engine based on configuration."""
    backend = backend or config.get("storage", {}).get("default_backend", "sqlite")

    if backend == "sqlite":
        db_path = config.get("storage", {}).get("sqlite", {}).get("database_path", "data/budgetsmart.db")
        # Background ingestion runs on worker threads
        return create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    elif backend == "postgresql":
        pg_config = config.get("storage", {}).get("postgresql", {})
        db_url = str(pg_config.get("url") or os.getenv("DB_URL") or "").strip()
        if db_url:
            return create_engine(db_url)
        host = pg_config.get("host", "localhost")
        port = pg_config.get("port", "5432")
        database = pg_config.get("database", "budgetsmart")
        user = pg_config.get("user", "budgetsmart")
        password = pg_config.get("password", "")

        return create_engine(
            f"postgresql://{user}:{password}@{host}:{port}/{database}"
        )
    else:
        raise ValueError(f"Unsupported database backend: {backend}")


def init_db(engine):
    """Initialize database tables."""
    Base.metadata.create_all(engine)


def get_session_factory(engine):
    """Get session factory for database operations."""
    return sessionmaker(bind=engine)
