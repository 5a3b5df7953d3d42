"""
database.py: SQLAlchemy models and session management.

Uses PostgreSQL in production (via DATABASE_URL env var).
Falls back to SQLite locally so you can develop without Postgres.
"""

import json
import logging
import os
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint, create_engine,
)
from sqlalchemy.orm import DeclarativeBase, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("localcite")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./localcite.db")

# Some hosts expose postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def make_engine(url: str):
    """Build an engine for ``url``. In-memory SQLite shares one connection."""
    kwargs = {"pool_pre_ping": True}   # drop stale connections before use
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

CITATION_STATUSES = ("live", "pending", "failed")
CLIENT_STATUSES = ("active", "paused", "archived")


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id               = Column(String(36), primary_key=True, default=_new_id)
    email            = Column(String(255), nullable=False, unique=True, index=True)
    hashed_password  = Column(String, nullable=False)
    created_at       = Column(DateTime, default=datetime.utcnow)


class Agency(Base):
    __tablename__ = "agencies"

    id          = Column(String(36), primary_key=True, default=_new_id)
    user_id     = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    name        = Column(String(255), nullable=False)
    created_at  = Column(DateTime, default=datetime.utcnow)

    clients = relationship("Client", back_populates="agency")


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        CheckConstraint("citation_score >= 0 AND citation_score <= 100", name="ck_clients_score_range"),
    )

    id                 = Column(String(36), primary_key=True, default=_new_id)
    agency_id          = Column(String(36), ForeignKey("agencies.id"), nullable=False, index=True)
    business_name      = Column(String(255), nullable=False)
    category           = Column(String(100), nullable=False)
    address_line_1     = Column(String(255), nullable=True)
    city               = Column(String(255), nullable=False)
    postcode           = Column(String(16), nullable=False)
    phone              = Column(String(50), nullable=True)
    email              = Column(String(255), nullable=True)
    website            = Column(String(2048), nullable=True)
    citation_score     = Column(Integer, default=0, nullable=False)
    # Denormalized counters: recomputed from the citation set on every change
    live_citations     = Column(Integer, default=0, nullable=False)
    pending_citations  = Column(Integer, default=0, nullable=False)
    status             = Column(String(20), default="active", nullable=False)
    created_at         = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at         = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    agency    = relationship("Agency", back_populates="clients")
    citations = relationship("Citation", back_populates="client", order_by="Citation.created_at")
    reports   = relationship("Report", back_populates="client", order_by="Report.created_at.desc()")


class Directory(Base):
    __tablename__ = "directories"

    id                = Column(String(36), primary_key=True, default=_new_id)
    name              = Column(String(255), nullable=False, unique=True)
    url               = Column(String(2048), nullable=True)
    tier              = Column(Integer, nullable=False, default=3, index=True)
    domain_authority  = Column(Integer, nullable=False, default=0, index=True)
    # JSON array as text; avoids a JSON column type that behaves differently
    # across SQLite and Postgres.
    categories_json   = Column("categories", Text, nullable=False, default="[]")
    automation_level  = Column(String(50), nullable=False, default="manual")
    is_free           = Column(Boolean, nullable=False, default=True)
    uk_only           = Column(Boolean, nullable=False, default=False)

    @property
    def categories(self) -> list[str]:
        try:
            value = json.loads(self.categories_json or "[]")
        except json.JSONDecodeError:
            return []
        return [str(c) for c in value] if isinstance(value, list) else []

    @categories.setter
    def categories(self, value: list[str]) -> None:
        self.categories_json = json.dumps(list(value or []))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "tier": self.tier,
            "domain_authority": self.domain_authority,
            "categories": self.categories,
            "automation_level": self.automation_level,
            "is_free": self.is_free,
            "uk_only": self.uk_only,
        }


class Citation(Base):
    __tablename__ = "citations"
    __table_args__ = (
        UniqueConstraint("client_id", "directory_id", name="uq_citations_client_directory"),
        CheckConstraint("status IN ('live', 'pending', 'failed')", name="ck_citations_status"),
    )

    id            = Column(String(36), primary_key=True, default=_new_id)
    client_id     = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    directory_id  = Column(String(36), ForeignKey("directories.id"), nullable=False, index=True)
    status        = Column(String(20), nullable=False, default="pending")
    listing_url   = Column(String(2048), nullable=True)
    created_at    = Column(DateTime, default=datetime.utcnow)
    updated_at    = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client    = relationship("Client", back_populates="citations")
    directory = relationship("Directory")


class Report(Base):
    __tablename__ = "reports"

    id               = Column(String(36), primary_key=True, default=_new_id)
    client_id        = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    report_type      = Column(String(50), nullable=False, default="citation_audit")
    summary          = Column(Text, nullable=False, default="")
    insights         = Column(Text, nullable=False, default="")
    recommendations  = Column(Text, nullable=False, default="")
    created_at       = Column(DateTime, default=datetime.utcnow, index=True)

    client = relationship("Client", back_populates="reports")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "client_id": self.client_id,
            "report_type": self.report_type,
            "summary": self.summary,
            "insights": self.insights,
            "recommendations": self.recommendations,
        }


# ---------------------------------------------------------------------------
# Seed data: bundled UK directory catalog
# ---------------------------------------------------------------------------

DIRECTORIES_PATH = os.path.join(os.path.dirname(__file__), "directories.json")


def seed_directories(db, path: str = DIRECTORIES_PATH) -> int:
    """Load the bundled catalog when the directories table is empty. Returns rows added."""
    if db.query(Directory).first() is not None:
        return 0
    try:
        with open(path) as f:
            entries: list[dict] = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError) as e:
        logger.warning(f"Directory seed skipped: {e}")
        return 0

    for entry in entries:
        directory = Directory(
            name=entry["name"],
            url=entry.get("url"),
            tier=entry.get("tier", 3),
            domain_authority=entry.get("domain_authority", 0),
            automation_level=entry.get("automation_level", "manual"),
            is_free=entry.get("is_free", True),
            uk_only=entry.get("uk_only", False),
        )
        directory.categories = entry.get("categories", [])
        db.add(directory)
    db.commit()
    logger.info(f"Seeded {len(entries)} directories")
    return len(entries)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def init_db() -> None:
    """Create all tables + seed the catalog. Safe to call on every startup."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_directories(db)
    except Exception as e:
        db.rollback()
        logger.error(f"Directory seed failed: {e}", exc_info=True)
    finally:
        db.close()


def get_db():
    """Yield a session and ensure it's closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
