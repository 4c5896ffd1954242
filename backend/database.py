"""Database models and session management via SQLAlchemy."""

from __future__ import annotations

import os
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.orm import DeclarativeBase, relationship, sessionmaker

from models import ResidentStatus, RiskLabel

DB_PATH = os.getenv("FLOODVOICE_DB_PATH", "floodvoice.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# check_same_thread is SQLite-only; omit for PostgreSQL
_is_sqlite = DATABASE_URL.startswith("sqlite")
_connect_args = {"check_same_thread": False} if _is_sqlite else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiaisonProfile(Base):
    """Human operator who owns residents and receives distress alerts."""

    __tablename__ = "profiles"

    id = Column(String, primary_key=True)                            # "lia_xxxx"
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    org_name = Column(String, nullable=True)
    telegram_chat_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    residents = relationship("Resident", back_populates="liaison")


class Resident(Base):
    """Person enrolled for automated safety check-ins."""

    __tablename__ = "residents"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    age = Column(Integer, nullable=True)
    address = Column(Text, nullable=True)
    language = Column(String, nullable=True)
    health_conditions = Column(Text, nullable=True)      # JSON list
    liaison_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(Enum(ResidentStatus), nullable=False, default=ResidentStatus.SAFE)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    liaison = relationship("LiaisonProfile", back_populates="residents")
    call_logs = relationship(
        "CallLog",
        back_populates="resident",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CallLog(Base):
    """One row per check-in call, keyed by the Vapi call id when known."""

    __tablename__ = "call_logs"

    id = Column(String, primary_key=True)
    resident_id = Column(
        String, ForeignKey("residents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vapi_call_id = Column(String, unique=True, nullable=True)
    summary = Column(Text, nullable=True)
    transcript = Column(Text, nullable=True)
    recording_url = Column(String, nullable=True)
    risk_label = Column(Enum(RiskLabel), nullable=False, default=RiskLabel.SAFE)
    tags = Column(Text, nullable=True)                    # JSON list of Tag values
    sentiment_score = Column(Integer, nullable=True)
    key_topics = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    alert_dispatched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    resident = relationship("Resident", back_populates="call_logs")


def init_db() -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """FastAPI dependency: yield a database session and close it after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
