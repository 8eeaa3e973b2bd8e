from sqlalchemy import (create_engine, Column, Integer, String, Index, JSON, UniqueConstraint, text)
from sqlalchemy.types import DateTime
from datetime import datetime
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_claims.config import get_database_url
from clinic_claims.model import LIVE_CLAIM_STATUSES

Base = declarative_base()

_live_claim_filter = text(
    "kind = 'claim' AND status IN ({})".format(", ".join(f"'{s}'" for s in LIVE_CLAIM_STATUSES))
)


class ClaimLedgerEntry(Base):
    __tablename__ = "claim_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(String(64), unique=True, nullable=False)
    encounter_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(20), nullable=False)
    patient_id = Column(String(64), index=True)
    member_id = Column(String(50))
    kind = Column(String(20), nullable=False, default="claim")
    claim_code = Column(String(100))
    provider_claim_number = Column(String(100))
    authorization_number = Column(String(50))
    submission_id = Column(String(100), index=True)
    line_items = Column(JSON)
    total_amount = Column(Integer, default=0)
    status = Column(String(20), nullable=False, default="pending")
    failure_reason = Column(String)
    raw_request = Column(JSON)
    raw_response = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # at most one live claim per encounter and provider
        Index(
            "uq_live_claim_per_encounter",
            "encounter_id",
            "provider_id",
            unique=True,
            sqlite_where=_live_claim_filter,
            postgresql_where=_live_claim_filter,
        ),
    )


class SessionMapping(Base):
    __tablename__ = "session_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = Column(String(64), nullable=False)
    provider_id = Column(String(20), nullable=False)
    session_id = Column(String(100), nullable=False)
    member_id = Column(String(50))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("encounter_id", "provider_id", name="uq_session_per_encounter"),)


#engine and sessions
DATABASE_URL = get_database_url()
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=engine):
    Base.metadata.create_all(bind)
