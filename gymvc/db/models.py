# gymvc/db/models.py
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Text, Integer, DateTime, Index, TypeDecorator
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Guarda en UTC y devuelve siempre datetimes con tzinfo (SQLite los pierde)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime not allowed")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Credential(Base):
    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    signed_token: Mapped[str] = mapped_column(Text)

    holder_did: Mapped[str] = mapped_column(String(255), index=True)
    holder_name: Mapped[str] = mapped_column(String(255))
    benefit_id: Mapped[str] = mapped_column(String(64), index=True)
    benefit_name: Mapped[str] = mapped_column(String(255))
    membership_id: Mapped[str] = mapped_column(String(64), index=True)

    # sólo "active" o "revoked" se persisten; "expired" se deriva al leer
    status: Mapped[str] = mapped_column(String(16), default="active")
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    valid_from: Mapped[datetime] = mapped_column(UTCDateTime)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class ReferenceToken(Base):
    __tablename__ = "reference_tokens"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16))
    credential_ids: Mapped[str] = mapped_column(Text)  # lista JSON, en orden
    primary_credential_id: Mapped[str] = mapped_column(String(36), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    benefit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder_did: Mapped[str] = mapped_column(String(255), primary_key=True)
    period: Mapped[str] = mapped_column(String(7), primary_key=True)  # "YYYY-MM"
    count: Mapped[int] = mapped_column(Integer, default=0)


class CheckinEvent(Base):
    __tablename__ = "checkin_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credential_id: Mapped[str] = mapped_column(String(36), index=True)
    benefit_id: Mapped[str] = mapped_column(String(64))
    holder_did: Mapped[str] = mapped_column(String(255))
    period: Mapped[str] = mapped_column(String(7))
    token: Mapped[str] = mapped_column(String(64))
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_checkin_events_benefit_holder_period", "benefit_id", "holder_did", "period"),
    )
