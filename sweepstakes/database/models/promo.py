from sqlalchemy import Column, String, Integer, Boolean, DateTime, Numeric, ForeignKey, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone

from sweepstakes.database.db import Base, BigIntPK


class PromoStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"

    ALL = (DRAFT, ACTIVE, PAUSED, ENDED)

    # ended is terminal
    TRANSITIONS = {
        DRAFT: {ACTIVE},
        ACTIVE: {PAUSED, ENDED},
        PAUSED: {ACTIVE, ENDED},
        ENDED: set(),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls.TRANSITIONS.get(current, set())


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Promo(Base):
    __tablename__ = "promos"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    store_id = Column(BigIntPK, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=PromoStatus.DRAFT)  # draft | active | paused | ended
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    prize_description = Column(Text, nullable=True)
    prize_amount = Column(Numeric(12, 2), nullable=True)
    entries_per_dollar = Column(Integer, nullable=False, default=1)
    max_entries_per_email = Column(Integer, nullable=False, default=1)  # also the purchase accrual cap
    max_entries_per_ip = Column(Integer, nullable=False, default=5)  # manual entries only
    enable_purchase_entries = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    entries = relationship("Entry", back_populates="promo", cascade="all, delete-orphan", passive_deletes=True)
    winner = relationship("Winner", back_populates="promo", uselist=False, cascade="all, delete-orphan",
                          passive_deletes=True)

    def is_within_window(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        start, end = as_utc(self.start_date), as_utc(self.end_date)
        if start and now < start:
            return False
        if end and now > end:
            return False
        return True

    def __repr__(self):
        return f"<Promo(id={self.id}, store_id={self.store_id}, status={self.status})>"
