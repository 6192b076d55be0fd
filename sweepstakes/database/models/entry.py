from sqlalchemy import Column, String, Integer, Boolean, DateTime, Numeric, ForeignKey, JSON, UniqueConstraint, \
    CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from sweepstakes.database.db import Base, BigIntPK


class EntrySource:
    DIRECT = "direct"
    PURCHASE = "purchase"
    ADMIN_MANUAL = "admin_manual"


class Entry(Base):
    __tablename__ = "entries"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    promo_id = Column(BigIntPK, ForeignKey("promos.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(BigIntPK, nullable=False)
    customer_email = Column(String, nullable=False)  # real email or synthesized placeholder
    hashed_email = Column(String(64), nullable=False)
    customer_name = Column(String, nullable=True)
    entry_count = Column(Integer, nullable=False)
    source = Column(String, nullable=False, default=EntrySource.DIRECT)
    order_id = Column(String, nullable=True)  # purchase entries only
    order_total = Column(Numeric(12, 2), nullable=True)
    is_manual = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    promo = relationship("Promo", back_populates="entries")

    __table_args__ = (
        UniqueConstraint('promo_id', 'order_id', name='uq_entries_promo_order'),
        CheckConstraint('entry_count >= 1', name='ck_entries_entry_count_positive'),
        Index('idx_entries_promo_identity', 'promo_id', 'hashed_email'),
    )

    def __repr__(self):
        return f"<Entry(id={self.id}, promo_id={self.promo_id}, entry_count={self.entry_count}, source={self.source})>"
