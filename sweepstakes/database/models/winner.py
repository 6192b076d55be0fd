from sqlalchemy import Column, String, Boolean, DateTime, Numeric, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from sweepstakes.database.db import Base, BigIntPK


class Winner(Base):
    __tablename__ = "winners"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    promo_id = Column(BigIntPK, ForeignKey("promos.id", ondelete="CASCADE"), nullable=False)
    store_id = Column(BigIntPK, nullable=False)
    entry_id = Column(BigIntPK, ForeignKey("entries.id", ondelete="CASCADE"), nullable=False)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    # Prize fields are copied from the promo at draw time
    prize_description = Column(Text, nullable=True)
    prize_amount = Column(Numeric(12, 2), nullable=True)
    drawn_at = Column(DateTime(timezone=True), nullable=False)
    notified = Column(Boolean, nullable=False, default=False)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)  # operator identity
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    promo = relationship("Promo", back_populates="winner")

    __table_args__ = (
        UniqueConstraint('promo_id', name='uq_winners_promo'),
    )

    def __repr__(self):
        return f"<Winner(id={self.id}, promo_id={self.promo_id}, entry_id={self.entry_id})>"
