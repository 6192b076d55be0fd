from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from sweepstakes.database.db import Base, BigIntPK


class Store(Base):
    __tablename__ = "stores"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    shop_domain = Column(String, nullable=True, unique=True)  # myshop.myshopify.com
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Store(id={self.id}, shop_domain={self.shop_domain})>"
