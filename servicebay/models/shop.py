from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from datetime import datetime
from servicebay.database import Base


class Shop(Base):
    """A service shop: the tenant boundary for jobs, technicians and rules."""

    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)

    # Stored uppercase; lookups uppercase the supplied code
    code = Column(String(20), unique=True, index=True, nullable=False)

    address = Column(String(255))
    phone = Column(String(30))

    # users.shop_id points back here, so this side is created with ALTER
    manager_id = Column(
        Integer,
        ForeignKey("users.id", use_alter=True, name="fk_shops_manager_id"),
        unique=True,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Shop {self.code} - {self.name}>"
