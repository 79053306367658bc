from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON, Numeric
from datetime import datetime
from servicebay.database import Base

ALL_CERTS = "All"


class IncentiveRule(Base):
    """Bonus rule: bonus_per_unit for every whole time_saved_threshold minutes saved.

    Several rules may be active at once; selection picks the most recently
    created match.
    """

    __tablename__ = "incentive_rules"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)

    time_saved_threshold = Column(Integer, nullable=False, default=30)  # minutes per unit
    bonus_per_unit = Column(Numeric(10, 2), nullable=False, default=10)

    is_active = Column(Boolean, default=True, nullable=False)
    applicable_certs = Column(JSON, default=lambda: [ALL_CERTS], nullable=False)

    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    effective_from = Column(DateTime, default=datetime.utcnow, nullable=False)
    effective_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<IncentiveRule {self.name}: {self.bonus_per_unit}/{self.time_saved_threshold}min>"

    def applies_to(self, cert: str) -> bool:
        certs = self.applicable_certs or []
        return ALL_CERTS in certs or cert in certs
