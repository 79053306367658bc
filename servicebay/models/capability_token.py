from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
from servicebay.database import Base


class CapabilityToken(Base):
    """Single-use bearer secret for one (subject, action) pair.

    Embedded in emailed approve/reject links in place of a manager session.
    """

    __tablename__ = "capability_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(64), unique=True, index=True, nullable=False)

    subject_type = Column(String(20), nullable=False)  # job, membership
    subject_id = Column(Integer, nullable=False)
    action = Column(String(20), nullable=False)  # approve, reject

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_capability_tokens_subject", "subject_type", "subject_id"),
    )

    def __repr__(self):
        return f"<CapabilityToken {self.subject_type}:{self.subject_id} {self.action}>"

    @property
    def is_open(self) -> bool:
        return self.consumed_at is None and self.revoked_at is None
