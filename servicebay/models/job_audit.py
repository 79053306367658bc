"""
Job Audit Log: one row per state transition of a job.

Each row records the actor and the before/after values.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from datetime import datetime
from servicebay.database import Base


class JobAuditLog(Base):
    __tablename__ = "job_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    # created, updated, requested, approved, rejected, assigned, reassigned, started, completed, cancelled
    action = Column(String(30), nullable=False, index=True)
    description = Column(Text, nullable=True)

    # Null when the action came through an emailed link
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    source = Column(String(20), nullable=False, default="api")  # api, email_link

    # {"field": {"old": x, "new": y}, ...}
    changes = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<JobAuditLog {self.action} on {self.job_id}>"
