from servicebay.models.user import User, EfficiencySnapshot, UserRole, Certification, MembershipStatus
from servicebay.models.shop import Shop
from servicebay.models.job import Job, JobStatus, Priority, AssignmentType, RequestStatus
from servicebay.models.job_audit import JobAuditLog
from servicebay.models.incentive_rule import IncentiveRule
from servicebay.models.capability_token import CapabilityToken
from servicebay.models.counter import Counter

__all__ = [
    "User",
    "EfficiencySnapshot",
    "UserRole",
    "Certification",
    "MembershipStatus",
    "Shop",
    "Job",
    "JobStatus",
    "Priority",
    "AssignmentType",
    "RequestStatus",
    "JobAuditLog",
    "IncentiveRule",
    "CapabilityToken",
    "Counter",
]
