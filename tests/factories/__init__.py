"""
Test factories for generating realistic request payloads.

Uses factory_boy for declarative test data generation.
"""

from .user import ManagerSignupFactory, TechnicianSignupFactory
from .job import JobCreateFactory
from .incentive_rule import IncentiveRuleFactory

__all__ = [
    "ManagerSignupFactory",
    "TechnicianSignupFactory",
    "JobCreateFactory",
    "IncentiveRuleFactory",
]
