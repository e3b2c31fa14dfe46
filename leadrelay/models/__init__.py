"""
Database models - import all models here so metadata.create_all sees every table.
"""
from leadrelay.models.tenant import Tenant
from leadrelay.models.lead import Lead
from leadrelay.models.contact_attempt import ContactAttempt
from leadrelay.models.opt_out import OptOut
from leadrelay.models.followup_job import FollowUpJob
from leadrelay.models.processed_event import ProcessedEvent

__all__ = [
    "Tenant",
    "Lead",
    "ContactAttempt",
    "OptOut",
    "FollowUpJob",
    "ProcessedEvent",
]
