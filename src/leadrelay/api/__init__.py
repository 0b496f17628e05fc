"""CRM API client module.

Usage:
    from leadrelay.api import CRMClient

    async with CRMClient(manager) as crm:
        user = await crm.call("user.current")
        lead_id = await crm.leads.add(submission)
"""

from .client import CRMClient
from .leads import FormSubmission, LeadsAPI

__all__ = [
    "CRMClient",
    "FormSubmission",
    "LeadsAPI",
]
