"""Leads API: turn a form submission into a CRM lead."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .client import CRMClient

logger = logging.getLogger(__name__)

_ANSWER_KEY = re.compile(r"^q\d+_(?P<kind>name|phoneNumber|email)$")


@dataclass
class FormSubmission:
    """Contact details extracted from one form submission."""

    submission_id: str
    full_name: str = ""
    email: str = ""
    phone: str = ""
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_contact(self) -> bool:
        return bool(self.full_name or self.email or self.phone)

    @property
    def first_name(self) -> str:
        return self.full_name.split(" ")[0] if self.full_name else ""

    @property
    def last_name(self) -> str:
        parts = self.full_name.split(" ")
        return " ".join(parts[1:]) if len(parts) > 1 else ""

    @classmethod
    def from_jotform(cls, raw_request: str | Mapping[str, Any], submission_id: str) -> "FormSubmission":
        """Parse a Jotform webhook ``rawRequest`` (JSON string or decoded dict).

        Answers are matched by their ``q<N>_name``, ``q<N>_phoneNumber`` and
        ``q<N>_email`` keys.

        Raises:
            ValueError: ``rawRequest`` is not valid JSON
        """
        data = json.loads(raw_request) if isinstance(raw_request, str) else dict(raw_request)

        submission = cls(submission_id=submission_id)
        submit_date = data.get("submitDate")
        if submit_date:
            try:
                submission.submitted_at = datetime.fromtimestamp(int(submit_date) / 1000, tz=timezone.utc)
            except (TypeError, ValueError):
                logger.warning("Ignoring unparseable submitDate %r for %s", submit_date, submission_id)

        for key, value in data.items():
            match = _ANSWER_KEY.match(key)
            if not match or not value:
                continue
            kind = match.group("kind")
            if kind == "name":
                submission.full_name = _name_answer(value)
            elif kind == "phoneNumber":
                submission.phone = _phone_answer(value)
            else:
                submission.email = str(value).strip()

        return submission


def _name_answer(value: Any) -> str:
    if isinstance(value, Mapping):
        return f"{value.get('first', '')} {value.get('last', '')}".strip()
    return str(value).strip()


def _phone_answer(value: Any) -> str:
    if isinstance(value, Mapping):
        return str(value.get("full") or f"{value.get('area', '')}{value.get('phone', '')}").strip()
    return str(value).strip()


class LeadsAPI:
    """Lead operations on top of :class:`CRMClient`."""

    def __init__(self, client: "CRMClient"):
        self._client = client

    @staticmethod
    def build_lead_fields(submission: FormSubmission) -> dict[str, Any]:
        """CRM lead fields for ``submission``."""
        fields: dict[str, Any] = {
            "TITLE": f"Web form lead: {submission.full_name or 'Unknown'}",
            "NAME": submission.first_name,
            "LAST_NAME": submission.last_name,
            "SOURCE_ID": "WEBFORM",
            "STATUS_ID": "NEW",
            "SOURCE_DESCRIPTION": f"Form submission ID: {submission.submission_id}",
            "COMMENTS": (
                "Lead created from form submission\n"
                f"Submission ID: {submission.submission_id}\n"
                f"Submitted at: {submission.submitted_at.isoformat()}"
            ),
            "OPENED": "Y",
        }
        if submission.email:
            fields["EMAIL"] = [{"VALUE": submission.email, "VALUE_TYPE": "WORK"}]
        if submission.phone:
            fields["PHONE"] = [{"VALUE": submission.phone, "VALUE_TYPE": "WORK"}]
        return fields

    async def add(self, submission: FormSubmission) -> int:
        """Create a lead and return its id.

        Raises:
            ValueError: Submission carries no name, email or phone
        """
        if not submission.has_contact:
            raise ValueError(f"Submission {submission.submission_id} has no contact data")

        response = await self._client.call(
            "crm.lead.add",
            {"fields": self.build_lead_fields(submission)},
        )
        lead_id = int(response["result"])
        logger.info("Lead %s created for submission %s", lead_id, submission.submission_id)
        return lead_id

    async def get(self, lead_id: int) -> dict[str, Any]:
        """Get a lead by ID."""
        response = await self._client.call("crm.lead.get", {"id": lead_id})
        return response.get("result") or {}

    async def current_user(self) -> dict[str, Any]:
        """Profile of the user the credential belongs to (connection test)."""
        response = await self._client.call("user.current")
        return response.get("result") or {}
