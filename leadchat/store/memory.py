"""Process-local lead store.  Used for development and tests."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from leadchat.errors import LeadNotFoundError, LeadStoreError
from leadchat.models.lead import StoredLead

from .base import WRITABLE_FIELDS, LeadFilter, LeadStore

log = logging.getLogger("leadchat.store.memory")


class MemoryLeadStore(LeadStore):
    """LeadStore backed by a dict.  Contents vanish with the process."""

    def __init__(self) -> None:
        self._leads: dict[str, StoredLead] = {}

    def __len__(self) -> int:
        return len(self._leads)

    @staticmethod
    def _check_fields(fields: dict[str, Any]) -> None:
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise LeadStoreError(f"Unknown lead fields: {', '.join(sorted(unknown))}")

    async def create(self, fields: dict[str, Any]) -> str:
        self._check_fields(fields)
        lead_id = uuid.uuid4().hex
        try:
            lead = StoredLead(id=lead_id, **fields)
        except ValidationError as exc:
            raise LeadStoreError(f"Invalid lead fields: {exc}") from exc
        self._leads[lead_id] = lead
        log.info("Lead created: %s", lead_id)
        return lead_id

    async def update(self, lead_id: str, fields: dict[str, Any]) -> None:
        self._check_fields(fields)
        existing = self._leads.get(lead_id)
        if existing is None:
            raise LeadNotFoundError(lead_id)
        data = existing.model_dump()
        data.update(fields)
        data["updated_at"] = datetime.now(timezone.utc)
        try:
            self._leads[lead_id] = StoredLead(**data)
        except ValidationError as exc:
            raise LeadStoreError(f"Invalid lead fields: {exc}") from exc
        log.debug("Lead updated: %s (%s)", lead_id, ", ".join(sorted(fields)))

    async def delete(self, lead_id: str) -> None:
        if self._leads.pop(lead_id, None) is None:
            raise LeadNotFoundError(lead_id)
        log.info("Lead deleted: %s", lead_id)

    async def list(self, filter: Optional[LeadFilter] = None) -> list[StoredLead]:
        leads = sorted(self._leads.values(), key=lambda l: l.created_at, reverse=True)
        if filter is not None:
            leads = [l for l in leads if filter.matches(l)]
        return leads

    async def get(self, lead_id: str) -> StoredLead:
        lead = self._leads.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead
