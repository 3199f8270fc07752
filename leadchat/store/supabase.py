"""Supabase lead store.

Talks to the project's PostgREST endpoint (``<SUPABASE_URL>/rest/v1``)
with httpx.  The ``leads`` table columns match StoredLead field names.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from leadchat.errors import LeadNotFoundError, LeadStoreError
from leadchat.models.lead import StoredLead

from .base import WRITABLE_FIELDS, LeadFilter, LeadStore

log = logging.getLogger("leadchat.store.supabase")

_DEFAULT_ROW = {
    "name": "",
    "email": "",
    "rent_or_buy": None,
    "area": "",
    "amenities": [],
    "lead_score": 0,
    "status": "new",
    "phone_call_made": False,
    "conversation_summary": "",
    "notes": "",
}


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return value


class SupabaseLeadStore(LeadStore):
    """LeadStore backed by a Supabase ``leads`` table."""

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "leads",
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not url or not key:
            raise ValueError("Supabase URL and key must both be provided.")
        self._base_url = url.rstrip("/") + "/rest/v1"
        self._table = table
        self._timeout = timeout
        self._transport = transport
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: str = "",
    ) -> list[dict[str, Any]]:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, f"/{self._table}", params=params, json=json)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LeadStoreError(
                f"Supabase {method} failed (status {exc.response.status_code}): "
                f"{exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LeadStoreError(f"Supabase {method} failed: {exc}") from exc

        if not resp.content:
            return []
        return resp.json()

    @staticmethod
    def _to_row(fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise LeadStoreError(f"Unknown lead fields: {', '.join(sorted(unknown))}")
        return {k: _to_column(v) for k, v in fields.items()}

    @staticmethod
    def _to_lead(row: dict[str, Any]) -> StoredLead:
        try:
            return StoredLead(**row)
        except ValidationError as exc:
            raise LeadStoreError(f"Malformed lead row {row.get('id')!r}: {exc}") from exc

    # ------------------------------------------------------------------
    # LeadStore interface
    # ------------------------------------------------------------------

    async def create(self, fields: dict[str, Any]) -> str:
        row = {**_DEFAULT_ROW, **self._to_row(fields)}
        rows = await self._request("POST", json=[row], prefer="return=representation")
        if not rows or "id" not in rows[0]:
            raise LeadStoreError("Supabase insert returned no lead id")
        lead_id = str(rows[0]["id"])
        log.info("Lead created: %s", lead_id)
        return lead_id

    async def update(self, lead_id: str, fields: dict[str, Any]) -> None:
        row = self._to_row(fields)
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        rows = await self._request(
            "PATCH",
            params={"id": f"eq.{lead_id}"},
            json=row,
            prefer="return=representation",
        )
        if not rows:
            raise LeadNotFoundError(lead_id)
        log.debug("Lead updated: %s (%s)", lead_id, ", ".join(sorted(fields)))

    async def delete(self, lead_id: str) -> None:
        rows = await self._request(
            "DELETE",
            params={"id": f"eq.{lead_id}"},
            prefer="return=representation",
        )
        if not rows:
            raise LeadNotFoundError(lead_id)
        log.info("Lead deleted: %s", lead_id)

    async def list(self, filter: Optional[LeadFilter] = None) -> list[StoredLead]:
        params = {"select": "*", "order": "created_at.desc"}
        if filter is not None and filter.status is not None:
            params["status"] = f"eq.{filter.status.value}"
        leads = [self._to_lead(row) for row in await self._request("GET", params=params)]
        # Score tier and free-text search are applied client-side.
        if filter is not None:
            leads = [l for l in leads if filter.matches(l)]
        return leads

    async def get(self, lead_id: str) -> StoredLead:
        rows = await self._request("GET", params={"select": "*", "id": f"eq.{lead_id}"})
        if not rows:
            raise LeadNotFoundError(lead_id)
        return self._to_lead(rows[0])
