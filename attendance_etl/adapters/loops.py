# attendance_etl/adapters/loops.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from attendance_etl.adapters._http import send_with_retry
from attendance_etl.core.config import Settings
from attendance_etl.core.errors import TransientFetchError
from attendance_etl.core.ratelimit import FixedDelayRateLimiter

log = logging.getLogger(__name__)

LOOPS_API_BASE_URL = "https://app.loops.so/api/v1"


class LoopsError(Exception):
    def __init__(self, status: int, body: str):
        super().__init__(f"HTTP {status}: {body}")
        self.status = status


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


class LoopsClient:
    """Upserts contacts by email and toggles their active-members list flag."""

    def __init__(self, api_key: str, list_id: str, *, base_url: str = LOOPS_API_BASE_URL,
                 client: Optional[httpx.AsyncClient] = None, limiter=None,
                 attempts: int = 3, wait=None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.list_id = list_id
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        # Loops allows 10 req/s
        self.limiter = limiter or FixedDelayRateLimiter(100)
        self.attempts = attempts
        self.wait = wait

    @classmethod
    def from_settings(cls, s: Settings, **kw: Any) -> "LoopsClient":
        s.require("loops_api_key", "loops_active_members_list_id")
        kw.setdefault("attempts", s.max_retries)
        return cls(s.loops_api_key, s.loops_active_members_list_id, **kw)

    async def __aenter__(self) -> "LoopsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, path: str, **kw: Any) -> httpx.Response:
        return await send_with_retry(
            self.client, method, f"{self.base_url}{path}",
            limiter=self.limiter, attempts=self.attempts, wait=self.wait, headers=self.headers, **kw,
        )

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        r = await self._request("POST", path, json=body)
        if r.is_error:
            raise LoopsError(r.status_code, r.text)
        return r.json() if r.content else {}

    def member_payload(self, member) -> Dict[str, Any]:
        return {
            "email": member.email,
            "firstName": member.first_name or "",
            "lastName": member.last_name or "",
            "totalEventsAttended": member.total_events_attended,
            "lastEventDate": _iso(member.last_event_date),
            "membershipExpiresAt": _iso(member.membership_expires_at),
            "manuallyAdded": bool(member.manually_added),
            "subscribed": True,
            "mailingLists": {self.list_id: True},
        }

    async def add_to_active_list(self, member) -> Optional[str]:
        """Upsert ``member`` and subscribe it to the list. Returns the Loops contact id."""
        data = await self._post("/contacts/update", self.member_payload(member))
        return data.get("id")

    async def remove_from_active_list(self, email: str) -> None:
        await self._post("/contacts/update", {"email": email, "mailingLists": {self.list_id: False}})

    async def find_contact(self, email: str) -> Optional[Dict[str, Any]]:
        r = await self._request("GET", "/contacts/find", params={"email": email})
        if r.status_code in (400, 404):
            return None
        if r.is_error:
            raise LoopsError(r.status_code, r.text)
        contacts: List[Dict[str, Any]] = r.json() or []
        return contacts[0] if contacts else None

    def in_active_list(self, contact: Optional[Dict[str, Any]]) -> bool:
        return bool(contact and (contact.get("mailingLists") or {}).get(self.list_id) is True)

    async def test_connection(self) -> bool:
        try:
            r = await self._request("GET", "/api-key")
        except (TransientFetchError, httpx.HTTPError) as e:
            log.error("Loops connection test failed: %s", e)
            return False
        return r.is_success
