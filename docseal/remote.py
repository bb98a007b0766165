"""Remote store contract, its REST adapter and compliance derivation.

The pipeline and the sync queue only ever call the four operations of
:class:`RemoteStore`. Every failure is raised as a :class:`RemoteError`
subclass so callers can tell transport problems from rejected requests.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from .exceptions import (
    RemoteConflictError,
    RemoteError,
    RemoteLogicalError,
    RemoteNetworkError,
)
from .models import QueueItem, UploadOptions
from .utils import DEFAULT_SCHOOL_YEAR, STORAGE_BUCKET, WEEKDAY_COMPLIANCE_FALLBACK

log = logging.getLogger(__name__)

COMPLIANT = "compliant"
LATE = "late"
NON_COMPLIANT = "non-compliant"


@runtime_checkable
class RemoteStore(Protocol):
    """The narrow contract consumed by the pipeline and the sync queue."""

    async def insert_record(self, fields: dict[str, Any]) -> None: ...

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> None: ...

    async def query_by_fingerprint(self, fingerprint: str) -> Optional[dict[str, Any]]: ...

    async def query_deadline(self, selector: dict[str, Any]) -> Optional[date]: ...


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


def derive_compliance_status(
    deadline: Optional[date],
    now: Optional[datetime] = None,
    *,
    weekday_fallback: bool = WEEKDAY_COMPLIANCE_FALLBACK,
) -> str:
    """Classify a submission made at *now* against *deadline*.

    The deadline covers the whole day; one extra day counts as late. Without
    a deadline the day-of-week guess (Sunday/Monday compliant, Tuesday late)
    applies when *weekday_fallback* is set. It is a weak default, nothing
    more.
    """
    now = now or datetime.now()
    if deadline is not None:
        end = datetime.combine(deadline, time(23, 59, 59, 999000), tzinfo=now.tzinfo)
        if now <= end:
            return COMPLIANT
        if now <= end + timedelta(days=1):
            return LATE
        return NON_COMPLIANT

    if not weekday_fallback:
        return NON_COMPLIANT
    weekday = now.weekday()
    if weekday in (0, 6):
        return COMPLIANT
    if weekday == 1:
        return LATE
    return NON_COMPLIANT


def deadline_selector(options: UploadOptions) -> Optional[dict[str, Any]]:
    if options.calendar_id:
        return {"calendar_id": options.calendar_id}
    if options.week_number is not None:
        return {"user_id": options.user_id, "week_number": options.week_number}
    return None


async def resolve_deadline(remote: RemoteStore, options: UploadOptions) -> Optional[date]:
    """Best-effort deadline lookup; ``None`` when nothing resolves."""
    selector = deadline_selector(options)
    if selector is None:
        return None
    try:
        return await remote.query_deadline(selector)
    except RemoteError as exc:
        log.warning("remote: deadline lookup failed for %s: %s", selector, exc)
        return None


def build_submission_record(item: QueueItem, compliance_status: str) -> dict[str, Any]:
    options = item.options
    return {
        "user_id": options.user_id,
        "file_name": item.file_name,
        "file_path": item.file_path,
        "file_hash": item.file_hash,
        "stamped_hash": item.stamped_hash,
        "file_size": item.file_size,
        "doc_type": options.doc_type or "Unknown",
        "week_number": options.week_number,
        "school_year": options.school_year or DEFAULT_SCHOOL_YEAR,
        "subject": options.subject,
        "calendar_id": options.calendar_id or None,
        "teaching_load_id": options.teaching_load_id or None,
        "compliance_status": compliance_status,
    }


async def deliver(remote: RemoteStore, item: QueueItem, *, now: Optional[datetime] = None) -> None:
    """Upload the blob and insert its record.

    A blob left behind by an earlier partial attempt is accepted as uploaded.
    """
    try:
        await remote.upload_blob(item.file_path, item.pdf_bytes, "application/pdf")
    except RemoteConflictError:
        log.info("remote: %s already stored, continuing with record insert", item.file_path)

    deadline = await resolve_deadline(remote, item.options)
    status = derive_compliance_status(deadline, now)
    await remote.insert_record(build_submission_record(item, status))


# ---------------------------------------------------------------------------
# REST adapter
# ---------------------------------------------------------------------------


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        log.warning("remote: unparseable deadline value %r", value)
        return None


class RestRemoteStore:
    """PostgREST tables plus an object-storage bucket, over httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        bucket: str = STORAGE_BUCKET,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        headers = {}
        if api_key:
            headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def __aenter__(self) -> "RestRemoteStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise RemoteNetworkError(f"{method} {path}: {exc}") from exc

        if resp.status_code >= 500:
            raise RemoteNetworkError(f"{method} {path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            body = resp.text[:300]
            if resp.status_code == 409 or "Duplicate" in body or "already exists" in body:
                raise RemoteConflictError(
                    f"{method} {path}: {body}", status_code=resp.status_code
                )
            raise RemoteLogicalError(f"{method} {path}: {body}", status_code=resp.status_code)
        return resp

    async def _select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        resp = await self._request("GET", f"/rest/v1/{table}", params=params)
        try:
            rows = resp.json()
        except ValueError as exc:
            # proxies and captive portals answer 200 with an HTML page
            raise RemoteNetworkError(f"GET /rest/v1/{table}: unreadable response: {exc}") from exc
        if not isinstance(rows, list):
            raise RemoteNetworkError(f"GET /rest/v1/{table}: unexpected response shape")
        return [row for row in rows if isinstance(row, dict)]

    async def insert_record(self, fields: dict[str, Any]) -> None:
        await self._request(
            "POST",
            "/rest/v1/submissions",
            json=fields,
            headers={"Prefer": "return=minimal"},
        )

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> None:
        await self._request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )

    async def query_by_fingerprint(self, fingerprint: str) -> Optional[dict[str, Any]]:
        rows = await self._select(
            "submissions",
            {"select": "*", "file_hash": f"eq.{fingerprint}", "limit": "1"},
        )
        return rows[0] if rows else None

    async def query_deadline(self, selector: dict[str, Any]) -> Optional[date]:
        if selector.get("calendar_id"):
            rows = await self._select(
                "academic_calendar",
                {"select": "deadline_date", "id": f"eq.{selector['calendar_id']}", "limit": "1"},
            )
            return _parse_date(rows[0].get("deadline_date")) if rows else None

        user_id = selector.get("user_id")
        week_number = selector.get("week_number")
        if not user_id or week_number is None:
            return None
        profiles = await self._select(
            "profiles",
            {"select": "district_id", "id": f"eq.{user_id}", "limit": "1"},
        )
        district_id = profiles[0].get("district_id") if profiles else None
        if not district_id:
            return None
        rows = await self._select(
            "academic_calendar",
            {
                "select": "deadline_date",
                "district_id": f"eq.{district_id}",
                "week_number": f"eq.{week_number}",
                "limit": "1",
            },
        )
        return _parse_date(rows[0].get("deadline_date")) if rows else None
