"""Azure DevOps work-item REST client."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

from casebridge.config import REMOTE_BATCH_LIMIT
from casebridge.core.errors import RemoteApiError
from casebridge.core.logging_utils import sanitize_for_logging, sanitize_url_for_logging


logger = logging.getLogger(__name__)

ID_FIELD = "System.Id"
CHANGED_DATE_FIELD = "System.ChangedDate"

JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"

_FRACTION_RE = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 timestamp from the remote API into a UTC tz-naive datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        # fromisoformat on 3.10 only accepts 3 or 6 fractional digits
        text = _FRACTION_RE.sub(
            lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}",
            str(value).replace("Z", "+00:00"),
        )
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable remote timestamp: {sanitize_for_logging(value, 64)}")
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass
class RemoteSnapshot:
    """Point-in-time read of one remote work item."""
    remote_id: str
    changed_at: Optional[datetime]
    fields: Dict[str, Any] = field(default_factory=dict)
    rev: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RemoteSnapshot":
        fields = payload.get("fields") or {}
        return cls(
            remote_id=str(payload.get("id", fields.get(ID_FIELD))),
            changed_at=parse_remote_datetime(fields.get(CHANGED_DATE_FIELD)),
            fields=dict(fields),
            rev=payload.get("rev"),
        )


def build_patch_document(values_by_path: Dict[str, Any], op: str = "add") -> List[Dict[str, Any]]:
    """Build a JSON-Patch body from {"/fields/<ref>": value}."""
    return [
        {"op": op, "path": path, "value": value}
        for path, value in values_by_path.items()
    ]


class AzureDevOpsClient:
    """
    Thin async wrapper around the work-item endpoints.

    Every method issues exactly one HTTP request and never retries; non-2xx
    responses raise RemoteApiError and the caller decides what to do.
    """

    def __init__(
        self,
        organization_url: str,
        project: str,
        personal_access_token: str,
        *,
        api_version: str = "7.1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.organization_url = organization_url.rstrip("/")
        self.project = project
        self.api_version = api_version
        self._project_segment = quote(project, safe="")
        self._http = httpx.AsyncClient(
            base_url=self.organization_url,
            auth=httpx.BasicAuth("", personal_access_token),
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "AzureDevOpsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": content_type} if content_type else None
        try:
            response = await self._http.request(
                method,
                path,
                params={"api-version": self.api_version},
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(
                f"{method} {sanitize_url_for_logging(self.organization_url)}{path} failed: {type(e).__name__}"
            )
            raise RemoteApiError(None, str(e)) from e

        if not response.is_success:
            body = response.text
            logger.warning(
                f"{method} {path} returned HTTP {response.status_code}: {sanitize_for_logging(body, 300)}"
            )
            raise RemoteApiError(response.status_code, body)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(response.status_code, response.text, "Remote response is not valid JSON") from e

    async def create(self, work_item_type: str, patch_ops: List[Dict[str, Any]]) -> str:
        """Create a work item and return its remote id."""
        path = f"/{self._project_segment}/_apis/wit/workitems/${quote(work_item_type, safe='')}"
        data = await self._request("POST", path, json_body=patch_ops, content_type=JSON_PATCH_CONTENT_TYPE)
        if data.get("id") is None:
            raise RemoteApiError(None, str(data)[:500], "Create response did not include a work item id")
        remote_id = str(data["id"])
        logger.info(f"Created remote {work_item_type} #{remote_id}")
        return remote_id

    async def fetch_by_id(self, remote_id: str) -> RemoteSnapshot:
        path = f"/{self._project_segment}/_apis/wit/workitems/{quote(str(remote_id), safe='')}"
        return RemoteSnapshot.from_payload(await self._request("GET", path))

    async def fetch_batch(self, remote_ids: Iterable[int], field_paths: Iterable[str]) -> List[RemoteSnapshot]:
        """Read up to REMOTE_BATCH_LIMIT work items, restricted to the given fields."""
        ids = [int(i) for i in remote_ids]
        if not ids:
            raise ValueError("fetch_batch requires at least one id")
        if len(ids) > REMOTE_BATCH_LIMIT:
            raise ValueError(f"fetch_batch accepts at most {REMOTE_BATCH_LIMIT} ids, got {len(ids)}")

        path = f"/{self._project_segment}/_apis/wit/workitemsbatch"
        data = await self._request("POST", path, json_body={"ids": ids, "fields": list(field_paths)})
        return [
            RemoteSnapshot.from_payload(item)
            for item in data.get("value") or []
            if item
        ]

    async def update(self, remote_id: str, patch_ops: List[Dict[str, Any]]) -> None:
        path = f"/_apis/wit/workitems/{quote(str(remote_id), safe='')}"
        await self._request("PATCH", path, json_body=patch_ops, content_type=JSON_PATCH_CONTENT_TYPE)
        logger.info(f"Updated remote work item #{remote_id} ({len(patch_ops)} operations)")
