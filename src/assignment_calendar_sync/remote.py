"""
Canvas LMS remote source.
"""

import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Protocol

import httpx

from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import FetchFailure
from assignment_calendar_sync.models import FetchFailureKind
from assignment_calendar_sync.models import Scope

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class RemoteSource(Protocol):
    async def fetch_assignments(self, scope: Scope) -> list[Assignment]: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or errors[0])
        if payload.get("message"):
            return str(payload["message"])
    return response.reason_phrase


def _parse_record(record: Any, course_id: int, path: str, now: datetime) -> Assignment:
    """Build an Assignment from one record.

    A malformed record fails the whole fetch, so the cache keeps serving the
    previous assignments rather than treating this one as deleted.
    """
    try:
        record.setdefault("course_id", course_id)
        return Assignment.from_record(record, now=now)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        record_id = record.get("id") if isinstance(record, dict) else None
        raise FetchFailure(
            FetchFailureKind.SERVER_ERROR,
            f"Canvas returned a malformed assignment {record_id!r} from {path}: {e!r}",
        ) from e


class CanvasRemoteSource:
    """Fetches assignments from the Canvas REST API.

    A course scope reads ``/api/v1/courses/<id>/assignments``; ``Scope.all()``
    lists the user's active courses first and reads each of them. Every list
    endpoint is paginated through the ``Link: rel="next"`` header.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_assignments(self, scope: Scope) -> list[Assignment]:
        now = datetime.now(timezone.utc)
        if scope.is_all:
            course_ids = await self.fetch_course_ids()
        else:
            course_ids = [scope.course_id]

        assignments: list[Assignment] = []
        for course_id in course_ids:
            path = f"/api/v1/courses/{course_id}/assignments"
            records = await self._get_paginated(
                path, params={"include[]": "submission", "per_page": PAGE_SIZE}
            )
            for record in records:
                assignments.append(_parse_record(record, course_id, path, now))
            logger.debug("Course %s: %d assignment(s)", course_id, len(records))
        return assignments

    async def fetch_course_ids(self) -> list[int]:
        records = await self._get_paginated(
            "/api/v1/courses", params={"enrollment_state": "active", "per_page": PAGE_SIZE}
        )
        try:
            return [int(r["id"]) for r in records if "id" in r]
        except (TypeError, ValueError) as e:
            raise FetchFailure(
                FetchFailureKind.SERVER_ERROR, f"Canvas returned a malformed course id: {e}"
            ) from e

    async def _get_paginated(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        url: str | None = f"{self.base_url}{path}"
        items: list[dict[str, Any]] = []
        while url is not None:
            response = await self._request(url, params)
            try:
                payload = response.json()
            except ValueError as e:
                raise FetchFailure(
                    FetchFailureKind.SERVER_ERROR, f"Canvas returned invalid JSON for {path}"
                ) from e
            if not isinstance(payload, list):
                raise FetchFailure(
                    FetchFailureKind.SERVER_ERROR,
                    f"Canvas returned an unexpected payload for {path}",
                )
            items.extend(payload)
            url = response.links.get("next", {}).get("url")
            params = None  # the next link already carries the query string
        return items

    async def _request(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        try:
            response = await self._client.get(url, params=params, headers=self._headers)
        except httpx.TimeoutException as e:
            raise FetchFailure(FetchFailureKind.TIMEOUT, f"Canvas request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise FetchFailure(FetchFailureKind.NETWORK, f"Canvas request failed: {e}") from e

        if response.status_code in (401, 403):
            raise FetchFailure(
                FetchFailureKind.AUTH,
                f"Canvas rejected the access token ({response.status_code}): "
                f"{_error_message(response)}",
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise FetchFailure(
                FetchFailureKind.SERVER_ERROR,
                f"Canvas returned {response.status_code}: {_error_message(response)}",
            )
        return response
