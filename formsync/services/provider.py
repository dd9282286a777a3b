"""Narrow capability interface over the external form/spreadsheet provider.

The engines only ever talk to a ``FormsProvider``; ``GoogleWorkspaceProvider``
is the production implementation over the Forms, Sheets and Drive REST APIs.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type,
)

from formsync.config import settings
from formsync.exceptions import ProviderAuthError, ProviderError

log = structlog.get_logger(__name__)


class FormsProvider(Protocol):
    async def create_form(self, title: str) -> Dict[str, Any]:
        """Create an empty form; returns at least ``formId`` and ``responderUri``."""

    async def batch_update(self, form_id: str, requests: List[dict]) -> Dict[str, Any]:
        """Apply ordered update requests; returns ``replies`` in request order."""

    async def list_responses(self, form_id: str) -> List[dict]:
        """Return the full current response set of a form."""

    async def create_spreadsheet(self, title: str, sheet_name: str) -> Dict[str, Any]:
        """Returns ``spreadsheetId``, ``spreadsheetUrl`` and the first ``sheetId``."""

    async def write_range(self, spreadsheet_id: str, range_: str, rows: List[List[Any]]) -> None:
        ...

    async def batch_format(self, spreadsheet_id: str, requests: List[dict]) -> None:
        ...

    async def share_file(self, file_id: str, email: str, role: str = "reader") -> None:
        ...


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] or resp.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("status") or str(error)
    if isinstance(error, str):
        return body.get("error_description") or error
    return str(body)[:500]


class GoogleWorkspaceProvider:
    """Bearer-token client for one user's delegated Google credential."""

    def __init__(self, access_token: str, client: Optional[httpx.AsyncClient] = None):
        self._access_token = access_token
        self._client = client

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        stop=stop_after_attempt(settings.MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        json: Optional[dict],
        params: Optional[dict],
    ) -> httpx.Response:
        return await client.request(
            method,
            url,
            json=json,
            params=params,
            headers={"Authorization": f"Bearer {self._access_token}"},
            timeout=settings.HTTP_TIMEOUT,
        )

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        try:
            if self._client is not None:
                resp = await self._send(self._client, method, url, json, params)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await self._send(client, method, url, json, params)
        except httpx.HTTPError as exc:
            log.error("provider.request.failed", method=method, url=url, error=str(exc))
            raise ProviderError(f"Provider unreachable: {exc}") from exc

        if resp.status_code == 401:
            log.warning("provider.unauthorized", method=method, url=url)
            raise ProviderAuthError(_error_detail(resp), status_code=401)
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            log.error("provider.request.rejected", method=method, url=url,
                      status=resp.status_code, detail=detail)
            raise ProviderError(detail, status_code=resp.status_code)
        return resp.json() if resp.content else {}

    # ── Forms ────────────────────────────────────────────────────────────────

    async def create_form(self, title: str) -> Dict[str, Any]:
        # The create call only accepts the title; everything else is a batch update.
        return await self._request(
            "POST", f"{settings.FORMS_API_BASE}/forms", json={"info": {"title": title}}
        )

    async def batch_update(self, form_id: str, requests: List[dict]) -> Dict[str, Any]:
        if not requests:
            return {"replies": []}
        return await self._request(
            "POST",
            f"{settings.FORMS_API_BASE}/forms/{form_id}:batchUpdate",
            json={"includeFormInResponse": False, "requests": requests},
        )

    async def list_responses(self, form_id: str) -> List[dict]:
        responses: List[dict] = []
        page_token: Optional[str] = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            body = await self._request(
                "GET", f"{settings.FORMS_API_BASE}/forms/{form_id}/responses", params=params
            )
            responses.extend(body.get("responses", []))
            page_token = body.get("nextPageToken")
            if not page_token:
                return responses

    # ── Sheets / Drive ───────────────────────────────────────────────────────

    async def create_spreadsheet(self, title: str, sheet_name: str) -> Dict[str, Any]:
        body = await self._request(
            "POST",
            f"{settings.SHEETS_API_BASE}/spreadsheets",
            json={
                "properties": {"title": title},
                "sheets": [{
                    "properties": {
                        "title": sheet_name,
                        "gridProperties": {"frozenRowCount": 1},
                    }
                }],
            },
        )
        spreadsheet_id = body.get("spreadsheetId")
        if not spreadsheet_id:
            raise ProviderError(f"spreadsheet creation returned no spreadsheetId: {str(body)[:200]}")
        sheets = body.get("sheets") or [{}]
        return {
            "spreadsheetId": spreadsheet_id,
            "spreadsheetUrl": body.get("spreadsheetUrl"),
            "sheetId": sheets[0].get("properties", {}).get("sheetId", 0),
        }

    async def write_range(self, spreadsheet_id: str, range_: str, rows: List[List[Any]]) -> None:
        await self._request(
            "PUT",
            f"{settings.SHEETS_API_BASE}/spreadsheets/{spreadsheet_id}/values/{range_}",
            params={"valueInputOption": "RAW"},
            json={"range": range_, "majorDimension": "ROWS", "values": rows},
        )

    async def batch_format(self, spreadsheet_id: str, requests: List[dict]) -> None:
        await self._request(
            "POST",
            f"{settings.SHEETS_API_BASE}/spreadsheets/{spreadsheet_id}:batchUpdate",
            json={"requests": requests},
        )

    async def share_file(self, file_id: str, email: str, role: str = "reader") -> None:
        await self._request(
            "POST",
            f"{settings.DRIVE_API_BASE}/files/{file_id}/permissions",
            params={"sendNotificationEmail": "true"},
            json={"type": "user", "role": role, "emailAddress": email},
        )
