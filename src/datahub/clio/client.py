"""
Async client for the Clio v4 REST API.

Every call goes through `request()`, which attaches a bearer token from
TokenCache and, on a 401, forces exactly one token refresh and retries the
call once. A second 401 is handed back to the caller like any other status.
That is the only retry at this layer; business-level errors are for the
callers to interpret.

The record-fetching helpers (`list_activities`, `fetch_report`) sit on top
and raise ProviderFetchError for transport failures and non-2xx answers.
"""
import asyncio
import logging
import math
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import httpx

from datahub.clio.auth import TokenCache
from datahub.errors import ProviderFetchError

logger = logging.getLogger(__name__)

WIP_FIELDS = (
    "id,date,created_at,updated_at,type,matter{id,display_number},quantity_in_hours,"
    "note,total,price,expense_category,activity_description{id,name},user{id},bill{id},billed"
)
COUNT_FIELDS = "id,total,user{id}"
COLLECTED_REPORT_KIND = "invoice_payments_v2"

NO_DATA_PHRASE = "no data to report on"
NO_DATA_MARKERS = (NO_DATA_PHRASE, "no data")


def _looks_empty(text: str) -> bool:
    """Loose check for a download body that means "empty report"."""
    lowered = text.lower()
    return any(marker in lowered for marker in NO_DATA_MARKERS)


def _no_data_to_report(resp: httpx.Response) -> bool:
    # Clio rejects a report request over an empty range with 422 and this exact phrase
    return resp.status_code == 422 and NO_DATA_PHRASE in resp.text.lower()


class ClioClient:
    """
    Thin async wrapper over the Clio REST API.

    Args:
        http: Shared httpx.AsyncClient (tests pass one built on MockTransport).
        tokens: TokenCache used for every call.
        api_base: e.g. "https://eu.app.clio.com/api/v4".
        page_limit: Page size for list endpoints (Clio caps at 200).
        timeout: Default per-request timeout in seconds.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenCache,
        *,
        api_base: str,
        page_limit: int = 200,
        timeout: float = 30.0,
    ):
        self._http = http
        self.tokens = tokens
        self._api_base = api_base.rstrip("/")
        self._page_limit = page_limit
        self._timeout = timeout

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._api_base}/{path.lstrip('/')}"

    async def _send(self, method: str, url: str, token: str, headers, timeout, kwargs) -> httpx.Response:
        merged = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        merged.update(headers or {})
        return await self._http.request(
            method, url, headers=merged, timeout=timeout or self._timeout, **kwargs
        )

    async def request(
        self,
        principal: Optional[str],
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send one authenticated request, retrying once after a forced refresh on 401.

        Raises:
            TokenExchangeFailed: no token could be obtained.
            httpx.HTTPError: transport-level failure.
        """
        url = self._url(path)
        token = await self.tokens.get_token(principal)
        resp = await self._send(method, url, token, headers, timeout, kwargs)
        if resp.status_code != 401:
            return resp

        logger.info("Clio answered 401 for %s %s; refreshing token and retrying once", method, url)
        token = await self.tokens.get_token(principal, force_refresh=True)
        return await self._send(method, url, token, headers, timeout, kwargs)

    # ─── Record fetching ──────────────────────────────────────────────────────

    async def _checked(self, principal, method, path, what: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.request(principal, method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderFetchError(f"Clio {what} failed: {exc}") from exc
        return resp

    async def list_activities(
        self,
        principal: Optional[str],
        start: date,
        end: date,
        *,
        fields: str = WIP_FIELDS,
        timeout: Optional[float] = None,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every activity dated within [start, end], following pagination.

        Args:
            on_page: Called with (batch_size, offset) after each page. May raise
                (e.g. AbortedByUser) to stop paging.
        """
        activities: List[Dict[str, Any]] = []
        offset = 0
        while True:
            resp = await self._checked(
                principal, "GET", "activities.json", "activities fetch",
                params={
                    "fields": fields,
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "limit": str(self._page_limit),
                    "offset": str(offset),
                },
                timeout=timeout,
            )
            if not resp.is_success:
                raise ProviderFetchError(
                    f"Clio activities fetch failed: {resp.status_code}", status_code=resp.status_code
                )

            payload = resp.json()
            batch = payload.get("data") or []
            activities.extend(batch)
            if on_page is not None:
                on_page(len(batch), offset)

            has_next = bool(((payload.get("meta") or {}).get("paging") or {}).get("next"))
            if len(batch) < self._page_limit or not has_next:
                break
            offset += self._page_limit
        return activities

    async def fetch_report(
        self,
        principal: Optional[str],
        start: date,
        end: date,
        *,
        kind: str = COLLECTED_REPORT_KIND,
        timeout: float = 240.0,
        poll_interval: float = 4.0,
        on_poll: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, Any]:
        """
        Request a Clio report for [start, end] and poll until it can be downloaded.

        Clio generates reports asynchronously; the download endpoint answers
        202/404 until the report is ready. "No data to report on" (on request
        or download) is an empty report, not an error.

        Args:
            timeout: Overall budget; bounds the number of polls.
            on_poll: Called with (attempt, max_attempts) before each poll. May
                raise (e.g. AbortedByUser) to stop waiting.

        Returns:
            The report's `report_data` dict ({} for an empty report).
        """
        resp = await self._checked(
            principal, "POST", "reports.json", "report request",
            json={
                "data": {
                    "start_date": f"{start.isoformat()}T00:00:00Z",
                    "end_date": f"{end.isoformat()}T23:59:59Z",
                    "format": "json",
                    "kind": kind,
                }
            },
        )
        if not resp.is_success:
            if _no_data_to_report(resp):
                logger.info("Clio reported no data for %s..%s", start, end)
                return {}
            raise ProviderFetchError(
                f"Clio report request failed: {resp.status_code}", status_code=resp.status_code
            )

        report_id = ((resp.json() or {}).get("data") or {}).get("id")
        if not report_id:
            raise ProviderFetchError("No report ID returned from Clio")

        max_attempts = max(1, math.ceil(timeout / poll_interval)) if poll_interval > 0 else 1
        for attempt in range(max_attempts):
            if on_poll is not None:
                on_poll(attempt, max_attempts)
            await asyncio.sleep(poll_interval)

            dl = await self._checked(
                principal, "GET", f"reports/{report_id}/download", "report download"
            )
            if dl.status_code == 200:
                payload = dl.json()
                if isinstance(payload, str):
                    if _looks_empty(payload):
                        return {}
                    raise ProviderFetchError("Unexpected report payload from Clio")
                if payload.get("error"):
                    return {}
                if "report_data" not in payload:
                    raise ProviderFetchError("Clio report download had no report_data")
                return payload["report_data"] or {}
            if dl.status_code in (202, 404):
                continue
            if _looks_empty(dl.text):
                return {}
            logger.warning(
                "Unexpected status %s polling Clio report %s; retrying", dl.status_code, report_id
            )

        raise ProviderFetchError(
            f"Clio report {report_id} not ready after {max_attempts} polls"
        )
