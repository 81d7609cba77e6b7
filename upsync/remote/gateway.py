"""
Up Bank API gateway: the only code path that talks to the network.

Callers account for every call they make through BudgetTracker.track_call();
the gateway itself never tracks, since some operations cost more than one
call from the caller's point of view.
"""

from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime

import httpx

from upsync.config import settings
from upsync.core.clock import Clock, system_clock
from upsync.observability.logger import get_logger
from upsync.remote.errors import AuthFailure, RateLimited, RemoteApiError
from upsync.remote.models import RemoteTransaction, TransactionPage

log = get_logger("remote.up_bank")


@dataclass(frozen=True)
class RetryPolicy:
    """How to react to a 429 from the remote side."""

    max_attempts: int = 2
    default_delay: float = 5.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.remote_retry_max_attempts,
            default_delay=settings.remote_retry_default_delay_seconds,
            max_delay=settings.remote_retry_max_delay_seconds,
        )

    def delay_for(self, retry_after: str | None, now: datetime) -> float:
        """Seconds to wait, from a Retry-After header (seconds or HTTP date)."""
        delay = self.default_delay
        if retry_after:
            value = retry_after.strip()
            try:
                delay = float(value)
            except ValueError:
                try:
                    delay = (parsedate_to_datetime(value) - now).total_seconds()
                except (TypeError, ValueError):
                    delay = self.default_delay
        return min(max(0.0, delay), self.max_delay)


class UpBankGateway:
    def __init__(
        self,
        token: str,
        base_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
        retry_policy: RetryPolicy = None,
        clock: Clock = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock or system_clock
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.up_api_base_url,
            headers={
                "Authorization": f"Bearer {token.strip()}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(settings.up_api_timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, params: dict = None, json: dict = None) -> dict | None:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.request(method, path, params=params, json=json)
            except httpx.HTTPError as e:
                log.error("up_api_transport_error", method=method, path=path, error=str(e))
                raise RemoteApiError(f"Request failed: {e}") from e

            status = response.status_code
            log.info("up_api_response", method=method, path=path, status=status, attempt=attempt)

            if status == 401:
                raise AuthFailure("Authentication failed: invalid or expired Up Bank token", status)
            if status == 403:
                raise AuthFailure("Authorization failed: token does not have permission", status)

            if status == 429:
                if attempt < self.retry_policy.max_attempts:
                    delay = self.retry_policy.delay_for(response.headers.get("Retry-After"), self.clock.now())
                    log.warning("up_api_rate_limited", path=path, retry_in=delay, attempt=attempt)
                    await self.clock.sleep(delay)
                    continue
                raise RateLimited(f"Rate limited by Up Bank after {attempt} attempt(s)", status)

            if not response.is_success:
                raise RemoteApiError(f"Up Bank API error: {self._error_detail(response)}", status)

            # 204 No Content, or any 2xx without a body
            if status == 204 or not response.content:
                return None

            try:
                return response.json()
            except ValueError as e:
                raise RemoteApiError(f"Invalid JSON from Up Bank: {e}", status) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        fallback = f"HTTP {response.status_code}: {response.reason_phrase}"
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            return fallback
        if errors and errors[0].get("detail"):
            return errors[0]["detail"]
        return fallback

    # ── Reads ────────────────────────────────────────────────────────────

    async def ping(self) -> dict | None:
        return await self._request("GET", "/util/ping")

    async def list_accounts(self) -> list[dict]:
        payload = await self._request("GET", "/accounts")
        return (payload or {}).get("data") or []

    async def list_categories(self) -> list[dict]:
        payload = await self._request("GET", "/categories")
        return (payload or {}).get("data") or []

    async def list_tags(self) -> list[dict]:
        payload = await self._request("GET", "/tags")
        return (payload or {}).get("data") or []

    async def list_transactions(
        self,
        account_id: str = None,
        since: datetime = None,
        until: datetime = None,
        status: str = None,
        page_size: int = None,
        page_after: str = None,
    ) -> TransactionPage:
        params = {}
        if account_id:
            params["filter[account]"] = account_id
        if since:
            params["filter[since]"] = since.isoformat()
        if until:
            params["filter[until]"] = until.isoformat()
        if status:
            params["filter[status]"] = status
        if page_size:
            params["page[size]"] = str(page_size)
        if page_after:
            params["page[after]"] = page_after
        payload = await self._request("GET", "/transactions", params=params or None)
        return TransactionPage.from_payload(payload)

    async def get_transaction(self, remote_id: str) -> RemoteTransaction:
        payload = await self._request("GET", f"/transactions/{remote_id}")
        if not payload or not payload.get("data"):
            raise RemoteApiError(f"Transaction {remote_id} returned no data")
        return RemoteTransaction.from_resource(payload["data"])

    # ── Writes ───────────────────────────────────────────────────────────

    async def update_category(self, remote_id: str, category_id: str | None):
        """Set the category relationship. None removes the category."""
        data = {"type": "categories", "id": category_id} if category_id else None
        await self._request(
            "PATCH", f"/transactions/{remote_id}/relationships/category", json={"data": data}
        )
        log.info("up_category_updated", remote_id=remote_id, category=category_id)

    async def add_tags(self, remote_id: str, tag_ids: list[str]):
        if not tag_ids:
            return
        await self._request(
            "POST",
            f"/transactions/{remote_id}/relationships/tags",
            json={"data": [{"type": "tags", "id": t} for t in tag_ids]},
        )
        log.info("up_tags_added", remote_id=remote_id, tags=tag_ids)

    async def remove_tags(self, remote_id: str, tag_ids: list[str]):
        if not tag_ids:
            return
        await self._request(
            "DELETE",
            f"/transactions/{remote_id}/relationships/tags",
            json={"data": [{"type": "tags", "id": t} for t in tag_ids]},
        )
        log.info("up_tags_removed", remote_id=remote_id, tags=tag_ids)

