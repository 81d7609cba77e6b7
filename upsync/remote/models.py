from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field


class RemoteTransaction(BaseModel):
    """A transaction resource as returned by the Up Bank API."""

    id: str
    account_id: str | None = None
    amount: Decimal = Decimal("0")
    currency: str = "AUD"
    description: str = ""
    status: str = "SETTLED"
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None
    # True when the attribute set carries an updatedAt key at all (even null)
    has_update_field: bool = False
    raw: dict = Field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: dict) -> "RemoteTransaction":
        attrs = resource.get("attributes") or {}
        rels = resource.get("relationships") or {}
        amount = attrs.get("amount") or {}

        account = (rels.get("account") or {}).get("data") or {}
        category = (rels.get("category") or {}).get("data") or {}
        tags = (rels.get("tags") or {}).get("data") or []

        return cls.model_validate({
            "id": resource["id"],
            "account_id": account.get("id"),
            "amount": amount.get("value") or "0",
            "currency": amount.get("currencyCode") or "AUD",
            "description": attrs.get("description") or "",
            "status": attrs.get("status") or "SETTLED",
            "category": category.get("id"),
            "tags": [t["id"] for t in tags if t.get("id")],
            "created_at": attrs["createdAt"],
            "updated_at": attrs.get("updatedAt"),
            "has_update_field": "updatedAt" in attrs,
            "raw": resource,
        })

    @property
    def modified_at(self) -> datetime | None:
        """Last-modified time usable for conflict detection.

        createdAt stands in only when the resource is known not to carry an
        updatedAt attribute. A null updatedAt means the time is unknown.
        """
        if self.updated_at is not None:
            return self.updated_at
        if not self.has_update_field:
            return self.created_at
        return None

    @property
    def tags_value(self) -> str:
        return ",".join(self.tags)


class TransactionPage(BaseModel):
    records: list[RemoteTransaction] = Field(default_factory=list)
    next_cursor: str | None = None

    @classmethod
    def from_payload(cls, payload: dict | None) -> "TransactionPage":
        payload = payload or {}
        records = [RemoteTransaction.from_resource(r) for r in payload.get("data") or []]
        next_link = (payload.get("links") or {}).get("next")
        return cls(records=records, next_cursor=cursor_from_link(next_link))

    @property
    def oldest_created_at(self) -> datetime | None:
        if not self.records:
            return None
        return min(r.created_at for r in self.records)


def cursor_from_link(link: str | None) -> str | None:
    """Pull the page[after] token out of a links.next URL."""
    if not link:
        return None
    values = parse_qs(urlparse(link).query).get("page[after]")
    return values[0] if values else None
