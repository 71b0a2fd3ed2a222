# attendance_etl/core/models.py

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ------------------- WooCommerce payloads -------------------

class WooMeta(BaseModel):
    """One ``{key, value}`` entry of a WooCommerce ``meta_data`` list."""
    id: Optional[int] = None
    key: str
    value: Any = None

    model_config = ConfigDict(extra="allow")


class WooBilling(BaseModel):
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    email: Optional[str] = ""

    model_config = ConfigDict(extra="allow")


class WooLineItem(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    product_id: Optional[int] = None
    variation_id: Optional[int] = 0
    quantity: int = 1
    meta_data: List[WooMeta] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    def meta(self, key: str) -> Any:
        for m in self.meta_data:
            if m.key == key:
                return m.value
        return None


class WooOrder(BaseModel):
    """
    An order as returned by ``GET /wp-json/wc/v3/orders``.
    Only the fields the pipeline reads are typed, the rest is kept as extras.
    """
    id: int
    status: Optional[str] = None
    date_created: Optional[str] = None
    billing: WooBilling = Field(default_factory=WooBilling)
    line_items: List[WooLineItem] = Field(default_factory=list)
    meta_data: List[WooMeta] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class WooProduct(BaseModel):
    id: int
    name: str = ""
    type: str = "simple"
    status: Optional[str] = None
    variations: List[int] = Field(default_factory=list)
    categories: List[Dict[str, Any]] = Field(default_factory=list)
    tags: List[Dict[str, Any]] = Field(default_factory=list)
    meta_data: List[WooMeta] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @property
    def is_variable(self) -> bool:
        return self.type == "variable" and bool(self.variations)

    def meta(self, key: str) -> Any:
        for m in self.meta_data:
            if m.key == key:
                return m.value
        return None


# ------------------- normalized tickets -------------------

TicketIdSource = Literal["ticket_meta", "uid_fallback", "manual"]


class Recognized(BaseModel):
    kind: Literal["recognized"] = "recognized"
    email: str
    first_name: str = ""
    last_name: str = ""
    extra_emails: int = 0


class Unrecognized(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    reason: str


TicketFields = Union[Recognized, Unrecognized]


class TicketRecord(BaseModel):
    """
    A candidate attendee extracted from one ``_ticket_data`` entry.
    ``external_ticket_id`` is the dedup key together with the event id.
    """
    external_ticket_id: str
    ticket_id_source: TicketIdSource
    email: str
    first_name: str = ""
    last_name: str = ""
    booker_first_name: str = ""
    booker_last_name: str = ""
    booker_email: str = ""
    order_id: str
    order_date: Optional[datetime] = None
    source_product_id: Optional[str] = None


class ExtractionReport(BaseModel):
    tickets: List[TicketRecord] = Field(default_factory=list)
    skipped_no_email: int = 0
    uid_fallbacks: int = 0
    line_items_without_ticket_data: int = 0
    duplicates_in_fetch: int = 0

    def extend(self, other: "ExtractionReport") -> None:
        self.tickets.extend(other.tickets)
        self.skipped_no_email += other.skipped_no_email
        self.uid_fallbacks += other.uid_fallbacks
        self.line_items_without_ticket_data += other.line_items_without_ticket_data
        self.duplicates_in_fetch += other.duplicates_in_fetch
