# attendance_etl/core/extract.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set

import dateparser

from attendance_etl.core.models import (
    ExtractionReport,
    Recognized,
    TicketFields,
    TicketRecord,
    Unrecognized,
    WooLineItem,
    WooOrder,
)

log = logging.getLogger(__name__)

TICKET_DATA_KEY = "_ticket_data"
TICKET_ID_PREFIX = "_ticket_id_for_"
# longer values are free-text answers, not names
_MAX_NAME_LEN = 50

# ------------------- ticket fields -------------------

def parse_ticket_fields(fields: Dict[str, Any]) -> TicketFields:
    """
    ``fields`` is keyed by opaque per-form hashes, so values are classified by
    content: the first value containing ``@`` is the email, the first two other
    non-empty short values are first and last name.
    """
    if not isinstance(fields, dict):
        return Unrecognized(reason="fields is not a mapping")

    email: Optional[str] = None
    extra_emails = 0
    names = []
    for value in fields.values():
        if not isinstance(value, str):
            continue
        v = value.strip()
        if not v:
            continue
        if "@" in v:
            if email is None:
                email = v.lower()
            else:
                extra_emails += 1
        elif len(v) < _MAX_NAME_LEN:
            names.append(v)

    if not email:
        return Unrecognized(reason="no email field")
    return Recognized(
        email=email,
        first_name=names[0] if names else "",
        last_name=names[1] if len(names) > 1 else "",
        extra_emails=extra_emails,
    )


def parse_order_date(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return dateparser.parse(raw, settings={"RETURN_AS_TIMEZONE_AWARE": False})


# ------------------- extraction -------------------

def _line_item_matches(item: WooLineItem, product_ids: Set[str], variation_ids: Set[str]) -> bool:
    if item.product_id is not None and str(item.product_id) in product_ids:
        return True
    return bool(item.variation_id) and str(item.variation_id) in variation_ids


def _tickets_for_line_item(order: WooOrder, item: WooLineItem, order_date: Optional[datetime],
                           report: ExtractionReport) -> None:
    entries = item.meta(TICKET_DATA_KEY)
    if not isinstance(entries, list):
        report.line_items_without_ticket_data += 1
        log.warning("order %s line item %s has no %s", order.id, item.id, TICKET_DATA_KEY,
                    extra={"order_id": order.id, "line_item_id": item.id})
        return

    billing = order.billing
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        uid = entry.get("uid")
        parsed = parse_ticket_fields(entry.get("fields") or {})
        if isinstance(parsed, Unrecognized):
            report.skipped_no_email += 1
            log.info("order %s ticket %s skipped: %s", order.id, uid, parsed.reason)
            continue
        if parsed.extra_emails:
            log.debug("order %s ticket %s: ignored %d extra email value(s)", order.id, uid, parsed.extra_emails)

        ticket_id = item.meta(f"{TICKET_ID_PREFIX}{uid}")
        if ticket_id not in (None, ""):
            source = "ticket_meta"
        else:
            if uid in (None, ""):
                log.warning("order %s line item %s: ticket without uid or ticket id, skipped", order.id, item.id)
                continue
            ticket_id = uid
            source = "uid_fallback"
            report.uid_fallbacks += 1
            log.warning("order %s: no %s%s, falling back to uid", order.id, TICKET_ID_PREFIX, uid,
                        extra={"order_id": order.id, "uid": uid})

        report.tickets.append(TicketRecord(
            external_ticket_id=str(ticket_id),
            ticket_id_source=source,
            email=parsed.email,
            first_name=parsed.first_name,
            last_name=parsed.last_name,
            booker_first_name=(billing.first_name or "").strip(),
            booker_last_name=(billing.last_name or "").strip(),
            booker_email=(billing.email or "").strip().lower(),
            order_id=str(order.id),
            order_date=order_date,
            source_product_id=str(item.product_id) if item.product_id is not None else None,
        ))


def extract_tickets(order: WooOrder, product_ids: Iterable[str],
                    variation_ids: Iterable[str] = ()) -> ExtractionReport:
    """Candidate attendees for the given products from one order. Never raises on bad entries."""
    pids = {str(p) for p in product_ids}
    vids = {str(v) for v in variation_ids}
    report = ExtractionReport()
    order_date = parse_order_date(order.date_created)
    for item in order.line_items:
        if _line_item_matches(item, pids, vids):
            _tickets_for_line_item(order, item, order_date, report)
    return report


def extract_from_orders(orders: Iterable[WooOrder], product_ids: Iterable[str],
                        variation_ids: Iterable[str] = ()) -> ExtractionReport:
    """Extract across a whole fetch; a ticket id seen twice keeps its first occurrence."""
    pids = list(product_ids)
    vids = list(variation_ids)
    out = ExtractionReport()
    seen: Set[str] = set()
    for order in orders:
        rep = extract_tickets(order, pids, vids)
        unique = []
        for t in rep.tickets:
            if t.external_ticket_id in seen:
                out.duplicates_in_fetch += 1
                continue
            seen.add(t.external_ticket_id)
            unique.append(t)
        rep.tickets = unique
        out.extend(rep)
    return out
