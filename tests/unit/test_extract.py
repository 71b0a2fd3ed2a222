"""Tests for ticket extraction from WooCommerce orders."""

from datetime import datetime

from attendance_etl.core.extract import extract_from_orders, extract_tickets, parse_ticket_fields
from attendance_etl.core.models import Recognized, Unrecognized, WooOrder


class TestParseTicketFields:
    def test_email_and_names_by_content(self):
        parsed = parse_ticket_fields({"a1f": "Grace", "b2e": "Hopper", "c3d": " Grace@Navy.MIL "})

        assert isinstance(parsed, Recognized)
        assert parsed.email == "grace@navy.mil"
        assert parsed.first_name == "Grace"
        assert parsed.last_name == "Hopper"

    def test_first_email_wins_and_extra_is_counted(self):
        parsed = parse_ticket_fields({"x": "one@example.org", "y": "Ann", "z": "two@example.org"})

        assert parsed.email == "one@example.org"
        assert parsed.extra_emails == 1
        assert parsed.last_name == ""

    def test_long_values_are_not_names(self):
        answer = "I heard about this from a friend who came to the last three talks"
        parsed = parse_ticket_fields({"q": answer, "e": "x@example.org", "n": "Lin"})

        assert parsed.first_name == "Lin"

    def test_no_email_is_unrecognized(self):
        parsed = parse_ticket_fields({"a": "Just", "b": "Names"})

        assert isinstance(parsed, Unrecognized)
        assert "email" in parsed.reason

    def test_non_mapping_is_unrecognized(self):
        assert isinstance(parse_ticket_fields(["a@b.c"]), Unrecognized)


class TestExtractTickets:
    def test_ticket_id_from_meta(self, order_factory):
        order = order_factory(
            5001, 100,
            [{"uid": "u1", "fields": {"f": "Ada", "l": "Lovelace", "e": "ada@example.org"}}],
            ticket_ids={"u1": "TCK-1"},
        )

        report = extract_tickets(order, ["100"])

        assert len(report.tickets) == 1
        t = report.tickets[0]
        assert t.external_ticket_id == "TCK-1"
        assert t.ticket_id_source == "ticket_meta"
        assert t.booker_email == "bea@example.org"
        assert t.order_id == "5001"
        assert t.order_date == datetime(2025, 2, 1, 10, 15)
        assert t.source_product_id == "100"
        assert report.uid_fallbacks == 0

    def test_uid_fallback_is_flagged_and_counted(self, order_factory):
        order = order_factory(5002, 100, [{"uid": "u9", "fields": {"e": "b@example.org"}}])

        report = extract_tickets(order, ["100"])

        assert report.tickets[0].external_ticket_id == "u9"
        assert report.tickets[0].ticket_id_source == "uid_fallback"
        assert report.uid_fallbacks == 1

    def test_entry_without_email_is_skipped(self, order_factory):
        order = order_factory(
            5003, 100,
            [{"uid": "u1", "fields": {"n": "Nobody"}}, {"uid": "u2", "fields": {"e": "c@example.org"}}],
            ticket_ids={"u1": "A", "u2": "B"},
        )

        report = extract_tickets(order, ["100"])

        assert [t.external_ticket_id for t in report.tickets] == ["B"]
        assert report.skipped_no_email == 1

    def test_other_products_are_ignored(self, order_factory):
        order = order_factory(5004, 200, [{"uid": "u1", "fields": {"e": "d@example.org"}}])

        assert extract_tickets(order, ["100"]).tickets == []

    def test_variation_match(self, order_factory):
        order = order_factory(5005, 300, [{"uid": "u1", "fields": {"e": "v@example.org"}}],
                              variation_id=301, ticket_ids={"u1": "V1"})

        report = extract_tickets(order, ["999"], variation_ids=["301"])

        assert [t.external_ticket_id for t in report.tickets] == ["V1"]

    def test_line_item_without_ticket_data(self):
        order = WooOrder.model_validate({
            "id": 7,
            "line_items": [{"id": 70, "product_id": 100, "meta_data": []}],
        })

        report = extract_tickets(order, ["100"])

        assert report.tickets == []
        assert report.line_items_without_ticket_data == 1


class TestExtractFromOrders:
    def test_duplicate_ticket_ids_keep_first(self, order_factory):
        first = order_factory(1, 100, [{"uid": "u1", "fields": {"e": "first@example.org"}}],
                              ticket_ids={"u1": "SAME"})
        second = order_factory(2, 100, [{"uid": "u1", "fields": {"e": "second@example.org"}}],
                               ticket_ids={"u1": "SAME"})

        report = extract_from_orders([first, second], ["100"])

        assert [t.email for t in report.tickets] == ["first@example.org"]
        assert report.duplicates_in_fetch == 1
