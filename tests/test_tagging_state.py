"""Queue, history merge and tag status table."""

from __future__ import annotations

import pytest

from conftest import make_product

from quicktag import tagging
from quicktag.schemas import Operation, OperationKind, ProductSnapshot, ResultRecord, TagStatus, VariantSnapshot
from quicktag.shopify_client import numeric_id
from quicktag.tagging import QueueStore, TagStatusTable, feedback_for, history_rows, merge_result, replace_characters


def _ok(pid: str, tag: str, title: str = "Rose Stamp") -> ResultRecord:
    return ResultRecord(success=True, tag_used=tag, products=[make_product(pid, title=title, tags=[tag])], kind=OperationKind.SEARCH_AND_TAG)


def _fail(tag: str, error: str = "boom") -> ResultRecord:
    return ResultRecord(success=False, tag_used=tag, error=error, kind=OperationKind.SEARCH_AND_TAG)


class TestQueueStore:

    def test_fifo_and_sequence_numbers(self):
        q = QueueStore()
        a = q.enqueue(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode="1", tag="t"))
        b = q.enqueue(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode="2", tag="t"))
        assert (a.seq, b.seq) == (1, 2)
        assert q.peek() == a
        assert len(q) == 2
        assert q.dequeue() == a
        assert q.dequeue() == b
        assert q.dequeue() is None
        assert q.peek() is None

    def test_peek_does_not_remove(self):
        q = QueueStore()
        q.enqueue(Operation(kind=OperationKind.REFRESH, product_id="p"))
        q.peek()
        assert len(q) == 1

    def test_discard_pending(self):
        q = QueueStore()
        ops = [q.enqueue(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode=str(i), tag="t")) for i in range(3)]
        assert q.discard(ops[1].seq) is True
        assert q.discard(99) is False
        assert [op.barcode for op in q.pending()] == ["0", "2"]


class TestMergeResult:

    def test_new_success_is_prepended(self):
        history = merge_result([], _ok("p1", "sale"))
        history = merge_result(history, _ok("p2", "sale"))
        assert [r.products[0].id for r in history] == ["p2", "p1"]

    def test_same_product_and_tag_replaced_in_place(self):
        history = [_ok("p2", "sale"), _ok("p1", "sale")]
        updated = merge_result(history, _ok("p1", "sale", title="Renamed"))
        assert len(updated) == 2
        assert updated[1].products[0].title == "Renamed"
        assert updated[0].products[0].id == "p2"

    def test_merge_is_idempotent(self):
        record = _ok("p1", "sale")
        once = merge_result([], record)
        twice = merge_result(once, record)
        assert len(twice) == 1

    def test_same_product_other_tag_is_new_entry(self):
        history = merge_result([_ok("p1", "sale")], _ok("p1", "clearance"))
        assert len(history) == 2

    def test_failures_always_prepend(self):
        history = merge_result([_fail("sale")], _fail("sale"))
        assert len(history) == 2

    def test_failure_does_not_replace_success(self):
        history = merge_result([_ok("p1", "sale")], _fail("sale"))
        assert [r.success for r in history] == [False, True]


class TestTagStatusTable:

    def test_default_is_existing(self):
        assert TagStatusTable().get("p1", "sale") == TagStatus.EXISTING

    def test_deleted_then_readded(self):
        table = TagStatusTable()
        table.mark_deleted("p1", "sale")
        assert table.get("p1", "sale") == TagStatus.DELETED
        table.mark_readded("p1", "sale")
        assert table.get("p1", "sale") == TagStatus.READDED

    def test_search_status_does_not_touch_product_rows(self):
        table = TagStatusTable()
        table.mark_deleted("p1", "sale")
        table.record_search("sale", success=True)
        assert table.get("p1", "sale") == TagStatus.DELETED
        assert table.search_status("sale") == TagStatus.SUCCESS
        assert table.display_status("p2", "sale") == TagStatus.SUCCESS
        assert table.display_status("p1", "sale") == TagStatus.DELETED

    def test_reset_clears(self):
        table = TagStatusTable()
        table.mark_deleted("p1", "sale")
        table.record_search("sale", success=False)
        table.reset()
        assert len(table) == 0
        assert table.get("p1", "sale") == TagStatus.EXISTING


class TestHistoryRows:

    def test_rows_hide_untagged_and_fill_display_fields(self):
        untagged = ResultRecord(success=True, tag_used=None, products=[make_product("p9")])
        product = make_product("p1", title="Rose Stamp", tags=["sale", "new"], barcode="")
        record = ResultRecord(success=True, tag_used="sale", products=[product])
        table = TagStatusTable()
        table.mark_deleted("p1", "new")

        rows = history_rows([record, untagged], table)

        assert len(rows) == 1
        variant = rows[0]["products"][0]["variants"][0]
        assert variant["title"] == "Rose Stamp"
        assert variant["barcode"] == "N/A"
        tags = {t["tag"]: t for t in rows[0]["products"][0]["tags"]}
        assert tags["new"]["status"] == "Deleted"
        assert tags["new"]["can_add_back"] is True
        assert tags["sale"]["can_delete"] is True


class TestFeedback:

    def test_speech_text_is_normalized(self):
        assert replace_characters("No Matching Barcode:12-3") == "No Matching Barcode 12 dash, 3"

    def test_feedback_sounds(self):
        assert feedback_for(_ok("p1", "sale"))["sound"] == "success"
        fb = feedback_for(_fail("sale", "No Matching Barcode error"))
        assert fb["sound"] == "failure"
        assert fb["speech"] == "No Matching Barcode error"


def test_expiration_link_uses_numeric_variant_id(monkeypatch):
    monkeypatch.setattr(tagging, "EXPIRATION_APP_URL", "https://exp.example.com/variants/")
    variant = VariantSnapshot(id="gid://shopify/ProductVariant/11", title="Default Title", barcode="123")
    product = ProductSnapshot(id="gid://shopify/Product/1", title="Rose Stamp", tags=["sale"], variants=[variant])
    record = ResultRecord(success=True, tag_used="sale", products=[product])

    rows = history_rows([record], TagStatusTable())

    assert rows[0]["products"][0]["variants"][0]["expiration_link"] == "https://exp.example.com/variants/11"


@pytest.mark.parametrize(
    "gid,expected",
    [("gid://shopify/Product/42", "42"), ("gid://shopify/ProductVariant/11/", "11"), ("7", "7"), (None, ""), ("", "")],
)
def test_numeric_id(gid, expected):
    assert numeric_id(gid) == expected
