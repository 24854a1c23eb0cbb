"""Operation execution against a scripted Shopify transport, plus end-to-end session flows."""

from __future__ import annotations

import pytest
from fastapi import HTTPException

from conftest import product_node

from quicktag.operations import NO_MATCH_ERROR, execute_operation, merged_tags
from quicktag.schemas import Operation, OperationKind, TagStatus
from quicktag.tagging import TagSession


def _search_result(*nodes):
    return lambda variables: {"products": {"edges": [{"node": n} for n in nodes], "pageInfo": {"hasNextPage": False, "endCursor": None}}}


class TestExecuteOperation:

    @pytest.mark.asyncio
    async def test_search_and_tag_sends_full_tag_list(self, graphql):
        graphql.on("searchProducts", _search_result(product_node("p1", tags=["old"])))
        graphql.on("tagsAdd", lambda v: {"tagsAdd": {"node": {"id": v["id"]}, "userErrors": []}})

        result = await execute_operation(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode="123", tag="sale", seq=7))

        assert result.success is True
        assert result.tag_used == "sale"
        assert result.seq == 7
        assert result.products[0].tags == ["old", "sale"]
        add_call = graphql.calls[1]
        assert add_call["variables"] == {"id": "p1", "tags": ["old", "sale"]}
        assert graphql.calls[0]["variables"]["queryString"] == "barcode:123"

    @pytest.mark.asyncio
    async def test_no_match_synthesizes_row(self, graphql):
        graphql.on("searchProducts", _search_result())

        result = await execute_operation(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode="999", tag="sale"))

        assert result.success is False
        assert result.error_kind == "not_found"
        assert "No Matching Barcode" in result.error
        product = result.products[0]
        assert product.title == "No Matching Barcode:999"
        assert product.total_inventory == 0
        assert product.variants[0].barcode == "999"
        assert product.variants[0].sku == NO_MATCH_ERROR
        assert product.variants[0].inventory_quantity == 0

    @pytest.mark.asyncio
    async def test_user_errors_become_failure(self, graphql):
        graphql.on("searchProducts", _search_result(product_node("p1")))
        graphql.on("tagsAdd", lambda v: {"tagsAdd": {"node": None, "userErrors": [{"field": "tags", "message": "Tag too long"}]}})

        result = await execute_operation(Operation(kind=OperationKind.SEARCH_AND_TAG, barcode="123", tag="x" * 300))

        assert result.success is False
        assert result.error == "Tag too long"
        assert result.error_kind == "remote_error"

    @pytest.mark.asyncio
    async def test_transport_errors_are_caught(self, monkeypatch):
        from quicktag import shopify_client

        async def broken(*args, **kwargs):
            raise HTTPException(status_code=502, detail="Shopify request failed: timeout")

        monkeypatch.setattr(shopify_client, "shopify_graphql", broken)
        result = await execute_operation(Operation(kind=OperationKind.REFRESH, product_id="p1", row_tag="sale"))

        assert result.success is False
        assert result.tag_used == "sale"
        assert "timeout" in result.error

    @pytest.mark.asyncio
    async def test_delete_tag_refetches_product(self, graphql):
        graphql.on("tagsRemove", lambda v: {"tagsRemove": {"userErrors": []}})
        graphql.on("getProduct", lambda v: {"product": product_node(v["id"], tags=["sale"])})

        result = await execute_operation(Operation(kind=OperationKind.DELETE_TAG, product_id="p1", tag="new", row_tag="sale"))

        assert result.success is True
        assert result.tag_used == "sale"
        assert result.products[0].tags == ["sale"]
        assert graphql.names() == ["tagsRemove", "getProduct"]

    def test_merged_tags_keeps_order_without_duplicates(self):
        assert merged_tags(["a", "b"], "a") == ["a", "b"]
        assert merged_tags([], "a") == ["a"]


class TestSessionScenarios:

    @pytest.mark.asyncio
    async def test_successful_scan_merges_on_repeat(self, graphql):
        graphql.on("searchProducts", _search_result(product_node("p1", tags=["sale"])))
        graphql.on("tagsAdd", lambda v: {"tagsAdd": {"node": {"id": v["id"]}, "userErrors": []}})
        session = TagSession("s1", poll_interval=0)

        session.enqueue_scan("123", "sale")
        await session.dispatcher.join()
        assert len(session.history) == 1
        assert session.history[0].products[0].id == "p1"
        assert session.history[0].tag_used == "sale"
        assert session.statuses.get("p1", "sale") == TagStatus.EXISTING

        session.enqueue_scan("123", "sale")
        await session.dispatcher.join()
        assert len(session.history) == 1

    @pytest.mark.asyncio
    async def test_missing_barcode_row(self, graphql):
        graphql.on("searchProducts", _search_result())
        session = TagSession("s1", poll_interval=0)

        session.enqueue_scan("999", "sale")
        await session.dispatcher.join()

        row = session.view()["rows"][0]
        assert row["status"] == "Failure"
        assert "No Matching Barcode" in row["error"]
        variant = row["products"][0]["variants"][0]
        assert variant["barcode"] == "999"
        assert variant["quantity"] == 0

    @pytest.mark.asyncio
    async def test_delete_then_add_back_updates_row(self, graphql):
        graphql.on("searchProducts", _search_result(product_node("p1", tags=["new"])))
        graphql.on("tagsAdd", lambda v: {"tagsAdd": {"node": {"id": v["id"]}, "userErrors": []}})
        graphql.on("tagsRemove", lambda v: {"tagsRemove": {"userErrors": []}})
        graphql.on("getProduct", lambda v: {"product": product_node("p1", tags=["sale"])})
        session = TagSession("s1", poll_interval=0)

        session.enqueue_scan("123", "sale")
        await session.dispatcher.join()
        session.enqueue_delete_tag("p1", "new", row_tag="sale")
        await session.dispatcher.join()

        assert len(session.history) == 1
        assert session.history[0].products[0].tags == ["sale"]
        assert session.statuses.get("p1", "new") == TagStatus.DELETED

        session.enqueue_add_tag("p1", "new", row_tag="sale")
        assert session.statuses.get("p1", "new") == TagStatus.READDED
        await session.dispatcher.join()
        assert len(session.history) == 1
