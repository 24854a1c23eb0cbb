"""Shared fixtures: product factories and a scripted stand-in for the Shopify GraphQL transport."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import pytest

from quicktag import shopify_client
from quicktag.schemas import ProductSnapshot, VariantSnapshot


def make_product(pid: str = "gid://shopify/Product/1", title: str = "Rose Stamp", tags: Optional[List[str]] = None, barcode: str = "123") -> ProductSnapshot:
    return ProductSnapshot(
        id=pid,
        title=title,
        tags=list(tags or []),
        total_inventory=5,
        variants=[VariantSnapshot(id=f"{pid}-v", title="Default Title", barcode=barcode, sku="RS-1", inventory_quantity=5)],
    )


def product_node(pid: str = "gid://shopify/Product/1", title: str = "Rose Stamp", tags: Optional[List[str]] = None, barcode: str = "123") -> Dict[str, Any]:
    return {
        "id": pid,
        "title": title,
        "status": "ACTIVE",
        "tags": list(tags or []),
        "totalInventory": 5,
        "product_thumbnail": {"nodes": []},
        "product_location": {"value": "A1"},
        "variants": {"edges": [{"node": {
            "id": "gid://shopify/ProductVariant/11",
            "title": "Default Title",
            "barcode": barcode,
            "sku": "RS-1",
            "inventoryQuantity": 5,
            "variant_thumbnail": None,
            "variant_location": None,
            "expiration_json": None,
        }}]},
    }


class ScriptedGraphQL:
    """Records calls and answers each one with the first handler whose marker occurs in the query."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.handlers: List[tuple] = []

    def on(self, marker: str, handler: Callable[[Dict[str, Any]], Dict[str, Any]]) -> "ScriptedGraphQL":
        self.handlers.append((marker, handler))
        return self

    async def __call__(self, query: str, variables: Optional[Dict[str, Any]] = None, *, shop: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append({"query": query, "variables": variables or {}, "shop": shop})
        for marker, handler in self.handlers:
            if marker in query:
                return handler(variables or {})
        raise AssertionError(f"unexpected query: {query[:60]}")

    def names(self) -> List[str]:
        out = []
        for c in self.calls:
            for marker, _ in self.handlers:
                if marker in c["query"]:
                    out.append(marker)
                    break
        return out


@pytest.fixture
def graphql(monkeypatch) -> ScriptedGraphQL:
    fake = ScriptedGraphQL()
    monkeypatch.setattr(shopify_client, "shopify_graphql", fake)
    return fake
