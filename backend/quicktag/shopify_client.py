import asyncio
import os
import random
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException

from .expiration import parse_expiration_metafield
from .schemas import ProductSnapshot, VariantSnapshot

# ---------- Settings ----------
SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2025-01").strip()
SHOPIFY_STORE_DOMAIN = os.environ.get("SHOPIFY_STORE_DOMAIN", "").strip().lower()
SHOPIFY_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN", "").strip()

MAX_RETRIES = 5
BASE_DELAY = 0.35


async def resolve_shop_credentials(shop: Optional[str] = None) -> Tuple[str, str]:
    """Return (domain, access_token) for the requested shop.

    Env credentials win for the configured store; otherwise the offline
    session stored by the OAuth callback is used.
    """
    domain = (shop or SHOPIFY_STORE_DOMAIN or "").strip().lower()
    if SHOPIFY_ACCESS_TOKEN and (not shop or domain == SHOPIFY_STORE_DOMAIN):
        return (domain, SHOPIFY_ACCESS_TOKEN)
    if not domain:
        return ("", "")
    from .db import SessionLocal
    from .session_store import get_offline_session

    async with SessionLocal() as db:
        rec = await get_offline_session(db, domain)
    if not rec:
        return (domain, "")
    return (domain, rec.access_token or "")


def _graphql_url(domain: str) -> str:
    return f"https://{domain}/admin/api/{SHOPIFY_API_VERSION}/graphql.json"


def _backoff(attempt: int) -> float:
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, 0.15)


async def shopify_graphql(query: str, variables: Dict[str, Any] | None = None, *, shop: Optional[str] = None) -> Dict[str, Any]:
    domain, token = await resolve_shop_credentials(shop)
    if not domain or not token:
        raise HTTPException(status_code=400, detail="Shopify credentials not configured for this shop")
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "X-Shopify-Access-Token": token,
    }

    last_exc: Optional[Exception] = None
    url = _graphql_url(domain)
    async with httpx.AsyncClient(timeout=30) as client:
        for attempt in range(MAX_RETRIES):
            try:
                r = await client.post(url, headers=headers, json={"query": query, "variables": variables or {}})
                if r.status_code in (429, 430, 503):
                    ra = r.headers.get("Retry-After")
                    if attempt < MAX_RETRIES - 1:
                        try:
                            wait = float(ra) if ra else _backoff(attempt)
                        except ValueError:
                            wait = _backoff(attempt)
                        await asyncio.sleep(wait)
                        continue
                    raise HTTPException(status_code=429, detail="Shopify API is throttling requests. Please try again shortly.")

                r.raise_for_status()
                data = r.json()
                if "errors" in data:
                    errs = data.get("errors") or []
                    is_throttled = any(((e.get("extensions") or {}).get("code") or "").upper() == "THROTTLED" for e in errs)
                    if is_throttled and attempt < MAX_RETRIES - 1:
                        await asyncio.sleep(_backoff(attempt))
                        continue
                    raise HTTPException(status_code=502, detail=f"Shopify GraphQL errors: {errs}")
                return data["data"]
            except HTTPException as he:
                last_exc = he
                break
            except Exception as e:
                last_exc = e
                # Transient network failures retry with backoff
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(_backoff(attempt))
                    continue
                break

    if isinstance(last_exc, HTTPException):
        raise last_exc
    raise HTTPException(status_code=502, detail=f"Shopify request failed: {last_exc}")


def _raise_user_errors(payload: Dict[str, Any], field: str) -> None:
    errs = (((payload or {}).get(field) or {}).get("userErrors")) or []
    if errs:
        raise HTTPException(status_code=400, detail=(errs[0] or {}).get("message") or f"{field} failed")


# ---------- Queries ----------
_VARIANT_FIELDS = """
          id
          title
          barcode
          sku
          inventoryQuantity
          variant_thumbnail: image { url(transform: {maxWidth: 50}) }
          variant_location: metafield(namespace: "custom", key: "variant_location") { value }
          expiration_json: metafield(namespace: "expiration_dates", key: "allocations") { value }
"""

_PRODUCT_FIELDS = """
      id
      title
      status
      tags
      totalInventory
      product_thumbnail: media(first: 1) { nodes { preview { image { url(transform: {maxWidth: 50}) } } } }
      product_location: metafield(namespace: "custom", key: "product_location") { value }
      variants(first: 50) {
        edges {
          node {
%s
          }
        }
      }
""" % _VARIANT_FIELDS

SHOP_URL_QUERY = """
query adminInfo {
  shop { url }
}
"""

SEARCH_PRODUCTS_QUERY = """
query searchProducts($queryString: String, $first: Int!, $after: String) {
  products(first: $first, after: $after, query: $queryString) {
    edges {
      node {
%s
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
""" % _PRODUCT_FIELDS

GET_PRODUCT_QUERY = """
query getProduct($id: ID!) {
  product(id: $id) {
%s
  }
}
""" % _PRODUCT_FIELDS

ADD_TAGS_MUTATION = """
mutation addTags($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

REMOVE_TAGS_MUTATION = """
mutation removeTags($id: ID!, $tags: [String!]!) {
  tagsRemove(id: $id, tags: $tags) {
    userErrors { field message }
  }
}
"""

ADJUST_INVENTORY_MUTATION = """
mutation adjustInventory($inventoryLevelName: String!, $inventoryItemId: ID!, $locationId: ID!, $delta: Int!) {
  inventoryAdjustQuantities(
    input: {
      reason: "correction",
      name: $inventoryLevelName,
      changes: [{ inventoryItemId: $inventoryItemId, locationId: $locationId, delta: $delta }]
    }
  ) {
    inventoryAdjustmentGroup {
      changes {
        delta
        name
        quantityAfterChange
        location { id name }
        item { variant { title product { id title } } }
      }
    }
    userErrors { field message }
  }
}
"""


# ---------- Mapping ----------
def numeric_id(gid: Optional[str]) -> str:
    """Trailing numeric part of a Shopify GID, e.g. "gid://shopify/Product/42" -> "42"."""
    return (gid or "").rstrip("/").split("/")[-1]


def _metafield_value(node: Dict[str, Any], alias: str) -> Optional[str]:
    return ((node.get(alias) or {}) or {}).get("value")


def map_variant_node(node: Dict[str, Any], now: Optional[datetime] = None) -> VariantSnapshot:
    qty = node.get("inventoryQuantity")
    return VariantSnapshot(
        id=node.get("id"),
        title=node.get("title"),
        barcode=node.get("barcode"),
        sku=node.get("sku"),
        inventory_quantity=int(qty or 0),
        location=_metafield_value(node, "variant_location"),
        thumbnail_url=((node.get("variant_thumbnail") or {}) or {}).get("url"),
        expiration_batches=parse_expiration_metafield(_metafield_value(node, "expiration_json"), now),
    )


def map_product_node(node: Dict[str, Any], now: Optional[datetime] = None) -> ProductSnapshot:
    thumb = None
    media_nodes = ((node.get("product_thumbnail") or {}).get("nodes")) or []
    if media_nodes:
        thumb = ((((media_nodes[0] or {}).get("preview") or {}).get("image")) or {}).get("url")
    variants: List[VariantSnapshot] = []
    for edge in ((node.get("variants") or {}).get("edges")) or []:
        variants.append(map_variant_node(edge.get("node") or {}, now))
    return ProductSnapshot(
        id=node.get("id"),
        title=node.get("title") or "",
        tags=list(dict.fromkeys(node.get("tags") or [])),
        total_inventory=int(node.get("totalInventory") or 0),
        status=node.get("status"),
        location=_metafield_value(node, "product_location"),
        thumbnail_url=thumb,
        variants=variants,
    )


# ---------- Remote operations ----------
async def get_shop_url(*, shop: Optional[str] = None) -> str:
    data = await shopify_graphql(SHOP_URL_QUERY, {}, shop=shop)
    return (((data or {}).get("shop") or {}).get("url")) or ""


async def search_product_by_barcode(barcode: str, *, shop: Optional[str] = None) -> Optional[ProductSnapshot]:
    variables = {"queryString": f"barcode:{barcode}", "first": 1, "after": None}
    data = await shopify_graphql(SEARCH_PRODUCTS_QUERY, variables, shop=shop)
    edges = ((data.get("products") or {}).get("edges")) or []
    if not edges:
        return None
    return map_product_node(edges[0].get("node") or {})


async def search_products_by_tag(tag: str, *, shop: Optional[str] = None, page_size: int = 250) -> List[ProductSnapshot]:
    out: List[ProductSnapshot] = []
    cursor = None
    while True:
        variables = {"queryString": f"tag:{tag}", "first": page_size, "after": cursor}
        data = await shopify_graphql(SEARCH_PRODUCTS_QUERY, variables, shop=shop)
        products = data.get("products")
        if not products:
            break
        for edge in products.get("edges") or []:
            out.append(map_product_node(edge.get("node") or {}))
        page_info = products.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor")
        # A repeated cursor would loop forever
        if not page_info.get("hasNextPage") or not next_cursor or next_cursor == cursor:
            break
        cursor = next_cursor
    return out


async def get_product(product_id: str, *, shop: Optional[str] = None) -> Optional[ProductSnapshot]:
    data = await shopify_graphql(GET_PRODUCT_QUERY, {"id": product_id}, shop=shop)
    node = data.get("product")
    if not node:
        return None
    return map_product_node(node)


async def add_tags(resource_gid: str, tags: List[str], *, shop: Optional[str] = None) -> Dict[str, Any]:
    data = await shopify_graphql(ADD_TAGS_MUTATION, {"id": resource_gid, "tags": tags}, shop=shop)
    _raise_user_errors(data, "tagsAdd")
    return data


async def remove_tags(resource_gid: str, tags: List[str], *, shop: Optional[str] = None) -> Dict[str, Any]:
    data = await shopify_graphql(REMOVE_TAGS_MUTATION, {"id": resource_gid, "tags": tags}, shop=shop)
    _raise_user_errors(data, "tagsRemove")
    return data


async def adjust_inventory(inventory_level_name: str, inventory_item_id: str, location_id: str, delta: int, *, shop: Optional[str] = None) -> Dict[str, Any]:
    variables = {
        "inventoryLevelName": inventory_level_name,
        "inventoryItemId": inventory_item_id,
        "locationId": location_id,
        "delta": int(delta),
    }
    data = await shopify_graphql(ADJUST_INVENTORY_MUTATION, variables, shop=shop)
    _raise_user_errors(data, "inventoryAdjustQuantities")
    changes = ((((data.get("inventoryAdjustQuantities") or {}).get("inventoryAdjustmentGroup")) or {}).get("changes")) or []
    first = changes[0] if changes else {}
    product = ((((first.get("item") or {}).get("variant")) or {}).get("product")) or {}
    return {
        "quantityAfterChange": first.get("quantityAfterChange"),
        "productId": product.get("id"),
        "changes": changes,
    }
