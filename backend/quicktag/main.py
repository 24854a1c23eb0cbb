import json
import os
import uuid
from time import time as _now
from typing import List, Optional, Dict, Any, Tuple
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from . import shopify_client
from .db import init_db
from .labels import parse_tag_lines, render_carton_labels, render_qr_sheet
from .operations import NO_MATCH_ERROR
from .order_export import (
    INVOICE_CSV_HEADERS,
    ORDER_EXPORT_QUERY,
    PRODUCTS_CSV_HEADERS,
    build_order_query,
    export_filename,
    invoice_csv_rows,
    map_export_order,
    products_csv_rows,
    to_csv,
    OrderExportData,
)
from .picking_order import PICKING_ORDER_FILENAME, array_move, build_picking_order, move_location
from .schemas import (
    BarcodeBody,
    CartonLabelBody,
    InventoryAdjustBody,
    OrderExportBody,
    OrderTagBody,
    PickingOrderBody,
    ProductTagBody,
    QrLabelBody,
    RefreshBody,
    ScanBody,
    TagSearchBody,
)
from .shopify_client import numeric_id
from .shopify_oauth_routes import router as oauth_router
from .tagging import SessionRegistry, TagSession

# ---------- FastAPI ----------
app = FastAPI(title="Quick Tag API", version="1.0.0")
app.include_router(oauth_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=500)

registry = SessionRegistry()
app.state.tagging_registry = registry

# Store URL per (lookup session, shop), fetched once per session.
LOOKUP_STORE_URLS: Dict[Tuple[str, str], Tuple[float, str]] = {}
try:
    LOOKUP_CACHE_TTL_SECONDS = int((os.environ.get("LOOKUP_CACHE_TTL_SECONDS", "3600") or "3600").strip() or 3600)
except Exception:
    LOOKUP_CACHE_TTL_SECONDS = 3600
try:
    LOOKUP_CACHE_MAX_KEYS = int((os.environ.get("LOOKUP_CACHE_MAX_KEYS", "500") or "500").strip() or 500)
except Exception:
    LOOKUP_CACHE_MAX_KEYS = 500


def _lookup_store_url_get(key: Tuple[str, str]) -> Optional[str]:
    try:
        ts, url = LOOKUP_STORE_URLS.get(key, (0.0, None))  # type: ignore
        if url is None:
            return None
        if (_now() - ts) > LOOKUP_CACHE_TTL_SECONDS:
            LOOKUP_STORE_URLS.pop(key, None)
            return None
        return url
    except Exception:
        return None


def _lookup_store_url_set(key: Tuple[str, str], url: str) -> None:
    LOOKUP_STORE_URLS[key] = (_now(), url)
    # Oldest entries go first
    while len(LOOKUP_STORE_URLS) > LOOKUP_CACHE_MAX_KEYS:
        oldest_key = min(LOOKUP_STORE_URLS.items(), key=lambda kv: kv[1][0])[0]
        LOOKUP_STORE_URLS.pop(oldest_key, None)


def _log_order_tagger(payload: Dict[str, Any]) -> None:
    try:
        print(json.dumps({"component": "order_tagger", **payload}, ensure_ascii=False))
    except Exception:
        print({"component": "order_tagger", **payload})


# ---------- WebSocket Manager ----------
class ConnectionManager:
    def __init__(self):
        self.active: List[WebSocket] = []
    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)
    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)
    async def broadcast(self, message: Dict[str, Any]):
        for ws in list(self.active):
            try:
                await ws.send_text(json.dumps(message))
            except Exception:
                self.disconnect(ws)
    async def close_all(self, code: int = 1000):
        for ws in list(self.active):
            try:
                await ws.close(code=code)
            except Exception:
                pass
        self.active.clear()

managers: Dict[str, ConnectionManager] = {}


def _manager_for(session: TagSession) -> ConnectionManager:
    mgr = managers.get(session.id)
    if mgr is None:
        mgr = ConnectionManager()
        managers[session.id] = mgr
        session.listeners.append(mgr.broadcast)
    return mgr


async def _close_session(session: TagSession) -> None:
    mgr = managers.pop(session.id, None)
    if mgr is None:
        return
    if mgr.broadcast in session.listeners:
        session.listeners.remove(mgr.broadcast)
    await mgr.close_all()


app.state.close_tagging_session = _close_session


def _require_session(session_id: str) -> TagSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Tagging session not found")
    return session


@app.get("/api/health")
async def health():
    return {"ok": True, "tagging_sessions": len(registry)}


# ---------- Tagging sessions ----------
@app.post("/api/tagging/sessions")
async def create_tagging_session(shop: Optional[str] = Query(None, description="Shop domain; defaults to the configured store")):
    session = registry.create(shop=(shop or "").strip().lower() or None)
    _manager_for(session)
    return session.view()


@app.get("/api/tagging/sessions/{session_id}")
async def get_tagging_session(session_id: str):
    return _require_session(session_id).view()


@app.post("/api/tagging/sessions/{session_id}/scan")
async def scan_barcode(session_id: str, body: ScanBody):
    session = _require_session(session_id)
    barcode = (body.barcode or "").strip()
    tag = (body.tag or "").strip()
    if not barcode:
        raise HTTPException(status_code=400, detail="Missing barcode")
    if not tag:
        raise HTTPException(status_code=400, detail="Missing tag")
    op = session.enqueue_scan(barcode, tag)
    return {"queued": True, "seq": op.seq, "pending": len(session.queue)}


@app.post("/api/tagging/sessions/{session_id}/delete-tag")
async def delete_tag(session_id: str, body: ProductTagBody):
    session = _require_session(session_id)
    op = session.enqueue_delete_tag(body.product_id, body.tag, row_tag=body.row_tag)
    return {"queued": True, "seq": op.seq, "pending": len(session.queue)}


@app.post("/api/tagging/sessions/{session_id}/add-tag")
async def add_tag_back(session_id: str, body: ProductTagBody):
    session = _require_session(session_id)
    op = session.enqueue_add_tag(body.product_id, body.tag, row_tag=body.row_tag)
    return {"queued": True, "seq": op.seq, "pending": len(session.queue)}


@app.post("/api/tagging/sessions/{session_id}/refresh")
async def refresh_product(session_id: str, body: RefreshBody):
    session = _require_session(session_id)
    op = session.enqueue_refresh(body.product_id, row_tag=body.row_tag)
    return {"queued": True, "seq": op.seq, "pending": len(session.queue)}


@app.post("/api/tagging/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    session = _require_session(session_id)
    session.reset()
    return session.view()


@app.delete("/api/tagging/sessions/{session_id}")
async def close_tagging_session(session_id: str):
    session = registry.drop(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Tagging session not found")
    await _close_session(session)
    return {"closed": True, "session_id": session_id}


@app.delete("/api/tagging/sessions/{session_id}/queue/{seq}")
async def cancel_operation(session_id: str, seq: int):
    session = _require_session(session_id)
    if not session.cancel(seq):
        raise HTTPException(status_code=409, detail="Operation is in flight or no longer pending")
    return {"cancelled": True, "seq": seq, "pending": len(session.queue)}


@app.websocket("/ws/tagging/{session_id}")
async def ws_tagging(websocket: WebSocket, session_id: str):
    session = registry.get(session_id)
    if session is None:
        await websocket.close(code=4404)
        return
    mgr = _manager_for(session)
    await mgr.connect(websocket)
    try:
        while True:
            # Keep-alive; clients do not send anything meaningful
            await websocket.receive_text()
    except WebSocketDisconnect:
        mgr.disconnect(websocket)


# ---------- Product lookup ----------
@app.post("/api/product-lookup")
async def product_lookup(body: BarcodeBody, shop: Optional[str] = Query(None)):
    if body.session_id:
        session_id = body.session_id
        key = (session_id, (shop or "").strip().lower())
        store_url = _lookup_store_url_get(key)
        if store_url is None:
            store_url = await shopify_client.get_shop_url(shop=shop)
            _lookup_store_url_set(key, store_url)
    else:
        # Sessionless calls are not cached; the client reuses the returned id
        session_id = str(uuid.uuid4())
        store_url = await shopify_client.get_shop_url(shop=shop)
    barcode = (body.barcode or "").strip()
    if not barcode:
        return {"session_id": session_id, "store_url": store_url}
    product = await shopify_client.search_product_by_barcode(barcode, shop=shop)
    if product is None:
        return {"session_id": session_id, "store_url": store_url, "success": False, "error": NO_MATCH_ERROR, "barcode": barcode}
    return {
        "session_id": session_id,
        "store_url": store_url,
        "success": True,
        "barcode": barcode,
        "product": product.model_dump(),
        "admin_url": f"{store_url}/admin/products/{numeric_id(product.id)}",
    }


# ---------- Tag search ----------
def scan_status(barcode: Optional[str], scanned: List[str], previously_scanned: List[str]) -> str:
    if not barcode:
        return ""
    if barcode in previously_scanned:
        return "Scanned"
    if barcode in scanned:
        return "Newly Scanned"
    return ""


@app.post("/api/tag-search")
async def tag_search(body: TagSearchBody, shop: Optional[str] = Query(None)):
    tag = (body.tag or "").strip()
    if not tag:
        raise HTTPException(status_code=400, detail="Missing tag")
    products = await shopify_client.search_products_by_tag(tag, shop=shop)
    results = []
    for p in products:
        results.append({
            "id": p.id,
            "title": p.title,
            "total_inventory": p.total_inventory,
            "variants": [
                {
                    "id": v.id,
                    "title": p.title if v.title == "Default Title" else v.title,
                    "barcode": v.barcode or "N/A",
                    "sku": v.sku or "N/A",
                    "inventory_quantity": v.inventory_quantity,
                    "status": scan_status(v.barcode, body.scanned, body.previously_scanned),
                }
                for v in p.variants
            ],
        })
    return {"success": True, "tag": tag, "results": results}


# ---------- Inventory ----------
@app.post("/api/inventory/adjust")
async def inventory_adjust(body: InventoryAdjustBody, shop: Optional[str] = Query(None)):
    if int(body.delta) == 0:
        raise HTTPException(status_code=400, detail="Delta must not be zero")
    out = await shopify_client.adjust_inventory(
        body.inventory_level_name, body.inventory_item_id, body.location_id, body.delta, shop=shop
    )
    return {"success": True, **out}


# ---------- Order export ----------
async def _load_export_order(body: OrderExportBody, shop: Optional[str]) -> OrderExportData:
    query = build_order_query(body.order_name, body.order_id)
    if query is None:
        raise HTTPException(status_code=400, detail="Order name or ID is required")
    data = await shopify_client.shopify_graphql(ORDER_EXPORT_QUERY, {"query": query}, shop=shop)
    edges = ((data.get("orders") or {}).get("edges")) or []
    if not edges:
        raise HTTPException(status_code=404, detail="Order not found")
    return map_export_order(edges[0].get("node") or {})


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/order-export")
async def order_export(body: OrderExportBody, shop: Optional[str] = Query(None)):
    order = await _load_export_order(body, shop)
    return {
        "order": order.model_dump(),
        "invoice_filename": export_filename(order, "invoice"),
        "products_filename": export_filename(order, "products"),
        "invoice_csv": to_csv(INVOICE_CSV_HEADERS, invoice_csv_rows(order)),
        "products_csv": to_csv(PRODUCTS_CSV_HEADERS, products_csv_rows(order)),
    }


@app.post("/api/order-export/invoice.csv")
async def order_export_invoice_csv(body: OrderExportBody, shop: Optional[str] = Query(None)):
    order = await _load_export_order(body, shop)
    return _csv_response(to_csv(INVOICE_CSV_HEADERS, invoice_csv_rows(order)), export_filename(order, "invoice"))


@app.post("/api/order-export/products.csv")
async def order_export_products_csv(body: OrderExportBody, shop: Optional[str] = Query(None)):
    order = await _load_export_order(body, shop)
    return _csv_response(to_csv(PRODUCTS_CSV_HEADERS, products_csv_rows(order)), export_filename(order, "products"))


# ---------- Labels ----------
@app.post("/api/labels/carton", response_class=HTMLResponse)
async def carton_label_sheet(body: CartonLabelBody):
    order_name = (body.order_name or "").strip()
    if not order_name:
        raise HTTPException(status_code=400, detail="Missing order")
    return HTMLResponse(render_carton_labels(order_name, body.cartons, body.po_number))


@app.post("/api/labels/qr", response_class=HTMLResponse)
async def qr_label_sheet(body: QrLabelBody):
    tags = parse_tag_lines(body.tags)
    if not tags:
        raise HTTPException(status_code=400, detail="Missing tags")
    return HTMLResponse(render_qr_sheet(tags, body.url_prefix, per_row=body.per_row, font_size=body.font_size))


# ---------- Picking order ----------
@app.post("/api/picking-order")
async def picking_order(body: PickingOrderBody):
    locations = list(body.Main_Locations)
    try:
        for move in body.moves:
            if move.active is not None and move.over is not None:
                locations = move_location(locations, move.active, move.over)
            elif move.from_index is not None and move.to_index is not None:
                locations = array_move(locations, move.from_index, move.to_index)
            else:
                raise HTTPException(status_code=400, detail="Each move needs from_index/to_index or active/over")
    except (IndexError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(
        build_picking_order(locations),
        headers={"Content-Disposition": f'attachment; filename="{PICKING_ORDER_FILENAME}"'},
    )


# ---------- Order tagger ----------
ORDER_TAGGER_QUERY = """
query getOrderGID($filter: String!) {
  orders(first: 1, query: $filter) {
    edges {
      node {
        id
        name
        createdAt
        lineItems(first: 100) { edges { node { quantity } } }
        customer { firstName lastName }
      }
    }
  }
}
"""


@app.post("/api/order-tagger")
async def order_tagger(body: OrderTagBody, shop: Optional[str] = Query(None)):
    order_name = (body.order or "").strip().lstrip("#")
    tags = [t.strip() for t in body.tags if (t or "").strip()]
    if not order_name:
        raise HTTPException(status_code=400, detail="Missing order.")
    if not tags:
        raise HTTPException(status_code=400, detail="Missing tags.")

    data = await shopify_client.shopify_graphql(ORDER_TAGGER_QUERY, {"filter": f"name:#{order_name}"}, shop=shop)
    edges = ((data.get("orders") or {}).get("edges")) or []
    node = (edges[0].get("node") if edges else None) or None
    if not node:
        _log_order_tagger({"event": "order_not_found", "order": order_name})
        raise HTTPException(status_code=404, detail="Order not found.")

    await shopify_client.add_tags(node["id"], tags, shop=shop)
    customer = node.get("customer") or {}
    item_count = sum(int(((e or {}).get("node") or {}).get("quantity") or 0) for e in ((node.get("lineItems") or {}).get("edges") or []))
    _log_order_tagger({"event": "tagged", "order": node.get("name"), "tags": tags})
    return {
        "success": True,
        "orderName": node.get("name") or f"#{order_name}",
        "orderDate": node.get("createdAt"),
        "customerName": " ".join(p for p in [customer.get("firstName"), customer.get("lastName")] if p),
        "itemCount": item_count,
        "tagsAdded": tags,
    }


# ---------- Startup ----------
@app.on_event("startup")
async def _init_db_tables():
    try:
        await init_db()
    except Exception as e:
        print(f"[DB] Failed to init tables: {e}")


@app.on_event("startup")
async def _log_routes():
    print("[ROUTES] Registered routes in order:")
    for r in app.router.routes:
        path = getattr(r, "path", "?")
        print(f" - {r.__class__.__name__}: {path} ({getattr(r, 'name', '')})")
