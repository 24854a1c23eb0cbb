from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import re
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .session_store import delete_sessions_for_shop, store_offline_session

router = APIRouter()

SHOPIFY_WEBHOOK_SECRET = os.environ.get("SHOPIFY_WEBHOOK_SECRET", "").strip()


def _log_oauth(payload: Dict[str, Any]) -> None:
    try:
        print(json.dumps({"component": "oauth", **payload}, ensure_ascii=False))
    except Exception:
        print({"component": "oauth", **payload})


def _base_url() -> str:
    base = (os.environ.get("BASE_URL") or "").strip()
    if not base:
        raise HTTPException(status_code=500, detail="BASE_URL not configured")
    return base.rstrip("/")


def _oauth_scopes() -> str:
    scopes = (os.environ.get("SHOPIFY_OAUTH_SCOPES") or "").strip()
    if not scopes:
        raise HTTPException(status_code=500, detail="SHOPIFY_OAUTH_SCOPES not configured")
    return ",".join([s.strip() for s in scopes.split(",") if s.strip()])


_SHOP_RE = re.compile(r"([a-z0-9][a-z0-9-]*\.myshopify\.com)")


def normalize_shop_domain(raw: str) -> str:
    """
    Normalize a shop domain to `<name>.myshopify.com`, accepting pasted URLs
    and repairing duplicated suffixes such as 'foo.myshopify.commyshopify.com'.
    """
    s = (raw or "").strip().lower()
    if not s:
        raise HTTPException(status_code=400, detail="missing shop")
    host = s
    if "://" in s:
        u = urllib.parse.urlparse(s)
        host = (u.netloc or u.path or "").strip().lower()
    host = host.split("/")[0].split("?")[0].split("#")[0].strip()
    m = _SHOP_RE.search(host) or _SHOP_RE.search(s)
    if not m:
        raise HTTPException(status_code=400, detail="invalid shop (expected *.myshopify.com)")
    return m.group(1)


def _state_secret() -> str:
    sec = (os.environ.get("OAUTH_STATE_SECRET") or "").strip()
    if not sec:
        raise HTTPException(status_code=500, detail="OAUTH_STATE_SECRET not configured")
    return sec


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def sign_state(payload: Dict[str, Any]) -> str:
    return jwt.encode(payload, _state_secret(), algorithm="HS256")


def verify_state(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, _state_secret(), algorithms=["HS256"])
    except JWTError:
        raise HTTPException(status_code=400, detail="invalid state")


def _client_creds() -> Tuple[str, str]:
    cid = (os.environ.get("SHOPIFY_CLIENT_ID") or "").strip()
    sec = (os.environ.get("SHOPIFY_CLIENT_SECRET") or "").strip()
    if not cid or not sec:
        raise HTTPException(status_code=500, detail="SHOPIFY_CLIENT_ID/SHOPIFY_CLIENT_SECRET not configured")
    return cid, sec


def canonical_hmac_message(qp: List[Tuple[str, str]]) -> str:
    keep = [(k, v) for (k, v) in qp if k not in ("hmac", "signature")]
    keep.sort(key=lambda kv: (kv[0], kv[1]))
    return urllib.parse.urlencode(keep, doseq=True)


def verify_query_hmac(qp: List[Tuple[str, str]], client_secret: str) -> bool:
    provided = ""
    for k, v in qp:
        if k == "hmac":
            provided = (v or "").strip().lower()
    if not provided:
        return False
    msg = canonical_hmac_message(qp)
    expected = hmac.new(client_secret.encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest().lower()
    return hmac.compare_digest(expected, provided)


def verify_webhook_hmac(raw_body: bytes, recv_hmac: str, secret: str) -> bool:
    if not secret:
        return False
    calc = base64.b64encode(hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()).decode()
    return hmac.compare_digest((recv_hmac or "").strip(), calc)


def _webhook_secret() -> str:
    return SHOPIFY_WEBHOOK_SECRET or (os.environ.get("SHOPIFY_CLIENT_SECRET") or "").strip()


@router.get("/api/shopify/oauth/start")
async def oauth_start(shop: str = Query(..., description="Shop domain, e.g. example.myshopify.com")):
    shop_norm = normalize_shop_domain(shop)
    cid, _ = _client_creds()
    now = _now_ts()
    state = sign_state({
        "shop": shop_norm,
        "nonce": os.urandom(16).hex(),
        "iat": now,
        "exp": now + 10 * 60,
    })
    qs = urllib.parse.urlencode({
        "client_id": cid,
        "scope": _oauth_scopes(),
        "redirect_uri": f"{_base_url()}/api/shopify/oauth/callback",
        "state": state,
    })
    return RedirectResponse(url=f"https://{shop_norm}/admin/oauth/authorize?{qs}", status_code=302)


@router.get("/api/shopify/oauth/callback")
async def oauth_callback(
    request: Request,
    state: str = Query(...),
    shop: str = Query(...),
    code: str = Query(...),
    db: AsyncSession = Depends(get_session),
):
    shop_norm = normalize_shop_domain(shop)
    st = verify_state(state)
    if not hmac.compare_digest(normalize_shop_domain(str(st.get("shop") or "")), shop_norm):
        raise HTTPException(status_code=400, detail="state/shop mismatch")

    cid, client_secret = _client_creds()
    qp = [(k, str(v)) for (k, v) in request.query_params.multi_items()]
    if not verify_query_hmac(qp, client_secret):
        _log_oauth({"event": "invalid_hmac", "shop": shop_norm, "keys": sorted({k for (k, _) in qp})})
        raise HTTPException(status_code=400, detail="invalid hmac")

    resp = requests.post(
        f"https://{shop_norm}/admin/oauth/access_token",
        json={"client_id": cid, "client_secret": client_secret, "code": code},
        timeout=30,
    )
    if not resp.ok:
        _log_oauth({"event": "token_exchange_failed", "shop": shop_norm, "status": resp.status_code})
        return JSONResponse(
            {"error": "token_exchange_failed", "status": resp.status_code, "shop": shop_norm, "body": (resp.text or "")[:2000]},
            status_code=502,
        )
    data = resp.json() if resp.content else {}
    access_token = (data.get("access_token") or "").strip()
    if not access_token:
        return JSONResponse({"error": "token_exchange_failed", "shop": shop_norm, "missing": "access_token"}, status_code=502)

    await store_offline_session(db, shop=shop_norm, access_token=access_token, scope=(data.get("scope") or ""), state=str(st.get("nonce") or ""))
    _log_oauth({"event": "installed", "shop": shop_norm})
    return RedirectResponse(url=f"/?shop={urllib.parse.quote(shop_norm)}&connected=1", status_code=302)


@router.post("/api/shopify/webhooks/app/uninstalled")
async def app_uninstalled_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(default=None),
    x_shopify_shop_domain: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_session),
):
    raw = await request.body()
    if not verify_webhook_hmac(raw, x_shopify_hmac_sha256 or "", _webhook_secret()):
        raise HTTPException(status_code=401, detail="bad hmac")
    shop_norm = normalize_shop_domain(x_shopify_shop_domain or "")
    deleted = await delete_sessions_for_shop(db, shop_norm)
    registry = getattr(request.app.state, "tagging_registry", None)
    dropped = registry.drop_shop(shop_norm) if registry is not None else []
    close_session = getattr(request.app.state, "close_tagging_session", None)
    if close_session is not None:
        for session in dropped:
            await close_session(session)
    _log_oauth({"event": "uninstalled", "shop": shop_norm, "sessions_deleted": deleted, "tagging_sessions_dropped": len(dropped)})
    return {"ok": True}
