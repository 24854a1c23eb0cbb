from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ShopSession


def offline_session_id(shop: str) -> str:
    return f"offline_{(shop or '').strip().lower()}"


async def get_offline_session(db: AsyncSession, shop: str) -> Optional[ShopSession]:
    return await db.scalar(select(ShopSession).where(ShopSession.id == offline_session_id(shop)))


async def store_offline_session(
    db: AsyncSession,
    *,
    shop: str,
    access_token: str,
    scope: str,
    state: Optional[str] = None,
) -> ShopSession:
    sid = offline_session_id(shop)
    row = await db.scalar(select(ShopSession).where(ShopSession.id == sid))
    if not row:
        row = ShopSession(id=sid, shop=(shop or "").strip().lower(), is_online=False)
        db.add(row)
    row.access_token = (access_token or "").strip()
    row.scope = (scope or "").strip()
    row.state = state
    await db.commit()
    return row


async def delete_sessions_for_shop(db: AsyncSession, shop: str) -> int:
    res = await db.execute(delete(ShopSession).where(ShopSession.shop == (shop or "").strip().lower()))
    await db.commit()
    return int(res.rowcount or 0)
