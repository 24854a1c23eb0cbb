from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    String,
    Text,
    func,
)
from .db import Base


class ShopSession(Base):
    """
    OAuth session for a shop.

    Offline sessions are keyed "offline_{shop}" and hold the long-lived Admin API
    token used by the tagging queue when no env token is configured.
    """

    __tablename__ = "shop_sessions"

    id = Column(String(255), primary_key=True)
    shop = Column(String(255), nullable=False, index=True)
    state = Column(String(255), nullable=True)
    is_online = Column(Boolean, nullable=False, default=False)
    scope = Column(Text, nullable=True)
    access_token = Column(Text, nullable=True)
    expires = Column(DateTime(timezone=True), nullable=True)
    user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
