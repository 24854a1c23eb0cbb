from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    SEARCH_AND_TAG = "SearchAndTag"
    DELETE_TAG = "DeleteTag"
    ADD_TAG = "AddTag"
    REFRESH = "Refresh"


class TagStatus(str, Enum):
    EXISTING = "Existing"
    SUCCESS = "Success"
    FAILURE = "Failure"
    DELETED = "Deleted"
    READDED = "Readded"


class Severity(str, Enum):
    EXPIRED = "Expired"
    EXPIRING_SOON = "ExpiringSoon"
    NORMAL = "Normal"


class ChannelState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"


class Operation(BaseModel):
    """One queued unit of work. Frozen once the queue has stamped ``seq``."""

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    seq: int = 0
    barcode: Optional[str] = None
    tag: Optional[str] = None
    product_id: Optional[str] = None
    # Tag of the history row a per-row action came from; the result merges into that row.
    row_tag: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=_utcnow)


class ExpirationBatch(BaseModel):
    date: str
    days_until_expiration: int
    severity: Severity
    quantity: Optional[int] = None
    label: str = ""


class VariantSnapshot(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None
    barcode: Optional[str] = None
    sku: Optional[str] = None
    inventory_quantity: int = 0
    location: Optional[str] = None
    thumbnail_url: Optional[str] = None
    expiration_batches: List[ExpirationBatch] = []


class ProductSnapshot(BaseModel):
    id: Optional[str] = None
    title: str = ""
    tags: List[str] = []
    total_inventory: int = 0
    status: Optional[str] = None
    location: Optional[str] = None
    thumbnail_url: Optional[str] = None
    variants: List[VariantSnapshot] = []


class ResultRecord(BaseModel):
    success: bool = False
    tag_used: Optional[str] = None
    products: List[ProductSnapshot] = []
    error: Optional[str] = None
    error_kind: Optional[str] = None  # not_found | remote_error
    kind: Optional[OperationKind] = None
    seq: Optional[int] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    def merge_key(self) -> Tuple[Optional[str], Optional[str]]:
        first_id = self.products[0].id if self.products else None
        return (first_id, self.tag_used)


# ---------- Request bodies ----------
class ScanBody(BaseModel):
    barcode: str
    tag: str


class ProductTagBody(BaseModel):
    product_id: str
    tag: str
    row_tag: Optional[str] = None


class RefreshBody(BaseModel):
    product_id: str
    row_tag: Optional[str] = None


class BarcodeBody(BaseModel):
    barcode: Optional[str] = None
    session_id: Optional[str] = None


class TagSearchBody(BaseModel):
    tag: str
    scanned: List[str] = []
    previously_scanned: List[str] = []


class InventoryAdjustBody(BaseModel):
    inventory_level_name: str = "available"
    inventory_item_id: str
    location_id: str
    delta: int


class OrderExportBody(BaseModel):
    order_name: Optional[str] = None
    order_id: Optional[str] = None


class CartonLabelBody(BaseModel):
    order_name: str
    po_number: Optional[str] = None
    cartons: int = 1


class QrLabelBody(BaseModel):
    tags: str = ""
    url_prefix: str = ""
    per_row: int = Field(3, ge=1, le=10)
    font_size: int = Field(12, ge=6, le=30)


class LocationMove(BaseModel):
    """Either a pair of indexes or a drag-and-drop pair of location names."""
    from_index: Optional[int] = None
    to_index: Optional[int] = None
    active: Optional[str] = None
    over: Optional[str] = None


class PickingOrderBody(BaseModel):
    Main_Locations: List[str] = []
    Overstock_Locations: List[str] = []
    moves: List[LocationMove] = []


class OrderTagBody(BaseModel):
    order: Optional[str] = None
    tags: List[str] = []
