"""Remote execution of queued tagging operations.

``execute_operation`` is the only place a tagging operation talks to Shopify.
It never raises: every failure is folded into a ``ResultRecord`` with
``success=False`` so the dispatcher can always move on to the next operation.
"""
from typing import List, Optional

from fastapi import HTTPException

from . import shopify_client
from .schemas import Operation, OperationKind, ProductSnapshot, ResultRecord, VariantSnapshot

NO_MATCH_ERROR = "No Matching Barcode error"


def not_found_product(barcode: str) -> ProductSnapshot:
    return ProductSnapshot(
        id=None,
        title=f"No Matching Barcode:{barcode}",
        tags=[],
        total_inventory=0,
        variants=[VariantSnapshot(barcode=barcode, sku=NO_MATCH_ERROR, inventory_quantity=0)],
    )


def merged_tags(existing: List[str], tag: str) -> List[str]:
    return list(dict.fromkeys([*(existing or []), tag]))


async def _search_and_tag(op: Operation, shop: Optional[str]) -> ResultRecord:
    barcode = (op.barcode or "").strip()
    tag = (op.tag or "").strip()
    result = ResultRecord(tag_used=tag or None, kind=op.kind, seq=op.seq)
    product = await shopify_client.search_product_by_barcode(barcode, shop=shop)
    if product is None:
        result.error = NO_MATCH_ERROR
        result.error_kind = "not_found"
        result.products = [not_found_product(barcode)]
        return result
    # tagsAdd receives the full desired list, so concurrent calls would clobber each other
    updated = merged_tags(product.tags, tag) if tag else list(product.tags)
    await shopify_client.add_tags(product.id or "", updated, shop=shop)
    result.success = True
    result.products = [product.model_copy(update={"tags": updated})]
    return result


async def _change_tag(op: Operation, shop: Optional[str]) -> ResultRecord:
    result = ResultRecord(tag_used=op.row_tag, kind=op.kind, seq=op.seq)
    if op.kind == OperationKind.DELETE_TAG:
        await shopify_client.remove_tags(op.product_id or "", [op.tag or ""], shop=shop)
    else:
        await shopify_client.add_tags(op.product_id or "", [op.tag or ""], shop=shop)
    result.success = True
    product = await shopify_client.get_product(op.product_id or "", shop=shop)
    if product is not None:
        result.products = [product]
    return result


async def _refresh(op: Operation, shop: Optional[str]) -> ResultRecord:
    result = ResultRecord(tag_used=op.row_tag, kind=op.kind, seq=op.seq)
    product = await shopify_client.get_product(op.product_id or "", shop=shop)
    if product is None:
        result.error = f"Product not found: {op.product_id}"
        result.error_kind = "not_found"
        return result
    result.success = True
    result.products = [product]
    return result


async def execute_operation(op: Operation, *, shop: Optional[str] = None) -> ResultRecord:
    try:
        if op.kind == OperationKind.SEARCH_AND_TAG:
            return await _search_and_tag(op, shop)
        if op.kind in (OperationKind.DELETE_TAG, OperationKind.ADD_TAG):
            return await _change_tag(op, shop)
        return await _refresh(op, shop)
    except HTTPException as he:
        return ResultRecord(
            success=False,
            tag_used=op.tag if op.kind == OperationKind.SEARCH_AND_TAG else op.row_tag,
            error=str(he.detail),
            error_kind="remote_error",
            kind=op.kind,
            seq=op.seq,
        )
    except Exception as e:
        return ResultRecord(
            success=False,
            tag_used=op.tag if op.kind == OperationKind.SEARCH_AND_TAG else op.row_tag,
            error=str(e) or e.__class__.__name__,
            error_kind="remote_error",
            kind=op.kind,
            seq=op.seq,
        )
