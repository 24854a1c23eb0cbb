"""QuickBooks Online CSV export for a single Shopify order."""
import csv
import io
import math
import re
import unicodedata
from datetime import date
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

Cell = Union[str, int, float]

# Variant-title keyword -> QuickBooks category; first match wins.
COORDINATING_CATEGORY_MAP: Dict[str, str] = {
    "Stamp and Die": "Combo",
    "Stamp & Coordinating Die": "Combo",
    "Coordinating Products": "Combo",
    "Stamp": "Stamp",
    "Die": "Die",
    "Chipboard": "Chipboard",
    "Bundle": "Bundle",
}

ORDER_EXPORT_QUERY = """
query getOrderByQuery($query: String!) {
  orders(first: 1, query: $query) {
    edges {
      node {
        id
        name
        createdAt
        customer {
          displayName
          quickbooksName: metafield(namespace: "custom", key: "quickbooks_name") { value }
        }
        customerPONumber: metafield(namespace: "custom", key: "customer_po_number") { value }
        lineItems(first: 250) {
          edges {
            node {
              title
              variantTitle
              quantity
              currentQuantity
              originalUnitPriceSet { shopMoney { amount } }
              variant { sku product { productType } }
            }
          }
        }
      }
    }
  }
}
"""

INVOICE_CSV_HEADERS = [
    "InvoiceNo",
    "Customer",
    "InvoiceDate",
    "DueDate",
    "Terms",
    "Location",
    "Memo",
    "ProductName",
    "Item(Product/Service)",
    "ItemDescription",
    "ItemQuantity",
    "ItemRate",
    "ItemAmount",
    "Taxable",
    "TaxRate",
    "Shipping address",
    "Ship via",
    "Shipping date",
    "Tracking no",
    "Shipping Charge",
    "Service Date",
]

PRODUCTS_CSV_HEADERS = [
    "Product/Service Name",
    "Buy",
    "Sell",
    "Item Type",
    "SKU",
    "Sales price/rate",
    "Purchase cost",
    "Income account",
    "Expense account",
    "Category",
    "Sales description",
    "Purchase description",
    "Parent",
    "Option Name",
    "Option Value",
]


class ExportLineItem(BaseModel):
    title: str = ""
    quantity: int = 0
    current_quantity: int = 0
    rate: float = 0.0
    sku: str = ""
    category: str = ""

    @property
    def ws_price(self) -> float:
        return wholesale_price(self.rate)


class OrderExportData(BaseModel):
    name: str
    customer: str = "Guest"
    created_at: Optional[str] = None
    po_number: Optional[str] = None
    line_items: List[ExportLineItem] = []


def round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def wholesale_price(rate: float) -> float:
    """Half the retail rate, rounded to the nearest 0.50."""
    return round_half_up(rate / 2 / 0.5) * 0.5


def pick_coordinating_category(variant_title: Optional[str]) -> Optional[str]:
    if not variant_title:
        return None
    vt = variant_title.lower()
    for key, category in COORDINATING_CATEGORY_MAP.items():
        if key.lower() in vt:
            return category
    return None


def build_order_query(order_name: Optional[str], order_id: Optional[str]) -> Optional[str]:
    if order_id and order_id.strip():
        return f"id:{order_id.strip()}"
    if order_name and order_name.strip():
        return f"name:{order_name.strip().lstrip('#')}"
    return None


def map_export_order(node: Dict[str, Any]) -> OrderExportData:
    customer = node.get("customer") or {}
    qb_name = ((customer.get("quickbooksName") or {}) or {}).get("value")
    items: List[ExportLineItem] = []
    for edge in ((node.get("lineItems") or {}).get("edges")) or []:
        li = edge.get("node") or {}
        variant = li.get("variant") or {}
        try:
            rate = float((((li.get("originalUnitPriceSet") or {}).get("shopMoney")) or {}).get("amount") or 0)
        except (TypeError, ValueError):
            rate = 0.0
        category = ((variant.get("product") or {}).get("productType")) or pick_coordinating_category(li.get("variantTitle")) or ""
        qty = int(li.get("quantity") or 0)
        current = li.get("currentQuantity")
        items.append(ExportLineItem(
            title=li.get("title") or "",
            quantity=qty,
            current_quantity=int(current) if current is not None else qty,
            rate=rate,
            sku=variant.get("sku") or "",
            category=category,
        ))
    return OrderExportData(
        name=node.get("name") or "",
        customer=qb_name or customer.get("displayName") or "Guest",
        created_at=node.get("createdAt"),
        po_number=((node.get("customerPONumber") or {}) or {}).get("value"),
        line_items=items,
    )


def sanitize_qbo_text(value: Optional[str]) -> str:
    """Reduce text to the character set QuickBooks Online accepts in item fields.

    >>> sanitize_qbo_text("SKU®123")
    'SKU R123'
    >>> sanitize_qbo_text("Gadgets:New")
    'Gadgets-New'
    """
    if not value or not isinstance(value, str):
        return ""
    result = value
    # Symbols first; NFKD would otherwise decompose or drop them
    for symbol, text in (("™", " TM"), ("℠", " SM"), ("©", " C"), ("®", " R"), ("℗", " P"),
                         ("…", "..."), ("°", " deg"), ("½", " half"), ("¼", " quarter"), ("¾", " three-quarters")):
        result = result.replace(symbol, text)
    result = re.sub("[\\u2014\\u2013]", "-", result)
    result = re.sub("[\\u201c\\u201d\\u201e\\u201f]", "'", result)
    result = re.sub("[\\u2018\\u2019\\u201a\\u201b]", "'", result)
    result = result.replace('"', "'")
    result = result.replace(":", "-")
    result = unicodedata.normalize("NFKD", result)
    result = re.sub("[\\u0300-\\u036f]", "", result)
    result = re.sub(r"[^A-Za-z0-9,.?@&!#'~* _\-;+]", "", result)
    return re.sub(r"\s+", " ", result).strip()


def sanitize_filename(name: Optional[str]) -> str:
    return re.sub(r"[^a-zA-Z0-9 \-]", "", name or "").strip()


def us_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


def invoice_csv_rows(order: OrderExportData, today: Optional[date] = None) -> List[List[Cell]]:
    day = us_date(today or date.today())
    rows: List[List[Cell]] = []
    for item in order.line_items:
        title = sanitize_qbo_text(item.title)
        category = sanitize_qbo_text(item.category)
        sku = sanitize_qbo_text(item.sku)
        rows.append([
            order.name,
            order.customer,
            day,
            day,
            "Due on Receipt",
            "",
            order.po_number or "",
            title,
            f"{category}:{title}",
            sku,
            item.current_quantity,
            f"{item.ws_price:.2f}",
            f"{item.current_quantity * item.ws_price:.2f}",
            "N",
            "",
            "",
            "FedEx",
            day,
            "",
            "",
            "",
        ])
    return rows


def products_csv_rows(order: OrderExportData) -> List[List[Cell]]:
    rows: List[List[Cell]] = []
    for item in order.line_items:
        title = sanitize_qbo_text(item.title)
        rows.append([
            title,
            "N",
            "Y",
            "Non-Inventory",
            sanitize_qbo_text(item.sku),
            f"{item.rate:.2f}",
            "",
            "Sales",
            "Cost of Goods Sold",
            sanitize_qbo_text(item.category),
            title,
            "",
            "",
            "",
            "",
        ])
    return rows


def to_csv(headers: List[str], rows: List[List[Cell]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buf.getvalue().rstrip("\n")


def export_filename(order: OrderExportData, kind: str) -> str:
    parts = [sanitize_filename(order.customer), sanitize_filename(order.name)]
    po = (order.po_number or "").strip()
    if po:
        parts.append(sanitize_filename(po))
    return "-".join(parts) + f"-{kind}.csv"
