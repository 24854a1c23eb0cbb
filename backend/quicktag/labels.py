import base64
import html
from functools import lru_cache
from io import BytesIO
from typing import List, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M


@lru_cache(maxsize=4096)
def qr_png_b64(text: str, box_size: int = 8, border: int = 2) -> str:
    """Generate a compact QR PNG (base64-encoded, ASCII) for the given text.

    Cached in-memory to handle bursts efficiently.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def parse_tag_lines(raw: str) -> List[str]:
    return [t.strip() for t in (raw or "").split("\n") if t.strip()]


def qr_size(per_row: int) -> float:
    return min(100, 1000 / per_row - 40)


def render_qr_sheet(tags: List[str], url_prefix: str, per_row: int = 3, font_size: int = 12) -> str:
    size = qr_size(per_row)
    items = []
    for tag in tags:
        target = f"{url_prefix}{tag}"
        items.append(
            '<div class="qr-code-item">'
            f'<a href="{html.escape(target, quote=True)}" target="_blank" rel="noopener noreferrer">'
            f'<img src="data:image/png;base64,{qr_png_b64(target)}" width="{size:g}" height="{size:g}" alt="{html.escape(tag, quote=True)}"/>'
            "</a>"
            f"<p>{html.escape(tag)}</p>"
            "</div>"
        )
    return f"""<html>
<head>
  <title>QR Codes</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; text-align: center; }}
    .qr-code-grid {{ display: grid; grid-template-columns: repeat({per_row}, minmax(0, 1fr)); gap: 20px; width: 100%; }}
    .qr-code-item {{ text-align: center; }}
    .qr-code-item p {{ margin-top: 10px; font-size: {font_size}px; }}
  </style>
</head>
<body>
  <div class="qr-code-grid">{''.join(items)}</div>
</body>
</html>"""


def carton_labels(order_name: str, cartons: int, po_number: Optional[str] = None) -> List[dict]:
    count = max(1, int(cartons or 1))
    po = (po_number or "").strip() or None
    return [
        {"order": order_name, "po_number": po, "count": f"{i} of {count}", "mixed": "MIXED CARTON"}
        for i in range(1, count + 1)
    ]


def render_carton_labels(order_name: str, cartons: int, po_number: Optional[str] = None) -> str:
    sheets = []
    for label in carton_labels(order_name, cartons, po_number):
        po_row = ""
        if label["po_number"]:
            po_row = f'<div class="row"><div class="k">PO#:</div><div class="v">{html.escape(label["po_number"])}</div></div>'
        sheets.append(
            '<div class="print-sheet"><div class="label-4x6"><div class="label-inner">'
            f'<div class="row"><div class="k">Order:</div><div class="v">{html.escape(label["order"])}</div></div>'
            f"{po_row}"
            f'<div class="count">{label["count"]}</div>'
            f'<div class="mixed">{label["mixed"]}</div>'
            "</div></div></div>"
        )
    return f"""<html>
<head>
  <title>Carton Labels {html.escape(order_name)}</title>
  <style>
    @page {{ size: 4in 6in; margin: 0; }}
    body {{ margin: 0; font-family: Arial, sans-serif; }}
    .print-sheet {{ page-break-after: always; }}
    .label-4x6 {{ width: 4in; height: 6in; box-sizing: border-box; padding: 0.3in; }}
    .row {{ display: flex; gap: 0.2in; font-size: 28px; margin-bottom: 0.2in; }}
    .k {{ font-weight: bold; }}
    .count {{ font-size: 56px; font-weight: bold; text-align: center; margin-top: 0.5in; }}
    .mixed {{ font-size: 32px; text-align: center; margin-top: 0.4in; letter-spacing: 2px; }}
  </style>
</head>
<body>{''.join(sheets)}</body>
</html>"""
