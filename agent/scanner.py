import os
import sys
import requests

API_URL = os.getenv("QUICKTAG_API_URL", "http://localhost:8000").rstrip("/")
SHOP = os.getenv("QUICKTAG_SHOP", "").strip()
DEFAULT_TAG = os.getenv("QUICKTAG_TAG", "").strip()


def create_session() -> str:
    params = {"shop": SHOP} if SHOP else {}
    r = requests.post(f"{API_URL}/api/tagging/sessions", params=params, timeout=10)
    r.raise_for_status()
    return r.json()["id"]


def scan(session_id: str, barcode: str, tag: str) -> dict:
    r = requests.post(
        f"{API_URL}/api/tagging/sessions/{session_id}/scan",
        json={"barcode": barcode, "tag": tag},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()


def reset(session_id: str) -> dict:
    r = requests.post(f"{API_URL}/api/tagging/sessions/{session_id}/reset", timeout=10)
    r.raise_for_status()
    return r.json()


def session_view(session_id: str) -> dict:
    r = requests.get(f"{API_URL}/api/tagging/sessions/{session_id}", timeout=10)
    r.raise_for_status()
    return r.json()


def latest_row_line(view: dict) -> str:
    rows = view.get("rows") or []
    if not rows:
        return ""
    row = rows[0]
    title = ((row.get("products") or [{}])[0] or {}).get("title") or ""
    if row.get("status") == "Success":
        return f"  last: OK {row.get('tag_used')} {title}".rstrip()
    return f"  last: FAIL {row.get('error') or ''} {title}".rstrip()


def handle_line(session_id: str, line: str, tag: str) -> str:
    """Process one input line and return the tag in effect afterwards."""
    text = line.strip()
    if not text:
        return tag
    if text.startswith(":tag"):
        new_tag = text[len(":tag"):].strip()
        if new_tag:
            print(f"Tag set to {new_tag}")
            return new_tag
        print("Usage: :tag <name>")
        return tag
    if text == ":reset":
        reset(session_id)
        print("Session history cleared")
        return tag
    if not tag:
        print("No tag selected; use :tag <name> first")
        return tag
    out = scan(session_id, text, tag)
    view = session_view(session_id)
    queue = view.get("queue") or {}
    print(f"Queued #{out.get('seq')} {text} -> {tag} (pending {queue.get('pending', 0)}, unique {view.get('unique_products', 0)})")
    last = latest_row_line(view)
    if last:
        print(last)
    return tag


def main():
    session_id = create_session()
    tag = DEFAULT_TAG
    print(f"Scanner started. Session {session_id}. Tag: {tag or '(none)'}")
    for line in sys.stdin:
        try:
            tag = handle_line(session_id, line, tag)
        except requests.RequestException as e:
            print("Error:", e)


if __name__ == "__main__":
    main()
