from __future__ import annotations

import html
import re
from datetime import datetime, timezone

from dateutil import parser as date_parser


STATUS_PATTERN = re.compile(r"/([^/]+)/status/(\d+)")
STATUS_ID_PATTERN = re.compile(r"/status/(\d+)")
LOCALHOST_PATTERN = re.compile(r"^http://localhost(:\d+)?")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def clean_text(value: str) -> str:
    return normalize_whitespace(html.unescape(value or ""))


def escape_html(value: str) -> str:
    # Telegram HTML mode only needs &, < and >.
    return html.escape(value or "", quote=False)


def extract_status_id(link: str) -> str | None:
    match = STATUS_ID_PATTERN.search(link or "")
    return match.group(1) if match else None


def to_x_link(link: str) -> str:
    """Rewrite a Nitter status link to its canonical x.com form."""
    match = STATUS_PATTERN.search(link or "")
    if match:
        return f"https://x.com/{match.group(1)}/status/{match.group(2)}"
    fallback = LOCALHOST_PATTERN.sub("https://x.com", link or "")
    return fallback[:-2] if fallback.endswith("#m") else fallback


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."
