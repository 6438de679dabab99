from __future__ import annotations

import json
from datetime import UTC, date, datetime


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def today_iso() -> str:
    return date.today().isoformat()


def iso_or_none(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def normalize_attachments(urls: list[str] | None) -> list[str]:
    if not urls:
        return []
    return [url.strip() for url in urls if url and url.strip()]


def dump_attachments(urls: list[str] | None) -> str | None:
    cleaned = normalize_attachments(urls)
    return json.dumps(cleaned) if cleaned else None


def load_attachments(raw: str | list[str] | None) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return normalize_attachments(raw)
    data = json.loads(raw)
    if not isinstance(data, list):
        return []
    return normalize_attachments([str(item) for item in data])
