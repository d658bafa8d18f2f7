from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterable

import httpx
from sqlmodel import Session, select

from ..database import init_db, session_scope
from ..models import ApiUsageStat

_usage_initialized = False


def _ensure_usage_table() -> None:
    global _usage_initialized
    if not _usage_initialized:
        init_db()
        _usage_initialized = True


def service_key(url: str) -> str:
    """Usage counters are kept per service host."""

    url = (url or "").strip()
    try:
        host = httpx.URL(url).host
    except httpx.InvalidURL:
        host = ""
    return host or url


def record_api_usage(service: str, *, increment: int = 1) -> None:
    """Add ``increment`` requests to the counter of ``service``."""

    if increment <= 0:
        return

    _ensure_usage_table()
    with session_scope() as session:
        _increment(session, service, increment)
        session.commit()


def record_batch_usage(url: str, request_counts: Iterable[int]) -> int:
    total = sum(max(0, int(count)) for count in request_counts)
    record_api_usage(service_key(url), increment=total)
    return total


def _increment(session: Session, service: str, increment: int) -> ApiUsageStat:
    statement = select(ApiUsageStat).where(ApiUsageStat.provider == service)
    usage = session.exec(statement).one_or_none()
    now = datetime.now(UTC)
    if usage is None:
        usage = ApiUsageStat(provider=service, request_count=increment, last_used_at=now)
        session.add(usage)
    else:
        usage.request_count += increment
        usage.last_used_at = now
    return usage
