from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from typing import Any

from .auth_store import fetch_user
from .portfolio_store import (
    fetch_portfolio,
    fetch_published_portfolio,
    publish_portfolio_record,
    slug_taken,
    unpublish_portfolio_record,
    upsert_portfolio_content,
)
from .resume_store import fetch_resume
from .slugs import RandomSource, allocate_slug, build_slug_base, slugify

DEFAULT_SLUG_FALLBACK = "portfolio"

logger = logging.getLogger("resume_folio.portfolio")


class PortfolioNotFoundError(Exception):
    pass


class InvalidFeaturedResumeError(ValueError):
    pass


class OwnerLocks:
    """Serializes portfolio writes per owner inside this process."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[int, Lock] = defaultdict(Lock)

    @contextmanager
    def hold(self, owner_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks[int(owner_id)]
        with lock:
            yield


OWNER_LOCKS = OwnerLocks()


def _log_event(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False))


def email_local_part(email: str | None) -> str:
    safe_email = (email or "").strip()
    if not safe_email:
        return ""
    return safe_email.split("@", 1)[0]


def resolve_slug_base(
    *,
    owner: dict[str, Any],
    desired_slug: str | None,
    stored_slug: str | None,
    rng: RandomSource | None = None,
) -> str:
    # A requested slug (explicit or previously assigned) is kept as the user chose it.
    for requested in (desired_slug, stored_slug):
        normalized = slugify(requested)
        if normalized:
            return normalized

    fallback = email_local_part(owner.get("email")) or DEFAULT_SLUG_FALLBACK
    return build_slug_base(owner.get("name"), fallback, rng=rng)


def ensure_featured_resume_owned(*, owner_id: int, content: dict[str, Any] | None) -> None:
    if not content or content.get("featuredResume") is None:
        return
    resume_id = content["featuredResume"]
    if fetch_resume(resume_id=int(resume_id), owner_id=owner_id) is None:
        raise InvalidFeaturedResumeError(f"featuredResume {resume_id} is not one of your resumes")


def get_owner_portfolio(owner: dict[str, Any]) -> dict[str, Any] | None:
    return fetch_portfolio(owner_id=int(owner["id"]))


def save_portfolio_content(owner: dict[str, Any], content: dict[str, Any]) -> dict[str, Any]:
    owner_id = int(owner["id"])
    ensure_featured_resume_owned(owner_id=owner_id, content=content)
    with OWNER_LOCKS.hold(owner_id):
        return upsert_portfolio_content(owner_id=owner_id, content=content)


def publish_portfolio(
    owner: dict[str, Any],
    *,
    desired_slug: str | None = None,
    content: dict[str, Any] | None = None,
    rng: RandomSource | None = None,
) -> dict[str, Any]:
    """Assign a unique slug to the owner's portfolio and mark it published.

    Creates the portfolio when the owner has none yet. The owner's own record
    is excluded from the collision check, so republishing under the current
    slug keeps it.
    """
    owner_id = int(owner["id"])
    ensure_featured_resume_owned(owner_id=owner_id, content=content)

    def on_conflict(candidate: str) -> None:
        _log_event("slug_conflict_retry", ownerId=owner_id, slug=candidate)

    with OWNER_LOCKS.hold(owner_id):
        existing = fetch_portfolio(owner_id=owner_id)
        base = resolve_slug_base(
            owner=owner,
            desired_slug=desired_slug,
            stored_slug=existing["slug"] if existing else None,
            rng=rng,
        )
        slug, record = allocate_slug(
            base,
            is_taken=slug_taken,
            claim=lambda candidate: publish_portfolio_record(owner_id=owner_id, slug=candidate, content=content),
            exclude_owner_id=owner_id,
            on_conflict=on_conflict,
        )

    previous_slug = existing["slug"] if existing else None
    _log_event(
        "portfolio_published",
        ownerId=owner_id,
        slug=slug,
        base=base,
        previousSlug=previous_slug,
        created=existing is None,
    )
    return record


def unpublish_portfolio(owner: dict[str, Any]) -> dict[str, Any]:
    owner_id = int(owner["id"])
    with OWNER_LOCKS.hold(owner_id):
        record = unpublish_portfolio_record(owner_id=owner_id)

    if record is None:
        raise PortfolioNotFoundError("portfolio not found")

    _log_event("portfolio_unpublished", ownerId=owner_id, slug=record["slug"])
    return record


def get_public_portfolio(slug: str) -> dict[str, Any]:
    normalized = slugify(slug)
    if not normalized:
        raise PortfolioNotFoundError("portfolio not found")

    record = fetch_published_portfolio(slug=normalized)
    if record is None:
        raise PortfolioNotFoundError("portfolio not found")

    owner = fetch_user(user_id=record["owner_id"])
    featured_resume = None
    featured_id = record["content"].get("featuredResume")
    if featured_id is not None:
        featured_resume = fetch_resume(resume_id=int(featured_id), owner_id=record["owner_id"])

    return {
        **record,
        "owner_name": owner["name"] if owner else None,
        "featured_resume": featured_resume,
    }
