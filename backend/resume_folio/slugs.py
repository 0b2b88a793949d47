"""Slug normalization and unique-slug allocation for public portfolio URLs.

The probe loop in ``ensure_unique_slug`` is only a fast path. Uniqueness among
published portfolios is enforced by the store's partial unique index, and
``allocate_slug`` treats a rejected write as "try the next suffix".
"""

from __future__ import annotations

import random
import re
import string
from collections.abc import Callable, Iterator
from typing import Protocol, TypeVar

SLUG_MIN_LENGTH = 3
SYNTHETIC_PREFIX = "portfolio"
SYNTHETIC_SUFFIX_LENGTH = 6
SYNTHETIC_ALPHABET = string.ascii_lowercase + string.digits

_NON_SLUG_RUN = re.compile(r"[^a-z0-9]+")
_DEFAULT_RNG = random.SystemRandom()

T = TypeVar("T")


class SlugConflictError(Exception):
    """Raised by the store when a published portfolio already holds the slug."""

    def __init__(self, slug: str):
        super().__init__(f"slug already published: {slug}")
        self.slug = slug


class RandomSource(Protocol):
    def choice(self, seq: str) -> str:
        ...


def slugify(value: str | None) -> str | None:
    if not value:
        return None
    slug = _NON_SLUG_RUN.sub("-", str(value).lower()).strip("-")
    return slug or None


def random_suffix(rng: RandomSource | None = None, *, length: int = SYNTHETIC_SUFFIX_LENGTH) -> str:
    source = rng or _DEFAULT_RNG
    return "".join(source.choice(SYNTHETIC_ALPHABET) for _ in range(max(1, length)))


def build_slug_base(primary: str | None, fallback: str | None, *, rng: RandomSource | None = None) -> str:
    normalized = slugify(primary)
    if normalized and len(normalized) >= SLUG_MIN_LENGTH:
        return normalized

    normalized_fallback = slugify(fallback)
    if normalized_fallback:
        return normalized_fallback

    return f"{SYNTHETIC_PREFIX}-{random_suffix(rng)}"


def slug_candidates(base: str) -> Iterator[str]:
    yield base
    suffix = 1
    while True:
        yield f"{base}-{suffix}"
        suffix += 1


def ensure_unique_slug(
    base: str,
    *,
    is_taken: Callable[[str, int | None], bool],
    exclude_owner_id: int | None = None,
) -> str:
    for candidate in slug_candidates(base):
        if not is_taken(candidate, exclude_owner_id):
            return candidate
    raise AssertionError("unreachable")  # pragma: no cover


def allocate_slug(
    base: str,
    *,
    is_taken: Callable[[str, int | None], bool],
    claim: Callable[[str], T],
    exclude_owner_id: int | None = None,
    on_conflict: Callable[[str], None] | None = None,
) -> tuple[str, T]:
    """Claim the first free candidate for ``base`` and return it with the claim result.

    ``claim`` performs the write and raises ``SlugConflictError`` when a
    concurrent publisher got there first; probing then resumes after the
    rejected candidate.
    """
    for candidate in slug_candidates(base):
        if is_taken(candidate, exclude_owner_id):
            continue
        try:
            return candidate, claim(candidate)
        except SlugConflictError:
            if on_conflict is not None:
                on_conflict(candidate)
            continue
    raise AssertionError("unreachable")  # pragma: no cover
