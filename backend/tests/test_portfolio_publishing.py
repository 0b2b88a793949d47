from __future__ import annotations

import json
import logging
import random

import pytest

import resume_folio.publishing as publishing_module
from resume_folio.auth_store import register_user
from resume_folio.portfolio_store import (
    fetch_portfolio,
    publish_portfolio_record,
    slug_taken,
    upsert_portfolio_content,
)
from resume_folio.publishing import (
    InvalidFeaturedResumeError,
    PortfolioNotFoundError,
    get_public_portfolio,
    publish_portfolio,
    save_portfolio_content,
    unpublish_portfolio,
)
from resume_folio.resume_store import create_resume, delete_resume
from resume_folio.slugs import SlugConflictError


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("RESUME_FOLIO_DB_PATH", str(tmp_path / "resume_folio_test.sqlite3"))


def make_owner(name: str, email: str) -> dict:
    return register_user(name=name, email=email, password="secret123")


def parse_events(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        try:
            events.append(json.loads(record.getMessage()))
        except json.JSONDecodeError:
            continue
    return events


def test_publish_derives_slug_from_owner_name() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")

    record = publish_portfolio(owner)

    assert record["slug"] == "jordan-blake"
    assert record["is_published"] is True
    assert record["published_at"]
    assert record["owner_id"] == owner["id"]


def test_publish_falls_back_to_email_local_part_for_short_names() -> None:
    owner = make_owner("Jo", "jo.nakamura@example.com")

    assert publish_portfolio(owner)["slug"] == "jo-nakamura"


def test_publish_uses_synthetic_slug_without_name_or_email_signal() -> None:
    owner = make_owner("J", "__@example.com")

    first = publish_portfolio(owner, rng=random.Random(3))

    assert first["slug"].startswith("portfolio-")
    assert len(first["slug"]) == len("portfolio-") + 6


def test_uniqueness_under_collision_appends_numeric_suffix() -> None:
    owners = [make_owner("Jordan Blake", f"jordan{i}@example.com") for i in range(3)]

    slugs = [publish_portfolio(owner)["slug"] for owner in owners]

    assert slugs == ["jordan-blake", "jordan-blake-1", "jordan-blake-2"]


def test_republishing_with_current_slug_excludes_own_record() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    first = publish_portfolio(owner)

    again = publish_portfolio(owner, desired_slug=first["slug"])
    implicit = publish_portfolio(owner)

    assert again["slug"] == "jordan-blake"
    assert implicit["slug"] == "jordan-blake"
    assert again["id"] == first["id"]


def test_unpublish_retains_slug_and_republish_reuses_it() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    publish_portfolio(owner)

    unpublished = unpublish_portfolio(owner)
    assert unpublished["is_published"] is False
    assert unpublished["published_at"] is None
    assert unpublished["slug"] == "jordan-blake"

    republished = publish_portfolio(owner)
    assert republished["slug"] == "jordan-blake"
    assert republished["is_published"] is True


def test_unpublish_without_portfolio_raises_not_found() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")

    with pytest.raises(PortfolioNotFoundError):
        unpublish_portfolio(owner)


def test_public_lookup_hides_unpublished_portfolio() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    publish_portfolio(owner, content={"headline": "Staff engineer"})
    assert get_public_portfolio("jordan-blake")["content"]["headline"] == "Staff engineer"

    unpublish_portfolio(owner)

    with pytest.raises(PortfolioNotFoundError):
        get_public_portfolio("jordan-blake")


def test_public_lookup_normalizes_slug() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    publish_portfolio(owner)

    record = get_public_portfolio("  Jordan-Blake ")

    assert record["slug"] == "jordan-blake"
    assert record["owner_name"] == "Jordan Blake"

    with pytest.raises(PortfolioNotFoundError):
        get_public_portfolio("---")


def test_unpublished_slug_is_free_for_other_owners() -> None:
    first = make_owner("Jordan Blake", "jordan@example.com")
    second = make_owner("Jordan Blake", "jordan.b@example.com")
    publish_portfolio(first)
    unpublish_portfolio(first)

    assert slug_taken("jordan-blake") is False
    assert publish_portfolio(second)["slug"] == "jordan-blake"

    # The retained slug is now held by another published portfolio.
    assert publish_portfolio(first)["slug"] == "jordan-blake-1"


def test_slug_change_releases_old_slug_immediately() -> None:
    first = make_owner("Alex Doe", "alex@example.com")
    second = make_owner("Sam Roe", "sam@example.com")
    publish_portfolio(first, desired_slug="alpha")

    moved = publish_portfolio(first, desired_slug="beta")
    claimed = publish_portfolio(second, desired_slug="alpha")

    assert moved["slug"] == "beta"
    assert claimed["slug"] == "alpha"


def test_explicit_slug_is_normalized_and_may_be_short() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")

    assert publish_portfolio(owner, desired_slug="  JB ")["slug"] == "jb"


def test_store_rejects_second_published_portfolio_with_same_slug() -> None:
    first = make_owner("Jordan Blake", "jordan@example.com")
    second = make_owner("Sam Roe", "sam@example.com")
    publish_portfolio(first)
    upsert_portfolio_content(owner_id=second["id"], content={"headline": "Designer"})

    with pytest.raises(SlugConflictError) as exc_info:
        publish_portfolio_record(owner_id=second["id"], slug="jordan-blake", content={"headline": "Changed"})

    assert exc_info.value.slug == "jordan-blake"
    untouched = fetch_portfolio(owner_id=second["id"])
    assert untouched is not None
    assert untouched["slug"] is None
    assert untouched["is_published"] is False
    assert untouched["content"]["headline"] == "Designer"


def test_concurrent_publish_retries_when_probe_misses_claim(monkeypatch, caplog) -> None:
    first = make_owner("Jordan Blake", "jordan@example.com")
    second = make_owner("Jordan Blake", "jordan.b@example.com")
    publish_portfolio(first)

    # Simulate a probe that ran before the other publisher's write landed.
    monkeypatch.setattr(publishing_module, "slug_taken", lambda _slug, _exclude=None: False)

    with caplog.at_level(logging.INFO, logger="resume_folio.portfolio"):
        record = publish_portfolio(second)

    assert record["slug"] == "jordan-blake-1"
    events = parse_events(caplog)
    retry = next((item for item in events if item.get("event") == "slug_conflict_retry"), None)
    assert retry is not None
    assert retry["slug"] == "jordan-blake"
    assert retry["ownerId"] == second["id"]
    published = next((item for item in events if item.get("event") == "portfolio_published"), None)
    assert published is not None
    assert published["slug"] == "jordan-blake-1"


def test_publish_merges_supplied_content_with_saved_content() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    save_portfolio_content(owner, {"headline": "Engineer", "skills": ["python"]})

    record = publish_portfolio(owner, content={"bio": "Builds things"})

    assert record["content"] == {"headline": "Engineer", "skills": ["python"], "bio": "Builds things"}


def test_featured_resume_must_belong_to_owner() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    other = make_owner("Sam Roe", "sam@example.com")
    foreign_resume = create_resume(owner_id=other["id"], title="Sam CV")

    with pytest.raises(InvalidFeaturedResumeError):
        save_portfolio_content(owner, {"featuredResume": foreign_resume["id"]})

    with pytest.raises(InvalidFeaturedResumeError):
        publish_portfolio(owner, content={"featuredResume": foreign_resume["id"]})

    assert fetch_portfolio(owner_id=owner["id"]) is None


def test_public_portfolio_resolves_featured_resume() -> None:
    owner = make_owner("Jordan Blake", "jordan@example.com")
    resume = create_resume(
        owner_id=owner["id"],
        title="Backend CV",
        document={"skills": ["python", "sql"]},
    )
    publish_portfolio(owner, content={"featuredResume": resume["id"]})

    record = get_public_portfolio("jordan-blake")
    assert record["featured_resume"]["id"] == resume["id"]
    assert record["featured_resume"]["skills"] == ["python", "sql"]

    delete_resume(resume_id=resume["id"], owner_id=owner["id"])
    assert get_public_portfolio("jordan-blake")["featured_resume"] is None


def test_end_to_end_two_owners_with_same_name() -> None:
    alice = make_owner("Jordan Blake", "jordan.a@example.com")
    bob = make_owner("Jordan Blake", "jordan.b@example.com")

    assert publish_portfolio(alice, content={"headline": "A"})["slug"] == "jordan-blake"
    assert publish_portfolio(bob, content={"headline": "B"})["slug"] == "jordan-blake-1"

    unpublish_portfolio(alice)
    assert publish_portfolio(alice, desired_slug="jb")["slug"] == "jb"

    assert get_public_portfolio("jordan-blake-1")["content"]["headline"] == "B"
    assert get_public_portfolio("jb")["content"]["headline"] == "A"
    with pytest.raises(PortfolioNotFoundError):
        get_public_portfolio("jordan-blake")
