#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import uuid
from typing import Any
from urllib import error, request


def call(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    token: str | None = None,
) -> tuple[int, dict[str, Any] | str]:
    body = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"

    req = request.Request(f"{base_url.rstrip('/')}{path}", data=body, headers=headers, method=method)
    try:
        with request.urlopen(req, timeout=15) as resp:
            raw = resp.read().decode("utf-8")
            return resp.status, json.loads(raw) if raw and raw.startswith(("{", "[")) else raw
    except error.HTTPError as exc:
        raw = exc.read().decode("utf-8")
        parsed: dict[str, Any] | str
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = raw
        return exc.code, parsed


def expect(status: int, data: Any, *, path: str, allowed: set[int]) -> bool:
    if status in allowed:
        return True
    print(f"[FAIL] {path} => {status} {data}")
    return False


def main() -> int:
    parser = argparse.ArgumentParser(description="Minimal API smoke test for the Resume Folio backend")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="Backend base URL")
    parser.add_argument("--name", default="Smoke Tester", help="Display name used for the throwaway account")
    args = parser.parse_args()

    status, health = call(args.base_url, "GET", "/health")
    if not expect(status, health, path="/health", allowed={200}):
        return 1

    email = f"smoke-{uuid.uuid4().hex[:10]}@example.com"
    status, registered = call(
        args.base_url,
        "POST",
        "/api/auth/register",
        {"name": args.name, "email": email, "password": "smoke-pass-123"},
    )
    if not expect(status, registered, path="/api/auth/register", allowed={201}) or not isinstance(registered, dict):
        return 1
    token = str(registered["token"])

    status, created = call(
        args.base_url,
        "POST",
        "/api/resumes",
        {"title": "Smoke CV", "skills": ["python"]},
        token=token,
    )
    if not expect(status, created, path="/api/resumes", allowed={201}) or not isinstance(created, dict):
        return 1
    resume_id = created["item"]["id"]

    status, saved = call(
        args.base_url,
        "PUT",
        "/api/portfolio",
        {"headline": "Smoke headline", "featuredResume": resume_id},
        token=token,
    )
    if not expect(status, saved, path="PUT /api/portfolio", allowed={200}):
        return 1

    status, published = call(args.base_url, "POST", "/api/portfolio/publish", {}, token=token)
    if not expect(status, published, path="/api/portfolio/publish", allowed={200}) or not isinstance(published, dict):
        return 1
    slug = published["item"]["slug"]
    print(f"[INFO] published slug={slug}")

    checks = [
        ("GET", f"/api/portfolio/public/{slug}", None, {200}),
        ("GET", f"/api/resumes/{resume_id}/export?format=txt", token, {200}),
        ("POST", "/api/portfolio/unpublish", token, {200}),
        ("GET", f"/api/portfolio/public/{slug}", None, {404}),
        ("GET", "/api/metrics/snapshot", None, {200}),
    ]

    for method, path, auth_token, allowed in checks:
        status, data = call(args.base_url, method, path, token=auth_token)
        if not expect(status, data, path=f"{method} {path}", allowed=allowed):
            return 1

    print("[PASS] smoke checks completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
