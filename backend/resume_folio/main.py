from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from threading import Lock
from typing import Any, Literal

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .auth_store import (
    VERIFY_REASON_ACCOUNT_INACTIVE,
    UserExistsError,
    create_auth_session,
    register_user,
    revoke_auth_session,
    validate_auth_session,
    verify_credentials_with_reason,
)
from .publishing import (
    InvalidFeaturedResumeError,
    PortfolioNotFoundError,
    get_owner_portfolio,
    get_public_portfolio,
    publish_portfolio,
    save_portfolio_content,
    unpublish_portfolio,
)
from .resume_store import (
    count_resumes,
    create_resume,
    delete_resume,
    fetch_resume,
    list_resumes,
    update_resume,
)
from .slugs import slugify


def get_env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else int(default)
    except (TypeError, ValueError):
        value = int(default)

    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def get_cors_origins() -> list[str]:
    raw = os.getenv("RESUME_FOLIO_CORS_ORIGINS", "*").strip()
    origins = [item.strip() for item in raw.split(",") if item.strip()]
    return origins or ["*"]


def is_public_path(path: str) -> bool:
    if path in {
        "/health",
        "/openapi.json",
        "/docs",
        "/docs/oauth2-redirect",
        "/redoc",
        "/api/auth/login",
        "/api/auth/register",
        "/api/metrics/snapshot",
    }:
        return True
    return path.startswith("/api/portfolio/public/")


def is_login_required_path(path: str) -> bool:
    if is_public_path(path):
        return False

    protected_prefixes = (
        "/api/auth/me",
        "/api/auth/logout",
        "/api/resumes",
        "/api/portfolio",
        "/api/ai",
    )
    return path.startswith(protected_prefixes)


def parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()

    return request.headers.get("x-session-token", "").strip()


MAX_JSON_BODY_BYTES = get_env_int("RESUME_FOLIO_MAX_JSON_BYTES", 1_000_000, min_value=2_048)
DEFAULT_RESUME_LIST_LIMIT = 20
MAX_RESUME_LIST_LIMIT = 100
MAX_TITLE_LENGTH = 120
MAX_SHORT_TEXT_LENGTH = 300
MAX_LONG_TEXT_LENGTH = 5_000
MAX_URL_LENGTH = 2_048
MAX_LIST_ITEMS = 100
MAX_SLUG_LENGTH = 80
MAX_PROMPT_LENGTH = 8_000
AUTH_SESSION_TTL_SECONDS = get_env_int("RESUME_FOLIO_AUTH_SESSION_TTL_SECONDS", 7 * 24 * 3600, min_value=300, max_value=30 * 24 * 3600)
AUTH_LOGIN_FAIL_LIMIT = get_env_int("RESUME_FOLIO_AUTH_LOGIN_FAIL_LIMIT", 6, min_value=2, max_value=100)
AUTH_LOGIN_FAIL_WINDOW_SECONDS = get_env_int("RESUME_FOLIO_AUTH_LOGIN_FAIL_WINDOW_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)
AUTH_LOGIN_LOCK_SECONDS = get_env_int("RESUME_FOLIO_AUTH_LOGIN_LOCK_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)
GEMINI_ENABLED = get_env_bool("RESUME_FOLIO_GEMINI_ENABLED", True)
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
GEMINI_TIMEOUT_SECONDS = 20.0

IMPROVE_SYSTEM_PROMPT = (
    "You are an expert technical resume writer. Rewrite the provided content to be concise, "
    "outcome-focused, and ATS-friendly. Return only bullet points."
)
PORTFOLIO_INTRO_SYSTEM_PROMPT = (
    "You craft concise, compelling personal bios for digital portfolios. "
    "Keep language friendly, confident, and jargon-light."
)
FALLBACK_TEMPLATE_LINES = (
    "• Quantified accomplishment that highlights impact and includes key metrics.",
    "• Action-oriented statement describing responsibilities and outcomes.",
    "• Collaboration or leadership example showcasing soft skills.",
)

ERROR_CODE_BY_STATUS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_ERROR",
}

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("resume_folio.api")


def _strip_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        stripped = [item.strip() if isinstance(item, str) else item for item in value]
        return [item for item in stripped if item != ""]
    return value


class DocumentPart(BaseModel):
    @field_validator("*", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return _strip_value(value)


class AuthRegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=80)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=120)

    @field_validator("name", "email", "password")
    @classmethod
    def normalize_auth_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=120)

    @field_validator("email", "password")
    @classmethod
    def normalize_auth_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class AuthUser(BaseModel):
    id: int
    name: str
    email: str


class AuthTokenResponse(BaseModel):
    requestId: str
    token: str
    expiresAt: str
    user: AuthUser


class AuthMeResponse(BaseModel):
    requestId: str
    user: AuthUser
    expiresAt: str


class AuthLogoutResponse(BaseModel):
    requestId: str
    revoked: bool


class ResumePersonalInfo(DocumentPart):
    fullName: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    email: str | None = Field(default=None, max_length=254)
    phone: str | None = Field(default=None, max_length=60)
    location: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    website: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    summary: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)


class ResumeExperience(DocumentPart):
    role: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    company: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    startDate: str | None = Field(default=None, max_length=40)
    endDate: str | None = Field(default=None, max_length=40)
    description: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)
    achievements: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class ResumeEducation(DocumentPart):
    institution: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    degree: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    startDate: str | None = Field(default=None, max_length=40)
    endDate: str | None = Field(default=None, max_length=40)
    description: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)


class ResumeProject(DocumentPart):
    name: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)
    link: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    techStack: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class ResumeAiMetadata(DocumentPart):
    lastPrompt: str | None = Field(default=None, max_length=MAX_PROMPT_LENGTH)
    lastModel: str | None = Field(default=None, max_length=120)


class ResumeCreateRequest(DocumentPart):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    personalInfo: ResumePersonalInfo = Field(default_factory=ResumePersonalInfo)
    experiences: list[ResumeExperience] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    education: list[ResumeEducation] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    skills: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    projects: list[ResumeProject] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    aiMetadata: ResumeAiMetadata = Field(default_factory=ResumeAiMetadata)


class ResumeUpdateRequest(DocumentPart):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    personalInfo: ResumePersonalInfo | None = None
    experiences: list[ResumeExperience] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    education: list[ResumeEducation] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    skills: list[str] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    projects: list[ResumeProject] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    aiMetadata: ResumeAiMetadata | None = None


class ResumeItem(BaseModel):
    id: int
    title: str
    personalInfo: ResumePersonalInfo
    experiences: list[ResumeExperience]
    education: list[ResumeEducation]
    skills: list[str]
    projects: list[ResumeProject]
    aiMetadata: ResumeAiMetadata
    createdAt: str
    updatedAt: str


class ResumeListResponse(BaseModel):
    requestId: str
    total: int
    items: list[ResumeItem]


class ResumeDetailResponse(BaseModel):
    requestId: str
    item: ResumeItem


class ResumeDeleteResponse(BaseModel):
    requestId: str
    deleted: bool


class PortfolioSocialLinks(DocumentPart):
    github: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    linkedin: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    twitter: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    website: str | None = Field(default=None, max_length=MAX_URL_LENGTH)


class PortfolioProject(DocumentPart):
    name: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)
    link: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    imageUrl: str | None = Field(default=None, max_length=MAX_URL_LENGTH)
    tags: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class PortfolioPalette(DocumentPart):
    primary: str | None = Field(default=None, max_length=40)
    secondary: str | None = Field(default=None, max_length=40)
    accent: str | None = Field(default=None, max_length=40)


class PortfolioTheme(DocumentPart):
    palette: PortfolioPalette = Field(default_factory=PortfolioPalette)
    layout: str = Field(default="classic", max_length=40)


class PortfolioContentRequest(DocumentPart):
    model_config = ConfigDict(extra="forbid")

    headline: str | None = Field(default=None, max_length=MAX_SHORT_TEXT_LENGTH)
    bio: str | None = Field(default=None, max_length=MAX_LONG_TEXT_LENGTH)
    socialLinks: PortfolioSocialLinks | None = None
    skills: list[str] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    projects: list[PortfolioProject] | None = Field(default=None, max_length=MAX_LIST_ITEMS)
    featuredResume: int | None = Field(default=None, ge=1)
    theme: PortfolioTheme | None = None


class PortfolioPublishRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str | None = Field(default=None, max_length=MAX_SLUG_LENGTH)
    portfolio: PortfolioContentRequest | None = None


class PortfolioItem(BaseModel):
    id: int
    slug: str | None
    isPublished: bool
    publishedAt: str | None
    headline: str
    bio: str
    socialLinks: PortfolioSocialLinks
    skills: list[str]
    projects: list[PortfolioProject]
    featuredResume: int | None
    theme: PortfolioTheme
    createdAt: str
    updatedAt: str


class PortfolioResponse(BaseModel):
    requestId: str
    item: PortfolioItem | None


class PublicPortfolioItem(BaseModel):
    slug: str
    publishedAt: str | None
    ownerName: str | None
    headline: str
    bio: str
    socialLinks: PortfolioSocialLinks
    skills: list[str]
    projects: list[PortfolioProject]
    featuredResume: ResumeItem | None
    theme: PortfolioTheme


class PublicPortfolioResponse(BaseModel):
    requestId: str
    item: PublicPortfolioItem


class AiImproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1, max_length=MAX_PROMPT_LENGTH)
    context: str | None = Field(default=None, max_length=MAX_PROMPT_LENGTH)
    model: str | None = Field(default=None, max_length=80, pattern=r"^[A-Za-z0-9._-]+$")

    @field_validator("prompt")
    @classmethod
    def normalize_prompt(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class PortfolioIntroRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profession: str = Field(min_length=1, max_length=MAX_SHORT_TEXT_LENGTH)
    skills: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    tone: str = Field(default="professional", max_length=60)

    @field_validator("profession")
    @classmethod
    def normalize_profession(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class AiContentResponse(BaseModel):
    requestId: str
    content: str
    isFallback: bool


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    message: str | None = None


class AuthLoginRateLimiter:
    def __init__(self, *, fail_limit: int, window_seconds: int, lock_seconds: int):
        self.fail_limit = max(2, int(fail_limit))
        self.window_seconds = max(10, int(window_seconds))
        self.lock_seconds = max(10, int(lock_seconds))
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._blocked_until: dict[str, float] = {}
        self._lock = Lock()

    def _cleanup(self, key: str, now: float) -> deque[float]:
        queue = self._failures[key]
        while queue and now - queue[0] > self.window_seconds:
            queue.popleft()
        if not queue:
            self._failures.pop(key, None)
            return deque()
        return queue

    def check(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            blocked_until = float(self._blocked_until.get(key, 0.0))
            if blocked_until > now:
                reset_seconds = int(max(1, blocked_until - now))
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=reset_seconds,
                    message=f"Too many failed login attempts. Retry in {reset_seconds}s",
                )

            if blocked_until:
                self._blocked_until.pop(key, None)

            queue = self._cleanup(key, now)
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.fail_limit - len(queue)),
                reset_seconds=self.window_seconds,
            )

    def register_failure(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            queue = self._cleanup(key, now)
            if not queue:
                queue = self._failures[key]

            queue.append(now)
            if len(queue) >= self.fail_limit:
                self._blocked_until[key] = now + self.lock_seconds
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=self.lock_seconds,
                    message=f"Too many failed login attempts. Retry in {self.lock_seconds}s",
                )

            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.fail_limit - len(queue)),
                reset_seconds=self.window_seconds,
            )

    def register_success(self, *, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
            self._blocked_until.pop(key, None)


class MetricsTracker:
    def __init__(self) -> None:
        self._lock = Lock()
        self._request_total = 0
        self._path_counts: dict[str, int] = defaultdict(int)
        self._status_counts: dict[str, int] = defaultdict(int)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._latencies_by_path: dict[str, deque[int]] = defaultdict(lambda: deque(maxlen=500))

    def record(
        self,
        *,
        path: str,
        status: int,
        duration_ms: int,
        error_code: str | None,
    ) -> None:
        with self._lock:
            self._request_total += 1
            self._path_counts[path] += 1
            self._status_counts[str(status)] += 1
            self._latencies_by_path[path].append(max(0, duration_ms))
            if error_code:
                self._error_counts[error_code] += 1

    @staticmethod
    def _percentile(values: list[int], p: float) -> int:
        if not values:
            return 0
        ranked = sorted(values)
        idx = int(round((len(ranked) - 1) * p))
        return ranked[max(0, min(idx, len(ranked) - 1))]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            latency = {
                path: {
                    "count": len(values),
                    "p50_ms": self._percentile(list(values), 0.5),
                    "p95_ms": self._percentile(list(values), 0.95),
                }
                for path, values in self._latencies_by_path.items()
            }
            return {
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "requestTotal": self._request_total,
                "pathCounts": dict(self._path_counts),
                "statusCounts": dict(self._status_counts),
                "errorCounts": dict(self._error_counts),
                "latency": latency,
            }


AUTH_LOGIN_RATE_LIMITER = AuthLoginRateLimiter(
    fail_limit=AUTH_LOGIN_FAIL_LIMIT,
    window_seconds=AUTH_LOGIN_FAIL_WINDOW_SECONDS,
    lock_seconds=AUTH_LOGIN_LOCK_SECONDS,
)
METRICS = MetricsTracker()


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def get_current_user(request: Request) -> dict[str, Any] | None:
    user = getattr(request.state, "current_user", None)
    return user if isinstance(user, dict) else None


def require_current_user(request: Request) -> dict[str, Any]:
    user = get_current_user(request)
    if user is None:
        raise_api_error(status_code=401, code="AUTH_LOGIN_REQUIRED", message="login required")
    return user


def set_error_context(request: Request, *, error_code: str, exception_type: str) -> None:
    request.state.error_code = error_code
    request.state.exception_type = exception_type


def build_error_payload(*, code: str, message: str, request_id: str) -> dict[str, str]:
    return {
        "code": code,
        "message": message,
        "requestId": request_id,
    }


def raise_api_error(
    *,
    status_code: int,
    code: str,
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    detail: dict[str, Any] = {"code": code, "message": message}
    if isinstance(extra, dict):
        detail.update(extra)
    raise HTTPException(status_code=status_code, detail=detail)


def log_event(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False))


def build_login_rate_limiter_key(*, request: Request, email: str) -> str:
    client_host = ""
    if request.client is not None and request.client.host:
        client_host = request.client.host.strip()
    return f"{email.strip().lower()}|{client_host or 'unknown'}"


def format_auth_user(user: dict[str, Any]) -> AuthUser:
    return AuthUser(id=int(user["id"]), name=str(user["name"]), email=str(user["email"]))


def format_resume_item(row: dict[str, Any]) -> ResumeItem:
    return ResumeItem(
        id=int(row["id"]),
        title=str(row["title"]),
        personalInfo=row.get("personalInfo") or {},
        experiences=row.get("experiences") or [],
        education=row.get("education") or [],
        skills=row.get("skills") or [],
        projects=row.get("projects") or [],
        aiMetadata=row.get("aiMetadata") or {},
        createdAt=str(row["created_at"]),
        updatedAt=str(row["updated_at"]),
    )


def format_portfolio_item(row: dict[str, Any]) -> PortfolioItem:
    content = row.get("content") or {}
    return PortfolioItem(
        id=int(row["id"]),
        slug=row.get("slug"),
        isPublished=bool(row.get("is_published")),
        publishedAt=row.get("published_at"),
        headline=str(content.get("headline") or ""),
        bio=str(content.get("bio") or ""),
        socialLinks=content.get("socialLinks") or {},
        skills=content.get("skills") or [],
        projects=content.get("projects") or [],
        featuredResume=content.get("featuredResume"),
        theme=content.get("theme") or {},
        createdAt=str(row["created_at"]),
        updatedAt=str(row["updated_at"]),
    )


def format_public_portfolio_item(row: dict[str, Any]) -> PublicPortfolioItem:
    content = row.get("content") or {}
    featured = row.get("featured_resume")
    return PublicPortfolioItem(
        slug=str(row["slug"]),
        publishedAt=row.get("published_at"),
        ownerName=row.get("owner_name"),
        headline=str(content.get("headline") or ""),
        bio=str(content.get("bio") or ""),
        socialLinks=content.get("socialLinks") or {},
        skills=content.get("skills") or [],
        projects=content.get("projects") or [],
        featuredResume=format_resume_item(featured) if featured else None,
        theme=content.get("theme") or {},
    )


def get_gemini_api_key() -> str:
    return (os.getenv("GEMINI_API_KEY", "").strip() or os.getenv("GOOGLE_API_KEY", "").strip())


def is_gemini_enabled() -> bool:
    return get_env_bool("RESUME_FOLIO_GEMINI_ENABLED", GEMINI_ENABLED)


def call_gemini(*, prompt: str, system_prompt: str, model: str | None = None) -> str | None:
    api_key = get_gemini_api_key()
    if not api_key or not is_gemini_enabled():
        return None

    model_name = (model or os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)).strip() or DEFAULT_GEMINI_MODEL
    endpoint = f"{GEMINI_API_BASE}/{model_name}:generateContent"
    body = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": [{"parts": [{"text": prompt}]}],
    }

    with httpx.Client(timeout=GEMINI_TIMEOUT_SECONDS) as client:
        response = client.post(endpoint, params={"key": api_key}, json=body)
        response.raise_for_status()
        payload = response.json()

    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    if not isinstance(candidates, list) or not candidates:
        return None

    parts = candidates[0].get("content", {}).get("parts", [])
    if not isinstance(parts, list) or not parts:
        return None

    text = str(parts[0].get("text", "")).strip()
    return text or None


def build_fallback_response(prompt: str) -> str:
    preview = prompt[:120] + ("..." if len(prompt) > 120 else "")
    return "\n".join(
        [
            "AI key unavailable. Returning a template response.",
            f"Input preview: {preview}",
            "",
            *FALLBACK_TEMPLATE_LINES,
        ]
    )


def generate_ai_content(*, prompt: str, system_prompt: str, model: str | None = None) -> tuple[str, bool]:
    try:
        content = call_gemini(prompt=prompt, system_prompt=system_prompt, model=model)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning(
            json.dumps(
                {
                    "event": "gemini_fallback",
                    "reason": str(exc),
                },
                ensure_ascii=False,
            )
        )
        content = None

    if not content:
        return build_fallback_response(prompt), True
    return content, False


def build_portfolio_intro_prompt(payload: PortfolioIntroRequest) -> str:
    skills = [item.strip() for item in payload.skills if item.strip()]
    lines = [
        f"Profession: {payload.profession}",
        f"Tone: {payload.tone or 'professional'}",
        f"Key skills: {', '.join(skills)}" if skills else "",
        "",
        "Write a concise 3-sentence professional bio suitable for portfolio landing page. "
        "Highlight differentiation and include subtle call-to-action.",
    ]
    return "\n".join(line for line in lines if line)


def build_resume_export_text(item: ResumeItem) -> str:
    info = item.personalInfo
    contact = [value for value in (info.email, info.phone, info.location, info.website) if value]
    lines = [
        item.title,
        info.fullName or "",
        " | ".join(contact),
        "",
    ]
    if info.summary:
        lines.extend(["Summary:", info.summary, ""])

    if item.experiences:
        lines.append("Experience:")
        for exp in item.experiences:
            period = " - ".join(value for value in (exp.startDate, exp.endDate) if value)
            heading = ", ".join(value for value in (exp.role, exp.company) if value)
            lines.append(f"{heading} ({period})" if period else heading)
            if exp.description:
                lines.append(exp.description)
            lines.extend(f"• {value}" for value in exp.achievements)
        lines.append("")

    if item.education:
        lines.append("Education:")
        for edu in item.education:
            period = " - ".join(value for value in (edu.startDate, edu.endDate) if value)
            heading = ", ".join(value for value in (edu.degree, edu.institution) if value)
            lines.append(f"{heading} ({period})" if period else heading)
            if edu.description:
                lines.append(edu.description)
        lines.append("")

    if item.projects:
        lines.append("Projects:")
        for project in item.projects:
            lines.append(" - ".join(value for value in (project.name, project.link) if value))
            if project.description:
                lines.append(project.description)
            if project.techStack:
                lines.append(f"Tech: {', '.join(project.techStack)}")
        lines.append("")

    lines.append(f"Skills: {', '.join(item.skills) or 'N/A'}")
    return "\n".join(lines)


def build_pdf_bytes(text: str) -> bytes:
    try:
        from reportlab.lib.pagesizes import A4
        from reportlab.pdfgen import canvas
    except ImportError as exc:  # pragma: no cover - dependency guard
        raise RuntimeError("PDF export requires reportlab") from exc

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    _, height = A4

    font_name = "Helvetica"
    pdf.setFont(font_name, 11)
    margin_x = 36
    line_height = 16
    y = height - 40

    for raw_line in text.splitlines():
        line = raw_line
        if len(line) > 100:
            chunks = [line[i : i + 100] for i in range(0, len(line), 100)]
        else:
            chunks = [line]

        for chunk in chunks:
            if y < 40:
                pdf.showPage()
                pdf.setFont(font_name, 11)
                y = height - 40
            pdf.drawString(margin_x, y, chunk)
            y -= line_height

    pdf.save()
    buffer.seek(0)
    return buffer.read()


def log_request_event(
    *,
    path: str,
    method: str,
    status: int,
    duration_ms: int,
    request_id: str,
    user_id: int | None,
    error_code: str | None,
    exception_type: str | None,
) -> None:
    logger.info(
        json.dumps(
            {
                "path": path,
                "method": method,
                "status": status,
                "duration_ms": duration_ms,
                "requestId": request_id,
                "userId": user_id,
                "error_code": error_code,
                "exception_type": exception_type,
            },
            ensure_ascii=False,
        )
    )


app = FastAPI(title="Resume Folio API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

    request.state.request_id = request_id
    request.state.error_code = None
    request.state.exception_type = None
    request.state.current_user = None

    started_at = time.perf_counter()
    is_preflight_request = request.method.upper() == "OPTIONS"
    path = request.url.path

    auth_token = parse_bearer_token(request)
    if auth_token and not is_preflight_request:
        auth_session = validate_auth_session(token=auth_token)
        if auth_session is None:
            if not is_public_path(path):
                set_error_context(request, error_code="UNAUTHORIZED", exception_type="InvalidSessionToken")
        else:
            request.state.current_user = {
                "id": int(auth_session["id"]),
                "name": str(auth_session["name"]),
                "email": str(auth_session["email"]),
                "expiresAt": str(auth_session["expires_at"]),
            }

    def finalize(response: Response) -> Response:
        duration_ms = int((time.perf_counter() - started_at) * 1000)
        response.headers["x-request-id"] = request_id

        error_code = getattr(request.state, "error_code", None)
        exception_type = getattr(request.state, "exception_type", None)
        current_user = get_current_user(request)

        METRICS.record(
            path=path,
            status=response.status_code,
            duration_ms=duration_ms,
            error_code=error_code,
        )

        log_request_event(
            path=path,
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
            user_id=int(current_user["id"]) if current_user else None,
            error_code=error_code,
            exception_type=exception_type,
        )
        return response

    if getattr(request.state, "exception_type", "") == "InvalidSessionToken":
        return finalize(
            JSONResponse(
                status_code=401,
                content=build_error_payload(
                    code="UNAUTHORIZED",
                    message="invalid or expired session token",
                    request_id=request_id,
                ),
            )
        )

    if not is_preflight_request and is_login_required_path(path) and get_current_user(request) is None:
        set_error_context(request, error_code="AUTH_LOGIN_REQUIRED", exception_type="AuthLoginRequired")
        return finalize(
            JSONResponse(
                status_code=401,
                content=build_error_payload(
                    code="AUTH_LOGIN_REQUIRED",
                    message="login required",
                    request_id=request_id,
                ),
            )
        )

    if request.method in {"POST", "PUT", "PATCH"}:
        content_length = request.headers.get("content-length")
        measured_length: int | None = None

        if content_length:
            try:
                measured_length = int(content_length)
            except ValueError:
                measured_length = None

        if measured_length is None:
            body = await request.body()
            measured_length = len(body)

            async def receive() -> dict[str, Any]:
                return {"type": "http.request", "body": body, "more_body": False}

            request._receive = receive

        if measured_length > MAX_JSON_BODY_BYTES:
            set_error_context(request, error_code="PAYLOAD_TOO_LARGE", exception_type="PayloadTooLarge")
            return finalize(
                JSONResponse(
                    status_code=413,
                    content=build_error_payload(
                        code="PAYLOAD_TOO_LARGE",
                        message=f"Payload too large, max {MAX_JSON_BODY_BYTES} bytes",
                        request_id=request_id,
                    ),
                )
            )

    response = await call_next(request)
    return finalize(response)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/register", response_model=AuthTokenResponse, status_code=201)
def auth_register(payload: AuthRegisterRequest, request: Request) -> AuthTokenResponse:
    try:
        user = register_user(name=payload.name, email=payload.email, password=payload.password)
    except UserExistsError:
        raise_api_error(status_code=409, code="AUTH_USER_EXISTS", message="user already exists")
    except ValueError as exc:
        raise_api_error(status_code=400, code="BAD_REQUEST", message=str(exc))

    auth_session = create_auth_session(user_id=int(user["id"]), ttl_seconds=AUTH_SESSION_TTL_SECONDS)
    log_event("user_registered", userId=int(user["id"]), requestId=get_request_id(request))

    return AuthTokenResponse(
        requestId=get_request_id(request),
        token=str(auth_session["token"]),
        expiresAt=str(auth_session["expires_at"]),
        user=format_auth_user(user),
    )


@app.post("/api/auth/login", response_model=AuthTokenResponse)
def auth_login(payload: AuthLoginRequest, request: Request) -> AuthTokenResponse:
    limiter_key = build_login_rate_limiter_key(request=request, email=payload.email)
    pre_check = AUTH_LOGIN_RATE_LIMITER.check(key=limiter_key)
    if not pre_check.allowed:
        raise_api_error(
            status_code=429,
            code="AUTH_LOGIN_RATE_LIMITED",
            message=pre_check.message or "Too many failed login attempts",
            extra={"retryAfterSec": pre_check.reset_seconds},
        )

    user, verify_reason = verify_credentials_with_reason(email=payload.email, password=payload.password)
    if user is None:
        if verify_reason == VERIFY_REASON_ACCOUNT_INACTIVE:
            raise_api_error(
                status_code=403,
                code="AUTH_ACCOUNT_DISABLED",
                message="account is disabled",
            )

        fail_decision = AUTH_LOGIN_RATE_LIMITER.register_failure(key=limiter_key)
        if not fail_decision.allowed:
            raise_api_error(
                status_code=429,
                code="AUTH_LOGIN_RATE_LIMITED",
                message=fail_decision.message or "Too many failed login attempts",
                extra={"retryAfterSec": fail_decision.reset_seconds},
            )

        raise_api_error(
            status_code=401,
            code="AUTH_INVALID_CREDENTIALS",
            message="invalid credentials",
        )

    AUTH_LOGIN_RATE_LIMITER.register_success(key=limiter_key)
    auth_session = create_auth_session(user_id=int(user["id"]), ttl_seconds=AUTH_SESSION_TTL_SECONDS)

    return AuthTokenResponse(
        requestId=get_request_id(request),
        token=str(auth_session["token"]),
        expiresAt=str(auth_session["expires_at"]),
        user=format_auth_user(user),
    )


@app.get("/api/auth/me", response_model=AuthMeResponse)
def auth_me(request: Request) -> AuthMeResponse:
    user = require_current_user(request)
    return AuthMeResponse(
        requestId=get_request_id(request),
        user=format_auth_user(user),
        expiresAt=str(user.get("expiresAt", "")),
    )


@app.post("/api/auth/logout", response_model=AuthLogoutResponse)
def auth_logout(request: Request) -> AuthLogoutResponse:
    require_current_user(request)
    revoked = revoke_auth_session(token=parse_bearer_token(request))
    return AuthLogoutResponse(requestId=get_request_id(request), revoked=revoked)


@app.get("/api/resumes", response_model=ResumeListResponse)
def get_resumes(
    request: Request,
    limit: int = Query(default=DEFAULT_RESUME_LIST_LIMIT, ge=1),
) -> ResumeListResponse:
    owner_id = int(require_current_user(request)["id"])
    rows = list_resumes(owner_id=owner_id, limit=min(limit, MAX_RESUME_LIST_LIMIT))

    return ResumeListResponse(
        requestId=get_request_id(request),
        total=count_resumes(owner_id=owner_id),
        items=[format_resume_item(row) for row in rows],
    )


@app.post("/api/resumes", response_model=ResumeDetailResponse, status_code=201)
def create_resume_endpoint(payload: ResumeCreateRequest, request: Request) -> ResumeDetailResponse:
    owner_id = int(require_current_user(request)["id"])
    document = payload.model_dump(exclude={"title"})
    row = create_resume(owner_id=owner_id, title=payload.title, document=document)

    log_event("resume_saved", ownerId=owner_id, resumeId=int(row["id"]), requestId=get_request_id(request))
    return ResumeDetailResponse(requestId=get_request_id(request), item=format_resume_item(row))


@app.get("/api/resumes/{resume_id}", response_model=ResumeDetailResponse)
def get_resume_detail_endpoint(resume_id: int, request: Request) -> ResumeDetailResponse:
    if resume_id < 1:
        raise HTTPException(status_code=400, detail="resume_id must be positive")

    owner_id = int(require_current_user(request)["id"])
    row = fetch_resume(resume_id=resume_id, owner_id=owner_id)
    if row is None:
        raise HTTPException(status_code=404, detail="resume not found")

    return ResumeDetailResponse(requestId=get_request_id(request), item=format_resume_item(row))


@app.put("/api/resumes/{resume_id}", response_model=ResumeDetailResponse)
def update_resume_endpoint(resume_id: int, payload: ResumeUpdateRequest, request: Request) -> ResumeDetailResponse:
    if resume_id < 1:
        raise HTTPException(status_code=400, detail="resume_id must be positive")

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="at least one field is required")

    owner_id = int(require_current_user(request)["id"])
    row = update_resume(
        resume_id=resume_id,
        owner_id=owner_id,
        title=changes.pop("title", None),
        document=changes,
    )
    if row is None:
        raise HTTPException(status_code=404, detail="resume not found")

    log_event("resume_saved", ownerId=owner_id, resumeId=resume_id, requestId=get_request_id(request))
    return ResumeDetailResponse(requestId=get_request_id(request), item=format_resume_item(row))


@app.delete("/api/resumes/{resume_id}", response_model=ResumeDeleteResponse)
def delete_resume_endpoint(resume_id: int, request: Request) -> ResumeDeleteResponse:
    if resume_id < 1:
        raise HTTPException(status_code=400, detail="resume_id must be positive")

    deleted = delete_resume(resume_id=resume_id, owner_id=int(require_current_user(request)["id"]))
    if not deleted:
        raise HTTPException(status_code=404, detail="resume not found")

    return ResumeDeleteResponse(requestId=get_request_id(request), deleted=True)


@app.get("/api/resumes/{resume_id}/export")
def export_resume(
    resume_id: int,
    request: Request,
    format: Literal["txt", "json", "pdf"] = Query("txt"),
):
    if resume_id < 1:
        raise HTTPException(status_code=400, detail="resume_id must be positive")

    row = fetch_resume(resume_id=resume_id, owner_id=int(require_current_user(request)["id"]))
    if row is None:
        raise HTTPException(status_code=404, detail="resume not found")

    item = format_resume_item(row)
    filename_base = f"{slugify(item.title) or 'resume'}-{item.id}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"

    if format == "json":
        content = json.dumps(item.model_dump(), ensure_ascii=False, indent=2)
        return Response(
            content=content,
            media_type="application/json; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename_base}.json"'},
        )

    text_content = build_resume_export_text(item)
    if format == "txt":
        return Response(
            content=text_content,
            media_type="text/plain; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename_base}.txt"'},
        )

    return Response(
        content=build_pdf_bytes(text_content),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename_base}.pdf"'},
    )


@app.get("/api/portfolio", response_model=PortfolioResponse)
def get_portfolio_endpoint(request: Request) -> PortfolioResponse:
    row = get_owner_portfolio(require_current_user(request))
    return PortfolioResponse(
        requestId=get_request_id(request),
        item=format_portfolio_item(row) if row is not None else None,
    )


@app.put("/api/portfolio", response_model=PortfolioResponse)
def upsert_portfolio_endpoint(payload: PortfolioContentRequest, request: Request) -> PortfolioResponse:
    owner = require_current_user(request)
    try:
        row = save_portfolio_content(owner, payload.model_dump(exclude_unset=True))
    except InvalidFeaturedResumeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return PortfolioResponse(requestId=get_request_id(request), item=format_portfolio_item(row))


@app.post("/api/portfolio/publish", response_model=PortfolioResponse)
def publish_portfolio_endpoint(request: Request, payload: PortfolioPublishRequest | None = None) -> PortfolioResponse:
    owner = require_current_user(request)
    body = payload or PortfolioPublishRequest()

    desired_slug = (body.slug or "").strip() or None
    if desired_slug is not None and slugify(desired_slug) is None:
        raise HTTPException(status_code=400, detail="slug must contain letters or digits")

    content = body.portfolio.model_dump(exclude_unset=True) if body.portfolio is not None else None
    try:
        row = publish_portfolio(owner, desired_slug=desired_slug, content=content)
    except InvalidFeaturedResumeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return PortfolioResponse(requestId=get_request_id(request), item=format_portfolio_item(row))


@app.post("/api/portfolio/unpublish", response_model=PortfolioResponse)
def unpublish_portfolio_endpoint(request: Request) -> PortfolioResponse:
    owner = require_current_user(request)
    try:
        row = unpublish_portfolio(owner)
    except PortfolioNotFoundError as exc:
        raise HTTPException(status_code=404, detail="portfolio not found") from exc

    return PortfolioResponse(requestId=get_request_id(request), item=format_portfolio_item(row))


@app.get("/api/portfolio/public/{slug}", response_model=PublicPortfolioResponse)
def get_public_portfolio_endpoint(slug: str, request: Request) -> PublicPortfolioResponse:
    try:
        row = get_public_portfolio(slug)
    except PortfolioNotFoundError as exc:
        raise HTTPException(status_code=404, detail="portfolio not found") from exc

    return PublicPortfolioResponse(requestId=get_request_id(request), item=format_public_portfolio_item(row))


@app.post("/api/ai/improve", response_model=AiContentResponse)
def ai_improve_endpoint(payload: AiImproveRequest, request: Request) -> AiContentResponse:
    require_current_user(request)
    content, is_fallback = generate_ai_content(
        prompt=payload.prompt,
        system_prompt=(payload.context or "").strip() or IMPROVE_SYSTEM_PROMPT,
        model=payload.model,
    )
    return AiContentResponse(requestId=get_request_id(request), content=content, isFallback=is_fallback)


@app.post("/api/ai/portfolio-intro", response_model=AiContentResponse)
def ai_portfolio_intro_endpoint(payload: PortfolioIntroRequest, request: Request) -> AiContentResponse:
    require_current_user(request)
    content, is_fallback = generate_ai_content(
        prompt=build_portfolio_intro_prompt(payload),
        system_prompt=PORTFOLIO_INTRO_SYSTEM_PROMPT,
    )
    return AiContentResponse(requestId=get_request_id(request), content=content, isFallback=is_fallback)


@app.get("/api/metrics/snapshot")
def metrics_snapshot(request: Request) -> dict[str, Any]:
    result = METRICS.snapshot()
    result["requestId"] = get_request_id(request)
    result["geminiEnabled"] = is_gemini_enabled() and bool(get_gemini_api_key())
    return result


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = get_request_id(request)

    code = ERROR_CODE_BY_STATUS.get(exc.status_code, "REQUEST_ERROR")
    message = "Request failed"
    extra: dict[str, Any] = {}

    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        custom_code = str(exc.detail.get("code", "")).strip()
        custom_message = str(exc.detail.get("message", "")).strip()
        if custom_code:
            code = custom_code
        if custom_message:
            message = custom_message

        for key, value in exc.detail.items():
            if key in {"code", "message", "requestId"}:
                continue
            extra[key] = value

    payload: dict[str, Any] = build_error_payload(code=code, message=message, request_id=request_id)
    if extra:
        payload.update(extra)

    set_error_context(request, error_code=code, exception_type="HTTPException")
    return JSONResponse(
        status_code=exc.status_code,
        content=payload,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = get_request_id(request)
    first_error = exc.errors()[0] if exc.errors() else None
    message = first_error.get("msg", "Request validation failed") if first_error else "Request validation failed"
    set_error_context(request, error_code="VALIDATION_ERROR", exception_type="RequestValidationError")
    return JSONResponse(
        status_code=422,
        content=build_error_payload(code="VALIDATION_ERROR", message=message, request_id=request_id),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = get_request_id(request)
    set_error_context(request, error_code="INTERNAL_ERROR", exception_type=type(exc).__name__)
    logger.error(
        json.dumps(
            {
                "event": "unhandled_exception",
                "requestId": request_id,
                "exception_type": type(exc).__name__,
                "reason": str(exc),
            },
            ensure_ascii=False,
        )
    )
    return JSONResponse(
        status_code=500,
        content=build_error_payload(
            code="INTERNAL_ERROR",
            message="Unexpected server error",
            request_id=request_id,
        ),
    )
