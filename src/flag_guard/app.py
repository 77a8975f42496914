"""This module contains the FastAPI application for the Flag Guard service.

It defines the endpoint visitors use to report a comment, the status check
that also probes whether the browser keeps cookies, and the administrator
endpoints for settings, notices and the per-comment report tally. It also
handles the application startup logic, including the initialization of the
FlagGuard instance.
"""
from __future__ import annotations
import os
import logging
from typing import Any, Optional
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel
from .guard import FlagGuard, DEFAULT_CONFIG, RequestContext
from .errors import InvalidReport
from .stores import AdminNotices, InMemoryContentStore, Settings
from prometheus_client import make_asgi_app

VERSION = "0.5.0"
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"

logger = logging.getLogger(__name__)

app = FastAPI(title="Flag Guard API")

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


def build_guard(config: Optional[dict] = None) -> FlagGuard:
    """Creates a FlagGuard with in-memory collaborators.

    ``FLAG_ENABLED`` and ``FLAG_THRESHOLD`` override the configured settings,
    and ``SEED_COMMENT_IDS`` (comma-separated) preloads known comments.
    """
    conf = (config or DEFAULT_CONFIG).copy()
    notices = AdminNotices(ttl=conf.get("notice_ttl", 3600))
    settings = Settings(
        enabled=os.getenv("FLAG_ENABLED", "1" if conf["enabled"] else "0") == "1",
        threshold=os.getenv("FLAG_THRESHOLD", conf["threshold"]),
        notices=notices,
    )
    content_store = InMemoryContentStore()
    for raw_id in os.getenv("SEED_COMMENT_IDS", "").split(","):
        raw_id = raw_id.strip()
        if raw_id.isdigit():
            content_store.add(int(raw_id))
    return FlagGuard(conf, content_store, settings)


@app.on_event("startup")
async def startup_event():
    """Initializes the FlagGuard instance at application startup."""
    if getattr(app.state, "guard", None) is None:
        app.state.guard = build_guard()


def client_address(request: Request) -> str:
    """Returns the reporting client's address.

    Args:
        request: The incoming request.
    """
    trust_proxy = os.getenv("TRUST_XFF", "0") == "1"
    address = request.client.host if request.client else ""
    if trust_proxy:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            address = fwd.split(",")[0].strip()
    return address


def request_context(request: Request) -> RequestContext:
    """Builds the RequestContext from the client's cookies and address."""
    config = app.state.guard.config
    return RequestContext(
        client_address=client_address(request),
        capability_token_present=config["test_cookie"] in request.cookies,
        capability_token_value=request.cookies.get(config["storage_cookie"]),
    )


def get_guard() -> FlagGuard:
    return app.state.guard


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Returns the version of the service."""
    return {"version": VERSION}


@app.get("/comments/{comment_id}/flag-status")
def flag_status(comment_id: int, request: Request, response: Response):
    """Tells the page whether to show the report link for a comment.

    Also sets the cookie probe so that later reports know whether this
    browser keeps cookies.
    """
    guard = get_guard()
    try:
        status = guard.flag_status(comment_id, request_context(request))
    except InvalidReport as e:
        raise HTTPException(status_code=404, detail=e.message)
    test_cookie = guard.config["test_cookie"]
    if test_cookie not in request.cookies:
        response.set_cookie(test_cookie, guard.config["test_cookie_value"])
    return status


@app.post("/flag")
async def flag_comment(request: Request, response: Response):
    """Reports a comment as inappropriate.

    The body is read by hand so that any payload, including one that is not
    a JSON object, ends in a report outcome rather than a validation error.
    """
    try:
        payload = await request.json()
    except (ValueError, RecursionError):
        payload = None
    comment_id = payload.get("comment_id") if isinstance(payload, dict) else None
    guard = get_guard()
    outcome = guard.submit_report(comment_id, request_context(request))
    if outcome.accepted and outcome.token:
        try:
            response.set_cookie(
                guard.config["storage_cookie"],
                outcome.token,
                max_age=outcome.token_max_age,
            )
        except Exception as e:
            logger.warning(f"Could not write report cookie: {e}")
    return outcome.to_dict()


class SettingsUpdate(BaseModel):
    """The request model for updating the flagging settings."""
    enabled: Optional[bool] = None
    threshold: Any = None


@app.get("/admin/settings")
def read_settings():
    """Returns the current flagging settings."""
    return get_guard().settings.to_dict()


@app.put("/admin/settings")
def update_settings(req: SettingsUpdate):
    """Updates the flagging settings; bad thresholds raise a notice."""
    settings = get_guard().settings
    settings.update(enabled=req.enabled, threshold=req.threshold)
    return {**settings.to_dict(), "notices": settings.notices.pending()}


@app.get("/admin/notices")
def read_notices():
    """Returns and clears the pending administrator notices."""
    return {"notices": get_guard().settings.notices.pop_all()}


def _require_comment(guard: FlagGuard, comment_id: int):
    if not guard.content_store.content_exists(comment_id):
        raise HTTPException(status_code=404, detail="This comment does not exist.")


@app.put("/admin/comments/{comment_id}")
def register_comment(comment_id: int):
    """Registers a comment with the in-memory content store."""
    guard = get_guard()
    guard.content_store.add(comment_id)
    return guard.report_summary(comment_id)


@app.get("/admin/comments/{comment_id}")
def read_comment(comment_id: int):
    """Returns the report tally and moderation state of a comment."""
    guard = get_guard()
    _require_comment(guard, comment_id)
    return guard.report_summary(comment_id)


@app.post("/admin/comments/{comment_id}/approve")
def approve_comment(comment_id: int):
    """Releases a held comment; later reports no longer hold it."""
    guard = get_guard()
    _require_comment(guard, comment_id)
    approved = guard.content_store.approve(comment_id)
    return {**guard.report_summary(comment_id), "approved": approved}


@app.get("/admin/stats")
def stats():
    """Returns the report outcome metrics."""
    return get_guard().metrics.summary()
