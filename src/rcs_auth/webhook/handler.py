"""Twilio webhooks, the magic-link callback and session status."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from rcs_auth.agents.auth_agent import AuthAgent
from rcs_auth.config import settings
from rcs_auth.database.engine import async_session_factory
from rcs_auth.database.repository import SessionStore
from rcs_auth.errors import (
    ChannelDowngraded,
    Expired,
    InvalidCredential,
    NotFound,
    RcsAuthError,
    UpstreamUnavailable,
)
from rcs_auth.services.identity_provider import GoTrueIdentityProvider, IdentityProvider
from rcs_auth.services.message_router import MessageRouter
from rcs_auth.services.phone import mask_phone, normalize_phone
from rcs_auth.services.session_manager import SessionManager
from rcs_auth.services.transport import MessageTransport, build_transport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])

MAGIC_LINK_TYPES = {"magiclink", "recovery"}


# ── Shared instances (created once, reused across requests) ──
@dataclass
class Services:
    manager: SessionManager
    auth_agent: AuthAgent
    router: MessageRouter


def build_services(
    session_factory=async_session_factory,
    identity: IdentityProvider | None = None,
    transport: MessageTransport | None = None,
) -> Services:
    identity = identity or GoTrueIdentityProvider()
    transport = transport or build_transport()
    manager = SessionManager(SessionStore(session_factory), identity)
    auth_agent = AuthAgent(manager, identity, session_factory)
    return Services(manager, auth_agent, MessageRouter(manager, auth_agent, transport))


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# ──────────────────────────────────────────────────────────────
# Signature validation
# ──────────────────────────────────────────────────────────────
def compute_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    """Twilio's request signature: HMAC-SHA1 over the URL plus sorted params."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def _url_variants(url: str) -> list[str]:
    """*url* as configured plus the same URL with its default port toggled.

    Twilio signs whichever form it was given, so both are accepted.
    """
    parts = urlsplit(url)
    default_port = {"https": 443, "http": 80}.get(parts.scheme)
    if default_port is None or not parts.hostname:
        return [url]
    if parts.port is None:
        netloc = f"{parts.netloc}:{default_port}"
    elif parts.port == default_port:
        netloc = parts.netloc.rsplit(":", 1)[0]
    else:
        return [url]
    return [url, urlunsplit(parts._replace(netloc=netloc))]


def is_valid_signature(signature: str | None, url: str, params: dict[str, str]) -> bool:
    if not settings.validate_webhook_signature:
        return True
    if not signature or not settings.twilio_auth_token:
        return False
    return any(
        hmac.compare_digest(compute_signature(settings.twilio_auth_token, candidate, params), signature)
        for candidate in _url_variants(url)
    )


async def _signed_form(request: Request, url: str) -> dict[str, str] | None:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if not is_valid_signature(request.headers.get("X-Twilio-Signature"), url, params):
        logger.warning("Rejected Twilio request with invalid signature for %s", url)
        return None
    return params


# ──────────────────────────────────────────────────────────────
# POST /api/twilio/webhook — Incoming messages
# ──────────────────────────────────────────────────────────────
@router.post("/api/twilio/webhook")
async def receive_message(request: Request, services: Services = Depends(get_services)) -> Response:
    """Process an incoming RCS/SMS message.

    Twilio posts form fields; the ones used here are ``From``, ``Body``,
    ``MessageSid`` and ``ChannelPrefix`` (``RCS``, ``SM`` or ``MM``).
    """
    params = await _signed_form(request, settings.webhook_url)
    if params is None:
        return Response(content="Invalid signature", status_code=403)

    phone = normalize_phone(params.get("From", ""))
    text_body = params.get("Body", "").strip()
    prefix = params.get("ChannelPrefix") or None
    if not phone or not text_body:
        logger.debug("Ignoring webhook without sender or body")
        return Response(content="OK", media_type="text/plain")

    logger.info("Received %s from %s: %s", prefix or "SMS", mask_phone(phone), text_body[:80])

    try:
        await services.router.handle(phone, text_body, prefix)
    except RcsAuthError as exc:
        logger.error("Failed to handle message from %s: %s", mask_phone(phone), exc)

    return Response(content="OK", media_type="text/plain")


# ──────────────────────────────────────────────────────────────
# POST /api/twilio/status-callback — Delivery status / channel
# ──────────────────────────────────────────────────────────────
@router.post("/api/twilio/status-callback")
async def status_callback(request: Request, services: Services = Depends(get_services)) -> Response:
    params = await _signed_form(request, settings.status_callback_url)
    if params is None:
        return Response(content="Invalid signature", status_code=403)

    message_id = params.get("MessageSid", "")
    prefix = params.get("ChannelPrefix") or None
    logger.info(
        "Status callback: %s - %s via %s", message_id, params.get("MessageStatus"), prefix
    )
    if message_id:
        try:
            await services.manager.apply_status_callback(message_id, prefix)
        except RcsAuthError as exc:
            logger.error("Failed to apply status callback %s: %s", message_id, exc)
    return Response(status_code=200)


# ──────────────────────────────────────────────────────────────
# GET /api/auth/callback — Magic link landing
# ──────────────────────────────────────────────────────────────
@router.get("/api/auth/callback")
async def auth_callback(
    token_hash: str | None = Query(None),
    link_type: str | None = Query(None, alias="type"),
    error: str | None = Query(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Exchange the emailed link for a session and confirm over RCS/SMS."""
    if error:
        logger.error("Callback error from identity provider: %s", error)
        return _callback_result(error, status_code=400)
    if link_type not in MAGIC_LINK_TYPES:
        return _callback_result("Invalid callback type", status_code=400)
    if not token_hash:
        return _callback_result("Missing authentication token", status_code=400)

    try:
        phone, confirmation = await services.auth_agent.complete_magic_link(token_hash, link_type)
    except InvalidCredential as exc:
        message = str(exc)
        if "expired" in message.lower():
            message = "This link has expired. Please request a new one."
        elif "invalid" in message.lower():
            message = "This link is invalid or has already been used."
        return _callback_result(message, status_code=400)
    except ChannelDowngraded:
        return _callback_result(
            "Your secure channel changed. Text LOGIN to start again.", status_code=400
        )
    except UpstreamUnavailable:
        return _callback_result("Authentication failed. Please try again later.", status_code=503)

    await services.router.reply(phone, confirmation)
    logger.info("Magic link completed for %s", mask_phone(phone))
    return _callback_result(None)


def _callback_result(error: str | None, status_code: int = 200) -> JSONResponse:
    if error is None:
        return JSONResponse({"status": "authenticated"}, status_code=status_code)
    return JSONResponse({"status": "error", "message": error}, status_code=status_code)


# ──────────────────────────────────────────────────────────────
# GET /api/auth/status — Session lookup by bearer token
# ──────────────────────────────────────────────────────────────
@router.get("/api/auth/status")
async def session_status(
    authorization: str | None = Header(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Describe the session a bearer token belongs to."""
    token = (authorization or "").removeprefix("Bearer ").strip()
    if not token:
        return JSONResponse({"error": "No authentication token"}, status_code=401)

    try:
        session, claims = await services.manager.session_for_token(token)
    except InvalidCredential:
        return JSONResponse({"error": "Invalid token"}, status_code=401)
    except NotFound:
        return JSONResponse({"error": "Session not found"}, status_code=404)
    except Expired:
        return JSONResponse({"error": "Session expired"}, status_code=401)
    except UpstreamUnavailable:
        return JSONResponse({"error": "Identity provider unavailable"}, status_code=503)

    return JSONResponse(
        {
            "authenticated": True,
            "phone_number": session.phone_number,
            "email": claims.email or session.email,
            "expires_at": session.expires_at.isoformat(),
            "auth_method": session.auth_method.value,
            "user_id": claims.user_id,
            "org_id": claims.claim("org_id"),
            "user_role": claims.claim("user_role"),
        }
    )


# ──────────────────────────────────────────────────────────────
# GET /api/admin/session-stats — Monitoring
# ──────────────────────────────────────────────────────────────
@router.get("/api/admin/session-stats")
async def session_stats(services: Services = Depends(get_services)) -> dict:
    stats = await services.manager.get_session_stats()
    return {
        "active_sessions": stats.active_sessions,
        "by_method": stats.by_method,
        "average_session_age_seconds": int(stats.average_session_age.total_seconds()),
    }
