"""Identity provider — issues and verifies email credentials.

``GoTrueIdentityProvider`` talks to a GoTrue-compatible auth server
(``/auth/v1/otp``, ``/auth/v1/verify``, ``/auth/v1/user``).  Callers only
see the abstract interface, so tests and alternative providers can
substitute their own implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from rcs_auth.config import settings
from rcs_auth.errors import InvalidCredential, UpstreamUnavailable
from rcs_auth.services.phone import mask_email

logger = logging.getLogger(__name__)


@dataclass
class IssuedCredential:
    """Value object returned after a code or magic link is verified."""

    user_id: str
    email: str
    token: str
    expires_in: int


@dataclass
class TokenClaims:
    """Subject and claims behind a bearer token."""

    user_id: str
    email: str | None
    claims: dict[str, Any] = field(default_factory=dict)

    def claim(self, name: str) -> Any:
        """Look a claim up in user metadata first, then app metadata."""
        for section in ("user_metadata", "app_metadata"):
            value = (self.claims.get(section) or {}).get(name)
            if value is not None:
                return value
        return None


class IdentityProvider(ABC):
    """Abstract interface for the email identity provider."""

    @abstractmethod
    async def issue_credential(self, email: str, redirect_to: str | None = None) -> None:
        """Send a magic link / one-time code to *email*."""

    @abstractmethod
    async def verify_credential(
        self,
        *,
        email: str | None = None,
        code: str | None = None,
        token_hash: str | None = None,
        kind: str = "email",
    ) -> IssuedCredential:
        """Exchange a code (with *email*) or a link *token_hash* for a session."""

    @abstractmethod
    async def validate_token(self, token: str) -> TokenClaims:
        """Resolve a bearer token to its subject and claims."""


class GoTrueIdentityProvider(IdentityProvider):
    """Async HTTP wrapper around a GoTrue auth server."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = (base_url or settings.identity_base_url).rstrip("/") + "/auth/v1"
        self._api_key = api_key or settings.identity_service_key or settings.identity_anon_key
        self._timeout = timeout

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        headers = {"apikey": self._api_key, "Content-Type": "application/json"}
        headers["Authorization"] = f"Bearer {bearer or self._api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: str | None = None,
        json: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(
                    method, url, headers=self._headers(bearer), json=json, params=params
                )
        except httpx.HTTPError as exc:
            logger.exception("Identity provider request error: %s", exc)
            raise UpstreamUnavailable(f"{method} {path}: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.error("Identity provider %s %s failed: %s %s", method, path, resp.status_code, resp.text)
            raise UpstreamUnavailable(f"{method} {path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            logger.info("Identity provider rejected %s %s: %s", method, path, resp.status_code)
            raise InvalidCredential(_error_message(resp))
        return resp

    # ── Credential issue / verify ────────────────────────

    async def issue_credential(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request(
            "POST", "/otp", json={"email": email, "create_user": False}, params=params
        )
        logger.info("Credential issued for %s", mask_email(email))

    async def verify_credential(
        self,
        *,
        email: str | None = None,
        code: str | None = None,
        token_hash: str | None = None,
        kind: str = "email",
    ) -> IssuedCredential:
        if token_hash:
            body: dict[str, Any] = {"type": kind, "token_hash": token_hash}
        elif email and code:
            body = {"type": kind, "email": email, "token": code}
        else:
            raise InvalidCredential("Either token_hash or email and code are required")

        resp = await self._request("POST", "/verify", json=body)
        data = resp.json()
        user = data.get("user") or {}
        if not data.get("access_token") or not user.get("id"):
            raise InvalidCredential("Verification returned no session")
        return IssuedCredential(
            user_id=user["id"],
            email=user.get("email") or email or "",
            token=data["access_token"],
            expires_in=int(data.get("expires_in", 0)),
        )

    # ── Token validation ─────────────────────────────────

    async def validate_token(self, token: str) -> TokenClaims:
        resp = await self._request("GET", "/user", bearer=token)
        user = resp.json()
        if not user.get("id"):
            raise InvalidCredential("Token resolved to no user")
        return TokenClaims(
            user_id=user["id"],
            email=user.get("email"),
            claims={
                "user_metadata": user.get("user_metadata") or {},
                "app_metadata": user.get("app_metadata") or {},
            },
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if not isinstance(data, dict):
        return f"HTTP {resp.status_code}"
    return (
        data.get("error_description")
        or data.get("msg")
        or data.get("message")
        or data.get("error")
        or f"HTTP {resp.status_code}"
    )
