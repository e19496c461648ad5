from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from marketsphere.logging import get_logger
from marketsphere.service.errors import OAuthVerificationError

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass(frozen=True)
class OAuthIdentity:
    subject: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


class OAuthVerifier(Protocol):
    async def verify(self, credential: str) -> OAuthIdentity: ...


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class GoogleTokenVerifier:
    """Verify Google ID tokens through Google's tokeninfo endpoint.

    Google checks the signature; this class checks audience, issuer and
    expiry of the returned claims before trusting them.
    """

    def __init__(
        self,
        client_id: str,
        *,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.timeout = timeout
        self._transport = transport

    async def verify(self, credential: str) -> OAuthIdentity:
        if not credential:
            raise OAuthVerificationError("missing google credential")
        claims = await self._fetch_tokeninfo(credential)
        return self._identity_from_claims(claims)

    async def _fetch_tokeninfo(self, credential: str) -> dict:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(
                    self.tokeninfo_url, params={"id_token": credential}
                )
                response.raise_for_status()
                claims = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "google_tokeninfo_rejected", status_code=exc.response.status_code
            )
            raise OAuthVerificationError() from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("google_tokeninfo_failed", error=str(exc))
            raise OAuthVerificationError() from exc
        if not isinstance(claims, dict):
            raise OAuthVerificationError()
        return claims

    def _identity_from_claims(self, claims: dict) -> OAuthIdentity:
        if claims.get("aud") != self.client_id:
            logger.warning("google_token_wrong_audience")
            raise OAuthVerificationError()
        if claims.get("iss") not in GOOGLE_ISSUERS:
            logger.warning("google_token_wrong_issuer", issuer=claims.get("iss"))
            raise OAuthVerificationError()
        try:
            expires_at = int(claims.get("exp", 0))
        except (TypeError, ValueError):
            expires_at = 0
        if expires_at <= int(time.time()):
            raise OAuthVerificationError("google credential expired")
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            raise OAuthVerificationError("google credential missing identity")
        return OAuthIdentity(
            subject=str(subject),
            email=str(email).strip().lower(),
            email_verified=_truthy(claims.get("email_verified", False)),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )
