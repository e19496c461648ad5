from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class RequestContext:
    """Client attributes a token can be softly bound to."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None

    @classmethod
    def from_headers(
        cls, client_host: Optional[str], headers: Mapping[str, str]
    ) -> "RequestContext":
        return cls(
            ip=client_host,
            user_agent=headers.get("user-agent"),
            accept_language=headers.get("accept-language"),
        )


def fingerprint(context: RequestContext) -> str:
    """SHA-256 over the non-empty context parts joined with ``|``.

    Missing parts are dropped rather than replaced, so a request without an
    Accept-Language header hashes ``ip|user-agent``. The digest is a replay
    deterrent only; it identifies a client context, never a user.
    """
    parts = [
        part
        for part in (context.ip, context.user_agent, context.accept_language)
        if part
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
