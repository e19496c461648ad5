from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from marketsphere.client.refresh import RefreshCoordinator, RefreshFailedError
from marketsphere.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "accessToken"

# A 401 from these endpoints is final; refreshing would not help or would loop
NO_REFRESH_PATHS = (
    "/auth/login",
    "/auth/google",
    "/auth/logout",
    "/auth/refresh",
    "/payment/intent",
)


@dataclass
class CredentialStore:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    remember: bool = False
    # Tokens live only in the HTTP client's cookie jar
    cookie_session: bool = False

    def update(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        remember: Optional[bool] = None,
    ) -> None:
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        if remember is not None:
            self.remember = remember

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.remember = False
        self.cookie_session = False

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token) or self.cookie_session


class SessionClient:
    """Async API client that refreshes expired sessions transparently.

    Requests carry the stored access token, or rely on the cookie jar when
    the server runs cookie-only transport. A 401 from a non-auth endpoint
    triggers one shared refresh through ``RefreshCoordinator`` and a single
    retry of the original request; if the refresh fails the original 401
    response is returned and the stored credentials are gone.
    """

    def __init__(
        self,
        base_url: str,
        *,
        credentials: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_prefix: str = "/v1",
        timeout: float = 10.0,
        on_session_expired: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.credentials = credentials or CredentialStore()
        self.api_prefix = api_prefix.rstrip("/")
        self.http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._on_session_expired = on_session_expired
        self.coordinator = RefreshCoordinator(
            self._refresh_access_token,
            on_logout=self._forget_session,
            on_session_expired=self._session_expired,
        )

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def _path(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    def _forget_session(self) -> None:
        self.credentials.clear()
        self.http.cookies.clear()

    def _session_expired(self, error: Exception) -> None:
        logger.info("session_expired", error=str(error))
        if self._on_session_expired is not None:
            self._on_session_expired(error)

    @staticmethod
    def _refreshable(url: str) -> bool:
        return not any(marker in url for marker in NO_REFRESH_PATHS)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers: Dict[str, str] = dict(kwargs.pop("headers", None) or {})
        if self.credentials.access_token:
            headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        return await self.http.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, url, **kwargs)
        if response.status_code != 401 or not self._refreshable(url):
            return response
        try:
            await self.coordinator.refresh()
        except RefreshFailedError:
            return response
        # Retried exactly once; a second 401 is returned as-is
        return await self._send(method, url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def _refresh_access_token(self) -> str:
        payload: Dict[str, Any] = {"remember": self.credentials.remember}
        # Without a stored token the server falls back to the refreshToken cookie
        if self.credentials.refresh_token:
            payload["refresh_token"] = self.credentials.refresh_token
        response = await self.http.post(self._path("/auth/refresh"), json=payload)
        if response.status_code != 200:
            raise RefreshFailedError(f"refresh rejected with status {response.status_code}")
        data = response.json().get("data") or {}
        access_token = data.get("access_token")
        if access_token:
            self.credentials.update(access_token, data.get("refresh_token"))
            return access_token
        cookie_token = response.cookies.get(ACCESS_TOKEN_COOKIE)
        if not cookie_token:
            raise RefreshFailedError("refresh response carried no access token")
        self.credentials.cookie_session = True
        return cookie_token

    def _store_login(self, response: httpx.Response, remember: bool) -> Dict[str, Any]:
        response.raise_for_status()
        data = response.json()["data"]
        self.credentials.update(
            data.get("access_token"), data.get("refresh_token"), remember=remember
        )
        self.credentials.cookie_session = (
            not data.get("access_token") and ACCESS_TOKEN_COOKIE in response.cookies
        )
        return data

    async def login(self, email: str, password: str, *, remember: bool = False) -> Dict[str, Any]:
        response = await self.http.post(
            self._path("/auth/login"),
            json={"email": email, "password": password, "remember": remember},
        )
        return self._store_login(response, remember)

    async def login_with_google(self, credential: str, *, remember: bool = False) -> Dict[str, Any]:
        response = await self.http.post(
            self._path("/auth/google"),
            json={"credential": credential, "remember": remember},
        )
        return self._store_login(response, remember)

    async def logout(self) -> None:
        """Tell the server, then forget credentials whatever it answered."""
        try:
            await self._send(
                "POST",
                self._path("/auth/logout"),
                json={"refresh_token": self.credentials.refresh_token},
            )
        except httpx.HTTPError as exc:
            logger.warning("logout_request_failed", error=str(exc))
        finally:
            self._forget_session()

    async def current_user(self) -> Dict[str, Any]:
        response = await self.get(self._path("/auth/me"))
        response.raise_for_status()
        return response.json()["data"]
