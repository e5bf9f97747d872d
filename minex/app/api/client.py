"""
Resilient HTTP client for the trip backend.

Every call:
1. Attaches the stored bearer token, if any.
2. On 401, refreshes the session once and replays the request. If the refresh
   fails, all stored credentials are cleared and the 401 is raised as
   AuthenticationError so the UI can force a new login.
3. Retries transient failures (timeouts, resets, DNS errors, 502/503/504)
   up to 3 more times with 250ms/500ms/1000ms backoff.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from minex.app.core.config import settings
from minex.app.core.exceptions import ApiError, AuthenticationError, NetworkError
from minex.app.core.observability import RequestTimer, new_correlation_id
from minex.app.core.reliability import TRANSIENT_TRANSPORT_ERRORS, RetryPolicy
from minex.app.services.credentials import CredentialStore

logger = logging.getLogger("minex.api")


class ApiClient:

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_session_expired: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_session_expired = on_session_expired
        self.not_found_max_attempts = settings.not_found_max_attempts
        self._refresh_lock = asyncio.Lock()
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=httpx.Timeout(timeout or settings.http_timeout_seconds),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def aclose(self) -> None:
        if not self._http.is_closed:
            await self._http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        retry_on_not_found: bool = False,
    ) -> httpx.Response:
        """
        Send one logical request, with retries, and return the 2xx response.

        Raises:
            AuthenticationError: 401 that a token refresh could not fix
            NetworkError: transport failure after all retries
            ApiError: any other non-2xx response
        """
        correlation_id = new_correlation_id()
        state = {"attempt": 0, "refreshed": False}

        def should_retry(error: Exception, attempt: int) -> bool:
            if isinstance(error, AuthenticationError):
                return False
            if isinstance(error, ApiError) and error.is_transient:
                return True
            if retry_on_not_found and isinstance(error, ApiError) and error.is_not_found:
                return attempt < self.not_found_max_attempts
            return False

        return await self.retry_policy.call(
            self._send,
            method,
            path,
            json,
            params,
            correlation_id,
            state,
            should_retry=should_retry,
        )

    async def _send(
        self,
        method: str,
        path: str,
        json: Any,
        params: Optional[Dict[str, Any]],
        correlation_id: str,
        state: Dict[str, Any],
    ) -> httpx.Response:
        state["attempt"] += 1
        response = await self._send_once(method, path, json, params, correlation_id, state)

        if response.status_code == 401 and not state["refreshed"]:
            # Exactly one refresh per logical request, whatever the retries
            state["refreshed"] = True
            if await self._refresh_session(state.get("token")):
                response = await self._send_once(method, path, json, params, correlation_id, state)
            else:
                await self._expire_session()
                raise ApiError.from_response(response)

        if response.status_code == 401:
            await self._expire_session()

        if response.is_error:
            raise ApiError.from_response(response)
        return response

    async def _send_once(
        self,
        method: str,
        path: str,
        json: Any,
        params: Optional[Dict[str, Any]],
        correlation_id: str,
        state: Dict[str, Any],
    ) -> httpx.Response:
        headers = {"X-Correlation-ID": correlation_id}
        token = await self.credentials.get_auth_token()
        state["token"] = token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        timer = RequestTimer(method, path, correlation_id, state["attempt"])
        try:
            response = await self._http.request(method, path, json=json, params=params, headers=headers)
        except TRANSIENT_TRANSPORT_ERRORS as e:
            timer.log(None, error=type(e).__name__)
            raise NetworkError(f"{type(e).__name__}: {e}") from e
        except httpx.TransportError as e:
            timer.log(None, error=type(e).__name__)
            raise ApiError(f"{type(e).__name__}: {e}", error_code="ERR_TRANSPORT") from e

        timer.log(response.status_code)
        return response

    async def _refresh_session(self, rejected_token: Optional[str]) -> bool:
        """Exchange the stored refresh token for a new bearer token."""
        async with self._refresh_lock:
            current = await self.credentials.get_auth_token()
            if current and current != rejected_token:
                # Another request already refreshed while we waited
                return True

            refresh_token = await self.credentials.get_refresh_token()
            if not refresh_token:
                logger.warning("Session expired and no refresh token is stored")
                return False

            try:
                response = await self._http.post(
                    settings.auth_refresh_path,
                    json={"refreshToken": refresh_token},
                )
            except httpx.TransportError as e:
                logger.warning("Token refresh failed", extra={"error": type(e).__name__})
                return False

            if response.is_error:
                logger.warning("Token refresh rejected", extra={"status_code": response.status_code})
                return False

            try:
                data = response.json()
            except ValueError:
                return False
            new_token = data.get("token") or data.get("accessToken")
            if not new_token:
                return False

            await self.credentials.update_tokens(new_token, data.get("refreshToken"))
            logger.info("Session refreshed")
            return True

    async def _expire_session(self) -> None:
        await self.credentials.clear()
        logger.warning("Session expired, stored credentials cleared")
        if self.on_session_expired is not None:
            await self.on_session_expired()
