from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from august_relay.collaborators import AuthTokenProvider
from august_relay.errors import TransportError
from august_relay.transport.endpoints import messages_url


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/3)...")


_RETRY_KWARGS = {
    "retry": retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout)),
    "wait": wait_exponential(multiplier=1, min=1, max=8),
    "stop": stop_after_attempt(3),
    "before_sleep": _on_retry,
    "reraise": True,
}


class BackendClient:
    """Request/response calls to the chat backend.

    Covers the non-streaming message endpoint, the reachability check and
    the OAuth broker endpoints. Doubles as the ``ToolAuthBroker``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth: AuthTokenProvider | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth is None:
            return headers
        try:
            token = await self._auth.get_current_token()
        except Exception as ex:
            logger.warning(f"Could not read auth token, sending unauthenticated: {ex}")
            token = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @retry(**_RETRY_KWARGS)
    async def send_message(
        self,
        chat_id: str,
        messages: list[dict],
        *,
        enabled_tools: list[str] | None = None,
        auth_status: dict[str, bool] | None = None,
        context_data: dict[str, Any] | None = None,
    ) -> dict:
        body = {
            "messages": messages,
            "enabledTools": enabled_tools or [],
            "stream": False,
            "authStatus": auth_status or {},
            "contextData": context_data or {},
        }
        logger.debug(f"POST messages: chat={chat_id}, messages={len(messages)}, tools={len(body['enabledTools'])}")
        response = await self._client.post(messages_url(self._base_url, chat_id), json=body, headers=await self.auth_headers())
        self._raise_for_status(response)
        return response.json()

    async def test_connection(self) -> dict:
        try:
            response = await self._client.get(f"{self._base_url}/api/test")
        except httpx.HTTPError as ex:
            return {"success": False, "error": {"message": str(ex) or type(ex).__name__}}
        if not response.is_success:
            return {
                "success": False,
                "error": {"message": f"HTTP Error: {response.status_code} {response.reason_phrase}".rstrip()},
            }
        return {"success": True, "data": response.json()}

    @retry(**_RETRY_KWARGS)
    async def init_auth(self, service: str) -> dict:
        response = await self._client.post(
            f"{self._base_url}/api/composio/auth/{quote(service, safe='')}",
            json={},
            headers=await self.auth_headers(),
        )
        self._raise_for_status(response)
        data = response.json()
        if not data.get("redirectUrl"):
            raise TransportError(f"No redirect URL provided for {service}")
        return data

    async def check_auth_status(self, service: str) -> dict:
        try:
            response = await self._client.get(
                f"{self._base_url}/api/composio/auth/{quote(service, safe='')}/status",
                headers=await self.auth_headers(),
            )
            self._raise_for_status(response)
            return {"authenticated": bool(response.json().get("authenticated"))}
        except (httpx.HTTPError, TransportError, ValueError) as ex:
            logger.warning(f"Error checking auth status for {service}: {ex}")
            return {"authenticated": False}

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise TransportError(
            f"HTTP Error: {response.status_code} {response.reason_phrase}".rstrip(),
            status_code=response.status_code,
        )
