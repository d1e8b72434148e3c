"""HTTP side of the client: the unified write endpoint and the poll transport."""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from livequiz.exceptions import SessionNotFound, TransientNetworkFailure

logger = logging.getLogger(__name__)


class LiveQuizApi:
    """Thin wrapper over ``httpx.AsyncClient``.

    Transport errors, timeouts and 5xx answers raise TransientNetworkFailure.
    Every other answer is returned as the server's ``{success, data, error,
    error_code}`` envelope, whatever its status code.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=self.headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientNetworkFailure(f"{method} {path} failed: {exc}") from exc
        logger.debug("%s %s -> %s", method, path, response.status_code)
        if response.status_code >= 500:
            raise TransientNetworkFailure(f"{method} {path} answered {response.status_code}")
        return response

    async def send(
        self,
        session_id: int,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        connection_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/api/v1/live/{session_id}/actions",
            json={"action": action, "connection_id": connection_id, "payload": payload or {}},
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientNetworkFailure(f"Malformed response to {action}") from exc
        if "success" not in body:
            # Framework-level rejection (auth, validation) rather than an action result.
            return {
                "success": False,
                "error": str(body.get("detail") or response.reason_phrase),
                "error_code": f"http_{response.status_code}",
            }
        return body

    async def poll(
        self,
        session_id: int,
        connection_id: Optional[str],
        last_sequence_id: int = 0,
    ) -> Dict[str, Any]:
        params = {"last_sequence_id": last_sequence_id}
        if connection_id:
            params["connection_id"] = connection_id
        response = await self._request("GET", f"/api/v1/live/{session_id}/poll", params=params)
        if response.status_code == 404:
            raise SessionNotFound(f"Session {session_id} not found")
        if response.status_code != 200:
            raise TransientNetworkFailure(f"Poll answered {response.status_code}")
        return response.json()

    def push_url(self, session_id: int, connection_id: str, last_sequence_id: Optional[int]) -> str:
        scheme = "wss" if self.base_url.startswith("https") else "ws"
        host = self.base_url.split("://", 1)[-1]
        query = {"token": self.token, "connection_id": connection_id}
        if last_sequence_id is not None:
            query["last_sequence_id"] = last_sequence_id
        return f"{scheme}://{host}/api/v1/live/{session_id}/ws?{urlencode(query)}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
