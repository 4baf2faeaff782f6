"""
REST HTTP client for the wallet ledger and rating endpoints.
"""

from typing import Any, Optional

import httpx

from consultline.errors import ConsultError

DEFAULT_TIMEOUT = 15.0
USER_AGENT = "consultline/0.1.0"


class HttpClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def set_token(self, token: str) -> None:
        self._token = token

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap the standard response shape: { "success": true, "data": <actual_data> }"""
        if isinstance(json_data, dict) and "data" in json_data and ("success" in json_data or "status" in json_data):
            return json_data["data"]
        return json_data

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=body, headers=self._headers(headers))
        except httpx.TransportError as e:
            raise ConsultError("transport_error", f"{method} {path} failed: {e}")
        if resp.status_code >= 400:
            raise ConsultError(
                "http_error",
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                {"status": resp.status_code},
            )
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            raise ConsultError(
                "invalid_response",
                f"{method} {path} returned a non-JSON body: {resp.text[:200]}",
                {"status": resp.status_code},
            ) from None
        return self._unwrap(data)

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def post(
        self,
        path: str,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        return await self._request("POST", path, body, headers)

    async def close(self) -> None:
        await self._client.aclose()
