import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

logger = logging.getLogger("mediation.control_plane")

BINDING_PATH = "/v1/public/runtime-domain/binding"


class ControlPlaneUnavailable(Exception):
    """Binding storage could not be read or written (timeout, network, 5xx, bad body)."""


class ControlPlaneClient:
    """
    Control-plane binding storage client.

    The control plane owns durable binding storage; this edge service only
    reads and writes one binding per API key through it. All calls use the
    caller's own Authorization header so the control plane scopes them.
    """

    def __init__(
        self,
        api_base_url: str,
        timeout: float = 2.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=False
        )

    @staticmethod
    def _unwrap(payload: Any) -> Optional[Dict[str, Any]]:
        """Accept ``{"binding": {...}}`` or a bare binding object."""
        if not isinstance(payload, dict):
            return None
        inner = payload.get("binding", payload)
        return inner if isinstance(inner, dict) and inner else None

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_fixed(0.1),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _get(self, authorization: str) -> httpx.Response:
        async with self._client() as client:
            return await client.get(
                f"{self.api_base_url}{BINDING_PATH}",
                headers={"Authorization": authorization, "Accept": "application/json"},
            )

    async def fetch_binding(self, authorization: str) -> Optional[Dict[str, Any]]:
        """
        Read the stored binding.

        Returns:
            The binding dict, or None when the control plane has none (404).

        Raises:
            ControlPlaneUnavailable: on any other failure.
        """
        if not self.configured:
            raise ControlPlaneUnavailable("control-plane base URL is not configured")
        try:
            response = await self._get(authorization)
        except httpx.HTTPError as e:
            raise ControlPlaneUnavailable(f"binding read failed: {e.__class__.__name__}: {e}")

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise ControlPlaneUnavailable(f"binding read returned HTTP {response.status_code}")
        try:
            return self._unwrap(response.json())
        except ValueError:
            raise ControlPlaneUnavailable("binding read returned a non-JSON body")

    async def save_binding(self, authorization: str, binding: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Write the full binding snapshot; returns whatever binding the control plane echoes."""
        if not self.configured:
            raise ControlPlaneUnavailable("control-plane base URL is not configured")
        try:
            async with self._client() as client:
                response = await client.put(
                    f"{self.api_base_url}{BINDING_PATH}",
                    json={"binding": binding},
                    headers={"Authorization": authorization, "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ControlPlaneUnavailable(f"binding write failed: {e.__class__.__name__}: {e}")

        if not response.is_success:
            raise ControlPlaneUnavailable(f"binding write returned HTTP {response.status_code}")
        if not response.content:
            return None
        try:
            return self._unwrap(response.json())
        except ValueError:
            logger.debug("Binding write echoed a non-JSON body; keeping local snapshot")
            return None
