"""
Credential transport for Rally requests.

The Rally client never talks HTTP directly. It hands an opaque
``TransportRequest`` (url, method, body, credential) to a ``RequestExecutor``
and gets back the raw status and body, so the executor can be swapped for a
local proxy or a test double.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import structlog

from .exceptions import TransportFailure

logger = structlog.get_logger(__name__)

CREDENTIAL_HEADER = "ZSESSIONID"


@dataclass(frozen=True)
class TransportRequest:
    url: str
    method: str = "GET"
    body: str | None = None
    credential: str = ""


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: str


class RequestExecutor(ABC):
    """Executes a single request on behalf of the Rally client."""

    @abstractmethod
    async def execute(self, request: TransportRequest) -> TransportResponse:
        """
        Execute a request.

        Args:
            request: Request to send

        Returns:
            Raw status code and body

        Raises:
            TransportFailure: If the service could not be reached
        """
        pass

    async def aclose(self) -> None:
        """Release any held connections."""
        return None


class HttpxRequestExecutor(RequestExecutor):
    """Request executor backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def execute(self, request: TransportRequest) -> TransportResponse:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            CREDENTIAL_HEADER: request.credential,
        }
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=headers,
                content=request.body,
            )
        except httpx.HTTPError as e:
            logger.debug("Transport request failed", url=request.url, error=str(e))
            raise TransportFailure(f"Request to Rally failed: {e}") from e

        return TransportResponse(status=response.status_code, body=response.text)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
