"""
Content addressing

Full proposal bodies live in content-addressed storage; only the reference
(``scheme://contentRef``) goes into the on-chain description field.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .constants import LANDREG_CONTENT_SCHEME, LANDREG_IPFS_API_URL
from .exceptions import ContentPublishError
from .logger import get_logger

logger = get_logger(__name__)


def canonical_json(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), default=str).encode()


def content_uri(content_ref: str, scheme: str = str(LANDREG_CONTENT_SCHEME)) -> str:
    """``ipfs://Qm...`` style reference for the on-chain description."""
    return f"{scheme}://{content_ref}"


class ContentPublisher(ABC):
    """Stores a JSON document and returns its content reference."""

    scheme: str = str(LANDREG_CONTENT_SCHEME)

    @abstractmethod
    async def publish(self, document: Dict[str, Any]) -> str:
        ...

    def uri_for(self, content_ref: str) -> str:
        return content_uri(content_ref, self.scheme)

    async def close(self):
        pass


class InMemoryContentPublisher(ContentPublisher):
    """Keeps documents in a dict keyed by the sha-256 of their canonical JSON."""

    def __init__(self, scheme: str = "mem"):
        self.scheme = scheme
        self.documents: Dict[str, Dict[str, Any]] = {}

    async def publish(self, document: Dict[str, Any]) -> str:
        ref = hashlib.sha256(canonical_json(document)).hexdigest()
        self.documents[ref] = document
        return ref


class IpfsHttpPublisher(ContentPublisher):
    """
    Publishes to an IPFS node through its HTTP API (``/api/v0/add``).

    Args:
        api_url: base URL of the IPFS API, e.g. ``http://127.0.0.1:5001``
        api_token: optional bearer token for pinning services
        timeout: request timeout in seconds
    """

    def __init__(
        self,
        api_url: str = str(LANDREG_IPFS_API_URL),
        api_token: str = "",
        timeout: float = 30.0,
        scheme: str = "ipfs",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.scheme = scheme
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @classmethod
    def from_config(cls, config, client: Optional[httpx.AsyncClient] = None) -> "IpfsHttpPublisher":
        """Build from a ``[content]`` config section."""
        return cls(
            api_url=config.ipfs_api_url,
            api_token=config.api_token,
            timeout=config.timeout,
            scheme=config.scheme,
            client=client,
        )

    async def publish(self, document: Dict[str, Any]) -> str:
        try:
            response = await self._client.post(
                f"{self.api_url}/api/v0/add",
                params={"pin": "true"},
                files={"file": ("proposal.json", canonical_json(document), "application/json")},
            )
            response.raise_for_status()
            content_ref = response.json()["Hash"]
        except httpx.HTTPError as e:
            raise ContentPublishError(f"IPFS publish failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise ContentPublishError(f"Unexpected IPFS response: {e}") from e
        logger.debug(f"Published proposal body as {content_ref}")
        return content_ref

    async def close(self):
        await self._client.aclose()
