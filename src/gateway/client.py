"""
OpenSearch cluster client.

Thin aiohttp wrapper around the parts of the OpenSearch REST API used by the
operator. One client is built per reconciliation and closed when it ends.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlparse

import aiohttp

from config import OpenSearchConfig
from models import OpenSearchCluster

logger = logging.getLogger(__name__)


class ClientBuildError(Exception):
    """Raised when a client cannot be built for a cluster."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class OpenSearchAPIError(Exception):
    """Raised when OpenSearch answers with an unexpected status code."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"OpenSearch API returned HTTP {status}: {message}")


class OpenSearchClusterClient:
    """Client for a single OpenSearch cluster."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self._auth = aiohttp.BasicAuth(username, password or "") if username else None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=self._auth, timeout=self._timeout
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def request(
        self, method: str, path: str, body: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Any]:
        """
        Send a request to the cluster.

        Returns:
            Tuple of (status_code, parsed JSON body or None)
        """
        session = self._get_session()
        url = f"{self.base_url}{path}"
        async with session.request(
            method, url, json=body, ssl=self.verify_ssl
        ) as resp:
            if method == "HEAD":
                return resp.status, None
            text = await resp.text()
            if not text:
                return resp.status, None
            try:
                return resp.status, json.loads(text)
            except json.JSONDecodeError:
                return resp.status, text

    # Component template endpoints

    async def component_template_exists(self, name: str) -> bool:
        status, _ = await self.request("HEAD", _component_template_path(name))
        if status == 200:
            return True
        if status == 404:
            return False
        raise OpenSearchAPIError(status, f"checking component template {name}")

    async def get_component_template(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a component template body.

        Returns:
            The template body, or None if the template does not exist
        """
        status, body = await self.request("GET", _component_template_path(name))
        if status == 404:
            return None
        if status != 200:
            raise OpenSearchAPIError(status, str(body))

        for entry in (body or {}).get("component_templates", []):
            if entry.get("name") == name:
                return entry.get("component_template", {})
        return None

    async def put_component_template(self, name: str, template: Dict[str, Any]):
        status, body = await self.request(
            "PUT", _component_template_path(name), body=template
        )
        if status not in (200, 201):
            raise OpenSearchAPIError(status, str(body))

    async def delete_component_template(self, name: str):
        status, body = await self.request("DELETE", _component_template_path(name))
        # Already gone counts as deleted
        if status not in (200, 404):
            raise OpenSearchAPIError(status, str(body))


def _component_template_path(name: str) -> str:
    return f"/_component_template/{quote(name, safe='')}"


def create_client_for_cluster(
    cluster: OpenSearchCluster, config: OpenSearchConfig
) -> OpenSearchClusterClient:
    """
    Build a client for a cluster from its registered connection data.

    Raises:
        ClientBuildError: If the cluster's endpoint is missing or malformed
    """
    endpoint = cluster.http_endpoint
    if not endpoint:
        raise ClientBuildError(
            f"cluster {cluster.namespace}/{cluster.name} has no HTTP endpoint"
        )

    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ClientBuildError(
            f"cluster {cluster.namespace}/{cluster.name} has an invalid "
            f"HTTP endpoint: {endpoint}"
        )

    verify_ssl = cluster.verify_ssl
    if verify_ssl is None:
        verify_ssl = config.verify_ssl

    logger.debug(f"Creating OpenSearch client for {endpoint}")
    return OpenSearchClusterClient(
        base_url=endpoint,
        username=cluster.username,
        password=cluster.password,
        verify_ssl=verify_ssl,
        timeout=config.request_timeout,
    )
