"""
HTTP Provider Plugin - Generic REST provider.

Maps the resource verbs onto a REST API:

    create  POST   {base_url}{path}          -> {"id": ...}
    read    GET    {base_url}{path}/{id}     -> attributes
    update  PUT    {base_url}{path}/{id}     -> attributes
    delete  DELETE {base_url}{path}/{id}

Resource types are configured through the HTTP_PROVIDER_TYPES environment
variable (JSON), e.g. {"network.vpc": {"path": "/vpcs", "immutable": ["cidr"]}}.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from errors import PermanentProviderError, TransientProviderError
from plugins.base import ProviderPlugin, ResourceTypeSchema

logger = logging.getLogger(__name__)

# Status codes worth retrying: throttling and server-side failures
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def parse_type_config(raw: Dict[str, Any]) -> Dict[str, ResourceTypeSchema]:
    """Build ResourceTypeSchemas from the HTTP_PROVIDER_TYPES mapping."""
    types: Dict[str, ResourceTypeSchema] = {}
    for type_name, options in raw.items():
        types[type_name] = ResourceTypeSchema(
            name=type_name,
            attributes_schema=options.get("schema", {}),
            immutable_attributes=frozenset(options.get("immutable", [])),
            description=options.get("description", ""),
        )
    return types


class HTTPProvider(ProviderPlugin):
    """Provider plugin backed by a REST API."""

    def __init__(self):
        env_config = self.load_config_from_env()
        self.base_url: str = env_config["base_url"]
        self.token: Optional[str] = env_config["token"]
        self.timeout: int = env_config["timeout"]
        self.id_field: str = env_config["id_field"]
        self._type_config: Dict[str, Dict[str, Any]] = env_config["resource_types"]
        self._types = parse_type_config(self._type_config)

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return self._types

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP provider configuration from environment variables."""
        resource_types: Dict[str, Any] = {}
        raw_types = os.getenv("HTTP_PROVIDER_TYPES", "")
        if raw_types:
            try:
                resource_types = json.loads(raw_types)
            except json.JSONDecodeError:
                logger.error("HTTP_PROVIDER_TYPES is not valid JSON, ignoring")
        return {
            "base_url": os.getenv("HTTP_PROVIDER_URL", "http://localhost:8080"),
            "token": os.getenv("HTTP_PROVIDER_TOKEN", ""),
            "timeout": int(os.getenv("HTTP_PROVIDER_TIMEOUT", "30")),
            "id_field": os.getenv("HTTP_PROVIDER_ID_FIELD", "id"),
            "resource_types": resource_types,
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.base_url = config.get("base_url", self.base_url).rstrip("/")
        self.token = config.get("token", self.token)
        self.timeout = int(config.get("timeout", self.timeout))
        self.id_field = config.get("id_field", self.id_field)
        if config.get("resource_types"):
            self._type_config = config["resource_types"]
            self._types = parse_type_config(self._type_config)

        if not self.token:
            logger.warning(
                "HTTP provider token not configured. Set HTTP_PROVIDER_TOKEN."
            )

        logger.debug(
            f"HTTP provider initialized: base_url={self.base_url}, "
            f"timeout={self.timeout}s, types={sorted(self._types)}"
        )

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _collection_url(self, resource_type: str) -> str:
        options = self._type_config.get(resource_type)
        if options is None:
            raise PermanentProviderError(f"Unsupported resource type: {resource_type}")
        path = options.get("path") or "/" + resource_type.replace(".", "/")
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Perform a request and classify failures.

        Raises:
            TransientProviderError: Timeouts, connection errors, 429 and 5xx
            PermanentProviderError: Any other non-success status
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, json=payload, headers=self._get_headers()
                ) as response:
                    if response.status == 404 and allow_not_found:
                        return None
                    if response.status in TRANSIENT_STATUS_CODES:
                        text = await response.text()
                        raise TransientProviderError(
                            f"{method} {url} returned {response.status}: {text}"
                        )
                    if response.status >= 400:
                        text = await response.text()
                        raise PermanentProviderError(
                            f"{method} {url} returned {response.status}: {text}"
                        )
                    text = await response.text()
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransientProviderError(f"{method} {url} failed: {e!r}") from e

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PermanentProviderError(f"{method} {url} returned non-JSON body") from e

    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        body = await self._request(
            "POST", self._collection_url(resource_type), payload=attributes
        )
        physical_id = (body or {}).get(self.id_field)
        if not physical_id:
            raise PermanentProviderError(
                f"Create {resource_type} response has no '{self.id_field}' field"
            )
        logger.info(f"Created {resource_type} {physical_id}")
        return str(physical_id)

    async def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        url = f"{self._collection_url(resource_type)}/{physical_id}"
        return await self._request("GET", url) or {}

    async def update(
        self, resource_type: str, physical_id: str, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        url = f"{self._collection_url(resource_type)}/{physical_id}"
        body = await self._request("PUT", url, payload=attributes)
        logger.info(f"Updated {resource_type} {physical_id}")
        return body or {}

    async def delete(self, resource_type: str, physical_id: str) -> None:
        url = f"{self._collection_url(resource_type)}/{physical_id}"
        result = await self._request("DELETE", url, allow_not_found=True)
        if result is None:
            logger.info(f"{resource_type} {physical_id} already deleted")
        else:
            logger.info(f"Deleted {resource_type} {physical_id}")
