"""Dynamic tool discovery from remote tool catalogs."""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    List,
    Mapping,
)

import httpx
from pydantic import ValidationError

from agentloop.config import settings
from agentloop.core.schema import (
    AgentDefinition,
    ToolSpec,
)

logger = logging.getLogger(__name__)


class ToolDiscoveryError(RuntimeError):
    """Raised when a tool catalog cannot be queried."""


class ToolDiscovery(ABC):
    """Source of tool specs beyond the ones declared on the agent."""

    @abstractmethod
    async def fetch_tools(
        self, agent: AgentDefinition, credentials: Mapping[str, str] | None = None
    ) -> List[ToolSpec]:
        """
        Return the extra tools available to *agent*.

        Raises
        ------
        ToolDiscoveryError
            If the catalog is unreachable or returns something that is not a tool list.
        """


class HttpToolCatalog(ToolDiscovery):
    """
    Remote catalog served over HTTP.

    ``GET {url}?agent=<name>`` must return either a JSON list of tool specs or an object with a
    ``tools`` list.  Credentials are sent as request headers.
    """

    def __init__(self, url: str | None = None, timeout: float = 10.0):
        self.url = url or settings.TOOL_CATALOG_URL
        self.timeout = timeout

    async def fetch_tools(
        self, agent: AgentDefinition, credentials: Mapping[str, str] | None = None
    ) -> List[ToolSpec]:
        if not self.url:
            return []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    self.url, params={"agent": agent.name}, headers=dict(credentials or {})
                )
                resp.raise_for_status()
                body: Any = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ToolDiscoveryError(f"Error querying tool catalog {self.url}: {e}") from e

        items = body.get("tools") if isinstance(body, Mapping) else body
        if not isinstance(items, list):
            raise ToolDiscoveryError(f"Tool catalog {self.url} did not return a tool list")
        try:
            specs = [ToolSpec.model_validate(item) for item in items]
        except ValidationError as e:
            raise ToolDiscoveryError(f"Invalid tool spec from {self.url}: {e}") from e
        logger.debug("Discovered %d tools for agent '%s'", len(specs), agent.name)
        return specs
