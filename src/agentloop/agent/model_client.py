"""
Model invocation channel.

The loop only needs ``invoke(model_id, parameters) -> response``; how the request reaches a
provider is up to the implementation.  :class:`HttpModelClient` posts the parameters to a
prediction endpoint with httpx and returns the decoded JSON body.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Mapping,
)

import httpx

from agentloop.config import settings

logger = logging.getLogger(__name__)


class ModelInvocationError(RuntimeError):
    """Raised when the model cannot be reached or returns an unusable response."""


class ModelClient(ABC):
    """Sends one request to a model and returns its structured response."""

    @abstractmethod
    async def invoke(self, model_id: str, parameters: Mapping[str, Any]) -> Mapping[str, Any]:
        """
        Invoke *model_id* with *parameters*.

        Raises
        ------
        ModelInvocationError
            On any transport or decoding failure.  No retries happen at this layer.
        """


class HttpModelClient(ModelClient):
    """httpx-based client for a ``POST {"parameters": ...}`` prediction endpoint."""

    def __init__(
        self,
        endpoint: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint or settings.MODEL_ENDPOINT
        self.timeout = timeout if timeout is not None else settings.MODEL_TIMEOUT
        self._client = client

    async def invoke(self, model_id: str, parameters: Mapping[str, Any]) -> Mapping[str, Any]:
        url = self.endpoint.format(model_id=model_id)
        payload = {"parameters": dict(parameters)}
        logger.debug("Invoking model '%s' at %s", model_id, url)

        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            logger.error("Model request error: %s", str(e))
            raise ModelInvocationError(f"Error calling model '{model_id}': {e}") from e
        except ValueError as e:
            logger.error("Model returned invalid JSON: %s", str(e))
            raise ModelInvocationError(f"Invalid response from model '{model_id}': {e}") from e

        if not isinstance(body, Mapping):
            raise ModelInvocationError(f"Unexpected response type from model '{model_id}'")
        return body
