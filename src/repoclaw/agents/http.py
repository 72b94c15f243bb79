"""Agent runner that dispatches a stage to a remote HTTP endpoint."""

import logging
import time
from typing import Optional

import httpx

from src.repoclaw.agents.base import AgentContext, BaseAgentRunner
from src.repoclaw.exceptions import AgentFailure
from src.repoclaw.state.models import AgentResult, AgentType


logger = logging.getLogger(__name__)


class HttpAgentRunner(BaseAgentRunner):
    """POSTs the agent context as JSON and parses the returned AgentResult.

    Failure messages carry the wording the error classifier keys on, so a
    timed-out or rate-limited call is retried and a malformed reply is not.

    Attributes:
        agent: The stage this runner serves.
        endpoint: URL accepting the camelCase AgentContext.
        timeout_seconds: httpx request timeout.
    """

    def __init__(
        self,
        agent: AgentType,
        endpoint: str,
        timeout_seconds: float = 30.0,
    ):
        self.agent = AgentType(agent)
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    async def get_http_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds)
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _failure(self, message: str) -> AgentFailure:
        return AgentFailure(self.agent.value, message, attempts=1)

    async def run(self, context: AgentContext) -> AgentResult:
        client = await self.get_http_client()
        started = time.monotonic()

        try:
            response = await client.post(self.endpoint, json=context.to_wire())
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise self._failure(
                f"{self.agent.value} agent request timeout after {self.timeout_seconds}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                message = f"{self.agent.value} agent rate limit exceeded (HTTP 429)"
            elif status in (401, 403):
                message = f"{self.agent.value} agent auth failed (HTTP {status})"
            elif status >= 500:
                message = f"{self.agent.value} agent network error (HTTP {status})"
            else:
                message = f"{self.agent.value} agent rejected the request (HTTP {status})"
            raise self._failure(message) from e
        except httpx.HTTPError as e:
            raise self._failure(
                f"{self.agent.value} agent network error: {e}"
            ) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)

        try:
            result = AgentResult.model_validate(response.json())
        except ValueError as e:
            logger.error(
                "Agent returned an unreadable result",
                extra={"agent": self.agent.value, "endpoint": self.endpoint},
            )
            raise self._failure(
                f"{self.agent.value} agent returned an invalid result: {e}"
            ) from e

        if result.agent != self.agent:
            raise self._failure(
                f"{self.agent.value} agent returned a result for {result.agent.value}"
            )

        if result.execution_time == 0:
            result = result.model_copy(update={"execution_time": elapsed_ms})
        return result
