"""Neo4j connectivity check."""

import time
from dataclasses import dataclass

from neo4j import AsyncDriver, AsyncGraphDatabase

from kg_chatbot.logging import get_logger

log = get_logger(__name__)


@dataclass
class HealthResult:
    ok: bool
    latency_ms: int = 0
    error: str = ""


class GraphDatabase:
    """Lazily created Neo4j driver used only for health probes."""

    def __init__(self, uri: str, user: str, password: str):
        self.uri = uri
        self.user = user
        self.password = password
        self._driver: AsyncDriver | None = None

    @classmethod
    def from_config(cls, config) -> "GraphDatabase":
        return cls(config.neo4j.uri, config.neo4j.user, config.neo4j.password)

    def _get_driver(self) -> AsyncDriver:
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(self.uri, auth=(self.user, self.password))
        return self._driver

    async def check_health(self) -> HealthResult:
        """Run ``RETURN 1`` and time it."""
        start = time.monotonic()
        try:
            async with self._get_driver().session() as session:
                result = await session.run("RETURN 1")
                await result.consume()
        except Exception as e:
            log.warning("Neo4j health check failed", uri=self.uri, error=str(e))
            return HealthResult(ok=False, error=str(e) or type(e).__name__)
        return HealthResult(ok=True, latency_ms=int((time.monotonic() - start) * 1000))

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
