"""Backend liveness poller.

Probes every catalog URL with a ``HEAD`` request and keeps the latest
``{service_id: alive}`` map as a snapshot. Any HTTP response, whatever its
status, counts as alive; only transport failures (connect, TLS, timeout)
mark a service down. TLS verification is off and redirects are not
followed, since backends often sit behind self-signed certificates or
bounce unauthenticated requests to a login page.

The snapshot lock is only held to swap or copy the dict, never across I/O.
"""

import asyncio
import logging
import threading

import httpx

from noknok.infra.db.store import Store
from noknok.infra.observability.metrics import record_health_poll

logger = logging.getLogger(__name__)


class HealthPoller:
    """Periodic HEAD prober with a thread-safe snapshot.

    Example:
        poller = HealthPoller(store, timeout_seconds=4.0)
        await poller.poll_once()
        poller.snapshot()  # {1: True, 2: False}
    """

    def __init__(
        self,
        store: Store,
        timeout_seconds: float = 4.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the poller.

        Args:
            store: Store to list services from
            timeout_seconds: Per-request timeout
            http_client: Optional HTTP client for testing
        """
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout_seconds,
            verify=False,
            follow_redirects=False,
        )
        self._lock = threading.Lock()
        self._snapshot: dict[int, bool] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def snapshot(self) -> dict[int, bool]:
        """Copy of the last completed poll."""
        with self._lock:
            return dict(self._snapshot)

    async def poll_once(self) -> dict[int, bool] | None:
        """Probe every service once and publish the result.

        Returns:
            New snapshot, or None if listing services failed (the previous
            snapshot is kept)
        """
        try:
            services = await self.store.list_services()
        except Exception:
            logger.error("Health poll could not list services", exc_info=True)
            record_health_poll(None)
            return None

        alive = await asyncio.gather(*(self._probe(s.url) for s in services))
        results = {service.id: ok for service, ok in zip(services, alive, strict=True)}

        with self._lock:
            self._snapshot = results

        record_health_poll(results)
        logger.debug(
            "Health poll completed",
            extra={"services": len(results), "down": sum(1 for ok in results.values() if not ok)},
        )
        return dict(results)

    async def _probe(self, url: str) -> bool:
        try:
            response = await self._http.head(url, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            logger.debug("Service probe failed", extra={"url": url, "error": str(e)})
            return False
        except (httpx.InvalidURL, ValueError) as e:
            # Malformed URL in the catalog
            logger.debug("Service probe skipped", extra={"url": url, "error": str(e)})
            return False
        await response.aclose()
        return True
