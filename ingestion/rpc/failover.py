"""
ingestion/rpc/failover.py

Fallback Router: sequential provider rotation for every chain read.

Providers are tried in fixed priority order. The rotation index is sticky:
a failure moves it to the next provider and a success leaves it where it is,
so a failing provider is skipped by later calls as well. Attempts are
strictly sequential (never fanned out) and each one is time-bounded.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from config.settings import mask_url

from .errors import AttemptFailure, RpcExhausted, classify_error
from .monitor import HealthMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SEC = 0.5
DEFAULT_ATTEMPT_TIMEOUT_SEC = 10.0


@dataclass(frozen=True)
class EndpointConfig:
    """Provider endpoint."""
    url: str
    priority: int = 0  # Lower = higher priority

    @property
    def label(self) -> str:
        return mask_url(self.url)


ClientFactory = Callable[[EndpointConfig], Any]


class FallbackRouter:
    """
    Executes an operation against the current provider, rotating on failure.

    Usage:
        router = FallbackRouter(urls, client_factory=web3_client_factory())
        block = await router.execute_with_fallback(lambda w3: w3.eth.block_number)

    The rotation index lives on the instance so independent pollers (and
    tests) never share it. It is read and written without a lock.
    """

    def __init__(
        self,
        endpoints: Sequence[Union[str, EndpointConfig]],
        client_factory: ClientFactory,
        *,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
        attempt_timeout_sec: float = DEFAULT_ATTEMPT_TIMEOUT_SEC,
        health_monitor: Optional[HealthMonitor] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize FallbackRouter.

        Args:
            endpoints: Provider URLs in priority order (or EndpointConfig)
            client_factory: Builds the client handed to operations
            backoff_sec: Fixed pause before the next attempt
            attempt_timeout_sec: Upper bound for a single attempt
            health_monitor: Optional passive stats sink
            sleep: Injected for tests
        """
        configs = [
            e if isinstance(e, EndpointConfig) else EndpointConfig(url=e, priority=i)
            for i, e in enumerate(endpoints)
        ]
        self._endpoints: List[EndpointConfig] = sorted(configs, key=lambda c: c.priority)
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}
        self._backoff_sec = backoff_sec
        self._attempt_timeout_sec = attempt_timeout_sec
        self._health_monitor = health_monitor
        self._sleep = sleep

        self._index = 0

        if self._health_monitor is not None:
            for endpoint in self._endpoints:
                self._health_monitor.add_endpoint(endpoint.label)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current_endpoint(self) -> Optional[EndpointConfig]:
        if not self._endpoints:
            return None
        return self._endpoints[self._index]

    @property
    def max_attempts(self) -> int:
        return len(self._endpoints) + 1

    def _client_for(self, endpoint: EndpointConfig) -> Any:
        client = self._clients.get(endpoint.url)
        if client is None:
            client = self._client_factory(endpoint)
            self._clients[endpoint.url] = client
        return client

    async def execute_with_fallback(
        self,
        operation: Callable[[Any], Awaitable[T]],
        label: str = "rpc",
    ) -> T:
        """
        Run operation(client) with provider rotation.

        Args:
            operation: Coroutine function receiving the provider-bound client
            label: Short name used in logs

        Returns:
            Operation result

        Raises:
            RpcExhausted: after len(providers) + 1 failed attempts
        """
        n = len(self._endpoints)
        if n == 0:
            raise RpcExhausted([])

        failures: List[AttemptFailure] = []
        for attempt in range(1, self.max_attempts + 1):
            index = self._index
            endpoint = self._endpoints[index]
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    operation(self._client_for(endpoint)),
                    timeout=self._attempt_timeout_sec,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = classify_error(e)
                message = str(e) or type(e).__name__
                failures.append(AttemptFailure(attempt=attempt, provider=endpoint.label, kind=kind, error=message))
                if self._health_monitor is not None:
                    self._health_monitor.report_failure(endpoint.label, kind, message)

                self._index = (index + 1) % n
                logger.warning(
                    f"[router] {label} failed on {endpoint.label} ({kind}, attempt {attempt}/{self.max_attempts}): "
                    f"{message}; rotating to {self._endpoints[self._index].label}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self._backoff_sec)
                continue

            if self._health_monitor is not None:
                self._health_monitor.report_success(endpoint.label, (time.monotonic() - started) * 1000)
            if attempt > 1:
                logger.info(f"[router] {label} recovered on {endpoint.label} after {attempt - 1} failures")
            return result

        logger.error(f"[router] {label} exhausted all {n} providers after {len(failures)} attempts")
        raise RpcExhausted(failures)

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "endpoints": [e.label for e in self._endpoints],
            "current_index": self._index,
            "active_endpoint": self.current_endpoint.label if self.current_endpoint else None,
        }
        if self._health_monitor is not None:
            status["health"] = {url: s.to_dict() for url, s in self._health_monitor.get_all_scores().items()}
        return status
