from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import time
from typing import Any, Callable
import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from prometheus_client import Counter, Histogram
from signalforge.errors import DeliveryError
from signalforge.infrastructure.metrics import registry as _api_registry
from signalforge.models.tables import SyncJob, UnifiedProfile, Event

DESTINATION_CALLS = Counter('destination_calls_total', 'Outbound destination HTTP calls', ['destination'], registry=_api_registry)
DESTINATION_ERRORS = Counter('destination_errors_total', 'Outbound destination call failures', ['destination', 'category'], registry=_api_registry)
DESTINATION_RATE_LIMITS = Counter('destination_rate_limits_total', 'Rate limit responses from destinations', ['destination'], registry=_api_registry)
DESTINATION_LATENCY = Histogram('destination_call_latency_seconds', 'Latency of destination calls', ['destination'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30), registry=_api_registry)

logger = logging.getLogger(__name__)


@dataclass
class DeliveryItem:
    job: SyncJob
    profile: UnifiedProfile | None
    event: Event | None


class RetryableResponse(Exception):
    def __init__(self, response: requests.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


@retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(RetryableResponse),
    reraise=True,
)
def _send(method: Callable[..., requests.Response], url: str, **kwargs) -> requests.Response:
    resp = method(url, **kwargs)
    if resp.status_code == 429 or resp.status_code >= 500:
        raise RetryableResponse(resp)
    return resp


class DestinationClient(ABC):
    """One outbound marketing destination.

    `deliver` either returns per-job notes (jobs it intentionally skipped) or raises
    `DeliveryError`; the dispatcher owns all job bookkeeping.
    """
    type: str

    def __init__(self, credentials: dict[str, Any], timeout: float = 30.0):
        self.credentials = credentials
        self.timeout = timeout

    @classmethod
    @abstractmethod
    def resolve_credentials(cls, config: dict, defaults: dict) -> dict[str, Any]:
        """Pick credentials from destination config, falling back to tenant defaults.

        Raises ConfigurationError when a required credential is absent.
        """
        ...

    @abstractmethod
    def deliver(self, items: list[DeliveryItem]) -> dict[int, str]:
        ...

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        """HTTP call with timeout, in-call retry of 429/5xx, and metrics.

        Any remaining non-2xx status (except those callers opt into via `accept`) and any
        transport failure surfaces as DeliveryError.
        """
        accept: tuple[int, ...] = kwargs.pop("accept", ())
        fn = getattr(requests, method.lower())
        DESTINATION_CALLS.labels(self.type).inc()
        start = time.time()
        try:
            resp = _send(fn, url, timeout=self.timeout, **kwargs)
        except RetryableResponse as e:
            if e.response.status_code == 429:
                DESTINATION_RATE_LIMITS.labels(self.type).inc()
            DESTINATION_ERRORS.labels(self.type, "http").inc()
            raise DeliveryError(f"{self.type} HTTP {e.response.status_code}: {_snippet(e.response)}")
        except requests.Timeout:
            DESTINATION_ERRORS.labels(self.type, "timeout").inc()
            raise DeliveryError(f"{self.type} request timed out")
        except requests.RequestException as e:
            DESTINATION_ERRORS.labels(self.type, "transport").inc()
            raise DeliveryError(f"{self.type} request failed: {e}")
        finally:
            DESTINATION_LATENCY.labels(self.type).observe(time.time() - start)
        if resp.status_code >= 400 and resp.status_code not in accept:
            DESTINATION_ERRORS.labels(self.type, "http").inc()
            raise DeliveryError(f"{self.type} HTTP {resp.status_code}: {_snippet(resp)}")
        return resp


def _snippet(resp: requests.Response, limit: int = 300) -> str:
    try:
        return (resp.text or "")[:limit]
    except Exception:  # pragma: no cover
        return ""
