# src/testpulse/telemetry/sender.py
"""HTTP delivery of event batches and screenshots.

POSTs a JSON array of event envelopes with bearer authentication. Batches
go to the batch path; screenshots bypass the queue and go to the
screenshot path one call at a time.
"""

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from testpulse import __version__
from testpulse.contracts.errors import AuthMissingError, DeliveryError, NotReadyError
from testpulse.contracts.events import Event, encode_event
from testpulse.core.config import DATA_BATCH_ENDPOINT, DATA_ENDPOINT, DATA_SCREENSHOT_ENDPOINT
from testpulse.core.context import BuildContext

logger = structlog.get_logger(__name__)

BATCH_KIND = "batch"
SCREENSHOT_KIND = "screenshot"


class HttpEventSender:
    """Sends event envelopes to the ingestion endpoint over httpx.

    Example:
        sender = HttpEventSender(context, base_url="https://collector.example.com")
        sender.post_batch([TestRunStarted({"uuid": "t1"})])
        sender.close()
    """

    def __init__(
        self,
        context: BuildContext,
        *,
        base_url: str = DATA_ENDPOINT,
        batch_path: str = DATA_BATCH_ENDPOINT,
        screenshot_path: str = DATA_SCREENSHOT_ENDPOINT,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._context = context
        self._batch_url = f"{base_url.rstrip('/')}/{batch_path.strip('/')}"
        self._screenshot_url = f"{base_url.rstrip('/')}/{screenshot_path.strip('/')}"
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    @property
    def batch_url(self) -> str:
        return self._batch_url

    @property
    def screenshot_url(self) -> str:
        return self._screenshot_url

    def post_batch(self, events: Sequence[Event]) -> Any:
        """POST a batch of queued events.

        Raises:
            NotReadyError: Build-ready signal not yet observed
            AuthMissingError: No bearer token in the build context
            DeliveryError: Transport failure or HTTP status >= 400
        """
        return self._post(self._batch_url, events, kind=BATCH_KIND)

    def send_screenshots(self, events: Sequence[Event]) -> Any:
        """POST screenshot log events immediately.

        Raises:
            NotReadyError: Build-ready signal not yet observed
            AuthMissingError: No bearer token in the build context
            DeliveryError: Transport failure or HTTP status >= 400
        """
        return self._post(self._screenshot_url, events, kind=SCREENSHOT_KIND)

    def _post(self, url: str, events: Sequence[Event], *, kind: str) -> Any:
        if not self._context.is_build_ready():
            raise NotReadyError()
        jwt = self._context.jwt
        if not jwt:
            raise AuthMissingError()

        body = [encode_event(event) for event in events]
        headers = {
            "Authorization": f"Bearer {jwt}",
            "Content-Type": "application/json",
            "X-Testpulse-Client": f"testpulse/{__version__}",
        }

        try:
            response = self._client.post(url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                kind,
                f"HTTP {e.response.status_code} from {url}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(kind, f"{type(e).__name__}: {e}") from e

        logger.debug("Delivered events", kind=kind, count=len(body), status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
