"""Dexcom data API client: fetches estimated glucose values (EGVs)."""
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx

from cgm_link.metrics import dexcom_api_call_latency_seconds, dexcom_api_call_total
from cgm_link.models.glucose import GlucoseReading
from cgm_link.utils.config import get_settings
from cgm_link.utils.error_handling import (
    MalformedResponseError,
    ProviderUnavailableError,
    UnauthorizedError,
)
from cgm_link.utils.logging_utils import redact_sensitive_data

logger = logging.getLogger(__name__)

EGVS_ENDPOINT = "/v3/users/self/egvs"
DEFAULT_WINDOW = timedelta(hours=24)


def format_dexcom_time(value: datetime) -> str:
    """Format an instant as Dexcom expects: UTC, seconds precision, no offset."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def parse_egvs(payload) -> List[GlucoseReading]:
    """
    Parse an EGV response body into readings ordered by time.

    Raises:
        MalformedResponseError: If the payload does not match the EGV schema
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("EGV response is not a JSON object")
    records = payload.get("records", payload.get("egvs"))
    if not isinstance(records, list):
        raise MalformedResponseError("EGV response has no records list")

    readings = []
    for record in records:
        try:
            reading = GlucoseReading.from_dexcom_egv(record)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid EGV record: {e.__class__.__name__}")
        if reading is not None:
            readings.append(reading)
    readings.sort(key=lambda r: r.timestamp)
    return readings


class DexcomApiClient:
    """
    Thin async client for the Dexcom EGV endpoint.

    The client never refreshes tokens itself: a 401/403 surfaces as
    UnauthorizedError and the caller decides whether to refresh and retry.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the Dexcom API client.
        :param base_url: Dexcom API base URL (sandbox or production)
        :param timeout: Request timeout in seconds
        :param client: Optional preconfigured HTTP client
        """
        settings = get_settings()
        self.base_url = (base_url or settings.dexcom_api_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.request_timeout_seconds)
        )

    async def __aenter__(self) -> "DexcomApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close underlying HTTPX client."""
        await self._client.aclose()

    async def fetch_egvs(
        self,
        access_token: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> List[GlucoseReading]:
        """
        Fetch the glucose readings in ``[start, end]``.

        Defaults to the 24 hours ending now.

        Raises:
            UnauthorizedError: If Dexcom rejected the access token
            ProviderUnavailableError: On network errors, timeouts and error statuses
            MalformedResponseError: If the payload does not match the EGV schema
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        end = end or datetime.now(timezone.utc)
        start = start or end - DEFAULT_WINDOW
        url = f"{self.base_url}{EGVS_ENDPOINT}"
        params = {"startDate": format_dexcom_time(start), "endDate": format_dexcom_time(end)}
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

        logger.info(
            "Dexcom API request",
            extra={
                "log_type": "request",
                "correlation_id": correlation_id,
                "method": "GET",
                "url": url,
                "headers": redact_sensitive_data(headers),
                "params": params,
            },
        )

        started = time.monotonic()
        status = "error"
        try:
            try:
                response = await self._client.get(url, params=params, headers=headers)
            except httpx.RequestError as e:
                logger.warning(
                    "Dexcom API request failed",
                    extra={"log_type": "request_error", "correlation_id": correlation_id, "error": e.__class__.__name__},
                )
                raise ProviderUnavailableError(f"Dexcom API unreachable: {e.__class__.__name__}")

            logger.info(
                "Dexcom API response",
                extra={
                    "log_type": "response",
                    "correlation_id": correlation_id,
                    "status_code": response.status_code,
                },
            )

            if response.status_code in (401, 403):
                raise UnauthorizedError("Dexcom rejected the access token", status_code=response.status_code)
            if response.status_code >= 400:
                raise ProviderUnavailableError(
                    "Failed to fetch glucose data from Dexcom.",
                    status_code=response.status_code,
                    details=response.text,
                )

            try:
                payload = response.json()
            except ValueError:
                raise MalformedResponseError("Dexcom EGV response is not JSON")
            readings = parse_egvs(payload)
            status = "success"
            return readings
        finally:
            latency = time.monotonic() - started
            dexcom_api_call_latency_seconds.labels(method="GET", endpoint=EGVS_ENDPOINT).observe(latency)
            dexcom_api_call_total.labels(method="GET", endpoint=EGVS_ENDPOINT, status=status).inc()
            if latency > 1.0:
                logger.warning(
                    "Slow Dexcom API call",
                    extra={
                        "log_type": "slow_api_call",
                        "correlation_id": correlation_id,
                        "endpoint": EGVS_ENDPOINT,
                        "latency": latency,
                    },
                )
