"""
Glucose data sources.

A session polls exactly one source. ``DexcomGlucoseSource`` ties the token
lifecycle to the EGV endpoint; ``SimulatedGlucoseSource`` produces random
readings for demos and local development.
"""
import logging
import random
from datetime import datetime
from typing import Callable, List, Optional, Protocol

import httpx

from cgm_link.auth.dexcom_client import DexcomApiClient
from cgm_link.auth.tokens import (
    delete_token,
    ensure_fresh_token,
    exchange_code_and_store,
    force_refresh,
    get_token,
)
from cgm_link.data.token_repository import get_token_repository
from cgm_link.models.glucose import GlucoseReading, TrendDirection
from cgm_link.models.tokens import utcnow
from cgm_link.utils.config import Settings, get_settings
from cgm_link.utils.error_handling import RefreshInvalidError, UnauthorizedError

logger = logging.getLogger(__name__)


class GlucoseSource(Protocol):
    name: str

    async def connect(self, user_id: str, code: Optional[str] = None) -> bool:
        ...

    async def disconnect(self, user_id: str) -> bool:
        """Forget the user's connection. Returns False if it could not be removed."""
        ...

    async def fetch(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[GlucoseReading]:
        ...

    async def close(self) -> None:
        ...


class DexcomGlucoseSource:
    """Readings from the Dexcom API using the user's stored OAuth tokens."""

    name = "dexcom"

    def __init__(
        self,
        api_client: Optional[DexcomApiClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        :param api_client: Client for the EGV endpoint, created on first use if omitted
        :param http_client: HTTP client for token endpoint calls
        """
        self._api_client = api_client
        self._owns_api_client = api_client is None
        self._http_client = http_client

    @property
    def api_client(self) -> DexcomApiClient:
        if self._api_client is None:
            self._api_client = DexcomApiClient()
        return self._api_client

    async def connect(self, user_id: str, code: Optional[str] = None) -> bool:
        """
        Exchange *code* for tokens, or without a code report whether a token
        record exists for the user.
        """
        if code:
            await exchange_code_and_store(user_id, code, client=self._http_client)
            return True
        return await get_token(user_id) is not None

    async def disconnect(self, user_id: str) -> bool:
        return await delete_token(user_id)

    async def fetch(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[GlucoseReading]:
        """
        Fetch readings with a fresh access token.

        A rejected access token triggers one forced refresh and one retry. If
        the refreshed token is rejected too the connection is dropped.

        Raises:
            RefreshInvalidError: If the user must re-authorize
            ProviderUnavailableError: On network errors or provider failures
            MalformedResponseError: If the payload does not match the EGV schema
        """
        record = await ensure_fresh_token(user_id, client=self._http_client)
        access_token = record.access_token.get_secret_value()
        try:
            return await self.api_client.fetch_egvs(access_token, start, end)
        except UnauthorizedError:
            logger.info(
                "Dexcom rejected access token, refreshing and retrying once",
                extra={"log_type": "egvs_unauthorized", "user_id": user_id},
            )

        record = await force_refresh(user_id, access_token, client=self._http_client)
        try:
            return await self.api_client.fetch_egvs(record.access_token.get_secret_value(), start, end)
        except UnauthorizedError:
            get_token_repository().delete_if_refresh_token(user_id, record.refresh_token.get_secret_value())
            logger.warning(
                "Refreshed access token rejected, token record deleted",
                extra={"log_type": "egvs_unauthorized", "user_id": user_id},
            )
            raise RefreshInvalidError("Dexcom rejected the refreshed access token. Please re-connect Dexcom.")

    async def close(self) -> None:
        if self._owns_api_client and self._api_client is not None:
            await self._api_client.close()
            self._api_client = None


class SimulatedGlucoseSource:
    """One random reading per fetch, uniformly drawn from ``[low, high]`` mg/dL."""

    name = "simulated"

    def __init__(
        self,
        low: int = 60,
        high: int = 250,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if low > high:
            raise ValueError("low must not exceed high")
        self.low = low
        self.high = high
        self._rng = rng or random.Random()
        self._clock = clock

    async def connect(self, user_id: str, code: Optional[str] = None) -> bool:
        return True

    async def disconnect(self, user_id: str) -> bool:
        return True

    async def fetch(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[GlucoseReading]:
        reading = GlucoseReading(
            timestamp=self._clock(),
            value=self._rng.randint(self.low, self.high),
            trend=TrendDirection.UNKNOWN,
        )
        return [reading]

    async def close(self) -> None:
        return None


def make_source(settings: Optional[Settings] = None) -> GlucoseSource:
    """Build the source configured by ``settings.data_source``."""
    settings = settings or get_settings()
    if settings.data_source == "simulated":
        return SimulatedGlucoseSource()
    return DexcomGlucoseSource()
