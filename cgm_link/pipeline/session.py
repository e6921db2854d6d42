"""
Per-user glucose session.

A ``GlucoseSession`` owns everything that used to be process-global for one
logged-in user: the data source, the polling scheduler, the rolling history
and the alert settings. Observers subscribe to its events instead of reading
shared state.
"""
import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from cgm_link.metrics import alerts_raised_total, readings_ingested_total
from cgm_link.models.glucose import GlucoseReading
from cgm_link.models.settings import AlertSettings, ConnectionState
from cgm_link.pipeline.alerts import build_alert
from cgm_link.pipeline.history import HistoryWindow
from cgm_link.pipeline.scheduler import PollingScheduler, SchedulerState
from cgm_link.pipeline.sources import GlucoseSource, make_source
from cgm_link.utils.config import Settings, get_settings
from cgm_link.utils.error_handling import CgmLinkError, TokenStoreError, is_recoverable

logger = logging.getLogger(__name__)

EVENTS = ("reading", "alert", "state", "reauth_required")


class GlucoseSession:
    """
    Polling pipeline for one user.

    Events:
        reading: a ``GlucoseReading`` newly added to history
        alert: a ``GlucoseAlert`` for a new reading outside the alert thresholds
        state: the ``SchedulerState`` after connect, disconnect or a forced stop
        reauth_required: the ``CgmLinkError`` that stopped polling
    """

    def __init__(
        self,
        user_id: str,
        source: Optional[GlucoseSource] = None,
        alert_settings: Optional[AlertSettings] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.user_id = user_id
        self.source = source or make_source(settings)
        self.alert_settings = alert_settings or AlertSettings()
        self.history = HistoryWindow(horizon=timedelta(hours=settings.history_window_hours))
        self.scheduler = PollingScheduler(
            self._poll,
            self._ingest,
            self._on_unrecoverable,
            interval=settings.poll_interval_seconds,
            name=f"glucose-poll:{user_id}",
        )
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._background: set = set()

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    @property
    def connection_state(self) -> ConnectionState:
        return self.alert_settings.connection_state

    async def connect(self, code: Optional[str] = None) -> bool:
        """
        Connect the data source and start polling.

        With a *code* the authorization code is exchanged for tokens; without
        one an existing connection is resumed if the user has stored tokens.

        Returns:
            bool: Whether polling started

        Raises:
            ConfigMissingError: If Dexcom client credentials are not configured
            ExchangeFailedError: If Dexcom rejected the code
        """
        connected = await self.source.connect(self.user_id, code)
        if not connected:
            self._set_connection(ConnectionState.DISCONNECTED)
            return False
        self._set_connection(ConnectionState.CONNECTED)
        self.scheduler.start()
        logger.info("Glucose session connected", extra={"log_type": "session_connect", "user_id": self.user_id})
        self._emit("state", self.scheduler.state)
        return True

    async def resume(self) -> bool:
        """
        Resume polling from stored tokens, e.g. after a service restart.

        Returns:
            bool: Whether the session is polling
        """
        if self.scheduler.state is SchedulerState.POLLING:
            return True
        return await self.connect()

    async def disconnect(self) -> None:
        """
        Stop polling, drop stored tokens and clear history.

        Raises:
            TokenStoreError: If the stored tokens could not be removed
        """
        self.scheduler.stop()
        if not await self.source.disconnect(self.user_id):
            logger.error("Stored tokens were not removed", extra={"log_type": "session_disconnect_error", "user_id": self.user_id})
            raise TokenStoreError("Could not remove the stored Dexcom tokens. Please try again.")
        self.history.clear()
        self._set_connection(ConnectionState.DISCONNECTED)
        logger.info("Glucose session disconnected", extra={"log_type": "session_disconnect", "user_id": self.user_id})
        self._emit("state", self.scheduler.state)

    async def fetch_now(self) -> List[GlucoseReading]:
        """
        Run one fetch outside the schedule; errors propagate to the caller.

        The fetch waits for a poll cycle already in flight. An unrecoverable
        error stops polling just as a scheduled cycle would.
        """
        try:
            readings = await self.scheduler.run_exclusive(self._poll)
        except CgmLinkError as e:
            if not is_recoverable(e) and self.scheduler.state is SchedulerState.POLLING:
                self.scheduler.halt(e)
            raise
        self._ingest(readings)
        return readings

    def get_current_reading(self) -> Optional[GlucoseReading]:
        return self.history.latest()

    def get_history(self, window_hours: float = 24) -> List[GlucoseReading]:
        return self.history.window(window_hours)

    def update_alert_settings(self, **changes) -> AlertSettings:
        """
        Apply a partial settings update.

        Raises:
            ValueError: If a key is unknown or the result is inconsistent
        """
        changes.pop("connection_state", None)
        self.alert_settings = self.alert_settings.merged(**changes)
        return self.alert_settings

    def subscribe(self, event: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register *callback* for *event* and return a function that unregisters it."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._subscribers[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

        return unsubscribe

    async def close(self) -> None:
        """Stop polling and release the source. Stored tokens are kept."""
        self.scheduler.stop()
        self._subscribers.clear()
        await self.source.close()

    async def _poll(self) -> List[GlucoseReading]:
        return await self.source.fetch(self.user_id)

    def _ingest(self, readings: List[GlucoseReading]) -> None:
        new_readings = self.history.extend(readings)
        if not new_readings:
            return
        readings_ingested_total.labels(source=self.source.name).inc(len(new_readings))
        for reading in new_readings:
            self._emit("reading", reading)
            alert = build_alert(reading, self.alert_settings)
            if alert is not None:
                alerts_raised_total.labels(kind=alert.kind.value).inc()
                logger.warning(alert.message, extra={"log_type": "glucose_alert", "user_id": self.user_id})
                self._emit("alert", alert)

    def _on_unrecoverable(self, error: CgmLinkError) -> None:
        self._set_connection(ConnectionState.DISCONNECTED)
        self._emit("state", self.scheduler.state)
        self._emit("reauth_required", error)

    def _set_connection(self, state: ConnectionState) -> None:
        if self.alert_settings.connection_state is not state:
            self.alert_settings = self.alert_settings.model_copy(update={"connection_state": state})

    def _emit(self, event: str, payload: Any) -> None:
        for callback in list(self._subscribers.get(event, ())):
            try:
                result = callback(payload)
            except Exception:
                logger.exception(f"Subscriber for '{event}' failed", extra={"user_id": self.user_id})
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)


class SessionRegistry:
    """One ``GlucoseSession`` per user for the HTTP surface."""

    def __init__(self, factory: Optional[Callable[[str], GlucoseSession]] = None):
        self._factory = factory or GlucoseSession
        self._sessions: Dict[str, GlucoseSession] = {}

    def get(self, user_id: str) -> GlucoseSession:
        session = self._sessions.get(user_id)
        if session is None:
            session = self._sessions[user_id] = self._factory(user_id)
        return session

    def peek(self, user_id: str) -> Optional[GlucoseSession]:
        return self._sessions.get(user_id)

    async def remove(self, user_id: str) -> None:
        session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for user_id in list(self._sessions):
            await self.remove(user_id)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
