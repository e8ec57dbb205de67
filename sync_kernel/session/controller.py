"""
Session Lifecycle Controller — owns the push channel's connection.

States: disconnected -> connecting -> connected -> disconnected (retry),
with `offline` as the terminal state once the reconnect budget is spent.

Behavioral Contract:
- Explicit lifecycle: nothing connects until `start()`.
- Entering `connected` after a previous connection triggers a full
  resynchronization before any further event is dispatched.
- Reconnects back off exponentially, capped. Offline is surfaced to state
  listeners, never raised into the event loop.
- Event handlers are registered through handles; a failing handler is
  logged and does not stop the stream.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from sync_kernel.handles import ListenerHandle, register
from sync_kernel.models.config import SessionConfig
from sync_kernel.models.events import PUSH_EVENT_TYPES, PushEvent
from sync_kernel.models.session import SessionState
from sync_kernel.ports import PushTransport
from sync_kernel.reconciler.decode import decode_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[PushEvent], None]
StateListener = Callable[[SessionState, SessionState], None]


class SessionLifecycleController:
    def __init__(
        self,
        transport: PushTransport,
        config: Optional[SessionConfig] = None,
        on_resync: Optional[Callable[[], Awaitable[None]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.config = config or SessionConfig()
        self._on_resync = on_resync
        self._sleep = sleep
        self.state = SessionState.DISCONNECTED
        self.attempt = 0
        self.connections = 0
        self.resyncs = 0
        self.last_error: Optional[str] = None
        self._event_handlers: List[EventHandler] = []
        self._state_listeners: List[StateListener] = []
        self._runner: Optional[asyncio.Task] = None

    # --- Registration ---

    def subscribe_events(self, handler: EventHandler) -> ListenerHandle:
        return register(self._event_handlers, handler)

    def on_state_change(self, listener: StateListener) -> ListenerHandle:
        return register(self._state_listeners, listener)

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    # --- Lifecycle ---

    def start(self) -> None:
        if self.is_running:
            return
        if self.state == SessionState.OFFLINE:
            self._transition(SessionState.DISCONNECTED)
        self.attempt = 0
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        if self.state != SessionState.OFFLINE:
            self._transition(SessionState.DISCONNECTED)

    def reconnect(self) -> None:
        """Manual reconnect, e.g. from an offline banner."""
        if not self.is_running:
            self.start()

    async def wait_for_state(self, state: SessionState) -> None:
        if self.state == state:
            return
        reached = asyncio.get_running_loop().create_future()

        def listener(old: SessionState, new: SessionState) -> None:
            if new == state and not reached.done():
                reached.set_result(None)

        with self.on_state_change(listener):
            await reached

    # --- Run loop ---

    async def _run(self) -> None:
        while True:
            self._transition(SessionState.CONNECTING)
            try:
                stream = await self.transport.subscribe(self.config.scope)
                reconnected = self.connections > 0
                self.connections += 1
                self.attempt = 0
                self._transition(SessionState.CONNECTED)
                if reconnected:
                    await self._resync()
                async for item in stream:
                    self._dispatch(item)
                logger.info("Push stream for '%s' ended", self.config.scope)
                self.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.warning("Push channel error: %s", e)

            self._transition(SessionState.DISCONNECTED)
            self.attempt += 1
            if self.attempt > self.config.max_reconnect_attempts:
                logger.error(
                    "Giving up after %d reconnect attempts; session offline",
                    self.config.max_reconnect_attempts,
                )
                self._transition(SessionState.OFFLINE)
                return
            delay = self.backoff(self.attempt)
            logger.info("Reconnecting in %.2fs (attempt %d)", delay, self.attempt)
            await self._sleep(delay)

    def backoff(self, attempt: int) -> float:
        """Capped exponential delay before reconnect attempt `attempt` (1-based)."""
        delay = self.config.backoff_base_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.config.backoff_max_seconds)

    async def _resync(self) -> None:
        if self._on_resync is None:
            return
        logger.info("Reconnected; resynchronizing")
        try:
            await self._on_resync()
        except Exception:
            logger.exception("Resynchronization failed")
        self.resyncs += 1

    def _dispatch(self, item) -> None:
        if isinstance(item, tuple) and len(item) == 2:
            name, payload = item
            try:
                event = decode_event(name, payload)
            except Exception as e:
                logger.warning("Dropped push event '%s': %s", name, e)
                return
        elif isinstance(item, PUSH_EVENT_TYPES):
            event = item
        else:
            logger.warning("Dropped unrecognized push item %r", item)
            return
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Push event handler failed for %s", event.ref)

    def _transition(self, new: SessionState) -> None:
        old = self.state
        if old == new:
            return
        self.state = new
        logger.info("Session %s -> %s", old.value, new.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Session state listener failed")
