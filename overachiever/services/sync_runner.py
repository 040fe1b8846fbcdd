import asyncio
import inspect
import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from overachiever.events import (
    Done,
    Error,
    QueueObserver,
    ScrapingAchievements,
    SyncEvent,
    SyncObserver,
    SyncSummary,
)
from overachiever.services.sync_engine import SyncEngine, SyncSession
from overachiever.settings import settings

logger = logging.getLogger(__name__)

UPDATE = "update"
FULL_SCAN = "full_scan"
FLOWS = (UPDATE, FULL_SCAN)


class SyncBusy(Exception):
    """A flow is already in flight for this user."""


class _FanOut:
    """Forwards every event to several observers in order."""

    def __init__(self, observers: List[SyncObserver]):
        self.observers = observers

    async def emit(self, event: SyncEvent) -> None:
        for observer in self.observers:
            result = observer.emit(event)
            if inspect.isawaitable(result):
                await result


class UserSyncState:
    def __init__(self):
        self.is_running = False
        self.flow: Optional[str] = None
        self.current = 0
        self.total = 0
        self.game_name: Optional[str] = None
        self.last_summary: Optional[SyncSummary] = None
        self.last_error: Optional[str] = None
        self.events = QueueObserver()
        self.cancel_event: Optional[asyncio.Event] = None
        self.task: Optional[asyncio.Task] = None

    def emit(self, event: SyncEvent) -> None:
        self.events.emit(event)
        if isinstance(event, ScrapingAchievements):
            self.current = event.current
            self.total = event.total
            self.game_name = event.game_name
        elif isinstance(event, Done):
            self.last_summary = event.summary
            self.last_error = None
        elif isinstance(event, Error):
            self.last_error = event.message

    def get_status(self):
        return {
            "is_running": self.is_running,
            "flow": self.flow,
            "current": self.current,
            "total": self.total,
            "game_name": self.game_name,
            "last_summary": self.last_summary.model_dump() if self.last_summary else None,
            "last_error": self.last_error,
        }


class SyncRunner:
    """
    Keeps at most one flow in flight per user and tracks its progress for
    polling clients. Flows run on the current event loop.
    """

    def __init__(self, engine_factory=None):
        self.engine_factory = engine_factory or SyncEngine
        self._states: Dict[str, UserSyncState] = {}

    def state_for(self, steam_id: Optional[str]) -> UserSyncState:
        key = steam_id or ""
        if key not in self._states:
            self._states[key] = UserSyncState()
        return self._states[key]

    def is_busy(self, steam_id: str) -> bool:
        return self.state_for(steam_id).is_running

    def get_status(self, steam_id: str):
        return self.state_for(steam_id).get_status()

    def drain_events(self, steam_id: str) -> List[SyncEvent]:
        """Events of the latest run not yet drained."""
        return self.state_for(steam_id).events.poll()

    def cancel(self, steam_id: str) -> bool:
        state = self.state_for(steam_id)
        if not state.is_running or state.cancel_event is None:
            return False
        logger.info("Cancellation requested", extra={"steam_id": steam_id, "flow": state.flow})
        state.cancel_event.set()
        return True

    def claim(self, session: SyncSession, flow: str) -> UserSyncState:
        if flow not in FLOWS:
            raise ValueError(f"Unknown sync flow: {flow}")

        state = self.state_for(session.steam_id)
        if state.is_running:
            raise SyncBusy(f"A {state.flow} is already running")

        state.is_running = True
        state.flow = flow
        state.current = state.total = 0
        state.game_name = None
        # Undrained events from an earlier run are dropped
        state.events = QueueObserver()
        state.cancel_event = asyncio.Event()
        return state

    async def execute(
        self,
        session: SyncSession,
        state: UserSyncState,
        force: bool,
        observer: Optional[SyncObserver],
    ) -> Optional[SyncSummary]:
        observers: List[SyncObserver] = [state]
        if observer is not None:
            observers.append(observer)
        fan_out = _FanOut(observers)

        engine = self.engine_factory(session)
        try:
            return await _run_flow(engine, fan_out, state.flow, force, state.cancel_event)
        finally:
            state.is_running = False
            state.cancel_event = None
            state.task = None

    async def run(
        self,
        session: SyncSession,
        flow: str,
        force: bool = False,
        observer: Optional[SyncObserver] = None,
    ) -> Optional[SyncSummary]:
        """Run a flow to completion. Raises SyncBusy if one is already running."""
        state = self.claim(session, flow)
        return await self.execute(session, state, force, observer)

    def start(
        self,
        session: SyncSession,
        flow: str,
        force: bool = False,
        observer: Optional[SyncObserver] = None,
    ) -> asyncio.Task:
        """Start a flow in the background. Raises SyncBusy if one is already running."""
        state = self.claim(session, flow)
        state.task = asyncio.create_task(self.execute(session, state, force, observer))
        return state.task


def run_in_thread(
    session: SyncSession,
    flow: str = UPDATE,
    force: bool = False,
    engine_factory=None,
):
    """
    Run a flow on a background thread with its own event loop, for callers
    that poll from a render loop instead of awaiting.

    Returns (thread, observer, cancel_event): poll the QueueObserver without
    blocking, set the threading.Event to stop between games.
    """
    observer = QueueObserver()
    cancel_event = threading.Event()

    async def _main():
        if engine_factory is not None:
            engine = engine_factory(session)
            await _run_flow(engine, observer, flow, force, cancel_event)
            return

        # Async engines are bound to the loop that created them
        db_engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)
        try:
            session_factory = sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
            engine = SyncEngine(session, session_factory=session_factory)
            await _run_flow(engine, observer, flow, force, cancel_event)
        finally:
            await db_engine.dispose()

    thread = threading.Thread(
        target=lambda: asyncio.run(_main()), name=f"sync-{flow}", daemon=True
    )
    thread.start()
    return thread, observer, cancel_event


async def _run_flow(engine: SyncEngine, observer, flow, force, cancel_event):
    if flow == FULL_SCAN:
        return await engine.run_full_scan(observer, force=force, cancel_event=cancel_event)
    return await engine.run_update(observer, cancel_event=cancel_event)
