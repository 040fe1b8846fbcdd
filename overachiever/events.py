"""
Progress events emitted by the sync engine, and the channel that carries them.

Every flow invocation produces an ordered stream ending in exactly one
terminal event (Done or Error). Consumers may see zero ScrapingAchievements
or GameUpdated events.
"""

import inspect
import logging
import queue
from typing import Annotated, Awaitable, Callable, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from overachiever.models import GameRead

logger = logging.getLogger(__name__)


class Starting(BaseModel):
    state: Literal["Starting"] = "Starting"


class FetchingGames(BaseModel):
    state: Literal["FetchingGames"] = "FetchingGames"


class FetchingRecentlyPlayed(BaseModel):
    state: Literal["FetchingRecentlyPlayed"] = "FetchingRecentlyPlayed"


class ScrapingAchievements(BaseModel):
    state: Literal["ScrapingAchievements"] = "ScrapingAchievements"
    current: int
    total: int
    game_name: str


class GameUpdated(BaseModel):
    state: Literal["GameUpdated"] = "GameUpdated"
    appid: int
    unlocked: int
    total: int


class SyncSummary(BaseModel):
    games_updated: int = 0
    achievements_updated: int = 0
    new_games: int = 0


class Done(BaseModel):
    state: Literal["Done"] = "Done"
    summary: SyncSummary
    games: List[GameRead] = []


class Error(BaseModel):
    state: Literal["Error"] = "Error"
    message: str


SyncEvent = Annotated[
    Union[
        Starting,
        FetchingGames,
        FetchingRecentlyPlayed,
        ScrapingAchievements,
        GameUpdated,
        Done,
        Error,
    ],
    Field(discriminator="state"),
]

TERMINAL_EVENTS = (Done, Error)


def is_terminal(event: BaseModel) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


class SyncObserver(Protocol):
    """Anything that receives sync events. emit() may be sync or async."""

    def emit(self, event: SyncEvent) -> Optional[Awaitable[None]]: ...


class QueueObserver:
    """
    Thread-safe FIFO the consumer drains without blocking, e.g. once per
    frame from a render loop or per request from a polling endpoint.
    """

    def __init__(self):
        self._queue: "queue.SimpleQueue[SyncEvent]" = queue.SimpleQueue()

    def emit(self, event: SyncEvent) -> None:
        self._queue.put(event)

    def poll_one(self) -> Optional[SyncEvent]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def poll(self) -> List[SyncEvent]:
        events = []
        while (event := self.poll_one()) is not None:
            events.append(event)
        return events


class CallbackObserver:
    """Pushes each event to an async callback (WebSocket sender)."""

    def __init__(self, callback: Callable[[SyncEvent], Awaitable[None]]):
        self.callback = callback

    async def emit(self, event: SyncEvent) -> None:
        await self.callback(event)


class ProgressChannel:
    """
    Wraps an observer for a single flow invocation and enforces the
    terminal-event contract: once Done or Error has gone out, anything
    else is dropped.
    """

    def __init__(self, observer: SyncObserver, flow: str = "sync"):
        self.observer = observer
        self.flow = flow
        self.terminated = False
        self.sent = 0

    async def emit(self, event: SyncEvent) -> bool:
        if self.terminated:
            logger.warning(
                "Dropping event emitted after terminal event",
                extra={"flow": self.flow, "state": event.state},
            )
            return False

        if is_terminal(event):
            self.terminated = True

        result = self.observer.emit(event)
        if inspect.isawaitable(result):
            await result
        self.sent += 1
        return True

    async def fail(self, message: str) -> bool:
        return await self.emit(Error(message=message))
