"""
Engine state, the events that change it, and the single reducer applying them.

Every mutation of ``SyncState`` is an event dispatched to ``SyncStore`` on the
event loop thread, so concurrent I/O never interleaves partial updates.
"""

from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from rater.application.observable import Broadcaster
from rater.domain.entities import Operation, Phase, PlaybackSnapshot, SyncMode, SyncState, Track
from rater.domain.errors import ErrorKind


@dataclass(frozen=True)
class Activated:
    mode: SyncMode


@dataclass(frozen=True)
class LoadStarted:
    pass


@dataclass(frozen=True)
class CandidateLoaded:
    track: Track
    existing_rating: Optional[float] = None
    snapshot: Optional[PlaybackSnapshot] = None


@dataclass(frozen=True)
class CandidateReplaced:
    """The external player moved to another track."""
    track: Track


@dataclass(frozen=True)
class CandidateGone:
    """No candidate: empty collection, nothing playing, or playback left the collection."""
    message: Optional[str] = None


@dataclass(frozen=True)
class PlaybackObserved:
    is_playing: bool
    progress_ms: int
    duration_ms: int


@dataclass(frozen=True)
class RatingResolved:
    track_id: str
    rating: Optional[float]


@dataclass(frozen=True)
class TagsResolved:
    track_id: str
    tags: Tuple[str, ...]


@dataclass(frozen=True)
class BusyChanged:
    is_busy: bool


@dataclass(frozen=True)
class ProgressChanged:
    progress_ms: int


@dataclass(frozen=True)
class PlayingChanged:
    is_playing: bool


@dataclass(frozen=True)
class OperationFailed:
    operation: Operation
    error: ErrorKind
    message: str
    # Fatal failures leave no usable candidate (failed load or authorization)
    fatal: bool = False


@dataclass(frozen=True)
class ErrorCleared:
    pass


def _is_current(state: SyncState, track_id: str) -> bool:
    return state.current_track is not None and state.current_track.track_id == track_id


def reduce(state: SyncState, event) -> SyncState:
    """Return the state after applying one event. Unknown events leave it unchanged."""
    if isinstance(event, Activated):
        return SyncState(phase=Phase.LOADING, mode=event.mode, is_busy=True)

    if isinstance(event, LoadStarted):
        return replace(state, phase=Phase.LOADING, is_busy=True,
                       error=None, message=None, failed_operation=None)

    if isinstance(event, CandidateLoaded):
        new = replace(state, phase=Phase.READY, current_track=event.track,
                      existing_rating=event.existing_rating, tags=(), is_busy=False,
                      error=None, message=None, failed_operation=None)
        if event.snapshot is not None:
            new = replace(new, is_playing=event.snapshot.is_playing,
                          progress_ms=event.snapshot.progress_ms,
                          duration_ms=event.snapshot.duration_ms)
        return new

    if isinstance(event, CandidateReplaced):
        if _is_current(state, event.track.track_id):
            return state
        return replace(state, phase=Phase.READY, current_track=event.track,
                       existing_rating=None, tags=(),
                       error=None, message=None, failed_operation=None)

    if isinstance(event, CandidateGone):
        return replace(state, phase=Phase.EMPTY, current_track=None, existing_rating=None,
                       tags=(), is_busy=False, message=event.message)

    if isinstance(event, PlaybackObserved):
        return replace(state, is_playing=event.is_playing,
                       progress_ms=event.progress_ms, duration_ms=event.duration_ms)

    if isinstance(event, RatingResolved):
        if not _is_current(state, event.track_id):
            return state
        return replace(state, existing_rating=event.rating)

    if isinstance(event, TagsResolved):
        if not _is_current(state, event.track_id):
            return state
        return replace(state, tags=tuple(event.tags))

    if isinstance(event, BusyChanged):
        return replace(state, is_busy=event.is_busy)

    if isinstance(event, ProgressChanged):
        return replace(state, progress_ms=event.progress_ms)

    if isinstance(event, PlayingChanged):
        return replace(state, is_playing=event.is_playing)

    if isinstance(event, OperationFailed):
        new = replace(state, error=event.error, message=event.message,
                      failed_operation=event.operation, is_busy=False)
        if event.fatal:
            new = replace(new, phase=Phase.ERROR)
        return new

    if isinstance(event, ErrorCleared):
        return replace(state, error=None, message=None, failed_operation=None)

    return state


class SyncStore:
    """Owns the current SyncState and notifies subscribers of changes."""

    def __init__(self, initial: Optional[SyncState] = None):
        self._state = initial or SyncState()
        self._broadcaster: Broadcaster[SyncState] = Broadcaster(lambda: self._state)

    @property
    def state(self) -> SyncState:
        return self._state

    def dispatch(self, event) -> SyncState:
        self._state = reduce(self._state, event)
        self._broadcaster.publish()
        return self._state

    def subscribe(self, listener: Callable[[SyncState], None]) -> Callable[[], None]:
        return self._broadcaster.subscribe(listener)
