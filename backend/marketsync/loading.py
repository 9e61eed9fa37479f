"""Loading-state bookkeeping for a single logical fetch operation."""

from __future__ import annotations

from typing import Callable

from marketsync.errors import MarketDataError, RateLimitError
from marketsync.schemas.state import LoadingState

StateListener = Callable[[LoadingState], None]


class LoadingTracker:
    """Holds the current :class:`LoadingState` and reports every transition.

    States are immutable; each transition swaps in a new one and hands it to
    the listener.
    """

    def __init__(self, listener: StateListener | None = None) -> None:
        self._state = LoadingState()
        self._listener = listener

    @property
    def state(self) -> LoadingState:
        return self._state

    def _set(self, state: LoadingState) -> None:
        self._state = state
        if self._listener is not None:
            self._listener(state)

    def start(self) -> None:
        self._set(
            self._state.model_copy(
                update={
                    "is_loading": True,
                    "error": None,
                    "error_kind": None,
                    "retry_after_ms": None,
                }
            )
        )

    def retry(self) -> None:
        self._set(
            self._state.model_copy(
                update={
                    "is_loading": True,
                    "error": None,
                    "error_kind": None,
                    "retry_count": self._state.retry_count + 1,
                }
            )
        )

    def succeed(self) -> None:
        self._set(LoadingState())

    def fail(self, error: MarketDataError) -> None:
        retry_after = error.retry_after_ms if isinstance(error, RateLimitError) else None
        self._set(
            self._state.model_copy(
                update={
                    "is_loading": False,
                    "error": error.message,
                    "error_kind": error.kind,
                    "retry_after_ms": retry_after,
                }
            )
        )

    def reset(self) -> None:
        self._set(LoadingState())
