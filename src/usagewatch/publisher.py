import threading
from collections.abc import Callable

from usagewatch.models import UsageState

StateListener = Callable[[UsageState], None]


class StatePublisher:
    """
    StatePublisher holds the single published UsageState.

    The polling loop and one-off refreshes may write concurrently, so
    every write replaces the whole value under a lock and readers
    never see a partially updated state. The last writer wins.
    """

    def __init__(self, initial: "UsageState | None" = None) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._state: "UsageState" = initial or UsageState()
        self._listeners: "list[StateListener]" = []

    @property
    def state(self) -> "UsageState":
        with self._lock:
            return self._state

    def publish(self, state: "UsageState") -> "None":
        with self._lock:
            self._state = state
        self._notify(state)

    def update(self, fn: "Callable[[UsageState], UsageState]") -> "UsageState":
        """
        applies fn to the current state and stores the result in one
        step.
        """
        with self._lock:
            state = fn(self._state)
            self._state = state
        self._notify(state)
        return state

    def subscribe(self, listener: "StateListener") -> "Callable[[], None]":
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> "None":
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, state: "UsageState") -> "None":
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(state)
