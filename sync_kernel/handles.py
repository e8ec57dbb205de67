"""Subscription handles for listener registration."""

from typing import Callable, List


class ListenerHandle:
    """
    Returned by every `listen`/`subscribe` style registration.
    Closing it (or leaving its `with` block) unregisters the listener.
    """

    def __init__(self, listeners: List[Callable], listener: Callable):
        self._listeners = listeners
        self._listener = listener
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._listeners.remove(self._listener)
        except ValueError:
            pass

    def __enter__(self) -> "ListenerHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def register(listeners: List[Callable], listener: Callable) -> ListenerHandle:
    listeners.append(listener)
    return ListenerHandle(listeners, listener)
