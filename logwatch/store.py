from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")

StoreChangeCallback = Callable[[T], None]


class Store(Generic[T]):
    """
    A simple container for storing and updating any value.

    Agents and tools use it to keep track of information they need to remember
    or share. A store is either local to one agent or shared by every agent of a
    `Runtime` (the global store). Subscribers are notified synchronously, in
    registration order, before `update`/`set` return.
    """

    def __init__(self, value: T) -> None:
        self._value = value
        self._subscribers: List[StoreChangeCallback[T]] = []

    @property
    def value(self) -> T:
        return self._value

    def on_change(self, callback: StoreChangeCallback[T]) -> "Store[T]":
        """Register `callback(new_value)`; returns the store for chaining."""
        self._subscribers.append(callback)
        return self

    def update(self, callback: Callable[[T], T]) -> "Store[T]":
        """Replace the value with `callback(previous_value)`."""
        self._value = callback(self._value)
        self._notify()
        return self

    def set(self, value: T) -> "Store[T]":
        self._value = value
        self._notify()
        return self

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self._value)


def create_store(value: T) -> Store[T]:
    return Store(value)
