"""
事件发射器与可释放订阅

订阅方通过 `Emitter.event(listener)` 拿到 `Subscription`，由持有者在销毁时统一释放。
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar, Union

from loguru import logger

T = TypeVar("T")

Listener = Callable[[T], Union[None, Awaitable[None]]]


class Subscription:
    """一次订阅的句柄；dispose() 可重复调用。"""

    def __init__(self, on_dispose: Callable[[], None]):
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._on_dispose()


class Emitter(Generic[T]):
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def event(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(_remove)

    async def fire(self, value: T) -> None:
        """按注册顺序通知监听者；异步监听者会被依次 await。"""
        for listener in list(self._listeners):
            result: Any = listener(value)
            if inspect.isawaitable(result):
                await result

    def dispose(self) -> None:
        if self._listeners:
            logger.debug(f"Emitter 释放，移除 {len(self._listeners)} 个监听者")
        self._listeners.clear()


def dispose_all(subscriptions: Iterable[Subscription]) -> list[Subscription]:
    for subscription in subscriptions:
        subscription.dispose()
    return []
