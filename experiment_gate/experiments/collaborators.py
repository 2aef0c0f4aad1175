"""
实验引擎依赖的外部协作方

引擎只依赖这里定义的窄接口；应用启动时注入默认实现，测试中可替换为桩。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Protocol, Union

from loguru import logger

from experiment_gate.core.events import Emitter, Subscription
from experiment_gate.core.redis_client import RedisClient


class StorageScope(str, Enum):
    GLOBAL = "global"
    WORKSPACE = "workspace"


class StateChange(str, Enum):
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    REVERTED = "reverted"


@dataclass(frozen=True)
class SaveEvent:
    kind: StateChange
    path: str


@dataclass(frozen=True)
class InstalledExtension:
    id: str


SaveListener = Callable[[list[SaveEvent]], Union[None, Awaitable[None]]]


class StorageService(Protocol):
    async def get(self, key: str, scope: StorageScope = StorageScope.GLOBAL) -> Optional[str]: ...

    async def store(self, key: str, value: str, scope: StorageScope = StorageScope.GLOBAL) -> None: ...

    async def remove(self, key: str, scope: StorageScope = StorageScope.GLOBAL) -> None: ...


class ExtensionQuery(Protocol):
    async def query_local(self) -> list[InstalledExtension]: ...


class SaveEventSource(Protocol):
    def on_did_save(self, listener: SaveListener) -> Subscription: ...


class WorkspaceTagProvider(Protocol):
    def get_tags(self) -> Mapping[str, bool]: ...


class TelemetryService(Protocol):
    def public_log(self, event_name: str, data: Any = None) -> None: ...


# ========================================
# 默认实现
# ========================================
class RedisStorageService:
    """基于 Redis 字符串的键值存储；key 形如 `<prefix><scope>:<key>`"""

    def __init__(self, redis_client: RedisClient, *, prefix: str = ""):
        self._redis_client = redis_client
        self._prefix = prefix or ""

    def _full_key(self, key: str, scope: StorageScope) -> str:
        return f"{self._prefix}{scope.value}:{key}"

    async def get(self, key: str, scope: StorageScope = StorageScope.GLOBAL) -> Optional[str]:
        return await self._redis_client.get_value(self._full_key(key, scope))

    async def store(self, key: str, value: str, scope: StorageScope = StorageScope.GLOBAL) -> None:
        await self._redis_client.set_value(self._full_key(key, scope), value)

    async def remove(self, key: str, scope: StorageScope = StorageScope.GLOBAL) -> None:
        await self._redis_client.delete_key(self._full_key(key, scope))


class StaticExtensionQuery:
    def __init__(self, extension_ids: Iterable[str]):
        self._extensions = [InstalledExtension(id=str(x)) for x in extension_ids if x]

    async def query_local(self) -> list[InstalledExtension]:
        return list(self._extensions)


class StaticWorkspaceTags:
    def __init__(self, tags: Iterable[str] = ()):
        self._tags: dict[str, bool] = {str(tag): True for tag in tags if tag}

    def set_tag(self, tag: str, present: bool = True) -> None:
        self._tags[tag] = present

    def get_tags(self) -> Mapping[str, bool]:
        return dict(self._tags)


class EmitterSaveEventSource:
    """保存事件源：外部（如 HTTP 接口）调用 publish 推送一批保存事件"""

    def __init__(self) -> None:
        self._emitter: Emitter[list[SaveEvent]] = Emitter()

    @property
    def listener_count(self) -> int:
        return self._emitter.listener_count

    def on_did_save(self, listener: SaveListener) -> Subscription:
        return self._emitter.event(listener)

    async def publish(self, events: list[SaveEvent]) -> None:
        if not events:
            return
        await self._emitter.fire(list(events))

    def dispose(self) -> None:
        self._emitter.dispose()


class LoggerTelemetryService:
    """把遥测事件写入日志（fire-and-forget）"""

    def public_log(self, event_name: str, data: Any = None) -> None:
        logger.bind(telemetry=True).info(f"[telemetry] {event_name}: {data}")
