from __future__ import annotations

import asyncio
from enum import IntEnum


class LifecyclePhase(IntEnum):
    STARTING = 1
    READY = 2
    RESTORED = 3
    EVENTUALLY = 4


class LifecycleService:
    """
    应用生命周期阶段

    阶段只前进不后退；进入后续阶段会同时放行所有等待较早阶段的协程。
    """

    def __init__(self) -> None:
        self._phase = LifecyclePhase.STARTING
        self._reached: dict[LifecyclePhase, asyncio.Event] = {}

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    def _event_for(self, phase: LifecyclePhase) -> asyncio.Event:
        event = self._reached.get(phase)
        if event is None:
            event = asyncio.Event()
            if phase <= self._phase:
                event.set()
            self._reached[phase] = event
        return event

    def set_phase(self, phase: LifecyclePhase) -> None:
        if phase < self._phase:
            raise ValueError(f"生命周期阶段不能回退: {self._phase.name} -> {phase.name}")
        self._phase = phase
        for p, event in self._reached.items():
            if p <= phase:
                event.set()

    async def when(self, phase: LifecyclePhase) -> None:
        await self._event_for(phase).wait()
