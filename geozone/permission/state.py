"""Passive tracker of the location-capability permission state."""
from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, List

import structlog

from geozone.errors import CapabilityError, ErrorKind

LOGGER = structlog.get_logger(__name__)


class PermissionState(str, Enum):
    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"
    UNSUPPORTED = "unsupported"


Listener = Callable[[PermissionState, PermissionState], None]


class PermissionStateMachine:
    """Mirrors whatever the capability subsystem reports.

    The machine never promotes itself: every transition comes from a poll
    (`refresh`) or a push (`observe`) of the subsystem's state. The one
    exception is `Unsupported`, which overrides any state as soon as the
    platform reports no location capability at all.
    """

    def __init__(self, capability) -> None:
        self._capability = capability
        self._state = PermissionState.PROMPT
        self._listeners: List[Listener] = []
        self._prompted = False
        self._lock = threading.Lock()

    @property
    def state(self) -> PermissionState:
        with self._lock:
            return self._state

    def on_change(self, callback: Listener) -> Callable[[], None]:
        """Register `callback(old, new)`; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def observe(self, reported: PermissionState) -> PermissionState:
        """Record a state reported by the subsystem and notify listeners."""
        with self._lock:
            previous = self._state
            self._state = reported
            listeners = list(self._listeners) if previous != reported else []
        if listeners:
            LOGGER.info("permission_changed", previous=previous.value, current=reported.value)
        for listener in listeners:
            listener(previous, reported)
        return reported

    async def refresh(self) -> PermissionState:
        """Poll the subsystem; an absent or failing query means unsupported."""
        if self._capability is None:
            return self.observe(PermissionState.UNSUPPORTED)
        try:
            reported = await self._capability.query_permission_state()
        except NotImplementedError:
            reported = PermissionState.UNSUPPORTED
        except CapabilityError as exc:
            if exc.kind is ErrorKind.UNSUPPORTED:
                reported = PermissionState.UNSUPPORTED
            elif exc.kind is ErrorKind.PERMISSION_DENIED:
                reported = PermissionState.DENIED
            else:
                raise
        return self.observe(PermissionState(reported))

    async def request_prompt(self) -> PermissionState:
        """Trigger the platform's permission prompt once per session."""
        with self._lock:
            already = self._prompted
            self._prompted = True
        if already or self._capability is None:
            return await self.refresh()
        current = await self.refresh()
        if current is not PermissionState.PROMPT:
            return current
        reported = await self._capability.request_prompt()
        return self.observe(PermissionState(reported))
