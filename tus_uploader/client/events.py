"""Upload events and their routing.

A session emits events tagged with its upload identity. The router
delivers each event only to the registrations made for that identity, and a
:class:`SubscriptionSet` applies the abort and stale-identity rules before a
listener sees it.
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    identity: str
    bytes_uploaded: int
    bytes_total: int


@dataclass(frozen=True)
class SuccessEvent:
    identity: str
    url: str


@dataclass(frozen=True)
class ErrorEvent:
    identity: str
    cause: Exception


Event = Union[ProgressEvent, SuccessEvent, ErrorEvent]


class Registration:
    """One listener registered on the router for an event type and identity."""

    def __init__(self, router: "EventRouter", key: tuple, handler: Callable[[Any], None]):
        self._router = router
        self.key = key
        self.handler = handler
        self.active = True

    def remove(self) -> None:
        """Unregister; calling it again is a no-op."""
        if self.active:
            self.active = False
            self._router._remove(self)


class EventRouter:
    """Route upload events to the registrations for their identity.

    Delivery is synchronous, on the thread that emits, in registration
    order. Events whose identity has no registration are dropped.

    Example:
        >>> router = EventRouter()
        >>> reg = router.add_listener(ProgressEvent, "http://tus/files/1", print)
        >>> router.emit(ProgressEvent("http://tus/files/1", 10, 100))
        ProgressEvent(identity='http://tus/files/1', bytes_uploaded=10, bytes_total=100)
        >>> reg.remove()
    """

    def __init__(self):
        self._registrations: dict[tuple, list[Registration]] = {}
        self._lock = Lock()

    def add_listener(
        self, event_type: type, identity: str, handler: Callable[[Any], None]
    ) -> Registration:
        """Register a handler for events of one type and identity."""
        key = (event_type, identity)
        registration = Registration(self, key, handler)
        with self._lock:
            self._registrations.setdefault(key, []).append(registration)
        return registration

    def _remove(self, registration: Registration) -> None:
        with self._lock:
            registrations = self._registrations.get(registration.key, [])
            if registration in registrations:
                registrations.remove(registration)
            if not registrations:
                self._registrations.pop(registration.key, None)

    def emit(self, event: Event) -> None:
        """Deliver an event to the handlers registered for its identity."""
        with self._lock:
            registrations = list(self._registrations.get((type(event), event.identity), ()))
        if not registrations:
            logger.debug(f"Dropped {type(event).__name__} for {event.identity}: no listener")
        for registration in registrations:
            if registration.active:
                registration.handler(event)

    def listener_count(self, identity: str) -> int:
        """Count the registrations for an identity."""
        with self._lock:
            return sum(
                len(registrations)
                for (_, key_identity), registrations in self._registrations.items()
                if key_identity == identity
            )


default_router = EventRouter()


class SubscriptionSet:
    """The registrations of one session for its current identity.

    Every handler drops events whose identity is not the session's current
    identity. While the session is aborting, progress and error events are
    suppressed, and a success is swallowed after tearing the set down.

    The listener must provide on_progress, on_success and on_error, each
    taking the event.
    """

    def __init__(self, router: EventRouter, session: Any, listener: Any):
        self.identity = session.identity
        self._session = session
        self._listener = listener
        self._registrations = [
            router.add_listener(ProgressEvent, self.identity, self._handle_progress),
            router.add_listener(SuccessEvent, self.identity, self._handle_success),
            router.add_listener(ErrorEvent, self.identity, self._handle_error),
        ]

    @property
    def active(self) -> bool:
        return any(registration.active for registration in self._registrations)

    def remove(self) -> None:
        """Tear down all registrations."""
        for registration in self._registrations:
            registration.remove()

    def _is_current(self, event: Event) -> bool:
        if event.identity == self.identity and event.identity == self._session.identity:
            return True
        logger.debug(f"Dropped stale {type(event).__name__} for {event.identity}")
        return False

    def _handle_progress(self, event: ProgressEvent) -> None:
        if not self._is_current(event) or self._session.aborting:
            return
        self._listener.on_progress(event)

    def _handle_success(self, event: SuccessEvent) -> None:
        if not self._is_current(event):
            return
        self.remove()
        if self._session.aborting:
            logger.debug(f"Suppressed success for {event.identity}: abort in progress")
            return
        self._listener.on_success(event)

    def _handle_error(self, event: ErrorEvent) -> None:
        if not self._is_current(event):
            return
        if self._session.aborting:
            logger.debug(f"Suppressed error for {event.identity}: {event.cause}")
            return
        self.remove()
        self._listener.on_error(event)
