"""List/watch loop feeding a cache from the Kubernetes API."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Optional, Protocol

import backoff
from kubernetes import client, watch

from .errors import WatchError
from .kube import API_ERRORS

logger = logging.getLogger(__name__)

WATCH_ERRORS = (*API_ERRORS, WatchError)


class Handler(Protocol):
    def replace_all(self, resources: Iterable[dict[str, Any]]) -> None:
        ...

    def handle_event(self, event_type: str, resource: dict[str, Any]) -> None:
        ...


class ResourceWatcher:
    """
    Keeps a handler in sync with one resource type.

    ``sync`` performs the initial list in the caller's thread and raises
    WatchError when the API stays unreachable. ``start`` then follows changes
    from a daemon thread. Whenever the watch breaks the loop backs off and
    lists everything again, so events missed while disconnected are never
    lost; until then the handler keeps serving its last good state.
    """

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        handler: Handler,
        *,
        list_kwargs: Optional[dict[str, Any]] = None,
        watch_timeout: int = 300,
        startup_attempts: int = 5,
        backoff_max: float = 30.0,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ):
        self.name = name
        self.list_func = list_func
        self.handler = handler
        self.list_kwargs = list_kwargs or {}
        self.watch_timeout = watch_timeout
        self.startup_attempts = startup_attempts
        self.backoff_max = backoff_max
        self.watch_factory = watch_factory
        self.synced = threading.Event()
        self._resource_version: Optional[str] = None
        self._needs_resync = False
        self._stopped = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None
        self._serializer = client.ApiClient()

    def _on_backoff(self, details):
        logger.warning(
            f"Watching {self.name} failed (attempt {details['tries']}), "
            f"retrying in {details['wait']:.1f}s: {details.get('exception')}"
        )

    def sync(self):
        """Initial full list; raises WatchError once all start-up attempts failed."""
        list_with_retry = backoff.on_exception(
            backoff.expo,
            WATCH_ERRORS,
            max_tries=self.startup_attempts,
            max_value=self.backoff_max,
            jitter=backoff.random_jitter,
            on_backoff=self._on_backoff,
        )(self._list)
        try:
            list_with_retry()
        except WatchError:
            raise
        except API_ERRORS as e:
            raise WatchError(f"Initial list of {self.name} failed: {e}") from e

    def start(self):
        if not self.synced.is_set():
            self.sync()
        self._thread = threading.Thread(target=self._run, name=f"watch-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stopped.set()
        if self._watch is not None:
            self._watch.stop()
        if self._thread is not None:
            self._thread.join(timeout)

    def _list(self):
        result = self._serializer.sanitize_for_serialization(self.list_func(**self.list_kwargs))
        if not isinstance(result, dict):
            raise WatchError(f"Unexpected list response for {self.name}")
        self.handler.replace_all(result.get("items") or [])
        self._resource_version = (result.get("metadata") or {}).get("resourceVersion")
        self._needs_resync = False
        self.synced.set()

    def _cycle(self):
        try:
            if self._needs_resync:
                logger.info(f"Relisting {self.name}")
                self._list()
            self._stream()
        except WATCH_ERRORS:
            raise
        except Exception as e:
            # undecodable events or handler bugs must not end the loop
            logger.exception(f"Unexpected failure while watching {self.name}")
            self._needs_resync = True
            raise WatchError(f"Watching {self.name} failed: {type(e).__name__}: {e}") from e

    def _stream(self):
        self._watch = self.watch_factory()
        kwargs = dict(self.list_kwargs, timeout_seconds=self.watch_timeout)
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        try:
            for event in self._watch.stream(self.list_func, **kwargs):
                if self._stopped.is_set():
                    return
                self._dispatch(event)
        except WATCH_ERRORS:
            self._needs_resync = True
            raise
        finally:
            self._watch.stop()

    def _dispatch(self, event: dict[str, Any]):
        event_type = event.get("type")
        resource = event.get("raw_object")
        if not isinstance(resource, dict):
            resource = self._serializer.sanitize_for_serialization(event.get("object"))

        if event_type == "ERROR":
            raise WatchError(f"Watch of {self.name} returned an error: {resource}")

        version = (resource.get("metadata") or {}).get("resourceVersion")
        if version:
            self._resource_version = version
        if event_type == "BOOKMARK":
            return
        self.handler.handle_event(event_type, resource)

    def _run(self):
        cycle = backoff.on_exception(
            backoff.expo,
            WATCH_ERRORS,
            max_value=self.backoff_max,
            jitter=backoff.random_jitter,
            on_backoff=self._on_backoff,
            giveup=lambda e: self._stopped.is_set(),
        )(self._cycle)
        while not self._stopped.is_set():
            try:
                cycle()
            except WATCH_ERRORS:
                if self._stopped.is_set():
                    return
                raise
        logger.info(f"Stopped watching {self.name}")
