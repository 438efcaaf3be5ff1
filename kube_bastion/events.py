"""Asynchronous Kubernetes Event reporting for constraints."""

from __future__ import annotations

import datetime
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

logger = logging.getLogger(__name__)

COMPONENT = "kube-bastion"


@dataclass(frozen=True)
class ConstraintEvent:
    involved_object: dict[str, Any]
    reason: str
    message: str
    event_type: str = "Normal"


class EventRecorder:
    """
    Posts events about constraints from a background thread.

    ``record`` never blocks: when the queue is full the event is dropped and a
    debug message is logged, so a slow API server cannot stall admission
    decisions or the watch loop.
    """

    def __init__(self, core_api: client.CoreV1Api, namespace: str, max_pending: int = 1000):
        self.core_api = core_api
        self.namespace = namespace
        self._queue: queue.Queue[Optional[ConstraintEvent]] = queue.Queue(maxsize=max_pending)
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name="event-recorder", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        if self._thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Event queue full during shutdown, pending events are dropped")
            return
        self._thread.join(timeout)

    def record(self, involved_object: dict[str, Any], reason: str, message: str, event_type: str = "Normal"):
        event = ConstraintEvent(involved_object, reason, message, event_type)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.debug(f"Dropping event {reason} for {involved_object.get('name')}: queue full")

    def _run(self):
        while True:
            event = self._queue.get()
            if event is None:
                return
            try:
                self.core_api.create_namespaced_event(self.namespace, self._build(event))
            except ApiException as e:
                logger.warning(f"Could not send event {event.reason}: {e.status} {e.reason}")
            except HTTPError as e:
                logger.warning(f"Could not send event {event.reason}: {e}")

    def _build(self, event: ConstraintEvent) -> client.CoreV1Event:
        now = datetime.datetime.now(datetime.timezone.utc)
        ref = event.involved_object
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(name=f"{ref.get('name', 'constraint')}.{uuid.uuid4().hex[:12]}"),
            involved_object=client.V1ObjectReference(
                api_version=ref.get("apiVersion"),
                kind=ref.get("kind"),
                name=ref.get("name"),
                uid=ref.get("uid"),
                resource_version=ref.get("resourceVersion"),
            ),
            reason=event.reason,
            message=event.message[:1024],
            type=event.event_type,
            source=client.V1EventSource(component=COMPONENT),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
