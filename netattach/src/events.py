from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from netattach.src.kube import meta_value
from netattach.src.metrics import METRICS

COMPONENT_NAME = "k8s-net-attach-def-controller"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

REASON_UPDATE_SUCCESSFUL = "Endpoints update successful"
REASON_UPDATE_ABORTED = "Endpoints update aborted"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class EventRecorder:
    """Posts core/v1 Events about Services and Endpoints.

    Recording is best effort: a failed ``create`` is logged and never
    propagates into the reconciliation that emitted it.  Every event is also
    written to the controller log.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = COMPONENT_NAME,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def event(self, obj: Any, kind: str, event_type: str, reason: str, message: str) -> None:
        name = meta_value(obj, "name")
        namespace = meta_value(obj, "namespace") or "default"
        log = self.logger.warning if event_type == EVENT_TYPE_WARNING else self.logger.info
        log("Event(%s %s/%s): type=%s reason=%r %s", kind, namespace, name, event_type, reason, message)

        timestamp = self.now_fn()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{name}.{uuid.uuid4().hex[:16]}",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": "v1",
                "kind": kind,
                "name": name,
                "namespace": namespace,
                "uid": meta_value(obj, "uid"),
                "resourceVersion": meta_value(obj, "resource_version"),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
            METRICS.events_total.labels(type=event_type).inc()
        except ApiException as exc:
            self.logger.warning(
                "Failed to record %s event on %s %s/%s: %s",
                event_type,
                kind,
                namespace,
                name,
                exc.reason,
            )
