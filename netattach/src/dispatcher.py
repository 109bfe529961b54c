from __future__ import annotations

import logging
from typing import Any

from netattach.src.context import ControllerContext
from netattach.src.kube import (
    get_annotation,
    get_labels,
    meta_namespace_key,
    meta_value,
    selector_matches,
)
from netattach.src.networks import NETWORKS_ANNOTATION, NETWORKS_STATUS_ANNOTATION
from netattach.src.recovery import NetworkAttachmentDefinitionRecovery

LOGGER = logging.getLogger(__name__)


def resource_version_changed(old: Any, new: Any) -> bool:
    return meta_value(old, "resource_version") != meta_value(new, "resource_version")


def networks_annotation_changed(old: Any, new: Any) -> bool:
    return (get_annotation(old, NETWORKS_ANNOTATION) or "") != (
        get_annotation(new, NETWORKS_ANNOTATION) or ""
    )


def _container_ports(pod: Any) -> tuple[tuple[Any, ...], ...]:
    containers = getattr(getattr(pod, "spec", None), "containers", None) or []
    return tuple(
        (
            getattr(container, "name", None),
            getattr(port, "name", None),
            getattr(port, "container_port", None),
            getattr(port, "protocol", None),
        )
        for container in containers
        for port in getattr(container, "ports", None) or []
    )


def pod_endpoints_changed(old: Any, new: Any) -> bool:
    """Return True if a pod update touches anything the reconciler reads.

    That is the network-status and network-selection annotations, the labels
    used for Service matching, the node name and the container ports.
    """
    return (
        get_annotation(old, NETWORKS_STATUS_ANNOTATION)
        != get_annotation(new, NETWORKS_STATUS_ANNOTATION)
        or networks_annotation_changed(old, new)
        or get_labels(old) != get_labels(new)
        or getattr(getattr(old, "spec", None), "node_name", None)
        != getattr(getattr(new, "spec", None), "node_name", None)
        or _container_ports(old) != _container_ports(new)
    )


class EventHandler:
    """Base for per-kind handlers; every notification is ignored unless overridden."""

    def __init__(self, context: ControllerContext) -> None:
        self.context = context

    def enqueue_service(self, service: Any) -> None:
        try:
            key = meta_namespace_key(service)
        except ValueError:
            LOGGER.error("Cannot build a work queue key for service without a name")
            return
        self.context.queue.add(key)

    def on_add(self, obj: Any) -> None:
        return None

    def on_update(self, old: Any, new: Any) -> None:
        return None

    def on_delete(self, obj: Any) -> None:
        return None


class ServiceEventHandler(EventHandler):
    def on_add(self, obj: Any) -> None:
        self.enqueue_service(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if resource_version_changed(old, new) or networks_annotation_changed(old, new):
            self.enqueue_service(new)

    def on_delete(self, obj: Any) -> None:
        self.enqueue_service(obj)


class PodEventHandler(EventHandler):
    """Translates pod changes into reconciliation of the Services selecting the pod."""

    def _pod_services(self, pod: Any) -> list[Any]:
        labels = get_labels(pod)
        return [
            service
            for service in self.context.services.list(namespace=meta_value(pod, "namespace"))
            if selector_matches(getattr(getattr(service, "spec", None), "selector", None), labels)
        ]

    def _handle(self, pod: Any, previous: Any | None = None) -> None:
        if get_annotation(pod, NETWORKS_ANNOTATION) is None and (
            previous is None or get_annotation(previous, NETWORKS_ANNOTATION) is None
        ):
            LOGGER.debug(
                "Skipping pod %s/%s event: network annotations missing",
                meta_value(pod, "namespace"),
                meta_value(pod, "name"),
            )
            return

        services = self._pod_services(pod)
        if previous is not None and get_labels(previous) != get_labels(pod):
            services.extend(self._pod_services(previous))
        for service in services:
            self.enqueue_service(service)

    def on_add(self, obj: Any) -> None:
        self._handle(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if resource_version_changed(old, new) and pod_endpoints_changed(old, new):
            self._handle(new, previous=old)

    def on_delete(self, obj: Any) -> None:
        self._handle(obj)


class EndpointsEventHandler(EventHandler):
    def _handle(self, endpoints: Any) -> None:
        service = self.context.services.get(
            meta_value(endpoints, "namespace") or "", meta_value(endpoints, "name") or ""
        )
        # Endpoints without a Service (e.g. leader-election objects) are ignored.
        if service is None:
            return
        self.enqueue_service(service)

    def on_add(self, obj: Any) -> None:
        self._handle(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if resource_version_changed(old, new):
            self._handle(new)

    def on_delete(self, obj: Any) -> None:
        self._handle(obj)


class NetworkAttachmentDefinitionEventHandler(EventHandler):
    """Runs deletion recovery inline; adds and updates are not interesting."""

    def __init__(
        self, context: ControllerContext, recovery: NetworkAttachmentDefinitionRecovery
    ) -> None:
        super().__init__(context)
        self.recovery = recovery

    def on_delete(self, obj: Any) -> None:
        LOGGER.debug("Network-attachment-definition delete event received")
        self.recovery.handle_deletion(obj)


def register_handlers(
    context: ControllerContext, recovery: NetworkAttachmentDefinitionRecovery
) -> None:
    """Subscribe one handler per watched kind to the context's informers."""
    context.services.add_handler(ServiceEventHandler(context))
    context.pods.add_handler(PodEventHandler(context))
    context.endpoints.add_handler(EndpointsEventHandler(context))
    context.network_attachment_definitions.add_handler(
        NetworkAttachmentDefinitionEventHandler(context, recovery)
    )
