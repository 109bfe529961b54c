from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from netattach.src.context import ControllerContext
from netattach.src.events import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    REASON_UPDATE_ABORTED,
    REASON_UPDATE_SUCCESSFUL,
)
from netattach.src.kube import (
    get_annotation,
    get_labels,
    meta_value,
    replace_endpoints,
    split_meta_namespace_key,
)
from netattach.src.metrics import METRICS
from netattach.src.networks import (
    NETWORKS_ANNOTATION,
    NETWORKS_STATUS_ANNOTATION,
    NetworkSelectionElement,
    NetworkStatusError,
    parse_network_selections,
    parse_network_status,
)

MULTIPLE_SELECTIONS_MESSAGE = "multiple network selections in the service spec are not supported"


class NoNetworkAnnotationError(ValueError):
    """The Service carries no (or an empty) network selection annotation."""


class MultipleNetworkSelectionsError(ValueError):
    """The Service selects more than one network, which is not supported."""


class EndpointsNotFoundError(LookupError):
    """The Service's Endpoints object is not in the cache."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one successful Endpoints reconciliation."""

    service: str
    network: str
    pods: int
    addresses: int
    subsets: int


def find_pod_port(pod: Any, service_port: Any) -> int | None:
    """Resolve a Service port to the port number served by *pod*.

    A numeric target port is used as-is and an absent one means "same as
    ``port``".  A named target port must match a container port with the same
    name and protocol; ``None`` means this pod does not serve the port.
    """
    target = getattr(service_port, "target_port", None)
    if target is None or target == "":
        return getattr(service_port, "port", None)
    if isinstance(target, int):
        return target

    protocol = getattr(service_port, "protocol", None) or "TCP"
    containers = getattr(getattr(pod, "spec", None), "containers", None) or []
    for container in containers:
        for container_port in getattr(container, "ports", None) or []:
            if (
                getattr(container_port, "name", None) == target
                and (getattr(container_port, "protocol", None) or "TCP") == protocol
            ):
                return getattr(container_port, "container_port", None)
    return None


def _port_key(port: dict[str, Any]) -> tuple[str, int, str]:
    return (port.get("name") or "", int(port["port"]), port.get("protocol") or "TCP")


def _address_key(address: dict[str, Any]) -> tuple[str, str]:
    target_ref = address.get("targetRef") or {}
    return (address["ip"], target_ref.get("uid") or "")


def repack_subsets(subsets: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge per-pod subsets into the canonical minimal form.

    Subsets with an identical port set collapse into one whose addresses are
    the union of theirs.  Subsets without addresses are dropped.  Addresses,
    ports and subsets come out sorted, so repacking is idempotent and equal
    input sets always produce equal output.
    """
    grouped: dict[tuple[tuple[str, int, str], ...], dict[str, Any]] = {}
    for subset in subsets:
        addresses = subset.get("addresses") or []
        if not addresses:
            continue
        ports = {_port_key(port): port for port in subset.get("ports") or []}
        port_set = tuple(sorted(ports))
        entry = grouped.setdefault(
            port_set,
            {"ports": [ports[key] for key in port_set], "addresses": {}},
        )
        for address in addresses:
            entry["addresses"].setdefault(_address_key(address), address)

    return [
        {
            "addresses": [
                grouped[port_set]["addresses"][key]
                for key in sorted(grouped[port_set]["addresses"])
            ],
            "ports": grouped[port_set]["ports"],
        }
        for port_set in sorted(grouped)
    ]


class EndpointsReconciler:
    """Recomputes a Service's Endpoints from its pods' secondary network status.

    ``sync`` never patches incrementally: every call rebuilds ``subsets`` from
    the cached Service, pods and Endpoints and writes the whole object back
    with the cached ``resourceVersion``.
    """

    def __init__(self, context: ControllerContext, logger: logging.Logger | None = None) -> None:
        self.context = context
        self.logger = logger or logging.getLogger(__name__)

    def _pod_subset(
        self, pod: Any, service: Any, network: NetworkSelectionElement
    ) -> dict[str, Any] | None:
        pod_name = meta_value(pod, "name")
        pod_namespace = meta_value(pod, "namespace")
        try:
            statuses = parse_network_status(get_annotation(pod, NETWORKS_STATUS_ANNOTATION))
        except NetworkStatusError as exc:
            self.logger.warning(
                "Skipping pod %s/%s: error reading pod networks status: %s",
                pod_namespace,
                pod_name,
                exc,
            )
            return None

        node_name = getattr(getattr(pod, "spec", None), "node_name", None)
        target_ref = {
            "kind": "Pod",
            "name": pod_name,
            "namespace": pod_namespace,
            "resourceVersion": meta_value(pod, "resource_version"),
            "uid": meta_value(pod, "uid"),
        }
        addresses: list[dict[str, Any]] = []
        for status in statuses:
            if not network.matches_status_name(status.name):
                continue
            self.logger.debug(
                "Pod %s/%s: network %s on interface %s has IPs %s",
                pod_namespace,
                pod_name,
                status.name,
                status.interface,
                ", ".join(status.ips),
            )
            for ip in status.ips:
                address: dict[str, Any] = {"ip": ip, "targetRef": dict(target_ref)}
                if node_name:
                    address["nodeName"] = node_name
                addresses.append(address)

        ports: list[dict[str, Any]] = []
        for service_port in getattr(getattr(service, "spec", None), "ports", None) or []:
            port_number = find_pod_port(pod, service_port)
            if port_number is None:
                self.logger.debug(
                    "Pod %s/%s has no port for service port %s, skipping",
                    pod_namespace,
                    pod_name,
                    getattr(service_port, "name", None) or getattr(service_port, "port", None),
                )
                continue
            port: dict[str, Any] = {
                "port": int(port_number),
                "protocol": getattr(service_port, "protocol", None) or "TCP",
            }
            port_name = getattr(service_port, "name", None)
            if port_name:
                port["name"] = port_name
            ports.append(port)

        return {"addresses": addresses, "ports": ports}

    @staticmethod
    def _endpoints_body(
        endpoints: Any, service: Any, subsets: list[dict[str, Any]]
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": meta_value(endpoints, "name"),
            "namespace": meta_value(endpoints, "namespace"),
            "resourceVersion": meta_value(endpoints, "resource_version"),
            "ownerReferences": [
                {
                    "apiVersion": "v1",
                    "kind": "Service",
                    "name": meta_value(service, "name"),
                    "uid": meta_value(service, "uid"),
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
        }
        labels = get_labels(endpoints)
        if labels:
            metadata["labels"] = labels
        annotations = meta_value(endpoints, "annotations")
        if annotations:
            metadata["annotations"] = dict(annotations)
        finalizers = meta_value(endpoints, "finalizers")
        if finalizers:
            metadata["finalizers"] = list(finalizers)

        return {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": metadata,
            "subsets": subsets,
        }

    def sync(self, key: str) -> SyncResult | None:
        """Reconcile the Endpoints of the Service identified by *key*.

        Returns ``None`` for a stale key (Service no longer cached).  Raises
        :class:`NoNetworkAnnotationError`, :class:`SelectionParseError`,
        :class:`MultipleNetworkSelectionsError` or
        :class:`EndpointsNotFoundError` when the sync is aborted before any
        write, and ``ApiException`` when the Endpoints update fails.
        """
        namespace, name = split_meta_namespace_key(key)
        service = self.context.services.get(namespace, name)
        if service is None:
            self.logger.debug("Service %s no longer exists; dropping key", key)
            return None

        annotation = get_annotation(service, NETWORKS_ANNOTATION)
        if not annotation:
            raise NoNetworkAnnotationError(f"no network annotations on service {key}")
        self.logger.debug("Service %s network annotation found: %s", key, annotation)

        networks = parse_network_selections(annotation, namespace)
        if not networks:
            raise NoNetworkAnnotationError(f"empty network selection on service {key}")
        if len(networks) > 1:
            self.logger.warning("%s (service %s)", MULTIPLE_SELECTIONS_MESSAGE, key)
            self.context.recorder.event(
                service,
                "Service",
                EVENT_TYPE_WARNING,
                REASON_UPDATE_ABORTED,
                MULTIPLE_SELECTIONS_MESSAGE,
            )
            raise MultipleNetworkSelectionsError(MULTIPLE_SELECTIONS_MESSAGE)
        network = networks[0]

        selector = getattr(getattr(service, "spec", None), "selector", None) or {}
        pods = self.context.pods.list(namespace=namespace, selector=selector)

        endpoints = self.context.endpoints.get(namespace, name)
        if endpoints is None:
            raise EndpointsNotFoundError(f"endpoints {key} not found")

        subsets = []
        for pod in pods:
            subset = self._pod_subset(pod, service, network)
            if subset is not None:
                subsets.append(subset)
        repacked = repack_subsets(subsets)

        body = self._endpoints_body(endpoints, service, repacked)
        try:
            replace_endpoints(self.context.core_api, body)
        except ApiException as exc:
            self.logger.error("Error updating endpoints %s: %s %s", key, exc.status, exc.reason)
            raise
        METRICS.endpoints_updates_total.inc()

        address_count = sum(len(subset["addresses"]) for subset in repacked)
        self.logger.info(
            "Endpoints %s updated: %d address(es) in %d subset(s) on network %s/%s",
            key,
            address_count,
            len(repacked),
            network.namespace,
            network.name,
        )
        message = f"Updated to use network {annotation}"
        self.context.recorder.event(
            endpoints, "Endpoints", EVENT_TYPE_NORMAL, REASON_UPDATE_SUCCESSFUL, message
        )
        self.context.recorder.event(
            service, "Service", EVENT_TYPE_NORMAL, REASON_UPDATE_SUCCESSFUL, message
        )

        return SyncResult(
            service=key,
            network=f"{network.namespace}/{network.name}",
            pods=len(pods),
            addresses=address_count,
            subsets=len(repacked),
        )
