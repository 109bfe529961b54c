from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from netattach.src.context import ControllerContext
from netattach.src.kube import (
    create_network_attachment_definition,
    get_annotation,
    meta_value,
    read_network_attachment_definition,
)
from netattach.src.metrics import METRICS
from netattach.src.networks import (
    NETWORKS_ANNOTATION,
    SelectionParseError,
    parse_network_selections,
)

# Server-populated metadata that must not be sent back on create.
_SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "generation",
    "managedFields",
    "selfLink",
)


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of handling one NetworkAttachmentDefinition delete notification.

    ``referenced_by`` names the first pod found using the definition, or is
    ``None`` when no cached pod references it.
    """

    namespace: str
    name: str
    referenced_by: str | None
    recreated: bool


def recovered_copy(obj: dict[str, Any]) -> dict[str, Any]:
    """Return a create-ready clone of a deleted NetworkAttachmentDefinition."""
    recovered = copy.deepcopy(obj)
    metadata = recovered.setdefault("metadata", {})
    for field in _SERVER_METADATA_FIELDS:
        metadata.pop(field, None)
    return recovered


class NetworkAttachmentDefinitionRecovery:
    """Recreates NetworkAttachmentDefinitions deleted while pods still reference them.

    Runs inline on the delete notification.  The scan stops at the first pod
    referencing the deleted definition; the definition is then re-read from
    the live API (not the cache) and recreated only if it is really gone,
    which tolerates a concurrent handler having restored it already.
    """

    def __init__(self, context: ControllerContext, logger: logging.Logger | None = None) -> None:
        self.context = context
        self.logger = logger or logging.getLogger(__name__)

    def _first_referencing_pod(self, namespace: str, name: str) -> str | None:
        for pod in self.context.pods.list():
            annotation = get_annotation(pod, NETWORKS_ANNOTATION)
            if annotation is None:
                continue
            pod_namespace = meta_value(pod, "namespace") or ""
            try:
                selections = parse_network_selections(annotation, pod_namespace)
            except SelectionParseError:
                continue
            for selection in selections:
                if selection.namespace == namespace and selection.name == name:
                    return f"{pod_namespace}/{meta_value(pod, 'name')}"
        return None

    def handle_deletion(self, obj: dict[str, Any]) -> RecoveryResult:
        namespace = meta_value(obj, "namespace") or ""
        name = meta_value(obj, "name") or ""
        self.logger.info("Handling deletion of network-attachment-definition %s/%s", namespace, name)

        pod_key = self._first_referencing_pod(namespace, name)
        if pod_key is None:
            METRICS.recoveries_total.labels(outcome="unreferenced").inc()
            return RecoveryResult(namespace=namespace, name=name, referenced_by=None, recreated=False)

        self.logger.info(
            "Pod %s uses network-attachment-definition %s/%s which needs to be recreated",
            pod_key,
            namespace,
            name,
        )
        try:
            read_network_attachment_definition(self.context.custom_api, namespace, name)
        except ApiException as exc:
            if exc.status != 404:
                self.logger.error(
                    "Failed to check whether network-attachment-definition %s/%s exists: %s %s",
                    namespace,
                    name,
                    exc.status,
                    exc.reason,
                )
                METRICS.recoveries_total.labels(outcome="error").inc()
                return RecoveryResult(
                    namespace=namespace, name=name, referenced_by=pod_key, recreated=False
                )
        else:
            self.logger.info(
                "Network-attachment-definition %s/%s already exists; nothing to recover",
                namespace,
                name,
            )
            METRICS.recoveries_total.labels(outcome="present").inc()
            return RecoveryResult(namespace=namespace, name=name, referenced_by=pod_key, recreated=False)

        try:
            create_network_attachment_definition(
                self.context.custom_api, namespace, recovered_copy(obj)
            )
        except ApiException as exc:
            self.logger.error(
                "Error recreating network-attachment-definition %s/%s: %s %s",
                namespace,
                name,
                exc.status,
                exc.reason,
            )
            METRICS.recoveries_total.labels(outcome="error").inc()
            return RecoveryResult(namespace=namespace, name=name, referenced_by=pod_key, recreated=False)

        self.logger.info("Network-attachment-definition %s/%s recovered", namespace, name)
        METRICS.recoveries_total.labels(outcome="recreated").inc()
        return RecoveryResult(namespace=namespace, name=name, referenced_by=pod_key, recreated=True)
