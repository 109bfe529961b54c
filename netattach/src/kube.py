from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

NAD_GROUP = "k8s.cni.cncf.io"
NAD_VERSION = "v1"
NAD_PLURAL = "network-attachment-definitions"

_META_KEYS = {
    "name": "name",
    "namespace": "namespace",
    "resource_version": "resourceVersion",
    "uid": "uid",
    "labels": "labels",
    "annotations": "annotations",
    "finalizers": "finalizers",
}


def load_kube_configuration(master: str | None = None, kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    With neither *master* nor *kubeconfig* set, in-cluster config is tried
    first (running inside a pod), falling back to the local kubeconfig for
    development.  An explicit *kubeconfig* path is loaded directly, and
    *master* overrides the API server address of whatever was loaded, and
    is enough on its own when no kubeconfig exists.
    """
    if master or kubeconfig:
        try:
            config.load_kube_config(config_file=kubeconfig or None)
            LOGGER.info("Loaded kubeconfig %s", kubeconfig or "(default location)")
        except ConfigException:
            if kubeconfig:
                raise
            LOGGER.info("No kubeconfig found; connecting to %s without one", master)
            client.Configuration.set_default(client.Configuration())
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if master:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master
        client.Configuration.set_default(configuration)
        LOGGER.info("Using API server %s", master)


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def meta_value(obj: Any, field: str) -> Any:
    """Read a metadata field from a client model or a plain camelCase dict."""
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get(_META_KEYS[field])
    return getattr(getattr(obj, "metadata", None), field, None)


def get_annotation(obj: Any, key: str) -> str | None:
    annotations = meta_value(obj, "annotations")
    if not isinstance(annotations, dict):
        return None
    return annotations.get(key)


def get_labels(obj: Any) -> dict[str, str]:
    labels = meta_value(obj, "labels")
    return dict(labels) if isinstance(labels, dict) else {}


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key of an object (``name`` when cluster scoped)."""
    name = meta_value(obj, "name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = meta_value(obj, "namespace")
    return f"{namespace}/{name}" if namespace else name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key; cluster-scoped keys return an empty namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def selector_matches(selector: dict[str, str] | None, labels: dict[str, str]) -> bool:
    """Equality-based label selector match; an empty selector matches nothing."""
    if not selector:
        return False
    return all(labels.get(k) == v for k, v in selector.items())


def replace_endpoints(core_api: CoreV1Api, body: dict[str, Any]) -> Any:
    """Write an Endpoints object with ``PUT``.

    The body carries the cached ``resourceVersion`` so a concurrent writer
    makes this call fail with ``409 Conflict`` instead of losing an update.
    """
    metadata = body["metadata"]
    return core_api.replace_namespaced_endpoints(
        name=metadata["name"],
        namespace=metadata["namespace"],
        body=body,
    )


def read_network_attachment_definition(
    custom_api: CustomObjectsApi, namespace: str, name: str
) -> dict[str, Any]:
    """Read a NetworkAttachmentDefinition from the live API, bypassing any cache."""
    return custom_api.get_namespaced_custom_object(
        group=NAD_GROUP,
        version=NAD_VERSION,
        namespace=namespace,
        plural=NAD_PLURAL,
        name=name,
    )


def create_network_attachment_definition(
    custom_api: CustomObjectsApi, namespace: str, body: dict[str, Any]
) -> dict[str, Any]:
    return custom_api.create_namespaced_custom_object(
        group=NAD_GROUP,
        version=NAD_VERSION,
        namespace=namespace,
        plural=NAD_PLURAL,
        body=body,
    )
