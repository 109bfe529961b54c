from __future__ import annotations

import json
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from netattach.src.context import ControllerContext
from netattach.src.controller import build_context
from netattach.src.networks import NETWORKS_ANNOTATION, NETWORKS_STATUS_ANNOTATION


def _service(
    name: str = "web",
    namespace: str = "default",
    networks: str | None = "macvlan",
    selector: dict[str, str] | None = None,
    ports: list[SimpleNamespace] | None = None,
    resource_version: str = "1",
) -> SimpleNamespace:
    annotations = {NETWORKS_ANNOTATION: networks} if networks is not None else {}
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            uid=f"uid-svc-{name}",
            resource_version=resource_version,
            labels={},
            annotations=annotations,
        ),
        spec=SimpleNamespace(
            selector={"app": "web"} if selector is None else selector,
            ports=ports
            if ports is not None
            else [SimpleNamespace(name="http", port=80, target_port=8080, protocol="TCP")],
        ),
    )


def _pod(
    name: str = "pod-a",
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    networks: str | None = "macvlan",
    status: list[dict[str, Any]] | str | None = None,
    ips: list[str] | None = None,
    node_name: str | None = "node-1",
    container_ports: list[SimpleNamespace] | None = None,
    resource_version: str = "1",
) -> SimpleNamespace:
    annotations: dict[str, str] = {}
    if networks is not None:
        annotations[NETWORKS_ANNOTATION] = networks
    if status is None:
        status = [
            {"name": "cbr0", "interface": "eth0", "ips": ["10.244.0.9"], "default": True},
            {
                "name": f"{namespace}/macvlan",
                "interface": "net1",
                "ips": ips if ips is not None else ["192.168.10.5"],
            },
        ]
    annotations[NETWORKS_STATUS_ANNOTATION] = status if isinstance(status, str) else json.dumps(status)
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            uid=f"uid-pod-{name}",
            resource_version=resource_version,
            labels={"app": "web"} if labels is None else labels,
            annotations=annotations,
        ),
        spec=SimpleNamespace(
            node_name=node_name,
            containers=[
                SimpleNamespace(
                    name="app",
                    ports=container_ports
                    if container_ports is not None
                    else [SimpleNamespace(name="http", container_port=8080, protocol="TCP")],
                )
            ],
        ),
    )


def _endpoints(
    name: str = "web",
    namespace: str = "default",
    resource_version: str = "42",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            uid=f"uid-ep-{name}",
            resource_version=resource_version,
            labels={"app": "web"},
            annotations=None,
            finalizers=None,
        ),
        subsets=None,
    )


def _nad(name: str = "macvlan", namespace: str = "default") -> dict[str, Any]:
    return {
        "apiVersion": "k8s.cni.cncf.io/v1",
        "kind": "NetworkAttachmentDefinition",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "777",
            "uid": f"uid-nad-{name}",
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "generation": 1,
            "deletionTimestamp": "2026-01-02T00:00:00Z",
            "labels": {"team": "net"},
        },
        "spec": {"config": '{"cniVersion":"0.3.1","type":"macvlan","master":"eth1"}'},
    }


@pytest.fixture
def context() -> ControllerContext:
    """Real informers, queue and recorder wired to mocked API clients."""
    return build_context(core_api=MagicMock(), custom_api=MagicMock())


@pytest.fixture
def make_service() -> Callable[..., SimpleNamespace]:
    return _service


@pytest.fixture
def make_pod() -> Callable[..., SimpleNamespace]:
    return _pod


@pytest.fixture
def make_endpoints() -> Callable[..., SimpleNamespace]:
    return _endpoints


@pytest.fixture
def make_nad() -> Callable[..., dict[str, Any]]:
    return _nad
