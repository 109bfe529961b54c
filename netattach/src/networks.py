from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)

NETWORKS_ANNOTATION = "k8s.v1.cni.cncf.io/networks"
NETWORKS_STATUS_ANNOTATION = "k8s.v1.cni.cncf.io/networks-status"

_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class SelectionParseError(ValueError):
    """Raised when a ``networks`` annotation cannot be parsed."""


class NetworkStatusError(ValueError):
    """Raised when a ``networks-status`` annotation cannot be decoded."""


@dataclass(frozen=True)
class NetworkSelectionElement:
    """One requested secondary attachment, normalized from annotation text."""

    namespace: str
    name: str
    interface_request: str = ""

    def matches_status_name(self, status_name: str) -> bool:
        """Return True if a reported network-status ``name`` refers to this selection.

        Multus reports either the bare attachment name or ``namespace/name``.
        """
        return status_name in (self.name, f"{self.namespace}/{self.name}")


@dataclass(frozen=True)
class NetworkStatus:
    """One attached network as reported by the CNI layer on the pod."""

    name: str
    interface: str
    ips: tuple[str, ...]


def _decode_json_selections(raw: str) -> list[NetworkSelectionElement] | None:
    """Decode *raw* as a JSON array of selection objects, or return None."""
    try:
        decoded = json.loads(raw)
    except ValueError:
        return None
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        return None

    elements: list[NetworkSelectionElement] = []
    for item in decoded:
        if not isinstance(item, dict):
            return None
        fields = (item.get("namespace"), item.get("name"), item.get("interface"))
        if any(value is not None and not isinstance(value, str) for value in fields):
            return None
        namespace, name, interface = (value or "" for value in fields)
        elements.append(
            NetworkSelectionElement(namespace=namespace, name=name, interface_request=interface)
        )
    return elements


def parse_network_selection_element(
    selection: str, default_namespace: str
) -> NetworkSelectionElement:
    """Parse one ``[namespace/]name[@interface]`` unit."""
    units = selection.split("/")
    if len(units) == 1:
        namespace, name = default_namespace, units[0]
    elif len(units) == 2:
        namespace, name = units
    else:
        raise SelectionParseError(
            f"invalid network selection element - more than one '/' in: {selection!r}"
        )

    units = name.split("@")
    if len(units) == 1:
        interface = ""
    elif len(units) == 2:
        name, interface = units
    else:
        raise SelectionParseError(
            f"invalid network selection element - more than one '@' in: {selection!r}"
        )

    for unit in (namespace, name, interface):
        if unit and not _LABEL_RE.match(unit):
            raise SelectionParseError(
                f"at least one of the network selection units is invalid: error found at {unit!r}"
            )

    return NetworkSelectionElement(namespace=namespace, name=name, interface_request=interface)


def parse_network_selections(raw: str, default_namespace: str) -> list[NetworkSelectionElement]:
    """Translate a ``k8s.v1.cni.cncf.io/networks`` value into selection elements.

    The value is either a JSON array of ``{name, namespace, interface}``
    objects or a comma-separated list of ``[namespace/]name[@interface]``
    units.  JSON is tried first; the comma form is only parsed when JSON
    decoding fails.  Any invalid unit aborts the whole call.

    Elements without a namespace inherit *default_namespace* regardless of
    which form produced them.
    """
    if not raw:
        raise SelectionParseError("empty string passed as network selection elements list")

    elements = _decode_json_selections(raw)
    if elements is None:
        LOGGER.debug("%r is not a JSON selection list; parsing as comma separated", raw)
        elements = []
        for unit in raw.split(","):
            try:
                elements.append(parse_network_selection_element(unit.strip(), default_namespace))
            except SelectionParseError as exc:
                raise SelectionParseError(f"error parsing network selection element: {exc}") from exc

    return [
        element
        if element.namespace
        else NetworkSelectionElement(
            namespace=default_namespace,
            name=element.name,
            interface_request=element.interface_request,
        )
        for element in elements
    ]


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if isinstance(item, str))


def parse_network_status(raw: str | None) -> list[NetworkStatus]:
    """Decode a ``k8s.v1.cni.cncf.io/networks-status`` annotation value."""
    if raw is None:
        raise NetworkStatusError("network status annotation missing")
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise NetworkStatusError(f"network status is not valid JSON: {exc}") from exc
    if not isinstance(decoded, list):
        raise NetworkStatusError("network status must be a JSON array")

    statuses: list[NetworkStatus] = []
    for item in decoded:
        if not isinstance(item, dict):
            raise NetworkStatusError("network status entries must be JSON objects")
        statuses.append(
            NetworkStatus(
                name=str(item.get("name") or ""),
                interface=str(item.get("interface") or ""),
                ips=_string_list(item.get("ips")),
            )
        )
    return statuses
