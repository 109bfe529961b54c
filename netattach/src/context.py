from __future__ import annotations

from dataclasses import dataclass

from kubernetes.client import CoreV1Api, CustomObjectsApi

from netattach.src.cache import Informer
from netattach.src.events import EventRecorder
from netattach.src.workqueue import RateLimitingQueue


@dataclass(frozen=True)
class ControllerContext:
    """Everything handlers and workers share, fixed once the controller is built.

    Only the work queue and the informer stores change afterwards, and both
    guard their own state.
    """

    core_api: CoreV1Api
    custom_api: CustomObjectsApi
    services: Informer
    pods: Informer
    endpoints: Informer
    network_attachment_definitions: Informer
    queue: RateLimitingQueue
    recorder: EventRecorder
