from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from vsrouter.src.model import (
    ConflictError,
    TargetNotFoundError,
    TargetStoreError,
    VirtualService,
)

LOGGER = logging.getLogger(__name__)

ISTIO_NETWORKING_GROUP = "networking.istio.io"
VIRTUALSERVICE_PLURAL = "virtualservices"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 (Services) and CustomObjects (VirtualServices) API clients."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def service_list_call(core_api: CoreV1Api, namespace: str | None) -> Any:
    """Return the list function the watcher should call for *namespace*.

    ``None`` or an empty namespace watches Services across the whole cluster.
    """
    if namespace:
        return core_api.list_namespaced_service
    return core_api.list_service_for_all_namespaces


class VirtualServiceStore:
    """Read and conditionally replace Istio VirtualServices.

    ``replace`` sends the full object including ``metadata.resourceVersion``,
    so the API server rejects the write with ``409 Conflict`` when someone
    else changed the VirtualService after it was read.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        group: str = ISTIO_NETWORKING_GROUP,
        version: str = "v1alpha3",
        plural: str = VIRTUALSERVICE_PLURAL,
    ) -> None:
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural

    def get(self, namespace: str, name: str) -> VirtualService:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise TargetNotFoundError(
                    f"VirtualService {namespace}/{name} not found"
                ) from exc
            raise TargetStoreError(
                f"Failed to read VirtualService {namespace}/{name} (status={exc.status})"
            ) from exc
        return VirtualService.from_body(body)

    def update(self, virtual_service: VirtualService) -> VirtualService:
        namespace = virtual_service.namespace
        name = virtual_service.name
        try:
            body = self.custom_api.replace_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
                body=virtual_service.body,
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(
                    f"VirtualService {namespace}/{name} changed since resourceVersion "
                    f"{virtual_service.resource_version}"
                ) from exc
            if exc.status == 404:
                raise TargetNotFoundError(
                    f"VirtualService {namespace}/{name} disappeared before update"
                ) from exc
            raise TargetStoreError(
                f"Failed to update VirtualService {namespace}/{name} (status={exc.status})"
            ) from exc
        return VirtualService.from_body(body)
