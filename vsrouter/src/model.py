from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Response headers Envoy adds that should not leak to clients.
STRIPPED_RESPONSE_HEADERS: tuple[str, ...] = (
    "x-envoy-upstream-healthchecked-cluster",
    "x-envoy-upstream-service-time",
)


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a single key."""


class PermanentError(ReconcileError):
    """Bad input that retrying cannot fix; the key is dropped until it changes."""


class MalformedEntityError(PermanentError):
    pass


class TransientError(ReconcileError):
    """Failure that may succeed later; the key is requeued with backoff."""


class TargetNotFoundError(TransientError):
    pass


class ConflictError(TransientError):
    """The VirtualService changed between read and write."""


class TargetStoreError(TransientError):
    pass


@dataclass(frozen=True)
class ServicePort:
    number: int
    name: str | None = None
    protocol: str = "TCP"


@dataclass(frozen=True)
class SourceEntity:
    """Typed snapshot of a watched Service, decoded once at the watch boundary."""

    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[ServicePort, ...] = ()
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    @classmethod
    def from_service(cls, service: Any) -> SourceEntity:
        """Decode a ``V1Service`` (or an object shaped like one).

        Raises ``ValueError`` when the object has no namespace or name, since
        nothing downstream can address it.
        """
        metadata = getattr(service, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            raise ValueError("Service object is missing metadata.namespace or metadata.name")

        spec = getattr(service, "spec", None)
        ports: list[ServicePort] = []
        for port in getattr(spec, "ports", None) or []:
            number = getattr(port, "port", None)
            if number is None:
                continue
            ports.append(
                ServicePort(
                    number=int(number),
                    name=getattr(port, "name", None),
                    protocol=getattr(port, "protocol", None) or "TCP",
                )
            )

        return cls(
            namespace=namespace,
            name=name,
            labels=_str_dict(getattr(metadata, "labels", None)),
            annotations=_str_dict(getattr(metadata, "annotations", None)),
            ports=tuple(ports),
            resource_version=getattr(metadata, "resource_version", None),
        )


@dataclass(frozen=True)
class TargetBinding:
    namespace: str
    name: str

    def __str__(self) -> str:
        return object_key(self.namespace, self.name)


@dataclass(frozen=True)
class RouteFragment:
    """One prefix-matched route owned by a single Service."""

    prefix: str
    host: str
    port: int

    def to_http_route(self) -> dict[str, Any]:
        """Render the fragment in the Istio ``HTTPRoute`` JSON shape."""
        return {
            "match": [{"uri": {"prefix": self.prefix}}],
            "headers": {"response": {"remove": list(STRIPPED_RESPONSE_HEADERS)}},
            "rewrite": {"uri": "/"},
            "route": [
                {
                    "destination": {
                        "host": self.host,
                        "port": {"number": self.port},
                    }
                }
            ],
        }


@dataclass(frozen=True)
class VirtualService:
    """A fetched VirtualService; ``body`` is the full object as returned by the API."""

    namespace: str
    name: str
    resource_version: str | None
    http: list[dict[str, Any]]
    body: dict[str, Any]

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> VirtualService:
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            resource_version=metadata.get("resourceVersion"),
            http=[route for route in spec.get("http") or [] if isinstance(route, dict)],
            body=copy.deepcopy(dict(body)),
        )

    def with_http(self, routes: list[dict[str, Any]]) -> VirtualService:
        """Return a copy carrying *routes*; the resourceVersion is kept for the conditional write."""
        body = copy.deepcopy(self.body)
        body.setdefault("spec", {})["http"] = copy.deepcopy(routes)
        return VirtualService(
            namespace=self.namespace,
            name=self.name,
            resource_version=self.resource_version,
            http=copy.deepcopy(routes),
            body=body,
        )


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name:
        raise ValueError(f"invalid object key {key!r}, expected <namespace>/<name>")
    return namespace, name


def _str_dict(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def parse_target_binding(entity: SourceEntity, label_key: str) -> TargetBinding:
    """Decode ``<namespace>.<name>`` from the routing label of *entity*."""
    value = entity.labels.get(label_key)
    if value is None:
        raise MalformedEntityError(f"{entity.key} has no {label_key} label")

    parts = value.split(".")
    if len(parts) != 2 or not all(parts):
        raise MalformedEntityError(
            f"{entity.key} label {label_key}={value!r} is not of the form <namespace>.<name>"
        )
    return TargetBinding(namespace=parts[0], name=parts[1])


def resolve_route_port(entity: SourceEntity, annotation_key: str) -> int:
    """Return the override annotation as a port, falling back to the first declared port."""
    raw = entity.annotations.get(annotation_key)
    if raw is not None:
        text = raw.strip()
        if not (text.isascii() and text.isdigit()):
            raise MalformedEntityError(
                f"{entity.key} annotation {annotation_key}={raw!r} is not a base-10 integer"
            )
        port = int(text)
        if not 1 <= port <= 65535:
            raise MalformedEntityError(
                f"{entity.key} annotation {annotation_key}={raw!r} is outside 1-65535"
            )
        return port

    if not entity.ports:
        raise MalformedEntityError(f"{entity.key} declares no ports and has no {annotation_key}")
    return entity.ports[0].number


def route_prefix(namespace: str, name: str) -> str:
    return f"/{namespace}/{name}"


def build_route_fragment(
    entity: SourceEntity, port: int, cluster_domain: str = "cluster.local"
) -> RouteFragment:
    return RouteFragment(
        prefix=route_prefix(entity.namespace, entity.name),
        host=f"{entity.name}.{entity.namespace}.svc.{cluster_domain}",
        port=port,
    )


def http_route_prefixes(route: Mapping[str, Any]) -> set[str]:
    """Collect every ``match[].uri.prefix`` of a raw HTTP route."""
    prefixes: set[str] = set()
    for match in route.get("match") or []:
        if not isinstance(match, Mapping):
            continue
        uri = match.get("uri")
        if isinstance(uri, Mapping) and isinstance(uri.get("prefix"), str):
            prefixes.add(uri["prefix"])
    return prefixes


def upsert_route(routes: list[dict[str, Any]], fragment: RouteFragment) -> list[dict[str, Any]]:
    """Replace the route matching the fragment's prefix in place, or append it.

    Any further routes with the same prefix are dropped so a prefix never
    appears twice in the table.
    """
    desired = fragment.to_http_route()
    result: list[dict[str, Any]] = []
    placed = False
    for route in routes:
        if fragment.prefix in http_route_prefixes(route):
            if not placed:
                result.append(desired)
                placed = True
            continue
        result.append(route)
    if not placed:
        result.append(desired)
    return result


def remove_route(routes: list[dict[str, Any]], prefix: str) -> list[dict[str, Any]]:
    return [route for route in routes if prefix not in http_route_prefixes(route)]
