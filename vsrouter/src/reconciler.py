from __future__ import annotations

import logging
from dataclasses import dataclass

from vsrouter.src.cache import SourceCache
from vsrouter.src.kube import VirtualServiceStore
from vsrouter.src.metrics import METRICS
from vsrouter.src.model import (
    ConflictError,
    MalformedEntityError,
    RouteFragment,
    SourceEntity,
    TargetBinding,
    TargetNotFoundError,
    build_route_fragment,
    parse_target_binding,
    remove_route,
    resolve_route_port,
    route_prefix,
    split_key,
    upsert_route,
)
from vsrouter.src.tombstones import TombstoneIndex


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one successful :meth:`Reconciler.process` call.

    ``action`` is ``upsert``, ``delete`` or ``noop`` (the key is in neither
    the cache nor the tombstone index).  ``changed`` is False when the
    VirtualService already matched and no write was made.
    """

    key: str
    action: str
    target: str | None = None
    changed: bool = False
    attempts: int = 0


class Reconciler:
    """Bring one Service's route in its VirtualService in line with the Service's current state.

    The route table is patched incrementally: the Service's route is located
    by its prefix, replaced in place or appended on upsert, and removed on
    delete or from a VirtualService the Service's label no longer names.
    Routes owned by anyone else are left untouched.  Every write is
    conditional on the resourceVersion that was read; on a conflict the whole
    read-apply-write cycle runs again from a fresh read, up to
    ``conflict_retries`` attempts, before :class:`ConflictError` is raised
    for the queue to retry later.
    """

    def __init__(
        self,
        cache: SourceCache,
        tombstones: TombstoneIndex,
        store: VirtualServiceStore,
        label_key: str,
        port_annotation_key: str,
        cluster_domain: str = "cluster.local",
        conflict_retries: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        if conflict_retries < 1:
            raise ValueError("conflict_retries must be >= 1")
        self.cache = cache
        self.tombstones = tombstones
        self.store = store
        self.label_key = label_key
        self.port_annotation_key = port_annotation_key
        self.cluster_domain = cluster_domain
        self.conflict_retries = conflict_retries
        self.logger = logger or logging.getLogger(__name__)

    def _apply(
        self,
        key: str,
        binding: TargetBinding,
        prefix: str,
        fragment: RouteFragment | None,
    ) -> tuple[bool, int]:
        """Read, patch and conditionally write one VirtualService; returns ``(changed, attempts)``.

        *fragment* ``None`` removes the route with *prefix*.
        """
        action = "delete" if fragment is None else "upsert"
        attempt = 0
        while True:
            attempt += 1
            virtual_service = self.store.get(binding.namespace, binding.name)
            if fragment is None:
                routes = remove_route(virtual_service.http, prefix)
            else:
                routes = upsert_route(virtual_service.http, fragment)

            if routes == virtual_service.http:
                return False, attempt

            try:
                self.store.update(virtual_service.with_http(routes))
            except ConflictError:
                METRICS.write_conflicts_total.inc()
                if attempt >= self.conflict_retries:
                    raise
                self.logger.info(
                    "VirtualService %s changed while reconciling %s; retrying from a fresh read "
                    "(attempt %d/%d)",
                    binding,
                    key,
                    attempt,
                    self.conflict_retries,
                )
                continue

            METRICS.route_writes_total.labels(action=action).inc()
            self.logger.info(
                "%s route %s for %s in VirtualService %s",
                "Removed" if fragment is None else "Applied",
                prefix,
                key,
                binding,
            )
            return True, attempt

    def _live_binding(
        self, live: SourceEntity | None
    ) -> tuple[TargetBinding | None, MalformedEntityError | None]:
        if live is None:
            return None, None
        try:
            return parse_target_binding(live, self.label_key), None
        except MalformedEntityError as exc:
            return None, exc

    def process(self, key: str) -> ReconcileResult:
        """Reconcile *key*: remove every stale route it left behind, then upsert its live route.

        A tombstone naming the same VirtualService as the live Service needs
        no removal, since the upsert replaces that route in place.  Each
        tombstone is forgotten only after its removal succeeded.
        """
        live = self.cache.get(key)
        pending = self.tombstones.pending(key)
        if live is None and not pending:
            self.logger.debug("Service %s is gone and left no tombstone; nothing to do", key)
            return ReconcileResult(key=key, action="noop")

        namespace, name = split_key(key)
        prefix = route_prefix(namespace, name)
        live_binding, live_error = self._live_binding(live)

        changed = False
        attempts = 0
        removed_from: TargetBinding | None = None
        malformed_tombstone: MalformedEntityError | None = None
        for stale in pending:
            try:
                stale_binding = parse_target_binding(stale, self.label_key)
            except MalformedEntityError as exc:
                # Nothing can ever be removed for this tombstone.
                self.tombstones.forget(key, expected=stale)
                malformed_tombstone = exc
                continue
            if stale_binding != live_binding:
                try:
                    wrote, tries = self._apply(key, stale_binding, prefix, None)
                except TargetNotFoundError:
                    if live is None:
                        raise
                    # The label moved away from a VirtualService that is gone.
                    self.logger.info(
                        "VirtualService %s no longer exists; nothing to remove for %s",
                        stale_binding,
                        key,
                    )
                    wrote, tries = False, 1
                changed = changed or wrote
                attempts += tries
                removed_from = stale_binding
            self.tombstones.forget(key, expected=stale)

        if live is None:
            if malformed_tombstone is not None and removed_from is None:
                raise malformed_tombstone
            return ReconcileResult(
                key=key,
                action="delete",
                target=str(removed_from) if removed_from is not None else None,
                changed=changed,
                attempts=attempts,
            )

        if live_binding is None:
            raise live_error or MalformedEntityError(f"{key} has no routing target")

        port = resolve_route_port(live, self.port_annotation_key)
        fragment = build_route_fragment(live, port, cluster_domain=self.cluster_domain)
        wrote, tries = self._apply(key, live_binding, prefix, fragment)
        return ReconcileResult(
            key=key,
            action="upsert",
            target=str(live_binding),
            changed=changed or wrote,
            attempts=attempts + tries,
        )
