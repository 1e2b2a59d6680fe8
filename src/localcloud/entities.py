"""Entity repository used by operation handlers.

Composes the resource store with the invariant normalizer and the create
policy table so that every handler gets the same guarantees:

- every blob is normalized before it is written
- every blob returned to a handler is normalized again on the way out
- creates follow the entity type's idempotency policy
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import CloudError, ResourceAlreadyExists, ResourceNotFound
from .idempotency import CreatePolicy, IdempotencyClassifier, merge_attributes
from .normalizer import InvariantNormalizer
from .store import Resource, ResourceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateOutcome:
    """Result of a policy-gated create.

    Attributes:
        resource: The stored (normalized) resource.
        created: False when an existing resource was returned or merged.
        policy: The policy that was applied.
    """

    resource: Resource
    created: bool
    policy: CreatePolicy


class EntityRepository:
    """Normalized, policy-aware access to the resource store."""

    def __init__(
        self,
        store: ResourceStore,
        normalizer: InvariantNormalizer,
        classifier: IdempotencyClassifier,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._classifier = classifier

    @property
    def store(self) -> ResourceStore:
        return self._store

    @property
    def normalizer(self) -> InvariantNormalizer:
        return self._normalizer

    @property
    def classifier(self) -> IdempotencyClassifier:
        return self._classifier

    def create(
        self,
        identifier: str,
        service: str,
        type: str,
        namespace: str,
        attributes: dict[str, Any],
        *,
        conflict: CloudError | None = None,
        policy: CreatePolicy | None = None,
    ) -> CreateOutcome:
        """Create an entity, honoring its create policy.

        Args:
            identifier: Store-wide unique identifier.
            service: Service name.
            type: Entity type within the service.
            namespace: Tenant namespace.
            attributes: Attribute blob to store.
            conflict: Error raised instead of the generic one when a strict
                policy rejects the create.
            policy: Force a policy instead of the table's (seed loading).

        Returns:
            CreateOutcome with the stored resource.

        Raises:
            ResourceAlreadyExists: Strict policy and the entity exists, or the
                identifier is taken by another entity type.
        """
        decision_policy = policy or self._classifier.classify(service, type).policy
        existing = self._store.find(identifier, service, type, namespace)

        if existing is not None:
            return self._create_existing(existing, attributes, decision_policy, conflict)

        resource = Resource(
            identifier=identifier,
            namespace=namespace,
            service=service,
            type=type,
            attributes=self._normalizer.normalize(service, type, attributes),
        )
        try:
            stored = self._store.create(resource)
        except ResourceAlreadyExists:
            # Inserted concurrently since the lookup above
            existing = self._store.find(identifier, service, type, namespace)
            if existing is None:
                if conflict is not None and decision_policy == CreatePolicy.STRICT_CONFLICT:
                    raise conflict from None
                raise
            return self._create_existing(existing, attributes, decision_policy, conflict)
        return CreateOutcome(self._normalized(stored), True, decision_policy)

    def _create_existing(
        self,
        existing: Resource,
        attributes: dict[str, Any],
        decision_policy: CreatePolicy,
        conflict: CloudError | None,
    ) -> CreateOutcome:
        service, type, identifier = existing.service, existing.type, existing.identifier
        match decision_policy:
            case CreatePolicy.STRICT_CONFLICT:
                if conflict is not None:
                    raise conflict
                raise ResourceAlreadyExists(
                    f"Resource already exists: {service}/{type} {identifier}"
                )
            case CreatePolicy.IDEMPOTENT_RETURN:
                logger.debug(
                    "Create matched existing resource, returning it",
                    extra={"identifier": identifier, "entity_type": f"{service}/{type}"},
                )
                return CreateOutcome(self._normalized(existing), False, decision_policy)
            case CreatePolicy.IDEMPOTENT_MERGE:
                merged = merge_attributes(existing.attributes, attributes)
                stored = self._store.update(
                    existing.with_attributes(self._normalizer.normalize(service, type, merged))
                )
                return CreateOutcome(self._normalized(stored), False, decision_policy)

    def get(
        self,
        identifier: str,
        service: str,
        type: str,
        namespace: str,
        *,
        retry: bool = False,
        not_found: CloudError | None = None,
    ) -> Resource:
        """Fetch a normalized entity.

        Raises:
            ResourceNotFound: Or ``not_found`` when given.
        """
        try:
            resource = self._store.get(identifier, service, type, namespace, retry=retry)
        except ResourceNotFound:
            if not_found is not None:
                raise not_found from None
            raise
        return self._normalized(resource)

    def find(self, identifier: str, service: str, type: str, namespace: str) -> Resource | None:
        """Fetch a normalized entity or None."""
        resource = self._store.find(identifier, service, type, namespace)
        return self._normalized(resource) if resource is not None else None

    def list(self, service: str, type: str, namespace: str) -> list[Resource]:
        """All normalized entities of a type in a namespace, ordered by identifier."""
        return [self._normalized(r) for r in self._store.list(service, type, namespace)]

    def replace(self, resource: Resource, attributes: dict[str, Any]) -> Resource:
        """Normalize and write a new attribute blob for an existing entity."""
        normalized = self._normalizer.normalize(resource.service, resource.type, attributes)
        stored = self._store.update(resource.with_attributes(normalized))
        return self._normalized(stored)

    def modify(
        self,
        identifier: str,
        service: str,
        type: str,
        namespace: str,
        change: Callable[[dict[str, Any]], None],
        *,
        not_found: CloudError | None = None,
    ) -> Resource:
        """Read, apply ``change`` to a copy of the attributes, and write back."""
        resource = self.get(identifier, service, type, namespace, not_found=not_found)
        attributes = resource.attributes
        change(attributes)
        return self.replace(resource, attributes)

    def delete(
        self,
        identifier: str,
        service: str,
        type: str,
        namespace: str,
        *,
        not_found: CloudError | None = None,
    ) -> None:
        """Delete an entity.

        Raises:
            ResourceNotFound: Or ``not_found`` when given.
        """
        try:
            self._store.delete(identifier, service, type, namespace)
        except ResourceNotFound:
            if not_found is not None:
                raise not_found from None
            raise

    def _normalized(self, resource: Resource) -> Resource:
        return resource.with_attributes(
            self._normalizer.normalize(resource.service, resource.type, resource.attributes)
        )
