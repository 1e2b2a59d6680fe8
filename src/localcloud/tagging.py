"""Tag sets stored as their own resources.

A tag set is a ``tagging/tags`` resource keyed by the tagged resource's ARN
or id. Creates merge (see idempotency.py), so tagging twice adds to or
overwrites the existing set instead of failing.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .entities import EntityRepository
from .errors import ValidationException

SERVICE = "tagging"
TYPE = "tags"

# Provider-wide limit per resource
MAX_TAGS_PER_RESOURCE = 50


def tag_set_identifier(resource_key: str) -> str:
    """Store identifier of the tag set attached to ``resource_key``."""
    return f"tags:{resource_key}"


def get_tags(repository: EntityRepository, namespace: str, resource_key: str) -> dict[str, str]:
    """Tags of a resource; empty when it was never tagged."""
    tag_set = repository.find(tag_set_identifier(resource_key), SERVICE, TYPE, namespace)
    if tag_set is None:
        return {}
    return dict(tag_set.attributes.get("Tags", {}))


def tag_resource(
    repository: EntityRepository,
    namespace: str,
    resource_key: str,
    tags: dict[str, str],
    resource_type: str | None = None,
) -> dict[str, str]:
    """Add or overwrite tags on a resource.

    Returns:
        The complete tag set after the change.
    """
    existing = get_tags(repository, namespace, resource_key)
    if len(set(existing) | set(tags)) > MAX_TAGS_PER_RESOURCE:
        raise ValidationException(
            f"Resource {resource_key} would exceed {MAX_TAGS_PER_RESOURCE} tags",
            code="TagLimitExceeded",
        )

    attributes: dict[str, Any] = {"ResourceKey": resource_key, "Tags": dict(tags)}
    if resource_type:
        attributes["ResourceType"] = resource_type
    outcome = repository.create(
        tag_set_identifier(resource_key), SERVICE, TYPE, namespace, attributes
    )
    return dict(outcome.resource.attributes.get("Tags", {}))


def untag_resource(
    repository: EntityRepository,
    namespace: str,
    resource_key: str,
    keys: Iterable[str],
) -> dict[str, str]:
    """Remove tag keys; unknown keys and untagged resources are ignored.

    Returns:
        The remaining tag set.
    """
    tag_set = repository.find(tag_set_identifier(resource_key), SERVICE, TYPE, namespace)
    if tag_set is None:
        return {}
    tags = dict(tag_set.attributes.get("Tags", {}))
    for key in keys:
        tags.pop(key, None)
    attributes = dict(tag_set.attributes)
    attributes["Tags"] = tags
    repository.replace(tag_set, attributes)
    return tags


def list_tag_sets(repository: EntityRepository, namespace: str) -> list[dict[str, Any]]:
    """Every tag set of a namespace as stored attributes."""
    return [r.attributes for r in repository.list(SERVICE, TYPE, namespace)]


def delete_tags(repository: EntityRepository, namespace: str, resource_key: str) -> None:
    """Drop a resource's tag set when the resource itself is deleted."""
    identifier = tag_set_identifier(resource_key)
    if repository.find(identifier, SERVICE, TYPE, namespace) is not None:
        repository.delete(identifier, SERVICE, TYPE, namespace)


def from_tag_list(
    items: Iterable[dict[str, Any]],
    key_name: str = "Key",
    value_name: str = "Value",
) -> dict[str, str]:
    """Convert [{"Key": k, "Value": v}, ...] into a mapping."""
    tags: dict[str, str] = {}
    for item in items:
        key = item.get(key_name)
        if key is None or key == "":
            continue
        tags[str(key)] = str(item.get(value_name, "") or "")
    return tags


def to_tag_list(
    tags: dict[str, str],
    key_name: str = "Key",
    value_name: str = "Value",
) -> list[dict[str, str]]:
    """Convert a mapping into [{"Key": k, "Value": v}, ...] sorted by key."""
    return [{key_name: key, value_name: tags[key]} for key in sorted(tags)]
