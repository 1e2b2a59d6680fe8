"""KMS control plane: keys, aliases, scheduled deletion and key tags.

Keys are stored under their key id and aliases under their alias ARN. Any
operation taking a ``KeyId`` accepts a key id, key ARN, alias name or alias
ARN. No cryptographic operations are provided.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from . import tagging
from .errors import ResourceAlreadyExists, ResourceNotFound, ValidationException
from .identifiers import random_uuid
from .models import CreateKeyInput, parse_model
from .protocol import OperationContext, OperationRegistry, OperationResult, ServiceDescriptor
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "kms"
KEY = "key"
ALIAS = "alias"

ALIAS_PREFIX = "alias/"
RESERVED_ALIAS_PREFIX = "alias/aws/"
ALIAS_NAME_PATTERN = re.compile(r"^alias/[a-zA-Z0-9/_-]{1,250}$")

MIN_PENDING_WINDOW_DAYS = 7
MAX_PENDING_WINDOW_DAYS = 30
DEFAULT_PENDING_WINDOW_DAYS = 30
DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000

OPERATIONS = frozenset(
    {
        "CreateKey",
        "DescribeKey",
        "ListKeys",
        "ScheduleKeyDeletion",
        "CancelKeyDeletion",
        "CreateAlias",
        "DeleteAlias",
        "ListAliases",
        "TagResource",
        "UntagResource",
        "ListResourceTags",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    json_operations=OPERATIONS,
    target_prefix="TrentService",
    json_version="1.1",
    missing_parameter_code="ValidationException",
)

ENTITY_TYPES = ("kms/key", "kms/alias", "tagging/tags")


def _now() -> float:
    return datetime.now(UTC).timestamp()


def _key_not_found(reference: str) -> ResourceNotFound:
    return ResourceNotFound(f"Key '{reference}' does not exist", code="NotFoundException")


def _alias_not_found(alias: str) -> ResourceNotFound:
    return ResourceNotFound(f"Alias {alias} is not found.", code="NotFoundException")


def _invalid_state(message: str) -> ValidationException:
    return ValidationException(message, code="KMSInvalidStateException")


def _alias_arn(ctx: OperationContext, alias_name: str) -> str:
    return ctx.arn(alias_name)


def _find_alias(ctx: OperationContext, alias_arn: str) -> Resource | None:
    return ctx.repository.find(alias_arn, SERVICE, ALIAS, ctx.namespace)


def _resolve_key(ctx: OperationContext, reference: str, retry: bool = False) -> Resource:
    """Find a key by id, key ARN, alias name or alias ARN."""
    key_id = reference
    if reference.startswith("arn:") and ":alias/" in reference:
        alias = _find_alias(ctx, reference)
        if alias is None:
            raise _alias_not_found(reference)
        key_id = alias.attributes["TargetKeyId"]
    elif reference.startswith(ALIAS_PREFIX):
        alias = _find_alias(ctx, _alias_arn(ctx, reference))
        if alias is None:
            raise _alias_not_found(reference)
        key_id = alias.attributes["TargetKeyId"]
    elif reference.startswith("arn:") and ":key/" in reference:
        key_id = reference.rsplit(":key/", 1)[-1]

    return ctx.repository.get(
        key_id, SERVICE, KEY, ctx.namespace, retry=retry, not_found=_key_not_found(reference)
    )


def _kms_tags(items: list[dict[str, Any]]) -> dict[str, str]:
    return tagging.from_tag_list(items, key_name="TagKey", value_name="TagValue")


def _paginate(ctx: OperationContext, items: list[Any]) -> tuple[list[Any], dict[str, Any]]:
    """Apply Limit/Marker, where the marker is the index of the next item."""
    limit = ctx.int_param("Limit", DEFAULT_LIST_LIMIT, minimum=1, maximum=MAX_LIST_LIMIT)
    marker = ctx.get("Marker")
    start = int(marker) if marker and str(marker).isdigit() else 0

    page = items[start:start + limit]
    extra: dict[str, Any] = {"Truncated": start + limit < len(items)}
    if extra["Truncated"]:
        extra["NextMarker"] = str(start + limit)
    return page, extra


# =============================================================================
# Keys
# =============================================================================


def create_key(ctx: OperationContext) -> OperationResult:
    request = parse_model(CreateKeyInput, ctx.params)
    key_id = random_uuid()

    attributes: dict[str, Any] = {
        "KeyId": key_id,
        "AWSAccountId": ctx.config.account_id,
        "CreationDate": _now(),
        "Description": request.description,
        "KeyUsage": request.key_usage,
        "KeySpec": request.key_spec,
        "CustomerMasterKeySpec": request.key_spec,
        "KeyState": "Enabled",
        "MultiRegion": request.multi_region,
    }
    if request.key_spec == "SYMMETRIC_DEFAULT":
        attributes["EncryptionAlgorithms"] = ["SYMMETRIC_DEFAULT"]

    key = ctx.repository.create(key_id, SERVICE, KEY, ctx.namespace, attributes).resource
    tags = _kms_tags(request.tags)
    if tags:
        tagging.tag_resource(ctx.repository, ctx.namespace, key.attributes["Arn"], tags)

    logger.info("Created key", extra={"key_id": key_id, "namespace": ctx.namespace})
    return OperationResult({"KeyMetadata": key.attributes})


def describe_key(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"), retry=True)
    return OperationResult({"KeyMetadata": key.attributes})


def list_keys(ctx: OperationContext) -> OperationResult:
    keys = ctx.repository.list(SERVICE, KEY, ctx.namespace)
    page, extra = _paginate(ctx, keys)
    return OperationResult(
        {
            "Keys": [{"KeyId": k.identifier, "KeyArn": k.attributes["Arn"]} for k in page],
            **extra,
        }
    )


def schedule_key_deletion(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"))
    window = ctx.int_param("PendingWindowInDays", DEFAULT_PENDING_WINDOW_DAYS)
    if not (MIN_PENDING_WINDOW_DAYS <= window <= MAX_PENDING_WINDOW_DAYS):
        raise ValidationException(
            f"1 validation error detected: Value '{window}' at 'pendingWindowInDays' failed to "
            f"satisfy constraint: Member must have value between {MIN_PENDING_WINDOW_DAYS} "
            f"and {MAX_PENDING_WINDOW_DAYS}"
        )
    if key.attributes["KeyState"] == "PendingDeletion":
        raise _invalid_state(f"{key.attributes['Arn']} is pending deletion.")

    deletion_date = (datetime.now(UTC) + timedelta(days=window)).timestamp()
    attributes = key.attributes
    attributes.update(
        {
            "KeyState": "PendingDeletion",
            "DeletionDate": deletion_date,
            "PendingDeletionWindowInDays": window,
        }
    )
    key = ctx.repository.replace(key, attributes)
    logger.info(
        "Scheduled key deletion",
        extra={"key_id": key.identifier, "window_days": window, "namespace": ctx.namespace},
    )
    return OperationResult(
        {
            "KeyId": key.attributes["Arn"],
            "DeletionDate": deletion_date,
            "KeyState": "PendingDeletion",
            "PendingWindowInDays": window,
        }
    )


def cancel_key_deletion(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"))
    if key.attributes["KeyState"] != "PendingDeletion":
        raise _invalid_state(f"{key.attributes['Arn']} is not pending deletion.")

    attributes = key.attributes
    # A cancelled key comes back disabled
    attributes["KeyState"] = "Disabled"
    key = ctx.repository.replace(key, attributes)
    return OperationResult({"KeyId": key.attributes["Arn"]})


# =============================================================================
# Aliases
# =============================================================================


def _validate_alias_name(alias_name: str) -> None:
    if alias_name.startswith(RESERVED_ALIAS_PREFIX):
        raise ValidationException(
            f"Alias {alias_name} must not begin with {RESERVED_ALIAS_PREFIX}",
            code="NotAuthorizedException",
        )
    if not ALIAS_NAME_PATTERN.match(alias_name):
        raise ValidationException(
            f"Alias {alias_name} must begin with {ALIAS_PREFIX} and contain only "
            "alphanumeric characters, forward slashes, underscores and dashes"
        )


def create_alias(ctx: OperationContext) -> OperationResult:
    alias_name = ctx.require("AliasName")
    target = ctx.require("TargetKeyId")
    _validate_alias_name(alias_name)
    if target.startswith(ALIAS_PREFIX) or ":alias/" in target:
        raise ValidationException("Aliases must refer to keys. Not aliases")

    key = _resolve_key(ctx, target)
    if key.attributes["KeyState"] == "PendingDeletion":
        raise _invalid_state(f"{key.attributes['Arn']} is pending deletion.")

    alias_arn = _alias_arn(ctx, alias_name)
    now = _now()
    ctx.repository.create(
        alias_arn,
        SERVICE,
        ALIAS,
        ctx.namespace,
        {
            "AliasName": alias_name,
            "AliasArn": alias_arn,
            "TargetKeyId": key.identifier,
            "CreationDate": now,
            "LastUpdatedDate": now,
        },
        conflict=ResourceAlreadyExists(
            f"An alias with the name {alias_arn} already exists", code="AlreadyExistsException"
        ),
    )
    logger.info(
        "Created alias",
        extra={"alias": alias_name, "key_id": key.identifier, "namespace": ctx.namespace},
    )
    return OperationResult({})


def delete_alias(ctx: OperationContext) -> OperationResult:
    alias_name = ctx.require("AliasName")
    if not alias_name.startswith(ALIAS_PREFIX):
        raise ValidationException(f"Invalid identifier: {alias_name}")
    ctx.repository.delete(
        _alias_arn(ctx, alias_name), SERVICE, ALIAS, ctx.namespace,
        not_found=_alias_not_found(alias_name),
    )
    return OperationResult({})


def list_aliases(ctx: OperationContext) -> OperationResult:
    aliases = ctx.repository.list(SERVICE, ALIAS, ctx.namespace)
    key_reference = ctx.get("KeyId")
    if key_reference:
        key = _resolve_key(ctx, key_reference)
        aliases = [a for a in aliases if a.attributes["TargetKeyId"] == key.identifier]
    aliases.sort(key=lambda a: a.attributes["AliasName"])

    page, extra = _paginate(ctx, aliases)
    return OperationResult({"Aliases": [a.attributes for a in page], **extra})


# =============================================================================
# Tags
# =============================================================================


def tag_resource(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"))
    tags = _kms_tags(ctx.typed_param("Tags", list[dict], required=True))
    tagging.tag_resource(ctx.repository, ctx.namespace, key.attributes["Arn"], tags)
    return OperationResult({})


def untag_resource(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"))
    keys = ctx.typed_param("TagKeys", list[str], required=True)
    tagging.untag_resource(ctx.repository, ctx.namespace, key.attributes["Arn"], keys)
    return OperationResult({})


def list_resource_tags(ctx: OperationContext) -> OperationResult:
    key = _resolve_key(ctx, ctx.require("KeyId"))
    tags = tagging.get_tags(ctx.repository, ctx.namespace, key.attributes["Arn"])
    return OperationResult(
        {
            "Tags": tagging.to_tag_list(tags, key_name="TagKey", value_name="TagValue"),
            "Truncated": False,
        }
    )


HANDLERS = {
    "CreateKey": create_key,
    "DescribeKey": describe_key,
    "ListKeys": list_keys,
    "ScheduleKeyDeletion": schedule_key_deletion,
    "CancelKeyDeletion": cancel_key_deletion,
    "CreateAlias": create_alias,
    "DeleteAlias": delete_alias,
    "ListAliases": list_aliases,
    "TagResource": tag_resource,
    "UntagResource": untag_resource,
    "ListResourceTags": list_resource_tags,
}


def register(registry: OperationRegistry) -> None:
    """Register the KMS descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
