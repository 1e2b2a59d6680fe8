"""Secrets Manager control plane: secrets, versions and staging labels.

A secret is stored under its ARN without the random suffix, so the store
identifier is stable while the ARN reported to clients keeps the provider's
``-XXXXXX`` suffix. Versions live inside the secret blob as
``Versions[version_id] = {SecretString|SecretBinary, VersionStages, CreatedDate}``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from . import tagging
from .errors import ResourceAlreadyExists, ResourceNotFound, ValidationException
from .identifiers import random_token, random_uuid
from .models import CreateSecretInput, parse_model
from .protocol import OperationContext, OperationRegistry, OperationResult, ServiceDescriptor
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "secretsmanager"
SECRET = "secret"

CURRENT = "AWSCURRENT"
PREVIOUS = "AWSPREVIOUS"

MIN_RECOVERY_WINDOW_DAYS = 7
MAX_RECOVERY_WINDOW_DAYS = 30
DEFAULT_RECOVERY_WINDOW_DAYS = 30
MAX_SECRET_SIZE = 65536
DEFAULT_MAX_RESULTS = 100
MAX_RESULTS_LIMIT = 100
FILTER_KEYS = frozenset({"name", "description", "tag-key", "tag-value", "all"})

OPERATIONS = frozenset(
    {
        "CreateSecret",
        "DescribeSecret",
        "GetSecretValue",
        "PutSecretValue",
        "DeleteSecret",
        "RestoreSecret",
        "ListSecrets",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    json_operations=OPERATIONS,
    target_prefix="secretsmanager",
    json_version="1.1",
    missing_parameter_code="InvalidParameterException",
)

ENTITY_TYPES = ("secretsmanager/secret", "tagging/tags")


def _now() -> float:
    return datetime.now(UTC).timestamp()


def _secret_identifier(ctx: OperationContext, name: str) -> str:
    return ctx.arn(f"secret:{name}")


def _not_found() -> ResourceNotFound:
    return ResourceNotFound(
        "Secrets Manager can't find the specified secret.", code="ResourceNotFoundException"
    )


def _invalid_parameter(message: str) -> ValidationException:
    return ValidationException(message, code="InvalidParameterException")


def _invalid_request(message: str) -> ValidationException:
    return ValidationException(message, code="InvalidRequestException")


def _marked_for_deletion() -> ValidationException:
    return _invalid_request(
        "You can't perform this operation on the secret because it was marked for deletion."
    )


def _find_secret(ctx: OperationContext, secret_id: str) -> Resource | None:
    """Look a secret up by name, full ARN or ARN without suffix."""
    if not secret_id.startswith("arn:"):
        return ctx.repository.find(_secret_identifier(ctx, secret_id), SERVICE, SECRET, ctx.namespace)

    direct = ctx.repository.find(secret_id, SERVICE, SECRET, ctx.namespace)
    if direct is not None:
        return direct
    for secret in ctx.repository.list(SERVICE, SECRET, ctx.namespace):
        if secret.attributes.get("ARN") == secret_id:
            return secret
    return None


def _get_secret(ctx: OperationContext, allow_deleted: bool = False) -> Resource:
    secret = _find_secret(ctx, ctx.require("SecretId"))
    if secret is None:
        raise _not_found()
    if not allow_deleted and secret.attributes.get("DeletedDate"):
        raise _marked_for_deletion()
    return secret


def _secret_value(
    secret_string: str | None, secret_binary: str | None
) -> dict[str, str]:
    if secret_string is not None and secret_binary is not None:
        raise _invalid_parameter(
            "You can't specify both a binary secret value and a string secret value "
            "in the same secret."
        )
    value = secret_string if secret_string is not None else secret_binary
    if value is not None and len(value) > MAX_SECRET_SIZE:
        raise _invalid_parameter(f"Secret value exceeds the maximum size of {MAX_SECRET_SIZE} bytes.")
    if secret_string is not None:
        return {"SecretString": secret_string}
    if secret_binary is not None:
        return {"SecretBinary": secret_binary}
    return {}


def _move_stages(versions: dict[str, dict[str, Any]], version_id: str, stages: list[str]) -> None:
    """Attach ``stages`` to ``version_id``, taking them off every other version.

    When AWSCURRENT moves, the version that held it becomes AWSPREVIOUS.
    """
    previous_current = None
    if CURRENT in stages:
        for vid, version in versions.items():
            if vid != version_id and CURRENT in version["VersionStages"]:
                previous_current = vid

    for vid, version in versions.items():
        if vid == version_id:
            continue
        labels = [s for s in version["VersionStages"] if s not in stages]
        if previous_current is not None:
            labels = [s for s in labels if s != PREVIOUS]
        version["VersionStages"] = labels

    if previous_current is not None:
        versions[previous_current]["VersionStages"].append(PREVIOUS)

    current = versions[version_id]["VersionStages"]
    for stage in stages:
        if stage not in current:
            current.append(stage)


def _versions_to_stages(attributes: dict[str, Any]) -> dict[str, list[str]]:
    return {
        vid: list(version["VersionStages"])
        for vid, version in attributes.get("Versions", {}).items()
        if version["VersionStages"]
    }


def _description(ctx: OperationContext, secret: Resource) -> dict[str, Any]:
    attributes = secret.attributes
    payload: dict[str, Any] = {
        "ARN": attributes["ARN"],
        "Name": attributes["Name"],
        "RotationEnabled": attributes.get("RotationEnabled", False),
        "CreatedDate": attributes["CreatedDate"],
        "LastChangedDate": attributes["LastChangedDate"],
        "VersionIdsToStages": _versions_to_stages(attributes),
    }
    for optional in ("Description", "KmsKeyId", "DeletedDate", "RotationRules", "RotationLambdaARN"):
        if attributes.get(optional) is not None:
            payload[optional] = attributes[optional]

    tags = tagging.get_tags(ctx.repository, ctx.namespace, secret.identifier)
    if tags:
        payload["Tags"] = tagging.to_tag_list(tags)
    return payload


def create_secret(ctx: OperationContext) -> OperationResult:
    ctx.require("Name")
    request = parse_model(CreateSecretInput, ctx.params)
    value = _secret_value(request.secret_string, request.secret_binary)

    identifier = _secret_identifier(ctx, request.name)
    existing = ctx.repository.find(identifier, SERVICE, SECRET, ctx.namespace)
    if existing is not None and existing.attributes.get("DeletedDate"):
        raise _invalid_request(
            "You can't create this secret because a secret with this name is already "
            "scheduled for deletion."
        )

    now = _now()
    versions: dict[str, Any] = {}
    version_id = None
    if value:
        version_id = request.client_request_token or random_uuid()
        versions[version_id] = {**value, "VersionStages": [CURRENT], "CreatedDate": now}

    attributes: dict[str, Any] = {
        "ARN": f"{identifier}-{random_token(6)}",
        "Name": request.name,
        "CreatedDate": now,
        "LastChangedDate": now,
        "Versions": versions,
    }
    if request.description is not None:
        attributes["Description"] = request.description
    if request.kms_key_id:
        attributes["KmsKeyId"] = request.kms_key_id

    secret = ctx.repository.create(
        identifier,
        SERVICE,
        SECRET,
        ctx.namespace,
        attributes,
        conflict=ResourceAlreadyExists(
            f"The operation failed because the secret {request.name} already exists.",
            code="ResourceExistsException",
        ),
    ).resource

    tags = tagging.from_tag_list(request.tags)
    if tags:
        tagging.tag_resource(ctx.repository, ctx.namespace, identifier, tags)

    logger.info("Created secret", extra={"secret": request.name, "namespace": ctx.namespace})
    payload: dict[str, Any] = {"ARN": secret.attributes["ARN"], "Name": request.name}
    if version_id is not None:
        payload["VersionId"] = version_id
    return OperationResult(payload)


def describe_secret(ctx: OperationContext) -> OperationResult:
    secret = _get_secret(ctx, allow_deleted=True)
    return OperationResult(_description(ctx, secret))


def get_secret_value(ctx: OperationContext) -> OperationResult:
    secret = _get_secret(ctx)
    versions = secret.attributes.get("Versions", {})
    version_id = ctx.get("VersionId")
    stage = ctx.get("VersionStage")

    if version_id:
        version = versions.get(version_id)
        if version is None or (stage and stage not in version["VersionStages"]):
            raise ResourceNotFound(
                f"Secrets Manager can't find the specified secret value for VersionId: {version_id}",
                code="ResourceNotFoundException",
            )
    else:
        stage = stage or CURRENT
        matches = [(vid, v) for vid, v in versions.items() if stage in v["VersionStages"]]
        if not matches:
            raise ResourceNotFound(
                f"Secrets Manager can't find the specified secret value for staging label: {stage}",
                code="ResourceNotFoundException",
            )
        version_id, version = matches[0]

    payload: dict[str, Any] = {
        "ARN": secret.attributes["ARN"],
        "Name": secret.attributes["Name"],
        "VersionId": version_id,
        "VersionStages": list(version["VersionStages"]),
        "CreatedDate": version["CreatedDate"],
    }
    for member in ("SecretString", "SecretBinary"):
        if member in version:
            payload[member] = version[member]
    return OperationResult(payload)


def put_secret_value(ctx: OperationContext) -> OperationResult:
    secret = _get_secret(ctx)
    value = _secret_value(ctx.get("SecretString"), ctx.get("SecretBinary"))
    if not value:
        raise _invalid_parameter("You must provide either SecretString or SecretBinary.")

    version_id = ctx.get("ClientRequestToken") or random_uuid()
    stages = list(ctx.typed_param("VersionStages", list[str]) or [CURRENT])
    attributes = secret.attributes
    versions: dict[str, dict[str, Any]] = attributes.setdefault("Versions", {})

    existing = versions.get(version_id)
    if existing is not None:
        stored = {k: existing[k] for k in ("SecretString", "SecretBinary") if k in existing}
        if stored != value:
            raise ResourceAlreadyExists(
                "You can't modify an existing version, you can only create a new version.",
                code="ResourceExistsException",
            )
        return OperationResult(
            {
                "ARN": attributes["ARN"],
                "Name": attributes["Name"],
                "VersionId": version_id,
                "VersionStages": list(existing["VersionStages"]),
            }
        )

    versions[version_id] = {**value, "VersionStages": [], "CreatedDate": _now()}
    _move_stages(versions, version_id, stages)
    attributes["LastChangedDate"] = _now()
    secret = ctx.repository.replace(secret, attributes)

    logger.info(
        "Stored secret version",
        extra={"secret": attributes["Name"], "version_id": version_id, "namespace": ctx.namespace},
    )
    return OperationResult(
        {
            "ARN": secret.attributes["ARN"],
            "Name": secret.attributes["Name"],
            "VersionId": version_id,
            "VersionStages": list(secret.attributes["Versions"][version_id]["VersionStages"]),
        }
    )


def delete_secret(ctx: OperationContext) -> OperationResult:
    secret = _get_secret(ctx, allow_deleted=True)
    force = bool(ctx.get("ForceDeleteWithoutRecovery", False))
    window = ctx.get("RecoveryWindowInDays")

    if force and window is not None:
        raise _invalid_parameter(
            "You can't use ForceDeleteWithoutRecovery in conjunction with RecoveryWindowInDays."
        )
    attributes = secret.attributes

    if force:
        ctx.repository.delete(secret.identifier, SERVICE, SECRET, ctx.namespace, not_found=_not_found())
        tagging.delete_tags(ctx.repository, ctx.namespace, secret.identifier)
        logger.info("Force deleted secret", extra={"secret": attributes["Name"], "namespace": ctx.namespace})
        return OperationResult(
            {"ARN": attributes["ARN"], "Name": attributes["Name"], "DeletionDate": _now()}
        )

    if attributes.get("DeletedDate"):
        raise _marked_for_deletion()
    days = ctx.int_param(
        "RecoveryWindowInDays", DEFAULT_RECOVERY_WINDOW_DAYS, code="InvalidParameterException"
    )
    if not (MIN_RECOVERY_WINDOW_DAYS <= days <= MAX_RECOVERY_WINDOW_DAYS):
        raise _invalid_parameter(
            f"The RecoveryWindowInDays value must be between {MIN_RECOVERY_WINDOW_DAYS} "
            f"and {MAX_RECOVERY_WINDOW_DAYS} days (inclusive)."
        )

    deletion_date = (datetime.now(UTC) + timedelta(days=days)).timestamp()
    attributes["DeletedDate"] = deletion_date
    ctx.repository.replace(secret, attributes)
    logger.info(
        "Scheduled secret deletion",
        extra={"secret": attributes["Name"], "window_days": days, "namespace": ctx.namespace},
    )
    return OperationResult(
        {"ARN": attributes["ARN"], "Name": attributes["Name"], "DeletionDate": deletion_date}
    )


def restore_secret(ctx: OperationContext) -> OperationResult:
    secret = _get_secret(ctx, allow_deleted=True)
    attributes = secret.attributes
    attributes.pop("DeletedDate", None)
    ctx.repository.replace(secret, attributes)
    return OperationResult({"ARN": attributes["ARN"], "Name": attributes["Name"]})


def _matches_filters(
    description: dict[str, Any], tags: dict[str, str], filters: list[dict[str, Any]]
) -> bool:
    for item in filters:
        key = item.get("Key")
        values = [str(v) for v in item.get("Values", [])]
        match key:
            case "name":
                candidates = [description["Name"]]
            case "description":
                candidates = [description.get("Description") or ""]
            case "tag-key":
                candidates = list(tags)
            case "tag-value":
                candidates = list(tags.values())
            case _:
                candidates = [description["Name"], description.get("Description") or ""]
                candidates += list(tags) + list(tags.values())
        if not any(c.startswith(v) for c in candidates for v in values):
            return False
    return True


def _filters(ctx: OperationContext) -> list[dict[str, Any]]:
    filters = ctx.get("Filters") or []
    if not isinstance(filters, list) or not all(isinstance(f, dict) for f in filters):
        raise _invalid_parameter("Filters must be a list of Key and Values pairs.")
    for item in filters:
        if item.get("Key") not in FILTER_KEYS:
            raise _invalid_parameter(f"Invalid filter key: {item.get('Key')}")
        if not isinstance(item.get("Values", []), list):
            raise _invalid_parameter("Filter Values must be a list of strings.")
    return filters


def list_secrets(ctx: OperationContext) -> OperationResult:
    include_deleted = bool(ctx.get("IncludePlannedDeletion", False))
    filters = _filters(ctx)
    max_results = ctx.int_param(
        "MaxResults",
        DEFAULT_MAX_RESULTS,
        minimum=1,
        maximum=MAX_RESULTS_LIMIT,
        code="InvalidParameterException",
    )
    next_token = ctx.get("NextToken")
    start = int(next_token) if next_token and str(next_token).isdigit() else 0

    entries = []
    for secret in sorted(
        ctx.repository.list(SERVICE, SECRET, ctx.namespace), key=lambda s: s.attributes["Name"]
    ):
        if secret.attributes.get("DeletedDate") and not include_deleted:
            continue
        description = _description(ctx, secret)
        tags = tagging.get_tags(ctx.repository, ctx.namespace, secret.identifier)
        if not _matches_filters(description, tags, filters):
            continue
        description["SecretVersionsToStages"] = description.pop("VersionIdsToStages")
        entries.append(description)

    page = entries[start:start + max_results]
    payload: dict[str, Any] = {"SecretList": page}
    if start + max_results < len(entries):
        payload["NextToken"] = str(start + max_results)
    return OperationResult(payload)


HANDLERS = {
    "CreateSecret": create_secret,
    "DescribeSecret": describe_secret,
    "GetSecretValue": get_secret_value,
    "PutSecretValue": put_secret_value,
    "DeleteSecret": delete_secret,
    "RestoreSecret": restore_secret,
    "ListSecrets": list_secrets,
}


def register(registry: OperationRegistry) -> None:
    """Register the Secrets Manager descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
