"""DynamoDB control plane: tables, tags and time to live.

Tables are stored under their ARN as a TableDescription blob plus the
table's TimeToLiveDescription. Billing mode and TTL shape are enforced by the
shape contracts, so handlers only write what the client asked for.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from . import tagging
from .errors import ResourceInUse, ResourceNotFound, ValidationException
from .identifiers import random_uuid
from .models import (
    AttributeDefinition,
    CreateTableInput,
    ProvisionedThroughputInput,
    SecondaryIndexInput,
    parse_model,
)
from .protocol import OperationContext, OperationRegistry, OperationResult, ServiceDescriptor
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "dynamodb"
TABLE = "table"

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 100

# Members stored with the table that DescribeTable does not return
_PRIVATE_KEYS = ("TimeToLiveDescription",)

OPERATIONS = frozenset(
    {
        "CreateTable",
        "DescribeTable",
        "UpdateTable",
        "DeleteTable",
        "ListTables",
        "TagResource",
        "UntagResource",
        "ListTagsOfResource",
        "DescribeTimeToLive",
        "UpdateTimeToLive",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    json_operations=OPERATIONS,
    target_prefix="DynamoDB_20120810",
    json_version="1.0",
    missing_parameter_code="ValidationException",
)

ENTITY_TYPES = ("dynamodb/table", "tagging/tags")


def _now() -> float:
    return datetime.now(UTC).timestamp()


def _table_arn(ctx: OperationContext, name: str) -> str:
    return ctx.arn(f"table/{name}")


def _not_found(name: str) -> ResourceNotFound:
    return ResourceNotFound(
        f"Requested resource not found: Table: {name} not found",
        code="ResourceNotFoundException",
    )


def _get_table(ctx: OperationContext, name: str, retry: bool = False) -> Resource:
    return ctx.repository.get(
        _table_arn(ctx, name), SERVICE, TABLE, ctx.namespace, retry=retry, not_found=_not_found(name)
    )


def _table_by_arn(ctx: OperationContext, arn: str) -> Resource:
    table = ctx.repository.find(arn, SERVICE, TABLE, ctx.namespace)
    if table is None:
        raise ResourceNotFound(
            f"Requested resource not found: ResourceArn: {arn} not found",
            code="ResourceNotFoundException",
        )
    return table


def _public(attributes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in attributes.items() if k not in _PRIVATE_KEYS}


def _index_description(
    ctx: OperationContext, table_name: str, index: SecondaryIndexInput, is_global: bool
) -> dict[str, Any]:
    description: dict[str, Any] = {
        "IndexName": index.index_name,
        "KeySchema": [k.model_dump(by_alias=True) for k in index.key_schema],
        "Projection": index.projection,
        "IndexSizeBytes": 0,
        "ItemCount": 0,
        "IndexArn": ctx.arn(f"table/{table_name}/index/{index.index_name}"),
    }
    if is_global:
        description["IndexStatus"] = "ACTIVE"
        if index.provisioned_throughput is not None:
            description["ProvisionedThroughput"] = index.provisioned_throughput.to_description()
    return description


def _validate_key_attributes(request: CreateTableInput) -> None:
    defined = {a.attribute_name for a in request.attribute_definitions}
    key_names = [k.attribute_name for k in request.key_schema]
    for index in request.global_secondary_indexes + request.local_secondary_indexes:
        key_names.extend(k.attribute_name for k in index.key_schema)
    missing = sorted({name for name in key_names if name not in defined})
    if missing:
        raise ValidationException(
            "One or more parameter values were invalid: Some index key attributes are not "
            f"defined in AttributeDefinitions. Keys: {missing}"
        )


def create_table(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    request = parse_model(CreateTableInput, ctx.params)
    _validate_key_attributes(request)

    now = _now()
    description: dict[str, Any] = {
        "TableName": name,
        "TableId": random_uuid(),
        "TableStatus": "ACTIVE",
        "CreationDateTime": now,
        "AttributeDefinitions": [a.model_dump(by_alias=True) for a in request.attribute_definitions],
        "KeySchema": [k.model_dump(by_alias=True) for k in request.key_schema],
        "BillingModeSummary": {"BillingMode": request.billing_mode},
        "DeletionProtectionEnabled": request.deletion_protection_enabled,
        "TimeToLiveDescription": {"TimeToLiveStatus": "DISABLED"},
    }
    if request.billing_mode == "PAY_PER_REQUEST":
        description["BillingModeSummary"]["LastUpdateToPayPerRequestDateTime"] = now
    if request.provisioned_throughput is not None:
        description["ProvisionedThroughput"] = request.provisioned_throughput.to_description()
    if request.global_secondary_indexes:
        description["GlobalSecondaryIndexes"] = [
            _index_description(ctx, name, index, is_global=True)
            for index in request.global_secondary_indexes
        ]
    if request.local_secondary_indexes:
        description["LocalSecondaryIndexes"] = [
            _index_description(ctx, name, index, is_global=False)
            for index in request.local_secondary_indexes
        ]
    if request.stream_specification and request.stream_specification.get("StreamEnabled"):
        label = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
        description["StreamSpecification"] = request.stream_specification
        description["LatestStreamLabel"] = label
        description["LatestStreamArn"] = f"{_table_arn(ctx, name)}/stream/{label}"
    if request.sse_specification and request.sse_specification.get("Enabled"):
        description["SSEDescription"] = {
            "Status": "ENABLED",
            "SSEType": request.sse_specification.get("SSEType", "KMS"),
        }

    arn = _table_arn(ctx, name)
    outcome = ctx.repository.create(
        arn,
        SERVICE,
        TABLE,
        ctx.namespace,
        description,
        conflict=ResourceInUse(f"Table already exists: {name}", code="ResourceInUseException"),
    )
    if request.tags:
        tagging.tag_resource(ctx.repository, ctx.namespace, arn, tagging.from_tag_list(request.tags))

    logger.info(
        "Created table",
        extra={"table": name, "namespace": ctx.namespace, "billing_mode": request.billing_mode},
    )
    return OperationResult({"TableDescription": _public(outcome.resource.attributes)})


def describe_table(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    table = _get_table(ctx, name, retry=True)
    return OperationResult({"Table": _public(table.attributes)})


def _apply_index_updates(
    ctx: OperationContext, table_name: str, attributes: dict[str, Any], updates: list[dict[str, Any]]
) -> None:
    indexes: list[dict[str, Any]] = list(attributes.get("GlobalSecondaryIndexes", []))
    by_name = {index["IndexName"]: index for index in indexes}

    for update in updates:
        action = next((a for a in ("Create", "Update", "Delete") if a in update), None)
        if action is None or not isinstance(update[action], dict):
            raise ValidationException(
                "GlobalSecondaryIndexUpdates entries need one of Create, Update or Delete"
            )
        if action == "Create":
            index = parse_model(SecondaryIndexInput, update["Create"])
            if index.index_name in by_name:
                raise ValidationException(
                    f"One or more parameter values were invalid: Index with name "
                    f"{index.index_name} already exists"
                )
            created = _index_description(ctx, table_name, index, is_global=True)
            indexes.append(created)
            by_name[index.index_name] = created
        elif action == "Update":
            index_name = update["Update"].get("IndexName")
            if index_name not in by_name:
                raise ResourceNotFound(
                    f"Requested resource not found: Index: {index_name} not found",
                    code="ResourceNotFoundException",
                )
            throughput = update["Update"].get("ProvisionedThroughput")
            if throughput:
                by_name[index_name]["ProvisionedThroughput"] = parse_model(
                    ProvisionedThroughputInput, throughput
                ).to_description()
        else:
            index_name = update["Delete"].get("IndexName")
            if index_name not in by_name:
                raise ResourceNotFound(
                    f"Requested resource not found: Index: {index_name} not found",
                    code="ResourceNotFoundException",
                )
            indexes = [i for i in indexes if i["IndexName"] != index_name]
            del by_name[index_name]

    if indexes:
        attributes["GlobalSecondaryIndexes"] = indexes
    else:
        attributes.pop("GlobalSecondaryIndexes", None)


def update_table(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    table = _get_table(ctx, name)
    attributes = table.attributes

    definitions = ctx.typed_param("AttributeDefinitions", list[dict])
    if definitions:
        known = {a["AttributeName"]: a for a in attributes.get("AttributeDefinitions", [])}
        for definition in definitions:
            parsed = parse_model(AttributeDefinition, definition)
            known[parsed.attribute_name] = parsed.model_dump(by_alias=True)
        attributes["AttributeDefinitions"] = list(known.values())

    billing_mode = ctx.get("BillingMode")
    if billing_mode is not None:
        if billing_mode not in ("PROVISIONED", "PAY_PER_REQUEST"):
            raise ValidationException(f"Invalid BillingMode: {billing_mode}")
        summary = attributes.setdefault("BillingModeSummary", {})
        if billing_mode == "PAY_PER_REQUEST" and summary.get("BillingMode") != billing_mode:
            summary["LastUpdateToPayPerRequestDateTime"] = _now()
        summary["BillingMode"] = billing_mode

    throughput = ctx.typed_param("ProvisionedThroughput", dict)
    if throughput:
        current_mode = attributes.get("BillingModeSummary", {}).get("BillingMode", "PROVISIONED")
        if current_mode == "PAY_PER_REQUEST":
            raise ValidationException(
                "One or more parameter values were invalid: Neither ReadCapacityUnits nor "
                "WriteCapacityUnits can be specified when BillingMode is PAY_PER_REQUEST"
            )
        attributes["ProvisionedThroughput"] = parse_model(
            ProvisionedThroughputInput, throughput
        ).to_description()

    index_updates = ctx.typed_param("GlobalSecondaryIndexUpdates", list[dict])
    if index_updates:
        _apply_index_updates(ctx, name, attributes, index_updates)

    protection = ctx.get("DeletionProtectionEnabled")
    if protection is not None:
        attributes["DeletionProtectionEnabled"] = bool(protection)

    stream = ctx.typed_param("StreamSpecification", dict)
    if stream is not None:
        attributes["StreamSpecification"] = stream
        if stream.get("StreamEnabled"):
            label = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            attributes["LatestStreamLabel"] = label
            attributes["LatestStreamArn"] = f"{_table_arn(ctx, name)}/stream/{label}"

    updated = ctx.repository.replace(table, attributes)
    return OperationResult({"TableDescription": _public(updated.attributes)})


def delete_table(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    table = _get_table(ctx, name)
    if table.attributes.get("DeletionProtectionEnabled"):
        raise ValidationException(
            f"Resource cannot be deleted as it is currently protected against deletion. "
            f"Disable deletion protection first. Table: {name}"
        )

    ctx.repository.delete(table.identifier, SERVICE, TABLE, ctx.namespace, not_found=_not_found(name))
    tagging.delete_tags(ctx.repository, ctx.namespace, table.identifier)

    description = _public(table.attributes)
    description["TableStatus"] = "DELETING"
    logger.info("Deleted table", extra={"table": name, "namespace": ctx.namespace})
    return OperationResult({"TableDescription": description})


def list_tables(ctx: OperationContext) -> OperationResult:
    limit = ctx.int_param("Limit", DEFAULT_LIST_LIMIT, minimum=1, maximum=MAX_LIST_LIMIT)
    start = ctx.get("ExclusiveStartTableName")

    names = sorted(t.attributes["TableName"] for t in ctx.repository.list(SERVICE, TABLE, ctx.namespace))
    if start:
        names = [n for n in names if n > start]

    payload: dict[str, Any] = {"TableNames": names[:limit]}
    if len(names) > limit:
        payload["LastEvaluatedTableName"] = names[limit - 1]
    return OperationResult(payload)


def tag_resource(ctx: OperationContext) -> OperationResult:
    arn = ctx.require("ResourceArn")
    tags = ctx.typed_param("Tags", list[dict], required=True)
    _table_by_arn(ctx, arn)
    tagging.tag_resource(ctx.repository, ctx.namespace, arn, tagging.from_tag_list(tags))
    return OperationResult({})


def untag_resource(ctx: OperationContext) -> OperationResult:
    arn = ctx.require("ResourceArn")
    keys = ctx.typed_param("TagKeys", list[str], required=True)
    _table_by_arn(ctx, arn)
    tagging.untag_resource(ctx.repository, ctx.namespace, arn, keys)
    return OperationResult({})


def list_tags_of_resource(ctx: OperationContext) -> OperationResult:
    arn = ctx.require("ResourceArn")
    _table_by_arn(ctx, arn)
    tags = tagging.get_tags(ctx.repository, ctx.namespace, arn)
    return OperationResult({"Tags": tagging.to_tag_list(tags)})


def describe_time_to_live(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    table = _get_table(ctx, name, retry=True)
    return OperationResult({"TimeToLiveDescription": table.attributes["TimeToLiveDescription"]})


def update_time_to_live(ctx: OperationContext) -> OperationResult:
    name = ctx.require("TableName")
    specification = ctx.typed_param("TimeToLiveSpecification", dict, required=True)
    enabled = specification.get("Enabled")
    attribute_name = specification.get("AttributeName")
    if enabled is None or not attribute_name:
        raise ValidationException(
            "TimeToLiveSpecification requires both Enabled and AttributeName"
        )

    table = _get_table(ctx, name)
    attributes = table.attributes
    current = attributes.get("TimeToLiveDescription", {}).get("TimeToLiveStatus", "DISABLED")

    if enabled and current == "ENABLED":
        raise ValidationException("TimeToLive is already enabled")
    if not enabled and current == "DISABLED":
        raise ValidationException("TimeToLive is already disabled")

    if enabled:
        attributes["TimeToLiveDescription"] = {
            "TimeToLiveStatus": "ENABLED",
            "AttributeName": attribute_name,
        }
    else:
        attributes["TimeToLiveDescription"] = {"TimeToLiveStatus": "DISABLED"}

    ctx.repository.replace(table, attributes)
    return OperationResult(
        {"TimeToLiveSpecification": {"Enabled": bool(enabled), "AttributeName": attribute_name}}
    )


HANDLERS = {
    "CreateTable": create_table,
    "DescribeTable": describe_table,
    "UpdateTable": update_table,
    "DeleteTable": delete_table,
    "ListTables": list_tables,
    "TagResource": tag_resource,
    "UntagResource": untag_resource,
    "ListTagsOfResource": list_tags_of_resource,
    "DescribeTimeToLive": describe_time_to_live,
    "UpdateTimeToLive": update_time_to_live,
}


def register(registry: OperationRegistry) -> None:
    """Register the DynamoDB descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
