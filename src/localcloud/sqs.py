"""SQS control plane over both the query and the JSON convention.

Queues are stored under their ARN. The queue URL and ARN are derived from
the queue name by shape contracts, so they stay correct if the configured
endpoint changes between restarts.

Query and JSON clients name the same members differently
(``Attribute.1.Name`` vs ``Attributes``), so each handler reads through the
small accessors below and shapes its payload per convention.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any

from . import tagging
from .errors import ResourceNotFound, ValidationException
from .protocol import (
    OperationContext,
    OperationRegistry,
    OperationResult,
    ServiceDescriptor,
    indexed_members,
)
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "sqs"
QUEUE = "queue"

QUEUE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,80}$")
FIFO_SUFFIX = ".fifo"
MAX_LIST_RESULTS = 1000

# Reported by GetQueueAttributes, never stored
_COUNTER_ATTRIBUTES = {
    "ApproximateNumberOfMessages": "0",
    "ApproximateNumberOfMessagesNotVisible": "0",
    "ApproximateNumberOfMessagesDelayed": "0",
}

# Settable through CreateQueue and SetQueueAttributes
SETTABLE_ATTRIBUTES = frozenset(
    {
        "DelaySeconds",
        "MaximumMessageSize",
        "MessageRetentionPeriod",
        "Policy",
        "ReceiveMessageWaitTimeSeconds",
        "VisibilityTimeout",
        "RedrivePolicy",
        "RedriveAllowPolicy",
        "KmsMasterKeyId",
        "KmsDataKeyReusePeriodSeconds",
        "SqsManagedSseEnabled",
        "FifoQueue",
        "ContentBasedDeduplication",
        "DeduplicationScope",
        "FifoThroughputLimit",
    }
)

OPERATIONS = frozenset(
    {
        "CreateQueue",
        "GetQueueUrl",
        "ListQueues",
        "DeleteQueue",
        "GetQueueAttributes",
        "SetQueueAttributes",
        "TagQueue",
        "UntagQueue",
        "ListQueueTags",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    json_operations=OPERATIONS,
    query_operations=OPERATIONS,
    target_prefix="AmazonSQS",
    json_version="1.0",
    api_version="2012-11-05",
    xml_namespace="http://queue.amazonaws.com/doc/2012-11-05/",
)

ENTITY_TYPES = ("sqs/queue", "tagging/tags")


def _timestamp() -> str:
    return str(int(datetime.now(UTC).timestamp()))


def _queue_arn(ctx: OperationContext, name: str) -> str:
    return ctx.arn(name)


def _not_found(ctx: OperationContext) -> ResourceNotFound:
    code = "QueueDoesNotExist" if ctx.is_json else "AWS.SimpleQueueService.NonExistentQueue"
    return ResourceNotFound("The specified queue does not exist.", code=code)


def _invalid(message: str, code: str = "InvalidParameterValue") -> ValidationException:
    return ValidationException(message, code=code)


def _json_map(ctx: OperationContext, name: str) -> dict[str, str]:
    value = ctx.get(name) or {}
    if not isinstance(value, dict):
        raise _invalid(f"{name} must be a map of strings.")
    return {str(k): str(v) for k, v in value.items()}


def _attribute_map(ctx: OperationContext) -> dict[str, str]:
    """Queue attributes from ``Attribute.N.Name/Value`` or ``Attributes``."""
    if ctx.is_json:
        return _json_map(ctx, "Attributes")
    return {
        member["Name"]: member.get("Value", "")
        for member in indexed_members(ctx.params, "Attribute")
        if member.get("Name")
    }


def _tag_map(ctx: OperationContext, json_key: str) -> dict[str, str]:
    """Tags from ``Tag.N.Key/Value`` or a JSON map."""
    if ctx.is_json:
        return _json_map(ctx, json_key)
    return tagging.from_tag_list(indexed_members(ctx.params, "Tag"))


def _queue_name(ctx: OperationContext) -> str:
    """Queue name from the QueueUrl member, or from the request path."""
    url = ctx.get("QueueUrl")
    if url:
        return str(url).rstrip("/").rsplit("/", 1)[-1]
    segments = [s for s in ctx.request.path.split("/") if s]
    if len(segments) >= 2:
        return segments[-1]
    return ctx.require("QueueUrl")


def _get_queue(ctx: OperationContext, retry: bool = False) -> Resource:
    name = _queue_name(ctx)
    return ctx.repository.get(
        _queue_arn(ctx, name), SERVICE, QUEUE, ctx.namespace, retry=retry, not_found=_not_found(ctx)
    )


def _validate_attributes(name: str, attributes: dict[str, str]) -> None:
    unknown = sorted(set(attributes) - SETTABLE_ATTRIBUTES)
    if unknown:
        raise _invalid(f"Unknown Attribute {unknown[0]}.", code="InvalidAttributeName")

    is_fifo = attributes.get("FifoQueue", "false").lower() == "true"
    if is_fifo != name.endswith(FIFO_SUFFIX):
        raise _invalid(
            "The name of a FIFO queue can only include alphanumeric characters, hyphens, or "
            "underscores, must end with .fifo suffix and be 1 to 80 in length."
        )
    if "FifoQueue" in attributes:
        attributes["FifoQueue"] = "true" if is_fifo else "false"
    if "ContentBasedDeduplication" in attributes and not is_fifo:
        raise _invalid(
            "Unknown Attribute ContentBasedDeduplication.", code="InvalidAttributeName"
        )


def create_queue(ctx: OperationContext) -> OperationResult:
    name = ctx.require("QueueName")
    bare = name[: -len(FIFO_SUFFIX)] if name.endswith(FIFO_SUFFIX) else name
    if not QUEUE_NAME_PATTERN.match(bare):
        raise _invalid(
            "Can only include alphanumeric characters, hyphens, or underscores. "
            "1 to 80 in length"
        )

    attributes = _attribute_map(ctx)
    _validate_attributes(name, attributes)

    now = _timestamp()
    stored_attributes = {"CreatedTimestamp": now, "LastModifiedTimestamp": now}
    stored_attributes.update(attributes)

    arn = _queue_arn(ctx, name)
    outcome = ctx.repository.create(
        arn,
        SERVICE,
        QUEUE,
        ctx.namespace,
        {"QueueName": name, "Attributes": stored_attributes},
    )
    if outcome.created:
        tags = _tag_map(ctx, "tags")
        if tags:
            tagging.tag_resource(ctx.repository, ctx.namespace, arn, tags)
        logger.info("Created queue", extra={"queue": name, "namespace": ctx.namespace})

    return OperationResult({"QueueUrl": outcome.resource.attributes["QueueUrl"]})


def get_queue_url(ctx: OperationContext) -> OperationResult:
    name = ctx.require("QueueName")
    queue = ctx.repository.get(
        _queue_arn(ctx, name), SERVICE, QUEUE, ctx.namespace, retry=True, not_found=_not_found(ctx)
    )
    return OperationResult({"QueueUrl": queue.attributes["QueueUrl"]})


def list_queues(ctx: OperationContext) -> OperationResult:
    prefix = ctx.get("QueueNamePrefix", "")
    next_token = ctx.get("NextToken")

    queues = [
        q for q in ctx.repository.list(SERVICE, QUEUE, ctx.namespace)
        if q.attributes["QueueName"].startswith(prefix)
    ]
    queues.sort(key=lambda q: q.attributes["QueueName"])
    if next_token:
        queues = [q for q in queues if q.attributes["QueueName"] > next_token]

    payload: dict[str, Any] = {}
    limit = ctx.int_param(
        "MaxResults", minimum=1, maximum=MAX_LIST_RESULTS, code="InvalidParameterValue"
    )
    if limit is not None:
        if len(queues) > limit:
            payload["NextToken"] = queues[limit - 1].attributes["QueueName"]
        queues = queues[:limit]

    urls = [q.attributes["QueueUrl"] for q in queues]
    if ctx.is_json:
        if urls:
            payload["QueueUrls"] = urls
    else:
        payload = {"QueueUrl": urls, **payload}
    return OperationResult(payload)


def delete_queue(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx)
    ctx.repository.delete(
        queue.identifier, SERVICE, QUEUE, ctx.namespace, not_found=_not_found(ctx)
    )
    tagging.delete_tags(ctx.repository, ctx.namespace, queue.identifier)
    logger.info(
        "Deleted queue",
        extra={"queue": queue.attributes["QueueName"], "namespace": ctx.namespace},
    )
    return OperationResult(None if not ctx.is_json else {})


def get_queue_attributes(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx, retry=True)
    names = ctx.indexed_list("AttributeName", json_key="AttributeNames")

    available = dict(queue.attributes.get("Attributes", {}))
    available.update(_COUNTER_ATTRIBUTES)

    if not names or "All" in names:
        selected = available
    else:
        selected = {name: available[name] for name in names if name in available}

    if ctx.is_json:
        return OperationResult({"Attributes": selected} if selected else {})
    return OperationResult(
        {"Attribute": [{"Name": k, "Value": v} for k, v in sorted(selected.items())]}
    )


def set_queue_attributes(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx)
    changes = _attribute_map(ctx)
    if not changes:
        raise ValidationException(
            "The request must contain the parameter Attribute.1.Name.", code="MissingParameter"
        )

    current = queue.attributes.get("Attributes", {})
    requested_fifo = changes.get("FifoQueue")
    if requested_fifo is not None and requested_fifo.lower() != current.get("FifoQueue", "false"):
        raise _invalid(
            "FifoQueue cannot be changed on an existing queue.", code="InvalidAttributeValue"
        )

    unknown = sorted(set(changes) - SETTABLE_ATTRIBUTES)
    if unknown:
        raise _invalid(f"Unknown Attribute {unknown[0]}.", code="InvalidAttributeName")

    merged = dict(current)
    merged.update(changes)
    settable = {k: v for k, v in merged.items() if k in SETTABLE_ATTRIBUTES}
    _validate_attributes(queue.attributes["QueueName"], settable)
    merged.update(settable)
    merged["LastModifiedTimestamp"] = _timestamp()

    attributes = dict(queue.attributes)
    attributes["Attributes"] = merged
    ctx.repository.replace(queue, attributes)
    return OperationResult(None if not ctx.is_json else {})


def tag_queue(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx)
    tags = _tag_map(ctx, "Tags")
    if not tags:
        raise ValidationException(
            "The request must contain the parameter Tags.", code="MissingParameter"
        )
    tagging.tag_resource(ctx.repository, ctx.namespace, queue.identifier, tags)
    return OperationResult(None if not ctx.is_json else {})


def untag_queue(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx)
    keys = ctx.indexed_list("TagKey", json_key="TagKeys")
    tagging.untag_resource(ctx.repository, ctx.namespace, queue.identifier, keys)
    return OperationResult(None if not ctx.is_json else {})


def list_queue_tags(ctx: OperationContext) -> OperationResult:
    queue = _get_queue(ctx)
    tags = tagging.get_tags(ctx.repository, ctx.namespace, queue.identifier)
    if ctx.is_json:
        return OperationResult({"Tags": tags} if tags else {})
    return OperationResult({"Tag": tagging.to_tag_list(tags)})


HANDLERS = {
    "CreateQueue": create_queue,
    "GetQueueUrl": get_queue_url,
    "ListQueues": list_queues,
    "DeleteQueue": delete_queue,
    "GetQueueAttributes": get_queue_attributes,
    "SetQueueAttributes": set_queue_attributes,
    "TagQueue": tag_queue,
    "UntagQueue": untag_queue,
    "ListQueueTags": list_queue_tags,
}


def register(registry: OperationRegistry) -> None:
    """Register the SQS descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
