"""SNS control plane: topics, subscriptions and tags.

Query convention only. Topics are stored under their ARN and subscriptions
under ``<topic ARN>:<id>``, where the id is derived from the topic,
protocol and endpoint so that subscribing twice returns the same
subscription. Subscriptions are confirmed immediately; nothing is ever
delivered.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from . import tagging
from .errors import ResourceNotFound, ValidationException
from .identifiers import deterministic_uuid
from .protocol import OperationContext, OperationRegistry, OperationResult, ServiceDescriptor
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "sns"
TOPIC = "topic"
SUBSCRIPTION = "subscription"

TOPIC_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,256}$")
FIFO_SUFFIX = ".fifo"
PAGE_SIZE = 100

PROTOCOLS = frozenset(
    {"http", "https", "email", "email-json", "sms", "sqs", "application", "lambda", "firehose"}
)

TOPIC_ATTRIBUTES = frozenset(
    {
        "DisplayName",
        "Policy",
        "DeliveryPolicy",
        "KmsMasterKeyId",
        "TracingConfig",
        "SignatureVersion",
        "ContentBasedDeduplication",
        "ArchivePolicy",
        "DataProtectionPolicy",
    }
)
# Only accepted by CreateTopic
CREATE_ONLY_TOPIC_ATTRIBUTES = frozenset({"FifoTopic"})

SUBSCRIPTION_ATTRIBUTES = frozenset(
    {
        "DeliveryPolicy",
        "FilterPolicy",
        "FilterPolicyScope",
        "RawMessageDelivery",
        "RedrivePolicy",
        "SubscriptionRoleArn",
    }
)

_DEFAULT_DELIVERY_POLICY = {
    "http": {
        "defaultHealthyRetryPolicy": {
            "minDelayTarget": 20,
            "maxDelayTarget": 20,
            "numRetries": 3,
            "numMaxDelayRetries": 0,
            "numNoDelayRetries": 0,
            "numMinDelayRetries": 0,
            "backoffFunction": "linear",
        },
        "disableSubscriptionOverrides": False,
    }
}

OPERATIONS = frozenset(
    {
        "CreateTopic",
        "DeleteTopic",
        "ListTopics",
        "GetTopicAttributes",
        "SetTopicAttributes",
        "Subscribe",
        "Unsubscribe",
        "ListSubscriptions",
        "ListSubscriptionsByTopic",
        "GetSubscriptionAttributes",
        "SetSubscriptionAttributes",
        "TagResource",
        "UntagResource",
        "ListTagsForResource",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    query_operations=OPERATIONS,
    api_version="2010-03-31",
    xml_namespace="http://sns.amazonaws.com/doc/2010-03-31/",
)

ENTITY_TYPES = ("sns/topic", "sns/subscription", "tagging/tags")


def _invalid(message: str) -> ValidationException:
    return ValidationException(f"Invalid parameter: {message}", code="InvalidParameter")


def _topic_not_found() -> ResourceNotFound:
    return ResourceNotFound("Topic does not exist", code="NotFound", status=404)


def _subscription_not_found() -> ResourceNotFound:
    return ResourceNotFound("Subscription does not exist", code="NotFound", status=404)


def _entries(ctx: OperationContext) -> dict[str, str]:
    """Attributes from ``Attributes.entry.N.key/value``."""
    return tagging.from_tag_list(
        ctx.indexed_members("Attributes.entry"), key_name="key", value_name="value"
    )


def _attribute_entries(attributes: dict[str, str]) -> dict[str, Any]:
    return {"entry": [{"key": k, "value": attributes[k]} for k in sorted(attributes)]}


def _get_topic(ctx: OperationContext, arn: str | None = None, retry: bool = False) -> Resource:
    arn = arn or ctx.require("TopicArn")
    return ctx.repository.get(
        arn, SERVICE, TOPIC, ctx.namespace, retry=retry, not_found=_topic_not_found()
    )


def _page(ctx: OperationContext, items: list[Any]) -> tuple[list[Any], str | None]:
    token = ctx.get("NextToken")
    if token and not str(token).isdigit():
        raise _invalid("NextToken")
    start = int(token) if token else 0
    end = start + PAGE_SIZE
    return items[start:end], (str(end) if end < len(items) else None)


def _topic_subscriptions(ctx: OperationContext, topic_arn: str) -> list[Resource]:
    return [
        s for s in ctx.repository.list(SERVICE, SUBSCRIPTION, ctx.namespace)
        if s.attributes["TopicArn"] == topic_arn
    ]


def _default_policy(ctx: OperationContext, topic_arn: str) -> str:
    account = ctx.config.account_id
    return json.dumps(
        {
            "Version": "2008-10-17",
            "Id": "__default_policy_ID",
            "Statement": [
                {
                    "Sid": "__default_statement_ID",
                    "Effect": "Allow",
                    "Principal": {"AWS": "*"},
                    "Action": [
                        "SNS:GetTopicAttributes",
                        "SNS:SetTopicAttributes",
                        "SNS:AddPermission",
                        "SNS:RemovePermission",
                        "SNS:DeleteTopic",
                        "SNS:Subscribe",
                        "SNS:ListSubscriptionsByTopic",
                        "SNS:Publish",
                    ],
                    "Resource": topic_arn,
                    "Condition": {"StringEquals": {"AWS:SourceOwner": account}},
                }
            ],
        },
        separators=(",", ":"),
    )


def create_topic(ctx: OperationContext) -> OperationResult:
    name = ctx.require("Name")
    attributes = _entries(ctx)
    unknown = sorted(set(attributes) - TOPIC_ATTRIBUTES - CREATE_ONLY_TOPIC_ATTRIBUTES)
    if unknown:
        raise _invalid(f"Attributes Reason: Unknown attribute {unknown[0]}")

    is_fifo = attributes.get("FifoTopic", "false").lower() == "true"
    bare = name[: -len(FIFO_SUFFIX)] if is_fifo and name.endswith(FIFO_SUFFIX) else name
    if not TOPIC_NAME_PATTERN.match(bare) or is_fifo != name.endswith(FIFO_SUFFIX):
        raise _invalid(
            "Topic Name Reason: Topic names must be made up of only uppercase and lowercase "
            "ASCII letters, numbers, underscores, and hyphens, and must be between 1 and 256 "
            "characters long. FIFO topic names must end with .fifo."
        )
    if "FifoTopic" in attributes:
        attributes["FifoTopic"] = "true" if is_fifo else "false"

    arn = ctx.arn(name)
    outcome = ctx.repository.create(
        arn, SERVICE, TOPIC, ctx.namespace, {"Name": name, "Attributes": attributes}
    )
    if outcome.created:
        tags = tagging.from_tag_list(ctx.indexed_members("Tags.member"))
        if tags:
            tagging.tag_resource(ctx.repository, ctx.namespace, arn, tags, resource_type=TOPIC)
        logger.info("Created topic", extra={"topic": name, "namespace": ctx.namespace})
    return OperationResult({"TopicArn": outcome.resource.attributes["TopicArn"]})


def delete_topic(ctx: OperationContext) -> OperationResult:
    """Delete a topic and its subscriptions; a missing topic is not an error."""
    arn = ctx.require("TopicArn")
    if ctx.repository.find(arn, SERVICE, TOPIC, ctx.namespace) is not None:
        for subscription in _topic_subscriptions(ctx, arn):
            ctx.repository.delete(subscription.identifier, SERVICE, SUBSCRIPTION, ctx.namespace)
        ctx.repository.delete(arn, SERVICE, TOPIC, ctx.namespace)
        tagging.delete_tags(ctx.repository, ctx.namespace, arn)
        logger.info("Deleted topic", extra={"topic": arn, "namespace": ctx.namespace})
    return OperationResult(None)


def list_topics(ctx: OperationContext) -> OperationResult:
    arns = [t.attributes["TopicArn"] for t in ctx.repository.list(SERVICE, TOPIC, ctx.namespace)]
    page, next_token = _page(ctx, sorted(arns))
    payload: dict[str, Any] = {"Topics": {"member": [{"TopicArn": arn} for arn in page]}}
    if next_token:
        payload["NextToken"] = next_token
    return OperationResult(payload)


def get_topic_attributes(ctx: OperationContext) -> OperationResult:
    topic = _get_topic(ctx, retry=True)
    arn = topic.attributes["TopicArn"]
    confirmed = len(_topic_subscriptions(ctx, arn))

    attributes = {
        "TopicArn": arn,
        "Owner": ctx.config.account_id,
        "Policy": _default_policy(ctx, arn),
        "SubscriptionsConfirmed": str(confirmed),
        "SubscriptionsPending": "0",
        "SubscriptionsDeleted": "0",
        "EffectiveDeliveryPolicy": json.dumps(_DEFAULT_DELIVERY_POLICY, separators=(",", ":")),
    }
    attributes.update(topic.attributes["Attributes"])
    return OperationResult({"Attributes": _attribute_entries(attributes)})


def set_topic_attributes(ctx: OperationContext) -> OperationResult:
    """Set one topic attribute; an empty value removes it."""
    topic = _get_topic(ctx)
    name = ctx.require("AttributeName")
    if name not in TOPIC_ATTRIBUTES:
        raise _invalid(f"AttributeName Reason: Unknown attribute {name}")
    value = ctx.get("AttributeValue", "")

    stored = dict(topic.attributes)
    attributes = dict(stored["Attributes"])
    if value == "":
        attributes.pop(name, None)
    else:
        attributes[name] = str(value)
    stored["Attributes"] = attributes
    ctx.repository.replace(topic, stored)
    return OperationResult(None)


def subscribe(ctx: OperationContext) -> OperationResult:
    topic = _get_topic(ctx)
    protocol = ctx.require("Protocol")
    if protocol not in PROTOCOLS:
        raise _invalid(f"Amazon SNS does not support this protocol string: {protocol}")
    endpoint = ctx.require("Endpoint")
    attributes = _entries(ctx)
    unknown = sorted(set(attributes) - SUBSCRIPTION_ATTRIBUTES)
    if unknown:
        raise _invalid(f"Attributes Reason: Unknown attribute {unknown[0]}")

    topic_arn = topic.attributes["TopicArn"]
    arn = f"{topic_arn}:{deterministic_uuid(f'{topic_arn}|{protocol}|{endpoint}')}"
    outcome = ctx.repository.create(
        arn,
        SERVICE,
        SUBSCRIPTION,
        ctx.namespace,
        {
            "SubscriptionArn": arn,
            "TopicArn": topic_arn,
            "Protocol": protocol,
            "Endpoint": endpoint,
            "Owner": ctx.config.account_id,
            "Attributes": attributes,
        },
    )
    if outcome.created:
        logger.info(
            "Created subscription",
            extra={"topic": topic_arn, "protocol": protocol, "namespace": ctx.namespace},
        )
    return OperationResult({"SubscriptionArn": outcome.resource.attributes["SubscriptionArn"]})


def unsubscribe(ctx: OperationContext) -> OperationResult:
    arn = ctx.require("SubscriptionArn")
    if ctx.repository.find(arn, SERVICE, SUBSCRIPTION, ctx.namespace) is not None:
        ctx.repository.delete(arn, SERVICE, SUBSCRIPTION, ctx.namespace)
    return OperationResult(None)


def _subscription_members(subscriptions: list[Resource]) -> dict[str, Any]:
    return {
        "member": [
            {
                "SubscriptionArn": s.attributes["SubscriptionArn"],
                "Owner": s.attributes["Owner"],
                "Protocol": s.attributes["Protocol"],
                "Endpoint": s.attributes["Endpoint"],
                "TopicArn": s.attributes["TopicArn"],
            }
            for s in subscriptions
        ]
    }


def _subscription_list(ctx: OperationContext, subscriptions: list[Resource]) -> OperationResult:
    page, next_token = _page(ctx, subscriptions)
    payload: dict[str, Any] = {"Subscriptions": _subscription_members(page)}
    if next_token:
        payload["NextToken"] = next_token
    return OperationResult(payload)


def list_subscriptions(ctx: OperationContext) -> OperationResult:
    return _subscription_list(ctx, ctx.repository.list(SERVICE, SUBSCRIPTION, ctx.namespace))


def list_subscriptions_by_topic(ctx: OperationContext) -> OperationResult:
    topic = _get_topic(ctx, retry=True)
    return _subscription_list(ctx, _topic_subscriptions(ctx, topic.attributes["TopicArn"]))


def _get_subscription(ctx: OperationContext, retry: bool = False) -> Resource:
    return ctx.repository.get(
        ctx.require("SubscriptionArn"),
        SERVICE,
        SUBSCRIPTION,
        ctx.namespace,
        retry=retry,
        not_found=_subscription_not_found(),
    )


def get_subscription_attributes(ctx: OperationContext) -> OperationResult:
    subscription = _get_subscription(ctx, retry=True)
    stored = subscription.attributes
    attributes = {
        "SubscriptionArn": stored["SubscriptionArn"],
        "TopicArn": stored["TopicArn"],
        "Owner": stored["Owner"],
        "Protocol": stored["Protocol"],
        "Endpoint": stored["Endpoint"],
        "ConfirmationWasAuthenticated": "true",
        "PendingConfirmation": "false",
    }
    attributes.update(stored["Attributes"])
    return OperationResult({"Attributes": _attribute_entries(attributes)})


def set_subscription_attributes(ctx: OperationContext) -> OperationResult:
    subscription = _get_subscription(ctx)
    name = ctx.require("AttributeName")
    if name not in SUBSCRIPTION_ATTRIBUTES:
        raise _invalid(f"AttributeName Reason: Unknown attribute {name}")
    value = ctx.get("AttributeValue", "")

    stored = dict(subscription.attributes)
    attributes = dict(stored["Attributes"])
    if value == "":
        attributes.pop(name, None)
    else:
        attributes[name] = str(value)
    stored["Attributes"] = attributes
    ctx.repository.replace(subscription, stored)
    return OperationResult(None)


def _tagged_topic(ctx: OperationContext) -> Resource:
    return ctx.repository.get(
        ctx.require("ResourceArn"),
        SERVICE,
        TOPIC,
        ctx.namespace,
        not_found=ResourceNotFound("Resource does not exist", code="ResourceNotFound", status=404),
    )


def tag_resource(ctx: OperationContext) -> OperationResult:
    topic = _tagged_topic(ctx)
    tags = tagging.from_tag_list(ctx.indexed_members("Tags.member"))
    if not tags:
        raise _invalid("Tags Reason: Tags must not be empty")
    tagging.tag_resource(ctx.repository, ctx.namespace, topic.identifier, tags, resource_type=TOPIC)
    return OperationResult({})


def untag_resource(ctx: OperationContext) -> OperationResult:
    topic = _tagged_topic(ctx)
    keys = ctx.indexed_list("TagKeys.member")
    tagging.untag_resource(ctx.repository, ctx.namespace, topic.identifier, keys)
    return OperationResult({})


def list_tags_for_resource(ctx: OperationContext) -> OperationResult:
    topic = _tagged_topic(ctx)
    tags = tagging.get_tags(ctx.repository, ctx.namespace, topic.identifier)
    return OperationResult({"Tags": {"member": tagging.to_tag_list(tags)}})


HANDLERS = {
    "CreateTopic": create_topic,
    "DeleteTopic": delete_topic,
    "ListTopics": list_topics,
    "GetTopicAttributes": get_topic_attributes,
    "SetTopicAttributes": set_topic_attributes,
    "Subscribe": subscribe,
    "Unsubscribe": unsubscribe,
    "ListSubscriptions": list_subscriptions,
    "ListSubscriptionsByTopic": list_subscriptions_by_topic,
    "GetSubscriptionAttributes": get_subscription_attributes,
    "SetSubscriptionAttributes": set_subscription_attributes,
    "TagResource": tag_resource,
    "UntagResource": untag_resource,
    "ListTagsForResource": list_tags_for_resource,
}


def register(registry: OperationRegistry) -> None:
    """Register the SNS descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
