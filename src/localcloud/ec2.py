"""EC2 control plane: instances, volumes, attachments and tags.

Query convention with EC2 markup (lists are ``<set><item>`` and the request
id is the first child of the response). Stored attributes use the provider's
lowerCamel member names so they render without translation.

Volume status is never stored. It is derived from the attachment entities
on every read, so terminating an instance or detaching a volume cannot leave
a stale "in-use" behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from . import tagging
from .errors import (
    MissingParameter,
    ResourceInUse,
    ResourceNotFound,
    ValidationException,
)
from .identifiers import deterministic_token, prefixed_id
from .models import CreateVolumeInput, parse_model
from .protocol import (
    OperationContext,
    OperationRegistry,
    OperationResult,
    ServiceDescriptor,
    indexed_list,
    indexed_members,
)
from .store import Resource
from .xmlcodec import MarkupStyle

logger = logging.getLogger(__name__)

SERVICE = "ec2"
INSTANCE = "instance"
VOLUME = "volume"
ATTACHMENT = "volume-attachment"

DEFAULT_INSTANCE_TYPE = "m1.small"
MAX_INSTANCES_PER_CALL = 100

STATE_RUNNING = {"code": 16, "name": "running"}
STATE_TERMINATED = {"code": 48, "name": "terminated"}

OPERATIONS = frozenset(
    {
        "RunInstances",
        "DescribeInstances",
        "TerminateInstances",
        "CreateVolume",
        "DescribeVolumes",
        "DeleteVolume",
        "AttachVolume",
        "DetachVolume",
        "CreateTags",
        "DeleteTags",
        "DescribeTags",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    query_operations=OPERATIONS,
    api_version="2016-11-15",
    xml_namespace="http://ec2.amazonaws.com/doc/2016-11-15/",
    markup_style=MarkupStyle.EC2,
)

ENTITY_TYPES = ("ec2/instance", "ec2/volume", "ec2/volume-attachment", "tagging/tags")


def _now() -> str:
    now = datetime.now(UTC)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _instance_not_found(instance_id: str) -> ResourceNotFound:
    return ResourceNotFound(
        f"The instance ID '{instance_id}' does not exist", code="InvalidInstanceID.NotFound"
    )


def _volume_not_found(volume_id: str) -> ResourceNotFound:
    return ResourceNotFound(
        f"The volume '{volume_id}' does not exist.", code="InvalidVolume.NotFound"
    )


def _attachment_identifier(volume_id: str) -> str:
    return f"{volume_id}:attachment"


def _private_ip(instance_id: str) -> str:
    token = deterministic_token(instance_id, 4)
    return f"10.0.{int(token[:2], 16)}.{int(token[2:], 16) % 250 + 4}"


def _filters(ctx: OperationContext) -> dict[str, list[str]]:
    """``Filter.N.Name`` / ``Filter.N.Value.M`` as name -> values."""
    return {
        member["Name"]: [str(v) for v in indexed_list(member, "Value")]
        for member in indexed_members(ctx.params, "Filter")
        if member.get("Name")
    }


def _tag_specifications(ctx: OperationContext, resource_type: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for spec in indexed_members(ctx.params, "TagSpecification"):
        if spec.get("ResourceType", resource_type) == resource_type:
            tags.update(tagging.from_tag_list(indexed_members(spec, "Tag")))
    return tags


def _tag_set(ctx: OperationContext, resource_id: str) -> list[dict[str, str]]:
    tags = tagging.get_tags(ctx.repository, ctx.namespace, resource_id)
    return tagging.to_tag_list(tags, key_name="key", value_name="value")


def _matches_tag_filters(tags: dict[str, str], filters: dict[str, list[str]]) -> bool:
    for name, values in filters.items():
        if name.startswith("tag:"):
            if tags.get(name[len("tag:"):]) not in values:
                return False
        elif name == "tag-key" and not set(values) & set(tags):
            return False
    return True


def _attachment(ctx: OperationContext, volume_id: str) -> Resource | None:
    return ctx.repository.find(_attachment_identifier(volume_id), SERVICE, ATTACHMENT, ctx.namespace)


# =============================================================================
# Instances
# =============================================================================


def _instance_payload(ctx: OperationContext, instance: Resource) -> dict[str, Any]:
    payload = {k: v for k, v in instance.attributes.items() if k != "reservationId"}
    tags = _tag_set(ctx, instance.identifier)
    if tags:
        payload["tagSet"] = tags
    return payload


def run_instances(ctx: OperationContext) -> OperationResult:
    image_id = ctx.require("ImageId")
    min_count = ctx.int_param("MinCount", 1, code="InvalidParameterValue")
    max_count = ctx.int_param("MaxCount", min_count, code="InvalidParameterValue")
    if min_count < 1 or max_count < min_count:
        raise ValidationException(
            "MinCount must be at least 1 and not greater than MaxCount",
            code="InvalidParameterValue",
        )
    if max_count > MAX_INSTANCES_PER_CALL:
        raise ValidationException(
            f"You have requested more instances ({max_count}) than your current instance "
            f"limit of {MAX_INSTANCES_PER_CALL} allows",
            code="InstanceLimitExceeded",
        )

    reservation_id = prefixed_id("r")
    zone = ctx.get("Placement.AvailabilityZone") or f"{ctx.config.region}a"
    group_ids = indexed_list(ctx.params, "SecurityGroupId")
    tags = _tag_specifications(ctx, "instance")
    launch_time = _now()

    instances = []
    for index in range(max_count):
        instance_id = prefixed_id("i")
        attributes: dict[str, Any] = {
            "instanceId": instance_id,
            "imageId": image_id,
            "instanceType": ctx.get("InstanceType", DEFAULT_INSTANCE_TYPE),
            "instanceState": dict(STATE_RUNNING),
            "privateIpAddress": _private_ip(instance_id),
            "amiLaunchIndex": index,
            "launchTime": launch_time,
            "placement": {"availabilityZone": zone, "tenancy": "default"},
            "monitoring": {"state": "disabled"},
            "reservationId": reservation_id,
        }
        if ctx.get("KeyName"):
            attributes["keyName"] = ctx.get("KeyName")
        if group_ids:
            attributes["groupSet"] = [{"groupId": g, "groupName": g} for g in group_ids]

        instance = ctx.repository.create(
            instance_id, SERVICE, INSTANCE, ctx.namespace, attributes
        ).resource
        if tags:
            tagging.tag_resource(ctx.repository, ctx.namespace, instance_id, tags, resource_type="instance")
        instances.append(instance)

    logger.info(
        "Launched instances",
        extra={"reservation_id": reservation_id, "count": len(instances), "namespace": ctx.namespace},
    )
    return OperationResult(
        {
            "reservationId": reservation_id,
            "ownerId": ctx.config.account_id,
            "groupSet": [],
            "instancesSet": [_instance_payload(ctx, i) for i in instances],
        }
    )


def describe_instances(ctx: OperationContext) -> OperationResult:
    instance_ids = indexed_list(ctx.params, "InstanceId")
    filters = _filters(ctx)

    if instance_ids:
        instances = [
            ctx.repository.get(
                i, SERVICE, INSTANCE, ctx.namespace, retry=True, not_found=_instance_not_found(i)
            )
            for i in instance_ids
        ]
    else:
        instances = ctx.repository.list(SERVICE, INSTANCE, ctx.namespace)

    selected = []
    for instance in instances:
        attributes = instance.attributes
        if "instance-id" in filters and instance.identifier not in filters["instance-id"]:
            continue
        if "instance-state-name" in filters and (
            attributes["instanceState"]["name"] not in filters["instance-state-name"]
        ):
            continue
        if "instance-type" in filters and attributes.get("instanceType") not in filters["instance-type"]:
            continue
        if not _matches_tag_filters(
            tagging.get_tags(ctx.repository, ctx.namespace, instance.identifier), filters
        ):
            continue
        selected.append(instance)

    reservations: dict[str, list[Resource]] = {}
    for instance in selected:
        reservations.setdefault(instance.attributes.get("reservationId", ""), []).append(instance)

    return OperationResult(
        {
            "reservationSet": [
                {
                    "reservationId": reservation_id,
                    "ownerId": ctx.config.account_id,
                    "groupSet": [],
                    "instancesSet": [_instance_payload(ctx, i) for i in members],
                }
                for reservation_id, members in reservations.items()
            ]
        }
    )


def terminate_instances(ctx: OperationContext) -> OperationResult:
    instance_ids = indexed_list(ctx.params, "InstanceId")
    if not instance_ids:
        raise MissingParameter("The request must contain the parameter InstanceId")

    instances = [
        ctx.repository.get(i, SERVICE, INSTANCE, ctx.namespace, not_found=_instance_not_found(i))
        for i in instance_ids
    ]

    attachments = ctx.repository.list(SERVICE, ATTACHMENT, ctx.namespace)
    changes = []
    for instance in instances:
        previous = dict(instance.attributes["instanceState"])
        attributes = instance.attributes
        attributes["instanceState"] = dict(STATE_TERMINATED)
        ctx.repository.replace(instance, attributes)

        for attachment in attachments:
            if attachment.attributes.get("instanceId") == instance.identifier:
                ctx.repository.delete(attachment.identifier, SERVICE, ATTACHMENT, ctx.namespace)

        changes.append(
            {
                "instanceId": instance.identifier,
                "currentState": dict(STATE_TERMINATED),
                "previousState": previous,
            }
        )

    logger.info(
        "Terminated instances", extra={"count": len(changes), "namespace": ctx.namespace}
    )
    return OperationResult({"instancesSet": changes})


# =============================================================================
# Volumes
# =============================================================================


def _volume_payload(ctx: OperationContext, volume: Resource) -> dict[str, Any]:
    payload = dict(volume.attributes)
    attachment = _attachment(ctx, volume.identifier)
    payload["status"] = "in-use" if attachment is not None else "available"
    payload["attachmentSet"] = [attachment.attributes] if attachment is not None else []
    tags = _tag_set(ctx, volume.identifier)
    if tags:
        payload["tagSet"] = tags
    return payload


def create_volume(ctx: OperationContext) -> OperationResult:
    ctx.require("AvailabilityZone")
    request = parse_model(CreateVolumeInput, ctx.params)
    if request.size is None and request.snapshot_id is None:
        raise MissingParameter("The request must contain the parameter size/snapshotId")

    volume_id = prefixed_id("vol")
    attributes: dict[str, Any] = {
        "volumeId": volume_id,
        "size": request.size,
        "availabilityZone": request.availability_zone,
        "createTime": _now(),
        "volumeType": request.volume_type,
        "encrypted": request.encrypted,
        "snapshotId": request.snapshot_id or "",
    }
    if request.iops is not None:
        attributes["iops"] = request.iops
    if request.throughput is not None:
        attributes["throughput"] = request.throughput
    if request.kms_key_id:
        attributes["kmsKeyId"] = request.kms_key_id

    volume = ctx.repository.create(volume_id, SERVICE, VOLUME, ctx.namespace, attributes).resource
    tags = _tag_specifications(ctx, "volume")
    if tags:
        tagging.tag_resource(ctx.repository, ctx.namespace, volume_id, tags, resource_type="volume")

    logger.info("Created volume", extra={"volume_id": volume_id, "namespace": ctx.namespace})
    payload = _volume_payload(ctx, volume)
    payload.pop("attachmentSet")
    payload["status"] = "creating"
    return OperationResult(payload)


def describe_volumes(ctx: OperationContext) -> OperationResult:
    volume_ids = indexed_list(ctx.params, "VolumeId")
    filters = _filters(ctx)

    if volume_ids:
        volumes = [
            ctx.repository.get(
                v, SERVICE, VOLUME, ctx.namespace, retry=True, not_found=_volume_not_found(v)
            )
            for v in volume_ids
        ]
    else:
        volumes = ctx.repository.list(SERVICE, VOLUME, ctx.namespace)

    payloads = []
    for volume in volumes:
        payload = _volume_payload(ctx, volume)
        if "volume-id" in filters and volume.identifier not in filters["volume-id"]:
            continue
        if "status" in filters and payload["status"] not in filters["status"]:
            continue
        if "attachment.instance-id" in filters and not any(
            a["instanceId"] in filters["attachment.instance-id"] for a in payload["attachmentSet"]
        ):
            continue
        if not _matches_tag_filters(
            tagging.get_tags(ctx.repository, ctx.namespace, volume.identifier), filters
        ):
            continue
        payloads.append(payload)

    return OperationResult({"volumeSet": payloads})


def delete_volume(ctx: OperationContext) -> OperationResult:
    volume_id = ctx.require("VolumeId")
    ctx.repository.get(volume_id, SERVICE, VOLUME, ctx.namespace, not_found=_volume_not_found(volume_id))
    if _attachment(ctx, volume_id) is not None:
        raise ResourceInUse(f"Volume {volume_id} is currently attached", code="VolumeInUse")

    ctx.repository.delete(volume_id, SERVICE, VOLUME, ctx.namespace, not_found=_volume_not_found(volume_id))
    tagging.delete_tags(ctx.repository, ctx.namespace, volume_id)
    logger.info("Deleted volume", extra={"volume_id": volume_id, "namespace": ctx.namespace})
    return OperationResult({"return": True})


def attach_volume(ctx: OperationContext) -> OperationResult:
    volume_id = ctx.require("VolumeId")
    instance_id = ctx.require("InstanceId")
    device = ctx.require("Device")

    ctx.repository.get(volume_id, SERVICE, VOLUME, ctx.namespace, not_found=_volume_not_found(volume_id))
    instance = ctx.repository.get(
        instance_id, SERVICE, INSTANCE, ctx.namespace, not_found=_instance_not_found(instance_id)
    )
    if instance.attributes["instanceState"]["name"] == "terminated":
        raise ValidationException(
            f"The instance '{instance_id}' is not in a valid state for this operation.",
            code="IncorrectInstanceState",
        )

    existing = _attachment(ctx, volume_id)
    if existing is not None and existing.attributes["instanceId"] != instance_id:
        raise ResourceInUse(
            f"{volume_id} is already attached to an instance", code="VolumeInUse"
        )

    outcome = ctx.repository.create(
        _attachment_identifier(volume_id),
        SERVICE,
        ATTACHMENT,
        ctx.namespace,
        {
            "volumeId": volume_id,
            "instanceId": instance_id,
            "device": device,
            "status": "attached",
            "attachTime": _now(),
            "deleteOnTermination": False,
        },
    )
    if outcome.created:
        logger.info(
            "Attached volume",
            extra={"volume_id": volume_id, "instance_id": instance_id, "namespace": ctx.namespace},
        )
    return OperationResult(dict(outcome.resource.attributes))


def detach_volume(ctx: OperationContext) -> OperationResult:
    volume_id = ctx.require("VolumeId")
    ctx.repository.get(volume_id, SERVICE, VOLUME, ctx.namespace, not_found=_volume_not_found(volume_id))

    attachment = _attachment(ctx, volume_id)
    if attachment is None:
        raise ValidationException(
            f"Volume '{volume_id}' is in the 'available' state.", code="IncorrectState"
        )
    instance_id = ctx.get("InstanceId")
    if instance_id and attachment.attributes["instanceId"] != instance_id:
        raise ResourceNotFound(
            f"The volume {volume_id} is not attached to instance {instance_id}",
            code="InvalidAttachment.NotFound",
        )

    ctx.repository.delete(attachment.identifier, SERVICE, ATTACHMENT, ctx.namespace)
    payload = dict(attachment.attributes)
    payload["status"] = "detaching"
    return OperationResult(payload)


# =============================================================================
# Tags
# =============================================================================

_RESOURCE_PREFIXES: dict[str, tuple[str, str, Callable[[str], ResourceNotFound]]] = {
    "i-": (INSTANCE, "instance", _instance_not_found),
    "vol-": (VOLUME, "volume", _volume_not_found),
}


def _resource_type_of(ctx: OperationContext, resource_id: str) -> str:
    """Check that a taggable resource exists and return its tag resource type."""
    for prefix, (entity, resource_type, not_found) in _RESOURCE_PREFIXES.items():
        if resource_id.startswith(prefix):
            ctx.repository.get(resource_id, SERVICE, entity, ctx.namespace, not_found=not_found(resource_id))
            return resource_type
    raise ValidationException(f"Invalid id: \"{resource_id}\"", code="InvalidID")


def create_tags(ctx: OperationContext) -> OperationResult:
    resource_ids = indexed_list(ctx.params, "ResourceId")
    if not resource_ids:
        raise MissingParameter("The request must contain the parameter resourceIdSet")
    tags = tagging.from_tag_list(indexed_members(ctx.params, "Tag"))
    if not tags:
        raise MissingParameter("The request must contain the parameter tagSet")

    types = {resource_id: _resource_type_of(ctx, resource_id) for resource_id in resource_ids}
    for resource_id, resource_type in types.items():
        tagging.tag_resource(ctx.repository, ctx.namespace, resource_id, tags, resource_type=resource_type)
    return OperationResult({"return": True})


def delete_tags(ctx: OperationContext) -> OperationResult:
    resource_ids = indexed_list(ctx.params, "ResourceId")
    if not resource_ids:
        raise MissingParameter("The request must contain the parameter resourceIdSet")
    requested = indexed_members(ctx.params, "Tag")

    for resource_id in resource_ids:
        current = tagging.get_tags(ctx.repository, ctx.namespace, resource_id)
        if not requested:
            keys = list(current)
        else:
            keys = [
                t["Key"] for t in requested
                if t.get("Key") in current and ("Value" not in t or current[t["Key"]] == t["Value"])
            ]
        tagging.untag_resource(ctx.repository, ctx.namespace, resource_id, keys)
    return OperationResult({"return": True})


def describe_tags(ctx: OperationContext) -> OperationResult:
    filters = _filters(ctx)
    rows = []
    for tag_set in tagging.list_tag_sets(ctx.repository, ctx.namespace):
        resource_type = tag_set.get("ResourceType")
        if resource_type not in ("instance", "volume"):
            continue
        resource_id = tag_set["ResourceKey"]
        for key, value in sorted(tag_set.get("Tags", {}).items()):
            row = {"resourceId": resource_id, "resourceType": resource_type, "key": key, "value": value}
            if "resource-id" in filters and resource_id not in filters["resource-id"]:
                continue
            if "resource-type" in filters and resource_type not in filters["resource-type"]:
                continue
            if "key" in filters and key not in filters["key"]:
                continue
            if "value" in filters and value not in filters["value"]:
                continue
            rows.append(row)
    return OperationResult({"tagSet": rows})


HANDLERS = {
    "RunInstances": run_instances,
    "DescribeInstances": describe_instances,
    "TerminateInstances": terminate_instances,
    "CreateVolume": create_volume,
    "DescribeVolumes": describe_volumes,
    "DeleteVolume": delete_volume,
    "AttachVolume": attach_volume,
    "DetachVolume": detach_volume,
    "CreateTags": create_tags,
    "DeleteTags": delete_tags,
    "DescribeTags": describe_tags,
}


def register(registry: OperationRegistry) -> None:
    """Register the EC2 descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
