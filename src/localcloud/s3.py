"""S3 bucket control plane: buckets and their configuration subresources.

REST convention at the root path, one bucket per ``/{Bucket}`` segment.
Configuration calls are told apart by their query subresource
(``PUT /{Bucket}?versioning``). Responses use the bare markup style, so
every handler names its own root element.

Buckets are stored under their ARN. Object storage is not emulated.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

from . import tagging
from .errors import MissingParameter, ResourceAlreadyExists, ResourceNotFound, ValidationException
from .identifiers import build_arn, deterministic_token
from .protocol import (
    OperationContext,
    OperationRegistry,
    OperationResult,
    RestRoute,
    ServiceDescriptor,
)
from .store import Resource
from .xmlcodec import MarkupStyle, ensure_list, format_scalar, render_text

logger = logging.getLogger(__name__)

SERVICE = "s3"
BUCKET = "bucket"

XMLNS = "http://s3.amazonaws.com/doc/2006-03-01/"
OWNER_DISPLAY_NAME = "localcloud"

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
IP_ADDRESS_PATTERN = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
VERSIONING_STATES = frozenset({"Enabled", "Suspended"})
LIFECYCLE_STATES = frozenset({"Enabled", "Disabled"})
MALFORMED_XML_MESSAGE = (
    "The XML you provided was not well-formed or did not validate against our published schema"
)
MALFORMED_POLICY_MESSAGE = "Policies must be valid JSON and the first byte must be '{'"

ALL_USERS = "http://acs.amazonaws.com/groups/global/AllUsers"
AUTHENTICATED_USERS = "http://acs.amazonaws.com/groups/global/AuthenticatedUsers"
LOG_DELIVERY = "http://acs.amazonaws.com/groups/s3/LogDelivery"

# Grants each canned ACL adds to the owner's FULL_CONTROL
CANNED_ACLS: dict[str, tuple[tuple[str, str], ...]] = {
    "private": (),
    "public-read": ((ALL_USERS, "READ"),),
    "public-read-write": ((ALL_USERS, "READ"), (ALL_USERS, "WRITE")),
    "authenticated-read": ((AUTHENTICATED_USERS, "READ"),),
    "aws-exec-read": (),
    "bucket-owner-read": (),
    "bucket-owner-full-control": (),
    "log-delivery-write": ((LOG_DELIVERY, "WRITE"), (LOG_DELIVERY, "READ_ACP")),
}

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    rest_routes=(
        RestRoute("GET", "/", "ListBuckets"),
        RestRoute("PUT", "/{Bucket}", "CreateBucket"),
        RestRoute("HEAD", "/{Bucket}", "HeadBucket"),
        RestRoute("DELETE", "/{Bucket}", "DeleteBucket"),
        RestRoute("GET", "/{Bucket}", "GetBucketLocation", subresource="location"),
        RestRoute("PUT", "/{Bucket}", "PutBucketVersioning", subresource="versioning"),
        RestRoute("GET", "/{Bucket}", "GetBucketVersioning", subresource="versioning"),
        RestRoute("PUT", "/{Bucket}", "PutBucketLifecycleConfiguration", subresource="lifecycle"),
        RestRoute("GET", "/{Bucket}", "GetBucketLifecycleConfiguration", subresource="lifecycle"),
        RestRoute("DELETE", "/{Bucket}", "DeleteBucketLifecycle", subresource="lifecycle"),
        RestRoute("PUT", "/{Bucket}", "PutBucketAcl", subresource="acl"),
        RestRoute("GET", "/{Bucket}", "GetBucketAcl", subresource="acl"),
        RestRoute("PUT", "/{Bucket}", "PutBucketPolicy", subresource="policy", raw_body=True),
        RestRoute("GET", "/{Bucket}", "GetBucketPolicy", subresource="policy"),
        RestRoute("DELETE", "/{Bucket}", "DeleteBucketPolicy", subresource="policy"),
        RestRoute("PUT", "/{Bucket}", "PutBucketTagging", subresource="tagging"),
        RestRoute("GET", "/{Bucket}", "GetBucketTagging", subresource="tagging"),
        RestRoute("DELETE", "/{Bucket}", "DeleteBucketTagging", subresource="tagging"),
    ),
    xml_namespace=XMLNS,
    markup_style=MarkupStyle.BARE,
    missing_parameter_code="InvalidRequest",
)

ENTITY_TYPES = ("s3/bucket", "tagging/tags")


def _bucket_arn(name: str) -> str:
    return build_arn(SERVICE, name, "", "")


def _empty(status: int = 200, headers: dict[str, str] | None = None) -> OperationResult:
    return OperationResult(status=status, headers=headers or {}, body=b"")


def _malformed() -> ValidationException:
    return ValidationException(MALFORMED_XML_MESSAGE, code="MalformedXML")


def _no_such_bucket() -> ResourceNotFound:
    return ResourceNotFound(
        "The specified bucket does not exist", code="NoSuchBucket", status=404
    )


def _get_bucket(ctx: OperationContext, retry: bool = False) -> Resource:
    name = ctx.require_path("Bucket")
    return ctx.repository.get(
        _bucket_arn(name), SERVICE, BUCKET, ctx.namespace, retry=retry, not_found=_no_such_bucket()
    )


def _update(ctx: OperationContext, bucket: Resource, **changes: Any) -> None:
    """Replace bucket attributes; a None value removes the key."""
    attributes = dict(bucket.attributes)
    for key, value in changes.items():
        if value is None:
            attributes.pop(key, None)
        else:
            attributes[key] = value
    ctx.repository.replace(bucket, attributes)


def _owner(ctx: OperationContext) -> dict[str, str]:
    return {
        "ID": deterministic_token(ctx.config.account_id, 64),
        "DisplayName": OWNER_DISPLAY_NAME,
    }


def _validate_bucket_name(name: str) -> None:
    if (
        not BUCKET_NAME_PATTERN.match(name)
        or ".." in name
        or IP_ADDRESS_PATTERN.match(name)
    ):
        raise ValidationException(
            "The specified bucket is not valid.", code="InvalidBucketName"
        )


def _canned_acl(ctx: OperationContext) -> str | None:
    acl = ctx.request.header("x-amz-acl")
    if acl is not None and acl not in CANNED_ACLS:
        raise ValidationException(f"Unsupported canned ACL: {acl}", code="InvalidArgument")
    return acl


def _canned_grants(acl: str, owner: dict[str, str]) -> list[dict[str, Any]]:
    grants: list[dict[str, Any]] = [{"Grantee": dict(owner), "Permission": "FULL_CONTROL"}]
    for uri, permission in CANNED_ACLS.get(acl, ()):
        grants.append({"Grantee": {"URI": uri}, "Permission": permission})
    return grants


def list_buckets(ctx: OperationContext) -> OperationResult:
    buckets = sorted(
        ctx.repository.list(SERVICE, BUCKET, ctx.namespace), key=lambda b: b.attributes["Name"]
    )
    payload = {
        "Owner": _owner(ctx),
        "Buckets": {
            "Bucket": [
                {"Name": b.attributes["Name"], "CreationDate": b.attributes["CreationDate"]}
                for b in buckets
            ]
        },
    }
    return OperationResult(payload, root_tag="ListAllMyBucketsResult")


def create_bucket(ctx: OperationContext) -> OperationResult:
    name = ctx.require_path("Bucket")
    _validate_bucket_name(name)
    acl = _canned_acl(ctx)
    location = ctx.get("LocationConstraint")
    if location is not None and not isinstance(location, str):
        raise _malformed()

    attributes: dict[str, Any] = {
        "Name": name,
        "CreationDate": format_scalar(datetime.now(UTC)),
    }
    if location:
        attributes["LocationConstraint"] = location
    if acl:
        attributes["Acl"] = acl

    ctx.repository.create(
        _bucket_arn(name),
        SERVICE,
        BUCKET,
        ctx.namespace,
        attributes,
        conflict=ResourceAlreadyExists(
            "Your previous request to create the named bucket succeeded and you already own it.",
            code="BucketAlreadyOwnedByYou",
            status=409,
        ),
    )
    logger.info("Created bucket", extra={"bucket": name, "namespace": ctx.namespace})
    return _empty(headers={"Location": f"/{name}"})


def head_bucket(ctx: OperationContext) -> OperationResult:
    _get_bucket(ctx, retry=True)
    return _empty()


def delete_bucket(ctx: OperationContext) -> OperationResult:
    """Delete a bucket; deleting a missing bucket succeeds."""
    name = ctx.require_path("Bucket")
    identifier = _bucket_arn(name)
    if ctx.repository.find(identifier, SERVICE, BUCKET, ctx.namespace) is not None:
        ctx.repository.delete(identifier, SERVICE, BUCKET, ctx.namespace)
        tagging.delete_tags(ctx.repository, ctx.namespace, identifier)
        logger.info("Deleted bucket", extra={"bucket": name, "namespace": ctx.namespace})
    return _empty(status=204)


def get_bucket_location(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    return OperationResult(
        body=render_text("LocationConstraint", bucket.attributes.get("LocationConstraint"), XMLNS)
    )


def put_bucket_versioning(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx)
    status = ctx.get("Status")
    if status not in VERSIONING_STATES:
        raise _malformed()
    _update(ctx, bucket, Versioning={"Status": status})
    return _empty()


def get_bucket_versioning(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    return OperationResult(
        {"Status": bucket.attributes["Versioning"]["Status"]},
        root_tag="VersioningConfiguration",
    )


def put_bucket_lifecycle(ctx: OperationContext) -> OperationResult:
    """Store lifecycle rules; a body without rules removes the configuration."""
    bucket = _get_bucket(ctx)
    rules = ensure_list(ctx.get("Rule"))
    for rule in rules:
        if not isinstance(rule, dict) or rule.get("Status") not in LIFECYCLE_STATES:
            raise _malformed()
    _update(ctx, bucket, LifecycleRules=rules or None)
    return _empty()


def get_bucket_lifecycle(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    rules = bucket.attributes.get("LifecycleRules")
    if not rules:
        raise ResourceNotFound(
            "The lifecycle configuration does not exist",
            code="NoSuchLifecycleConfiguration",
            status=404,
        )
    return OperationResult({"Rule": rules}, root_tag="LifecycleConfiguration")


def delete_bucket_lifecycle(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx)
    _update(ctx, bucket, LifecycleRules=None)
    return _empty(status=204)


def put_bucket_acl(ctx: OperationContext) -> OperationResult:
    """Set a canned ACL from ``x-amz-acl`` or explicit grants from the body."""
    bucket = _get_bucket(ctx)
    acl = _canned_acl(ctx)
    if acl is not None:
        _update(ctx, bucket, Acl=acl, Grants=None)
        return _empty()

    access_list = ctx.get("AccessControlList")
    if access_list is None:
        raise MissingParameter(
            "Your request was missing a required header", code="MissingSecurityHeader"
        )
    if not isinstance(access_list, dict):
        raise _malformed()
    grants = ensure_list(access_list.get("Grant"))
    if not all(isinstance(g, dict) and g.get("Permission") for g in grants):
        raise _malformed()
    _update(ctx, bucket, Grants=grants)
    return _empty()


def get_bucket_acl(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    owner = _owner(ctx)
    grants = bucket.attributes.get("Grants") or _canned_grants(bucket.attributes["Acl"], owner)
    return OperationResult(
        {"Owner": owner, "AccessControlList": {"Grant": grants}},
        root_tag="AccessControlPolicy",
    )


def put_bucket_policy(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx)
    text = ctx.request.body.decode("utf-8", errors="replace").strip()
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationException(
            MALFORMED_POLICY_MESSAGE, code="MalformedPolicy"
        ) from e
    if not isinstance(document, dict):
        raise ValidationException(
            MALFORMED_POLICY_MESSAGE, code="MalformedPolicy"
        )
    _update(ctx, bucket, Policy=text)
    return _empty(status=204)


def get_bucket_policy(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    policy = bucket.attributes.get("Policy")
    if not policy:
        raise ResourceNotFound(
            "The bucket policy does not exist", code="NoSuchBucketPolicy", status=404
        )
    return OperationResult(body=policy.encode("utf-8"), media_type="application/json")


def delete_bucket_policy(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx)
    _update(ctx, bucket, Policy=None)
    return _empty(status=204)


def put_bucket_tagging(ctx: OperationContext) -> OperationResult:
    """Replace the bucket's whole tag set."""
    bucket = _get_bucket(ctx)
    tag_set = ctx.get("TagSet")
    if tag_set == "":
        tag_set = {}
    if not isinstance(tag_set, dict):
        raise _malformed()
    items = ensure_list(tag_set.get("Tag"))
    if not all(isinstance(item, dict) for item in items):
        raise _malformed()

    tags = tagging.from_tag_list(items)
    tagging.delete_tags(ctx.repository, ctx.namespace, bucket.identifier)
    if tags:
        tagging.tag_resource(ctx.repository, ctx.namespace, bucket.identifier, tags, resource_type=BUCKET)
    return _empty(status=204)


def get_bucket_tagging(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx, retry=True)
    tags = tagging.get_tags(ctx.repository, ctx.namespace, bucket.identifier)
    if not tags:
        raise ResourceNotFound("The TagSet does not exist", code="NoSuchTagSet", status=404)
    return OperationResult({"TagSet": {"Tag": tagging.to_tag_list(tags)}}, root_tag="Tagging")


def delete_bucket_tagging(ctx: OperationContext) -> OperationResult:
    bucket = _get_bucket(ctx)
    tagging.delete_tags(ctx.repository, ctx.namespace, bucket.identifier)
    return _empty(status=204)


HANDLERS = {
    "ListBuckets": list_buckets,
    "CreateBucket": create_bucket,
    "HeadBucket": head_bucket,
    "DeleteBucket": delete_bucket,
    "GetBucketLocation": get_bucket_location,
    "PutBucketVersioning": put_bucket_versioning,
    "GetBucketVersioning": get_bucket_versioning,
    "PutBucketLifecycleConfiguration": put_bucket_lifecycle,
    "GetBucketLifecycleConfiguration": get_bucket_lifecycle,
    "DeleteBucketLifecycle": delete_bucket_lifecycle,
    "PutBucketAcl": put_bucket_acl,
    "GetBucketAcl": get_bucket_acl,
    "PutBucketPolicy": put_bucket_policy,
    "GetBucketPolicy": get_bucket_policy,
    "DeleteBucketPolicy": delete_bucket_policy,
    "PutBucketTagging": put_bucket_tagging,
    "GetBucketTagging": get_bucket_tagging,
    "DeleteBucketTagging": delete_bucket_tagging,
}


def register(registry: OperationRegistry) -> None:
    """Register the S3 descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
