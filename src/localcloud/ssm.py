"""Systems Manager parameter store: parameters, versions and tags.

A parameter is stored under its ARN; names with and without a leading slash
share the ``parameter/`` ARN form. Overwriting a parameter bumps its version
in place; older versions are not kept. SecureString values are stored and
returned as given, since no key material is emulated.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any

from . import tagging
from .errors import ResourceAlreadyExists, ResourceNotFound, ValidationException
from .protocol import OperationContext, OperationRegistry, OperationResult, ServiceDescriptor
from .store import Resource

logger = logging.getLogger(__name__)

SERVICE = "ssm"
PARAMETER = "parameter"

PARAMETER_TYPES = frozenset({"String", "StringList", "SecureString"})
TIERS = frozenset({"Standard", "Advanced", "Intelligent-Tiering"})
DATA_TYPES = frozenset({"text", "aws:ec2:image", "aws:ssm:integration"})
DEFAULT_SECURE_KEY_ID = "alias/aws/ssm"
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-/]{1,2048}$")
MAX_VALUE_BYTES = {"Standard": 4096, "Advanced": 8192}
MAX_NAMES_PER_CALL = 10
DEFAULT_MAX_RESULTS = 50
MAX_RESULTS_LIMIT = 50

# Filter keys and the options each accepts; the first option is the default
PARAMETER_FILTER_OPTIONS = {
    "Name": ("Equals", "BeginsWith", "Contains"),
    "Path": ("OneLevel", "Recursive"),
    "Type": ("Equals",),
    "KeyId": ("Equals",),
    "DataType": ("Equals",),
    "Tier": ("Equals",),
}
LEGACY_FILTER_KEYS = frozenset({"Name", "Type", "KeyId"})

OPERATIONS = frozenset(
    {
        "PutParameter",
        "GetParameter",
        "GetParameters",
        "DeleteParameter",
        "DeleteParameters",
        "DescribeParameters",
        "AddTagsToResource",
        "RemoveTagsFromResource",
        "ListTagsForResource",
    }
)

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    json_operations=OPERATIONS,
    target_prefix="AmazonSSM",
    json_version="1.1",
    missing_parameter_code="ValidationException",
)

ENTITY_TYPES = ("ssm/parameter", "tagging/tags")


def _now() -> float:
    return datetime.now(UTC).timestamp()


def _parameter_arn(ctx: OperationContext, name: str) -> str:
    return ctx.arn(f"parameter/{name.lstrip('/')}")


def _not_found(name: str) -> ResourceNotFound:
    return ResourceNotFound(f"Parameter {name} not found.", code="ParameterNotFound")


def _find_parameter(ctx: OperationContext, value: str) -> Resource | None:
    """Look a parameter up by name or ARN."""
    identifier = value if value.startswith("arn:") else _parameter_arn(ctx, value)
    return ctx.repository.find(identifier, SERVICE, PARAMETER, ctx.namespace)


def _names(ctx: OperationContext) -> list[str]:
    names = ctx.typed_param("Names", list[str], required=True)
    if len(names) > MAX_NAMES_PER_CALL:
        raise ValidationException(
            f"Member must have length less than or equal to {MAX_NAMES_PER_CALL}"
        )
    return names


def _validate_name(name: str) -> None:
    if not NAME_PATTERN.match(name):
        raise ValidationException(
            "Parameter name: it must use only letters, numbers, or the following symbols: "
            ". (period), - (hyphen), _ (underscore), / (forward slash)."
        )
    if "/" in name and not name.startswith("/"):
        raise ValidationException(
            "Parameter name must be a fully qualified name.", code="ValidationException"
        )
    if name.lstrip("/").lower().startswith(("aws", "ssm")):
        raise ValidationException(
            "No access to reserved parameter name: " + name, code="AccessDeniedException"
        )


def _check_allowed_pattern(pattern: str | None, value: str) -> None:
    if not pattern:
        return
    try:
        matched = re.fullmatch(pattern, value) is not None
    except re.error as e:
        raise ValidationException(
            f"Parameter AllowedPattern is not a valid regular expression: {pattern}",
            code="InvalidAllowedPatternException",
        ) from e
    if not matched:
        raise ValidationException(
            f"Parameter value, cannot be validated against allowedPattern: {pattern}",
            code="ParameterPatternMismatchException",
        )


def _resolve_tier(requested: str | None, value: str) -> str:
    if requested is None or requested == "Intelligent-Tiering":
        return "Standard" if len(value.encode("utf-8")) <= MAX_VALUE_BYTES["Standard"] else "Advanced"
    if requested not in TIERS:
        raise ValidationException(f"Tier {requested} is not a valid parameter tier.")
    return requested


def _parameter_payload(attributes: dict[str, Any]) -> dict[str, Any]:
    return {
        "Name": attributes["Name"],
        "Type": attributes["Type"],
        "Value": attributes["Value"],
        "Version": attributes["Version"],
        "LastModifiedDate": attributes["LastModifiedDate"],
        "ARN": attributes["ARN"],
        "DataType": attributes["DataType"],
    }


def _metadata_payload(attributes: dict[str, Any]) -> dict[str, Any]:
    payload = {
        key: attributes[key]
        for key in (
            "Name",
            "ARN",
            "Type",
            "KeyId",
            "LastModifiedDate",
            "LastModifiedUser",
            "Description",
            "AllowedPattern",
            "Version",
            "Tier",
            "DataType",
        )
        if attributes.get(key) is not None
    }
    payload["Policies"] = []
    return payload


def put_parameter(ctx: OperationContext) -> OperationResult:
    name = ctx.require("Name")
    value = ctx.require("Value")
    if not isinstance(name, str) or not isinstance(value, str):
        raise ValidationException("Name and Value must be strings.")
    _validate_name(name)

    overwrite = bool(ctx.get("Overwrite", False))
    tags = ctx.typed_param("Tags", list[dict], default=[])
    if tags and overwrite:
        raise ValidationException(
            "Invalid request: tags and overwrite can't be used together. To create a parameter "
            "with tags, please remove overwrite flag. To update tags for an existing parameter, "
            "please use AddTagsToResource or RemoveTagsFromResource."
        )

    existing = _find_parameter(ctx, name)
    type = ctx.get("Type") or (existing.attributes["Type"] if existing else "String")
    if type not in PARAMETER_TYPES:
        raise ValidationException(
            f"1 validation error detected: Value '{type}' at 'type' failed to satisfy constraint: "
            "Member must satisfy enum value set: [SecureString, StringList, String]"
        )
    data_type = ctx.get("DataType", "text")
    if data_type not in DATA_TYPES:
        raise ValidationException(
            f"The following data type is not supported: {data_type}", code="UnsupportedParameterType"
        )
    tier = _resolve_tier(ctx.get("Tier"), value)
    if len(value.encode("utf-8")) > MAX_VALUE_BYTES[tier]:
        raise ValidationException(
            f"Parameter value exceeds the {tier} tier limit of {MAX_VALUE_BYTES[tier]} bytes."
        )
    allowed_pattern = ctx.get("AllowedPattern")
    _check_allowed_pattern(allowed_pattern, value)

    attributes: dict[str, Any] = {
        "Name": name,
        "Type": type,
        "Value": value,
        "Tier": tier,
        "DataType": data_type,
        "LastModifiedDate": _now(),
        "LastModifiedUser": f"arn:aws:iam::{ctx.config.account_id}:root",
    }
    if ctx.get("Description") is not None:
        attributes["Description"] = ctx.get("Description")
    if allowed_pattern:
        attributes["AllowedPattern"] = allowed_pattern
    if type == "SecureString":
        attributes["KeyId"] = ctx.get("KeyId") or DEFAULT_SECURE_KEY_ID

    if existing is not None:
        if not overwrite:
            raise ResourceAlreadyExists(
                "The parameter already exists. To overwrite this value, set the overwrite "
                "option in the request to true.",
                code="ParameterAlreadyExists",
            )
        attributes["Version"] = existing.attributes["Version"] + 1
        parameter = ctx.repository.replace(existing, attributes)
    else:
        attributes["Version"] = 1
        parameter = ctx.repository.create(
            _parameter_arn(ctx, name),
            SERVICE,
            PARAMETER,
            ctx.namespace,
            attributes,
            conflict=ResourceAlreadyExists(
                "The parameter already exists. To overwrite this value, set the overwrite "
                "option in the request to true.",
                code="ParameterAlreadyExists",
            ),
        ).resource
        tag_map = tagging.from_tag_list(tags)
        if tag_map:
            tagging.tag_resource(
                ctx.repository, ctx.namespace, parameter.identifier, tag_map, resource_type="Parameter"
            )

    logger.info(
        "Put parameter",
        extra={"parameter": name, "version": attributes["Version"], "namespace": ctx.namespace},
    )
    return OperationResult({"Version": attributes["Version"], "Tier": tier})


def get_parameter(ctx: OperationContext) -> OperationResult:
    name = ctx.require("Name")
    parameter = _find_parameter(ctx, name)
    if parameter is None:
        raise _not_found(name)
    return OperationResult({"Parameter": _parameter_payload(parameter.attributes)})


def get_parameters(ctx: OperationContext) -> OperationResult:
    found: list[dict[str, Any]] = []
    invalid: list[str] = []
    for name in _names(ctx):
        parameter = _find_parameter(ctx, name)
        if parameter is None:
            invalid.append(name)
        else:
            found.append(_parameter_payload(parameter.attributes))
    return OperationResult({"Parameters": found, "InvalidParameters": invalid})


def _delete(ctx: OperationContext, parameter: Resource) -> None:
    ctx.repository.delete(parameter.identifier, SERVICE, PARAMETER, ctx.namespace)
    tagging.delete_tags(ctx.repository, ctx.namespace, parameter.identifier)
    logger.info(
        "Deleted parameter",
        extra={"parameter": parameter.attributes["Name"], "namespace": ctx.namespace},
    )


def delete_parameter(ctx: OperationContext) -> OperationResult:
    name = ctx.require("Name")
    parameter = _find_parameter(ctx, name)
    if parameter is None:
        raise _not_found(name)
    _delete(ctx, parameter)
    return OperationResult({})


def delete_parameters(ctx: OperationContext) -> OperationResult:
    deleted: list[str] = []
    invalid: list[str] = []
    for name in _names(ctx):
        parameter = _find_parameter(ctx, name)
        if parameter is None:
            invalid.append(name)
        else:
            _delete(ctx, parameter)
            deleted.append(name)
    return OperationResult({"DeletedParameters": deleted, "InvalidParameters": invalid})


def _parameter_filters(ctx: OperationContext) -> list[tuple[str, str, list[str]]]:
    """Validated filters as (key, option, values) triples."""
    legacy = ctx.typed_param("Filters", list[dict], default=[])
    current = ctx.typed_param("ParameterFilters", list[dict], default=[])
    if legacy and current:
        raise ValidationException(
            "You can use either Filters or ParameterFilters in a single request."
        )

    filters: list[tuple[str, str, list[str]]] = []
    for item in legacy:
        key = item.get("Key")
        if key not in LEGACY_FILTER_KEYS:
            raise ValidationException(f"The filter key {key} is not valid.", code="InvalidFilterKey")
        values = item.get("Values")
        if not isinstance(values, list) or not values:
            raise ValidationException(f"The filter {key} requires values.", code="InvalidFilterValue")
        option = "BeginsWith" if key == "Name" else "Equals"
        filters.append((key, option, [str(v) for v in values]))

    for item in current:
        key = item.get("Key")
        if key not in PARAMETER_FILTER_OPTIONS:
            raise ValidationException(f"The filter key {key} is not valid.", code="InvalidFilterKey")
        options = PARAMETER_FILTER_OPTIONS[key]
        option = item.get("Option") or options[0]
        if option not in options:
            raise ValidationException(
                f"The filter option {option} is not valid for key {key}.", code="InvalidFilterOption"
            )
        values = item.get("Values", [])
        if not isinstance(values, list):
            raise ValidationException(f"The filter {key} requires values.", code="InvalidFilterValue")
        if key == "Path" and any(not str(v).startswith("/") for v in values):
            raise ValidationException(
                "The parameter doesn't meet the parameter name requirements. The parameter "
                "name must begin with a forward slash \"/\".",
                code="InvalidFilterValue",
            )
        filters.append((key, option, [str(v) for v in values]))
    return filters


def _filter_matches(attributes: dict[str, Any], key: str, option: str, values: list[str]) -> bool:
    name = attributes["Name"]
    match key, option:
        case "Name", "BeginsWith":
            return any(name.startswith(v) for v in values)
        case "Name", "Contains":
            return any(v in name for v in values)
        case "Path", _:
            for value in values:
                prefix = value.rstrip("/") + "/"
                if not name.startswith(prefix):
                    continue
                if option == "Recursive" or "/" not in name[len(prefix):]:
                    return True
            return False
        case _:
            return str(attributes.get(key)) in values


def describe_parameters(ctx: OperationContext) -> OperationResult:
    filters = _parameter_filters(ctx)
    max_results = ctx.int_param(
        "MaxResults", DEFAULT_MAX_RESULTS, minimum=1, maximum=MAX_RESULTS_LIMIT
    )
    next_token = ctx.get("NextToken")
    if next_token and not str(next_token).isdigit():
        raise ValidationException("The specified token is not valid.", code="InvalidNextToken")
    start = int(next_token) if next_token else 0

    matching = [
        p.attributes
        for p in sorted(
            ctx.repository.list(SERVICE, PARAMETER, ctx.namespace),
            key=lambda p: p.attributes["Name"],
        )
        if all(_filter_matches(p.attributes, *f) for f in filters)
    ]
    page = matching[start:start + max_results]
    payload: dict[str, Any] = {"Parameters": [_metadata_payload(a) for a in page]}
    if start + max_results < len(matching):
        payload["NextToken"] = str(start + max_results)
    return OperationResult(payload)


def _tagged_parameter(ctx: OperationContext) -> Resource:
    resource_type = ctx.require("ResourceType")
    if resource_type != "Parameter":
        raise ValidationException(
            f"The resource type {resource_type} is not supported.", code="InvalidResourceType"
        )
    resource_id = ctx.require("ResourceId")
    parameter = _find_parameter(ctx, str(resource_id))
    if parameter is None:
        raise ResourceNotFound(
            f"The resource ID {resource_id} is not valid.", code="InvalidResourceId"
        )
    return parameter


def add_tags_to_resource(ctx: OperationContext) -> OperationResult:
    parameter = _tagged_parameter(ctx)
    tags = tagging.from_tag_list(ctx.typed_param("Tags", list[dict], required=True))
    tagging.tag_resource(
        ctx.repository, ctx.namespace, parameter.identifier, tags, resource_type="Parameter"
    )
    return OperationResult({})


def remove_tags_from_resource(ctx: OperationContext) -> OperationResult:
    parameter = _tagged_parameter(ctx)
    keys = ctx.typed_param("TagKeys", list[str], required=True)
    tagging.untag_resource(ctx.repository, ctx.namespace, parameter.identifier, keys)
    return OperationResult({})


def list_tags_for_resource(ctx: OperationContext) -> OperationResult:
    parameter = _tagged_parameter(ctx)
    tags = tagging.get_tags(ctx.repository, ctx.namespace, parameter.identifier)
    return OperationResult({"TagList": tagging.to_tag_list(tags)})


HANDLERS = {
    "PutParameter": put_parameter,
    "GetParameter": get_parameter,
    "GetParameters": get_parameters,
    "DeleteParameter": delete_parameter,
    "DeleteParameters": delete_parameters,
    "DescribeParameters": describe_parameters,
    "AddTagsToResource": add_tags_to_resource,
    "RemoveTagsFromResource": remove_tags_from_resource,
    "ListTagsForResource": list_tags_for_resource,
}


def register(registry: OperationRegistry) -> None:
    """Register the SSM descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
