"""Route 53 control plane: hosted zones, record sets and changes.

REST convention under ``/2013-04-01``. Zone ids are derived from the caller
reference, so replaying a CreateHostedZone with the same reference maps to
the same store identifier and fails with HostedZoneAlreadyExists.

Record sets are stored one per (zone, type, name, set identifier). Every
mutation also stores a change record that GetChange reports as INSYNC.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .errors import ResourceAlreadyExists, ResourceInUse, ResourceNotFound, ValidationException
from .identifiers import deterministic_token, random_token
from .models import ChangeInput, CreateHostedZoneInput, ResourceRecordSetInput, parse_model
from .protocol import (
    OperationContext,
    OperationRegistry,
    OperationResult,
    RestRoute,
    ServiceDescriptor,
)
from .store import Resource
from .xmlcodec import ensure_list

logger = logging.getLogger(__name__)

SERVICE = "route53"
ZONE = "hostedzone"
RECORD = "record"
CHANGE = "change"

API_PREFIX = "/2013-04-01"
NAME_SERVERS = [f"ns-{n}.localcloud.internal" for n in range(1, 5)]
NS_TTL = 172800
SOA_TTL = 900
DEFAULT_MAX_ITEMS = 100
DEFAULT_MAX_RECORDS = 300

DESCRIPTOR = ServiceDescriptor(
    name=SERVICE,
    rest_routes=(
        RestRoute("POST", f"{API_PREFIX}/hostedzone", "CreateHostedZone"),
        RestRoute("GET", f"{API_PREFIX}/hostedzone", "ListHostedZones"),
        RestRoute("GET", f"{API_PREFIX}/hostedzone/{{Id}}", "GetHostedZone"),
        RestRoute("DELETE", f"{API_PREFIX}/hostedzone/{{Id}}", "DeleteHostedZone"),
        RestRoute("POST", f"{API_PREFIX}/hostedzone/{{Id}}/rrset", "ChangeResourceRecordSets"),
        RestRoute("GET", f"{API_PREFIX}/hostedzone/{{Id}}/rrset", "ListResourceRecordSets"),
        RestRoute("GET", f"{API_PREFIX}/change/{{Id}}", "GetChange"),
    ),
    path_prefix="/route53",
    xml_namespace="https://route53.amazonaws.com/doc/2013-04-01/",
    missing_parameter_code="InvalidInput",
)

ENTITY_TYPES = ("route53/hostedzone", "route53/record", "route53/change")


def _now() -> str:
    now = datetime.now(UTC)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _bare_id(value: str) -> str:
    """Strip a ``/hostedzone/`` or ``/change/`` prefix."""
    return value.rstrip("/").rsplit("/", 1)[-1]


def _zone_id_for(caller_reference: str) -> str:
    return "Z" + deterministic_token(caller_reference, 14).upper()


def _record_identifier(zone_id: str, type: str, name: str, set_identifier: str | None) -> str:
    identifier = f"{zone_id}:{type}:{name}"
    if set_identifier:
        identifier += f":{set_identifier}"
    return identifier


def _no_such_zone(zone_id: str) -> ResourceNotFound:
    return ResourceNotFound(
        f"No hosted zone found with ID: {zone_id}", code="NoSuchHostedZone", status=404
    )


def _invalid_batch(messages: list[str]) -> ValidationException:
    return ValidationException("[" + ", ".join(messages) + "]", code="InvalidChangeBatch")


def _get_zone(ctx: OperationContext, retry: bool = False) -> Resource:
    zone_id = _bare_id(ctx.require_path("Id"))
    return ctx.repository.get(
        zone_id, SERVICE, ZONE, ctx.namespace, retry=retry, not_found=_no_such_zone(zone_id)
    )


def _zone_records(ctx: OperationContext, zone_id: str) -> list[Resource]:
    return [
        r for r in ctx.repository.list(SERVICE, RECORD, ctx.namespace)
        if r.attributes.get("ZoneId") == zone_id
    ]


def _is_default_record(record: dict[str, Any], zone_name: str) -> bool:
    return record["Name"] == zone_name and record["Type"] in ("NS", "SOA")


def _record_sort_key(record: dict[str, Any]) -> tuple[list[str], str, str]:
    # Names sort by labels from the root down, as the provider lists them
    labels = list(reversed(record["Name"].rstrip(".").split(".")))
    return labels, record["Type"], record.get("SetIdentifier") or ""


def _zone_payload(zone: dict[str, Any], record_count: int) -> dict[str, Any]:
    config: dict[str, Any] = {}
    if zone.get("Config", {}).get("Comment"):
        config["Comment"] = zone["Config"]["Comment"]
    config["PrivateZone"] = zone.get("Config", {}).get("PrivateZone", False)
    return {
        "Id": zone["Id"],
        "Name": zone["Name"],
        "CallerReference": zone["CallerReference"],
        "Config": config,
        "ResourceRecordSetCount": record_count,
    }


def _delegation_set(zone: dict[str, Any]) -> dict[str, Any]:
    return {
        "Id": zone["DelegationSetId"],
        "NameServers": {"NameServer": list(zone["NameServers"])},
    }


def _record_payload(record: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {"Name": record["Name"], "Type": record["Type"]}
    if record.get("SetIdentifier"):
        payload["SetIdentifier"] = record["SetIdentifier"]
    if record.get("AliasTarget"):
        payload["AliasTarget"] = record["AliasTarget"]
    else:
        payload["TTL"] = record.get("TTL")
        payload["ResourceRecords"] = {
            "ResourceRecord": [{"Value": v} for v in record.get("ResourceRecords", [])]
        }
    return payload


def _record_attributes(zone_id: str, record_set: ResourceRecordSetInput) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "ZoneId": zone_id,
        "Name": record_set.name,
        "Type": record_set.type,
        "ResourceRecords": list(record_set.resource_records),
    }
    if record_set.ttl is not None:
        attributes["TTL"] = record_set.ttl
    if record_set.alias_target:
        attributes["AliasTarget"] = record_set.alias_target
    if record_set.set_identifier:
        attributes["SetIdentifier"] = record_set.set_identifier
    return attributes


def _record_change(ctx: OperationContext, comment: str | None = None) -> dict[str, Any]:
    """Store a change and return its ChangeInfo."""
    change_id = "C" + random_token(13).upper()
    attributes: dict[str, Any] = {"Id": f"/change/{change_id}", "SubmittedAt": _now()}
    if comment:
        attributes["Comment"] = comment
    outcome = ctx.repository.create(change_id, SERVICE, CHANGE, ctx.namespace, attributes)
    return _change_info(outcome.resource.attributes)


def _change_info(change: dict[str, Any]) -> dict[str, Any]:
    info = {"Id": change["Id"], "Status": change["Status"], "SubmittedAt": change["SubmittedAt"]}
    if change.get("Comment"):
        info["Comment"] = change["Comment"]
    return info


def create_hosted_zone(ctx: OperationContext) -> OperationResult:
    ctx.require("Name")
    ctx.require("CallerReference")
    request = parse_model(CreateHostedZoneInput, ctx.params)

    zone_id = _zone_id_for(request.caller_reference)
    config = request.hosted_zone_config
    attributes: dict[str, Any] = {
        "Id": f"/hostedzone/{zone_id}",
        "Name": request.name,
        "CallerReference": request.caller_reference,
        "Config": {
            "Comment": config.comment if config else None,
            "PrivateZone": config.private_zone if config else False,
        },
        "NameServers": list(NAME_SERVERS),
    }
    conflict = ResourceAlreadyExists(
        f"A hosted zone has already been created with the specified caller reference: "
        f"{request.caller_reference}",
        code="HostedZoneAlreadyExists",
        status=409,
    )
    zone = ctx.repository.create(
        zone_id, SERVICE, ZONE, ctx.namespace, attributes, conflict=conflict
    ).resource

    primary = NAME_SERVERS[0]
    defaults = [
        {"Type": "NS", "TTL": NS_TTL, "ResourceRecords": [f"{ns}." for ns in NAME_SERVERS]},
        {
            "Type": "SOA",
            "TTL": SOA_TTL,
            "ResourceRecords": [f"{primary}. hostmaster.{request.name} 1 7200 900 1209600 86400"],
        },
    ]
    for record in defaults:
        ctx.repository.create(
            _record_identifier(zone_id, record["Type"], request.name, None),
            SERVICE,
            RECORD,
            ctx.namespace,
            {"ZoneId": zone_id, "Name": request.name, **record},
        )

    change_info = _record_change(ctx)
    logger.info(
        "Created hosted zone",
        extra={"zone_id": zone_id, "zone_name": request.name, "namespace": ctx.namespace},
    )

    payload: dict[str, Any] = {
        "HostedZone": _zone_payload(zone.attributes, len(defaults)),
        "ChangeInfo": change_info,
    }
    if not zone.attributes["Config"]["PrivateZone"]:
        payload["DelegationSet"] = _delegation_set(zone.attributes)

    location = f"{ctx.config.endpoint_url.rstrip('/')}{API_PREFIX}/hostedzone/{zone_id}"
    return OperationResult(payload, status=201, headers={"Location": location})


def get_hosted_zone(ctx: OperationContext) -> OperationResult:
    zone = _get_zone(ctx, retry=True)
    zone_id = zone.identifier
    payload: dict[str, Any] = {
        "HostedZone": _zone_payload(zone.attributes, len(_zone_records(ctx, zone_id)))
    }
    if not zone.attributes.get("Config", {}).get("PrivateZone"):
        payload["DelegationSet"] = _delegation_set(zone.attributes)
    return OperationResult(payload)


def list_hosted_zones(ctx: OperationContext) -> OperationResult:
    max_items = ctx.int_param("maxitems", DEFAULT_MAX_ITEMS, minimum=1, code="InvalidInput")
    marker = ctx.get("marker")

    records_by_zone: dict[str, int] = {}
    for record in ctx.repository.list(SERVICE, RECORD, ctx.namespace):
        zone_id = record.attributes.get("ZoneId", "")
        records_by_zone[zone_id] = records_by_zone.get(zone_id, 0) + 1

    zones = sorted(
        ctx.repository.list(SERVICE, ZONE, ctx.namespace),
        key=lambda z: (z.attributes["Name"], z.identifier),
    )
    if marker:
        ids = [z.identifier for z in zones]
        bare = _bare_id(marker)
        zones = zones[ids.index(bare):] if bare in ids else []

    page, rest = zones[:max_items], zones[max_items:]
    payload: dict[str, Any] = {
        "HostedZones": {
            "HostedZone": [
                _zone_payload(z.attributes, records_by_zone.get(z.identifier, 0)) for z in page
            ]
        },
    }
    if marker:
        payload["Marker"] = marker
    payload["IsTruncated"] = bool(rest)
    if rest:
        payload["NextMarker"] = rest[0].identifier
    payload["MaxItems"] = str(max_items)
    return OperationResult(payload)


def delete_hosted_zone(ctx: OperationContext) -> OperationResult:
    zone = _get_zone(ctx)
    zone_id = zone.identifier
    records = _zone_records(ctx, zone_id)

    if any(not _is_default_record(r.attributes, zone.attributes["Name"]) for r in records):
        raise ResourceInUse(
            "The specified hosted zone contains non-required resource record sets "
            "and so cannot be deleted.",
            code="HostedZoneNotEmpty",
        )

    for record in records:
        ctx.repository.delete(record.identifier, SERVICE, RECORD, ctx.namespace)
    ctx.repository.delete(zone_id, SERVICE, ZONE, ctx.namespace, not_found=_no_such_zone(zone_id))
    logger.info("Deleted hosted zone", extra={"zone_id": zone_id, "namespace": ctx.namespace})
    return OperationResult({"ChangeInfo": _record_change(ctx)})


def _parse_changes(ctx: OperationContext) -> tuple[list[ChangeInput], str | None]:
    batch = ctx.get("ChangeBatch")
    if not isinstance(batch, dict):
        raise ValidationException("ChangeBatch is required", code="InvalidInput")
    changes = batch.get("Changes")
    if isinstance(changes, dict):
        changes = changes.get("Change")
    items = ensure_list(changes)
    if not items:
        raise ValidationException("ChangeBatch must contain at least one change", code="InvalidInput")
    parsed = [parse_model(ChangeInput, item) for item in items]
    return parsed, batch.get("Comment") or None


def change_resource_record_sets(ctx: OperationContext) -> OperationResult:
    """Validate the whole batch against the zone, then apply it.

    Nothing is written when any change in the batch is invalid.
    """
    zone = _get_zone(ctx)
    zone_id = zone.identifier
    zone_name = zone.attributes["Name"]
    changes, comment = _parse_changes(ctx)

    # Simulated zone state, keyed by record identifier
    state: dict[str, dict[str, Any]] = {
        r.identifier: r.attributes for r in _zone_records(ctx, zone_id)
    }
    errors: list[str] = []
    writes: list[tuple[str, str, dict[str, Any] | None]] = []

    for change in changes:
        record_set = change.record_set
        label = f"[name='{record_set.name}', type='{record_set.type}'"
        label += f", set-identifier='{record_set.set_identifier}']" if record_set.set_identifier else "]"
        identifier = _record_identifier(
            zone_id, record_set.type, record_set.name, record_set.set_identifier
        )

        if record_set.name != zone_name and not record_set.name.endswith("." + zone_name):
            errors.append(f"RRSet with DNS name {record_set.name} is not permitted in zone {zone_name}")
            continue
        if change.action != "DELETE" and not record_set.alias_target:
            if record_set.ttl is None or not record_set.resource_records:
                errors.append(f"Invalid request: Expected TTL and ResourceRecords for {label}")
                continue

        match change.action:
            case "CREATE":
                if identifier in state:
                    errors.append(f"Tried to create resource record set {label} but it already exists")
                    continue
                attributes = _record_attributes(zone_id, record_set)
                state[identifier] = attributes
                writes.append(("CREATE", identifier, attributes))
            case "UPSERT":
                attributes = _record_attributes(zone_id, record_set)
                action = "UPDATE" if identifier in state else "CREATE"
                state[identifier] = attributes
                writes.append((action, identifier, attributes))
            case "DELETE":
                if identifier not in state:
                    errors.append(f"Tried to delete resource record set {label} but it was not found")
                    continue
                if _is_default_record(state[identifier], zone_name):
                    errors.append(f"A HostedZone must contain at least one NS and one SOA record {label}")
                    continue
                state.pop(identifier)
                writes.append(("DELETE", identifier, None))

    if errors:
        raise _invalid_batch(errors)

    for action, identifier, attributes in writes:
        existing = ctx.repository.find(identifier, SERVICE, RECORD, ctx.namespace)
        if action == "DELETE":
            if existing is not None:
                ctx.repository.delete(identifier, SERVICE, RECORD, ctx.namespace)
        elif existing is not None:
            ctx.repository.replace(existing, attributes or {})
        else:
            ctx.repository.create(identifier, SERVICE, RECORD, ctx.namespace, attributes or {})

    logger.info(
        "Applied change batch",
        extra={"zone_id": zone_id, "changes": len(writes), "namespace": ctx.namespace},
    )
    return OperationResult({"ChangeInfo": _record_change(ctx, comment)})


def list_resource_record_sets(ctx: OperationContext) -> OperationResult:
    zone = _get_zone(ctx, retry=True)
    max_items = ctx.int_param("maxitems", DEFAULT_MAX_RECORDS, minimum=1, code="InvalidInput")
    start_name = ctx.get("name")
    start_type = ctx.get("type")
    if start_type and not start_name:
        raise ValidationException("The type parameter requires the name parameter", code="InvalidInput")

    records = sorted(
        (r.attributes for r in _zone_records(ctx, zone.identifier)), key=_record_sort_key
    )
    if start_name:
        name = start_name.lower() if start_name.endswith(".") else start_name.lower() + "."
        start_key = _record_sort_key({"Name": name, "Type": start_type or ""})
        records = [r for r in records if _record_sort_key(r)[:2] >= start_key[:2]]

    page, rest = records[:max_items], records[max_items:]
    payload: dict[str, Any] = {
        "ResourceRecordSets": {"ResourceRecordSet": [_record_payload(r) for r in page]},
        "IsTruncated": bool(rest),
    }
    if rest:
        payload["NextRecordName"] = rest[0]["Name"]
        payload["NextRecordType"] = rest[0]["Type"]
        if rest[0].get("SetIdentifier"):
            payload["NextRecordIdentifier"] = rest[0]["SetIdentifier"]
    payload["MaxItems"] = str(max_items)
    return OperationResult(payload)


def get_change(ctx: OperationContext) -> OperationResult:
    change_id = _bare_id(ctx.require_path("Id"))
    change = ctx.repository.get(
        change_id,
        SERVICE,
        CHANGE,
        ctx.namespace,
        retry=True,
        not_found=ResourceNotFound(
            f"A change with the specified change ID does not exist: {change_id}",
            code="NoSuchChange",
            status=404,
        ),
    )
    return OperationResult({"ChangeInfo": _change_info(change.attributes)})


HANDLERS = {
    "CreateHostedZone": create_hosted_zone,
    "GetHostedZone": get_hosted_zone,
    "ListHostedZones": list_hosted_zones,
    "DeleteHostedZone": delete_hosted_zone,
    "ChangeResourceRecordSets": change_resource_record_sets,
    "ListResourceRecordSets": list_resource_record_sets,
    "GetChange": get_change,
}


def register(registry: OperationRegistry) -> None:
    """Register the Route 53 descriptor and handlers."""
    registry.register_service(DESCRIPTOR, ENTITY_TYPES)
    registry.bind_all(SERVICE, HANDLERS)
