"""Shape contract engine for stored entity attributes.

Provider clients read back what they wrote and compare it field by field, so
a stored entity must always look like the provider would have returned it,
even after partial updates, default-filling and idempotent creates.

DESIGN PHILOSOPHY:
- Declarative: every invariant is one ShapeContract row in a table
- Applied on every write and every read, so rows written before a contract
  existed are upgraded transparently
- Idempotent: normalizing normalized attributes changes nothing
- Fail-open: a contract that fails is logged and skipped, never failing the
  request that triggered it

CONTRACT TYPES:
1. DEFAULT_VALUE: fill a field that is absent or null
2. MODE_EXCLUSIVE: fields that must exist in one configuration mode and
   must be absent in every other
3. NON_EMPTY_COLLECTION: a list that must never be empty
4. DERIVED_FIELD: a field recomputed from another field

PATHS:
Dotted paths address nested mappings ("Config.PrivateZone"). A segment
ending in "[]" addresses every element of a list
("GlobalSecondaryIndexes[].ProvisionedThroughput").
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import DEFAULT_ACCOUNT_ID, DEFAULT_ENDPOINT_URL, DEFAULT_REGION
from .identifiers import build_arn, deterministic_token

logger = logging.getLogger(__name__)

LIST_MARKER = "[]"


class ContractType(str, Enum):
    """Types of shape contracts."""

    # Set a default when the field is absent or null
    DEFAULT_VALUE = "default_value"

    # Fields allowed (and defaulted) per mode, removed in every other mode
    MODE_EXCLUSIVE = "mode_exclusive"

    # Absent or empty list gets exactly one synthetic entry
    NON_EMPTY_COLLECTION = "non_empty_collection"

    # Target recomputed from a source field by a named derivation
    DERIVED_FIELD = "derived_field"


@dataclass(frozen=True)
class DerivationContext:
    """Deployment facts available to derivations.

    Attributes:
        region: Region embedded in ARNs.
        account_id: Account embedded in ARNs and queue URLs.
        endpoint_url: Base URL clients use to reach the emulator.
    """

    region: str = DEFAULT_REGION
    account_id: str = DEFAULT_ACCOUNT_ID
    endpoint_url: str = DEFAULT_ENDPOINT_URL


Derivation = Callable[[Any, DerivationContext], Any]


def _dynamodb_table_arn(name: Any, ctx: DerivationContext) -> str:
    return build_arn("dynamodb", f"table/{name}", ctx.region, ctx.account_id)


def _sqs_queue_url(name: Any, ctx: DerivationContext) -> str:
    return f"{ctx.endpoint_url.rstrip('/')}/{ctx.account_id}/{name}"


def _sqs_queue_arn(name: Any, ctx: DerivationContext) -> str:
    return build_arn("sqs", str(name), ctx.region, ctx.account_id)


def _route53_delegation_set(zone_id: Any, _ctx: DerivationContext) -> str:
    bare = str(zone_id).rsplit("/", 1)[-1]
    return "/delegationset/N" + deterministic_token(bare, 12).upper()


def _ec2_private_dns(ip: Any, _ctx: DerivationContext) -> str:
    return "ip-" + str(ip).replace(".", "-") + ".ec2.internal"


def _same_value(value: Any, _ctx: DerivationContext) -> Any:
    return value


def _kms_key_arn(key_id: Any, ctx: DerivationContext) -> str:
    return build_arn("kms", f"key/{key_id}", ctx.region, ctx.account_id)


def _kms_enabled(state: Any, _ctx: DerivationContext) -> bool:
    return state == "Enabled"


def _ssm_parameter_arn(name: Any, ctx: DerivationContext) -> str:
    return build_arn("ssm", "parameter/" + str(name).lstrip("/"), ctx.region, ctx.account_id)


def _sns_topic_arn(name: Any, ctx: DerivationContext) -> str:
    return build_arn("sns", str(name), ctx.region, ctx.account_id)


DERIVATIONS: dict[str, Derivation] = {
    "dynamodb_table_arn": _dynamodb_table_arn,
    "sqs_queue_url": _sqs_queue_url,
    "sqs_queue_arn": _sqs_queue_arn,
    "route53_delegation_set": _route53_delegation_set,
    "ec2_private_dns": _ec2_private_dns,
    "kms_key_arn": _kms_key_arn,
    "kms_enabled": _kms_enabled,
    "ssm_parameter_arn": _ssm_parameter_arn,
    "sns_topic_arn": _sns_topic_arn,
    "same_value": _same_value,
}


@dataclass(frozen=True)
class ShapeContract:
    """A single shape contract.

    Attributes:
        entity_type: Entity type to match, "service/type" (supports wildcards)
        path: Dotted path of the field the contract governs (the mode field
            for MODE_EXCLUSIVE)
        contract_type: Type of contract
        params: Contract parameters:
            DEFAULT_VALUE: {"default": value}
            MODE_EXCLUSIVE: {"default": mode, "materialize_mode": bool,
                             "fields": {mode: {path: default_or_None}}}
            NON_EMPTY_COLLECTION: {"default_entry": value}
            DERIVED_FIELD: {"derivation": name, "source": path,
                            "default_source": value (optional),
                            "overwrite": bool (default True)}
        reason: Human-readable explanation
    """

    entity_type: str
    path: str
    contract_type: ContractType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, entity_type: str) -> bool:
        """Check if this contract applies to an entity type.

        Args:
            entity_type: Qualified entity type, e.g. "dynamodb/table".

        Returns:
            True if this contract applies.
        """
        if self.entity_type == "*":
            return True
        return self._glob_match(entity_type.lower(), self.entity_type.lower())

    def _glob_match(self, value: str, pattern: str) -> bool:
        """Simple glob matching with * support."""
        regex_pattern = "^"
        for char in pattern:
            if char == "*":
                regex_pattern += ".*"
            elif char in r"\.[]{}()+^$|?":
                regex_pattern += "\\" + char
            else:
                regex_pattern += char
        regex_pattern += "$"

        return bool(re.match(regex_pattern, value))


# =============================================================================
# Default contracts per entity type
# =============================================================================

_THROUGHPUT_DEFAULT = {
    "ReadCapacityUnits": 5,
    "WriteCapacityUnits": 5,
    "NumberOfDecreasesToday": 0,
}

_DEFAULT_SECURITY_GROUP = {"groupId": "sg-00000000", "groupName": "default"}

_DEFAULT_BLOCK_DEVICE = {
    "deviceName": "/dev/xvda",
    "ebs": {
        "volumeId": "vol-00000000",
        "status": "attached",
        "deleteOnTermination": True,
    },
}

_DEFAULT_NETWORK_INTERFACE = {
    "networkInterfaceId": "eni-00000000",
    "subnetId": "subnet-00000000",
    "vpcId": "vpc-00000000",
    "status": "in-use",
    "sourceDestCheck": True,
}

_DEFAULT_METADATA_OPTIONS = {
    "state": "applied",
    "httpTokens": "optional",
    "httpPutResponseHopLimit": 1,
    "httpEndpoint": "enabled",
}

DEFAULT_NAME_SERVER = "ns-1.localcloud.internal"


def _default(entity_type: str, path: str, value: Any, reason: str) -> ShapeContract:
    return ShapeContract(
        entity_type=entity_type,
        path=path,
        contract_type=ContractType.DEFAULT_VALUE,
        params={"default": value},
        reason=reason,
    )


DEFAULT_SHAPE_CONTRACTS: list[ShapeContract] = [
    # DynamoDB tables
    ShapeContract(
        entity_type="dynamodb/table",
        path="BillingModeSummary.BillingMode",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": "PROVISIONED",
            "fields": {
                "PROVISIONED": {
                    "ProvisionedThroughput": _THROUGHPUT_DEFAULT,
                    "GlobalSecondaryIndexes[].ProvisionedThroughput": _THROUGHPUT_DEFAULT,
                },
                "PAY_PER_REQUEST": {},
            },
        },
        reason="Provisioned tables carry throughput, on-demand tables carry none",
    ),
    ShapeContract(
        entity_type="dynamodb/table",
        path="TimeToLiveDescription.TimeToLiveStatus",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": "DISABLED",
            "fields": {
                "ENABLED": {"TimeToLiveDescription.AttributeName": None},
                "ENABLING": {"TimeToLiveDescription.AttributeName": None},
                "DISABLING": {"TimeToLiveDescription.AttributeName": None},
                "DISABLED": {},
            },
        },
        reason="A disabled TTL has no attribute name",
    ),
    ShapeContract(
        entity_type="dynamodb/table",
        path="TableArn",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "dynamodb_table_arn", "source": "TableName"},
        reason="Table ARN follows the table name",
    ),
    _default("dynamodb/table", "TableStatus", "ACTIVE", "Tables are immediately active"),
    _default("dynamodb/table", "ItemCount", 0, "No data plane, always empty"),
    _default("dynamodb/table", "TableSizeBytes", 0, "No data plane, always empty"),
    _default(
        "dynamodb/table",
        "DeletionProtectionEnabled",
        False,
        "Deletion protection defaults to off",
    ),
    # SQS queues
    ShapeContract(
        entity_type="sqs/queue",
        path="QueueUrl",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "sqs_queue_url", "source": "QueueName"},
        reason="Queue URL follows the queue name",
    ),
    ShapeContract(
        entity_type="sqs/queue",
        path="Attributes.QueueArn",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "sqs_queue_arn", "source": "QueueName"},
        reason="Queue ARN follows the queue name",
    ),
    ShapeContract(
        entity_type="sqs/queue",
        path="Attributes.FifoQueue",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": "false",
            "materialize_mode": False,
            "fields": {
                "true": {"Attributes.ContentBasedDeduplication": "false"},
                "false": {},
            },
        },
        reason="Content based deduplication only exists on FIFO queues",
    ),
    _default("sqs/queue", "Attributes.VisibilityTimeout", "30", "Provider default"),
    _default("sqs/queue", "Attributes.MessageRetentionPeriod", "345600", "Four days"),
    _default("sqs/queue", "Attributes.MaximumMessageSize", "262144", "256 KiB"),
    _default("sqs/queue", "Attributes.DelaySeconds", "0", "Provider default"),
    _default("sqs/queue", "Attributes.ReceiveMessageWaitTimeSeconds", "0", "Short polling"),
    # Route 53 hosted zones
    ShapeContract(
        entity_type="route53/hostedzone",
        path="DelegationSetId",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "route53_delegation_set", "source": "Id"},
        reason="Delegation set id must be stable across reads",
    ),
    ShapeContract(
        entity_type="route53/hostedzone",
        path="NameServers",
        contract_type=ContractType.NON_EMPTY_COLLECTION,
        params={"default_entry": DEFAULT_NAME_SERVER},
        reason="A delegation set always lists name servers",
    ),
    _default("route53/hostedzone", "Config.PrivateZone", False, "Public zone by default"),
    _default("route53/change", "Status", "INSYNC", "Changes apply immediately"),
    # EC2 instances
    _default("ec2/instance", "privateIpAddress", "10.0.0.10", "Fixed private address"),
    ShapeContract(
        entity_type="ec2/instance",
        path="privateDnsName",
        contract_type=ContractType.DERIVED_FIELD,
        params={
            "derivation": "ec2_private_dns",
            "source": "privateIpAddress",
            "default_source": "10.0.0.10",
        },
        reason="Private DNS name follows the private address",
    ),
    ShapeContract(
        entity_type="ec2/instance",
        path="groupSet",
        contract_type=ContractType.NON_EMPTY_COLLECTION,
        params={"default_entry": _DEFAULT_SECURITY_GROUP},
        reason="Instances always belong to a security group",
    ),
    ShapeContract(
        entity_type="ec2/instance",
        path="blockDeviceMapping",
        contract_type=ContractType.NON_EMPTY_COLLECTION,
        params={"default_entry": _DEFAULT_BLOCK_DEVICE},
        reason="EBS backed instances always have a root device",
    ),
    ShapeContract(
        entity_type="ec2/instance",
        path="networkInterfaceSet",
        contract_type=ContractType.NON_EMPTY_COLLECTION,
        params={"default_entry": _DEFAULT_NETWORK_INTERFACE},
        reason="VPC instances always have a primary interface",
    ),
    ShapeContract(
        entity_type="ec2/instance",
        path="networkInterfaceSet[].privateIpAddress",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "same_value", "source": "privateIpAddress", "overwrite": False},
        reason="An interface without an address carries the instance address",
    ),
    _default("ec2/instance", "instanceState", {"code": 16, "name": "running"}, "Running"),
    _default("ec2/instance", "rootDeviceType", "ebs", "EBS backed"),
    _default("ec2/instance", "rootDeviceName", "/dev/xvda", "Root device"),
    _default("ec2/instance", "vpcId", "vpc-00000000", "Default VPC"),
    _default("ec2/instance", "subnetId", "subnet-00000000", "Default subnet"),
    _default("ec2/instance", "architecture", "x86_64", "Provider default"),
    _default("ec2/instance", "virtualizationType", "hvm", "Provider default"),
    _default("ec2/instance", "metadataOptions", _DEFAULT_METADATA_OPTIONS, "IMDS defaults"),
    # EC2 volumes
    ShapeContract(
        entity_type="ec2/volume",
        path="volumeType",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": "gp2",
            "fields": {
                "gp3": {"iops": 3000, "throughput": 125},
                "io1": {"iops": 100},
                "io2": {"iops": 100},
                "gp2": {"iops": 100},
            },
        },
        reason="IOPS and throughput only exist for volume types that support them",
    ),
    _default("ec2/volume", "size", 8, "Provider default"),
    _default("ec2/volume", "encrypted", False, "Unencrypted by default"),
    _default("ec2/volume", "multiAttachEnabled", False, "Single attach by default"),
    # KMS keys
    ShapeContract(
        entity_type="kms/key",
        path="KeyState",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": "Enabled",
            "fields": {"PendingDeletion": {"DeletionDate": None, "PendingDeletionWindowInDays": None}},
        },
        reason="Only keys pending deletion carry a deletion date",
    ),
    ShapeContract(
        entity_type="kms/key",
        path="Enabled",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "kms_enabled", "source": "KeyState", "default_source": "Enabled"},
        reason="Enabled flag follows the key state",
    ),
    ShapeContract(
        entity_type="kms/key",
        path="Arn",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "kms_key_arn", "source": "KeyId"},
        reason="Key ARN follows the key id",
    ),
    _default("kms/key", "KeyUsage", "ENCRYPT_DECRYPT", "Provider default"),
    _default("kms/key", "KeySpec", "SYMMETRIC_DEFAULT", "Provider default"),
    _default("kms/key", "KeyManager", "CUSTOMER", "Customer managed"),
    _default("kms/key", "Origin", "AWS_KMS", "Provider default"),
    # Secrets Manager secrets
    ShapeContract(
        entity_type="secretsmanager/secret",
        path="RotationEnabled",
        contract_type=ContractType.MODE_EXCLUSIVE,
        params={
            "default": False,
            "fields": {
                "true": {
                    "RotationRules": {"AutomaticallyAfterDays": 30},
                    "RotationLambdaARN": None,
                },
                "false": {},
            },
        },
        reason="Rotation settings only exist while rotation is enabled",
    ),
    # S3 buckets
    _default("s3/bucket", "Acl", "private", "Buckets are private unless a canned ACL is given"),
    _default("s3/bucket", "Versioning.Status", "Suspended", "Versioning off until enabled"),
    # SSM parameters
    ShapeContract(
        entity_type="ssm/parameter",
        path="ARN",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "ssm_parameter_arn", "source": "Name"},
        reason="Parameter ARN follows the parameter name",
    ),
    _default("ssm/parameter", "Type", "String", "Provider default"),
    _default("ssm/parameter", "Tier", "Standard", "Provider default"),
    _default("ssm/parameter", "DataType", "text", "Provider default"),
    _default("ssm/parameter", "Version", 1, "First version"),
    # SNS topics and subscriptions
    ShapeContract(
        entity_type="sns/topic",
        path="TopicArn",
        contract_type=ContractType.DERIVED_FIELD,
        params={"derivation": "sns_topic_arn", "source": "Name"},
        reason="Topic ARN follows the topic name",
    ),
    _default("sns/topic", "Attributes.DisplayName", "", "Topics start without a display name"),
    _default(
        "sns/subscription",
        "Attributes.RawMessageDelivery",
        "false",
        "Messages are wrapped in the notification envelope",
    ),
]


class InvariantNormalizer:
    """Applies shape contracts to entity attributes.

    The normalizer never mutates its input; normalize() returns a deep copy.
    """

    def __init__(
        self,
        contracts: list[ShapeContract] | None = None,
        enable_default_contracts: bool = True,
        context: DerivationContext | None = None,
        derivations: dict[str, Derivation] | None = None,
    ) -> None:
        """Initialize normalizer.

        Args:
            contracts: Custom contracts, applied after the defaults.
            enable_default_contracts: Whether to include default contracts.
            context: Deployment facts for derivations.
            derivations: Extra named derivations.
        """
        self._contracts: list[ShapeContract] = []
        if enable_default_contracts:
            self._contracts.extend(DEFAULT_SHAPE_CONTRACTS)
        if contracts:
            self._contracts.extend(contracts)
        self._context = context or DerivationContext()
        self._derivations = dict(DERIVATIONS)
        if derivations:
            self._derivations.update(derivations)

    @property
    def contracts(self) -> list[ShapeContract]:
        return list(self._contracts)

    @property
    def context(self) -> DerivationContext:
        return self._context

    def contracts_for(self, service: str, type: str) -> list[ShapeContract]:
        """Contracts that apply to an entity type, in application order."""
        entity_type = f"{service}/{type}"
        return [c for c in self._contracts if c.matches(entity_type)]

    def normalize(self, service: str, type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Return a normalized deep copy of ``attributes``.

        Args:
            service: Service name.
            type: Entity type within the service.
            attributes: Stored or about-to-be-stored attribute blob.

        Returns:
            Normalized copy.
        """
        normalized = copy.deepcopy(attributes) if attributes else {}

        for contract in self.contracts_for(service, type):
            try:
                self._apply_contract(normalized, contract)
            except Exception as e:
                logger.warning(
                    "Shape contract failed, skipping",
                    extra={
                        "entity_type": f"{service}/{type}",
                        "path": contract.path,
                        "contract_type": contract.contract_type.value,
                        "error": str(e),
                    },
                )

        return normalized

    def _apply_contract(self, doc: dict[str, Any], contract: ShapeContract) -> None:
        """Apply a specific contract to a document in place."""
        match contract.contract_type:
            case ContractType.DEFAULT_VALUE:
                self._apply_default(doc, contract.path, contract.params.get("default"))
            case ContractType.MODE_EXCLUSIVE:
                self._apply_mode_exclusive(doc, contract)
            case ContractType.NON_EMPTY_COLLECTION:
                self._apply_non_empty(doc, contract.path, contract.params.get("default_entry"))
            case ContractType.DERIVED_FIELD:
                self._apply_derived(doc, contract)
            case _:
                raise ValueError(f"Unsupported contract type: {contract.contract_type}")

    def _apply_default(self, doc: dict[str, Any], path: str, default: Any) -> None:
        """Fill ``path`` with ``default`` wherever it is absent or null."""
        if default is None:
            return
        for parent, key in _locate(doc, path, create=True):
            if parent.get(key) is None:
                parent[key] = copy.deepcopy(default)

    def _apply_mode_exclusive(self, doc: dict[str, Any], contract: ShapeContract) -> None:
        """Enforce the fields allowed by the current mode.

        Fields listed for the current mode are filled with their defaults
        (a None default allows the field without injecting it). Fields listed
        only for other modes are removed.
        """
        params = contract.params
        fields_by_mode: dict[str, dict[str, Any]] = params.get("fields", {})
        default_mode = params.get("default")

        current = _get(doc, contract.path)
        if current is None:
            current = default_mode
            if params.get("materialize_mode", True) and default_mode is not None:
                self._apply_default(doc, contract.path, default_mode)

        allowed = fields_by_mode.get(_mode_key(current), {})

        governed: list[str] = []
        for mode_fields in fields_by_mode.values():
            for path in mode_fields:
                if path not in governed:
                    governed.append(path)

        for path in governed:
            if path in allowed:
                self._apply_default(doc, path, allowed[path])
            else:
                for parent, key in _locate(doc, path, create=False):
                    parent.pop(key, None)

    def _apply_non_empty(self, doc: dict[str, Any], path: str, default_entry: Any) -> None:
        """Give an absent or empty list exactly one synthetic entry."""
        for parent, key in _locate(doc, path, create=True):
            value = parent.get(key)
            if value is None or (isinstance(value, list) and not value):
                parent[key] = [copy.deepcopy(default_entry)]

    def _apply_derived(self, doc: dict[str, Any], contract: ShapeContract) -> None:
        """Recompute the target field from its source."""
        params = contract.params
        derivation_name = params["derivation"]
        derivation = self._derivations.get(derivation_name)
        if derivation is None:
            raise ValueError(f"Unknown derivation: {derivation_name}")

        source = _get(doc, params["source"])
        if source is None:
            source = params.get("default_source")
        if source is None:
            return

        value = derivation(source, self._context)
        overwrite = params.get("overwrite", True)
        for parent, key in _locate(doc, contract.path, create=True):
            if overwrite or parent.get(key) is None:
                parent[key] = copy.deepcopy(value)


# =============================================================================
# Path helpers
# =============================================================================


def _mode_key(value: Any) -> str:
    """Mode values compare as strings; booleans as "true"/"false"."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split(path: str) -> list[tuple[str, bool]]:
    segments: list[tuple[str, bool]] = []
    for segment in path.split("."):
        if segment.endswith(LIST_MARKER):
            segments.append((segment[: -len(LIST_MARKER)], True))
        else:
            segments.append((segment, False))
    return segments


def _locate(doc: dict[str, Any], path: str, create: bool) -> list[tuple[dict[str, Any], str]]:
    """Resolve a path to the (parent mapping, key) pairs it addresses.

    Intermediate mappings are created when ``create`` is set. List segments
    never create anything; an absent list addresses no elements.
    """
    segments = _split(path)
    nodes: list[dict[str, Any]] = [doc]

    for name, is_list in segments[:-1]:
        next_nodes: list[dict[str, Any]] = []
        for node in nodes:
            value = node.get(name)
            if is_list:
                if isinstance(value, list):
                    next_nodes.extend(item for item in value if isinstance(item, dict))
            elif isinstance(value, dict):
                next_nodes.append(value)
            elif value is None and create:
                node[name] = {}
                next_nodes.append(node[name])
        nodes = next_nodes

    last_name, _ = segments[-1]
    return [(node, last_name) for node in nodes]


def _get(doc: dict[str, Any], path: str) -> Any:
    """Read a single-valued path; None when any segment is missing."""
    current: Any = doc
    for name, _ in _split(path):
        if not isinstance(current, dict):
            return None
        current = current.get(name)
    return current
