"""Pydantic models for request payloads and seed documents.

These models provide:
1. Type-safe parsing of structured request members
2. Validation at the boundary (fail fast, with a provider-style message)
3. Clean transformation into stored attribute blobs

Stored attributes remain plain JSON mappings; the shapes they must keep over
time are enforced by the shape contracts in normalizer.py.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ValidationException

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model_cls: type[ModelT], data: Any) -> ModelT:
    """Validate request data, raising the provider-facing validation error.

    Args:
        model_cls: Model to validate against.
        data: Decoded request members.

    Returns:
        Validated model instance.

    Raises:
        ValidationException: With one line per failing field.
    """
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"{loc}: {error['msg']}")
        raise ValidationException("; ".join(errors)) from e


# =============================================================================
# DynamoDB
# =============================================================================


class AttributeDefinition(BaseModel):
    """Key attribute type declaration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    attribute_name: Annotated[str, Field(min_length=1, max_length=255, alias="AttributeName")]
    attribute_type: Literal["S", "N", "B"] = Field(alias="AttributeType")


class KeySchemaElement(BaseModel):
    """One element of a primary or index key."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    attribute_name: Annotated[str, Field(min_length=1, max_length=255, alias="AttributeName")]
    key_type: Literal["HASH", "RANGE"] = Field(alias="KeyType")


class ProvisionedThroughputInput(BaseModel):
    """Requested read and write capacity."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    read_capacity_units: Annotated[int, Field(ge=1, alias="ReadCapacityUnits")]
    write_capacity_units: Annotated[int, Field(ge=1, alias="WriteCapacityUnits")]

    def to_description(self) -> dict[str, Any]:
        return {
            "ReadCapacityUnits": self.read_capacity_units,
            "WriteCapacityUnits": self.write_capacity_units,
            "NumberOfDecreasesToday": 0,
        }


class SecondaryIndexInput(BaseModel):
    """Global or local secondary index declaration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    index_name: Annotated[str, Field(min_length=3, max_length=255, alias="IndexName")]
    key_schema: list[KeySchemaElement] = Field(alias="KeySchema", min_length=1, max_length=2)
    projection: dict[str, Any] = Field(default_factory=lambda: {"ProjectionType": "ALL"}, alias="Projection")
    provisioned_throughput: ProvisionedThroughputInput | None = Field(
        None, alias="ProvisionedThroughput"
    )


class CreateTableInput(BaseModel):
    """CreateTable request members."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    table_name: Annotated[
        str, Field(min_length=3, max_length=255, pattern=r"^[a-zA-Z0-9_.-]+$", alias="TableName")
    ]
    attribute_definitions: list[AttributeDefinition] = Field(alias="AttributeDefinitions", min_length=1)
    key_schema: list[KeySchemaElement] = Field(alias="KeySchema", min_length=1, max_length=2)
    billing_mode: Literal["PROVISIONED", "PAY_PER_REQUEST"] = Field("PROVISIONED", alias="BillingMode")
    provisioned_throughput: ProvisionedThroughputInput | None = Field(
        None, alias="ProvisionedThroughput"
    )
    global_secondary_indexes: list[SecondaryIndexInput] = Field(
        default_factory=list, alias="GlobalSecondaryIndexes"
    )
    local_secondary_indexes: list[SecondaryIndexInput] = Field(
        default_factory=list, alias="LocalSecondaryIndexes"
    )
    stream_specification: dict[str, Any] | None = Field(None, alias="StreamSpecification")
    sse_specification: dict[str, Any] | None = Field(None, alias="SSESpecification")
    deletion_protection_enabled: bool = Field(False, alias="DeletionProtectionEnabled")
    tags: list[dict[str, str]] = Field(default_factory=list, alias="Tags")

    @field_validator("key_schema")
    @classmethod
    def validate_key_schema(cls, v: list[KeySchemaElement]) -> list[KeySchemaElement]:
        """The first key element is the HASH key."""
        if v[0].key_type != "HASH":
            raise ValueError("first KeySchema element must be the HASH key")
        if len(v) == 2 and v[1].key_type != "RANGE":
            raise ValueError("second KeySchema element must be the RANGE key")
        return v


# =============================================================================
# Route 53
# =============================================================================


class HostedZoneConfigInput(BaseModel):
    """Optional hosted zone configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    comment: str | None = Field(None, alias="Comment")
    private_zone: bool = Field(False, alias="PrivateZone")

    @field_validator("private_zone", mode="before")
    @classmethod
    def parse_bool(cls, v: Any) -> Any:
        """Markup booleans arrive as strings."""
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return v


class CreateHostedZoneInput(BaseModel):
    """CreateHostedZone request members."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=1024, alias="Name")]
    caller_reference: Annotated[str, Field(min_length=1, max_length=128, alias="CallerReference")]
    hosted_zone_config: HostedZoneConfigInput | None = Field(None, alias="HostedZoneConfig")
    delegation_set_id: str | None = Field(None, alias="DelegationSetId")

    @field_validator("name")
    @classmethod
    def fully_qualify(cls, v: str) -> str:
        """Zone names are stored fully qualified."""
        v = v.strip().lower()
        return v if v.endswith(".") else v + "."


class ResourceRecordSetInput(BaseModel):
    """A record set inside a change batch."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=1024, alias="Name")]
    type: Literal[
        "A", "AAAA", "CAA", "CNAME", "DS", "MX", "NAPTR", "NS", "PTR", "SOA", "SPF", "SRV", "TXT"
    ] = Field(alias="Type")
    ttl: int | None = Field(None, ge=0, alias="TTL")
    resource_records: list[str] = Field(default_factory=list, alias="ResourceRecords")
    alias_target: dict[str, Any] | None = Field(None, alias="AliasTarget")
    set_identifier: str | None = Field(None, alias="SetIdentifier")

    @field_validator("name")
    @classmethod
    def fully_qualify(cls, v: str) -> str:
        v = v.strip().lower()
        return v if v.endswith(".") else v + "."

    @field_validator("resource_records", mode="before")
    @classmethod
    def flatten_records(cls, v: Any) -> Any:
        """Accept [{"Value": x}], {"ResourceRecord": [...]} or plain strings."""
        if v is None:
            return []
        if isinstance(v, dict) and "ResourceRecord" in v:
            v = v["ResourceRecord"]
        if isinstance(v, dict):
            v = [v]
        values = []
        for item in v:
            if isinstance(item, dict):
                values.append(str(item.get("Value", "")))
            else:
                values.append(str(item))
        return values


class ChangeInput(BaseModel):
    """One change of a ChangeResourceRecordSets batch."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    action: Literal["CREATE", "DELETE", "UPSERT"] = Field(alias="Action")
    record_set: ResourceRecordSetInput = Field(alias="ResourceRecordSet")


# =============================================================================
# EC2
# =============================================================================


class CreateVolumeInput(BaseModel):
    """CreateVolume request members."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    availability_zone: Annotated[str, Field(min_length=1, alias="AvailabilityZone")]
    size: int | None = Field(None, ge=1, le=65536, alias="Size")
    volume_type: Literal["standard", "io1", "io2", "gp2", "gp3", "sc1", "st1"] = Field(
        "gp2", alias="VolumeType"
    )
    iops: int | None = Field(None, ge=100, alias="Iops")
    throughput: int | None = Field(None, ge=125, alias="Throughput")
    encrypted: bool = Field(False, alias="Encrypted")
    snapshot_id: str | None = Field(None, alias="SnapshotId")
    kms_key_id: str | None = Field(None, alias="KmsKeyId")

    @field_validator("encrypted", mode="before")
    @classmethod
    def parse_bool(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return v


# =============================================================================
# KMS and Secrets Manager
# =============================================================================


class CreateKeyInput(BaseModel):
    """CreateKey request members."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    description: str = Field("", max_length=8192, alias="Description")
    key_usage: Literal["ENCRYPT_DECRYPT", "SIGN_VERIFY", "GENERATE_VERIFY_MAC"] = Field(
        "ENCRYPT_DECRYPT", alias="KeyUsage"
    )
    key_spec: str = Field("SYMMETRIC_DEFAULT", alias="KeySpec")
    multi_region: bool = Field(False, alias="MultiRegion")
    tags: list[dict[str, str]] = Field(default_factory=list, alias="Tags")


class CreateSecretInput(BaseModel):
    """CreateSecret request members."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[
        str, Field(min_length=1, max_length=512, pattern=r"^[A-Za-z0-9/_+=.@-]+$", alias="Name")
    ]
    description: str | None = Field(None, alias="Description")
    kms_key_id: str | None = Field(None, alias="KmsKeyId")
    secret_string: str | None = Field(None, alias="SecretString")
    secret_binary: str | None = Field(None, alias="SecretBinary")
    client_request_token: str | None = Field(
        None, min_length=32, max_length=64, alias="ClientRequestToken"
    )
    tags: list[dict[str, str]] = Field(default_factory=list, alias="Tags")


# =============================================================================
# Seed documents
# =============================================================================


class SeedResource(BaseModel):
    """One resource preloaded at startup."""

    model_config = {"extra": "ignore"}

    identifier: Annotated[str, Field(min_length=1, max_length=512)]
    namespace: Annotated[str, Field(min_length=1, max_length=128)] = "default"
    service: Annotated[str, Field(min_length=1, max_length=64)]
    type: Annotated[str, Field(min_length=1, max_length=64)]
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def entity_type(self) -> str:
        return f"{self.service}/{self.type}"


class SeedDocument(BaseModel):
    """Top-level seed file."""

    model_config = {"extra": "ignore"}

    resources: list[SeedResource] = Field(default_factory=list)
