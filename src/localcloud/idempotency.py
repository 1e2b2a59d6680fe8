"""Per-entity-type create policies.

Provider APIs disagree on what "create something that already exists" means.
Some reject the second create, some hand back the existing entity, and tag
style APIs merge. This module holds the single table that decides, per entity
type, which of these behaviors the emulator applies.

RESOLUTION ORDER:
1. Explicit overrides (first match wins, glob patterns allowed)
2. The built-in CREATE_POLICIES table (exact entity type)
3. No match is a startup error via validate(), never a silent default
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class CreatePolicy(str, Enum):
    """What a create does when the entity already exists."""

    # Fail with an already-exists error
    STRICT_CONFLICT = "strict_conflict"
    # Return the stored representation unchanged, no write
    IDEMPOTENT_RETURN = "idempotent_return"
    # Deep-merge the provided attributes onto the stored blob
    IDEMPOTENT_MERGE = "idempotent_merge"


class PolicyTableError(Exception):
    """Raised when an entity type has no create policy."""

    pass


@dataclass(frozen=True)
class PolicyDecision:
    """Result of a policy lookup.

    Attributes:
        policy: The create policy to apply.
        rule_matched: Entity type or pattern of the matching rule.
        reason: Human-readable explanation of why this policy applies.
    """

    policy: CreatePolicy
    rule_matched: str
    reason: str


class CreatePolicyRule(BaseModel):
    """One entry of the policy table.

    Examples:
        # Tables reject a second create
        - entityType: "dynamodb/table"
          policy: strict_conflict

        # Treat every queue create as a lookup
        - entityType: "sqs/*"
          policy: idempotent_return
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    entity_type: str = Field(alias="entityType")
    policy: CreatePolicy
    reason: str = ""

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v: str) -> str:
        """Entity types are written service/type."""
        v = v.strip()
        if v.count("/") != 1 or not all(v.split("/")):
            raise ValueError(f"entityType must be 'service/type': {v!r}")
        return v

    def matches(self, entity_type: str) -> bool:
        """Check if this rule applies to an entity type (glob, case-insensitive)."""
        return bool(re.match(self._glob_to_regex(self.entity_type.lower()), entity_type.lower()))

    def _glob_to_regex(self, pattern: str) -> str:
        """Convert glob pattern to regex.

        * -> .*
        ? -> .
        Other regex chars are escaped
        """
        escaped = ""
        for char in pattern:
            if char == "*":
                escaped += ".*"
            elif char == "?":
                escaped += "."
            elif char in r"\.[]{}()+^$|":
                escaped += "\\" + char
            else:
                escaped += char

        return f"^{escaped}$"


def _rule(entity_type: str, policy: CreatePolicy, reason: str) -> CreatePolicyRule:
    return CreatePolicyRule(entity_type=entity_type, policy=policy, reason=reason)


# Every registered entity type appears here exactly once
CREATE_POLICIES: dict[str, CreatePolicyRule] = {
    rule.entity_type: rule
    for rule in (
        _rule(
            "dynamodb/table",
            CreatePolicy.STRICT_CONFLICT,
            "CreateTable on an existing table is ResourceInUseException",
        ),
        _rule(
            "sqs/queue",
            CreatePolicy.IDEMPOTENT_RETURN,
            "CreateQueue with an existing name returns the existing queue URL",
        ),
        _rule(
            "route53/hostedzone",
            CreatePolicy.STRICT_CONFLICT,
            "Reusing a caller reference is HostedZoneAlreadyExists",
        ),
        _rule(
            "route53/record",
            CreatePolicy.STRICT_CONFLICT,
            "CREATE of an existing record set invalidates the change batch",
        ),
        _rule(
            "route53/change",
            CreatePolicy.STRICT_CONFLICT,
            "Change ids are random and never collide",
        ),
        _rule(
            "ec2/instance",
            CreatePolicy.STRICT_CONFLICT,
            "Instance ids are random and never collide",
        ),
        _rule(
            "ec2/volume",
            CreatePolicy.STRICT_CONFLICT,
            "Volume ids are random and never collide",
        ),
        _rule(
            "ec2/volume-attachment",
            CreatePolicy.IDEMPOTENT_RETURN,
            "Re-attaching a volume to the same instance returns the attachment",
        ),
        _rule(
            "kms/key",
            CreatePolicy.STRICT_CONFLICT,
            "Key ids are random and never collide",
        ),
        _rule(
            "kms/alias",
            CreatePolicy.STRICT_CONFLICT,
            "CreateAlias with an existing name is AlreadyExistsException",
        ),
        _rule(
            "secretsmanager/secret",
            CreatePolicy.STRICT_CONFLICT,
            "CreateSecret with an existing name is ResourceExistsException",
        ),
        _rule(
            "s3/bucket",
            CreatePolicy.STRICT_CONFLICT,
            "CreateBucket on an owned bucket is BucketAlreadyOwnedByYou",
        ),
        _rule(
            "ssm/parameter",
            CreatePolicy.STRICT_CONFLICT,
            "PutParameter without Overwrite on an existing name is ParameterAlreadyExists",
        ),
        _rule(
            "sns/topic",
            CreatePolicy.IDEMPOTENT_RETURN,
            "CreateTopic with an existing name returns the existing topic ARN",
        ),
        _rule(
            "sns/subscription",
            CreatePolicy.IDEMPOTENT_RETURN,
            "Subscribing the same endpoint twice returns the existing subscription",
        ),
        _rule(
            "tagging/tags",
            CreatePolicy.IDEMPOTENT_MERGE,
            "Tagging adds to or overwrites the existing tag set",
        ),
    )
}


def merge_attributes(stored: dict[str, Any], provided: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``provided`` onto a copy of ``stored``.

    Nested mappings merge key by key; every other value (lists included) in
    ``provided`` replaces the stored one.
    """
    merged = copy.deepcopy(stored)
    for key, value in provided.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_attributes(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class IdempotencyClassifier:
    """Resolves the create policy for an entity type.

    Thread Safety:
        This class is stateless after construction and thread-safe.
    """

    policies: dict[str, CreatePolicyRule] = field(default_factory=lambda: dict(CREATE_POLICIES))
    overrides: list[CreatePolicyRule] = field(default_factory=list)

    def classify(self, service: str, type: str) -> PolicyDecision:
        """Resolve the policy for ``service/type``.

        Raises:
            PolicyTableError: The entity type has no policy.
        """
        entity_type = f"{service}/{type}"

        for override in self.overrides:
            if override.matches(entity_type):
                return PolicyDecision(
                    policy=override.policy,
                    rule_matched=f"override:{override.entity_type}",
                    reason=override.reason or f"Override: {override.policy.value}",
                )

        rule = self.policies.get(entity_type)
        if rule is None:
            raise PolicyTableError(f"No create policy for entity type '{entity_type}'")

        return PolicyDecision(policy=rule.policy, rule_matched=rule.entity_type, reason=rule.reason)

    def validate(self, entity_types: Iterable[str]) -> None:
        """Fail if any entity type lacks a policy.

        Args:
            entity_types: Qualified types ("service/type") the handlers create.

        Raises:
            PolicyTableError: Listing every uncovered entity type.
        """
        types = set(entity_types)
        missing: list[str] = []
        for entity_type in sorted(types):
            service, _, type_ = entity_type.partition("/")
            try:
                self.classify(service, type_)
            except PolicyTableError:
                missing.append(entity_type)

        if missing:
            raise PolicyTableError(f"Entity types without a create policy: {missing}")

        logger.debug("Create policy table validated", extra={"entity_types": len(types)})
