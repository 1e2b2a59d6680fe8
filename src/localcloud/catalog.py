"""The set of shipped services."""

from __future__ import annotations

from . import dynamodb, ec2, kms, route53, s3, secretsmanager, sns, sqs, ssm, sts
from .protocol import OperationRegistry

SERVICE_MODULES = (dynamodb, sqs, route53, ec2, kms, secretsmanager, sts, s3, ssm, sns)


def register_all(registry: OperationRegistry) -> None:
    """Register every shipped service with ``registry``."""
    for module in SERVICE_MODULES:
        module.register(registry)


def build_registry() -> OperationRegistry:
    """A validated registry holding every shipped service.

    Raises:
        RegistryError: A declared operation has no handler, or a handler is
            bound to an undeclared operation.
    """
    registry = OperationRegistry()
    register_all(registry)
    registry.validate()
    return registry
