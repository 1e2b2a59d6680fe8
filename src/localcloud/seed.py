"""Seed file loading with validation.

A seed file preloads resources at startup, e.g. a queue every test suite
expects to exist. Resources go through the entity repository, so they are
normalized like any other write and loading the same file twice is a no-op.

Example seed file:
    resources:
      - identifier: arn:aws:sqs:us-east-1:000000000000:jobs
        service: sqs
        type: queue
        attributes:
          QueueName: jobs
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SEED_FILE_SIZE_BYTES
from .entities import EntityRepository
from .errors import CloudError
from .idempotency import CreatePolicy, PolicyTableError
from .models import SeedDocument

logger = logging.getLogger(__name__)


class SeedLoadError(Exception):
    """Raised when seed loading or validation fails."""

    pass


def load_seed(path: Path) -> SeedDocument:
    """Load and validate a seed file from YAML.

    Args:
        path: Seed file path.

    Returns:
        Validated seed document.

    Raises:
        SeedLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SeedLoadError(f"Seed file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SeedLoadError(f"Failed to stat seed file {path}: {e}") from e

    if file_size > MAX_SEED_FILE_SIZE_BYTES:
        raise SeedLoadError(
            f"Seed file exceeds maximum size of {MAX_SEED_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SeedLoadError(f"Failed to read seed file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SeedLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return SeedDocument()
    if not isinstance(raw_data, dict):
        raise SeedLoadError(f"Seed file must contain a YAML mapping: {path}")

    try:
        document = SeedDocument.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise SeedLoadError(f"Seed validation failed for {path}:\n" + "\n".join(errors)) from e

    logger.info("Loaded seed file", extra={"path": str(path), "resources": len(document.resources)})
    return document


def apply_seed(repository: EntityRepository, document: SeedDocument) -> int:
    """Create every seed resource that does not exist yet.

    Returns:
        Number of resources created (existing ones are left untouched).

    Raises:
        SeedLoadError: A resource has an unknown entity type or cannot be stored.
    """
    created = 0
    for item in document.resources:
        try:
            repository.classifier.classify(item.service, item.type)
            outcome = repository.create(
                item.identifier,
                item.service,
                item.type,
                item.namespace,
                item.attributes,
                policy=CreatePolicy.IDEMPOTENT_RETURN,
            )
        except PolicyTableError as e:
            raise SeedLoadError(f"Unknown entity type {item.entity_type}: {item.identifier}") from e
        except CloudError as e:
            raise SeedLoadError(f"Failed to seed {item.entity_type} {item.identifier}: {e.message}") from e
        if outcome.created:
            created += 1

    logger.info(
        "Applied seed resources",
        extra={"created": created, "skipped": len(document.resources) - created},
    )
    return created
