"""localcloud administration CLI.

Usage:
    localcloud serve               # Run the emulator
    localcloud seed resources.yaml # Load a seed file into the store
    localcloud list                # List stored resources
    localcloud purge --namespace X # Delete every resource of a namespace
"""

from __future__ import annotations

import dataclasses
import json
import sys
from pathlib import Path

import click

from .app import build_repository
from .config import Config, ConfigurationError
from .errors import CloudError
from .seed import SeedLoadError, apply_seed, load_seed
from .store import ReadRetryPolicy, ResourceStore


def load_config() -> Config:
    """Load configuration, converting failures into a CLI error."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def open_store(config: Config) -> ResourceStore:
    try:
        return ResourceStore.from_url(
            config.database_url, ReadRetryPolicy.from_settings(config.read_retry)
        )
    except CloudError as e:
        raise click.ClickException(f"Cannot open resource store: {e.message}") from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="localcloud")
def cli() -> None:
    """localcloud: a local cloud control-plane emulator.

    \b
    Quick Start:
        localcloud serve                 # Listen on 0.0.0.0:4566
        localcloud list --namespace ci   # Inspect what a test run created
    """
    pass


@cli.command()
@click.option("--host", default=None, help="Listen address (overrides LOCALCLOUD_HOST).")
@click.option("--port", type=int, default=None, help="Listen port (overrides LOCALCLOUD_PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the emulator until interrupted."""
    from .main import serve as serve_app
    from .main import setup_logging

    config = load_config()
    overrides = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    if overrides:
        try:
            config = dataclasses.replace(config, **overrides)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e

    setup_logging(config.log_level, config.log_format)
    sys.exit(serve_app(config))


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def seed(file: Path) -> None:
    """Load resources from a YAML seed FILE into the store."""
    config = load_config()
    store = open_store(config)
    try:
        created = apply_seed(build_repository(config, store), load_seed(file))
    except SeedLoadError as e:
        raise click.ClickException(str(e)) from e
    finally:
        store.dispose()
    click.secho(f"✓ Seeded {created} new resource(s) from {file}", fg="green")


@cli.command(name="list")
@click.option("--namespace", default=None, help="Only this namespace.")
@click.option("--service", default=None, help="Only this service.")
@click.option("--output", type=click.Choice(["table", "json"]), default="table", show_default=True)
def list_resources(namespace: str | None, service: str | None, output: str) -> None:
    """List stored resources."""
    config = load_config()
    store = open_store(config)
    try:
        resources = [
            r for r in store.all(namespace) if service is None or r.service == service
        ]
    except CloudError as e:
        raise click.ClickException(e.message) from e
    finally:
        store.dispose()

    if output == "json":
        click.echo(
            json.dumps(
                [
                    {
                        "identifier": r.identifier,
                        "namespace": r.namespace,
                        "service": r.service,
                        "type": r.type,
                        "attributes": r.attributes,
                    }
                    for r in resources
                ],
                indent=2,
                default=str,
            )
        )
        return

    if not resources:
        click.echo("No resources.")
        return
    for r in resources:
        click.echo(f"{r.namespace:<16} {r.entity_type:<28} {r.identifier}")
    click.echo(f"\n{len(resources)} resource(s)")


@cli.command()
@click.option("--namespace", default=None, help="Only this namespace (default: everything).")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def purge(namespace: str | None, yes: bool) -> None:
    """Delete stored resources."""
    scope = f"namespace '{namespace}'" if namespace else "ALL namespaces"
    if not yes:
        click.confirm(f"Delete every resource in {scope}?", abort=True)

    config = load_config()
    store = open_store(config)
    try:
        deleted = store.purge(namespace)
    except CloudError as e:
        raise click.ClickException(e.message) from e
    finally:
        store.dispose()
    click.secho(f"✓ Deleted {deleted} resource(s) from {scope}", fg="green")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
