"""Tests for the administration CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from localcloud.cli import cli

SEED = """
resources:
  - identifier: arn:aws:sqs:us-east-1:000000000000:jobs
    service: sqs
    type: queue
    attributes:
      QueueName: jobs
  - identifier: arn:aws:sqs:us-east-1:000000000000:jobs
    namespace: team-a
    service: sqs
    type: queue
    attributes:
      QueueName: jobs
"""


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    """Environment pointing the CLI at a file-backed store."""
    return {"LOCALCLOUD_DATABASE_URL": f"sqlite:///{tmp_path / 'cloud.db'}"}


@pytest.fixture
def seed_file(tmp_path: Path) -> Path:
    path = tmp_path / "seed.yaml"
    path.write_text(SEED)
    return path


class TestSeedCommand:
    """Tests for localcloud seed."""

    def test_seed_twice(self, env: dict[str, str], seed_file: Path) -> None:
        """Test that seeding is idempotent across runs."""
        runner = CliRunner()

        first = runner.invoke(cli, ["seed", str(seed_file)], env=env)
        second = runner.invoke(cli, ["seed", str(seed_file)], env=env)

        assert first.exit_code == 0
        assert "Seeded 2 new resource(s)" in first.output
        assert second.exit_code == 0
        assert "Seeded 0 new resource(s)" in second.output

    def test_invalid_seed(self, env: dict[str, str], tmp_path: Path) -> None:
        """Test that an invalid seed file fails with a message."""
        bad = tmp_path / "bad.yaml"
        bad.write_text("resources:\n  - service: sqs\n")

        result = CliRunner().invoke(cli, ["seed", str(bad)], env=env)

        assert result.exit_code == 1
        assert "Seed validation failed" in result.output


class TestListCommand:
    """Tests for localcloud list."""

    def test_list_json(self, env: dict[str, str], seed_file: Path) -> None:
        """Test JSON output filtered by namespace."""
        runner = CliRunner()
        runner.invoke(cli, ["seed", str(seed_file)], env=env)

        result = runner.invoke(cli, ["list", "--namespace", "team-a", "--output", "json"], env=env)

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert len(rows) == 1
        assert rows[0]["namespace"] == "team-a"
        assert rows[0]["attributes"]["QueueName"] == "jobs"

    def test_list_empty(self, env: dict[str, str]) -> None:
        """Test the message for an empty store."""
        result = CliRunner().invoke(cli, ["list"], env=env)

        assert result.exit_code == 0
        assert "No resources." in result.output

    def test_invalid_config(self, env: dict[str, str]) -> None:
        """Test that configuration errors become CLI errors."""
        result = CliRunner().invoke(cli, ["list"], env={**env, "LOCALCLOUD_PORT": "http"})

        assert result.exit_code == 1
        assert "must be an integer" in result.output


class TestPurgeCommand:
    """Tests for localcloud purge."""

    def test_purge_namespace(self, env: dict[str, str], seed_file: Path) -> None:
        """Test purging a single namespace."""
        runner = CliRunner()
        runner.invoke(cli, ["seed", str(seed_file)], env=env)

        purged = runner.invoke(cli, ["purge", "--namespace", "team-a", "--yes"], env=env)
        listed = runner.invoke(cli, ["list", "--output", "json"], env=env)

        assert purged.exit_code == 0
        assert "Deleted 1 resource(s)" in purged.output
        assert [r["namespace"] for r in json.loads(listed.output)] == ["default"]

    def test_purge_aborted(self, env: dict[str, str], seed_file: Path) -> None:
        """Test that declining the confirmation keeps everything."""
        runner = CliRunner()
        runner.invoke(cli, ["seed", str(seed_file)], env=env)

        aborted = runner.invoke(cli, ["purge"], input="n\n", env=env)
        listed = runner.invoke(cli, ["list", "--output", "json"], env=env)

        assert aborted.exit_code == 1
        assert len(json.loads(listed.output)) == 2
