"""Tests for namespace resolution."""

from localcloud.namespace import resolve_namespace


class TestResolveNamespace:
    """Tests for resolve_namespace."""

    def test_marker_as_last_token(self) -> None:
        """Test that a trailing marker token selects its namespace."""
        assert resolve_namespace("aws-cli/2.15 Python/3.11 custom-team-a") == "team-a"

    def test_missing_header(self) -> None:
        """Test that an absent header selects the default namespace."""
        assert resolve_namespace(None) == "default"
        assert resolve_namespace("") == "default"
        assert resolve_namespace("   ") == "default"

    def test_marker_not_last(self) -> None:
        """Test that only the last token is considered."""
        assert resolve_namespace("custom-team-a aws-cli/2.15") == "default"

    def test_bare_marker(self) -> None:
        """Test that a marker with nothing after it is ignored."""
        assert resolve_namespace("aws-cli/2.15 custom-") == "default"

    def test_custom_marker_and_default(self) -> None:
        """Test resolution with a non-default marker and fallback."""
        assert resolve_namespace("sdk tenant-blue", marker="tenant-", default="shared") == "blue"
        assert resolve_namespace("sdk custom-blue", marker="tenant-", default="shared") == "shared"

    def test_marker_is_case_sensitive(self) -> None:
        """Test that the marker prefix must match exactly."""
        assert resolve_namespace("sdk Custom-blue") == "default"
