"""Tests for the XML codec."""

from datetime import UTC, datetime

import pytest

from localcloud.xmlcodec import (
    MAX_XML_BODY_BYTES,
    MarkupStyle,
    XmlDecodeError,
    ensure_list,
    format_scalar,
    parse,
    render,
)


class TestRender:
    """Tests for render."""

    def test_wrapped_lists_repeat_elements(self) -> None:
        """Test that wrapped lists repeat the element name."""
        body = render("ListQueuesResult", {"QueueUrl": ["a", "b"]})

        assert body.startswith(b'<?xml version="1.0" encoding="UTF-8"?>')
        assert b"<QueueUrl>a</QueueUrl><QueueUrl>b</QueueUrl>" in body

    def test_ec2_lists_use_items(self) -> None:
        """Test that EC2 style lists nest item elements."""
        body = render("R", {"groupSet": [{"groupId": "sg-1"}]}, MarkupStyle.EC2)

        assert b"<groupSet><item><groupId>sg-1</groupId></item></groupSet>" in body

    def test_none_values_omitted(self) -> None:
        """Test that None members produce no element."""
        body = render("R", {"Keep": "x", "Drop": None})

        assert b"<Keep>x</Keep>" in body
        assert b"Drop" not in body

    def test_namespace_declared(self) -> None:
        """Test that the default namespace is set on the root."""
        body = render("R", {}, xmlns="https://route53.amazonaws.com/doc/2013-04-01/")

        assert b'xmlns="https://route53.amazonaws.com/doc/2013-04-01/"' in body

    def test_text_is_escaped(self) -> None:
        """Test that markup characters in text are escaped."""
        body = render("R", {"Message": "a < b & c"})

        assert b"a &lt; b &amp; c" in body


class TestFormatScalar:
    """Tests for format_scalar."""

    def test_booleans_lowercase(self) -> None:
        """Test boolean rendering."""
        assert format_scalar(True) == "true"
        assert format_scalar(False) == "false"

    def test_datetime_milliseconds(self) -> None:
        """Test datetime rendering with millisecond precision."""
        value = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=UTC)

        assert format_scalar(value) == "2024-05-01T12:30:45.123Z"


class TestParse:
    """Tests for parse and ensure_list."""

    def test_repeated_siblings_become_lists(self) -> None:
        """Test parsing of a change batch with namespaces."""
        body = (
            b'<?xml version="1.0"?>'
            b'<ChangeResourceRecordSetsRequest xmlns="https://route53.amazonaws.com/doc/2013-04-01/">'
            b"<ChangeBatch><Changes>"
            b"<Change><Action>CREATE</Action></Change>"
            b"<Change><Action>DELETE</Action></Change>"
            b"</Changes></ChangeBatch>"
            b"</ChangeResourceRecordSetsRequest>"
        )

        root, value = parse(body)

        assert root == "ChangeResourceRecordSetsRequest"
        changes = value["ChangeBatch"]["Changes"]["Change"]
        assert [c["Action"] for c in changes] == ["CREATE", "DELETE"]

    def test_malformed(self) -> None:
        """Test that malformed XML raises XmlDecodeError."""
        with pytest.raises(XmlDecodeError):
            parse(b"<Open><Unclosed></Open>")

    def test_oversized(self) -> None:
        """Test that oversized bodies are rejected before parsing."""
        with pytest.raises(XmlDecodeError) as exc_info:
            parse(b" " * (MAX_XML_BODY_BYTES + 1))

        assert "maximum size" in str(exc_info.value)

    @pytest.mark.parametrize(
        "value,expected",
        [(None, []), ("", []), ({"a": 1}, [{"a": 1}]), ([1, 2], [1, 2])],
    )
    def test_ensure_list(self, value, expected) -> None:
        """Test normalizing absent, single and repeated members."""
        assert ensure_list(value) == expected
