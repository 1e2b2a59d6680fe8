"""Tests for response envelopes."""

import json
import xml.etree.ElementTree as ET
from datetime import UTC, datetime

from localcloud import ec2, route53, sqs
from localcloud.errors import InternalFailure, ResourceNotFound, ValidationException
from localcloud.protocol import OperationResult, WireConvention
from localcloud.responses import RequestIdSequence, ResponseEncoder

FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def _encoder() -> ResponseEncoder:
    return ResponseEncoder(server_name="TestServer", clock=lambda: FIXED_NOW)


def _strip(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class TestRequestIdSequence:
    """Tests for RequestIdSequence."""

    def test_monotonic_ids(self) -> None:
        """Test that ids are zero-padded and increasing."""
        sequence = RequestIdSequence()

        assert [sequence.next() for _ in range(3)] == ["REQ-000001", "REQ-000002", "REQ-000003"]


class TestStandardHeaders:
    """Tests for headers present on every response."""

    def test_headers(self) -> None:
        """Test server, date and request id headers."""
        headers = _encoder().standard_headers("REQ-000007")

        assert headers["Server"] == "TestServer"
        assert headers["Date"] == "Tue, 02 Jan 2024 03:04:05 GMT"
        assert headers["x-amz-request-id"] == "REQ-000007"
        assert len(headers["x-amz-id-2"]) == 40


class TestEncodeResult:
    """Tests for success envelopes."""

    def test_json_result(self) -> None:
        """Test the flat JSON envelope."""
        response = _encoder().encode_result(
            OperationResult({"QueueUrl": "http://x/q"}),
            sqs.DESCRIPTOR,
            "CreateQueue",
            WireConvention.JSON,
            "REQ-000001",
        )

        assert response.media_type == "application/x-amz-json-1.0"
        assert json.loads(response.body) == {"QueueUrl": "http://x/q"}
        assert response.headers["x-amzn-RequestId"] == "REQ-000001"

    def test_wrapped_query_result(self) -> None:
        """Test the Result and ResponseMetadata wrapping of query responses."""
        response = _encoder().encode_result(
            OperationResult({"QueueUrl": "http://x/q"}),
            sqs.DESCRIPTOR,
            "CreateQueue",
            WireConvention.QUERY,
            "REQ-000002",
        )

        root = ET.fromstring(response.body)
        assert _strip(root.tag) == "CreateQueueResponse"
        children = [_strip(c.tag) for c in root]
        assert children == ["CreateQueueResult", "ResponseMetadata"]
        assert root[1][0].text == "REQ-000002"

    def test_empty_query_result(self) -> None:
        """Test that an empty payload has only response metadata."""
        response = _encoder().encode_result(
            OperationResult(None), sqs.DESCRIPTOR, "DeleteQueue", WireConvention.QUERY, "REQ-000003"
        )

        root = ET.fromstring(response.body)
        assert [_strip(c.tag) for c in root] == ["ResponseMetadata"]

    def test_ec2_result(self) -> None:
        """Test that EC2 responses lead with requestId."""
        response = _encoder().encode_result(
            OperationResult({"return": True}), ec2.DESCRIPTOR, "DeleteVolume", WireConvention.QUERY, "REQ-9"
        )

        root = ET.fromstring(response.body)
        assert [_strip(c.tag) for c in root] == ["requestId", "return"]
        assert root[1].text == "true"

    def test_rest_result_with_status_and_headers(self) -> None:
        """Test REST payloads placed directly under the root with custom status."""
        response = _encoder().encode_result(
            OperationResult({"HostedZone": {"Id": "/hostedzone/Z1"}}, status=201, headers={"Location": "/z"}),
            route53.DESCRIPTOR,
            "CreateHostedZone",
            WireConvention.REST,
            "REQ-4",
        )

        root = ET.fromstring(response.body)
        assert response.status == 201
        assert response.headers["Location"] == "/z"
        assert root.tag == "{https://route53.amazonaws.com/doc/2013-04-01/}CreateHostedZoneResponse"


class TestEncodeError:
    """Tests for error envelopes."""

    def test_json_error(self) -> None:
        """Test the JSON error envelope."""
        error = ResourceNotFound("Table: t not found", code="ResourceNotFoundException")

        response = _encoder().encode_error(error, None, WireConvention.JSON, "REQ-1")

        assert response.status == 400
        assert json.loads(response.body) == {
            "__type": "ResourceNotFoundException",
            "message": "Table: t not found",
        }
        assert response.headers["x-amzn-ErrorType"] == "ResourceNotFoundException"
        assert response.error_code == "ResourceNotFoundException"

    def test_wrapped_error(self) -> None:
        """Test the ErrorResponse envelope of wrapped markup services."""
        error = ValidationException("bad", code="InvalidAttributeValue")

        response = _encoder().encode_error(error, sqs.DESCRIPTOR, WireConvention.QUERY, "REQ-2")

        root = ET.fromstring(response.body)
        assert _strip(root.tag) == "ErrorResponse"
        fields = {_strip(c.tag): c.text for c in root[0]}
        assert fields == {"Type": "Sender", "Code": "InvalidAttributeValue", "Message": "bad"}
        assert root[1].text == "REQ-2"

    def test_ec2_error(self) -> None:
        """Test the Response/Errors envelope of EC2."""
        error = InternalFailure("boom")

        response = _encoder().encode_error(error, ec2.DESCRIPTOR, WireConvention.QUERY, "REQ-3")

        root = ET.fromstring(response.body)
        assert root.tag == "Response"
        assert root.find("Errors/Error/Code").text == "InternalFailure"
        assert root.find("RequestID").text == "REQ-3"
        assert response.status == 500

    def test_receiver_fault(self) -> None:
        """Test that server-side errors report the Receiver fault."""
        response = _encoder().encode_error(InternalFailure("x"), None, None, "REQ-5")

        root = ET.fromstring(response.body)
        assert root.find("Error/Type").text == "Receiver"
