"""Tests for wire convention detection and the operation registry."""

import json

import pytest

from localcloud.catalog import build_registry
from localcloud.config import Config
from localcloud.errors import SerializationException, UnknownOperation, ValidationException
from localcloud.protocol import (
    Dispatcher,
    InboundRequest,
    OperationContext,
    OperationRegistry,
    OperationResult,
    RegistryError,
    RestRoute,
    ServiceDescriptor,
    WireConvention,
    indexed_list,
    indexed_members,
)
from localcloud.responses import RequestIdSequence, ResponseEncoder


@pytest.fixture
def dispatcher(config: Config, repository) -> Dispatcher:
    return Dispatcher(build_registry(), repository, config, ResponseEncoder(), RequestIdSequence())


def _noop(ctx) -> OperationResult:
    return OperationResult({})


class TestResolve:
    """Tests for Dispatcher.resolve precedence."""

    def test_target_header_selects_json(self, dispatcher: Dispatcher) -> None:
        """Test that X-Amz-Target resolves a JSON operation."""
        request = InboundRequest(
            "POST",
            "/",
            headers={"X-Amz-Target": "DynamoDB_20120810.DescribeTable"},
            body=json.dumps({"TableName": "t"}).encode(),
        )

        resolution = dispatcher.resolve(request)

        assert resolution.descriptor.name == "dynamodb"
        assert resolution.operation == "DescribeTable"
        assert resolution.convention == WireConvention.JSON
        assert resolution.params == {"TableName": "t"}

    def test_target_wins_over_action(self, dispatcher: Dispatcher) -> None:
        """Test that a target header takes precedence over an Action parameter."""
        request = InboundRequest(
            "POST",
            "/",
            headers={"X-Amz-Target": "AmazonSQS.ListQueues", "Content-Type": "application/x-amz-json-1.0"},
            query={"Action": "DescribeInstances"},
            body=b"{}",
        )

        resolution = dispatcher.resolve(request)

        assert resolution.descriptor.name == "sqs"
        assert resolution.convention == WireConvention.JSON

    def test_action_in_form_body(self, dispatcher: Dispatcher) -> None:
        """Test that a form-encoded Action resolves a query operation."""
        request = InboundRequest(
            "POST",
            "/",
            headers={"Content-Type": "application/x-www-form-urlencoded; charset=utf-8"},
            body=b"Action=DescribeInstances&Version=2016-11-15",
        )

        resolution = dispatcher.resolve(request)

        assert resolution.descriptor.name == "ec2"
        assert resolution.convention == WireConvention.QUERY

    def test_action_resolved_by_version(self, dispatcher: Dispatcher) -> None:
        """Test that the API version picks the service of a shared action name."""
        request = InboundRequest(
            "GET", "/", query={"Action": "GetCallerIdentity", "Version": "2011-06-15"}
        )

        assert dispatcher.resolve(request).descriptor.name == "sts"

    def test_rest_route(self, dispatcher: Dispatcher) -> None:
        """Test that method and path resolve a REST operation with path params."""
        request = InboundRequest("GET", "/2013-04-01/hostedzone/ZABC/rrset", query={"maxitems": "5"})

        resolution = dispatcher.resolve(request)

        assert resolution.operation == "ListResourceRecordSets"
        assert resolution.convention == WireConvention.REST
        assert resolution.path_params == {"Id": "ZABC"}
        assert resolution.params == {"maxitems": "5"}

    def test_rest_subresource_wins(self, dispatcher: Dispatcher) -> None:
        """Test that a route naming a query subresource is tried first."""
        plain = dispatcher.resolve(InboundRequest("PUT", "/assets"))
        versioning = dispatcher.resolve(
            InboundRequest(
                "PUT",
                "/assets",
                query={"versioning": ""},
                body=b"<VersioningConfiguration><Status>Enabled</Status></VersioningConfiguration>",
            )
        )

        assert plain.operation == "CreateBucket"
        assert versioning.operation == "PutBucketVersioning"
        assert versioning.path_params == {"Bucket": "assets"}
        assert versioning.params["Status"] == "Enabled"

    def test_raw_body_route_skips_markup(self, dispatcher: Dispatcher) -> None:
        """Test that raw body routes accept bodies that are not markup."""
        request = InboundRequest("PUT", "/assets", query={"policy": ""}, body=b'{"Version": "1"}')

        resolution = dispatcher.resolve(request)

        assert resolution.operation == "PutBucketPolicy"
        assert resolution.params == {"policy": ""}

    def test_rest_route_under_mount_prefix(self, dispatcher: Dispatcher) -> None:
        """Test that REST routes also match below the service mount path."""
        request = InboundRequest("GET", "/route53/2013-04-01/change/C123")

        resolution = dispatcher.resolve(request)

        assert resolution.operation == "GetChange"
        assert resolution.path_params == {"Id": "C123"}

    def test_unknown_target(self, dispatcher: Dispatcher) -> None:
        """Test that an unknown target operation raises UnknownOperation."""
        request = InboundRequest("POST", "/", headers={"X-Amz-Target": "DynamoDB_20120810.Scan"})

        with pytest.raises(UnknownOperation):
            dispatcher.resolve(request)

    def test_no_signal(self, dispatcher: Dispatcher) -> None:
        """Test that a request with no convention signal raises UnknownOperation."""
        with pytest.raises(UnknownOperation):
            dispatcher.resolve(InboundRequest("POST", "/"))

    def test_malformed_json(self, dispatcher: Dispatcher) -> None:
        """Test that an undecodable JSON body raises SerializationException."""
        request = InboundRequest(
            "POST", "/", headers={"X-Amz-Target": "TrentService.ListKeys"}, body=b"{not json"
        )

        with pytest.raises(SerializationException):
            dispatcher.resolve(request)

    def test_json_array_body_rejected(self, dispatcher: Dispatcher) -> None:
        """Test that a JSON body must be an object."""
        request = InboundRequest(
            "POST", "/", headers={"X-Amz-Target": "TrentService.ListKeys"}, body=b"[]"
        )

        with pytest.raises(SerializationException):
            dispatcher.resolve(request)


class TestOperationRegistry:
    """Tests for registry registration and validation."""

    def test_shipped_registry_is_valid(self) -> None:
        """Test that every declared operation has a handler."""
        registry = build_registry()

        names = {d.name for d in registry.services}
        assert names == {
            "dynamodb",
            "sqs",
            "route53",
            "ec2",
            "kms",
            "secretsmanager",
            "sts",
            "s3",
            "ssm",
            "sns",
        }

    def test_missing_handler(self) -> None:
        """Test that a declared operation without a handler fails validation."""
        registry = OperationRegistry()
        registry.register_service(
            ServiceDescriptor(name="demo", json_operations=frozenset({"Ping", "Pong"}), target_prefix="Demo")
        )
        registry.bind("demo", "Ping", _noop)

        with pytest.raises(RegistryError) as exc_info:
            registry.validate()

        assert "demo.Pong" in str(exc_info.value)

    def test_stray_handler(self) -> None:
        """Test that a handler for an undeclared operation fails validation."""
        registry = OperationRegistry()
        registry.register_service(ServiceDescriptor(name="demo", query_operations=frozenset({"Ping"})))
        registry.bind("demo", "Ping", _noop)
        registry.bind("demo", "Other", _noop)

        with pytest.raises(RegistryError) as exc_info:
            registry.validate()

        assert "demo.Other" in str(exc_info.value)

    def test_duplicate_service(self) -> None:
        """Test that a service cannot be registered twice."""
        registry = OperationRegistry()
        registry.register_service(ServiceDescriptor(name="demo"))

        with pytest.raises(RegistryError):
            registry.register_service(ServiceDescriptor(name="demo"))

    def test_rest_template_compiles(self) -> None:
        """Test REST template matching."""
        pattern = RestRoute("GET", "/2013-04-01/hostedzone/{Id}", "GetHostedZone").compile()

        assert pattern.match("/2013-04-01/hostedzone/Z1").group("Id") == "Z1"
        assert pattern.match("/2013-04-01/hostedzone/Z1/") is not None
        assert pattern.match("/2013-04-01/hostedzone/Z1/rrset") is None


class TestRequestHelpers:
    """Tests for InboundRequest and indexed parameter helpers."""

    def test_headers_case_insensitive(self) -> None:
        """Test that header lookup ignores case."""
        request = InboundRequest("post", "/", headers={"User-Agent": "sdk custom-a"})

        assert request.method == "POST"
        assert request.user_agent == "sdk custom-a"

    def test_access_key_from_signature(self) -> None:
        """Test extracting the access key from a SigV4 header."""
        request = InboundRequest(
            "POST",
            "/",
            headers={
                "Authorization": "AWS4-HMAC-SHA256 "
                "Credential=AKIAEXAMPLE/20240101/us-east-1/sts/aws4_request, "
                "SignedHeaders=host, Signature=abc"
            },
        )

        assert request.access_key_id == "AKIAEXAMPLE"
        assert InboundRequest("POST", "/").access_key_id is None

    def test_json_body_is_not_form(self) -> None:
        """Test that a JSON content type yields no form params."""
        request = InboundRequest(
            "POST", "/", headers={"Content-Type": "application/json"}, body=b"Action=X"
        )

        assert request.form_params() == {}

    def test_indexed_list_order(self) -> None:
        """Test that indexed members are collected in numeric order."""
        params = {"InstanceId.10": "c", "InstanceId.2": "b", "InstanceId.1": "a", "Other": "x"}

        assert indexed_list(params, "InstanceId") == ["a", "b", "c"]

    def test_indexed_members_nested(self) -> None:
        """Test grouping structured members by index."""
        params = {
            "Filter.1.Name": "instance-state-name",
            "Filter.1.Value.1": "running",
            "Filter.2.Name": "tag-key",
        }

        members = indexed_members(params, "Filter")

        assert members == [
            {"Name": "instance-state-name", "Value.1": "running"},
            {"Name": "tag-key"},
        ]
        assert indexed_list(members[0], "Value") == ["running"]


class TestParameterAccessors:
    """Tests for OperationContext integer and typed member accessors."""

    @staticmethod
    def _ctx(config: Config, repository, params: dict) -> OperationContext:
        return OperationContext(
            request=InboundRequest("POST", "/"),
            descriptor=ServiceDescriptor(name="demo"),
            operation="Ping",
            convention=WireConvention.JSON,
            namespace="default",
            params=params,
            path_params={},
            repository=repository,
            config=config,
        )

    def test_int_param(self, config: Config, repository) -> None:
        """Test integer parsing from JSON numbers and query strings."""
        ctx = self._ctx(config, repository, {"A": 5, "B": "7", "C": "", "D": 3.0})

        assert ctx.int_param("A") == 5
        assert ctx.int_param("B") == 7
        assert ctx.int_param("C", 10) == 10
        assert ctx.int_param("D") == 3
        assert ctx.int_param("Missing", 1) == 1

    def test_int_param_invalid(self, config: Config, repository) -> None:
        """Test that non-integers raise with the requested code."""
        ctx = self._ctx(config, repository, {"A": "abc", "B": True, "C": 1.5, "D": [1]})

        for name in ("A", "B", "C", "D"):
            with pytest.raises(ValidationException) as exc_info:
                ctx.int_param(name, code="InvalidParameterValue")

            assert exc_info.value.code == "InvalidParameterValue"
            assert name in exc_info.value.message

    def test_int_param_bounds(self, config: Config, repository) -> None:
        """Test range checks with one or both bounds."""
        ctx = self._ctx(config, repository, {"A": 0, "B": 101})

        with pytest.raises(ValidationException, match="between 1 and 100"):
            ctx.int_param("A", minimum=1, maximum=100)
        with pytest.raises(ValidationException, match="at least 1"):
            ctx.int_param("A", minimum=1)
        with pytest.raises(ValidationException, match="at most 100"):
            ctx.int_param("B", maximum=100)
        assert ctx.int_param("B", minimum=1) == 101

    def test_typed_param(self, config: Config, repository) -> None:
        """Test container and element type checks."""
        ctx = self._ctx(
            config,
            repository,
            {"Tags": [{"Key": "a"}], "Keys": ["a", 1], "Spec": "on", "Map": {"a": 1}},
        )

        assert ctx.typed_param("Tags", list[dict]) == [{"Key": "a"}]
        assert ctx.typed_param("Map", dict) == {"a": 1}
        assert ctx.typed_param("Missing", list[str], default=[]) == []
        with pytest.raises(ValidationException):
            ctx.typed_param("Keys", list[str])
        with pytest.raises(ValidationException):
            ctx.typed_param("Spec", dict)
