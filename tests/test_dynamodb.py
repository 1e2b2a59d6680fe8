"""End-to-end tests for the DynamoDB control plane."""

from typing import Any

from fastapi.testclient import TestClient
from wire import json_call

TARGET = "DynamoDB_20120810."


def _call(
    client: TestClient,
    operation: str,
    body: dict[str, Any] | None = None,
    namespace: str | None = None,
):
    return json_call(client, TARGET + operation, body, namespace=namespace)


def _create(client: TestClient, name: str = "users", **extra: Any):
    body: dict[str, Any] = {
        "TableName": name,
        "AttributeDefinitions": [{"AttributeName": "pk", "AttributeType": "S"}],
        "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
    }
    body.update(extra)
    return _call(client, "CreateTable", body)


class TestCreateTable:
    """Tests for CreateTable."""

    def test_provisioned_defaults(self, client: TestClient) -> None:
        """Test that a table without billing mode is provisioned at 5/5."""
        resp = _create(client)

        assert resp.status_code == 200
        table = resp.json()["TableDescription"]
        assert table["TableStatus"] == "ACTIVE"
        assert table["TableArn"] == "arn:aws:dynamodb:us-east-1:000000000000:table/users"
        assert table["ProvisionedThroughput"]["ReadCapacityUnits"] == 5
        assert table["ProvisionedThroughput"]["WriteCapacityUnits"] == 5
        assert table["BillingModeSummary"]["BillingMode"] == "PROVISIONED"
        assert "TimeToLiveDescription" not in table

    def test_on_demand_has_no_throughput(self, client: TestClient) -> None:
        """Test that an on-demand table reports no throughput on any read."""
        _create(
            client,
            BillingMode="PAY_PER_REQUEST",
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "by-pk",
                    "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
        )

        table = _call(client, "DescribeTable", {"TableName": "users"}).json()["Table"]

        assert "ProvisionedThroughput" not in table
        assert "ProvisionedThroughput" not in table["GlobalSecondaryIndexes"][0]
        assert table["GlobalSecondaryIndexes"][0]["IndexStatus"] == "ACTIVE"

    def test_duplicate_table(self, client: TestClient) -> None:
        """Test that creating an existing table is ResourceInUseException."""
        _create(client)

        resp = _create(client)

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ResourceInUseException"

    def test_undefined_key_attribute(self, client: TestClient) -> None:
        """Test that key attributes must be defined."""
        resp = _create(client, KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}])

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ValidationException"

    def test_missing_table_name(self, client: TestClient) -> None:
        """Test that TableName is required."""
        resp = _call(client, "CreateTable", {})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ValidationException"
        assert "TableName" in resp.json()["message"]

    def test_tags_on_create(self, client: TestClient) -> None:
        """Test that tags given at creation are listed."""
        arn = _create(client, Tags=[{"Key": "env", "Value": "dev"}]).json()["TableDescription"]["TableArn"]

        resp = _call(client, "ListTagsOfResource", {"ResourceArn": arn})

        assert resp.json()["Tags"] == [{"Key": "env", "Value": "dev"}]


class TestUpdateTable:
    """Tests for UpdateTable billing mode switching."""

    def test_switch_on_demand_to_provisioned(self, client: TestClient) -> None:
        """Test that switching back to provisioned restores default throughput."""
        _create(client, BillingMode="PAY_PER_REQUEST")

        resp = _call(client, "UpdateTable", {"TableName": "users", "BillingMode": "PROVISIONED"})

        table = resp.json()["TableDescription"]
        assert table["BillingModeSummary"]["BillingMode"] == "PROVISIONED"
        assert table["ProvisionedThroughput"]["ReadCapacityUnits"] == 5
        assert table["ProvisionedThroughput"]["WriteCapacityUnits"] == 5

    def test_switch_to_on_demand_drops_throughput(self, client: TestClient) -> None:
        """Test that switching to on-demand removes throughput."""
        _create(client, ProvisionedThroughput={"ReadCapacityUnits": 10, "WriteCapacityUnits": 10})

        _call(client, "UpdateTable", {"TableName": "users", "BillingMode": "PAY_PER_REQUEST"})
        table = _call(client, "DescribeTable", {"TableName": "users"}).json()["Table"]

        assert "ProvisionedThroughput" not in table
        assert "LastUpdateToPayPerRequestDateTime" in table["BillingModeSummary"]

    def test_throughput_rejected_for_on_demand(self, client: TestClient) -> None:
        """Test that throughput cannot be set on an on-demand table."""
        _create(client, BillingMode="PAY_PER_REQUEST")

        resp = _call(
            client,
            "UpdateTable",
            {
                "TableName": "users",
                "ProvisionedThroughput": {"ReadCapacityUnits": 1, "WriteCapacityUnits": 1},
            },
        )

        assert resp.json()["__type"] == "ValidationException"

    def test_index_lifecycle(self, client: TestClient) -> None:
        """Test creating and deleting a global secondary index."""
        _create(client)
        create_index = {
            "Create": {
                "IndexName": "by-pk",
                "KeySchema": [{"AttributeName": "pk", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "KEYS_ONLY"},
            }
        }

        created = _call(
            client, "UpdateTable", {"TableName": "users", "GlobalSecondaryIndexUpdates": [create_index]}
        ).json()["TableDescription"]
        deleted = _call(
            client,
            "UpdateTable",
            {"TableName": "users", "GlobalSecondaryIndexUpdates": [{"Delete": {"IndexName": "by-pk"}}]},
        ).json()["TableDescription"]

        assert created["GlobalSecondaryIndexes"][0]["ProvisionedThroughput"]["ReadCapacityUnits"] == 5
        assert "GlobalSecondaryIndexes" not in deleted


class TestTableLifecycle:
    """Tests for describe, list and delete."""

    def test_describe_missing(self, client: TestClient) -> None:
        """Test that an unknown table is ResourceNotFoundException."""
        resp = _call(client, "DescribeTable", {"TableName": "ghost"})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ResourceNotFoundException"

    def test_list_tables_paginates(self, client: TestClient) -> None:
        """Test ListTables ordering and pagination."""
        for name in ("ccc", "aaa", "bbb"):
            _create(client, name)

        first = _call(client, "ListTables", {"Limit": 2}).json()
        start = first["LastEvaluatedTableName"]
        second = _call(client, "ListTables", {"ExclusiveStartTableName": start}).json()

        assert first["TableNames"] == ["aaa", "bbb"]
        assert first["LastEvaluatedTableName"] == "bbb"
        assert second == {"TableNames": ["ccc"]}

    def test_list_tables_limit_not_a_number(self, client: TestClient) -> None:
        """Test that a non-numeric Limit is a ValidationException, not a server fault."""
        resp = _call(client, "ListTables", {"Limit": "abc"})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ValidationException"

    def test_delete_table(self, client: TestClient) -> None:
        """Test that a deleted table reports DELETING and disappears."""
        _create(client)

        resp = _call(client, "DeleteTable", {"TableName": "users"})

        assert resp.json()["TableDescription"]["TableStatus"] == "DELETING"
        assert _call(client, "ListTables").json()["TableNames"] == []

    def test_deletion_protection(self, client: TestClient) -> None:
        """Test that a protected table cannot be deleted."""
        _create(client, DeletionProtectionEnabled=True)

        resp = _call(client, "DeleteTable", {"TableName": "users"})

        assert resp.json()["__type"] == "ValidationException"

    def test_tables_isolated_by_namespace(self, client: TestClient) -> None:
        """Test that a table in one namespace is invisible in another."""
        _create(client)

        resp = _call(client, "DescribeTable", {"TableName": "users"}, namespace="team-b")

        assert resp.json()["__type"] == "ResourceNotFoundException"


class TestTagsAndTtl:
    """Tests for tagging and time to live."""

    def test_tag_untag(self, client: TestClient) -> None:
        """Test adding and removing tags."""
        arn = _create(client).json()["TableDescription"]["TableArn"]

        tags = [{"Key": "a", "Value": "1"}, {"Key": "b", "Value": "2"}]
        _call(client, "TagResource", {"ResourceArn": arn, "Tags": tags})
        _call(client, "UntagResource", {"ResourceArn": arn, "TagKeys": ["a"]})
        tags = _call(client, "ListTagsOfResource", {"ResourceArn": arn}).json()["Tags"]

        assert tags == [{"Key": "b", "Value": "2"}]

    def test_tag_unknown_table(self, client: TestClient) -> None:
        """Test that tagging an unknown ARN fails."""
        resp = _call(
            client,
            "TagResource",
            {"ResourceArn": "arn:aws:dynamodb:us-east-1:000000000000:table/ghost", "Tags": []},
        )

        assert resp.json()["__type"] == "ResourceNotFoundException"

    def test_time_to_live(self, client: TestClient) -> None:
        """Test enabling and disabling time to live."""
        _create(client)

        enable = _call(
            client,
            "UpdateTimeToLive",
            {"TableName": "users", "TimeToLiveSpecification": {"Enabled": True, "AttributeName": "exp"}},
        )
        described = _call(client, "DescribeTimeToLive", {"TableName": "users"}).json()
        again = _call(
            client,
            "UpdateTimeToLive",
            {"TableName": "users", "TimeToLiveSpecification": {"Enabled": True, "AttributeName": "exp"}},
        )

        assert enable.json()["TimeToLiveSpecification"] == {"Enabled": True, "AttributeName": "exp"}
        assert described["TimeToLiveDescription"] == {"TimeToLiveStatus": "ENABLED", "AttributeName": "exp"}
        assert again.json()["__type"] == "ValidationException"

    def test_malformed_members(self, client: TestClient) -> None:
        """Test that wrongly shaped structured members are client errors."""
        _create(client)

        bodies = [
            {"TableName": "users", "AttributeDefinitions": [{"AttributeType": "S"}]},
            {"TableName": "users", "AttributeDefinitions": "pk"},
            {"TableName": "users", "GlobalSecondaryIndexUpdates": [{"Update": "idx"}]},
            {"TableName": "users", "GlobalSecondaryIndexUpdates": [{"Rename": {}}]},
            {"TableName": "users", "StreamSpecification": True},
        ]
        responses = [_call(client, "UpdateTable", body) for body in bodies]
        ttl = _call(client, "UpdateTimeToLive", {"TableName": "users", "TimeToLiveSpecification": "on"})

        for resp in responses + [ttl]:
            assert resp.status_code == 400
            assert resp.json()["__type"] == "ValidationException"
