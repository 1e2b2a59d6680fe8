"""End-to-end tests for the KMS control plane."""

from typing import Any

from fastapi.testclient import TestClient
from wire import json_call

TARGET = "TrentService."
ALIAS_ARN = "arn:aws:kms:us-east-1:000000000000:alias/"


def _call(
    client: TestClient,
    operation: str,
    body: dict[str, Any] | None = None,
    namespace: str | None = None,
):
    return json_call(client, TARGET + operation, body, namespace=namespace, version="1.1")


def _create_key(client: TestClient, **body: Any) -> dict[str, Any]:
    resp = _call(client, "CreateKey", body)
    assert resp.status_code == 200
    return resp.json()["KeyMetadata"]


class TestKeys:
    """Tests for CreateKey, DescribeKey and ListKeys."""

    def test_create_key_defaults(self, client: TestClient) -> None:
        """Test the metadata of a key created without members."""
        key = _create_key(client)

        assert key["Arn"] == f"arn:aws:kms:us-east-1:000000000000:key/{key['KeyId']}"
        assert key["AWSAccountId"] == "000000000000"
        assert key["KeyState"] == "Enabled"
        assert key["Enabled"] is True
        assert key["KeyUsage"] == "ENCRYPT_DECRYPT"
        assert key["KeySpec"] == "SYMMETRIC_DEFAULT"
        assert key["KeyManager"] == "CUSTOMER"
        assert key["Origin"] == "AWS_KMS"
        assert key["EncryptionAlgorithms"] == ["SYMMETRIC_DEFAULT"]
        assert "DeletionDate" not in key

    def test_describe_by_id_and_arn(self, client: TestClient) -> None:
        """Test that a key can be described by id or ARN."""
        key = _create_key(client, Description="app key")

        by_id = _call(client, "DescribeKey", {"KeyId": key["KeyId"]})
        by_arn = _call(client, "DescribeKey", {"KeyId": key["Arn"]})

        assert by_id.json()["KeyMetadata"]["Description"] == "app key"
        assert by_arn.json()["KeyMetadata"]["KeyId"] == key["KeyId"]

    def test_describe_unknown_key(self, client: TestClient) -> None:
        """Test that an unknown key is NotFoundException."""
        resp = _call(client, "DescribeKey", {"KeyId": "00000000-0000-0000-0000-000000000000"})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "NotFoundException"

    def test_missing_key_id(self, client: TestClient) -> None:
        """Test that a missing KeyId is a ValidationException."""
        resp = _call(client, "DescribeKey", {})

        assert resp.json()["__type"] == "ValidationException"

    def test_list_keys_pagination(self, client: TestClient) -> None:
        """Test Limit and Marker on ListKeys."""
        ids = {_create_key(client)["KeyId"] for _ in range(3)}

        first = _call(client, "ListKeys", {"Limit": 2}).json()
        second = _call(client, "ListKeys", {"Limit": 2, "Marker": first["NextMarker"]}).json()

        assert first["Truncated"] is True
        assert second["Truncated"] is False
        assert "NextMarker" not in second
        listed = [k["KeyId"] for k in first["Keys"] + second["Keys"]]
        assert set(listed) == ids
        assert len(listed) == 3

    def test_list_keys_limit_not_a_number(self, client: TestClient) -> None:
        """Test that a non-numeric Limit is a ValidationException."""
        resp = _call(client, "ListKeys", {"Limit": "abc"})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ValidationException"

    def test_keys_are_namespaced(self, client: TestClient) -> None:
        """Test that keys are invisible across namespaces."""
        key = _create_key(client)

        resp = _call(client, "DescribeKey", {"KeyId": key["KeyId"]}, namespace="other")

        assert resp.json()["__type"] == "NotFoundException"


class TestKeyDeletion:
    """Tests for ScheduleKeyDeletion and CancelKeyDeletion."""

    def test_schedule_and_cancel(self, client: TestClient) -> None:
        """Test that scheduling sets a deletion date and cancelling clears it."""
        key = _create_key(client)

        scheduled = _call(
            client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"], "PendingWindowInDays": 7}
        ).json()
        pending = _call(client, "DescribeKey", {"KeyId": key["KeyId"]}).json()["KeyMetadata"]
        _call(client, "CancelKeyDeletion", {"KeyId": key["KeyId"]})
        cancelled = _call(client, "DescribeKey", {"KeyId": key["KeyId"]}).json()["KeyMetadata"]

        assert scheduled["KeyState"] == "PendingDeletion"
        assert scheduled["PendingWindowInDays"] == 7
        assert scheduled["KeyId"] == key["Arn"]
        assert pending["KeyState"] == "PendingDeletion"
        assert pending["Enabled"] is False
        assert pending["DeletionDate"] == scheduled["DeletionDate"]
        assert cancelled["KeyState"] == "Disabled"
        assert cancelled["Enabled"] is False
        assert "DeletionDate" not in cancelled
        assert "PendingDeletionWindowInDays" not in cancelled

    def test_window_out_of_range(self, client: TestClient) -> None:
        """Test that the pending window must be between 7 and 30 days."""
        key = _create_key(client)

        resp = _call(client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"], "PendingWindowInDays": 3})

        assert resp.json()["__type"] == "ValidationException"

    def test_window_not_a_number(self, client: TestClient) -> None:
        """Test that a non-numeric pending window is a ValidationException."""
        key = _create_key(client)

        resp = _call(client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"], "PendingWindowInDays": "x"})

        assert resp.status_code == 400
        assert resp.json()["__type"] == "ValidationException"

    def test_schedule_twice(self, client: TestClient) -> None:
        """Test that a key pending deletion cannot be scheduled again."""
        key = _create_key(client)
        _call(client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"]})

        resp = _call(client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"]})

        assert resp.json()["__type"] == "KMSInvalidStateException"

    def test_cancel_enabled_key(self, client: TestClient) -> None:
        """Test that cancelling requires a pending deletion."""
        key = _create_key(client)

        resp = _call(client, "CancelKeyDeletion", {"KeyId": key["KeyId"]})

        assert resp.json()["__type"] == "KMSInvalidStateException"


class TestAliases:
    """Tests for CreateAlias, DeleteAlias and ListAliases."""

    def test_alias_lifecycle(self, client: TestClient) -> None:
        """Test creating, resolving, listing and deleting an alias."""
        key = _create_key(client)

        created = _call(client, "CreateAlias", {"AliasName": "alias/app", "TargetKeyId": key["KeyId"]})
        by_alias = _call(client, "DescribeKey", {"KeyId": "alias/app"}).json()
        by_alias_arn = _call(client, "DescribeKey", {"KeyId": ALIAS_ARN + "app"}).json()
        listed = _call(client, "ListAliases", {"KeyId": key["KeyId"]}).json()
        deleted = _call(client, "DeleteAlias", {"AliasName": "alias/app"})
        after = _call(client, "ListAliases").json()

        assert created.status_code == 200
        assert created.json() == {}
        assert by_alias["KeyMetadata"]["KeyId"] == key["KeyId"]
        assert by_alias_arn["KeyMetadata"]["KeyId"] == key["KeyId"]
        assert [a["AliasArn"] for a in listed["Aliases"]] == [ALIAS_ARN + "app"]
        assert listed["Aliases"][0]["TargetKeyId"] == key["KeyId"]
        assert deleted.status_code == 200
        assert after["Aliases"] == []

    def test_duplicate_alias(self, client: TestClient) -> None:
        """Test that alias names are unique."""
        key = _create_key(client)
        _call(client, "CreateAlias", {"AliasName": "alias/app", "TargetKeyId": key["KeyId"]})

        resp = _call(client, "CreateAlias", {"AliasName": "alias/app", "TargetKeyId": key["KeyId"]})

        assert resp.json()["__type"] == "AlreadyExistsException"

    def test_reserved_prefix(self, client: TestClient) -> None:
        """Test that the provider alias prefix is reserved."""
        key = _create_key(client)

        resp = _call(client, "CreateAlias", {"AliasName": "alias/aws/s3", "TargetKeyId": key["KeyId"]})

        assert resp.json()["__type"] == "NotAuthorizedException"

    def test_invalid_alias_name(self, client: TestClient) -> None:
        """Test that alias names need the alias/ prefix."""
        key = _create_key(client)

        resp = _call(client, "CreateAlias", {"AliasName": "app", "TargetKeyId": key["KeyId"]})

        assert resp.json()["__type"] == "ValidationException"

    def test_alias_to_alias(self, client: TestClient) -> None:
        """Test that an alias cannot target another alias."""
        key = _create_key(client)
        _call(client, "CreateAlias", {"AliasName": "alias/app", "TargetKeyId": key["KeyId"]})

        resp = _call(client, "CreateAlias", {"AliasName": "alias/other", "TargetKeyId": "alias/app"})

        assert resp.json()["__type"] == "ValidationException"

    def test_alias_to_pending_key(self, client: TestClient) -> None:
        """Test that a key pending deletion cannot get a new alias."""
        key = _create_key(client)
        _call(client, "ScheduleKeyDeletion", {"KeyId": key["KeyId"]})

        resp = _call(client, "CreateAlias", {"AliasName": "alias/app", "TargetKeyId": key["KeyId"]})

        assert resp.json()["__type"] == "KMSInvalidStateException"

    def test_delete_unknown_alias(self, client: TestClient) -> None:
        """Test that deleting an unknown alias is NotFoundException."""
        resp = _call(client, "DeleteAlias", {"AliasName": "alias/missing"})

        assert resp.json()["__type"] == "NotFoundException"


class TestKeyTags:
    """Tests for key tagging."""

    def test_tags_at_creation_and_after(self, client: TestClient) -> None:
        """Test tags given at creation, added later and removed."""
        key = _create_key(client, Tags=[{"TagKey": "team", "TagValue": "core"}])

        _call(
            client,
            "TagResource",
            {"KeyId": key["KeyId"], "Tags": [{"TagKey": "env", "TagValue": "dev"}]},
        )
        tagged = _call(client, "ListResourceTags", {"KeyId": key["KeyId"]}).json()
        _call(client, "UntagResource", {"KeyId": key["KeyId"], "TagKeys": ["team"]})
        untagged = _call(client, "ListResourceTags", {"KeyId": key["KeyId"]}).json()

        assert tagged["Tags"] == [
            {"TagKey": "env", "TagValue": "dev"},
            {"TagKey": "team", "TagValue": "core"},
        ]
        assert tagged["Truncated"] is False
        assert untagged["Tags"] == [{"TagKey": "env", "TagValue": "dev"}]
