"""End-to-end tests for the SNS query API."""

import json
from typing import Any

from fastapi.testclient import TestClient
from wire import query_call, xml_root, xml_text, xml_texts

from localcloud.store import ResourceStore

TOPIC_ARN = "arn:aws:sns:us-east-1:000000000000:{name}"


def _query(client: TestClient, action: str, params: dict[str, Any] | None = None, **kwargs: Any):
    all_params = {"Action": action, "Version": "2010-03-31"}
    all_params.update(params or {})
    return query_call(client, all_params, **kwargs)


def _create_topic(client: TestClient, name: str = "events", **params: Any) -> str:
    resp = _query(client, "CreateTopic", {"Name": name, **params})
    assert resp.status_code == 200, resp.text
    return xml_text(resp, "CreateTopicResult/TopicArn")


def _attributes(resp) -> dict[str, str]:
    root = xml_root(resp)
    return {
        entry.find("key").text: entry.find("value").text or ""
        for entry in root.iter("entry")
    }


def _subscribe(client: TestClient, topic_arn: str, endpoint: str = "arn:aws:sqs:us-east-1:000000000000:q"):
    return _query(
        client, "Subscribe", {"TopicArn": topic_arn, "Protocol": "sqs", "Endpoint": endpoint}
    )


class TestTopics:
    """Tests for topic lifecycle."""

    def test_create_twice_returns_same_arn(self, client: TestClient, store: ResourceStore) -> None:
        """Test that CreateTopic is idempotent."""
        first = _create_topic(client)
        second = _create_topic(client)

        assert first == TOPIC_ARN.format(name="events")
        assert second == first
        assert store.count(service="sns", type="topic") == 1

    def test_envelope(self, client: TestClient) -> None:
        """Test the query response envelope."""
        resp = _query(client, "CreateTopic", {"Name": "events"})

        root = xml_root(resp)
        assert root.tag == "CreateTopicResponse"
        assert root.find("ResponseMetadata/RequestId").text == resp.headers["x-amz-request-id"]

    def test_invalid_names(self, client: TestClient) -> None:
        """Test topic name and FIFO suffix validation."""
        cases = [
            {"Name": "bad name"},
            {"Name": "orders.fifo"},
            {"Name": "orders", "Attributes.entry.1.key": "FifoTopic", "Attributes.entry.1.value": "true"},
        ]
        for params in cases:
            resp = _query(client, "CreateTopic", params)

            assert resp.status_code == 400, params
            assert xml_text(resp, "Error/Code") == "InvalidParameter"

    def test_fifo_topic(self, client: TestClient) -> None:
        """Test that FIFO topics keep their suffix and attribute."""
        arn = _create_topic(
            client,
            "orders.fifo",
            **{"Attributes.entry.1.key": "FifoTopic", "Attributes.entry.1.value": "true"},
        )

        attributes = _attributes(_query(client, "GetTopicAttributes", {"TopicArn": arn}))

        assert arn.endswith(":orders.fifo")
        assert attributes["FifoTopic"] == "true"

    def test_list_topics(self, client: TestClient) -> None:
        """Test that topics are listed by ARN."""
        _create_topic(client, "b")
        _create_topic(client, "a")

        resp = _query(client, "ListTopics")

        assert xml_texts(resp, "ListTopicsResult/Topics/member/TopicArn") == [
            TOPIC_ARN.format(name="a"),
            TOPIC_ARN.format(name="b"),
        ]

    def test_delete_topic(self, client: TestClient, store: ResourceStore) -> None:
        """Test that deleting a topic removes its subscriptions and repeats quietly."""
        arn = _create_topic(client)
        _subscribe(client, arn)

        assert _query(client, "DeleteTopic", {"TopicArn": arn}).status_code == 200
        assert _query(client, "DeleteTopic", {"TopicArn": arn}).status_code == 200
        assert store.count(service="sns", type="subscription") == 0
        resp = _query(client, "GetTopicAttributes", {"TopicArn": arn})
        assert resp.status_code == 404
        assert xml_text(resp, "Error/Code") == "NotFound"


class TestTopicAttributes:
    """Tests for topic attributes."""

    def test_defaults(self, client: TestClient) -> None:
        """Test the attributes every topic reports."""
        arn = _create_topic(client)

        attributes = _attributes(_query(client, "GetTopicAttributes", {"TopicArn": arn}))

        assert attributes["TopicArn"] == arn
        assert attributes["Owner"] == "000000000000"
        assert attributes["DisplayName"] == ""
        assert attributes["SubscriptionsConfirmed"] == "0"
        assert json.loads(attributes["Policy"])["Statement"][0]["Resource"] == arn

    def test_set_and_clear(self, client: TestClient) -> None:
        """Test that an attribute is set and an empty value clears it."""
        arn = _create_topic(client)

        _query(
            client,
            "SetTopicAttributes",
            {"TopicArn": arn, "AttributeName": "DisplayName", "AttributeValue": "Events"},
        )
        attributes = _attributes(_query(client, "GetTopicAttributes", {"TopicArn": arn}))
        assert attributes["DisplayName"] == "Events"

        _query(
            client,
            "SetTopicAttributes",
            {"TopicArn": arn, "AttributeName": "DisplayName", "AttributeValue": ""},
        )
        attributes = _attributes(_query(client, "GetTopicAttributes", {"TopicArn": arn}))
        assert attributes["DisplayName"] == ""

    def test_unknown_attribute(self, client: TestClient) -> None:
        """Test that unknown and create-only attributes cannot be set."""
        arn = _create_topic(client)

        for name in ("Color", "FifoTopic"):
            resp = _query(
                client,
                "SetTopicAttributes",
                {"TopicArn": arn, "AttributeName": name, "AttributeValue": "x"},
            )

            assert resp.status_code == 400, name
            assert xml_text(resp, "Error/Code") == "InvalidParameter"


class TestSubscriptions:
    """Tests for subscriptions."""

    def test_subscribe_twice_returns_same_arn(self, client: TestClient) -> None:
        """Test that subscribing an endpoint twice is idempotent."""
        arn = _create_topic(client)

        first = xml_text(_subscribe(client, arn), "SubscribeResult/SubscriptionArn")
        second = xml_text(_subscribe(client, arn), "SubscribeResult/SubscriptionArn")
        other = xml_text(_subscribe(client, arn, "arn:aws:sqs:us-east-1:000000000000:q2"), "SubscribeResult/SubscriptionArn")

        assert first.startswith(arn + ":")
        assert second == first
        assert other != first

    def test_subscribe_missing_topic(self, client: TestClient) -> None:
        """Test that subscribing to a missing topic is NotFound."""
        resp = _subscribe(client, TOPIC_ARN.format(name="missing"))

        assert resp.status_code == 404
        assert xml_text(resp, "Error/Code") == "NotFound"

    def test_invalid_protocol(self, client: TestClient) -> None:
        """Test that unknown protocols are rejected."""
        arn = _create_topic(client)

        resp = _query(
            client, "Subscribe", {"TopicArn": arn, "Protocol": "carrier-pigeon", "Endpoint": "x"}
        )

        assert resp.status_code == 400
        assert xml_text(resp, "Error/Code") == "InvalidParameter"

    def test_list_and_attributes(self, client: TestClient) -> None:
        """Test listing subscriptions and reading their attributes."""
        events = _create_topic(client, "events")
        audit = _create_topic(client, "audit")
        sub_arn = xml_text(_subscribe(client, events), "SubscribeResult/SubscriptionArn")
        _subscribe(client, audit)

        all_subs = _query(client, "ListSubscriptions")
        by_topic = _query(client, "ListSubscriptionsByTopic", {"TopicArn": events})
        attributes = _attributes(
            _query(client, "GetSubscriptionAttributes", {"SubscriptionArn": sub_arn})
        )

        assert len(xml_texts(all_subs, "ListSubscriptionsResult/Subscriptions/member")) == 2
        assert xml_texts(
            by_topic, "ListSubscriptionsByTopicResult/Subscriptions/member/SubscriptionArn"
        ) == [sub_arn]
        assert attributes["PendingConfirmation"] == "false"
        assert attributes["RawMessageDelivery"] == "false"
        assert attributes["Protocol"] == "sqs"
        assert _attributes(_query(client, "GetTopicAttributes", {"TopicArn": events}))[
            "SubscriptionsConfirmed"
        ] == "1"

    def test_set_subscription_attribute(self, client: TestClient) -> None:
        """Test that subscription attributes can be changed."""
        arn = _create_topic(client)
        sub_arn = xml_text(_subscribe(client, arn), "SubscribeResult/SubscriptionArn")

        _query(
            client,
            "SetSubscriptionAttributes",
            {"SubscriptionArn": sub_arn, "AttributeName": "RawMessageDelivery", "AttributeValue": "true"},
        )
        attributes = _attributes(
            _query(client, "GetSubscriptionAttributes", {"SubscriptionArn": sub_arn})
        )

        assert attributes["RawMessageDelivery"] == "true"

    def test_unsubscribe(self, client: TestClient) -> None:
        """Test that unsubscribe removes the subscription and repeats quietly."""
        arn = _create_topic(client)
        sub_arn = xml_text(_subscribe(client, arn), "SubscribeResult/SubscriptionArn")

        assert _query(client, "Unsubscribe", {"SubscriptionArn": sub_arn}).status_code == 200
        assert _query(client, "Unsubscribe", {"SubscriptionArn": sub_arn}).status_code == 200
        resp = _query(client, "GetSubscriptionAttributes", {"SubscriptionArn": sub_arn})
        assert resp.status_code == 404


class TestTags:
    """Tests for topic tagging."""

    def test_tag_lifecycle(self, client: TestClient) -> None:
        """Test tags from create, tag, untag and list."""
        arn = _create_topic(
            client, **{"Tags.member.1.Key": "env", "Tags.member.1.Value": "dev"}
        )

        _query(
            client,
            "TagResource",
            {"ResourceArn": arn, "Tags.member.1.Key": "team", "Tags.member.1.Value": "core"},
        )
        _query(client, "UntagResource", {"ResourceArn": arn, "TagKeys.member.1": "env"})
        resp = _query(client, "ListTagsForResource", {"ResourceArn": arn})

        assert xml_texts(resp, "ListTagsForResourceResult/Tags/member/Key") == ["team"]
        assert xml_texts(resp, "ListTagsForResourceResult/Tags/member/Value") == ["core"]

    def test_missing_resource(self, client: TestClient) -> None:
        """Test that tagging a missing topic is ResourceNotFound."""
        resp = _query(client, "ListTagsForResource", {"ResourceArn": TOPIC_ARN.format(name="x")})

        assert resp.status_code == 404
        assert xml_text(resp, "Error/Code") == "ResourceNotFound"
