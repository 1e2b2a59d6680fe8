"""Request helpers speaking the three wire conventions."""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Any

from fastapi.testclient import TestClient
from httpx import Response

SIGNED_AUTHORIZATION = (
    "AWS4-HMAC-SHA256 Credential=AKIATESTKEY0000001/20240101/us-east-1/sts/aws4_request, "
    "SignedHeaders=host;x-amz-date, Signature=0000"
)


def user_agent(namespace: str | None = None) -> str:
    """A provider SDK style User-Agent, optionally selecting a namespace."""
    agent = "aws-sdk-python/1.34 Python/3.11"
    return f"{agent} custom-{namespace}" if namespace else agent


def json_call(
    client: TestClient,
    target: str,
    body: dict[str, Any] | None = None,
    namespace: str | None = None,
    version: str = "1.0",
) -> Response:
    """POST a JSON-convention request."""
    return client.post(
        "/",
        content=json.dumps(body or {}),
        headers={
            "X-Amz-Target": target,
            "Content-Type": f"application/x-amz-json-{version}",
            "User-Agent": user_agent(namespace),
        },
    )


def query_call(
    client: TestClient,
    params: dict[str, Any],
    path: str = "/",
    namespace: str | None = None,
    headers: dict[str, str] | None = None,
) -> Response:
    """POST a form-encoded query-convention request."""
    all_headers = {"User-Agent": user_agent(namespace)}
    all_headers.update(headers or {})
    return client.post(path, data={k: str(v) for k, v in params.items()}, headers=all_headers)


def rest_call(
    client: TestClient,
    method: str,
    path: str,
    body: str | None = None,
    params: dict[str, str] | None = None,
    namespace: str | None = None,
) -> Response:
    """Send a REST-convention request with an optional XML body."""
    return client.request(
        method,
        path,
        content=body.encode("utf-8") if body is not None else None,
        params=params,
        headers={"User-Agent": user_agent(namespace), "Content-Type": "application/xml"},
    )


def xml_root(response: Response) -> ET.Element:
    """Parse a markup response with namespaces stripped from every tag."""
    root = ET.fromstring(response.content)
    for element in root.iter():
        if "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def xml_text(response: Response, path: str) -> str | None:
    """Text of the first element matching ``path`` (ElementTree syntax)."""
    element = xml_root(response).find(path)
    return element.text if element is not None else None


def xml_texts(response: Response, path: str) -> list[str]:
    """Texts of every element matching ``path``."""
    return [e.text or "" for e in xml_root(response).findall(path)]
