"""Response encoding for every wire convention.

Success and error envelopes are produced here and nowhere else, so every
response carries the same standard headers and the same request id in the
header and in the body.

ENVELOPES:
- JSON: flat object; errors are {"__type": code, "message": msg}
- Markup, wrapped style: <OpResponse><OpResult>..</OpResult>
  <ResponseMetadata><RequestId/></ResponseMetadata></OpResponse>;
  REST responses put the payload directly under <OpResponse>;
  errors are <ErrorResponse><Error><Type/><Code/><Message/></Error><RequestId/>
- Markup, EC2 style: <OpResponse><requestId/>..payload..</OpResponse>;
  errors are <Response><Errors><Error><Code/><Message/></Error></Errors><RequestID/>
- Markup, bare style (S3): payload directly under the root tag, which each
  operation names; errors are <Error><Code/><Message/><RequestId/></Error>
- Any result carrying a pre-encoded ``body`` is sent unchanged
"""

from __future__ import annotations

import itertools
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import Any

from .config import DEFAULT_SERVER_NAME
from .errors import CloudError
from .identifiers import deterministic_token
from .protocol import OperationResult, ServiceDescriptor, WireConvention
from .xmlcodec import MarkupStyle, render

JSON_CONTENT_TYPE = "application/x-amz-json-{version}"
XML_CONTENT_TYPE = "text/xml"
DEFAULT_JSON_VERSION = "1.0"


class RequestIdSequence:
    """Process-scoped, thread-safe source of request ids.

    Ids are ``<prefix><counter>``, e.g. ``REQ-000001``.
    """

    def __init__(self, prefix: str = "REQ-", width: int = 6, start: int = 1) -> None:
        self._prefix = prefix
        self._width = width
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{self._prefix}{value:0{self._width}d}"


@dataclass
class OutboundResponse:
    """Encoded response, independent of the HTTP framework.

    ``service``, ``operation`` and ``namespace`` are informational and feed
    request logging.
    """

    status: int
    body: bytes
    media_type: str
    headers: dict[str, str] = field(default_factory=dict)
    request_id: str = ""
    service: str | None = None
    operation: str | None = None
    namespace: str | None = None
    error_code: str | None = None


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ResponseEncoder:
    """Renders handler results and errors in the dispatched convention."""

    def __init__(
        self,
        server_name: str = DEFAULT_SERVER_NAME,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._server_name = server_name
        self._clock = clock or (lambda: datetime.now(UTC))

    def standard_headers(self, request_id: str) -> dict[str, str]:
        """Headers present on every response, success or error."""
        return {
            "Server": self._server_name,
            "Date": format_datetime(self._clock(), usegmt=True),
            "x-amz-request-id": request_id,
            "x-amz-id-2": deterministic_token(request_id, 40),
        }

    def encode_result(
        self,
        result: OperationResult,
        descriptor: ServiceDescriptor,
        operation: str,
        convention: WireConvention,
        request_id: str,
    ) -> OutboundResponse:
        """Encode a successful handler result."""
        headers = self.standard_headers(request_id)

        if result.body is not None:
            body = result.body
            media_type = result.media_type or XML_CONTENT_TYPE
        elif convention == WireConvention.JSON:
            body = json.dumps(result.payload or {}, default=_json_default).encode("utf-8")
            media_type = JSON_CONTENT_TYPE.format(version=descriptor.json_version)
            headers["x-amzn-RequestId"] = request_id
        else:
            body = self._markup_result(result, descriptor, operation, convention, request_id)
            media_type = XML_CONTENT_TYPE

        headers.update(result.headers)
        return OutboundResponse(
            status=result.status,
            body=body,
            media_type=media_type,
            headers=headers,
            request_id=request_id,
            service=descriptor.name,
            operation=operation,
        )

    def encode_error(
        self,
        error: CloudError,
        descriptor: ServiceDescriptor | None,
        convention: WireConvention | None,
        request_id: str,
        operation: str | None = None,
    ) -> OutboundResponse:
        """Encode an error.

        Without a descriptor, a JSON convention hint selects the JSON
        envelope; otherwise the wrapped markup envelope is used.
        """
        headers = self.standard_headers(request_id)

        if convention == WireConvention.JSON:
            version = descriptor.json_version if descriptor else DEFAULT_JSON_VERSION
            body = json.dumps({"__type": error.code, "message": error.message}).encode("utf-8")
            media_type = JSON_CONTENT_TYPE.format(version=version)
            headers["x-amzn-RequestId"] = request_id
            headers["x-amzn-ErrorType"] = error.code
        elif descriptor is not None and descriptor.markup_style == MarkupStyle.BARE:
            body = render(
                "Error",
                {"Code": error.code, "Message": error.message, "RequestId": request_id},
            )
            media_type = XML_CONTENT_TYPE
        elif descriptor is not None and descriptor.markup_style == MarkupStyle.EC2:
            body = render(
                "Response",
                {
                    "Errors": {"Error": {"Code": error.code, "Message": error.message}},
                    "RequestID": request_id,
                },
            )
            media_type = XML_CONTENT_TYPE
        else:
            body = render(
                "ErrorResponse",
                {
                    "Error": {
                        "Type": error.fault,
                        "Code": error.code,
                        "Message": error.message,
                    },
                    "RequestId": request_id,
                },
                xmlns=descriptor.xml_namespace if descriptor else None,
            )
            media_type = XML_CONTENT_TYPE

        return OutboundResponse(
            status=error.status,
            body=body,
            media_type=media_type,
            headers=headers,
            request_id=request_id,
            service=descriptor.name if descriptor else None,
            operation=operation,
            error_code=error.code,
        )

    def _markup_result(
        self,
        result: OperationResult,
        descriptor: ServiceDescriptor,
        operation: str,
        convention: WireConvention,
        request_id: str,
    ) -> bytes:
        tag = result.root_tag or f"{operation}Response"

        if descriptor.markup_style == MarkupStyle.EC2:
            payload: dict[str, Any] = {"requestId": request_id}
            payload.update(result.payload or {})
            return render(tag, payload, MarkupStyle.EC2, descriptor.xml_namespace)

        if convention == WireConvention.REST:
            return render(tag, result.payload or {}, MarkupStyle.WRAPPED, descriptor.xml_namespace)

        wrapped: dict[str, Any] = {}
        if result.payload is not None:
            wrapped[f"{operation}Result"] = result.payload
        wrapped["ResponseMetadata"] = {"RequestId": request_id}
        return render(tag, wrapped, MarkupStyle.WRAPPED, descriptor.xml_namespace)
