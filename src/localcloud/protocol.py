"""Wire convention detection, operation resolution and routing.

Every inbound request is mapped to one (service, operation, convention)
triple and handed to the handler bound to it in the OperationRegistry.

DISPATCH PRECEDENCE:
1. ``X-Amz-Target`` header present: JSON convention. The service comes from
   the text before the last ".", the operation from the text after it.
2. ``Action`` among query or form parameters: query convention. The service
   comes from its mount path, then from ``Version``, then from the action
   name when exactly one service declares it.
3. Method and path match a registered REST template: REST convention.
4. Otherwise UnknownOperation, rendered as JSON when a target header was
   present and as markup otherwise.

The registry is validated at startup: every declared operation must have a
handler and every handler must be bound to a declared operation.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, get_args, get_origin
from urllib.parse import parse_qsl

from .config import Config
from .errors import (
    CloudError,
    InternalFailure,
    MissingParameter,
    SerializationException,
    UnknownOperation,
    ValidationException,
)
from .identifiers import build_arn
from .logcontext import bind_request
from .namespace import resolve_namespace
from .xmlcodec import MarkupStyle, XmlDecodeError, parse

if TYPE_CHECKING:
    from .entities import EntityRepository
    from .responses import OutboundResponse, RequestIdSequence, ResponseEncoder

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
SIGV4_ALGORITHM = "AWS4-HMAC-SHA256"

_CREDENTIAL_PATTERN = re.compile(r"Credential=([^/,\s]+)/")
_TEMPLATE_PARAM = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class WireConvention(str, Enum):
    """Request encoding conventions."""

    # Operation in a target header, JSON body
    JSON = "json"
    # Operation in an Action parameter, form or query encoded
    QUERY = "query"
    # Operation implied by method and path, markup body
    REST = "rest"


class RegistryError(Exception):
    """Raised when the operation registry is inconsistent."""

    pass


@dataclass(frozen=True)
class RestRoute:
    """A REST operation bound to a method and path template.

    Templates use ``{Name}`` placeholders for single path segments, e.g.
    ``/2013-04-01/hostedzone/{Id}/rrset``. A route with a ``subresource``
    only matches when that query key is present (``GET /{Bucket}?acl``) and
    is tried before routes without one. ``raw_body`` routes receive the
    request body undecoded.
    """

    method: str
    template: str
    operation: str
    subresource: str | None = None
    raw_body: bool = False

    def compile(self) -> re.Pattern[str]:
        pattern = ""
        last = 0
        for match in _TEMPLATE_PARAM.finditer(self.template):
            pattern += re.escape(self.template[last:match.start()])
            pattern += f"(?P<{match.group(1)}>[^/]+)"
            last = match.end()
        pattern += re.escape(self.template[last:])
        return re.compile(f"^{pattern}/?$")


@dataclass(frozen=True)
class ServiceDescriptor:
    """Static description of one emulated service.

    Attributes:
        name: Service name, also the store's ``service`` key.
        json_operations: Operations reachable through the target header.
        query_operations: Operations reachable through ``Action``.
        rest_routes: REST operations and their routes.
        target_prefix: Target header prefix, e.g. "DynamoDB_20120810".
        json_version: JSON content type version, "1.0" or "1.1".
        api_version: Query ``Version`` parameter value.
        path_prefix: Optional mount path, e.g. "/route53".
        xml_namespace: Default namespace of markup responses.
        markup_style: List and envelope convention for markup responses.
        missing_parameter_code: Error code for absent required members.
    """

    name: str
    json_operations: frozenset[str] = frozenset()
    query_operations: frozenset[str] = frozenset()
    rest_routes: tuple[RestRoute, ...] = ()
    target_prefix: str | None = None
    json_version: str = "1.0"
    api_version: str | None = None
    path_prefix: str | None = None
    xml_namespace: str | None = None
    markup_style: MarkupStyle = MarkupStyle.WRAPPED
    missing_parameter_code: str = "MissingParameter"

    @property
    def rest_operations(self) -> frozenset[str]:
        return frozenset(route.operation for route in self.rest_routes)

    def declared(self, convention: WireConvention) -> frozenset[str]:
        """Operations declared for a convention."""
        match convention:
            case WireConvention.JSON:
                return self.json_operations
            case WireConvention.QUERY:
                return self.query_operations
            case WireConvention.REST:
                return self.rest_operations
        return frozenset()

    @property
    def all_operations(self) -> frozenset[str]:
        return self.json_operations | self.query_operations | self.rest_operations


@dataclass
class InboundRequest:
    """Transport-independent view of an HTTP request.

    Header names are stored lower-cased.
    """

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @property
    def target(self) -> str | None:
        return self.header("x-amz-target")

    @property
    def content_type(self) -> str:
        return (self.header("content-type") or "").split(";", 1)[0].strip().lower()

    @property
    def access_key_id(self) -> str | None:
        """Access key id from a SigV4 Authorization header, if any.

        Signatures are never verified.
        """
        authorization = self.header("authorization") or ""
        if not authorization.startswith(SIGV4_ALGORITHM):
            return None
        match = _CREDENTIAL_PATTERN.search(authorization)
        return match.group(1) if match else None

    def form_params(self) -> dict[str, str]:
        """Form-encoded body members when the content type allows them."""
        if not self.body or self.content_type not in ("", FORM_CONTENT_TYPE):
            return {}
        try:
            text = self.body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SerializationException("Request body is not valid UTF-8") from e
        return dict(parse_qsl(text, keep_blank_values=True))


@dataclass
class OperationResult:
    """What a handler returns.

    Attributes:
        payload: Response members; None for an empty result.
        status: HTTP status on success.
        headers: Extra response headers.
        root_tag: Markup root element override.
        body: Pre-encoded response body, sent as is instead of ``payload``.
        media_type: Content type of ``body``.
    """

    payload: dict[str, Any] | None = None
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    root_tag: str | None = None
    body: bytes | None = None
    media_type: str | None = None


def indexed_list(params: dict[str, Any], prefix: str) -> list[Any]:
    """Collect ``prefix.1``, ``prefix.2``... members in index order."""
    pattern = re.compile(rf"^{re.escape(prefix)}\.(\d+)$")
    found: list[tuple[int, Any]] = []
    for key, value in params.items():
        match = pattern.match(key)
        if match:
            found.append((int(match.group(1)), value))
    return [value for _, value in sorted(found, key=lambda item: item[0])]


def indexed_members(params: dict[str, Any], prefix: str) -> list[dict[str, Any]]:
    """Collect ``prefix.N.Field`` members into one mapping per index.

    Nested members keep their remaining dotted key, so
    ``TagSpecification.1.Tag.1.Key`` becomes ``{"Tag.1.Key": ...}`` under
    index 1 and can be collected again with this function.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}\.(\d+)\.(.+)$")
    grouped: dict[int, dict[str, Any]] = {}
    for key, value in params.items():
        match = pattern.match(key)
        if match:
            grouped.setdefault(int(match.group(1)), {})[match.group(2)] = value
    return [grouped[index] for index in sorted(grouped)]


@dataclass
class OperationContext:
    """Everything a handler needs to serve one request."""

    request: InboundRequest
    descriptor: ServiceDescriptor
    operation: str
    convention: WireConvention
    namespace: str
    params: dict[str, Any]
    path_params: dict[str, str]
    repository: EntityRepository
    config: Config
    request_id: str = ""

    @property
    def service(self) -> str:
        return self.descriptor.name

    @property
    def is_json(self) -> bool:
        return self.convention == WireConvention.JSON

    def get(self, name: str, default: Any = None) -> Any:
        value = self.params.get(name)
        return default if value is None else value

    def require(self, name: str, code: str | None = None) -> Any:
        """Return a required member or raise MissingParameter.

        Empty strings count as absent.
        """
        value = self.params.get(name)
        if value is None or value == "":
            raise MissingParameter(
                f"The request must contain the parameter {name}",
                code=code or self.descriptor.missing_parameter_code,
            )
        return value

    def require_path(self, name: str) -> str:
        value = self.path_params.get(name)
        if not value:
            raise MissingParameter(
                f"The request must contain the path parameter {name}",
                code=self.descriptor.missing_parameter_code,
            )
        return value

    def int_param(
        self,
        name: str,
        default: int | None = None,
        minimum: int | None = None,
        maximum: int | None = None,
        code: str | None = None,
    ) -> int | None:
        """Integer member that tolerates string-typed query values.

        Raises:
            ValidationException: The member is not an integer or is out of range.
        """
        value = self.params.get(name)
        if value is None or value == "":
            return default
        try:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            number = int(value)
        except (TypeError, ValueError) as e:
            raise ValidationException(
                f"Value ({value}) for parameter {name} is not a valid integer.", code=code
            ) from e
        if (minimum is not None and number < minimum) or (maximum is not None and number > maximum):
            if minimum is not None and maximum is not None:
                bounds = f"between {minimum} and {maximum}"
            elif minimum is not None:
                bounds = f"at least {minimum}"
            else:
                bounds = f"at most {maximum}"
            raise ValidationException(f"Value ({number}) for parameter {name} must be {bounds}.", code=code)
        return number

    def typed_param(
        self,
        name: str,
        expected: Any,
        default: Any = None,
        required: bool = False,
        code: str | None = None,
    ) -> Any:
        """Structured JSON member checked against its expected container type.

        Lists of ``dict`` are checked element by element when ``expected`` is
        ``list[dict]``.

        Raises:
            MissingParameter: ``required`` and the member is absent.
            ValidationException: The member has the wrong shape.
        """
        value = self.require(name) if required else self.params.get(name)
        if value is None:
            return default
        element = None
        if get_origin(expected) is list:
            element = get_args(expected)[0]
            expected = list
        if not isinstance(value, expected) or (
            element is not None and not all(isinstance(v, element) for v in value)
        ):
            raise ValidationException(f"Value for parameter {name} has an invalid type.", code=code)
        return value

    def indexed_list(self, prefix: str, json_key: str | None = None) -> list[Any]:
        """Scalar list member in either convention."""
        if self.is_json:
            value = self.params.get(json_key or prefix)
            return list(value) if isinstance(value, list) else []
        return indexed_list(self.params, prefix)

    def indexed_members(self, prefix: str, json_key: str | None = None) -> list[dict[str, Any]]:
        """Structured list member in either convention."""
        if self.is_json:
            value = self.params.get(json_key or prefix)
            return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []
        return indexed_members(self.params, prefix)

    def arn(self, resource: str, service: str | None = None, region: str | None = None) -> str:
        """ARN in the configured account and region."""
        return build_arn(
            service or self.descriptor.name,
            resource,
            self.config.region if region is None else region,
            self.config.account_id,
        )


Handler = Callable[[OperationContext], OperationResult]


@dataclass(frozen=True)
class Resolution:
    """Outcome of operation resolution for one request."""

    descriptor: ServiceDescriptor
    operation: str
    convention: WireConvention
    params: dict[str, Any]
    path_params: dict[str, str] = field(default_factory=dict)


class OperationRegistry:
    """Registration table from (convention, service, operation) to handlers."""

    def __init__(self) -> None:
        self._services: dict[str, ServiceDescriptor] = {}
        self._handlers: dict[tuple[WireConvention, str, str], Handler] = {}
        self._unbound: list[str] = []
        self._entity_types: set[str] = set()
        self._routes: list[tuple[RestRoute, re.Pattern[str], ServiceDescriptor]] = []

    @property
    def services(self) -> list[ServiceDescriptor]:
        return list(self._services.values())

    @property
    def entity_types(self) -> set[str]:
        """Qualified entity types the registered services create."""
        return set(self._entity_types)

    def register_service(
        self,
        descriptor: ServiceDescriptor,
        entity_types: tuple[str, ...] | list[str] = (),
    ) -> None:
        """Add a service descriptor.

        Raises:
            RegistryError: Duplicate service name or target prefix.
        """
        if descriptor.name in self._services:
            raise RegistryError(f"Service registered twice: {descriptor.name}")
        if descriptor.target_prefix and self.service_for_target_prefix(descriptor.target_prefix):
            raise RegistryError(f"Target prefix registered twice: {descriptor.target_prefix}")

        self._services[descriptor.name] = descriptor
        self._entity_types.update(entity_types)
        for route in descriptor.rest_routes:
            self._routes.append((route, route.compile(), descriptor))
        self._routes.sort(key=lambda entry: entry[0].subresource is None)

    def bind(self, service: str, operation: str, handler: Handler) -> None:
        """Bind a handler to every convention that declares the operation.

        A handler for an operation no convention declares is remembered and
        reported by validate().
        """
        descriptor = self._services.get(service)
        if descriptor is None:
            raise RegistryError(f"Cannot bind {service}.{operation}: service not registered")

        bound = False
        for convention in WireConvention:
            if operation in descriptor.declared(convention):
                self._handlers[(convention, service, operation)] = handler
                bound = True
        if not bound:
            self._unbound.append(f"{service}.{operation}")

    def bind_all(self, service: str, handlers: dict[str, Handler]) -> None:
        for operation, handler in handlers.items():
            self.bind(service, operation, handler)

    def handler_for(self, convention: WireConvention, service: str, operation: str) -> Handler | None:
        return self._handlers.get((convention, service, operation))

    def validate(self) -> None:
        """Check that declarations and bindings agree.

        Raises:
            RegistryError: Listing every missing handler and stray binding.
        """
        errors: list[str] = []
        for descriptor in self._services.values():
            for convention in WireConvention:
                for operation in sorted(descriptor.declared(convention)):
                    if (convention, descriptor.name, operation) not in self._handlers:
                        errors.append(
                            f"No handler for {convention.value} operation "
                            f"{descriptor.name}.{operation}"
                        )
        for name in self._unbound:
            errors.append(f"Handler bound to undeclared operation {name}")

        if errors:
            raise RegistryError("Operation registry validation failed:\n  - " + "\n  - ".join(errors))

        logger.debug(
            "Operation registry validated",
            extra={"services": len(self._services), "handlers": len(self._handlers)},
        )

    def service_for_target_prefix(self, prefix: str) -> ServiceDescriptor | None:
        for descriptor in self._services.values():
            if descriptor.target_prefix and descriptor.target_prefix.lower() == prefix.lower():
                return descriptor
        return None

    def service_for_action(
        self,
        path: str,
        version: str | None,
        action: str,
    ) -> ServiceDescriptor | None:
        """Resolve the service of a query request.

        Mount path wins, then API version, then a unique action name.
        """
        for descriptor in self._services.values():
            if descriptor.path_prefix and _under_prefix(path, descriptor.path_prefix):
                return descriptor if action in descriptor.query_operations else None

        if version:
            for descriptor in self._services.values():
                if descriptor.api_version == version and action in descriptor.query_operations:
                    return descriptor

        candidates = [d for d in self._services.values() if action in d.query_operations]
        if len(candidates) == 1:
            return candidates[0]
        return None

    def match_rest(
        self, method: str, path: str, query: dict[str, str] | None = None
    ) -> tuple[RestRoute, ServiceDescriptor, dict[str, str]] | None:
        """Match a REST route, with or without the service's mount prefix."""
        for route, pattern, descriptor in self._routes:
            if route.method != method:
                continue
            if route.subresource is not None and route.subresource not in (query or {}):
                continue
            candidates = [path]
            if descriptor.path_prefix and _under_prefix(path, descriptor.path_prefix):
                candidates.append(path[len(descriptor.path_prefix.rstrip("/")):] or "/")
            for candidate in candidates:
                match = pattern.match(candidate)
                if match:
                    return route, descriptor, dict(match.groupdict())
        return None


def _under_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class Dispatcher:
    """Resolves requests, invokes handlers and encodes the outcome."""

    def __init__(
        self,
        registry: OperationRegistry,
        repository: EntityRepository,
        config: Config,
        encoder: ResponseEncoder,
        request_ids: RequestIdSequence,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._config = config
        self._encoder = encoder
        self._request_ids = request_ids

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    def resolve(self, request: InboundRequest) -> Resolution:
        """Map a request to a service operation.

        Raises:
            UnknownOperation: No convention matched.
            SerializationException: The body could not be decoded.
        """
        target = request.target
        if target:
            return self._resolve_json(request, target)

        params: dict[str, Any] = dict(request.query)
        if request.method == "POST":
            params.update(request.form_params())
        action = params.get("Action")
        if action:
            descriptor = self._registry.service_for_action(request.path, params.get("Version"), action)
            if descriptor is None:
                raise UnknownOperation(f"Could not find operation {action}")
            return Resolution(descriptor, action, WireConvention.QUERY, params)

        matched = self._registry.match_rest(request.method, request.path, request.query)
        if matched is not None:
            route, descriptor, path_params = matched
            rest_params: dict[str, Any] = dict(request.query)
            if request.body.strip() and not route.raw_body:
                try:
                    _, body = parse(request.body)
                except XmlDecodeError as e:
                    raise SerializationException(str(e), code="MalformedXML") from e
                rest_params.update(body)
            return Resolution(descriptor, route.operation, WireConvention.REST, rest_params, path_params)

        raise UnknownOperation(
            f"Could not resolve an operation for {request.method} {request.path}"
        )

    def _resolve_json(self, request: InboundRequest, target: str) -> Resolution:
        prefix, _, operation = target.rpartition(".")
        descriptor = self._registry.service_for_target_prefix(prefix) if prefix else None
        if descriptor is None or operation not in descriptor.json_operations:
            raise UnknownOperation(f"Could not find operation {target}")

        if not request.body.strip():
            params: Any = {}
        else:
            try:
                params = json.loads(request.body)
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise SerializationException(f"Could not parse request body: {e}") from e
        if not isinstance(params, dict):
            raise SerializationException("Request body must be a JSON object")

        return Resolution(descriptor, operation, WireConvention.JSON, params)

    def dispatch(self, request: InboundRequest) -> OutboundResponse:
        """Serve one request end to end. Never raises."""
        request_id = self._request_ids.next()
        namespace = resolve_namespace(
            request.user_agent,
            marker=self._config.namespace_marker,
            default=self._config.default_namespace,
        )
        with bind_request(request_id=request_id, namespace=namespace):
            response = self._dispatch(request, request_id, namespace)
        response.namespace = namespace
        return response

    def _dispatch(
        self, request: InboundRequest, request_id: str, namespace: str
    ) -> OutboundResponse:
        json_hint = WireConvention.JSON if request.target else None

        try:
            resolution = self.resolve(request)
        except CloudError as e:
            logger.info(
                "Request could not be resolved",
                extra={"code": e.code, "path": request.path, "request_id": request_id},
            )
            return self._encoder.encode_error(e, None, json_hint, request_id)

        handler = self._registry.handler_for(
            resolution.convention, resolution.descriptor.name, resolution.operation
        )
        if handler is None:
            error = UnknownOperation(f"Could not find operation {resolution.operation}")
            return self._encoder.encode_error(
                error, resolution.descriptor, resolution.convention, request_id, resolution.operation
            )

        ctx = OperationContext(
            request=request,
            descriptor=resolution.descriptor,
            operation=resolution.operation,
            convention=resolution.convention,
            namespace=namespace,
            params=resolution.params,
            path_params=resolution.path_params,
            repository=self._repository,
            config=self._config,
            request_id=request_id,
        )

        try:
            result = handler(ctx)
        except CloudError as e:
            logger.info(
                "Operation failed",
                extra={
                    "service": ctx.service,
                    "operation": ctx.operation,
                    "namespace": namespace,
                    "code": e.code,
                    "request_id": request_id,
                },
            )
            return self._encoder.encode_error(
                e, ctx.descriptor, ctx.convention, request_id, ctx.operation
            )
        except Exception as e:
            logger.exception(
                "Operation raised unexpectedly",
                extra={
                    "service": ctx.service,
                    "operation": ctx.operation,
                    "namespace": namespace,
                    "request_id": request_id,
                },
            )
            failure = InternalFailure(f"Internal failure: {type(e).__name__}")
            return self._encoder.encode_error(
                failure, ctx.descriptor, ctx.convention, request_id, ctx.operation
            )

        try:
            return self._encoder.encode_result(
                result, ctx.descriptor, ctx.operation, ctx.convention, request_id
            )
        except Exception as e:
            logger.exception(
                "Response encoding failed",
                extra={"service": ctx.service, "operation": ctx.operation, "request_id": request_id},
            )
            failure = InternalFailure(f"Failed to encode response: {type(e).__name__}")
            return self._encoder.encode_error(
                failure, ctx.descriptor, ctx.convention, request_id, ctx.operation
            )
