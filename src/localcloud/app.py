"""FastAPI application factory.

``create_app()`` is the composition root: it builds the store, normalizer,
create policy table, operation registry and dispatcher, and mounts a single
catch-all route that hands every request to the dispatcher. Provider
clients choose the service through headers and paths, not through routes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .catalog import build_registry
from .config import Config
from .entities import EntityRepository
from .idempotency import IdempotencyClassifier
from .middleware import RequestLoggingMiddleware
from .normalizer import DerivationContext, InvariantNormalizer
from .protocol import Dispatcher, InboundRequest
from .responses import RequestIdSequence, ResponseEncoder
from .seed import apply_seed, load_seed
from .store import ReadRetryPolicy, ResourceStore

logger = logging.getLogger(__name__)

APP_TITLE = "localcloud"
APP_VERSION = "0.1.0"
HEALTH_PATH = "/_localcloud/health"
DISPATCH_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"]


def build_repository(config: Config, store: ResourceStore) -> EntityRepository:
    """Entity repository with the default contracts and create policies."""
    normalizer = InvariantNormalizer(
        context=DerivationContext(
            region=config.region,
            account_id=config.account_id,
            endpoint_url=config.endpoint_url,
        )
    )
    return EntityRepository(store, normalizer, IdempotencyClassifier())


def create_app(config: Config | None = None, store: ResourceStore | None = None) -> FastAPI:
    """Build a fully wired emulator application.

    Args:
        config: Settings; loaded from the environment when omitted.
        store: Resource store; built from ``config.database_url`` when omitted.
            A store passed in is not disposed on shutdown.

    Returns:
        FastAPI application.

    Raises:
        RegistryError: The operation registry is incomplete.
        PolicyTableError: A registered entity type has no create policy.
        SeedLoadError: The configured seed file cannot be loaded.
    """
    config = config or Config.from_env()
    owns_store = store is None
    if store is None:
        store = ResourceStore.from_url(
            config.database_url, ReadRetryPolicy.from_settings(config.read_retry)
        )

    registry = build_registry()
    repository = build_repository(config, store)
    repository.classifier.validate(registry.entity_types)
    if config.seed_file is not None:
        apply_seed(repository, load_seed(config.seed_file))

    dispatcher = Dispatcher(
        registry=registry,
        repository=repository,
        config=config,
        encoder=ResponseEncoder(server_name=config.server_name),
        request_ids=RequestIdSequence(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "localcloud starting",
            extra={
                "services": [d.name for d in registry.services],
                "region": config.region,
                "account_id": config.account_id,
            },
        )
        yield
        if owns_store:
            store.dispose()
        logger.info("localcloud shutting down")

    app = FastAPI(
        title=APP_TITLE,
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.store = store
    app.state.repository = repository
    app.state.dispatcher = dispatcher

    app.add_middleware(RequestLoggingMiddleware)

    @app.get(HEALTH_PATH)
    async def health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "running",
                "version": APP_VERSION,
                "services": sorted(d.name for d in registry.services),
            }
        )

    @app.api_route("/{path:path}", methods=DISPATCH_METHODS)
    async def dispatch(request: Request) -> Response:
        inbound = InboundRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            query=dict(request.query_params),
            body=await request.body(),
        )
        outbound = await run_in_threadpool(dispatcher.dispatch, inbound)

        request.state.service = outbound.service
        request.state.operation = outbound.operation
        request.state.namespace = outbound.namespace
        request.state.request_id = outbound.request_id
        request.state.error_code = outbound.error_code

        return Response(
            content=outbound.body,
            status_code=outbound.status,
            headers=outbound.headers,
            media_type=outbound.media_type,
        )

    return app
