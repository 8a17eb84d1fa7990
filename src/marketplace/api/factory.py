"""FastAPI application factory.

Each request runs inside the marketplace domain's context, the way protean
expects repositories to be used. A given ``Marketplace`` stays owned by the
caller; one built here is closed on shutdown.
"""

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace.api.errors import register_exception_handlers
from marketplace.api.routes import admin_router, cart_router, order_router, payment_router
from marketplace.application import Marketplace, build_marketplace
from marketplace.utils.logging import add_context, clear_context, configure_logging


def create_app(marketplace: Marketplace | None = None) -> FastAPI:
    owned = marketplace is None
    marketplace = marketplace or build_marketplace()
    configure_logging(marketplace.settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owned:
            marketplace.close()

    app = FastAPI(
        title="KAPCDAM Marketplace API",
        description="Order lifecycle and pricing engine for carts, orders, payments and admin operations",
        lifespan=lifespan,
    )
    app.state.marketplace = marketplace

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Push the domain context and bind a request id (and the caller, when known) to every log line."""
        clear_context()
        request_id = request.headers.get("x-request-id") or uuid4().hex
        add_context(request_id=request_id, path=request.url.path, user_id=request.headers.get("x-user-id"))
        with marketplace.domain.domain_context():
            response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    register_exception_handlers(app)

    app.include_router(cart_router)
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return JSONResponse(
            content={
                "status": "ok",
                "env": marketplace.settings.env,
                "gateway": type(marketplace.gateway).__name__,
            }
        )

    return app
