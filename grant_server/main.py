"""
Grant server: OAuth 2.0 authorization server with authorization_code (+PKCE), client_credentials,
refresh_token (rotating), device_code (RFC 8628) and token exchange (RFC 8693) grants.
Port 9000 by default.
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from grant_server.audit import router as audit_router
from grant_server.authorize import router as authorize_router
from grant_server.clients import ClientRegistry
from grant_server.clock import as_clock
from grant_server.codes import AuthorizationCodeLedger
from grant_server.config import SWEEP_INTERVAL_SECONDS
from grant_server.database import SessionLocal, init_db
from grant_server.device import DeviceAuthorizationLedger
from grant_server.device_endpoint import router as device_router
from grant_server.errors import OAuthError
from grant_server.generators import RandomSource
from grant_server.grants import GrantEngine
from grant_server.introspect import router as introspect_router
from grant_server.rate_limit import SlidingWindowLimiter
from grant_server.registration import router as registration_router
from grant_server.revoke import router as revoke_router
from grant_server.seed import load_clients, seed_from_env
from grant_server.sweeper import Sweeper
from grant_server.token_endpoint import router as token_router
from grant_server.tokens import TokenLedger
from grant_server.userinfo import router as userinfo_router
from grant_server.well_known import router as well_known_router

logger = logging.getLogger(__name__)


def _oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if exc.status_code == 401 and request.headers.get("Authorization", "").lower().startswith("basic "):
        headers["WWW-Authenticate"] = 'Basic realm="grant_server"'
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed users/clients from env, load the client registry, start the sweeper."""
    init_db()
    db = SessionLocal()
    try:
        seed_from_env(db)
        loaded = app.state.clients.load(load_clients(db))
    finally:
        db.close()
    logger.info("Loaded %d clients", loaded)
    app.state.sweeper.start()
    try:
        yield
    finally:
        app.state.sweeper.stop()


def create_app(
    clock: Callable[[], float] | None = None,
    random_source: RandomSource | None = None,
    sweep_interval: float = SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    """
    Build an application with its own registry, ledgers and engine on app.state.
    All ledgers share one monotonic clock.
    """
    clock = as_clock(clock)
    random_source = random_source or RandomSource()

    clients = ClientRegistry()
    codes = AuthorizationCodeLedger(clock=clock, random_source=random_source)
    devices = DeviceAuthorizationLedger(clock=clock, random_source=random_source)
    tokens = TokenLedger(clock=clock, random_source=random_source)

    app = FastAPI(title="Grant Server", version="0.1.0", lifespan=lifespan)
    app.state.clients = clients
    app.state.codes = codes
    app.state.devices = devices
    app.state.tokens = tokens
    app.state.engine = GrantEngine(clients, codes, devices, tokens)
    app.state.limiter = SlidingWindowLimiter()
    app.state.sweeper = Sweeper([codes, devices, tokens], sweep_interval)

    app.add_exception_handler(OAuthError, _oauth_error_handler)
    app.include_router(authorize_router, tags=["authorize"])
    app.include_router(token_router, tags=["token"])
    app.include_router(device_router, tags=["device"])
    app.include_router(revoke_router, tags=["revoke"])
    app.include_router(introspect_router, tags=["introspect"])
    app.include_router(userinfo_router, tags=["userinfo"])
    app.include_router(registration_router, tags=["registration"])
    app.include_router(well_known_router, tags=["well-known"])
    app.include_router(audit_router)

    @app.get("/health")
    def health():
        """Health check endpoint with ledger sizes."""
        return {
            "status": "ok",
            "service": "grant_server",
            "clients": len(clients),
            "authorization_codes": len(codes),
            "device_authorizations": len(devices),
            "tokens": tokens.stats(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "grant_server.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
