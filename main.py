import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import health, siwe
from app.core.config import Settings, get_settings
from app.core.errors import SiweAuthError, siwe_exception_handler
from app.core.nonce import NonceIssuer
from app.core.session_store import CookiePolicy, SessionCodec
from app.core.verifier import MessageVerifier
from app.services.chain_oracle import ChainOracle, OracleRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    oracles: Optional[Callable[[int], ChainOracle]] = None,
) -> FastAPI:
    """
    Build the application.

    The session secret is resolved here, so a missing or short secret in
    production raises ConfigurationError before any request is served.
    """
    settings = settings or get_settings()

    session_codec = SessionCodec.from_settings(settings)
    oracles = oracles or OracleRegistry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Shutdown: drop RPC connections held by cached oracles
        aclose = getattr(oracles, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_codec = session_codec
    app.state.cookie_policy = CookiePolicy.from_settings(settings)
    app.state.nonce_issuer = NonceIssuer()
    app.state.verifier = MessageVerifier(oracles)

    app.add_exception_handler(SiweAuthError, siwe_exception_handler)

    # CORS middleware, cookies need an explicit origin list
    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    app.include_router(health.router)

    g_prefix = "/api"
    app.include_router(siwe.router, prefix=f"{g_prefix}/siwe")

    logger.info("%s %s ready (%s)", settings.PROJECT_NAME, settings.VERSION, settings.ENVIRONMENT)
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
