"""
Money Market API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import MoneyMarketError
from ..logging_config import get_logger, log_action
from .dependencies import FundSystem
from .schemas import serialize
from .investments import router as investments_router
from .manager import router as manager_router
from .users import router as users_router


logger = get_logger("money_market.api")


def create_app(system: Optional[FundSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Money Market Custody API",
        description="Tokenised money market fund with multi-signature controls",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or FundSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MoneyMarketError)
    async def money_market_error_handler(request: Request, exc: MoneyMarketError):
        log_action(
            logger, "warning" if exc.status_code < 500 else "error", exc.message,
            user_id=request.headers.get("x-user-id"), action=exc.code,
            resource=request.url.path
        )
        return JSONResponse(status_code=exc.status_code, content=serialize(exc.to_dict()))

    # Include routers
    app.include_router(investments_router, prefix="/invest", tags=["Investments"])
    app.include_router(manager_router, prefix="/manager", tags=["Manager"])
    app.include_router(users_router, prefix="/users", tags=["Users"])

    @app.get("/health")
    def health_check():
        """Health check endpoint; degraded when the ledger is unreachable"""
        ledger_ok = app.state.system.ledger.health_check()
        return {
            "status": "healthy" if ledger_ok else "degraded",
            "service": "money_market_api",
            "version": __version__,
            "token_created": app.state.system.tokens.exists(),
            "ledger_reachable": ledger_ok,
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "money_market.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
