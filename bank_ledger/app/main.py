import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import router as accounts_router, session_router, transfer_router
from .core.config import Settings, get_settings
from .core.db import init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    ledger_app = FastAPI(title=settings.app_name, lifespan=lifespan)
    for router in (session_router, accounts_router, transfer_router):
        ledger_app.include_router(router)
    register_exception_handlers(ledger_app)

    @ledger_app.get("/health")
    def read_health() -> dict[str, str]:
        return {"status": "ok"}

    return ledger_app


app = create_app()
