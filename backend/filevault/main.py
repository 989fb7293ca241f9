"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from filevault.config import Settings, settings as default_settings
from filevault.database import build_engine, build_session_factory
from filevault.errors import FileVaultError
from filevault.models import Base
from filevault.routes.files import router as files_router
from filevault.services.cipher_engine import KeyProvider
from filevault.services.expiry_sweeper import ExpirySweeper
from filevault.services.notifications import Notifier
from filevault.services.vault import FileVault

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[AsyncEngine] = None,
    key_provider: Optional[KeyProvider] = None,
    notifier: Optional[Notifier] = None,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or default_settings
    engine = engine or build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables on startup, start the expiry sweeper."""
        logging.basicConfig(level=settings.LOG_LEVEL.upper())
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        vault = FileVault.build(settings, session_factory, key_provider=key_provider, notifier=notifier)
        app.state.vault = vault

        sweeper_task = None
        if run_sweeper:
            sweeper = ExpirySweeper(
                vault.controller,
                interval=settings.SWEEP_INTERVAL_SECONDS,
                tombstone_retention=settings.TOMBSTONE_RETENTION_SECONDS,
                orphan_grace=settings.ORPHAN_GRACE_SECONDS,
            )
            sweeper_task = asyncio.create_task(sweeper.run_forever())

        yield

        # Cleanup
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        await vault.controller.wait_for_pending()
        await engine.dispose()

    app = FastAPI(
        title="FileVault API",
        version="1.0.0",
        description="Encrypted file storage with controlled disclosure.",
        lifespan=lifespan,
    )

    # CORS
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FileVaultError)
    async def handle_vault_error(request: Request, exc: FileVaultError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": exc.code, "retryable": exc.retryable},
        )

    @app.get("/api/health")
    async def health_check():
        """Verify API and database connectivity."""
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
        except Exception as e:
            return {"status": "error", "database": str(e)}

    app.include_router(files_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("filevault.main:app", host="0.0.0.0", port=default_settings.API_PORT)
