import logging
import os
import secrets
from contextlib import asynccontextmanager

from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse

from clinic import config
from clinic.api.routes import router
from clinic.core.auth import SessionIssuer
from clinic.core.demo_token import DemoTokenIssuer
from clinic.core.exceptions import register_exception_handlers
from clinic.core.metrics import metrics
from clinic.core.rate_limit import build_rate_limiter
from clinic.db import EngineRegistry, dispose_engine, init_engine, sqlite_url
from clinic.scheduler import BackupScheduler
from clinic.services.backup_manager import BackupConfig, BackupManager
from clinic.services.backup_store import resolve_backup_directory
from clinic.services.bundler import BundlerConfig, DatabaseBundler
from clinic.services.demo_provisioner import DemoConfig, DemoProvisioner
from clinic.services.turso import TursoClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("clinic")

# The database must be located, migrated and seeded before any engine connects to it.
bundler = DatabaseBundler(
    BundlerConfig(
        production=config.IS_PRODUCTION,
        db_file_name=config.DB_FILE_NAME,
        app_dir_name=config.DATA_DIR_NAME,
    ),
    os.environ,
)
database_path = bundler.initialize()
init_engine(sqlite_url(database_path))

backup_config = BackupConfig(
    enabled=config.BACKUP_ENABLED,
    interval_hours=config.BACKUP_INTERVAL_HOURS,
    max_backups=config.BACKUP_MAX_BACKUPS,
    backup_dir=(
        Path(config.BACKUP_DIR) if config.BACKUP_DIR
        else resolve_backup_directory(os.environ, config.DATA_DIR_NAME)
    ),
    auto_backup_on_shutdown=config.BACKUP_ON_SHUTDOWN,
    compress_backups=config.BACKUP_COMPRESS,
)
backup_scheduler = (
    BackupScheduler(lambda: backup_manager.create_backup()) if config.ENABLE_BACKUP_SCHEDULER else None
)
backup_manager = BackupManager(
    backup_config,
    database_path,
    scheduler=backup_scheduler,
    metrics=metrics,
    on_restore=dispose_engine,
)

session_secret = config.SESSION_SECRET
if not session_secret:
    if config.IS_PRODUCTION:
        raise RuntimeError("SESSION_SECRET must be set in production")
    # sessions will not survive a restart
    session_secret = secrets.token_urlsafe(32)
    logger.warning("SESSION_SECRET is not set; using a random secret for this process")
sessions = SessionIssuer(session_secret, config.SESSION_TTL_HOURS)

demo_tokens = (
    DemoTokenIssuer(config.DEMO_JWT_SECRET, config.DEMO_SESSION_TTL_MINUTES) if config.DEMO_JWT_SECRET else None
)
demo_platform = None
demo_provisioner = None
if config.DEMO_ENABLED:
    if demo_tokens is None:
        raise RuntimeError("DEMO_JWT_SECRET must be set when DEMO_ENABLED is true")
    demo_platform = TursoClient(
        config.TURSO_ORG,
        config.TURSO_AUTH_TOKEN,
        base_url=config.TURSO_API_URL,
        group=config.TURSO_GROUP,
    )
    demo_provisioner = DemoProvisioner(
        demo_platform,
        demo_tokens,
        build_rate_limiter(config.DEMO_RATE_LIMIT, config.DEMO_RATE_WINDOW_SECONDS, config.REDIS_URL),
        DemoConfig(
            ttl_minutes=config.DEMO_SESSION_TTL_MINUTES,
            database_token_expiration=config.DEMO_DB_TOKEN_EXPIRATION,
        ),
        metrics=metrics,
    )
    logger.info("Demo provisioning enabled for organization %s", config.TURSO_ORG)


@asynccontextmanager
async def lifespan(app: FastAPI):
    backup_manager.start_auto_backup()
    yield
    logger.info("Shutting down clinic service")
    backup_manager.shutdown()
    app.state.engines.dispose_all()
    if demo_platform is not None:
        demo_platform.close()


app = FastAPI(title="Clinic Management API", version="1.0.0", lifespan=lifespan)
app.state.bundler = bundler
app.state.sessions = sessions
app.state.backup_manager = backup_manager
app.state.demo_tokens = demo_tokens
app.state.demo_token_strict = config.DEMO_TOKEN_STRICT
app.state.demo_provisioner = demo_provisioner
app.state.engines = EngineRegistry()

origins = [origin.strip() for origin in config.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Cookie", "x-admin-password"],
)

app.include_router(router)
register_exception_handlers(app)

# Frontend (React SPA)
FRONTEND_DIST = Path(__file__).resolve().parent.parent / "frontend" / "dist"
if FRONTEND_DIST.exists():
    logger.info("Serving React frontend from %s", FRONTEND_DIST)
    app.mount("/static", StaticFiles(directory=FRONTEND_DIST), name="static")

    def _spa_response() -> FileResponse:
        index_path = FRONTEND_DIST / "index.html"
        if not index_path.exists():
            logger.error("Frontend index missing at %s", index_path)
            raise HTTPException(status_code=404, detail="Frontend build missing index.html")
        return FileResponse(index_path)

    @app.get("/", include_in_schema=False)
    async def serve_spa_root():
        return _spa_response()

    @app.get("/app/{path:path}", include_in_schema=False)
    async def serve_spa_paths(path: str):  # noqa: ARG001
        return _spa_response()
else:
    logger.info("Frontend build not found at %s. Serving API endpoints only.", FRONTEND_DIST)
