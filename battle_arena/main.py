import datetime
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from sqlalchemy.orm import sessionmaker

from battle_arena.api import battles, leaderboard, users
from battle_arena.core.config import Settings, settings as default_settings
from battle_arena.core.logging_config import setup_logging
from battle_arena.core.metrics import init_fastapi_instrumentation
from battle_arena.db.session import init_db, make_engine
from battle_arena.services.battles import BattleService, RoundPolicy
from battle_arena.services.judge import JudgingProvider, build_judge
from battle_arena.services.leaderboard import LeaderboardAggregator, RedisLeaderboardCache
from battle_arena.storage import DatabaseStorage, Storage, build_storage

logger = logging.getLogger(__name__)


def _database_store(store: Storage) -> Optional[DatabaseStorage]:
    primary = getattr(store, "primary", store)
    return primary if isinstance(primary, DatabaseStorage) else None


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    judge: Optional[JudgingProvider] = None,
    cache: Optional[RedisLeaderboardCache] = None,
) -> FastAPI:
    """Build the API. Anything not passed in is built from settings."""
    settings = settings or default_settings

    # Configure logging (JSON)
    setup_logging()

    engine = None
    if storage is None:
        if settings.STORAGE_BACKEND == "memory":
            storage = build_storage("memory")
        else:
            engine = make_engine(settings.DATABASE_URL)
            session_factory = sessionmaker(
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
                bind=engine,
            )
            storage = build_storage("database", session_factory)

    if judge is None:
        judge = build_judge(settings.judge_config())

    if cache is None and settings.REDIS_URL:
        cache = RedisLeaderboardCache(settings.REDIS_URL, settings.LEADERBOARD_CACHE_TTL_SECONDS)

    policy = RoundPolicy(
        duration_seconds=settings.ROUND_DURATION_SECONDS,
        min_elapsed_seconds=settings.MIN_ELAPSED_SECONDS,
        min_solution_length=settings.MIN_SOLUTION_LENGTH,
        enforced=settings.ENFORCE_ROUND_TIMING,
    )
    aggregator = LeaderboardAggregator(storage, cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Initialize database (non-fatal)
        if engine is not None:
            try:
                init_db(bind=engine)
                logger.info("Database initialized successfully")
            except Exception as e:
                logger.exception("DB init skipped due to error", extra={"error": str(e)})

        # Connect the Redis leaderboard cache
        if aggregator.cache is not None and aggregator.cache.redis_client is None:
            try:
                aggregator.cache.connect()
                logger.info("Redis leaderboard cache connected successfully")
            except Exception as e:
                logger.exception("Failed to initialize Redis leaderboard cache", extra={"error": str(e)})
                logger.info("Will use the store directly for leaderboard")
                aggregator.cache = None
        yield

    app = FastAPI(
        title="Creative Battle Arena",
        description="Timed creative-writing battles judged against an AI opponent",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.battle_service = BattleService(storage, judge, aggregator, policy)

    # Prometheus HTTP metrics; /metrics itself is the route below
    try:
        init_fastapi_instrumentation(app)
    except Exception as _e:
        logger.exception("Prometheus metrics init failed", extra={"error": str(_e)})

    _cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
        allow_credentials=False if "*" in _cors_origins else True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(status_code=400, content={"detail": "; ".join(problems) or "Invalid request"})

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_logger = logging.getLogger("request")
        start = time.perf_counter()
        request_id = str(uuid4())
        client = request.client.host if request.client else "-"
        try:
            response = await call_next(request)
            duration_ms = int((time.perf_counter() - start) * 1000)
            extra = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": getattr(response, "status_code", 0),
                "duration_ms": duration_ms,
                "client": client,
            }
            request_logger.info("request_completed", extra=extra)
            return response
        except Exception:
            duration_ms = int((time.perf_counter() - start) * 1000)
            extra = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": 500,
                "duration_ms": duration_ms,
                "client": client,
            }
            request_logger.exception("request_failed", extra=extra)
            raise

    # Include API routes
    app.include_router(users.router, prefix="/api", tags=["users"])
    app.include_router(battles.router, prefix="/api", tags=["battles"])
    app.include_router(leaderboard.router, prefix="/api", tags=["leaderboard"])

    @app.get("/metrics")
    def metrics():
        registry = REGISTRY
        if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    def health_check():
        """Liveness + Readiness: verify storage and, when configured, Redis.

        Returns JSON with overall status and component statuses. If any component
        check fails, status is "unhealthy".
        """
        statuses: dict[str, str] = {}

        # Storage check
        db_store = _database_store(storage)
        if db_store is None:
            statuses["storage"] = "ok"
        else:
            try:
                db_store.ping()
                statuses["storage"] = "ok"
            except Exception as e:
                statuses["storage"] = f"error: {e}"

        # Redis (leaderboard cache) check
        if aggregator.cache is not None:
            try:
                if aggregator.cache.redis_client is None:
                    aggregator.cache.connect()
                aggregator.cache.redis_client.ping()
                statuses["redis"] = "ok"
            except Exception as e:
                statuses["redis"] = f"error: {e}"

        healthy = all(v == "ok" for v in statuses.values())
        now = datetime.datetime.utcnow().isoformat()
        if not healthy:
            logger.error(
                "health_check_failed",
                extra={"status": "unhealthy", "components": statuses, "timestamp": now},
            )
        return {
            "status": "healthy" if healthy else "unhealthy",
            "components": statuses,
            "storageDegraded": bool(getattr(storage, "degraded", False)),
            "timestamp": now,
        }

    return app


app = create_app()
