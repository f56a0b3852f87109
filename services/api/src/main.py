from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes.base import router
from routes.errors import register_exception_handlers
from utils import log

from clients.couchbase import check_connection
from models.operations.events import background_drain
from models.operations.policy import policy_set

log.init(conf.get_log_level())
logger = log.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Check database connection
    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    policy = conf.get_rescue_policy()
    policy_set(policy)
    logger.info(
        f"Rescue policy: radius {policy.match_radius_m:.0f}m, fallback after {policy.match_fallback_delay_s}s, "
        f"max {policy.max_courier_match_attempts} courier attempts, "
        f"fallback without candidates {'on' if policy.fallback_when_no_candidates else 'off'}"
    )

    # Durable self-pickup fallback
    from dispatch.scheduler import init_scheduler, shutdown_scheduler

    init_scheduler(conf.get_fallback_sweep_interval_s())

    yield

    shutdown_scheduler()
    # Let in-flight matching finish before the loop goes away
    await background_drain()


app = FastAPI(
    title="Rescue Orders API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
