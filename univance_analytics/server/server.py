import logging, os

from contextlib import asynccontextmanager

from redis.asyncio import Redis

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import Response

from ..core.rollup.service import RollupScheduler
from ..core.rollup.startup import create_rollup_scheduler, create_store
from ..router import analytics_router
from ..utils import close_db, execute_query, json_response

DEFAULT_SERVER_NAME = "univance-analytics"

#-----------------------------------------------------------------------------

def split_sql_statements(script: str) -> list[str]:
    """Split a DDL script into statements, dropping `--` comment lines."""
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


async def apply_sql_files(dirname: str = ""):
    if not dirname:
        dirname = os.path.join(os.path.dirname(__file__), "..", "res", "sql")

    for filename in sorted(os.listdir(dirname)):
        if not filename.endswith(".sql"):
            continue

        with open(os.path.join(dirname, filename), "r", encoding="utf-8") as f:
            statements = split_sql_statements(f.read())

        try:
            for statement in statements:
                await execute_query(statement)
            logging.info(f"SQL file {filename} executed successfully.")
        except Exception as e:
            logging.error(str(e), exc_info=True, extra={"sql_filename": filename})

    logging.info("SQL files initialization completed.")

#-----------------------------------------------------------------------------

class Server:
    def __init__(
        self,

        rollup          : RollupScheduler,

        server_name     : str = "",
        server_version  : str = "",
        uri_prefix      : str = "",

        manage_key      : str = "",
        redis           : Redis | None = None,
    ):
        self._rollup        = rollup
        self._name          = server_name or DEFAULT_SERVER_NAME
        self._version       = server_version
        self._uri_prefix    = uri_prefix
        self._manage_key    = manage_key
        self._redis         = redis

    #-----------------------------------------------------

    async def health_check_handler(self, request: Request) -> Response:
        status = await self._rollup.get_status()
        return json_response(
            content = {
                "service"   : self._name,
                "version"   : self._version,
                "status"    : "ok" if status["store"] == "ok" else "degraded",
                "redis"     : "configured" if self._redis is not None else "not configured",
                "rollup"    : status,
            },
            request = request,
            disable_log = True
        )

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        await self._rollup.start()
        try:
            yield
        finally:
            await self._rollup.stop()
            if self._redis is not None:
                await self._redis.aclose()
            await close_db()

    def create_app(self, debug: bool = False) -> FastAPI:
        app = FastAPI(
            title       = self._name,
            version     = self._version or "0.0.0",
            debug       = debug,
            lifespan    = self.lifespan
        )

        app.state.rollup        = self._rollup
        app.state.manage_key    = self._manage_key

        app.add_api_route(f"{self._uri_prefix}/api/health", self.health_check_handler, methods=["GET"])
        app.include_router(analytics_router, prefix=self._uri_prefix)

        return app

    #-----------------------------------------------------

    @staticmethod
    async def start(yaml_files: list[str] = []):
        # Load configuration via file.
        from ..utils import Config
        config = await Config.init(yaml_filenames=yaml_files)
        config.print()

        env = os.environ.get("ENV", "").strip().upper()
        if config.get_postgresql().configured and env not in ["TEST", "GRAY", "PROD"]:
            await apply_sql_files()

        #-----------------------------------------------------
        # Init rollup scheduler.

        redis = await config.get_redis().get_async_client()

        rollup = create_rollup_scheduler(
            analytics       = config.analytics,
            store           = create_store(config),
            redis_client    = redis,
        )

        server = Server(
            rollup          = rollup,

            server_name     = config.http.name,
            server_version  = config.http.version,
            uri_prefix      = config.http.uri_prefix,

            manage_key      = config.analytics.manage_key,
            redis           = redis,
        )

        app = server.create_app(debug=config.log.level <= logging.DEBUG)

        #-----------------------------------------------------
        # Start asgi server.

        import uvicorn
        asgi_server = uvicorn.Server(
            uvicorn.Config(
                app         = app,
                host        = config.http.host,
                port        = config.http.port,
                headers     = config.http.headers,
                log_level   = config.log.level if config.log.level <= logging.DEBUG else logging.WARNING
            )
        )
        await asgi_server.serve()

#-----------------------------------------------------------------------------

def create_app(rollup: RollupScheduler, manage_key: str = "", **kwargs) -> FastAPI:
    """Build the app around an existing scheduler, without reading configuration."""
    return Server(rollup=rollup, manage_key=manage_key, **kwargs).create_app()

#-----------------------------------------------------------------------------
