import logging, time
import sqlalchemy, sqlalchemy.event, sqlalchemy.ext.asyncio

#-----------------------------------------------------------------------------

def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_start_time", []).append(time.time())


def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start_time = conn.info["query_start_time"].pop(-1)

    logging.debug(
        " ".join(statement.split()),
        extra = {
            "time_cost" : round((time.time()-start_time)*1e3, 2),
            "records"   : cursor.rowcount
        }
    )

#-----------------------------------------------------------------------------

class PostgreSQLConfig:
    def __init__(
        self,
        user    : str,
        password: str,
        database: str,
        host    : str,
        port    : int = 0,
        schema  : str = "",
        maxconn : int = 0,
        timeout : int = 0
    ):
        self.host       = host
        self.port       = port if port > 0 else 5432
        self.user       = user
        self.password   = password
        self.database   = database
        self.maxconn    = maxconn if maxconn > 0 else 10
        self.timeout    = timeout if timeout > 0 else 10

        if not schema:
            schemas = []
        else:
            schemas = schema.split(",")

        if "public" not in schemas:
            schemas.append("public")
        self.schema = ",".join(schemas)

    @property
    def configured(self) -> bool:
        return bool(self.host and self.database)


    def print(self):
        if self.configured:
            print(f"pg              : {self.host}:{self.port}/{self.database}")
        else:
            print("pg              : not configured, snapshots kept in memory")

    #-----------------------------------------------------

    def get_async_engine(self) -> sqlalchemy.ext.asyncio.AsyncEngine:
        async_engine = sqlalchemy.ext.asyncio.create_async_engine(
            f"postgresql+psycopg://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}",
            connect_args= {
                "options"           : f"-c search_path={self.schema}",
                "connect_timeout"   : self.timeout,
            },
            poolclass   = sqlalchemy.AsyncAdaptedQueuePool,
            pool_size   = self.maxconn
        )

        sqlalchemy.event.listen(async_engine.sync_engine, "before_cursor_execute", before_cursor_execute)
        sqlalchemy.event.listen(async_engine.sync_engine, "after_cursor_execute", after_cursor_execute)

        return async_engine

#-----------------------------------------------------------------------------
