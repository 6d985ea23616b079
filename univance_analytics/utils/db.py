import logging, time, re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Config, global_config

#-----------------------------------------------------------------------------

global_engines: dict[str, AsyncEngine] = {}

#-----------------------------------------------------------------------------

def init_db(config: Config, db_config: str = "") -> AsyncEngine | None:
    pg_config = config.get_postgresql(db_config)
    if not pg_config.configured:
        return None

    if db_config not in global_engines:
        global_engines[db_config] = pg_config.get_async_engine()

    return global_engines[db_config]


async def close_db():
    for key in list(global_engines.keys()):
        engine = global_engines.pop(key)
        await engine.dispose()

#-----------------------------------------------------------------------------

async def execute_query(
    query       : str,
    params      : dict | None = None,
    db_config   : str = "",
    fieldList   : list | None = None,
    **kargs
):
    """
    Run one SQL statement on the shared async engine.

    Returns a list of row dicts for queries, the returned row for
    `INSERT ... RETURNING`, and `{"record_count": n}` otherwise.
    """
    if not query:
        raise ValueError("SQL script cannot be empty")

    if not isinstance(db_config, str):
        db_config = ""

    if db_config in global_engines:
        engine = global_engines[db_config]
    else:
        config = global_config()
        if not config:
            raise ValueError("no configuration found")

        engine = init_db(config, db_config)
        if engine is None:
            raise ValueError(f"database '{db_config}' is not configured")

    #-----------------------------------------------------

    lower_query = query.strip().lower()
    field_list_size = 0 if fieldList is None else len(fieldList)

    start_time = time.time()
    conn = None
    try:
        conn = await engine.connect()
        cur = await conn.execute(text(query), fieldList if field_list_size > 0 else params)

        if lower_query.startswith("insert") or lower_query.startswith("update"):
            if field_list_size > 0:
                ret = {"record_count": field_list_size}

            elif "returning" in lower_query:
                row = cur.fetchone()
                ret = dict(row._mapping) if row is not None else {}

            else:
                ret = {"record_count": cur.rowcount}

        elif not re.match("^(delete|create|drop|alter|truncate).*", lower_query):
            ret = [dict(row._mapping) for row in cur.fetchall()]

        else:
            ret = {"record_count": cur.rowcount}

        await conn.commit()

        extra = {
            "records"   : len(ret) if isinstance(ret, list) else cur.rowcount,
            "time_cost" : round((time.time()-start_time)*1e3, 2)
        }

        logged_query = " ".join(query.split())
        if len(logged_query) > 512:
            logged_query = logged_query[:512] + "..."
        logging.info(logged_query, extra=extra, stacklevel=2)

        return ret

    except Exception as e:
        if conn:
            await conn.rollback()

        extra = {
            "sql"       : " ".join(query.split()),
            "params"    : params,
            "time_cost" : round((time.time()-start_time)*1e3, 2)
        }

        logging.error(str(e), extra=extra, stacklevel=2)

        raise

    finally:
        if conn:
            await conn.close()

#-----------------------------------------------------------------------------
