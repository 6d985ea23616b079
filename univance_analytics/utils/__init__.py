from .config import (
    Config,

    global_config
)

from .log import (
    JsonEncoder,
    JsonFormatter,

    init_log_console,
    init_log_file,

    init_log
)

from .http import (
    get_client_ip,

    json_response,
    success_response,
    error_response
)

from .db import (
    init_db,
    close_db,
    execute_query
)

from .log_ctx import (
    get_log_ctx,
    set_log_ctx
)
