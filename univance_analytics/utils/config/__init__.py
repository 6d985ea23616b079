from .config import (
    Config,

    global_config
)

from .analytics import AnalyticsConfig
from .postgresql import PostgreSQLConfig
from .redis import RedisConfig
