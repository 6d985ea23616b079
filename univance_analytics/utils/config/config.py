import base64, dotenv, io, json, logging, os, re

from ruamel.yaml import YAML
from typing import Any

from .encrypt import AbstractEncrypter, FernetEncrypter
from .analytics import AnalyticsConfig
from .log import LogConfig
from .http import HttpConfig
from .postgresql import PostgreSQLConfig
from .redis import RedisConfig

#-----------------------------------------------------------------------------

_global_config = None

# Keys whose plain-text values are encrypted back into the YAML file on load.
_SECRET_KEY_PATTERN = r"_KEY|_PASSWORD|_PASS|_PWD|_SECRET|_TOKEN"

_PLACEHOLDER_VALUE = "REPLACE_THIS_VALUE_IN_PRODUCTION"

#-----------------------------------------------------------------------------

class Config:

    yaml = YAML()

    #-------------------------------------------------

    def __init__(
        self,
        yaml_filenames: str | io.StringIO | list[str | io.StringIO] | None = None,
        encrypter: AbstractEncrypter | None = None
    ):
        if isinstance(yaml_filenames, str | io.StringIO):
            self._yaml_filenames = [yaml_filenames]
        elif isinstance(yaml_filenames, list):
            self._yaml_filenames = yaml_filenames
        else:
            self._yaml_filenames = []

        #-------------------------------------------------

        self._raw = {}

        self._postgresqls = {}
        self._redises = {}

        #-------------------------------------------------

        self._encrypter = encrypter
        if not self._encrypter:
            self._encrypter = FernetEncrypter(self.get_fernet_key("CONFIG_ENCRYPTION_KEY"))

        #-------------------------------------------------

        for yaml_filename in self._yaml_filenames:
            self.load_yaml(yaml_filename)

        self.refresh()

        global _global_config
        _global_config = self

    #-----------------------------------------------------

    def refresh(self, data: dict = {}):
        if data:
            self._raw.update({str(k).upper(): v for k, v in data.items()})

        # Cached sub-configs must see the updated raw values.
        self._postgresqls = {}
        self._redises = {}

        self.log = LogConfig(
            name        = self.get_str("LOG_NAME"),
            dir         = self.get_str("LOG_DIR"),
            level       = logging.getLevelNamesMapping().get(self.get_str("LOG_LEVEL").strip().upper(), logging.INFO)
        )

        self.http = HttpConfig(
            name        = self.get_str("HTTP_SERVER_NAME"),
            version     = self.get_str("HTTP_SERVER_VERSION"),
            host        = self.get_str("HTTP_HOST"),
            port        = self.get_int("HTTP_PORT"),
            uri_prefix  = self.get_str("HTTP_URI_PREFIX"),
            headers     = self.get_dict("HTTP_HEADERS", {})
        )

        self.analytics = AnalyticsConfig(
            user_service_url    = self.get_str("USER_SERVICE_URL"),
            task_service_url    = self.get_str("TASK_SERVICE_URL"),
            points_service_url  = self.get_str("POINTS_SERVICE_URL"),
            jwt_secret          = self.get_str("JWT_SECRET"),
            refresh_interval    = self.get_str("ANALYTICS_REFRESH_INTERVAL"),
            lookback_hours      = self.get_int("ANALYTICS_LOOKBACK_HOURS"),
            source_timeout      = self.get_float("ANALYTICS_SOURCE_TIMEOUT"),
            run_budget          = self.get_float("ANALYTICS_RUN_BUDGET"),
            tenant_concurrency  = self.get_int("ANALYTICS_TENANT_CONCURRENCY"),
            tick_seconds        = self.get_int("ANALYTICS_TICK_SECONDS"),
            manage_key          = self.get_str("ANALYTICS_MANAGE_KEY"),
            required_sources    = self.get_dict("ANALYTICS_REQUIRED_SOURCES", {})
        )


    def load_yaml(self, file: str | io.StringIO):
        if not file:
            return

        stream = None

        if isinstance(file, str):
            try:
                with open(file, "r", encoding="utf-8") as f:
                    stream = io.StringIO(f.read())

            except Exception as e:
                logging.warning(f"Failed to load YAML file '{file}': {str(e)}")
                return

        elif isinstance(file, io.StringIO):
            stream = file

        if stream is None:
            return

        #-------------------------------------------------

        Config.yaml = YAML()

        modified = False

        data = Config.yaml.load(stream)
        if not isinstance(data, dict):
            return

        for key, value in data.items():
            if not isinstance(key, str):
                continue

            upper_key = key.upper()

            if self._encrypter and isinstance(value, str) and len(value) > 0:
                if self._encrypter.is_encrypted(value):
                    self._raw[upper_key] = self._encrypter.decrypt(value)
                    continue

                if re.search(_SECRET_KEY_PATTERN, upper_key) and \
                    not upper_key.endswith("_URL") and \
                    value != _PLACEHOLDER_VALUE:

                    data[key] = self._encrypter.encrypt(value)
                    if not modified:
                        modified = (data[key] != value)

            self._raw[upper_key] = value

        #-------------------------------------------------

        if isinstance(file, str) and modified:
            try:
                with open(file, "w+t", encoding="utf-8") as f:
                    Config.yaml.dump(data, f)

            except Exception as e:
                logging.warning(f"Failed to update YAML file '{file}': {str(e)}")

    #-----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        stripped_key = key.strip()
        if not stripped_key:
            return default

        # Environment variables win over YAML values.
        s = os.environ.get(stripped_key)
        if s is not None:
            return s

        upper_key = stripped_key.upper()
        s = os.environ.get(upper_key)
        if s is not None:
            return s

        return self._raw.get(upper_key, default)


    def get_str(self, key: str, default: str = "") -> str:
        s = self.get(key, default)
        if s is None:
            return default
        return s if isinstance(s, str) else str(s)


    def get_int(self, key: str, default: int = 0) -> int:
        obj = self.get(key)

        if isinstance(obj, bool):
            return default

        if isinstance(obj, int):
            return obj

        try:
            return int(obj)
        except (TypeError, ValueError):
            return default


    def get_float(self, key: str, default: float = 0.0) -> float:
        obj = self.get(key)

        if isinstance(obj, bool):
            return default

        if isinstance(obj, int | float):
            return float(obj)

        try:
            return float(obj)
        except (TypeError, ValueError):
            return default


    def get_bool(self, key: str, default: bool = False) -> bool:
        obj = self.get(key)

        if isinstance(obj, bool):
            return obj

        if isinstance(obj, str):
            return obj.strip().upper() == "TRUE"

        if isinstance(obj, int):
            return obj != 0

        return default


    def get_dict(self, key: str, default: dict | None = None) -> dict | None:
        obj = self.get(key)

        if isinstance(obj, dict):
            return dict(obj)

        if isinstance(obj, str | bytes | bytearray):
            try:
                d = json.loads(obj)
                if isinstance(d, dict):
                    return d
            except ValueError:
                return default

        return default


    def get_fernet_key(self, key: str) -> str:
        s = self.get_str(key).strip()
        if not s:
            return ""
        if len(s) > 32:
            s = s[:32]

        return base64.urlsafe_b64encode(s.encode().ljust(32, b"0")).decode()

    #-----------------------------------------------------

    def get_postgresql(self, key: str="") -> PostgreSQLConfig:
        upper_key = key.strip().upper()
        if upper_key in self._postgresqls:
            return self._postgresqls[upper_key]

        #-------------------------------------------------

        suffix = upper_key
        if suffix:
            suffix = "_" + suffix

        pg_config = PostgreSQLConfig(
            host        = self.get_str(f"PG_HOST{suffix}"),
            port        = self.get_int(f"PG_PORT{suffix}"),
            user        = self.get_str(f"PG_USER{suffix}"),
            password    = self.get_str(f"PG_PASSWORD{suffix}"),
            database    = self.get_str(f"PG_DBNAME{suffix}"),
            schema      = self.get_str(f"PG_SCHEMA{suffix}"),
            maxconn     = self.get_int(f"PG_MAX_CONNECTION{suffix}"),
            timeout     = self.get_int(f"PG_TIMEOUT{suffix}"),
        )

        self._postgresqls[upper_key] = pg_config
        return pg_config

    #-----------------------------------------------------

    def get_redis(self, key: str="") -> RedisConfig:
        upper_key = key.strip().upper()
        if upper_key in self._redises:
            return self._redises[upper_key]

        #-------------------------------------------------

        suffix = upper_key
        if suffix:
            suffix = "_" + suffix

        redis_config = RedisConfig(
            host                = self.get_str(f"REDIS_HOST{suffix}"),
            port                = self.get_int(f"REDIS_PORT{suffix}"),
            password            = self.get_str(f"REDIS_PASSWORD{suffix}"),
            database            = self.get_int(f"REDIS_DB{suffix}"),
            maxconn             = self.get_int(f"REDIS_MAX_CONNECTION{suffix}"),
            timeout             = self.get_int(f"REDIS_TIMEOUT{suffix}"),
            ssl                 = self.get_bool(f"REDIS_SSL{suffix}"),
            ssl_check_hostname  = self.get_bool(f"REDIS_SSL_CHECK_HOSTNAME{suffix}"),
            ssl_cert_reqs       = self.get_str(f"REDIS_SSL_CERT_REQS{suffix}")
        )

        self._redises[upper_key] = redis_config
        return redis_config

    #-----------------------------------------------------

    def print(self):
        print(f"Configuration loaded from {[f if isinstance(f, str) else '<stream>' for f in self._yaml_filenames]}:")
        print("----------------------------------------------------------")
        print(f"env             : {os.environ.get('ENV', '').strip().lower()}")
        print(f"debug           : {self.log.level <= logging.DEBUG}")

        self.log.print()
        self.http.print()

        self.get_redis().print()
        self.get_postgresql().print()

        self.analytics.print()
        if self.analytics.jwt_secret:
            print(f"jwt             : {Config.to_masked_str(self.analytics.jwt_secret)}")

        print("----------------------------------------------------------")

    #-------------------------------------------------------------------------

    @staticmethod
    def to_masked_str(s: str) -> str:
        n = len(s)
        if n <= 0:
            return ""
        if n < 6:
            return "************"

        return f"{s[:3]}******{s[n-3:]}"

    #-------------------------------------------------------------------------

    @staticmethod
    def load_dotenv(filenames: str | list[str] | None = None):
        if isinstance(filenames, str):
            l = [filenames]
        elif isinstance(filenames, list):
            l = filenames
        else:
            return

        for filename in l:
            filename = filename.strip()
            if not filename:
                continue

            for key, value in dotenv.dotenv_values(filename).items():
                if value:
                    value = value.strip()
                if not value:
                    continue

                key = key.strip()
                if not key:
                    continue

                os.environ.setdefault(key.upper(), value)

    #-------------------------------------------------------------------------

    @staticmethod
    def expand_yaml_filenames(yaml_filenames: str | list[str] | None, env: str = "") -> list[str]:
        """
        Expand user YAML files with their companions:

        - `x.yaml` brings `x.key.yaml` (secrets kept out of version control).
        - With an ENV set, every file brings its `.{env}` overlay.
        - `config.yaml` in the working directory is always loaded first.
        """
        if isinstance(yaml_filenames, str):
            names = [yaml_filenames]
        elif isinstance(yaml_filenames, list):
            names = [s for s in yaml_filenames if isinstance(s, str)]
        else:
            names = []

        expanded = []

        def _append(name: str):
            if name and name not in expanded:
                expanded.append(name)

        for name in names:
            name = name.strip()
            if not re.match(".*\\.yaml$", name, re.IGNORECASE):
                continue

            _append(name)
            if not re.match(".*\\.key\\.yaml$", name, re.IGNORECASE):
                _append(f"{name[:-5]}.key.yaml")

        if env:
            if not expanded:
                expanded = [f"config.{env}.yaml", f"config.{env}.key.yaml"]

            else:
                with_env = []
                for name in expanded:
                    with_env.append(name)

                    if re.match(".*\\.key\\.yaml$", name, re.IGNORECASE):
                        with_env.append(f"{name[:-9]}.{env}.key.yaml")
                    else:
                        with_env.append(f"{name[:-5]}.{env}.yaml")

                expanded = list(dict.fromkeys(with_env))

        default_yaml = "config.yaml"
        if default_yaml not in expanded:
            expanded.insert(0, default_yaml)

        return expanded

    #-------------------------------------------------------------------------

    @staticmethod
    async def init(
        yaml_filenames  : str | list[str] | None = None,
        dotenv_filenames: str | list[str] = [".env"],
        log_extra       : dict = {}
    ):
        from ..log import init_log_console
        init_log_console(extra=log_extra)

        #-----------------------------------------------------

        class URLFilter(logging.Filter):
            def __init__(self, blocked_urls):
                super().__init__()
                self.blocked_urls = blocked_urls

            def filter(self, record: logging.LogRecord) -> bool:
                # uvicorn access logs carry the path at args[2].
                if record.args and len(record.args) >= 3:
                    if record.args[2] in self.blocked_urls:
                        return False
                return True

        logging.getLogger("uvicorn.access").addFilter(
            URLFilter(["/api/health"])
        )

        #-----------------------------------------------------

        Config.load_dotenv(dotenv_filenames)

        env = os.environ.get("ENV", "").strip().lower()
        if env and log_extra:
            log_extra["env"] = env

        yaml_file_list = [
            name for name in Config.expand_yaml_filenames(yaml_filenames, env)
            if os.path.exists(name)
        ]

        config = Config(yaml_filenames=yaml_file_list)

        #-----------------------------------------------------

        from ..log import init_log
        init_log(
            name        = config.log.name,
            dir         = config.log.dir,
            level       = config.log.level,
            extra       = log_extra
        )

        return config

#-----------------------------------------------------------------------------

def global_config() -> Config | None:
    return _global_config

#-----------------------------------------------------------------------------

