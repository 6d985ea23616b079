#-----------------------------------------------------------------------------

DEFAULT_REFRESH_INTERVAL = "0 * * * *"

#-----------------------------------------------------------------------------

class AnalyticsConfig:
    """Settings for the rollup pipeline: upstream services, cadence and budgets."""

    def __init__(
        self,
        user_service_url    : str = "",
        task_service_url    : str = "",
        points_service_url  : str = "",
        jwt_secret          : str = "",
        refresh_interval    : str = "",
        lookback_hours      : int = 0,
        source_timeout      : float = 0,
        run_budget          : float = 0,
        tenant_concurrency  : int = 0,
        tick_seconds        : int = 0,
        manage_key          : str = "",
        required_sources    : dict[str, list[str]] | None = None
    ):
        self.service_urls = {
            "user"  : user_service_url.strip().rstrip("/"),
            "task"  : task_service_url.strip().rstrip("/"),
            "points": points_service_url.strip().rstrip("/"),
        }

        self.jwt_secret         = jwt_secret
        self.refresh_interval   = refresh_interval.strip() if refresh_interval else DEFAULT_REFRESH_INTERVAL

        self.lookback_hours     = lookback_hours if lookback_hours > 0 else 24
        self.source_timeout     = source_timeout if source_timeout > 0 else 10.0
        self.run_budget         = run_budget if run_budget > 0 else 120.0
        self.tenant_concurrency = tenant_concurrency if tenant_concurrency > 0 else 8
        self.tick_seconds       = tick_seconds if tick_seconds > 0 else 30

        self.manage_key         = manage_key

        # Family name to the source keys that must succeed for a snapshot.
        self.required_sources   = {
            family.strip().lower(): [str(key) for key in keys]
            for family, keys in (required_sources or {}).items()
            if isinstance(keys, list)
        }


    def print(self):
        for service, url in self.service_urls.items():
            print(f"{service + ' service':<16}: {url if url else 'not configured'}")
        print(f"refresh         : {self.refresh_interval} (lookback {self.lookback_hours}h)")
        print(f"budget          : source {self.source_timeout}s, run {self.run_budget}s")

#-----------------------------------------------------------------------------
