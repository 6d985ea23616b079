#-----------------------------------------------------------------------------

class HttpConfig:
    """Listener settings for the analytics API."""

    def __init__(
        self,
        name        : str = "",
        version     : str = "",
        host        : str = "",
        port        : int = 0,
        uri_prefix  : str = "",
        headers     : dict[str, str] | None = None
    ):
        self.name       = name.strip() if name else "univance-analytics"
        self.version    = version.strip() if version else ""

        self.host       = host if host else "0.0.0.0"
        self.port       = port if port > 0 else 5007

        prefix = uri_prefix.strip().strip("/")
        self.uri_prefix = f"/{prefix}" if prefix else ""

        # Extra response headers handed to uvicorn; a Server header is always sent.
        self.headers = [(k, str(v)) for k, v in (headers or {}).items() if k and v]
        if not any(k.lower() == "server" for k, _ in self.headers):
            self.headers.append(("Server", f"{self.name}/{self.version}" if self.version else self.name))

    #-----------------------------------------------------

    def print(self):
        print(f"http            : {self.host}:{self.port}{self.uri_prefix}")
        for key, value in self.headers:
            print(f"                  {key}: {value}")

#-----------------------------------------------------------------------------
