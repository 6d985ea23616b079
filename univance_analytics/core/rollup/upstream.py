import aiohttp, jwt, logging, secrets, time

from typing import Any, Mapping, Protocol

from .errors import ConfigurationError

#-----------------------------------------------------------------------------

class UpstreamError(Exception):
    """A sibling service answered with a non-2xx status or an unreadable body."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status

#-----------------------------------------------------------------------------

class UpstreamClientProtocol(Protocol):
    async def get_json(self, service: str, path: str, params: Mapping[str, str] | None = None) -> Any: ...

#-----------------------------------------------------------------------------

class UpstreamClient:
    """
    Authenticated JSON reader for the sibling services.

    One client lives for one rollup run: the session and the bearer token are
    shared by every request of the run.
    """

    def __init__(
        self,
        base_urls   : Mapping[str, str],
        token       : str,
        timeout     : float = 10.0
    ):
        self._base_urls = dict(base_urls)
        self._token     = token
        self._timeout   = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    #-----------------------------------------------------

    async def __aenter__(self) -> "UpstreamClient":
        self._session = aiohttp.ClientSession(
            headers = {
                "Authorization" : f"Bearer {self._token}",
                "Accept"        : "application/json",
            },
            timeout = self._timeout
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._session:
            await self._session.close()
            self._session = None

    #-----------------------------------------------------

    def url_for(self, service: str, path: str) -> str:
        base_url = self._base_urls.get(service, "")
        if not base_url:
            raise UpstreamError(f"no base URL configured for service '{service}'")
        return f"{base_url}{path}"


    async def get_json(self, service: str, path: str, params: Mapping[str, str] | None = None) -> Any:
        if self._session is None:
            raise RuntimeError("UpstreamClient must be used as an async context manager")

        url = self.url_for(service, path)

        start_time = time.time()
        async with self._session.get(url, params=dict(params or {})) as resp:
            time_cost = round((time.time()-start_time)*1e3, 2)

            if resp.status != 200:
                body = await resp.text()
                logging.warning(
                    f"[Upstream] {service} {path} returned {resp.status}",
                    extra={"status": resp.status, "time_cost": time_cost, "body": body[:200]}
                )
                raise UpstreamError(f"{service} {path} returned {resp.status}", status=resp.status)

            try:
                payload = await resp.json(content_type=None)
            except ValueError as e:
                raise UpstreamError(f"{service} {path} returned invalid JSON: {str(e)}", status=resp.status)

            logging.debug(f"[Upstream] {service} {path}", extra={"time_cost": time_cost})
            return payload

#-----------------------------------------------------------------------------

class TokenIssuerProtocol(Protocol):
    async def issue(self) -> str: ...


class SystemTokenIssuer:
    """Signs the short-lived platform-admin token the sibling services accept."""

    def __init__(
        self,
        key         : str,
        algorithm   : str = "HS256",
        subject     : str = "system_analytics",
        expires_in  : int = 3600
    ):
        self._key       = key
        self._algorithm = algorithm
        self._subject   = subject
        self._expires_in= expires_in if expires_in > 0 else 3600


    async def issue(self) -> str:
        if not self._key:
            raise ConfigurationError("JWT secret is not configured")

        now = int(time.time())

        payload = {
            "sub"   : self._subject,
            "id"    : self._subject,
            "roles" : ["platform_admin"],
            "type"  : "system",
            "iat"   : now,
            "exp"   : now + self._expires_in,
            "jti"   : secrets.token_urlsafe(16)
        }

        return jwt.encode(payload=payload, key=self._key, algorithm=self._algorithm)

#-----------------------------------------------------------------------------
