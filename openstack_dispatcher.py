"""OpenStack Mock Dispatcher – one address in front of the local cloud mocks.

Six mock services (compute, networking, load-balancer, block-storage, DNS and
image) run as independent HTTP servers on their own base URLs.  This app puts
a single entry point in front of them:

- ``POST /v3/auth/tokens`` issues a synthetic Keystone v3 token whose service
  catalog points every service back at this dispatcher
- ``/v3/identity`` answers a minimal identity discovery document
- every other path is matched against a prefix table (longest prefix first)
  and forwarded verbatim to the owning backend
- anything else is a plain-text 404 naming the unmatched path

No credentials are checked and nothing is persisted.  It is a disposable
test double, not a gateway.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from pydantic import BaseModel, Field

# ── Logging ───────────────────────────────────────────────────────────────────────────

LOG = logging.getLogger("openstack-dispatcher")

# ── Version ───────────────────────────────────────────────────────────────────────────

__version__ = "1.0.0"

# ── Constants ─────────────────────────────────────────────────────────────────────────

TOKEN_PATH = "/v3/auth/tokens"
IDENTITY_PATH = "/v3/identity"
SUBJECT_TOKEN_HEADER = "X-Subject-Token"
TOKEN_LIFETIME = timedelta(hours=1)
DEFAULT_REGION = "RegionOne"

MOCK_PROJECT = {"id": "mock-project-id", "name": "mock"}
MOCK_USER = {"id": "mock-user-id", "name": "mock-user"}

# RFC 7230 §6.1 connection-scoped headers; never relayed in either direction.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


class Backend(str, Enum):
    COMPUTE = "compute"
    NETWORKING = "networking"
    LOAD_BALANCER = "load-balancer"
    BLOCK_STORAGE = "block-storage"
    DNS = "dns"
    IMAGE = "image"


# Catalog order: (backend, service type, service name).
SERVICE_CATALOG: tuple[tuple[Backend, str, str], ...] = (
    (Backend.COMPUTE, "compute", "nova"),
    (Backend.NETWORKING, "network", "neutron"),
    (Backend.LOAD_BALANCER, "load-balancer", "octavia"),
    (Backend.BLOCK_STORAGE, "block-storage", "cinder"),
    (Backend.DNS, "dns", "designate"),
    (Backend.IMAGE, "image", "glance"),
)

# Known URI prefixes per backend.  This is data: add rows here (or through
# OSMOCK_EXTRA_ROUTES) and the router picks them up as-is.
DEFAULT_ROUTES: tuple[tuple[str, Backend], ...] = (
    # Compute (Nova)
    ("/servers/", Backend.COMPUTE),
    ("/servers", Backend.COMPUTE),
    ("/os-keypairs/", Backend.COMPUTE),
    ("/os-keypairs", Backend.COMPUTE),
    ("/flavors/", Backend.COMPUTE),
    ("/flavors", Backend.COMPUTE),
    ("/os-instance-actions/", Backend.COMPUTE),
    # Image (Glance)
    ("/images/", Backend.IMAGE),
    ("/images", Backend.IMAGE),
    ("/v2/images/", Backend.IMAGE),
    ("/v2/images", Backend.IMAGE),
    ("/v2/schemas/", Backend.IMAGE),
    # Block storage (Cinder)
    ("/volumes/", Backend.BLOCK_STORAGE),
    ("/volumes", Backend.BLOCK_STORAGE),
    ("/types/", Backend.BLOCK_STORAGE),
    ("/types", Backend.BLOCK_STORAGE),
    ("/os-availability-zone", Backend.BLOCK_STORAGE),
    # DNS (Designate)
    ("/zones/", Backend.DNS),
    ("/zones", Backend.DNS),
    ("/v2/zones/", Backend.DNS),
    ("/v2/zones", Backend.DNS),
    # Networking (Neutron)
    ("/networks/", Backend.NETWORKING),
    ("/networks", Backend.NETWORKING),
    ("/ports/", Backend.NETWORKING),
    ("/ports", Backend.NETWORKING),
    ("/routers/", Backend.NETWORKING),
    ("/routers", Backend.NETWORKING),
    ("/security-groups/", Backend.NETWORKING),
    ("/security-groups", Backend.NETWORKING),
    ("/security-group-rules/", Backend.NETWORKING),
    ("/security-group-rules", Backend.NETWORKING),
    ("/subnets/", Backend.NETWORKING),
    ("/subnets", Backend.NETWORKING),
    ("/floatingips/", Backend.NETWORKING),
    ("/floatingips", Backend.NETWORKING),
    ("/v2.0/networks", Backend.NETWORKING),
    ("/v2.0/ports", Backend.NETWORKING),
    ("/v2.0/routers", Backend.NETWORKING),
    ("/v2.0/security-groups", Backend.NETWORKING),
    ("/v2.0/security-group-rules", Backend.NETWORKING),
    ("/v2.0/subnets", Backend.NETWORKING),
    ("/v2.0/floatingips", Backend.NETWORKING),
    # Load balancer (Octavia)
    ("/lbaas/listeners/", Backend.LOAD_BALANCER),
    ("/lbaas/listeners", Backend.LOAD_BALANCER),
    ("/lbaas/loadbalancers/", Backend.LOAD_BALANCER),
    ("/lbaas/loadbalancers", Backend.LOAD_BALANCER),
    ("/lbaas/pools/", Backend.LOAD_BALANCER),
    ("/lbaas/pools", Backend.LOAD_BALANCER),
    ("/v2/lbaas/", Backend.LOAD_BALANCER),
)


# ── Settings ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Endpoints:
    """Base URLs of the six mock backends."""

    compute: str
    networking: str
    load_balancer: str
    block_storage: str
    dns: str
    image: str

    def for_backend(self, backend: Backend) -> str:
        return getattr(self, backend.name.lower())


@dataclass
class AppSettings:
    endpoints: Endpoints
    listen: str = "127.0.0.1"
    port: int = 19090
    region: str = DEFAULT_REGION
    log_level: str = "INFO"
    max_connections: int = 100
    max_keepalive: int = 20
    extra_routes: list[tuple[str, Backend]] = field(default_factory=list)


# ── Custom Exceptions ───────────────────────────────────────────────────────────────


class DispatcherError(Exception):
    """Base exception for dispatcher errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "internal_error",
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type


class UpstreamError(DispatcherError):
    """A backend could not be reached or failed before sending a response."""

    def __init__(self, backend: Backend, exc: Exception) -> None:
        if isinstance(exc, httpx.TimeoutException):
            status, error_type = 504, "gateway_timeout"
        else:
            status, error_type = 502, "bad_gateway"
        super().__init__(
            f"{backend.value} backend error: {type(exc).__name__}: {exc}",
            status,
            error_type,
        )
        self.backend = backend


# ── Helpers ───────────────────────────────────────────────────────────────────────────


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def rfc3339(ts: datetime) -> str:
    """Format a timestamp the way Keystone does (UTC, second precision, ``Z``)."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_base_url(value: str) -> str:
    """Normalize and validate a base URL."""
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ValueError("base_url is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("base_url must start with http:// or https://")
    return url


def external_base_url(request: Request) -> str:
    """Return ``scheme://host`` as the caller sees this dispatcher."""
    scheme = request.headers.get("x-forwarded-proto", "").split(",")[0].strip()
    if not scheme:
        scheme = request.scope.get("scheme") or ""
    if not scheme:
        extensions = request.scope.get("extensions") or {}
        scheme = "https" if "tls" in extensions else "http"
    host = request.headers.get("host", "")
    if not host and request.scope.get("server"):
        server_host, server_port = request.scope["server"]
        host = f"{server_host}:{server_port}"
    return f"{scheme}://{host}"


def problem_detail(
    status: int,
    detail: str,
    error_type: str = "about:blank",
    **extra: Any,
) -> JSONResponse:
    """Return an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": error_type,
        "status": status,
        "detail": detail,
    }
    body.update(extra)
    return JSONResponse(body, status_code=status)


def hop_by_hop_names(connection_values: Iterable[str]) -> frozenset[str]:
    """Fixed hop-by-hop headers plus any named in ``Connection``."""
    listed = {
        token.strip().lower()
        for value in connection_values
        for token in value.split(",")
        if token.strip()
    }
    return HOP_BY_HOP_HEADERS | listed


def method_not_allowed(*allowed: str) -> Response:
    return Response(status_code=405, headers={"Allow": ", ".join(allowed)})


# ── Route Table ───────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RouteEntry:
    prefix: str
    backend: Backend


def build_route_table(
    routes: Iterable[tuple[str, Backend]],
) -> tuple[RouteEntry, ...]:
    """Order prefix routes so the most specific one is tried first.

    Entries are sorted by descending prefix length, then by prefix, then by
    backend id.  Two prefixes of equal length can only both match a path if
    they are the same string, so the last key decides duplicate registrations:
    the lexicographically smallest backend id wins.  Registration order never
    matters.
    """
    entries = set()
    for prefix, backend in routes:
        if not prefix.startswith("/"):
            raise ValueError(f"route prefix must start with '/': {prefix!r}")
        entries.add(RouteEntry(prefix, Backend(backend)))
    return tuple(
        sorted(entries, key=lambda e: (-len(e.prefix), e.prefix, e.backend.value))
    )


# ── Prefix Router ─────────────────────────────────────────────────────────────────────


class PrefixRouter:
    """Longest-prefix lookup over an ordered route table.

    Matching is a literal string prefix test, not path-segment aware:
    ``/serversfoo`` matches ``/servers``.
    """

    def __init__(self, table: tuple[RouteEntry, ...]) -> None:
        self._table = table

    @property
    def table(self) -> tuple[RouteEntry, ...]:
        return self._table

    def route(self, path: str) -> Optional[Backend]:
        for entry in self._table:
            if path.startswith(entry.prefix):
                return entry.backend
        return None

    def __len__(self) -> int:
        return len(self._table)


# ── Forwarder ─────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Forwarder:
    """Relays requests to one backend, rewriting only the destination."""

    backend: Backend
    scheme: str
    netloc: str

    @classmethod
    def from_base_url(cls, backend: Backend, base_url: str) -> Forwarder:
        try:
            url = httpx.URL(normalize_base_url(base_url))
        except (ValueError, httpx.InvalidURL) as exc:
            raise ValueError(
                f"invalid {backend.value} backend URL {base_url!r}: {exc}"
            ) from exc
        if not url.host:
            raise ValueError(f"invalid {backend.value} backend URL {base_url!r}: no host")
        return cls(backend, url.scheme, url.netloc.decode("ascii"))

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    def target_url(self, request: Request) -> str:
        # The backend muxes expect the same path prefixes, so the path is
        # kept as-is instead of being joined onto the base URL.  The raw
        # path keeps percent-escapes such as %2F and %3F intact.
        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        url = self.origin + raw_path.split(b"?", 1)[0].decode("latin-1")
        query = request.scope.get("query_string", b"")
        if query:
            url += "?" + query.decode("latin-1")
        return url

    def outbound_headers(self, request: Request) -> list[tuple[str, str]]:
        dropped = hop_by_hop_names(request.headers.getlist("connection"))
        headers = [
            (k, v)
            for k, v in request.headers.items()
            if k not in dropped and k != "host"
        ]
        inbound_host = request.headers.get("host", "")
        if "x-forwarded-host" not in request.headers and inbound_host:
            headers.append(("X-Forwarded-Host", inbound_host))
        headers.append(("Host", self.netloc))
        return headers

    async def forward(self, request: Request, client: httpx.AsyncClient) -> Response:
        body = await request.body()
        upstream_req = client.build_request(
            request.method,
            self.target_url(request),
            headers=self.outbound_headers(request),
            content=body,
        )
        try:
            up = await client.send(upstream_req, stream=True)
        except httpx.HTTPError as exc:
            LOG.warning(
                "Backend %s unreachable for %s %s: %s",
                self.backend.value, request.method, request.url.path, exc,
            )
            raise UpstreamError(self.backend, exc) from exc

        async def relay():
            try:
                try:
                    async for chunk in up.aiter_raw():
                        if chunk:
                            yield chunk
                except httpx.StreamConsumed:
                    # Responses built in memory (httpx.MockTransport) are
                    # read on construction and only expose ``content``.
                    if up.content:
                        yield up.content
            finally:
                await up.aclose()

        dropped = hop_by_hop_names(up.headers.get_list("connection", split_commas=True))
        response = StreamingResponse(relay(), status_code=up.status_code)
        response.raw_headers = [
            (k, v)
            for k, v in up.headers.raw
            if k.decode("latin-1").lower() not in dropped
        ]
        return response


# ── Documents ─────────────────────────────────────────────────────────────────────────


class CatalogEndpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    interface: str = "public"
    region: str
    region_id: str
    url: str


class CatalogService(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str
    name: str
    endpoints: list[CatalogEndpoint]


class NamedRef(BaseModel):
    id: str
    name: str


class TokenDocument(BaseModel):
    expires_at: str
    issued_at: str
    methods: list[str] = Field(default_factory=lambda: ["password"])
    project: NamedRef
    user: NamedRef
    catalog: list[CatalogService]


class IdentityLink(BaseModel):
    rel: str
    href: str


class IdentityDocument(BaseModel):
    version: str = "v3"
    status: str = "ok"
    updated: str
    links: list[IdentityLink]


def build_catalog(base_url: str, region: str) -> list[CatalogService]:
    """One service per backend plus keystone, all pointing at ``base_url``."""

    def service(type_: str, name: str, url: str) -> CatalogService:
        ep = CatalogEndpoint(region=region, region_id=region, url=url)
        return CatalogService(type=type_, name=name, endpoints=[ep])

    catalog = [service(t, n, base_url + "/") for _, t, n in SERVICE_CATALOG]
    catalog.append(service("identity", "keystone", base_url + IDENTITY_PATH))
    return catalog


# ── Token Issuer ──────────────────────────────────────────────────────────────────────


def issue_token(request: Request, region: str = DEFAULT_REGION) -> Response:
    if request.method != "POST":
        return method_not_allowed("POST")
    issued = now_utc()
    token = new_id()
    doc = TokenDocument(
        expires_at=rfc3339(issued + TOKEN_LIFETIME),
        issued_at=rfc3339(issued),
        project=NamedRef(**MOCK_PROJECT),
        user=NamedRef(**MOCK_USER),
        catalog=build_catalog(external_base_url(request), region),
    )
    LOG.debug("Issued token %s (expires %s)", token, doc.expires_at)
    return JSONResponse(
        {"token": doc.model_dump()},
        status_code=201,
        headers={SUBJECT_TOKEN_HEADER: token},
    )


# ── Identity Discovery ────────────────────────────────────────────────────────────────


def describe_identity(request: Request) -> Response:
    if request.method not in ("GET", "HEAD"):
        return method_not_allowed("GET", "HEAD")
    if request.method == "HEAD":
        return Response(status_code=200, media_type="application/json")
    doc = IdentityDocument(
        updated=rfc3339(now_utc()),
        links=[
            IdentityLink(rel="self", href=external_base_url(request) + IDENTITY_PATH)
        ],
    )
    return JSONResponse({"identity": doc.model_dump()})


# ── Dispatcher ────────────────────────────────────────────────────────────────────────


def is_identity_path(path: str) -> bool:
    return path == IDENTITY_PATH or path.startswith(IDENTITY_PATH + "/")


class Dispatcher:
    """Classifies each request and hands it to the matching handler.

    The route table and forwarders are built here once and never change, so
    concurrent requests share them without locking.  The HTTP client is
    opened and closed by the app lifespan.
    """

    def __init__(
        self,
        endpoints: Endpoints,
        routes: Iterable[tuple[str, Backend]] = DEFAULT_ROUTES,
        region: str = DEFAULT_REGION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limits: Optional[httpx.Limits] = None,
    ) -> None:
        self.endpoints = endpoints
        self.region = region
        self.router = PrefixRouter(build_route_table(routes))
        self.forwarders: Mapping[Backend, Forwarder] = MappingProxyType(
            {b: Forwarder.from_base_url(b, endpoints.for_backend(b)) for b in Backend}
        )
        self._transport = transport
        self._limits = limits or httpx.Limits()
        self._client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        self._client = httpx.AsyncClient(
            http2=True,
            timeout=None,
            follow_redirects=False,
            trust_env=False,
            transport=self._transport,
            limits=self._limits,
        )
        LOG.info("OpenStack mock backends (%d routes):", len(self.router))
        for backend, _, name in SERVICE_CATALOG:
            LOG.info(
                "  %-14s %-10s %s",
                backend.value, f"({name})", self.endpoints.for_backend(backend),
            )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        LOG.info("Dispatcher shutdown complete")

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("HTTP client not initialised")
        return self._client

    async def dispatch(self, request: Request) -> Response:
        path = request.url.path
        if path == TOKEN_PATH:
            return issue_token(request, self.region)
        if is_identity_path(path):
            return describe_identity(request)
        backend = self.router.route(path)
        if backend is None:
            LOG.debug("No route for %s %s", request.method, path)
            return PlainTextResponse(f"no route for path: {path}\n", status_code=404)
        LOG.debug("Routing %s %s -> %s", request.method, path, backend.value)
        return await self.forwarders[backend].forward(request, self.client)


class DispatchEndpoint:
    """ASGI endpoint for the catch-all route.

    Starlette only skips its method check for non-function endpoints, so
    this stays a class: extension methods (PROPFIND, REPORT, ...) must
    reach the dispatcher too.
    """

    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher

    async def __call__(self, scope, receive, send) -> None:
        request = Request(scope, receive)
        response = await self.dispatcher.dispatch(request)
        await response(scope, receive, send)


# ── App Factory ─────────────────────────────────────────────────────────────────


def parse_extra_routes(raw: str) -> list[tuple[str, Backend]]:
    """Parse ``/prefix=backend,/other=backend`` into route pairs."""
    routes: list[tuple[str, Backend]] = []
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ValueError(f"route must be 'prefix=backend': {pair!r}")
        prefix, name = pair.split("=", 1)
        try:
            backend = Backend(name.strip())
        except ValueError:
            valid = ", ".join(b.value for b in Backend)
            raise ValueError(
                f"unknown backend {name.strip()!r} (expected one of: {valid})"
            ) from None
        routes.append((prefix.strip(), backend))
    return routes


def load_settings() -> AppSettings:
    """Load settings from environment variables with validation."""
    endpoints = Endpoints(
        compute=os.getenv("OSMOCK_COMPUTE_URL", "http://127.0.0.1:8774/"),
        networking=os.getenv("OSMOCK_NETWORKING_URL", "http://127.0.0.1:9696/"),
        load_balancer=os.getenv("OSMOCK_LOADBALANCER_URL", "http://127.0.0.1:9876/"),
        block_storage=os.getenv("OSMOCK_BLOCKSTORAGE_URL", "http://127.0.0.1:8776/"),
        dns=os.getenv("OSMOCK_DNS_URL", "http://127.0.0.1:9001/"),
        image=os.getenv("OSMOCK_IMAGE_URL", "http://127.0.0.1:9292/"),
    )
    return AppSettings(
        endpoints=endpoints,
        listen=os.getenv("OSMOCK_LISTEN", "127.0.0.1").strip(),
        port=int(os.getenv("OSMOCK_PORT", "19090")),
        region=os.getenv("OSMOCK_REGION", DEFAULT_REGION).strip() or DEFAULT_REGION,
        log_level=os.getenv("OSMOCK_LOG_LEVEL", "INFO").upper(),
        max_connections=max(1, int(os.getenv("OSMOCK_MAX_CONNECTIONS", "100"))),
        max_keepalive=max(0, int(os.getenv("OSMOCK_MAX_KEEPALIVE", "20"))),
        extra_routes=parse_extra_routes(os.getenv("OSMOCK_EXTRA_ROUTES", "")),
    )


def create_app(
    settings: Optional[AppSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    # Bad backend URLs raise here, before anything listens.
    dispatcher = Dispatcher(
        cfg.endpoints,
        routes=list(DEFAULT_ROUTES) + list(cfg.extra_routes),
        region=cfg.region,
        transport=transport,
        limits=httpx.Limits(
            max_connections=cfg.max_connections,
            max_keepalive_connections=cfg.max_keepalive,
        ),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await dispatcher.startup()
        LOG.info("Dispatcher v%s ready on http://%s:%s", __version__, cfg.listen, cfg.port)
        try:
            yield
        finally:
            await dispatcher.shutdown()

    # No docs routes: every path belongs to the dispatcher.
    app = FastAPI(
        title="OpenStack Mock Dispatcher",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = cfg
    app.state.dispatcher = dispatcher

    @app.exception_handler(DispatcherError)
    async def dispatcher_error_handler(request: Request, exc: DispatcherError):
        extra: dict[str, Any] = {}
        if isinstance(exc, UpstreamError):
            extra["backend"] = exc.backend.value
        return problem_detail(exc.status_code, exc.detail, exc.error_type, **extra)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled error for %s %s: %s", request.method, request.url.path, exc)
        return problem_detail(500, "internal server error", "internal_error")

    app.add_route("/{path:path}", DispatchEndpoint(dispatcher), include_in_schema=False)

    return app


def main() -> None:
    s = load_settings()
    uvicorn.run(
        create_app(s),
        host=s.listen,
        port=s.port,
        log_level=s.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
