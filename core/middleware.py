"""
Pipeline stages: compression, secure headers, CORS, parameter-pollution
sanitation, body parsing, static files, view engine, access logging, rate
limiting and the bearer-token gate.
build_stages() returns them in the order the pipeline runs them.
"""

import gzip
import json
import logging
import mimetypes
import time
import zlib
from datetime import datetime, timezone
from email.utils import formatdate
from pathlib import Path
from urllib.parse import parse_qs, parse_qsl, urlencode

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from fastapi.templating import Jinja2Templates

from core.config import Settings
from core.errors import BadRequestError, PayloadTooLargeError, UnauthorizedError
from core.pipeline import Stage, StageOutcome
from core.rate_limit import SlidingWindowRateLimiter
from core.security import parse_bearer, verify_token
from utils.validators import matches_any_prefix


def append_vary(response: Response, value: str) -> None:
    vary = response.headers.get("Vary", "")
    if value.lower() not in [v.strip().lower() for v in vary.split(",")]:
        response.headers["Vary"] = f"{vary}, {value}".lstrip(", ")


class CompressionStage(Stage):
    """
    gzip/deflate response compression negotiated from Accept-Encoding.
    Clients opt out with an `x-no-compression` request header.
    """

    name = "compression"

    COMPRESSIBLE_TYPES = frozenset(
        (
            "application/json",
            "application/javascript",
            "application/xml",
            "application/xhtml+xml",
            "image/svg+xml",
        )
    )
    ENCODINGS = ("gzip", "deflate")

    def __init__(self, threshold: int = 1024, level: int = 6):
        self.threshold = threshold
        self.level = level

    async def on_response(self, request: Request, response: Response) -> Response:
        if request.headers.get("x-no-compression"):
            return response
        if not self._should_compress(response):
            return response
        encoding = negotiate_encoding(request.headers.get("accept-encoding", ""), self.ENCODINGS)
        append_vary(response, "Accept-Encoding")
        if encoding is None:
            return response

        if encoding == "gzip":
            compressed = gzip.compress(response.body, compresslevel=self.level)
        else:
            compressed = zlib.compress(response.body, self.level)
        if len(compressed) >= len(response.body):
            return response
        response.body = compressed
        response.headers["Content-Encoding"] = encoding
        response.headers["Content-Length"] = str(len(compressed))
        return response

    def _should_compress(self, response: Response) -> bool:
        if "content-encoding" in response.headers:
            return False
        if "no-transform" in response.headers.get("cache-control", "").lower():
            return False
        if len(response.body) < self.threshold:
            return False
        base_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        return base_type.startswith("text/") or base_type in self.COMPRESSIBLE_TYPES or base_type.endswith("+json")


def parse_accept_encoding(header_value: str) -> list[tuple[str, float]]:
    """'gzip;q=0.5, br' -> [('br', 1.0), ('gzip', 0.5)], highest quality first."""
    encodings: list[tuple[str, float]] = []
    for part in header_value.split(","):
        token = part.strip()
        if not token:
            continue
        encoding, *params = [segment.strip() for segment in token.split(";")]
        q = 1.0
        for param in params:
            if param.startswith("q="):
                try:
                    q = float(param[2:])
                except ValueError:
                    q = 0.0
        encodings.append((encoding.lower(), q))
    encodings.sort(key=lambda item: item[1], reverse=True)
    return encodings


def negotiate_encoding(header_value: str, available: tuple[str, ...]) -> str | None:
    for encoding, quality in parse_accept_encoding(header_value):
        if quality <= 0:
            continue
        if encoding in available:
            return encoding
        if encoding == "*" and available:
            return available[0]
    return None


class SecureHeadersStage(Stage):
    """
    Adds the usual hardening headers and drops server disclosure headers.
    Compatible with Nginx/Cloudflare (they may override).
    """

    name = "security_headers"

    HEADERS = {
        "Content-Security-Policy": (
            "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
            "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
            "object-src 'none';script-src 'self';script-src-attr 'none';"
            "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
        ),
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
        "Origin-Agent-Cluster": "?1",
        "Referrer-Policy": "no-referrer",
        "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
        "X-Content-Type-Options": "nosniff",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "X-Frame-Options": "SAMEORIGIN",
        "X-Permitted-Cross-Domain-Policies": "none",
        "X-XSS-Protection": "0",
    }
    REMOVED = ("X-Powered-By", "Server")

    async def on_response(self, request: Request, response: Response) -> Response:
        for header in self.REMOVED:
            if header in response.headers:
                del response.headers[header]
        for header, value in self.HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class CorsStage(Stage):
    """
    CORS policy. A '*' origin list allows everyone; otherwise the request origin
    is echoed only when listed. Every OPTIONS request is answered here with 204
    as a preflight.
    """

    name = "cors"

    def __init__(self, allowed_origins: list[str], allowed_methods: list[str]):
        self.allow_all = "*" in allowed_origins
        self.allowed_origins = set(allowed_origins)
        self.allowed_methods = allowed_methods

    async def on_request(self, request: Request) -> StageOutcome:
        if request.method != "OPTIONS":
            return None
        response = Response(status_code=204)
        self._apply_origin(request, response)
        response.headers["Access-Control-Allow-Methods"] = ",".join(self.allowed_methods)
        requested_headers = request.headers.get("access-control-request-headers")
        if requested_headers:
            response.headers["Access-Control-Allow-Headers"] = requested_headers
            append_vary(response, "Access-Control-Request-Headers")
        return response

    async def on_response(self, request: Request, response: Response) -> Response:
        self._apply_origin(request, response)
        return response

    def _apply_origin(self, request: Request, response: Response) -> None:
        if self.allow_all:
            response.headers["Access-Control-Allow-Origin"] = "*"
            return
        append_vary(response, "Origin")
        origin = request.headers.get("origin")
        if origin and origin in self.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin


class ParameterPollutionStage(Stage):
    """
    HTTP parameter pollution guard: a repeated query key keeps its last value.
    All values are kept on request.state.query_polluted; whitelisted keys
    are left as arrays.
    """

    name = "hpp"

    def __init__(self, whitelist: set[str] | None = None):
        self.whitelist = whitelist or set()

    async def on_request(self, request: Request) -> StageOutcome:
        request.state.query_polluted = {}
        raw = request.scope.get("query_string", b"").decode("latin-1")
        if not raw:
            return None
        pairs = parse_qsl(raw, keep_blank_values=True)
        grouped: dict[str, list[str]] = {}
        for key, value in pairs:
            grouped.setdefault(key, []).append(value)

        polluted = {k: v for k, v in grouped.items() if len(v) > 1 and k not in self.whitelist}
        if not polluted:
            return None

        cleaned = []
        for key, values in grouped.items():
            if key in polluted:
                cleaned.append((key, values[-1]))
            else:
                cleaned.extend((key, v) for v in values)
        request.scope["query_string"] = urlencode(cleaned).encode("latin-1")
        request.state.query_polluted = polluted
        return None


class BodyParserStage(Stage):
    """
    JSON and urlencoded body parsing into request.state.body (default {}).
    The raw body stays readable by routes.
    """

    name = "body_parser"

    BODYLESS_METHODS = frozenset(("GET", "HEAD", "OPTIONS"))

    def __init__(self, limit: int = 100 * 1024):
        self.limit = limit

    async def on_request(self, request: Request) -> StageOutcome:
        request.state.body = {}
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        is_json = content_type == "application/json" or content_type.endswith("+json")
        is_form = content_type == "application/x-www-form-urlencoded"
        if not (is_json or is_form):
            return None

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.limit:
            return PayloadTooLargeError(self.limit)
        if request.method in self.BODYLESS_METHODS and not declared:
            return None

        raw = await request.body()
        if len(raw) > self.limit:
            return PayloadTooLargeError(self.limit)
        if not raw:
            return None

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return BadRequestError("Request body is not valid UTF-8")

        if is_json:
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                return BadRequestError(f"Malformed JSON body: {exc.msg}")
            if not isinstance(parsed, (dict, list)):
                return BadRequestError("JSON body must be an object or an array")
            request.state.body = parsed
        else:
            form = parse_qs(text, keep_blank_values=True)
            request.state.body = {k: v[0] if len(v) == 1 else v for k, v in form.items()}
        return None


class StaticFilesStage(Stage):
    """
    Serves files under `root` for GET/HEAD before routing.
    Misses, dot-files and paths escaping the root fall through to the router.
    """

    name = "static"

    def __init__(self, root: Path, index: str = "index.html"):
        self.root = Path(root).resolve()
        self.index = index

    async def on_request(self, request: Request) -> StageOutcome:
        if request.method not in ("GET", "HEAD") or not self.root.is_dir():
            return None
        path = self._resolve(request.url.path)
        if path is None:
            return None

        try:
            stat = path.stat()
            content = path.read_bytes()
        except OSError:
            return None
        etag = f'W/"{stat.st_size:x}-{int(stat.st_mtime * 1000):x}"'
        headers = {
            "ETag": etag,
            "Last-Modified": formatdate(stat.st_mtime, usegmt=True),
            "Cache-Control": "public, max-age=0",
        }
        if request.headers.get("if-none-match") == etag:
            return Response(status_code=304, headers=headers)

        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return Response(content=content, media_type=media_type, headers=headers)

    def _resolve(self, url_path: str) -> Path | None:
        """Map a URL path to a file under root; None for anything not servable."""
        if "\x00" in url_path:
            return None
        relative = url_path.lstrip("/")
        if any(part.startswith(".") for part in relative.split("/") if part):
            return None
        try:
            candidate = (self.root / relative).resolve()
            if not candidate.is_relative_to(self.root):
                return None
            if candidate.is_dir():
                candidate = candidate / self.index
            return candidate if candidate.is_file() else None
        except (OSError, ValueError):
            # over-long segments and names the filesystem rejects
            return None


class ViewEngineStage(Stage):
    """Exposes the Jinja2 renderer on request.state.templates."""

    name = "view_engine"

    def __init__(self, templates: Jinja2Templates):
        self.templates = templates

    async def on_request(self, request: Request) -> StageOutcome:
        request.state.templates = self.templates
        return None


class AccessLogStage(Stage):
    """
    One Apache combined-format line per request, plus X-Response-Time-Ms.
    Requests slower than slow_ms are also logged as warnings.
    """

    name = "access_log"

    def __init__(self, logger: logging.Logger, trust_proxy: bool = False, proxy_count: int = 1, slow_ms: float = 500.0):
        self.logger = logger
        self.trust_proxy = trust_proxy
        self.proxy_count = proxy_count
        self.slow_ms = slow_ms

    async def on_request(self, request: Request) -> StageOutcome:
        request.state.started_at = time.perf_counter()
        return None

    async def on_response(self, request: Request, response: Response) -> Response:
        duration_ms = (time.perf_counter() - request.state.started_at) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
        client_ip = get_client_ip(request, self.trust_proxy, self.proxy_count)
        self.logger.info(
            combined_log_line(request, response, client_ip),
            extra={
                "client_ip": client_ip,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        if duration_ms > self.slow_ms:
            self.logger.warning(
                "slow_request",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": round(duration_ms, 2),
                    "status": response.status_code,
                },
            )
        return response


def combined_log_line(request: Request, response: Response, client_ip: str) -> str:
    original = getattr(request.state, "original_url", None) or str(request.url)
    target = original.split(request.url.netloc, 1)[-1] if request.url.netloc else original
    timestamp = datetime.now(timezone.utc).strftime("%d/%b/%Y:%H:%M:%S %z")
    http_version = request.scope.get("http_version", "1.1")
    length = response.headers.get("content-length", "-")
    referrer = request.headers.get("referer", "-")
    user_agent = request.headers.get("user-agent", "-")
    return (
        f'{client_ip} - - [{timestamp}] "{request.method} {target} HTTP/{http_version}" '
        f'{response.status_code} {length} "{referrer}" "{user_agent}"'
    )


class RateLimitStage(Stage):
    """
    Per-client sliding-window limit on the configured prefixes.
    Over the limit: fixed text message, 429, later stages never run.
    """

    name = "rate_limit"

    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        prefixes: list[str],
        message: str,
        trust_proxy: bool = False,
        proxy_count: int = 1,
    ):
        self.limiter = limiter
        self.prefixes = prefixes
        self.message = message
        self.trust_proxy = trust_proxy
        self.proxy_count = proxy_count

    async def on_request(self, request: Request) -> StageOutcome:
        if not matches_any_prefix(request.url.path, self.prefixes):
            return None
        client_ip = get_client_ip(request, self.trust_proxy, self.proxy_count)
        decision = await self.limiter.hit(client_ip)
        request.state.rate_limit = decision
        if decision.allowed:
            return None
        response = PlainTextResponse(self.message, status_code=429)
        response.headers["Retry-After"] = str(decision.retry_after_seconds)
        self._set_headers(response, decision)
        return response

    async def on_response(self, request: Request, response: Response) -> Response:
        decision = getattr(request.state, "rate_limit", None)
        if decision is not None:
            self._set_headers(response, decision)
        return response

    @staticmethod
    def _set_headers(response: Response, decision) -> None:
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


class AuthenticationStage(Stage):
    """
    Stateless bearer-token gate for protected prefixes.
    Valid claims are stored on request.state.user.
    """

    name = "authentication"

    def __init__(self, settings: Settings, prefixes: list[str]):
        self.settings = settings
        self.prefixes = prefixes

    async def on_request(self, request: Request) -> StageOutcome:
        request.state.user = None
        if not matches_any_prefix(request.url.path, self.prefixes):
            return None
        token = parse_bearer(request.headers.get("authorization"))
        if token is None:
            return UnauthorizedError("Not authenticated")
        payload = verify_token(token, self.settings)
        if payload is None:
            return UnauthorizedError("Invalid or expired token")
        request.state.user = payload
        return None


def get_client_ip(request: Request, trust_proxy: bool = False, proxy_count: int = 1) -> str:
    """Resolve client IP; respect X-Forwarded-For only when behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            parts = [p.strip() for p in forwarded.split(",") if p.strip()]
            if parts:
                idx = min(max(0, len(parts) - proxy_count), len(parts) - 1)
                return parts[idx]
    return request.client.host if request.client else "unknown"


def build_stages(
    settings: Settings,
    logger: logging.Logger,
    limiter: SlidingWindowRateLimiter,
    templates: Jinja2Templates,
) -> list[Stage]:
    """The fixed stage order; route dispatch follows the last one."""
    return [
        CompressionStage(settings.COMPRESSION_THRESHOLD_BYTES, settings.COMPRESSION_LEVEL),
        SecureHeadersStage(),
        CorsStage(settings.allowed_origins_list, settings.cors_methods_list),
        ParameterPollutionStage(settings.hpp_whitelist_set),
        BodyParserStage(settings.BODY_LIMIT_BYTES),
        StaticFilesStage(settings.STATIC_DIR),
        ViewEngineStage(templates),
        AccessLogStage(
            logger.getChild("access"),
            trust_proxy=settings.TRUST_PROXY,
            proxy_count=settings.PROXY_HEADER_COUNT,
            slow_ms=settings.SLOW_REQUEST_MS,
        ),
        RateLimitStage(
            limiter,
            settings.rate_limit_prefixes_list,
            settings.RATE_LIMIT_MESSAGE,
            trust_proxy=settings.TRUST_PROXY,
            proxy_count=settings.PROXY_HEADER_COUNT,
        ),
        AuthenticationStage(settings, settings.protected_prefixes_list),
    ]
