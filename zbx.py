import os
import time
import math
import base64
import asyncio
import logging
import re
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import urljoin

import httpx

logger = logging.getLogger(__name__)

ZBX_URL = os.getenv("ZABBIX_URL")
ZBX_USER = os.getenv("ZABBIX_USER")
ZBX_PASS = os.getenv("ZABBIX_PASS")
ZBX_TOKEN = os.getenv("ZABBIX_TOKEN")
ZBX_VERIFY_SSL = os.getenv("ZABBIX_VERIFY_SSL", "true").lower() in (
    "1",
    "true",
    "yes",
)

DEFAULT_TIMEOUT_MS = 10000
ZBX_TIMEOUT_MS = os.getenv("ZABBIX_REQUEST_TIMEOUT_MS", str(DEFAULT_TIMEOUT_MS))

PNG_SIGNATURE = b"\x89PNG"
PREVIEW_CHARS = 120


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    HTTP = "http"
    API = "api"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    RESOLUTION = "resolution"


class ZabbixError(Exception):
    """Failure while talking to Zabbix.

    ``auth_reset_key`` and ``invalidate_metadata`` are advisory: the caller
    decides whether to drop the cached session or graph metadata.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        user_message: Optional[str] = None,
        auth_reset_key: Optional[str] = None,
        invalidate_metadata: bool = False,
        log_details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.user_message = user_message
        self.auth_reset_key = auth_reset_key
        self.invalidate_metadata = invalidate_metadata
        self.log_details = log_details

    @property
    def display_message(self) -> str:
        return self.user_message or str(self) or "Unknown error"


def user_error(message: str, kind: ErrorKind) -> ZabbixError:
    return ZabbixError(message, kind, user_message=message)


# camelCase keys come from the dashboard front-end
_ALIASES = {
    "zabbixUrl": "zabbix_url",
    "apiToken": "api_token",
    "graphId": "graph_id",
    "dashboardId": "dashboard_id",
    "widgetId": "widget_id",
    "widgetName": "widget_name",
    "requestTimeoutMs": "request_timeout_ms",
    "timeShift": "time_shift",
}


@dataclass(frozen=True)
class ChartConfig:
    zabbix_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    api_token: Optional[str] = None
    graph_id: Any = None
    dashboard_id: Any = None
    widget_id: Any = None
    widget_name: Optional[str] = None
    width: Any = 600
    height: Any = 300
    request_timeout_ms: Any = None
    period: Any = 24 * 60 * 60
    stime: Optional[str] = None
    time_shift: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict] = None) -> "ChartConfig":
        """Build a config from a request descriptor, filling gaps from the environment."""
        names = {f.name for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = _ALIASES.get(key, key)
            if name in names:
                values[name] = value

        # an explicit credential in the request decides the auth mode
        has_token = bool(values.get("api_token"))
        has_login = bool(values.get("username") or values.get("password"))
        if not has_token and not has_login:
            if ZBX_TOKEN:
                values["api_token"] = ZBX_TOKEN
            else:
                values["username"] = values.get("username") or ZBX_USER
                values["password"] = values.get("password") or ZBX_PASS
        if not values.get("zabbix_url"):
            values["zabbix_url"] = ZBX_URL
        if values.get("request_timeout_ms") is None:
            values["request_timeout_ms"] = ZBX_TIMEOUT_MS
        return cls(**values)


def uses_api_token(config: ChartConfig) -> bool:
    return isinstance(config.api_token, str) and len(config.api_token.strip()) > 0


def credential_key(config: ChartConfig) -> str:
    username = config.username if isinstance(config.username, str) else ""
    return f"{config.zabbix_url}|{username}"


def base_url(zabbix_url: Optional[str]) -> str:
    if not zabbix_url:
        raise ZabbixError("Missing Zabbix URL in configuration", ErrorKind.CONFIGURATION)
    return zabbix_url if zabbix_url.endswith("/") else f"{zabbix_url}/"


def api_url(zabbix_url: Optional[str]) -> str:
    return urljoin(base_url(zabbix_url), "api_jsonrpc.php")


def request_timeout_ms(config: ChartConfig) -> float:
    try:
        value = float(config.request_timeout_ms)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_MS
    if math.isfinite(value) and value > 0:
        return value
    return DEFAULT_TIMEOUT_MS


def timeout_error(config: ChartConfig) -> ZabbixError:
    timeout_ms = request_timeout_ms(config)
    if timeout_ms.is_integer():
        timeout_ms = int(timeout_ms)
    seconds = math.ceil(timeout_ms / 1000)
    plural = "" if seconds == 1 else "s"
    return ZabbixError(
        f"Zabbix request timed out after {timeout_ms}ms",
        ErrorKind.TIMEOUT,
        user_message=f"Zabbix did not respond within {seconds} second{plural}. We'll retry automatically.",
        auth_reset_key=None if uses_api_token(config) else credential_key(config),
    )


async def with_timeout(coro, config: ChartConfig):
    """Await ``coro`` under the configured deadline, cancelling it on expiry."""
    try:
        return await asyncio.wait_for(coro, request_timeout_ms(config) / 1000)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        raise timeout_error(config) from None
    except httpx.RequestError as e:
        raise ZabbixError(f"Zabbix is unreachable: {e}", ErrorKind.HTTP) from e


def token_headers(config: ChartConfig) -> dict[str, str]:
    token = config.api_token.strip()
    return {"Authorization": f"Bearer {token}", "X-Auth-Token": token}


def _client(headers: dict[str, str], transport=None) -> httpx.AsyncClient:
    return httpx.AsyncClient(verify=ZBX_VERIFY_SSL, headers=headers, transport=transport, timeout=None)


async def call(
    method: str,
    params: dict,
    config: ChartConfig,
    auth_token: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """Call a Zabbix API method and return its ``result`` verbatim."""
    url = api_url(config.zabbix_url)
    use_token = uses_api_token(config)
    payload = {
        "jsonrpc": "2.0",
        "method": method,
        "params": params,
        "id": int(time.time() * 1000),
        "auth": None if use_token else auth_token,
    }

    headers: dict[str, str] = {"Content-Type": "application/json-rpc"}
    if use_token:
        headers.update(token_headers(config))

    async def send() -> httpx.Response:
        async with _client(headers, transport) as c:
            return await c.post(url, json=payload)

    r = await with_timeout(send(), config)
    reset_key = None if use_token else credential_key(config)

    if not r.is_success:
        raise ZabbixError(f"Zabbix API HTTP {r.status_code}", ErrorKind.HTTP, auth_reset_key=reset_key)

    try:
        data = r.json()
    except ValueError:
        logger.warning("API %s: not JSON %s", method, r.text[:200])
        raise ZabbixError(f"Zabbix API {method} returned a non-JSON response", ErrorKind.API)

    error = data.get("error") if isinstance(data, dict) else None
    if error:
        detail = error.get("data") if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else None
        relogin = isinstance(detail, str) and "re-login" in detail
        logger.debug("API_ERR %s: %s", method, error)
        raise ZabbixError(
            message or "Unknown Zabbix API error",
            ErrorKind.API,
            auth_reset_key=reset_key if relogin else None,
        )

    return data.get("result") if isinstance(data, dict) else None


async def login(config: ChartConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    """Log in with username/password and return the session token."""
    token = await call(
        "user.login",
        {"user": config.username, "password": config.password},
        config,
        transport=transport,
    )
    if not token:
        raise ZabbixError("Zabbix authentication failed", ErrorKind.API)
    logger.info("LOGIN OK: user=%s len=%d", config.username, len(token))
    return token


def _chart_params(config: ChartConfig, auth_token: Optional[str]) -> dict[str, Any]:
    params: dict[str, Any] = {
        "graphid": config.graph_id,
        "width": config.width or 600,
        "height": config.height or 300,
    }
    period = config.period
    if isinstance(period, (int, float)) and not isinstance(period, bool) and period > 0:
        params["period"] = period
    if isinstance(config.stime, str) and config.stime.strip():
        params["stime"] = config.stime.strip()
    if isinstance(config.time_shift, str) and config.time_shift.strip():
        params["timeshift"] = config.time_shift.strip()
    if not uses_api_token(config) and auth_token:
        params["auth"] = auth_token
    return params


def _preview(data: bytes) -> str:
    text = data[:PREVIEW_CHARS].decode("utf-8", errors="replace")
    return re.sub(r"\s+", " ", text).strip()


async def chart_png(
    config: ChartConfig,
    auth_token: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Download the rendered graph and return it base64-encoded."""
    url = urljoin(base_url(config.zabbix_url), "chart2.php")
    params = _chart_params(config, auth_token)
    headers = token_headers(config) if uses_api_token(config) else {}

    async def fetch() -> httpx.Response:
        async with _client(headers, transport) as c:
            return await c.get(url, params=params)

    r = await with_timeout(fetch(), config)
    if not r.is_success:
        raise ZabbixError(f"Unable to download graph image ({r.status_code})", ErrorKind.HTTP)

    data = r.content
    content_type = r.headers.get("content-type", "").lower()
    if "image/png" not in content_type or not data.startswith(PNG_SIGNATURE):
        snippet = _preview(data)
        logger.warning(
            "Expected a PNG from chart2.php but received %s (status %s).",
            content_type or "an unknown content-type",
            r.status_code,
        )
        if snippet:
            logger.warning("Response preview: %s", snippet)
        raise ZabbixError(
            "Zabbix returned an unexpected response while fetching the graph image",
            ErrorKind.VALIDATION,
            user_message="Graph image unavailable. Please re-authenticate with Zabbix to refresh your session.",
            auth_reset_key=None if uses_api_token(config) else credential_key(config),
            log_details={
                "status": r.status_code,
                "contentType": content_type or "unknown",
                "responsePreview": snippet,
            },
        )

    return base64.b64encode(data).decode("ascii")
