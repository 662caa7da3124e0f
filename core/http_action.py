"""
Secure HTTP Action — the outbound call behind `action.http_request` nodes.

Guards, checked in this order before any bytes leave the process:
  - https only
  - host equal to, or a subdomain of, an allowlisted domain
    (allowlist empty → everything is rejected)
  - no literal private / loopback / link-local IP hosts
Guards applied while talking to the target:
  - redirects are never followed (3xx → "redirects not supported")
  - response capped at max_response_bytes (declared length and streamed count)
  - overall timeout enforced by cancellation

Failures never raise: perform() always returns an HttpActionResult and the
executor routes it to the node's `success` or `error` edge.
"""
from __future__ import annotations

import asyncio
import ipaddress
import json
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config.settings import HttpActionConfig, get_settings
from models.graph import HttpRequestConfig
from utils.templating import get_nested_value, resolve_template

logger = structlog.get_logger()

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class HttpActionError(Exception):
    """Request rejected or failed; message is reported on the result."""


class ResponseTooLargeError(HttpActionError):
    pass


# ── Request / result ──────────────────────────────────────────

@dataclass
class HttpActionRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    body_content_type: str = "json"
    auth_type: str = "none"
    bearer_token: str = ""
    basic_username: str = ""
    basic_password: str = ""
    response_mapping: list[tuple[str, str]] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass
class HttpActionResult:
    success: bool
    status: Optional[int] = None
    status_text: str = ""
    data: Any = None
    mapped_variables: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    raw_response: str = ""
    url: str = ""

    @classmethod
    def failure(cls, error: str, url: str = "") -> "HttpActionResult":
        return cls(success=False, error=error, url=url)

    def to_context(self, executed_at: datetime = None) -> dict[str, Any]:
        """Shape stored under context.http[node_id]."""
        return {
            "status": self.status,
            "statusText": self.status_text,
            "data": self.data,
            "mappedVariables": self.mapped_variables,
            "error": self.error,
            "executedAt": (executed_at or datetime.now(timezone.utc)).isoformat(),
        }


def build_request(cfg: HttpRequestConfig, context: dict[str, Any]) -> HttpActionRequest:
    """Resolve every templated field of a node config against the context."""
    def resolve(value: str) -> str:
        return resolve_template(value, context)

    return HttpActionRequest(
        method=(cfg.method or "GET").upper(),
        url=resolve(cfg.url).strip(),
        headers={resolve(h.name): resolve(h.value) for h in cfg.headers if h.name},
        params={resolve(p.name): resolve(p.value) for p in cfg.query_params if p.name},
        body=resolve(cfg.body) if cfg.body else None,
        body_content_type=cfg.body_content_type or "json",
        auth_type=cfg.auth_type or "none",
        bearer_token=resolve(cfg.bearer_token),
        basic_username=resolve(cfg.basic_username),
        basic_password=resolve(cfg.basic_password),
        response_mapping=[
            (m.json_path, m.variable_name) for m in cfg.response_mapping
            if m.json_path and m.variable_name
        ],
        timeout=cfg.timeout,
    )


# ── Allowlist ─────────────────────────────────────────────────

def parse_allowlist(value: Any) -> list[str]:
    """Settings value → normalized domains. Accepts a list, JSON list or comma string."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except ValueError:
                value = text.strip("[]").split(",")
        else:
            value = text.split(",")
    if not isinstance(value, (list, tuple, set)):
        return []
    domains = []
    for item in value:
        domain = str(item).strip().strip('"').lower().rstrip(".")
        if domain.startswith("*."):
            domain = domain[2:]
        if domain:
            domains.append(domain)
    return domains


def host_allowed(host: str, allowlist: list[str]) -> bool:
    host = host.lower().rstrip(".")
    return any(host == d or host.endswith("." + d) for d in allowlist)


def _is_internal_ip(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_unspecified


# ── Action ────────────────────────────────────────────────────

class SecureHttpAction:
    """Performs one guarded outbound HTTP call per request."""

    def __init__(self, store=None, config: HttpActionConfig = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.store = store
        self.config = config or get_settings().http_action
        self._transport = transport

    async def load_allowlist(self) -> list[str]:
        if self.store is None:
            return []
        return parse_allowlist(await self.store.get_setting(self.config.allowlist_setting_key))

    def _timeout_for(self, request: HttpActionRequest) -> float:
        timeout = request.timeout if request.timeout and request.timeout > 0 else self.config.default_timeout
        return min(float(timeout), self.config.max_timeout)

    def validate_url(self, url: httpx.URL, allowlist: list[str]) -> None:
        if url.scheme != "https":
            raise HttpActionError("Only HTTPS URLs are allowed")
        host = url.host
        if not host:
            raise HttpActionError("URL has no host")
        if not allowlist:
            raise HttpActionError("No domains are allowlisted for HTTP requests")
        if _is_internal_ip(host):
            raise HttpActionError(f"Requests to internal addresses are not allowed: {host}")
        if not host_allowed(host, allowlist):
            raise HttpActionError(f"Domain not in allowlist: {host}")

    def _prepare(self, request: HttpActionRequest) -> tuple[dict[str, str], Optional[bytes], Optional[httpx.Auth]]:
        headers = {"User-Agent": self.config.user_agent, "Accept": "application/json, */*"}
        headers.update(request.headers)

        auth = None
        if request.auth_type == "bearer" and request.bearer_token:
            headers["Authorization"] = f"Bearer {request.bearer_token}"
        elif request.auth_type == "basic" and (request.basic_username or request.basic_password):
            auth = httpx.BasicAuth(request.basic_username, request.basic_password)

        content = None
        if request.body and request.method in _BODY_METHODS:
            if request.body_content_type == "form":
                headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
            else:
                try:
                    json.loads(request.body)
                except ValueError:
                    raise HttpActionError("Invalid JSON in request body")
                headers.setdefault("Content-Type", "application/json")
            content = request.body.encode("utf-8")
        return headers, content, auth

    async def perform(self, request: HttpActionRequest) -> HttpActionResult:
        try:
            url = httpx.URL(request.url)
            if request.params:
                url = url.copy_merge_params(request.params)
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            return HttpActionResult.failure(f"Invalid URL: {e}", request.url)

        try:
            self.validate_url(url, await self.load_allowlist())
            headers, content, auth = self._prepare(request)
        except HttpActionError as e:
            logger.warning("http_action_rejected", url=str(url), reason=str(e))
            return HttpActionResult.failure(str(e), str(url))

        timeout = self._timeout_for(request)
        try:
            result = await asyncio.wait_for(
                self._send(request, url, headers, content, auth, timeout), timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("http_action_timeout", url=str(url), timeout=timeout)
            return HttpActionResult.failure(f"Request timed out after {timeout:g}s", str(url))
        except HttpActionError as e:
            logger.warning("http_action_failed", url=str(url), error=str(e))
            return HttpActionResult.failure(str(e), str(url))
        except httpx.HTTPError as e:
            logger.warning("http_action_failed", url=str(url), error=str(e))
            return HttpActionResult.failure(f"Request failed: {e}", str(url))

        if result.success:
            result.mapped_variables = self.map_response(result.data, request.response_mapping)
        logger.info("http_action_completed", url=str(url), status=result.status,
                    success=result.success, mapped=list(result.mapped_variables))
        return result

    async def _send(self, request: HttpActionRequest, url: httpx.URL,
                    headers: dict[str, str], content: Optional[bytes],
                    auth: Optional[httpx.Auth], timeout: float) -> HttpActionResult:
        cap = self.config.max_response_bytes
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=False, transport=self._transport,
        ) as client:
            async with client.stream(
                request.method, url, headers=headers, content=content, auth=auth,
            ) as response:
                if 300 <= response.status_code < 400:
                    raise HttpActionError(
                        f"HTTP {response.status_code}: redirects not supported",
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > cap:
                    raise ResponseTooLargeError(f"Response too large: {declared} bytes (max {cap})")

                chunks: list[bytes] = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > cap:
                        raise ResponseTooLargeError(f"Response too large: exceeded {cap} bytes")
                    chunks.append(chunk)

                raw = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
                data: Any = raw
                if "application/json" in response.headers.get("content-type", "").lower():
                    try:
                        data = json.loads(raw) if raw else None
                    except ValueError:
                        data = raw

                success = 200 <= response.status_code < 300
                return HttpActionResult(
                    success=success,
                    status=response.status_code,
                    status_text=response.reason_phrase,
                    data=data,
                    error=None if success else f"HTTP {response.status_code}: {response.reason_phrase}",
                    raw_response=raw,
                    url=str(url),
                )

    @staticmethod
    def map_response(data: Any, mapping: list[tuple[str, str]]) -> dict[str, Any]:
        """Path lookups against a JSON body; missing paths are skipped."""
        if not isinstance(data, (dict, list)):
            return {}
        mapped = {}
        for path, variable in mapping:
            value = get_nested_value(data, path)
            if value is not None:
                mapped[variable] = value
        return mapped
