# evidence_runner/executors/http_request.py
"""
HTTP Request Executor

Timed HTTP call with httpx. Succeeds only when the response status is in
`expectedStatus` (default [200, 201]). Exceeding `timeout` (ms, default
30000) aborts the call and raises HttpTimeoutError.

Action Type: HTTP_REQUEST
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from evidence_runner.plugins import BaseExecutor
from evidence_runner.types import ExecutionResult, ExecutorExecutionError, HttpTimeoutError, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_EXPECTED_STATUS = [200, 201]
_BODY_METHODS = {"POST", "PUT", "PATCH"}

_SENSITIVE_KEYS = {
    "authorization", "proxy-authorization", "x-api-key", "api_key", "apikey", "token",
    "access_token", "cookie", "set-cookie", "x-auth-token", "x-access-token",
    "bearer", "session", "csrf", "jwt",
}


def redact_sensitive(data: Any) -> Any:
    """Recursively redact credentials before they reach evidence files"""
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in _SENSITIVE_KEYS else redact_sensitive(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive(item) for item in data]
    return data


def _parse_body(resp: httpx.Response) -> Any:
    content_type = resp.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return resp.json()
        except ValueError:
            logger.debug(f"Response declared {content_type} but body is not JSON")
    return resp.text


class HttpRequestExecutor(BaseExecutor):
    name = "http-request"
    version = "1.0.0"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        self.transport = transport

    def action_types(self) -> List[str]:
        return ["HTTP_REQUEST"]

    def own_timeout_ms(self, parameters: Dict[str, Any]) -> Optional[int]:
        try:
            return int(parameters.get("timeout") or DEFAULT_TIMEOUT_MS)
        except (TypeError, ValueError):
            return None

    async def execute(self, parameters: Dict[str, Any], global_config: Dict[str, Any]) -> ExecutionResult:
        self.validate_parameters(parameters, ["url"])

        url = self._resolve_url(str(parameters["url"]), global_config)
        method = str(parameters.get("method") or "GET").upper()
        headers = {"Content-Type": "application/json", **(parameters.get("headers") or {})}
        expected = [int(s) for s in parameters.get("expectedStatus") or DEFAULT_EXPECTED_STATUS]
        timeout_ms = int(parameters.get("timeout") or DEFAULT_TIMEOUT_MS)
        timeout_s = timeout_ms / 1000.0

        request_kwargs: Dict[str, Any] = {"headers": headers, "params": parameters.get("params") or None}
        body = parameters.get("body")
        if body is not None and method in _BODY_METHODS:
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        request_info = {
            "url": url,
            "method": method,
            "requestHeaders": redact_sensitive(headers),
            "requestBody": redact_sensitive(body) if body is not None else None,
            "expectedStatus": expected,
        }

        logger.info(f"🌐 {method} {url}")
        t0 = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_s),
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                # httpx timeouts are per phase; wait_for bounds the whole call
                resp = await asyncio.wait_for(client.request(method, url, **request_kwargs), timeout=timeout_s)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            elapsed_ms = int((time.perf_counter() - t0) * 1000)
            raise HttpTimeoutError(
                f"HTTP request timeout after {timeout_ms}ms",
                data={**request_info, "responseTime": elapsed_ms, "timestamp": utc_now()},
            ) from e
        except httpx.HTTPError as e:
            elapsed_ms = int((time.perf_counter() - t0) * 1000)
            raise ExecutorExecutionError(
                f"HTTP request failed: {e!r}",
                data={**request_info, "responseTime": elapsed_ms, "timestamp": utc_now()},
            ) from e

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        data = {
            **request_info,
            "status": resp.status_code,
            "statusText": resp.reason_phrase,
            "headers": redact_sensitive(dict(resp.headers)),
            "body": _parse_body(resp),
            "responseTime": elapsed_ms,
            "timestamp": utc_now(),
        }

        if resp.status_code not in expected:
            raise ExecutorExecutionError(
                f"HTTP {resp.status_code} {resp.reason_phrase}. Expected: {', '.join(str(s) for s in expected)}",
                data=data,
            )

        logger.info(f"  ✅ {resp.status_code} in {elapsed_ms}ms")
        return ExecutionResult(success=True, data=data, duration_ms=float(elapsed_ms))

    @staticmethod
    def _resolve_url(url: str, global_config: Dict[str, Any]) -> str:
        base_url = global_config.get("baseUrl")
        if base_url and not url.startswith(("http://", "https://")):
            return f"{str(base_url).rstrip('/')}/{url.lstrip('/')}"
        return url
