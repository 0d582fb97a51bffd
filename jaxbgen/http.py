"""Shared HTTP helpers for jaxbgen."""

from __future__ import annotations

from typing import Dict, Optional

import httpx

from .constants import HTTP_TIMEOUT_SECONDS
from .version import USER_AGENT


def http_timeout(seconds: Optional[float] = None) -> httpx.Timeout:
    value = HTTP_TIMEOUT_SECONDS if seconds is None else seconds
    return httpx.Timeout(value, connect=value)


def request_headers() -> Dict[str, str]:
    return {"User-Agent": USER_AGENT}


def describe_http_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        detail = f"{response.status_code} {response.reason_phrase}".strip()
        try:
            body = (response.text or "").strip()
        except httpx.ResponseNotRead:
            body = ""
        if body:
            suffix = body.splitlines()[0].strip()
            if suffix:
                detail = f"{detail}: {suffix}" if detail else suffix
        return detail

    request = getattr(exc, "request", None)
    target = ""
    if request is not None:
        method = getattr(request, "method", "") or ""
        url = getattr(request, "url", None)
        url_str = str(url) if url is not None else ""
        target = f"{method} {url_str}".strip()

    message = str(exc).strip()
    summary = message or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        summary = "request timed out"
        if message and "timed out" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.ConnectError):
        summary = "failed to connect"
        if message and "connect" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.ProxyError):
        summary = "proxy error"
        if message and "proxy" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.RequestError):
        summary = "network error"
        if message and "network" not in message.lower():
            summary = f"{summary}: {message}"

    if target and target not in summary:
        summary = f"{summary} ({target})"
    return summary
