"""Helpers for turning backend HTTP responses into message payloads."""

import base64
from typing import Any

import httpx


def error_detail(resp: httpx.Response) -> Any:
    """Return the backend's JSON error body, or a truncated text body."""
    try:
        return resp.json()
    except ValueError:
        return resp.text[:1000] or None


def status_text(resp: httpx.Response) -> str:
    return resp.reason_phrase or f"HTTP {resp.status_code}"


def to_data_uri(data: bytes, content_type: str = "audio/wav") -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def shape_response_body(resp: httpx.Response) -> Any:
    """Shape a passthrough response: JSON verbatim, text as a string, binary as a data URI."""
    content_type = resp.headers.get("content-type", "")
    media_type = content_type.split(";")[0].strip().lower()
    if not resp.content:
        return None
    if media_type == "application/json" or media_type.endswith("+json"):
        try:
            return resp.json()
        except ValueError:
            return resp.text
    if media_type.startswith("text/"):
        return resp.text
    media_type = media_type or "application/octet-stream"
    return {
        "audio": to_data_uri(resp.content, media_type),
        "contentType": content_type or media_type,
    }
