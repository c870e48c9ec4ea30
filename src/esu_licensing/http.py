"""Helpers for reading Azure REST responses."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from requests import Response

PREVIEW_LIMIT = 500


@dataclass(slots=True)
class UnexpectedResponseError(RuntimeError):
    """Raised when a response body is not the JSON document we asked for."""

    status_code: int
    url: str
    body_preview: str

    def __str__(self) -> str:  # noqa: D401 - simple representation
        return f"Unexpected response from {self.url} (status {self.status_code}): {self.body_preview}"


def request_url(response: Response) -> str:
    return response.request.url if response.request else "<unknown>"


def body_preview(response: Response, limit: int = PREVIEW_LIMIT) -> str:
    """Single-line, truncated rendering of a response body for error messages."""

    text = response.text or ""
    preview = text[:limit].replace("\n", " ").strip()
    return preview or "<empty body>"


def parse_json(response: Response) -> Any:
    """Return the decoded JSON body or raise UnexpectedResponseError."""

    if not response.content:
        raise UnexpectedResponseError(
            status_code=response.status_code,
            url=request_url(response),
            body_preview="<empty body>",
        )
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise UnexpectedResponseError(
            status_code=response.status_code,
            url=request_url(response),
            body_preview=body_preview(response),
        ) from exc
