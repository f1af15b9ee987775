"""Error types shared by the App Store Connect and Google Play exporters."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional


def _normalize_error_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in ("id", "status", "code", "title", "detail"):
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, (str, int)):
            normalized[key] = str(value)
        else:
            normalized[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return normalized


def summarize_api_errors(errors: Iterable[Dict[str, Any]]) -> str:
    """Collapse a JSON:API ``errors`` array into one readable line."""
    parts: List[str] = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        normalized = _normalize_error_entry(entry)
        code = normalized.get("code") or normalized.get("status")
        detail = normalized.get("detail") or normalized.get("title")
        if code or detail:
            snippet = " ".join(
                filter(None, [f"[{code}]" if code else "", detail])
            )
            parts.append(snippet)
        else:
            remaining = {
                key: value
                for key, value in normalized.items()
                if key not in {"code", "status", "detail", "title"}
            }
            if remaining:
                parts.append(json.dumps(remaining, ensure_ascii=False, sort_keys=True))
    return "; ".join(parts)


class StoreMetadataError(RuntimeError):
    """Base class for every error raised by the exporter."""


class CredentialError(StoreMetadataError):
    """Raised when store credentials cannot be parsed or used for signing."""


class BackendRequestError(StoreMetadataError):
    """Raised when a store API call fails for a single app or package."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body_text: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body_text = body_text
        self.errors = errors or []


class TrackNotFoundError(BackendRequestError):
    """Raised when a Google Play release track does not exist."""


class SessionCleanupError(StoreMetadataError):
    """Raised internally when a Google Play draft edit could not be deleted."""
