# control_plane/deployment/payloads.py
"""Webhook payload parsing - provider JSON to commit metadata."""

from typing import Any, Dict, Optional

from control_plane.core.models import GitProvider

COMMIT_FIELDS = ("commit_hash", "commit_message", "author")


def _dig(payload: Any, *path) -> Optional[Any]:
    """Nested lookup returning None on any missing or mistyped level."""
    current = payload
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _first(*values) -> Optional[Any]:
    for value in values:
        if value is not None:
            return value
    return None


def parse_github_payload(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "commit_hash": _dig(payload, "after"),
        "commit_message": _dig(payload, "head_commit", "message"),
        "author": _dig(payload, "head_commit", "author", "name"),
    }


def parse_gitlab_payload(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "commit_hash": _first(_dig(payload, "checkout_sha"), _dig(payload, "after")),
        "commit_message": _dig(payload, "commits", 0, "message"),
        "author": _first(
            _dig(payload, "commits", 0, "author", "name"),
            _dig(payload, "user_name"),
        ),
    }


def parse_payload(provider: GitProvider, payload: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """
    Normalise any inbound payload to {commit_hash, commit_message, author}.

    Already-normalised payloads (manual deploys, retried jobs) pass through.
    """
    if not isinstance(payload, dict) or not payload:
        return {name: None for name in COMMIT_FIELDS}

    if "commit_hash" in payload:
        return {name: payload.get(name) for name in COMMIT_FIELDS}

    if provider == GitProvider.GITLAB or "object_kind" in payload or "checkout_sha" in payload:
        return parse_gitlab_payload(payload)

    return parse_github_payload(payload)
