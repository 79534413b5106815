from __future__ import annotations

from typing import Any
from urllib.parse import quote

# Streaming endpoint and health endpoints exposed by the agent runtime.
RUN_SSE_PATH = "/run_sse"
HEALTH_PATH = "/health"
LIST_APPS_PATH = "/list-apps"

# Document-processing collaborator endpoints.
DOCUMENT_UPLOAD_PATH = "/documents/upload"
DOCUMENT_STATUS_PATH = "/documents/status"

# Every relevant stream line starts with this marker.
DATA_PREFIX = "data:"

# Optional logical end-of-stream line; discarded unparsed when present.
DONE_SENTINEL = "[DONE]"

# Key under which rendered history travels inside the outgoing state delta.
HISTORY_STATE_KEY = "conversationHistory"

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"


def sessions_path(app_name: str, user_id: str) -> str:
    """Return the collection path for sessions of one app/user pair."""
    return f"/apps/{quote(app_name, safe='')}/users/{quote(user_id, safe='')}/sessions"


def session_path(app_name: str, user_id: str, session_id: str) -> str:
    """Return the resource path for one session."""
    return f"{sessions_path(app_name, user_id)}/{quote(session_id, safe='')}"


def make_content(text: str | None, role: str = USER_ROLE) -> dict[str, Any]:
    """Build a structured message with one text part (none for empty text)."""
    return {
        "parts": [{"text": text}] if text else [],
        "role": role,
    }


def make_run_request(
    *,
    app_name: str,
    user_id: str,
    session_id: str,
    text: str | None,
    state_delta: dict[str, Any] | None = None,
    streaming: bool = True,
) -> dict[str, Any]:
    """Build the `/run_sse` request body."""
    payload: dict[str, Any] = {
        "appName": app_name,
        "userId": user_id,
        "sessionId": session_id,
        "newMessage": make_content(text),
        "streaming": streaming,
    }
    if state_delta is not None:
        payload["stateDelta"] = state_delta
    return payload


def strip_data_prefix(line: str) -> str | None:
    """Return the payload of a `data:` line, or None for irrelevant lines."""
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    payload = stripped[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload.strip()


def is_done_sentinel(payload: str) -> bool:
    """Return True when payload is the end-of-stream sentinel."""
    return payload == DONE_SENTINEL


def extract_text(payload: dict[str, Any]) -> str:
    """Concatenate all text parts of a stream payload's content."""
    content = payload.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    texts: list[str] = []
    for part in parts:
        if isinstance(part, dict):
            text = part.get("text")
            if isinstance(text, str):
                texts.append(text)
    return "".join(texts)


def extract_actions(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the actions object of a stream payload if present and valid."""
    actions = payload.get("actions")
    if isinstance(actions, dict):
        return actions
    return {}
