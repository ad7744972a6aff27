"""Validation and sanitization of inbound chat requests."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from contextforge.context.modes import ChatMode
from contextforge.entities.ids import is_valid_entity_id

VALID_ROLES = ("user", "assistant", "system")
VALID_PROVIDERS = ("anthropic", "openai")
MAX_MESSAGE_LENGTH = 50_000
MAX_REQUEST_BYTES = 1024 * 1024

# Keeps \t \n \r.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """A validated, sanitized chat request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[ChatMessage]
    provider: Literal["anthropic", "openai"] = "anthropic"
    api_key: Optional[str] = None
    is_admin_mode: bool = False
    pinned_entity_ids: list[str] = Field(default_factory=list)
    mentioned_entity_ids: list[str] = Field(default_factory=list)
    linked_character: Optional[Any] = None
    linked_world: Optional[Any] = None
    linked_project: Optional[Any] = None
    mode_instruction: Optional[str] = None
    session_setup: Optional[Any] = None
    mode: Optional[ChatMode] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized: Optional[ChatRequest] = None


@dataclass
class SizeCheck:
    valid: bool
    error: Optional[str] = None


def _get(body: dict, snake: str) -> Any:
    """Read a request key given in either camelCase or snake_case."""
    camel = to_camel(snake)
    if camel in body:
        return body[camel]
    return body.get(snake)


def sanitize_string(value: Any) -> str:
    """Strip control characters (except tab/newline/CR) and trim."""
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS.sub("", value).strip()


def _validate_messages(messages: Any, errors: list[str]) -> None:
    if not messages or not isinstance(messages, list):
        if isinstance(messages, list):
            errors.append("Messages array must not be empty")
        else:
            errors.append("Messages array is required")
        return

    for index, msg in enumerate(messages):
        if not isinstance(msg, dict):
            msg = {}
        role = msg.get("role")
        content = msg.get("content")
        if not isinstance(role, str) or role not in VALID_ROLES:
            errors.append(f"Message {index}: Invalid role")
        if not isinstance(content, str):
            errors.append(f"Message {index}: Content must be a string")
        elif len(content) > MAX_MESSAGE_LENGTH:
            errors.append(
                f"Message {index}: Content exceeds maximum length "
                f"({MAX_MESSAGE_LENGTH:,} characters)"
            )


def _validate_id_list(name: str, value: Any, errors: list[str]) -> None:
    if not value:
        return
    if not isinstance(value, list):
        errors.append(f"{name} must be an array")
        return
    for index, entity_id in enumerate(value):
        if not is_valid_entity_id(entity_id):
            errors.append(f"{name}[{index}]: Invalid entity ID format")


def validate_request_size(body: Any) -> SizeCheck:
    """Reject bodies whose JSON form is larger than 1MB."""
    try:
        size = len(json.dumps(body, separators=(",", ":"), ensure_ascii=False))
    except (TypeError, ValueError):
        return SizeCheck(valid=False, error="Failed to calculate request size")

    if size > MAX_REQUEST_BYTES:
        return SizeCheck(
            valid=False,
            error=(
                f"Request size ({int(size / 1024 + 0.5)}KB) exceeds maximum "
                f"allowed size ({MAX_REQUEST_BYTES // 1024}KB)"
            ),
        )
    return SizeCheck(valid=True)


def validate_chat_request(body: Any) -> ValidationResult:
    """Check a raw request body and return a sanitized copy if it passes.

    Problems are collected as human-readable strings; nothing is raised.
    """
    if not body or not isinstance(body, dict):
        return ValidationResult(valid=False, errors=["Request body is required"])

    errors: list[str] = []
    messages = _get(body, "messages")
    _validate_messages(messages, errors)

    provider = _get(body, "provider")
    if provider and provider not in VALID_PROVIDERS:
        errors.append('Provider must be either "anthropic" or "openai"')

    api_key = _get(body, "api_key")
    if api_key and not isinstance(api_key, str):
        errors.append("API key must be a string")

    _validate_id_list("pinnedEntityIds", _get(body, "pinned_entity_ids"), errors)
    _validate_id_list(
        "mentionedEntityIds", _get(body, "mentioned_entity_ids"), errors
    )

    mode = _get(body, "mode")
    valid_modes = [m.value for m in ChatMode]
    if mode and mode not in valid_modes:
        errors.append(f"Mode must be one of: {', '.join(valid_modes)}")

    mode_instruction = _get(body, "mode_instruction")
    if mode_instruction is not None and not isinstance(mode_instruction, str):
        errors.append("modeInstruction must be a string")

    size = validate_request_size(body)
    if not size.valid:
        errors.append(size.error)

    if errors:
        return ValidationResult(valid=False, errors=errors)

    sanitized = ChatRequest(
        messages=[
            ChatMessage(role=m["role"], content=sanitize_string(m["content"]))
            for m in messages
        ],
        provider=provider or "anthropic",
        api_key=api_key.strip() if api_key else None,
        is_admin_mode=bool(_get(body, "is_admin_mode")),
        pinned_entity_ids=list(_get(body, "pinned_entity_ids") or []),
        mentioned_entity_ids=list(_get(body, "mentioned_entity_ids") or []),
        linked_character=_get(body, "linked_character"),
        linked_world=_get(body, "linked_world"),
        linked_project=_get(body, "linked_project"),
        mode_instruction=(
            sanitize_string(mode_instruction) if mode_instruction else None
        ),
        session_setup=_get(body, "session_setup"),
        mode=mode or None,
    )
    return ValidationResult(valid=True, sanitized=sanitized)
