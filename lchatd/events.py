from __future__ import annotations

from enum import Enum
from typing import Any

from .constants import K_TYPE
from .errors import ValidationFailure


class ClientEvent(str, Enum):
    """Event kinds accepted from clients."""

    LOGIN = "login"
    SEND_MESSAGE = "send_message"
    SEND_DM = "send_dm"
    CREATE_CHANNEL = "create_channel"
    DELETE_CHANNEL = "delete_channel"
    JOIN_CHANNEL_BY_CODE = "join_channel_by_code"
    TYPING_UPDATE = "typing_update"
    EDIT_MESSAGE = "edit_message"
    DELETE_MESSAGE = "delete_message"
    ADD_REACTION = "add_reaction"
    REMOVE_REACTION = "remove_reaction"
    JOIN_CHANNEL = "join_channel"
    START_DM = "start_dm"


class ServerEvent(str, Enum):
    """Event kinds the hub sends to clients."""

    INITIAL_STATE = "initial_state"
    MESSAGE_HISTORY = "message_history"
    LOGIN_SUCCESS = "login_success"
    CHANNEL_MESSAGE = "channel_message"
    USER_PRESENCE = "user_presence"
    TYPING_STATUS = "typing_status"
    CHANNEL_LIST_UPDATE = "channel_list_update"
    CHANNEL_CHANGE = "channel_change"
    UPDATE_PINNED_MESSAGE = "update_pinned_message"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    MESSAGE_REACTED = "message_reacted"
    NOTIFICATION = "notification"
    ERROR = "error"
    KICKED = "kicked"
    BANNED = "banned"


def make_event(kind: ServerEvent, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {K_TYPE: kind.value}
    if payload:
        for k, v in payload.items():
            if k == K_TYPE:
                raise ValueError("payload must not carry its own type")
            event[k] = v
    return event


def parse_event(obj: Any) -> tuple[ClientEvent, dict[str, Any]]:
    if not isinstance(obj, dict):
        raise TypeError("event must be a map (dict)")

    for k in obj.keys():
        if not isinstance(k, str):
            raise TypeError("event keys must be strings")

    t = obj.get(K_TYPE)
    if not isinstance(t, str):
        raise TypeError("event type must be a string")
    try:
        kind = ClientEvent(t)
    except ValueError:
        raise ValueError(f"unknown event type {t!r}") from None

    return kind, obj


def field_str(event: dict[str, Any], key: str, *, required: bool = True) -> str | None:
    """Fetch a stripped string field; missing/blank is a ValidationFailure when required."""
    v = event.get(key)
    if v is None:
        if required:
            raise ValidationFailure(f"Missing field: {key}.")
        return None
    if not isinstance(v, str):
        raise ValidationFailure(f"Field {key} must be a string.")
    s = v.strip()
    if not s and required:
        raise ValidationFailure(f"Missing field: {key}.")
    return s


def field_bool(event: dict[str, Any], key: str) -> bool:
    return bool(event.get(key, False))
