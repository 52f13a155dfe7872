import cbor2
import pytest

from lchatd.codec import decode_event, encode_event
from lchatd.errors import ValidationFailure
from lchatd.events import ClientEvent, ServerEvent, field_str, make_event, parse_event


def test_codec_round_trip() -> None:
    event = make_event(ServerEvent.CHANNEL_MESSAGE, {"channel": "#general", "content": "hello"})
    decoded = decode_event(encode_event(event))
    assert decoded == event
    assert decoded["type"] == "channel_message"


def test_decode_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        decode_event(b"\xff\xff\xff")
    with pytest.raises(TypeError):
        decode_event(cbor2.dumps([1, 2, 3]))


def test_make_event_rejects_type_in_payload() -> None:
    with pytest.raises(ValueError):
        make_event(ServerEvent.ERROR, {"type": "notification"})


def test_parse_event() -> None:
    kind, event = parse_event({"type": "login", "userId": "u-alice"})
    assert kind is ClientEvent.LOGIN
    assert event["userId"] == "u-alice"

    with pytest.raises(ValueError):
        parse_event({"type": "shout"})
    with pytest.raises(TypeError):
        parse_event({"userId": "u-alice"})
    with pytest.raises(TypeError):
        parse_event(["login"])
    with pytest.raises(TypeError):
        parse_event({1: "login"})


def test_field_str() -> None:
    assert field_str({"id": "  m1 "}, "id") == "m1"
    assert field_str({}, "id", required=False) is None
    with pytest.raises(ValidationFailure):
        field_str({}, "id")
    with pytest.raises(ValidationFailure):
        field_str({"id": "   "}, "id")
    with pytest.raises(ValidationFailure):
        field_str({"id": 5}, "id")


def test_event_kinds_are_closed() -> None:
    assert len(ClientEvent) == 13
    assert len(ServerEvent) == 16
