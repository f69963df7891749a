"""Tests for payload markers and incoming message validation."""

import pytest

from pyrecord._internal.operations import (
    channel_marker,
    is_channel_marker,
    is_plain_data,
    is_ref_marker,
    is_transfer_marker,
    ref_marker,
    transfer_marker,
    unserializable_marker,
    validate_message,
)


class TestMarkers:
    def test_ref_marker_shape(self):
        assert ref_marker("obj_3") == {"__ref__": "obj_3"}
        assert is_ref_marker({"__ref__": "obj_3"})

    def test_marker_with_extra_keys_is_plain_data(self):
        """A user dict that happens to contain a marker key is not a marker."""
        assert not is_ref_marker({"__ref__": "obj_3", "other": 1})
        assert not is_channel_marker({"__channel__": 5})

    def test_channel_and_transfer_markers(self):
        assert is_channel_marker(channel_marker("channel_0"))
        assert is_transfer_marker(transfer_marker())
        assert not is_transfer_marker({"__transfer__": 1})

    def test_unserializable_marker_names_type(self):
        class Widget:
            pass

        assert unserializable_marker(Widget()) == {"__unserializable__": "Widget"}

    def test_is_plain_data(self):
        assert is_plain_data({"a": [1, 2.5, "x", None, True, b"raw"]})
        assert not is_plain_data({1: "int key"})
        assert not is_plain_data([object()])


class TestValidateMessage:
    @pytest.mark.parametrize(
        "message",
        [
            {"type": "replay", "operations": []},
            {"type": "refcount", "object_id": "obj_0", "delta": -1},
            {"type": "registerCallback", "channel_id": "channel_0", "name": "on_click"},
            {"type": "evaluate", "object_id": "obj_0", "call_id": 1},
            {"type": "proxyGet", "object_id": "obj_0", "property": "x", "call_id": 2},
            {"type": "call", "channel_id": "channel_0", "args": [], "kwargs": {}, "call_id": None},
            {"type": "response", "call_id": 3, "result": 1, "error": None},
        ],
    )
    def test_well_formed_messages_pass(self, message):
        assert validate_message(message) is None

    def test_non_dict_rejected(self):
        assert "must be a dict" in validate_message(["replay"])

    def test_unknown_type_rejected(self):
        assert "unknown message type" in validate_message({"type": "teleport"})

    def test_missing_field_rejected(self):
        assert "missing 'delta'" in validate_message({"type": "refcount", "object_id": "obj_0"})

    def test_bool_is_not_an_int(self):
        problem = validate_message({"type": "refcount", "object_id": "obj_0", "delta": True})
        assert problem is not None

    def test_wrong_field_type_rejected(self):
        problem = validate_message({"type": "evaluate", "object_id": 7, "call_id": 1})
        assert "object_id" in problem

    def test_call_id_must_be_int_or_none(self):
        problem = validate_message({"type": "call", "channel_id": "c", "args": [], "call_id": "1"})
        assert problem is not None

    def test_malformed_operation_rejected(self):
        problem = validate_message({"type": "replay", "operations": [{"kind": "read"}]})
        assert "operation 0" in problem
