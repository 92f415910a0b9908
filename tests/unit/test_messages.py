"""Tests for the droid stream-jsonrpc wire models."""

from __future__ import annotations

import json

import pytest

from droid_acp.protocol.messages import (
    FACTORY_API_VERSION,
    METHOD_NOT_FOUND,
    DroidMethod,
    DroidNotificationMessage,
    DroidRequest,
    DroidResponse,
    DroidSettings,
    InitSessionResult,
    decode_line,
)

# =============================================================================
# Envelope serialization
# =============================================================================


class TestEnvelope:
    """Serialization of outgoing messages."""

    def test_request_line_has_envelope_fields(self) -> None:
        """A request serializes to one line with the droid envelope."""
        request = DroidRequest(
            method=DroidMethod.ADD_USER_MESSAGE.value,
            params={"sessionId": "s1", "text": "hi"},
            id="req-1",
        )
        line = request.to_line()

        assert line.endswith("\n")
        assert line.count("\n") == 1
        data = json.loads(line)
        assert data == {
            "jsonrpc": "2.0",
            "factoryApiVersion": FACTORY_API_VERSION,
            "type": "request",
            "method": "droid.add_user_message",
            "params": {"sessionId": "s1", "text": "hi"},
            "id": "req-1",
        }

    def test_request_gets_unique_ids(self) -> None:
        """Requests without an explicit id get distinct generated ids."""
        first = DroidRequest(method="droid.initialize_session")
        second = DroidRequest(method="droid.initialize_session")
        assert first.id != second.id

    def test_success_response_omits_error(self) -> None:
        """A success response carries the result and no error key."""
        data = json.loads(DroidResponse.success("42", {"selectedOption": "cancel"}).to_line())
        assert data["type"] == "response"
        assert data["id"] == "42"
        assert data["result"] == {"selectedOption": "cancel"}
        assert "error" not in data

    def test_failure_response(self) -> None:
        """A failure response carries a JSON-RPC error object."""
        data = json.loads(DroidResponse.failure(7, METHOD_NOT_FOUND, "nope").to_line())
        assert data["id"] == 7
        assert data["error"]["code"] == -32601
        assert data["error"]["message"] == "nope"


# =============================================================================
# Decoding
# =============================================================================


class TestDecodeLine:
    """Parsing of droid stdout lines."""

    def test_decodes_notification(self) -> None:
        """Notifications are selected by the type discriminator."""
        message = decode_line(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "type": "notification",
                    "method": "droid.session_notification",
                    "params": {"notification": {"type": "droid_working_state_changed"}},
                }
            )
        )
        assert isinstance(message, DroidNotificationMessage)
        assert message.method == DroidMethod.SESSION_NOTIFICATION.value

    def test_decodes_request_with_integer_id(self) -> None:
        """Droid requests may use numeric ids."""
        message = decode_line(
            '{"type": "request", "method": "droid.request_permission", "id": 3, "params": {}}'
        )
        assert isinstance(message, DroidRequest)
        assert message.id == 3

    def test_decodes_error_response(self) -> None:
        """An error response exposes the error payload."""
        message = decode_line(
            '{"type": "response", "id": "x", "error": {"code": -1, "message": "bad"}}'
        )
        assert isinstance(message, DroidResponse)
        assert message.error is not None
        assert message.error.message == "bad"

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            "[1, 2]",
            '{"type": "bogus"}',
            '{"method": "x"}',
        ],
    )
    def test_rejects_invalid_lines(self, line: str) -> None:
        """Non-JSON, non-objects and unknown types raise ValueError."""
        with pytest.raises(ValueError):
            decode_line(line)


# =============================================================================
# Initialization result
# =============================================================================


class TestInitSessionResult:
    """Loose parsing of the initialization result."""

    def test_settings_keep_only_strings(self) -> None:
        """Non-string settings are ignored."""
        result = InitSessionResult.model_validate(
            {
                "sessionId": "abc",
                "settings": {"autonomyLevel": "auto-low", "modelId": 5, "reasoningEffort": "high"},
            }
        )
        assert result.settings.autonomy_level == "auto-low"
        assert result.settings.model_id is None
        assert result.settings.reasoning_effort == "high"

    def test_models_without_id_are_dropped(self) -> None:
        """Only models with a string id survive."""
        result = InitSessionResult.model_validate(
            {
                "sessionId": "abc",
                "availableModels": [
                    {"id": "m1", "displayName": "Model One"},
                    {"displayName": "No id"},
                    "garbage",
                    {"id": "m2"},
                ],
            }
        )
        assert [m.id for m in result.available_models] == ["m1", "m2"]
        assert result.available_models[0].label == "Model One"
        assert result.available_models[1].label == "m2"

    def test_messages_from_session(self) -> None:
        """History messages come from ``session.messages``."""
        result = InitSessionResult.model_validate(
            {
                "sessionId": "abc",
                "session": {"messages": [{"role": "user", "content": []}, "junk"]},
            }
        )
        assert result.messages == [{"role": "user", "content": []}]

    def test_messages_empty_without_session(self) -> None:
        """No session payload means no messages."""
        result = InitSessionResult.model_validate({"sessionId": "abc", "settings": None})
        assert result.messages == []
        assert result.settings == DroidSettings()
