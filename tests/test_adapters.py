"""Tests for request and response mapping."""

from adapters import (
    PLACEHOLDER_RESPONSE_ID,
    to_client_models,
    to_client_response,
    to_upstream_request,
)
from schemas import ChatRequest


def make_request(**fields) -> ChatRequest:
    body = {"model": "m1", "messages": [{"role": "user", "content": "hi"}]}
    body.update(fields)
    return ChatRequest.model_validate(body)


class TestToClientModels:
    """Tests for model catalog mapping."""

    def test_keeps_only_catalog_fields(self) -> None:
        """Test that extra upstream fields are dropped."""
        catalog = {
            "object": "list",
            "data": [
                {
                    "id": "m1",
                    "object": "model",
                    "created": 1,
                    "owned_by": "x",
                    "capabilities": ["chat"],
                }
            ],
        }

        result = to_client_models(catalog)

        assert result.model_dump() == {
            "object": "list",
            "data": [{"id": "m1", "object": "model", "created": 1, "owned_by": "x"}],
        }

    def test_preserves_order(self) -> None:
        """Test that catalog order is kept."""
        catalog = {"data": [{"id": name} for name in ("c", "a", "b")]}

        result = to_client_models(catalog)

        assert [model.id for model in result.data] == ["c", "a", "b"]

    def test_mapping_is_idempotent(self) -> None:
        """Test that mapping the same catalog twice gives identical output."""
        catalog = {
            "data": [
                {"id": "m1", "object": "model", "created": 1, "owned_by": "x"},
                {"id": "m2", "object": "model", "created": 2, "owned_by": "y"},
            ]
        }

        assert to_client_models(catalog) == to_client_models(catalog)

    def test_empty_catalog(self) -> None:
        """Test an upstream catalog with no models."""
        assert to_client_models({"data": []}).data == []


class TestToUpstreamRequest:
    """Tests for chat request mapping."""

    def test_absent_optionals_are_omitted(self) -> None:
        """Test that unset temperature, max_tokens and stream are not sent."""
        payload = to_upstream_request(make_request()).to_payload()

        assert payload == {
            "model": "m1",
            "messages": [{"role": "user", "content": "hi"}],
        }

    def test_zero_temperature_is_kept(self) -> None:
        """Test that temperature 0 is not treated as absent."""
        payload = to_upstream_request(make_request(temperature=0)).to_payload()

        assert "temperature" in payload
        assert payload["temperature"] == 0

    def test_null_optionals_are_omitted(self) -> None:
        """Test that explicit nulls count as absent."""
        payload = to_upstream_request(
            make_request(temperature=None, max_tokens=None)
        ).to_payload()

        assert "temperature" not in payload
        assert "max_tokens" not in payload

    def test_max_tokens_included_when_set(self) -> None:
        """Test that a given max_tokens is forwarded."""
        payload = to_upstream_request(make_request(max_tokens=256)).to_payload()

        assert payload["max_tokens"] == 256

    def test_stream_only_when_true(self) -> None:
        """Test that stream is sent only for streaming requests."""
        streaming = to_upstream_request(make_request(stream=True)).to_payload()
        plain = to_upstream_request(make_request(stream=False)).to_payload()

        assert streaming["stream"] is True
        assert "stream" not in plain

    def test_messages_forwarded_verbatim(self) -> None:
        """Test that message text and extra keys are not altered."""
        messages = [
            {"role": "system", "content": "Use **markdown**\n\n```py\nx\n```"},
            {"role": "user", "content": "hi", "name": "alice"},
        ]

        payload = to_upstream_request(make_request(messages=messages)).to_payload()

        assert payload["messages"] == messages

    def test_null_stream_is_not_streaming(self) -> None:
        """Test that an explicit null stream flag is treated as false."""
        payload = to_upstream_request(make_request(stream=None)).to_payload()

        assert "stream" not in payload

    def test_null_message_content_forwarded(self) -> None:
        """Test that an assistant turn with null content passes unchanged."""
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": None, "tool_calls": [{"id": "t1"}]},
        ]

        payload = to_upstream_request(make_request(messages=messages)).to_payload()

        assert payload["messages"] == messages

    def test_unknown_client_fields_dropped(self) -> None:
        """Test that fields outside the upstream contract are not forwarded."""
        payload = to_upstream_request(make_request(top_p=0.9, user="u")).to_payload()

        assert "top_p" not in payload
        assert "user" not in payload


class TestToClientResponse:
    """Tests for chat response mapping."""

    def test_choice_indexes_match_positions(self) -> None:
        """Test that choices[i].index == i for every choice."""
        data = {
            "id": "c1",
            "created": 10,
            "choices": [
                {"index": 7, "message": {"role": "assistant", "content": str(i)}}
                for i in range(3)
            ],
        }

        result = to_client_response(data)

        assert len(result.choices) == 3
        assert [choice.index for choice in result.choices] == [0, 1, 2]

    def test_finish_reason_defaults_to_stop(self) -> None:
        """Test that a missing finish_reason becomes 'stop'."""
        data = {"choices": [{"message": {"role": "assistant", "content": "hi"}}]}

        assert to_client_response(data).choices[0].finish_reason == "stop"

    def test_finish_reason_preserved(self) -> None:
        """Test that an upstream finish_reason is kept."""
        data = {
            "choices": [
                {
                    "message": {"role": "assistant", "content": "hi"},
                    "finish_reason": "length",
                }
            ]
        }

        assert to_client_response(data).choices[0].finish_reason == "length"

    def test_missing_id_and_created_filled_in(self) -> None:
        """Test the placeholder id and current-time fallback."""
        result = to_client_response({"choices": []}, now=1700000000.9)

        assert result.id == PLACEHOLDER_RESPONSE_ID
        assert result.created == 1700000000
        assert result.object == "chat.completion"

    def test_numeric_id_coerced_to_string(self) -> None:
        """Test that a numeric upstream id is passed on as text."""
        result = to_client_response({"id": 12345, "choices": []})

        assert result.id == "12345"

    def test_upstream_id_and_created_kept(self) -> None:
        """Test that upstream id, created and model are used when present."""
        result = to_client_response(
            {"id": "abc", "created": 42, "model": "m1", "choices": []}, now=99.0
        )

        assert result.id == "abc"
        assert result.created == 42
        assert result.model == "m1"

    def test_zero_choices(self) -> None:
        """Test that no choices upstream yields an empty list, not an error."""
        assert to_client_response({"choices": []}).choices == []
        assert to_client_response({}).choices == []

    def test_usage_passed_through(self) -> None:
        """Test that usage is forwarded without reshaping."""
        usage = {"prompt_tokens": 3, "completion_tokens": 5, "extra": {"x": [1]}}

        assert to_client_response({"usage": usage}).usage == usage

    def test_message_fields_always_present(self) -> None:
        """Test that a message missing role or content still has both keys."""
        data = {"choices": [{"message": {"content": "hi"}}, {}]}

        dumped = to_client_response(data).model_dump()

        assert dumped["choices"][0]["message"] == {"role": None, "content": "hi"}
        assert dumped["choices"][1]["message"] == {"role": None, "content": None}

    def test_extra_message_fields_dropped(self) -> None:
        """Test that only role and content are carried over."""
        data = {
            "choices": [
                {"message": {"role": "assistant", "content": "hi", "tool_calls": []}}
            ]
        }

        message = to_client_response(data).model_dump()["choices"][0]["message"]

        assert message == {"role": "assistant", "content": "hi"}
