import io
import json
from unittest import mock

import pytest
import requests

from kalina import client as client_module
from kalina.client import (
    ModelClient,
    ResponseStream,
    _preprocess_for_openai,
    normalize_usage,
    parse_stream_event,
)
from kalina.errors import ModelAPIError, ModelResponseError
from kalina.models import PlanResponse


def _response(status=200, payload=None, lines=None, text=""):
    r = mock.Mock()
    r.status_code = status
    r.text = text or json.dumps(payload or {})
    r.json.return_value = payload or {}
    r.iter_lines.return_value = iter(lines or [])
    return r


def _output(text):
    return {"output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}], "usage": {"input_tokens": 5, "output_tokens": 7}}


@pytest.fixture
def openai_client(monkeypatch):
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
    monkeypatch.setattr(client_module.time, "sleep", lambda s: None)
    return ModelClient(api_key="sk-test", model="gpt-5-mini", base_url="https://api.openai.com")


def test_strict_schema_requires_every_property():
    schema = _preprocess_for_openai(PlanResponse.model_json_schema())
    assert schema["additionalProperties"] is False
    assert set(schema["required"]) == set(schema["properties"])
    assert "default" not in schema["properties"]["thoughts"]
    step = schema["$defs"]["ThoughtStepResponse"]
    assert step["additionalProperties"] is False
    assert step["required"] == ["concise_step", "phase", "step"]


def test_normalize_usage_accepts_chat_aliases():
    assert normalize_usage({"prompt_tokens": 3, "completion_tokens": 4}) == {"input_tokens": 3, "output_tokens": 4}
    assert normalize_usage(None) is None


def test_parse_stream_events():
    assert parse_stream_event({"type": "response.output_text.delta", "delta": "Hi"})["text"] == "Hi"
    cite = parse_stream_event({
        "type": "response.output_text.annotation.added",
        "annotation": {"type": "url_citation", "url": "https://x.example", "title": "X"},
    })
    assert cite["citations"] == [{"uri": "https://x.example", "title": "X"}]
    done = parse_stream_event({"type": "response.completed", "response": {"usage": {"input_tokens": 1, "output_tokens": 2}}})
    assert done["usage"] == {"input_tokens": 1, "output_tokens": 2}
    assert parse_stream_event({"type": "response.created"}) is None


def test_failed_stream_event_raises():
    with pytest.raises(ModelAPIError):
        parse_stream_event({"type": "response.failed", "response": {"error": {"code": "server_error", "message": "boom"}}})


def test_response_stream_parses_sse_lines():
    lines = [
        "event: response.output_text.delta",
        'data: {"type": "response.output_text.delta", "delta": "Hel"}',
        "",
        ": keep-alive",
        'data: {"type": "response.output_text.delta", "delta": "lo"}',
        "data: not-json",
        'data: {"type": "response.completed", "response": {"usage": {"input_tokens": 4, "output_tokens": 2}}}',
        "data: [DONE]",
        'data: {"type": "response.output_text.delta", "delta": "ignored"}',
    ]
    r = _response(lines=[line.encode("utf-8") for line in lines])
    stream = ResponseStream(r)
    chunks = list(stream.chunks())
    assert "".join(c["text"] for c in chunks) == "Hello"
    assert chunks[-1]["usage"] == {"input_tokens": 4, "output_tokens": 2}
    stream.close()
    r.close.assert_called_once()


def test_response_stream_decodes_utf8_without_charset():
    body = "data: " + json.dumps({"type": "response.output_text.delta", "delta": "Namaste नमस्ते ❤"}, ensure_ascii=False) + "\n\n"
    r = requests.Response()
    r.status_code = 200
    r.headers["Content-Type"] = "text/event-stream"
    r.raw = io.BytesIO(body.encode("utf-8"))
    r.encoding = requests.utils.get_encoding_from_headers(r.headers)

    chunks = list(ResponseStream(r).chunks())
    assert [c["text"] for c in chunks] == ["Namaste नमस्ते ❤"]


def test_call_responses_sends_strict_schema(openai_client):
    post = mock.Mock(return_value=_response(payload=_output('{"relevant_ids": ["a"]}')))
    openai_client.session.post = post
    out = openai_client.call_responses([], {"type": "object", "properties": {"relevant_ids": {"type": "array"}}}, "sys", "plan")
    assert out == {"relevant_ids": ["a"]}

    url = post.call_args.args[0]
    payload = post.call_args.kwargs["json"]
    assert url == "https://api.openai.com/v1/responses"
    assert payload["text"]["format"]["strict"] is True
    assert payload["text"]["format"]["schema"]["additionalProperties"] is False
    assert payload["reasoning"] == {"effort": "low"}
    assert payload["instructions"] == "sys"


def test_call_responses_rejects_non_json_output(openai_client):
    openai_client.session.post = mock.Mock(return_value=_response(payload=_output("not json")))
    with pytest.raises(ModelResponseError):
        openai_client.call_responses([], {"type": "object", "properties": {}})


def test_server_errors_are_retried(openai_client):
    openai_client.session.post = mock.Mock(side_effect=[
        _response(status=503, text="unavailable"),
        _response(payload=_output("hello")),
    ])
    assert openai_client.call_text([]) == "hello"
    assert openai_client.session.post.call_count == 2


def test_client_errors_are_not_retried(openai_client):
    openai_client.session.post = mock.Mock(return_value=_response(status=401, text="invalid_api_key"))
    with pytest.raises(ModelAPIError) as exc:
        openai_client.call_text([])
    assert exc.value.status_code == 401
    assert openai_client.session.post.call_count == 1


def test_exhausted_timeouts_raise_timeout_error(openai_client):
    openai_client.session.post = mock.Mock(side_effect=requests.exceptions.ReadTimeout("Read timed out."))
    with pytest.raises(ModelAPIError, match="timed out"):
        openai_client.call_text([])
    assert openai_client.session.post.call_count == 4


def test_open_stream_enables_web_search_tool(openai_client):
    post = mock.Mock(return_value=_response(lines=[]))
    openai_client.session.post = post
    stream = openai_client.open_stream([], "sys", None, "low", True)
    payload = post.call_args.kwargs["json"]
    assert payload["stream"] is True
    assert payload["tools"] == [{"type": "web_search"}]
    assert payload["model"] == "gpt-5-mini"
    assert post.call_args.kwargs["stream"] is True
    assert list(stream.chunks()) == []


def test_generate_images_maps_aspect_ratio(openai_client):
    post = mock.Mock(return_value=_response(payload={"data": [{"b64_json": "aaa"}, {"b64_json": "bbb"}]}))
    openai_client.session.post = post
    assert openai_client.generate_images("a fox", 2, "16:9") == ["aaa", "bbb"]
    payload = post.call_args.kwargs["json"]
    assert payload["size"] == "1536x1024"
    assert payload["n"] == 2
    assert payload["model"] == "gpt-image-1"


def test_generate_images_without_data_raises(openai_client):
    openai_client.session.post = mock.Mock(return_value=_response(payload={"data": []}))
    with pytest.raises(ModelResponseError):
        openai_client.generate_images("a fox")


def test_edit_image_uploads_multipart(openai_client):
    post = mock.Mock(return_value=_response(payload={"data": [{"b64_json": "ZWQ=", "revised_prompt": "purple sky"}], "usage": {"input_tokens": 9, "output_tokens": 1}}))
    openai_client.session.post = post
    out = openai_client.edit_image("purple sky", "aW1n", "image/jpeg")
    assert out == {"image": "ZWQ=", "text": "purple sky", "usage": {"input_tokens": 9, "output_tokens": 1}}
    kwargs = post.call_args.kwargs
    assert kwargs["files"]["image"][0] == "image.jpg"
    assert kwargs["headers"] == {"Content-Type": None}
    assert post.call_args.args[0].endswith("/images/edits")


def test_missing_key_leaves_client_unconfigured(monkeypatch):
    for var in ("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT"):
        monkeypatch.delenv(var, raising=False)
    assert ModelClient().has_credentials is False


def test_azure_detected_from_settings(monkeypatch):
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
    c = ModelClient(settings={"api": {"provider": "azure", "api_key": "k", "model": "dep", "base_url": "https://x.openai.azure.com"}})
    assert c.provider == "azure"
    assert c.base_url == "https://x.openai.azure.com/openai/v1"
    assert c.session.headers["api-key"] == "k"
