"""Tests for the remote provider, using httpx.MockTransport in place of the service."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from hybridlm.config import RemoteConfig
from hybridlm.errors import AuthError, FormatError, NetworkError
from hybridlm.inference.remote import (
    RemoteCredential,
    RemoteProvider,
    detect_mime_type,
    messages_to_prompt,
    replay_units,
)


def _generate_response(text: str = "Paris is the capital.", finish: str = "STOP") -> dict:
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": finish}
        ],
        "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 5},
    }


def _provider(handler, token: str | None = "tok-123", **config) -> RemoteProvider:
    config.setdefault("project_id", "proj")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteProvider(RemoteConfig(**config), RemoteCredential(token), client=client)


def _recorder(response: httpx.Response | None = None, payload: dict | None = None):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if response is not None:
            return response
        return httpx.Response(200, json=payload if payload is not None else _generate_response())

    return requests, handler


# ─── Helpers ─────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_replay_units_reassemble(self):
        text = "Hello,  world!\nSecond line "
        units = replay_units(text)
        assert "".join(units) == text
        assert units[0] == "Hello,  "

    def test_replay_units_empty(self):
        assert replay_units("") == []

    def test_messages_to_prompt(self):
        prompt = messages_to_prompt([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": [{"type": "text", "text": "Capital of France?"}]},
        ])
        assert prompt == "system: Be brief.\nuser: Capital of France?"

    def test_messages_to_prompt_empty(self):
        with pytest.raises(FormatError):
            messages_to_prompt([])

    @pytest.mark.parametrize(
        "path, mime",
        [
            ("photo.PNG", "image/png"),
            ("a/b/c.jpeg", "image/jpeg"),
            ("anim.gif", "image/gif"),
            ("pic.webp", "image/webp"),
            ("noext", "image/jpeg"),
            ("notes.txt", "image/jpeg"),
        ],
    )
    def test_detect_mime_type(self, path, mime):
        assert detect_mime_type(path) == mime

    def test_credential(self):
        credential = RemoteCredential()
        assert not credential.is_set
        credential.set("abc")
        assert credential.is_set
        credential.invalidate()
        assert credential.token is None
        credential.set("")
        assert credential.token is None


# ─── Completion ──────────────────────────────────────────────────────────────


class TestCompletion:
    async def test_request_shape(self):
        requests, handler = _recorder()
        provider = _provider(handler, model="gemini-test", location="europe-west1")
        await provider.completion("Capital of France?")

        request = requests[0]
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert request.url.path == (
            "/v1/projects/proj/locations/europe-west1/publishers/google/models/"
            "gemini-test:generateContent"
        )
        body = json.loads(request.content)
        assert body == {"contents": {"role": "user", "parts": [{"text": "Capital of France?"}]}}

    async def test_result_mapping(self):
        _, handler = _recorder()
        result = await _provider(handler).completion("q")
        assert result.text == "Paris is the capital."
        assert result.tokens_predicted == 5
        assert result.tokens_evaluated == 7
        assert result.stop_reason == "stop"
        assert result.tool_calls == []
        assert result.timings.prompt_ms == 0.0
        assert result.timings.predicted_n == 5

    async def test_max_tokens_finish(self):
        _, handler = _recorder(payload=_generate_response(finish="MAX_TOKENS"))
        result = await _provider(handler).completion("q")
        assert result.stop_reason == "length"

    async def test_tokens_replayed_without_session_id(self):
        _, handler = _recorder()
        events = []
        result = await _provider(handler).completion("q", on_token=events.append)
        assert "".join(e.token for e in events) == result.text
        assert len(events) == 4
        assert all(e.session_id is None for e in events)

    async def test_raising_callback_does_not_fail_completion(self, caplog):
        _, handler = _recorder()
        seen = []

        def callback(event):
            seen.append(event.token)
            raise ValueError("sink closed")

        result = await _provider(handler).completion("q", on_token=callback)

        assert result.text == "Paris is the capital."
        assert "".join(seen) == result.text
        assert "Token callback" in caplog.text

    async def test_chat_completion_renders_messages(self):
        requests, handler = _recorder()
        await _provider(handler).chat_completion([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ])
        body = json.loads(requests[0].content)
        assert body["contents"]["parts"] == [{"text": "system: Be brief.\nuser: Hi"}]

    async def test_image_file_inlined(self, tmp_path):
        image = tmp_path / "cat.png"
        image.write_bytes(b"\x89PNG fake")
        requests, handler = _recorder()
        await _provider(handler).completion("What is this?", image=str(image))

        parts = json.loads(requests[0].content)["contents"]["parts"]
        assert parts[0] == {
            "inlineData": {
                "mimeType": "image/png",
                "data": base64.b64encode(b"\x89PNG fake").decode("ascii"),
            }
        }
        assert parts[1] == {"text": "What is this?"}

    async def test_image_data_uri(self):
        requests, handler = _recorder()
        await _provider(handler).completion("q", image="data:image/webp;base64,QUJD")
        inline = json.loads(requests[0].content)["contents"]["parts"][0]["inlineData"]
        assert inline == {"mimeType": "image/webp", "data": "QUJD"}

    async def test_raw_base64_defaults_to_jpeg(self):
        requests, handler = _recorder()
        await _provider(handler).completion("q", image="QUJDREVG")
        inline = json.loads(requests[0].content)["contents"]["parts"][0]["inlineData"]
        assert inline == {"mimeType": "image/jpeg", "data": "QUJDREVG"}


# ─── Failures ────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_missing_token_makes_no_request(self):
        requests, handler = _recorder()
        with pytest.raises(AuthError):
            await _provider(handler, token=None).completion("q")
        assert requests == []

    async def test_401_invalidates_credential(self):
        _, handler = _recorder(response=httpx.Response(401, text="unauthorized"))
        provider = _provider(handler)
        with pytest.raises(AuthError):
            await provider.completion("q")
        assert provider.credential.token is None

    async def test_server_error_status(self):
        _, handler = _recorder(response=httpx.Response(503, text="overloaded"))
        provider = _provider(handler)
        with pytest.raises(NetworkError, match="HTTP 503") as exc_info:
            await provider.completion("q")
        assert exc_info.value.status_code == 503
        assert provider.credential.token == "tok-123"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(NetworkError, match="Cannot reach"):
            await _provider(handler).completion("q")

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(NetworkError, match="timed out"):
            await _provider(handler).completion("q")

    async def test_api_error_body(self):
        _, handler = _recorder(payload={"error": {"message": "quota exceeded"}})
        with pytest.raises(NetworkError, match="quota exceeded"):
            await _provider(handler).completion("q")

    async def test_array_body(self):
        _, handler = _recorder(response=httpx.Response(200, json=[_generate_response()]))
        with pytest.raises(NetworkError, match="list"):
            await _provider(handler).completion("q")

    async def test_invalid_json(self):
        _, handler = _recorder(response=httpx.Response(200, text="<html>"))
        with pytest.raises(NetworkError, match="Invalid JSON"):
            await _provider(handler).completion("q")

    async def test_no_candidates(self):
        _, handler = _recorder(payload={"candidates": []})
        with pytest.raises(NetworkError, match="No candidates"):
            await _provider(handler).completion("q")


# ─── Embeddings ──────────────────────────────────────────────────────────────


class TestEmbedding:
    async def test_embedding(self):
        payload = {"predictions": [{"embeddings": {"values": [0.1, 0.2, 0.3]}}]}
        requests, handler = _recorder(payload=payload)
        provider = _provider(handler, embedding_model="text-embedding-test")

        result = await provider.embedding("hello")

        assert result.embedding == [0.1, 0.2, 0.3]
        assert requests[0].url.host == "us-central1-aiplatform.googleapis.com"
        assert requests[0].url.path.endswith("/models/text-embedding-test:predict")
        assert json.loads(requests[0].content) == {"instances": [{"content": "hello"}]}

    async def test_no_predictions(self):
        _, handler = _recorder(payload={"predictions": []})
        with pytest.raises(NetworkError, match="No predictions"):
            await _provider(handler).embedding("hello")

    async def test_malformed_prediction(self):
        _, handler = _recorder(payload={"predictions": [{"embeddings": {}}]})
        with pytest.raises(NetworkError, match="Malformed"):
            await _provider(handler).embedding("hello")
