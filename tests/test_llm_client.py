import json

import httpx
import pytest
import respx
from httpx import Response

from agentflow.errors import ModelHardError, ModelUnavailableError
from agentflow.llm import ChatClient, GenerationOptions


BASE = "http://llm.test/v1"


@pytest.mark.asyncio
async def test_generate_payload_and_headers():
    client = ChatClient(BASE, api_key="secret", max_output_tokens=256)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"choices": [{"message": {"content": "hi there"}}]})

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            text = await client.generate(
                [{"role": "system", "content": "  "}, {"role": "user", "content": "hi"}],
                "model-a",
                GenerationOptions(temperature=0.0, max_tokens=1000),
            )
    finally:
        await client.close()
    assert text == "hi there"
    assert captured["json"]["model"] == "model-a"
    assert captured["json"]["max_tokens"] == 256
    assert captured["json"]["messages"] == [{"role": "user", "content": "hi"}]
    assert captured["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body",
    [
        (400, {"error": {"message": "The model has been decommissioned", "code": "model_decommissioned"}}),
        (404, {"error": {"message": "The model does not exist"}}),
        (400, {"error": {"message": "nope", "code": "model_not_found"}}),
    ],
)
async def test_unavailable_models_are_skip_class(status, body):
    client = ChatClient(BASE)
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(status, json=body))
            with pytest.raises(ModelUnavailableError) as info:
                await client.generate([{"role": "user", "content": "hi"}], "old-model", GenerationOptions())
    finally:
        await client.close()
    assert info.value.model == "old-model"
    assert info.value.status_code == status


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body",
    [
        (429, {"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}}),
        (500, {"error": "internal"}),
        # Message text mentioning a missing model is not enough without the structured code.
        (400, {"error": {"message": "model not found in cache", "code": "invalid_request_error"}}),
    ],
)
async def test_other_failures_are_abort_class(status, body):
    client = ChatClient(BASE)
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(status, json=body))
            with pytest.raises(ModelHardError):
                await client.generate([{"role": "user", "content": "hi"}], "m", GenerationOptions())
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_error_is_abort_class():
    client = ChatClient(BASE)
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ModelHardError):
                await client.generate([{"role": "user", "content": "hi"}], "m", GenerationOptions())
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_content_returns_empty_text():
    client = ChatClient(BASE)
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(
                return_value=Response(200, json={"choices": [{"message": {"content": None}}]})
            )
            text = await client.generate([{"role": "user", "content": "hi"}], "m", GenerationOptions())
    finally:
        await client.close()
    assert text == ""


@pytest.mark.asyncio
async def test_transcribe_posts_multipart():
    client = ChatClient(BASE, api_key="secret")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["body"] = request.content
                captured["content_type"] = request.headers["content-type"]
                return Response(200, text="hello world\n")

            respx_mock.post(f"{BASE}/audio/transcriptions").mock(side_effect=handler)
            text = await client.transcribe(b"OggS", "audio.oga", "whisper-large-v3")
    finally:
        await client.close()
    assert text == "hello world"
    assert captured["content_type"].startswith("multipart/form-data")
    assert b"whisper-large-v3" in captured["body"]
