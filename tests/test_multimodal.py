import pytest

from agentflow.errors import ModelHardError, ModelUnavailableError, MultimodalPreprocessingError
from agentflow.multimodal import MAX_AUDIO_BYTES, MultimodalPreprocessor, format_multimodal_content
from tests.fakes import FakeChatClient, make_policy


def make_preprocessor(client, **kwargs):
    return MultimodalPreprocessor(
        make_policy(client),
        client,
        vision_tier="vision",
        transcription_models=["whisper-a", "whisper-b"],
        **kwargs,
    )


@pytest.mark.asyncio
async def test_image_analysis_sends_image_part():
    client = FakeChatClient(responses={"vision-a": "a cat on a sofa"})
    text = await make_preprocessor(client).process_image("http://files.test/cat.png")
    assert text == "[Image Analysis]: a cat on a sofa"
    content = client.calls[0]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "Describe what you see in this image in detail."}
    assert content[1] == {"type": "image_url", "image_url": {"url": "http://files.test/cat.png"}}


@pytest.mark.asyncio
async def test_image_failure_raises_without_text_fallback():
    client = FakeChatClient(responses={"vision-a": ModelHardError("vision-a", "bad image")})
    with pytest.raises(MultimodalPreprocessingError):
        await make_preprocessor(client).process_image("http://files.test/cat.png")
    assert client.models_called == ["vision-a"]


@pytest.mark.asyncio
async def test_audio_transcription_falls_back_across_models():
    client = FakeChatClient()
    client.files["http://files.test/voice.oga"] = b"OggS-data"
    client.transcriptions["whisper-a"] = ModelUnavailableError("whisper-a", "model_decommissioned")
    client.transcriptions["whisper-b"] = "call me back"
    text = await make_preprocessor(client).transcribe_audio("http://files.test/voice.oga")
    assert text == "[Transcribed Audio]: call me back"
    assert [c["model"] for c in client.transcribe_calls] == ["whisper-a", "whisper-b"]


@pytest.mark.asyncio
async def test_hard_transcription_error_stops():
    client = FakeChatClient()
    client.files["http://files.test/voice.oga"] = b"OggS"
    client.transcriptions["whisper-a"] = ModelHardError("whisper-a", "unsupported format")
    with pytest.raises(MultimodalPreprocessingError):
        await make_preprocessor(client).transcribe_audio("http://files.test/voice.oga")
    assert len(client.transcribe_calls) == 1


@pytest.mark.asyncio
async def test_oversized_audio_is_rejected():
    client = FakeChatClient()
    client.files["http://files.test/huge.oga"] = b"0" * (MAX_AUDIO_BYTES + 1)
    with pytest.raises(MultimodalPreprocessingError):
        await make_preprocessor(client).transcribe_audio("http://files.test/huge.oga")
    assert client.transcribe_calls == []


@pytest.mark.asyncio
async def test_video_includes_caption():
    client = FakeChatClient()
    client.files["http://files.test/clip.mp4"] = b"video"
    text = await make_preprocessor(client).process_video("http://files.test/clip.mp4", caption="my dog")
    assert text == '[Video Analysis]:\nCaption: "my dog"\nAudio Transcription: transcribed text'
    assert client.transcribe_calls[0]["filename"] == "video.mp4"


@pytest.mark.asyncio
async def test_preprocess_image_with_caption():
    client = FakeChatClient(responses={"vision-a": "a receipt"})
    metadata = {"message_type": "image", "file_url": "http://files.test/r.jpg"}
    text = await make_preprocessor(client).preprocess(metadata, "what is the total?")
    assert text == 'User sent an image with caption: "what is the total?"\n\nImage description: [Image Analysis]: a receipt'
    assert client.calls[0]["messages"][0]["content"][0]["text"] == "what is the total?"


@pytest.mark.asyncio
async def test_file_id_resolved_through_resolver():
    client = FakeChatClient()
    client.files["http://files.test/resolved.oga"] = b"OggS"
    resolved = []

    async def resolver(file_id):
        resolved.append(file_id)
        return "http://files.test/resolved.oga"

    pre = make_preprocessor(client, file_resolver=resolver)
    text = await pre.preprocess({"message_type": "audio", "file_id": "abc"}, "[Audio]")
    assert resolved == ["abc"]
    assert text == "User sent a voice message. [Transcribed Audio]: transcribed text"


@pytest.mark.asyncio
async def test_unresolvable_file_id_raises():
    with pytest.raises(MultimodalPreprocessingError):
        await make_preprocessor(FakeChatClient()).preprocess({"message_type": "audio", "file_id": "abc"}, "")


def test_format_multimodal_content():
    assert format_multimodal_content("[Image]", "desc", "image") == "User sent an image\n\nImage description: desc"
    assert format_multimodal_content("", "words", "video") == "User sent a video. words"
    assert format_multimodal_content("x", "plain", "text") == "plain"


@pytest.mark.asyncio
async def test_resolver_failure_becomes_preprocessing_error():
    async def resolver(file_id):
        raise RuntimeError("telegram getFile 502")

    pre = make_preprocessor(FakeChatClient(), file_resolver=resolver)
    with pytest.raises(MultimodalPreprocessingError) as excinfo:
        await pre.preprocess({"message_type": "audio", "file_id": "abc"}, "[Audio]")
    assert "telegram getFile 502" in str(excinfo.value)
