import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from . import agents
from .errors import ModelHardError, ModelUnavailableError, MultimodalPreprocessingError
from .llm import ChatClient, GenerationOptions
from .model_policy import ModelInvocationPolicy


logger = logging.getLogger("uvicorn.error")

MAX_AUDIO_BYTES = 20 * 1024 * 1024
MAX_VIDEO_BYTES = 50 * 1024 * 1024
VISION_OPTIONS = GenerationOptions(temperature=0.1, max_tokens=1024)
PLACEHOLDER_CONTENT = {"[Image]", "[Audio]", "[Voice]", "[Video]"}

FileResolver = Callable[[str], Awaitable[str]]


def format_multimodal_content(original: str, processed: str, kind: str) -> str:
    if kind == "image":
        caption = f' with caption: "{original}"' if original and original not in PLACEHOLDER_CONTENT else ""
        return f"User sent an image{caption}\n\nImage description: {processed}"
    if kind == "audio":
        return f"User sent a voice message. {processed}"
    if kind == "video":
        return f"User sent a video. {processed}"
    return processed


class MultimodalPreprocessor:
    """Turns image, voice and video messages into text the planner can work with."""

    def __init__(
        self,
        policy: ModelInvocationPolicy,
        client: ChatClient,
        *,
        vision_tier: str = "vision",
        transcription_models: Optional[List[str]] = None,
        file_resolver: Optional[FileResolver] = None,
    ) -> None:
        self.policy = policy
        self.client = client
        self.vision_tier = vision_tier
        self.transcription_models = list(transcription_models or [])
        self.file_resolver = file_resolver

    async def resolve_file_url(self, metadata: Dict[str, Any]) -> str:
        url = metadata.get("file_url")
        if url:
            return str(url)
        file_id = metadata.get("file_id")
        if not file_id:
            raise MultimodalPreprocessingError("message has no file reference")
        if self.file_resolver is not None:
            try:
                return await self.file_resolver(str(file_id))
            except Exception as exc:
                raise MultimodalPreprocessingError(f"cannot resolve file {file_id!r}: {exc}") from exc
        if str(file_id).startswith(("http://", "https://")):
            return str(file_id)
        raise MultimodalPreprocessingError(f"cannot resolve file reference {file_id!r}")

    async def process_image(self, image_url: str, caption: Optional[str] = None) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": caption or agents.IMAGE_DEFAULT_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ]
        result = await self.policy.invoke_tier(self.vision_tier, messages, VISION_OPTIONS, use_secondary=False)
        if not result.ok:
            raise MultimodalPreprocessingError(result.error or "All vision models failed")
        logger.info("Image analyzed with %s", result.model)
        return f"[Image Analysis]: {result.text}"

    async def _download(self, url: str, max_bytes: int) -> bytes:
        try:
            return await self.client.fetch_bytes(url, max_bytes)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise MultimodalPreprocessingError(f"download failed: {exc}") from exc

    async def _transcribe(self, data: bytes, filename: str) -> str:
        last_error = "no transcription models configured"
        for model in self.transcription_models:
            try:
                return await self.client.transcribe(data, filename, model)
            except ModelUnavailableError as exc:
                logger.warning("Transcription model %s unavailable: %s", model, exc.reason)
                last_error = str(exc)
                continue
            except ModelHardError as exc:
                raise MultimodalPreprocessingError(f"Could not transcribe audio - {exc}") from exc
        raise MultimodalPreprocessingError(f"Could not transcribe audio - {last_error}")

    async def transcribe_audio(self, audio_url: str) -> str:
        data = await self._download(audio_url, MAX_AUDIO_BYTES)
        text = await self._transcribe(data, "audio.oga")
        return f"[Transcribed Audio]: {text}"

    async def process_video(self, video_url: str, caption: Optional[str] = None) -> str:
        # Whisper accepts common video containers directly; no audio extraction step.
        data = await self._download(video_url, MAX_VIDEO_BYTES)
        text = await self._transcribe(data, "video.mp4")
        caption_text = f'Caption: "{caption}"\n' if caption else ""
        return f"[Video Analysis]:\n{caption_text}Audio Transcription: {text}"

    async def preprocess(self, metadata: Dict[str, Any], content: str) -> str:
        kind = metadata.get("message_type")
        url = await self.resolve_file_url(metadata)
        caption = metadata.get("caption")
        if not caption and content and content not in PLACEHOLDER_CONTENT:
            caption = content
        if kind == "image":
            processed = await self.process_image(url, caption)
        elif kind == "audio":
            processed = await self.transcribe_audio(url)
        elif kind == "video":
            processed = await self.process_video(url, caption)
        else:
            raise MultimodalPreprocessingError(f"unsupported message type {kind!r}")
        return format_multimodal_content(content, processed, kind)
