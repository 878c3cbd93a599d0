import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .errors import ModelHardError, ModelUnavailableError


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
# Structured provider error codes meaning "this model cannot serve requests at all".
UNAVAILABLE_ERROR_CODES = {
    "model_decommissioned",
    "model_not_found",
    "model_not_active",
    "model_deprecated",
    "unsupported_model",
}


@dataclass
class GenerationOptions:
    temperature: float = 0.2
    max_tokens: int = 1024


class GenerationClient(Protocol):
    async def generate(self, messages: List[Dict[str, Any]], model: str, options: GenerationOptions) -> str:
        ...


def _sanitize_messages(messages: Any) -> List[Dict[str, Any]]:
    if not isinstance(messages, list):
        return []
    sanitized: List[Dict[str, Any]] = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role not in ALLOWED_ROLES:
            continue
        content = msg.get("content")
        if content is None:
            continue
        if isinstance(content, str):
            if not content.strip():
                continue
            cleaned_content: Any = content
        elif isinstance(content, list):
            cleaned_items = [
                item
                for item in content
                if isinstance(item, dict) and item.get("type") and (item.get("text") or item.get("image_url"))
            ]
            if not cleaned_items:
                continue
            cleaned_content = cleaned_items
        else:
            cleaned_content = json.dumps(content, ensure_ascii=True)
        sanitized.append({"role": role, "content": cleaned_content})
    return sanitized


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text}
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return err
        if isinstance(err, str):
            return {"message": err, "code": data.get("code")}
        return data
    return {"message": str(data)}


def classify_http_error(model: str, response: httpx.Response) -> Exception:
    """Map a failed completion response to a skip-class or abort-class error."""
    body = _error_body(response)
    code = str(body.get("code") or "").strip().lower()
    message = str(body.get("message") or "")
    status = response.status_code
    if status == 404 or code in UNAVAILABLE_ERROR_CODES:
        return ModelUnavailableError(model, message or code, status_code=status)
    return ModelHardError(model, message or f"HTTP {status}", status_code=status)


class ChatClient:
    """OpenAI-compatible chat/transcription client."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, messages: List[Dict[str, Any]], model: str, options: GenerationOptions) -> str:
        cleaned = _sanitize_messages(messages)
        if not cleaned:
            raise ModelHardError(model, "messages must include at least one non-empty entry")
        max_tokens = options.max_tokens
        if self.max_output_tokens:
            max_tokens = min(max_tokens, self.max_output_tokens)
        payload = {
            "model": model,
            "messages": cleaned,
            "temperature": options.temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        except httpx.RequestError as exc:
            raise ModelHardError(model, str(exc)) from exc
        if resp.is_error:
            raise classify_http_error(model, resp)
        try:
            data = resp.json()
            message = (data.get("choices") or [{}])[0].get("message") or {}
        except (ValueError, AttributeError, IndexError) as exc:
            raise ModelHardError(model, "malformed completion response") from exc
        content = message.get("content")
        return content if isinstance(content, str) else ""

    async def transcribe(self, audio: bytes, filename: str, model: str, language: str = "en") -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(
                f"{self.base_url}/audio/transcriptions",
                data={"model": model, "response_format": "text", "language": language},
                files={"file": (filename, audio)},
                headers=headers,
            )
        except httpx.RequestError as exc:
            raise ModelHardError(model, str(exc)) from exc
        if resp.is_error:
            raise classify_http_error(model, resp)
        return resp.text.strip()

    async def fetch_bytes(self, url: str, max_bytes: int) -> bytes:
        resp = await self.client.get(url, follow_redirects=True)
        resp.raise_for_status()
        if len(resp.content) > max_bytes:
            raise ValueError(f"download exceeds {max_bytes} bytes")
        return resp.content

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
