"""Ordered candidate-model fallback used by every generation call.

A tier is an ordered list of model identifiers. Candidates are tried strictly in
declared order and never twice within one invocation:

- ``ModelUnavailableError`` skips to the next candidate.
- Anything else (hard provider error, timeout, transport failure) stops the
  list immediately.
- Empty output is treated like a candidate that produced nothing; the next one
  is tried.

``generate`` layers the secondary ("fast") tier and the fixed apology text on
top, so callers never see an empty or ``None`` response.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from .errors import ModelHardError, ModelUnavailableError, WorkflowCancelledError
from .llm import GenerationClient, GenerationOptions


logger = logging.getLogger("uvicorn.error")

APOLOGY_TEXT = "I apologize, but I'm experiencing technical difficulties. Please try again."

InvocationOutcome = Literal["ok", "exhausted", "aborted"]


@dataclass
class InvocationResult:
    text: Optional[str]
    model: Optional[str] = None
    attempts: List[str] = field(default_factory=list)
    outcome: InvocationOutcome = "exhausted"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"


def _dedupe(candidates: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for model in candidates:
        if not model or model in seen:
            continue
        seen.add(model)
        ordered.append(model)
    return ordered


class ModelInvocationPolicy:
    def __init__(
        self,
        client: GenerationClient,
        tiers: Dict[str, List[str]],
        *,
        secondary_tier: Optional[str] = "fast",
        call_timeout_s: Optional[float] = 30.0,
    ) -> None:
        self.client = client
        self.tiers = {name: list(models) for name, models in tiers.items()}
        self.secondary_tier = secondary_tier
        self.call_timeout_s = call_timeout_s

    def candidates(self, tier: str) -> List[str]:
        return list(self.tiers.get(tier) or [])

    async def _call(self, model: str, messages: List[Dict[str, Any]], options: GenerationOptions) -> str:
        coro = self.client.generate(messages, model, options)
        if self.call_timeout_s:
            return await asyncio.wait_for(coro, timeout=self.call_timeout_s)
        return await coro

    async def invoke(
        self,
        candidates: Sequence[str],
        messages: List[Dict[str, Any]],
        options: Optional[GenerationOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        options = options or GenerationOptions()
        result = InvocationResult(text=None)
        for model in _dedupe(candidates):
            if cancel_event is not None and cancel_event.is_set():
                raise WorkflowCancelledError("Workflow cancelled")
            result.attempts.append(model)
            try:
                text = await self._call(model, messages, options)
            except ModelUnavailableError as exc:
                logger.warning("Model %s unavailable, trying next candidate: %s", model, exc.reason)
                continue
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning("Model %s timed out after %ss", model, self.call_timeout_s)
                result.outcome = "aborted"
                result.error = f"timeout after {self.call_timeout_s}s"
                return result
            except ModelHardError as exc:
                logger.warning("Model %s failed, aborting tier: %s", model, exc.reason)
                result.outcome = "aborted"
                result.error = str(exc)
                return result
            except Exception as exc:
                logger.warning("Model %s raised unexpectedly, aborting tier: %s", model, exc)
                result.outcome = "aborted"
                result.error = str(exc)
                return result
            if text and text.strip():
                result.text = text
                result.model = model
                result.outcome = "ok"
                return result
            logger.info("Model %s returned empty output", model)
        return result

    async def invoke_tier(
        self,
        tier: str,
        messages: List[Dict[str, Any]],
        options: Optional[GenerationOptions] = None,
        *,
        use_secondary: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        """Run a named tier; when it is exhausted (not aborted), continue on the secondary tier."""
        result = await self.invoke(self.candidates(tier), messages, options, cancel_event=cancel_event)
        secondary = self.secondary_tier
        if (
            result.outcome != "exhausted"
            or not use_secondary
            or not secondary
            or secondary == tier
            or not self.candidates(secondary)
        ):
            return result
        logger.info("Tier %s exhausted after %s; trying %s", tier, result.attempts, secondary)
        # Models already attempted in this invocation are not retried.
        retry_candidates = [m for m in self.candidates(secondary) if m not in result.attempts]
        second = await self.invoke(retry_candidates, messages, options, cancel_event=cancel_event)
        second.attempts = result.attempts + second.attempts
        return second

    async def generate(
        self,
        tier: str,
        messages: List[Dict[str, Any]],
        options: Optional[GenerationOptions] = None,
        *,
        fallback: Optional[str] = None,
        use_secondary: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Text from the tier, the caller's fallback when a hard failure aborted it, or the apology.

        Never returns empty text.
        """
        result = await self.invoke_tier(
            tier, messages, options, use_secondary=use_secondary, cancel_event=cancel_event
        )
        if result.ok and result.text:
            return result.text
        if result.outcome == "aborted" and fallback:
            return fallback
        return APOLOGY_TEXT
