"""Gemini adapter: wraps all google-genai SDK calls.

This is the only module of the project that imports ``google.genai``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence

from google import genai
from google.genai import types

from firmassist.ai_feature.llm.base import (
    FunctionSchema,
    LLMAdapter,
    LLMResponse,
    UsageMetadata,
)
from firmassist.ai_feature.turns import (
    ContextTurn,
    ConversationTurn,
    ModelTurn,
    ToolCall,
    ToolRequestTurn,
    ToolResultTurn,
    UserTurn,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_config(
    tools: Sequence[FunctionSchema] | None,
) -> types.GenerateContentConfig | None:
    """Convert our FunctionSchema list to a Gemini request config."""
    if not tools:
        return None
    declarations = [
        types.FunctionDeclaration(
            name=t.name,
            description=t.description,
            parameters=t.parameters,
        )
        for t in tools
    ]
    return types.GenerateContentConfig(
        tools=[types.Tool(function_declarations=declarations)],
    )


def _to_content(turn: ConversationTurn) -> types.Content:
    # Gemini only knows user/model roles, the snapshot goes in as a user turn
    if isinstance(turn, ContextTurn):
        return types.Content(role="user", parts=[types.Part.from_text(text=turn.text)])
    if isinstance(turn, UserTurn):
        parts = [types.Part.from_text(text=turn.text)]
        for attachment in turn.attachments:
            parts.append(
                types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type)
            )
        return types.Content(role="user", parts=parts)
    if isinstance(turn, ModelTurn):
        return types.Content(role="model", parts=[types.Part.from_text(text=turn.text)])
    if isinstance(turn, ToolRequestTurn):
        parts = [types.Part.from_text(text=turn.text)] if turn.text else []
        parts.extend(
            types.Part.from_function_call(name=call.name, args=call.args)
            for call in turn.calls
        )
        return types.Content(role="model", parts=parts)
    if isinstance(turn, ToolResultTurn):
        return types.Content(
            role="user",
            parts=[
                types.Part.from_function_response(
                    name=result.tool_name,
                    response={"result": result.model_payload()},
                )
                for result in turn.results
            ],
        )
    raise TypeError(f"Unsupported conversation turn: {type(turn).__name__}")


def _raise_if_timeout(error: Exception) -> None:
    # httpx reports ReadTimeout, ConnectTimeout, PoolTimeout and friends
    if "Timeout" in type(error).__name__:
        raise TimeoutError(str(error)) from error


def _parse_response(raw) -> LLMResponse:
    """Parse a raw Gemini response (or stream chunk) into an LLMResponse."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []

    candidates = getattr(raw, "candidates", None) or []
    if candidates:
        content = candidates[0].content
        if content and content.parts:
            for part in content.parts:
                if getattr(part, "thought", False):
                    continue
                if getattr(part, "function_call", None) and part.function_call.name:
                    tool_calls.append(ToolCall(
                        name=part.function_call.name,
                        args=dict(part.function_call.args) if part.function_call.args else {},
                        id=getattr(part.function_call, "id", None),
                    ))
                elif getattr(part, "text", None):
                    text_parts.append(part.text)

    meta = getattr(raw, "usage_metadata", None)
    usage = UsageMetadata(
        input_tokens=getattr(meta, "prompt_token_count", 0) or 0,
        output_tokens=getattr(meta, "candidates_token_count", 0) or 0,
    ) if meta else UsageMetadata()

    return LLMResponse(
        text="".join(text_parts),
        tool_calls=tool_calls,
        usage=usage,
        raw=raw,
    )


# ---------------------------------------------------------------------------
# GeminiAdapter
# ---------------------------------------------------------------------------

class GeminiAdapter(LLMAdapter):
    """Adapter that wraps the async ``google-genai`` client."""

    def __init__(self, api_key: str, model: str, timeout_ms: int = 120_000):
        self.model_name = model
        self._client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=timeout_ms),
        )

    async def generate(
        self,
        turns: Sequence[ConversationTurn],
        tools: Sequence[FunctionSchema] | None = None,
    ) -> LLMResponse:
        logger.debug("Gemini generate: %d turns, %d tools", len(turns), len(tools or ()))
        try:
            raw = await self._client.aio.models.generate_content(
                model=self.model_name,
                contents=[_to_content(t) for t in turns],
                config=_build_config(tools),
            )
        except Exception as error:
            _raise_if_timeout(error)
            raise
        return _parse_response(raw)

    async def generate_stream(
        self,
        turns: Sequence[ConversationTurn],
        tools: Sequence[FunctionSchema] | None = None,
    ) -> AsyncIterator[LLMResponse]:
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=self.model_name,
                contents=[_to_content(t) for t in turns],
                config=_build_config(tools),
            )
            async for chunk in stream:
                yield _parse_response(chunk)
        except Exception as error:
            _raise_if_timeout(error)
            raise
