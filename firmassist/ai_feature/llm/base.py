"""Provider-agnostic types and abstract base class for model adapters.

The orchestration loop depends on these types only, never on a provider SDK.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from firmassist.ai_feature.turns import ConversationTurn, ToolCall


@dataclass
class UsageMetadata:
    """Normalized token counts."""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    """Provider-agnostic response (or stream chunk) from the model.

    Attributes:
        text: Text output. For stream chunks, only the new delta.
        tool_calls: Tool invocations requested in this response.
        usage: Token usage, when the provider reports it.
        raw: The original provider-specific object.
    """
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    raw: Any = None


@dataclass(frozen=True)
class FunctionSchema:
    """A tool schema as advertised to the model.

    ``parameters`` is JSON-schema shaped and provider-agnostic.
    """
    name: str
    description: str
    parameters: dict


class LLMAdapter(ABC):
    """Interface every model provider adapter implements."""

    model_name: str = ""

    @abstractmethod
    async def generate(
        self,
        turns: Sequence[ConversationTurn],
        tools: Sequence[FunctionSchema] | None = None,
    ) -> LLMResponse:
        """Send the ordered turns and return the complete response."""

    async def generate_stream(
        self,
        turns: Sequence[ConversationTurn],
        tools: Sequence[FunctionSchema] | None = None,
    ) -> AsyncIterator[LLMResponse]:
        """Yield partial responses as they arrive.

        Default implementation falls back to non-streaming ``generate()``
        and yields the whole response as a single chunk.
        """
        yield await self.generate(turns, tools)
