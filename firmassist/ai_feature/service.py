import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from firmassist.core.config import Settings, settings as default_settings
from firmassist.core.schemas import UsageWindow
from firmassist.ai_feature.channel import ConversationChannel, SqlConversationChannel
from firmassist.ai_feature.context import compose_context
from firmassist.ai_feature.errors import (
    AIServiceError,
    ConfigurationError,
    PromptValidationError,
    ScopeDeniedError,
    UpstreamFailure,
)
from firmassist.ai_feature.llm.base import FunctionSchema, LLMAdapter, LLMResponse
from firmassist.ai_feature.scope import Principal, resolve_scope
from firmassist.ai_feature.tools import TOOL_REGISTRY, ToolDescriptor, execute_tool, tool_catalog
from firmassist.ai_feature.turns import (
    Attachment,
    ModelTurn,
    ToolCall,
    ToolInvocationResult,
    ToolRequestTurn,
    ToolResultTurn,
    UserTurn,
)
from firmassist.ai_feature.usage import (
    SqlUsageRecorder,
    UsagePatch,
    UsageRecord,
    UsageRecorder,
    build_usage_report,
    excerpt,
)


# -----------------------------------------------------------------------------
# ORCHESTRATION MODULE
# Purpose: drive one assistant run. Prime the model with a scoped snapshot,
# let it call tools for a bounded number of rounds, return (or stream) its
# answer and leave exactly one finalized usage record behind.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Give me a concise summary of the business data I can see: key numbers, "
    "items that need attention (overdue tasks or invoices), and recommended "
    "next steps. Keep it under 300 words."
)
EMPTY_ANSWER = "I'm sorry, I couldn't generate a response. Please try rephrasing your question."


class LoopState(str, Enum):
    PRIMING = "priming"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    RESPONDING = "responding"
    DONE = "done"


@dataclass
class ChatChunk:
    kind: str  # "text" / "tool"
    text: str


@dataclass
class RunOutcome:
    """Mutable state of one run, read by the terminal usage write."""

    state: LoopState = LoopState.PRIMING
    # Text of the current model pass
    text_parts: List[str] = field(default_factory=list)
    tool_results: List[ToolInvocationResult] = field(default_factory=list)
    rounds: int = 0
    status: str = "error"
    error_message: Optional[str] = None
    cancelled: bool = False
    iteration_exhausted: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class ChatService:
    def __init__(
        self,
        adapter: Optional[LLMAdapter],
        session_factory: async_sessionmaker,
        channel: Optional[ConversationChannel] = None,
        recorder: Optional[UsageRecorder] = None,
        registry: Mapping[str, ToolDescriptor] = TOOL_REGISTRY,
        config: Optional[Settings] = None,
    ):
        self.adapter = adapter
        self.session_factory = session_factory
        self.channel = channel or SqlConversationChannel(session_factory)
        self.recorder = recorder or SqlUsageRecorder(session_factory)
        self.registry = registry
        self.config = config or default_settings

    # =========================
    # Public operations
    # =========================
    async def run_chat(
        self,
        principal: Principal,
        prompt: str,
        continuity: bool = True,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> str:
        """Run the assistant and return the whole answer at once."""
        run = self._start(
            principal,
            prompt,
            continuity,
            attachments,
            stream=False,
            tools=tool_catalog(self.registry),
            query_type="chat",
            endpoint="/ai/chat",
        )
        parts = []
        async for chunk in run:
            if chunk.kind == "text":
                parts.append(chunk.text)
        return "".join(parts)

    def run_chat_stream(
        self,
        principal: Principal,
        prompt: str,
        continuity: bool = True,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> AsyncIterator[ChatChunk]:
        """
        Run the assistant and yield its answer as it arrives.

        Configuration and prompt problems raise right away, before anything
        is streamed. Closing the iterator early cancels the run.
        """
        return self._start(
            principal,
            prompt,
            continuity,
            attachments,
            stream=True,
            tools=tool_catalog(self.registry),
            query_type="chat",
            endpoint="/ai/chat/stream",
        )

    async def run_summary(self, principal: Principal) -> str:
        """Scoped business summary: no tools, no history."""
        run = self._start(
            principal,
            SUMMARY_PROMPT,
            continuity=False,
            attachments=None,
            stream=False,
            tools=None,
            query_type="summary",
            endpoint="/ai/summary",
        )
        parts = []
        async for chunk in run:
            parts.append(chunk.text)
        return "".join(parts)

    async def get_history(self, principal: Principal) -> List[dict]:
        channel_id = await self.channel.ensure_channel(principal)
        messages = await self.channel.all_turns(channel_id)
        return [
            {
                "sender": "user" if message.role == "user" else "ai",
                "text": message.content,
                "created_at": message.created_at,
            }
            for message in messages
        ]

    async def clear_history(self, principal: Principal) -> int:
        channel_id = await self.channel.ensure_channel(principal)
        removed = await self.channel.clear(channel_id)
        logger.info(f"[User {principal.id}] Cleared {removed} assistant messages")
        return removed

    async def get_usage_analytics(
        self, principal: Principal, window: UsageWindow = UsageWindow.DAYS_30
    ) -> dict:
        if not principal.is_manager:
            raise ScopeDeniedError("Only owners and admins can view AI usage analytics")
        async with self.session_factory() as db:
            return await build_usage_report(principal.firm_id, window, db)

    # =========================
    # Run lifecycle
    # =========================
    def _start(self, principal, prompt, continuity, attachments, **options):
        if self.adapter is None:
            raise ConfigurationError(
                "AI service is not configured. Please add GEMINI_API_KEY to the environment."
            )
        prompt = (prompt or "").strip()
        if not prompt:
            raise PromptValidationError("Prompt is required")
        attachments = self._check_attachments(attachments)
        return self._run(principal, prompt, continuity, attachments, **options)

    def _check_attachments(self, attachments) -> tuple:
        attachments = tuple(attachments or ())
        if len(attachments) > self.config.AI_MAX_ATTACHMENTS:
            raise PromptValidationError(
                f"At most {self.config.AI_MAX_ATTACHMENTS} attachments are allowed"
            )
        for attachment in attachments:
            if not attachment.mime_type.startswith("image/"):
                raise PromptValidationError(
                    f"Only image attachments are supported, got {attachment.mime_type}"
                )
            if len(attachment.data) > self.config.AI_MAX_ATTACHMENT_BYTES:
                raise PromptValidationError(f"Attachment {attachment.filename} is too large")
        return attachments

    async def _run(
        self,
        principal: Principal,
        prompt: str,
        continuity: bool,
        attachments: tuple,
        stream: bool,
        tools: Optional[List[FunctionSchema]],
        query_type: str,
        endpoint: str,
    ) -> AsyncIterator[ChatChunk]:
        record_id = await self.recorder.create(
            UsageRecord(
                principal_id=principal.id,
                firm_id=principal.firm_id,
                prompt_excerpt=excerpt(prompt, self.config.AI_EXCERPT_LENGTH),
                query_type=query_type,
                continuity=continuity,
                model=self.adapter.model_name,
                endpoint=endpoint,
            )
        )
        started = time.monotonic()
        outcome = RunOutcome()

        try:
            turns, channel_id = await self._prime(
                principal, prompt, continuity, attachments
            )

            async for chunk in self._drive(principal, turns, tools, stream, outcome):
                yield chunk

            outcome.state = LoopState.RESPONDING
            if not outcome.text:
                outcome.text_parts.append(EMPTY_ANSWER)
                yield ChatChunk(kind="text", text=EMPTY_ANSWER)

            if continuity:
                await self.channel.append_turn(channel_id, ModelTurn(text=outcome.text))

            outcome.state = LoopState.DONE
            outcome.status = "success"
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"[User {principal.id}] Run cancelled in state {outcome.state.value}")
            outcome.cancelled = True
            outcome.error_message = "cancelled"
            raise
        except UpstreamFailure as error:
            logger.error(f"[User {principal.id}] Model call failed: {error.detail}")
            outcome.status = "timeout" if error.timed_out else "error"
            outcome.error_message = error.detail
            raise
        except AIServiceError as error:
            outcome.error_message = error.message
            raise
        except Exception as error:
            logger.exception(f"[User {principal.id}] Run failed in state {outcome.state.value}")
            outcome.error_message = str(error)
            raise
        finally:
            # The terminal write must land even when the caller went away
            await asyncio.shield(self._finalize(record_id, outcome, started))

    async def _prime(self, principal, prompt, continuity, attachments):
        async with self.session_factory() as db:
            scope = await resolve_scope(principal, db)
            turns = await compose_context(
                principal, scope, db, cap=self.config.AI_CONTEXT_ITEM_CAP
            )

        channel_id = None
        user_turn = UserTurn(text=prompt, attachments=attachments)
        if continuity:
            channel_id = await self.channel.ensure_channel(principal)
            turns.extend(
                await self.channel.recent_turns(channel_id, self.config.AI_HISTORY_LIMIT)
            )
        turns.append(user_turn)
        if continuity:
            await self.channel.append_turn(channel_id, user_turn)

        return turns, channel_id

    async def _drive(
        self,
        principal: Principal,
        turns: list,
        tools: Optional[List[FunctionSchema]],
        stream: bool,
        outcome: RunOutcome,
    ) -> AsyncIterator[ChatChunk]:
        """
        The bounded loop.

        Each pass asks the model once. Tool requests are executed and fed
        back; plain text ends the loop. After AI_MAX_ITERATIONS tool rounds
        the next pass is made without tools, which forces a text answer.
        The run counts as iteration_exhausted once that limit is reached,
        even if the model would have answered on its own.

        Text that comes with tool requests is interim. It is streamed, but
        only goes back to the model with the requests; the answer is the
        text of the final pass.
        """
        max_rounds = self.config.AI_MAX_ITERATIONS

        while True:
            outcome.state = LoopState.AWAITING_MODEL
            offered = tools if tools and outcome.rounds < max_rounds else None

            calls: List[ToolCall] = []
            async for response in self._call_model(turns, offered, stream):
                if response.text:
                    outcome.text_parts.append(response.text)
                    if stream:
                        yield ChatChunk(kind="text", text=response.text)
                calls.extend(response.tool_calls)

            if calls and offered is None:
                logger.warning(
                    f"[User {principal.id}] Model requested tools on a no-tools pass; ignored"
                )
                calls = []
            if not calls:
                if not stream:
                    for text in outcome.text_parts:
                        yield ChatChunk(kind="text", text=text)
                return

            outcome.state = LoopState.EXECUTING_TOOLS
            outcome.rounds += 1
            interim = outcome.text
            outcome.text_parts = []
            for call in calls:
                yield ChatChunk(kind="tool", text=call.name)

            results = await self._execute_calls(principal, calls)
            outcome.tool_results.extend(results)
            turns.append(ToolRequestTurn(calls=tuple(calls), text=interim))
            turns.append(ToolResultTurn(calls=tuple(calls), results=tuple(results)))

            if outcome.rounds >= max_rounds:
                logger.warning(
                    f"[User {principal.id}] Reached {max_rounds} tool rounds, forcing an answer"
                )
                outcome.iteration_exhausted = True

    async def _call_model(
        self, turns: list, tools: Optional[List[FunctionSchema]], stream: bool
    ) -> AsyncIterator[LLMResponse]:
        try:
            if stream:
                async for response in self.adapter.generate_stream(turns, tools):
                    yield response
            else:
                yield await self.adapter.generate(turns, tools)
        except TimeoutError as error:
            raise UpstreamFailure(f"Model call timed out: {error}", timed_out=True) from error
        except AIServiceError:
            raise
        except Exception as error:
            raise UpstreamFailure(f"{type(error).__name__}: {error}") from error

    async def _execute_calls(
        self, principal: Principal, calls: List[ToolCall]
    ) -> List[ToolInvocationResult]:
        """Run every call of one model turn concurrently, results in request order."""

        async def run_one(call: ToolCall) -> ToolInvocationResult:
            async with self.session_factory() as db:
                return await execute_tool(
                    call.name, call.args, principal, db, registry=self.registry
                )

        return list(await asyncio.gather(*(run_one(call) for call in calls)))

    async def _finalize(self, record_id: int, outcome: RunOutcome, started: float) -> None:
        patch = UsagePatch(
            status=outcome.status,
            latency_ms=int((time.monotonic() - started) * 1000),
            response_excerpt=excerpt(outcome.text, self.config.AI_EXCERPT_LENGTH),
            tools_invoked=[result.to_record() for result in outcome.tool_results],
            error_message=outcome.error_message,
            cancelled=outcome.cancelled,
            iteration_exhausted=outcome.iteration_exhausted,
        )
        try:
            await self.recorder.update(record_id, patch)
        except Exception:
            logger.exception(f"Failed to finalize usage record {record_id}")
