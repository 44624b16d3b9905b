import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from conftest import (
    AlwaysToolsAdapter,
    ScriptedAdapter,
    principal_of,
    text_response,
    tool_response,
)
from firmassist.core.config import settings
from firmassist.core.schemas import UsageWindow
from firmassist.ai_feature.channel import ConversationChannel, SqlConversationChannel
from firmassist.ai_feature.errors import (
    ConfigurationError,
    PromptValidationError,
    ScopeDeniedError,
    UpstreamFailure,
)
from firmassist.ai_feature.llm.base import LLMAdapter, LLMResponse
from firmassist.ai_feature.service import ChatService, EMPTY_ANSWER
from firmassist.ai_feature.turns import (
    Attachment,
    ContextTurn,
    ModelTurn,
    ToolCall,
    ToolRequestTurn,
    ToolResultTurn,
    UserTurn,
)
from firmassist.ai_feature.usage import UsageRecorder


class SpyRecorder(UsageRecorder):
    def __init__(self):
        self.created = []
        self.updates = []

    async def create(self, record):
        self.created.append(record)
        return len(self.created)

    async def update(self, record_id, patch):
        self.updates.append((record_id, patch))

    @property
    def patch(self):
        assert len(self.updates) == 1
        return self.updates[0][1]


class ChunkedAdapter(LLMAdapter):
    model_name = "stub-model"

    async def generate(self, turns, tools=None):
        return LLMResponse(text="Hello world")

    async def generate_stream(self, turns, tools=None):
        for piece in ("Hello", " wor", "ld"):
            yield LLMResponse(text=piece)


@pytest.fixture
def recorder():
    return SpyRecorder()


@pytest.fixture
def channel():
    mock = AsyncMock(spec=ConversationChannel)
    mock.ensure_channel.return_value = 1
    mock.recent_turns.return_value = []
    return mock


@pytest_asyncio.fixture
async def build_service(session_factory, recorder, channel):
    def build(adapter, **overrides):
        config = settings.model_copy(update=overrides) if overrides else settings
        return ChatService(
            adapter=adapter,
            session_factory=session_factory,
            channel=channel,
            recorder=recorder,
            config=config,
        )

    return build


@pytest.mark.asyncio
async def test_plain_answer_records_one_success(build_service, recorder, owner):
    adapter = ScriptedAdapter([text_response("All good.")])
    service = build_service(adapter)

    answer = await service.run_chat(principal_of(owner), "How is business?", continuity=False)

    assert answer == "All good."
    assert len(recorder.created) == 1
    assert recorder.created[0].query_type == "chat"
    assert recorder.created[0].model == "stub-model"
    assert recorder.patch.status == "success"
    assert recorder.patch.response_excerpt == "All good."
    assert recorder.patch.tools_invoked == []

    first_call = adapter.calls[0]["turns"]
    assert isinstance(first_call[0], ContextTurn)
    assert isinstance(first_call[1], ModelTurn)
    assert first_call[-1] == UserTurn(text="How is business?")


@pytest.mark.asyncio
async def test_no_continuity_never_touches_the_channel(build_service, channel, owner):
    service = build_service(ScriptedAdapter([text_response("Private answer")]))

    await service.run_chat(principal_of(owner), "Just between us", continuity=False)

    assert channel.mock_calls == []


@pytest.mark.asyncio
async def test_continuity_persists_prompt_before_model_call(build_service, channel, owner):
    history = [UserTurn(text="earlier question"), ModelTurn(text="earlier answer")]
    channel.recent_turns.return_value = history
    writes_seen_by_model = []

    class PeekingAdapter(ScriptedAdapter):
        async def generate(self, turns, tools=None):
            writes_seen_by_model.append(channel.append_turn.await_count)
            return await super().generate(turns, tools)

    adapter = PeekingAdapter([text_response("Fresh answer")])
    service = build_service(adapter, AI_HISTORY_LIMIT=4)

    await service.run_chat(principal_of(owner), "new question", continuity=True)

    assert writes_seen_by_model == [1]
    channel.recent_turns.assert_awaited_once_with(1, 4)
    written = [call.args[1] for call in channel.append_turn.await_args_list]
    assert written == [UserTurn(text="new question"), ModelTurn(text="Fresh answer")]

    turns = adapter.calls[0]["turns"]
    assert turns[2:4] == history
    assert turns[4] == UserTurn(text="new question")


@pytest.mark.asyncio
async def test_recovered_tool_failure_still_succeeds(build_service, recorder, owner):
    adapter = ScriptedAdapter(
        [
            tool_response(("get_client_data", {"client_name_or_id": "Nobody Ltd"})),
            text_response("I couldn't find that client."),
        ]
    )
    service = build_service(adapter)

    answer = await service.run_chat(principal_of(owner), "Tell me about Nobody Ltd", False)

    assert answer == "I couldn't find that client."
    assert len(recorder.created) == 1
    assert recorder.patch.status == "success"
    tools = recorder.patch.tools_invoked
    assert len(tools) == 1
    assert tools[0]["status"] == "error"
    assert tools[0]["errorKind"] == "not_found"

    fed_back = adapter.calls[1]["turns"][-1]
    assert isinstance(fed_back, ToolResultTurn)
    assert fed_back.results[0].model_payload()["errorKind"] == "not_found"


@pytest.mark.asyncio
async def test_upstream_failure_is_recorded_once(build_service, recorder, owner):
    service = build_service(ScriptedAdapter([RuntimeError("503 from provider")]))

    with pytest.raises(UpstreamFailure) as excinfo:
        await service.run_chat(principal_of(owner), "hello", continuity=False)

    assert excinfo.value.message == "Failed to get response from AI"
    assert len(recorder.created) == 1
    assert recorder.patch.status == "error"
    assert "503 from provider" in recorder.patch.error_message


@pytest.mark.asyncio
async def test_timeout_is_recorded_as_timeout(build_service, recorder, owner):
    service = build_service(ScriptedAdapter([TimeoutError("deadline exceeded")]))

    with pytest.raises(UpstreamFailure) as excinfo:
        await service.run_chat(principal_of(owner), "hello", continuity=False)

    assert excinfo.value.timed_out
    assert recorder.patch.status == "timeout"


@pytest.mark.asyncio
async def test_cancellation_is_recorded_once(build_service, recorder, owner):
    adapter = ScriptedAdapter(
        [tool_response(("list_clients", {})), asyncio.CancelledError()]
    )
    service = build_service(adapter)

    with pytest.raises(asyncio.CancelledError):
        await service.run_chat(principal_of(owner), "list clients", continuity=False)

    assert len(recorder.created) == 1
    patch = recorder.patch
    assert patch.cancelled is True
    assert patch.status == "error"
    assert [t["name"] for t in patch.tools_invoked] == ["list_clients"]


@pytest.mark.asyncio
async def test_stream_yields_chunks_in_order(build_service, recorder, owner):
    service = build_service(ChunkedAdapter())

    chunks = [
        chunk async for chunk in service.run_chat_stream(principal_of(owner), "hi", False)
    ]

    assert [c.text for c in chunks] == ["Hello", " wor", "ld"]
    assert recorder.patch.response_excerpt == "Hello world"


@pytest.mark.asyncio
async def test_closing_the_stream_cancels_the_run(build_service, recorder, channel, owner):
    service = build_service(ChunkedAdapter())

    stream = service.run_chat_stream(principal_of(owner), "hi", continuity=True)
    first = await stream.__anext__()
    await stream.aclose()

    assert first.text == "Hello"
    assert len(recorder.created) == 1
    assert recorder.patch.cancelled is True
    assert recorder.patch.response_excerpt == "Hello"
    # Only the prompt made it to the channel
    written = [call.args[1] for call in channel.append_turn.await_args_list]
    assert written == [UserTurn(text="hi")]


@pytest.mark.asyncio
async def test_tool_rounds_are_bounded(build_service, recorder, owner):
    adapter = AlwaysToolsAdapter()
    service = build_service(adapter, AI_MAX_ITERATIONS=3)

    answer = await service.run_chat(principal_of(owner), "loop forever", continuity=False)

    assert len(adapter.calls) == 4
    assert all(call["tools"] for call in adapter.calls[:3])
    assert adapter.calls[3]["tools"] is None
    assert answer == EMPTY_ANSWER
    patch = recorder.patch
    assert patch.iteration_exhausted is True
    assert patch.status == "success"
    assert len(patch.tools_invoked) == 3


@pytest.mark.asyncio
async def test_same_tool_twice_keeps_request_order(build_service, recorder, seed, firm, owner):
    for i in range(5):
        await seed.client(firm, name=f"Client {i}")
    adapter = ScriptedAdapter(
        [
            tool_response(
                ("list_clients", {"skip": 0, "limit": 2}),
                ("list_clients", {"skip": 2, "limit": 2}),
            ),
            text_response("Here are four clients."),
        ]
    )
    service = build_service(adapter)

    await service.run_chat(principal_of(owner), "first four clients", continuity=False)

    results = adapter.calls[1]["turns"][-1].results
    assert [r.arguments["skip"] for r in results] == [0, 2]
    assert [[i["number"] for i in r.output["items"]] for r in results] == [[1, 2], [3, 4]]

    recorded = recorder.patch.tools_invoked
    assert [t["name"] for t in recorded] == ["list_clients", "list_clients"]
    assert [t["arguments"]["skip"] for t in recorded] == [0, 2]


@pytest.mark.asyncio
async def test_rejected_requests_leave_no_record(build_service, recorder, owner):
    principal = principal_of(owner)

    with pytest.raises(ConfigurationError):
        await build_service(None).run_chat(principal, "hello")

    service = build_service(ScriptedAdapter())
    with pytest.raises(PromptValidationError):
        await service.run_chat(principal, "   ")
    with pytest.raises(PromptValidationError):
        service.run_chat_stream(
            principal,
            "look at this",
            attachments=[Attachment(data=b"%PDF", mime_type="application/pdf")],
        )

    assert recorder.created == []
    assert recorder.updates == []


@pytest.mark.asyncio
async def test_summary_runs_without_tools_or_history(build_service, recorder, channel, owner):
    adapter = ScriptedAdapter([text_response("Summary: all fine.")])
    service = build_service(adapter)

    summary = await service.run_summary(principal_of(owner))

    assert summary == "Summary: all fine."
    assert adapter.calls[0]["tools"] is None
    assert channel.mock_calls == []
    assert recorder.created[0].query_type == "summary"
    assert recorder.patch.status == "success"


@pytest.mark.asyncio
async def test_analytics_is_for_managers_only(build_service, employee):
    service = build_service(ScriptedAdapter())

    with pytest.raises(ScopeDeniedError):
        await service.get_usage_analytics(principal_of(employee), UsageWindow.DAYS_7)


@pytest.mark.asyncio
async def test_history_carries_over_between_runs(session_factory, recorder, owner):
    adapter = ScriptedAdapter(
        [text_response("Your top client is Kapoor Steel."), text_response("Yes.")]
    )
    service = ChatService(
        adapter=adapter,
        session_factory=session_factory,
        channel=SqlConversationChannel(session_factory),
        recorder=recorder,
    )
    principal = principal_of(owner)

    await service.run_chat(principal, "Who is my top client?")
    await service.run_chat(principal, "Are you sure?")

    second = adapter.calls[1]["turns"]
    assert second[2:] == [
        UserTurn(text="Who is my top client?"),
        ModelTurn(text="Your top client is Kapoor Steel."),
        UserTurn(text="Are you sure?"),
    ]

    history = await service.get_history(principal)
    assert [(h["sender"], h["text"]) for h in history] == [
        ("user", "Who is my top client?"),
        ("ai", "Your top client is Kapoor Steel."),
        ("user", "Are you sure?"),
        ("ai", "Yes."),
    ]

    assert await service.clear_history(principal) == 4
    assert await service.get_history(principal) == []


@pytest.mark.asyncio
async def test_text_sent_with_tool_calls_is_not_the_answer(build_service, recorder, channel, owner):
    adapter = ScriptedAdapter(
        [
            LLMResponse(text="Let me check.", tool_calls=[ToolCall(name="list_clients", args={})]),
            text_response("You have 0 clients."),
        ]
    )
    service = build_service(adapter)

    answer = await service.run_chat(principal_of(owner), "How many clients?", continuity=True)

    assert answer == "You have 0 clients."
    assert recorder.patch.response_excerpt == "You have 0 clients."
    written = [call.args[1] for call in channel.append_turn.await_args_list]
    assert written[-1] == ModelTurn(text="You have 0 clients.")

    # The model sees its own words alongside the calls it made
    request = adapter.calls[1]["turns"][-2]
    assert isinstance(request, ToolRequestTurn)
    assert request.text == "Let me check."
    assert request.calls[0].name == "list_clients"


@pytest.mark.asyncio
async def test_stream_shows_interim_text(build_service, recorder, owner):
    adapter = ScriptedAdapter(
        [
            LLMResponse(text="Let me check.", tool_calls=[ToolCall(name="list_clients", args={})]),
            text_response("You have 0 clients."),
        ]
    )
    service = build_service(adapter)

    chunks = [
        (chunk.kind, chunk.text)
        async for chunk in service.run_chat_stream(principal_of(owner), "How many?", False)
    ]

    assert chunks == [
        ("text", "Let me check."),
        ("tool", "list_clients"),
        ("text", "You have 0 clients."),
    ]
    assert recorder.patch.response_excerpt == "You have 0 clients."


@pytest.mark.asyncio
async def test_reaching_the_round_limit_marks_the_run_exhausted(build_service, recorder, owner):
    adapter = ScriptedAdapter(
        [tool_response(("list_clients", {})), text_response("No clients yet.")]
    )
    service = build_service(adapter, AI_MAX_ITERATIONS=1)

    answer = await service.run_chat(principal_of(owner), "list clients", continuity=False)

    assert answer == "No clients yet."
    assert adapter.calls[1]["tools"] is None
    # Marked as soon as the last allowed round ran, whatever the final pass says
    assert recorder.patch.iteration_exhausted is True
    assert recorder.patch.status == "success"


@pytest.mark.asyncio
async def test_context_cap_follows_service_config(build_service, seed, firm, owner):
    for i in range(3):
        await seed.client(firm, name=f"Client {i}")
    adapter = ScriptedAdapter([text_response("ok")])
    service = build_service(adapter, AI_CONTEXT_ITEM_CAP=1)

    await service.run_chat(principal_of(owner), "overview", continuity=False)

    snapshot = adapter.calls[0]["turns"][0].text
    assert "... and 2 more" in snapshot


@pytest.mark.asyncio
async def test_concurrent_first_requests_share_one_channel(session_factory, owner):
    channel = SqlConversationChannel(session_factory)
    principal = principal_of(owner)

    first, second = await asyncio.gather(
        channel.ensure_channel(principal), channel.ensure_channel(principal)
    )

    assert first == second
    assert await channel.ensure_channel(principal) == first
