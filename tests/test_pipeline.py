"""Tests for the streaming chat pipeline."""

import asyncio

from fakes import FakeAutomation, FakeProvider, FakeSurface

from llm_selectassistant.activation import ActivationMachine
from llm_selectassistant.capture import SelectionCapture
from llm_selectassistant.errors import ErrorCode
from llm_selectassistant.pipeline import ChatEvent, ChatPipeline, Streaming
from llm_selectassistant.service import AssistantService
from llm_selectassistant.settings import SecretStore, Settings
from llm_selectassistant.store import ConversationStore

SYSTEM = "You are a test assistant."


def _pipeline(tmp_path, provider, api_key="sk-test"):
    store = ConversationStore(tmp_path / "chat_history.db")
    store.ensure_schema()
    secrets = SecretStore(tmp_path / "settings.json")
    if api_key:
        secrets.save_settings(Settings(api_key=api_key))
    pipeline = ChatPipeline(store, secrets, provider_factory=lambda s: provider, system_prompt=SYSTEM)
    return pipeline, store


def _types(events):
    return [e.type for e in events]


def test_new_session_streams_and_persists(tmp_path):
    """session_created comes first, chunks follow, the reply is stored whole."""
    provider = FakeProvider(["Hel", "lo", "!"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        events = await pipeline.submit([{"role": "user", "content": "Say hello"}]).collect()
        await pipeline.close()
        return events, store

    events, store = asyncio.run(run())

    assert _types(events) == ["session_created", "chunk", "chunk", "chunk", "done"]
    sid = events[0].session_id
    assert "".join(e.content for e in events if e.type == "chunk") == "Hello!"
    assert store.get_history(sid) == [
        {"role": "user", "content": "Say hello"},
        {"role": "assistant", "content": "Hello!"},
    ]
    assert store.list_sessions()[0].title == "Say hello"


def test_existing_session_does_not_emit_session_created(tmp_path):
    """Submissions against a known session only stream chunks."""
    provider = FakeProvider(["ok"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("existing")
        events = await pipeline.submit([{"role": "user", "content": "hi"}], session_id=sid).collect()
        await pipeline.close()
        return events, store.get_history(sid)

    events, history = asyncio.run(run())

    assert _types(events) == ["chunk", "done"]
    assert history[-1] == {"role": "assistant", "content": "ok"}


def test_session_title_truncated(tmp_path):
    """New sessions are titled after the first 30 characters of the message."""
    provider = FakeProvider(["ok"])
    question = "Explain the difference between threads and processes"

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        await pipeline.submit([{"role": "user", "content": question}]).collect()
        await pipeline.close()
        return store.list_sessions()

    sessions = asyncio.run(run())

    assert sessions[0].title == question[:30]


def test_provider_error_discards_partial_reply(tmp_path):
    """A failure after some chunks stores no assistant message."""
    provider = FakeProvider(["partial "], error=RuntimeError("connection reset"))

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        events = await pipeline.submit([{"role": "user", "content": "q"}]).collect()
        await pipeline.close()
        return events, store

    events, store = asyncio.run(run())

    assert _types(events) == ["session_created", "chunk", "error"]
    assert events[-1].code == ErrorCode.PROVIDER_ERROR
    assert events[-1].content == "connection reset"
    assert store.get_history(events[0].session_id) == [{"role": "user", "content": "q"}]


def test_provider_error_without_message(tmp_path):
    """An exception with no text is reported as an unknown LLM error."""
    provider = FakeProvider([], error=RuntimeError())

    async def run():
        pipeline, _ = _pipeline(tmp_path, provider)
        events = await pipeline.submit([{"role": "user", "content": "q"}]).collect()
        await pipeline.close()
        return events

    events = asyncio.run(run())

    assert events[-1].code == ErrorCode.PROVIDER_ERROR
    assert events[-1].content == "Unknown LLM Error"


def test_missing_api_key(tmp_path):
    """Without a key nothing is created, stored or sent."""
    provider = FakeProvider(["never"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider, api_key="")
        events = await pipeline.submit([{"role": "user", "content": "q"}]).collect()
        await pipeline.close()
        return events, store

    events, store = asyncio.run(run())

    assert _types(events) == ["error"]
    assert events[0].code == ErrorCode.AUTH_MISSING
    assert events[0].content == "API Key missing. Settings > Add Key."
    assert store.list_sessions() == []
    assert provider.conversations == []


def test_conversation_order_with_context(tmp_path):
    """System prompt, then the context turn, then the history as given."""
    provider = FakeProvider(["ok"])
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "explain this"},
    ]

    async def run():
        pipeline, _ = _pipeline(tmp_path, provider)
        await pipeline.submit(messages, context="def f(): pass").collect()
        await pipeline.close()

    asyncio.run(run())

    conversation = provider.conversations[0]
    assert conversation[0] == {"role": "system", "content": SYSTEM}
    assert conversation[1]["role"] == "user"
    assert conversation[1]["content"].startswith("[CONTEXT FROM USER SELECTION]:\ndef f(): pass")
    assert conversation[2:] == messages


def test_context_is_not_persisted(tmp_path):
    """Only the real user message is stored, never the context turn."""
    provider = FakeProvider(["ok"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        events = await pipeline.submit([{"role": "user", "content": "what is it"}], context="secret").collect()
        await pipeline.close()
        return store.get_history(events[0].session_id)

    history = asyncio.run(run())

    assert history == [
        {"role": "user", "content": "what is it"},
        {"role": "assistant", "content": "ok"},
    ]


def test_trailing_assistant_message_not_persisted(tmp_path):
    """A history ending in a non-user turn stores only the new reply."""
    provider = FakeProvider(["continued"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("s")
        messages = [{"role": "user", "content": "go"}, {"role": "assistant", "content": "so far"}]
        await pipeline.submit(messages, session_id=sid).collect()
        await pipeline.close()
        return store.get_history(sid)

    assert asyncio.run(run()) == [{"role": "assistant", "content": "continued"}]


def test_concurrent_submissions_same_session_do_not_interleave(tmp_path):
    """Two submissions on one session are handled strictly in order."""
    provider = FakeProvider(["a", "b", "c"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("s")
        first = pipeline.submit([{"role": "user", "content": "one"}], session_id=sid)
        second = pipeline.submit([{"role": "user", "content": "two"}], session_id=sid)
        events = await asyncio.gather(first.collect(), second.collect())
        await pipeline.close()
        return events, store.get_history(sid)

    (first_events, second_events), history = asyncio.run(run())

    assert _types(first_events) == ["chunk", "chunk", "chunk", "done"]
    assert _types(second_events) == ["chunk", "chunk", "chunk", "done"]
    assert history == [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "abc"},
        {"role": "user", "content": "two"},
        {"role": "assistant", "content": "abc"},
    ]


def test_back_to_back_new_sessions_are_distinct(tmp_path):
    """Each submission without a session id gets its own stable session."""
    provider = FakeProvider(["x"])

    async def run():
        pipeline, store = _pipeline(tmp_path, provider)
        first = await pipeline.submit([{"role": "user", "content": "one"}]).collect()
        second = await pipeline.submit([{"role": "user", "content": "two"}]).collect()
        await pipeline.close()
        return first, second, store

    first, second, store = asyncio.run(run())

    sid_one, sid_two = first[0].session_id, second[0].session_id
    assert sid_one != sid_two
    assert store.get_history(sid_one)[0]["content"] == "one"
    assert store.get_history(sid_two)[0]["content"] == "two"


def test_deleting_session_cancels_inflight_request(tmp_path):
    """Deleting a session mid-stream ends the request with CANCELLED."""
    async def run():
        gate = asyncio.Event()
        provider = FakeProvider(["partial"], gate=gate)
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("s")
        submission = pipeline.submit([{"role": "user", "content": "q"}], session_id=sid)

        for _ in range(100):
            if isinstance(pipeline.session_state(sid), Streaming):
                break
            await asyncio.sleep(0)
        state_while_streaming = pipeline.session_state(sid)

        cancelled = pipeline.cancel_session(sid)
        store.delete_session(sid)
        events = await submission.collect()
        await pipeline.close()
        return state_while_streaming, cancelled, events, store, sid

    state, cancelled, events, store, sid = asyncio.run(run())

    assert isinstance(state, Streaming)
    assert cancelled == 1
    assert events[-1].type == "error"
    assert events[-1].code == ErrorCode.CANCELLED
    assert not store.session_exists(sid)
    assert store.get_history(sid) == []


def test_deleting_session_cancels_queued_requests(tmp_path):
    """Requests waiting behind the active one are cancelled too."""
    async def run():
        gate = asyncio.Event()
        provider = FakeProvider([], gate=gate)
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("s")
        first = pipeline.submit([{"role": "user", "content": "1"}], session_id=sid)
        second = pipeline.submit([{"role": "user", "content": "2"}], session_id=sid)

        for _ in range(100):
            if isinstance(pipeline.session_state(sid), Streaming):
                break
            await asyncio.sleep(0)

        cancelled = pipeline.cancel_session(sid)
        store.delete_session(sid)
        events = await asyncio.gather(first.collect(), second.collect())
        await pipeline.close()
        return cancelled, events

    cancelled, (first_events, second_events) = asyncio.run(run())

    assert cancelled == 2
    assert first_events[-1].code == ErrorCode.CANCELLED
    assert second_events == [ChatEvent.error(ErrorCode.CANCELLED, "Session deleted")]


def test_session_returns_to_idle(tmp_path):
    """After completion no session is reported as streaming."""
    provider = FakeProvider(["x"])

    async def run():
        pipeline, _ = _pipeline(tmp_path, provider)
        await pipeline.submit([{"role": "user", "content": "q"}]).collect()
        streaming = pipeline.streaming_sessions()
        await pipeline.close()
        return streaming

    assert asyncio.run(run()) == {}


def test_close_ends_queued_and_inflight_requests(tmp_path):
    """Shutting down ends every pending submission with CANCELLED."""
    async def run():
        gate = asyncio.Event()
        provider = FakeProvider(["partial"], gate=gate)
        pipeline, store = _pipeline(tmp_path, provider)
        sid = store.create_session("s")
        first = pipeline.submit([{"role": "user", "content": "1"}], session_id=sid)
        second = pipeline.submit([{"role": "user", "content": "2"}], session_id=sid)

        for _ in range(100):
            if isinstance(pipeline.session_state(sid), Streaming):
                break
            await asyncio.sleep(0)

        await pipeline.close()
        events = await asyncio.wait_for(asyncio.gather(first.collect(), second.collect()), timeout=1)
        return events, pipeline

    (first_events, second_events), pipeline = asyncio.run(run())

    assert first_events[-1].code == ErrorCode.CANCELLED
    assert second_events == [ChatEvent.error(ErrorCode.CANCELLED, "Pipeline shut down")]
    assert pipeline.workers == {}
    assert pipeline.streaming_sessions() == {}


def test_clear_all_history_cancels_streaming_request(tmp_path):
    """Clearing history ends in-flight requests and nothing is written back."""
    async def run():
        gate = asyncio.Event()
        provider = FakeProvider(["partial"], gate=gate)
        pipeline, store = _pipeline(tmp_path, provider)
        automation = FakeAutomation()
        capture = SelectionCapture(automation, settle_delay=0, copy_wait=0)
        activation = ActivationMachine(FakeSurface(), capture, automation)
        service = AssistantService(pipeline.secrets, store, pipeline, activation, capture)

        submission = service.submit_chat([{"role": "user", "content": "q"}])
        for _ in range(100):
            if pipeline.streaming_sessions():
                break
            await asyncio.sleep(0)
        streaming = dict(pipeline.streaming_sessions())

        service.clear_all_history()
        gate.set()
        events = await asyncio.wait_for(submission.collect(), timeout=1)
        for _ in range(10):
            await asyncio.sleep(0)
        await pipeline.close()
        return streaming, events, store

    streaming, events, store = asyncio.run(run())

    assert len(streaming) == 1
    assert events[0].type == "session_created"
    assert events[-1].type == "error"
    assert events[-1].code == ErrorCode.CANCELLED
    assert store.list_sessions() == []
    assert store.db.execute("SELECT COUNT(*) FROM messages").fetchone()[0] == 0
