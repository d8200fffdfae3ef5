"""Tests for GenerationController: the per-query state machine."""

import asyncio
import threading

import pytest

from conftest import FakeRetrievalService, wait_until
from smolchat.Chat.generation_controller import GenerationController, GenerationOutcome
from smolchat.Event_Handlers.session_events import (
    GeneratingChanged,
    GenerationMetricsRecorded,
    PartialResponseAppended,
    PartialResponseReplaced,
    RecoverableErrorRaised,
)
from smolchat.exceptions import BackendLoadError, GenerationError
from smolchat.RAG_Search.prompt_builder import RetrievalPromptBuilder
from smolchat.RAG_Search.retrieval_service import RetrievalServiceHandle
from smolchat.state.chat_models import Chat, UNASSIGNED_MODEL_ID
from smolchat.state.session_state import ModelLoadState


PROVENANCE_2_PLUS_2 = "Context alpha\n\nContext beta\n\nQuery: 2+2"


class BlockingRetrievalService(FakeRetrievalService):
    """Holds get_prompt until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_prompt(self, query):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().get_prompt(query)


# ========== Completed generations ==========

@pytest.mark.asyncio
async def test_task_chat_answers_and_keeps_only_latest_turn(state, controller, store, model, fake_backend):
    task_chat = store.add_chat(Chat(name="Math", llm_model_id=model.id, is_task=True))
    store.add_user_message(task_chat.id, "earlier question")
    store.add_assistant_message(task_chat.id, "earlier answer")
    state.set_current_chat(task_chat)

    await controller.start_generation("2+2", task_chat)
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.COMPLETED
    assert result.response == "4"
    messages = store.get_messages(task_chat.id)
    assert [(m.message, m.is_user_message) for m in messages] == [
        (PROVENANCE_2_PLUS_2, True),
        ("4", False),
    ]
    assert state.partial_response == "4"
    assert state.is_generating is False
    assert state.generation_speed == 12.5
    assert state.generation_time_secs == 0
    # Task chats run without conversation history
    create_call = next(call for call in fake_backend.calls if call[0] == "create")
    assert create_call[4] is False


@pytest.mark.asyncio
async def test_completion_updates_context_usage_and_date_used(state, controller, store, chat):
    state.set_current_chat(chat)

    await controller.start_generation("hello", chat)
    await controller.wait()

    stored = store.get_chat(chat.id)
    assert stored.context_size_consumed == 42
    assert stored.date_used >= chat.date_used
    assert state.current_chat.context_size_consumed == 42


@pytest.mark.asyncio
async def test_backend_receives_grounded_message(controller, chat, fake_backend):
    await controller.start_generation("what is rag?", chat)
    await controller.wait()

    assert ("generate", "[grounded] what is rag?") in fake_backend.calls
    assert ("system_prompt", "Be brief.") in fake_backend.calls


@pytest.mark.asyncio
async def test_fragments_are_appended_in_arrival_order(controller, chat, fake_backend, recorder):
    fake_backend.fragments = ["Hel", "lo", " ", "Hel", "lo"]

    await controller.start_generation("greet", chat)
    await controller.wait()

    appended = recorder.of_type(PartialResponseAppended)
    assert [event.fragment for event in appended] == ["Hel", "lo", " ", "Hel", "lo"]
    assert appended[-1].text == "Hello Hello"


@pytest.mark.asyncio
async def test_think_spans_are_quoted_in_final_text(state, controller, chat, store, fake_backend, recorder):
    fake_backend.fragments = ["<think>", "let me\nsee", "</think>", "Paris"]

    await controller.start_generation("capital of France?", chat)
    result = await controller.wait()

    assert result.response == "<quote>let me\nsee</quote>Paris"
    assert state.partial_response == "<quote>let me\nsee</quote>Paris"
    replaced = recorder.of_type(PartialResponseReplaced)
    assert len(replaced) == 1
    assert store.get_messages(chat.id)[-1].message == "<quote>let me\nsee</quote>Paris"


@pytest.mark.asyncio
async def test_provenance_is_recorded_before_first_token(state, controller, chat, store):
    seen_at_first_token = []

    def on_event(event):
        if isinstance(event, PartialResponseAppended) and not seen_at_first_token:
            seen_at_first_token.extend(m.message for m in store.get_messages(chat.id))

    state.channel.subscribe(on_event)
    await controller.start_generation("2+2", chat)
    await controller.wait()

    assert seen_at_first_token == [PROVENANCE_2_PLUS_2]


@pytest.mark.asyncio
async def test_events_follow_generation_order(controller, chat, recorder):
    await controller.start_generation("2+2", chat)
    await controller.wait()

    relevant = [
        event for event in recorder.events
        if isinstance(event, (GeneratingChanged, PartialResponseAppended,
                              PartialResponseReplaced, GenerationMetricsRecorded))
    ]
    assert [type(event).__name__ for event in relevant] == [
        "GeneratingChanged",
        "PartialResponseAppended",
        "PartialResponseReplaced",
        "GenerationMetricsRecorded",
        "GeneratingChanged",
    ]
    assert relevant[0].is_generating is True
    assert relevant[-1].is_generating is False
    sequences = [event.sequence for event in recorder.events]
    assert sequences == sorted(sequences)


# ========== Not started ==========

@pytest.mark.asyncio
async def test_chat_without_model_requests_selection(state, controller, store, recorder):
    bare_chat = store.add_chat(Chat(name="No model", llm_model_id=UNASSIGNED_MODEL_ID))

    await controller.start_generation("hi", bare_chat)
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.NOT_STARTED
    assert state.show_select_model_dialog is True
    assert state.model_load_state is ModelLoadState.NOT_LOADED
    assert store.get_messages(bare_chat.id) == []
    assert not recorder.of_type(GeneratingChanged)


@pytest.mark.asyncio
async def test_model_load_failure_ends_without_generation_error(state, controller, chat, store, fake_backend, recorder):
    fake_backend.create_error = RuntimeError("bad gguf header")

    await controller.start_generation("hi", chat)
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.NOT_STARTED
    assert state.model_load_state is ModelLoadState.FAILURE
    alerts = recorder.of_type(RecoverableErrorRaised)
    assert len(alerts) == 1
    assert alerts[0].alert.title == "Error loading the model"
    assert isinstance(alerts[0].error, BackendLoadError)
    assert store.get_messages(chat.id) == []


# ========== Errors ==========

@pytest.mark.asyncio
async def test_mid_stream_failure_raises_one_recoverable_error(state, controller, chat, store, fake_backend, recorder):
    fake_backend.fragments = ["par", "tial"]
    fake_backend.stream_error = RuntimeError("decode failed")

    await controller.start_generation("hi", chat)
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.ERRORED
    assert "decode failed" in result.error
    assert state.partial_response == ""
    assert state.is_generating is False
    assert state.model_load_state is ModelLoadState.SUCCESS
    alerts = recorder.of_type(RecoverableErrorRaised)
    assert len(alerts) == 1
    assert isinstance(alerts[0].error, GenerationError)
    assert isinstance(alerts[0].error.__cause__, RuntimeError)
    alert = alerts[0].alert
    assert alert.title == "An error occurred"
    assert alert.text == "The app is unable to process the query. The error message is: decode failed"
    assert alert.primary_label == "Change model"
    # Provenance was recorded, the answer was not
    assert [m.is_user_message for m in store.get_messages(chat.id)] == [True]


@pytest.mark.asyncio
async def test_retrieval_not_ready_is_a_generation_error(state, lifecycle, store, chat, recorder):
    handle = RetrievalServiceHandle(FakeRetrievalService())
    generation = GenerationController(state, lifecycle, RetrievalPromptBuilder(handle), store)

    await generation.start_generation("hi", chat)
    result = await generation.wait()

    assert result.outcome is GenerationOutcome.ERRORED
    assert "have not been loaded" in recorder.of_type(RecoverableErrorRaised)[0].alert.text
    assert state.is_generating is False
    assert store.get_messages(chat.id) == []
    await generation.aclose()


@pytest.mark.asyncio
async def test_too_few_contexts_is_a_generation_error(state, lifecycle, store, chat, retrieval_assets):
    handle = RetrievalServiceHandle(FakeRetrievalService(contexts=["only one"]))
    await handle.initialize(retrieval_assets)
    generation = GenerationController(state, lifecycle, RetrievalPromptBuilder(handle), store)

    await generation.start_generation("hi", chat)
    result = await generation.wait()

    assert result.outcome is GenerationOutcome.ERRORED
    assert "at least 2" in result.error
    await generation.aclose()


# ========== Cancellation ==========

@pytest.mark.asyncio
async def test_stop_mid_stream_leaves_no_trace(state, controller, chat, store, fake_backend, recorder):
    fake_backend.fragments = ["a", "b", "c"]
    fake_backend.gate = threading.Event()

    await controller.start_generation("hi", chat)
    await wait_until(lambda: state.partial_response == "a")

    controller.stop()
    assert state.is_generating is False
    assert state.partial_response == ""
    stopped_at = recorder.events[-1].sequence

    fake_backend.gate.set()
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.CANCELLED
    assert state.partial_response == ""
    assert state.is_generating is False
    assert [event for event in recorder.events if event.sequence > stopped_at] == []
    assert not recorder.of_type(GenerationMetricsRecorded)
    assert [m.is_user_message for m in store.get_messages(chat.id)] == [True]


@pytest.mark.asyncio
async def test_stop_during_prompt_building(state, lifecycle, store, chat, retrieval_assets, recorder):
    blocking = BlockingRetrievalService()
    handle = RetrievalServiceHandle(blocking)
    await handle.initialize(retrieval_assets)
    generation = GenerationController(state, lifecycle, RetrievalPromptBuilder(handle), store)

    await generation.start_generation("hi", chat)
    await wait_until(blocking.entered.is_set)
    generation.stop()
    blocking.release.set()
    result = await generation.wait()

    assert result.outcome is GenerationOutcome.CANCELLED
    assert store.get_messages(chat.id) == []
    assert not recorder.of_type(PartialResponseAppended)
    await generation.aclose()


@pytest.mark.asyncio
async def test_stop_during_model_load(state, controller, chat, store, fake_backend, recorder):
    created = threading.Event()
    release = threading.Event()
    original_create = fake_backend.create

    def slow_create(*args):
        created.set()
        release.wait(timeout=5)
        original_create(*args)

    fake_backend.create = slow_create

    await controller.start_generation("hi", chat)
    await wait_until(created.is_set)
    controller.stop()
    release.set()
    result = await controller.wait()

    assert result.outcome is GenerationOutcome.CANCELLED
    assert store.get_messages(chat.id) == []
    assert [event.is_generating for event in recorder.of_type(GeneratingChanged)] == []


@pytest.mark.asyncio
async def test_blank_query_is_rejected(controller, chat):
    with pytest.raises(GenerationError):
        await controller.start_generation(" \n", chat)
    assert controller.session is None


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_safe_when_idle(controller, recorder):
    controller.stop()
    controller.stop()
    assert recorder.events == []
    assert await controller.wait() is None


@pytest.mark.asyncio
async def test_new_query_cancels_running_generation_first(state, controller, chat, store, fake_backend):
    fake_backend.fragments = ["a", "b"]
    fake_backend.gate = threading.Event()

    first = await controller.start_generation("first", chat)
    await wait_until(lambda: state.partial_response == "a")

    asyncio.get_running_loop().call_later(0.05, fake_backend.gate.set)
    second = await controller.start_generation("second", chat)
    second_result = await controller.wait()

    assert first.task.result().outcome is GenerationOutcome.CANCELLED
    assert second.id != first.id
    assert second_result.outcome is GenerationOutcome.COMPLETED
    assert second_result.response == "ab"
    messages = [(m.message.rsplit("Query: ", 1)[-1], m.is_user_message) for m in store.get_messages(chat.id)]
    assert messages == [("first", True), ("second", True), ("ab", False)]


@pytest.mark.asyncio
async def test_task_cancelled_mid_stream_leaves_session_idle(state, controller, chat, store, fake_backend, recorder):
    fake_backend.fragments = ["a", "b", "c"]
    fake_backend.gate = threading.Event()

    session = await controller.start_generation("hi", chat)
    await wait_until(lambda: state.partial_response == "a")

    session.task.cancel()
    result = await controller.wait()
    fake_backend.gate.set()

    assert result.outcome is GenerationOutcome.CANCELLED
    assert session.token.is_cancelled
    assert state.is_generating is False
    assert state.partial_response == ""
    assert not recorder.of_type(GenerationMetricsRecorded)
    assert [m.is_user_message for m in store.get_messages(chat.id)] == [True]


@pytest.mark.asyncio
async def test_task_cancelled_before_it_runs_is_reported_as_cancelled(state, controller, chat, store):
    session = await controller.start_generation("hi", chat)
    session.task.cancel()

    result = await controller.wait()

    assert result.outcome is GenerationOutcome.CANCELLED
    assert result.chat_id == chat.id
    assert state.is_generating is False
    assert store.get_messages(chat.id) == []
    await controller.aclose()
    assert controller.session is None
