"""
Tests for the Chat Session Controller

Covers the interview flow with the offline interviewer, failure handling,
per-session turn serialization and disconnect/resume behaviour.
"""
import asyncio
import json
from unittest.mock import patch

import pytest

from discovery_ai.agents.chat_controller import (
    ChatSessionController,
    ChatState,
    ConnectionContext,
    SessionLockRegistry,
)
from discovery_ai.errors import (
    CompletionSourceFailure,
    InvalidMessage,
    NoActiveSession,
    SessionAccessDenied,
    SessionFrozen,
    SessionNotFound,
    StoreUnavailable,
    TurnInProgress,
)
from discovery_ai.llm.completion_source import CompletionFragment, CompletionSource
from discovery_ai.llm.prompts import CLOSING_MESSAGE, FOLLOW_UP_QUESTIONS, GREETING
from discovery_ai.schemas.chat_schemas import MessageRole

SCENARIO_FIRST = "Quero viajar de São Paulo com orçamento de R$3000 para fazer trilhas"
SCENARIO_SECOND = "é para lazer"


class TruncatedSource(CompletionSource):
    """Stream that ends without the completion flag"""

    name = "truncated"

    async def stream(self, session_id, prompt):
        yield CompletionFragment(text="meia resp")


class TestStartChat:

    @pytest.mark.unit
    async def test_new_session_gets_greeting(self, rule_based_controller, context, emitter, store):
        session = await rule_based_controller.start_chat(context, emitter)

        assert context.session_id == session.session_id
        assert context.state == ChatState.SESSION_ACTIVE

        (chunk,) = emitter.of("chatResponse")
        assert chunk["content"] == GREETING
        assert chunk["isComplete"] is True
        assert chunk["sessionId"] == session.session_id
        assert chunk["metadata"]["resumed"] is False

        stored = await store.get(session.session_id)
        assert [m.role for m in stored.messages] == [MessageRole.ASSISTANT]
        assert stored.questions_asked == 1

    @pytest.mark.unit
    async def test_resume_replays_last_assistant_message(self, rule_based_controller, context, emitter, new_emitter):
        session = await rule_based_controller.start_chat(context, emitter)
        await rule_based_controller.send_message(context, SCENARIO_FIRST, emitter)

        other_tab = ConnectionContext(user_id="user-1")
        replay = new_emitter()
        resumed = await rule_based_controller.start_chat(other_tab, replay, session.session_id)

        assert resumed.session_id == session.session_id
        (chunk,) = replay.of("chatResponse")
        assert chunk["metadata"]["resumed"] is True
        assert chunk["content"] == resumed.last_message(MessageRole.ASSISTANT).content
        assert len(resumed.messages) == 3

    @pytest.mark.unit
    async def test_resume_is_idempotent(self, rule_based_controller, context, emitter, store):
        session = await rule_based_controller.start_chat(context, emitter)

        for _ in range(3):
            await rule_based_controller.start_chat(ConnectionContext(user_id="user-1"), emitter, session.session_id)

        stored = await store.get(session.session_id)
        assert len(stored.messages) == 1
        assert len(store) == 1

    @pytest.mark.unit
    async def test_foreign_session_id_starts_fresh(self, rule_based_controller, context, emitter):
        owned = await rule_based_controller.start_chat(context, emitter)

        intruder = ConnectionContext(user_id="user-2")
        session = await rule_based_controller.start_chat(intruder, emitter, owned.session_id)

        assert session.session_id != owned.session_id
        assert session.user_id == "user-2"


class TestInterviewFlow:

    @pytest.mark.unit
    async def test_partial_profile_asks_follow_up(self, rule_based_controller, context, emitter, store):
        await rule_based_controller.start_chat(context, emitter)

        session = await rule_based_controller.send_message(context, SCENARIO_FIRST, emitter)

        data = session.collected_data
        assert data.origin_iata == "GRU"
        assert data.budget_in_brl == 300000
        assert data.activities == ["trilhas"]
        assert data.purpose is None
        assert not session.interview_complete
        assert context.state == ChatState.SESSION_ACTIVE

        final = emitter.final_chunks()[-1]
        assert final["content"] == ""
        assert final["metadata"]["nextQuestionKey"] == "purpose"
        assert final["metadata"]["interviewComplete"] is False
        assert FOLLOW_UP_QUESTIONS["purpose"] in final["metadata"]["message"]

        stored = await store.get(session.session_id)
        assert [m.role for m in stored.messages] == [
            MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT,
        ]
        # The structured payload never reaches the transcript
        assert "{" not in stored.messages[-1].content

    @pytest.mark.unit
    async def test_streamed_fragments_precede_final_chunk(self, rule_based_controller, context, emitter):
        await rule_based_controller.start_chat(context, emitter)
        emitter.events.clear()

        await rule_based_controller.send_message(context, SCENARIO_FIRST, emitter)

        chunks = emitter.of("chatResponse")
        assert len(chunks) > 1
        assert all(not c["isComplete"] for c in chunks[:-1])
        assert chunks[-1]["isComplete"]
        sequences = [c["metadata"]["sequence"] for c in chunks[:-1]]
        assert sequences == list(range(len(sequences)))
        assert len({c["metadata"]["turnId"] for c in chunks}) == 1

    @pytest.mark.unit
    async def test_purpose_completes_interview(self, rule_based_controller, context, emitter, store):
        await rule_based_controller.start_chat(context, emitter)
        await rule_based_controller.send_message(context, SCENARIO_FIRST, emitter)

        session = await rule_based_controller.send_message(context, SCENARIO_SECOND, emitter)

        assert session.collected_data.purpose == "lazer"
        assert session.interview_complete
        assert session.completed_at is not None
        assert session.recommended_destination is not None
        assert session.recommended_destination.iata != "GRU"
        assert context.state == ChatState.INTERVIEW_COMPLETE

        final = emitter.final_chunks()[-1]
        assert final["metadata"]["interviewComplete"] is True
        assert final["metadata"]["recommendedDestination"]["iata"] == session.recommended_destination.iata

        with pytest.raises(SessionFrozen):
            await rule_based_controller.send_message(context, "e agora?", emitter)

        stored = await store.get(session.session_id)
        assert stored.interview_complete
        assert len(stored.messages) == 5

    @pytest.mark.unit
    async def test_llm_destination_is_used_when_valid(self, store, locks, context, emitter, scripted_source):
        payload = {
            "conversation_stage": "recommendation_ready",
            "data_collected": {
                "origin_iata": "GRU", "budget_in_brl": 300000,
                "activities": ["praia"], "purpose": "lazer",
                "destination_name": "Salvador", "destination_iata": "SSA",
            },
            "next_question_key": None,
            "assistant_message": "Recomendo Salvador!",
            "is_final_recommendation": True,
        }
        source = scripted_source([["Recomendo Salvador!\n\n", json.dumps(payload)]])
        controller = ChatSessionController(store, source, locks=locks)
        await controller.start_chat(context, emitter)

        session = await controller.send_message(context, "tudo de uma vez", emitter)

        assert session.recommended_destination.iata == "SSA"
        assert session.messages[-1].content == "Recomendo Salvador!"

    @pytest.mark.unit
    async def test_destination_equal_to_origin_is_replaced(self, store, locks, context, emitter, scripted_source):
        payload = {
            "data_collected": {
                "origin_iata": "GRU", "budget_in_brl": 300000,
                "activities": ["trilhas"], "purpose": "lazer",
                "destination_name": "São Paulo", "destination_iata": "GRU",
            },
        }
        source = scripted_source([[json.dumps(payload)]])
        controller = ChatSessionController(store, source, locks=locks)
        await controller.start_chat(context, emitter)

        session = await controller.send_message(context, "pronto", emitter)

        assert session.interview_complete
        assert session.recommended_destination.iata == "FLN"
        # No text outside the JSON: the recommendation is written from the profile
        assert "Florianópolis" in session.messages[-1].content

    @pytest.mark.unit
    async def test_reply_without_payload_keeps_profile(self, store, locks, context, emitter, scripted_source):
        source = scripted_source([["Desculpe, ", "pode repetir?"]])
        controller = ChatSessionController(store, source, locks=locks)
        await controller.start_chat(context, emitter)

        session = await controller.send_message(context, "blá", emitter)

        assert session.messages[-1].content == "Desculpe, pode repetir?"
        assert session.collected_data.origin_iata is None
        assert emitter.final_chunks()[-1]["metadata"]["extracted"] is False

    @pytest.mark.unit
    async def test_prompt_carries_history_and_profile(self, store, locks, context, emitter, scripted_source):
        source = scripted_source()
        controller = ChatSessionController(store, source, locks=locks, history_window=1)
        await controller.start_chat(context, emitter)

        await controller.send_message(context, "Moro em Recife", emitter)

        (prompt,) = source.prompts
        assert prompt.latest_user_message == "Moro em Recife"
        assert prompt.messages == [{"role": "user", "content": "Moro em Recife"}]
        assert prompt.to_chat_messages()[0]["role"] == "system"


class TestFailures:

    @pytest.mark.unit
    async def test_mid_stream_failure_keeps_only_user_message(self, store, locks, context, emitter, scripted_source):
        source = scripted_source([
            ["Ótimo, ", "anotei ", CompletionSourceFailure(details={"reason": "connection reset"})],
        ])
        controller = ChatSessionController(store, source, locks=locks)
        session = await controller.start_chat(context, emitter)
        emitter.events.clear()

        with pytest.raises(CompletionSourceFailure):
            await controller.send_message(context, "Moro em Recife", emitter)

        stored = await store.get(session.session_id)
        assert [m.role for m in stored.messages] == [MessageRole.ASSISTANT, MessageRole.USER]
        assert stored.collected_data.origin_iata is None
        assert len(emitter.of("chatResponse")) == 2
        assert emitter.final_chunks() == []
        assert context.state == ChatState.SESSION_ACTIVE
        assert len(locks) == 0

    @pytest.mark.unit
    async def test_retry_after_failure_reuses_user_message(self, store, locks, context, emitter, scripted_source):
        source = scripted_source([
            ["Ótimo", CompletionSourceFailure()],
            ["Anotado!"],
        ])
        controller = ChatSessionController(store, source, locks=locks)
        await controller.start_chat(context, emitter)

        with pytest.raises(CompletionSourceFailure):
            await controller.send_message(context, "Moro em Recife", emitter)
        session = await controller.send_message(context, "Moro em Recife", emitter)

        assert [m.role for m in session.messages] == [
            MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT,
        ]

    @pytest.mark.unit
    async def test_failed_final_save_keeps_previous_version(self, store, locks, context, emitter, scripted_source):
        payload = {
            "data_collected": {
                "origin_name": "Recife",
                "origin_iata": "REC",
                "budget_in_brl": 300000,
                "activities": ["praia"],
                "purpose": "lazer",
                "destination_name": "Salvador",
                "destination_iata": "SSA",
            },
            "is_final_recommendation": True,
        }
        source = scripted_source([["Perfeito! ", json.dumps(payload)]])
        controller = ChatSessionController(store, source, locks=locks)
        session = await controller.start_chat(context, emitter)
        emitter.events.clear()

        real_save = store.save
        saves = []

        async def save_then_fail(snapshot):
            saves.append(snapshot.session_id)
            if len(saves) == 2:
                raise StoreUnavailable()
            await real_save(snapshot)

        with patch.object(store, "save", side_effect=save_then_fail):
            with pytest.raises(StoreUnavailable):
                await controller.send_message(context, "Moro em Recife", emitter)

        stored = await store.get(session.session_id)
        assert [m.role for m in stored.messages] == [MessageRole.ASSISTANT, MessageRole.USER]
        assert stored.interview_complete is False
        assert stored.recommended_destination is None
        assert stored.collected_data.origin_iata is None
        assert emitter.final_chunks() == []
        assert context.state == ChatState.SESSION_ACTIVE
        assert len(locks) == 0

    @pytest.mark.unit
    async def test_stream_without_completion_flag_fails(self, store, locks, context, emitter):
        controller = ChatSessionController(store, TruncatedSource(), locks=locks)
        session = await controller.start_chat(context, emitter)

        with pytest.raises(CompletionSourceFailure):
            await controller.send_message(context, "oi", emitter)

        stored = await store.get(session.session_id)
        assert stored.messages[-1].role == MessageRole.USER

    @pytest.mark.unit
    async def test_validation_errors(self, rule_based_controller, context, emitter, store, locks):
        with pytest.raises(NoActiveSession):
            await rule_based_controller.send_message(context, "oi", emitter)

        await rule_based_controller.start_chat(context, emitter)

        with pytest.raises(InvalidMessage):
            await rule_based_controller.send_message(context, "   ", emitter)

        short = ChatSessionController(store, rule_based_controller.completion_source, locks=locks, message_max_length=10)
        with pytest.raises(InvalidMessage):
            await short.send_message(context, "mensagem longa demais", emitter)

    @pytest.mark.unit
    async def test_expired_session_unbinds(self, rule_based_controller, context, emitter, store):
        session = await rule_based_controller.start_chat(context, emitter)
        await store.delete(session.session_id)

        with pytest.raises(SessionNotFound):
            await rule_based_controller.send_message(context, "oi", emitter)

        assert context.session_id is None
        assert context.state == ChatState.CONNECTED

    @pytest.mark.unit
    async def test_session_bound_to_other_user_is_denied(self, rule_based_controller, context, emitter):
        session = await rule_based_controller.start_chat(context, emitter)
        forged = ConnectionContext(user_id="user-2", session_id=session.session_id, state=ChatState.SESSION_ACTIVE)

        with pytest.raises(SessionAccessDenied):
            await rule_based_controller.send_message(forged, "oi", emitter)


class TestConcurrency:

    @pytest.mark.unit
    async def test_second_message_while_streaming_is_rejected(self, store, locks, context, emitter, gated_source):
        source = gated_source
        controller = ChatSessionController(store, source, locks=locks)
        session = await controller.start_chat(context, emitter)

        turn = asyncio.create_task(controller.send_message(context, "Moro em Recife", emitter))
        await source.started.wait()
        assert context.state == ChatState.STREAMING

        with pytest.raises(TurnInProgress):
            await controller.send_message(context, "outra coisa", emitter)

        source.release.set()
        await turn

        stored = await store.get(session.session_id)
        assert [m.content for m in stored.messages if m.role == MessageRole.USER] == ["Moro em Recife"]
        assert stored.messages[-1].role == MessageRole.ASSISTANT
        assert context.state == ChatState.SESSION_ACTIVE

    @pytest.mark.unit
    async def test_end_chat_waits_for_running_turn(self, store, locks, context, emitter, gated_source):
        source = gated_source
        controller = ChatSessionController(store, source, locks=locks)
        session = await controller.start_chat(context, emitter)

        turn = asyncio.create_task(controller.send_message(context, "Moro em Recife", emitter))
        await source.started.wait()
        ending = asyncio.create_task(controller.end_chat(context, emitter))
        await asyncio.sleep(0)
        assert not ending.done()

        source.release.set()
        await asyncio.gather(turn, ending)

        names = emitter.names()
        last_response = max(i for i, name in enumerate(names) if name == "chatResponse")
        assert names.index("chatEnded") > last_response

        stored = await store.get(session.session_id)
        assert stored.messages[-1].role == MessageRole.ASSISTANT
        assert len(locks) == 0

    @pytest.mark.unit
    async def test_disconnect_mid_stream_still_persists(self, store, locks, context, emitter, gated_source, new_emitter):
        source = gated_source
        controller = ChatSessionController(store, source, locks=locks)
        session = await controller.start_chat(context, emitter)

        turn = asyncio.create_task(controller.send_message(context, "Moro em Recife", emitter))
        await source.started.wait()
        controller.disconnect(context)
        source.release.set()
        await turn

        assert context.state == ChatState.DISCONNECTED
        stored = await store.get(session.session_id)
        assert stored.messages[-1].content == source.text

        # A new connection picks up where the old one stopped
        replay = new_emitter()
        await controller.start_chat(ConnectionContext(user_id="user-1"), replay, session.session_id)
        assert replay.of("chatResponse")[0]["content"] == source.text

    @pytest.mark.unit
    async def test_sessions_do_not_block_each_other(self, store, locks, emitter, gated_source):
        source = gated_source
        controller = ChatSessionController(store, source, locks=locks)
        first = ConnectionContext(user_id="user-1")
        second = ConnectionContext(user_id="user-2")
        await controller.start_chat(first, emitter)
        await controller.start_chat(second, emitter)

        turn = asyncio.create_task(controller.send_message(first, "Moro em Recife", emitter))
        await source.started.wait()

        assert not locks.is_busy(second.session_id)
        source.release.set()
        await turn


class TestEndChatAndInfo:

    @pytest.mark.unit
    async def test_end_chat_is_idempotent(self, rule_based_controller, context, emitter, store):
        session = await rule_based_controller.start_chat(context, emitter)

        await rule_based_controller.end_chat(context, emitter)
        await rule_based_controller.end_chat(context, emitter)

        (ended,) = emitter.of("chatEnded")
        assert ended["message"] == CLOSING_MESSAGE
        assert ended["sessionId"] == session.session_id
        assert context.state == ChatState.ENDED
        # Kept for history unless configured otherwise
        assert (await store.get(session.session_id)).session_id == session.session_id

        with pytest.raises(NoActiveSession):
            await rule_based_controller.send_message(context, "oi", emitter)

    @pytest.mark.unit
    async def test_end_chat_can_delete(self, store, locks, context, emitter, scripted_source):
        controller = ChatSessionController(store, scripted_source(), locks=locks, delete_on_end=True)
        session = await controller.start_chat(context, emitter)

        await controller.end_chat(context, emitter)

        with pytest.raises(SessionNotFound):
            await store.get(session.session_id)

    @pytest.mark.unit
    async def test_end_chat_without_session(self, rule_based_controller, context, emitter):
        with pytest.raises(NoActiveSession):
            await rule_based_controller.end_chat(context, emitter)

    @pytest.mark.unit
    async def test_session_info(self, rule_based_controller, context, emitter):
        await rule_based_controller.session_info(context, emitter)
        session = await rule_based_controller.start_chat(context, emitter)
        await rule_based_controller.session_info(context, emitter)

        before, after = emitter.of("sessionInfo")
        assert before["hasActiveSession"] is False
        assert after["hasActiveSession"] is True
        assert after["sessionId"] == session.session_id
        assert after["completion"]["missingFields"] == ["origin_iata", "budget_in_brl", "activities", "purpose"]
        assert after["messages"][0]["content"] == GREETING


class TestSessionLockRegistry:

    @pytest.mark.unit
    async def test_locks_are_released_and_dropped(self):
        registry = SessionLockRegistry()

        async with registry.hold("s1"):
            assert registry.is_busy("s1")
            assert not registry.is_busy("s2")

        assert not registry.is_busy("s1")
        assert len(registry) == 0
