"""
Tests for the chat session controller.

These tests drive whole exchanges with a scripted completion client and
verify history, rendering callbacks, survey mutation and the single-flight
guard.
"""

import asyncio

import pytest

from survey_editor.app.config import Settings
from survey_editor.app.errors import AttachmentError, CompletionTransportError, ExchangeInFlight
from survey_editor.survey.model import Survey
from survey_editor.tools.attachments import ExtractedText, Upload
from survey_editor.tools.markdown import BulletList, Paragraph
from survey_editor.workflows.session import FALLBACK_REPLY, GREETING, ChatSession
from survey_editor.workflows.state import ExchangePhase


class ScriptedClient:
    def __init__(self, deltas=(), error=None):
        self.deltas = list(deltas)
        self.error = error
        self.requests = []

    async def stream(self, messages):
        self.requests.append(messages)
        for d in self.deltas:
            yield d
        if self.error is not None:
            raise self.error


class BlockingClient:
    """Yields one delta, then waits until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def stream(self, messages):
        yield "Hi"
        self.started.set()
        await self.release.wait()
        yield " there"


class ClosingClient:
    """Records whether its stream was closed."""

    def __init__(self):
        self.closed = False

    async def stream(self, messages):
        try:
            yield "a"
            yield "b"
        finally:
            self.closed = True


class FakeExtractor:
    async def extract(self, upload):
        if upload.name.endswith(".pdf"):
            raise AttachmentError(f"No extractable text in {upload.name}")
        return ExtractedText(name=upload.name, text=upload.data.decode("utf-8"))


class MemoryStore:
    def __init__(self, value=""):
        self.value = value
        self.writes = []

    def get(self):
        return self.value

    def set(self, value):
        self.value = value
        self.writes.append(value)


def make_session(survey, client, **kwargs):
    return ChatSession(survey, client, survey_title="Music Study", **kwargs)


class TestExchange:
    """Complete exchanges."""

    def test_delete_question_end_to_end(self, survey):
        client = ScriptedClient(["Sure, removing it. ", "[DELETE_", "QUESTION: 2]"])
        session = make_session(survey, client)

        result = asyncio.run(session.send("delete question 2"))

        assert len(session.survey) == 1
        assert session.survey.questions[0] == survey.questions[0]
        assert result.survey_changed
        assert result.message.text == "Sure, removing it."
        assert result.message.complete
        assert session.phase is ExchangePhase.IDLE

    def test_history_and_request(self, survey):
        client = ScriptedClient(["Hello!"])
        session = make_session(survey, client)
        asyncio.run(session.send("  hi  "))

        assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]
        assert session.messages[0].text == GREETING
        assert session.messages[1].text == "hi"

        request = client.requests[0]
        assert request[0]["role"] == "system"
        assert "Understand musicians" in request[0]["content"]
        assert '2. "Which instrument?"' in request[0]["content"]
        assert [m["role"] for m in request[1:]] == ["assistant", "user"]
        assert request[-1]["content"] == "hi"

    def test_second_exchange_sees_previous_reply(self, survey):
        client = ScriptedClient(["Done [STUDY_GOAL: New goal]"])
        session = make_session(survey, client)
        asyncio.run(session.send("change goal"))
        asyncio.run(session.send("thanks"))

        second = client.requests[1]
        assert "New goal" in second[0]["content"]
        assert second[-2] == {"role": "assistant", "content": "Done"}

    def test_updates_per_delta(self, survey):
        seen = []
        client = ScriptedClient(["- a\n", "- b\n", "c [DELETE_QUESTION: 1]"])
        session = make_session(survey, client, on_update=lambda m, tree: seen.append((m.text, tree)))
        asyncio.run(session.send("go"))

        assert [text for text, _ in seen] == [
            "- a\n",
            "- a\n- b\n",
            "- a\n- b\nc [DELETE_QUESTION: 1]",
            "- a\n- b\nc",
        ]
        final_tree = seen[-1][1]
        assert [type(b) for b in final_tree] == [BulletList, Paragraph]

    def test_stream_closed_when_update_fails(self, survey):
        def explode(message, tree):
            raise ValueError("render failed")

        async def scenario():
            client = ClosingClient()
            session = make_session(survey, client, on_update=explode)
            with pytest.raises(ValueError):
                await session.send("go")
            return client, session

        client, session = asyncio.run(scenario())
        assert client.closed
        assert session.phase is ExchangePhase.IDLE
        assert session.messages[-1].error

    def test_empty_reply(self, survey):
        session = make_session(survey, ScriptedClient([]))
        result = asyncio.run(session.send("hello?"))
        assert result.message.text == ""
        assert not result.survey_changed
        assert session.phase is ExchangePhase.IDLE

    def test_invalid_command_does_not_block_valid_one(self, survey):
        client = ScriptedClient(['[DELETE_QUESTION: 9] [EDIT_QUESTION: {"index": 0}] [STUDY_GOAL: Better goal]'])
        session = make_session(survey, client)
        result = asyncio.run(session.send("update"))
        assert session.survey.study_goal == "Better goal"
        assert session.survey.questions == survey.questions
        assert len(result.commands) == 1
        assert result.message.text == ""

    def test_blank_input_ignored(self, survey):
        client = ScriptedClient(["x"])
        session = make_session(survey, client)
        assert asyncio.run(session.send("   ")) is None
        assert client.requests == []
        assert len(session.messages) == 1


class TestTransportFailure:
    """Transport errors end the exchange with a fallback message."""

    def test_fallback_message(self, survey):
        client = ScriptedClient(["partial [DELETE_QUESTION: 1]"], error=CompletionTransportError("boom", 502))
        session = make_session(survey, client)
        result = asyncio.run(session.send("delete question 1"))

        assert result.error
        assert result.message.text == FALLBACK_REPLY
        assert result.message.error
        assert session.survey is survey
        assert session.phase is ExchangePhase.IDLE

    def test_fallback_not_sent_back(self, survey):
        session = make_session(survey, ScriptedClient(error=CompletionTransportError("down")))
        asyncio.run(session.send("first"))
        session.client = ScriptedClient(["ok"])
        asyncio.run(session.send("second"))

        request = session.client.requests[0]
        assert FALLBACK_REPLY not in [m["content"] for m in request]
        assert [m["content"] for m in request if m["role"] == "user"] == ["first", "second"]

    def test_unexpected_error_resets_phase(self, survey):
        session = make_session(survey, ScriptedClient(["x"], error=RuntimeError("bug")))
        with pytest.raises(RuntimeError):
            asyncio.run(session.send("hi"))
        assert session.phase is ExchangePhase.IDLE
        assert session.messages[-1].text == FALLBACK_REPLY


class TestSingleFlight:
    """Only one exchange at a time."""

    def test_second_send_rejected_while_streaming(self, survey):
        async def scenario():
            client = BlockingClient()
            session = make_session(survey, client)
            task = asyncio.create_task(session.send("first"))
            await client.started.wait()

            assert session.streaming
            assert session.phase is ExchangePhase.STREAMING
            with pytest.raises(ExchangeInFlight):
                await session.send("second")

            client.release.set()
            result = await task
            return session, result

        session, result = asyncio.run(scenario())
        assert result.message.text == "Hi there"
        assert [m.text for m in session.messages if m.role == "user"] == ["first"]
        assert not session.streaming

    def test_guard_is_synchronous(self, survey):
        async def scenario():
            client = BlockingClient()
            session = make_session(survey, client)
            first = session.send("first")
            second = session.send("second")
            task = asyncio.ensure_future(first)
            await asyncio.sleep(0)
            with pytest.raises(ExchangeInFlight):
                await second
            client.release.set()
            await task

        asyncio.run(scenario())


class TestAttachments:
    """Attachments are extracted before the request is sent."""

    def test_mixed_attachments(self, survey):
        client = ScriptedClient(["Got it"])
        session = make_session(survey, client, extractor=FakeExtractor())
        uploads = [Upload("notes.txt", b"Brand voice: playful"), Upload("scan.pdf", b"%PDF")]
        asyncio.run(session.send("use this", uploads))

        user = session.messages[1]
        assert [a.name for a in user.attachments] == ["notes.txt", "scan.pdf"]
        assert user.attachments[0].ok
        assert user.attachments[1].error == "No extractable text in scan.pdf"
        assert user.text == "use this"

        content = client.requests[0][-1]["content"]
        assert "[Attached file: notes.txt]\nBrand voice: playful" in content
        assert "scan.pdf" not in content

    def test_attachments_only(self, survey):
        client = ScriptedClient(["ok"])
        session = make_session(survey, client, extractor=FakeExtractor())
        result = asyncio.run(session.send("", [Upload("a.txt", b"hello")]))
        assert result is not None
        assert client.requests[0][-1]["content"] == "[Attached file: a.txt]\nhello"


    def test_all_attachments_failed(self, survey):
        client = ScriptedClient(["ok"])
        session = make_session(survey, client, extractor=FakeExtractor())
        assert asyncio.run(session.send("  ", [Upload("scan.pdf", b"%PDF")])) is None

        assert client.requests == []
        assert session.phase is ExchangePhase.IDLE
        user = session.messages[-1]
        assert user.role == "user"
        assert user.attachments[0].error == "No extractable text in scan.pdf"

        asyncio.run(session.send("now with text"))
        assert [m for m in client.requests[0] if m["content"] == ""] == []


class TestCustomization:
    """Settings store integration."""

    def test_read_once_and_sent(self, survey):
        store = MemoryStore("Always answer in a friendly tone.")
        client = ScriptedClient(["ok"])
        session = make_session(survey, client, settings_store=store)
        asyncio.run(session.send("hi"))
        assert "Always answer in a friendly tone." in client.requests[0][0]["content"]

    def test_save(self, survey):
        store = MemoryStore()
        client = ScriptedClient(["ok"])
        session = make_session(survey, client, settings_store=store)
        session.save_customization("Be brief.")
        asyncio.run(session.send("hi"))
        assert store.writes == ["Be brief."]
        assert "Be brief." in client.requests[0][0]["content"]


class TestFromSettings:
    def test_builds_session(self, tmp_path):
        settings = Settings(
            db_path=str(tmp_path / "app.db"),
            log_level="INFO",
            log_json=False,
            llm_base_url="http://llm.test/v1",
            llm_api_key="test-key",
            llm_model="test-model",
            llm_timeout_seconds=5.0,
            survey_title="Share Behavior Research",
            attachment_max_chars=100,
        )
        session = ChatSession.from_settings(settings)
        assert len(session.survey) == 2
        assert session.customization == ""
        assert session.client.model == "test-model"
        assert session.extractor.max_chars == 100

    def test_example_conversation_seeded(self, tmp_path):
        settings = Settings(
            db_path=str(tmp_path / "app.db"),
            log_level="INFO",
            log_json=False,
            llm_base_url="http://llm.test/v1",
            llm_api_key="test-key",
            llm_model="test-model",
            llm_timeout_seconds=5.0,
            survey_title="Share Behavior Research",
            attachment_max_chars=100,
        )
        session = ChatSession.from_settings(settings)
        assert [m.role for m in session.messages] == ["assistant", "user", "assistant"]
        assert session.messages[0].text == GREETING
        assert "tone of voice" in session.messages[1].text

        own = ChatSession.from_settings(settings, survey=Survey.create([{"text": "Q"}]))
        assert [m.text for m in own.messages] == [GREETING]


class TestHistory:
    def test_seed_turns_sent(self, survey):
        client = ScriptedClient(["ok"])
        session = make_session(survey, client, history=[("user", "earlier"), ("assistant", "reply")])
        asyncio.run(session.send("now"))
        contents = [m["content"] for m in client.requests[0][1:]]
        assert contents == [GREETING, "earlier", "reply", "now"]
