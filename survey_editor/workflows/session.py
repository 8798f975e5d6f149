# survey_editor/workflows/session.py
from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from survey_editor.agents.commands import Command, apply_commands, extract_commands
from survey_editor.agents.completion import CompletionClient
from survey_editor.agents.prompts import build_messages
from survey_editor.app.config import Settings
from survey_editor.app.errors import CompletionTransportError, ExchangeInFlight
from survey_editor.app.logging import exchange_context, get_logger
from survey_editor.db.repository import SettingsRepository
from survey_editor.survey.examples import EXAMPLE_CONVERSATION, build_example_survey
from survey_editor.survey.model import Survey
from survey_editor.tools.attachments import (
    HttpTextExtractor,
    LocalTextExtractor,
    TextExtractor,
    Upload,
    extract_all,
)
from survey_editor.tools.markdown import Block, render_markdown

from .state import ChatMessage, ExchangePhase, ExchangeStateMachine, Role

logger = get_logger(__name__)

GREETING = "Done! Your study is ready to review and launch.\nWhat would you like to do next?"
FALLBACK_REPLY = "Sorry, I couldn't reach the assistant just now. Please try again."


class CompletionStream(Protocol):
    def stream(self, messages: List[Dict[str, str]]) -> AsyncGenerator[str, None]: ...


class SettingsStore(Protocol):
    def get(self) -> str: ...

    def set(self, value: str) -> None: ...


UpdateCallback = Callable[[ChatMessage, Tuple[Block, ...]], None]


@dataclass(frozen=True)
class ExchangeResult:
    message: ChatMessage
    commands: Tuple[Command, ...] = ()
    survey_changed: bool = False
    error: bool = False


class ChatSession:
    """
    One operator's chat with the editing assistant.

    Holds the conversation and the live survey. `send` runs a whole exchange:
    extract attachments, stream the reply (re-rendering it after every
    delta), then pull directive tags out of the finished reply and apply them
    to the survey as one batch. Only one exchange may run at a time.
    """

    def __init__(
        self,
        survey: Survey,
        client: CompletionStream,
        survey_title: str = "Share Behavior Research",
        extractor: Optional[TextExtractor] = None,
        settings_store: Optional[SettingsStore] = None,
        greeting: Optional[str] = GREETING,
        history: Sequence[Tuple[Role, str]] = (),
        on_update: Optional[UpdateCallback] = None,
    ):
        self.survey = survey
        self.client = client
        self.survey_title = survey_title
        self.extractor: TextExtractor = extractor or LocalTextExtractor()
        self.settings_store = settings_store
        self.on_update = on_update
        self.state = ExchangeStateMachine()
        self.messages: List[ChatMessage] = []
        if greeting:
            self.messages.append(ChatMessage(role="assistant", text=greeting))
        # Earlier turns the assistant should treat as already said.
        self.messages.extend(ChatMessage(role=role, text=text) for role, text in history)

        # Read once; later saves go through save_customization.
        self.customization = settings_store.get() if settings_store is not None else ""

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        survey: Optional[Survey] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> "ChatSession":
        extractor: TextExtractor
        if settings.extractor_url:
            extractor = HttpTextExtractor(settings.extractor_url, max_chars=settings.attachment_max_chars)
        else:
            extractor = LocalTextExtractor(max_chars=settings.attachment_max_chars)
        # The example survey comes with its example conversation.
        history = EXAMPLE_CONVERSATION if survey is None else ()
        return cls(
            survey=survey if survey is not None else build_example_survey(),
            client=CompletionClient.from_settings(settings, http_client=http_client),
            survey_title=settings.survey_title,
            extractor=extractor,
            settings_store=SettingsRepository(settings.db_path),
            history=history,
            on_update=on_update,
        )

    @property
    def phase(self) -> ExchangePhase:
        return self.state.phase

    @property
    def streaming(self) -> bool:
        return self.state.busy

    def save_customization(self, text: Optional[str]) -> None:
        self.customization = text or ""
        if self.settings_store is not None:
            self.settings_store.set(self.customization)

    def _notify(self, message: ChatMessage) -> None:
        if self.on_update is not None:
            self.on_update(message, render_markdown(message.text))

    async def send(self, text: str, uploads: Sequence[Upload] = ()) -> Optional[ExchangeResult]:
        # The guard and the transition happen before the first await.
        if self.state.busy:
            raise ExchangeInFlight(f"An exchange is already {self.state.phase.value}")
        if not text.strip() and not uploads:
            return None
        self.state.advance(ExchangePhase.AWAITING_FIRST_TOKEN)

        with exchange_context():
            reply: Optional[ChatMessage] = None
            try:
                attachments = await extract_all(self.extractor, uploads) if uploads else []
                user = ChatMessage(role="user", text=text.strip(), attachments=attachments)
                self.messages.append(user)
                if not user.request_content():
                    # Every attachment failed and there is no text; the error badges are kept.
                    logger.info("Nothing to send", extra={"attachments": len(attachments)})
                    self.state.advance(ExchangePhase.IDLE)
                    return None
                request = build_messages(self.survey, self.messages, self.survey_title, self.customization)

                reply = ChatMessage(role="assistant", complete=False)
                self.messages.append(reply)
                return await self._run_exchange(request, reply)
            except Exception:
                if reply is not None and not reply.complete:
                    reply.error = True
                    reply.finish(FALLBACK_REPLY)
                if self.state.busy:
                    self.state.advance(ExchangePhase.IDLE)
                raise

    async def _run_exchange(self, request: List[Dict[str, str]], reply: ChatMessage) -> ExchangeResult:
        try:
            async with aclosing(self.client.stream(request)) as deltas:
                async for delta in deltas:
                    if self.state.phase is ExchangePhase.AWAITING_FIRST_TOKEN:
                        self.state.advance(ExchangePhase.STREAMING)
                    reply.append(delta)
                    self._notify(reply)
        except CompletionTransportError as e:
            logger.warning("Completion failed", extra={"error": str(e), "status_code": e.status_code})
            reply.error = True
            reply.finish(FALLBACK_REPLY)
            self.state.advance(ExchangePhase.IDLE)
            self._notify(reply)
            return ExchangeResult(message=reply, error=True)

        self.state.advance(ExchangePhase.FINALIZING)
        extraction = extract_commands(reply.text)
        batch = apply_commands(self.survey, extraction.commands)
        self.survey = batch.survey
        reply.finish(extraction.text)
        self.state.advance(ExchangePhase.IDLE)

        logger.info(
            "Exchange finished",
            extra={
                "applied": [type(c).__name__ for c in batch.applied],
                "dropped_tags": extraction.dropped,
                "dropped_commands": len(batch.dropped),
            },
        )
        self._notify(reply)
        return ExchangeResult(message=reply, commands=batch.applied, survey_changed=batch.changed)
