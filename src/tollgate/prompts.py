"""Multi-step question flow for agent questions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from rich.text import Text

from tollgate.keys import KeyAction
from tollgate.log_utils import log_event
from tollgate.phase import AppState

logger = logging.getLogger(__name__)


class QuestionOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str
    description: str = ""


class AskQuestion(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    question: str
    header: str = ""
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")

    @property
    def other_number(self) -> int:
        return len(self.options) + 1

    @property
    def select_label(self) -> str:
        header = self.header or "Question"
        return f"{header}: Select [1-{self.other_number}]"


def parse_questions(raw: Iterable[Any] | None) -> list[AskQuestion]:
    """Validate raw question payloads, skipping malformed entries."""
    questions: list[AskQuestion] = []
    for item in raw or []:
        try:
            questions.append(AskQuestion.model_validate(item))
        except ValidationError as exc:
            log_event(logger, "question.invalid", level=logging.WARNING, error=str(exc))
    return questions


@dataclass(frozen=True)
class QuestionOutcome:
    answers: dict[str, str] | None
    cancelled: bool = False


@dataclass
class _PendingQuestion:
    questions: list[AskQuestion]
    raw_input: dict[str, Any]
    future: asyncio.Future[QuestionOutcome]
    index: int = 0
    answers: dict[str, str] = field(default_factory=dict)

    @property
    def current(self) -> AskQuestion:
        return self.questions[self.index]


class PromptManager:
    """Ask the user one question at a time and collect the answers.

    Choosing the last ("Other") number switches to free-text mode: the
    session lends its editor for the answer and calls :meth:`submit_other`
    or :meth:`cancel_other`.
    """

    def __init__(self, app_state: AppState, *, notify: Callable[[str | Text], None] | None = None) -> None:
        self._app_state = app_state
        self._notify = notify or (lambda _message: None)
        self._pending: _PendingQuestion | None = None
        self._other_mode = False

    @property
    def has_active(self) -> bool:
        return self._pending is not None

    @property
    def is_other_mode(self) -> bool:
        return self._other_mode

    @property
    def current_question(self) -> AskQuestion | None:
        return self._pending.current if self._pending else None

    async def request_question(
        self,
        questions: list[AskQuestion],
        raw_input: dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> QuestionOutcome:
        if not questions:
            return QuestionOutcome(answers={})
        if cancel is not None and cancel.is_set():
            return QuestionOutcome(answers=None, cancelled=True)
        if self._pending is not None:
            self.cancel_all()

        future: asyncio.Future[QuestionOutcome] = asyncio.get_running_loop().create_future()
        pending = _PendingQuestion(questions=list(questions), raw_input=dict(raw_input or {}), future=future)
        self._pending = pending
        log_event(logger, "question.requested", count=len(questions))
        self._show_question()

        watcher = asyncio.create_task(self._watch_cancel(pending, cancel)) if cancel is not None else None
        try:
            return await future
        except asyncio.CancelledError:
            if self._pending is pending:
                self._pending = None
                self._other_mode = False
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

    def handle_key(self, action: KeyAction) -> bool:
        """Select an option by number. Returns False in free-text mode."""
        if self._pending is None:
            return False
        if self._other_mode:
            return False
        if action.kind == "char" and "0" <= action.value <= "9":
            self._select(int(action.value))
        return True

    def submit_other(self, text: str) -> bool:
        answer = text.strip()
        if self._pending is None or not self._other_mode or not answer:
            return False
        self._other_mode = False
        self._notify(f"→ {answer}")
        self._advance(answer)
        return True

    def cancel_other(self) -> None:
        if not self._other_mode:
            return
        self._other_mode = False
        if self._pending is not None:
            self._app_state.asking(self._pending.current.select_label)

    def resume(self) -> bool:
        """Show the pending question again after something else took the status line."""
        if self._pending is None:
            return False
        self._app_state.asking(self._label())
        return True

    def cancel_all(self) -> None:
        pending, self._pending = self._pending, None
        self._other_mode = False
        if pending is None:
            return
        if self._app_state.phase.name == "asking":
            self._app_state.thinking()
        if not pending.future.done():
            log_event(logger, "question.cancelled", answered=len(pending.answers))
            pending.future.set_result(QuestionOutcome(answers=None, cancelled=True))

    async def _watch_cancel(self, pending: _PendingQuestion, cancel: asyncio.Event) -> None:
        await cancel.wait()
        if self._pending is not pending:
            return
        self._pending = None
        self._other_mode = False
        self._app_state.thinking()
        self._notify("Question cancelled by agent")
        if not pending.future.done():
            pending.future.set_result(QuestionOutcome(answers=None, cancelled=True))

    def _show_question(self) -> None:
        if self._pending is None:
            return
        question = self._pending.current
        self._app_state.asking(question.select_label)
        self._notify(Text(question.question, style="bold"))
        for number, option in enumerate(question.options, start=1):
            line = Text.assemble((f"  {number})", "cyan"), f" {option.label}")
            if option.description:
                line.append(f" - {option.description}")
            self._notify(line)
        self._notify(Text.assemble((f"  {question.other_number})", "cyan"), " Other - type a custom answer"))
        self._notify(f"Select [1-{question.other_number}]:")

    def _select(self, number: int) -> None:
        if self._pending is None:
            return
        question = self._pending.current
        if 1 <= number <= len(question.options):
            selected = question.options[number - 1]
            self._notify(f"→ {selected.label}")
            self._advance(selected.label)
        elif number == question.other_number:
            self._other_mode = True
            self._app_state.asking(self._label())
            self._notify("Type your answer, then send it:")

    def _label(self) -> str:
        question = self._pending.current if self._pending else None
        if question is None:
            return ""
        if not self._other_mode:
            return question.select_label
        header = question.header or "Question"
        return f"{header}: type an answer, send to submit, Esc to go back"

    def _advance(self, answer: str) -> None:
        pending = self._pending
        if pending is None:
            return
        pending.answers[pending.current.question] = answer
        pending.index += 1
        if pending.index < len(pending.questions):
            self._show_question()
            return
        self._pending = None
        self._app_state.thinking()
        log_event(logger, "question.answered", count=len(pending.answers))
        if not pending.future.done():
            pending.future.set_result(QuestionOutcome(answers=dict(pending.answers)))
