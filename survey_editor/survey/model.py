"""
Survey model: questions, choices, display conditions and the study goal.

Every operation returns a new ``Survey``; nothing is mutated in place, so a
failed or dropped edit can never leave a half-applied survey behind.

Identifiers come from an ``IdAllocator`` owned by the survey lineage. Copies
produced by the operations share the allocator, so an identifier is never
handed out twice, even after the question or choice that held it is gone.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple


UNTITLED_QUESTION = "Untitled question"
UNRESOLVED_SOURCE = "unresolved"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    DOES_NOT_CONTAIN = "does_not_contain"

    @property
    def symbol(self) -> str:
        return _OPERATOR_SYMBOLS[self]


_OPERATOR_SYMBOLS = {
    ConditionOperator.EQUALS: "=",
    ConditionOperator.NOT_EQUALS: "≠",
    ConditionOperator.CONTAINS: "contains",
    ConditionOperator.DOES_NOT_CONTAIN: "does not contain",
}


class IdAllocator:
    """Monotonic identifier source. Never resets, never reuses."""

    def __init__(self, start: int = 1):
        self._next = start

    def next(self, prefix: str) -> str:
        value = f"{prefix}{self._next}"
        self._next += 1
        return value


@dataclass(frozen=True)
class Choice:
    id: str
    text: str = ""


@dataclass(frozen=True)
class Condition:
    """
    Display condition on a question.

    ``source_id`` is a weak reference to another question; it may dangle
    after that question is deleted and is then shown as unresolved.
    """

    source_id: Optional[str] = None
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: str = ""


@dataclass(frozen=True)
class Question:
    id: str
    text: str = ""
    description: Optional[str] = None
    required: bool = False
    choices: Tuple[Choice, ...] = ()
    conditions: Tuple[Condition, ...] = ()

    @property
    def label(self) -> str:
        return self.text.strip() or UNTITLED_QUESTION

    def choice_texts(self) -> List[str]:
        # Non-empty choices only; empty ones are placeholders.
        return [c.text for c in self.choices if c.text.strip()]


_QUESTION_FIELDS = {"text", "description", "required"}
_CONDITION_FIELDS = {"source_id", "operator", "value"}


def _choice_text(item: Any) -> str:
    if isinstance(item, Mapping):
        item = item.get("text", "")
    return "" if item is None else str(item)


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


@dataclass(frozen=True)
class Survey:
    questions: Tuple[Question, ...] = ()
    study_goal: str = ""
    selected_id: Optional[str] = None
    ids: IdAllocator = field(default_factory=IdAllocator, compare=False, repr=False)

    @classmethod
    def create(
        cls,
        questions: Iterable[Mapping[str, Any]] = (),
        study_goal: str = "",
        ids: Optional[IdAllocator] = None,
    ) -> "Survey":
        survey = cls(study_goal=study_goal, ids=ids or IdAllocator())
        for spec in questions:
            survey = survey.add_question(spec)
        return survey

    # -------------------------
    # Lookup
    # -------------------------

    def __len__(self) -> int:
        return len(self.questions)

    def question_at(self, index: int) -> Optional[Question]:
        # 1-based, evaluated against the current order.
        if 1 <= index <= len(self.questions):
            return self.questions[index - 1]
        return None

    def get_question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    def position_of(self, question_id: str) -> Optional[int]:
        for pos, q in enumerate(self.questions, start=1):
            if q.id == question_id:
                return pos
        return None

    def describe_condition(self, condition: Condition) -> str:
        source = self.get_question(condition.source_id) if condition.source_id else None
        if source is None:
            left = UNRESOLVED_SOURCE
        else:
            left = f"{self.position_of(source.id)}. {source.label}"
        return f"{left} {condition.operator.symbol} {condition.value}".rstrip()

    def condition_suggestions(self, condition: Condition) -> List[str]:
        source = self.get_question(condition.source_id) if condition.source_id else None
        return source.choice_texts() if source is not None else []

    # -------------------------
    # Builders
    # -------------------------

    def _new_choices(self, items: Optional[Iterable[Any]]) -> Tuple[Choice, ...]:
        texts = [_choice_text(item) for item in (items or [])]
        if not texts:
            texts = [""]
        return tuple(Choice(id=self.ids.next("c"), text=t) for t in texts)

    def _build_question(self, spec: Mapping[str, Any]) -> Question:
        description = spec.get("description")
        return Question(
            id=self.ids.next("q"),
            text=str(spec.get("text") or ""),
            description=None if description is None else str(description),
            required=_flag(spec.get("required", False)),
            choices=self._new_choices(spec.get("choices")),
        )

    def _update(self, question_id: str, fn: Callable[[Question], Question]) -> "Survey":
        # Unknown ids are a no-op.
        out: List[Question] = []
        changed = False
        for q in self.questions:
            if q.id == question_id:
                q = fn(q)
                changed = True
            out.append(q)
        if not changed:
            return self
        return replace(self, questions=tuple(out))

    # -------------------------
    # Operations used by directive commands
    # -------------------------

    def add_question(self, spec: Optional[Mapping[str, Any]] = None) -> "Survey":
        question = self._build_question(spec or {})
        return replace(self, questions=self.questions + (question,))

    def delete_questions(self, indices: Iterable[int]) -> "Survey":
        doomed = set(indices)
        kept = tuple(q for pos, q in enumerate(self.questions, start=1) if pos not in doomed)
        if len(kept) == len(self.questions):
            return self
        selected = self.selected_id
        if selected is not None and all(q.id != selected for q in kept):
            selected = None
        return replace(self, questions=kept, selected_id=selected)

    def edit_question(self, index: int, partial: Mapping[str, Any]) -> "Survey":
        target = self.question_at(index)
        if target is None:
            return self

        changes: Dict[str, Any] = {}
        if "text" in partial:
            changes["text"] = "" if partial["text"] is None else str(partial["text"])
        if "description" in partial:
            d = partial["description"]
            changes["description"] = None if d is None else str(d)
        if "required" in partial:
            changes["required"] = _flag(partial["required"])
        if "choices" in partial:
            changes["choices"] = self._new_choices(partial["choices"])

        return self._update(target.id, lambda q: replace(q, **changes))

    def set_study_goal(self, text: str) -> "Survey":
        goal = (text or "").strip()
        if not goal:
            return self
        return replace(self, study_goal=goal)

    # -------------------------
    # Builder operations
    # -------------------------

    def select_question(self, question_id: Optional[str]) -> "Survey":
        if question_id is not None and self.get_question(question_id) is None:
            return self
        return replace(self, selected_id=question_id)

    def delete_question(self, question_id: str) -> "Survey":
        pos = self.position_of(question_id)
        if pos is None:
            return self
        return self.delete_questions({pos})

    def update_question(self, question_id: str, **changes: Any) -> "Survey":
        unknown = set(changes) - _QUESTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown question fields: {sorted(unknown)}")
        return self._update(question_id, lambda q: replace(q, **changes))

    def duplicate_question(self, question_id: str) -> "Survey":
        pos = self.position_of(question_id)
        if pos is None:
            return self
        source = self.questions[pos - 1]
        copy = replace(
            source,
            id=self.ids.next("q"),
            choices=tuple(Choice(id=self.ids.next("c"), text=c.text) for c in source.choices),
        )
        questions = self.questions[:pos] + (copy,) + self.questions[pos:]
        return replace(self, questions=questions, selected_id=copy.id)

    def toggle_required(self, question_id: str) -> "Survey":
        return self._update(question_id, lambda q: replace(q, required=not q.required))

    def move_question(self, question_id: str, position: int) -> "Survey":
        current = self.position_of(question_id)
        if current is None:
            return self
        position = max(1, min(position, len(self.questions)))
        questions = list(self.questions)
        question = questions.pop(current - 1)
        questions.insert(position - 1, question)
        return replace(self, questions=tuple(questions))

    def shuffle(self, rng: Optional[random.Random] = None) -> "Survey":
        # Fisher-Yates.
        rng = rng or random.Random()
        questions = list(self.questions)
        for i in range(len(questions) - 1, 0, -1):
            j = rng.randint(0, i)
            questions[i], questions[j] = questions[j], questions[i]
        return replace(self, questions=tuple(questions))

    def add_choice(self, question_id: str, text: str = "") -> "Survey":
        choice = Choice(id=self.ids.next("c"), text=text)
        return self._update(question_id, lambda q: replace(q, choices=q.choices + (choice,)))

    def update_choice(self, question_id: str, choice_id: str, text: str) -> "Survey":
        def fn(q: Question) -> Question:
            return replace(q, choices=tuple(
                replace(c, text=text) if c.id == choice_id else c for c in q.choices
            ))
        return self._update(question_id, fn)

    def delete_choice(self, question_id: str, choice_id: str) -> "Survey":
        def fn(q: Question) -> Question:
            if len(q.choices) <= 1:
                return q
            return replace(q, choices=tuple(c for c in q.choices if c.id != choice_id))
        return self._update(question_id, fn)

    def add_condition(
        self,
        question_id: str,
        source_id: Optional[str] = None,
        operator: ConditionOperator = ConditionOperator.EQUALS,
        value: str = "",
    ) -> "Survey":
        condition = Condition(source_id=source_id, operator=ConditionOperator(operator), value=value)
        return self._update(question_id, lambda q: replace(q, conditions=q.conditions + (condition,)))

    def update_condition(self, question_id: str, position: int, **changes: Any) -> "Survey":
        unknown = set(changes) - _CONDITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown condition fields: {sorted(unknown)}")
        if "operator" in changes:
            changes["operator"] = ConditionOperator(changes["operator"])

        def fn(q: Question) -> Question:
            if not 0 <= position < len(q.conditions):
                return q
            conditions = list(q.conditions)
            conditions[position] = replace(conditions[position], **changes)
            return replace(q, conditions=tuple(conditions))
        return self._update(question_id, fn)

    def delete_condition(self, question_id: str, position: int) -> "Survey":
        def fn(q: Question) -> Question:
            if not 0 <= position < len(q.conditions):
                return q
            return replace(q, conditions=q.conditions[:position] + q.conditions[position + 1:])
        return self._update(question_id, fn)

    # -------------------------
    # Serialization
    # -------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "study_goal": self.study_goal,
            "selected_id": self.selected_id,
            "questions": [
                {
                    "id": q.id,
                    "text": q.text,
                    "description": q.description,
                    "required": q.required,
                    "choices": [{"id": c.id, "text": c.text} for c in q.choices],
                    "conditions": [
                        {"source_id": c.source_id, "operator": c.operator.value, "value": c.value}
                        for c in q.conditions
                    ],
                }
                for q in self.questions
            ],
        }
