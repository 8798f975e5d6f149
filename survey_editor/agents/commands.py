# survey_editor/agents/commands.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import jsonschema

from survey_editor.app.logging import get_logger
from survey_editor.survey.model import Survey

logger = get_logger(__name__)


# -------------------------
# Grammar
# -------------------------

STUDY_GOAL = "STUDY_GOAL"
ADD_QUESTION = "ADD_QUESTION"
DELETE_QUESTION = "DELETE_QUESTION"
EDIT_QUESTION = "EDIT_QUESTION"

TAG_NAMES = (STUDY_GOAL, ADD_QUESTION, DELETE_QUESTION, EDIT_QUESTION)
_OBJECT_TAGS = {ADD_QUESTION, EDIT_QUESTION}

_TAG_OPEN = re.compile(r"\[(" + "|".join(TAG_NAMES) + r")\s*:")
_DECODER = json.JSONDecoder()

_SCALAR = {"type": ["string", "number", "boolean", "null"]}

# Scalars are coerced to text by the survey model; only structure is checked.
_CHOICE_ITEM = {
    "anyOf": [
        _SCALAR,
        {"type": "object", "properties": {"text": _SCALAR}},
    ]
}

_QUESTION_PROPERTIES: Dict[str, Any] = {
    "text": _SCALAR,
    "description": _SCALAR,
    "required": _SCALAR,
    "choices": {"type": ["array", "null"], "items": _CHOICE_ITEM},
}

ADD_QUESTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": _QUESTION_PROPERTIES,
    "additionalProperties": True,
}

EDIT_QUESTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {**_QUESTION_PROPERTIES, "index": {"type": "integer", "minimum": 1}},
    "required": ["index"],
    "additionalProperties": True,
}


# -------------------------
# Commands
# -------------------------

@dataclass(frozen=True)
class SetStudyGoal:
    text: str


@dataclass(frozen=True)
class AddQuestion:
    spec: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteQuestion:
    index: int


@dataclass(frozen=True)
class EditQuestion:
    index: int
    changes: Dict[str, Any] = field(default_factory=dict)


Command = Union[SetStudyGoal, AddQuestion, DeleteQuestion, EditQuestion]

# Goal first, then adds, deletes, edits.
_APPLY_ORDER = {SetStudyGoal: 0, AddQuestion: 1, DeleteQuestion: 2, EditQuestion: 3}


@dataclass(frozen=True)
class TagSpan:
    name: str
    start: int
    end: int
    raw: str
    value: Any = None
    decoded: bool = False


@dataclass(frozen=True)
class Extraction:
    text: str
    commands: Tuple[Command, ...] = ()
    dropped: int = 0


@dataclass(frozen=True)
class BatchResult:
    survey: Survey
    applied: Tuple[Command, ...] = ()
    dropped: Tuple[Command, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.applied)


# -------------------------
# Scanning
# -------------------------

def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i].isspace():
        i += 1
    return i


def _fallback_end(text: str, start: int) -> int:
    # A plain payload stays on its own line and never reaches the next tag.
    limit = text.find("\n", start)
    if limit == -1:
        limit = len(text)
    nxt = _TAG_OPEN.search(text, start, limit)
    if nxt is not None:
        limit = nxt.start()
    return text.find("]", start, limit)


def _scan_payload(text: str, start: int, name: str) -> Optional[TagSpan]:
    """
    Find the end of a tag whose payload starts at `start`.

    JSON payloads are read with the JSON decoder so braces and brackets
    inside strings do not end the tag early. Anything else (including JSON
    that fails to decode) runs to the next `]` on the same line, stopping
    short of any following tag. Returns None when there is no such bracket.
    """
    if name in _OBJECT_TAGS:
        i = _skip_ws(text, start)
        if i < len(text) and text[i] in "{[":
            try:
                value, j = _DECODER.raw_decode(text, i)
            except ValueError:
                pass
            else:
                k = _skip_ws(text, j)
                if k < len(text) and text[k] == "]":
                    return TagSpan(name, start, k + 1, text[start:k], value, decoded=True)

    close = _fallback_end(text, start)
    if close == -1:
        return None
    return TagSpan(name, start, close + 1, text[start:close])


def scan_tags(text: str) -> List[TagSpan]:
    spans: List[TagSpan] = []
    pos = 0
    while True:
        m = _TAG_OPEN.search(text, pos)
        if m is None:
            return spans
        span = _scan_payload(text, m.end(), m.group(1))
        if span is None:
            # An unterminated tag is not a tag; leave it in the text.
            pos = m.end()
            continue
        spans.append(TagSpan(span.name, m.start(), span.end, span.raw, span.value, span.decoded))
        pos = span.end


# -------------------------
# Parsing
# -------------------------

def _parse_object(span: TagSpan, schema: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not span.decoded or not isinstance(span.value, dict):
        logger.debug("Dropping %s: payload is not a JSON object", span.name, extra={"payload": span.raw[:200]})
        return None
    try:
        jsonschema.validate(instance=span.value, schema=schema)
    except jsonschema.ValidationError as e:
        logger.debug("Dropping %s: %s", span.name, e.message)
        return None
    return dict(span.value)


def parse_tag(span: TagSpan) -> Optional[Command]:
    if span.name == STUDY_GOAL:
        goal = span.raw.strip()
        return SetStudyGoal(goal) if goal else None

    if span.name == DELETE_QUESTION:
        try:
            index = int(span.raw.strip())
        except ValueError:
            logger.debug("Dropping DELETE_QUESTION: %r is not an integer", span.raw)
            return None
        if index < 1:
            logger.debug("Dropping DELETE_QUESTION: index %d < 1", index)
            return None
        return DeleteQuestion(index)

    if span.name == ADD_QUESTION:
        spec = _parse_object(span, ADD_QUESTION_SCHEMA)
        return AddQuestion(spec) if spec is not None else None

    if span.name == EDIT_QUESTION:
        payload = _parse_object(span, EDIT_QUESTION_SCHEMA)
        if payload is None:
            return None
        index = int(payload.pop("index"))
        return EditQuestion(index, payload)

    return None


def _clean(text: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"(?<=\S)[ \t]{2,}(?=\S)", " ", text)
    return text.strip()


def extract_commands(reply: str) -> Extraction:
    """
    Strip every directive tag from a complete assistant reply and parse them.

    Only run this on the finished reply: a partial reply may hold half a tag.
    A span that looks like a tag is always removed from the text, even when
    its payload is unusable; the command is just dropped.
    """
    spans = scan_tags(reply)
    if not spans:
        return Extraction(text=reply)

    parts: List[str] = []
    commands: List[Command] = []
    dropped = 0
    pos = 0
    for span in spans:
        parts.append(reply[pos:span.start])
        pos = span.end
        command = parse_tag(span)
        if command is None:
            dropped += 1
        else:
            commands.append(command)
    parts.append(reply[pos:])

    ordered = sorted(commands, key=lambda c: _APPLY_ORDER[type(c)])
    if dropped:
        logger.info("Dropped malformed directive tags", extra={"dropped": dropped})
    return Extraction(text=_clean("".join(parts)), commands=tuple(ordered), dropped=dropped)


# -------------------------
# Application
# -------------------------

def apply_commands(survey: Survey, commands: Sequence[Command]) -> BatchResult:
    """
    Apply one batch of commands.

    Indices are resolved to question ids against the survey as it is right
    now, before any command in the batch runs. Commands whose index does not
    resolve are dropped; the rest still apply.
    """
    snapshot = [q.id for q in survey.questions]

    def resolve(index: int) -> Optional[str]:
        if 1 <= index <= len(snapshot):
            return snapshot[index - 1]
        return None

    applied: List[Command] = []
    dropped: List[Command] = []
    doomed: Dict[str, DeleteQuestion] = {}
    edits: List[Tuple[str, EditQuestion]] = []

    for command in sorted(commands, key=lambda c: _APPLY_ORDER[type(c)]):
        if isinstance(command, SetStudyGoal):
            updated = survey.set_study_goal(command.text)
            if updated is survey:
                dropped.append(command)
            else:
                survey = updated
                applied.append(command)
        elif isinstance(command, AddQuestion):
            survey = survey.add_question(command.spec)
            applied.append(command)
        elif isinstance(command, DeleteQuestion):
            qid = resolve(command.index)
            if qid is None or qid in doomed:
                dropped.append(command)
            else:
                doomed[qid] = command
        elif isinstance(command, EditQuestion):
            qid = resolve(command.index)
            if qid is None:
                dropped.append(command)
            else:
                edits.append((qid, command))

    if doomed:
        positions = {survey.position_of(qid) for qid in doomed}
        survey = survey.delete_questions(p for p in positions if p is not None)
        applied.extend(doomed.values())

    for qid, command in edits:
        position = survey.position_of(qid)
        if position is None:
            dropped.append(command)
            continue
        survey = survey.edit_question(position, command.changes)
        applied.append(command)

    if dropped:
        logger.info(
            "Dropped commands with unresolvable targets",
            extra={"dropped": [type(c).__name__ for c in dropped]},
        )
    return BatchResult(survey=survey, applied=tuple(applied), dropped=tuple(dropped))
