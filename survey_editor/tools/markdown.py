"""
Small markdown subset renderer for chat replies.

``render_markdown`` is a pure function of the accumulated text. It is called
again after every streamed delta, so it must cope with half-written input:
an unclosed ``**`` is kept as literal text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union


SECTION_HEADING = "section"
SUBHEADING = "subheading"

_HEADING = re.compile(r"^(#{1,3})\s+(.*)$")
_BULLET = re.compile(r"^\s*[-*•]\s+(.*)$")
_STRONG = re.compile(r"\*\*(.+?)\*\*")


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Strong:
    text: str


Inline = Union[Text, Strong]


@dataclass(frozen=True)
class Heading:
    # H1 and H2 share the section kind; only H3 is a subheading.
    kind: str
    level: int
    inlines: Tuple[Inline, ...] = ()


@dataclass(frozen=True)
class BulletList:
    items: Tuple[Tuple[Inline, ...], ...] = ()


@dataclass(frozen=True)
class Paragraph:
    inlines: Tuple[Inline, ...] = ()


Block = Union[Heading, BulletList, Paragraph]


def plain_text(inlines: Tuple[Inline, ...]) -> str:
    return "".join(i.text for i in inlines)


def parse_inline(text: str) -> Tuple[Inline, ...]:
    out: List[Inline] = []
    pos = 0
    for m in _STRONG.finditer(text):
        if m.start() > pos:
            out.append(Text(text[pos:m.start()]))
        out.append(Strong(m.group(1)))
        pos = m.end()
    if pos < len(text):
        out.append(Text(text[pos:]))
    return tuple(out)


def render_markdown(text: str) -> Tuple[Block, ...]:
    blocks: List[Block] = []
    pending: List[Tuple[Inline, ...]] = []

    def flush() -> None:
        if pending:
            blocks.append(BulletList(items=tuple(pending)))
            pending.clear()

    for raw in text.split("\n"):
        line = raw.rstrip("\r")

        bullet = _BULLET.match(line)
        if bullet:
            pending.append(parse_inline(bullet.group(1).strip()))
            continue

        flush()
        if not line.strip():
            continue

        heading = _HEADING.match(line.strip())
        if heading:
            level = len(heading.group(1))
            kind = SUBHEADING if level == 3 else SECTION_HEADING
            blocks.append(Heading(kind=kind, level=level, inlines=parse_inline(heading.group(2).strip())))
            continue

        blocks.append(Paragraph(inlines=parse_inline(line.strip())))

    flush()
    return tuple(blocks)


def _inline_dicts(inlines: Tuple[Inline, ...]) -> List[Dict[str, str]]:
    return [{"type": "strong" if isinstance(i, Strong) else "text", "text": i.text} for i in inlines]


def to_dicts(blocks: Tuple[Block, ...]) -> List[Dict[str, Any]]:
    # JSON-friendly view for a UI layer.
    out: List[Dict[str, Any]] = []
    for b in blocks:
        if isinstance(b, Heading):
            out.append({"type": "heading", "kind": b.kind, "level": b.level, "inlines": _inline_dicts(b.inlines)})
        elif isinstance(b, BulletList):
            out.append({"type": "list", "items": [_inline_dicts(item) for item in b.items]})
        else:
            out.append({"type": "paragraph", "inlines": _inline_dicts(b.inlines)})
    return out
