# survey_editor/agents/prompts.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from survey_editor.survey.model import Survey
from survey_editor.workflows.state import ChatMessage


SYSTEM_PROMPT = """
You are an AI Editing Agent for a survey builder platform. The current survey is called "{{survey_title}}".

The study goal is: "{{study_goal}}"

Current survey questions:
{{questions}}

You help users review and improve their survey questions, answer options, and overall survey structure. You can:
- Review and suggest improvements to survey questions
- Recommend better answer options
- Adjust the tone of voice to match a brand
- Provide recommendations on question ordering and logic
- Help with display conditions and skip logic

Use markdown formatting: **bold**, bullet points (- ), and headers (##, ###) for clear, structured responses. Be concise and actionable.

You can change the survey by including these tags in your response. The system parses and removes them before the user sees the reply:
[STUDY_GOAL: <new goal text>]
[ADD_QUESTION: {"text": "...", "description": "...", "required": false, "choices": ["...", "..."]}]
[DELETE_QUESTION: <question number>]
[EDIT_QUESTION: {"index": <question number>, "text": "...", "choices": ["..."]}]

Rules for tags:
- Only include a tag when the user explicitly asks for that change.
- Question numbers are the 1-based numbers in the list above, as it is before your changes.
- EDIT_QUESTION must include "index"; only the fields you include are changed, and "choices" replaces the whole list.
- Payloads are single-line JSON objects and must not contain the character "]" outside of strings.
- Place tags at the end of your response.
{{customization}}
""".strip()


def render_prompt(template: str, variables: Dict[str, Any]) -> str:
    """
    Replaces {{ variable }} placeholders in the template with values from the dictionary.
    Unknown placeholders are left as they are.
    """
    def repl(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key not in variables:
            return match.group(0)
        return str(variables[key])

    return re.sub(r"\{\{\s*([a-zA-Z0-9_\.]+)\s*\}\}", repl, template)


def format_questions(survey: Survey) -> str:
    if not survey.questions:
        return "(no questions yet)"
    lines: List[str] = []
    for pos, q in enumerate(survey.questions, start=1):
        lines.append(f'{pos}. "{q.label}"')
        if q.description and q.description.strip():
            lines.append(f"   Description: {q.description.strip()}")
        choices = q.choice_texts()
        if choices:
            lines.append("   Choices: " + ", ".join(f'"{c}"' for c in choices))
    return "\n".join(lines)


def build_system_prompt(survey: Survey, survey_title: str, customization: Optional[str] = None) -> str:
    extra = ""
    if customization and customization.strip():
        extra = "\nAdditional instructions from the user:\n" + customization.strip()
    return render_prompt(SYSTEM_PROMPT, {
        "survey_title": survey_title,
        "study_goal": survey.study_goal,
        "questions": format_questions(survey),
        "customization": extra,
    }).rstrip()


def build_messages(
    survey: Survey,
    history: Sequence[ChatMessage],
    survey_title: str,
    customization: Optional[str] = None,
) -> List[Dict[str, str]]:
    """System message first, then every finished turn in order."""
    messages = [{"role": "system", "content": build_system_prompt(survey, survey_title, customization)}]
    for message in history:
        if message.error:
            continue
        content = message.request_content()
        if not content:
            continue
        messages.append({"role": message.role, "content": content})
    return messages
