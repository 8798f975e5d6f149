"""
Example survey used when a session starts without one.
"""

from typing import Optional

from .model import IdAllocator, Survey


EXAMPLE_STUDY_GOAL = (
    "The goal of this study is to understand why some creators delay or avoid sharing their Linktree."
)

EXAMPLE_QUESTIONS = [
    {
        "text": "What's been holding you back from sharing your Linktree so far?",
        "choices": [
            "I'm not sure what to put on it yet",
            "I don't think my audience would use it",
            "I forget to share it",
            "Something else",
        ],
    },
    {
        "text": "Which of the following best describes your current sharing status?",
        "required": True,
        "choices": [
            "I haven't shared my Linktree yet",
            "I've shared it once or twice",
            "I share it occasionally",
            "I share it regularly",
            "I'm not sure",
        ],
    },
]


def build_example_survey(ids: Optional[IdAllocator] = None) -> Survey:
    survey = Survey.create(EXAMPLE_QUESTIONS, study_goal=EXAMPLE_STUDY_GOAL, ids=ids)
    # Question 2 is only shown to respondents who answered question 1.
    first, second = survey.questions
    return survey.add_condition(second.id, source_id=first.id, operator="not_equals", value="")


# Earlier turns of the example conversation, as (role, text) pairs. They
# follow the greeting so the assistant knows what was already discussed.
EXAMPLE_CONVERSATION = [
    ("user", "Buddy, review question 2 and 4 and make it matching MyCompany tone of voice"),
    (
        "assistant",
        "## 2. Answer options: recommendations\n"
        "\n"
        "Current options are logically ordered, but:\n"
        "- Some are wordy\n"
        '- "Once or twice" vs "occasionally" can feel fuzzy\n'
        '- "I\'m not sure" is useful but should be last (you already did this right)\n'
        "\n"
        "## Recommended answer set (clean + behavioral)\n"
        "\n"
        "### Best overall set\n"
        "- I haven't shared my Linktree yet\n"
        "- I've shared it a few times, but not consistently\n"
        "- I share it occasionally\n"
        "- I share it regularly\n"
        "- I'm not sure\n"
        "\n"
        "### Why this works\n"
        '- "Yet" subtly removes shame',
    ),
]
