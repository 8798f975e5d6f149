import pytest

from survey_editor.survey.model import IdAllocator, Survey


@pytest.fixture
def ids():
    return IdAllocator()


@pytest.fixture
def survey(ids):
    """Two-question survey with deterministic identifiers."""
    return Survey.create(
        [
            {"text": "Do you play music?", "choices": ["Yes", "No"]},
            {"text": "Which instrument?", "description": "Pick one", "required": True, "choices": ["Guitar", "Piano"]},
        ],
        study_goal="Understand musicians",
        ids=ids,
    )


@pytest.fixture
def four_questions(ids):
    return Survey.create([{"text": f"Q{n}"} for n in range(1, 5)], ids=ids)
