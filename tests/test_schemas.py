import json

import pytest
from pydantic import ValidationError

from schemas import CandidateItem, GeneratedBatch, GenerationEvent, InteractionRequest, parse_json_safe


def _sample_batch() -> dict[str, object]:
    return {
        "questions": [
            {
                "question": "Which element has the chemical symbol O?",
                "answers": [
                    {"text": "Oxygen", "isCorrect": True},
                    {"text": "Gold", "isCorrect": False},
                ],
                "category": "Science",
                "subtopic": "Chemistry",
                "tags": ["elements", " "],
                "learningCapsule": "Oxygen makes up about 21% of air.",
            }
        ]
    }


def test_parse_json_safe_rejects_trailing_payload():
    noisy_text = (
        "Here are your questions:\n"
        "```json\n"
        f"{json.dumps(_sample_batch())}\n"
        "```\nEnjoy!"
    )

    with pytest.raises(ValidationError):
        parse_json_safe(noisy_text, GeneratedBatch)


def test_parse_json_safe_accepts_code_fenced_json():
    fenced = "```json\n" + json.dumps(_sample_batch()) + "\n```"

    batch = parse_json_safe(fenced, GeneratedBatch)

    item = batch.questions[0]
    assert item.text.startswith("Which element")
    assert item.topic == "Science"
    assert item.tags == ["elements"]
    assert item.correct_answer == "Oxygen"
    assert item.learning_capsule.startswith("Oxygen")


def test_candidate_item_dumps_with_aliases():
    item = CandidateItem(text="Largest ocean?", topic="Geography", tags="water")
    dumped = item.model_dump(by_alias=True, exclude={"duplicate"})
    assert dumped["question"] == "Largest ocean?"
    assert dumped["category"] == "Geography"
    assert dumped["tags"] == ["water"]
    assert item.correct_answer is None


def test_generation_event_validates_type_and_counts():
    event = GenerationEvent.model_validate({"type": "generation_started", "userId": "alice"})
    assert event.user_id == "alice"
    assert event.created_at.tzinfo is not None

    with pytest.raises(ValidationError):
        GenerationEvent.model_validate({"type": "generation_paused", "userId": "alice"})
    with pytest.raises(ValidationError):
        GenerationEvent.model_validate({"type": "generation_completed", "userId": "alice", "saved": -2})


def test_interaction_request_payload_excludes_user():
    request = InteractionRequest(user_id="alice", topic="History", question_id="h1", outcome="skipped")
    payload = request.to_payload()
    assert "user_id" not in payload
    assert payload["outcome"] == "skipped"

    with pytest.raises(ValidationError):
        InteractionRequest(user_id="alice", topic="History", question_id="h1", outcome="later")
