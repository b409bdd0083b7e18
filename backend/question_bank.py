import json
import logging
import random
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)


class QuestionBankError(Exception):
    """Raised when the question or confusion-group dataset is missing, malformed or empty."""
    pass


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    image_ref: str
    correct_answer: str

    @field_validator("id", "image_ref", "correct_answer")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class ConfusionGroups:
    """Named sets of identifiers that are easy to mistake for each other."""

    def __init__(self, groups: Dict[str, Sequence[str]]):
        self.groups: Dict[str, Tuple[str, ...]] = {
            name: tuple(dict.fromkeys(members)) for name, members in groups.items()
        }
        # identifier -> group name; the first group listing an identifier owns it
        self.index: Dict[str, str] = {}
        for name, members in self.groups.items():
            for member in members:
                self.index.setdefault(member, name)

    def group_of(self, identifier: str) -> Optional[str]:
        return self.index.get(identifier)

    def members(self, identifier: str) -> Tuple[str, ...]:
        name = self.index.get(identifier)
        if name is None:
            return ()
        return self.groups[name]

    def __len__(self) -> int:
        return len(self.groups)


def pick_distractors(correct_id: str, groups: ConfusionGroups, count: int,
                     rng: random.Random = random) -> List[str]:
    """Up to ``count`` distinct group-mates of ``correct_id``, sampled without replacement."""
    pool = [m for m in groups.members(correct_id) if m != correct_id]
    if count <= 0 or not pool:
        return []
    return rng.sample(pool, min(count, len(pool)))


class QuestionBank:
    def __init__(self, questions: List[Question], confusion_groups: ConfusionGroups):
        self.questions: Tuple[Question, ...] = tuple(questions)
        self.confusion_groups = confusion_groups
        self.identifiers: Tuple[str, ...] = tuple(dict.fromkeys(q.correct_answer for q in self.questions))

    def __len__(self) -> int:
        return len(self.questions)

    def shuffled(self, limit: int = 0, rng: random.Random = random) -> List[Question]:
        """A fresh shuffled copy of the bank, drawn without replacement."""
        questions = list(self.questions)
        rng.shuffle(questions)
        if limit > 0:
            questions = questions[:limit]
        return questions


def _read_json(path: str):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except OSError as e:
        raise QuestionBankError(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise QuestionBankError(f"Invalid JSON in {path}: {e}") from e


def _parse_questions(raw) -> List[Question]:
    if not isinstance(raw, list) or len(raw) == 0:
        raise QuestionBankError("Question dataset must be a non-empty list")
    questions = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise QuestionBankError(f"Question entry is not an object: {entry!r}")
        try:
            question = Question(
                id=entry.get("id", ""),
                image_ref=entry.get("image", entry.get("image_ref", "")),
                correct_answer=entry.get("country", entry.get("correct_answer", "")),
            )
        except ValidationError as e:
            raise QuestionBankError(f"Invalid question {entry!r}: {e}") from e
        if question.id in seen:
            raise QuestionBankError(f"Duplicate question id: {question.id}")
        seen.add(question.id)
        questions.append(question)
    return questions


def _parse_groups(raw) -> ConfusionGroups:
    if not isinstance(raw, dict):
        raise QuestionBankError("Confusion groups must be an object of name -> list")
    for name, members in raw.items():
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            raise QuestionBankError(f"Confusion group {name!r} must be a list of strings")
    return ConfusionGroups(raw)


def load_question_bank(questions_path: str, groups_path: str) -> QuestionBank:
    questions = _parse_questions(_read_json(questions_path))
    groups = _parse_groups(_read_json(groups_path))
    bank = QuestionBank(questions, groups)
    logger.info("Loaded %d questions and %d confusion groups", len(bank), len(groups))
    return bank
