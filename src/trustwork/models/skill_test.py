"""Skill test models — templates, questions, and attempts.

Attempt lifecycle:
    IN_PROGRESS → COMPLETED      (submitted within limits)
    IN_PROGRESS → FAILED_CHEAT   (tab switches or time limit exceeded)
    IN_PROGRESS → ABANDONED      (deadline passed without a submit)

All final statuses are terminal. The questions are snapshotted into the
attempt at start so the review is reproducible even if the template's
pool changes later.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from trustwork.models.history import StatusChange


class Difficulty(str, enum.Enum):
    """Difficulty tier of a test."""
    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"


class AttemptStatus(str, enum.Enum):
    """Lifecycle status of a skill test attempt."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED_CHEAT = "failed_cheat"
    ABANDONED = "abandoned"


TERMINAL_ATTEMPT_STATUSES = frozenset({
    AttemptStatus.COMPLETED,
    AttemptStatus.FAILED_CHEAT,
    AttemptStatus.ABANDONED,
})

ANSWER_OPTIONS = ("A", "B", "C", "D")


class CheatReason(str, enum.Enum):
    """Why an attempt was sealed as FAILED_CHEAT."""
    TAB_SWITCHES = "tab_switches"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"


@dataclass(frozen=True)
class Question:
    """A multiple-choice question from a template's pool."""
    question_id: str
    difficulty: Difficulty
    text: str
    options: dict[str, str]
    correct_answer: str
    explanation: str = ""


@dataclass(frozen=True)
class SkillTestTemplate:
    """An externally seeded test template. Immutable for a given id."""
    template_id: str
    name: str
    category: str
    passing_score: int
    questions: tuple[Question, ...] = ()

    def pool(self, difficulty: Difficulty) -> list[Question]:
        return [q for q in self.questions if q.difficulty == difficulty]


@dataclass(frozen=True)
class Answer:
    """A graded answer. ``selected`` is None for unanswered questions."""
    question_id: str
    selected: Optional[str]
    is_correct: bool


@dataclass
class SkillTestAttempt:
    """A single execution of a skill test by one applicant for one posting."""
    attempt_id: str
    applicant_id: str
    posting_id: str
    template_id: str
    difficulty: Difficulty
    passing_score: int
    time_limit_seconds: int
    questions: list[Question] = field(default_factory=list)
    answers: list[Answer] = field(default_factory=list)
    score: int = 0
    correct_count: int = 0
    passed: bool = False
    tab_switches: int = 0
    time_taken_seconds: Optional[int] = None
    cheat_reason: Optional[CheatReason] = None
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    started_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES
