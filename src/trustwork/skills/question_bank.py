"""Question bank — seeded templates and deterministic question draws.

Templates are loaded once from configuration and never change for a
given id. A draw for an attempt is a seeded shuffle of the pool at the
requested difficulty, truncated to the configured count: the same
attempt id always yields the same questions in the same order.
"""

from __future__ import annotations

import hashlib
import logging
import random
from typing import Any, Optional

from trustwork.errors import NotFoundError, PreconditionError
from trustwork.models.skill_test import (
    ANSWER_OPTIONS,
    Difficulty,
    Question,
    SkillTestTemplate,
)

logger = logging.getLogger(__name__)


class QuestionBank:
    """Read-only registry of skill test templates.

    Usage:
        bank = QuestionBank.from_data(resolver.skill_test_templates_data())
        questions = bank.draw("tmpl-web-development", Difficulty.MID, 10, attempt_id)
    """

    def __init__(self, templates: Optional[list[SkillTestTemplate]] = None) -> None:
        self._templates: dict[str, SkillTestTemplate] = {}
        for template in templates or []:
            if template.template_id in self._templates:
                raise ValueError(f"Duplicate template id: {template.template_id}")
            self._templates[template.template_id] = template

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> QuestionBank:
        """Build a bank from the ``skill_test_templates.json`` structure."""
        templates = [_parse_template(raw) for raw in data.get("templates", [])]
        return cls(templates)

    def get(self, template_id: str) -> SkillTestTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError("skill test template", template_id)
        return template

    def has(self, template_id: str) -> bool:
        return template_id in self._templates

    @property
    def template_ids(self) -> list[str]:
        return sorted(self._templates)

    def draw(
        self,
        template_id: str,
        difficulty: Difficulty,
        count: int,
        attempt_id: str,
    ) -> list[Question]:
        """Draw ``count`` questions without replacement for one attempt.

        A pool smaller than ``count`` is used whole. An empty pool is a
        precondition failure: the attempt cannot be started.
        """
        pool = self.get(template_id).pool(difficulty)
        if not pool:
            raise PreconditionError(
                "no_questions",
                f"Template {template_id} has no {difficulty.value} questions",
            )
        if len(pool) < count:
            logger.warning(
                "Template %s has %d %s questions, fewer than the %d requested",
                template_id, len(pool), difficulty.value, count,
            )
        rng = random.Random(_seed_for(attempt_id))
        return rng.sample(pool, min(count, len(pool)))


def _seed_for(attempt_id: str) -> int:
    digest = hashlib.sha256(attempt_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def _parse_template(raw: dict[str, Any]) -> SkillTestTemplate:
    questions = []
    for q in raw.get("questions", []):
        options = dict(q["options"])
        if sorted(options) != list(ANSWER_OPTIONS):
            raise ValueError(f"Question {q['question_id']} must have options A-D")
        if q["correct_answer"] not in options:
            raise ValueError(f"Question {q['question_id']} has an invalid correct answer")
        questions.append(Question(
            question_id=q["question_id"],
            difficulty=Difficulty(q["difficulty"]),
            text=q["text"],
            options=options,
            correct_answer=q["correct_answer"],
            explanation=q.get("explanation", ""),
        ))
    return SkillTestTemplate(
        template_id=raw["template_id"],
        name=raw.get("name", raw["template_id"]),
        category=raw.get("category", ""),
        passing_score=int(raw.get("passing_score", 70)),
        questions=tuple(questions),
    )
