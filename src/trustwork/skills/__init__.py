"""Skill assessment — question bank and the timed test engine."""

from trustwork.skills.question_bank import QuestionBank
from trustwork.skills.assessment import SkillTestEngine

__all__ = ["QuestionBank", "SkillTestEngine"]
