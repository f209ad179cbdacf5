"""Structural checks over the config directory.

PolicyResolver fails closed on the handful of values it cannot run
without. These checks go further and are run by the CLI before a
deployment: they compare parameters against each other and against the
seeded question pools.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from trustwork.policy.resolver import PARAMS_FILE, TEMPLATES_FILE

DIFFICULTIES = ("entry", "mid", "senior")


def check_config(config_dir: Path) -> list[str]:
    """Return a list of problems found in ``config_dir`` (empty if none)."""
    params_path = config_dir / PARAMS_FILE
    if not params_path.exists():
        return [f"Missing platform parameters: {params_path}"]
    params = _load_json(params_path)
    templates_path = config_dir / TEMPLATES_FILE
    templates = _load_json(templates_path) if templates_path.exists() else {"templates": []}

    errors: list[str] = []
    _check_skill_tests(params.get("skill_tests", {}), errors)
    _check_escrow(params.get("escrow", {}), errors)
    _check_windows(params, errors)
    _check_retry(params.get("retry", {}), errors)
    _check_templates(templates, errors)
    return errors


def _check_skill_tests(section: dict[str, Any], errors: list[str]) -> None:
    if section.get("cooldown_days", 0) <= 0:
        errors.append("skill_tests.cooldown_days must be > 0")
    if section.get("cheat_tab_switch_threshold", 0) < 1:
        errors.append("skill_tests.cheat_tab_switch_threshold must be >= 1")
    if section.get("submit_grace_seconds", 0) < 0:
        errors.append("skill_tests.submit_grace_seconds must be >= 0")
    score = section.get("default_passing_score", -1)
    if not 0 <= score <= 100:
        errors.append("skill_tests.default_passing_score must be in [0, 100]")
    for difficulty in DIFFICULTIES:
        if section.get("time_limit_seconds", {}).get(difficulty, 0) <= 0:
            errors.append(f"skill_tests.time_limit_seconds.{difficulty} must be > 0")
        if section.get("question_counts", {}).get(difficulty, 0) < 1:
            errors.append(f"skill_tests.question_counts.{difficulty} must be >= 1")


def _check_escrow(section: dict[str, Any], errors: list[str]) -> None:
    rate = _decimal(section.get("platform_fee_rate"))
    if rate is None or not Decimal("0") <= rate < Decimal("1"):
        errors.append("escrow.platform_fee_rate must be a decimal in [0, 1)")
    quantum = _decimal(section.get("money_quantum", "0.01"))
    if quantum is None or quantum <= 0:
        errors.append("escrow.money_quantum must be > 0")
    if section.get("intent_ttl_hours", 0) <= 0:
        errors.append("escrow.intent_ttl_hours must be > 0")
    methods = section.get("payment_methods", [])
    known = {"payfast", "card", "eft"}
    if not methods:
        errors.append("escrow.payment_methods must not be empty")
    for method in methods:
        if method not in known:
            errors.append(f"escrow.payment_methods contains unknown method: {method}")


def _check_windows(params: dict[str, Any], errors: list[str]) -> None:
    if params.get("milestones", {}).get("max_revisions", -1) < 0:
        errors.append("milestones.max_revisions must be >= 0")
    if params.get("disputes", {}).get("response_window_days", 0) <= 0:
        errors.append("disputes.response_window_days must be > 0")
    if params.get("reviews", {}).get("window_days", 0) <= 0:
        errors.append("reviews.window_days must be > 0")


def _check_retry(section: dict[str, Any], errors: list[str]) -> None:
    if section.get("max_attempts", 1) < 1:
        errors.append("retry.max_attempts must be >= 1")
    base = section.get("base_delay_seconds", 0.0)
    ceiling = section.get("max_delay_seconds", 0.0)
    if base < 0 or ceiling < base:
        errors.append("retry delays must satisfy 0 <= base_delay_seconds <= max_delay_seconds")


def _check_templates(data: dict[str, Any], errors: list[str]) -> None:
    seen: set[str] = set()
    for raw in data.get("templates", []):
        template_id = raw.get("template_id", "?")
        if template_id in seen:
            errors.append(f"Duplicate template id: {template_id}")
        seen.add(template_id)
        if not 0 <= raw.get("passing_score", -1) <= 100:
            errors.append(f"{template_id}: passing_score must be in [0, 100]")
        question_ids: set[str] = set()
        for question in raw.get("questions", []):
            qid = question.get("question_id", "?")
            if qid in question_ids:
                errors.append(f"{template_id}: duplicate question id {qid}")
            question_ids.add(qid)
            if question.get("correct_answer") not in question.get("options", {}):
                errors.append(f"{template_id}/{qid}: correct_answer is not one of the options")
            if question.get("difficulty") not in DIFFICULTIES:
                errors.append(f"{template_id}/{qid}: unknown difficulty")


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
