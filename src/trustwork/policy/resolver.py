"""Policy resolver — loads platform parameters from the config directory.

Platform configuration is the only global state in the core: fee rates,
cooldown length, attempt time limits, response windows. A resolver is
immutable once constructed; reloading configuration means building a new
resolver and handing it to a new service instance.

Config files:
    platform_params.json         — required, all tunables.
    skill_test_templates.json    — optional, seeded question pools.
"""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional


PARAMS_FILE = "platform_params.json"
TEMPLATES_FILE = "skill_test_templates.json"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient gateway errors."""
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float


class PolicyResolver:
    """Read-only accessor over platform parameters.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        fee_rate = resolver.platform_fee_rate()
    """

    def __init__(
        self,
        params: dict[str, Any],
        templates: Optional[dict[str, Any]] = None,
    ) -> None:
        self._params = copy.deepcopy(params)
        self._templates = copy.deepcopy(templates) if templates else {"templates": []}
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        params_path = config_dir / PARAMS_FILE
        if not params_path.exists():
            raise ValueError(f"Missing platform parameters: {params_path}")
        params = _load_json(params_path)
        templates_path = config_dir / TEMPLATES_FILE
        templates = _load_json(templates_path) if templates_path.exists() else None
        return cls(params, templates)

    @classmethod
    def from_dict(
        cls,
        params: dict[str, Any],
        templates: Optional[dict[str, Any]] = None,
    ) -> PolicyResolver:
        return cls(params, templates)

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------

    def currency(self) -> str:
        return self._params.get("currency", "ZAR")

    def money_quantum(self) -> Decimal:
        return Decimal(str(self._escrow().get("money_quantum", "0.01")))

    # ------------------------------------------------------------------
    # Skill tests
    # ------------------------------------------------------------------

    def skill_test_params(self) -> dict[str, Any]:
        return copy.deepcopy(self._params["skill_tests"])

    def attempt_cooldown(self) -> timedelta:
        return timedelta(days=self._params["skill_tests"]["cooldown_days"])

    def cheat_tab_switch_threshold(self) -> int:
        return int(self._params["skill_tests"]["cheat_tab_switch_threshold"])

    def submit_grace(self) -> timedelta:
        return timedelta(seconds=self._params["skill_tests"].get("submit_grace_seconds", 0))

    def default_passing_score(self) -> int:
        return int(self._params["skill_tests"]["default_passing_score"])

    def time_limit_seconds(self, difficulty: str) -> int:
        limits = self._params["skill_tests"]["time_limit_seconds"]
        return int(limits.get(difficulty, 2400))

    def question_count(self, difficulty: str) -> int:
        return int(self._params["skill_tests"]["question_counts"][difficulty])

    def skill_test_templates_data(self) -> dict[str, Any]:
        return copy.deepcopy(self._templates)

    # ------------------------------------------------------------------
    # Escrow and gateway
    # ------------------------------------------------------------------

    def platform_fee_rate(self) -> Decimal:
        return Decimal(str(self._escrow()["platform_fee_rate"]))

    def refund_retains_fee(self) -> bool:
        return bool(self._escrow().get("refund_retains_fee", False))

    def intent_ttl(self) -> timedelta:
        return timedelta(hours=self._escrow().get("intent_ttl_hours", 24))

    def payment_methods(self) -> list[str]:
        return list(self._escrow().get("payment_methods", ["payfast"]))

    def retry_policy(self) -> RetryPolicy:
        retry = self._params.get("retry", {})
        return RetryPolicy(
            max_attempts=int(retry.get("max_attempts", 3)),
            base_delay_seconds=float(retry.get("base_delay_seconds", 0.2)),
            max_delay_seconds=float(retry.get("max_delay_seconds", 2.0)),
        )

    def gateway_params(self) -> dict[str, Any]:
        return copy.deepcopy(self._params.get("gateway", {}))

    def webhook_secret(self) -> Optional[str]:
        """Resolve the webhook HMAC secret from the environment."""
        env_name = self._params.get("gateway", {}).get(
            "webhook_secret_env", "TRUSTWORK_WEBHOOK_SECRET",
        )
        return os.environ.get(env_name) or None

    # ------------------------------------------------------------------
    # Milestones, disputes, reviews
    # ------------------------------------------------------------------

    def max_revisions(self) -> int:
        return int(self._params["milestones"]["max_revisions"])

    def dispute_response_window(self) -> timedelta:
        return timedelta(days=self._params["disputes"]["response_window_days"])

    def review_window(self) -> timedelta:
        return timedelta(days=self._params["reviews"]["window_days"])

    def review_text_max_length(self) -> int:
        return int(self._params["reviews"].get("text_max_length", 500))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _escrow(self) -> dict[str, Any]:
        return self._params["escrow"]

    def _validate(self) -> None:
        """Fail closed on structurally invalid parameters."""
        for section in ("skill_tests", "escrow", "milestones", "disputes", "reviews"):
            if section not in self._params:
                raise ValueError(f"Missing config section: {section}")
        rate = Decimal(str(self._params["escrow"]["platform_fee_rate"]))
        if not Decimal("0") <= rate < Decimal("1"):
            raise ValueError(f"platform_fee_rate must be in [0, 1), got {rate}")
        if self._params["skill_tests"]["cheat_tab_switch_threshold"] < 1:
            raise ValueError("cheat_tab_switch_threshold must be >= 1")
        counts = self._params["skill_tests"]["question_counts"]
        for difficulty, count in counts.items():
            if count < 1:
                raise ValueError(f"question_counts.{difficulty} must be >= 1")


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
