from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from oroboreo.logs import utc_timestamp
from oroboreo.models import ModelSpec
from oroboreo.tasks import Task

logger = logging.getLogger(__name__)

TOOL_USE_FACTOR = 1.5
OUTPUT_MULTIPLIER = 1.2


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def empty_ledger(started_at: datetime | None = None) -> dict[str, Any]:
    return {
        "session": {"startTime": utc_timestamp(started_at), "totalCost": 0},
        "tasks": [],
    }


class CostLedger:
    """Append-only per-invocation cost records persisted as ``costs.json``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return empty_ledger()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Error reading cost log, starting fresh")
            return empty_ledger()
        if not isinstance(payload, dict):
            return empty_ledger()
        session = payload.get("session")
        if not isinstance(session, dict):
            payload["session"] = empty_ledger()["session"]
        tasks = payload.get("tasks")
        if not isinstance(tasks, list):
            payload["tasks"] = []
        return payload

    def save(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def total_cost(self) -> float:
        return float(self.load()["session"].get("totalCost") or 0)

    def record(
        self,
        task: Task,
        model: ModelSpec,
        *,
        provider: str,
        prompt: str,
        output: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        input_tokens = math.ceil(estimate_tokens(prompt) * TOOL_USE_FACTOR)
        output_tokens = math.ceil(estimate_tokens(output) * OUTPUT_MULTIPLIER)
        total_cost = (
            input_tokens * model.input_cost + output_tokens * model.output_cost
        ) / 1_000_000

        entry = {
            "taskId": task.id,
            "taskTitle": task.title,
            "timestamp": utc_timestamp(now or datetime.now(UTC)),
            "model": model.name,
            "modelId": model.id,
            "provider": provider,
            "inputTokens": input_tokens,
            "outputTokens": output_tokens,
            "totalCostUSD": total_cost,
        }
        payload = self.load()
        payload["tasks"].append(entry)
        session = payload["session"]
        session["totalCost"] = float(session.get("totalCost") or 0) + total_cost
        self.save(payload)

        logger.info(
            "Cost: $%.4f (Input: %d, Output: %d)", total_cost, input_tokens, output_tokens
        )
        logger.info("Session Total: $%.2f", session["totalCost"])
        return entry
