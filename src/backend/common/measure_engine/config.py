from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class EvaluationConfig(BaseModel):
    # Maximum number of "how close" reasons attached to a trace.
    how_close_limit: int = Field(default=3, ge=0)
    # Trees nested deeper than this get a DEEPLY_NESTED lint warning.
    max_tree_depth_warning: int = Field(default=4, ge=1)
    # Elements without explicit timing must occur during the measurement period.
    # If disabled, untimed elements match facts on any date.
    default_window_is_measurement_period: bool = True


class RunnerSettings(BaseModel):
    """Operator-facing settings for the batch script (never read by the engine)."""

    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    max_workers: Optional[int] = Field(default=None, ge=1)
    log_level: str = "INFO"


def config_from_env() -> RunnerSettings:
    """
    Load runner settings from environment variables (and a local `.env`, if present).

    Reads:
      MEASURE_ENGINE_HOW_CLOSE_LIMIT, MEASURE_ENGINE_MAX_WORKERS, MEASURE_ENGINE_LOG_LEVEL
    """
    load_dotenv()

    evaluation = EvaluationConfig()
    how_close = os.getenv("MEASURE_ENGINE_HOW_CLOSE_LIMIT", "").strip()
    if how_close:
        evaluation = EvaluationConfig(how_close_limit=_parse_int("MEASURE_ENGINE_HOW_CLOSE_LIMIT", how_close))

    max_workers: Optional[int] = None
    workers = os.getenv("MEASURE_ENGINE_MAX_WORKERS", "").strip()
    if workers:
        max_workers = _parse_int("MEASURE_ENGINE_MAX_WORKERS", workers)

    return RunnerSettings(
        evaluation=evaluation,
        max_workers=max_workers,
        log_level=os.getenv("MEASURE_ENGINE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer (got {raw!r}).") from exc
