"""Runtime configuration for the reconciliation engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal

from .errors import ConfigurationError


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be numeric, got {raw!r}") from exc


@dataclass(frozen=True)
class EngineConfig:
    similarity_threshold: float = 0.6
    amount_tolerance: Decimal = Decimal("0")
    run_timeout: float | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        threshold = _env_float("RECON_SIMILARITY_THRESHOLD", "0.6")
        tolerance = os.getenv("RECON_AMOUNT_TOLERANCE", "0")
        try:
            amount_tolerance = Decimal(tolerance)
        except ArithmeticError as exc:
            raise ConfigurationError(f"RECON_AMOUNT_TOLERANCE must be numeric, got {tolerance!r}") from exc
        timeout = os.getenv("RECON_RUN_TIMEOUT")
        run_timeout = _env_float("RECON_RUN_TIMEOUT", timeout) if timeout else None
        log_level = os.getenv("RECON_LOG_LEVEL", "INFO").upper()
        return cls(
            similarity_threshold=threshold,
            amount_tolerance=amount_tolerance,
            run_timeout=run_timeout,
            log_level=log_level,
        )
