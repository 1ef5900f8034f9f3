"""Engine configuration.

Defaults live in `reputation/rules/reputation_rules.yaml` (carries a
`version` key). A deployment may point REPUTATION_RULES_PATH at its own file and
override single keys with REPUTATION_<KEY> environment variables, e.g.
REPUTATION_MAX_RATINGS_PER_DAY=50.

Invalid configuration is a startup failure (RuntimeError), never a silent
fallback.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from app.core.env import load_env_if_present


RULES_PATH_ENV = "REPUTATION_RULES_PATH"
ENV_PREFIX = "REPUTATION_"
DEFAULT_RULES_PATH = Path(__file__).resolve().parents[1] / "rules" / "reputation_rules.yaml"


@dataclass(frozen=True, slots=True)
class EngineConfig:
    version: str = "1"

    max_ratings_per_day: int = 20

    trust_min: float = 0.1
    trust_max: float = 3.0
    trust_default: float = 1.0
    trust_step: float = 0.05

    spike_threshold: int = 5
    spike_window_minutes: int = 60
    coordination_window: int = 10
    coordination_threshold: float = 0.8
    coordination_min_ratings: int = 5

    stale_days: int = 30
    decay_per_week: int = 2
    max_decay: int = 20
    decay_max_workers: int = 4

    score_floor: int = 10
    score_ceiling: int = 100
    score_default: int = 50
    weight_rating: float = 0.3
    weight_accuracy: float = 0.5
    weight_current: float = 0.2

    statement_timeout_ms: int = 5000
    lock_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        _check(self.max_ratings_per_day >= 0, "max_ratings_per_day must be >= 0")
        _check(0 < self.trust_min <= self.trust_default <= self.trust_max,
               "trust bounds must satisfy 0 < trust_min <= trust_default <= trust_max")
        _check(self.trust_step >= 0, "trust_step must be >= 0")
        _check(self.spike_threshold >= 2, "spike_threshold must be >= 2")
        _check(self.spike_window_minutes > 0, "spike_window_minutes must be > 0")
        _check(self.coordination_window >= 1, "coordination_window must be >= 1")
        _check(0.5 < self.coordination_threshold <= 1.0, "coordination_threshold must be in (0.5, 1]")
        _check(1 <= self.coordination_min_ratings <= self.coordination_window,
               "coordination_min_ratings must be in [1, coordination_window]")
        _check(self.stale_days >= 0, "stale_days must be >= 0")
        _check(self.decay_per_week >= 0, "decay_per_week must be >= 0")
        _check(self.max_decay >= 0, "max_decay must be >= 0")
        _check(self.decay_max_workers >= 1, "decay_max_workers must be >= 1")
        _check(0 <= self.score_floor < self.score_ceiling <= 100, "score bounds must satisfy 0 <= floor < ceiling <= 100")
        _check(self.score_floor <= self.score_default <= self.score_ceiling, "score_default must lie within the bounds")
        weights = (self.weight_rating, self.weight_accuracy, self.weight_current)
        _check(all(w >= 0 for w in weights), "score weights must be >= 0")
        _check(abs(sum(weights) - 1.0) < 1e-6, "score weights must sum to 1.0")
        _check(self.statement_timeout_ms > 0, "statement_timeout_ms must be > 0")
        _check(self.lock_timeout_seconds > 0, "lock_timeout_seconds must be > 0")

    def replace(self, **changes: Any) -> "EngineConfig":
        return dataclasses.replace(self, **changes)


def _check(ok: bool, message: str) -> None:
    if not ok:
        raise RuntimeError(f"Invalid reputation config: {message}.")


def _coerce(name: str, raw: Any, target: type) -> Any:
    try:
        if target is int:
            if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
                raise ValueError(raw)
            return int(raw)
        if target is float:
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid reputation config: {name}={raw!r} is not a valid {target.__name__}.") from e


def _field_types() -> dict[str, type]:
    hints = {"int": int, "float": float, "str": str}
    return {f.name: hints[f.type] for f in dataclasses.fields(EngineConfig)}


def _load_yaml(path: Path) -> dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise RuntimeError(f"reputation rules yaml must be a mapping: {path}")
    section = raw.get("reputation") or {}
    if not isinstance(section, dict):
        raise RuntimeError(f"'reputation' section must be a mapping: {path}")
    values = dict(section)
    values["version"] = str(raw.get("version") or "0")
    return values


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """Build EngineConfig from YAML defaults plus REPUTATION_* overrides."""
    if environ is None:
        load_env_if_present()
        environ = os.environ

    if path is None:
        path = Path(environ[RULES_PATH_ENV]) if environ.get(RULES_PATH_ENV) else DEFAULT_RULES_PATH

    types = _field_types()
    values = _load_yaml(path)
    unknown = sorted(set(values) - set(types))
    if unknown:
        raise RuntimeError(f"Unknown reputation config keys in {path}: {', '.join(unknown)}")

    for name in types:
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value is not None and env_value != "":
            values[name] = env_value

    return EngineConfig(**{k: _coerce(k, v, types[k]) for k, v in values.items()})
