"""
Runtime settings for resolution runs.

All thresholds and weights default to the production policy and can be
overridden through SEASONLINK_* environment variables (or a .env file).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .env import load_env
from .errors import ValidationError


@dataclass
class Settings:
    """Tunable policy for one process."""

    db_path: Path = Path("data/identity.db")
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    auto_apply_threshold: float = 0.85
    min_confidence: float = 0.5
    pending_ttl_days: int = 7
    max_workers: int = 4
    team_continuity_threshold: float = 0.7
    team_season_window: int = 2
    event_webhook_url: Optional[str] = None
    weights: Dict[str, float] = field(default_factory=dict)

    def validate(self) -> List[str]:
        errors: List[str] = []
        for name in ("auto_apply_threshold", "min_confidence", "team_continuity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1], got {value}")
        if self.pending_ttl_days < 1:
            errors.append("pending_ttl_days must be at least 1")
        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.team_season_window < 0:
            errors.append("team_season_window must not be negative")
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            errors.append(f"Unknown log level: {self.log_level}")
        for factor, weight in self.weights.items():
            if weight < 0:
                errors.append(f"Weight for {factor} must not be negative")
        return errors


# env var -> (attribute, parser)
_ENV_FIELDS: Dict[str, tuple] = {
    "SEASONLINK_DB_PATH": ("db_path", Path),
    "SEASONLINK_LOG_LEVEL": ("log_level", str),
    "SEASONLINK_LOG_DIR": ("log_dir", Path),
    "SEASONLINK_AUTO_APPLY_THRESHOLD": ("auto_apply_threshold", float),
    "SEASONLINK_MIN_CONFIDENCE": ("min_confidence", float),
    "SEASONLINK_PENDING_TTL_DAYS": ("pending_ttl_days", int),
    "SEASONLINK_MAX_WORKERS": ("max_workers", int),
    "SEASONLINK_TEAM_CONTINUITY_THRESHOLD": ("team_continuity_threshold", float),
    "SEASONLINK_TEAM_SEASON_WINDOW": ("team_season_window", int),
    "SEASONLINK_EVENT_WEBHOOK_URL": ("event_webhook_url", str),
}

WEIGHT_PREFIX = "SEASONLINK_WEIGHT_"


def _parse(env_name: str, raw: str, parser: Callable):
    try:
        return parser(raw)
    except ValueError:
        raise ValidationError(f"Invalid value for {env_name}: {raw!r}")


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read instead of os.environ (the .env file is
            only loaded when reading the real environment)

    Returns:
        Validated Settings

    Raises:
        ValidationError: If a variable cannot be parsed or is out of range
    """
    if environ is None:
        load_env()
        environ = dict(os.environ)

    settings = Settings()
    for env_name, (attribute, parser) in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        setattr(settings, attribute, _parse(env_name, raw.strip(), parser))

    # SEASONLINK_WEIGHT_NAME_SIMILARITY=0.4 -> weights["name_similarity"] = 0.4
    for env_name, raw in environ.items():
        if env_name.startswith(WEIGHT_PREFIX) and raw.strip():
            factor = env_name[len(WEIGHT_PREFIX):].lower()
            settings.weights[factor] = _parse(env_name, raw.strip(), float)

    errors = settings.validate()
    if errors:
        raise ValidationError(errors)
    return settings
