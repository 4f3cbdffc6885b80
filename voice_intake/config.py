# voice_intake/config.py
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional
from pathlib import Path
import os
import commentjson

from dotenv import load_dotenv
load_dotenv()

PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")
DEFAULT_MODEL = "gemini-2.5-flash-lite"
DEFAULT_DATABASE_URL = "sqlite:///voice_intake.db"


@dataclass(frozen=True)
class ResolverThresholds:
    """
    Cutoffs for the fuzzy tier of entity resolution.

    A name is scored twice: once whole against the query, and once per run
    of consecutive words as long as the query. The best word-run score is
    multiplied by `partial_name_weight` and the higher of the two counts, so
    a close hit on part of a longer name ("Siemenz" in "Siemens Healthcare")
    asks for confirmation instead of being missed. Set it to 0 to score
    whole names only.
    """

    min_similarity: float = 0.6
    high_confidence: float = 0.8
    confidence_gap: float = 0.2
    max_substring_matches: int = 5
    top_candidates: int = 3
    partial_name_weight: float = 0.9

    def __post_init__(self):
        for name in ("min_similarity", "high_confidence", "confidence_gap", "partial_name_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"ResolverThresholds.{name} must be within [0, 1], got {value}")
        if self.min_similarity > self.high_confidence:
            raise ValueError("ResolverThresholds.min_similarity cannot exceed high_confidence")
        if self.max_substring_matches < 2 or self.top_candidates < 1:
            raise ValueError("ResolverThresholds candidate bounds are too small")


@dataclass(frozen=True)
class CaptureSettings:
    language: str = "it-IT"
    max_consecutive_errors: int = 3
    restart_delay_seconds: float = 0.05
    # off unless set; the operator's stop is the normal end signal
    max_session_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_consecutive_errors < 0:
            raise ValueError("CaptureSettings.max_consecutive_errors must be >= 0")
        if self.restart_delay_seconds < 0:
            raise ValueError("CaptureSettings.restart_delay_seconds must be >= 0")


@dataclass(frozen=True)
class ExtractionSettings:
    model_name: str = DEFAULT_MODEL
    vertex_project: str = PROJECT_ID
    vertex_region: str = REGION
    llm_timeout: float = 60.0
    retries: int = 3
    low_confidence_threshold: float = 0.7
    max_exchanges: int = 6
    max_input_length: int = 2000
    requests_per_minute: int = 15
    reply_language: str = "Italian"

    def __post_init__(self):
        if not 0.0 <= self.low_confidence_threshold <= 1.0:
            raise ValueError("ExtractionSettings.low_confidence_threshold must be within [0, 1]")
        if self.retries < 1 or self.max_exchanges < 1 or self.requests_per_minute < 1:
            raise ValueError("ExtractionSettings counters must be positive")


@dataclass(frozen=True)
class Settings:
    resolver: ResolverThresholds = field(default_factory=ResolverThresholds)
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    database_url: str = DEFAULT_DATABASE_URL


# env var -> (section, attribute, cast)
_ENV_OVERRIDES = {
    "VOICE_MIN_SIMILARITY": ("resolver", "min_similarity", float),
    "VOICE_HIGH_CONFIDENCE": ("resolver", "high_confidence", float),
    "VOICE_CONFIDENCE_GAP": ("resolver", "confidence_gap", float),
    "VOICE_MAX_CAPTURE_ERRORS": ("capture", "max_consecutive_errors", int),
    "VOICE_LANGUAGE": ("capture", "language", str),
    "VOICE_LOW_CONFIDENCE": ("extraction", "low_confidence_threshold", float),
    "VOICE_MAX_EXCHANGES": ("extraction", "max_exchanges", int),
    "LLM_MODEL": ("extraction", "model_name", str),
    "LLM_TIMEOUT": ("extraction", "llm_timeout", float),
    "LLM_RETRIES": ("extraction", "retries", int),
    "GOOGLE_CLOUD_PROJECT": ("extraction", "vertex_project", str),
    "GOOGLE_CLOUD_REGION": ("extraction", "vertex_region", str),
}


def _load_config_file(path: str | os.PathLike) -> Dict[str, Any]:
    """
    Load tunables from a JSON-with-comments file.
    Fails fast if the file is missing or a section is not an object.
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"voice_intake config file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data, dict):
        raise ValueError("voice_intake config must be a JSON object")
    for key in ("resolver", "capture", "extraction"):
        if key in data and not isinstance(data[key], dict):
            raise ValueError(f"voice_intake config section '{key}' must be an object")
    return data


def _section_kwargs(section_cls, raw: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} keys: {', '.join(sorted(unknown))}")
    return dict(raw)


def load_settings(path: str | os.PathLike | None = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    path = path or env.get("VOICE_INTAKE_CONFIG")
    data = _load_config_file(path) if path else {}

    sections: Dict[str, Dict[str, Any]] = {
        "resolver": _section_kwargs(ResolverThresholds, data.get("resolver", {})),
        "capture": _section_kwargs(CaptureSettings, data.get("capture", {})),
        "extraction": _section_kwargs(ExtractionSettings, data.get("extraction", {})),
    }

    for var, (section, attr, cast) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw.strip() == "":
            continue
        try:
            sections[section][attr] = cast(raw.strip())
        except ValueError as e:
            raise ValueError(f"Invalid value for {var}: {raw!r}") from e

    settings = Settings(
        resolver=ResolverThresholds(**sections["resolver"]),
        capture=CaptureSettings(**sections["capture"]),
        extraction=ExtractionSettings(**sections["extraction"]),
        database_url=env.get("DATABASE_URL") or data.get("database_url") or DEFAULT_DATABASE_URL,
    )
    return settings


def with_overrides(settings: Settings, **sections: Dict[str, Any]) -> Settings:
    """Copy `settings` replacing individual fields, e.g. resolver={"min_similarity": 0.5}."""
    updated = {}
    for name, values in sections.items():
        updated[name] = replace(getattr(settings, name), **values)
    return replace(settings, **updated)
