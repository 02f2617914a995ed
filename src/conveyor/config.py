"""Configuration loading for Conveyor.

Two kinds of configuration live here:

- The pipeline file (GitLab-style ``.gitlab-ci.yml``): stages, globals and job
  definitions, parsed into :class:`PipelineConfig`.
- Engine settings (worker limit, timeouts, data directory, runtime), parsed
  into :class:`EngineSettings` with ``CONVEYOR_*`` environment overrides.

YAML is read with ``yaml.safe_load``; anchors and ``<<`` merge keys are
resolved by PyYAML before the models see the data.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from conveyor.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_STAGES = [".pre", "build", "test", "deploy", ".post"]

# Top-level keys that are never jobs.
RESERVED_KEYS = frozenset(
    {
        "stages",
        "types",
        "variables",
        "image",
        "services",
        "before_script",
        "after_script",
        "cache",
        "include",
        "default",
        "workflow",
    }
)

JOB_NAME_PATTERN = re.compile(r"^[^\s.][^\n]*$")


# ── Enums ────────────────────────────────────────────────────────────────────


class WhenPolicy(str, Enum):
    """When a job runs relative to its upstream jobs."""

    ON_SUCCESS = "on_success"
    MANUAL = "manual"
    ALWAYS = "always"
    NEVER = "never"  # only meaningful inside rules


class CachePolicy(str, Enum):
    PULL_PUSH = "pull-push"
    PULL = "pull"
    PUSH = "push"


# ── Job sub-configs ──────────────────────────────────────────────────────────


def _as_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


class ArtifactsConfig(BaseModel):
    """Declared job outputs.

    ``reports`` is normalized to ``{report_name: [paths]}``. The GitLab
    ``coverage_report: {coverage_format, path}`` form keeps only the path.
    """

    paths: list[str] = []
    expire_in: str | None = None
    reports: dict[str, list[str]] = {}

    @field_validator("paths", mode="before")
    @classmethod
    def _paths(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("reports", mode="before")
    @classmethod
    def _reports(cls, v: Any) -> Any:
        if not v:
            return {}
        normalized: dict[str, list[str]] = {}
        for name, spec in v.items():
            if isinstance(spec, dict):
                spec = spec.get("path") or spec.get("paths")
            normalized[name] = _as_list(spec)
        return normalized

    def expiry(self) -> timedelta | None:
        if not self.expire_in:
            return None
        return parse_duration(self.expire_in)


class CacheConfig(BaseModel):
    """Cache paths shared across pipelines under a stable key."""

    key: str = "default"
    paths: list[str] = []
    policy: CachePolicy = CachePolicy.PULL_PUSH
    reset: bool = False

    @field_validator("paths", mode="before")
    @classmethod
    def _paths(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("key", mode="before")
    @classmethod
    def _key(cls, v: Any) -> Any:
        # ``key: {files: [...]}`` is not supported; fall back to the default key.
        if isinstance(v, dict):
            return "default"
        return str(v)


class NeedConfig(BaseModel):
    """A ``needs`` entry: a job name or ``{job, artifacts, optional}``."""

    job: str
    artifacts: bool = True
    optional: bool = False


class OnlyExceptConfig(BaseModel):
    """Legacy ``only``/``except`` block. A bare list means ``refs``."""

    refs: list[str] = []
    changes: list[str] = []
    variables: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _from_list(cls, data: Any) -> Any:
        if isinstance(data, (list, str)):
            return {"refs": _as_list(data)}
        return data

    def is_empty(self) -> bool:
        return not (self.refs or self.changes or self.variables)


class RuleConfig(BaseModel):
    """One entry of the structured ``rules`` list."""

    if_: str | None = Field(None, alias="if")
    changes: list[str] | None = None
    when: WhenPolicy | None = None
    allow_failure: bool | None = None

    model_config = {"populate_by_name": True}

    @field_validator("changes", mode="before")
    @classmethod
    def _changes(cls, v: Any) -> Any:
        if isinstance(v, dict):
            v = v.get("paths")
        return None if v is None else _as_list(v)


class ServiceConfig(BaseModel):
    """A sidecar container started next to the job."""

    name: str
    alias: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_str(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data

    @property
    def hostname(self) -> str:
        if self.alias:
            return self.alias
        # postgres:13-alpine -> postgres, docker:20.10-dind -> docker
        base = self.name.split("/")[-1]
        return base.split(":")[0]


class EnvironmentConfig(BaseModel):
    name: str
    url: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_str(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


# ── Job ──────────────────────────────────────────────────────────────────────


class JobConfig(BaseModel):
    """A job as declared in the pipeline file."""

    name: str
    stage: str = "test"
    image: str | None = None
    services: list[ServiceConfig] = []
    variables: dict[str, str] = {}
    before_script: list[str] | None = None
    script: list[str]
    needs: list[NeedConfig] | None = None
    dependencies: list[str] | None = None
    artifacts: ArtifactsConfig | None = None
    cache: CacheConfig | None = None
    only: OnlyExceptConfig | None = None
    except_: OnlyExceptConfig | None = Field(None, alias="except")
    rules: list[RuleConfig] | None = None
    allow_failure: bool | None = None
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    timeout: str | None = None
    coverage: str | None = None
    environment: EnvironmentConfig | None = None

    model_config = {"populate_by_name": True}

    @field_validator("script", "before_script", mode="before")
    @classmethod
    def _script(cls, v: Any) -> Any:
        if v is None:
            return v
        return [str(line) for line in _as_list(v)]

    @field_validator("needs", mode="before")
    @classmethod
    def _needs(cls, v: Any) -> Any:
        if v is None:
            return None
        return [{"job": n} if isinstance(n, str) else n for n in v]

    @field_validator("variables", mode="before")
    @classmethod
    def _variables(cls, v: Any) -> Any:
        if not v:
            return {}
        return {str(k): _variable_value(val) for k, val in v.items()}

    @model_validator(mode="after")
    def validate_job(self) -> JobConfig:
        if not self.script:
            msg = f"Job '{self.name}': 'script' must contain at least one command"
            raise ValueError(msg)
        if self.when == WhenPolicy.NEVER:
            msg = f"Job '{self.name}': 'when: never' is only valid inside rules"
            raise ValueError(msg)
        if self.coverage:
            try:
                compile_coverage(self.coverage)
            except re.error as exc:
                msg = f"Job '{self.name}': invalid coverage regex: {exc}"
                raise ValueError(msg) from exc
        if self.timeout:
            parse_duration(self.timeout)
        if self.artifacts and self.artifacts.expire_in:
            parse_duration(self.artifacts.expire_in)
        return self

    def timeout_seconds(self) -> float | None:
        if not self.timeout:
            return None
        delta = parse_duration(self.timeout)
        return delta.total_seconds() if delta else None


# ── Pipeline ─────────────────────────────────────────────────────────────────


class PipelineConfig(BaseModel):
    """A complete pipeline file."""

    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    variables: dict[str, str] = {}
    image: str | None = None
    services: list[ServiceConfig] = []
    before_script: list[str] = []
    cache: CacheConfig | None = None
    jobs: dict[str, JobConfig] = {}

    @field_validator("variables", mode="before")
    @classmethod
    def _variables(cls, v: Any) -> Any:
        if not v:
            return {}
        return {str(k): _variable_value(val) for k, val in v.items()}

    @field_validator("before_script", mode="before")
    @classmethod
    def _before_script(cls, v: Any) -> Any:
        return [str(line) for line in _as_list(v)]

    @model_validator(mode="after")
    def validate_pipeline(self) -> PipelineConfig:
        dupes = sorted({s for s in self.stages if self.stages.count(s) > 1})
        if dupes:
            msg = f"Duplicate stage names: {dupes}"
            raise ValueError(msg)
        for job in self.jobs.values():
            if job.stage not in self.stages:
                msg = f"Job '{job.name}' uses undeclared stage '{job.stage}'"
                raise ValueError(msg)
        return self

    def ordered_stages(self) -> list[str]:
        """Stage names with the implicit ``.pre``/``.post`` stages at the ends."""
        middle = [s for s in self.stages if s not in (".pre", ".post")]
        return [".pre", *middle, ".post"]

    def jobs_in_stage(self, stage: str) -> list[JobConfig]:
        return [job for job in self.jobs.values() if job.stage == stage]


def parse_pipeline(raw: dict[str, Any]) -> PipelineConfig:
    """Build a :class:`PipelineConfig` from a raw YAML mapping.

    Hidden keys (``.name``) are templates and never become jobs. Every other
    non-reserved mapping is a job.

    Raises:
        ValidationError: If the mapping does not describe a valid pipeline.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Pipeline definition must be a mapping")

    defaults = raw.get("default") or {}
    data: dict[str, Any] = {
        "variables": raw.get("variables") or {},
        "image": raw.get("image", defaults.get("image")),
        "services": raw.get("services", defaults.get("services")) or [],
        "before_script": raw.get("before_script", defaults.get("before_script")) or [],
        "cache": raw.get("cache", defaults.get("cache")),
    }
    stages = raw.get("stages", raw.get("types"))
    if stages is not None:
        data["stages"] = [".pre", *[s for s in stages if s not in (".pre", ".post")], ".post"]

    jobs: dict[str, Any] = {}
    for key, value in raw.items():
        if key in RESERVED_KEYS or key.startswith("."):
            continue
        if not isinstance(value, dict):
            raise ValidationError(f"Job '{key}' must be a mapping, got {type(value).__name__}")
        if not JOB_NAME_PATTERN.match(key):
            raise ValidationError(f"Invalid job name: {key!r}")
        jobs[key] = {**value, "name": key}
    data["jobs"] = jobs

    try:
        return PipelineConfig(**data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid pipeline definition: {exc}") from exc


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load a pipeline file, resolving ``include: local`` entries.

    Local includes are merged underneath the including file (the including
    file wins on conflicting top-level keys). Template, remote and project
    includes are out of reach and are logged and skipped.

    Raises:
        FileNotFoundError: If the pipeline file doesn't exist.
        ValidationError: If YAML or validation fails.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {path}")

    raw = _read_yaml(path)
    merged: dict[str, Any] = {}
    for include in _as_list(raw.pop("include", None)):
        merged.update(_resolve_include(include, path.parent))
    merged.update(raw)

    config = parse_pipeline(merged)
    logger.info(
        "Loaded pipeline %s: %d stages, %d jobs",
        path,
        len(config.stages),
        len(config.jobs),
    )
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValidationError(f"{path}: top level must be a mapping")
    return raw


def _resolve_include(include: Any, root: Path) -> dict[str, Any]:
    if isinstance(include, str):
        include = {"remote": include} if "://" in include else {"local": include}
    local = include.get("local")
    if not local:
        logger.warning("Skipping unsupported include: %s", include)
        return {}
    target = root / str(local).lstrip("/")
    if not target.exists():
        raise ValidationError(f"Included file not found: {local}")
    raw = _read_yaml(target)
    raw.pop("include", None)
    logger.debug("Included %s", target)
    return raw


# ── Engine settings ──────────────────────────────────────────────────────────


class EngineSettings(BaseModel):
    """Engine-level knobs, independent of any pipeline file."""

    worker_limit: int = Field(4, ge=1)
    default_timeout: str = "1h"
    max_infra_retries: int = Field(2, ge=0)
    infra_retry_backoff: float = 1.0
    default_image: str = "alpine:latest"
    runtime: Literal["docker", "shell"] = "docker"
    data_dir: str = ".conveyor-data"
    workspace_dir: str | None = None
    pipeline_file: str = ".gitlab-ci.yml"
    artifact_gc_interval: int = 3600
    notify_webhook_urls: list[str] = []
    project_name: str = ""

    @field_validator("default_timeout")
    @classmethod
    def _timeout(cls, v: str) -> str:
        parse_duration(v)
        return v

    def default_timeout_seconds(self) -> float | None:
        delta = parse_duration(self.default_timeout)
        return delta.total_seconds() if delta else None

    def workspace_path(self) -> Path:
        if self.workspace_dir:
            return Path(self.workspace_dir)
        return Path(self.data_dir) / "workspaces"


_ENV_OVERRIDES: dict[str, str] = {
    "CONVEYOR_WORKER_LIMIT": "worker_limit",
    "CONVEYOR_DEFAULT_TIMEOUT": "default_timeout",
    "CONVEYOR_MAX_INFRA_RETRIES": "max_infra_retries",
    "CONVEYOR_RUNTIME": "runtime",
    "CONVEYOR_DATA_DIR": "data_dir",
    "CONVEYOR_WORKSPACE_DIR": "workspace_dir",
    "CONVEYOR_PIPELINE_FILE": "pipeline_file",
    "CONVEYOR_PROJECT_NAME": "project_name",
}


def load_settings(path: Path | None = None, environ: dict[str, str] | None = None) -> EngineSettings:
    """Load engine settings from an optional YAML file plus environment overrides.

    Raises:
        ValidationError: If the settings are invalid.
    """
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    if path is not None and path.exists():
        raw = _read_yaml(path)

    for var, field_name in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            raw[field_name] = value

    webhooks = env.get("CONVEYOR_NOTIFY_WEBHOOKS")
    if webhooks:
        raw["notify_webhook_urls"] = [u.strip() for u in webhooks.split(",") if u.strip()]

    try:
        settings = EngineSettings(**raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid engine settings: {exc}") from exc
    except ValueError as exc:
        raise ValidationError(f"Invalid engine settings: {exc}") from exc

    logger.info(
        "Engine settings: runtime=%s worker_limit=%d data_dir=%s",
        settings.runtime,
        settings.worker_limit,
        settings.data_dir,
    )
    return settings


# ── Helpers ──────────────────────────────────────────────────────────────────

_DURATION_UNITS = {
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
    "mo": 2592000,
    "month": 2592000,
    "months": 2592000,
    "y": 31536000,
    "year": 31536000,
    "years": 31536000,
}

_DURATION_TOKEN = re.compile(r"(\d+)\s*([a-z]*)")


def parse_duration(duration: str | int) -> timedelta | None:
    """Parse a duration like ``30s``, ``1 hour``, ``1h 30m``, ``2 weeks``.

    A bare number is seconds. ``never`` returns None.

    Raises ValueError on invalid format.
    """
    if isinstance(duration, int):
        return timedelta(seconds=duration)
    text = duration.strip().lower()
    if text == "never":
        return None
    text = text.replace(" and ", " ").replace(",", " ")

    total = 0
    pos = 0
    for match in _DURATION_TOKEN.finditer(text):
        if text[pos : match.start()].strip():
            break
        value, unit = int(match.group(1)), match.group(2) or "s"
        if unit not in _DURATION_UNITS:
            msg = f"Invalid duration unit '{unit}' in '{duration}'"
            raise ValueError(msg)
        total += value * _DURATION_UNITS[unit]
        pos = match.end()

    if pos == 0 or text[pos:].strip():
        msg = f"Invalid duration format: '{duration}'"
        raise ValueError(msg)
    return timedelta(seconds=total)


_VARIABLE_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_variables(text: str, variables: dict[str, str]) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references. Unknown names are left as-is."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return variables.get(name, match.group(0))

    return _VARIABLE_REF.sub(_sub, text)


def _variable_value(value: Any) -> str:
    # ``VAR: {value: x, description: y}`` is the documented long form.
    if isinstance(value, dict):
        value = value.get("value", "")
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def compile_coverage(pattern: str) -> re.Pattern[str]:
    """Compile a coverage regex, accepting the `/.*/` literal form."""
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.endswith("/"):
        pattern = pattern[1:-1]
    return re.compile(pattern)
