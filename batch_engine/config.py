"""
Batch settings loader (``batch_engine.config``).

Responsibility
--------------
Loads engine settings and per-step settings from YAML and parses them into
frozen dataclasses.  Step settings turn into ``RetryPolicy`` / ``SkipPolicy``
and the remaining ``StepDefinition`` options; engine settings choose the
repository database and the launch mode.

File layout::

    database_url: sqlite:///batch.db
    launch_mode: async          # sync | async
    max_workers: 2
    steps:
      billing:
        chunk_size: 50
        retry_limit: 3
        retryable: [ConnectionError, TimeoutError]
        backoff_seconds: 0.5
        skip_limit: 10
        skippable:
          - ValueError
          - {class: decimal.InvalidOperation, limit: 2}
        optional: false
        allow_start_if_complete: false
        start_limit: 5

Exception classes are builtin names or dotted import paths.

Invariants enforced
-------------------
* Unknown keys, wrong types and unresolvable exception classes raise
  ``BatchConfigError``; no silent defaults for malformed values.
* ``compute_checksum`` is a deterministic SHA-256 of the raw settings.
* ``BATCH_DATABASE_URL`` overrides ``database_url``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``BatchConfigError``.
"""

from __future__ import annotations

import builtins
import hashlib
import importlib
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from batch_kernel.exceptions import BatchConfigError

from batch_engine.domain.definitions import RetryPolicy, SkipPolicy, StepDefinition

DATABASE_URL_ENV = "BATCH_DATABASE_URL"

_STEP_KEYS = frozenset({
    "chunk_size",
    "retry_limit",
    "retryable",
    "backoff_seconds",
    "skip_limit",
    "skippable",
    "optional",
    "allow_start_if_complete",
    "start_limit",
})

_ENGINE_KEYS = frozenset({"database_url", "launch_mode", "max_workers", "steps"})


# =============================================================================
# Settings
# =============================================================================


class LaunchMode(str, Enum):
    """Whether ``JobLauncher.launch()`` blocks until the execution is terminal."""

    SYNC = "sync"
    ASYNC = "async"


@dataclass(frozen=True)
class StepSettings:
    """Tunable options of one step."""

    chunk_size: int = 10
    retry_limit: int = 0
    retryable: tuple[type[BaseException], ...] = ()
    backoff_seconds: float = 0.0
    skippable: Mapping[type[BaseException], int] = field(default_factory=dict)
    optional: bool = False
    allow_start_if_complete: bool = False
    start_limit: int | None = None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retry_limit=self.retry_limit,
            retryable=self.retryable,
            backoff_seconds=self.backoff_seconds,
        )

    def skip_policy(self) -> SkipPolicy:
        return SkipPolicy(skippable=self.skippable)

    def build_step(self, name: str, **components: Any) -> StepDefinition:
        """Build a StepDefinition with these settings.

        ``components`` are the remaining StepDefinition arguments (reader,
        processor, writer, tasklet, listeners, transaction_manager).
        """
        return StepDefinition(
            name=name,
            chunk_size=self.chunk_size,
            retry_policy=self.retry_policy(),
            skip_policy=self.skip_policy(),
            optional=self.optional,
            allow_start_if_complete=self.allow_start_if_complete,
            start_limit=self.start_limit,
            **components,
        )


@dataclass(frozen=True)
class BatchSettings:
    """Engine-level settings plus per-step settings by step name."""

    database_url: str = "sqlite:///:memory:"
    launch_mode: LaunchMode = LaunchMode.SYNC
    max_workers: int = 4
    steps: Mapping[str, StepSettings] = field(default_factory=dict)
    checksum: str = ""

    def step(self, name: str) -> StepSettings:
        """Settings for ``name``; defaults if the step is not configured."""
        return self.steps.get(name, StepSettings())


# =============================================================================
# Loading
# =============================================================================


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        BatchConfigError: if the file is not valid YAML or not a mapping.
    """
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise BatchConfigError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise BatchConfigError(str(path), "top level must be a mapping")
    return data


def load_batch_settings(
    path: Path | str,
    environ: Mapping[str, str] | None = None,
) -> BatchSettings:
    """Load and parse a batch settings file."""
    path = Path(path)
    return parse_batch_settings(load_yaml_file(path), str(path), environ)


def parse_batch_settings(
    data: Mapping[str, Any],
    source: str = "<dict>",
    environ: Mapping[str, str] | None = None,
) -> BatchSettings:
    """Parse engine settings from an already-loaded mapping."""
    environ = os.environ if environ is None else environ
    _reject_unknown(data, _ENGINE_KEYS, source)

    database_url = environ.get(DATABASE_URL_ENV) or data.get(
        "database_url", BatchSettings.database_url,
    )
    if not isinstance(database_url, str) or not database_url:
        raise BatchConfigError(source, "database_url must be a non-empty string")

    raw_mode = data.get("launch_mode", LaunchMode.SYNC.value)
    try:
        launch_mode = LaunchMode(raw_mode)
    except ValueError:
        raise BatchConfigError(
            source,
            f"launch_mode must be one of {[m.value for m in LaunchMode]}, "
            f"got {raw_mode!r}",
        ) from None

    max_workers = _int(data, "max_workers", 4, source, minimum=1)

    raw_steps = data.get("steps") or {}
    if not isinstance(raw_steps, dict):
        raise BatchConfigError(source, "steps must be a mapping of step name to settings")
    steps = {
        name: parse_step_settings(step_data or {}, f"{source}:steps.{name}")
        for name, step_data in raw_steps.items()
    }

    return BatchSettings(
        database_url=database_url,
        launch_mode=launch_mode,
        max_workers=max_workers,
        steps=steps,
        checksum=compute_checksum(dict(data)),
    )


def parse_step_settings(data: Mapping[str, Any], source: str = "<dict>") -> StepSettings:
    """Parse one step's settings.

    ``skippable`` entries are class names (limit = ``skip_limit``) or
    ``{class: ..., limit: ...}`` mappings.
    """
    if not isinstance(data, Mapping):
        raise BatchConfigError(source, "step settings must be a mapping")
    _reject_unknown(data, _STEP_KEYS, source)

    skip_limit = _int(data, "skip_limit", 0, source, minimum=0)
    skippable: dict[type[BaseException], int] = {}
    for entry in _list(data, "skippable", source):
        if isinstance(entry, Mapping):
            if "class" not in entry:
                raise BatchConfigError(source, f"skippable entry without 'class': {entry!r}")
            limit = _int(entry, "limit", skip_limit, source, minimum=0)
            klass = resolve_exception_class(entry["class"], source)
        else:
            limit = skip_limit
            klass = resolve_exception_class(entry, source)
        skippable[klass] = limit

    backoff = data.get("backoff_seconds", 0.0)
    if isinstance(backoff, bool) or not isinstance(backoff, (int, float)) or backoff < 0:
        raise BatchConfigError(source, f"backoff_seconds must be >= 0, got {backoff!r}")

    start_limit = data.get("start_limit")
    if start_limit is not None:
        start_limit = _int(data, "start_limit", 0, source, minimum=1)

    return StepSettings(
        chunk_size=_int(data, "chunk_size", 10, source, minimum=1),
        retry_limit=_int(data, "retry_limit", 0, source, minimum=0),
        retryable=tuple(
            resolve_exception_class(name, source)
            for name in _list(data, "retryable", source)
        ),
        backoff_seconds=float(backoff),
        skippable=skippable,
        optional=_bool(data, "optional", source),
        allow_start_if_complete=_bool(data, "allow_start_if_complete", source),
        start_limit=start_limit,
    )


def resolve_exception_class(name: Any, source: str = "<dict>") -> type[BaseException]:
    """Resolve a builtin exception name or a dotted ``module.Class`` path."""
    if not isinstance(name, str) or not name:
        raise BatchConfigError(source, f"exception class must be a name, got {name!r}")

    module_name, _, attr = name.rpartition(".")
    if module_name:
        try:
            candidate = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as exc:
            raise BatchConfigError(
                source, f"cannot import exception class '{name}': {exc}",
            ) from exc
    else:
        candidate = getattr(builtins, name, None)

    if not (isinstance(candidate, type) and issubclass(candidate, BaseException)):
        raise BatchConfigError(source, f"'{name}' is not an exception class")
    return candidate


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


# =============================================================================
# Field helpers
# =============================================================================


def _reject_unknown(data: Mapping[str, Any], allowed: frozenset[str], source: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise BatchConfigError(
            source, f"unknown keys {unknown}; allowed: {sorted(allowed)}",
        )


def _int(
    data: Mapping[str, Any], key: str, default: int, source: str, minimum: int,
) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise BatchConfigError(source, f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise BatchConfigError(source, f"{key} must be >= {minimum}, got {value}")
    return value


def _bool(data: Mapping[str, Any], key: str, source: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise BatchConfigError(source, f"{key} must be true or false, got {value!r}")
    return value


def _list(data: Mapping[str, Any], key: str, source: str) -> list[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise BatchConfigError(source, f"{key} must be a list, got {value!r}")
    return value
