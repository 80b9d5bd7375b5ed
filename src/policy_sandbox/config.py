"""Sandbox configuration models.

Uses stdlib dataclasses only. Every limit the sandbox enforces lives here so
that each subsystem (policies, ad-hoc code execution, webhook ingestion) can
be tuned independently.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List

DEFAULT_BLOCKED_IDENTIFIERS: tuple[str, ...] = (
    # dynamic evaluation
    "eval",
    "exec",
    "compile",
    "Function",
    # host globals
    "globalThis",
    "window",
    "document",
    "process",
    "global",
    "navigator",
    "location",
    # module loading
    "require",
    "import",
    "importScripts",
    "module",
    "exports",
    # I/O primitives
    "fetch",
    "XMLHttpRequest",
    "WebSocket",
    "postMessage",
    "localStorage",
    "sessionStorage",
    "indexedDB",
    "open",
    # timers
    "setTimeout",
    "setInterval",
    "setImmediate",
    # python reflection
    "__import__",
    "__builtins__",
    "__globals__",
    "__class__",
    "__subclasses__",
    "__code__",
    "__dict__",
    "getattr",
    "setattr",
    "delattr",
)


@dataclass
class ValidatorConfig:
    """Static validator limits."""

    max_code_size: int = 10_000
    max_nesting: int = 10
    blocked_identifiers: List[str] = field(
        default_factory=lambda: list(DEFAULT_BLOCKED_IDENTIFIERS)
    )

    def __post_init__(self) -> None:
        _require_positive(self, "max_code_size", "max_nesting")


@dataclass
class QuotaConfig:
    """Per-subject execution quota.

    ``max_per_hour`` of 0 disables the hourly window. ``max_violations`` of 0
    disables the lifetime lock-out.
    """

    max_per_minute: int = 100
    max_per_hour: int = 0
    max_cost_per_request: int = 10
    max_violations: int = 0

    def __post_init__(self) -> None:
        _require_positive(self, "max_per_minute", "max_cost_per_request")
        _require_non_negative(self, "max_per_hour", "max_violations")


@dataclass
class CircuitBreakerConfig:
    """Consecutive-failure circuit breaker."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0

    def __post_init__(self) -> None:
        _require_positive(self, "failure_threshold")
        _require_non_negative(self, "cooldown_seconds")


@dataclass
class DedupConfig:
    """Deduplication window and retention horizon, in seconds."""

    window_seconds: float = 60.0
    retention_seconds: float = 3600.0
    sweep_interval: int = 100

    def __post_init__(self) -> None:
        _require_positive(self, "window_seconds", "sweep_interval")
        if self.retention_seconds < self.window_seconds:
            raise ValueError("retention_seconds must be >= window_seconds")


@dataclass
class ExecutionConfig:
    """Interpreter budgets."""

    timeout_ms: int = 5_000
    max_steps: int = 100_000
    max_loop_iterations: int = 10_000
    max_value_length: int = 100_000
    dry_run: bool = False

    def __post_init__(self) -> None:
        _require_non_negative(self, "timeout_ms")
        _require_positive(self, "max_steps", "max_loop_iterations", "max_value_length")


@dataclass
class WebhookConfig:
    """Upstream webhook ingestion limits."""

    max_requests_per_minute: int = 100
    max_violations: int = 10
    max_payload_bytes: int = 1024 * 1024
    max_timestamp_skew_seconds: float = 300.0
    dedup_window_seconds: float = 300.0
    max_depth: int = 10

    def __post_init__(self) -> None:
        _require_positive(
            self, "max_requests_per_minute", "max_payload_bytes", "dedup_window_seconds", "max_depth"
        )
        _require_non_negative(self, "max_violations", "max_timestamp_skew_seconds")


@dataclass
class SandboxConfig:
    """Top-level sandbox configuration.

    Defaults match the policy subsystem. Use :meth:`for_code_execution` for
    the tighter ad-hoc script profile.
    """

    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    @classmethod
    def for_policies(cls) -> SandboxConfig:
        """Profile for policy conditions and actions."""
        return cls()

    @classmethod
    def for_code_execution(cls) -> SandboxConfig:
        """Profile for ad-hoc scripts: larger code, longer runs, hourly quota."""
        return cls(
            validator=ValidatorConfig(max_code_size=50_000),
            quota=QuotaConfig(max_per_minute=60, max_per_hour=500),
            execution=ExecutionConfig(timeout_ms=30_000, max_steps=1_000_000),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SandboxConfig:
        """Build from nested dicts keyed by subsystem name.

        Missing sections take their defaults; unknown keys are dropped so
        older binaries can read newer files.
        """
        sections = {}
        for name, section_cls in _SECTION_TYPES.items():
            raw = data.get(name) or {}
            known = {f.name for f in dataclasses.fields(section_cls)}
            sections[name] = section_cls(**{k: v for k, v in raw.items() if k in known})
        return cls(**sections)

    @classmethod
    def from_yaml(cls, path: str) -> SandboxConfig:
        """Load a config file; ``.json`` is parsed natively, anything else as YAML."""
        source = Path(path)
        text = source.read_text(encoding="utf-8")
        if source.suffix == ".json":
            return cls.from_dict(json.loads(text))

        try:
            import yaml  # type: ignore[import-untyped]
        except ImportError:
            raise RuntimeError(
                f"Loading {source.name} needs PyYAML (pip install pyyaml)"
            ) from None
        return cls.from_dict(yaml.safe_load(text) or {})

    @classmethod
    def from_env(cls) -> SandboxConfig:
        """Build a SandboxConfig from environment variables.

        Recognised variables:
            SANDBOX_EXEC_TIMEOUT_MS            -> execution.timeout_ms
            SANDBOX_MAX_CODE_SIZE              -> validator.max_code_size
            SANDBOX_MAX_EXECUTIONS_PER_MINUTE  -> quota.max_per_minute
            SANDBOX_BREAKER_THRESHOLD          -> circuit_breaker.failure_threshold
            SANDBOX_BREAKER_COOLDOWN_S         -> circuit_breaker.cooldown_seconds
            SANDBOX_DEDUP_WINDOW_S             -> dedup.window_seconds
            SANDBOX_DRY_RUN=1                  -> execution.dry_run = True
        """
        config = cls()
        env = os.environ

        if "SANDBOX_EXEC_TIMEOUT_MS" in env:
            config.execution.timeout_ms = int(env["SANDBOX_EXEC_TIMEOUT_MS"])
        if "SANDBOX_MAX_CODE_SIZE" in env:
            config.validator.max_code_size = int(env["SANDBOX_MAX_CODE_SIZE"])
        if "SANDBOX_MAX_EXECUTIONS_PER_MINUTE" in env:
            config.quota.max_per_minute = int(env["SANDBOX_MAX_EXECUTIONS_PER_MINUTE"])
        if "SANDBOX_BREAKER_THRESHOLD" in env:
            config.circuit_breaker.failure_threshold = int(env["SANDBOX_BREAKER_THRESHOLD"])
        if "SANDBOX_BREAKER_COOLDOWN_S" in env:
            config.circuit_breaker.cooldown_seconds = float(env["SANDBOX_BREAKER_COOLDOWN_S"])
        if "SANDBOX_DEDUP_WINDOW_S" in env:
            config.dedup.window_seconds = float(env["SANDBOX_DEDUP_WINDOW_S"])
        if env.get("SANDBOX_DRY_RUN") == "1":
            config.execution.dry_run = True
        return config


_SECTION_TYPES = {
    "validator": ValidatorConfig,
    "quota": QuotaConfig,
    "circuit_breaker": CircuitBreakerConfig,
    "dedup": DedupConfig,
    "execution": ExecutionConfig,
    "webhook": WebhookConfig,
}


def _require_positive(config: object, *names: str) -> None:
    for name in names:
        if getattr(config, name) <= 0:
            raise ValueError(f"{type(config).__name__}.{name} must be > 0")


def _require_non_negative(config: object, *names: str) -> None:
    for name in names:
        if getattr(config, name) < 0:
            raise ValueError(f"{type(config).__name__}.{name} must be >= 0")
