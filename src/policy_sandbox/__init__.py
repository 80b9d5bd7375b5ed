"""Policy Sandbox - guarded execution of user-authored automation policies."""

__version__ = "0.1.0"

# Errors
from policy_sandbox.errors import (
    ErrorKind,
    SandboxError,
    ValidationError,
    CapabilityError,
    QuotaExceeded,
    CircuitOpen,
    DuplicateSuppressed,
    ExecutionTimeout,
    StepBudgetExceeded,
    ExecutionFailed,
    ScriptSyntaxError,
    PolicyNotFound,
)

# Configuration
from policy_sandbox.config import (
    SandboxConfig,
    ValidatorConfig,
    QuotaConfig,
    CircuitBreakerConfig,
    DedupConfig,
    ExecutionConfig,
    WebhookConfig,
)

# Static validation
from policy_sandbox.validator import Severity, Violation, ValidationResult, validate

# Capability context
from policy_sandbox.capabilities import (
    CapabilityContext,
    CapabilityFunction,
    build_context,
)

# Gates
from policy_sandbox.quota import QuotaDecision, QuotaManager, QuotaWindow
from policy_sandbox.circuit_breaker import (
    BreakerDecision,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from policy_sandbox.dedup import DeduplicationLedger, content_hash

# Execution
from policy_sandbox.engine import CancellationToken, ExecutionEngine, ExecutionResult

# Policies
from policy_sandbox.models import POLICY_TRIGGERS, ExecutionRecord, Policy, TriggerEvent
from policy_sandbox.store import JSONPolicyBackend, MemoryPolicyBackend, PolicyBackend
from policy_sandbox.tasks import InMemoryTaskStore, Task, TaskStore
from policy_sandbox.agent import (
    DispatchReport,
    PolicyAgent,
    PolicyOutcome,
    PolicyTestResult,
    SandboxStats,
)

# Scripts and webhooks
from policy_sandbox.scripts import PREDEFINED_SCRIPTS, ScriptResult, ScriptRunner
from policy_sandbox.webhook import IngestResult, SignatureCheck, WebhookGuard, WebhookIngress

# Telemetry
from policy_sandbox.telemetry import (
    CompositeSink,
    JsonlFileSink,
    MemorySink,
    NullSink,
    OtelSink,
    TelemetryEvent,
    TelemetrySink,
)

# Distributed (optional, requires redis)
from policy_sandbox.distributed import RedisDeduplicationLedger, RedisQuotaManager

__all__ = [
    "__version__",
    # Errors
    "ErrorKind",
    "SandboxError",
    "ValidationError",
    "CapabilityError",
    "QuotaExceeded",
    "CircuitOpen",
    "DuplicateSuppressed",
    "ExecutionTimeout",
    "StepBudgetExceeded",
    "ExecutionFailed",
    "ScriptSyntaxError",
    "PolicyNotFound",
    # Configuration
    "SandboxConfig",
    "ValidatorConfig",
    "QuotaConfig",
    "CircuitBreakerConfig",
    "DedupConfig",
    "ExecutionConfig",
    "WebhookConfig",
    # Validation
    "Severity",
    "Violation",
    "ValidationResult",
    "validate",
    # Capabilities
    "CapabilityContext",
    "CapabilityFunction",
    "build_context",
    # Gates
    "QuotaDecision",
    "QuotaManager",
    "QuotaWindow",
    "BreakerDecision",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DeduplicationLedger",
    "content_hash",
    # Execution
    "CancellationToken",
    "ExecutionEngine",
    "ExecutionResult",
    # Policies
    "POLICY_TRIGGERS",
    "ExecutionRecord",
    "Policy",
    "TriggerEvent",
    "PolicyBackend",
    "JSONPolicyBackend",
    "MemoryPolicyBackend",
    "Task",
    "TaskStore",
    "InMemoryTaskStore",
    "PolicyAgent",
    "PolicyOutcome",
    "DispatchReport",
    "PolicyTestResult",
    "SandboxStats",
    # Scripts and webhooks
    "PREDEFINED_SCRIPTS",
    "ScriptResult",
    "ScriptRunner",
    "IngestResult",
    "SignatureCheck",
    "WebhookGuard",
    "WebhookIngress",
    # Telemetry
    "TelemetryEvent",
    "TelemetrySink",
    "NullSink",
    "MemorySink",
    "JsonlFileSink",
    "CompositeSink",
    "OtelSink",
    # Distributed
    "RedisDeduplicationLedger",
    "RedisQuotaManager",
]
