"""Command-line entry point.

Usage::

    policy-sandbox validate action.js
    policy-sandbox test-policy policy.json event.json [--live]
    policy-sandbox dispatch policies.json task.created event.json [--dry-run] [--persist]
    policy-sandbox run-script prioritize_tasks

Every subcommand prints JSON on stdout. Exit status is 0 on success, 1 when
the code is rejected or any policy failed, 2 on usage errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from policy_sandbox.agent import STATUS_FAILED, PolicyAgent
from policy_sandbox.config import SandboxConfig
from policy_sandbox.models import Policy
from policy_sandbox.scripts import PREDEFINED_SCRIPTS, ScriptRunner
from policy_sandbox.store import JSONPolicyBackend, MemoryPolicyBackend
from policy_sandbox.validator import validate

logger = logging.getLogger(__name__)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _config(args: argparse.Namespace) -> SandboxConfig:
    if args.config:
        return SandboxConfig.from_yaml(args.config)
    return SandboxConfig.from_env()


def _cmd_validate(args: argparse.Namespace) -> int:
    code = Path(args.file).read_text(encoding="utf-8")
    result = validate(code, _config(args).validator)
    _print(result.to_dict())
    return 0 if result.valid else 1


def _cmd_test_policy(args: argparse.Namespace) -> int:
    data = _load_json(args.policy)
    policy = Policy(
        name=data.get("name", Path(args.policy).stem),
        trigger=data.get("trigger", "task.created"),
        condition=data["condition"],
        action=data["action"],
    )
    event = _load_json(args.event) if args.event else {}
    agent = PolicyAgent(config=_config(args))
    result = agent.test_policy(policy, event, dry_run=not args.live)
    _print(result.to_dict())
    return 1 if result.error else 0


def _cmd_dispatch(args: argparse.Namespace) -> int:
    store = JSONPolicyBackend(args.policies)
    backend = store if args.persist else MemoryPolicyBackend(store.load())
    agent = PolicyAgent(backend, config=_config(args))
    event = _load_json(args.event) if args.event else {}
    report = agent.dispatch(args.trigger, event, dry_run=args.dry_run)
    output = report.to_dict()
    output["tasks"] = [t.to_dict() for t in agent.task_store.list_tasks()]
    _print(output)
    return 1 if any(o.status == STATUS_FAILED for o in report.outcomes) else 0


def _cmd_run_script(args: argparse.Namespace) -> int:
    runner = ScriptRunner.from_config(SandboxConfig.for_code_execution())
    payload = _load_json(args.input) if args.input else None
    result = runner.run_script(args.name, payload)
    _print(result.to_dict())
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="policy-sandbox",
        description="Validate, test and dispatch sandboxed automation policies",
    )
    parser.add_argument("--config", default=None, help="YAML or JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("validate", help="Statically validate a code file")
    p.add_argument("file")
    p.set_defaults(func=_cmd_validate)

    p = sub.add_parser("test-policy", help="Evaluate one policy against a sample event")
    p.add_argument("policy", help="Policy JSON (name, trigger, condition, action)")
    p.add_argument("event", nargs="?", default=None, help="Event payload JSON")
    p.add_argument("--live", action="store_true", help="Call real functions instead of stand-ins")
    p.set_defaults(func=_cmd_test_policy)

    p = sub.add_parser("dispatch", help="Dispatch an event to a policy file")
    p.add_argument("policies", help="Policy store JSON file")
    p.add_argument("trigger")
    p.add_argument("event", nargs="?", default=None, help="Event payload JSON")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--persist", action="store_true", help="Write history back to the file")
    p.set_defaults(func=_cmd_dispatch)

    p = sub.add_parser("run-script", help="Run a predefined script")
    p.add_argument("name", choices=sorted(PREDEFINED_SCRIPTS))
    p.add_argument("--input", default=None, help="Input JSON file")
    p.set_defaults(func=_cmd_run_script)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    try:
        return args.func(args)
    except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
