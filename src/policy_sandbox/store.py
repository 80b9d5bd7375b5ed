"""Policy persistence backends.

The agent reads and writes policy definitions through a
:class:`PolicyBackend`; the sandbox components themselves are
persistence-agnostic.
"""

from __future__ import annotations

import copy
import json
import logging
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from policy_sandbox.errors import ValidationError
from policy_sandbox.models import Policy

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class PolicyBackend(ABC):
    """Abstract storage for policy records."""

    @abstractmethod
    def save(self, policies: List[Policy]) -> bool:
        """Persist the full policy list.

        Returns:
            True on success, False on failure
        """

    @abstractmethod
    def load(self) -> List[Policy]:
        """Load all stored policies (empty list when nothing is stored)."""

    def backup(self) -> bool:
        """Create backup of current state (optional).

        Returns:
            True on success, False on failure (or if not supported)
        """
        return False


def _decode(records: List[Dict[str, Any]], origin: str) -> List[Policy]:
    policies: List[Policy] = []
    for record in records:
        try:
            policies.append(Policy.from_dict(record))
        except ValidationError as exc:
            logger.error("[SANDBOX_STORE] Skipping record from %s: %s", origin, exc.message)
    return policies


class JSONPolicyBackend(PolicyBackend):
    """JSON file backend.

    Uses atomic writes (tmp -> rename) for crash safety. Malformed records
    are skipped on load and logged.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def save(self, policies: List[Policy]) -> bool:
        document = {
            "version": STORE_VERSION,
            "policies": [p.to_dict() for p in policies],
        }
        try:
            tmp_path = self.path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            tmp_path.replace(self.path)
            logger.info("[SANDBOX_STORE] Saved %d policies to %s", len(policies), self.path)
            return True
        except OSError as e:
            logger.error("[SANDBOX_STORE] Save failed: %s", e)
            return False

    def load(self) -> List[Policy]:
        if not self.path.exists():
            logger.info("[SANDBOX_STORE] No policy file at %s", self.path)
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("[SANDBOX_STORE] Load failed: %s", e)
            return []

        records = document.get("policies", []) if isinstance(document, dict) else document
        if not isinstance(records, list):
            logger.error("[SANDBOX_STORE] Unexpected document shape in %s", self.path)
            return []
        return _decode(records, str(self.path))

    def backup(self) -> bool:
        """Create timestamped copy of the policy file."""
        if not self.path.exists():
            return False
        try:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = self.path.with_name(f"{self.path.stem}_backup_{timestamp}.json")
            shutil.copy2(self.path, backup_path)
            logger.info("[SANDBOX_STORE] Backup created: %s", backup_path)
            return True
        except OSError as e:
            logger.error("[SANDBOX_STORE] Backup failed: %s", e)
            return False


class MemoryPolicyBackend(PolicyBackend):
    """In-memory backend (for testing). Does NOT persist across restarts."""

    def __init__(self, policies: Optional[List[Policy]] = None):
        self._records: Optional[List[Dict[str, Any]]] = None
        self.save_count = 0
        if policies:
            self.save(policies)
            self.save_count = 0

    def save(self, policies: List[Policy]) -> bool:
        self._records = [copy.deepcopy(p.to_dict()) for p in policies]
        self.save_count += 1
        logger.debug("[SANDBOX_STORE] Saved %d policies to memory", len(policies))
        return True

    def load(self) -> List[Policy]:
        if self._records is None:
            return []
        return _decode(copy.deepcopy(self._records), "memory")
