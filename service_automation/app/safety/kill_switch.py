"""
Emergency-stop flags for the engine, a workspace or a single rule.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from shared.logging import get_logger
from ..interfaces import ConfigStore

ENGINE_FLAG = "automation.engine.enabled"


def workspace_flag(workspace_id: str) -> str:
    return f"automation.workspace.{workspace_id}.enabled"


def rule_flag(rule_id: str) -> str:
    return f"automation.rule.{rule_id}.enabled"


class KillSwitch:
    """Layered enable flags: per-rule > per-workspace > global default.

    Reads go to the ConfigStore and are cached for at most ``ttl_seconds``,
    so a flipped flag is honoured within roughly one event without a
    restart. Writes through this class invalidate the cache immediately.
    """

    def __init__(self, store: ConfigStore, default_enabled: bool = True, ttl_seconds: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.default_enabled = default_enabled
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = get_logger("automation.kill_switch")
        self._cache: Dict[str, Tuple[float, Optional[bool]]] = {}

    def _read(self, key: str) -> Optional[bool]:
        now = self.clock()
        cached = self._cache.get(key)
        if cached is not None and now - cached[0] < self.ttl_seconds:
            return cached[1]
        value = self.store.get_flag(key)
        self._cache[key] = (now, value)
        return value

    def is_engine_enabled(self) -> bool:
        value = self._read(ENGINE_FLAG)
        return self.default_enabled if value is None else value

    def is_workspace_enabled(self, workspace_id: str) -> bool:
        value = self._read(workspace_flag(workspace_id))
        return self.is_engine_enabled() if value is None else value

    def is_rule_enabled(self, rule_id: str, workspace_id: Optional[str] = None) -> bool:
        value = self._read(rule_flag(rule_id))
        if value is not None:
            return value
        if workspace_id is not None:
            return self.is_workspace_enabled(workspace_id)
        return self.is_engine_enabled()

    def set_engine_enabled(self, enabled: Optional[bool]):
        self._write(ENGINE_FLAG, enabled)
        if enabled is False:
            self.logger.error("AUTOMATION KILL SWITCH ACTIVATED - all automations disabled")

    def set_workspace_enabled(self, workspace_id: str, enabled: Optional[bool]):
        self._write(workspace_flag(workspace_id), enabled)

    def set_rule_enabled(self, rule_id: str, enabled: Optional[bool]):
        self._write(rule_flag(rule_id), enabled)

    def _write(self, key: str, value: Optional[bool]):
        self.store.set_flag(key, value)
        self._cache.pop(key, None)
        self.logger.warning("Kill switch flag changed", key=key, value=value)
