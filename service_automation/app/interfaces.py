"""
Collaborator interfaces consumed by the automation engine.

All collaborators are in-process objects; any network or storage transport
is an implementation detail of the concrete class.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .audit.models import ExecutionRecord, ExecutionStatus
from .rules.models import Rule


class RuleStore(ABC):
    """Source of automation rules."""

    @abstractmethod
    async def list_active_rules(self, workspace_id: str, trigger_type: str) -> List[Rule]:
        """Active rules of a workspace for a trigger type."""

    @abstractmethod
    async def disable_rule(self, rule_id: str) -> None:
        """Persist ``is_active=False``."""

    @abstractmethod
    async def enable_rule(self, rule_id: str) -> None:
        """Persist ``is_active=True`` (human re-enable)."""

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Fetch a rule regardless of its active flag."""

    @abstractmethod
    async def record_execution(self, rule_id: str, executed_at: datetime) -> None:
        """Increment the execution counter and stamp the last execution."""


class AuditStore(ABC):
    """Append-only storage for execution records."""

    @abstractmethod
    async def append(self, record: ExecutionRecord) -> None:
        """Persist a finalized record."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ExecutionRecord]:
        """Fetch one record."""

    @abstractmethod
    async def list(
        self,
        workspace_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        """Records matching the filters, newest first."""


class DomainActionGateway(ABC):
    """Business-side operations actions are allowed to perform.

    Implementations raise ``TransientActionError`` or ``PermanentActionError``.
    """

    @abstractmethod
    async def create_record(self, workspace_id: str, collection: str, fields: Dict[str, Any]) -> Any:
        """Create a record in a business collection."""

    @abstractmethod
    async def update_record(self, workspace_id: str, collection: str, record_id: str,
                            fields: Dict[str, Any]) -> Any:
        """Update an existing record."""

    @abstractmethod
    async def notify(self, workspace_id: str, user_ids: Sequence[str], message: str) -> Any:
        """Send a notification to workspace users."""


class ConfigStore(ABC):
    """Flag storage backing the kill switches."""

    @abstractmethod
    def get_flag(self, key: str) -> Optional[bool]:
        """Flag value, or ``None`` when unset."""

    @abstractmethod
    def set_flag(self, key: str, value: Optional[bool]) -> None:
        """Set a flag; ``None`` clears it."""
