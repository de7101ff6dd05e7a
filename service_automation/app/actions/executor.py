"""
Single-attempt action execution.
"""

import asyncio
from string import Template
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import ActionError, PermanentActionError, TransientActionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..interfaces import DomainActionGateway
from ..rules.conditions import get_field_value
from ..rules.models import ActionKind, ActionSpec, Event, utcnow
from .models import ActionResult, AttemptRecord


class ActionExecutor:
    """Maps an event onto one gateway call and classifies the outcome.

    Exactly one external call per ``execute``; retrying is the caller's
    business. Never raises: failures come back as an unsuccessful
    ``ActionResult`` whose ``transient`` flag drives the retry decision.
    """

    def __init__(self, gateway: DomainActionGateway, metrics: Optional[MetricsCollector] = None):
        self.gateway = gateway
        self.metrics = metrics
        self.logger = get_logger("automation.actions")
        self._handlers: Dict[ActionKind, Callable[[ActionSpec, Event], Awaitable[Any]]] = {
            ActionKind.CREATE_RECORD: self._create_record,
            ActionKind.UPDATE_RECORD: self._update_record,
            ActionKind.NOTIFY: self._notify,
        }

    async def execute(self, spec: ActionSpec, event: Event, index: int = 0,
                      timeout: Optional[float] = None) -> ActionResult:
        started = utcnow()
        try:
            handler = self._handlers[spec.kind]
            call = handler(spec, event)
            data = await (asyncio.wait_for(call, timeout) if timeout else call)
        except asyncio.TimeoutError:
            error = TransientActionError(
                f"{spec.kind.value} timed out after {timeout}s",
                details={"timeout": timeout}
            )
            return self._failure(spec, index, started, error)
        except ActionError as e:
            return self._failure(spec, index, started, e)
        except Exception as e:
            # Unclassified failures are not retried
            error = PermanentActionError(
                f"{type(e).__name__}: {e}",
                details={"unclassified": True}
            )
            return self._failure(spec, index, started, error)

        self._count(spec, "success")
        self.logger.info(
            "Action succeeded",
            kind=spec.kind.value,
            collection=spec.target_collection,
            action_index=index
        )
        return ActionResult(
            action_index=index,
            kind=spec.kind.value,
            success=True,
            attempts=(AttemptRecord(timestamp=started, action_index=index, action_kind=spec.kind.value),),
            data=data,
        )

    def _failure(self, spec: ActionSpec, index: int, started, error: ActionError) -> ActionResult:
        transient = isinstance(error, TransientActionError)
        self._count(spec, "transient_error" if transient else "permanent_error")
        self.logger.warning(
            "Action failed",
            kind=spec.kind.value,
            collection=spec.target_collection,
            action_index=index,
            transient=transient,
            error=error.message
        )
        return ActionResult(
            action_index=index,
            kind=spec.kind.value,
            success=False,
            attempts=(AttemptRecord(
                timestamp=started,
                action_index=index,
                action_kind=spec.kind.value,
                error=error.message,
                transient=transient,
            ),),
            error=error.message,
            transient=transient,
        )

    def _count(self, spec: ActionSpec, outcome: str):
        if self.metrics:
            self.metrics.increment_counter(
                "automation_action_attempts_total", kind=spec.kind.value, outcome=outcome
            )

    async def _create_record(self, spec: ActionSpec, event: Event) -> Any:
        fields = map_fields(spec, event)
        return await self.gateway.create_record(event.workspace_id, spec.target_collection, fields)

    async def _update_record(self, spec: ActionSpec, event: Event) -> Any:
        record_id_field = spec.params.get("record_id_field", "id")
        record_id = get_field_value(record_id_field, event.payload, default=None)
        if record_id is None or not isinstance(record_id, (str, int)):
            raise PermanentActionError(
                f"Payload has no record id in '{record_id_field}'",
                details={"record_id_field": record_id_field}
            )
        fields = map_fields(spec, event)
        return await self.gateway.update_record(
            event.workspace_id, spec.target_collection, str(record_id), fields
        )

    async def _notify(self, spec: ActionSpec, event: Event) -> Any:
        user_ids = list(spec.params.get("user_ids") or [])
        user_ids_field = spec.params.get("user_ids_field")
        if user_ids_field:
            value = get_field_value(user_ids_field, event.payload, default=None)
            if isinstance(value, (list, tuple)):
                user_ids.extend(str(v) for v in value)
            elif isinstance(value, str):
                user_ids.append(value)
        if not user_ids and event.user_id:
            user_ids.append(event.user_id)
        if not user_ids:
            raise PermanentActionError("Notification has no recipients")

        template = Template(str(spec.params.get("message", "")))
        message = template.safe_substitute({k: v for k, v in event.payload.items() if isinstance(k, str)})
        if not message:
            raise PermanentActionError("Notification message is empty")
        return await self.gateway.notify(event.workspace_id, user_ids, message)


def map_fields(spec: ActionSpec, event: Event) -> Dict[str, Any]:
    """Build the collaborator input from ``field_mapping`` and static ``params.fields``."""
    fields: Dict[str, Any] = dict(spec.params.get("fields") or {})
    missing = []
    for target_field, source_field in spec.field_mapping.items():
        value = get_field_value(source_field, event.payload, default=None)
        if value is None:
            missing.append(source_field)
            continue
        fields[target_field] = value
    if missing:
        raise PermanentActionError(
            "Payload is missing mapped fields",
            details={"missing": missing}
        )
    return fields