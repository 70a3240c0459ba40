"""
Automation Infrastructure Repositories
=======================================

Concrete implementations of the automation ports using SQLAlchemy.

Every call opens its own unit of work through the injected session
factory (``get_session_context`` in the running service).
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from deskflow.automation.application import (
    IAutomationExecutionRepository,
    IRuleRepository,
    ITicketGateway,
    MutationResult,
    RuleDefinitionDTO,
)
from deskflow.automation.domain import (
    AutomationExecution,
    AutomationRule,
    MutationIntent,
    TicketSnapshot,
)
from deskflow.config import TicketPriority, TicketStatus, Trigger
from deskflow.core import RepositoryException
from deskflow.infrastructure.database import SessionFactory, as_utc, get_session_context
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_TICKET_COLUMNS = {"team_id", "assignee_id", "priority", "status", "category_id", "channel", "tags"}


def _enum_value(value):
    return getattr(value, "value", value)


def _comparable(value):
    value = _enum_value(value)
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return value


class SQLAlchemyTicketGateway(ITicketGateway):
    """
    Ticket store adapter.

    All intents of a rule run in one transaction with the row locked
    (``SELECT ... FOR UPDATE``). The locked row must still hold each
    intent's ``previous`` values, otherwise nothing is written and the
    result is ``MutationResult.CONFLICT``. The mapper's version column
    catches writers that bypass the lock.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        from deskflow.automation.infrastructure.models import TicketModel

        async with self._session_factory() as session:
            model = await session.get(TicketModel, ticket_id)
            if model is None:
                return None
            return TicketSnapshot(
                id=model.id,
                subject=model.subject,
                description=model.description or "",
                priority=TicketPriority(model.priority),
                status=TicketStatus(model.status),
                requester_id=model.requester_id,
                team_id=model.team_id,
                assignee_id=model.assignee_id,
                category_id=model.category_id,
                channel=model.channel,
                tags=tuple(model.tags or ()),
                custom_field_values=dict(model.custom_field_values or {}),
                created_at=as_utc(model.created_at),
            )

    async def apply_mutations(
        self, ticket_id: str, intents: Sequence[MutationIntent]
    ) -> MutationResult:
        from deskflow.automation.infrastructure.models import TicketActivityModel, TicketModel

        for intent in intents:
            unknown = (set(intent.changes) | set(intent.previous)) - _TICKET_COLUMNS
            if unknown:
                raise RepositoryException(
                    f"Intent changes unsupported ticket fields: {sorted(unknown)}",
                    {"ticket_id": ticket_id, "action_kind": intent.action_kind}
                )

        try:
            async with self._session_factory() as session:
                stmt = select(TicketModel).where(TicketModel.id == ticket_id).with_for_update()
                model = (await session.execute(stmt)).scalar_one_or_none()
                if model is None:
                    raise RepositoryException(f"Ticket {ticket_id} not found")

                # every intent of the rule was computed from the same snapshot
                locked = {column: _comparable(getattr(model, column)) for column in _TICKET_COLUMNS}
                stale = sorted({
                    column
                    for intent in intents
                    for column, value in intent.previous.items()
                    if locked[column] != _comparable(value)
                })
                if stale:
                    logger.warning(
                        "Ticket changed since the snapshot",
                        extra={"ticket_id": ticket_id, "columns": stale}
                    )
                    return MutationResult.CONFLICT

                for intent in intents:
                    for column, value in intent.changes.items():
                        setattr(model, column, _enum_value(value))
                    for request in intent.side_effects:
                        session.add(TicketActivityModel(
                            ticket_id=ticket_id,
                            kind=request.kind,
                            payload=dict(request.payload),
                        ))
                if any(intent.changes for intent in intents):
                    model.updated_at = datetime.now(timezone.utc)
        except (StaleDataError, OperationalError) as e:
            logger.warning(
                "Ticket mutation conflicted",
                extra={
                    "ticket_id": ticket_id,
                    "action_kinds": [intent.action_kind for intent in intents],
                    "error": str(e),
                }
            )
            return MutationResult.CONFLICT
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to mutate ticket {ticket_id}: {e}") from e

        return MutationResult.OK


class SQLAlchemyRuleRepository(IRuleRepository):
    """
    Rule store adapter.

    Stored rules are parsed leniently: a rule that references something
    outside the current vocabulary still loads, and the offending leaf or
    action degrades instead of hiding the whole rule.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def list_for_trigger(self, trigger: Trigger) -> List[AutomationRule]:
        from deskflow.automation.infrastructure.models import AutomationRuleModel

        async with self._session_factory() as session:
            stmt = (
                select(AutomationRuleModel)
                .where(AutomationRuleModel.trigger == trigger.value)
                .order_by(AutomationRuleModel.priority.asc(), AutomationRuleModel.created_at.asc())
            )
            models = (await session.execute(stmt)).scalars().all()

        rules = []
        for model in models:
            rule = self._to_domain(model)
            if rule is not None:
                rules.append(rule)
        return rules

    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        from deskflow.automation.infrastructure.models import AutomationRuleModel

        async with self._session_factory() as session:
            model = await session.get(AutomationRuleModel, rule_id)
        return self._to_domain(model) if model is not None else None

    async def add(self, definition: RuleDefinitionDTO, rule_id: Optional[str] = None) -> AutomationRule:
        """Store a rule definition after strict validation."""
        from deskflow.automation.infrastructure.models import AutomationRuleModel

        rule = definition.to_domain(strict=True)
        model = AutomationRuleModel(
            name=definition.name,
            description=definition.description,
            trigger=definition.trigger,
            conditions=definition.conditions,
            actions=definition.actions,
            priority=definition.priority,
            is_active=definition.is_active,
            team_id=definition.team_id,
            created_by_id=definition.created_by_id,
            created_at=rule.created_at,
        )
        if rule_id is not None:
            model.id = rule_id

        async with self._session_factory() as session:
            session.add(model)
            await session.flush()
            stored_id = model.id
        return definition.to_domain(rule_id=stored_id, created_at=rule.created_at)

    @staticmethod
    def _to_domain(model) -> Optional[AutomationRule]:
        try:
            definition = RuleDefinitionDTO(
                name=model.name,
                description=model.description,
                trigger=model.trigger,
                conditions=model.conditions,
                actions=model.actions or [],
                priority=model.priority,
                is_active=model.is_active,
                team_id=model.team_id,
                created_by_id=model.created_by_id,
            )
        except ValidationError as e:
            logger.warning(
                "Skipping unreadable automation rule",
                extra={"rule_id": model.id, "error": str(e)}
            )
            return None
        return definition.to_domain(rule_id=model.id, created_at=as_utc(model.created_at), strict=False)


class SQLAlchemyAutomationExecutionRepository(IAutomationExecutionRepository):
    """Writes rule-run audit records."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def record(self, execution: AutomationExecution) -> None:
        from deskflow.automation.infrastructure.models import AutomationExecutionModel

        async with self._session_factory() as session:
            session.add(AutomationExecutionModel(
                rule_id=execution.rule_id,
                ticket_id=execution.ticket_id,
                trigger=execution.trigger.value,
                matched=execution.matched,
                success=execution.success,
                actions_applied=list(execution.actions_applied),
                error=execution.error,
                executed_at=execution.executed_at,
            ))

    async def has_recent_success(
        self, rule_id: str, ticket_id: str, trigger: Trigger, since: datetime
    ) -> bool:
        from deskflow.automation.infrastructure.models import AutomationExecutionModel

        stmt = (
            select(AutomationExecutionModel.id)
            .where(
                AutomationExecutionModel.rule_id == rule_id,
                AutomationExecutionModel.ticket_id == ticket_id,
                AutomationExecutionModel.trigger == trigger.value,
                AutomationExecutionModel.success.is_(True),
                AutomationExecutionModel.executed_at >= since,
            )
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).first() is not None

    async def list_for_ticket(self, ticket_id: str) -> List[AutomationExecution]:
        from deskflow.automation.infrastructure.models import AutomationExecutionModel

        async with self._session_factory() as session:
            stmt = (
                select(AutomationExecutionModel)
                .where(AutomationExecutionModel.ticket_id == ticket_id)
                .order_by(AutomationExecutionModel.executed_at.asc())
            )
            models = (await session.execute(stmt)).scalars().all()

        return [
            AutomationExecution(
                rule_id=m.rule_id,
                ticket_id=m.ticket_id,
                trigger=Trigger(m.trigger),
                matched=m.matched,
                success=m.success,
                actions_applied=tuple(m.actions_applied or ()),
                error=m.error,
                executed_at=as_utc(m.executed_at),
            )
            for m in models
        ]
