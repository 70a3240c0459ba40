"""
SLA Infrastructure Repositories
=================================

Concrete implementation of the SLA instance store using SQLAlchemy.

Clock state is written with ``save``; notification markers are only
ever written by ``claim_threshold``, a conditional UPDATE, so two
sweeps racing on the same ticket cannot both win a marker.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from deskflow.config import SubClock, ThresholdKind, TicketPriority
from deskflow.core import RepositoryException
from deskflow.infrastructure.database import SessionFactory, as_utc, get_session_context
from deskflow.shared.infrastructure.logging import get_logger
from deskflow.sla.application import ISlaInstanceRepository
from deskflow.sla.domain import FirstResponseClock, ResolutionClock, SlaInstance
from deskflow.sla.infrastructure.models import MARKER_COLUMNS, SlaInstanceModel

logger = get_logger(__name__)


def _to_domain(model: SlaInstanceModel) -> SlaInstance:
    return SlaInstance(
        ticket_id=model.ticket_id,
        priority=TicketPriority(model.priority),
        team_id=model.team_id,
        business_hours_only=model.business_hours_only,
        schedule_version=model.schedule_version,
        created_at=as_utc(model.created_at),
        next_check_at=as_utc(model.next_check_at),
        first_response=FirstResponseClock(
            started_at=as_utc(model.first_response_started_at),
            due_at=as_utc(model.first_response_due_at),
            met_at=as_utc(model.first_response_at),
            at_risk_notified_at=as_utc(model.first_response_at_risk_notified_at),
            breach_notified_at=as_utc(model.first_response_breach_notified_at),
        ),
        resolution=ResolutionClock(
            started_at=as_utc(model.resolution_started_at),
            due_at=as_utc(model.resolution_due_at),
            met_at=as_utc(model.completed_at),
            at_risk_notified_at=as_utc(model.resolution_at_risk_notified_at),
            breach_notified_at=as_utc(model.resolution_breach_notified_at),
            paused_at=as_utc(model.sla_paused_at),
            paused_duration_ms=model.paused_duration_ms or 0,
        ),
    )


def _copy_clock_state(instance: SlaInstance, model: SlaInstanceModel) -> None:
    model.priority = instance.priority.value
    model.team_id = instance.team_id
    model.business_hours_only = instance.business_hours_only
    model.schedule_version = instance.schedule_version
    model.first_response_started_at = instance.first_response.started_at
    model.first_response_due_at = instance.first_response_due_at
    model.first_response_at = instance.first_response_at
    model.resolution_started_at = instance.resolution.started_at
    model.resolution_due_at = instance.resolution_due_at
    model.completed_at = instance.completed_at
    model.sla_paused_at = instance.sla_paused_at
    model.paused_duration_ms = instance.paused_duration_ms
    model.next_check_at = instance.next_check_at


class SQLAlchemySlaInstanceRepository(ISlaInstanceRepository):
    """
    SQLAlchemy implementation of the SLA instance store.

    One row per ticket in ``sla_instances``.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get(self, ticket_id: str) -> Optional[SlaInstance]:
        async with self._session_factory() as session:
            model = await session.get(SlaInstanceModel, ticket_id)
            return _to_domain(model) if model is not None else None

    async def save(self, instance: SlaInstance) -> None:
        try:
            async with self._session_factory() as session:
                model = await session.get(SlaInstanceModel, instance.ticket_id)
                if model is None:
                    model = SlaInstanceModel(
                        ticket_id=instance.ticket_id,
                        created_at=instance.created_at,
                    )
                    session.add(model)
                _copy_clock_state(instance, model)
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save SLA instance {instance.ticket_id}: {e}"
            ) from e

    async def list_open(
        self, limit: int = 100, due_before: Optional[datetime] = None
    ) -> List[SlaInstance]:
        """
        Instances with a scheduled check, earliest ``next_check_at`` first.

        Paused, met and breach-reported clocks carry no check, so they
        never hold a place in the batch.
        """
        stmt = select(SlaInstanceModel).where(SlaInstanceModel.next_check_at.is_not(None))
        if due_before is not None:
            stmt = stmt.where(SlaInstanceModel.next_check_at <= due_before)
        stmt = stmt.order_by(
            SlaInstanceModel.next_check_at.asc(),
            SlaInstanceModel.ticket_id.asc(),
        ).limit(limit)
        async with self._session_factory() as session:
            models = (await session.execute(stmt)).scalars().all()
            return [_to_domain(model) for model in models]

    async def reschedule(
        self,
        ticket_id: str,
        next_check_at: Optional[datetime],
        expected: Optional[datetime],
    ) -> bool:
        column = SlaInstanceModel.next_check_at
        stmt = (
            update(SlaInstanceModel)
            .where(
                SlaInstanceModel.ticket_id == ticket_id,
                column.is_(None) if expected is None else column == expected,
            )
            .values(next_check_at=next_check_at)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to reschedule SLA check for {ticket_id}: {e}"
            ) from e

    async def claim_threshold(
        self, ticket_id: str, sub_clock: SubClock, kind: ThresholdKind, at: datetime
    ) -> bool:
        column_name = MARKER_COLUMNS[(sub_clock, kind)]
        column = getattr(SlaInstanceModel, column_name)
        stmt = (
            update(SlaInstanceModel)
            .where(SlaInstanceModel.ticket_id == ticket_id, column.is_(None))
            .values({column_name: at})
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                claimed = result.rowcount == 1
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to claim {sub_clock.value}/{kind.value} for {ticket_id}: {e}"
            ) from e

        if not claimed:
            logger.debug(
                "SLA threshold already claimed",
                extra={"ticket_id": ticket_id, "sub_clock": sub_clock.value, "kind": kind.value}
            )
        return claimed
