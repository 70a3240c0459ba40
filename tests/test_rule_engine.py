"""Tests for RuleEngineService."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import (
    FakeExecutionRepository,
    FakeRuleRepository,
    FakeTicketGateway,
    RecordingSlaSync,
    make_rule,
    make_snapshot,
)
from deskflow.automation.application import RuleEngineService
from deskflow.automation.domain import AutomationExecution
from deskflow.config import TicketPriority, TicketStatus, Trigger
from deskflow.core import MutationConflictException, ResourceNotFoundException

P1_TO_VIP = dict(
    conditions={"field": "priority", "operator": "equals", "value": "P1"},
    actions=[{"type": "assign_team", "teamId": "vip-team"}],
)


def build_engine(gateway, *rules, sla_sync=None, executions=None):
    return RuleEngineService(
        gateway,
        FakeRuleRepository(*rules),
        execution_repository=executions,
        sla_clock=sla_sync,
    )


class TestRunForTicket:

    async def test_p1_ticket_lands_in_vip_team(self):
        gateway = FakeTicketGateway(make_snapshot(priority=TicketPriority.P1, assignee_id="agent-1"))
        engine = build_engine(gateway, make_rule("vip", **P1_TO_VIP))

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        ticket = gateway.tickets["TCK-1"]
        assert ticket.team_id == "vip-team"
        assert ticket.assignee_id is None
        assert report.rules_matched == 1
        assert report.outcomes[0].actions_applied == ("assign_team",)

    async def test_non_matching_ticket_is_untouched(self):
        gateway = FakeTicketGateway(make_snapshot(priority=TicketPriority.P3))
        engine = build_engine(gateway, make_rule("vip", **P1_TO_VIP))

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.applied == []
        assert report.rules_matched == 0

    async def test_all_matching_rules_run_in_order(self):
        gateway = FakeTicketGateway(make_snapshot())
        engine = build_engine(
            gateway,
            make_rule("second", priority=2, actions=[{"type": "assign_user", "userId": "agent-2"}]),
            make_rule("first", priority=1, actions=[{"type": "assign_user", "userId": "agent-1"}]),
        )

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert [o.rule_id for o in report.outcomes] == ["first", "second"]
        assert [i.changes["assignee_id"] for i in gateway.applied] == ["agent-1", "agent-2"]
        assert gateway.tickets["TCK-1"].assignee_id == "agent-2"

    async def test_conditions_see_the_snapshot_not_earlier_mutations(self):
        gateway = FakeTicketGateway(make_snapshot(priority=TicketPriority.P3))
        engine = build_engine(
            gateway,
            make_rule(
                "raise",
                priority=1,
                actions=[{"type": "set_priority", "priority": "P1"}],
            ),
            make_rule("vip", priority=2, **P1_TO_VIP),
        )

        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        ticket = gateway.tickets["TCK-1"]
        assert ticket.priority is TicketPriority.P1
        assert ticket.team_id is None
        assert gateway.reads == 1

    async def test_failing_rule_does_not_stop_the_next(self):
        gateway = FakeTicketGateway(make_snapshot())
        gateway.fail_kinds["set_status"] = RuntimeError("store exploded")
        executions = FakeExecutionRepository()
        engine = build_engine(
            gateway,
            make_rule("broken", priority=1, actions=[{"type": "set_status", "status": "TRIAGED"}]),
            make_rule("fine", priority=2, actions=[{"type": "assign_user", "userId": "agent-1"}]),
            executions=executions,
        )

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert report.outcomes[0].error == "store exploded"
        assert report.outcomes[1].success
        assert gateway.tickets["TCK-1"].assignee_id == "agent-1"
        assert [(r.rule_id, r.success) for r in executions.records] == [("broken", False), ("fine", True)]

    async def test_unknown_ticket_is_skipped(self):
        engine = build_engine(FakeTicketGateway(), make_rule("vip", **P1_TO_VIP))
        report = await engine.run_for_ticket("missing", Trigger.TICKET_CREATED)
        assert report.outcomes == []

    async def test_stored_rule_with_unknown_parts_degrades(self):
        gateway = FakeTicketGateway(make_snapshot())
        engine = build_engine(
            gateway,
            make_rule(
                "legacy",
                conditions={"or": [
                    {"field": "mood", "operator": "equals", "value": "angry"},
                    {"field": "channel", "operator": "equals", "value": "email"},
                ]},
                actions=[{"type": "send_sms"}, {"type": "assign_user", "userId": "agent-3"}],
                strict=False,
            ),
        )

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert report.outcomes[0].actions_applied == ("assign_user",)
        assert gateway.tickets["TCK-1"].assignee_id == "agent-3"

    async def test_empty_conditions_match_every_ticket(self):
        gateway = FakeTicketGateway(make_snapshot())
        engine = build_engine(gateway, make_rule("all", actions=[{"type": "set_status", "status": "TRIAGED"}]))

        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.tickets["TCK-1"].status is TicketStatus.TRIAGED


class TestConflicts:

    async def test_conflict_is_raised_after_all_rules_ran(self):
        gateway = FakeTicketGateway(make_snapshot())
        gateway.conflict_kinds.add("set_status")
        engine = build_engine(
            gateway,
            make_rule("conflicting", priority=1, actions=[{"type": "set_status", "status": "TRIAGED"}]),
            make_rule("after", priority=2, actions=[{"type": "assign_user", "userId": "agent-1"}]),
        )

        with pytest.raises(MutationConflictException) as exc_info:
            await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert exc_info.value.rule_ids == ["conflicting"]
        assert gateway.tickets["TCK-1"].assignee_id == "agent-1"

    async def test_retry_runs_only_the_conflicted_rules(self):
        gateway = FakeTicketGateway(make_snapshot())
        gateway.conflict_kinds.add("set_status")
        engine = build_engine(
            gateway,
            make_rule("note", priority=1, actions=[{"type": "add_internal_note", "body": "Seen by automation"}]),
            make_rule("conflicting", priority=2, actions=[{"type": "set_status", "status": "TRIAGED"}]),
        )
        with pytest.raises(MutationConflictException) as exc_info:
            await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        gateway.conflict_kinds.clear()
        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED, only_rule_ids=exc_info.value.rule_ids)

        assert [i.action_kind for i in gateway.applied] == ["add_internal_note", "set_status"]

    async def test_rule_actions_are_written_together_or_not_at_all(self):
        gateway = FakeTicketGateway(make_snapshot(priority=TicketPriority.P1))
        gateway.fail_kinds["set_status"] = RuntimeError("store exploded")
        executions = FakeExecutionRepository()
        engine = build_engine(
            gateway,
            make_rule("vip", actions=[
                {"type": "assign_team", "teamId": "vip-team"},
                {"type": "set_status", "status": "TRIAGED"},
            ]),
            executions=executions,
        )

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.tickets["TCK-1"].team_id is None
        assert report.outcomes[0].actions_applied == ()
        assert executions.records[0].actions_applied == ()
        assert not executions.records[0].success

    async def test_one_write_per_rule(self):
        gateway = FakeTicketGateway(make_snapshot())
        engine = build_engine(gateway, make_rule("r", actions=[
            {"type": "assign_user", "userId": "agent-1"},
            {"type": "set_status", "status": "TRIAGED"},
        ]))

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert gateway.transactions == 1
        assert report.outcomes[0].actions_applied == ("assign_user", "set_status")


class TestSlaDedupe:

    @staticmethod
    def escalation(trigger="SLA_BREACHED"):
        return make_rule(
            "escalate",
            trigger=trigger,
            actions=[{"type": "add_internal_note", "body": "SLA breached"}],
        )

    async def test_sla_rule_is_not_repeated_within_the_window(self):
        gateway = FakeTicketGateway(make_snapshot())
        executions = FakeExecutionRepository()
        engine = build_engine(gateway, self.escalation(), executions=executions)

        await engine.run_for_ticket("TCK-1", Trigger.SLA_BREACHED)
        second = await engine.run_for_ticket("TCK-1", Trigger.SLA_BREACHED)

        assert len(gateway.applied) == 1
        assert second.outcomes == []
        assert len(executions.records) == 1

    async def test_sla_rule_runs_again_after_the_window(self):
        gateway = FakeTicketGateway(make_snapshot())
        executions = FakeExecutionRepository()
        executions.records.append(AutomationExecution(
            rule_id="escalate",
            ticket_id="TCK-1",
            trigger=Trigger.SLA_BREACHED,
            matched=True,
            success=True,
            executed_at=datetime.now(timezone.utc) - timedelta(hours=25),
        ))
        engine = build_engine(gateway, self.escalation(), executions=executions)

        await engine.run_for_ticket("TCK-1", Trigger.SLA_BREACHED)

        assert len(gateway.applied) == 1

    async def test_failed_run_does_not_block_the_next(self):
        gateway = FakeTicketGateway(make_snapshot())
        gateway.fail_kinds["add_internal_note"] = RuntimeError("store exploded")
        executions = FakeExecutionRepository()
        engine = build_engine(gateway, self.escalation(), executions=executions)

        await engine.run_for_ticket("TCK-1", Trigger.SLA_BREACHED)
        gateway.fail_kinds.clear()
        await engine.run_for_ticket("TCK-1", Trigger.SLA_BREACHED)

        assert len(gateway.applied) == 1

    async def test_other_triggers_are_not_deduplicated(self):
        gateway = FakeTicketGateway(make_snapshot())
        executions = FakeExecutionRepository()
        rule = make_rule("note", actions=[{"type": "add_internal_note", "body": "Hello"}])
        engine = build_engine(gateway, rule, executions=executions)

        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)
        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert len(gateway.applied) == 2


class TestSlaSync:

    async def test_status_and_priority_changes_reach_the_sla_clock(self):
        gateway = FakeTicketGateway(make_snapshot(team_id="ops"))
        sla_sync = RecordingSlaSync()
        engine = build_engine(
            gateway,
            make_rule("r", actions=[
                {"type": "set_status", "status": "WAITING_ON_REQUESTER"},
                {"type": "set_priority", "priority": "P2"},
                {"type": "assign_user", "userId": "agent-1"},
            ]),
            sla_sync=sla_sync,
        )

        await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert sla_sync.calls == [
            ("status", "TCK-1", TicketStatus.WAITING_ON_REQUESTER),
            ("priority", "TCK-1", TicketPriority.P2, "ops"),
        ]

    async def test_sla_sync_failure_does_not_fail_the_rule(self):
        class BrokenSync(RecordingSlaSync):
            async def on_status_changed(self, ticket_id, status, at=None):
                raise RuntimeError("sla store down")

        gateway = FakeTicketGateway(make_snapshot())
        engine = build_engine(
            gateway,
            make_rule("r", actions=[{"type": "set_status", "status": "TRIAGED"}]),
            sla_sync=BrokenSync(),
        )

        report = await engine.run_for_ticket("TCK-1", Trigger.TICKET_CREATED)

        assert report.outcomes[0].success


class TestDryRun:

    async def test_test_rule_reports_intents_without_writing(self):
        gateway = FakeTicketGateway(make_snapshot(priority=TicketPriority.P1))
        engine = build_engine(gateway, make_rule("vip", **P1_TO_VIP))

        result = await engine.test_rule("vip", "TCK-1")

        assert result.matched
        assert result.intents[0].changes == {"team_id": "vip-team"}
        assert gateway.applied == []

    async def test_unknown_rule_raises_not_found(self):
        engine = build_engine(FakeTicketGateway(make_snapshot()))
        with pytest.raises(ResourceNotFoundException):
            await engine.test_rule("nope", "TCK-1")
