"""
Test suite for the workflow engine

Tests instance start, step approval, the tier rejection cascade, requestor
actions (resubmit, appeal, cancel), delegation, optimistic concurrency and
ledger integrity across the whole lifecycle.
"""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from approval_engine.storage import InMemoryStorage, SQLiteStorage
from approval_engine.config import ApprovalEngineConfig
from approval_engine.templates import TemplateCatalog, WorkflowStep, WorkflowCategory
from approval_engine.ledger import HistoryLedger, HistoryAction
from approval_engine.delegation import DelegationManager
from approval_engine.approvers import ApproverDirectory
from approval_engine.notifications import (
    NotificationOutbox, LogNotificationSender, NotificationEvent, NotificationStatus
)
from approval_engine.workflows import (
    WorkflowEngine, WorkflowStatus, Priority, RequestorAction, Reference
)
from approval_engine.errors import (
    ValidationError, PolicyLimitError, NotFoundError, AuthorizationError, StateConflictError,
    PersistenceError
)


TENANT = "acme"
REQUESTOR = "rita"
TODAY = datetime.now(timezone.utc).date()


class OutboxUnavailableStorage(InMemoryStorage):
    """In-memory store that cannot update outbox messages until told otherwise"""

    def __init__(self):
        super().__init__()
        self.outbox_available = False

    def save(self, table, record_id, data):
        if table == NotificationOutbox.TABLE and not self.outbox_available:
            raise PersistenceError("outbox store unavailable")
        super().save(table, record_id, data)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def config():
    return ApprovalEngineConfig(max_resubmits=None, max_appeals=None)


@pytest.fixture
def sender():
    return LogNotificationSender()


@pytest.fixture
def engine(storage, config, sender):
    """Create workflow engine with approvers for three tiers"""
    directory = ApproverDirectory(storage)
    directory.assign_role(TENANT, "sam", "supervisor")
    directory.assign_role(TENANT, "dana", "dept_head")
    directory.assign_role(TENANT, "fiona", "finance")
    return WorkflowEngine(
        storage,
        templates=TemplateCatalog(storage),
        ledger=HistoryLedger(storage),
        delegations=DelegationManager(storage),
        directory=directory,
        outbox=NotificationOutbox(storage, sender),
        config=config
    )


@pytest.fixture
def purchase_template(engine):
    """Three-tier purchase approval template"""
    steps = [
        WorkflowStep(step_order=1, tier_level=1, name="Supervisor Review", approver_role="supervisor"),
        WorkflowStep(step_order=2, tier_level=2, name="Department Head", approver_role="dept_head"),
        WorkflowStep(step_order=3, tier_level=3, name="Finance Approval", approver_role="finance"),
    ]
    return engine.templates.create_template(TENANT, "Purchase Approval", WorkflowCategory.PURCHASE,
                                            steps, created_by="admin")


@pytest.fixture
def instance(engine, purchase_template):
    return engine.start_workflow(
        TENANT, purchase_template.id, REQUESTOR,
        reference=Reference("purchase_request", "PR-1001", "Laptops for design team"),
        metadata={"amount": "5000.00", "vendor_name": "Acme Supplies"}
    )


def step_id(instance, order):
    return instance.step_at(order).id


def ledger_count(engine, instance_id):
    return len(engine.get_history(TENANT, instance_id))


def return_to_requestor(engine, instance):
    """Reject at tier 1 so the request lands with the requestor"""
    engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "missing quote")
    return engine.get_instance(TENANT, instance.id)


class TestStartWorkflow:
    """Instance creation"""

    def test_starts_at_first_step(self, engine, instance, purchase_template):
        assert instance.status == WorkflowStatus.PENDING
        assert instance.current_step_order == 1
        assert instance.current_tier == 1
        assert instance.current_step_id == purchase_template.steps[0].id
        assert instance.total_steps == 3
        assert instance.version == 1
        assert instance.metadata.amount == Decimal("5000.00")
        assert instance.reference.reference_id == "PR-1001"

    def test_start_writes_no_ledger_entry(self, engine, instance):
        assert ledger_count(engine, instance.id) == 0

    def test_start_notifies_first_tier(self, engine, instance, sender):
        messages = engine.outbox.list_messages(instance_id=instance.id)
        assert len(messages) == 1
        assert messages[0].event == NotificationEvent.STEP_PENDING
        assert messages[0].target_tier == 1
        assert messages[0].status == NotificationStatus.SENT
        assert len(sender.sent) == 1

    def test_inactive_template_rejected(self, engine, purchase_template):
        engine.templates.deactivate_template(TENANT, purchase_template.id)
        with pytest.raises(ValidationError):
            engine.start_workflow(TENANT, purchase_template.id, REQUESTOR)

    def test_unknown_template(self, engine):
        with pytest.raises(NotFoundError):
            engine.start_workflow(TENANT, "no-such-template", REQUESTOR)

    def test_other_tenants_template(self, engine, purchase_template):
        with pytest.raises(NotFoundError):
            engine.start_workflow("other", purchase_template.id, REQUESTOR)

    def test_unknown_priority(self, engine, purchase_template):
        with pytest.raises(ValidationError):
            engine.start_workflow(TENANT, purchase_template.id, REQUESTOR, priority="asap")

    def test_instance_keeps_template_snapshot(self, engine, instance, purchase_template):
        engine.templates.revise_template(TENANT, purchase_template.id, purchase_template.steps[:1])
        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.total_steps == 3
        assert loaded.template_version == 1

    def test_list_instances(self, engine, purchase_template, instance):
        other = engine.start_workflow(TENANT, purchase_template.id, "otto", priority=Priority.HIGH)
        assert {i.id for i in engine.list_instances(TENANT)} == {instance.id, other.id}
        assert [i.id for i in engine.list_instances(TENANT, started_by="otto")] == [other.id]
        assert [i.id for i in engine.list_instances(TENANT, reference_id="PR-1001")] == [instance.id]
        assert engine.list_instances("other") == []


class TestApproveStep:
    """Forward progress through the tiers"""

    def test_approve_advances(self, engine, instance):
        result = engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam", comments="ok")

        assert result.status == WorkflowStatus.IN_PROGRESS
        assert result.tier == 1
        assert result.target_tier == 2
        assert result.current_step_order == 2
        assert result.version == 2

        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.current_tier == 2
        assert loaded.current_step_id == step_id(instance, 2)

        history = engine.get_history(TENANT, instance.id)
        assert len(history) == 1
        assert history[0].action == HistoryAction.APPROVED
        assert history[0].actor_id == "sam"
        assert history[0].id == result.ledger_entry_id

    def test_last_approval_completes(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")
        result = engine.approve_step(TENANT, instance.id, step_id(instance, 3), "fiona")

        loaded = engine.get_instance(TENANT, instance.id)
        assert result.status == WorkflowStatus.APPROVED
        assert result.target_tier is None
        assert loaded.current_step_id is None
        assert loaded.completed_at is not None
        assert loaded.is_terminal

        approved = engine.outbox.list_messages(instance_id=instance.id)[-1]
        assert approved.event == NotificationEvent.APPROVED
        assert approved.target_user_id == REQUESTOR

    def test_wrong_approver(self, engine, instance):
        with pytest.raises(AuthorizationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "dana")
        assert ledger_count(engine, instance.id) == 0

    def test_not_current_step(self, engine, instance):
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")

    def test_unknown_step(self, engine, instance):
        with pytest.raises(NotFoundError):
            engine.approve_step(TENANT, instance.id, "no-such-step", "sam")

    def test_other_tenant(self, engine, instance):
        with pytest.raises(NotFoundError):
            engine.approve_step("other", instance.id, step_id(instance, 1), "sam")

    def test_missing_actor(self, engine, instance):
        with pytest.raises(ValidationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "")

    def test_approved_instance_is_closed(self, engine, instance):
        for order, actor in ((1, "sam"), (2, "dana"), (3, "fiona")):
            engine.approve_step(TENANT, instance.id, step_id(instance, order), actor)
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 3), "fiona")

    def test_explicit_step_approver(self, engine):
        template = engine.templates.create_template(TENANT, "Permit", WorkflowCategory.PERMIT, [
            WorkflowStep(step_order=1, tier_level=1, name="Site Lead", approver_role="site_lead",
                         approver_user_id="lee"),
        ])
        instance = engine.start_workflow(TENANT, template.id, REQUESTOR)
        with pytest.raises(AuthorizationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        result = engine.approve_step(TENANT, instance.id, step_id(instance, 1), "lee")
        assert result.status == WorkflowStatus.APPROVED


class TestRejectionCascade:
    """Returned requests travel down one tier at a time"""

    def test_purchase_scenario(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")

        result = engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "budget exceeded")
        loaded = engine.get_instance(TENANT, instance.id)
        assert result.status == WorkflowStatus.RETURNED
        assert result.target_tier == 1
        assert not result.returned_to_requestor
        assert loaded.awaiting_cascade_action
        assert loaded.cascade_pending_tier == 1
        assert loaded.current_step_id == step_id(instance, 1)
        assert loaded.current_step_order == 1
        assert loaded.returned_from_tier == 2
        assert loaded.returned_by == "dana"
        assert loaded.rejection_reason == "budget exceeded"

        result = engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "still over budget")
        loaded = engine.get_instance(TENANT, instance.id)
        assert result.returned_to_requestor
        assert len(loaded.cascade_chain) == 2
        assert loaded.awaiting_requestor_action
        assert not loaded.awaiting_cascade_action
        assert loaded.current_step_id is None
        assert loaded.current_step_order == 0
        assert loaded.rejection_history[-1].is_cascade
        assert loaded.rejection_history[-1].cascade_from_tier == 2

        result = engine.resubmit(TENANT, instance.id, REQUESTOR, changes={"amount": "4200.00"})
        loaded = engine.get_instance(TENANT, instance.id)
        assert result.status == WorkflowStatus.PENDING
        assert loaded.current_step_order == 1
        assert loaded.resubmit_count == 1
        assert loaded.metadata.amount == Decimal("4200.00")
        assert engine.verify_history(TENANT, instance.id)['valid']

    def test_three_tier_chain(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")

        engine.reject(TENANT, instance.id, step_id(instance, 3), 3, "fiona", "no budget")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "agreed")
        result = engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "agreed")

        loaded = engine.get_instance(TENANT, instance.id)
        assert [e.from_tier for e in loaded.cascade_chain] == [3, 2, 1]
        assert [e.to_tier for e in loaded.cascade_chain] == [2, 1, None]
        assert result.returned_to_requestor
        assert loaded.awaiting_requestor_action

        rejected = engine.ledger.get_history(instance.id, action=HistoryAction.REJECTED)
        assert rejected[0].comments == "[RETURNED FROM TIER 3 TO TIER 2] no budget"
        assert rejected[2].comments == "[CASCADE FROM TIER 1 TO REQUESTOR] agreed"

    def test_can_cascade_further_flag(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")
        engine.reject(TENANT, instance.id, step_id(instance, 3), 3, "fiona", "no")
        assert engine.get_instance(TENANT, instance.id).can_cascade_further

        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        assert not engine.get_instance(TENANT, instance.id).can_cascade_further

    def test_initial_rejection_at_tier_one(self, engine, instance):
        result = engine.reject_approval(TENANT, instance.id, step_id(instance, 1), 1, "sam", "incomplete")
        assert result.returned_to_requestor
        assert result.target_tier is None
        assert engine.get_instance(TENANT, instance.id).rejection_history[0].is_cascade is False

    def test_returned_to_tier_notification(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "budget exceeded")

        message = engine.outbox.list_messages(instance_id=instance.id)[-1]
        assert message.event == NotificationEvent.RETURNED_TO_TIER
        assert message.target_tier == 1

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, engine, instance, reason):
        with pytest.raises(ValidationError):
            engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", reason)
        assert ledger_count(engine, instance.id) == 0

    def test_invalid_tier(self, engine, instance):
        with pytest.raises(ValidationError):
            engine.reject(TENANT, instance.id, step_id(instance, 1), 0, "sam", "no")

    def test_tier_must_match_current_step(self, engine, instance):
        with pytest.raises(StateConflictError):
            engine.reject_approval(TENANT, instance.id, step_id(instance, 1), 2, "sam", "no")

    def test_cascade_requires_returned_instance(self, engine, instance):
        with pytest.raises(StateConflictError):
            engine.cascade_rejection(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")

    def test_cascade_at_wrong_tier(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")
        engine.reject(TENANT, instance.id, step_id(instance, 3), 3, "fiona", "no")
        with pytest.raises(StateConflictError):
            engine.cascade_rejection(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")

    def test_cascade_by_wrong_approver(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        with pytest.raises(AuthorizationError):
            engine.cascade_rejection(TENANT, instance.id, step_id(instance, 1), 1, "fiona", "no")

    def test_stale_cascade_replay_writes_nothing(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        engine.cascade_rejection(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")
        before = engine.get_instance(TENANT, instance.id)
        entries = ledger_count(engine, instance.id)

        with pytest.raises(StateConflictError) as exc:
            engine.cascade_rejection(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")

        assert exc.value.current_status == "returned"
        assert ledger_count(engine, instance.id) == entries
        assert engine.get_instance(TENANT, instance.id).version == before.version

    def test_returned_instance_cannot_be_approved(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")

    def test_rejection_rounds(self, engine, instance):
        return_to_requestor(engine, instance)
        engine.resubmit(TENANT, instance.id, REQUESTOR)

        # A fresh rejection in the new round is initial, not a hop
        engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "still missing")
        loaded = engine.get_instance(TENANT, instance.id)
        assert [e.round for e in loaded.cascade_chain] == [0, 1]
        assert [e.is_cascade for e in loaded.rejection_history] == [False, False]
        assert loaded.awaiting_requestor_action


class TestHardReject:

    def test_terminal_rejection(self, engine, instance):
        result = engine.hard_reject(TENANT, instance.id, step_id(instance, 1), "sam", "fraudulent")
        loaded = engine.get_instance(TENANT, instance.id)

        assert result.status == WorkflowStatus.REJECTED
        assert loaded.rejection_reason == "fraudulent"
        assert loaded.completed_at is not None
        assert loaded.cascade_chain == []

        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.action == HistoryAction.REJECTED
        assert entry.metadata == {'hard_reject': True}

    def test_reason_required(self, engine, instance):
        with pytest.raises(ValidationError):
            engine.hard_reject(TENANT, instance.id, step_id(instance, 1), "sam", " ")


class TestRequestorActions:
    """Resubmit, appeal and cancel"""

    def test_resubmit_restarts_at_step_one(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")
        engine.reject(TENANT, instance.id, step_id(instance, 3), 3, "fiona", "no")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")

        result = engine.resubmit(TENANT, instance.id, REQUESTOR, comments="added quotes")
        loaded = engine.get_instance(TENANT, instance.id)

        assert result.current_step_order == 1
        assert loaded.status == WorkflowStatus.PENDING
        assert loaded.current_tier == 1
        assert not loaded.awaiting_requestor_action
        assert loaded.returned_from_tier is None
        assert loaded.returned_at is None
        assert loaded.cascade_pending_tier is None
        assert loaded.resubmit_history[0].previous_rejection_count == 3
        assert len(loaded.cascade_chain) == 3

        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.action == HistoryAction.RESUBMITTED
        assert entry.comments == "[RESUBMITTED] added quotes"

    def test_resubmit_requires_returned_to_requestor(self, engine, instance):
        with pytest.raises(StateConflictError):
            engine.resubmit(TENANT, instance.id, REQUESTOR)

    def test_resubmit_while_returned_to_tier(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        with pytest.raises(StateConflictError):
            engine.resubmit(TENANT, instance.id, REQUESTOR)

    def test_resubmit_by_someone_else(self, engine, instance):
        return_to_requestor(engine, instance)
        with pytest.raises(AuthorizationError):
            engine.resubmit(TENANT, instance.id, "sam")

    def test_resubmit_cap(self, engine, instance, config):
        config.max_resubmits = 1
        return_to_requestor(engine, instance)
        engine.resubmit(TENANT, instance.id, REQUESTOR)
        return_to_requestor(engine, instance)

        with pytest.raises(PolicyLimitError) as exc:
            engine.resubmit(TENANT, instance.id, REQUESTOR)
        assert exc.value.limit == 1
        assert isinstance(exc.value, ValidationError)

    def test_appeal(self, engine, instance):
        return_to_requestor(engine, instance)
        result = engine.appeal(TENANT, instance.id, REQUESTOR, "quote was attached")
        loaded = engine.get_instance(TENANT, instance.id)

        assert result.status == WorkflowStatus.PENDING
        assert loaded.appeal_count == 1
        assert loaded.resubmit_count == 0
        assert loaded.appeal_history[0].appeal_reason == "quote was attached"
        assert loaded.current_step_order == 1

        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.action == HistoryAction.RESUBMITTED
        assert entry.comments == "[APPEAL] quote was attached"
        assert entry.metadata['appeal'] is True

    def test_appeal_reason_required(self, engine, instance):
        return_to_requestor(engine, instance)
        with pytest.raises(ValidationError):
            engine.appeal(TENANT, instance.id, REQUESTOR, "")

    def test_appeal_cap(self, engine, instance, config):
        config.max_appeals = 1
        return_to_requestor(engine, instance)
        engine.appeal(TENANT, instance.id, REQUESTOR, "please")
        return_to_requestor(engine, instance)
        with pytest.raises(PolicyLimitError):
            engine.appeal(TENANT, instance.id, REQUESTOR, "again")

    def test_cancel_pending(self, engine, instance):
        result = engine.cancel(TENANT, instance.id, REQUESTOR, reason="no longer needed")
        loaded = engine.get_instance(TENANT, instance.id)

        assert result.status == WorkflowStatus.CANCELLED
        assert loaded.cancellation_reason == "no longer needed"
        assert loaded.completed_at is not None
        assert loaded.current_step_id is None

        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.action == HistoryAction.CANCELLED
        assert entry.metadata == {'previous_status': 'pending'}

        message = engine.outbox.list_messages(instance_id=instance.id)[-1]
        assert message.event == NotificationEvent.CANCELLED
        assert message.target_tier == 1

    def test_cancel_in_progress(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        assert engine.cancel(TENANT, instance.id, REQUESTOR).status == WorkflowStatus.CANCELLED

    def test_cancel_returned_to_tier(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        engine.cancel(TENANT, instance.id, REQUESTOR)

        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.status == WorkflowStatus.CANCELLED
        assert not loaded.awaiting_cascade_action

    def test_cancel_returned_to_requestor(self, engine, instance):
        return_to_requestor(engine, instance)
        engine.cancel(TENANT, instance.id, REQUESTOR)
        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.status == WorkflowStatus.CANCELLED
        assert not loaded.awaiting_requestor_action

    def test_cancel_escalated(self, engine, instance, storage):
        data = storage.load(WorkflowEngine.TABLE, instance.id)
        data['status'] = WorkflowStatus.ESCALATED.value
        storage.save(WorkflowEngine.TABLE, instance.id, data)

        assert engine.cancel(TENANT, instance.id, REQUESTOR).status == WorkflowStatus.CANCELLED

    def test_cancel_terminal_fails(self, engine, instance):
        engine.cancel(TENANT, instance.id, REQUESTOR)
        entries = ledger_count(engine, instance.id)
        with pytest.raises(StateConflictError):
            engine.cancel(TENANT, instance.id, REQUESTOR)
        assert ledger_count(engine, instance.id) == entries

    def test_cancel_approved_fails(self, engine, instance):
        for order, actor in ((1, "sam"), (2, "dana"), (3, "fiona")):
            engine.approve_step(TENANT, instance.id, step_id(instance, order), actor)
        with pytest.raises(StateConflictError):
            engine.cancel(TENANT, instance.id, REQUESTOR)

    def test_cancel_by_someone_else(self, engine, instance):
        with pytest.raises(AuthorizationError):
            engine.cancel(TENANT, instance.id, "sam")


class TestAvailableActions:

    def test_returned_to_requestor(self, engine, instance):
        return_to_requestor(engine, instance)
        actions = engine.available_actions(TENANT, instance.id, REQUESTOR)
        assert actions.can_act
        assert actions.actions == [RequestorAction.RESUBMIT, RequestorAction.CANCEL,
                                   RequestorAction.APPEAL]

    def test_caps_remove_actions(self, engine, instance, config):
        config.max_resubmits = 0
        config.max_appeals = 0
        return_to_requestor(engine, instance)
        actions = engine.available_actions(TENANT, instance.id, REQUESTOR)
        assert actions.actions == [RequestorAction.CANCEL]

    def test_active_request(self, engine, instance):
        actions = engine.available_actions(TENANT, instance.id, REQUESTOR)
        assert actions.can_act
        assert actions.actions == [RequestorAction.CANCEL]

    def test_terminal_request(self, engine, instance):
        engine.cancel(TENANT, instance.id, REQUESTOR)
        actions = engine.available_actions(TENANT, instance.id, REQUESTOR)
        assert not actions.can_act
        assert actions.actions == []

    def test_not_requestor(self, engine, instance):
        actions = engine.available_actions(TENANT, instance.id, "sam")
        assert not actions.can_act
        assert actions.reason == "Not the original requestor"


class TestDelegation:
    """Step handoff and delegation rules"""

    def test_delegate_step(self, engine, instance):
        result = engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "sam", "tom",
                                      comments="on leave")
        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.assigned_approver_id == "tom"
        assert result.status == WorkflowStatus.PENDING

        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.action == HistoryAction.DELEGATED
        assert entry.metadata == {'delegate_to': "tom"}

        with pytest.raises(AuthorizationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")

        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "tom")
        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.assigned_approver_id is None
        assert loaded.current_tier == 2

    def test_delegate_to_self(self, engine, instance):
        with pytest.raises(ValidationError):
            engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "sam", "sam")

    def test_delegate_by_non_approver(self, engine, instance):
        with pytest.raises(AuthorizationError):
            engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "dana", "tom")

    def test_delegation_not_allowed(self, engine):
        template = engine.templates.create_template(TENANT, "Contract", WorkflowCategory.CONTRACT, [
            WorkflowStep(step_order=1, tier_level=1, name="Legal", approver_role="supervisor",
                         allow_delegation=False),
        ])
        instance = engine.start_workflow(TENANT, template.id, REQUESTOR)
        with pytest.raises(ValidationError):
            engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "sam", "tom")

    def test_delegate_terminal_instance(self, engine, instance):
        engine.cancel(TENANT, instance.id, REQUESTOR)
        with pytest.raises(StateConflictError):
            engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "sam", "tom")

    def test_rule_delegate_acts_for_primary(self, engine, instance):
        engine.delegations.create_rule(TENANT, "sam", "deputy", TODAY - timedelta(days=1),
                                       TODAY + timedelta(days=1))

        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "deputy")
        entry = engine.get_history(TENANT, instance.id)[-1]
        assert entry.actor_id == "deputy"
        assert entry.delegated_from == "sam"

    def test_primary_may_still_act(self, engine, instance):
        engine.delegations.create_rule(TENANT, "sam", "deputy", TODAY, TODAY)
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        assert engine.get_history(TENANT, instance.id)[-1].delegated_from is None

    def test_rule_outside_limits(self, engine, instance):
        engine.delegations.create_rule(TENANT, "sam", "deputy", TODAY, TODAY,
                                       categories=["time_off"])
        with pytest.raises(AuthorizationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "deputy")

    def test_revoked_rule(self, engine, instance):
        rule = engine.delegations.create_rule(TENANT, "sam", "deputy", TODAY, TODAY)
        engine.delegations.revoke_rule(TENANT, rule.id, "sam")
        with pytest.raises(AuthorizationError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "deputy")

    def test_assigned_approvers(self, engine, instance):
        engine.directory.assign_role(TENANT, "sue", "supervisor")
        engine.delegations.create_rule(TENANT, "sue", "deputy", TODAY, TODAY)

        assert engine.assigned_approvers(TENANT, instance) == {
            "sam": None, "sue": None, "deputy": "sue"
        }


class TestConcurrency:
    """Optimistic versioning and serialized transitions"""

    def test_expected_version_mismatch(self, engine, instance):
        with pytest.raises(StateConflictError) as exc:
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam", expected_version=7)

        assert exc.value.current_version == 1
        assert ledger_count(engine, instance.id) == 0
        assert engine.get_instance(TENANT, instance.id).status == WorkflowStatus.PENDING

    def test_expected_version_match(self, engine, instance):
        result = engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam", expected_version=1)
        assert result.version == 2

    def test_stale_approval_replay(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        assert ledger_count(engine, instance.id) == 1

    def test_concurrent_approvals_single_winner(self, engine, instance):
        engine.directory.assign_role(TENANT, "sue", "supervisor")
        barrier = threading.Barrier(2)
        outcomes = []

        def approve(actor):
            barrier.wait()
            try:
                engine.approve_step(TENANT, instance.id, step_id(instance, 1), actor)
                outcomes.append("ok")
            except StateConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=approve, args=(actor,)) for actor in ("sam", "sue")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert ledger_count(engine, instance.id) == 1
        assert engine.get_instance(TENANT, instance.id).version == 2

    def test_failed_commit_rolls_back_ledger(self, engine, instance, storage, monkeypatch):
        monkeypatch.setattr(storage, "save_if_version", lambda *args, **kwargs: False)
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        assert ledger_count(engine, instance.id) == 0
        assert len(engine.outbox.list_messages(instance_id=instance.id)) == 1


class TestMultiStepTiers:
    """Tiers holding more than one step"""

    def make_template(self, engine, tiers, roles):
        steps = [
            WorkflowStep(step_order=order, tier_level=tier, name=f"Step {order}", approver_role=role)
            for order, (tier, role) in enumerate(zip(tiers, roles), start=1)
        ]
        return engine.templates.create_template(TENANT, "Split tiers", WorkflowCategory.PURCHASE, steps)

    def test_cascade_skips_the_rest_of_the_tier(self, engine):
        template = self.make_template(engine, [1, 2, 2], ["supervisor", "dept_head", "finance"])
        instance = engine.start_workflow(TENANT, template.id, REQUESTOR)
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")

        result = engine.reject(TENANT, instance.id, step_id(instance, 3), 2, "fiona", "no budget")
        loaded = engine.get_instance(TENANT, instance.id)
        assert result.target_tier == 1
        assert loaded.current_step_order == 1
        assert loaded.current_tier == 1
        assert loaded.current_step_id == step_id(instance, 1)

    def test_cascade_lands_on_last_step_of_target_tier(self, engine):
        template = self.make_template(engine, [1, 1, 2], ["supervisor", "dept_head", "finance"])
        instance = engine.start_workflow(TENANT, template.id, REQUESTOR)
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")

        engine.reject(TENANT, instance.id, step_id(instance, 3), 2, "fiona", "no budget")
        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.current_step_order == 2
        assert loaded.current_tier == 1
        assert loaded.current_step_id == step_id(instance, 2)
        assert loaded.last_step_of_tier(1).step_order == 2

        with pytest.raises(AuthorizationError):
            engine.reject(TENANT, instance.id, step_id(instance, 2), 1, "sam", "agreed")
        result = engine.reject(TENANT, instance.id, step_id(instance, 2), 1, "dana", "agreed")
        assert result.returned_to_requestor
        assert engine.get_instance(TENANT, instance.id).current_step_order == 0


class TestNotificationDelivery:
    """Delivery happens after commit and never fails the transition"""

    @pytest.fixture
    def storage(self):
        return OutboxUnavailableStorage()

    def test_outbox_store_failure_keeps_transition(self, engine, instance, storage):
        result = engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")

        loaded = engine.get_instance(TENANT, instance.id)
        assert result.status == WorkflowStatus.IN_PROGRESS
        assert loaded.status == WorkflowStatus.IN_PROGRESS
        assert loaded.version == 2
        assert ledger_count(engine, instance.id) == 1
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")

        pending = engine.outbox.list_messages(instance_id=instance.id, status=NotificationStatus.PENDING)
        assert len(pending) == 2

        storage.outbox_available = True
        assert engine.outbox.dispatch_pending()["succeeded"] == 2
        assert engine.outbox.list_messages(status=NotificationStatus.PENDING) == []


class TestLedgerIntegrity:

    def test_full_lifecycle_chain_verifies(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "no")
        engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "no")
        engine.appeal(TENANT, instance.id, REQUESTOR, "please reconsider")
        engine.delegate_step(TENANT, instance.id, step_id(instance, 1), "sam", "tom")
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "tom")
        engine.approve_step(TENANT, instance.id, step_id(instance, 2), "dana")
        engine.approve_step(TENANT, instance.id, step_id(instance, 3), "fiona")

        history = engine.get_history(TENANT, instance.id)
        assert [e.action for e in history] == [
            HistoryAction.APPROVED, HistoryAction.REJECTED, HistoryAction.REJECTED,
            HistoryAction.RESUBMITTED, HistoryAction.DELEGATED, HistoryAction.APPROVED,
            HistoryAction.APPROVED, HistoryAction.APPROVED
        ]
        result = engine.verify_history(TENANT, instance.id)
        assert result['valid']
        assert result['total_entries'] == 8


class TestSQLiteBackend:
    """The engine against a real database file"""

    @pytest.fixture
    def storage(self, tmp_path):
        store = SQLiteStorage(tmp_path / "approvals.db")
        yield store
        store.close()

    def test_purchase_scenario(self, engine, instance):
        engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam")
        engine.reject(TENANT, instance.id, step_id(instance, 2), 2, "dana", "budget exceeded")
        engine.reject(TENANT, instance.id, step_id(instance, 1), 1, "sam", "still over budget")
        engine.resubmit(TENANT, instance.id, REQUESTOR)

        loaded = engine.get_instance(TENANT, instance.id)
        assert loaded.status == WorkflowStatus.PENDING
        assert loaded.resubmit_count == 1
        assert len(loaded.cascade_chain) == 2
        assert engine.verify_history(TENANT, instance.id)['valid']

    def test_conflict_rolls_back(self, engine, instance):
        with pytest.raises(StateConflictError):
            engine.approve_step(TENANT, instance.id, step_id(instance, 1), "sam", expected_version=3)
        assert ledger_count(engine, instance.id) == 0
