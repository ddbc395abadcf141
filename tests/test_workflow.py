import threading
import uuid
from datetime import datetime, timedelta

import pytest

from application import (
    AbstractNotificationSink,
    AssignUsersToStageCommand,
    AssignUsersToStageUseCase,
    AuthorizationError,
    BadRequestError,
    ChangeUserRoleCommand,
    ChangeUserRoleUseCase,
    CheckOverdueOrdersUseCase,
    ClaimOrderCommand,
    ClaimOrderUseCase,
    ConflictError,
    CreateStageCommand,
    CreateStageUseCase,
    DeleteStageUseCase,
    DeleteUserUseCase,
    GetAuditLogUseCase,
    GetConfirmationMessageUseCase,
    GetOrderUseCase,
    ListAvailableOrdersUseCase,
    ListMyClaimsUseCase,
    ListStagesUseCase,
    NotFoundError,
    OverrideOrderStageCommand,
    OverrideOrderStageUseCase,
    ReassignClaimCommand,
    ReassignClaimUseCase,
    SetUserStagesCommand,
    SetUserStagesUseCase,
    UpdateShippingPriceCommand,
    UpdateShippingPriceUseCase,
)
from conftest import product
from model import NotificationCategory, OrderStage, UserRole


def _reassign(shop, order_id, new_user_id):
    cmd = ReassignClaimCommand(order_id=uuid.UUID(order_id), new_user_id=new_user_id)
    return ReassignClaimUseCase().execute(cmd, shop.uow_factory())


def _override(shop, order_id, stage):
    cmd = OverrideOrderStageCommand(order_id=uuid.UUID(order_id), stage=stage)
    return OverrideOrderStageUseCase().execute(cmd, shop.uow_factory())


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

def test_design_order_moves_through_claims_and_reassignment(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.PRINTING)
    c = shop.user(OrderStage.DESIGN)
    d = shop.user(OrderStage.DESIGN)
    order = shop.order(a, product(needs_design=True))
    assert order.current_stage == "WAITING"

    first = shop.claim(a, order.id)
    assert first.stage == "WAITING"
    assert first.completed_at is None

    done = shop.advance(a, first.id)
    assert done.completed_at is not None
    assert shop.stage_of(order.id) == OrderStage.DESIGN

    with pytest.raises(AuthorizationError, match="DESIGN"):
        shop.claim(b, order.id)

    design_claim = shop.claim(c, order.id)
    assert design_claim.user_id == str(c)

    moved = _reassign(shop, order.id, d)
    assert moved.id == design_claim.id
    assert moved.user_id == str(d)
    assert moved.stage == design_claim.stage
    assert moved.claimed_at == design_claim.claimed_at

    shop.advance(d, design_claim.id)
    assert shop.stage_of(order.id) == OrderStage.PRINT_READY


def test_order_without_design_skips_design_stage(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a, product(needs_design=False), product(needs_design=False))

    claim = shop.claim(a, order.id)
    shop.advance(a, claim.id)

    assert shop.stage_of(order.id) == OrderStage.PRINT_READY


def test_one_product_needing_design_prevents_the_skip(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a, product(needs_design=False), product(needs_design=True))

    claim = shop.claim(a, order.id)
    shop.advance(a, claim.id)

    assert shop.stage_of(order.id) == OrderStage.DESIGN


def test_stage_only_moves_forward_one_step_per_advance(shop):
    worker = shop.user(*OrderStage)
    order = shop.order(worker, product(needs_design=True))

    seen = [shop.stage_of(order.id)]
    for _ in range(6):
        claim = shop.claim(worker, order.id)
        shop.advance(worker, claim.id)
        seen.append(shop.stage_of(order.id))

    assert seen == list(OrderStage)


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------

def test_second_claim_on_an_actively_claimed_order_conflicts(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    shop.claim(a, order.id)

    with pytest.raises(ConflictError, match="already actively claimed"):
        shop.claim(b, order.id)
    with pytest.raises(ConflictError):
        shop.claim(a, order.id)


def test_claim_without_stage_permission_creates_nothing(shop):
    creator = shop.user(OrderStage.WAITING)
    outsider = shop.user(OrderStage.CUT)
    order = shop.order(creator)

    with pytest.raises(AuthorizationError):
        shop.claim(outsider, order.id)

    detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
    assert detail.stage_claims == []


def test_claim_of_unknown_order_is_not_found(shop):
    a = shop.user(OrderStage.WAITING)
    with pytest.raises(NotFoundError):
        shop.claim(a, uuid.uuid4())


def test_concurrent_claims_produce_exactly_one_winner(shop):
    workers = [shop.user(OrderStage.WAITING) for _ in range(6)]
    order = shop.order(workers[0])
    barrier = threading.Barrier(len(workers))
    outcomes = []
    lock = threading.Lock()

    def attempt(user_id):
        barrier.wait()
        try:
            shop.claim(user_id, order.id)
            result = "won"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(w,)) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["conflict"] * (len(workers) - 1) + ["won"]
    detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
    assert len([c for c in detail.stage_claims if c.completed_at is None]) == 1


def test_advance_racing_a_reassignment_leaves_one_consistent_outcome(shop):
    owner = shop.user(OrderStage.WAITING)
    replacement = shop.user(OrderStage.WAITING)

    for _ in range(5):
        order = shop.order(owner)
        claim = shop.claim(owner, order.id)
        barrier = threading.Barrier(2)
        results = {}

        def advance():
            barrier.wait()
            try:
                shop.advance(owner, claim.id)
                results["advance"] = "done"
            except AuthorizationError:
                results["advance"] = "not owner"

        def reassign():
            barrier.wait()
            try:
                _reassign(shop, order.id, replacement)
                results["reassign"] = "done"
            except ConflictError:
                results["reassign"] = "not claimed"

        threads = [threading.Thread(target=advance), threading.Thread(target=reassign)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
        [final] = detail.stage_claims
        if results["advance"] == "done":
            assert results["reassign"] == "not claimed"
            assert final.user_id == str(owner)
            assert final.completed_at is not None
            assert detail.current_stage == OrderStage.PRINT_READY.value
        else:
            assert results == {"advance": "not owner", "reassign": "done"}
            assert final.user_id == str(replacement)
            assert final.completed_at is None
            assert detail.current_stage == OrderStage.WAITING.value


# ---------------------------------------------------------------------------
# Advance
# ---------------------------------------------------------------------------

def test_only_the_claimant_may_advance(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    claim = shop.claim(a, order.id)

    with pytest.raises(AuthorizationError, match="do not own"):
        shop.advance(b, claim.id)

    assert shop.stage_of(order.id) == OrderStage.WAITING
    detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
    assert detail.stage_claims[0].completed_at is None


def test_completed_claim_cannot_be_advanced_again(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    claim = shop.claim(a, order.id)
    shop.advance(a, claim.id)

    with pytest.raises(BadRequestError, match="already been completed"):
        shop.advance(a, claim.id)
    assert shop.stage_of(order.id) == OrderStage.PRINT_READY


def test_ownership_is_checked_before_completion(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    claim = shop.claim(a, order.id)
    shop.advance(a, claim.id)

    with pytest.raises(AuthorizationError):
        shop.advance(b, claim.id)


def test_advance_of_unknown_claim_is_not_found(shop):
    a = shop.user(OrderStage.WAITING)
    with pytest.raises(NotFoundError, match="Claim not found"):
        shop.advance(a, uuid.uuid4())


def test_advance_at_last_stage_completes_claim_and_keeps_stage(shop):
    a = shop.user(OrderStage.DELIVERED)
    order = shop.order(a)
    _override(shop, order.id, OrderStage.DELIVERED)

    claim = shop.claim(a, order.id)
    done = shop.advance(a, claim.id)

    assert done.completed_at is not None
    assert shop.stage_of(order.id) == OrderStage.DELIVERED


# ---------------------------------------------------------------------------
# Reassign & override
# ---------------------------------------------------------------------------

def test_reassign_needs_an_active_claim(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    order = shop.order(a)

    with pytest.raises(ConflictError, match="not currently claimed"):
        _reassign(shop, order.id, b)


def test_reassign_target_must_be_existing_staff(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    shop.claim(a, order.id)

    with pytest.raises(NotFoundError, match="Staff user"):
        _reassign(shop, order.id, uuid.uuid4())
    with pytest.raises(NotFoundError, match="Staff user"):
        _reassign(shop, order.id, shop.admin_id)


def test_reassigned_claim_is_advanced_by_new_owner_only(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user()
    order = shop.order(a)
    claim = shop.claim(a, order.id)
    _reassign(shop, order.id, b)

    with pytest.raises(AuthorizationError):
        shop.advance(a, claim.id)
    shop.advance(b, claim.id)
    assert shop.stage_of(order.id) == OrderStage.PRINT_READY


def test_override_moves_stage_and_leaves_claims_alone(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    claim = shop.claim(a, order.id)

    result = _override(shop, order.id, OrderStage.CUT)

    assert result.current_stage == "CUT"
    detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
    assert [c.id for c in detail.stage_claims] == [claim.id]
    assert detail.stage_claims[0].completed_at is None
    assert detail.stage_claims[0].stage == "WAITING"


def test_override_of_unknown_order_is_not_found(shop):
    with pytest.raises(NotFoundError):
        _override(shop, str(uuid.uuid4()), OrderStage.CUT)


def test_override_logs_the_direction_of_the_move(shop, caplog):
    order = shop.order(shop.admin_id)
    with caplog.at_level("WARNING", logger="printshop.application"):
        _override(shop, order.id, OrderStage.CUT)
        _override(shop, order.id, OrderStage.DESIGN)

    assert [r.getMessage().rsplit(" ", 1)[-1] for r in caplog.records] == [
        "(forward)",
        "(backward)",
    ]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class _BrokenSink(AbstractNotificationSink):
    def __init__(self):
        self.calls = 0

    def send(self, user_id, message, category, order_id=None):
        self.calls += 1
        raise RuntimeError("push channel down")


def test_notification_failure_keeps_the_claim(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    sink = _BrokenSink()

    cmd = ClaimOrderCommand(order_id=uuid.UUID(order.id), acting_user_id=a)
    claim = ClaimOrderUseCase(sink).execute(cmd, shop.uow_factory())

    assert sink.calls == 1
    detail = GetOrderUseCase().execute(uuid.UUID(order.id), shop.uow_factory())
    assert [c.id for c in detail.stage_claims] == [claim.id]


def test_order_creation_notifies_creator_and_waiting_staff(shop):
    creator = shop.user(OrderStage.WAITING)
    waiting = shop.user(OrderStage.WAITING)
    shop.user(OrderStage.PRINTING)

    order = shop.order(creator)

    created = shop.sink.for_user(creator)
    assert any(m.category == NotificationCategory.SUCCESS for m in created)
    assert [m.message for m in shop.sink.for_user(waiting)] == [
        f"New order #{order.id[:8]} is available for WAITING stage"
    ]
    # admin is assigned to every stage by bootstrap
    assert len(shop.sink.for_user(shop.admin_id)) == 1


def test_advance_notifies_claimant_and_next_stage_members(shop):
    a = shop.user(OrderStage.WAITING)
    printer = shop.user(OrderStage.PRINT_READY)
    order = shop.order(a)
    claim = shop.claim(a, order.id)
    shop.sink.sent.clear()

    shop.advance(a, claim.id)

    assert [m.message for m in shop.sink.for_user(a)] == [
        f"Order #{order.id[:8]} moved from WAITING to PRINT_READY"
    ]
    assert [m.order_id for m in shop.sink.for_user(printer)] == [uuid.UUID(order.id)]


def test_rejected_transition_sends_nothing(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    order = shop.order(a)
    shop.claim(a, order.id)
    shop.sink.sent.clear()

    with pytest.raises(ConflictError):
        shop.claim(b, order.id)
    assert shop.sink.sent == []


def test_advance_at_last_stage_sends_nothing(shop):
    a = shop.user(OrderStage.DELIVERED)
    order = shop.order(a)
    _override(shop, order.id, OrderStage.DELIVERED)
    claim = shop.claim(a, order.id)
    shop.sink.sent.clear()

    shop.advance(a, claim.id)
    assert shop.sink.sent == []


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def test_available_orders_match_user_stages_and_exclude_claimed(shop):
    a = shop.user(OrderStage.WAITING)
    b = shop.user(OrderStage.WAITING)
    printer = shop.user(OrderStage.PRINTING)
    free = shop.order(a)
    taken = shop.order(a)
    shop.claim(b, taken.id)

    available = ListAvailableOrdersUseCase().execute(a, shop.uow_factory())
    assert [o.id for o in available] == [free.id]
    assert ListAvailableOrdersUseCase().execute(printer, shop.uow_factory()) == []


def test_my_claims_split_into_active_and_completed(shop):
    a = shop.user(OrderStage.WAITING, OrderStage.PRINT_READY)
    first = shop.order(a)
    second = shop.order(a)
    c1 = shop.claim(a, first.id)
    shop.advance(a, c1.id)
    c2 = shop.claim(a, second.id)
    c3 = shop.claim(a, first.id)

    my = ListMyClaimsUseCase()
    active = my.execute(a, shop.uow_factory(), "active")
    completed = my.execute(a, shop.uow_factory(), "completed")
    everything = my.execute(a, shop.uow_factory())

    assert [x.claim.id for x in active] == [c2.id, c3.id]
    assert [x.claim.id for x in completed] == [c1.id]
    assert [x.claim.id for x in everything] == [c3.id, c2.id, c1.id]
    assert everything[0].order.id == first.id

    with pytest.raises(BadRequestError):
        my.execute(a, shop.uow_factory(), "someday")


def test_audit_log_lists_every_claim_newest_first(shop):
    a = shop.user(OrderStage.WAITING, OrderStage.PRINT_READY)
    order = shop.order(a, customer_phone="555-4242")
    first = shop.claim(a, order.id)
    shop.advance(a, first.id)
    second = shop.claim(a, order.id)

    log = GetAuditLogUseCase().execute(shop.uow_factory())

    assert [e.claim_id for e in log] == [second.id, first.id]
    assert log[0].customer_phone == "555-4242"
    assert log[1].completed_at is not None


def test_confirmation_message_totals(shop):
    a = shop.user(OrderStage.WAITING)
    order = shop.order(
        a,
        product(needs_design=True, price=40.0, design_amount=10.0),
        product(needs_design=False, price=20.0, design_amount=99.0),
        is_urgent=True,
    )
    UpdateShippingPriceUseCase().execute(
        UpdateShippingPriceCommand(order_id=uuid.UUID(order.id), shipping_price=5.0),
        shop.uow_factory(),
    )

    text = GetConfirmationMessageUseCase().execute(uuid.UUID(order.id), shop.uow_factory())

    assert "Branch: Downtown" in text
    assert "Design Work: $10.00" in text
    assert "TOTAL: $75.00" in text
    assert "URGENT ORDER" in text


# ---------------------------------------------------------------------------
# Stage administration
# ---------------------------------------------------------------------------

def test_stage_admin_create_assign_delete(shop):
    stages = {s.name: s for s in ListStagesUseCase().execute(shop.uow_factory())}
    assert list(stages) == [s.value for s in OrderStage]

    with pytest.raises(ConflictError, match="Stage already exists"):
        CreateStageUseCase().execute(CreateStageCommand(name=OrderStage.CUT), shop.uow_factory())

    cutter = shop.user()
    cut = stages["CUT"]
    result = AssignUsersToStageUseCase().execute(
        AssignUsersToStageCommand(stage_id=uuid.UUID(cut.id), user_ids=[cutter]),
        shop.uow_factory(),
    )
    assert [u.id for u in result.users] == [str(cutter)]

    DeleteStageUseCase().execute(uuid.UUID(cut.id), shop.uow_factory())
    remaining = [s.name for s in ListStagesUseCase().execute(shop.uow_factory())]
    assert "CUT" not in remaining

    recreated = CreateStageUseCase().execute(
        CreateStageCommand(name=OrderStage.CUT), shop.uow_factory()
    )
    assert recreated.users == []


def test_assigning_unknown_user_to_stage_is_not_found(shop):
    stage = ListStagesUseCase().execute(shop.uow_factory())[0]
    with pytest.raises(NotFoundError):
        AssignUsersToStageUseCase().execute(
            AssignUsersToStageCommand(stage_id=uuid.UUID(stage.id), user_ids=[uuid.uuid4()]),
            shop.uow_factory(),
        )


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------

def test_set_user_stages_controls_what_the_user_may_claim(shop):
    a = shop.user(OrderStage.PRINTING)
    order = shop.order(a)
    with pytest.raises(AuthorizationError):
        shop.claim(a, order.id)

    uow = shop.uow_factory()
    with uow:
        waiting = uow.stages.get_by_name(OrderStage.WAITING)
    dto = SetUserStagesUseCase().execute(
        SetUserStagesCommand(user_id=a, stage_ids=[waiting.id]), shop.uow_factory()
    )

    assert dto.stages == ["WAITING"]
    assert shop.claim(a, order.id).stage == "WAITING"


def test_delete_user_removes_memberships_but_keeps_users_with_history(shop):
    idle = shop.user(OrderStage.CUT)
    busy = shop.user(OrderStage.WAITING)
    shop.claim(busy, shop.order(shop.admin_id).id)

    DeleteUserUseCase().execute(idle, shop.uow_factory())
    with pytest.raises(ConflictError, match="cannot be deleted"):
        DeleteUserUseCase().execute(busy, shop.uow_factory())

    uow = shop.uow_factory()
    with uow:
        assert uow.users.get(idle) is None
        assert uow.stage_members.list_for_user(idle) == []
        assert uow.users.get(busy) is not None


def test_role_change_keeps_one_admin(shop):
    with pytest.raises(ConflictError, match="last administrator"):
        ChangeUserRoleUseCase().execute(
            ChangeUserRoleCommand(user_id=shop.admin_id, role=UserRole.STAFF),
            shop.uow_factory(),
        )
    other = shop.user()
    promoted = ChangeUserRoleUseCase().execute(
        ChangeUserRoleCommand(user_id=other, role=UserRole.ADMIN), shop.uow_factory()
    )
    assert promoted.role == "ADMIN"


# ---------------------------------------------------------------------------
# Overdue scan
# ---------------------------------------------------------------------------

def test_overdue_scan_warns_creator_of_old_undelivered_orders(shop):
    creator = shop.user(OrderStage.WAITING)
    late = shop.order(creator)
    delivered = shop.order(creator)
    _override(shop, delivered.id, OrderStage.DELIVERED)
    detail = GetOrderUseCase().execute(uuid.UUID(late.id), shop.uow_factory())
    shop.sink.sent.clear()

    now = datetime.fromisoformat(detail.created_at) + timedelta(days=5)
    found = CheckOverdueOrdersUseCase(shop.sink).execute(shop.uow_factory(), now=now)

    assert [f.order_id for f in found] == [late.id]
    assert found[0].business_days >= 4
    warnings = shop.sink.for_user(creator)
    assert len(warnings) == 1
    assert warnings[0].category == NotificationCategory.WARNING
    assert shop.stage_of(late.id) == OrderStage.WAITING


def test_overdue_scan_ignores_recent_orders(shop):
    creator = shop.user(OrderStage.WAITING)
    shop.order(creator)
    shop.sink.sent.clear()

    assert CheckOverdueOrdersUseCase(shop.sink).execute(shop.uow_factory()) == []
    assert shop.sink.sent == []
