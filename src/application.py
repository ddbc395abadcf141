"""
application.py

Application layer for the Print Shop Order Tracking System.

Overview
--------
The application layer sits between the presentation layer (API / UI) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py and orm.py).
  3. Declaring the UnitOfWork abstraction so that the read-check-write
     sequence of every workflow transition runs as one atomic transaction,
     with notifications released only after that transaction commits.
  4. Implementing Use Case handlers, one class per user-facing operation,
     that orchestrate service calls, repository reads/writes, and side-effects
     in the correct order.

Structure
---------
DTOs
    UserDTO, BranchDTO, StageDTO
    ProductDTO, OrderDTO, StageClaimDTO, AssignmentDTO
    AuditLogEntryDTO, OverdueOrderDTO

Repository interfaces
    AbstractUserRepository
    AbstractBranchRepository
    AbstractStageRepository
    AbstractStageMembershipRepository
    AbstractOrderRepository
    AbstractStageClaimRepository

Unit of Work
    AbstractUnitOfWork

Notification sink
    AbstractNotificationSink, NullNotificationSink

Use Cases
    --- Stage-claim workflow ---
    ClaimOrderUseCase
    AdvanceClaimUseCase
    ReassignClaimUseCase
    OverrideOrderStageUseCase
    ListMyClaimsUseCase

    --- Orders ---
    CreateOrderUseCase
    GetOrderUseCase
    ListAvailableOrdersUseCase
    UpdateOrderNotesUseCase
    UpdateShippingPriceUseCase
    GetConfirmationMessageUseCase

    --- Administration ---
    RegisterUserUseCase, GetUserUseCase, ListUsersUseCase
    ChangeUserRoleUseCase, SetUserStagesUseCase, DeleteUserUseCase
    CreateBranchUseCase, ListBranchesUseCase
    ListStagesUseCase, CreateStageUseCase
    AssignUsersToStageUseCase, DeleteStageUseCase
    BootstrapUseCase
    GetAuditLogUseCase

    --- Monitoring ---
    CheckOverdueOrdersUseCase

Design notes
------------
- Use cases receive and return DTOs only; no domain objects cross the
  application boundary.
- Each use case accepts a UnitOfWork in execute().  Collaborators that are
  not persistence (notification sink, stage sequence) are passed to the
  constructor.
- Errors raised inside `with uow:` roll the transaction back, so a failed
  precondition never leaves partial state behind.
- Notifications are queued with uow.after_commit(); the unit of work runs
  them once the transaction has committed and its lock is released.  A
  failing notification is logged and dropped.
"""

from __future__ import annotations

import abc
import functools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from model import (
    Branch,
    NotificationCategory,
    NotificationMessage,
    Order,
    OrderStage,
    Product,
    Stage,
    StageClaim,
    StageMembership,
    User,
    UserRole,
)
from service import (
    DEFAULT_SEQUENCE,
    ClaimCompletedError,
    ClaimOwnershipError,
    ClaimService,
    IneligibleUserError,
    NotificationService,
    OrderService,
    OverdueService,
    PermissionService,
    ProductSpec,
    StageAdminService,
    StagePermissionError,
    StageSequence,
    UserAdminService,
)

logger = logging.getLogger("printshop.application")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a referenced order, claim, user or stage does not exist."""


class ConflictError(ApplicationError):
    """Raised when an operation would break a uniqueness or exclusivity rule."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the permission or ownership required."""


class BadRequestError(ApplicationError):
    """Raised when an operation targets something already in a terminal state."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _id(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class UserDTO:
    id: str
    phone: str
    role: str
    stages: List[str] = field(default_factory=list)


@dataclass
class BranchDTO:
    id: str
    name: str


@dataclass
class StageDTO:
    id: str
    name: str
    users: List[UserDTO]


@dataclass
class ProductDTO:
    id: str
    name: Optional[str]
    width: float
    height: float
    quantity: int
    price: float
    paper_type: str
    needs_design: bool
    design_amount: Optional[float]
    needs_cut: bool
    needs_lamination: bool


@dataclass
class StageClaimDTO:
    id: str
    order_id: str
    user_id: str
    stage: str
    claimed_at: str
    completed_at: Optional[str]


@dataclass
class OrderDTO:
    id: str
    customer_name: Optional[str]
    customer_phone: str
    branch_id: str
    creator_id: str
    is_urgent: bool
    shipping_price: Optional[float]
    notes: str
    current_stage: str
    created_at: str
    products: List[ProductDTO]
    stage_claims: List[StageClaimDTO] = field(default_factory=list)


@dataclass
class AssignmentDTO:
    """A claim together with the order it was taken on."""
    claim: StageClaimDTO
    order: OrderDTO


@dataclass
class AuditLogEntryDTO:
    claim_id: str
    order_id: str
    customer_phone: Optional[str]
    user_id: str
    user_phone: Optional[str]
    stage: str
    claimed_at: str
    completed_at: Optional[str]


@dataclass
class OverdueOrderDTO:
    order_id: str
    creator_id: str
    current_stage: str
    business_days: int


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User, stages: Iterable[OrderStage] = ()) -> UserDTO:
        return UserDTO(
            id=str(u.id),
            phone=u.phone,
            role=u.role.value,
            stages=sorted(s.value for s in stages),
        )

    @staticmethod
    def branch(b: Branch) -> BranchDTO:
        return BranchDTO(id=str(b.id), name=b.name)

    @staticmethod
    def stage(s: Stage, users: List[User]) -> StageDTO:
        return StageDTO(
            id=str(s.id),
            name=s.name.value,
            users=[_Assembler.user(u) for u in users],
        )

    @staticmethod
    def product(p: Product) -> ProductDTO:
        return ProductDTO(
            id=str(p.id),
            name=p.name,
            width=p.width,
            height=p.height,
            quantity=p.quantity,
            price=p.price,
            paper_type=p.paper_type.value,
            needs_design=p.needs_design,
            design_amount=p.design_amount,
            needs_cut=p.needs_cut,
            needs_lamination=p.needs_lamination,
        )

    @staticmethod
    def claim(c: StageClaim) -> StageClaimDTO:
        return StageClaimDTO(
            id=str(c.id),
            order_id=str(c.order_id),
            user_id=str(c.user_id),
            stage=c.stage.value,
            claimed_at=_fmt(c.claimed_at),
            completed_at=_fmt(c.completed_at),
        )

    @staticmethod
    def order(o: Order, claims: Iterable[StageClaim] = ()) -> OrderDTO:
        return OrderDTO(
            id=str(o.id),
            customer_name=o.customer_name,
            customer_phone=o.customer_phone,
            branch_id=str(o.branch_id),
            creator_id=str(o.creator_id),
            is_urgent=o.is_urgent,
            shipping_price=o.shipping_price,
            notes=o.notes,
            current_stage=o.current_stage.value,
            created_at=_fmt(o.created_at),
            products=[_Assembler.product(p) for p in o.products],
            stage_claims=[
                _Assembler.claim(c) for c in sorted(claims, key=lambda c: c.claimed_at)
            ],
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: uuid.UUID) -> Optional[User]: ...
    @abc.abstractmethod
    def get_by_phone(self, phone: str) -> Optional[User]: ...
    @abc.abstractmethod
    def list_all(self) -> List[User]: ...
    @abc.abstractmethod
    def save(self, user: User) -> None: ...
    @abc.abstractmethod
    def delete(self, user_id: uuid.UUID) -> None: ...


class AbstractBranchRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, branch_id: uuid.UUID) -> Optional[Branch]: ...
    @abc.abstractmethod
    def get_by_name(self, name: str) -> Optional[Branch]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Branch]: ...
    @abc.abstractmethod
    def save(self, branch: Branch) -> None: ...


class AbstractStageRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, stage_id: uuid.UUID) -> Optional[Stage]: ...
    @abc.abstractmethod
    def get_by_name(self, name: OrderStage) -> Optional[Stage]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Stage]: ...
    @abc.abstractmethod
    def save(self, stage: Stage) -> None: ...
    @abc.abstractmethod
    def delete(self, stage_id: uuid.UUID) -> None: ...


class AbstractStageMembershipRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_stage(self, stage_id: uuid.UUID) -> List[StageMembership]: ...
    @abc.abstractmethod
    def list_for_user(self, user_id: uuid.UUID) -> List[StageMembership]: ...
    @abc.abstractmethod
    def save(self, membership: StageMembership) -> None: ...
    @abc.abstractmethod
    def delete(self, membership_id: uuid.UUID) -> None: ...


class AbstractOrderRepository(abc.ABC):
    """Orders are always returned with their products loaded."""

    @abc.abstractmethod
    def get(self, order_id: uuid.UUID) -> Optional[Order]: ...
    @abc.abstractmethod
    def get_for_update(self, order_id: uuid.UUID) -> Optional[Order]:
        """Load the order and hold a write lock on it until the transaction ends."""
    @abc.abstractmethod
    def list_all(self) -> List[Order]: ...
    @abc.abstractmethod
    def list_at_stages(self, stages: Iterable[OrderStage]) -> List[Order]: ...
    @abc.abstractmethod
    def list_for_creator(self, user_id: uuid.UUID) -> List[Order]: ...
    @abc.abstractmethod
    def add(self, order: Order) -> None:
        """Insert a new order together with its products."""
    @abc.abstractmethod
    def save(self, order: Order) -> None:
        """Persist changes to the order's own fields.  Products are not rewritten."""


class AbstractStageClaimRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, claim_id: uuid.UUID) -> Optional[StageClaim]: ...
    @abc.abstractmethod
    def find_active_for_order(self, order_id: uuid.UUID) -> Optional[StageClaim]: ...
    @abc.abstractmethod
    def list_active(self) -> List[StageClaim]: ...
    @abc.abstractmethod
    def list_for_order(self, order_id: uuid.UUID) -> List[StageClaim]: ...
    @abc.abstractmethod
    def list_for_user(self, user_id: uuid.UUID) -> List[StageClaim]: ...
    @abc.abstractmethod
    def list_all(self) -> List[StageClaim]: ...
    @abc.abstractmethod
    def add(self, claim: StageClaim) -> None: ...
    @abc.abstractmethod
    def save(self, claim: StageClaim) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

def _run_callbacks(callbacks: List[Callable[[], None]]) -> None:
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("Post-commit callback failed; the committed change is kept.")


class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.claims.add(claim)
            uow.after_commit(lambda: sink.send(...))
            uow.commit()

    Leaving the block without an exception commits, an exception rolls back.
    Callbacks registered with after_commit() run after the block has been
    left and only if the transaction they were registered in committed.
    """
    users: AbstractUserRepository
    branches: AbstractBranchRepository
    stages: AbstractStageRepository
    stage_members: AbstractStageMembershipRepository
    orders: AbstractOrderRepository
    claims: AbstractStageClaimRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        self._pending: List[Callable[[], None]] = []
        self._released: List[Callable[[], None]] = []
        self._begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if exc_type:
                self.rollback()
            else:
                self.commit()
        finally:
            self._close()
        released, self._released = self._released, []
        _run_callbacks(released)

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._pending.append(callback)

    def commit(self) -> None:
        self._commit()
        self._released.extend(self._pending)
        self._pending = []

    def rollback(self) -> None:
        self._pending = []
        self._rollback()

    def _begin(self) -> None:
        """Open the transaction / take locks.  Default: nothing to do."""

    def _close(self) -> None:
        """Release anything _begin acquired.  Default: nothing to do."""

    @abc.abstractmethod
    def _commit(self) -> None: ...

    @abc.abstractmethod
    def _rollback(self) -> None: ...


# ===========================================================================
# NOTIFICATION SINK
# ===========================================================================

class AbstractNotificationSink(abc.ABC):
    """
    Fire-and-forget push channel.  Implementations may drop messages; they
    must never be relied upon for correctness.
    """

    @abc.abstractmethod
    def send(
        self,
        user_id: uuid.UUID,
        message: str,
        category: NotificationCategory,
        order_id: Optional[uuid.UUID] = None,
    ) -> None: ...


class NullNotificationSink(AbstractNotificationSink):
    def send(self, user_id, message, category, order_id=None) -> None:
        logger.debug("Notification for %s dropped (no sink): %s", user_id, message)


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_permission_svc = PermissionService()
_claim_svc = ClaimService()
_order_svc = OrderService()
_stage_admin_svc = StageAdminService()
_user_admin_svc = UserAdminService()
_notification_svc = NotificationService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_order_or_raise(uow: AbstractUnitOfWork, order_id: uuid.UUID) -> Order:
    order = uow.orders.get(order_id)
    if order is None:
        raise NotFoundError(f'Order with ID "{order_id}" not found.')
    return order


def _lock_order_or_raise(uow: AbstractUnitOfWork, order_id: uuid.UUID) -> Order:
    order = uow.orders.get_for_update(order_id)
    if order is None:
        raise NotFoundError(f'Order with ID "{order_id}" not found.')
    return order


def _get_user_or_raise(uow: AbstractUnitOfWork, user_id: uuid.UUID) -> User:
    user = uow.users.get(user_id)
    if user is None:
        raise NotFoundError(f'User with ID "{user_id}" not found.')
    return user


def _get_stage_or_raise(uow: AbstractUnitOfWork, stage_id: uuid.UUID) -> Stage:
    stage = uow.stages.get(stage_id)
    if stage is None:
        raise NotFoundError("Stage not found")
    return stage


def _assigned_stages(uow: AbstractUnitOfWork, user_id: uuid.UUID) -> Set[OrderStage]:
    return _permission_svc.stage_names_for_user(
        user_id,
        uow.stage_members.list_for_user(user_id),
        uow.stages.list_all(),
    )


def _stage_member_ids(uow: AbstractUnitOfWork, stage_name: OrderStage) -> List[uuid.UUID]:
    stage = uow.stages.get_by_name(stage_name)
    if stage is None:
        return []
    return [m.user_id for m in uow.stage_members.list_for_stage(stage.id)]


def _queue_notifications(
    uow: AbstractUnitOfWork,
    sink: AbstractNotificationSink,
    messages: Iterable[NotificationMessage],
) -> None:
    """Hand messages to the sink once the current transaction has committed."""
    for m in messages:
        uow.after_commit(
            functools.partial(sink.send, m.user_id, m.message, m.category, m.order_id)
        )


class _WorkflowUseCase:
    """Base for use cases that emit notifications or walk the stage sequence."""

    def __init__(
        self,
        notifier: Optional[AbstractNotificationSink] = None,
        sequence: StageSequence = DEFAULT_SEQUENCE,
    ):
        self.notifier = notifier or NullNotificationSink()
        self.sequence = sequence


# ===========================================================================
# USE CASES: STAGE-CLAIM WORKFLOW
# ===========================================================================

@dataclass
class ClaimOrderCommand:
    order_id: uuid.UUID
    acting_user_id: uuid.UUID


class ClaimOrderUseCase(_WorkflowUseCase):
    """
    Take exclusive ownership of an order at its current stage.

    The order row is locked before the active-claim lookup so two racing
    claims serialise: the second one sees the first claim and gets a
    ConflictError.
    """

    def execute(self, cmd: ClaimOrderCommand, uow: AbstractUnitOfWork) -> StageClaimDTO:
        with uow:
            order = _lock_order_or_raise(uow, cmd.order_id)
            if uow.claims.find_active_for_order(order.id) is not None:
                raise ConflictError("Order is already actively claimed.")

            user = _get_user_or_raise(uow, cmd.acting_user_id)
            try:
                _permission_svc.require_claim_permission(
                    _assigned_stages(uow, user.id), order
                )
            except StagePermissionError as exc:
                raise AuthorizationError(str(exc)) from exc

            claim = _claim_svc.open_claim(order, user.id)
            uow.claims.add(claim)
            _queue_notifications(
                uow,
                self.notifier,
                [_notification_svc.order_claimed(order, user.id, claim.stage)],
            )
            uow.commit()
            logger.info(
                "Order %s claimed by %s at %s", order.id, user.id, claim.stage.value
            )
            return _Assembler.claim(claim)


@dataclass
class AdvanceClaimCommand:
    claim_id: uuid.UUID
    acting_user_id: uuid.UUID


class AdvanceClaimUseCase(_WorkflowUseCase):
    """
    Complete the caller's claim and move the order to its next stage.

    When the order is already at the last stage the claim is completed and
    nothing else changes.
    """

    def execute(self, cmd: AdvanceClaimCommand, uow: AbstractUnitOfWork) -> StageClaimDTO:
        with uow:
            claim = uow.claims.get(cmd.claim_id)
            if claim is None:
                raise NotFoundError("Claim not found.")
            order = _lock_order_or_raise(uow, claim.order_id)
            # Re-read under the order lock; a reassignment may have landed
            claim = uow.claims.get(cmd.claim_id)

            try:
                _claim_svc.complete_claim(claim, cmd.acting_user_id)
            except ClaimOwnershipError as exc:
                raise AuthorizationError(str(exc)) from exc
            except ClaimCompletedError as exc:
                raise BadRequestError(str(exc)) from exc
            uow.claims.save(claim)

            from_stage = order.current_stage
            try:
                next_stage = self.sequence.next_stage(from_stage, order.products)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc

            if next_stage is not None:
                order.current_stage = next_stage
                uow.orders.save(order)
                messages = [
                    _notification_svc.order_advanced(
                        order, cmd.acting_user_id, from_stage, next_stage
                    )
                ]
                messages += _notification_svc.order_available_for_stage(
                    order, next_stage, _stage_member_ids(uow, next_stage)
                )
                _queue_notifications(uow, self.notifier, messages)

            uow.commit()
            logger.info(
                "Claim %s completed; order %s %s -> %s",
                claim.id,
                order.id,
                from_stage.value,
                next_stage.value if next_stage else "(end of workflow)",
            )
            return _Assembler.claim(claim)


@dataclass
class ReassignClaimCommand:
    order_id: uuid.UUID
    new_user_id: uuid.UUID


class ReassignClaimUseCase:
    """
    Administrative override: move the order's active claim to another
    staff member.  Stage and claimed_at are preserved.
    """

    def execute(self, cmd: ReassignClaimCommand, uow: AbstractUnitOfWork) -> StageClaimDTO:
        with uow:
            new_user = uow.users.get(cmd.new_user_id)
            if new_user is None or new_user.role != UserRole.STAFF:
                raise NotFoundError(f'Staff user with ID "{cmd.new_user_id}" not found.')

            order = _lock_order_or_raise(uow, cmd.order_id)
            claim = uow.claims.find_active_for_order(order.id)
            if claim is None:
                raise ConflictError(
                    "This order is not currently claimed and cannot be reassigned."
                )

            previous_user_id = claim.user_id
            try:
                _claim_svc.reassign_claim(claim, new_user)
            except IneligibleUserError as exc:
                raise NotFoundError(str(exc)) from exc
            except ClaimCompletedError as exc:
                raise ConflictError(str(exc)) from exc
            uow.claims.save(claim)
            uow.commit()
            logger.info(
                "Claim %s on order %s reassigned from %s to %s",
                claim.id,
                order.id,
                previous_user_id,
                new_user.id,
            )
            return _Assembler.claim(claim)


@dataclass
class OverrideOrderStageCommand:
    order_id: uuid.UUID
    stage: OrderStage


class OverrideOrderStageUseCase(_WorkflowUseCase):
    """
    Break-glass action: set the order's stage directly.

    Bypasses the claim workflow entirely.  Claims are left untouched, so an
    active claim may now refer to a stage the order is no longer at.
    """

    def execute(self, cmd: OverrideOrderStageCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            order = _lock_order_or_raise(uow, cmd.order_id)
            previous = order.current_stage
            try:
                _order_svc.override_stage(order, cmd.stage, self.sequence)
            except ValueError as exc:
                raise BadRequestError(str(exc)) from exc
            uow.orders.save(order)
            uow.commit()
            logger.warning(
                "Stage of order %s overridden %s -> %s (%s)",
                order.id,
                previous.value,
                cmd.stage.value,
                "forward" if self.sequence.is_forward(previous, cmd.stage) else "backward",
            )
            return _Assembler.order(order)


class ListMyClaimsUseCase:
    """
    The caller's claims with their orders.

    `which` is one of "all" (newest claimed first), "active" (oldest claimed
    first) or "completed" (newest completed first).
    """

    _SELECTORS = {
        "all": _claim_svc.all_claims,
        "active": _claim_svc.active_claims,
        "completed": _claim_svc.completed_claims,
    }

    def execute(
        self, user_id: uuid.UUID, uow: AbstractUnitOfWork, which: str = "all"
    ) -> List[AssignmentDTO]:
        try:
            select = self._SELECTORS[which]
        except KeyError:
            raise BadRequestError(f"Unknown claim filter '{which}'.") from None
        with uow:
            claims = select(uow.claims.list_for_user(user_id))
            result: List[AssignmentDTO] = []
            orders: Dict[uuid.UUID, Optional[Order]] = {}
            for c in claims:
                if c.order_id not in orders:
                    orders[c.order_id] = uow.orders.get(c.order_id)
                order = orders[c.order_id]
                if order is not None:
                    result.append(
                        AssignmentDTO(claim=_Assembler.claim(c), order=_Assembler.order(order))
                    )
            return result


# ===========================================================================
# USE CASES: ORDERS
# ===========================================================================

@dataclass
class CreateOrderCommand:
    customer_phone: str
    branch_id: uuid.UUID
    products: List[ProductSpec]
    acting_user_id: uuid.UUID
    customer_name: Optional[str] = None
    is_urgent: bool = False
    shipping_price: Optional[float] = None
    notes: str = ""


class CreateOrderUseCase(_WorkflowUseCase):
    """
    Create an order and all its products in one transaction, placed at the
    first stage of the sequence.
    """

    def execute(self, cmd: CreateOrderCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            creator = _get_user_or_raise(uow, cmd.acting_user_id)
            if uow.branches.get(cmd.branch_id) is None:
                raise NotFoundError(f'Branch with ID "{cmd.branch_id}" not found.')
            try:
                order = _order_svc.create_order(
                    customer_phone=cmd.customer_phone,
                    branch_id=cmd.branch_id,
                    creator_id=creator.id,
                    products=cmd.products,
                    customer_name=cmd.customer_name,
                    is_urgent=cmd.is_urgent,
                    shipping_price=cmd.shipping_price,
                    notes=cmd.notes,
                    initial_stage=self.sequence.first,
                )
            except ValueError as exc:
                raise BadRequestError(str(exc)) from exc
            uow.orders.add(order)

            messages = [_notification_svc.order_created(order)]
            messages += _notification_svc.order_available_for_stage(
                order, order.current_stage, _stage_member_ids(uow, order.current_stage)
            )
            _queue_notifications(uow, self.notifier, messages)
            uow.commit()
            logger.info("Order %s created by %s", order.id, creator.id)
            return _Assembler.order(order)


class GetOrderUseCase:
    def execute(self, order_id: uuid.UUID, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            order = _get_order_or_raise(uow, order_id)
            return _Assembler.order(order, uow.claims.list_for_order(order_id))


class ListAvailableOrdersUseCase:
    """
    Orders the user could claim right now: sitting at one of the user's
    stages and not actively claimed.  Newest first.
    """

    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[OrderDTO]:
        with uow:
            _get_user_or_raise(uow, user_id)
            stages = _assigned_stages(uow, user_id)
            if not stages:
                return []
            claimed = {c.order_id for c in uow.claims.list_active()}
            orders = [o for o in uow.orders.list_at_stages(stages) if o.id not in claimed]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return [_Assembler.order(o) for o in orders]


@dataclass
class UpdateOrderNotesCommand:
    order_id: uuid.UUID
    notes: str


class UpdateOrderNotesUseCase:
    def execute(self, cmd: UpdateOrderNotesCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            order = _lock_order_or_raise(uow, cmd.order_id)
            _order_svc.update_notes(order, cmd.notes)
            uow.orders.save(order)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class UpdateShippingPriceCommand:
    order_id: uuid.UUID
    shipping_price: float


class UpdateShippingPriceUseCase:
    def execute(self, cmd: UpdateShippingPriceCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            order = _lock_order_or_raise(uow, cmd.order_id)
            try:
                _order_svc.update_shipping_price(order, cmd.shipping_price)
            except ValueError as exc:
                raise BadRequestError(str(exc)) from exc
            uow.orders.save(order)
            uow.commit()
            return _Assembler.order(order)


class GetConfirmationMessageUseCase:
    def execute(self, order_id: uuid.UUID, uow: AbstractUnitOfWork) -> str:
        with uow:
            order = _get_order_or_raise(uow, order_id)
            branch = uow.branches.get(order.branch_id)
            return _order_svc.confirmation_message(order, branch)


# ===========================================================================
# USE CASES: ADMINISTRATION
# ===========================================================================

@dataclass
class RegisterUserCommand:
    phone: str
    role: UserRole = UserRole.STAFF


class RegisterUserUseCase:
    def execute(self, cmd: RegisterUserCommand, uow: AbstractUnitOfWork) -> UserDTO:
        phone = cmd.phone.strip()
        if not phone:
            raise BadRequestError("phone must not be empty.")
        with uow:
            if uow.users.get_by_phone(phone) is not None:
                raise ConflictError(f"A user with phone '{phone}' already exists.")
            user = User(phone=phone, role=cmd.role)
            uow.users.save(user)
            uow.commit()
            return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            user = _get_user_or_raise(uow, user_id)
            return _Assembler.user(user, _assigned_stages(uow, user.id))


class ListUsersUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[UserDTO]:
        with uow:
            return [
                _Assembler.user(u, _assigned_stages(uow, u.id))
                for u in sorted(uow.users.list_all(), key=lambda u: u.created_at)
            ]


@dataclass
class ChangeUserRoleCommand:
    user_id: uuid.UUID
    role: UserRole


class ChangeUserRoleUseCase:
    def execute(self, cmd: ChangeUserRoleCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            user = _get_user_or_raise(uow, cmd.user_id)
            try:
                _user_admin_svc.change_role(user, cmd.role, uow.users.list_all())
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            uow.users.save(user)
            uow.commit()
            logger.info("User %s is now %s", user.id, user.role.value)
            return _Assembler.user(user, _assigned_stages(uow, user.id))


@dataclass
class SetUserStagesCommand:
    user_id: uuid.UUID
    stage_ids: List[uuid.UUID]


class SetUserStagesUseCase:
    """Replace the complete set of stages a user works."""

    def execute(self, cmd: SetUserStagesCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            user = _get_user_or_raise(uow, cmd.user_id)
            for sid in cmd.stage_ids:
                _get_stage_or_raise(uow, sid)
            to_add, to_remove = _user_admin_svc.replace_stages(
                user, cmd.stage_ids, uow.stage_members.list_for_user(user.id)
            )
            for m in to_remove:
                uow.stage_members.delete(m.id)
            for m in to_add:
                uow.stage_members.save(m)
            uow.commit()
            return _Assembler.user(user, _assigned_stages(uow, user.id))


class DeleteUserUseCase:
    """
    Remove a user and their stage assignments.  Users referenced by claims
    or orders are kept, and so is the last administrator.
    """

    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> None:
        with uow:
            user = _get_user_or_raise(uow, user_id)
            try:
                _user_admin_svc.check_removable(
                    user,
                    uow.users.list_all(),
                    uow.claims.list_for_user(user.id),
                    uow.orders.list_for_creator(user.id),
                )
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            for m in uow.stage_members.list_for_user(user.id):
                uow.stage_members.delete(m.id)
            uow.users.delete(user.id)
            uow.commit()
            logger.info("Deleted user %s", user.id)


@dataclass
class CreateBranchCommand:
    name: str


class CreateBranchUseCase:
    def execute(self, cmd: CreateBranchCommand, uow: AbstractUnitOfWork) -> BranchDTO:
        name = cmd.name.strip()
        if not name:
            raise BadRequestError("Branch name must not be empty.")
        with uow:
            if uow.branches.get_by_name(name) is not None:
                raise ConflictError(f"Branch '{name}' already exists.")
            branch = Branch(name=name)
            uow.branches.save(branch)
            uow.commit()
            return _Assembler.branch(branch)


class ListBranchesUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[BranchDTO]:
        with uow:
            return [_Assembler.branch(b) for b in sorted(uow.branches.list_all(), key=lambda b: b.name)]


def _stage_dto(uow: AbstractUnitOfWork, stage: Stage) -> StageDTO:
    users = [uow.users.get(m.user_id) for m in uow.stage_members.list_for_stage(stage.id)]
    return _Assembler.stage(stage, [u for u in users if u is not None])


class ListStagesUseCase(_WorkflowUseCase):
    """All stage records with their users, in workflow order."""

    def execute(self, uow: AbstractUnitOfWork) -> List[StageDTO]:
        with uow:
            rank = {name: i for i, name in enumerate(self.sequence.stages)}
            stages = sorted(uow.stages.list_all(), key=lambda s: rank.get(s.name, len(rank)))
            return [_stage_dto(uow, s) for s in stages]


@dataclass
class CreateStageCommand:
    name: OrderStage


class CreateStageUseCase(_WorkflowUseCase):
    def execute(self, cmd: CreateStageCommand, uow: AbstractUnitOfWork) -> StageDTO:
        with uow:
            try:
                stage = _stage_admin_svc.create_stage(
                    cmd.name, uow.stages.list_all(), self.sequence
                )
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc
            uow.stages.save(stage)
            uow.commit()
            return _stage_dto(uow, stage)


@dataclass
class AssignUsersToStageCommand:
    stage_id: uuid.UUID
    user_ids: List[uuid.UUID]


class AssignUsersToStageUseCase:
    """Replace the complete set of users assigned to a stage."""

    def execute(self, cmd: AssignUsersToStageCommand, uow: AbstractUnitOfWork) -> StageDTO:
        with uow:
            stage = _get_stage_or_raise(uow, cmd.stage_id)
            for uid in cmd.user_ids:
                _get_user_or_raise(uow, uid)
            to_add, to_remove = _stage_admin_svc.replace_members(
                stage, cmd.user_ids, uow.stage_members.list_for_stage(stage.id)
            )
            for m in to_remove:
                uow.stage_members.delete(m.id)
            for m in to_add:
                uow.stage_members.save(m)
            uow.commit()
            return _stage_dto(uow, stage)


class DeleteStageUseCase:
    def execute(self, stage_id: uuid.UUID, uow: AbstractUnitOfWork) -> None:
        with uow:
            stage = _get_stage_or_raise(uow, stage_id)
            for m in uow.stage_members.list_for_stage(stage.id):
                uow.stage_members.delete(m.id)
            uow.stages.delete(stage.id)
            uow.commit()


class BootstrapUseCase(_WorkflowUseCase):
    """
    Make sure a Stage record exists for every stage of the sequence and,
    when `admin_phone` is given, that an ADMIN user with that phone exists
    and is assigned to every stage.  Safe to run on every start-up.
    """

    def execute(self, uow: AbstractUnitOfWork, admin_phone: str = "") -> Optional[UserDTO]:
        with uow:
            existing = {s.name: s for s in uow.stages.list_all()}
            for name in self.sequence.stages:
                if name not in existing:
                    stage = _stage_admin_svc.create_stage(
                        name, list(existing.values()), self.sequence
                    )
                    uow.stages.save(stage)
                    existing[name] = stage
                    logger.info("Created stage %s", name.value)

            admin: Optional[User] = None
            if admin_phone:
                admin = uow.users.get_by_phone(admin_phone)
                if admin is None:
                    admin = User(phone=admin_phone, role=UserRole.ADMIN)
                    uow.users.save(admin)
                    logger.info("Created admin user %s", admin.id)
                held = {m.stage_id for m in uow.stage_members.list_for_user(admin.id)}
                for stage in existing.values():
                    if stage.id not in held:
                        uow.stage_members.save(
                            StageMembership(stage_id=stage.id, user_id=admin.id)
                        )
            uow.commit()
            if admin is None:
                return None
            return _Assembler.user(admin, existing.keys())


class GetAuditLogUseCase:
    """Every stage claim ever taken, most recent first."""

    def execute(self, uow: AbstractUnitOfWork) -> List[AuditLogEntryDTO]:
        with uow:
            entries: List[AuditLogEntryDTO] = []
            for c in _claim_svc.all_claims(uow.claims.list_all()):
                order = uow.orders.get(c.order_id)
                user = uow.users.get(c.user_id)
                entries.append(
                    AuditLogEntryDTO(
                        claim_id=str(c.id),
                        order_id=str(c.order_id),
                        customer_phone=order.customer_phone if order else None,
                        user_id=str(c.user_id),
                        user_phone=user.phone if user else None,
                        stage=c.stage.value,
                        claimed_at=_fmt(c.claimed_at),
                        completed_at=_fmt(c.completed_at),
                    )
                )
            return entries


# ===========================================================================
# USE CASES: MONITORING
# ===========================================================================

class CheckOverdueOrdersUseCase(_WorkflowUseCase):
    """
    Warn order creators about undelivered orders older than the business-day
    threshold.  Read-only with respect to orders and claims.
    """

    def __init__(
        self,
        notifier: Optional[AbstractNotificationSink] = None,
        sequence: StageSequence = DEFAULT_SEQUENCE,
        threshold_business_days: int = 2,
    ):
        super().__init__(notifier, sequence)
        self.overdue = OverdueService(threshold_business_days)

    def execute(
        self, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> List[OverdueOrderDTO]:
        with uow:
            found = self.overdue.find_overdue(
                uow.orders.list_all(), now=now, final_stage=self.sequence.last
            )
            _queue_notifications(
                uow,
                self.notifier,
                [_notification_svc.order_overdue(order, days) for order, days in found],
            )
            uow.commit()
        for order, days in found:
            logger.warning(
                "Order %s overdue: %d business days at %s",
                order.id,
                days,
                order.current_stage.value,
            )
        return [
            OverdueOrderDTO(
                order_id=str(order.id),
                creator_id=str(order.creator_id),
                current_stage=order.current_stage.value,
                business_days=days,
            )
            for order, days in found
        ]
