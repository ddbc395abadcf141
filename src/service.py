"""
service.py

Service layer for the Print Shop Order Tracking System.

Responsibilities
----------------
Each service class encapsulates the business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here. Callers are responsible for storing
and retrieving models via a repository of their choosing.

Services
--------
- StageSequence           – The canonical stage order and the design-skip rule
- PermissionService       – Whether a user may claim an order at its stage
- ClaimService            – Stage claim lifecycle rules (open / complete / reassign)
- OrderService            – Order intake, field updates, override, confirmation text
- StageAdminService       – Stage creation and user assignment
- UserAdminService        – Role changes, stage sets and removal of users
- NotificationService     – Human-readable notification construction
- OverdueService          – Business-day ageing of undelivered orders

Design notes
------------
- UTC datetimes are used throughout; callers must pass tz-aware values.
- Business rule violations raise ValueError (or one of the ValueError
  subclasses below) with a descriptive message.  The application layer
  translates them into its own error taxonomy.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from model import (
    Branch,
    NotificationCategory,
    NotificationMessage,
    Order,
    OrderStage,
    PaperType,
    Product,
    Stage,
    StageClaim,
    StageMembership,
    User,
    UserRole,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: float) -> str:
    return f"${value:.2f}"


# ---------------------------------------------------------------------------
# Rule violations
# ---------------------------------------------------------------------------

class StagePermissionError(ValueError):
    """The user is not assigned to the stage the order currently sits at."""


class ClaimOwnershipError(ValueError):
    """The acting user is not the claimant of the claim."""


class ClaimCompletedError(ValueError):
    """The claim already carries a completion timestamp."""


class IneligibleUserError(ValueError):
    """The user cannot hold stage claims (not a staff member)."""


# ---------------------------------------------------------------------------
# StageSequence
# ---------------------------------------------------------------------------

STAGE_WORKFLOW: Tuple[OrderStage, ...] = (
    OrderStage.WAITING,
    OrderStage.DESIGN,
    OrderStage.PRINT_READY,
    OrderStage.PRINTING,
    OrderStage.CUT,
    OrderStage.COMPLETED,
    OrderStage.DELIVERED,
)


@dataclass(frozen=True)
class StageSequence:
    """
    Immutable ordered list of production stages.

    The sequence is linear apart from a single branch: leaving WAITING, the
    DESIGN stage is skipped when none of the order's products needs design
    work.  Use cases receive a StageSequence instance, so alternative
    pipelines can be supplied without touching module state.
    """
    stages: Tuple[OrderStage, ...] = STAGE_WORKFLOW
    skip_from: OrderStage = OrderStage.WAITING
    skippable: OrderStage = OrderStage.DESIGN

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError("A stage sequence needs at least one stage.")
        if len(set(self.stages)) != len(self.stages):
            raise ValueError("A stage sequence must not repeat stages.")

    def __contains__(self, stage: object) -> bool:
        return stage in self.stages

    @property
    def first(self) -> OrderStage:
        return self.stages[0]

    @property
    def last(self) -> OrderStage:
        return self.stages[-1]

    def index(self, stage: OrderStage) -> int:
        try:
            return self.stages.index(stage)
        except ValueError:
            raise ValueError(f"Stage '{stage}' is not part of the workflow.") from None

    def successor(self, stage: OrderStage) -> Optional[OrderStage]:
        """The stage immediately after `stage`, or None when `stage` is last."""
        i = self.index(stage)
        if i + 1 >= len(self.stages):
            return None
        return self.stages[i + 1]

    def next_stage(
        self, current: OrderStage, products: Iterable[Product]
    ) -> Optional[OrderStage]:
        """
        Resolve where an order goes once the claim on `current` is completed.

        `products` must be the order's full product set; the skip rule only
        applies when no product at all needs design.
        """
        nxt = self.successor(current)
        if (
            current == self.skip_from
            and nxt == self.skippable
            and not any(p.needs_design for p in products)
        ):
            nxt = self.successor(self.skippable)
        return nxt

    def is_forward(self, before: OrderStage, after: OrderStage) -> bool:
        return self.index(after) > self.index(before)


DEFAULT_SEQUENCE = StageSequence()


# ---------------------------------------------------------------------------
# PermissionService
# ---------------------------------------------------------------------------

class PermissionService:
    """
    Decides whether a user may claim an order.

    The only criterion is stage assignment: the user's assigned stages must
    include the order's current stage.  Role does not matter here; admins
    claim through the same rule and are usually assigned to every stage.
    """

    def stage_names_for_user(
        self,
        user_id: uuid.UUID,
        memberships: Iterable[StageMembership],
        stages: Iterable[Stage],
    ) -> Set[OrderStage]:
        by_id: Dict[uuid.UUID, Stage] = {s.id: s for s in stages}
        return {
            by_id[m.stage_id].name
            for m in memberships
            if m.user_id == user_id and m.stage_id in by_id
        }

    def can_claim(self, assigned_stages: Set[OrderStage], order: Order) -> bool:
        return order.current_stage in assigned_stages

    def require_claim_permission(
        self, assigned_stages: Set[OrderStage], order: Order
    ) -> None:
        if not self.can_claim(assigned_stages, order):
            raise StagePermissionError(
                f"You do not have permission for the {order.current_stage.value} stage."
            )


# ---------------------------------------------------------------------------
# ClaimService
# ---------------------------------------------------------------------------

class ClaimService:
    """
    Rules for the StageClaim lifecycle.

    Exclusivity (one active claim per order) is checked by the caller against
    the store while holding the order lock; these methods only validate the
    claim objects they are given.
    """

    def open_claim(self, order: Order, user_id: uuid.UUID) -> StageClaim:
        """Create a new active claim at the order's current stage (unsaved)."""
        return StageClaim(
            order_id=order.id,
            user_id=user_id,
            stage=order.current_stage,
            claimed_at=_utcnow(),
            completed_at=None,
        )

    def complete_claim(
        self,
        claim: StageClaim,
        acting_user_id: uuid.UUID,
        at: Optional[datetime] = None,
    ) -> StageClaim:
        """
        Stamp `completed_at` on an active claim owned by `acting_user_id`.

        Ownership is checked before state, so a non-owner is refused even
        when the claim is already closed.
        """
        if claim.user_id != acting_user_id:
            raise ClaimOwnershipError("You do not own this claim.")
        if claim.completed_at is not None:
            raise ClaimCompletedError("This stage has already been completed.")
        claim.completed_at = at or _utcnow()
        return claim

    def reassign_claim(self, claim: StageClaim, new_user: User) -> StageClaim:
        """
        Hand an active claim to another staff member.

        Stage and claimed_at stay untouched; only the claimant changes.
        """
        if new_user.role != UserRole.STAFF:
            raise IneligibleUserError(f'Staff user with ID "{new_user.id}" not found.')
        if claim.completed_at is not None:
            raise ClaimCompletedError("A completed claim cannot be reassigned.")
        claim.user_id = new_user.id
        return claim

    def active_claims(self, claims: Iterable[StageClaim]) -> List[StageClaim]:
        """Active claims, oldest claimed first."""
        return sorted((c for c in claims if c.is_active), key=lambda c: c.claimed_at)

    def completed_claims(self, claims: Iterable[StageClaim]) -> List[StageClaim]:
        """Completed claims, most recently completed first."""
        return sorted(
            (c for c in claims if not c.is_active),
            key=lambda c: c.completed_at,
            reverse=True,
        )

    def all_claims(self, claims: Iterable[StageClaim]) -> List[StageClaim]:
        """Every claim, most recently claimed first."""
        return sorted(claims, key=lambda c: c.claimed_at, reverse=True)


# ---------------------------------------------------------------------------
# OrderService
# ---------------------------------------------------------------------------

@dataclass
class ProductSpec:
    """Unsaved product data supplied at order intake."""
    width: float
    height: float
    quantity: int
    price: float
    paper_type: PaperType
    needs_design: bool = False
    design_amount: Optional[float] = None
    needs_cut: bool = False
    needs_lamination: bool = False
    name: Optional[str] = None


class OrderService:
    """
    Order intake and the small set of mutations allowed outside the workflow.
    """

    def create_order(
        self,
        customer_phone: str,
        branch_id: uuid.UUID,
        creator_id: uuid.UUID,
        products: Sequence[ProductSpec],
        customer_name: Optional[str] = None,
        is_urgent: bool = False,
        shipping_price: Optional[float] = None,
        notes: str = "",
        initial_stage: OrderStage = OrderStage.WAITING,
    ) -> Order:
        """Create and return a new Order with its Products (unsaved)."""
        if not customer_phone.strip():
            raise ValueError("customer_phone must not be empty.")
        if not products:
            raise ValueError("An order needs at least one product.")
        if shipping_price is not None and shipping_price < 0:
            raise ValueError("shipping_price must not be negative.")

        order = Order(
            customer_name=customer_name,
            customer_phone=customer_phone,
            branch_id=branch_id,
            creator_id=creator_id,
            is_urgent=is_urgent,
            shipping_price=shipping_price,
            notes=notes,
            current_stage=initial_stage,
            created_at=_utcnow(),
        )
        for spec in products:
            order.products.append(self._build_product(order.id, spec))
        return order

    def _build_product(self, order_id: uuid.UUID, spec: ProductSpec) -> Product:
        if spec.quantity < 1:
            raise ValueError("Product quantity must be at least 1.")
        if spec.width <= 0 or spec.height <= 0:
            raise ValueError("Product dimensions must be positive.")
        if spec.price < 0:
            raise ValueError("Product price must not be negative.")
        if spec.design_amount is not None and spec.design_amount < 0:
            raise ValueError("design_amount must not be negative.")
        return Product(
            order_id=order_id,
            name=spec.name,
            width=spec.width,
            height=spec.height,
            quantity=spec.quantity,
            price=spec.price,
            paper_type=spec.paper_type,
            needs_design=spec.needs_design,
            # Design fee is dropped when the product needs no design
            design_amount=spec.design_amount if spec.needs_design else None,
            needs_cut=spec.needs_cut,
            needs_lamination=spec.needs_lamination,
        )

    def update_notes(self, order: Order, notes: str) -> Order:
        order.notes = notes
        return order

    def update_shipping_price(self, order: Order, shipping_price: float) -> Order:
        if shipping_price < 0:
            raise ValueError("shipping_price must not be negative.")
        order.shipping_price = shipping_price
        return order

    def override_stage(
        self,
        order: Order,
        new_stage: OrderStage,
        sequence: StageSequence = DEFAULT_SEQUENCE,
    ) -> Order:
        """
        Break-glass: put the order at any stage of the sequence.

        Claims are not consulted or touched.  An active claim taken at the
        previous stage stays open and is now stale relative to the order.
        """
        sequence.index(new_stage)
        order.current_stage = new_stage
        return order

    def totals(self, order: Order) -> Dict[str, float]:
        products_total = sum(p.price for p in order.products)
        design_total = sum(p.billable_design_amount for p in order.products)
        shipping = order.shipping_price or 0.0
        return {
            "products": products_total,
            "design": design_total,
            "shipping": shipping,
            "total": products_total + design_total + shipping,
        }

    def confirmation_message(self, order: Order, branch: Optional[Branch]) -> str:
        """
        Plain-text order summary for the customer, ready to paste into a
        messaging app.
        """
        rule = "━" * 22
        lines: List[str] = [
            "📋 Order Confirmation",
            rule,
            "",
            f"Order ID: #{order.short_ref.upper()}",
            f"Branch: {branch.name if branch else '-'}",
        ]
        if order.customer_name:
            lines.append(f"Customer: {order.customer_name}")
        lines.append(f"Phone: {order.customer_phone}")
        lines.append(f"Date: {order.created_at.date().isoformat()}")
        lines += ["", "📦 Products:", rule]

        for index, p in enumerate(order.products, start=1):
            lines.append("")
            lines.append(f"{index}. {p.name or 'Product'}")
            lines.append(f"   • Size: {p.width:g} x {p.height:g} cm")
            lines.append(f"   • Quantity: {p.quantity}")
            lines.append(f"   • Paper: {p.paper_type.value}")
            lines.append(f"   • Price: {_money(p.price)}")
            if p.needs_design:
                lines.append(f"   • Design Work: {_money(p.billable_design_amount)}")
            if p.needs_cut:
                lines.append("   • Special Cut: Yes")
            if p.needs_lamination:
                lines.append("   • Lamination: Yes")

        totals = self.totals(order)
        lines += ["", rule, "💰 Summary:", f"   Products Total: {_money(totals['products'])}"]
        if totals["design"] > 0:
            lines.append(f"   Design Work: {_money(totals['design'])}")
        if order.shipping_price:
            lines.append(f"   Shipping: {_money(totals['shipping'])}")
        lines.append("   " + "─" * 17)
        lines.append(f"   TOTAL: {_money(totals['total'])}")

        if order.is_urgent:
            lines += ["", "⚡ URGENT ORDER"]
        if order.notes:
            lines += ["", f"📝 Notes: {order.notes}"]

        lines += [
            "",
            rule,
            "📋 Terms & Conditions:",
            "• Payment must be completed before delivery",
            "• Design revisions: Up to 2 rounds included",
            "• Color accuracy: Digital proofs may vary from print",
            "• Delivery: 2-5 business days (standard orders)",
            "• Urgent orders: Additional fees may apply",
            "",
            '✅ Please reply "CONFIRM" to proceed with this order.',
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# StageAdminService
# ---------------------------------------------------------------------------

class StageAdminService:
    """
    Maintains the Stage records and who is assigned to them.
    """

    def create_stage(
        self,
        name: OrderStage,
        existing: List[Stage],
        sequence: StageSequence = DEFAULT_SEQUENCE,
    ) -> Stage:
        """Create and return a new Stage (unsaved)."""
        sequence.index(name)
        if any(s.name == name for s in existing):
            raise ValueError("Stage already exists")
        return Stage(name=name, created_at=_utcnow())

    def replace_members(
        self,
        stage: Stage,
        user_ids: Sequence[uuid.UUID],
        current: List[StageMembership],
    ) -> Tuple[List[StageMembership], List[StageMembership]]:
        """
        Make `user_ids` the exact member set of `stage`.

        Returns (memberships to add, memberships to remove).  Existing
        memberships for users that stay are kept as they are.
        """
        wanted = list(dict.fromkeys(user_ids))
        present = {m.user_id: m for m in current if m.stage_id == stage.id}
        to_add = [
            StageMembership(stage_id=stage.id, user_id=uid, assigned_at=_utcnow())
            for uid in wanted
            if uid not in present
        ]
        to_remove = [m for uid, m in present.items() if uid not in set(wanted)]
        return to_add, to_remove


# ---------------------------------------------------------------------------
# UserAdminService
# ---------------------------------------------------------------------------

class UserAdminService:
    """
    Role changes and removal of user accounts.

    The shop must always keep at least one administrator.
    """

    def _require_other_admin(self, user: User, everyone: Iterable[User]) -> None:
        if user.is_admin and not any(u.is_admin and u.id != user.id for u in everyone):
            raise ValueError("The last administrator cannot be removed or demoted.")

    def change_role(self, user: User, role: UserRole, everyone: Iterable[User]) -> User:
        if role != UserRole.ADMIN:
            self._require_other_admin(user, everyone)
        user.role = role
        return user

    def check_removable(
        self,
        user: User,
        everyone: Iterable[User],
        claims: List[StageClaim],
        created_orders: List[Order],
    ) -> None:
        """Claims and orders keep a reference to their user, so those users stay."""
        self._require_other_admin(user, everyone)
        if claims or created_orders:
            raise ValueError("User has stage claims or orders and cannot be deleted.")

    def replace_stages(
        self,
        user: User,
        stage_ids: Sequence[uuid.UUID],
        current: List[StageMembership],
    ) -> Tuple[List[StageMembership], List[StageMembership]]:
        """
        Make `stage_ids` the exact set of stages `user` works.

        Returns (memberships to add, memberships to remove).
        """
        wanted = list(dict.fromkeys(stage_ids))
        present = {m.stage_id: m for m in current if m.user_id == user.id}
        to_add = [
            StageMembership(stage_id=sid, user_id=user.id, assigned_at=_utcnow())
            for sid in wanted
            if sid not in present
        ]
        to_remove = [m for sid, m in present.items() if sid not in set(wanted)]
        return to_add, to_remove


# ---------------------------------------------------------------------------
# NotificationService
# ---------------------------------------------------------------------------

class NotificationService:
    """
    Builds the NotificationMessage objects emitted at workflow boundaries.
    Nothing is sent from here; the application layer queues the messages on
    the unit of work for delivery after commit.
    """

    def order_created(self, order: Order) -> NotificationMessage:
        return NotificationMessage(
            user_id=order.creator_id,
            message=f"Order #{order.short_ref} has been created successfully",
            category=NotificationCategory.SUCCESS,
            order_id=order.id,
        )

    def order_claimed(
        self, order: Order, user_id: uuid.UUID, stage: OrderStage
    ) -> NotificationMessage:
        return NotificationMessage(
            user_id=user_id,
            message=f"You claimed order #{order.short_ref} at {stage.value} stage",
            category=NotificationCategory.INFO,
            order_id=order.id,
        )

    def order_advanced(
        self,
        order: Order,
        user_id: uuid.UUID,
        from_stage: OrderStage,
        to_stage: OrderStage,
    ) -> NotificationMessage:
        return NotificationMessage(
            user_id=user_id,
            message=(
                f"Order #{order.short_ref} moved from {from_stage.value} "
                f"to {to_stage.value}"
            ),
            category=NotificationCategory.SUCCESS,
            order_id=order.id,
        )

    def order_available_for_stage(
        self,
        order: Order,
        stage: OrderStage,
        user_ids: Iterable[uuid.UUID],
    ) -> List[NotificationMessage]:
        """One message per user assigned to `stage`."""
        return [
            NotificationMessage(
                user_id=uid,
                message=f"New order #{order.short_ref} is available for {stage.value} stage",
                category=NotificationCategory.INFO,
                order_id=order.id,
            )
            for uid in user_ids
        ]

    def order_overdue(self, order: Order, business_days: int) -> NotificationMessage:
        return NotificationMessage(
            user_id=order.creator_id,
            message=(
                f"⚠️ Order #{order.short_ref} is overdue! Created {business_days} "
                "business days ago and still not delivered. "
                f"Current stage: {order.current_stage.value}"
            ),
            category=NotificationCategory.WARNING,
            order_id=order.id,
        )


# ---------------------------------------------------------------------------
# OverdueService
# ---------------------------------------------------------------------------

class OverdueService:
    """
    Ages undelivered orders in business days.

    A business day is any day except Sunday.  Holidays and Saturdays count.
    """

    def __init__(self, threshold_business_days: int = 2):
        self.threshold = threshold_business_days

    @staticmethod
    def is_business_day(day: datetime) -> bool:
        return day.weekday() != 6   # Sunday

    def business_days_since(self, created_at: datetime, now: datetime) -> int:
        """
        Count the non-Sunday days among the whole days elapsed since
        `created_at`, starting with the creation day itself.
        """
        elapsed = (now - created_at) // timedelta(days=1)
        count = 0
        day = created_at
        for _ in range(max(elapsed, 0)):
            if self.is_business_day(day):
                count += 1
            day += timedelta(days=1)
        return count

    def find_overdue(
        self,
        orders: Iterable[Order],
        now: Optional[datetime] = None,
        final_stage: OrderStage = OrderStage.DELIVERED,
    ) -> List[Tuple[Order, int]]:
        """
        Orders older than `threshold` calendar days that have not reached
        `final_stage` and have aged at least `threshold` business days.
        """
        now = now or _utcnow()
        cutoff = now - timedelta(days=self.threshold)
        result: List[Tuple[Order, int]] = []
        for order in orders:
            if order.current_stage == final_stage or order.created_at >= cutoff:
                continue
            days = self.business_days_since(order.created_at, now)
            if days >= self.threshold:
                result.append((order, days))
        return result
