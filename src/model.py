"""
model.py

Domain models for the Print Shop Order Tracking System.

Entities
--------
- Branch
- User
- Stage
- StageMembership
- Order
- Product
- StageClaim
- NotificationMessage

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class OrderStage(str, Enum):
    """
    Production pipeline positions.  Declaration order is the canonical
    workflow order; see service.STAGE_WORKFLOW.
    """
    WAITING = "WAITING"
    DESIGN = "DESIGN"
    PRINT_READY = "PRINT_READY"
    PRINTING = "PRINTING"
    CUT = "CUT"
    COMPLETED = "COMPLETED"
    DELIVERED = "DELIVERED"


class UserRole(str, Enum):
    """ADMIN users may run override actions; STAFF users work the pipeline."""
    ADMIN = "ADMIN"
    STAFF = "STAFF"


class PaperType(str, Enum):
    GLOSS = "GLOSS"
    MATTE = "MATTE"
    CARDSTOCK = "CARDSTOCK"
    VINYL = "VINYL"
    CUSTOM = "CUSTOM"


class NotificationCategory(str, Enum):
    """Presentation hint carried with every pushed notification."""
    INFO = "info"
    WARNING = "warning"
    SUCCESS = "success"
    ERROR = "error"


# ---------------------------------------------------------------------------
# People & Organisation
# ---------------------------------------------------------------------------


@dataclass
class Branch:
    """A shop location that takes orders."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    created_at: datetime = field(default_factory=_now)


@dataclass
class User:
    """
    A person who logs in to the system.

    The stages a user may claim orders at are not stored here; they are
    modelled by StageMembership records so both directions (stages of a user,
    users of a stage) can be queried.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    phone: str = ""
    role: UserRole = UserRole.STAFF
    created_at: datetime = field(default_factory=_now)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass
class Stage:
    """A named pipeline position that users can be assigned to."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: OrderStage = OrderStage.WAITING
    created_at: datetime = field(default_factory=_now)


@dataclass
class StageMembership:
    """
    Associates a User with a Stage.

    A user holding a membership for stage X may claim any order whose
    current stage is X.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    stage_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Stage.id
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → User.id
    assigned_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass
class Product:
    """
    A single printed item within an order.

    `design_amount` is only ever charged when `needs_design` is set; use
    `billable_design_amount` rather than reading the raw field.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    order_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Order.id
    name: Optional[str] = None

    width: float = 0.0          # cm
    height: float = 0.0         # cm
    quantity: int = 1
    price: float = 0.0
    paper_type: PaperType = PaperType.GLOSS

    needs_design: bool = False
    design_amount: Optional[float] = None
    needs_cut: bool = False
    needs_lamination: bool = False

    @property
    def billable_design_amount(self) -> float:
        if not self.needs_design:
            return 0.0
        return self.design_amount or 0.0


@dataclass
class Order:
    """
    A customer order moving through the production pipeline.

    `current_stage` only changes through the advance workflow or an
    administrative override.  Products are created together with the order
    and are loaded alongside it by the repositories.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    customer_name: Optional[str] = None
    customer_phone: str = ""
    branch_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → Branch.id
    creator_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → User.id

    is_urgent: bool = False
    shipping_price: Optional[float] = None
    notes: str = ""

    current_stage: OrderStage = OrderStage.WAITING
    created_at: datetime = field(default_factory=_now)

    products: List[Product] = field(default_factory=list)

    @property
    def short_ref(self) -> str:
        """First eight characters of the id, as shown to staff and customers."""
        return str(self.id)[:8]


@dataclass
class StageClaim:
    """
    One user's exclusive ownership of an order at one stage.

    `completed_at is None` marks the claim as active.  At most one active
    claim exists per order.  Completed claims are never modified or deleted;
    together they form the audit trail of the order.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    order_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Order.id
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → User.id
    stage: OrderStage = OrderStage.WAITING                    # captured at claim time
    claimed_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class NotificationMessage:
    """
    A human-readable event pushed to one user.

    Messages are handed to the notification sink after a transaction commits.
    They are not part of the persisted state.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    message: str = ""
    category: NotificationCategory = NotificationCategory.INFO
    order_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_now)
