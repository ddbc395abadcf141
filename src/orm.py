"""
orm.py

SQLAlchemy implementation of the repository interfaces and the Unit of Work.

Tables are declared with SQLAlchemy Core and mapped by hand onto the
dataclasses in model.py, so the domain layer stays free of any persistence
concerns.

    engine = create_database_engine("postgresql+psycopg://…")
    create_schema(engine)
    uow = SqlAlchemyUnitOfWork(engine)

Locking
-------
Workflow use cases load the order through get_for_update(), which issues
SELECT … FOR UPDATE on backends that support row locks (PostgreSQL, MySQL).
SQLite has no row locks; for it every transaction is opened with
BEGIN IMMEDIATE, which takes the database write lock up front and
serialises writers.  A partial unique index on stage_claims additionally
rejects a second active claim for the same order.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from application import (
    AbstractBranchRepository,
    AbstractOrderRepository,
    AbstractStageClaimRepository,
    AbstractStageMembershipRepository,
    AbstractStageRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
)
from model import (
    Branch,
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

logger = logging.getLogger("printshop.orm")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()


def _stage_enum() -> Enum:
    return Enum(OrderStage, name="order_stage", native_enum=False, length=20)


users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("phone", String(32), nullable=False, unique=True),
    Column("role", Enum(UserRole, name="user_role", native_enum=False, length=10), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

branches = Table(
    "branches",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(120), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

stages = Table(
    "stages",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", _stage_enum(), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

stage_members = Table(
    "stage_members",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("stage_id", Uuid, ForeignKey("stages.id"), nullable=False, index=True),
    Column("user_id", Uuid, ForeignKey("users.id"), nullable=False, index=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("customer_name", String(200)),
    Column("customer_phone", String(32), nullable=False),
    Column("branch_id", Uuid, ForeignKey("branches.id"), nullable=False),
    Column("creator_id", Uuid, ForeignKey("users.id"), nullable=False),
    Column("is_urgent", Boolean, nullable=False, default=False),
    Column("shipping_price", Float),
    Column("notes", Text, nullable=False, default=""),
    Column("current_stage", _stage_enum(), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id"), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("name", String(200)),
    Column("width", Float, nullable=False),
    Column("height", Float, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("paper_type", Enum(PaperType, name="paper_type", native_enum=False, length=20), nullable=False),
    Column("needs_design", Boolean, nullable=False),
    Column("design_amount", Float),
    Column("needs_cut", Boolean, nullable=False),
    Column("needs_lamination", Boolean, nullable=False),
)

stage_claims = Table(
    "stage_claims",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, ForeignKey("orders.id"), nullable=False, index=True),
    Column("user_id", Uuid, ForeignKey("users.id"), nullable=False, index=True),
    Column("stage", _stage_enum(), nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
)

# At most one active claim per order
Index(
    "uq_stage_claims_active_order",
    stage_claims.c.order_id,
    unique=True,
    sqlite_where=stage_claims.c.completed_at.is_(None),
    postgresql_where=stage_claims.c.completed_at.is_(None),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------

def create_database_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an Engine for `url`.  SQLite engines are configured so that every
    transaction starts with BEGIN IMMEDIATE.
    """
    engine = create_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy's "begin" event below emit BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    logger.info("Database engine created for dialect %s", engine.dialect.name)
    return engine


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _save(conn: Connection, table: Table, row_id: uuid.UUID, values: Dict[str, Any]) -> None:
    """Insert the row, or update it when the id already exists."""
    exists = conn.execute(select(table.c.id).where(table.c.id == row_id)).first()
    if exists is None:
        conn.execute(insert(table).values(id=row_id, **values))
    else:
        conn.execute(update(table).where(table.c.id == row_id).values(**values))


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------

def _user(row) -> User:
    return User(id=row.id, phone=row.phone, role=row.role, created_at=_utc(row.created_at))


def _branch(row) -> Branch:
    return Branch(id=row.id, name=row.name, created_at=_utc(row.created_at))


def _stage(row) -> Stage:
    return Stage(id=row.id, name=row.name, created_at=_utc(row.created_at))


def _membership(row) -> StageMembership:
    return StageMembership(
        id=row.id,
        stage_id=row.stage_id,
        user_id=row.user_id,
        assigned_at=_utc(row.assigned_at),
    )


def _product(row) -> Product:
    return Product(
        id=row.id,
        order_id=row.order_id,
        name=row.name,
        width=row.width,
        height=row.height,
        quantity=row.quantity,
        price=row.price,
        paper_type=row.paper_type,
        needs_design=row.needs_design,
        design_amount=row.design_amount,
        needs_cut=row.needs_cut,
        needs_lamination=row.needs_lamination,
    )


def _claim(row) -> StageClaim:
    return StageClaim(
        id=row.id,
        order_id=row.order_id,
        user_id=row.user_id,
        stage=row.stage,
        claimed_at=_utc(row.claimed_at),
        completed_at=_utc(row.completed_at),
    )


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class SqlUserRepository(AbstractUserRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def get(self, user_id):
        row = self._c.execute(select(users).where(users.c.id == user_id)).first()
        return _user(row) if row else None

    def get_by_phone(self, phone):
        row = self._c.execute(select(users).where(users.c.phone == phone)).first()
        return _user(row) if row else None

    def list_all(self):
        return [_user(r) for r in self._c.execute(select(users))]

    def save(self, user):
        _save(self._c, users, user.id, {
            "phone": user.phone, "role": user.role, "created_at": user.created_at,
        })

    def delete(self, user_id):
        self._c.execute(delete(users).where(users.c.id == user_id))


class SqlBranchRepository(AbstractBranchRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def get(self, branch_id):
        row = self._c.execute(select(branches).where(branches.c.id == branch_id)).first()
        return _branch(row) if row else None

    def get_by_name(self, name):
        row = self._c.execute(select(branches).where(branches.c.name == name)).first()
        return _branch(row) if row else None

    def list_all(self):
        return [_branch(r) for r in self._c.execute(select(branches))]

    def save(self, branch):
        _save(self._c, branches, branch.id, {"name": branch.name, "created_at": branch.created_at})


class SqlStageRepository(AbstractStageRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def get(self, stage_id):
        row = self._c.execute(select(stages).where(stages.c.id == stage_id)).first()
        return _stage(row) if row else None

    def get_by_name(self, name):
        row = self._c.execute(select(stages).where(stages.c.name == name)).first()
        return _stage(row) if row else None

    def list_all(self):
        return [_stage(r) for r in self._c.execute(select(stages))]

    def save(self, stage):
        _save(self._c, stages, stage.id, {"name": stage.name, "created_at": stage.created_at})

    def delete(self, stage_id):
        self._c.execute(delete(stages).where(stages.c.id == stage_id))


class SqlStageMembershipRepository(AbstractStageMembershipRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def list_for_stage(self, stage_id):
        q = select(stage_members).where(stage_members.c.stage_id == stage_id)
        return [_membership(r) for r in self._c.execute(q)]

    def list_for_user(self, user_id):
        q = select(stage_members).where(stage_members.c.user_id == user_id)
        return [_membership(r) for r in self._c.execute(q)]

    def save(self, membership):
        _save(self._c, stage_members, membership.id, {
            "stage_id": membership.stage_id,
            "user_id": membership.user_id,
            "assigned_at": membership.assigned_at,
        })

    def delete(self, membership_id):
        self._c.execute(delete(stage_members).where(stage_members.c.id == membership_id))


class SqlOrderRepository(AbstractOrderRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def _load(self, row) -> Order:
        q = select(products).where(products.c.order_id == row.id).order_by(products.c.position)
        return Order(
            id=row.id,
            customer_name=row.customer_name,
            customer_phone=row.customer_phone,
            branch_id=row.branch_id,
            creator_id=row.creator_id,
            is_urgent=row.is_urgent,
            shipping_price=row.shipping_price,
            notes=row.notes,
            current_stage=row.current_stage,
            created_at=_utc(row.created_at),
            products=[_product(p) for p in self._c.execute(q)],
        )

    def _fetch(self, query) -> List[Order]:
        return [self._load(r) for r in self._c.execute(query).all()]

    def get(self, order_id):
        found = self._fetch(select(orders).where(orders.c.id == order_id))
        return found[0] if found else None

    def get_for_update(self, order_id):
        found = self._fetch(select(orders).where(orders.c.id == order_id).with_for_update())
        return found[0] if found else None

    def list_all(self):
        return self._fetch(select(orders))

    def list_at_stages(self, stage_names: Iterable[OrderStage]):
        wanted = list(stage_names)
        if not wanted:
            return []
        return self._fetch(select(orders).where(orders.c.current_stage.in_(wanted)))

    def list_for_creator(self, user_id):
        return self._fetch(select(orders).where(orders.c.creator_id == user_id))

    def _values(self, order: Order) -> Dict[str, Any]:
        return {
            "customer_name": order.customer_name,
            "customer_phone": order.customer_phone,
            "branch_id": order.branch_id,
            "creator_id": order.creator_id,
            "is_urgent": order.is_urgent,
            "shipping_price": order.shipping_price,
            "notes": order.notes,
            "current_stage": order.current_stage,
            "created_at": order.created_at,
        }

    def add(self, order):
        self._c.execute(insert(orders).values(id=order.id, **self._values(order)))
        for position, p in enumerate(order.products):
            self._c.execute(insert(products).values(
                id=p.id,
                order_id=order.id,
                position=position,
                name=p.name,
                width=p.width,
                height=p.height,
                quantity=p.quantity,
                price=p.price,
                paper_type=p.paper_type,
                needs_design=p.needs_design,
                design_amount=p.design_amount,
                needs_cut=p.needs_cut,
                needs_lamination=p.needs_lamination,
            ))

    def save(self, order):
        self._c.execute(
            update(orders).where(orders.c.id == order.id).values(**self._values(order))
        )


class SqlStageClaimRepository(AbstractStageClaimRepository):
    def __init__(self, conn: Connection):
        self._c = conn

    def _fetch(self, query) -> List[StageClaim]:
        return [_claim(r) for r in self._c.execute(query)]

    def get(self, claim_id):
        found = self._fetch(select(stage_claims).where(stage_claims.c.id == claim_id))
        return found[0] if found else None

    def find_active_for_order(self, order_id):
        found = self._fetch(
            select(stage_claims).where(
                stage_claims.c.order_id == order_id,
                stage_claims.c.completed_at.is_(None),
            )
        )
        return found[0] if found else None

    def list_active(self):
        return self._fetch(select(stage_claims).where(stage_claims.c.completed_at.is_(None)))

    def list_for_order(self, order_id):
        return self._fetch(select(stage_claims).where(stage_claims.c.order_id == order_id))

    def list_for_user(self, user_id):
        return self._fetch(select(stage_claims).where(stage_claims.c.user_id == user_id))

    def list_all(self):
        return self._fetch(select(stage_claims))

    def _values(self, claim: StageClaim) -> Dict[str, Any]:
        return {
            "order_id": claim.order_id,
            "user_id": claim.user_id,
            "stage": claim.stage,
            "claimed_at": claim.claimed_at,
            "completed_at": claim.completed_at,
        }

    def add(self, claim):
        self._c.execute(insert(stage_claims).values(id=claim.id, **self._values(claim)))

    def save(self, claim):
        self._c.execute(
            update(stage_claims).where(stage_claims.c.id == claim.id).values(**self._values(claim))
        )


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    One connection and one transaction per `with` block.  Repositories are
    bound to that connection when the block is entered.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._conn: Optional[Connection] = None

    def _begin(self) -> None:
        self._conn = self._engine.connect()
        self._conn.begin()
        self.users         = SqlUserRepository(self._conn)
        self.branches      = SqlBranchRepository(self._conn)
        self.stages        = SqlStageRepository(self._conn)
        self.stage_members = SqlStageMembershipRepository(self._conn)
        self.orders        = SqlOrderRepository(self._conn)
        self.claims        = SqlStageClaimRepository(self._conn)

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _commit(self) -> None:
        self._conn.commit()

    def _rollback(self) -> None:
        self._conn.rollback()
