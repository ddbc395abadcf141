import uuid
from dataclasses import dataclass, field
from typing import Callable, List

import pytest

from application import (
    AbstractUnitOfWork,
    AdvanceClaimCommand,
    AdvanceClaimUseCase,
    BootstrapUseCase,
    ClaimOrderCommand,
    ClaimOrderUseCase,
    CreateBranchCommand,
    CreateBranchUseCase,
    CreateOrderCommand,
    CreateOrderUseCase,
    OrderDTO,
    RegisterUserCommand,
    RegisterUserUseCase,
    StageClaimDTO,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork, RecordingNotificationSink
from model import OrderStage, PaperType, StageMembership, UserRole
from orm import SqlAlchemyUnitOfWork, create_database_engine, create_schema
from service import ProductSpec


@pytest.fixture(params=["memory", "sqlite"])
def uow_factory(request, tmp_path) -> Callable[[], AbstractUnitOfWork]:
    """Every workflow test runs against both stores."""
    if request.param == "memory":
        db = InMemoryDatabase()
        return lambda: InMemoryUnitOfWork(db)
    engine = create_database_engine(f"sqlite:///{tmp_path / 'printshop.db'}")
    create_schema(engine)
    request.addfinalizer(engine.dispose)
    return lambda: SqlAlchemyUnitOfWork(engine)


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


def product(needs_design: bool = False, **overrides) -> ProductSpec:
    values = dict(
        width=10.0,
        height=15.0,
        quantity=100,
        price=25.0,
        paper_type=PaperType.GLOSS,
        needs_design=needs_design,
        design_amount=5.0 if needs_design else None,
        name="Flyer",
    )
    values.update(overrides)
    return ProductSpec(**values)


@dataclass
class Shop:
    """A bootstrapped shop: every stage exists, one admin, one branch."""
    uow_factory: Callable[[], AbstractUnitOfWork]
    sink: RecordingNotificationSink
    admin_id: uuid.UUID = None
    branch_id: uuid.UUID = None
    _phones: List[int] = field(default_factory=lambda: [1000])

    def user(self, *stages: OrderStage, role: UserRole = UserRole.STAFF) -> uuid.UUID:
        self._phones[0] += 1
        dto = RegisterUserUseCase().execute(
            RegisterUserCommand(phone=f"555-{self._phones[0]}", role=role), self.uow_factory()
        )
        user_id = uuid.UUID(dto.id)
        uow = self.uow_factory()
        with uow:
            for name in stages:
                stage = uow.stages.get_by_name(name)
                uow.stage_members.save(StageMembership(stage_id=stage.id, user_id=user_id))
        return user_id

    def order(self, creator_id: uuid.UUID, *products: ProductSpec, **fields) -> OrderDTO:
        cmd = CreateOrderCommand(
            customer_phone=fields.pop("customer_phone", "555-9000"),
            branch_id=self.branch_id,
            products=list(products) or [product()],
            acting_user_id=creator_id,
            **fields,
        )
        return CreateOrderUseCase(self.sink).execute(cmd, self.uow_factory())

    def claim(self, user_id: uuid.UUID, order_id) -> StageClaimDTO:
        cmd = ClaimOrderCommand(order_id=uuid.UUID(str(order_id)), acting_user_id=user_id)
        return ClaimOrderUseCase(self.sink).execute(cmd, self.uow_factory())

    def advance(self, user_id: uuid.UUID, claim_id) -> StageClaimDTO:
        cmd = AdvanceClaimCommand(claim_id=uuid.UUID(str(claim_id)), acting_user_id=user_id)
        return AdvanceClaimUseCase(self.sink).execute(cmd, self.uow_factory())

    def stage_of(self, order_id) -> OrderStage:
        uow = self.uow_factory()
        with uow:
            return uow.orders.get(uuid.UUID(str(order_id))).current_stage


@pytest.fixture
def shop(uow_factory, sink) -> Shop:
    admin = BootstrapUseCase().execute(uow_factory(), admin_phone="555-0001")
    branch = CreateBranchUseCase().execute(CreateBranchCommand(name="Downtown"), uow_factory())
    return Shop(
        uow_factory=uow_factory,
        sink=sink,
        admin_id=uuid.UUID(admin.id),
        branch_id=uuid.UUID(branch.id),
    )
