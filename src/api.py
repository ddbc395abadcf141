"""
api.py

REST API layer for the Print Shop Order Tracking System.

Framework : FastAPI
Auth      : Bearer token; the token is resolved to a User UUID by the
            get_current_user dependency.  Endpoints that act on behalf of
            a user pass the resolved id to the relevant use case command;
            administrative endpoints additionally depend on require_admin.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                          - user accounts, roles & stages (admin)
  ├── /branches                       - shop locations
  ├── /orders                         - intake, detail, available queue, edits
  ├── /stage-claims                   - claim, advance, my assignments
  └── /admin                          - reassign, stage override, audit log,
                                        stage administration, overdue scan
  WS  /ws/notifications               - live notification stream (?token=)
  GET /health                         - liveness

Error handling
--------------
  NotFoundError      → 404
  ConflictError      → 409
  AuthorizationError → 403
  BadRequestError    → 400
  ApplicationError   → 422
  ValueError         → 422
  Missing / unknown bearer token → 401
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Path,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    # DTOs
    UserDTO,
    # Interfaces
    AbstractNotificationSink,
    AbstractUnitOfWork,
    # Use-case commands
    AdvanceClaimCommand,
    AssignUsersToStageCommand,
    ChangeUserRoleCommand,
    ClaimOrderCommand,
    CreateBranchCommand,
    CreateOrderCommand,
    CreateStageCommand,
    OverrideOrderStageCommand,
    ReassignClaimCommand,
    RegisterUserCommand,
    SetUserStagesCommand,
    UpdateOrderNotesCommand,
    UpdateShippingPriceCommand,
    # Use-case classes
    AdvanceClaimUseCase,
    AssignUsersToStageUseCase,
    BootstrapUseCase,
    ChangeUserRoleUseCase,
    CheckOverdueOrdersUseCase,
    ClaimOrderUseCase,
    CreateBranchUseCase,
    CreateOrderUseCase,
    CreateStageUseCase,
    DeleteStageUseCase,
    DeleteUserUseCase,
    GetAuditLogUseCase,
    GetConfirmationMessageUseCase,
    GetOrderUseCase,
    GetUserUseCase,
    ListAvailableOrdersUseCase,
    ListBranchesUseCase,
    ListMyClaimsUseCase,
    ListStagesUseCase,
    ListUsersUseCase,
    OverrideOrderStageUseCase,
    ReassignClaimUseCase,
    RegisterUserUseCase,
    SetUserStagesUseCase,
    UpdateOrderNotesUseCase,
    UpdateShippingPriceUseCase,
)
from config import load_settings
from infrastructure import InMemoryUnitOfWork
from model import NotificationCategory, OrderStage, PaperType, UserRole
from service import DEFAULT_SEQUENCE, ProductSpec, StageSequence

logger = logging.getLogger("printshop.api")

settings = load_settings()


# ---------------------------------------------------------------------------
# Notification hub: websocket fan-out
# ---------------------------------------------------------------------------

class NotificationHub(AbstractNotificationSink):
    """
    Pushes notifications to every connected websocket client.

    send() may be called from any thread; each payload is handed to the
    client's event loop with call_soon_threadsafe.  A client whose queue is
    full loses the message.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._clients: Dict[asyncio.Queue, Any] = {}
        self._lock = threading.Lock()

    def register(self, user_id: Optional[uuid.UUID] = None) -> asyncio.Queue:
        """Subscribe the calling event loop.  `user_id` limits delivery to one user."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        with self._lock:
            self._clients[queue] = (asyncio.get_running_loop(), user_id)
        return queue

    def unregister(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._clients.pop(queue, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def send(self, user_id, message, category, order_id=None) -> None:
        payload = {
            "id": str(uuid.uuid4()),
            "message": message,
            "type": NotificationCategory(category).value,
            "orderId": str(order_id) if order_id else None,
            "userId": str(user_id),
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            targets = [
                (queue, loop)
                for queue, (loop, only) in self._clients.items()
                if only is None or only == user_id
            ]
        logger.debug("notify user=%s clients=%d %s", user_id, len(targets), message)
        for queue, loop in targets:
            try:
                loop.call_soon_threadsafe(self._offer, queue, payload)
            except RuntimeError:
                # Event loop already closed; the client is gone
                self.unregister(queue)

    @staticmethod
    def _offer(queue: asyncio.Queue, payload: Dict[str, Any]) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Notification dropped for slow client: %s", payload["message"])


notification_hub = NotificationHub()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Print Shop Order Tracking API",
    version="1.0.0",
    description=(
        "REST API for a print shop production floor: order intake, exclusive "
        "stage claims, stage advancement, administrative overrides, audit log "
        "and live notifications."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(BadRequestError)
async def bad_request_handler(request, exc: BadRequestError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_notifier() -> AbstractNotificationSink:
    return notification_hub


def get_sequence() -> StageSequence:
    return DEFAULT_SEQUENCE


_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    uow: AbstractUnitOfWork = Depends(get_uow),
) -> UserDTO:
    """
    Resolve the bearer token to a user.  The token is the user's UUID;
    replace this with real token verification before production use.
    """
    user = _user_for_token(credentials.credentials if credentials else None, uow)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def _user_for_token(token: Optional[str], uow: AbstractUnitOfWork) -> Optional[UserDTO]:
    if not token:
        return None
    try:
        user_id = uuid.UUID(token)
    except ValueError:
        return None
    try:
        return GetUserUseCase().execute(user_id, uow)
    except NotFoundError:
        return None


def require_admin(user: UserDTO = Depends(get_current_user)) -> UserDTO:
    if user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Administrator role required.")
    return user


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


def _check_enum(enum_cls, v: str, label: str) -> str:
    valid = {e.value for e in enum_cls}
    if v not in valid:
        raise ValueError(f"{label} must be one of: {sorted(valid)}")
    return v


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# User & branch schemas
# ---------------------------------------------------------------------------

class RegisterUserRequest(BaseModel):
    phone: str = Field(..., min_length=3, max_length=32)
    role: str = Field(default=UserRole.STAFF.value, description="ADMIN or STAFF")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _check_enum(UserRole, v, "role")


class ChangeRoleRequest(BaseModel):
    role: str = Field(..., description="ADMIN or STAFF")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _check_enum(UserRole, v, "role")


class SetUserStagesRequest(BaseModel):
    stage_ids: List[uuid.UUID] = Field(
        ..., description="Complete set of stages for the user; replaces the current set."
    )


class CreateBranchRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


# ---------------------------------------------------------------------------
# Order schemas
# ---------------------------------------------------------------------------

class ProductRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    width: float = Field(..., gt=0, description="Width in cm")
    height: float = Field(..., gt=0, description="Height in cm")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    paper_type: str = Field(..., description="GLOSS, MATTE, CARDSTOCK, VINYL or CUSTOM")
    needs_design: bool = False
    design_amount: Optional[float] = Field(default=None, ge=0)
    needs_cut: bool = False
    needs_lamination: bool = False

    @field_validator("paper_type")
    @classmethod
    def validate_paper_type(cls, v: str) -> str:
        return _check_enum(PaperType, v, "paper_type")

    def to_spec(self) -> ProductSpec:
        return ProductSpec(
            width=self.width,
            height=self.height,
            quantity=self.quantity,
            price=self.price,
            paper_type=PaperType(self.paper_type),
            needs_design=self.needs_design,
            design_amount=self.design_amount,
            needs_cut=self.needs_cut,
            needs_lamination=self.needs_lamination,
            name=self.name,
        )


class CreateOrderRequest(BaseModel):
    customer_name: Optional[str] = Field(default=None, max_length=200)
    customer_phone: str = Field(..., min_length=3, max_length=32)
    branch_id: uuid.UUID
    is_urgent: bool = False
    shipping_price: Optional[float] = Field(default=None, ge=0)
    notes: str = Field(default="", max_length=2000)
    products: List[ProductRequest] = Field(..., min_length=1)


class UpdateNotesRequest(BaseModel):
    notes: str = Field(..., max_length=2000)


class UpdateShippingRequest(BaseModel):
    shipping_price: float = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Workflow schemas
# ---------------------------------------------------------------------------

class ClaimOrderRequest(BaseModel):
    order_id: uuid.UUID


class ReassignClaimRequest(BaseModel):
    order_id: uuid.UUID
    new_user_id: uuid.UUID


class StageNameRequest(BaseModel):
    stage: str = Field(..., description="One of the production stage names.")

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, v: str) -> str:
        return _check_enum(OrderStage, v, "stage")


class AssignUsersRequest(BaseModel):
    user_ids: List[uuid.UUID] = Field(
        ..., description="Complete set of users for the stage; replaces the current set."
    )


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    response_description="The created user.",
)
def register_user(
    body: RegisterUserRequest,
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Register a person who works the production floor.  The returned `id`
    doubles as the bearer token.  The first administrator is created at
    start-up from the `admin_phone` setting.
    """
    cmd = RegisterUserCommand(phone=body.phone, role=UserRole(body.role))
    return _ok(RegisterUserUseCase().execute(cmd, uow))


@user_router.get("", summary="List all users with their stages")
def list_users(
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListUsersUseCase().execute(uow))


@user_router.get("/me", summary="The authenticated user")
def who_am_i(current_user: UserDTO = Depends(get_current_user)):
    return _ok(current_user)


@user_router.get("/{user_id}", summary="One user with their stages")
def get_user(
    user_id: uuid.UUID = Path(...),
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetUserUseCase().execute(user_id, uow))


@user_router.patch("/{user_id}/role", summary="Change a user's role")
def change_user_role(
    body: ChangeRoleRequest,
    user_id: uuid.UUID = Path(...),
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Fails with 409 when it would leave the shop without an administrator."""
    cmd = ChangeUserRoleCommand(user_id=user_id, role=UserRole(body.role))
    return _ok(ChangeUserRoleUseCase().execute(cmd, uow))


@user_router.patch("/{user_id}/stages", summary="Replace the stages a user works")
def set_user_stages(
    body: SetUserStagesRequest,
    user_id: uuid.UUID = Path(...),
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = SetUserStagesCommand(user_id=user_id, stage_ids=body.stage_ids)
    return _ok(SetUserStagesUseCase().execute(cmd, uow))


@user_router.delete(
    "/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a user",
)
def delete_user(
    user_id: uuid.UUID = Path(...),
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Users who have claimed or created orders are kept (409), and so is the
    last administrator.
    """
    DeleteUserUseCase().execute(user_id, uow)


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------

branch_router = APIRouter(prefix="/branches", tags=["Branches"])


@branch_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a branch")
def create_branch(
    body: CreateBranchRequest,
    _admin: UserDTO = Depends(require_admin),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(CreateBranchUseCase().execute(CreateBranchCommand(name=body.name), uow))


@branch_router.get("", summary="List branches")
def list_branches(
    _user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListBranchesUseCase().execute(uow))


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

order_router = APIRouter(prefix="/orders", tags=["Orders"])


@order_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create an order with its products",
)
def create_order(
    body: CreateOrderRequest,
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    notifier: AbstractNotificationSink = Depends(get_notifier),
    sequence: StageSequence = Depends(get_sequence),
):
    """
    The order starts at the first production stage.  The creator and every
    user assigned to that stage are notified.
    """
    cmd = CreateOrderCommand(
        customer_phone=body.customer_phone,
        branch_id=body.branch_id,
        products=[p.to_spec() for p in body.products],
        acting_user_id=uuid.UUID(current_user.id),
        customer_name=body.customer_name,
        is_urgent=body.is_urgent,
        shipping_price=body.shipping_price,
        notes=body.notes,
    )
    return _ok(CreateOrderUseCase(notifier, sequence).execute(cmd, uow))


@order_router.get("/available", summary="Orders the caller may claim now")
def list_available_orders(
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListAvailableOrdersUseCase().execute(uuid.UUID(current_user.id), uow))


@order_router.get("/{order_id}", summary="Order detail with claim history")
def get_order(
    order_id: uuid.UUID = Path(...),
    _user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetOrderUseCase().execute(order_id, uow))


@order_router.get("/{order_id}/confirmation", summary="Customer confirmation text")
def get_confirmation(
    order_id: uuid.UUID = Path(...),
    _user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok({"message": GetConfirmationMessageUseCase().execute(order_id, uow)})


@order_router.patch("/{order_id}/notes", summary="Replace order notes")
def update_notes(
    body: UpdateNotesRequest,
    order_id: uuid.UUID = Path(...),
    _user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateOrderNotesCommand(order_id=order_id, notes=body.notes)
    return _ok(UpdateOrderNotesUseCase().execute(cmd, uow))


@order_router.patch("/{order_id}/shipping", summary="Set the shipping price")
def update_shipping(
    body: UpdateShippingRequest,
    order_id: uuid.UUID = Path(...),
    _user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateShippingPriceCommand(order_id=order_id, shipping_price=body.shipping_price)
    return _ok(UpdateShippingPriceUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Stage claims
# ---------------------------------------------------------------------------

claim_router = APIRouter(prefix="/stage-claims", tags=["Stage Claims"])


@claim_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Claim an order at its current stage",
)
def claim_order(
    body: ClaimOrderRequest,
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    notifier: AbstractNotificationSink = Depends(get_notifier),
    sequence: StageSequence = Depends(get_sequence),
):
    """
    Fails with 409 if someone already holds an active claim on the order,
    and 403 if the caller is not assigned to the order's current stage.
    """
    cmd = ClaimOrderCommand(order_id=body.order_id, acting_user_id=uuid.UUID(current_user.id))
    return _ok(ClaimOrderUseCase(notifier, sequence).execute(cmd, uow))


@claim_router.patch("/{claim_id}/advance", summary="Complete a claim and advance the order")
def advance_claim(
    claim_id: uuid.UUID = Path(...),
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    notifier: AbstractNotificationSink = Depends(get_notifier),
    sequence: StageSequence = Depends(get_sequence),
):
    cmd = AdvanceClaimCommand(claim_id=claim_id, acting_user_id=uuid.UUID(current_user.id))
    return _ok(AdvanceClaimUseCase(notifier, sequence).execute(cmd, uow))


@claim_router.get("/my-assignments", summary="All of the caller's claims")
def my_assignments(
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListMyClaimsUseCase().execute(uuid.UUID(current_user.id), uow, "all"))


@claim_router.get("/my-assignments/active", summary="The caller's open claims")
def my_active_assignments(
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListMyClaimsUseCase().execute(uuid.UUID(current_user.id), uow, "active"))


@claim_router.get("/my-assignments/completed", summary="The caller's completed claims")
def my_completed_assignments(
    current_user: UserDTO = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListMyClaimsUseCase().execute(uuid.UUID(current_user.id), uow, "completed"))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

admin_router = APIRouter(
    prefix="/admin",
    tags=["Administration"],
    dependencies=[Depends(require_admin)],
)


@admin_router.post("/reassign-claim", summary="Move an active claim to another staff member")
def reassign_claim(
    body: ReassignClaimRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = ReassignClaimCommand(order_id=body.order_id, new_user_id=body.new_user_id)
    return _ok(ReassignClaimUseCase().execute(cmd, uow))


@admin_router.patch("/orders/{order_id}/stage", summary="Force an order to a stage")
def override_order_stage(
    body: StageNameRequest,
    order_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    sequence: StageSequence = Depends(get_sequence),
):
    """
    Break-glass correction.  Claims are not touched, so an active claim may
    be left pointing at the previous stage.
    """
    cmd = OverrideOrderStageCommand(order_id=order_id, stage=OrderStage(body.stage))
    return _ok(OverrideOrderStageUseCase(sequence=sequence).execute(cmd, uow))


@admin_router.get("/audit-logs", summary="Every stage claim, newest first")
def audit_logs(uow: AbstractUnitOfWork = Depends(get_uow)):
    return _ok(GetAuditLogUseCase().execute(uow))


@admin_router.get("/stages", summary="List stages with their users")
def list_stages(
    uow: AbstractUnitOfWork = Depends(get_uow),
    sequence: StageSequence = Depends(get_sequence),
):
    return _ok(ListStagesUseCase(sequence=sequence).execute(uow))


@admin_router.post("/stages", status_code=status.HTTP_201_CREATED, summary="Create a stage")
def create_stage(
    body: StageNameRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    sequence: StageSequence = Depends(get_sequence),
):
    cmd = CreateStageCommand(name=OrderStage(body.stage))
    return _ok(CreateStageUseCase(sequence=sequence).execute(cmd, uow))


@admin_router.patch("/stages/{stage_id}/assign-users", summary="Replace the users of a stage")
def assign_users(
    body: AssignUsersRequest,
    stage_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = AssignUsersToStageCommand(stage_id=stage_id, user_ids=body.user_ids)
    return _ok(AssignUsersToStageUseCase().execute(cmd, uow))


@admin_router.delete(
    "/stages/{stage_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a stage",
)
def delete_stage(
    stage_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteStageUseCase().execute(stage_id, uow)


@admin_router.post("/overdue-scan", summary="Run the overdue-order check now")
def run_overdue_scan(
    uow: AbstractUnitOfWork = Depends(get_uow),
    notifier: AbstractNotificationSink = Depends(get_notifier),
    sequence: StageSequence = Depends(get_sequence),
):
    use_case = CheckOverdueOrdersUseCase(notifier, sequence, settings.overdue_business_days)
    return _ok(use_case.execute(uow))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(user_router)
api_v1.include_router(branch_router)
api_v1.include_router(order_router)
api_v1.include_router(claim_router)
api_v1.include_router(admin_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# WEBSOCKET: live notifications
# ===========================================================================

@app.websocket("/ws/notifications")
async def notifications_ws(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    user_id: Optional[uuid.UUID] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Stream notification payloads as JSON.  `token` is the same value as the
    HTTP bearer token.  Staff receive their own notifications; an admin
    receives everyone's, or one user's when `user_id` is given.
    """
    user = await asyncio.to_thread(_user_for_token, token, uow)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if user.role != UserRole.ADMIN.value:
        user_id = uuid.UUID(user.id)

    queue = notification_hub.register(user_id)
    await websocket.accept()

    async def pump():
        while True:
            await websocket.send_json(await queue.get())

    sender = asyncio.create_task(pump())
    try:
        # Incoming frames are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Notification client disconnected")
    finally:
        sender.cancel()
        notification_hub.unregister(queue)


# ===========================================================================
# STARTUP: seed data & overdue scan
# ===========================================================================

def _resolve(dependency: Callable[[], Any]) -> Any:
    """Call a dependency honouring app.dependency_overrides."""
    return app.dependency_overrides.get(dependency, dependency)()


def _scan_overdue_orders() -> None:
    use_case = CheckOverdueOrdersUseCase(
        _resolve(get_notifier), _resolve(get_sequence), settings.overdue_business_days
    )
    found = use_case.execute(_resolve(get_uow))
    logger.info("Overdue scan finished: %d overdue order(s)", len(found))


async def _overdue_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(_scan_overdue_orders)
        except Exception:
            logger.exception("Overdue scan failed")


@app.on_event("startup")
async def on_startup():
    """
    Make sure every production stage has a Stage record (plus the optional
    admin user), then start the periodic overdue scan.
    """
    admin = BootstrapUseCase(sequence=_resolve(get_sequence)).execute(
        _resolve(get_uow), settings.admin_phone
    )
    if admin is not None:
        logger.info("Admin user ready: %s", admin.id)
    app.state.overdue_task = asyncio.create_task(
        _overdue_loop(settings.overdue_scan_interval_seconds)
    )


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "overdue_task", None)
    if task is not None:
        task.cancel()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok", "notification_clients": notification_hub.client_count}


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness check.",
    },
    {
        "name": "Users",
        "description": (
            "Admin-only management of the people who work the production floor: "
            "accounts, roles and stage assignments.  A user's id is used as the "
            "bearer token for every other endpoint."
        ),
    },
    {
        "name": "Branches",
        "description": "Shop locations that take orders.",
    },
    {
        "name": "Orders",
        "description": (
            "Order intake with products, order detail with claim history, the "
            "per-user queue of claimable orders and the customer confirmation text."
        ),
    },
    {
        "name": "Stage Claims",
        "description": (
            "Exclusive ownership of an order at one production stage.  Only one "
            "active claim may exist per order; completing it advances the order, "
            "skipping DESIGN when no product needs design work."
        ),
    },
    {
        "name": "Administration",
        "description": (
            "Admin-only: reassign active claims, force an order's stage, read the "
            "audit log of all claims, manage stages and who works them, and run the "
            "overdue-order check on demand."
        ),
    },
]

app.openapi_tags = tags_metadata
