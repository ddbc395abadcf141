"""
infrastructure.py

In-memory implementation of all repository interfaces, the Unit of Work and
two simple notification sinks.

This is a self-contained, zero-dependency backend that stores everything in
plain Python dicts keyed by UUID.  It is simple and suits
local development, demos, and integration testing without needing a real
database.  For a relational store see orm.py; both implement the same
Abstract* interfaces from application.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(engine)

Nothing in service.py, application.py, or api.py needs to change.

Transactions
------------
Each InMemoryDatabase carries one re-entrant lock.  A unit of work holds it
from __enter__ to __exit__, which serialises every read-check-write sequence
against that database.  On entry the stores are snapshotted; rollback puts
the snapshot back, so a failed use case leaves no trace.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Dict, List, Optional

from application import (
    AbstractBranchRepository,
    AbstractNotificationSink,
    AbstractOrderRepository,
    AbstractStageClaimRepository,
    AbstractStageMembershipRepository,
    AbstractStageRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
)
from model import NotificationCategory, NotificationMessage

logger = logging.getLogger("printshop.infrastructure")


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.users:         _Store = _Store()
        self.branches:      _Store = _Store()
        self.stages:        _Store = _Store()
        self.stage_members: _Store = _Store()
        self.orders:        _Store = _Store()
        self.claims:        _Store = _Store()
        self.lock = threading.RLock()

    def stores(self) -> Dict[str, _Store]:
        return {
            name: value for name, value in vars(self).items() if isinstance(value, _Store)
        }


# Module-level singleton, shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryUserRepository(AbstractUserRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, user_id):           return self._s.fetch(user_id)
    def get_by_phone(self, phone):
        return next((u for u in self._s.all() if u.phone == phone), None)
    def list_all(self):               return self._s.all()
    def save(self, user):             self._s.put(user)
    def delete(self, user_id):        self._s.remove(user_id)


class InMemoryBranchRepository(AbstractBranchRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, branch_id):         return self._s.fetch(branch_id)
    def get_by_name(self, name):
        return next((b for b in self._s.all() if b.name == name), None)
    def list_all(self):               return self._s.all()
    def save(self, branch):           self._s.put(branch)


class InMemoryStageRepository(AbstractStageRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, stage_id):          return self._s.fetch(stage_id)
    def get_by_name(self, name):
        return next((s for s in self._s.all() if s.name == name), None)
    def list_all(self):               return self._s.all()
    def save(self, stage):            self._s.put(stage)
    def delete(self, stage_id):       self._s.remove(stage_id)


class InMemoryStageMembershipRepository(AbstractStageMembershipRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_stage(self, stage_id):
        return [m for m in self._s.all() if m.stage_id == stage_id]
    def list_for_user(self, user_id):
        return [m for m in self._s.all() if m.user_id == user_id]
    def save(self, membership):       self._s.put(membership)
    def delete(self, membership_id):  self._s.remove(membership_id)


class InMemoryOrderRepository(AbstractOrderRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, order_id):          return self._s.fetch(order_id)
    # The unit of work already holds the database lock
    def get_for_update(self, order_id): return self._s.fetch(order_id)
    def list_all(self):               return self._s.all()
    def list_at_stages(self, stages):
        wanted = set(stages)
        return [o for o in self._s.all() if o.current_stage in wanted]
    def list_for_creator(self, user_id):
        return [o for o in self._s.all() if o.creator_id == user_id]
    def add(self, order):             self._s.put(order)
    def save(self, order):            self._s.put(order)


class InMemoryStageClaimRepository(AbstractStageClaimRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, claim_id):          return self._s.fetch(claim_id)
    def find_active_for_order(self, order_id):
        return next(
            (c for c in self._s.all() if c.order_id == order_id and c.is_active), None
        )
    def list_active(self):
        return [c for c in self._s.all() if c.is_active]
    def list_for_order(self, order_id):
        return [c for c in self._s.all() if c.order_id == order_id]
    def list_for_user(self, user_id):
        return [c for c in self._s.all() if c.user_id == user_id]
    def list_all(self):               return self._s.all()
    def add(self, claim):             self._s.put(claim)
    def save(self, claim):            self._s.put(claim)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.

    The database lock is held for the whole `with` block.  A commit inside
    the block moves the snapshot forward; rollback() restores the stores in
    place so repositories keep pointing at the same dicts.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._snapshot: Optional[Dict[str, dict]] = None
        self._leaving = False
        self.users         = InMemoryUserRepository(db.users)
        self.branches      = InMemoryBranchRepository(db.branches)
        self.stages        = InMemoryStageRepository(db.stages)
        self.stage_members = InMemoryStageMembershipRepository(db.stage_members)
        self.orders        = InMemoryOrderRepository(db.orders)
        self.claims        = InMemoryStageClaimRepository(db.claims)

    def _take_snapshot(self) -> Dict[str, dict]:
        return {name: copy.deepcopy(dict(store)) for name, store in self._db.stores().items()}

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._leaving = True
        super().__exit__(exc_type, exc_val, exc_tb)

    def _begin(self) -> None:
        self._db.lock.acquire()
        self._leaving = False
        self._snapshot = self._take_snapshot()

    def _close(self) -> None:
        self._snapshot = None
        self._db.lock.release()

    def _commit(self) -> None:
        # The commit made on leaving the block needs no restore point
        if not self._leaving:
            self._snapshot = self._take_snapshot()

    def _rollback(self) -> None:
        if self._snapshot is None:
            return
        for name, store in self._db.stores().items():
            store.clear()
            store.update(self._snapshot[name])


# ---------------------------------------------------------------------------
# Notification sinks
# ---------------------------------------------------------------------------

class LoggingNotificationSink(AbstractNotificationSink):
    """Writes every notification to the log.  Used when nothing else listens."""

    def send(self, user_id, message, category, order_id=None) -> None:
        logger.info(
            "notify user=%s order=%s [%s] %s",
            user_id,
            order_id,
            NotificationCategory(category).value,
            message,
        )


class RecordingNotificationSink(AbstractNotificationSink):
    """Keeps every notification in memory, newest last."""

    def __init__(self):
        self.sent: List[NotificationMessage] = []
        self._lock = threading.Lock()

    def send(self, user_id, message, category, order_id=None) -> None:
        with self._lock:
            self.sent.append(
                NotificationMessage(
                    user_id=user_id,
                    message=message,
                    category=NotificationCategory(category),
                    order_id=order_id,
                )
            )

    def for_user(self, user_id: uuid.UUID) -> List[NotificationMessage]:
        return [m for m in self.sent if m.user_id == user_id]
