"""
main.py

Entry point for the Print Shop Order Tracking API.

Loads settings, configures logging, wires the Unit of Work selected by
`database_url` into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1: run directly
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3: with a database and a config file
    PRINTSHOP_CONFIG_FILE=printshop.yaml uvicorn main:app
    PRINTSHOP_DATABASE_URL=sqlite:///printshop.db uvicorn main:app

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
0.  Start with PRINTSHOP_ADMIN_PHONE=555-0001; the start-up log prints
    "Admin user ready: <id>".  That id is the admin's bearer token.
1.  POST  /api/v1/users  {"phone": "...", "role": "STAFF"}
                                      - admin only; the returned "id" is
                                        that user's token
2.  POST  /api/v1/branches            - create a branch
                                        Authorization: Bearer <admin-id>
3.  GET   /api/v1/admin/stages        - stages are created at start-up
4.  PATCH /api/v1/admin/stages/{id}/assign-users - put staff on stages
5.  POST  /api/v1/orders              - create an order with products
6.  GET   /api/v1/orders/available    - what you may claim
7.  POST  /api/v1/stage-claims        - claim it
8.  PATCH /api/v1/stage-claims/{id}/advance - finish your stage
9.  GET   /api/v1/admin/audit-logs    - who did what, newest first

Authentication note
-------------------
The default get_current_user dependency expects the raw user UUID as the
Bearer token (e.g. "Bearer 550e8400-e29b-41d4-a716-446655440000").  The
notification websocket takes the same value as ?token=.  Replace this
with a real JWT implementation before going to production.
"""

import logging

import uvicorn

from api import app, get_uow, settings
from config import configure_logging
from infrastructure import InMemoryUnitOfWork
from orm import SqlAlchemyUnitOfWork, create_database_engine, create_schema

configure_logging(settings.log_level)
logger = logging.getLogger("printshop.main")


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# ---------------------------------------------------------------------------

if settings.uses_database:
    engine = create_database_engine(settings.database_url)
    create_schema(engine)
    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(engine)
    logger.info("Using SQL store")
else:
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()
    logger.info("Using in-memory store")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
