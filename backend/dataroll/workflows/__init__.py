"""Workflow definition model, execution engine and approval coordination."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import Flask, current_app

from ..models.base import utcnow
from .approvals import ApprovalCoordinator
from .collaborators import (
    ActionInvoker,
    AuditTrail,
    DatabasePermissionChecker,
    NotificationDispatcher,
    PermissionChecker,
    RequestsActionInvoker,
    RequestsNotificationDispatcher,
)
from .context import ExecutionContextStore
from .engine import ExecutionEngine
from .executors import build_executors
from .scheduler import DatabaseResumeScheduler

EXTENSION_KEY = "workflows"


@dataclass
class WorkflowServices:
    engine: ExecutionEngine
    coordinator: ApprovalCoordinator
    context_store: ExecutionContextStore
    scheduler: DatabaseResumeScheduler
    permissions: PermissionChecker
    audit: AuditTrail
    invoker: ActionInvoker
    dispatcher: NotificationDispatcher
    clock: Callable[[], datetime]
    logger: Any
    approval_timeout_bounds: tuple[int, int]
    max_definition_bytes: int
    default_format: str


def build_workflow_services(
    config: Mapping[str, Any],
    *,
    invoker: ActionInvoker | None = None,
    dispatcher: NotificationDispatcher | None = None,
    permissions: PermissionChecker | None = None,
    audit: AuditTrail | None = None,
    scheduler: DatabaseResumeScheduler | None = None,
    clock: Callable[[], datetime] = utcnow,
    logger: Any = None,
    auto_resume: bool = True,
) -> WorkflowServices:
    """Wire the engine and its collaborators from application config.

    Any collaborator can be replaced, which is how tests plug in fakes.
    """

    logger = logger or logging.getLogger("dataroll.workflows")
    invoker = invoker or RequestsActionInvoker()
    dispatcher = dispatcher or RequestsNotificationDispatcher(
        slack_webhook_url=config.get("SLACK_WEBHOOK_URL"),
        timeout=float(config.get("WORKFLOW_NOTIFICATION_TIMEOUT", 5)),
    )
    permissions = permissions or DatabasePermissionChecker()
    audit = audit or AuditTrail()
    scheduler = scheduler or DatabaseResumeScheduler()
    bounds = (
        int(config.get("WORKFLOW_APPROVAL_MIN_TIMEOUT", 60)),
        int(config.get("WORKFLOW_APPROVAL_MAX_TIMEOUT", 86400)),
    )

    coordinator = ApprovalCoordinator(permissions, audit, clock=clock, logger=logger)
    context_store = ExecutionContextStore()
    executors = build_executors(
        invoker=invoker,
        dispatcher=dispatcher,
        coordinator=coordinator,
        action_timeout=float(config.get("WORKFLOW_ACTION_TIMEOUT", 30)),
        notification_policy=config.get("WORKFLOW_NOTIFICATION_POLICY", "best_effort"),
    )
    engine = ExecutionEngine(
        executors=executors,
        context_store=context_store,
        coordinator=coordinator,
        scheduler=scheduler,
        audit=audit,
        clock=clock,
        logger=logger,
        approval_timeout_bounds=bounds,
    )
    if auto_resume:
        coordinator.on_resolved = engine.resume

    return WorkflowServices(
        engine=engine,
        coordinator=coordinator,
        context_store=context_store,
        scheduler=scheduler,
        permissions=permissions,
        audit=audit,
        invoker=invoker,
        dispatcher=dispatcher,
        clock=clock,
        logger=logger,
        approval_timeout_bounds=bounds,
        max_definition_bytes=int(config.get("WORKFLOW_MAX_DEFINITION_BYTES", 500_000)),
        default_format=config.get("WORKFLOW_DEFAULT_FORMAT", "json"),
    )


def init_app(app: Flask, **overrides: Any) -> WorkflowServices:
    overrides.setdefault("logger", app.logger)
    services = build_workflow_services(app.config, **overrides)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> WorkflowServices:
    return current_app.extensions[EXTENSION_KEY]


__all__ = [
    "WorkflowServices",
    "build_workflow_services",
    "get_services",
    "init_app",
]
