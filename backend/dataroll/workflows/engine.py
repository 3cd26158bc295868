"""Execution engine: walks a definition graph one suspension at a time.

The engine is invoked per step by an external caller (HTTP handler, cron
sweep, approval resolution) and never blocks waiting for a suspension to
clear. Every node transition is persisted before the next node starts, so
an execution survives process restarts between invocations.

Status changes use conditional updates against the expected previous
status. A second invocation on an execution that is already ``running``
fails with ConcurrencyError, and a node result arriving after the
execution was cancelled is discarded with StateError.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.base import dump_json, utcnow
from ..models.execution import Execution, NodeExecution
from ..models.workflow import Workflow, WorkflowDefinition
from .approvals import PENDING, ApprovalCoordinator
from .collaborators import AuditTrail
from .context import ExecutionContextStore, mask_secrets
from .definition import Definition, Edge, Node, NodeKind, parse
from .errors import (
    ConcurrencyError,
    ExecutorError,
    GraphError,
    NotFoundError,
    StateError,
    ValidationError,
    WorkflowError,
)
from .executors import DEFAULT_BRANCH, NodeContext, NodeExecutor
from .nodes import parse_node_config
from .results import SUSPEND_APPROVAL, SUSPEND_DELAY, Branch, Completed, Failed, OperationResult, Suspended
from .scheduler import DatabaseResumeScheduler
from .templating import resolve_object

CANCELLABLE = ("pending", "running", "awaiting_approval")
TEST_RUN_NODE_LIMIT = 3
WORKFLOW_OPERATIONS = ("create", "test_run")


def _build_scope(
    definition: Definition,
    context: Mapping[str, Any],
    previous_node_id: str | None,
    execution: dict[str, Any],
) -> dict[str, Any]:
    """Template scope: context entries plus the ``variables``/``outputs``/``previous``/``execution`` roots."""

    node_ids = {node.id for node in definition.nodes}
    scope = dict(context)
    scope["variables"] = {variable.name: context.get(variable.name) for variable in definition.variables}
    scope["outputs"] = {key: value for key, value in context.items() if key in node_ids}
    scope["previous"] = context.get(previous_node_id) if previous_node_id is not None else None
    scope["execution"] = execution
    return scope


def _mask_error(error: WorkflowError, secrets: Mapping[str, Any]) -> WorkflowError:
    if secrets:
        error.message = mask_secrets(error.message, secrets)
        error.details = mask_secrets(error.details, secrets)
        error.args = (error.message,)
    return error


class ExecutionEngine:
    def __init__(
        self,
        *,
        executors: Mapping[NodeKind, NodeExecutor],
        context_store: ExecutionContextStore,
        coordinator: ApprovalCoordinator,
        scheduler: DatabaseResumeScheduler,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
        logger: Any = None,
        approval_timeout_bounds: tuple[int, int] | None = None,
    ) -> None:
        self.executors = dict(executors)
        self.context_store = context_store
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.audit = audit
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.approval_timeout_bounds = approval_timeout_bounds
        # Definition rows are immutable, so parsed copies never go stale.
        self._definitions: dict[int, Definition] = {}

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def create(
        self,
        workflow_id: int,
        variables: Mapping[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> OperationResult[Execution]:
        return self._guard("create", self._create, workflow_id, variables, triggered_by)

    def advance(self, execution_id: int) -> OperationResult[Execution]:
        """Start a pending execution and drive it until it suspends or ends."""

        return self._guard("advance", self._advance, execution_id)

    def resume(self, execution_id: int) -> OperationResult[Execution]:
        """Re-enter at ``current_node_id`` after a suspension cleared or to retry a failure."""

        return self._guard("resume", self._resume, execution_id)

    def cancel(self, execution_id: int, cancelled_by: str | None = None) -> OperationResult[Execution]:
        return self._guard("cancel", self._cancel, execution_id, cancelled_by)

    def get(self, execution_id: int) -> OperationResult[Execution]:
        return self._guard("get", lambda: OperationResult.success(self._load(execution_id)))

    def test_run(
        self,
        workflow_id: int,
        variables: Mapping[str, Any] | None = None,
        triggered_by: str | None = None,
        *,
        limit: int = TEST_RUN_NODE_LIMIT,
    ) -> OperationResult[dict[str, Any]]:
        """Walk the leading nodes of the current definition in memory.

        Nothing is persisted: no execution row, no node records and no audit
        entries. Actions and notifications still reach their collaborators.
        Approval and delay nodes end the walk where a real run would suspend.
        """

        return self._guard("test_run", self._test_run, workflow_id, variables, triggered_by, limit)

    # ------------------------------------------------------------------
    # boundary
    # ------------------------------------------------------------------

    def _guard(self, operation: str, func: Callable[..., OperationResult], *args: Any) -> OperationResult:
        try:
            return func(*args)
        except WorkflowError as exc:
            db.session.rollback()
            secrets = self._secrets_for(operation, args)
            if secrets is None:
                self.logger.warning("%s refused: %s", operation, exc.code)
            else:
                self.logger.warning("%s refused: %s", operation, _mask_error(exc, secrets).message)
            return OperationResult.failure(exc)
        except Exception as exc:
            db.session.rollback()
            secrets = self._secrets_for(operation, args)
            detail = mask_secrets(str(exc), secrets) if secrets is not None else "details hidden"
            self.logger.error("%s failed unexpectedly: %s: %s", operation, type(exc).__name__, detail)
            return OperationResult.failure(
                WorkflowError(f"{operation} failed unexpectedly", code="internal_error")
            )

    def _secrets_for(self, operation: str, args: tuple[Any, ...]) -> Mapping[str, Any] | None:
        """Secret values of the execution an operation ran on; None when they cannot be read."""

        if operation in WORKFLOW_OPERATIONS or not args:
            return {}
        try:
            execution = db.session.get(Execution, args[0])
        except SQLAlchemyError:
            db.session.rollback()
            return None
        return execution.secret_data if execution is not None else {}

    def _load(self, execution_id: int) -> Execution:
        execution = db.session.get(Execution, execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    def _definition(self, definition_id: int) -> Definition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            row = db.session.get(WorkflowDefinition, definition_id)
            if row is None:
                raise NotFoundError("definition", definition_id)
            definition = parse(row.content, row.format)
            self._definitions[definition_id] = definition
        return definition

    def _transition(
        self,
        execution: Execution,
        expected: str,
        error_cls: type[WorkflowError] = StateError,
        **values: Any,
    ) -> None:
        """Apply ``values`` only if the stored status still equals ``expected``."""

        values.setdefault("updated_at", self.clock())
        statement = (
            update(Execution)
            .where(Execution.id == execution.id, Execution.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(statement).rowcount != 1:
            db.session.rollback()
            if error_cls is StateError:
                raise StateError(f"execution {execution.id} is no longer {expected}; result discarded")
            raise error_cls(f"execution {execution.id} is already being processed; re-read and retry")
        db.session.expire(execution)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def _create(
        self, workflow_id: int, variables: Mapping[str, Any] | None, triggered_by: str | None
    ) -> OperationResult[Execution]:
        workflow = db.session.get(Workflow, workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", workflow_id)
        if not workflow.is_published:
            raise StateError(f"workflow {workflow_id} is not published")
        if workflow.definition_id is None:
            raise StateError(f"workflow {workflow_id} has no definition")

        definition = self._definition(workflow.definition_id)
        trigger = definition.trigger_node
        if trigger is None:
            raise GraphError(f"workflow {workflow_id} has no trigger node")

        context, secrets = self.context_store.seed(definition, variables)
        execution = Execution(
            workflow_id=workflow.id,
            definition_id=workflow.definition_id,
            team_id=workflow.team_id,
            status="pending",
            context=dump_json(context),
            secrets=dump_json(secrets) if secrets else None,
            current_node_id=trigger.id,
            triggered_by=triggered_by,
            triggered_at=self.clock(),
        )
        db.session.add(execution)
        db.session.commit()

        self.logger.info("execution %s created for workflow %s", execution.id, workflow.id)
        self.audit.record(
            "execution.create",
            "execution",
            execution.id,
            team_id=execution.team_id,
            user_id=triggered_by,
            details={"workflowId": workflow.id, "definitionId": workflow.definition_id},
        )
        return OperationResult.success(execution)

    def _advance(self, execution_id: int) -> OperationResult[Execution]:
        execution = self._load(execution_id)
        if execution.status == "running":
            raise ConcurrencyError(f"execution {execution_id} is already running")
        if execution.status != "pending":
            raise StateError(f"execution {execution_id} is {execution.status} and cannot be advanced")
        if execution.resume_token is not None:
            raise StateError(f"execution {execution_id} is suspended; use resume once it is due")

        now = self.clock()
        self._transition(execution, "pending", ConcurrencyError, status="running", started_at=now)
        db.session.commit()
        self.logger.info("execution %s started", execution_id)
        return self._drive(execution, None)

    def _resume(self, execution_id: int) -> OperationResult[Execution]:
        execution = self._load(execution_id)
        status = execution.status
        token: str | None = None

        if status == "running":
            raise ConcurrencyError(f"execution {execution_id} is already running")

        if status == "failed":
            self._transition(
                execution,
                "failed",
                ConcurrencyError,
                status="running",
                error=None,
                completed_at=None,
                resume_token=None,
            )
            self.logger.info(
                "execution %s: retrying from node %s", execution_id, execution.current_node_id
            )
        elif status == "awaiting_approval":
            token = self._approval_token(execution)
            self._transition(execution, status, ConcurrencyError, status="running", resume_token=None)
        elif status == "pending":
            token = self._delay_token(execution)
            self._transition(execution, status, ConcurrencyError, status="running", resume_token=None)
            self.scheduler.discard(execution_id)
        else:
            raise StateError(f"execution {execution_id} is {status} and cannot be resumed")

        db.session.commit()
        self.audit.record(
            "execution.resume",
            "execution",
            execution_id,
            team_id=execution.team_id,
            details={"from": status, "nodeId": execution.current_node_id},
        )
        return self._drive(execution, token)

    def _approval_token(self, execution: Execution) -> str:
        kind, _, value = (execution.resume_token or "").partition(":")
        if kind != SUSPEND_APPROVAL or not value:
            raise StateError(f"execution {execution.id} is not waiting on an approval")
        request = self.coordinator.get(int(value))
        if request is not None and request.status == PENDING:
            raise StateError(f"approval {value} for execution {execution.id} is still pending")
        return value

    def _delay_token(self, execution: Execution) -> str:
        kind, _, value = (execution.resume_token or "").partition(":")
        if kind != SUSPEND_DELAY or not value:
            raise StateError(f"execution {execution.id} has not started; use advance")
        if self.clock() < datetime.fromisoformat(value):
            raise StateError(f"execution {execution.id} is delayed until {value}")
        return value

    def _cancel(self, execution_id: int, cancelled_by: str | None) -> OperationResult[Execution]:
        execution = self._load(execution_id)
        status = execution.status
        if status not in CANCELLABLE:
            raise StateError(f"execution {execution_id} is {status} and cannot be cancelled")

        now = self.clock()
        error = {
            "code": "cancelled",
            "message": "execution was cancelled",
            "details": {"cancelledBy": cancelled_by, "status": status},
        }
        self._transition(
            execution,
            status,
            ConcurrencyError,
            status="cancelled",
            completed_at=now,
            resume_token=None,
            error=dump_json(error),
        )
        for node_execution in NodeExecution.query.filter_by(execution_id=execution_id, completed_at=None):
            node_execution.finalize("failed", error=error, completed_at=now)
        self.scheduler.discard(execution_id)
        db.session.commit()

        self.logger.info("execution %s cancelled while %s", execution_id, status)
        self.audit.record(
            "execution.cancel",
            "execution",
            execution_id,
            team_id=execution.team_id,
            user_id=cancelled_by,
            details={"from": status},
        )
        return OperationResult.success(execution)

    def _test_run(
        self,
        workflow_id: int,
        variables: Mapping[str, Any] | None,
        triggered_by: str | None,
        limit: int,
    ) -> OperationResult[dict[str, Any]]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        workflow = db.session.get(Workflow, workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", workflow_id)
        if workflow.definition_id is None:
            raise StateError(f"workflow {workflow_id} has no definition")

        definition = self._definition(workflow.definition_id)
        node = definition.trigger_node
        if node is None:
            raise GraphError(f"workflow {workflow_id} has no trigger node")

        context, secrets = self.context_store.seed(definition, variables)
        context.update(secrets)
        identity = {
            "execution_id": None,
            "workflow_id": workflow.id,
            "team_id": workflow.team_id,
            "triggered_by": triggered_by,
        }
        results: list[dict[str, Any]] = []
        previous: str | None = None
        completed = False

        while node is not None and len(results) < limit:
            entry: dict[str, Any] = {"nodeId": node.id, "nodeName": node.label, "type": node.kind.value}
            results.append(entry)
            scope = _build_scope(
                definition,
                context,
                previous,
                {"id": None, "workflowId": workflow.id, "teamId": workflow.team_id, "triggeredBy": triggered_by},
            )

            if node.kind is NodeKind.APPROVAL:
                # opening a request would persist rows; check the config only
                try:
                    config = parse_node_config(
                        node,
                        resolve_object(node.data, scope),
                        approval_timeout_bounds=self.approval_timeout_bounds,
                    )
                except WorkflowError as exc:
                    result: Completed | Failed | Suspended | Branch = Failed(exc)
                else:
                    result = Suspended(SUSPEND_APPROVAL, "", output={"approvers": config.approver_list()})
            else:
                result = self._run_node(node, scope, secrets, **identity)

            if isinstance(result, Failed):
                entry.update(status="failed", error=mask_secrets(result.error.to_dict(), secrets))
                break
            if isinstance(result, Suspended):
                entry.update(status="suspended", reason=result.reason, output=mask_secrets(result.output, secrets))
                break

            entry.update(status="success", output=mask_secrets(result.output, secrets))
            label = result.edge_label if isinstance(result, Branch) else None
            if label is not None:
                entry["branch"] = mask_secrets(label, secrets)
            context[node.id] = result.output
            previous = node.id

            try:
                edge = self._next_edge(definition, node, label)
            except GraphError as exc:
                entry.update(status="failed", error=mask_secrets(exc.to_dict(), secrets))
                break
            if edge is None:
                completed = True
                break
            node = definition.node(edge.target)

        self.logger.info("test run of workflow %s covered %d node(s)", workflow.id, len(results))
        return OperationResult.success(
            {
                "workflowId": workflow.id,
                "definitionId": workflow.definition_id,
                "results": results,
                "totalNodes": len(definition.nodes),
                "testedNodes": len(results),
                "completed": completed,
            }
        )

    # ------------------------------------------------------------------
    # the walk
    # ------------------------------------------------------------------

    def _drive(self, execution: Execution, token: str | None) -> OperationResult[Execution]:
        definition = self._definition(execution.definition_id)

        while True:
            node = definition.node(execution.current_node_id or "")
            if node is None:
                error = GraphError(f"node {execution.current_node_id} does not exist in the definition")
                self._fail(execution, None, error)
                return OperationResult(value=execution, error=error)

            node_execution = self._open(execution, node)
            result = self._run(execution, definition, node, token)
            token = None

            if isinstance(result, Suspended):
                self._suspend(execution, node_execution, node, result)
                return OperationResult.success(execution)

            if isinstance(result, Failed):
                self._fail(execution, node_execution, result.error)
                return OperationResult.success(execution)

            label = result.edge_label if isinstance(result, Branch) else None
            try:
                edge = self._next_edge(definition, node, label)
            except GraphError as exc:
                self._fail(execution, node_execution, exc)
                return OperationResult(value=execution, error=_mask_error(exc, execution.secret_data))

            self._complete(execution, node_execution, node, result.output, edge)
            if edge is None:
                return OperationResult.success(execution)

    def _open(self, execution: Execution, node: Node) -> NodeExecution:
        """Open a node record, reusing one left pending by a suspension."""

        node_execution = (
            NodeExecution.query.filter_by(execution_id=execution.id, node_id=node.id, completed_at=None)
            .order_by(NodeExecution.id.desc())
            .first()
        )
        if node_execution is None:
            node_execution = NodeExecution(
                execution_id=execution.id,
                node_id=node.id,
                node_type=node.kind.value,
                node_label=node.label,
                status="running",
                input=dump_json(self.context_store.masked_context(execution)),
                started_at=self.clock(),
            )
            db.session.add(node_execution)
        else:
            node_execution.status = "running"
        self._transition(execution, "running")
        db.session.commit()
        return node_execution

    def _scope(self, execution: Execution, definition: Definition) -> dict[str, Any]:
        last = (
            NodeExecution.query.filter_by(execution_id=execution.id, status="success")
            .order_by(NodeExecution.completed_at.desc(), NodeExecution.id.desc())
            .first()
        )
        return _build_scope(
            definition,
            self.context_store.load(execution),
            last.node_id if last is not None else None,
            {
                "id": execution.id,
                "workflowId": execution.workflow_id,
                "teamId": execution.team_id,
                "triggeredBy": execution.triggered_by,
            },
        )

    def _run(
        self, execution: Execution, definition: Definition, node: Node, token: str | None
    ) -> Completed | Failed | Suspended | Branch:
        return self._run_node(
            node,
            self._scope(execution, definition),
            execution.secret_data,
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            team_id=execution.team_id,
            triggered_by=execution.triggered_by,
            resume_token=token,
        )

    def _run_node(
        self,
        node: Node,
        scope: dict[str, Any],
        secrets: Mapping[str, Any],
        **identity: Any,
    ) -> Completed | Failed | Suspended | Branch:
        """Resolve the node's config against ``scope`` and hand it to its executor."""

        executor = self.executors.get(node.kind)
        if executor is None:
            return Failed(ValidationError(f"no executor registered for {node.kind.value} nodes"))

        try:
            config = parse_node_config(
                node,
                resolve_object(node.data, scope),
                approval_timeout_bounds=self.approval_timeout_bounds,
            )
        except WorkflowError as exc:
            return Failed(exc)

        context = NodeContext(
            node=node,
            config=config,
            scope=scope,
            now=self.clock(),
            logger=self.logger,
            secrets=secrets,
            **identity,
        )
        try:
            return executor.execute(context)
        except WorkflowError as exc:
            return Failed(exc)
        except Exception as exc:
            message = mask_secrets(str(exc), secrets)
            self.logger.error(
                "execution %s: %s node %s raised %s: %s",
                identity.get("execution_id"),
                node.kind.value,
                node.id,
                type(exc).__name__,
                message,
            )
            return Failed(ExecutorError(f"{node.kind.value} node {node.id} raised: {message}", {"node": node.id}))

    def _next_edge(self, definition: Definition, node: Node, label: str | None) -> Edge | None:
        outgoing = definition.outgoing(node.id)

        if label is not None:
            for edge in outgoing:
                if edge.label == label:
                    return edge
            for edge in outgoing:
                if edge.label == DEFAULT_BRANCH:
                    return edge
            raise GraphError(
                f"{node.kind.value} node {node.id} produced branch '{label}' but has no matching edge",
                {"node": node.id, "branch": label},
            )

        if not outgoing:
            return None
        if len(outgoing) > 1:
            self.logger.warning(
                "node %s has %d outgoing edges; following the first to %s",
                node.id,
                len(outgoing),
                outgoing[0].target,
            )
        return outgoing[0]

    # ------------------------------------------------------------------
    # outcomes
    # ------------------------------------------------------------------

    def _complete(
        self,
        execution: Execution,
        node_execution: NodeExecution,
        node: Node,
        output: Any,
        edge: Edge | None,
    ) -> None:
        self.context_store.set(execution, node.id, output, commit=False)
        node_execution.finalize(
            "success", output=self.context_store.mask(execution, output), completed_at=self.clock()
        )

        if edge is not None:
            self._transition(execution, "running", current_node_id=edge.target)
            db.session.commit()
            return

        definition = self._definition(execution.definition_id)
        context = self.context_store.masked_context(execution)
        final_output = {
            other.id: context[other.id] for other in definition.nodes if other.id in context
        }
        self._transition(
            execution,
            "running",
            status="success",
            output=dump_json(final_output),
            completed_at=self.clock(),
        )
        db.session.commit()
        self.logger.info("execution %s completed at node %s", execution.id, node.id)
        self.audit.record(
            "execution.success", "execution", execution.id, team_id=execution.team_id
        )

    def _suspend(
        self, execution: Execution, node_execution: NodeExecution, node: Node, result: Suspended
    ) -> None:
        status = "awaiting_approval" if result.reason == SUSPEND_APPROVAL else "pending"
        self._transition(
            execution,
            "running",
            status=status,
            current_node_id=node.id,
            resume_token=f"{result.reason}:{result.resume_token}",
        )
        node_execution.status = "pending"
        if result.output is not None:
            node_execution.output = dump_json(self.context_store.mask(execution, result.output))
        if result.reason == SUSPEND_DELAY and result.wake_at is not None:
            self.scheduler.schedule_resume(execution.id, result.wake_at)
        db.session.commit()
        self.logger.info("execution %s suspended at node %s (%s)", execution.id, node.id, result.reason)

    def _fail(
        self, execution: Execution, node_execution: NodeExecution | None, error: WorkflowError
    ) -> None:
        payload = error.to_dict()
        payload["nodeId"] = execution.current_node_id
        payload = self.context_store.mask(execution, payload)
        now = self.clock()

        self._transition(
            execution,
            "running",
            status="failed",
            error=dump_json(payload),
            completed_at=now,
        )
        if node_execution is not None:
            node_execution.finalize("failed", error=payload, completed_at=now)
        db.session.commit()
        self.logger.warning(
            "execution %s failed at node %s: %s", execution.id, payload["nodeId"], payload["message"]
        )
        self.audit.record(
            "execution.failed",
            "execution",
            execution.id,
            team_id=execution.team_id,
            details={"nodeId": payload["nodeId"], "code": payload["code"]},
        )
