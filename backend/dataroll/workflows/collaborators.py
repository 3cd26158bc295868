"""Default implementations of the services the engine talks to.

Each collaborator is injected into the engine, so tests and deployments can
swap any of them without touching engine code.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import requests

from ..extensions import db
from ..models.audit import AuditLog
from ..models.base import dump_json
from ..models.team import TeamMembership
from .errors import ExecutorError
from .nodes import HTTP_ACTIONS

logger = logging.getLogger(__name__)

ActionHandler = Callable[..., Any]
NotificationTransport = Callable[..., Any]


class PermissionChecker(Protocol):
    def is_member(self, user_id: str, team_id: str) -> bool: ...

    def is_team_admin(self, user_id: str, team_id: str) -> bool: ...


class ActionInvoker(Protocol):
    def invoke(self, action: str, parameters: Mapping[str, Any], *, timeout: float) -> Any: ...


class NotificationDispatcher(Protocol):
    def dispatch(
        self, provider: str, recipients: list[str], message: str, options: Mapping[str, Any]
    ) -> Any: ...


class DatabasePermissionChecker:
    """Team membership checks backed by the ``team_memberships`` table."""

    def _membership(self, user_id: str, team_id: str) -> TeamMembership | None:
        if not user_id or not team_id:
            return None
        return TeamMembership.query.filter_by(team_id=team_id, user_id=user_id).first()

    def is_member(self, user_id: str, team_id: str) -> bool:
        return self._membership(user_id, team_id) is not None

    def is_team_admin(self, user_id: str, team_id: str) -> bool:
        membership = self._membership(user_id, team_id)
        return membership is not None and membership.role == "admin"


class AuditTrail:
    """Append audit entries; a failing write is logged and otherwise ignored.

    Entries are committed on their own, so call this only after the owning
    operation has committed.
    """

    def record(
        self,
        action: str,
        resource: str,
        resource_id: Any = None,
        *,
        team_id: str | None = None,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            entry = AuditLog(
                action=action,
                resource=resource,
                resource_id=None if resource_id is None else str(resource_id),
                team_id=team_id,
                user_id=user_id,
                details=dump_json(dict(details or {})),
            )
            db.session.add(entry)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("failed to persist audit entry %s for %s %s", action, resource, resource_id)


class RequestsActionInvoker:
    """Runs HTTP actions directly and dispatches migration actions to registered handlers."""

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, action: str, handler: ActionHandler) -> None:
        self._handlers[action] = handler

    def invoke(self, action: str, parameters: Mapping[str, Any], *, timeout: float) -> Any:
        if action in self._handlers:
            try:
                return self._handlers[action](dict(parameters), timeout=timeout)
            except ExecutorError:
                raise
            except Exception as exc:
                raise ExecutorError(f"action {action} failed: {exc}", {"action": action}) from exc

        if action in HTTP_ACTIONS:
            return self._http_call(parameters, timeout)

        raise ExecutorError(f"no handler registered for action {action}", {"action": action})

    def _http_call(self, parameters: Mapping[str, Any], timeout: float) -> dict[str, Any]:
        method = parameters.get("method") or "GET"
        url = parameters["url"]
        body = parameters.get("body")
        kwargs: dict[str, Any] = {"headers": parameters.get("headers"), "timeout": timeout}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = body

        try:
            response = self._session.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExecutorError(f"{method} {url} failed: {exc}", {"url": url}) from exc

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return {"status": response.status_code, "body": payload}


class RequestsNotificationDispatcher:
    """Delivers slack and webhook notifications; other providers need a transport."""

    def __init__(
        self,
        *,
        slack_webhook_url: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._slack_webhook_url = slack_webhook_url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._transports: dict[str, NotificationTransport] = {}

    def register(self, provider: str, transport: NotificationTransport) -> None:
        self._transports[provider] = transport

    def dispatch(
        self, provider: str, recipients: list[str], message: str, options: Mapping[str, Any]
    ) -> Any:
        if provider in self._transports:
            return self._transports[provider](recipients, message, dict(options))

        if provider == "slack":
            url = options.get("webhook") or options.get("url") or self._slack_webhook_url
            if not url:
                raise ExecutorError("slack notifications need a webhook url")
            payload: dict[str, Any] = {"text": message}
            if options.get("channel"):
                payload["channel"] = options["channel"]
            return self._post(url, payload)

        if provider == "webhook":
            url = options.get("url") or options.get("webhook")
            payload = {"message": message, "recipients": recipients}
            if options.get("subject"):
                payload["subject"] = options["subject"]
            return self._post(url, payload)

        raise ExecutorError(f"no transport registered for {provider} notifications")

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._session.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExecutorError(f"notification delivery to {url} failed: {exc}") from exc
        return {"status": response.status_code}
