"""ralphci reporting: report file, append-only history, and webhook alerts."""

from __future__ import annotations

import json
from typing import Any

import httpx

from ralphci.constants import WEBHOOK_EVENT_SUBSCRIPTIONS, WEBHOOK_TIMEOUT_SECONDS
from ralphci.models import ReportEvent, RunContext, WebhookConfig
from ralphci.plan import _plan_progress_or_empty
from ralphci.utils import (
    _append_jsonl,
    _append_log,
    _compact_log_text,
    _json_default,
    _utc_now,
    _write_json_atomic,
)
from ralphci.workspace import Workspace


def _webhook_event_for(event: str, subscribed: tuple[str, ...]) -> str | None:
    """Return the event name to notify for *event*, or None when unsubscribed."""
    subscription = WEBHOOK_EVENT_SUBSCRIPTIONS.get(event)
    if subscription is None or subscription not in subscribed:
        return None
    return event


class Reporter:
    """Records report events and forwards the subscribed ones to a webhook.

    Every failure here is logged and swallowed; reporting never changes the
    loop's outcome.
    """

    def __init__(
        self,
        context: RunContext,
        *,
        mode: str,
        webhook: WebhookConfig,
        workspace: Workspace | None = None,
        transport: httpx.BaseTransport | None = None,
        echo: bool = True,
    ) -> None:
        self.context = context
        self.mode = mode
        self.webhook = webhook
        self.workspace = workspace or Workspace(context.project_dir)
        self._transport = transport
        self.echo = echo

    def _log(self, message: str) -> None:
        _append_log(self.context, message, echo=self.echo)

    def build_payload(self, event: ReportEvent) -> dict[str, Any]:
        plan = event.plan
        if plan.total == 0:
            plan = _plan_progress_or_empty(self.context.plan_path)
        return {
            "event": event.event,
            "timestamp": _utc_now(),
            "loop_id": event.loop_id,
            "iteration": event.iteration,
            "git_sha": self.workspace.short_revision(),
            "branch": self.workspace.branch(),
            "mode": self.mode,
            "cost_usd": event.cost_usd,
            "total_cost_usd": event.total_cost_usd,
            "files_changed": event.files_changed,
            "plan_done": plan.done,
            "plan_pending": plan.pending,
            "plan_total": plan.total,
            "exit_code": event.exit_code,
            "reason": event.reason,
        }

    def emit(self, event: ReportEvent) -> dict[str, Any] | None:
        try:
            payload = self.build_payload(event)
            _write_json_atomic(self.context.report_path, payload)
            _append_jsonl(self.context.history_path, payload)
        except (OSError, TypeError, ValueError) as exc:
            self._log(f"WARN: report write failed for event={event.event}: {exc}")
            return None
        self._notify(payload)
        return payload

    # -- webhook -----------------------------------------------------------

    def _webhook_payload(self, notify_event: str, report: dict[str, Any]) -> dict[str, Any]:
        repo_name = self.context.project_dir.resolve().name
        plan_progress = f"{report['plan_done']}/{report['plan_total']}"
        text = (
            f"Ralph CI [{repo_name}]: {notify_event} (loop {report['loop_id']}, "
            f"iter {report['iteration']}, ${report['total_cost_usd']} spent, "
            f"{plan_progress} done)"
        )
        return {
            "text": text,
            "event": notify_event,
            "repo": repo_name,
            "branch": report["branch"],
            "loop_id": report["loop_id"],
            "iteration": report["iteration"],
            "total_cost_usd": report["total_cost_usd"],
            "plan_progress": plan_progress,
            "git_sha": report["git_sha"],
            "reason": report["reason"],
            "exit_code": report["exit_code"],
        }

    def _notify(self, report: dict[str, Any]) -> bool:
        if not self.webhook.url:
            return False
        notify_event = _webhook_event_for(str(report["event"]), self.webhook.events)
        if notify_event is None:
            return False
        body = self._webhook_payload(notify_event, report)
        try:
            with httpx.Client(
                timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = client.post(
                    self.webhook.url,
                    content=json.dumps(body, default=_json_default),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._log(f"WARN: webhook delivery failed: {_compact_log_text(str(exc))}")
            return False
        self._log(f"webhook delivered event={notify_event}")
        return True
