"""
Sync orchestration.

A sync runs a connector's named steps in order and reports progress through a
``queue.Queue``; the HTTP layer drains the queue into server-sent events. A
failing step is reported and the remaining steps still run. Connectors that
trigger resolution run post-sync identity resolution once every step has
finished.
"""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Sequence

from flask import Flask, current_app
from sqlalchemy.exc import SQLAlchemyError

from config.monitoring import IdentityMonitoring
from flask_app.identity.audit import AuditLogSink
from flask_app.identity.errors import IdentityResolutionError
from flask_app.identity.pipeline.post_sync import trigger_post_sync_resolution
from flask_app.models import db
from flask_app.sync.registry import GRAPH_NODES_STEP, ConnectorDescriptor
from flask_app.sync.steps import SourceRecordImporter, StepCounters, sync_graph_nodes

EVENT_PROGRESS = "progress"
EVENT_RESOLUTION = "resolution"
EVENT_COMPLETE = "complete"

STATUS_STARTED = "started"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    event: str
    status: str
    step: str | None = None
    label: str | None = None
    step_index: int | None = None
    total_steps: int | None = None
    result: Mapping[str, Any] | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.event, "status": self.status}
        for key in ("step", "label", "step_index", "total_steps", "result", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.as_dict(), default=str)}\n\n"


@dataclass
class SyncStep:
    key: str
    label: str
    fn: Callable[[], StepCounters]


@dataclass(slots=True)
class SyncSummary:
    connector: str
    organization_id: int
    steps: dict[str, dict[str, Any]] = field(default_factory=dict)
    failed_steps: list[str] = field(default_factory=list)
    resolution: dict[str, Any] | None = None
    resolution_error: str | None = None
    cancelled: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed_steps

    @property
    def status(self) -> str:
        if self.error is not None:
            return STATUS_ERROR
        if self.cancelled:
            return STATUS_CANCELLED
        return "success" if self.ok else "warning"

    def as_dict(self) -> dict[str, Any]:
        return {
            "connector": self.connector,
            "organization_id": self.organization_id,
            "status": self.status,
            "steps": self.steps,
            "failed_steps": self.failed_steps,
            "resolution": self.resolution,
            "resolution_error": self.resolution_error,
            **({"error": self.error} if self.error is not None else {}),
        }


class SyncOrchestrator:
    """Run one connector sync for a tenant."""

    def __init__(
        self,
        connector: ConnectorDescriptor,
        organization_id: int,
        *,
        feed: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
        actor_id: str | None = None,
        channel: "queue.Queue[ProgressEvent] | None" = None,
        audit: AuditLogSink | None = None,
        steps: Sequence[SyncStep] | None = None,
        cancel: threading.Event | None = None,
    ):
        self.connector = connector
        self.organization_id = organization_id
        self.feed = feed or {}
        self.actor_id = actor_id
        self.channel = channel
        self.cancel = cancel
        self.audit = audit or AuditLogSink()
        self.steps = list(steps) if steps is not None else self.build_steps()

    def build_steps(self) -> list[SyncStep]:
        importer = SourceRecordImporter(self.connector.source_type)
        built: list[SyncStep] = []
        for descriptor in self.connector.steps:
            if descriptor == GRAPH_NODES_STEP:
                fn = lambda: sync_graph_nodes(self.organization_id, self.connector.source_type)  # noqa: E731
            else:
                rows = list(self.feed.get(descriptor.key) or ())
                fn = lambda rows=rows: importer.import_rows(self.organization_id, rows)  # noqa: E731
            built.append(SyncStep(key=descriptor.key, label=descriptor.label, fn=fn))
        return built

    def _emit(self, event: ProgressEvent) -> None:
        if self.channel is not None:
            self.channel.put(event)

    def _audit(self, level: str, message: str, details: Mapping[str, Any] | None = None) -> None:
        try:
            self.audit.record(
                organization_id=self.organization_id,
                actor_id=self.actor_id,
                action=f"sync_{self.connector.name}",
                level=level,
                message=message,
                details=details,
            )
        except Exception:
            current_app.logger.warning("Audit sink raised; ignoring", exc_info=True)

    def run(self) -> SyncSummary:
        summary = SyncSummary(connector=self.connector.name, organization_id=self.organization_id)
        total = len(self.steps)
        self._audit("info", f"Starting {self.connector.title} sync: " + ", ".join(step.key for step in self.steps))

        try:
            for index, step in enumerate(self.steps):
                if self.cancel is not None and self.cancel.is_set():
                    summary.cancelled = True
                    current_app.logger.info(
                        f"Sync cancelled before step {step.key}",
                        extra={"organization_id": self.organization_id, "sync_connector": self.connector.name},
                    )
                    break
                self._emit(ProgressEvent(EVENT_PROGRESS, STATUS_STARTED, step.key, step.label, index, total))
                try:
                    counters = step.fn()
                except (SQLAlchemyError, IdentityResolutionError, ValueError) as exc:
                    db.session.rollback()
                    summary.failed_steps.append(step.key)
                    summary.steps[step.key] = {"error": str(exc)}
                    IdentityMonitoring.record_sync_step(connector=self.connector.name, status=STATUS_ERROR)
                    current_app.logger.error(
                        f"Sync step {step.key} failed",
                        exc_info=True,
                        extra={"organization_id": self.organization_id, "sync_connector": self.connector.name},
                    )
                    self._emit(
                        ProgressEvent(EVENT_PROGRESS, STATUS_ERROR, step.key, step.label, index, total, error=str(exc))
                    )
                    continue

                result = counters.as_dict()
                summary.steps[step.key] = result
                IdentityMonitoring.record_sync_step(connector=self.connector.name, status=STATUS_COMPLETED)
                self._emit(
                    ProgressEvent(EVENT_PROGRESS, STATUS_COMPLETED, step.key, step.label, index, total, result=result)
                )

            if self.connector.triggers_resolution and not summary.cancelled:
                self._run_resolution(summary)

            finished = f"{self.connector.title} sync " + ("cancelled" if summary.cancelled else "finished")
            if summary.failed_steps:
                finished += f" with failed steps: {', '.join(summary.failed_steps)}"
            self._audit("success" if summary.status == "success" else "warning", finished, {"steps": summary.steps})
        except Exception as exc:
            summary.error = str(exc)
            db.session.rollback()
            raise
        finally:
            # exactly one terminal event per run, crashed or not
            self._emit(ProgressEvent(EVENT_COMPLETE, summary.status, result=summary.as_dict(), error=summary.error))
        return summary

    def _run_resolution(self, summary: SyncSummary) -> None:
        """Post-sync resolution; failures are reported but never fail the sync."""
        self._emit(ProgressEvent(EVENT_RESOLUTION, STATUS_STARTED, label="Resolving identities"))
        try:
            outcome = trigger_post_sync_resolution(self.organization_id, self.actor_id)
        except (IdentityResolutionError, SQLAlchemyError) as exc:
            db.session.rollback()
            summary.resolution_error = str(exc)
            current_app.logger.warning(
                "Post-sync identity resolution failed",
                exc_info=True,
                extra={"organization_id": self.organization_id, "sync_connector": self.connector.name},
            )
            self._emit(ProgressEvent(EVENT_RESOLUTION, STATUS_ERROR, label="Resolving identities", error=str(exc)))
            return
        summary.resolution = outcome.as_dict()
        self._emit(
            ProgressEvent(EVENT_RESOLUTION, STATUS_COMPLETED, label="Resolving identities", result=summary.resolution)
        )


def stream_sync(
    app: Flask,
    connector: ConnectorDescriptor,
    organization_id: int,
    *,
    feed: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
    actor_id: str | None = None,
    timeout: float = 300.0,
    cancel: threading.Event | None = None,
) -> Iterator[str]:
    """
    Run a sync on a worker thread and yield its progress as SSE frames.

    The worker gets its own application context (and so its own database
    session); the generator stops after the ``complete`` event. Closing the
    generator early, as Werkzeug does when the client disconnects, sets
    ``cancel`` so the worker stops before its next step.
    """
    channel: "queue.Queue[ProgressEvent]" = queue.Queue()
    cancel = cancel or threading.Event()
    log_extra = {"sync_connector": connector.name, "organization_id": organization_id}

    def worker() -> None:
        with app.app_context():
            try:
                orchestrator = SyncOrchestrator(
                    connector, organization_id, feed=feed, actor_id=actor_id, channel=channel, cancel=cancel
                )
            except Exception as exc:
                app.logger.error("Sync could not start", exc_info=True, extra=log_extra)
                channel.put(ProgressEvent(EVENT_COMPLETE, STATUS_ERROR, error=str(exc)))
                db.session.remove()
                return
            try:
                orchestrator.run()
            except Exception:
                # run() has already put the terminal complete event
                app.logger.error("Sync worker crashed", exc_info=True, extra=log_extra)
            finally:
                db.session.remove()

    thread = threading.Thread(target=worker, name=f"sync-{connector.name}-{organization_id}", daemon=True)
    thread.start()
    try:
        while True:
            try:
                event = channel.get(timeout=timeout)
            except queue.Empty:
                yield ProgressEvent(EVENT_COMPLETE, STATUS_ERROR, error="sync timed out").to_sse()
                return
            yield event.to_sse()
            if event.event == EVENT_COMPLETE:
                return
    finally:
        cancel.set()
        thread.join(timeout=1.0)
        if thread.is_alive():
            app.logger.warning("Sync stream closed; worker is finishing its current step", extra=log_extra)
