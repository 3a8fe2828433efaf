"""Recording of console lifecycle events through a publisher."""

from __future__ import annotations

import enum
import logging
import signal
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol

from theatre.workloads import Console, ConsoleAuthorisationRule

EVENT_VERSION = "v1alpha1"
KIND_CONSOLE = "console"

_log = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """The lifecycle moments that produce an event."""

    REQUEST = "request"
    AUTHORISE = "authorise"
    START = "start"
    ATTACH = "attach"
    TERMINATED = "terminated"


@dataclass
class LifecycleEvent:
    """An event describing one moment in the life of a console."""

    event: EventKind
    id: str
    spec: dict[str, Any]
    observed_at: datetime
    version: str = EVENT_VERSION
    kind: str = KIND_CONSOLE
    annotations: dict[str, str] = field(default_factory=dict)


class Publisher(Protocol):
    """Anything that can deliver an event and return the identifier it was given."""

    def publish(self, event: LifecycleEvent) -> str: ...


@dataclass(frozen=True)
class ConsoleIdBuilder:
    """Builds identifiers that are unique to a console within a cluster context."""

    context_name: str

    def build_id(self, console: Console) -> str:
        created = console.metadata.creation_timestamp
        stamp = ""
        if created is not None:
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            stamp = created.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
        return "/".join(
            (self.context_name, console.metadata.namespace, console.metadata.name, stamp)
        )


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return ""


def container_status_messages(
    container_statuses: Iterable[Mapping[str, Any]] | None,
) -> tuple[dict[str, str], dict[str, int]]:
    """Summarise container statuses as messages and exit codes keyed by container name.

    Only terminated containers have an exit code; waiting containers get a message alone.
    """
    messages: dict[str, str] = {}
    exit_codes: dict[str, int] = {}
    for status in container_statuses or []:
        name = status.get("name", "")
        state = status.get("state") or {}
        terminated = state.get("terminated")
        waiting = state.get("waiting")
        if terminated is not None:
            exit_code = terminated.get("exitCode", 0)
            parts = [f"Terminated with exit code {exit_code}"]
            if terminated.get("reason"):
                parts.append(f". Reason: {terminated['reason']}")
            if terminated.get("signal"):
                parts.append(f" (received signal {_signal_name(terminated['signal'])})")
            if terminated.get("message"):
                parts.append(f". Message: {terminated['message']}")
            messages[name] = "".join(parts)
            exit_codes[name] = exit_code
        elif waiting is not None:
            parts = ["Waiting."]
            if waiting.get("reason"):
                parts.append(f" Reason: {waiting['reason']}.")
            if waiting.get("message"):
                parts.append(f" Message: {waiting['message']}")
            messages[name] = "".join(parts)
    return messages, exit_codes


class LifecycleEventRecorder:
    """Publishes console lifecycle events and counts successes and failures.

    ``published`` and ``publish_errors`` count publications by event label.
    """

    def __init__(
        self,
        context_name: str,
        publisher: Publisher,
        id_builder: ConsoleIdBuilder | None = None,
        logger: logging.Logger | None = None,
    ):
        self.context_name = context_name
        self.publisher = publisher
        self.id_builder = id_builder or ConsoleIdBuilder(context_name)
        self.published: Counter[str] = Counter()
        self.publish_errors: Counter[str] = Counter()
        self._logger = logger or _log

    def _event(self, kind: EventKind, console: Console, spec: dict[str, Any]) -> LifecycleEvent:
        return LifecycleEvent(
            event=kind,
            id=self.id_builder.build_id(console),
            spec=spec,
            observed_at=datetime.now(timezone.utc),
        )

    def _publish(self, label: str, event: LifecycleEvent) -> str:
        try:
            event_id = self.publisher.publish(event)
        except Exception:
            self.publish_errors[label] += 1
            raise
        self.published[label] += 1
        self._logger.info(
            "event recorded", extra={"event_id": event_id, "event": event.event.value}
        )
        return event_id

    def console_request(
        self, console: Console, rule: ConsoleAuthorisationRule | None = None
    ) -> str:
        event = self._event(
            EventKind.REQUEST,
            console,
            {
                "reason": console.spec.reason,
                "username": console.spec.user,
                "context": self.context_name,
                "namespace": console.metadata.namespace,
                "console_template": console.spec.console_template_ref,
                "console": console.metadata.name,
                "required_authorisations": rule.authorisations_required if rule else 0,
                "authorisation_rule_name": rule.name if rule else "",
                "timestamp": console.metadata.creation_timestamp,
                "labels": dict(console.metadata.labels),
            },
        )
        return self._publish("console_request", event)

    def console_authorise(self, console: Console, username: str) -> str:
        event = self._event(EventKind.AUTHORISE, console, {"username": username})
        return self._publish("console_authorise", event)

    def console_start(self, console: Console, job_name: str) -> str:
        event = self._event(EventKind.START, console, {"job": job_name})
        return self._publish("console_start", event)

    def console_attach(self, console: Console, username: str, container_name: str) -> str:
        event = self._event(
            EventKind.ATTACH,
            console,
            {
                "username": username,
                "pod": console.status.pod_name,
                "container": container_name,
            },
        )
        return self._publish("console_attach", event)

    def console_terminate(
        self, console: Console, timed_out: bool, pod: Mapping[str, Any] | None = None
    ) -> str:
        messages: dict[str, str] = {}
        exit_codes: dict[str, int] = {}
        if pod is not None:
            status = pod.get("status") or {}
            for key in ("initContainerStatuses", "containerStatuses", "ephemeralContainerStatuses"):
                found_messages, found_codes = container_status_messages(status.get(key))
                messages.update(found_messages)
                exit_codes.update(found_codes)

        event = self._event(
            EventKind.TERMINATED,
            console,
            {
                "timed_out": timed_out,
                "container_statuses": messages,
                "exit_codes": exit_codes,
            },
        )
        return self._publish("console_terminate", event)