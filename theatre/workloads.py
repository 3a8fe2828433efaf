"""Console, console template and console authorisation resources."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from theatre.rbac import Subject

GROUP = "workloads.crd.gocardless.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

_DOUBLE_WILDCARD = "**"
_WILDCARD = "*"


class ConsolePhase(str, enum.Enum):
    """Lifecycle phases of a console."""

    PENDING_AUTHORISATION = "Pending Authorisation"
    PENDING = "Pending"
    RUNNING = "Running"
    STOPPED = "Stopped"
    DESTROYED = "Destroyed"


class ValidationError(ValueError):
    """A resource failed validation; ``errors`` lists every problem found."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class NoRuleMatchedError(LookupError):
    """No authorisation rule matched a command and no default rule exists."""

    def __init__(self) -> None:
        super().__init__("no rules matched the command")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _subjects(data: Any) -> list[Subject]:
    return [Subject.from_dict(s) for s in data or []]


_META_KEYS = frozenset({"name", "namespace", "labels", "annotations", "creationTimestamp"})


@dataclass
class ObjectMeta:
    """Object metadata; unrecognised keys are kept in ``extra``."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    creation_timestamp: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ObjectMeta:
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            creation_timestamp=_parse_time(data.get("creationTimestamp")),
            extra={k: v for k, v in data.items() if k not in _META_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        if self.name:
            out["name"] = self.name
        if self.namespace:
            out["namespace"] = self.namespace
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        if self.creation_timestamp is not None:
            out["creationTimestamp"] = _format_time(self.creation_timestamp)
        return out


@dataclass
class ConsoleAuthorisers:
    """How many authorisations are needed, and from whom."""

    authorisations_required: int = 0
    subjects: list[Subject] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleAuthorisers:
        return cls(
            authorisations_required=data.get("authorisationsRequired", 0),
            subjects=_subjects(data.get("subjects")),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "authorisationsRequired": self.authorisations_required,
            "subjects": [s.to_dict() for s in self.subjects],
        }


@dataclass
class ConsoleAuthorisationRule(ConsoleAuthorisers):
    """Authorisers required for commands matching ``match_command_elements``."""

    name: str = ""
    match_command_elements: list[str] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleAuthorisationRule:
        return cls(
            name=data.get("name", ""),
            match_command_elements=list(data.get("matchCommandElements") or []),
            authorisations_required=data.get("authorisationsRequired", 0),
            subjects=_subjects(data.get("subjects")),
        )

    def _to_dict(self) -> dict[str, Any]:
        out = {
            "name": self.name,
            "matchCommandElements": list(self.match_command_elements),
        }
        out.update(super()._to_dict())
        return out

    def _matches(self, command: Sequence[str]) -> bool:
        matchers = self.match_command_elements
        if not matchers:
            return False
        if matchers[-1] == _DOUBLE_WILDCARD:
            if len(command) < len(matchers) - 1:
                return False
        elif len(command) != len(matchers):
            return False

        for matcher, element in zip(matchers, command):
            if matcher == _DOUBLE_WILDCARD:
                return True
            if matcher != _WILDCARD and matcher != element:
                return False
        return True


@dataclass
class ConsoleTemplateSpec:
    """Desired state of a console template."""

    template: dict[str, Any] = field(default_factory=dict)
    default_timeout_seconds: int = 0
    max_timeout_seconds: int = 0
    additional_attach_subjects: list[Subject] = field(default_factory=list)
    default_ttl_seconds_before_running: int | None = None
    default_ttl_seconds_after_finished: int | None = None
    authorisation_rules: list[ConsoleAuthorisationRule] = field(default_factory=list)
    default_authorisation_rule: ConsoleAuthorisers | None = None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleTemplateSpec:
        default_rule = data.get("defaultAuthorisationRule")
        return cls(
            template=dict(data.get("template") or {}),
            default_timeout_seconds=data.get("defaultTimeoutSeconds", 0),
            max_timeout_seconds=data.get("maxTimeoutSeconds", 0),
            additional_attach_subjects=_subjects(data.get("additionalAttachSubjects")),
            default_ttl_seconds_before_running=data.get("defaultTtlSecondsBeforeRunning"),
            default_ttl_seconds_after_finished=data.get("defaultTtlSecondsAfterFinished"),
            authorisation_rules=[
                ConsoleAuthorisationRule._from_dict(r) for r in data.get("authorisationRules") or []
            ],
            default_authorisation_rule=(
                ConsoleAuthorisers._from_dict(default_rule) if default_rule is not None else None
            ),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "template": dict(self.template),
            "defaultTimeoutSeconds": self.default_timeout_seconds,
            "maxTimeoutSeconds": self.max_timeout_seconds,
        }
        if self.additional_attach_subjects:
            out["additionalAttachSubjects"] = [s.to_dict() for s in self.additional_attach_subjects]
        if self.default_ttl_seconds_before_running is not None:
            out["defaultTtlSecondsBeforeRunning"] = self.default_ttl_seconds_before_running
        if self.default_ttl_seconds_after_finished is not None:
            out["defaultTtlSecondsAfterFinished"] = self.default_ttl_seconds_after_finished
        if self.authorisation_rules:
            out["authorisationRules"] = [r._to_dict() for r in self.authorisation_rules]
        if self.default_authorisation_rule is not None:
            out["defaultAuthorisationRule"] = self.default_authorisation_rule._to_dict()
        return out


@dataclass
class ConsoleTemplate:
    """A template from which consoles are created."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleTemplateSpec = field(default_factory=ConsoleTemplateSpec)

    KIND = "ConsoleTemplate"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsoleTemplate:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=ConsoleTemplateSpec._from_dict(data.get("spec") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec._to_dict(),
        }

    def default_command_with_args(self) -> list[str]:
        """Command followed by arguments of the template's first container."""
        containers = (self.spec.template.get("spec") or {}).get("containers") or []
        if not containers:
            raise ValueError("template has no containers defined")
        first = containers[0]
        return list(first.get("command") or []) + list(first.get("args") or [])

    def authorisation_rule_for_command(self, command: Sequence[str]) -> ConsoleAuthorisationRule:
        """The first rule matching ``command``, else the default rule.

        ``*`` matches any single element; a trailing ``**`` matches zero or
        more further elements; anything else must match exactly.
        """
        self.validate()

        for rule in self.spec.authorisation_rules:
            if rule._matches(command):
                return rule

        default = self.spec.default_authorisation_rule
        if default is not None:
            return ConsoleAuthorisationRule(
                name="default",
                authorisations_required=default.authorisations_required,
                subjects=list(default.subjects),
            )
        raise NoRuleMatchedError()

    def has_authorisation_rules(self) -> bool:
        return bool(self.spec.authorisation_rules) or self.spec.default_authorisation_rule is not None

    def validate(self) -> None:
        """Raise ValidationError listing every problem with the template."""
        errors: list[str] = []
        for i, rule in enumerate(self.spec.authorisation_rules):
            elements = rule.match_command_elements
            for j, element in enumerate(elements):
                if element == "":
                    errors.append(
                        f".spec.authorisationRules[{i}].matchCommandElements[{j}]: "
                        "an empty matcher is invalid"
                    )
                elif element == _DOUBLE_WILDCARD and j + 1 < len(elements):
                    errors.append(
                        f".spec.authorisationRules[{i}].matchCommandElements[{j}]: "
                        "a double wildcard is only valid at the end of the pattern"
                    )

        if self.spec.authorisation_rules and self.spec.default_authorisation_rule is None:
            errors.append(
                ".spec.defaultAuthorisationRule must be set if authorisation rules are defined"
            )

        if errors:
            raise ValidationError(errors)


@dataclass
class ConsoleSpec:
    """Desired state of a console."""

    user: str = ""
    reason: str = ""
    timeout_seconds: int = 0
    console_template_ref: str = ""
    ttl_seconds_before_running: int | None = None
    ttl_seconds_after_finished: int | None = None
    command: list[str] = field(default_factory=list)
    noninteractive: bool = False

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleSpec:
        return cls(
            user=data.get("user", ""),
            reason=data.get("reason", ""),
            timeout_seconds=data.get("timeoutSeconds", 0),
            console_template_ref=(data.get("consoleTemplateRef") or {}).get("name", ""),
            ttl_seconds_before_running=data.get("ttlSecondsBeforeRunning"),
            ttl_seconds_after_finished=data.get("ttlSecondsAfterFinished"),
            command=list(data.get("command") or []),
            noninteractive=bool(data.get("noninteractive", False)),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"user": self.user, "reason": self.reason}
        if self.timeout_seconds:
            out["timeoutSeconds"] = self.timeout_seconds
        out["consoleTemplateRef"] = {"name": self.console_template_ref}
        if self.ttl_seconds_before_running is not None:
            out["ttlSecondsBeforeRunning"] = self.ttl_seconds_before_running
        if self.ttl_seconds_after_finished is not None:
            out["ttlSecondsAfterFinished"] = self.ttl_seconds_after_finished
        if self.command:
            out["command"] = list(self.command)
        if self.noninteractive:
            out["noninteractive"] = True
        return out


@dataclass
class ConsoleStatus:
    """Observed state of a console; a phase of None means just created."""

    pod_name: str = ""
    expiry_time: datetime | None = None
    completion_time: datetime | None = None
    phase: ConsolePhase | None = None

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleStatus:
        phase = data.get("phase")
        return cls(
            pod_name=data.get("podName", ""),
            expiry_time=_parse_time(data.get("expiryTime")),
            completion_time=_parse_time(data.get("completionTime")),
            phase=ConsolePhase(phase) if phase else None,
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"podName": self.pod_name}
        if self.expiry_time is not None:
            out["expiryTime"] = _format_time(self.expiry_time)
        if self.completion_time is not None:
            out["completionTime"] = _format_time(self.completion_time)
        out["phase"] = self.phase.value if self.phase is not None else ""
        return out


@dataclass
class Console:
    """A console environment requested by a user."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleSpec = field(default_factory=ConsoleSpec)
    status: ConsoleStatus = field(default_factory=ConsoleStatus)

    KIND = "Console"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Console:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=ConsoleSpec._from_dict(data.get("spec") or {}),
            status=ConsoleStatus._from_dict(data.get("status") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec._to_dict(),
            "status": self.status._to_dict(),
        }

    def creating(self) -> bool:
        return self.status.phase is None

    def pending_authorisation(self) -> bool:
        return self.status.phase is ConsolePhase.PENDING_AUTHORISATION

    def pending_job(self) -> bool:
        """True in the phases that come before the job is created."""
        return self.creating() or self.pending_authorisation()

    def pending(self) -> bool:
        return self.status.phase is ConsolePhase.PENDING

    def running(self) -> bool:
        return self.status.phase is ConsolePhase.RUNNING

    def stopped(self) -> bool:
        return self.status.phase is ConsolePhase.STOPPED

    def destroyed(self) -> bool:
        return self.status.phase is ConsolePhase.DESTROYED

    def pre_running(self) -> bool:
        return self.creating() or self.pending_authorisation() or self.pending()

    def post_running(self) -> bool:
        return self.stopped() or self.destroyed()

    def ttl_seconds_after_finished(self) -> timedelta:
        if self.spec.ttl_seconds_after_finished is None:
            raise ValueError("ttlSecondsAfterFinished is not set")
        return timedelta(seconds=self.spec.ttl_seconds_after_finished)

    def ttl_seconds_before_running(self) -> timedelta:
        if self.spec.ttl_seconds_before_running is None:
            raise ValueError("ttlSecondsBeforeRunning is not set")
        return timedelta(seconds=self.spec.ttl_seconds_before_running)

    def gc_time(self) -> datetime | None:
        """When the console may be garbage collected, or None while running."""
        if self.pre_running():
            created = self.metadata.creation_timestamp
            if created is None:
                raise ValueError("console has no creation timestamp")
            return created + self.ttl_seconds_before_running()
        if self.post_running():
            finished = self.status.completion_time or self.status.expiry_time
            if finished is None:
                raise ValueError("console has neither a completion nor an expiry time")
            return finished + self.ttl_seconds_after_finished()
        return None

    def eligible_for_gc(self, now: datetime | None = None) -> bool:
        gc_time = self.gc_time()
        if gc_time is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)
        return gc_time < now


@dataclass
class ConsoleAuthorisationSpec:
    """Authorisations given to a console."""

    console_ref: str = ""
    authorisations: list[Subject] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ConsoleAuthorisationSpec:
        return cls(
            console_ref=(data.get("consoleRef") or {}).get("name", ""),
            authorisations=_subjects(data.get("authorisations")),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "consoleRef": {"name": self.console_ref},
            "authorisations": [s.to_dict() for s in self.authorisations],
        }


@dataclass
class ConsoleAuthorisation:
    """The record of who has authorised a console."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ConsoleAuthorisationSpec = field(default_factory=ConsoleAuthorisationSpec)

    KIND = "ConsoleAuthorisation"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsoleAuthorisation:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=ConsoleAuthorisationSpec._from_dict(data.get("spec") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec._to_dict(),
        }