"""Admission webhooks for consoles, console authorisations and console templates."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Protocol

from theatre.lifecycle import LifecycleEventRecorder
from theatre.rbac import Subject
from theatre.workloads import (
    Console,
    ConsoleAuthorisation,
    ConsoleTemplate,
    ValidationError,
)

_log = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_INTERNAL_SERVER_ERROR = 500

CONSOLE_NAME_LABEL = "console-name"

# Called with the object the event concerns, a reason and a message.
EventRecorder = Callable[[Mapping[str, Any], str, str], None]


class ConsoleClient(Protocol):
    """Reads the cluster objects the webhooks need; raises when one cannot be read."""

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]: ...

    def get_console(self, namespace: str, name: str) -> Console: ...


@dataclass
class AdmissionRequest:
    """An admission review request."""

    uid: str
    username: str
    name: str = ""
    namespace: str = ""
    object: dict[str, Any] = field(default_factory=dict)
    old_object: dict[str, Any] | None = None
    dry_run: bool = False


@dataclass
class AdmissionResponse:
    """The answer to an admission request, with an optional JSON patch."""

    allowed: bool
    code: int = HTTP_OK
    message: str = ""
    patch: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def allowed_response(cls, message: str) -> AdmissionResponse:
        return cls(allowed=True, code=HTTP_OK, message=message)

    @classmethod
    def errored(cls, code: int, error: BaseException | str) -> AdmissionResponse:
        return cls(allowed=False, code=code, message=str(error))

    @classmethod
    def validation(cls, allowed: bool, reason: str) -> AdmissionResponse:
        return cls(allowed=allowed, code=HTTP_OK if allowed else HTTP_FORBIDDEN, message=reason)


@contextmanager
def _logged_request(uid: str, end_message: str = "completed request") -> Iterator[None]:
    start = time.monotonic()
    _log.info("starting request", extra={"uuid": uid, "event": "request.start"})
    try:
        yield
    finally:
        _log.info(
            end_message,
            extra={
                "uuid": uid,
                "event": "request.end",
                "duration": time.monotonic() - start,
            },
        )


def _escape_pointer(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def _json_patch(original: Any, modified: Any, path: str = "") -> list[dict[str, Any]]:
    """JSON patch operations that turn ``original`` into ``modified``."""
    if isinstance(original, dict) and isinstance(modified, dict):
        ops: list[dict[str, Any]] = [
            {"op": "remove", "path": f"{path}/{_escape_pointer(key)}"}
            for key in original
            if key not in modified
        ]
        for key, value in modified.items():
            child = f"{path}/{_escape_pointer(key)}"
            if key not in original:
                ops.append({"op": "add", "path": child, "value": value})
            else:
                ops.extend(_json_patch(original[key], value, child))
        return ops
    if type(original) is type(modified) and original == modified:
        return []
    return [{"op": "replace", "path": path, "value": modified}]


class ConsoleAttachObserverWebhook:
    """Observes attachments to console pods and records them."""

    def __init__(
        self,
        client: ConsoleClient,
        lifecycle_recorder: LifecycleEventRecorder,
        event_recorder: EventRecorder | None = None,
    ):
        self.client = client
        self.lifecycle_recorder = lifecycle_recorder
        self.event_recorder = event_recorder

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _logged_request(request.uid):
            attach_options = request.object
            if not isinstance(attach_options, Mapping):
                return AdmissionResponse.errored(
                    HTTP_BAD_REQUEST, "failed to decode attach options"
                )

            try:
                pod = self.client.get_pod(request.namespace, request.name)
            except Exception as err:
                _log.error("failed to get pod: %s", err)
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, err)

            metadata = pod.get("metadata") or {}
            labels = metadata.get("labels") or {}
            if CONSOLE_NAME_LABEL not in labels:
                return AdmissionResponse.allowed_response("not a console; skipping observation")

            console_name = labels[CONSOLE_NAME_LABEL]
            try:
                console = self.client.get_console(request.namespace, console_name)
            except Exception as err:
                _log.error("failed to get console %s: %s", console_name, err)
                return AdmissionResponse.errored(HTTP_INTERNAL_SERVER_ERROR, err)

            pod_namespace = metadata.get("namespace", "")
            pod_name = metadata.get("name", "")
            if request.dry_run:
                _log.info(
                    "observed dry-run attach for pod %s/%s by user %s",
                    pod_namespace,
                    pod_name,
                    request.username,
                    extra={"console": console.metadata.name, "dry-run": True},
                )
                return AdmissionResponse.allowed_response(
                    "dry-run set; skipping attachment observation"
                )

            message = f"observed attach to pod {pod_namespace}/{pod_name} by user {request.username}"
            _log.info(message, extra={"event": "ConsoleAttach"})
            if self.event_recorder is not None:
                self.event_recorder(pod, "ConsoleAttach", message)

            try:
                self.lifecycle_recorder.console_attach(
                    console, request.username, attach_options.get("container", "")
                )
            except Exception:
                _log.exception("failed to record event")

            return AdmissionResponse.allowed_response("attachment observed")


class ConsoleAuthenticatorWebhook:
    """Sets a console's user to the user who asked for it to be created."""

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _logged_request(request.uid):
            try:
                console = Console.from_dict(request.object)
            except (KeyError, TypeError, ValueError, AttributeError) as err:
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, err)

            console.spec.user = request.username
            try:
                modified = console.to_dict()
            except (TypeError, ValueError) as err:
                return AdmissionResponse.errored(HTTP_INTERNAL_SERVER_ERROR, err)

            _log.info(
                "authentication successful for user %s",
                request.username,
                extra={"event": "authentication.success", "user": request.username},
            )
            return AdmissionResponse(
                allowed=True, patch=_json_patch(request.object, modified)
            )


def _diff(left: list[Subject], right: list[Subject]) -> list[Subject]:
    return [subject for subject in left if subject not in right]


@dataclass
class ConsoleAuthorisationUpdate:
    """A proposed change to a console authorisation by a user."""

    existing_auth: ConsoleAuthorisation
    updated_auth: ConsoleAuthorisation
    user: str
    owner: str

    def validate(self) -> None:
        """Raise ValidationError unless the update only adds the user as an authoriser."""
        errors: list[str] = []
        existing = self.existing_auth.spec
        updated = self.updated_auth.spec

        if updated.console_ref != existing.console_ref:
            errors.append("the spec.consoleRef field is immutable")

        added = _diff(updated.authorisations, existing.authorisations)
        removed = _diff(existing.authorisations, updated.authorisations)
        if len(added) > 1 or removed:
            errors.append(
                "the spec.authorisations field can only be appended to (with one subject) per update"
            )

        if any(subject.name != self.user for subject in added):
            errors.append("only the current user can be added as an authoriser")

        if any(subject.name == self.owner for subject in added):
            errors.append("an authoriser cannot authorise their own console")

        if errors:
            raise ValidationError(errors)


class ConsoleAuthorisationWebhook:
    """Validates updates to console authorisations."""

    def __init__(self, client: ConsoleClient, lifecycle_recorder: LifecycleEventRecorder):
        self.client = client
        self.lifecycle_recorder = lifecycle_recorder

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _logged_request(request.uid):
            try:
                updated = ConsoleAuthorisation.from_dict(request.object)
                existing = ConsoleAuthorisation.from_dict(request.old_object or {})
            except (KeyError, TypeError, ValueError, AttributeError) as err:
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, err)

            try:
                console = self.client.get_console(
                    existing.metadata.namespace, existing.spec.console_ref
                )
            except Exception as err:
                return AdmissionResponse.validation(
                    False, f"failed to retrieve console for the authorisation: {err}"
                )

            update = ConsoleAuthorisationUpdate(
                existing_auth=existing,
                updated_auth=updated,
                user=request.username,
                owner=console.spec.user,
            )
            try:
                update.validate()
            except ValidationError as err:
                _log.info(
                    "authorisation failed",
                    extra={"event": "authorisation.failure", "error": str(err)},
                )
                return AdmissionResponse.validation(
                    False, f"the console authorisation spec is invalid: {err}"
                )

            _log.info("authorisation successful", extra={"event": "authorisation.success"})
            try:
                self.lifecycle_recorder.console_authorise(console, request.username)
            except Exception:
                _log.exception("failed to record event")

            return AdmissionResponse.validation(True, "")


class ConsoleTemplateValidationWebhook:
    """Rejects console templates whose authorisation rules are invalid."""

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        with _logged_request(request.uid, "request completed"):
            try:
                template = ConsoleTemplate.from_dict(request.object)
            except (KeyError, TypeError, ValueError, AttributeError) as err:
                return AdmissionResponse.errored(HTTP_BAD_REQUEST, err)

            try:
                template.validate()
            except ValidationError as err:
                _log.info("validation failure", extra={"event": "validation.failure"})
                return AdmissionResponse.validation(
                    False, f"the console template spec is invalid: {err}"
                )

            _log.info("completed validation", extra={"event": "validation.success"})
            return AdmissionResponse.validation(True, "")