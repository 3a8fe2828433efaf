from datetime import datetime, timezone

import pytest

from theatre.lifecycle import (
    ConsoleIdBuilder,
    EventKind,
    LifecycleEventRecorder,
    container_status_messages,
)
from theatre.workloads import (
    Console,
    ConsoleAuthorisationRule,
    ConsoleSpec,
    ConsoleStatus,
    ObjectMeta,
)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return f"id-{len(self.events)}"


class FailingPublisher:
    def publish(self, event):
        raise RuntimeError("unavailable")


def make_console(name="console-1"):
    return Console(
        metadata=ObjectMeta(
            name=name,
            namespace="staging",
            labels={"app": "payments"},
            creation_timestamp=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        ),
        spec=ConsoleSpec(user="alice", reason="debugging", console_template_ref="tmpl"),
        status=ConsoleStatus(pod_name="console-1-pod"),
    )


def test_id_builder_is_deterministic_and_context_specific():
    console = make_console()
    builder = ConsoleIdBuilder("cluster-a")
    assert builder.build_id(console) == builder.build_id(make_console())
    assert builder.build_id(console) != ConsoleIdBuilder("cluster-b").build_id(console)
    assert builder.build_id(console) != builder.build_id(make_console("console-2"))


def test_console_request_with_rule():
    publisher = RecordingPublisher()
    recorder = LifecycleEventRecorder("cluster-a", publisher)
    rule = ConsoleAuthorisationRule(name="rails", authorisations_required=2)
    console = make_console()

    event_id = recorder.console_request(console, rule)

    assert event_id == "id-1"
    (event,) = publisher.events
    assert event.event is EventKind.REQUEST
    assert event.version == "v1alpha1"
    assert event.id == ConsoleIdBuilder("cluster-a").build_id(console)
    assert event.spec["required_authorisations"] == 2
    assert event.spec["authorisation_rule_name"] == "rails"
    assert event.spec["username"] == "alice"
    assert event.spec["context"] == "cluster-a"
    assert event.spec["console_template"] == "tmpl"
    assert event.spec["labels"] == {"app": "payments"}
    assert event.spec["timestamp"] == console.metadata.creation_timestamp
    assert recorder.published["console_request"] == 1


def test_console_request_without_rule():
    publisher = RecordingPublisher()
    recorder = LifecycleEventRecorder("cluster-a", publisher)
    recorder.console_request(make_console())
    spec = publisher.events[0].spec
    assert spec["required_authorisations"] == 0
    assert spec["authorisation_rule_name"] == ""


def test_authorise_start_and_attach_events():
    publisher = RecordingPublisher()
    recorder = LifecycleEventRecorder("cluster-a", publisher)
    console = make_console()

    recorder.console_authorise(console, "bob")
    recorder.console_start(console, "job-1")
    recorder.console_attach(console, "carol", "app")

    kinds = [e.event for e in publisher.events]
    assert kinds == [EventKind.AUTHORISE, EventKind.START, EventKind.ATTACH]
    assert publisher.events[0].spec == {"username": "bob"}
    assert publisher.events[1].spec == {"job": "job-1"}
    assert publisher.events[2].spec == {
        "username": "carol",
        "pod": "console-1-pod",
        "container": "app",
    }
    assert recorder.published["console_authorise"] == 1
    assert recorder.published["console_start"] == 1
    assert recorder.published["console_attach"] == 1


def test_publish_failure_is_counted_and_raised():
    recorder = LifecycleEventRecorder("cluster-a", FailingPublisher())
    with pytest.raises(RuntimeError):
        recorder.console_start(make_console(), "job-1")
    assert recorder.publish_errors["console_start"] == 1
    assert recorder.published["console_start"] == 0


def test_terminated_status_message():
    messages, codes = container_status_messages(
        [
            {
                "name": "app",
                "state": {
                    "terminated": {"exitCode": 137, "reason": "OOMKilled", "signal": 9}
                },
            }
        ]
    )
    assert messages == {"app": "Terminated with exit code 137. Reason: OOMKilled (received signal SIGKILL)"}
    assert codes == {"app": 137}


def test_waiting_status_message_has_no_exit_code():
    messages, codes = container_status_messages(
        [
            {
                "name": "app",
                "state": {"waiting": {"reason": "ImagePullBackOff", "message": "pull failed"}},
            }
        ]
    )
    assert messages == {"app": "Waiting. Reason: ImagePullBackOff. Message: pull failed"}
    assert codes == {}


def test_running_and_missing_statuses_are_ignored():
    assert container_status_messages(None) == ({}, {})
    assert container_status_messages([{"name": "app", "state": {"running": {}}}]) == ({}, {})


def test_console_terminate_collects_all_container_kinds():
    publisher = RecordingPublisher()
    recorder = LifecycleEventRecorder("cluster-a", publisher)
    pod = {
        "status": {
            "initContainerStatuses": [
                {"name": "init", "state": {"terminated": {"exitCode": 0}}}
            ],
            "containerStatuses": [
                {"name": "app", "state": {"terminated": {"exitCode": 1, "message": "boom"}}}
            ],
            "ephemeralContainerStatuses": [
                {"name": "debug", "state": {"waiting": {}}}
            ],
        }
    }

    recorder.console_terminate(make_console(), True, pod)

    spec = publisher.events[0].spec
    assert publisher.events[0].event is EventKind.TERMINATED
    assert spec["timed_out"] is True
    assert spec["exit_codes"] == {"init": 0, "app": 1}
    assert spec["container_statuses"]["init"] == "Terminated with exit code 0"
    assert spec["container_statuses"]["app"] == "Terminated with exit code 1. Message: boom"
    assert spec["container_statuses"]["debug"] == "Waiting."
    assert recorder.published["console_terminate"] == 1


def test_console_terminate_without_pod():
    publisher = RecordingPublisher()
    recorder = LifecycleEventRecorder("cluster-a", publisher)
    recorder.console_terminate(make_console(), False, None)
    spec = publisher.events[0].spec
    assert spec == {"timed_out": False, "container_statuses": {}, "exit_codes": {}}