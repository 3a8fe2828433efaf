# theatre

Resource models and admission logic for running audited, authorised
interactive consoles on Kubernetes. Resources are read from and written to
plain dictionaries in the shape the Kubernetes API uses (`from_dict` /
`to_dict`).

## Modules

- `theatre.rbac`: `Subject`, `RoleRef` and `DirectoryRoleBinding`, which
  bind a role to subjects. `GOOGLE_GROUP_KIND` is the subject kind for a
  Google group.
- `theatre.workloads`: `Console`, `ConsoleTemplate` and
  `ConsoleAuthorisation`, with `ObjectMeta`, the lifecycle phases in
  `ConsolePhase`, garbage-collection timing and authorisation rule matching.
  It also defines the `ValidationError` and `NoRuleMatchedError` exceptions.
- `theatre.lifecycle`: `ConsoleIdBuilder`, `LifecycleEventRecorder` and
  `container_status_messages`.
- `theatre.webhooks`: admission handlers that take an `AdmissionRequest` and
  return an `AdmissionResponse`.

## Install

```
pip install .
```

## Matching authorisation rules

A console template can require authorisation before a console runs. Each
rule lists `match_command_elements`, which are compared with the console's
command one element at a time:

- `*` matches any single element that is present;
- `**` matches zero or more trailing elements, and is only valid as the last
  matcher;
- anything else must match the element exactly.

Rules are tried in order. When none match, the template's default rule is
returned under the name `default`.

```python
from theatre.workloads import ConsoleTemplate

template = ConsoleTemplate.from_dict({
    "metadata": {"name": "shell", "namespace": "default"},
    "spec": {
        "template": {"spec": {"containers": [{"command": ["bash"]}]}},
        "defaultTimeoutSeconds": 3600,
        "maxTimeoutSeconds": 7200,
        "authorisationRules": [
            {
                "name": "rails-runner",
                "matchCommandElements": ["rails", "runner", "**"],
                "authorisationsRequired": 2,
                "subjects": [],
            }
        ],
        "defaultAuthorisationRule": {"authorisationsRequired": 1, "subjects": []},
    },
})

template.validate()
rule = template.authorisation_rule_for_command(["rails", "runner", "task"])
print(rule.name, rule.authorisations_required)  # rails-runner 2
print(template.default_command_with_args())     # ['bash']
```

`validate()` raises `ValidationError`, whose `errors` lists every problem,
when a rule has an empty matcher, a `**` before the end, or when rules are
defined without a default rule. `authorisation_rule_for_command()` validates
first, and raises `NoRuleMatchedError` when nothing matches and there is no
default rule. `default_command_with_args()` raises `ValueError` when the
template has no containers.

## Console lifecycle

`Console` answers questions about its phase: `creating()` (no phase yet),
`pending_authorisation()`, `pending_job()`, `pending()`, `running()`,
`stopped()`, `destroyed()`, `pre_running()` and `post_running()`.

`gc_time()` gives the time the console may be garbage collected: creation
time plus `ttlSecondsBeforeRunning` before it runs, or completion time (else
expiry time) plus `ttlSecondsAfterFinished` once it has stopped or been
destroyed; `None` while it runs. `eligible_for_gc(now=None)` compares that
time with `now`, defaulting to the current UTC time.

## Lifecycle events

`LifecycleEventRecorder(context_name, publisher, id_builder=None,
logger=None)` builds a `LifecycleEvent` for each of `console_request`,
`console_authorise`, `console_start`, `console_attach` and
`console_terminate`, hands it to `publisher.publish(event)` and returns the
identifier the publisher gives back. Successful and failed publications are
counted by event label in the `published` and `publish_errors` counters; a
publisher's exception is re-raised.

`ConsoleIdBuilder(context_name).build_id(console)` gives
`context/namespace/name/YYYYMMDDHHMMSS` from the console's creation time.
`container_status_messages(statuses)` summarises pod container statuses as
a message per container and an exit code per terminated container.

## Admission webhooks

- `ConsoleAuthenticatorWebhook().handle(request)` sets the console's user
  to the requesting user and returns the change as a JSON patch.
- `ConsoleAuthorisationWebhook(client, lifecycle_recorder)` allows an update
  to a console authorisation only when `ConsoleAuthorisationUpdate.validate()`
  passes: the console reference is unchanged, and at most one subject is
  added, none removed, the added subject being the requesting user and not
  the console's owner.
- `ConsoleTemplateValidationWebhook().handle(request)` rejects templates
  that fail `ConsoleTemplate.validate()`.
- `ConsoleAttachObserverWebhook(client, lifecycle_recorder,
  event_recorder=None)` records attachments to console pods; dry-run
  requests are only logged.

`AdmissionResponse.allowed_response`, `.errored` and `.validation` build
the usual responses; a refused validation carries code 403.

## What this package does not do

It holds the resource models and the decision logic only. It does not talk
to a cluster: the webhooks read pods and consoles through a `client` object
you supply with `get_pod(namespace, name)` and `get_console(namespace,
name)`. It has no HTTP server to receive admission reviews, no controllers
that create jobs or collect expired consoles, and no publisher that sends
events anywhere: `LifecycleEventRecorder` needs an object with a
`publish(event)` method.

## Running the tests

```
pip install .[test]
pytest
```