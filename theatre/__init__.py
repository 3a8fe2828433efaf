"""Console, console template and authorisation resources, lifecycle events and admission webhook handlers."""

__version__ = "4.0.0"
__all__ = ["rbac", "workloads", "lifecycle", "webhooks"]