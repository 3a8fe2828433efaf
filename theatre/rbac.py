"""Directory role binding resources of the rbac API group."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

GROUP = "rbac.crd.gocardless.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

# A subject kind that tells the controller to interpret the entity as a Google group.
GOOGLE_GROUP_KIND = "GoogleGroup"


@dataclass(frozen=True)
class Subject:
    """A user, group or service account that a role applies to."""

    kind: str
    name: str
    api_group: str = ""
    namespace: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subject:
        return cls(
            kind=data["kind"],
            name=data["name"],
            api_group=data.get("apiGroup", ""),
            namespace=data.get("namespace", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind}
        if self.api_group:
            out["apiGroup"] = self.api_group
        out["name"] = self.name
        if self.namespace:
            out["namespace"] = self.namespace
        return out


@dataclass(frozen=True)
class RoleRef:
    """A reference to the role being granted."""

    api_group: str
    kind: str
    name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoleRef:
        return cls(api_group=data["apiGroup"], kind=data["kind"], name=data["name"])

    def to_dict(self) -> dict[str, Any]:
        return {"apiGroup": self.api_group, "kind": self.kind, "name": self.name}


@dataclass
class DirectoryRoleBinding:
    """Binds a role to subjects, which may include directory groups."""

    role_ref: RoleRef
    subjects: list[Subject] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    KIND = "DirectoryRoleBinding"

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DirectoryRoleBinding:
        spec = data.get("spec") or {}
        return cls(
            role_ref=RoleRef.from_dict(spec["roleRef"]),
            subjects=[Subject.from_dict(s) for s in spec.get("subjects") or []],
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"apiVersion": API_VERSION, "kind": self.KIND}
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        out["spec"] = {
            "subjects": [s.to_dict() for s in self.subjects],
            "roleRef": self.role_ref.to_dict(),
        }
        return out