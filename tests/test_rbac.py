import pytest

from theatre.rbac import (
    API_VERSION,
    GOOGLE_GROUP_KIND,
    DirectoryRoleBinding,
    RoleRef,
    Subject,
)


def test_subject_round_trip_full():
    data = {
        "kind": "ServiceAccount",
        "apiGroup": "",
        "name": "robot",
        "namespace": "ops",
    }
    subject = Subject.from_dict(data)
    assert subject.namespace == "ops"
    assert Subject.from_dict(subject.to_dict()) == subject


def test_subject_to_dict_omits_empty_optional_fields():
    subject = Subject(kind="User", name="alice@example.com")
    assert subject.to_dict() == {"kind": "User", "name": "alice@example.com"}


def test_subject_missing_kind_raises():
    with pytest.raises(KeyError):
        Subject.from_dict({"name": "alice"})


def test_subjects_are_hashable_and_compare_by_value():
    a = Subject(kind=GOOGLE_GROUP_KIND, name="team@example.com")
    b = Subject(kind=GOOGLE_GROUP_KIND, name="team@example.com")
    assert len({a, b}) == 1


def test_google_group_subject_parses_kind():
    subject = Subject.from_dict({"kind": "GoogleGroup", "name": "team@example.com"})
    assert subject.kind == GOOGLE_GROUP_KIND
    assert subject.to_dict() == {"kind": "GoogleGroup", "name": "team@example.com"}


def test_role_ref_round_trip():
    data = {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "view"}
    assert RoleRef.from_dict(data).to_dict() == data


def test_directory_role_binding_round_trip():
    data = {
        "apiVersion": API_VERSION,
        "kind": "DirectoryRoleBinding",
        "metadata": {"name": "admins", "namespace": "default"},
        "spec": {
            "subjects": [
                {"kind": "GoogleGroup", "name": "admins@example.com"},
                {"kind": "User", "name": "bob@example.com"},
            ],
            "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "admin"},
        },
    }
    binding = DirectoryRoleBinding.from_dict(data)
    assert binding.name == "admins"
    assert binding.namespace == "default"
    assert binding.subjects[0].kind == GOOGLE_GROUP_KIND
    assert binding.to_dict() == data
    assert binding.to_dict()["apiVersion"] == "rbac.crd.gocardless.com/v1alpha1"


def test_directory_role_binding_requires_role_ref():
    with pytest.raises(KeyError):
        DirectoryRoleBinding.from_dict({"spec": {"subjects": []}})