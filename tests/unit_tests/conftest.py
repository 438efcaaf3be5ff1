"""Shared fixtures for unit tests."""

import pytest

from kube_bastion.sandbox import InterpreterPool
from kube_bastion.settings import BastionSettings


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings isolated from the developer's environment."""
    monkeypatch.chdir(tmp_path)
    return BastionSettings(
        cert_dir=tmp_path / "certs",
        request_deadline=3.0,
        evaluation_timeout=2.0,
        webhook_timeout_seconds=5,
        interpreter_pool_size=2,
        fail_open_namespaces=["sandbox"],
    )


@pytest.fixture
def constraint_factory():
    """Factory for Constraint custom resources"""
    def _create_constraint(
        name="test-constraint",
        matches=None,
        rule="def validate(request):\n    return True\n",
        namespaces=None,
        excluded_namespaces=None,
        enforce=None,
    ):
        if matches is None:
            matches = [{"apiGroup": "apps", "kind": "Deployment"}]

        target = {"matches": matches}
        if namespaces is not None:
            target["namespaces"] = namespaces
        if excluded_namespaces is not None:
            target["excludedNamespaces"] = excluded_namespaces

        spec = {"target": target, "rule": {"python": rule}}
        if enforce is not None:
            spec["enforce"] = enforce

        return {
            "apiVersion": "bastion.dev/v1alpha1",
            "kind": "Constraint",
            "metadata": {"name": name, "uid": f"uid-{name}", "resourceVersion": "1"},
            "spec": spec,
        }

    return _create_constraint


@pytest.fixture
def review_factory():
    """Factory for AdmissionReview payloads"""
    def _create_review(
        uid="test-uid",
        group="apps",
        version="v1",
        kind="Deployment",
        namespace="default",
        name="test-object",
        operation="CREATE",
        obj=None,
        labels=None,
    ):
        if obj is None:
            api_version = f"{group}/{version}" if group else version
            obj = {
                "apiVersion": api_version,
                "kind": kind,
                "metadata": {"name": name, "labels": labels or {"app": "myapp"}},
            }
            if namespace:
                obj["metadata"]["namespace"] = namespace

        request = {
            "uid": uid,
            "kind": {"group": group, "version": version, "kind": kind},
            "resource": {"group": group, "version": version, "resource": kind.lower() + "s"},
            "name": name,
            "operation": operation,
            "userInfo": {"username": "dev-user"},
            "object": obj,
        }
        if namespace:
            request["namespace"] = namespace

        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "request": request,
        }

    return _create_review


@pytest.fixture(scope="session")
def interpreter_pool():
    """Real interpreter workers shared by the evaluation tests"""
    pool = InterpreterPool(size=2, memory_limit_mb=0, startup_timeout=30.0)
    pool.start()
    yield pool
    pool.close()
