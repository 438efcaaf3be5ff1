"""Pytest fixtures for integration tests."""

import os
import shutil
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from kube_bastion.admission import AdmissionController
from kube_bastion.certs import CertificateManager
from kube_bastion.constraint import CRD_GROUP, CRD_PLURAL, CRD_VERSION
from kube_bastion.crd import install_constraint_crd
from kube_bastion.evaluator import RuleEvaluator
from kube_bastion.kube import KubeClients
from kube_bastion.sandbox import InterpreterPool
from kube_bastion.server import WebhookServer
from kube_bastion.settings import BastionSettings
from kube_bastion.store import ConstraintStore, NamespaceIndex
from kube_bastion.watcher import ResourceWatcher
from kube_bastion.webhook_config import Endpoint, WebhookRegistrar

CLUSTER_NAME = "bastion-test"
IGNORE_LABEL = "bastion.dev/ignore"
TEST_NAMESPACE = "bastion-test"


def _first_line(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        return ""
    return cleaned.splitlines()[0]


def _running_on_github_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS", "").lower() == "true"


def _skip_or_fail(reason: str) -> None:
    if _running_on_github_actions():
        pytest.fail(reason)
    pytest.skip(f"Skipping integration tests: {reason}")


def _ensure_integration_runtime() -> None:
    for binary in ("docker", "kind", "kubectl"):
        if shutil.which(binary) is None:
            _skip_or_fail(f"required binary '{binary}' is not installed.")

    try:
        docker_info = subprocess.run(
            ["docker", "info"],
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        _skip_or_fail(f"unable to run docker ({exc}).")

    if docker_info.returncode != 0:
        reason = _first_line(docker_info.stderr) or _first_line(docker_info.stdout)
        if not reason:
            reason = "docker info failed"
        _skip_or_fail(f"Docker is unavailable ({reason}).")


def _docker_output(args) -> str:
    try:
        result = subprocess.run(args, check=True, capture_output=True, text=True)
    except (subprocess.CalledProcessError, OSError):
        return ""
    return result.stdout.strip()


def _webhook_host() -> str:
    """Address under which the kind control plane reaches the test process."""
    override = os.environ.get("KIND_WEBHOOK_HOST")
    if override:
        return override

    if sys.platform == "darwin":
        return "host.docker.internal"

    nodes = [line for line in _docker_output(["kind", "get", "nodes", "--name", CLUSTER_NAME]).splitlines() if line]
    if nodes:
        gateway = _docker_output(
            ["docker", "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.Gateway}}{{end}}", nodes[0]]
        )
        if gateway:
            return gateway

    gateway = _docker_output(
        ["docker", "network", "inspect", "kind", "--format", "{{(index .IPAM.Config 0).Gateway}}"]
    )
    return gateway or "host.docker.internal"


def wait_for(predicate, timeout: float = 30.0, interval: float = 0.5, message: str = "condition"):
    """Poll until ``predicate`` returns a truthy value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    pytest.fail(f"Timed out waiting for {message}")


@pytest.fixture(scope="session")
def kind_cluster():
    """
    Create and manage a kind cluster for tests.

    The cluster is created once if missing and reused afterwards. Deleting it
    is left to ``kind delete cluster --name bastion-test`` so that repeated
    runs stay fast.
    """
    _ensure_integration_runtime()

    clusters = _docker_output(["kind", "get", "clusters"]).splitlines()
    if CLUSTER_NAME not in clusters:
        try:
            subprocess.run(
                ["kind", "create", "cluster", "--name", CLUSTER_NAME, "--wait", "120s"],
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            error_text = (e.stderr or e.stdout or "").lower()
            if "permission denied while trying to connect to the docker api" in error_text:
                _skip_or_fail("Docker socket is not accessible for kind.")
            pytest.fail(f"Failed to setup kind cluster: {e.stderr}")

    try:
        config.load_kube_config(context=f"kind-{CLUSTER_NAME}")
    except config.ConfigException as e:
        pytest.fail(f"Failed to load kubeconfig: {e}")

    yield {"name": CLUSTER_NAME, "context": f"kind-{CLUSTER_NAME}"}


@pytest.fixture(scope="session")
def k8s_clients(kind_cluster):
    """Get Kubernetes API clients."""
    return KubeClients(
        core=client.CoreV1Api(),
        custom=client.CustomObjectsApi(),
        admission=client.AdmissionregistrationV1Api(),
        extensions=client.ApiextensionsV1Api(),
    )


@pytest.fixture(scope="session")
def settings(tmp_path_factory):
    return BastionSettings(
        bind_address="0.0.0.0",
        port=8443,
        cert_dir=tmp_path_factory.mktemp("certs"),
        webhook_name="bastion-test",
        webhook_timeout_seconds=10,
        request_deadline=5.0,
        evaluation_timeout=2.0,
        ignore_label=IGNORE_LABEL,
        interpreter_pool_size=2,
        interpreter_memory_limit_mb=0,
        record_events=False,
        watch_timeout_seconds=30,
        backoff_max_seconds=2.0,
    )


@pytest.fixture(scope="session")
def constraint_crd(k8s_clients):
    """Install the Constraint CRD and wait until it is served."""
    install_constraint_crd(k8s_clients.extensions)

    def _served():
        try:
            k8s_clients.custom.list_cluster_custom_object(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
        except ApiException:
            return False
        return True

    wait_for(_served, message="Constraint CRD")


@pytest.fixture(scope="session")
def test_namespace(k8s_clients):
    """Namespace holding the objects created by tests."""
    namespace = client.V1Namespace(metadata=client.V1ObjectMeta(name=TEST_NAMESPACE))
    try:
        k8s_clients.core.create_namespace(namespace)
    except ApiException as e:
        if e.status != 409:
            raise
    return TEST_NAMESPACE


@pytest.fixture(scope="session")
def bastion_server(k8s_clients, settings, constraint_crd):
    """Run the full admission stack in the test process."""
    host = _webhook_host()
    identity = CertificateManager(settings.cert_dir).ensure_identity(["localhost", host])

    store = ConstraintStore()
    namespaces = NamespaceIndex()
    watchers = [
        ResourceWatcher(
            "constraints",
            k8s_clients.custom.list_cluster_custom_object,
            store,
            list_kwargs={"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL},
            watch_timeout=settings.watch_timeout_seconds,
            backoff_max=settings.backoff_max_seconds,
        ),
        ResourceWatcher(
            "ignored namespaces",
            k8s_clients.core.list_namespace,
            namespaces,
            list_kwargs={"label_selector": settings.ignore_label},
            watch_timeout=settings.watch_timeout_seconds,
            backoff_max=settings.backoff_max_seconds,
        ),
    ]
    for watcher in watchers:
        watcher.start()

    pool = InterpreterPool(settings.interpreter_pool_size, memory_limit_mb=0, startup_timeout=30.0)
    pool.start()
    executor = ThreadPoolExecutor(max_workers=8)
    controller = AdmissionController(
        store,
        RuleEvaluator(pool, timeout=settings.evaluation_timeout),
        executor,
        settings,
        namespaces=namespaces,
    )
    server = WebhookServer(
        controller,
        host=settings.bind_address,
        port=settings.port,
        cert_file=str(identity.cert_file),
        key_file=str(identity.key_file),
        workers=8,
    )
    server.start()

    yield {
        "server": server,
        "store": store,
        "namespaces": namespaces,
        "identity": identity,
        "url": f"https://{host}:{server.port}",
    }

    server.stop()
    for watcher in watchers:
        watcher.stop()
    executor.shutdown(wait=False, cancel_futures=True)
    pool.close()


@pytest.fixture(scope="session")
def webhook_registered(k8s_clients, settings, bastion_server):
    """
    Register the webhook for ConfigMaps only.

    Narrow rules keep the kind system components out of reach of the test
    server; the registration is removed at the end of the session.
    """
    registrar = WebhookRegistrar(
        k8s_clients.admission,
        name=settings.webhook_name,
        timeout_seconds=settings.webhook_timeout_seconds,
        ignore_label=settings.ignore_label,
    )
    registrar.register(
        bastion_server["identity"].ca_bundle,
        Endpoint(url=bastion_server["url"]),
        resource_rules=[
            client.V1RuleWithOperations(
                operations=["CREATE", "UPDATE"],
                api_groups=[""],
                api_versions=["v1"],
                resources=["configmaps"],
                scope="Namespaced",
            )
        ],
    )
    time.sleep(3)  # Wait for webhook to be ready

    yield registrar

    registrar.deregister()


@pytest.fixture
def constraint(k8s_clients, bastion_server, webhook_registered):
    """Create Constraint objects and wait until the server enforces them."""
    created = []

    def _create_constraint(name, kind="ConfigMap", rule=None, enforce=True, **target):
        body = {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": "Constraint",
            "metadata": {"name": name},
            "spec": {
                "target": {"matches": [{"apiGroup": "", "kind": kind}], **target},
                "rule": {"python": rule or "def validate(request):\n    return True\n"},
                "enforce": enforce,
            },
        }
        k8s_clients.custom.create_cluster_custom_object(CRD_GROUP, CRD_VERSION, CRD_PLURAL, body)
        created.append(name)
        store = bastion_server["store"]
        wait_for(lambda: store.current_snapshot().get(name), message=f"constraint {name} in store")
        return body

    yield _create_constraint

    store = bastion_server["store"]
    for name in created:
        try:
            k8s_clients.custom.delete_cluster_custom_object(CRD_GROUP, CRD_VERSION, CRD_PLURAL, name)
        except ApiException as e:
            if e.status != 404:
                raise
    wait_for(
        lambda: not any(store.current_snapshot().get(name) for name in created),
        message="constraint removal",
    )


@pytest.fixture
def config_map(k8s_clients, test_namespace):
    """Create ConfigMaps through the admission chain and delete them afterwards."""
    created = []

    def _create_config_map(name, labels=None, namespace=test_namespace, data=None):
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, labels=labels or {}),
            data=data or {"key": "value"},
        )
        result = k8s_clients.core.create_namespaced_config_map(namespace, body)
        created.append((namespace, name))
        return result

    yield _create_config_map

    for namespace, name in created:
        try:
            k8s_clients.core.delete_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise


@pytest.fixture
def wait():
    """Polling helper for state that converges asynchronously."""
    return wait_for
