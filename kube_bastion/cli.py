"""Command line entry point for kube-bastion."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from pydantic import ValidationError as SettingsValidationError

from .admission import AdmissionController
from .certs import CertificateManager, TlsIdentity, service_dns_names
from .constraint import CRD_GROUP, CRD_PLURAL, CRD_VERSION
from .crd import build_constraint_crd, install_constraint_crd
from .errors import BastionError, CertificateError
from .evaluator import RuleEvaluator
from .events import EventRecorder
from .kube import KubeClients, load_clients
from .sandbox import InterpreterPool
from .server import WebhookServer
from .settings import BastionSettings, configure_logging, load_settings
from .store import ConstraintStore, NamespaceIndex
from .watcher import ResourceWatcher
from .webhook_config import (
    Endpoint,
    WebhookRegistrar,
    build_webhook_configuration,
    render_webhook_configuration_yaml,
    render_yaml,
)

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bastion")
    parser.add_argument("--context", default=None, help="kubeconfig context when running outside the cluster.")
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser(
        "init",
        help="Generate the TLS identity and register the validating webhook.",
    )
    init_parser.add_argument(
        "--rotate-certificates",
        action="store_true",
        help="Issue a new CA and certificate even if the current ones are still valid.",
    )
    subparsers.add_parser(
        "serve",
        help="Run the admission webhook server.",
    )
    subparsers.add_parser(
        "cleanup",
        help="Remove the validating webhook configuration.",
    )

    subparsers.add_parser(
        "generate-crd",
        help="Print the Constraint CustomResourceDefinition YAML.",
    )

    generate_parser = subparsers.add_parser(
        "generate-webhook",
        help="Print the ValidatingWebhookConfiguration YAML without applying it.",
    )
    generate_parser.add_argument("--url", default=None, help="Webhook base URL (default: in-cluster service).")
    generate_parser.add_argument(
        "--ca-bundle",
        default=None,
        help="Optional base64-encoded CA bundle.",
    )
    return parser


def _endpoint(settings: BastionSettings, url: Optional[str] = None) -> Endpoint:
    url = url or settings.webhook_url
    if url:
        return Endpoint(url=url)
    return Endpoint(
        service_name=settings.service_name,
        service_namespace=settings.service_namespace,
        port=settings.service_port,
    )


def _certificate_manager(settings: BastionSettings) -> CertificateManager:
    return CertificateManager(
        settings.cert_dir,
        ca_validity_days=settings.ca_validity_days,
        cert_validity_days=settings.cert_validity_days,
        renewal_margin_days=settings.cert_renewal_margin_days,
    )


def _ensure_identity(settings: BastionSettings) -> TlsIdentity:
    return _certificate_manager(settings).ensure_identity(
        service_dns_names(settings.service_name, settings.service_namespace)
    )


def _registrar(settings: BastionSettings, clients: KubeClients) -> WebhookRegistrar:
    return WebhookRegistrar(
        clients.admission,
        name=settings.webhook_name,
        timeout_seconds=settings.webhook_timeout_seconds,
        ignore_label=settings.ignore_label,
        attempts=settings.registration_attempts,
        backoff_max=settings.backoff_max_seconds,
    )


def _rotate_identity(settings: BastionSettings) -> TlsIdentity:
    manager = _certificate_manager(settings)
    try:
        current = manager.load()
    except CertificateError as e:
        logger.warning(f"Existing TLS identity is unreadable: {e}")
        current = None
    return manager.rotate(service_dns_names(settings.service_name, settings.service_namespace), current)


def run_init(settings: BastionSettings, clients: KubeClients, rotate_certificates: bool = False) -> int:
    install_constraint_crd(clients.extensions)
    if rotate_certificates:
        identity = _rotate_identity(settings)
    else:
        identity = _ensure_identity(settings)
    _registrar(settings, clients).register(
        identity.ca_bundle,
        _endpoint(settings),
        failure_policy=settings.failure_policy,
    )
    return 0


def run_cleanup(settings: BastionSettings, clients: KubeClients) -> int:
    _registrar(settings, clients).deregister()
    return 0


def run_serve(settings: BastionSettings, clients: KubeClients) -> int:
    identity = _ensure_identity(settings)

    recorder = None
    if settings.record_events:
        recorder = EventRecorder(clients.core, settings.events_namespace)
        recorder.start()

    store = ConstraintStore(recorder=recorder)
    namespaces = NamespaceIndex()
    watchers = [
        ResourceWatcher(
            "constraints",
            clients.custom.list_cluster_custom_object,
            store,
            list_kwargs={"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL},
            watch_timeout=settings.watch_timeout_seconds,
            startup_attempts=settings.watch_startup_attempts,
            backoff_max=settings.backoff_max_seconds,
        ),
        ResourceWatcher(
            "ignored namespaces",
            clients.core.list_namespace,
            namespaces,
            list_kwargs={"label_selector": settings.ignore_label},
            watch_timeout=settings.watch_timeout_seconds,
            startup_attempts=settings.watch_startup_attempts,
            backoff_max=settings.backoff_max_seconds,
        ),
    ]
    for watcher in watchers:
        watcher.start()

    pool = InterpreterPool(
        settings.interpreter_pool_size,
        memory_limit_mb=settings.interpreter_memory_limit_mb,
        startup_timeout=settings.interpreter_startup_timeout,
        max_evaluations=settings.interpreter_max_evaluations,
    )
    pool.start()
    # room for abandoned evaluations that still wait on their own timeout
    executor = ThreadPoolExecutor(
        max_workers=settings.interpreter_pool_size * 2 + settings.server_workers,
        thread_name_prefix="evaluation",
    )
    controller = AdmissionController(
        store,
        RuleEvaluator(pool, timeout=settings.evaluation_timeout),
        executor,
        settings,
        namespaces=namespaces,
        recorder=recorder,
    )
    server = WebhookServer(
        controller,
        host=settings.bind_address,
        port=settings.port,
        cert_file=str(identity.cert_file),
        key_file=str(identity.key_file),
        workers=settings.server_workers,
        max_request_bytes=settings.max_request_bytes,
        is_ready=lambda: all(watcher.synced.is_set() for watcher in watchers),
    )
    server.bind()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        # shutdown() blocks until serve_forever returns, so it cannot run on the serving thread
        threading.Thread(target=server.server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        server.serve_forever()
    finally:
        server.server.server_close()
        for watcher in watchers:
            watcher.stop()
        executor.shutdown(wait=False, cancel_futures=True)
        pool.close()
        if recorder is not None:
            recorder.stop()
    return 0


def run_generate_webhook(settings: BastionSettings, url: Optional[str], ca_bundle: Optional[str]) -> int:
    configuration = build_webhook_configuration(
        name=settings.webhook_name,
        endpoint=_endpoint(settings, url),
        ca_bundle=ca_bundle,
        failure_policy=settings.failure_policy,
        timeout_seconds=settings.webhook_timeout_seconds,
        ignore_label=settings.ignore_label,
    )
    print(render_webhook_configuration_yaml(configuration), end="")
    return 0


def run_generate_crd() -> int:
    print(render_yaml(build_constraint_crd()), end="")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        settings = load_settings()
    except SettingsValidationError as e:
        parser.error(f"invalid configuration: {e}")
    configure_logging(settings.log_level)

    if args.command == "generate-webhook":
        return run_generate_webhook(settings, args.url, args.ca_bundle)
    if args.command == "generate-crd":
        return run_generate_crd()

    commands = {
        "init": lambda settings, clients: run_init(settings, clients, args.rotate_certificates),
        "serve": run_serve,
        "cleanup": run_cleanup,
    }
    try:
        return commands[args.command](settings, load_clients(args.context))
    except BastionError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
