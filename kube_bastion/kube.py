"""Kubernetes client bootstrap shared by the CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

logger = logging.getLogger(__name__)

# failures worth retrying: API errors and broken connections
API_ERRORS = (ApiException, HTTPError)


def is_transient(exc: Exception) -> bool:
    """Client errors other than conflicts and throttling will not fix themselves."""
    if isinstance(exc, ApiException) and exc.status:
        return exc.status >= 500 or exc.status in (409, 429)
    return True


@dataclass
class KubeClients:
    core: client.CoreV1Api
    custom: client.CustomObjectsApi
    admission: client.AdmissionregistrationV1Api
    extensions: client.ApiextensionsV1Api


def load_clients(context: str | None = None) -> KubeClients:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config(context=context)
        logger.info("Using kubeconfig Kubernetes configuration")
    return KubeClients(
        core=client.CoreV1Api(),
        custom=client.CustomObjectsApi(),
        admission=client.AdmissionregistrationV1Api(),
        extensions=client.ApiextensionsV1Api(),
    )
