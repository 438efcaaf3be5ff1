"""Validating webhook registration."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import backoff
import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from .constraint import CRD_GROUP, CRD_PLURAL, CRD_VERSION
from .errors import RegistrationError
from .kube import API_ERRORS, is_transient
from .server import VALIDATE_CONSTRAINT_PATH

logger = logging.getLogger(__name__)

RESOURCES_PATH = "/validate"
DEFAULT_OPERATIONS = ["CREATE", "UPDATE"]


@dataclass(frozen=True)
class Endpoint:
    """Where the API server sends reviews: an in-cluster service or a plain URL."""

    url: Optional[str] = None
    service_name: Optional[str] = None
    service_namespace: Optional[str] = None
    port: int = 443

    def __post_init__(self):
        if (self.url is None) == (self.service_name is None):
            raise ValueError("Endpoint needs exactly one of url or service_name")
        if self.service_name is not None and not self.service_namespace:
            raise ValueError("Service endpoints need a namespace")

    def client_config(self, path: str, ca_bundle: Optional[str]) -> client.AdmissionregistrationV1WebhookClientConfig:
        if self.url is not None:
            return client.AdmissionregistrationV1WebhookClientConfig(
                url=self.url.rstrip("/") + path,
                ca_bundle=ca_bundle,
            )
        return client.AdmissionregistrationV1WebhookClientConfig(
            service=client.AdmissionregistrationV1ServiceReference(
                name=self.service_name,
                namespace=self.service_namespace,
                path=path,
                port=self.port,
            ),
            ca_bundle=ca_bundle,
        )


def default_resource_rules() -> list[client.V1RuleWithOperations]:
    return [
        client.V1RuleWithOperations(
            operations=list(DEFAULT_OPERATIONS),
            api_groups=["*"],
            api_versions=["*"],
            resources=["*"],
            scope="*",
        )
    ]


def _webhook_name(name: str) -> str:
    webhook_name = re.sub(r"[^a-z0-9.-]", "-", name.lower()).strip("-")
    return webhook_name or "kube-bastion"


def build_webhook_configuration(
    *,
    name: str,
    endpoint: Endpoint,
    ca_bundle: Optional[str],
    resource_rules: Optional[list[client.V1RuleWithOperations]] = None,
    failure_policy: str = "Fail",
    timeout_seconds: int = 5,
    ignore_label: str = "bastion.dev/ignore",
) -> client.V1ValidatingWebhookConfiguration:
    """
    Build the ValidatingWebhookConfiguration for kube-bastion.

    It holds two webhooks: one for all matching resources outside namespaces
    labelled with ``ignore_label``, and one validating Constraint objects
    themselves so that broken rules are rejected at apply time.
    """
    webhook_name = _webhook_name(name)
    return client.V1ValidatingWebhookConfiguration(
        api_version="admissionregistration.k8s.io/v1",
        kind="ValidatingWebhookConfiguration",
        metadata=client.V1ObjectMeta(name=webhook_name),
        webhooks=[
            client.V1ValidatingWebhook(
                name=f"resources.{webhook_name}.{CRD_GROUP}",
                client_config=endpoint.client_config(RESOURCES_PATH, ca_bundle),
                rules=resource_rules or default_resource_rules(),
                namespace_selector=client.V1LabelSelector(
                    match_expressions=[
                        client.V1LabelSelectorRequirement(key=ignore_label, operator="DoesNotExist")
                    ]
                ),
                admission_review_versions=["v1"],
                side_effects="None",
                timeout_seconds=timeout_seconds,
                failure_policy=failure_policy,
            ),
            client.V1ValidatingWebhook(
                name=f"constraints.{webhook_name}.{CRD_GROUP}",
                client_config=endpoint.client_config(VALIDATE_CONSTRAINT_PATH, ca_bundle),
                rules=[
                    client.V1RuleWithOperations(
                        operations=list(DEFAULT_OPERATIONS),
                        api_groups=[CRD_GROUP],
                        api_versions=[CRD_VERSION],
                        resources=[CRD_PLURAL],
                        scope="Cluster",
                    )
                ],
                admission_review_versions=["v1"],
                side_effects="None",
                timeout_seconds=timeout_seconds,
                failure_policy="Fail",
            ),
        ],
    )


def render_yaml(resource: Any) -> str:
    """Render a Kubernetes client model as a manifest for kubectl apply."""
    document = client.ApiClient().sanitize_for_serialization(resource)
    return yaml.safe_dump(document, sort_keys=False)


def render_webhook_configuration_yaml(configuration: client.V1ValidatingWebhookConfiguration) -> str:
    return render_yaml(configuration)


class WebhookRegistrar:
    def __init__(
        self,
        admission_api: client.AdmissionregistrationV1Api,
        name: str = "kube-bastion",
        timeout_seconds: int = 5,
        ignore_label: str = "bastion.dev/ignore",
        attempts: int = 5,
        backoff_max: float = 30.0,
    ):
        self.admission_api = admission_api
        self.name = _webhook_name(name)
        self.timeout_seconds = timeout_seconds
        self.ignore_label = ignore_label
        self.attempts = attempts
        self.backoff_max = backoff_max

    def _retrying(self, func):
        return backoff.on_exception(
            backoff.expo,
            API_ERRORS,
            max_tries=self.attempts,
            max_value=self.backoff_max,
            jitter=backoff.full_jitter,
            giveup=lambda e: not is_transient(e),
            on_backoff=lambda details: logger.warning(
                f"Webhook API call failed (attempt {details['tries']}), retrying in {details['wait']:.1f}s"
            ),
        )(func)

    def register(
        self,
        ca_bundle: str,
        endpoint: Endpoint,
        resource_rules: Optional[list[client.V1RuleWithOperations]] = None,
        failure_policy: str = "Fail",
    ) -> client.V1ValidatingWebhookConfiguration:
        """Create or update the webhook configuration; safe to call repeatedly."""
        configuration = build_webhook_configuration(
            name=self.name,
            endpoint=endpoint,
            ca_bundle=ca_bundle,
            resource_rules=resource_rules,
            failure_policy=failure_policy,
            timeout_seconds=self.timeout_seconds,
            ignore_label=self.ignore_label,
        )
        try:
            return self._retrying(self._apply)(configuration)
        except API_ERRORS as e:
            raise RegistrationError(f"Could not register webhook {self.name}: {e}") from e

    def _apply(self, configuration: client.V1ValidatingWebhookConfiguration) -> Any:
        try:
            created = self.admission_api.create_validating_webhook_configuration(configuration)
            logger.info(f"Webhook configuration {self.name} created")
            return created
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise
        existing = self.admission_api.read_validating_webhook_configuration(self.name)
        configuration.metadata.resource_version = existing.metadata.resource_version
        replaced = self.admission_api.replace_validating_webhook_configuration(self.name, configuration)
        logger.info(f"Webhook configuration {self.name} updated")
        return replaced

    def deregister(self):
        """Delete the webhook configuration; a missing configuration is not an error."""
        try:
            self._retrying(self._delete)()
        except API_ERRORS as e:
            raise RegistrationError(f"Could not remove webhook {self.name}: {e}") from e

    def _delete(self):
        try:
            self.admission_api.delete_validating_webhook_configuration(self.name)
            logger.info(f"Webhook configuration {self.name} deleted")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.info(f"Webhook configuration {self.name} was already absent")
