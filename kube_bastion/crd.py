"""CustomResourceDefinition for Constraint objects."""

from __future__ import annotations

import logging
from typing import Any

import backoff
from kubernetes import client
from kubernetes.client.rest import ApiException

from .constraint import CRD_GROUP, CRD_KIND, CRD_PLURAL, CRD_VERSION, RULE_LANGUAGE
from .errors import RegistrationError
from .kube import API_ERRORS, is_transient

logger = logging.getLogger(__name__)

CRD_NAME = f"{CRD_PLURAL}.{CRD_GROUP}"


def _schema() -> client.V1JSONSchemaProps:
    string = client.V1JSONSchemaProps(type="string")
    string_list = client.V1JSONSchemaProps(type="array", items=string)
    match_rule = client.V1JSONSchemaProps(
        type="object",
        required=["kind"],
        properties={"apiGroup": string, "kind": client.V1JSONSchemaProps(type="string", min_length=1)},
    )
    spec = client.V1JSONSchemaProps(
        type="object",
        required=["target", "rule"],
        properties={
            "target": client.V1JSONSchemaProps(
                type="object",
                required=["matches"],
                properties={
                    "matches": client.V1JSONSchemaProps(type="array", min_items=1, items=match_rule),
                    "namespaces": string_list,
                    "excludedNamespaces": string_list,
                },
            ),
            "rule": client.V1JSONSchemaProps(
                type="object",
                required=[RULE_LANGUAGE],
                properties={RULE_LANGUAGE: client.V1JSONSchemaProps(type="string", min_length=1)},
            ),
            "enforce": client.V1JSONSchemaProps(type="boolean", default=True),
        },
    )
    return client.V1JSONSchemaProps(type="object", required=["spec"], properties={"spec": spec})


def build_constraint_crd() -> client.V1CustomResourceDefinition:
    return client.V1CustomResourceDefinition(
        api_version="apiextensions.k8s.io/v1",
        kind="CustomResourceDefinition",
        metadata=client.V1ObjectMeta(name=CRD_NAME),
        spec=client.V1CustomResourceDefinitionSpec(
            group=CRD_GROUP,
            scope="Cluster",
            names=client.V1CustomResourceDefinitionNames(
                plural=CRD_PLURAL,
                singular=CRD_KIND.lower(),
                kind=CRD_KIND,
                list_kind=f"{CRD_KIND}List",
            ),
            versions=[
                client.V1CustomResourceDefinitionVersion(
                    name=CRD_VERSION,
                    served=True,
                    storage=True,
                    schema=client.V1CustomResourceValidation(open_apiv3_schema=_schema()),
                    additional_printer_columns=[
                        client.V1CustomResourceColumnDefinition(
                            name="Enforce", type="boolean", json_path=".spec.enforce"
                        ),
                        client.V1CustomResourceColumnDefinition(
                            name="Age", type="date", json_path=".metadata.creationTimestamp"
                        ),
                    ],
                )
            ],
        ),
    )


@backoff.on_exception(
    backoff.expo,
    API_ERRORS,
    max_tries=5,
    max_value=30,
    jitter=backoff.full_jitter,
    giveup=lambda e: not is_transient(e),
)
def _apply(extensions_api: client.ApiextensionsV1Api) -> Any:
    crd = build_constraint_crd()
    try:
        created = extensions_api.create_custom_resource_definition(crd)
        logger.info(f"CustomResourceDefinition {CRD_NAME} created")
        return created
    except ApiException as e:
        if e.status != 409:  # Already exists
            raise
    existing = extensions_api.read_custom_resource_definition(CRD_NAME)
    crd.metadata.resource_version = existing.metadata.resource_version
    replaced = extensions_api.replace_custom_resource_definition(CRD_NAME, crd)
    logger.info(f"CustomResourceDefinition {CRD_NAME} updated")
    return replaced


def install_constraint_crd(extensions_api: client.ApiextensionsV1Api) -> Any:
    """Create the CRD, or replace it when it already exists."""
    try:
        return _apply(extensions_api)
    except API_ERRORS as e:
        raise RegistrationError(f"Could not install CustomResourceDefinition {CRD_NAME}: {e}") from e
