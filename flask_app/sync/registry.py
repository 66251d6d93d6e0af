"""
Connector registry.

Each connector names the source table it fills, the import steps a sync runs
and whether a finished sync should kick off identity resolution.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple

from flask_app.models import SourceType


@dataclass(frozen=True)
class StepDescriptor:
    key: str
    label: str


@dataclass(frozen=True)
class ConnectorDescriptor:
    """Metadata describing a data connector."""

    name: str
    title: str
    provider: str
    source_type: SourceType
    steps: Tuple[StepDescriptor, ...]
    triggers_resolution: bool = False
    summary: str | None = None

    @property
    def import_step(self) -> StepDescriptor:
        return self.steps[0]


GRAPH_NODES_STEP = StepDescriptor("graph_nodes_sync", "Syncing graph nodes")


def get_connector_registry() -> Mapping[str, ConnectorDescriptor]:
    return OrderedDict(
        (
            (
                SourceType.CRM.value,
                ConnectorDescriptor(
                    name=SourceType.CRM.value,
                    title="CRM contacts",
                    provider="hubspot",
                    source_type=SourceType.CRM,
                    steps=(StepDescriptor("contacts_import", "Importing contacts"), GRAPH_NODES_STEP),
                    summary="Contacts pulled from the connected CRM.",
                ),
            ),
            (
                SourceType.ECOM.value,
                ConnectorDescriptor(
                    name=SourceType.ECOM.value,
                    title="E-commerce customers",
                    provider="shopify",
                    source_type=SourceType.ECOM,
                    steps=(StepDescriptor("customers_import", "Importing customers"), GRAPH_NODES_STEP),
                    triggers_resolution=True,
                    summary="Storefront customers; a finished sync runs identity resolution.",
                ),
            ),
            (
                SourceType.EMAIL_PLATFORM.value,
                ConnectorDescriptor(
                    name=SourceType.EMAIL_PLATFORM.value,
                    title="Email subscribers",
                    provider="klaviyo",
                    source_type=SourceType.EMAIL_PLATFORM,
                    steps=(StepDescriptor("profiles_import", "Importing profiles"), GRAPH_NODES_STEP),
                    summary="Subscriber profiles from the email platform.",
                ),
            ),
        )
    )


def resolve_connector(name: str, registry: Mapping[str, ConnectorDescriptor] | None = None) -> ConnectorDescriptor:
    registry = registry or get_connector_registry()
    key = (name or "").strip().lower()
    # Accept the provider name as an alias ("shopify" for "ecom").
    for descriptor in registry.values():
        if key in (descriptor.name, descriptor.provider):
            return descriptor
    raise ValueError(f"Unknown connector '{name}'. Known connectors: " + ", ".join(registry))


def resolve_connectors(
    configured: Sequence[str],
    registry: Mapping[str, ConnectorDescriptor] | None = None,
) -> Iterable[ConnectorDescriptor]:
    registry = registry or get_connector_registry()
    return tuple(resolve_connector(name, registry) for name in configured)
