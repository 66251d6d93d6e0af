"""Connector syncs: import steps, progress events and post-sync resolution."""

from .extract import extract_external_id
from .orchestrator import ProgressEvent, SyncOrchestrator, SyncStep, SyncSummary, stream_sync
from .registry import ConnectorDescriptor, get_connector_registry, resolve_connector
from .steps import SourceRecordImporter, StepCounters

__all__ = [
    "ConnectorDescriptor",
    "ProgressEvent",
    "SourceRecordImporter",
    "StepCounters",
    "SyncOrchestrator",
    "SyncStep",
    "SyncSummary",
    "extract_external_id",
    "get_connector_registry",
    "resolve_connector",
    "stream_sync",
]
