"""
AWPA Metrics Store

Session data store for Android WebView performance monitoring: recorded
sessions, time-series metrics and network requests in SQLite, with windowed
queries, a bounded live history, and a versioned export/import format.
"""

from .storage_interface import (
    SessionStorage,
    StorageError,
    SessionNotFound,
    InvariantViolation,
    SessionAlreadyActive,
    SessionNotActive,
    CannotDeleteActiveSession,
    SchemaTooNew,
    InvalidTransition,
    DataValidationError,
    MalformedExport,
    UnsupportedVersion,
    InvalidPayload,
    SessionStatus,
    MetricType,
    Session,
    SessionDescriptor,
    Metric,
    NetworkRequest,
    DeleteResult,
    PerformancePayload,
    MemoryPayload,
    CpuPayload,
    NetworkSummaryPayload,
    WebVitalsPayload,
)
from .schema import SchemaManager, CURRENT_SCHEMA_VERSION, CURRENT_FORMAT_VERSION
from .sqlite_storage import SQLiteSessionStore
from .query import QueryLayer, MetricQuery, RequestQuery, NamedRange, TimeWindow, SessionFilter
from .lifecycle import SessionLifecycleController, EndReason
from .history_cache import BoundedHistoryCache, HistoryView
from .connection_workflow import ConnectionWorkflow, ConnectStep, StepStatus
from .connection_registry import ConnectionRegistry, ConnectionPreset, RecentConnection
from .exporter import StreamingExporter
from .importer import SessionImporter, ImportResult
from .envelope import ExportEnvelope
from .comparison import summarize, compare
from .service import PerformanceSessionService
from .config import (
    StorageConfig,
    DeploymentProfile,
    get_development_config,
    get_production_config,
    get_testing_config,
)

__all__ = [
    'SessionStorage',
    'StorageError',
    'SessionNotFound',
    'InvariantViolation',
    'SessionAlreadyActive',
    'SessionNotActive',
    'CannotDeleteActiveSession',
    'SchemaTooNew',
    'InvalidTransition',
    'DataValidationError',
    'MalformedExport',
    'UnsupportedVersion',
    'InvalidPayload',
    'SessionStatus',
    'MetricType',
    'Session',
    'SessionDescriptor',
    'Metric',
    'NetworkRequest',
    'DeleteResult',
    'PerformancePayload',
    'MemoryPayload',
    'CpuPayload',
    'NetworkSummaryPayload',
    'WebVitalsPayload',
    'SchemaManager',
    'CURRENT_SCHEMA_VERSION',
    'CURRENT_FORMAT_VERSION',
    'SQLiteSessionStore',
    'QueryLayer',
    'MetricQuery',
    'RequestQuery',
    'NamedRange',
    'TimeWindow',
    'SessionFilter',
    'SessionLifecycleController',
    'EndReason',
    'BoundedHistoryCache',
    'HistoryView',
    'ConnectionWorkflow',
    'ConnectStep',
    'StepStatus',
    'ConnectionRegistry',
    'ConnectionPreset',
    'RecentConnection',
    'StreamingExporter',
    'SessionImporter',
    'ImportResult',
    'ExportEnvelope',
    'summarize',
    'compare',
    'PerformanceSessionService',
    'StorageConfig',
    'DeploymentProfile',
    'get_development_config',
    'get_production_config',
    'get_testing_config',
]

__version__ = '0.1.0'
