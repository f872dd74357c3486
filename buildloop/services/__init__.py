from buildloop.services.context_optimizer import ContextOptimizer, OptimizedContext
from buildloop.services.history_store import HistoryStore
from buildloop.services.oracle_gateway import OracleGateway, OracleSession
from buildloop.services.telemetry_bus import TelemetryBuffer, TelemetryRegistry
from buildloop.services.workspace_storage import WorkspaceStorage

__all__ = [
    "ContextOptimizer",
    "OptimizedContext",
    "HistoryStore",
    "OracleGateway",
    "OracleSession",
    "TelemetryBuffer",
    "TelemetryRegistry",
    "WorkspaceStorage",
]
