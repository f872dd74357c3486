"""
BuildLoop - Test Configuration and Fixtures
"""
import os

import pytest

# Set testing environment before buildloop reads its settings
os.environ['ENVIRONMENT'] = 'testing'
os.environ['ANTHROPIC_API_KEY'] = 'test-api-key'
os.environ['LOG_LEVEL'] = 'DEBUG'
os.environ['LOG_FILE'] = ''

from buildloop.modules.orchestrator.error_feedback_monitor import ErrorFeedbackMonitor
from buildloop.modules.orchestrator.run_orchestrator import RunOrchestrator
from buildloop.services.context_optimizer import ContextOptimizer
from buildloop.services.history_store import HistoryStore
from buildloop.services.oracle_gateway import OracleGateway
from buildloop.services.telemetry_bus import TelemetryRegistry

from mocks.mock_oracle import ScriptedOracle

# Short enough to keep the suite fast, long enough for scheduled telemetry to land
TEST_VERIFY_TIMEOUT = 0.05


@pytest.fixture
def history_store() -> HistoryStore:
    """Fresh history store with the default cap"""
    return HistoryStore(max_versions=20)


@pytest.fixture
def oracle() -> ScriptedOracle:
    """Scripted oracle transport with no replies queued"""
    return ScriptedOracle()


@pytest.fixture
def make_gateway():
    """Build a gateway over a transport with zero backoff"""
    def factory(transport, max_retries: int = 2, optimizer: ContextOptimizer = None) -> OracleGateway:
        return OracleGateway(
            transport=transport,
            optimizer=optimizer or ContextOptimizer(),
            max_retries=max_retries,
            base_delay=0,
            max_delay=0,
        )
    return factory


@pytest.fixture
def make_orchestrator(make_gateway):
    """Build an orchestrator wired to a scripted transport"""
    def factory(
        transport,
        max_retries: int = 2,
        max_correction_attempts: int = 3,
        verify_timeout: float = TEST_VERIFY_TIMEOUT,
    ) -> RunOrchestrator:
        return RunOrchestrator(
            history=HistoryStore(max_versions=20),
            gateway=make_gateway(transport, max_retries=max_retries),
            telemetry=TelemetryRegistry(),
            monitor=ErrorFeedbackMonitor(timeout_seconds=verify_timeout),
            max_correction_attempts=max_correction_attempts,
        )
    return factory


@pytest.fixture
def orchestrator(make_orchestrator, oracle) -> RunOrchestrator:
    """Orchestrator over the shared `oracle` fixture"""
    return make_orchestrator(oracle)
