"""
Pytest Configuration and Fixtures

Shared fixtures: fake clock, recording scheduler, in-memory store,
handler registry, definition service and orchestrator.
"""
from typing import Any, Callable, Dict, List, Optional

import pytest

from flowcore.config.settings import Settings
from flowcore.domain.models import WorkflowDefinition
from flowcore.engine.orchestrator import WorkflowOrchestrator
from flowcore.repositories.memory_store import InMemoryWorkflowStore
from flowcore.services.assignee_resolver import StaticAssigneeResolver
from flowcore.services.definition_service import DefinitionService
from flowcore.services.handler_registry import StepHandlerRegistry

from tests.factories import FakeClock, RecordingScheduler


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        retry_max_attempts=3,
        retry_backoff_seconds=0.0,
        instance_lock_timeout_seconds=5.0,
        max_inline_steps=20,
        worker_id="test-worker"
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore(lock_timeout_seconds=5.0)


@pytest.fixture
def registry() -> StepHandlerRegistry:
    return StepHandlerRegistry()


@pytest.fixture
def definitions(store, clock) -> DefinitionService:
    return DefinitionService(store, clock)


@pytest.fixture
def orchestrator(store, registry, scheduler, clock, settings) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        store,
        handlers=registry,
        assignee_resolver=StaticAssigneeResolver({"approvers": "alice"}),
        scheduler=scheduler,
        clock=clock,
        settings=settings
    )


@pytest.fixture
def deploy(definitions) -> Callable[..., WorkflowDefinition]:
    """Create and activate a definition from step documents"""
    counter = {"n": 0}

    def _deploy(steps: List[Dict[str, Any]], name: Optional[str] = None) -> WorkflowDefinition:
        counter["n"] += 1
        definition = definitions.create_definition(name or f"workflow-{counter['n']}", steps)
        return definitions.activate(definition.definition_id)

    return _deploy
