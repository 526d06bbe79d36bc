"""Shared fixtures: an orchestrator over the deterministic mock backend."""

import pytest

from session_orchestrator.domain.orchestration.core.orchestrator import Orchestrator
from session_orchestrator.infrastructure.config.settings import OrchestratorSettings
from session_orchestrator.infrastructure.engine.mock_engine import MockInferenceBackend

SYSTEM_PROMPT = "You are a test assistant."
MODEL_PATH = "/models/test-model.gguf"


def make_settings(**overrides) -> OrchestratorSettings:
    overrides.setdefault("system_prompt", SYSTEM_PROMPT)
    return OrchestratorSettings(**overrides)


def make_orchestrator(**backend_options) -> Orchestrator:
    return Orchestrator(MockInferenceBackend(**backend_options), settings=make_settings())


@pytest.fixture
def backend():
    return MockInferenceBackend()


@pytest.fixture
def orchestrator(backend):
    return Orchestrator(backend, settings=make_settings())


@pytest.fixture
async def loaded(orchestrator):
    assert await orchestrator.select_model_and_load(MODEL_PATH)
    return orchestrator
