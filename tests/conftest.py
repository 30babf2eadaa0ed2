"""Shared fixtures for docflow tests."""

from datetime import datetime, timedelta, timezone

import pytest

from docflow.catalog import WorkflowCatalog
from docflow.collaborators import RuleRegistryValidator, ScriptResult
from docflow.config import EngineConfig
from docflow.engine import WorkflowEngine
from docflow.persistence import InMemoryInstanceStore
from docflow.transports.inmemory import InMemoryTransport


class FakeClock:
    """Manually advanced clock so durations and escalations are deterministic."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubScriptRunner:
    """Script runner returning canned results instead of spawning processes."""

    def __init__(self, *results: ScriptResult):
        self.results = list(results) or [ScriptResult(success=True, output={"ok": True})]
        self.calls: list[str] = []

    async def run_script(self, script, context):
        self.calls.append(script)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def validator() -> RuleRegistryValidator:
    registry = RuleRegistryValidator()

    @registry.register("gst_compliance")
    def _gst(context):
        return context["document"].get("payload", {}).get("gstin") is not None

    @registry.register("pan_compliance")
    def _pan(context):
        return True

    @registry.register("regulatory_compliance")
    async def _regulatory(context):
        return context["compliance_score"] >= 0.5

    return registry


@pytest.fixture
def script_runner() -> StubScriptRunner:
    return StubScriptRunner()


@pytest.fixture
def stub_runner():
    """Build a script runner replaying the given results (or raising given exceptions)."""
    return StubScriptRunner


@pytest.fixture
def make_engine(clock, transport, store, validator, script_runner):
    """Factory building an engine around the shared fakes.

    Pass ``workflows`` to seed the catalog; built-in workflows are used
    otherwise.
    """

    def _make(workflows=None, **overrides) -> WorkflowEngine:
        if workflows is None:
            from docflow.builtin import builtin_workflows

            catalog = WorkflowCatalog(builtin_workflows())
        else:
            catalog = WorkflowCatalog()
            for definition in workflows:
                catalog.create(definition)
        kwargs = dict(
            catalog=catalog,
            store=store,
            transport=transport,
            validator=validator,
            script_runner=script_runner,
            clock=clock,
            settings=EngineConfig(retry_base_delay=0, retry_jitter=0),
        )
        kwargs.update(overrides)
        return WorkflowEngine(**kwargs)

    return _make


@pytest.fixture
def engine(make_engine) -> WorkflowEngine:
    return make_engine()
