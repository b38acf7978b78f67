import asyncio
from unittest.mock import AsyncMock

import pytest

from applications import ApplicationMethod, ApplicationRegistry
from flow_errors import AlreadyRunning
from flow_models import FlowStep, RunOptions
import flow_orchestrator
from flow_orchestrator import FlowOrchestrator, build_step_ids, orchestrator_for
from latent_adapter import LatentApplication, register_latent_application
from mimic_manager import MimicManager
from value_generator import ValueGenerator

PAYMENTS_MIMIC = '''
async def start(manager, config):
    async def handler(request):
        return {"paid": True}
    return await manager.start(config, config.get("port", 0), handler)
'''


@register_latent_application("inbox")
class Inbox(LatentApplication):
    instances = []

    def __init__(self, details=None):
        super().__init__(details)
        self.started = False
        self.stopped = False
        Inbox.instances.append(self)

    async def start(self, flow, details):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def test(self, flow, check, contents):
        if (contents.get("body") or {}).get("delivered"):
            return []
        return [{"message": f"nothing delivered to {check.get('mailbox')}"}]


@pytest.fixture
def registry(make_application, applications_dir):
    make_application("shop", envs={"dev": "BASE_URL=http://shop\n", "staging": "BASE_URL=http://staging\n"})
    make_application("mail", envs={"staging": "HOST=mail\n"})
    make_application("payments", mimic=PAYMENTS_MIMIC)
    return ApplicationRegistry(applications_dir)


@pytest.fixture
def mimics():
    return MimicManager()


@pytest.fixture
def orchestrator(registry, mimics):
    return FlowOrchestrator(registry, mimics, ValueGenerator(seed=4))


def cli_options(environment="dev", **kwargs):
    return RunOptions(environment=environment, cli=True, **kwargs)


def one_step(method="create", **step):
    return {"version": 1, "title": "t", "steps": [{"application": "shop", "method": method, **step}]}


# ---------------------------
# Step ids
# ---------------------------

def test_build_step_ids_suffixes_later_duplicates():
    steps = [
        FlowStep(application="shop", method="ping"),
        FlowStep(application="shop", method="ping"),
        FlowStep(application="shop", method="ping", slug="first"),
        FlowStep(application="shop", method="ping"),
        FlowStep(application="tester", method="wait", waitForTime={"time": 500}),
        FlowStep(application="tester", method="wait", waitForTime={"time": None}),
    ]
    ids = [s.id for s in build_step_ids(steps)]
    assert ids == ["shop-ping", "shop-ping-1", "first", "shop-ping-3",
                   "tester-wait-waitForTime-500", "tester-wait-waitForTime-?"]
    assert len(set(ids)) == len(ids)


def test_orchestrator_for_version():
    assert orchestrator_for(1) is FlowOrchestrator
    assert orchestrator_for("1") is FlowOrchestrator
    with pytest.raises(ValueError):
        orchestrator_for(2)


# ---------------------------
# Retry channels
# ---------------------------

@pytest.mark.asyncio
async def test_step_retry_exhaustion_calls_method_times_plus_one(orchestrator, registry):
    stub = AsyncMock(return_value=(None, None, None))
    registry.register("shop", "create", stub)

    result = await orchestrator.run(one_step(retry={"times": 2, "delay": 0}), cli_options())

    assert stub.await_count == 3
    step = result.steps[0]
    assert step.execution.status == "error"
    assert "max retries reached" in step.execution.error["message"]
    assert step.execution.error["code"] == 7
    assert step.execution.attempt == 2
    assert result.execution.status == "error"
    assert result.execution.error == step.execution.error
    assert result.exit_code == 7


@pytest.mark.asyncio
async def test_step_retry_waits_delay_between_attempts(orchestrator, registry, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    stub = AsyncMock(side_effect=[(None, None, None), ({}, 200, {"ok": True})])
    registry.register("shop", "create", stub)

    result = await orchestrator.run(one_step(retry={"times": 3, "delay": 250}), cli_options())

    assert result.passed
    assert stub.await_count == 2
    assert sleeps == [0.25]
    assert result.steps[0].execution.attempt == 1


@pytest.mark.asyncio
async def test_partially_empty_response_is_not_retried(orchestrator, registry):
    stub = AsyncMock(return_value=(None, 204, None))
    registry.register("shop", "create", stub)

    result = await orchestrator.run(one_step(retry={"times": 2, "delay": 0}), cli_options())

    assert result.passed
    assert stub.await_count == 1


@pytest.mark.asyncio
async def test_test_retry_passes_on_third_attempt(orchestrator, registry):
    stub = AsyncMock(side_effect=[({}, 500, {}), ({}, 500, {}), ({}, 200, {})])
    registry.register("shop", "create", stub)

    flow = one_step(test={"status": 200, "retry": {"times": 3, "delay": 0}})
    result = await orchestrator.run(flow, cli_options())

    step = result.steps[0]
    assert step.execution.status == "passed"
    assert step.execution.attempt == 2
    assert stub.await_count == 3
    assert step.testReport["hasErrors"] is False


@pytest.mark.asyncio
async def test_test_retry_default_delay_is_one_second(orchestrator, registry, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    registry.register("shop", "create", AsyncMock(side_effect=[({}, 500, {}), ({}, 200, {})]))

    result = await orchestrator.run(one_step(test={"status": 200, "retry": {"times": 1}}), cli_options())

    assert result.passed
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_test_retry_exhaustion_fails_step(orchestrator, registry):
    stub = AsyncMock(return_value=({}, 500, {}))
    registry.register("shop", "create", stub)

    result = await orchestrator.run(one_step(test={"status": 200, "retry": {"times": 2, "delay": 0}}), cli_options())

    step = result.steps[0]
    assert stub.await_count == 3
    assert step.execution.status == "failed"
    assert step.execution.error["name"] == "TestFailed"
    assert step.execution.error["code"] == 4
    assert step.execution.error["stepId"] == "shop-create"
    assert result.exit_code == 4


@pytest.mark.asyncio
async def test_invalid_test_retry_configuration(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(return_value=({}, 500, {})))

    result = await orchestrator.run(one_step(test={"status": 200, "retry": {"times": 0}}), cli_options())

    step = result.steps[0]
    assert step.execution.status == "error"
    assert step.execution.error["code"] == 7
    assert "times must be a number greater than 0" in step.execution.error["message"]


@pytest.mark.asyncio
async def test_retries_reuse_resolved_parameters(orchestrator, registry):
    stub = AsyncMock(side_effect=[({}, 500, {}), ({}, 200, {})])
    registry.register("shop", "create", stub)

    flow = one_step(parameters={"body": {"ref": "{{ uuid }}", "at": "{{ timestamp }}"}},
                    test={"status": 200, "retry": {"times": 1, "delay": 0}})
    result = await orchestrator.run(flow, cli_options())

    first, second = (call.args[1] for call in stub.await_args_list)
    assert first == second
    assert "{{" not in first["body"]["ref"]
    assert result.steps[0].request == first


# ---------------------------
# Pre-flight
# ---------------------------

@pytest.mark.asyncio
async def test_unknown_environment_runs_no_step(orchestrator, registry):
    stub = AsyncMock(return_value=({}, 200, {}))
    registry.register("shop", "create", stub)

    result = await orchestrator.run(one_step(), cli_options(environment="prod"))

    assert result.execution.status == "error"
    assert result.execution.error["code"] == 2
    assert result.execution.error["name"] == "InvalidEnvironment"
    assert stub.await_count == 0
    assert all(step.execution is None for step in result.steps)


@pytest.mark.asyncio
async def test_missing_environment_file(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))
    flow = {"steps": [{"application": "shop", "method": "create"}, {"application": "mail", "method": "send"}]}

    result = await orchestrator.run(flow, cli_options(environment="dev"))

    assert result.execution.error["name"] == "MissingEnvironmentFile"
    assert result.execution.error["code"] == 3
    assert result.steps[0].execution is None


@pytest.mark.asyncio
async def test_mimic_without_definition_is_invalid(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))

    result = await orchestrator.run(one_step(mimic=[{"application": "shop"}]), cli_options())

    assert result.execution.error["name"] == "InvalidMimic"
    assert result.execution.error["code"] == 5


@pytest.mark.asyncio
async def test_tester_application_needs_no_env_file(orchestrator):
    flow = {"steps": [{"application": "tester", "method": "echo", "parameters": {"hello": "world"}}]}

    result = await orchestrator.run(flow, cli_options())

    assert result.passed
    assert result.steps[0].response == {"headers": {}, "status": 200, "body": {"hello": "world"}}


# ---------------------------
# Data flow between steps
# ---------------------------

@pytest.mark.asyncio
async def test_later_steps_see_earlier_responses_and_memory(orchestrator, registry):
    create = AsyncMock(return_value=({}, 201, {"id": "ord-9"}, {"token": "abc"}))
    lookup = AsyncMock(return_value=({}, 200, {"found": True}))
    registry.register("shop", "create", create)
    registry.register("shop", "lookup", lookup)
    flow = {
        "steps": [
            {"slug": "step1", "application": "shop", "method": "create"},
            {"slug": "step2", "application": "shop", "method": "lookup",
             "parameters": {"query": {"id": "{{steps.step1.response.body.id}}", "auth": "{{ memory.token }}"}}},
            {"slug": "step3", "application": "tester", "method": "echo",
             "parameters": {"seen": "{{steps.step2.request.query.id}}", "later": "{{steps.step4.response.body}}"}},
        ]
    }

    result = await orchestrator.run(flow, cli_options())

    assert result.passed
    assert lookup.await_args.args[1] == {"query": {"id": "ord-9", "auth": "abc"}}
    assert result.steps[2].response["body"] == {"seen": "ord-9", "later": ""}
    assert [s.id for s in result.steps] == ["step1", "step2", "step3"]


@pytest.mark.asyncio
async def test_fallbacks_fill_missing_parameters(orchestrator, registry):
    schema = {
        "type": "object",
        "properties": {"email": {"type": "string"}},
        "required": ["email"],
        "fallbacks": {"email": [{"type": "memory", "key": "lastEmail"},
                                {"type": "static", "value": "default@test.com"}]},
    }
    stub = AsyncMock(return_value=({}, 200, {}))
    registry.register("shop", "signup", ApplicationMethod(stub, "Sign up", name="signup", body=schema))

    result = await orchestrator.run(one_step("signup", parameters={"body": {}}), cli_options())

    assert result.passed
    assert stub.await_args.args[1] == {"body": {"email": "default@test.com"}}


@pytest.mark.asyncio
async def test_schema_violation_is_a_step_error(orchestrator, registry):
    schema = {"type": "object", "required": ["email", "name"]}
    registry.register("shop", "signup", ApplicationMethod(AsyncMock(), "Sign up", name="signup", body=schema))

    result = await orchestrator.run(one_step("signup"), cli_options())

    error = result.steps[0].execution.error
    assert error["name"] == "SchemaValidationError"
    assert error["code"] == 8
    assert len(error["errors"]) == 2


@pytest.mark.asyncio
async def test_case_selects_env_overrides(orchestrator, registry, make_application):
    seen = {}

    def capture(ctx, parameters, flow):
        seen["base"] = ctx.env["BASE_URL"]
        return {}, 200, {}

    make_application("shop", envs={"dev": "BASE_URL=http://shop\nBASE_URL_EU=http://eu.shop\n"})
    registry.register("shop", "create", capture)

    result = await orchestrator.run(one_step(case="eu"), cli_options())

    assert result.passed
    assert seen["base"] == "http://eu.shop"


# ---------------------------
# Assertions
# ---------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("count,status", [(5, "passed"), (0, "failed")])
async def test_expression_assertion(orchestrator, registry, count, status):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {"count": count})))

    result = await orchestrator.run(one_step(test={"body": {"count": "$expr: value > 0"}}), cli_options())

    step = result.steps[0]
    assert step.execution.status == status
    if status == "failed":
        assert step.testReport["body"][0]["expression"] == " value > 0"
        assert step.testReport["body"][0]["actual"] == 0


@pytest.mark.asyncio
async def test_latent_applications_are_started_checked_and_stopped(orchestrator, registry):
    Inbox.instances.clear()
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {"delivered": True})))
    flow = one_step(test={"latentApplications": [{"application": "inbox", "mailbox": "orders"}]})

    result = await orchestrator.run(flow, cli_options())

    assert result.passed
    assert len(Inbox.instances) == 1
    assert Inbox.instances[0].started and Inbox.instances[0].stopped
    assert result.steps[0].testReport["latentApplications"] == []


@pytest.mark.asyncio
async def test_latent_application_errors_fail_the_step(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))
    flow = one_step(testlatentApplications=[{"application": "inbox", "mailbox": "orders"}])
    flow["latentApplications"] = [{"application": "inbox"}]

    result = await orchestrator.run(flow, cli_options())

    report = result.steps[0].testReport
    assert result.steps[0].execution.status == "failed"
    assert report["latentApplications"] == [
        {"application": "inbox", "errors": [{"message": "nothing delivered to orders"}]}
    ]


# ---------------------------
# Failures
# ---------------------------

@pytest.mark.asyncio
async def test_unknown_method_stops_the_flow(orchestrator, registry):
    second = AsyncMock(return_value=({}, 200, {}))
    registry.register("shop", "second", second)
    flow = {"steps": [{"application": "shop", "method": "missing"}, {"application": "shop", "method": "second"}]}

    result = await orchestrator.run(flow, cli_options())

    assert result.steps[0].execution.error["name"] == "UnknownMethod"
    assert result.steps[0].execution.error["code"] == 7
    assert result.steps[1].execution is None
    assert second.await_count == 0


@pytest.mark.asyncio
async def test_template_error_is_reported_with_its_code(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))

    result = await orchestrator.run(one_step(parameters={"body": {"x": "{{ broken"}}), cli_options())

    assert result.steps[0].execution.error["name"] == "TemplateError"
    assert result.execution.error["code"] == 9


@pytest.mark.asyncio
async def test_unclassified_exception_becomes_step_execution_error(orchestrator, registry):
    registry.register("shop", "create", AsyncMock(side_effect=RuntimeError("socket closed")))

    result = await orchestrator.run(one_step(), cli_options())

    error = result.steps[0].execution.error
    assert error == {"name": "StepExecutionError", "message": "socket closed", "code": 7, "stepId": "shop-create"}


@pytest.mark.asyncio
async def test_durations_are_milliseconds_on_success_and_failure(orchestrator, registry, monkeypatch):
    clock = iter(range(1000, 100000, 250))
    monkeypatch.setattr(flow_orchestrator, "_now_ms", lambda: next(clock))
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))
    registry.register("shop", "broken", AsyncMock(side_effect=RuntimeError("socket closed")))

    passed = await orchestrator.run(one_step(), cli_options())
    failed = await orchestrator.run(one_step(method="broken"), cli_options())

    for result in (passed, failed):
        step_times = result.steps[0].execution.times
        assert step_times.duration == step_times.end - step_times.start
        assert isinstance(step_times.duration, int) and step_times.duration >= 250
        times = result.execution.times
        assert times.duration == times.end - times.start
        assert times.duration >= step_times.duration
    assert failed.execution.status == "error"


# ---------------------------
# Mimics
# ---------------------------

@pytest.mark.asyncio
async def test_mimics_run_only_during_their_step(orchestrator, registry, mimics):
    during = {}

    async def pay(ctx, parameters, flow):
        during["servers"] = [s.application for s in mimics.servers]
        return {}, 200, {}

    registry.register("shop", "pay", pay)
    flow = {"steps": [{"application": "shop", "method": "pay", "mimic": [{"application": "payments", "port": 0}]}]}

    result = await orchestrator.run(flow, cli_options())

    assert result.passed
    assert during["servers"] == ["payments"]
    assert mimics.servers == []


@pytest.mark.asyncio
async def test_mimics_are_stopped_when_the_step_fails(orchestrator, registry, mimics):
    registry.register("shop", "pay", AsyncMock(side_effect=RuntimeError("declined")))
    flow = {"steps": [{"application": "shop", "method": "pay", "mimic": {"application": "payments", "port": 0}}]}

    result = await orchestrator.run(flow, cli_options())

    assert result.execution.status == "error"
    assert mimics.servers == []


# ---------------------------
# Server mode
# ---------------------------

@pytest.mark.asyncio
async def test_server_mode_returns_immediately_and_streams_events(orchestrator, registry, emitter):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {"ok": True})))

    started = await orchestrator.run(one_step(), RunOptions(environment="dev", cli=False, reporter=emitter))

    assert started["execution"]["status"] == "running"
    with pytest.raises(AlreadyRunning):
        await orchestrator.run(one_step(), RunOptions(environment="dev", cli=False, reporter=emitter))

    result = await orchestrator.wait()
    assert result.passed
    assert not orchestrator.running

    topics = emitter.topics()
    assert topics[0] == "execution"
    assert topics[-1] == "execution"
    assert topics.index("diagram") < topics.index("step")
    assert all(payload["id"] == started["execution"]["id"] for _, payload in emitter.events)
    statuses = [data["data"]["execution"]["status"] for data in emitter.of_topic("step")]
    assert statuses[0] == "running"
    assert statuses[-1] == "passed"
    assert emitter.of_topic("execution")[-1]["status"] == "passed"


@pytest.mark.asyncio
async def test_cli_mode_never_emits(orchestrator, registry, emitter):
    registry.register("shop", "create", AsyncMock(return_value=({}, 200, {})))

    await orchestrator.run(one_step(), RunOptions(environment="dev", cli=True, reporter=emitter))

    assert emitter.events == []


@pytest.mark.asyncio
async def test_guard_is_released_after_a_failed_run(orchestrator):
    await orchestrator.run(one_step(), cli_options(environment="nope"))
    result = await orchestrator.run({"steps": [{"application": "tester", "method": "echo"}]}, cli_options())
    assert result.passed
