# flow_orchestrator.py
"""
Runs a flow document step by step.

``FlowOrchestrator.run`` builds an ``OrchestratorSession`` that owns every
piece of run-scoped state (application contexts, mimic definitions, latent
applications, the reporter) and drives the step state machine:

    pending -> running -> passed | failed | error

Two retry channels exist. A step ``retry`` policy redispatches when the
method returns nothing at all (headers, status and body all None). A
``test.retry`` policy re-executes the step when its assertions fail. Both
reuse the parameters resolved on the first attempt and share the step's
``attempt`` counter.
"""

import asyncio
import inspect
import time
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple, Union

from applications import TESTER, AppContext, ApplicationMethod, ApplicationRegistry
from fallbacks import FallbackResolver
from flow_errors import (
    AlreadyRunning,
    InvalidEnvironment,
    InvalidMimic,
    ProcessorError,
    StepExecutionError,
    TestFailed,
    classify,
)
from flow_logging import configure_logging, get_logger
from flow_models import (
    ExecutionRecord,
    FlowDocument,
    FlowStep,
    RunOptions,
    RunResult,
    StepExecution,
    StepTimes,
)
from flow_reporter import FlowReporter
from flow_templates import TemplateResolver
from flow_tester import TestEvaluator
from latent_adapter import LatentApplication, load_latent_application
from mimic_manager import MimicManager, get_mimic_manager
from value_generator import ValueGenerator

logger = get_logger("Orchestrator")

DEFAULT_TEST_RETRY_DELAY_MS = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------
# Step ids
# ---------------------------

def step_base_id(step: FlowStep) -> str:
    if step.slug:
        return step.slug
    parts: List[str] = [step.application or "", step.method or ""]
    if step.waitForTime:
        wait_time = step.waitForTime.get("time") if isinstance(step.waitForTime, dict) else None
        parts += ["waitForTime", str(wait_time) if wait_time else "?"]
    return "-".join(p for p in parts if p)


def build_step_ids(steps: List[FlowStep]) -> List[FlowStep]:
    """Assign unique ids in place. The 2nd..nth occurrence of an id gets ``-<index>``."""
    base_ids = [step_base_id(step) for step in steps]
    counts = Counter(base_ids)
    seen = set()
    used = set(base_ids)
    for index, (step, base) in enumerate(zip(steps, base_ids)):
        candidate = base
        if counts[base] > 1 and base in seen:
            candidate = f"{base}-{index}"
            while candidate in used:
                candidate = f"{candidate}-{index}"
            used.add(candidate)
        seen.add(base)
        step.id = candidate
    return steps


def _is_empty(headers: Any, status: Any, body: Any) -> bool:
    return headers is None and status is None and body is None


# ---------------------------
# Session
# ---------------------------

class OrchestratorSession:
    """State of one run. Built by ``FlowOrchestrator.run``, discarded afterwards."""

    def __init__(self, orchestrator: "FlowOrchestrator", flow: FlowDocument, options: RunOptions):
        self.flow = flow
        self.options = options
        self.registry = orchestrator.registry
        self.mimics = orchestrator.mimic_manager
        self.resolver = orchestrator.resolver
        self.fallbacks = orchestrator.fallbacks
        self.tester = orchestrator.tester
        self.reporter = FlowReporter(flow, cli=options.cli, emitter=options.reporter)
        self.contexts: Dict[str, AppContext] = {}
        self.mimic_modules: Dict[str, Any] = {}
        self.latent: Dict[str, LatentApplication] = {}

    # ---------- run -------------------------------------------------------- #
    async def process(self) -> RunResult:
        execution = self.flow.execution
        try:
            await self._preflight()
            for step in self.flow.steps:
                await self._run_step(step)
            execution.status = "passed"
            self._finish(execution)
            logger.info(f"Flow '{self.flow.title or execution.id}' passed in {execution.times.duration} ms")
        except asyncio.CancelledError:
            execution.status = "error"
            execution.error = ProcessorError("Execution cancelled").as_dict()
            self._finish(execution)
            raise
        except Exception as e:
            error = classify(e)
            execution.status = "error"
            if execution.error is None:
                execution.error = error.as_dict()
            self._finish(execution)
            logger.error(f"Flow execution {execution.id} failed: {error.name}: {error.message}",
                         exc_info=self.options.debug)
        finally:
            await self._stop_latent()
            self.reporter.execution()
        return RunResult(execution=execution, steps=self.flow.steps)

    @staticmethod
    def _finish(record):
        record.times.end = _now_ms()
        record.times.duration = record.times.end - record.times.start

    async def _preflight(self):
        environment = self.options.environment
        environments = self.registry.environments()
        if environment not in environments:
            raise InvalidEnvironment(
                f"Invalid environment: {environment}. Must be one of {', '.join(environments) or '(none)'}"
            )

        applications = list(dict.fromkeys(s.application for s in self.flow.steps if s.application))
        for application in applications:
            if application == TESTER:
                self.contexts[application] = AppContext(TESTER, None, {}, self.reporter)
                continue
            self.contexts[application] = self.registry.context(application, environment, self.reporter)

        mimicked = list(dict.fromkeys(m.application for s in self.flow.steps for m in s.mimic))
        missing = [app for app in mimicked if not self.registry.has_mimic(app)]
        if missing:
            raise InvalidMimic(f"Invalid mimic configuration: no mimic definition for {', '.join(missing)}")
        for application in mimicked:
            try:
                self.mimic_modules[application] = self.registry.mimic_module(application)
            except Exception as e:
                raise ProcessorError(f"Error loading mimic definition of {application}: {e}") from e

        await self._start_latent()

        build_step_ids(self.flow.steps)
        self.reporter.diagram()

    # ---------- latent applications ---------------------------------------- #
    def _latent_declarations(self) -> List[Dict[str, Any]]:
        declared = {d["application"]: d for d in self.flow.latentApplications if d.get("application")}
        for step in self.flow.steps:
            for check in self._latent_checks(step):
                declared.setdefault(check["application"], {"application": check["application"]})
        return list(declared.values())

    @staticmethod
    def _latent_checks(step: FlowStep) -> List[Dict[str, Any]]:
        checks = []
        if step.test and step.test.latentApplications:
            checks.extend(c.model_dump() for c in step.test.latentApplications)
        if step.testlatentApplications:
            extra = step.testlatentApplications
            checks.extend(extra if isinstance(extra, list) else [extra])
        return [c for c in checks if isinstance(c, dict) and c.get("application")]

    async def _start_latent(self):
        for details in self._latent_declarations():
            app = load_latent_application(details)
            await app.start(self.flow, details)
            self.latent[details["application"]] = app
            logger.debug(f"Latent application '{details['application']}' started")

    async def _stop_latent(self):
        for name, app in list(self.latent.items()):
            try:
                await app.stop()
            except Exception as e:
                logger.error(f"Failed to stop latent application '{name}': {e}")
        self.latent.clear()

    # ---------- mimics ----------------------------------------------------- #
    async def _start_mimics(self, step: FlowStep) -> List[Tuple[Any, Dict[str, Any], Any]]:
        if not step.mimic:
            return []

        async def start_one(spec):
            config = {
                **spec.model_dump(),
                "flow": self.flow,
                "reporter": self.reporter,
                "static_dir": str(self.registry.static_dir(spec.application)),
            }
            self.reporter.mimic_start(config)
            module = self.mimic_modules[spec.application]
            handles = await _maybe_await(module.start(self.mimics, config))
            return module, config, handles

        return list(await asyncio.gather(*(start_one(spec) for spec in step.mimic)))

    async def _stop_mimics(self, started: List[Tuple[Any, Dict[str, Any], Any]]):
        for module, config, handles in started:
            try:
                if hasattr(module, "stop"):
                    await _maybe_await(module.stop(self.mimics, config))
                    continue
                for handle in handles if isinstance(handles, list) else [handles]:
                    if handle is not None:
                        await self.mimics.stop(handle)
            except Exception as e:
                logger.error(f"Failed to stop mimic '{config.get('application')}': {e}")

    # ---------- steps ------------------------------------------------------ #
    def _template_context(self) -> Dict[str, Any]:
        steps = {
            s.id: s.model_dump(exclude_none=True)
            for s in self.flow.steps
            if s.execution is not None
        }
        return {"steps": steps, "memory": self.flow.memory}

    def _context_for(self, step: FlowStep) -> AppContext:
        ctx = self.contexts.get(step.application) or AppContext(step.application or "", None, {}, self.reporter)
        return ctx.for_case(step.case)

    async def _run_step(self, step: FlowStep):
        step.execution = StepExecution(status="running", times=StepTimes(start=_now_ms()))
        self.reporter.step_start(step)
        self.reporter.step_update(step)

        started: List[Tuple[Any, Dict[str, Any], Any]] = []
        try:
            started = await self._start_mimics(step)
            handler = self.registry.handler(step.application, step.method)
            ctx = self._context_for(step)

            # Resolved once; retries of either kind reuse these values.
            parameters = self.resolver.resolve(step.parameters, self._template_context())
            parameters = handler.prepare(parameters, self.flow.memory, self.fallbacks)
            step.parameters = parameters

            while True:
                headers, status, body, memory = await self._dispatch(step, handler, ctx, parameters)
                self._finish(step.execution)
                self.reporter.step_update(step)

                if memory:
                    self.flow.memory.update(memory)
                step.request = parameters
                step.response = {"headers": headers, "status": status, "body": body}
                self.reporter.response(step.response, timing=step.execution.times.duration)

                expected = self._expected(step)
                if expected is None:
                    break
                report = await self.tester.evaluate(expected, step.response, self.latent, self.flow)
                step.testReport = report
                self.reporter.test(report)
                if not report["hasErrors"]:
                    break

                delay = self._test_retry_delay(step)
                if delay is None:
                    step.execution.status = "failed"
                    raise TestFailed(f"Test failed for step {step.id}", step_id=step.id)
                logger.info(f"Test failed for step {step.id}. Retrying "
                            f"({step.execution.attempt}/{step.test.retry.times})...")
                self.reporter.step_update(step)
                await asyncio.sleep(delay / 1000)

            step.execution.status = "passed"
            self.reporter.step_update(step)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify(e, default=StepExecutionError, step_id=step.id)
            if not isinstance(error, TestFailed):
                step.execution.status = "error"
            self._finish(step.execution)
            step.execution.error = error.as_dict()
            self.flow.execution.error = step.execution.error
            self.reporter.step_update(step)
            logger.error(f"Error executing step {step.id}: {error.message}", exc_info=self.options.debug)
            if error is e:
                raise
            raise error from e
        finally:
            await self._stop_mimics(started)

    async def _dispatch(self, step: FlowStep, handler: ApplicationMethod, ctx: AppContext,
                        parameters: Dict[str, Any]):
        """Call the method, redispatching on an all-empty result while the step retry allows it."""
        retries = 0
        while True:
            headers, status, body, memory = await handler.invoke(ctx, parameters, self.flow)
            if step.retry is None or not _is_empty(headers, status, body):
                return headers, status, body, memory
            if retries >= step.retry.times:
                raise StepExecutionError("max retries reached", step_id=step.id)
            retries += 1
            step.execution.attempt += 1
            self.reporter.step_update(step)
            logger.debug(f"Empty response from step {step.id}, retry {retries}/{step.retry.times}")
            if step.retry.delay:
                await asyncio.sleep(step.retry.delay / 1000)

    def _expected(self, step: FlowStep) -> Optional[Dict[str, Any]]:
        if step.test is None and not step.testlatentApplications:
            return None
        expected = step.test.model_dump(exclude_none=True) if step.test else {}
        expected.pop("retry", None)
        checks = self._latent_checks(step)
        if checks:
            expected["latentApplications"] = checks
        return expected

    def _test_retry_delay(self, step: FlowStep) -> Optional[float]:
        """Validate ``test.retry`` and consume one attempt. None when no retry is left."""
        retry = step.test.retry if step.test else None
        if retry is None:
            return None
        times = retry.times
        if isinstance(times, bool) or not isinstance(times, int) or times < 1:
            raise StepExecutionError("Invalid retry configuration: times must be a number greater than 0",
                                     step_id=step.id)
        delay = DEFAULT_TEST_RETRY_DELAY_MS if retry.delay is None else retry.delay
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            raise StepExecutionError("Invalid retry configuration: delay must be a number greater than or equal to 0",
                                     step_id=step.id)
        if step.execution.attempt >= times:
            return None
        step.execution.attempt += 1
        return delay


# ---------------------------
# Orchestrator
# ---------------------------

class FlowOrchestrator:
    """Runs version 1 flow documents against an application registry."""

    version = "1"

    def __init__(self, registry: ApplicationRegistry, mimic_manager: Optional[MimicManager] = None,
                 generator: Optional[ValueGenerator] = None):
        self.registry = registry
        self.generator = generator or ValueGenerator()
        self.resolver = TemplateResolver(self.generator)
        self.fallbacks = FallbackResolver(self.generator)
        self.tester = TestEvaluator()
        self.mimic_manager = mimic_manager or get_mimic_manager()
        self.task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, flow: Union[FlowDocument, Dict[str, Any]],
                  options: Union[RunOptions, Dict[str, Any]]) -> Union[RunResult, Dict[str, Any]]:
        """
        Execute ``flow``. In CLI mode wait and return the RunResult; in server
        mode schedule the run and return ``{"execution": ...}`` at once.
        """
        if self._running:
            raise AlreadyRunning("Already running")
        if isinstance(flow, dict):
            flow = FlowDocument.model_validate(flow)
        if isinstance(options, dict):
            options = RunOptions.model_validate(options)
        if options.debug:
            configure_logging(True)

        self._running = True
        flow.execution = ExecutionRecord(id=str(uuid.uuid4()), times=StepTimes(start=_now_ms()))
        session = OrchestratorSession(self, flow, options)
        session.reporter.execution()
        logger.info(f"Execution {flow.execution.id} started ({options.environment})")

        if not options.cli:
            self.task = asyncio.create_task(self._guarded(session))
            return {"execution": flow.execution.model_dump(exclude_none=True)}
        return await self._guarded(session)

    async def wait(self) -> Optional[RunResult]:
        """Wait for the run scheduled in server mode."""
        if self.task is None:
            return None
        return await self.task

    async def _guarded(self, session: OrchestratorSession) -> RunResult:
        try:
            return await session.process()
        finally:
            self._running = False


ORCHESTRATORS = {FlowOrchestrator.version: FlowOrchestrator}


def orchestrator_for(version: Any):
    """Return the orchestrator class for a flow ``version``."""
    try:
        return ORCHESTRATORS[str(version)]
    except KeyError:
        raise ValueError(f"Unsupported flow version '{version}'. Supported: {', '.join(ORCHESTRATORS)}") from None
