# flow_reporter.py
"""
Live progress of a flow execution.

Console output goes through the ``Flows.Reporter`` logger. Structured updates
go to an emitter (anything with ``emit(event, payload)``) as
``flowexecution:update`` events with topic ``step``, ``execution`` or
``diagram``. In CLI mode the emitter is a no-op.
"""

import json
import logging
from typing import Any, Dict, Optional

from flow_logging import get_logger

logger = get_logger("Reporter")

UPDATE_EVENT = "flowexecution:update"
KEYS_TO_HIDE = ("secret", "token", "credential", "x-api-key", "x_api_key", "password", "authorization")
INDENT = " " * 6


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in KEYS_TO_HIDE)


def mask_value(value: Any) -> str:
    """Replace every character but the last four with ``*``."""
    text = "" if value is None else str(value)
    if len(text) > 4:
        return "*" * (len(text) - 4) + text[-4:]
    return "*" * len(text)


def sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with secret-looking values masked, recursively."""
    if isinstance(data, list):
        return [sensitive(item) for item in data]
    if isinstance(data, dict):
        return {
            key: mask_value(value) if is_sensitive_key(key) else sensitive(value)
            for key, value in data.items()
        }
    return data


def _pretty(data: Any) -> str:
    text = json.dumps(sensitive(data), indent=2, default=str)
    return "\n".join(f"{INDENT}{line}" for line in text.splitlines())


class NullEmitter:
    def emit(self, event: str, payload: Dict[str, Any]):
        pass


class FlowReporter:
    def __init__(self, flow, cli: bool = True, emitter: Optional[Any] = None):
        self.flow = flow
        self.cli = cli
        self.emitter = NullEmitter() if cli or emitter is None else emitter
        self.level = logging.INFO if cli else logging.DEBUG

    def _log(self, message: str):
        logger.log(self.level, message)

    def _emit(self, topic: str, data: Any):
        execution_id = self.flow.execution.id if self.flow.execution else None
        self.emitter.emit(UPDATE_EVENT, {"id": execution_id, "topic": topic, "data": data})

    # ---------- events ----------------------------------------------------- #
    def execution(self):
        self._emit("execution", self.flow.execution.model_dump(exclude_none=True))

    def diagram(self):
        self._emit("diagram", self.flow.snapshot())

    def step_update(self, step):
        self._emit("step", {"id": step.id, "data": step.model_dump(exclude_none=True)})

    # ---------- console ---------------------------------------------------- #
    def step_start(self, step):
        index = next((i for i, s in enumerate(self.flow.steps) if s.id == step.id), -1)
        self._log("")
        self._log(f"STEP {index + 1} | {step.application or '-'} | {step.id}")
        if step.description:
            self._log(f"   {step.description}")
        self._log(f"   method {step.method}")

    def mimic_start(self, mimic: Optional[Dict[str, Any]] = None):
        if not mimic:
            return
        self._log(f"   MIMIC {mimic.get('application')} {mimic.get('url') or mimic.get('port') or ''}".rstrip())

    def request(self, method: str, url: str, headers: Optional[Dict] = None, body: Any = None):
        self._log(f"   REQUEST {method.upper()} {url}")
        if headers:
            self._log(f"{INDENT}headers\n{_pretty(headers)}")
        if body is not None:
            self._log(f"{INDENT}body\n{_pretty(body)}")

    def response(self, result: Dict[str, Any], timing: Optional[int] = None):
        status = result.get("status")
        attention = " <-- ATTENTION -->" if isinstance(status, int) and status >= 400 else ""
        self._log(f"   RESPONSE{f' ({timing} ms)' if timing is not None else ''}")
        self._log(f"{INDENT}status {status if status is not None else 'none'}{attention}")
        headers = result.get("headers")
        self._log(f"{INDENT}headers\n{_pretty(headers)}" if headers else f"{INDENT}headers none")
        body = result.get("body")
        self._log(f"{INDENT}body\n{_pretty(body)}" if body else f"{INDENT}body none")

    def mimic_request(self, application: str, url: str, request: Dict[str, Any]):
        self._log(f"   MIMIC {application} <- {request.get('method', '')} {url}")
        self._log(_pretty(request))

    def mimic_response(self, application: str, url: str):
        self._log(f"   MIMIC {application} -> {url}")

    def mimic_response_body(self, body: Any):
        self._log(_pretty(body))

    def mimic_file(self, application: str, path: str, exists: bool):
        last3 = "/".join(str(path).split("/")[-3:])
        self._log(f"   MIMIC {application} file {last3} {'found' if exists else 'missing'}")

    def test(self, report: Dict[str, Any]):
        failed = report.get("hasErrors")
        self._log(f"{INDENT}test {'failed <-- ATTENTION -->' if failed else 'passed'}")
        for aspect, entries in report.items():
            if aspect == "hasErrors" or not entries:
                continue
            self._log(f"        - {aspect}:")
            for entry in entries:
                if aspect == "latentApplications":
                    self._log(f"            {entry['application']}")
                    for error in entry["errors"]:
                        self._log(f"            error {json.dumps(error, default=str)}")
                    continue
                self._log(f"          {entry.get('message')}")
                if "expression" in entry:
                    self._log(f"          expression {entry['expression']}")
                else:
                    self._log(f"          expected {json.dumps(entry.get('expected'), default=str)}")
                self._log(f"          actual   {json.dumps(entry.get('actual'), default=str)}")
