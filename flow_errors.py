# flow_errors.py
"""
Error taxonomy of the flow orchestrator.

Every error carries a stable ``name`` and numeric ``code`` so callers (the CLI
exit status, the dashboard) can branch on it. ``as_dict()`` is the shape
recorded on steps and executions.
"""

from typing import Any, Dict, List, Optional


class FlowError(Exception):
    name = "ProcessorError"
    code = 1

    def __init__(self, message: str, *, step_id: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        if code is not None:
            self.code = code

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "message": self.message, "code": self.code}
        if self.step_id:
            data["stepId"] = self.step_id
        return data

    def __str__(self) -> str:
        return self.message


class ProcessorError(FlowError):
    name = "ProcessorError"
    code = 1


class InvalidEnvironment(FlowError):
    name = "InvalidEnvironment"
    code = 2


class MissingEnvironmentFile(FlowError):
    name = "MissingEnvironmentFile"
    code = 3


class TestFailed(FlowError):
    name = "TestFailed"
    code = 4
    __test__ = False  # not a pytest test class


class InvalidMimic(FlowError):
    name = "InvalidMimic"
    code = 5


class EnvironmentSetupError(FlowError):
    name = "EnvironmentSetupError"
    code = 6


class StepExecutionError(FlowError):
    name = "StepExecutionError"
    code = 7


class UnknownMethod(StepExecutionError):
    name = "UnknownMethod"


class SchemaValidationError(FlowError):
    """Parameters do not satisfy the method schema. ``errors`` lists every violation."""
    name = "SchemaValidationError"
    code = 8

    def __init__(self, errors: List[Dict[str, Any]], *, section: Optional[str] = None):
        self.errors = errors
        self.section = section
        where = f" in '{section}'" if section else ""
        details = "; ".join(f"{e['path'] or '<root>'}: {e['message']}" for e in errors)
        super().__init__(f"Schema validation failed{where}: {details}")

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["errors"] = self.errors
        return data


class TemplateError(FlowError):
    name = "TemplateError"
    code = 9


class AlreadyRunning(FlowError):
    name = "AlreadyRunning"
    code = 10


def classify(error: BaseException, *, default=ProcessorError, step_id: Optional[str] = None) -> FlowError:
    """Return ``error`` as a FlowError, wrapping anything unclassified in ``default``."""
    if isinstance(error, FlowError):
        if step_id and not error.step_id:
            error.step_id = step_id
        return error
    wrapped = default(str(error) or type(error).__name__, step_id=step_id)
    wrapped.__cause__ = error
    return wrapped
