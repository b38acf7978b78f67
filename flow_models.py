# flow_models.py

import os
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from flow_logging import get_logger

logger = get_logger("Models")

StepStatus = Literal["pending", "running", "passed", "failed", "error"]
ExecutionStatus = Literal["running", "passed", "error"]

# ---------------------------
# Flow document models
# ---------------------------

class RetryPolicy(BaseModel):
    """Step-level retry, triggered only when a method returns nothing at all."""
    times: int = Field(0, ge=0, description="Number of retries after the first call")
    delay: int = Field(0, ge=0, description="Delay in milliseconds between retries")


class TestRetryPolicy(BaseModel):
    """Assertion retry. Values are checked when the step runs, not at load time."""
    times: Any = Field(None, description="Maximum assertion attempts, an integer >= 1")
    delay: Any = Field(None, description="Delay in milliseconds between attempts (default 1000)")


class MimicSpec(BaseModel):
    """A mock server to run for the duration of one step."""
    application: str = Field(..., description="Application whose mimic definition is started")

    model_config = ConfigDict(extra="allow")


class LatentCheck(BaseModel):
    application: str = Field(..., description="Name of the latent application asked to verify")

    model_config = ConfigDict(extra="allow")


class StepTest(BaseModel):
    status: Optional[Union[int, List[int]]] = Field(None, description="Accepted status code(s)")
    body: Optional[Any] = Field(None, description="Expected body; `$expr:` leaves are evaluated")
    latentApplications: Optional[List[LatentCheck]] = Field(None, description="Checks delegated to latent applications")
    retry: Optional[TestRetryPolicy] = None

    model_config = ConfigDict(extra="allow")


class StepTimes(BaseModel):
    start: Optional[int] = None
    end: Optional[int] = None
    duration: Optional[int] = Field(None, description="Milliseconds")


class StepExecution(BaseModel):
    status: StepStatus = "pending"
    attempt: int = 0
    times: StepTimes = Field(default_factory=StepTimes)
    error: Optional[Dict[str, Any]] = None


class ExecutionRecord(BaseModel):
    id: str
    status: ExecutionStatus = "running"
    times: StepTimes = Field(default_factory=StepTimes)
    error: Optional[Dict[str, Any]] = None


class FlowStep(BaseModel):
    id: Optional[str] = Field(None, description="Computed unique id, see build_step_ids")
    slug: Optional[str] = Field(None, description="Explicit id, referenced as steps.<slug>")
    application: Optional[str] = None
    method: Optional[str] = None
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    mimic: List[MimicSpec] = Field(default_factory=list)
    test: Optional[StepTest] = None
    testlatentApplications: Optional[Any] = None
    retry: Optional[RetryPolicy] = None
    waitForTime: Optional[Any] = None
    case: Optional[str] = Field(None, description="Selects `<KEY>_<case>` env overrides for this step")

    # Runtime annotations
    execution: Optional[StepExecution] = None
    request: Optional[Any] = None
    response: Optional[Dict[str, Any]] = None
    testReport: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("mimic", mode="before")
    @classmethod
    def mimic_as_list(cls, v):
        if v is None:
            return []
        return v if isinstance(v, list) else [v]


class FlowDocument(BaseModel):
    version: Union[int, str] = 1
    title: Optional[str] = None
    description: Optional[str] = None
    steps: List[FlowStep] = Field(default_factory=list)
    memory: Dict[str, Any] = Field(default_factory=dict)
    latentApplications: List[Dict[str, Any]] = Field(default_factory=list)
    execution: Optional[ExecutionRecord] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("steps", mode="before")
    @classmethod
    def expand_shorthand_steps(cls, v):
        # A bare string step is a method name
        if v is None:
            return []
        return [{"method": s, "id": s} if isinstance(s, str) else s for s in v]

    @field_validator("memory", mode="before")
    @classmethod
    def memory_default(cls, v):
        return v or {}

    @field_validator("latentApplications", mode="before")
    @classmethod
    def latent_default(cls, v):
        return v or []

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------
# Run options and results
# ---------------------------

class RunOptions(BaseModel):
    environment: str
    cli: bool = False
    debug: bool = False
    reporter: Optional[Any] = Field(None, description="Event emitter with an emit(event, payload) method")

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RunResult(BaseModel):
    execution: ExecutionRecord
    steps: List[FlowStep]

    @property
    def passed(self) -> bool:
        return self.execution.status == "passed"

    @property
    def exit_code(self) -> int:
        if self.passed:
            return 0
        return int((self.execution.error or {}).get("code") or 1)


# ---------------------------
# Settings
# ---------------------------

class FlowsSettings(BaseModel):
    home: Path = Field(default_factory=lambda: Path.home() / "flows")
    applications_dir: Optional[Path] = None
    flows_dir: Optional[Path] = None
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = Field(4000, ge=1, le=65535)

    @model_validator(mode="after")
    def default_applications_dir(self) -> "FlowsSettings":
        if self.applications_dir is None:
            self.applications_dir = self.home / "applications"
        if self.flows_dir is None:
            self.flows_dir = self.home / "flows"
        return self

    @classmethod
    def load(cls, environ: Optional[Dict[str, str]] = None) -> "FlowsSettings":
        """Settings from the environment, overridden by the YAML file named in FLOWS_CONFIG_FILE."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        if environ.get("FLOWS_HOME"):
            values["home"] = Path(environ["FLOWS_HOME"]).expanduser()
        if environ.get("FLOWS_APPLICATIONS_DIR"):
            values["applications_dir"] = Path(environ["FLOWS_APPLICATIONS_DIR"]).expanduser()
        if environ.get("FLOWS_DIR"):
            values["flows_dir"] = Path(environ["FLOWS_DIR"]).expanduser()
        if environ.get("LOG_LEVEL"):
            values["log_level"] = environ["LOG_LEVEL"].upper()
        if environ.get("FLOWS_HOST"):
            values["host"] = environ["FLOWS_HOST"]
        if environ.get("FLOWS_PORT"):
            values["port"] = int(environ["FLOWS_PORT"])

        config_file = environ.get("FLOWS_CONFIG_FILE")
        if config_file:
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    file_values = YAML(typ="safe").load(f) or {}
            except FileNotFoundError:
                logger.error(f"Config file {config_file} not found, using environment only")
                file_values = {}
            values.update(file_values)
        return cls.model_validate(values)


# ---------------------------
# Flow loading
# ---------------------------

def parse_flow(text: str, title: Optional[str] = None) -> FlowDocument:
    """Parse a YAML flow document. Raises ValueError on malformed input."""
    try:
        data = YAML(typ="safe").load(StringIO(text))
    except YAMLError as e:
        raise ValueError(f"Invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("A flow must be a mapping with a 'steps' list")
    flow = FlowDocument.model_validate(data)
    if not flow.title and title:
        flow.title = title
    return flow


def title_from_path(path: Union[str, Path]) -> str:
    stem = Path(path).name.split(".")[0]
    return " ".join(part.capitalize() for part in stem.replace("_", "-").split("-") if part)


def load_flow_file(path: Union[str, Path]) -> FlowDocument:
    with open(path, "r", encoding="utf-8") as f:
        return parse_flow(f.read(), title=title_from_path(path))


# ---------------------------
# User flow library
# ---------------------------

FLOW_EXTENSIONS = (".yaml", ".yml")
MAX_FLOW_DEPTH = 4


def _flow_files(root: Path, depth: int = 0) -> List[Path]:
    if depth > MAX_FLOW_DEPTH or not root.is_dir():
        return []
    found: List[Path] = []
    for entry in sorted(root.iterdir()):
        if entry.is_dir() and not entry.name.startswith("."):
            found.extend(_flow_files(entry, depth + 1))
        elif entry.is_file() and entry.suffix.lower() in FLOW_EXTENSIONS:
            found.append(entry)
    return found


def _read_flow_content(path: Path) -> Optional[Dict[str, Any]]:
    """Raw YAML mapping of a flow file with a derived title, or None when it cannot be parsed."""
    try:
        content = YAML(typ="safe").load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, YAMLError) as e:
        logger.debug(f"Cannot read flow {path}: {e}")
        return None
    if not isinstance(content, dict):
        return None
    if not content.get("title"):
        content["title"] = title_from_path(path)
    return content


def list_user_flows(root: Union[str, Path]) -> List[Dict[str, Any]]:
    """Every YAML flow under ``root`` (up to four levels deep) with its title and description."""
    flows = []
    for path in _flow_files(Path(root)):
        content = _read_flow_content(path)
        flows.append({
            "name": path.name,
            "isOk": content is not None,
            "path": str(path),
            "title": content["title"] if content else path.name,
            "description": (content or {}).get("description") or "",
        })
    return flows


def get_user_flow(path: Union[str, Path], root: Union[str, Path]) -> Dict[str, Any]:
    """
    The parsed flow at ``path`` plus its ``plainText``. Raises
    FileNotFoundError for a missing file or one outside ``root``.
    """
    root = Path(root).resolve()
    flow_path = Path(path).expanduser().resolve()
    if root != flow_path and root not in flow_path.parents:
        raise FileNotFoundError(f"Flow not found: {path}")
    if not flow_path.is_file() or flow_path.suffix.lower() not in FLOW_EXTENSIONS:
        raise FileNotFoundError(f"Flow not found: {path}")
    return {
        **(_read_flow_content(flow_path) or {}),
        "path": str(flow_path),
        "plainText": flow_path.read_text(encoding="utf-8"),
    }
