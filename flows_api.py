import os
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

from applications import ApplicationRegistry
from flow_errors import AlreadyRunning, FlowError, MissingEnvironmentFile
from flow_logging import configure_logging, get_logger
from flow_models import FlowDocument, FlowsSettings, RunOptions, get_user_flow, list_user_flows, parse_flow
from flow_orchestrator import FlowOrchestrator, orchestrator_for
from mimic_manager import get_mimic_manager

logger = get_logger("API")

MAX_RECORDED_EXECUTIONS = 20


# ------------------------------------------------------
# Event channel
# ------------------------------------------------------
class ExecutionEventHub:
    """Keeps the latest state of recent executions from `flowexecution:update` events."""

    def __init__(self, limit: int = MAX_RECORDED_EXECUTIONS):
        self.limit = limit
        self.executions: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.events = 0

    def emit(self, event: str, payload: Dict[str, Any]):
        self.events += 1
        execution_id = payload.get("id")
        if execution_id is None:
            return
        record = self.executions.get(execution_id)
        if record is None:
            record = {"execution": None, "steps": {}, "diagram": None}
            self.executions[execution_id] = record
            while len(self.executions) > self.limit:
                self.executions.popitem(last=False)

        topic, data = payload.get("topic"), payload.get("data")
        if topic == "execution":
            record["execution"] = data
        elif topic == "step":
            record["steps"][data["id"]] = data["data"]
        elif topic == "diagram":
            record["diagram"] = data
        else:
            logger.warning(f"Ignoring {event} with unknown topic '{topic}'")

    def get(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self.executions.get(execution_id)


# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
state: Dict[str, Any] = {
    "settings": None,
    "registry": None,
    "orchestrator": None,
    "hub": ExecutionEventHub(),
    "started_at": time.time(),
}


def configure(applications_dir: Optional[str] = None, settings: Optional[FlowsSettings] = None):
    """(Re)build the registry and orchestrator used by the endpoints."""
    settings = settings or FlowsSettings.load()
    registry = ApplicationRegistry(applications_dir or settings.applications_dir)
    state["settings"] = settings
    state["registry"] = registry
    state["orchestrator"] = FlowOrchestrator(registry)
    state["hub"] = ExecutionEventHub()
    return state


def _registry() -> ApplicationRegistry:
    if state["registry"] is None:
        configure()
    return state["registry"]


def _orchestrator() -> FlowOrchestrator:
    if state["orchestrator"] is None:
        configure()
    return state["orchestrator"]


def _settings() -> FlowsSettings:
    if state["settings"] is None:
        configure()
    return state["settings"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await get_mimic_manager().stop_all()


app = FastAPI(title="Flows", lifespan=lifespan)


# ------------------------------------------------------
# Request models
# ------------------------------------------------------
class StartFlowRequest(BaseModel):
    environment: str
    value: Optional[str] = None
    flow: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    debug: bool = False


class EnvUpdateRequest(BaseModel):
    key: str
    value: str


# ------------------------------------------------------
# Endpoints
# ------------------------------------------------------
@app.get('/api/health')
async def health_check():
    orchestrator = state["orchestrator"]
    return JSONResponse({
        "status": "healthy",
        "app_status": "running" if orchestrator is not None and orchestrator.running else "idle",
    })


@app.get('/api/metrics')
async def api_metrics():
    process = psutil.Process(os.getpid())
    mem = process.memory_info()
    orchestrator = state["orchestrator"]
    return JSONResponse({
        "timestamp": datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z"),
        "uptime_s": round(time.time() - state["started_at"], 1),
        "system": {
            "cpu_percent": round(psutil.cpu_percent(interval=None), 1),
            "memory_percent": round(psutil.virtual_memory().percent, 1),
            "process_rss_mb": round(mem.rss / (1024 * 1024), 2),
        },
        "metrics": {
            "running": bool(orchestrator and orchestrator.running),
            "recorded_executions": len(state["hub"].executions),
            "events": state["hub"].events,
            "mimic_servers": len(get_mimic_manager().servers),
        },
    })


@app.get('/api/environments')
async def list_environments():
    registry = _registry()
    return JSONResponse({
        "environments": registry.environments(),
        "applications": registry.describe_environments(),
    })


@app.put('/api/environments/{application}/{environment}')
async def update_environment(application: str, environment: str, body: EnvUpdateRequest):
    try:
        _registry().update_env(application, environment, body.key, body.value)
    except FlowError as e:
        raise HTTPException(status_code=404 if isinstance(e, MissingEnvironmentFile) else 500, detail=e.as_dict())
    return JSONResponse({"message": f"{body.key} updated for {application} ({environment})"})


@app.get('/api/applications')
async def list_applications():
    return JSONResponse({"applications": _registry().describe()})


@app.get('/api/flows/user')
async def user_flows(path: Optional[str] = None):
    """List the flows of the user flow library, or return the one at `path`."""
    flows_dir = _settings().flows_dir
    if path is None:
        return JSONResponse(list_user_flows(flows_dir))
    try:
        flow = get_user_flow(path, flows_dir)
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return JSONResponse(jsonable_encoder(flow))


@app.post('/api/flows/start')
async def start_flow(data: dict):
    """
    Start a flow and return its execution id at once. Progress is recorded
    from the event channel and served by `/api/executions/{id}`.
    """
    try:
        request = StartFlowRequest.model_validate(data)
    except ValidationError as ve:
        logger.error(f"Request validation failed: {ve}")
        raise HTTPException(status_code=400, detail=ve.errors(include_url=False))

    try:
        if request.value is not None:
            flow = parse_flow(request.value, title=request.title)
        elif request.flow is not None:
            flow = FlowDocument.model_validate(request.flow)
        else:
            raise ValueError("Either 'value' (YAML text) or 'flow' is required")
        orchestrator_for(flow.version)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid flow: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    if request.debug:
        configure_logging(True)

    orchestrator = _orchestrator()
    options = RunOptions(environment=request.environment, cli=False, debug=request.debug, reporter=state["hub"])
    try:
        result = await orchestrator.run(flow, options)
    except AlreadyRunning as e:
        raise HTTPException(status_code=409, detail=e.as_dict())
    logger.info(f"Flow started with execution {result['execution']['id']}")
    return JSONResponse(result)


@app.get('/api/executions/{execution_id}')
async def get_execution(execution_id: str):
    record = state["hub"].get(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown execution {execution_id}")
    return JSONResponse(jsonable_encoder({
        "execution": record["execution"],
        "steps": list(record["steps"].values()),
        "diagram": record["diagram"],
    }))


@app.get('/metrics')
async def metrics_prometheus():
    """Prometheus text format of the counters in /api/metrics."""
    orchestrator = state["orchestrator"]
    lines = [
        "# HELP flows_running Whether a flow is executing (0/1).",
        "# TYPE flows_running gauge",
        f"flows_running {int(bool(orchestrator and orchestrator.running))}",
        "# HELP flows_events_total Execution events received.",
        "# TYPE flows_events_total counter",
        f"flows_events_total {state['hub'].events}",
        "# HELP flows_mimic_servers Mimic servers currently listening.",
        "# TYPE flows_mimic_servers gauge",
        f"flows_mimic_servers {len(get_mimic_manager().servers)}",
    ]
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")


def main():
    settings = FlowsSettings.load()
    configure_logging(settings.log_level == "DEBUG")
    configure(settings=settings)
    logger.info(f"Starting flows API server on {settings.host}:{settings.port}...")

    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == '__main__':
    main()
