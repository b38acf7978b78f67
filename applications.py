# applications.py
"""
Application discovery and the application method contract.

An applications directory holds one folder per application::

    applications/
      shop/
        env/dev.env        # one file per environment
        env/staging.env
        methods.py         # ApplicationMethod attributes, one per method
        mimic.py           # optional: mock definition (see mimic_manager)
        static/            # optional: canned files served by mimics

Methods are declared with the ``application_method`` decorator::

    @application_method("Create an order", body={"type": "object", ...})
    async def create_order(ctx, parameters, flow):
        ...
        return headers, status, body, {"orderId": body["id"]}
"""

import asyncio
import importlib.util
import inspect
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from dotenv import dotenv_values

from fallbacks import FallbackResolver
from flow_errors import EnvironmentSetupError, MissingEnvironmentFile, UnknownMethod
from flow_logging import get_logger
from flow_reporter import is_sensitive_key, mask_value

logger = get_logger("Applications")

TESTER = "tester"
SECTIONS = ("body", "query", "params", "headers")

MethodResult = Tuple[Any, Any, Any, Optional[Dict[str, Any]]]


class AppContext:
    """Per-application context handed to every method call."""

    def __init__(self, name: str, path: Optional[Path], env: Dict[str, Any], reporter: Any = None):
        self.name = name
        self.path = path
        self.env = env
        self.reporter = reporter

    def for_case(self, case: Optional[str]) -> "AppContext":
        """Return a context whose ``<KEY>_<case>`` env entries override ``<KEY>``."""
        if not case:
            return self
        suffix = f"_{case}".lower()
        env = dict(self.env)
        for key, value in self.env.items():
            if key.lower().endswith(suffix) and len(key) > len(suffix):
                env[key[:-len(suffix)]] = value
        return AppContext(self.name, self.path, env, self.reporter)

    def __repr__(self):
        return f"AppContext(name={self.name!r}, path={str(self.path)!r})"


class ApplicationMethod:
    """A callable exposed by an application plus the schemas of its parameters."""

    def __init__(self, func: Callable, description: str = "", *, name: Optional[str] = None,
                 body: Optional[Dict] = None, query: Optional[Dict] = None,
                 params: Optional[Dict] = None, headers: Optional[Dict] = None):
        self.func = func
        self.name = name or func.__name__
        self.description = description
        self.schemas = {
            section: schema
            for section, schema in zip(SECTIONS, (body, query, params, headers))
            if schema is not None
        }

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": dict(self.schemas)}

    def prepare(self, parameters: Optional[Dict[str, Any]], memory: Optional[Dict[str, Any]] = None,
                resolver: Optional[FallbackResolver] = None) -> Dict[str, Any]:
        """Inject fallbacks and validate every declared parameter section."""
        prepared = dict(parameters or {})
        if not self.schemas:
            return prepared
        resolver = resolver or FallbackResolver()
        for section, schema in self.schemas.items():
            prepared[section] = resolver.apply_fallbacks(prepared.get(section), schema, memory, section=section)
        return prepared

    async def invoke(self, ctx: AppContext, parameters: Dict[str, Any], flow: Dict[str, Any]) -> MethodResult:
        result = self.func(ctx, parameters, flow)
        if inspect.isawaitable(result):
            result = await result
        return normalize_result(result)

    async def __call__(self, ctx, parameters, flow):
        return await self.invoke(ctx, parameters, flow)


def normalize_result(result: Any) -> MethodResult:
    """Coerce a method return value into (headers, status, body, memory)."""
    if result is None:
        return None, None, None, None
    if not isinstance(result, (tuple, list)) or not 3 <= len(result) <= 4:
        raise TypeError(f"Method must return (headers, status, body[, memory]), got {type(result).__name__}")
    headers, status, body = result[:3]
    memory = result[3] if len(result) == 4 else None
    return headers, status, body, memory


def application_method(description: str = "", **schemas) -> Callable[[Callable], ApplicationMethod]:
    def decorator(func: Callable) -> ApplicationMethod:
        return ApplicationMethod(func, description, **schemas)
    return decorator


# ---------- Built-in tester application ------------------------------------ #

@application_method("Wait for `time` milliseconds", body=None)
async def _tester_wait(ctx, parameters, flow):
    wait_ms = parameters.get("time", (parameters.get("body") or {}).get("time", 0))
    await asyncio.sleep(float(wait_ms or 0) / 1000.0)
    return {}, 200, {"waited": wait_ms}


@application_method("Return the parameters as the response body")
def _tester_echo(ctx, parameters, flow):
    return {}, 200, parameters


TESTER_METHODS = {"wait": _tester_wait, "echo": _tester_echo}


# ---------- Registry -------------------------------------------------------- #

class Application:
    """What was discovered in one application folder."""

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = path
        self.methods: Dict[str, ApplicationMethod] = {}
        self.mimic_module: Any = None
        self.load_error: Optional[str] = None

    @property
    def env_dir(self) -> Path:
        return self.path / "env"

    @property
    def static_dir(self) -> Path:
        return self.path / "static"

    @property
    def mimic_path(self) -> Path:
        return self.path / "mimic.py"

    def env_files(self) -> Dict[str, Path]:
        if not self.env_dir.is_dir():
            return {}
        return {
            f.name.split(".")[0]: f
            for f in sorted(self.env_dir.iterdir())
            if f.is_file() and f.name.endswith(".env")
        }


def _load_module(name: str, path: Path):
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load module from {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class ApplicationRegistry:
    """Discovers applications under ``root`` and dispatches (application, method) pairs."""

    def __init__(self, root: Optional[os.PathLike] = None):
        self.root = Path(root) if root is not None else None
        self.applications: Dict[str, Application] = {}
        self._handlers: Dict[Tuple[str, str], ApplicationMethod] = {
            (TESTER, name): method for name, method in TESTER_METHODS.items()
        }
        if self.root is not None:
            self.discover()

    def discover(self):
        if not self.root.is_dir():
            logger.warning(f"Applications directory {self.root} does not exist")
            return
        for folder in sorted(p for p in self.root.iterdir() if p.is_dir() and not p.name.startswith((".", "_"))):
            app = Application(folder.name, folder)
            self.applications[app.name] = app
            methods_path = folder / "methods.py"
            if not methods_path.is_file():
                continue
            try:
                module = _load_module(f"flows_applications.{app.name}.methods", methods_path)
            except Exception as e:
                app.load_error = str(e)
                logger.error(f"Failed to load methods of application '{app.name}': {e}")
                continue
            for attr, value in vars(module).items():
                if isinstance(value, ApplicationMethod):
                    self.register(app.name, value.name or attr, value)
        logger.debug(f"Discovered applications: {', '.join(self.applications) or 'none'}")

    def register(self, application: str, method: str, handler: Any):
        if not isinstance(handler, ApplicationMethod):
            handler = ApplicationMethod(handler, name=method)
        self._handlers[(application, method)] = handler

    def has(self, application: str, method: str) -> bool:
        return (application, method) in self._handlers

    def handler(self, application: str, method: str) -> ApplicationMethod:
        try:
            return self._handlers[(application, method)]
        except KeyError:
            raise UnknownMethod(f"Method not found: {method} in {application}") from None

    def methods(self, application: str) -> List[ApplicationMethod]:
        return [m for (app, _), m in self._handlers.items() if app == application]

    def describe(self) -> List[Dict[str, Any]]:
        names = sorted({app for app, _ in self._handlers} | set(self.applications))
        return [{"name": name, "methods": [m.describe() for m in self.methods(name)]} for name in names]

    def summary(self) -> str:
        lines = ["", "=== Applications Summary ===", ""]
        for app in self.describe():
            lines.append(f"Application: {app['name']}")
            if app["methods"]:
                lines.append("  Methods:")
                lines.extend(f"    - {m['name']}: {m['description'] or 'No description'}" for m in app["methods"])
            else:
                lines.append("  No methods found.")
            lines.append("")
        return "\n".join(lines)

    # ---------- environments ---------------------------------------------- #
    def environments(self) -> List[str]:
        names = set()
        for app in self.applications.values():
            names.update(app.env_files())
        return sorted(names)

    def env_path(self, application: str, environment: str) -> Path:
        app = self.applications.get(application)
        base = app.path if app else (self.root or Path(".")) / application
        return base / "env" / f"{environment}.env"

    def load_env(self, application: str, environment: str) -> Dict[str, Any]:
        env_file = self.env_path(application, environment)
        if not env_file.is_file():
            raise MissingEnvironmentFile(f"Missing environment file for {application} at {env_file}")
        try:
            return dict(dotenv_values(env_file))
        except (OSError, UnicodeDecodeError) as e:
            raise EnvironmentSetupError(f"Error setting up environment for {application}: {e}") from e

    def update_env(self, application: str, environment: str, key: str, value: str):
        """Set one key in an environment file, keeping the other entries."""
        env = self.load_env(application, environment)
        env[key] = value
        content = "\n".join(f"{k}={'' if v is None else v}" for k, v in env.items())
        try:
            self.env_path(application, environment).write_text(content + "\n", encoding="utf-8")
        except OSError as e:
            raise EnvironmentSetupError(f"Error updating environment for {application}: {e}") from e

    def describe_environments(self) -> List[Dict[str, Any]]:
        result = []
        for app in self.applications.values():
            envs = []
            for env_name, env_file in app.env_files().items():
                contents = dotenv_values(env_file)
                envs.append({
                    "name": env_name,
                    "path": str(env_file),
                    "contents": [
                        {"key": k, "value": mask_value(v) if is_sensitive_key(k) else v}
                        for k, v in contents.items()
                    ],
                })
            result.append({"name": app.name, "path": str(app.path), "environments": envs})
        return result

    # ---------- mimic definitions ----------------------------------------- #
    def has_mimic(self, application: str) -> bool:
        app = self.applications.get(application)
        return bool(app and app.mimic_path.is_file())

    def mimic_module(self, application: str):
        """Import (once) and return the mock definition module of ``application``."""
        app = self.applications.get(application)
        if app is None or not app.mimic_path.is_file():
            raise ImportError(f"Application '{application}' has no mimic definition")
        if app.mimic_module is None:
            app.mimic_module = _load_module(f"flows_applications.{application}.mimic", app.mimic_path)
        return app.mimic_module

    def static_dir(self, application: str) -> Path:
        app = self.applications.get(application)
        return app.static_dir if app else (self.root or Path(".")) / application / "static"

    def context(self, application: str, environment: Optional[str], reporter: Any = None) -> AppContext:
        app = self.applications.get(application)
        path = app.path if app else None
        env = {} if application == TESTER or environment is None else self.load_env(application, environment)
        return AppContext(application, path, env, reporter)
