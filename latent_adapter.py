"""
Adapter interface for latent applications.

A latent application is a collaborator that is not invoked by a step but
observed by its assertions: a message broker subscriber, a mailbox, an audit
log. It is started once per run and queried from a step ``test`` block::

    test:
      latentApplications:
        - application: mqtt
          client: watcher
          test:
            - topic: orders/created

Sub-class `LatentApplication` and register it with
`register_latent_application`, or point the flow at it with a dotted
``adapter: package.module.Class`` path.
"""

from __future__ import annotations
import importlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Type

from flow_errors import EnvironmentSetupError

_REGISTRY: Dict[str, Type["LatentApplication"]] = {}


class LatentApplication(ABC):
    """
    Abstract base class for assertion-only collaborators.

    ● Lifecycle:
        - `start(flow, details)` : connect / subscribe. Called once per run
                                   with the flow-level declaration.
        - `stop()`               : idempotent shutdown at the end of the run.
    ● Assertions:
        - `test(flow, check, contents)` : return a list of error dicts, empty
                                          when the check holds. ``contents`` is
                                          the step's {headers, status, body}.
    """

    def __init__(self, details: Dict[str, Any] | None = None) -> None:
        self.details = details or {}

    @abstractmethod
    async def start(self, flow: Dict[str, Any], details: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def test(self, flow: Dict[str, Any], check: Dict[str, Any],
                   contents: Dict[str, Any]) -> List[Dict[str, Any]]: ...


def register_latent_application(name: str) -> Callable[[Type[LatentApplication]], Type[LatentApplication]]:
    def decorator(cls: Type[LatentApplication]) -> Type[LatentApplication]:
        _REGISTRY[name] = cls
        return cls
    return decorator


def registered_latent_applications() -> List[str]:
    return sorted(_REGISTRY)


def load_latent_application(details: Dict[str, Any]) -> LatentApplication:
    """Instantiate the latent application described by ``details``."""
    name = details.get("application")
    adapter = details.get("adapter")
    if adapter:
        module_name, _, class_name = adapter.rpartition(".")
        try:
            cls = getattr(importlib.import_module(module_name), class_name)
        except (ImportError, AttributeError, ValueError) as e:
            raise EnvironmentSetupError(f"Cannot load latent application adapter '{adapter}': {e}") from e
    elif name in _REGISTRY:
        cls = _REGISTRY[name]
    else:
        raise EnvironmentSetupError(f"Unknown latent application '{name}'")
    if not (isinstance(cls, type) and issubclass(cls, LatentApplication)):
        raise EnvironmentSetupError(f"'{adapter or name}' is not a LatentApplication")
    return cls(details)
