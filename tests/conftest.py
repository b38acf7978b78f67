import os
import sys
import textwrap
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


class RecordingEmitter:
    """Collects `flowexecution:update` payloads."""

    def __init__(self):
        self.events = []

    def emit(self, event, payload):
        self.events.append((event, payload))

    def topics(self):
        return [payload["topic"] for _, payload in self.events]

    def of_topic(self, topic):
        return [payload["data"] for _, payload in self.events if payload["topic"] == topic]


def write_application(root: Path, name: str, *, envs: Optional[Dict[str, str]] = None,
                      methods: Optional[str] = None, mimic: Optional[str] = None,
                      static: Optional[Dict[str, str]] = None) -> Path:
    app_dir = root / name
    (app_dir / "env").mkdir(parents=True, exist_ok=True)
    for env_name, content in (envs or {}).items():
        (app_dir / "env" / f"{env_name}.env").write_text(textwrap.dedent(content), encoding="utf-8")
    if methods is not None:
        (app_dir / "methods.py").write_text(textwrap.dedent(methods), encoding="utf-8")
    if mimic is not None:
        (app_dir / "mimic.py").write_text(textwrap.dedent(mimic), encoding="utf-8")
    if static:
        (app_dir / "static").mkdir(exist_ok=True)
        for file_name, content in static.items():
            (app_dir / "static" / file_name).write_text(content, encoding="utf-8")
    return app_dir


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def applications_dir(tmp_path):
    root = tmp_path / "applications"
    root.mkdir()
    return root


@pytest.fixture
def make_application(applications_dir):
    def _make(name: str, **kwargs) -> Path:
        return write_application(applications_dir, name, **kwargs)
    return _make
