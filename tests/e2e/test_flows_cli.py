import pytest

import flows_cli

SHOP_METHODS = '''
from applications import application_method


@application_method("Look up an order")
def lookup(ctx, parameters, flow):
    return {}, 200, {"id": parameters.get("id"), "base": ctx.env["BASE_URL"]}
'''


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("FLOWS_CONFIG_FILE", "FLOWS_HOME", "FLOWS_APPLICATIONS_DIR", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def shop(make_application):
    return make_application("shop", envs={"dev": "BASE_URL=http://shop\n"}, methods=SHOP_METHODS)


@pytest.fixture
def run_cli(applications_dir, shop):
    def _run(*args):
        return flows_cli.run(["--applications-dir", str(applications_dir), *args])
    return _run


def write_flow(tmp_path, content, name="flow.yaml"):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return str(path)


def test_passing_flow_exits_zero(tmp_path, run_cli):
    flow = write_flow(tmp_path, """
steps:
  - application: shop
    method: lookup
    parameters:
      id: "7"
    test:
      status: 200
      body:
        base: http://shop
""")
    assert run_cli("--file", flow, "--env", "dev") == 0


def test_failed_assertion_exits_with_test_failed_code(tmp_path, run_cli, capsys):
    flow = write_flow(tmp_path, """
steps:
  - application: shop
    method: lookup
    test:
      status: 404
""")
    assert run_cli("-f", flow, "-e", "dev") == 4
    assert "ERROR: TestFailed" in capsys.readouterr().err


def test_unknown_environment_exits_with_its_code(tmp_path, run_cli, capsys):
    flow = write_flow(tmp_path, "steps:\n  - application: shop\n    method: lookup\n")
    assert run_cli("-f", flow, "-e", "prod") == 2
    assert "Invalid environment: prod" in capsys.readouterr().err


@pytest.mark.parametrize("args,message", [
    ((), "--file is required"),
    (("-f", "flow.yaml"), "--env is required"),
    (("-f", "flow.json", "-e", "dev"), "must be a YAML file"),
    (("-f", "missing.yml", "-e", "dev"), "Flow file not found"),
])
def test_argument_errors(run_cli, capsys, args, message):
    assert run_cli(*args) == 1
    err = capsys.readouterr().err
    assert err.startswith("ERROR: ")
    assert message in err


@pytest.mark.parametrize("content", ["version: 2\nsteps: []\n", "steps: [\n"])
def test_unloadable_flow(tmp_path, run_cli, capsys, content):
    flow = write_flow(tmp_path, content, name="bad.yml")
    assert run_cli("-f", flow, "-e", "dev") == 1
    assert "ERROR: " in capsys.readouterr().err


def test_summary_lists_applications(run_cli, capsys):
    assert run_cli("--summary") == 0
    out = capsys.readouterr().out
    assert "Application: shop" in out
    assert "    - lookup: Look up an order" in out
    assert "Application: tester" in out
