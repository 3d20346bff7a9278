import io

import pytest
from rich.console import Console

from chainrivals import Finding, ScanConfig, Severity


MOTOKO_SOURCE = """actor Counter {
    var count : Nat = 0;

    public func increment() : async () {
        count += 1;
    };

    system func init() {};

    public func drain() : async () {
        while (count > 0) { count -= 1 };
    };
};
"""


@pytest.fixture
def motoko_source():
    return MOTOKO_SOURCE


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=200)


@pytest.fixture
def status_console():
    return Console(file=io.StringIO(), width=200)


@pytest.fixture
def explain_config(tmp_path):
    return ScanConfig(
        explain_endpoint="https://explain.example.test/v1/chat/completions",
        explain_api_key="test-key",
        ic_backend_dir=tmp_path / "ic_backend",
    )


@pytest.fixture
def sample_findings():
    return [
        Finding(Severity.HIGH, "Public method without guard", "line 4: public func increment() : async () {"),
        Finding(Severity.LOW, "Loop with dynamic termination", "line 11: while (count > 0) { count -= 1 };",
                explanation="The loop bound depends on mutable state."),
    ]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "OPENAI_ENDPOINT", "OPENAI_KEY", "CHAINRIVALS_IC_BACKEND",
        "CHAINRIVALS_DFX", "CHAINRIVALS_SLITHER", "CHAINRIVALS_LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
