import subprocess
from pathlib import Path

import pytest

import chainrivals
from chainrivals import (
    AnalyzerError,
    AnalyzerRegistry,
    EthAnalyzer,
    IcpAnalyzer,
    RequestError,
    ScanConfig,
    Severity,
    SolanaAnalyzer,
    build_registry,
    parse_slither_output,
)


SLITHER_OUTPUT = """INFO:Detectors:
High: Reentrancy in Vault.withdraw() (contract.sol#10-16)
Medium: Low level call in Vault.pay(address) (contract.sol#20)
Low: Pragma version ^0.8.0 allows old versions
Reference: https://github.com/crytic/slither/wiki/Detector-Documentation
INFO:Slither:contract.sol analyzed (1 contracts with 93 detectors), 3 result(s) found
"""


def test_icp_public_func_is_high():
    findings = IcpAnalyzer().analyze("public func test() {}")

    assert len(findings) == 1
    assert findings[0].severity is Severity.HIGH
    assert findings[0].message == "Public method without guard"
    assert findings[0].location == "line 1: public func test() {}"


def test_icp_while_loop_is_low():
    findings = IcpAnalyzer().analyze("while (true) {}")

    assert [f.severity for f in findings] == [Severity.LOW]
    assert "dynamic termination" in findings[0].message


def test_icp_init_without_preupgrade():
    findings = IcpAnalyzer().analyze("system func init() {}\nsystem func preupgrade() { init };")

    assert len(findings) == 1
    assert findings[0].message == "Missing post-upgrade hook"
    assert findings[0].location.startswith("line 1:")


def test_icp_emission_order(motoko_source):
    findings = IcpAnalyzer().analyze(motoko_source)

    assert [(f.severity, f.location.split(":")[0]) for f in findings] == [
        (Severity.HIGH, "line 4"),
        (Severity.MEDIUM, "line 8"),
        (Severity.HIGH, "line 10"),
        (Severity.LOW, "line 11"),
    ]


@pytest.mark.parametrize("source", ["", "\n\n", "\x00\xff� binary", "let x = 1;"])
@pytest.mark.parametrize("analyzer", [IcpAnalyzer(), SolanaAnalyzer()])
def test_heuristic_analyzers_are_total(analyzer, source):
    assert analyzer.analyze(source) == []


def test_solana_rules():
    source = "\n".join([
        "pub fn pay(ctx: Context<Pay>) -> Result<()> {",
        "    let acct: AccountInfo<'info> = ctx.accounts.payer.clone();",
        "    invoke(&ix, &[acct])?;",
        "    let amount = data.get(0).unwrap();",
        "    loop {",
        "    // invoke(&ix, &[]) in a comment",
        "}",
    ])

    findings = SolanaAnalyzer().analyze(source)

    assert [(f.severity, f.location.split(":")[0]) for f in findings] == [
        (Severity.MEDIUM, "line 2"),
        (Severity.HIGH, "line 3"),
        (Severity.LOW, "line 4"),
        (Severity.LOW, "line 5"),
    ]


def test_parse_slither_output():
    findings = parse_slither_output(SLITHER_OUTPUT)

    assert [f.severity for f in findings] == [Severity.HIGH, Severity.MEDIUM, Severity.LOW]
    assert findings[0].message == "High: Reentrancy in Vault.withdraw()"
    assert findings[0].location == "contract.sol#10-16"
    assert findings[1].location == "contract.sol#20"
    assert findings[2].location == "slither"


def test_parse_slither_output_without_findings():
    assert parse_slither_output("INFO:Slither:contract.sol analyzed, 0 result(s) found\n") == []


@pytest.fixture
def fake_slither(monkeypatch):
    calls = []

    def install(returncode=0, stdout="", stderr=""):
        def fake_run(command, **kwargs):
            contract = Path(command[1])
            calls.append({"path": contract, "source": contract.read_text(encoding="utf-8")})
            return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

        monkeypatch.setattr(chainrivals.shutil, "which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr(chainrivals.subprocess, "run", fake_run)
        return calls

    return install


def test_eth_runs_slither_on_temporary_copy(fake_slither):
    calls = fake_slither(stderr=SLITHER_OUTPUT)

    findings = EthAnalyzer().analyze("contract Vault {}")

    assert len(findings) == 3
    assert calls[0]["source"] == "contract Vault {}"
    assert calls[0]["path"].suffix == ".sol"
    assert not calls[0]["path"].exists()


def test_eth_zero_findings_is_not_an_error(fake_slither):
    fake_slither(stdout="INFO:Slither:contract.sol analyzed, 0 result(s) found")

    assert EthAnalyzer().analyze("") == []


def test_eth_nonzero_exit_raises_and_cleans_up(fake_slither):
    calls = fake_slither(returncode=1, stderr="Error: Invalid compilation")

    with pytest.raises(AnalyzerError, match="Invalid compilation"):
        EthAnalyzer().analyze("contract Broken {")

    assert not calls[0]["path"].exists()


def test_eth_missing_tool(monkeypatch):
    monkeypatch.setattr(chainrivals.shutil, "which", lambda name: None)

    with pytest.raises(AnalyzerError, match="slither not found"):
        EthAnalyzer(slither_binary="no-such-slither").analyze("contract A {}")


def test_registry_resolves_builtin_chains():
    registry = build_registry(ScanConfig())

    assert registry.chains == ["eth", "icp", "solana"]
    assert isinstance(registry.resolve("ICP"), IcpAnalyzer)
    assert "solana" in registry
    assert "bitcoin" not in registry


def test_registry_rejects_unknown_chain():
    with pytest.raises(RequestError, match="Unsupported chain: bitcoin"):
        build_registry(ScanConfig()).resolve("bitcoin")


def test_registry_register_new_chain():
    class MoveAnalyzer(IcpAnalyzer):
        chain = "sui"

    registry = AnalyzerRegistry([IcpAnalyzer()])
    registry.register(MoveAnalyzer())

    assert registry.chains == ["icp", "sui"]
    assert isinstance(registry.resolve("sui"), MoveAnalyzer)


def test_eth_findings_do_not_fail_the_run(monkeypatch):
    commands = []

    def fake_run(command, **kwargs):
        commands.append(command)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr=SLITHER_OUTPUT)

    monkeypatch.setattr(chainrivals.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(chainrivals.subprocess, "run", fake_run)

    assert len(EthAnalyzer().analyze("contract Vault {}")) == 3
    assert commands[0][-1] == "--fail-none"
