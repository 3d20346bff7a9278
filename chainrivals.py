#!/usr/bin/env python3
"""
ChainRivals Scanner - Multi-chain static analysis for smart contract sources.

Scans ICP (Motoko), Ethereum (Solidity) and Solana (Rust) contract files,
optionally hands ICP analysis to a deployed canister, optionally attaches an
AI-generated explanation to every finding, and renders the result as plain
text, JSON or Markdown.

License: MIT
"""

# === Imports ===
import argparse
import asyncio
import json
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple
)

import httpx
from pydantic import BaseModel, ConfigDict, field_validator
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

# === Constants ===
VERSION = "1.1.0"
TOOL_NAME = "ChainRivals Scanner"

SUPPORTED_FORMATS = ("cli", "json", "md")
CLI_SEPARATOR = "-" * 30

BOUNTY_ENDPOINT = "https://www.chainrivals.xyz/api/bounties/submit"

CANISTER_NAME = "ic_backend"
REMOTE_MESSAGE = "ICP Canister Analysis"
REMOTE_LOCATION = f"Canister: {CANISTER_NAME}"
DFX_STARTUP_WAIT = 3.0

NO_EXPLANATION = "No explanation found."
EXPLAINER_SYSTEM_PROMPT = (
    "You are an expert smart contract security auditor. Your task is to thoroughly "
    "analyze the provided smart contract issue for vulnerabilities, security risks, "
    "and best practice violations. Explain the issue, including reentrancy, integer "
    "overflows/underflows, access control problems, denial of service, front-running, "
    "and any other relevant risks, and suggest remediations where possible."
)

DFX_CONFIG = {
    "canisters": {
        CANISTER_NAME: {
            "type": "motoko",
            "main": f"src/{CANISTER_NAME}/main.mo",
        }
    },
    "defaults": {
        "build": {"packtool": "", "args": ""},
        "canister_http": {"enabled": False},
    },
    "dfx": "0.15.0",
    "networks": {
        "local": {"bind": "127.0.0.1:8000", "type": "ephemeral"}
    },
    "version": 1,
}

# Analysis canister deployed by `ic:init` / `ic:deploy`
CANISTER_SOURCE = """import Text "mo:base/Text";
import Time "mo:base/Time";
import Int "mo:base/Int";
import Nat "mo:base/Nat";
import Buffer "mo:base/Buffer";

actor {
    public shared query func analyze_code(code : Text) : async Text {
        generateSecurityReport(code, Time.now())
    };

    public shared query func get_info() : async Text {
        "ChainRivals ICP Backend - Security Analysis Canister v1.0.0"
    };

    public shared query func health() : async Text {
        "OK"
    };

    func generateSecurityReport(code : Text, timestamp : Int) : Text {
        let vulnerabilities = Buffer.Buffer<Text>(0);

        if (Text.contains(code, #text "public func")) {
            vulnerabilities.add("HIGH: Public method without access control");
        };
        if (Text.contains(code, #text "while")) {
            vulnerabilities.add("MEDIUM: Potential infinite loop detected");
        };
        if (Text.contains(code, #text "init") and not Text.contains(code, #text "preupgrade")) {
            vulnerabilities.add("LOW: Missing post-upgrade hook");
        };
        if (Text.contains(code, #text "ic0.msg_caller")) {
            vulnerabilities.add("INFO: Manual caller validation detected");
        };

        let count = vulnerabilities.size();
        let severity = if (count > 2) { "HIGH" } else if (count > 0) { "MEDIUM" } else { "LOW" };

        var report = "=== ChainRivals Security Analysis Report ===\\n";
        report #= "Timestamp: " # Int.toText(timestamp) # "\\n";
        report #= "Severity: " # severity # "\\n";
        report #= "Vulnerabilities Found: " # Nat.toText(count) # "\\n\\n";

        if (count > 0) {
            for (vuln in vulnerabilities.vals()) {
                report #= " " # vuln # "\\n";
            };
        } else {
            report #= "No obvious vulnerabilities detected.\\n";
        };

        report #= "\\nRecommendations:\\n";
        report #= "1. Implement proper access controls for public methods\\n";
        report #= "2. Add bounds checking for loops\\n";
        report #= "3. Implement post-upgrade hooks for state management\\n";
        report #= "4. Use Internet Identity for authentication\\n";
        report
    };
};
"""

# Slither prints detector results as "<description> (<file>#<lines>)"
SLITHER_SEVERITY_PATTERN = re.compile(r'\b(High|Medium|Low)\b')
SLITHER_LOCATION_PATTERN = re.compile(r'\(([^()\s]+#\d+(?:-\d+)?)\)')

CANDID_TEXT_REPLY = re.compile(r'^\(\s*"(?P<body>(?:[^"\\]|\\.)*)"\s*,?\s*\)$', re.DOTALL)
CANDID_ESCAPE = re.compile(r'\\(u\{[0-9a-fA-F]+\}|[0-9a-fA-F]{2}|.)', re.DOTALL)
CANDID_SIMPLE_ESCAPES = {'n': '\n', 'r': '\r', 't': '\t', '"': '"', "'": "'", '\\': '\\'}


# === Enums ===
class Severity(Enum):
    """Severity levels for findings."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    INFO = "INFO"


# === Errors ===
class ScanError(Exception):
    """Base class for failures that end a command with a diagnostic."""


class RequestError(ScanError):
    """The request itself is unusable (unknown chain, missing target)."""


class AnalyzerError(ScanError):
    """A chain analyzer could not produce a result."""


class CanisterError(ScanError):
    """The dfx developer environment failed or is not set up."""


class RemoteExecutionError(ScanError):
    """Canister-backed analysis failed; callers fall back to local analysis."""


class EnrichmentError(ScanError):
    """The explanation service could not explain a finding."""


class EnrichmentValidationError(EnrichmentError):
    """A finding cannot be sent for explanation."""


class EnrichmentConfigError(EnrichmentError):
    """The explanation service endpoint or key is not configured."""


class BountySubmissionError(ScanError):
    """Uploading a contract to the bounty platform failed."""


# === Data Models ===
@dataclass(frozen=True)
class Finding:
    """A single normalized analysis result."""
    severity: Severity
    message: str
    location: str
    explanation: Optional[str] = None

    def with_explanation(self, explanation: str) -> "Finding":
        """Return this finding with an explanation attached."""
        return replace(self, explanation=explanation)

    def to_dict(self) -> Dict[str, str]:
        """Convert finding to dictionary."""
        data = {
            "severity": self.severity.value,
            "message": self.message,
            "location": self.location,
        }
        if self.explanation is not None:
            data["explanation"] = self.explanation
        return data


class ScanRequest(BaseModel):
    """Validated input for one scan invocation."""

    model_config = ConfigDict(frozen=True)

    target: Path
    chain: str
    output: str = "cli"
    explain: bool = False
    export_path: Optional[Path] = None
    use_canister: bool = False

    @field_validator("chain")
    @classmethod
    def normalize_chain(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("output")
    @classmethod
    def check_output(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SUPPORTED_FORMATS:
            raise ValueError(
                f"unsupported output format '{value}' (expected one of: {', '.join(SUPPORTED_FORMATS)})"
            )
        return value

    @property
    def wants_remote(self) -> bool:
        """Canister analysis applies to ICP sources only."""
        return self.use_canister and self.chain == "icp"


class ScanConfig(BaseModel):
    """Process-wide settings, resolved once at startup."""

    model_config = ConfigDict(frozen=True)

    explain_endpoint: str = ""
    explain_api_key: str = ""
    ic_backend_dir: Path = Path(CANISTER_NAME)
    dfx_binary: str = "dfx"
    slither_binary: str = "slither"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScanConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Configuration instance
        """
        env = os.environ if environ is None else environ
        log_file = env.get("CHAINRIVALS_LOG_FILE", "").strip()
        return cls(
            explain_endpoint=env.get("OPENAI_ENDPOINT", "").strip(),
            explain_api_key=env.get("OPENAI_KEY", "").strip(),
            ic_backend_dir=Path(env.get("CHAINRIVALS_IC_BACKEND") or Path.cwd() / CANISTER_NAME),
            dfx_binary=env.get("CHAINRIVALS_DFX") or "dfx",
            slither_binary=env.get("CHAINRIVALS_SLITHER") or "slither",
            log_file=Path(log_file) if log_file else None,
        )

    @property
    def explain_configured(self) -> bool:
        return bool(self.explain_endpoint and self.explain_api_key)


@dataclass(frozen=True)
class RemoteAttempt:
    """Outcome of a canister analysis attempt: findings or the error."""
    findings: Optional[List[Finding]] = None
    error: Optional[RemoteExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.findings is not None


# === Utility Functions ===
def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        verbose: Enable verbose logging to stderr
        log_file: Optional file that receives every log record

    Returns:
        Configured logger instance
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stderr) if verbose else logging.NullHandler()
    ]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)


def line_finding(severity: Severity, message: str, line_number: int, line: str) -> Finding:
    """Build a finding located at a source line."""
    return Finding(
        severity=severity,
        message=message,
        location=f"line {line_number}: {line.strip()}",
    )


def to_candid_text(value: str) -> str:
    """
    Encode a string as a single-argument Candid text tuple for `dfx canister call`.

    Args:
        value: Raw text

    Returns:
        Candid argument such as ("hello\\n")
    """
    parts = []
    for char in value:
        if char == '\\':
            parts.append('\\\\')
        elif char == '"':
            parts.append('\\"')
        elif char == '\n':
            parts.append('\\n')
        elif char == '\r':
            parts.append('\\r')
        elif char == '\t':
            parts.append('\\t')
        elif ord(char) < 0x20 or ord(char) == 0x7f:
            parts.append(f'\\u{{{ord(char):x}}}')
        else:
            parts.append(char)
    return '("' + ''.join(parts) + '")'


def parse_candid_text(reply: str) -> Optional[str]:
    """
    Decode a `("...")` Candid text reply printed by dfx.

    Args:
        reply: Raw dfx stdout

    Returns:
        Decoded text, or None when the reply is not a single text value

    Raises:
        ValueError: If an escape sequence is invalid
    """
    match = CANDID_TEXT_REPLY.match(reply.strip())
    if not match:
        return None

    body = match.group('body')
    decoded = bytearray()
    position = 0
    for escape_match in CANDID_ESCAPE.finditer(body):
        decoded += body[position:escape_match.start()].encode('utf-8')
        token = escape_match.group(1)
        if token.startswith('u{'):
            decoded += chr(int(token[2:-1], 16)).encode('utf-8')
        elif len(token) == 2:
            decoded.append(int(token, 16))
        elif token in CANDID_SIMPLE_ESCAPES:
            decoded += CANDID_SIMPLE_ESCAPES[token].encode('utf-8')
        else:
            raise ValueError(f"invalid Candid escape '\\{token}'")
        position = escape_match.end()
    decoded += body[position:].encode('utf-8')
    return decoded.decode('utf-8', errors='replace')


def parse_slither_output(output: str) -> List[Finding]:
    """
    Classify slither output lines into findings by severity keyword.

    Args:
        output: Combined stdout/stderr of a slither run

    Returns:
        List of findings in output order
    """
    findings = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        severity_match = SLITHER_SEVERITY_PATTERN.search(line)
        if not severity_match:
            continue

        location_match = SLITHER_LOCATION_PATTERN.search(line)
        message = SLITHER_LOCATION_PATTERN.sub('', line).strip(' :')
        findings.append(Finding(
            severity=Severity(severity_match.group(1).upper()),
            message=message or line,
            location=location_match.group(1) if location_match else "slither",
        ))
    return findings


# === Chain Analyzers ===
class ChainAnalyzer(ABC):
    """Chain-specific analyzer: source text in, findings out."""

    chain: str = ""
    language: str = ""

    @abstractmethod
    def analyze(self, source: str) -> List[Finding]:
        """
        Analyze contract source text.

        Args:
            source: Full contract source

        Returns:
            Findings in emission order
        """


class IcpAnalyzer(ChainAnalyzer):
    """Heuristic checks for Motoko canisters."""

    chain = "icp"
    language = "Motoko"

    def analyze(self, source: str) -> List[Finding]:
        findings = []

        for i, line in enumerate(source.split('\n'), 1):
            if 'public func' in line:
                findings.append(line_finding(Severity.HIGH, "Public method without guard", i, line))

            if 'init' in line and 'preupgrade' not in line:
                findings.append(line_finding(Severity.MEDIUM, "Missing post-upgrade hook", i, line))

            if 'while (' in line:
                findings.append(line_finding(Severity.LOW, "Loop with dynamic termination", i, line))

        return findings


class SolanaAnalyzer(ChainAnalyzer):
    """Heuristic checks for Solana programs written in Rust/Anchor."""

    chain = "solana"
    language = "Rust"

    CPI_PATTERN = re.compile(r'\binvoke(?:_signed)?\s*\(')
    LOOP_PATTERN = re.compile(r'\bloop\s*\{|\bwhile\s')

    def analyze(self, source: str) -> List[Finding]:
        findings = []

        for i, line in enumerate(source.split('\n'), 1):
            stripped = line.strip()
            if stripped.startswith('//'):
                continue

            if 'AccountInfo<' in line:
                findings.append(line_finding(
                    Severity.MEDIUM, "Unchecked AccountInfo without owner validation", i, line
                ))

            if self.CPI_PATTERN.search(line):
                findings.append(line_finding(
                    Severity.HIGH, "Cross-program invocation without program id check", i, line
                ))

            if '.unwrap()' in line:
                findings.append(line_finding(
                    Severity.LOW, "Unwrap may panic and abort the transaction", i, line
                ))

            if self.LOOP_PATTERN.search(line):
                findings.append(line_finding(Severity.LOW, "Loop with dynamic termination", i, line))

        return findings


class EthAnalyzer(ChainAnalyzer):
    """Solidity analysis delegated to the slither command-line tool."""

    chain = "eth"
    language = "Solidity"

    def __init__(self, slither_binary: str = "slither", logger: Optional[logging.Logger] = None):
        self.slither_binary = slither_binary
        self.logger = logger or logging.getLogger(__name__)

    def analyze(self, source: str) -> List[Finding]:
        """
        Run slither over the source and classify its output.

        Args:
            source: Solidity source

        Returns:
            Findings in slither output order

        Raises:
            AnalyzerError: If slither is missing, fails, or cannot be run
        """
        binary = shutil.which(self.slither_binary)
        if binary is None:
            raise AnalyzerError(
                f"slither not found ('{self.slither_binary}'); install it with: pip install slither-analyzer"
            )

        # The temporary directory is removed on every exit path
        with tempfile.TemporaryDirectory(prefix="chainrivals-") as workdir:
            contract_path = Path(workdir) / "contract.sol"
            try:
                contract_path.write_text(source, encoding='utf-8')
                completed = subprocess.run(
                    [binary, str(contract_path), '--fail-none'],
                    cwd=workdir,
                    capture_output=True,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                )
            except OSError as e:
                raise AnalyzerError(f"could not run slither: {e}") from e

            if completed.returncode != 0:
                detail = (completed.stderr or completed.stdout or "").strip().splitlines()
                reason = detail[-1] if detail else "no output"
                raise AnalyzerError(f"slither exited with status {completed.returncode}: {reason}")

            findings = parse_slither_output(f"{completed.stdout}\n{completed.stderr}")

        self.logger.debug(f"slither produced {len(findings)} findings")
        return findings


class AnalyzerRegistry:
    """Maps chain keys to analyzers."""

    def __init__(self, analyzers: Optional[Iterable[ChainAnalyzer]] = None):
        self._analyzers: Dict[str, ChainAnalyzer] = {}
        for analyzer in analyzers or []:
            self.register(analyzer)

    def register(self, analyzer: ChainAnalyzer) -> None:
        """Register an analyzer under its chain key, replacing any previous one."""
        key = analyzer.chain.strip().lower()
        if not key:
            raise ValueError(f"{type(analyzer).__name__} has no chain key")
        self._analyzers[key] = analyzer

    def get(self, chain: str) -> Optional[ChainAnalyzer]:
        return self._analyzers.get(chain.strip().lower())

    def resolve(self, chain: str) -> ChainAnalyzer:
        """
        Look up the analyzer for a chain.

        Raises:
            RequestError: If the chain is not registered
        """
        analyzer = self.get(chain)
        if analyzer is None:
            raise RequestError(f"Unsupported chain: {chain} (supported: {', '.join(self.chains)})")
        return analyzer

    @property
    def chains(self) -> List[str]:
        return sorted(self._analyzers)

    def __contains__(self, chain: object) -> bool:
        return isinstance(chain, str) and self.get(chain) is not None


def build_registry(config: ScanConfig, logger: Optional[logging.Logger] = None) -> AnalyzerRegistry:
    """Create the registry of built-in chain analyzers."""
    return AnalyzerRegistry([
        IcpAnalyzer(),
        EthAnalyzer(slither_binary=config.slither_binary, logger=logger),
        SolanaAnalyzer(),
    ])


# === ICP Canister ===
class CanisterManager:
    """Wraps the dfx toolchain for the local analysis canister."""

    def __init__(
        self,
        backend_dir: Path,
        dfx_binary: str = "dfx",
        console: Optional[Console] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize manager.

        Args:
            backend_dir: Directory holding dfx.json and the canister source
            dfx_binary: dfx executable name or path
            console: Rich console for progress messages
            logger: Logger instance
        """
        self.backend_dir = Path(backend_dir)
        self.dfx_binary = dfx_binary
        self.console = console or Console(stderr=True)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def dfx_json_path(self) -> Path:
        return self.backend_dir / "dfx.json"

    @property
    def canister_source_path(self) -> Path:
        return self.backend_dir / "src" / CANISTER_NAME / "main.mo"

    def is_initialized(self) -> bool:
        """Check if dfx.json exists."""
        return self.dfx_json_path.is_file()

    def _require_initialized(self) -> None:
        if not self.is_initialized():
            raise CanisterError(
                f"dfx.json not found in {self.backend_dir}. Run 'chainrivals ic:init' first."
            )

    def _dfx(self, args: List[str], cwd: Optional[Path] = None, capture: bool = True) -> str:
        command = [self.dfx_binary, *args]
        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            completed = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=capture,
                text=True,
                encoding='utf-8',
                errors='replace',
                check=True,
            )
        except FileNotFoundError as e:
            raise CanisterError(
                f"{self.dfx_binary} is not installed. See "
                "https://internetcomputer.org/docs/current/developer-docs/setup/install/"
            ) from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit status {e.returncode}"
            raise CanisterError(f"dfx {' '.join(args[:2])} failed: {detail}") from e
        except OSError as e:
            raise CanisterError(f"could not run {self.dfx_binary}: {e}") from e
        return completed.stdout or ""

    def init(self) -> None:
        """Create dfx.json and the analysis canister source if missing."""
        self.console.print("[cyan]Initializing ICP backend setup...[/cyan]")
        self._dfx(["--version"])

        self.canister_source_path.parent.mkdir(parents=True, exist_ok=True)

        if self.is_initialized():
            self.console.print("[yellow]dfx.json already exists[/yellow]")
        else:
            self.dfx_json_path.write_text(json.dumps(DFX_CONFIG, indent=2) + "\n", encoding='utf-8')
            self.console.print("[green]✓[/green] Created dfx.json")

        if not self.canister_source_path.exists():
            self.canister_source_path.write_text(CANISTER_SOURCE, encoding='utf-8')
            self.console.print("[green]✓[/green] Created main.mo")

        self.console.print(f"[green]ICP backend setup complete:[/green] {escape(str(self.backend_dir))}")

    def deploy(self) -> str:
        """
        Start the local replica and deploy the canister.

        Returns:
            Deployed canister id
        """
        self._require_initialized()

        self.console.print("[cyan]Starting dfx replica...[/cyan]")
        self._dfx(["start", "--background"], cwd=self.backend_dir, capture=False)
        time.sleep(DFX_STARTUP_WAIT)

        self.console.print("[cyan]Building and deploying canister...[/cyan]")
        self._dfx(["deploy"], cwd=self.backend_dir, capture=False)

        canister_id = self._dfx(["canister", "id", CANISTER_NAME], cwd=self.backend_dir).strip()
        self.console.print(f"[green]✓[/green] Canister deployed: {canister_id}")
        return canister_id

    def call(self, method: str, args: Optional[List[str]] = None) -> str:
        """Call a canister method and return dfx's raw reply."""
        self._require_initialized()
        self.logger.info(f"Calling canister method: {method}")
        return self._dfx(
            ["canister", "call", CANISTER_NAME, method, *(args or [])],
            cwd=self.backend_dir,
        )

    def analyze_code(self, source: str) -> str:
        """Send source text to the canister's analyze_code method."""
        return self.call("analyze_code", [to_candid_text(source)])


class CanisterAnalyzer:
    """Runs ICP analysis on the deployed canister instead of locally."""

    def __init__(self, manager: CanisterManager, logger: Optional[logging.Logger] = None):
        self.manager = manager
        self.logger = logger or logging.getLogger(__name__)

    async def analyze_remote(self, source: str) -> List[Finding]:
        """
        Analyze source on the canister.

        Args:
            source: Motoko source

        Returns:
            A single INFO finding carrying the canister report

        Raises:
            RemoteExecutionError: On any canister failure
        """
        try:
            reply = await asyncio.to_thread(self.manager.analyze_code, source)
        except CanisterError as e:
            raise RemoteExecutionError(str(e)) from e
        except ValueError as e:
            raise RemoteExecutionError(f"malformed canister reply: {e}") from e

        if not reply.strip():
            raise RemoteExecutionError("canister returned an empty reply")
        try:
            report = parse_candid_text(reply)
        except ValueError as e:
            raise RemoteExecutionError(f"malformed canister reply: {e}") from e
        if report is None:
            report = reply.strip()

        return [Finding(
            severity=Severity.INFO,
            message=REMOTE_MESSAGE,
            location=REMOTE_LOCATION,
            explanation=report,
        )]

    async def try_remote(self, source: str) -> RemoteAttempt:
        """Attempt canister analysis without raising."""
        try:
            findings = await self.analyze_remote(source)
        except RemoteExecutionError as e:
            self.logger.debug(f"Canister analysis failed: {e}")
            return RemoteAttempt(error=e)
        return RemoteAttempt(findings=findings)


# === Explanations ===
class Explainer(Protocol):
    async def explain(self, finding: Finding) -> str: ...


class ExplanationClient:
    """Asks a chat-completions endpoint to explain findings."""

    def __init__(
        self,
        config: ScanConfig,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize client.

        Args:
            config: Scan configuration with endpoint and API key
            client: Pre-built HTTP client; owned by the caller when given
            logger: Logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def explain(self, finding: Finding) -> str:
        """
        Get an explanation for a finding.

        Args:
            finding: Finding to explain

        Returns:
            Explanation text

        Raises:
            EnrichmentValidationError: If the finding message is empty
            EnrichmentConfigError: If endpoint or key is missing
            EnrichmentError: If the request fails
        """
        message = finding.message
        if not isinstance(message, str) or not message.strip():
            raise EnrichmentValidationError("Invalid input: finding message must be a non-empty string.")
        if not self.config.explain_configured:
            raise EnrichmentConfigError("OPENAI_ENDPOINT and OPENAI_KEY must be set to use --explain")

        payload = {
            "messages": [
                {"role": "system", "content": EXPLAINER_SYSTEM_PROMPT},
                {"role": "user", "content": message},
            ]
        }
        headers = {"Content-Type": "application/json", "api-key": self.config.explain_api_key}

        try:
            response = await self._http().post(self.config.explain_endpoint, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Explanation request failed: {e}")
            raise EnrichmentError(f"Failed to get explanation: {e}") from e

        return extract_completion_text(data)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ExplanationClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def extract_completion_text(data: Any) -> str:
    """Pull choices[0].message.content out of a chat-completions reply."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return NO_EXPLANATION
    if not isinstance(content, str) or not content.strip():
        return NO_EXPLANATION
    return content


async def enrich_findings(
    findings: List[Finding],
    explainer: Explainer,
    on_explained: Optional[Callable[[Finding], None]] = None
) -> List[Finding]:
    """
    Attach explanations one finding at a time, in list order.

    Each call is awaited before the next one starts. The first failure
    propagates and no partial list is returned.

    Args:
        findings: Findings to explain
        explainer: Explanation provider
        on_explained: Called with each enriched finding

    Returns:
        New list of findings with explanations attached
    """
    enriched = []
    for finding in findings:
        explanation = await explainer.explain(finding)
        explained = finding.with_explanation(explanation)
        enriched.append(explained)
        if on_explained is not None:
            on_explained(explained)
    return enriched


# === Reporting ===
class Reporter:
    """Renders findings and delivers the rendered report."""

    @staticmethod
    def render_json(findings: List[Finding]) -> str:
        return json.dumps([f.to_dict() for f in findings], indent=2, ensure_ascii=False)

    @staticmethod
    def render_markdown(findings: List[Finding]) -> str:
        blocks = []
        for finding in findings:
            lines = [
                "---",
                f"### Severity: **{finding.severity.value}**",
                f"**Message:** {finding.message}",
                f"**Location:** `{finding.location}`",
            ]
            if finding.explanation is not None:
                lines.append(f"\n**Explanation:**\n\n{finding.explanation.strip()}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    @staticmethod
    def render_cli(findings: List[Finding]) -> str:
        blocks = []
        for finding in findings:
            lines = [
                CLI_SEPARATOR,
                f"Severity : {finding.severity.value}",
                f"Message  : {finding.message}",
                f"Location : {finding.location}",
            ]
            if finding.explanation is not None:
                lines.append(f"\nExplanation:\n{finding.explanation.strip()}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    @staticmethod
    def render(findings: List[Finding], output_format: str = "cli") -> str:
        """
        Render findings in the requested format.

        Args:
            findings: Findings to render
            output_format: One of cli, json, md

        Returns:
            Rendered report

        Raises:
            ValueError: If the format is unknown
        """
        renderers: Dict[str, Callable[[List[Finding]], str]] = {
            "json": Reporter.render_json,
            "md": Reporter.render_markdown,
            "cli": Reporter.render_cli,
        }
        renderer = renderers.get(output_format)
        if renderer is None:
            raise ValueError(f"Unsupported output format: {output_format}")
        return renderer(findings)

    @staticmethod
    def deliver(rendered: str, export_path: Optional[Path], console: Console) -> None:
        """Write the report to export_path, or print it when no path is given."""
        if export_path:
            Path(export_path).write_text(rendered, encoding='utf-8')
            console.print(f"[green]✓[/green] Results exported to {escape(str(export_path))}", soft_wrap=True)
        else:
            console.out(rendered, highlight=False)


def render(findings: List[Finding], output_format: str = "cli") -> str:
    """Render findings; see Reporter.render."""
    return Reporter.render(findings, output_format)


# === Core Scanner ===
class ScanOrchestrator:
    """Drives one scan: dispatch, remote or local analysis, enrichment, rendering."""

    def __init__(
        self,
        config: ScanConfig,
        registry: AnalyzerRegistry,
        remote: Optional[CanisterAnalyzer] = None,
        explainer: Optional[Explainer] = None,
        console: Optional[Console] = None,
        status_console: Optional[Console] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Scan configuration
            registry: Chain analyzers
            remote: Canister analyzer; built from config when omitted
            explainer: Explanation provider; an ExplanationClient when omitted
            console: Console receiving the report
            status_console: Console receiving progress messages
            logger: Logger instance
        """
        self.config = config
        self.registry = registry
        self.remote = remote
        self.explainer = explainer
        self.console = console or Console()
        self.status_console = status_console or Console(stderr=True)
        self.logger = logger or logging.getLogger(__name__)

    async def run(self, request: ScanRequest) -> str:
        """
        Run the scan and deliver the report.

        Args:
            request: Scan request

        Returns:
            Rendered report
        """
        findings = await self.collect(request)
        rendered = render(findings, request.output)
        Reporter.deliver(rendered, request.export_path, self.console)
        return rendered

    async def collect(self, request: ScanRequest) -> List[Finding]:
        """Produce the final finding list for a request without rendering it."""
        analyzer = self.registry.resolve(request.chain)
        source = self._read_target(request.target)

        findings, from_remote = await self._analyze(request, analyzer, source)
        self.logger.info(f"{len(findings)} findings for {request.target} ({request.chain})")

        if request.explain and not from_remote:
            findings = await self._enrich(findings)

        return findings

    def _read_target(self, target: Path) -> str:
        path = Path(target).resolve()
        if not path.is_file():
            raise RequestError(f"File not found: {path}")
        try:
            return path.read_text(encoding='utf-8', errors='ignore')
        except OSError as e:
            raise RequestError(f"Cannot read {path}: {e}") from e

    def _canister_analyzer(self) -> CanisterAnalyzer:
        if self.remote is None:
            manager = CanisterManager(
                backend_dir=self.config.ic_backend_dir,
                dfx_binary=self.config.dfx_binary,
                console=self.status_console,
                logger=self.logger,
            )
            self.remote = CanisterAnalyzer(manager, logger=self.logger)
        return self.remote

    async def _analyze(
        self, request: ScanRequest, analyzer: ChainAnalyzer, source: str
    ) -> Tuple[List[Finding], bool]:
        if request.wants_remote:
            self.status_console.print("[cyan]Using ICP canister for analysis...[/cyan]")
            attempt = await self._canister_analyzer().try_remote(source)
            if attempt.ok:
                return list(attempt.findings or []), True

            self.logger.warning(f"Canister analysis failed, falling back to static analysis: {attempt.error}")
            self.status_console.print(
                "[yellow]Canister analysis failed, falling back to static analysis...[/yellow]"
            )
            self.status_console.print(f"[dim]   Error: {escape(str(attempt.error))}[/dim]")

        self.status_console.print(
            f"[cyan]Analyzing {escape(str(request.target))} for {request.chain}...[/cyan]"
        )
        return analyzer.analyze(source), False

    async def _enrich(self, findings: List[Finding]) -> List[Finding]:
        if self.explainer is not None:
            return await self._enrich_with(self.explainer, findings)
        async with ExplanationClient(self.config, logger=self.logger) as client:
            return await self._enrich_with(client, findings)

    async def _enrich_with(self, explainer: Explainer, findings: List[Finding]) -> List[Finding]:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.status_console,
            transient=True
        ) as progress:
            task = progress.add_task("[cyan]Explaining findings...", total=len(findings))
            return await enrich_findings(
                findings, explainer, on_explained=lambda _: progress.advance(task)
            )


# === Bounty Submission ===
def submit_bounty(
    target: Path,
    chain: str,
    title: str,
    description: str,
    endpoint: str = BOUNTY_ENDPOINT,
    client: Optional[httpx.Client] = None
) -> Any:
    """
    Upload a contract and its metadata to the bounty platform.

    Args:
        target: Contract file
        chain: Chain key
        title: Bounty title
        description: What should be reviewed
        endpoint: Upload URL
        client: HTTP client to use instead of a one-off request

    Returns:
        Decoded JSON response, or the raw text when it is not JSON

    Raises:
        RequestError: If the file does not exist
        BountySubmissionError: If the upload fails
    """
    path = Path(target).resolve()
    if not path.is_file():
        raise RequestError(f"File not found: {path}")

    data = {"chain": chain, "title": title, "description": description}
    http = client or httpx.Client(timeout=None)
    try:
        with open(path, 'rb') as handle:
            response = http.post(endpoint, data=data, files={"contract": (path.name, handle)})
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise BountySubmissionError(
            f"Failed to submit bounty: {e.response.status_code} {e.response.text.strip()}"
        ) from e
    except httpx.HTTPError as e:
        raise BountySubmissionError(f"Failed to submit bounty: {e}") from e
    finally:
        if client is None:
            http.close()

    try:
        return response.json()
    except ValueError:
        return response.text


# === CLI ===
def print_banner(console: Console) -> None:
    """Print application banner."""
    console.print(Panel.fit(
        f"[bold cyan]{TOOL_NAME}[/bold cyan]\n[dim]Version {VERSION} | ICP · Ethereum · Solana[/dim]",
        border_style="cyan"
    ))
    console.print()


EPILOG = """
Examples:
  chainrivals scan --target ./contracts/MyContract.mo --chain icp
  chainrivals scan --target ./contracts/MyContract.mo --chain icp --use-canister
  chainrivals scan --target ./contracts/MyContract.sol --chain eth --output json --explain --export result.json
  chainrivals submit-bounty --target ./contracts/MyContract.sol --chain eth --title "My Bounty" --description "Please review."
  chainrivals ic:init
  chainrivals ic:deploy
  chainrivals ic:call get_info

Environment Variables:
  OPENAI_ENDPOINT         Explanation endpoint (required if --explain is used)
  OPENAI_KEY              Explanation API key (required if --explain is used)
  CHAINRIVALS_IC_BACKEND  dfx project directory (default: ./ic_backend)
  CHAINRIVALS_DFX         dfx executable (default: dfx)
  CHAINRIVALS_SLITHER     slither executable (default: slither)
  CHAINRIVALS_LOG_FILE    Write logs to this file
"""


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="chainrivals",
        description=(
            f"{TOOL_NAME} - Scan smart contract files for vulnerabilities across ICP, EVM and "
            "Solana, get AI explanations for findings, and submit contracts as bounties."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG
    )
    parser.add_argument('--version', action='version', version=f'{TOOL_NAME} v{VERSION}')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')
    parser.add_argument('--no-banner', action='store_true', help='Skip banner')

    subparsers = parser.add_subparsers(dest='command', metavar='command')

    scan = subparsers.add_parser('scan', help='Scan a smart contract file for vulnerabilities')
    scan.add_argument('--target', required=True, help='Path to the contract file (e.g. ./contracts/MyContract.mo)')
    scan.add_argument('--chain', required=True, help='Target blockchain: icp, eth, solana')
    scan.add_argument('--output', choices=SUPPORTED_FORMATS, default='cli',
                      help='Output format: cli (default), json or md')
    scan.add_argument('--explain', action='store_true', help='Attach an AI explanation to each finding')
    scan.add_argument('--export', help='Write the report to this file instead of the console')
    scan.add_argument('--use-canister', action='store_true',
                      help='Analyze on the local ICP canister (only with --chain icp)')

    bounty = subparsers.add_parser('submit-bounty', help='Submit a contract to chainrivals.xyz as a bug bounty')
    bounty.add_argument('--target', required=True, help='Path to the contract file')
    bounty.add_argument('--chain', required=True, help='Target blockchain: icp, eth, solana')
    bounty.add_argument('--title', required=True, help='Bounty title')
    bounty.add_argument('--description', required=True, help='What you want reviewed')

    subparsers.add_parser('ic:init', help='Initialize the dfx setup for the ICP backend')
    subparsers.add_parser('ic:deploy', help='Deploy the ICP backend canister')
    ic_call = subparsers.add_parser('ic:call', help='Call a method on the deployed canister')
    ic_call.add_argument('method', help='Method name (e.g. analyze_code, get_info, health)')
    ic_call.add_argument('args', nargs='*', help='Arguments passed to the method')

    return parser


def run_scan(args: argparse.Namespace, config: ScanConfig, console: Console,
             err_console: Console, logger: logging.Logger) -> int:
    request = ScanRequest(
        target=Path(args.target),
        chain=args.chain,
        output=args.output,
        explain=args.explain,
        export_path=Path(args.export) if args.export else None,
        use_canister=args.use_canister,
    )
    orchestrator = ScanOrchestrator(
        config=config,
        registry=build_registry(config, logger),
        console=console,
        status_console=err_console,
        logger=logger,
    )
    asyncio.run(orchestrator.run(request))
    return 0


def run_submit_bounty(args: argparse.Namespace, config: ScanConfig, console: Console,
                      err_console: Console, logger: logging.Logger) -> int:
    response = submit_bounty(Path(args.target), args.chain, args.title, args.description)
    console.print("[green]✓[/green] Bounty submitted successfully!")
    console.print(response if isinstance(response, str) else json.dumps(response, indent=2),
                  markup=False, highlight=False)
    return 0


def run_ic_command(args: argparse.Namespace, config: ScanConfig, console: Console,
                   err_console: Console, logger: logging.Logger) -> int:
    manager = CanisterManager(config.ic_backend_dir, config.dfx_binary, console=err_console, logger=logger)
    if args.command == 'ic:init':
        manager.init()
    elif args.command == 'ic:deploy':
        manager.deploy()
    else:
        console.out(manager.call(args.method, args.args).rstrip(), highlight=False)
    return 0


COMMANDS: Dict[str, Callable[..., int]] = {
    'scan': run_scan,
    'submit-bounty': run_submit_bounty,
    'ic:init': run_ic_command,
    'ic:deploy': run_ic_command,
    'ic:call': run_ic_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    err_console = Console(stderr=True)

    if not args.command:
        parser.print_help()
        return 1

    config = ScanConfig.from_env()
    try:
        logger = setup_logging(args.verbose, config.log_file)
    except OSError as e:
        err_console.print(f"[red]Error: cannot open log file: {escape(str(e))}[/red]", soft_wrap=True)
        return 1

    if not args.no_banner:
        print_banner(err_console)

    try:
        return COMMANDS[args.command](args, config, console, err_console, logger)
    except ScanError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]", soft_wrap=True)
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Scan interrupted[/yellow]")
        return 1
    except Exception as e:
        err_console.print(f"[red]Fatal error: {escape(str(e))}[/red]", soft_wrap=True)
        logger.exception("Fatal error")
        return 1


if __name__ == "__main__":
    sys.exit(main())
