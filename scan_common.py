#!/usr/bin/env python3
"""
===================================================================
SHARED INFRASTRUCTURE FOR THE PRE-PUSH SCANNERS
===================================================================

Common plumbing used by both hook engines:

    secret_scanner.py   detect / protect  (credential detection)
    action_pinner.py    pincheck / autopin (CI reference pinning)

CONTENTS:
    - Environment-driven configuration (PrecheckConfig)
    - Exit code convention shared by both tools
    - Error taxonomy (ConfigError, ScanError, ParseError, NetworkError, WriteError)
    - Text / JSON logging setup
    - Async git subprocess helper
    - Atomic file replacement
    - Remediation guidance and the ReportFormatter

EXIT CODES:
    0    Clean, nothing to report
    1    Violations found (secrets, unpinned or malformed references)
    2    Tool error (bad configuration, not a repository, unreadable allowlist)
    130  Interrupted by user (Ctrl+C)

===================================================================
"""
import asyncio
import json
import logging
import os
import stat
import sys
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, TextIO, Tuple

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

LOGGER_NAME = "prepush_scan"

DEFAULT_MAX_FILE_SIZE_MB = 10
DEFAULT_ALLOWLIST_FILE = ".security-controls/secret-allowlist.txt"
DEFAULT_WORKFLOW_DIR = ".github/workflows"
DEFAULT_PIN_CACHE_TTL_HOURS = 168
DEFAULT_RESOLVE_TIMEOUT_SECONDS = 10.0
DEFAULT_LOG_FORMAT = "text"

GIT_TIMEOUT_SECONDS = 30

# Exit codes
EXIT_CLEAN = 0
EXIT_VIOLATIONS = 1
EXIT_TOOL_ERROR = 2
EXIT_INTERRUPTED = 130

LOG_FORMATS = ("text", "json")


def default_pin_cache_file(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Location of the resolution cache when PIN_CACHE_FILE is not set."""
    environ = os.environ if environ is None else environ
    cache_home = environ.get("XDG_CACHE_HOME") or "~/.cache"
    return Path(cache_home).expanduser() / "prepush-scan" / "pin-cache.json"


@dataclass(frozen=True)
class PrecheckConfig:
    """Effective settings for one invocation (environment, then CLI flags)."""
    max_file_size_mb: float = DEFAULT_MAX_FILE_SIZE_MB
    allowlist_file: Optional[str] = None
    workflow_dir: str = DEFAULT_WORKFLOW_DIR
    pin_cache_file: Path = field(default_factory=default_pin_cache_file)
    pin_cache_ttl_hours: float = DEFAULT_PIN_CACHE_TTL_HOURS
    resolve_timeout_seconds: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS
    github_token: Optional[str] = None
    log_format: str = DEFAULT_LOG_FORMAT

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)


def _env_number(environ: Mapping[str, str], name: str, default: float, minimum: float = 0) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not a number. Unset it or use e.g. {name}={default:g}")
    if value < minimum:
        raise ConfigError(f"{name}={raw!r} must be >= {minimum:g}")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> PrecheckConfig:
    """
    Build the configuration from environment variables.

    Recognised variables:
        MAX_FILE_SIZE_MB          Skip files larger than this (default: 10)
        SECRET_ALLOWLIST_FILE     Allowlist path (default: .security-controls/secret-allowlist.txt)
        WORKFLOW_DIR              Workflow directory (default: .github/workflows)
        PIN_CACHE_FILE            Resolution cache (default: $XDG_CACHE_HOME/prepush-scan/pin-cache.json)
        PIN_CACHE_TTL_HOURS       Cache entry lifetime, 0 = forever (default: 168)
        RESOLVE_TIMEOUT_SECONDS   Per-lookup network timeout (default: 10)
        GITHUB_TOKEN              Optional token for GitHub API lookups
        LOG_FORMAT                text|json (default: text)

    Raises:
        ConfigError: if a numeric variable does not parse or LOG_FORMAT is unknown
    """
    environ = os.environ if environ is None else environ

    log_format = environ.get("LOG_FORMAT", DEFAULT_LOG_FORMAT).strip().lower() or DEFAULT_LOG_FORMAT
    if log_format not in LOG_FORMATS:
        raise ConfigError(f"LOG_FORMAT={log_format!r} is not supported; use one of: {', '.join(LOG_FORMATS)}")

    cache_file = environ.get("PIN_CACHE_FILE", "").strip()

    return PrecheckConfig(
        max_file_size_mb=_env_number(environ, "MAX_FILE_SIZE_MB", DEFAULT_MAX_FILE_SIZE_MB, minimum=0.001),
        allowlist_file=environ.get("SECRET_ALLOWLIST_FILE", "").strip() or None,
        workflow_dir=environ.get("WORKFLOW_DIR", "").strip() or DEFAULT_WORKFLOW_DIR,
        pin_cache_file=Path(cache_file).expanduser() if cache_file else default_pin_cache_file(environ),
        pin_cache_ttl_hours=_env_number(environ, "PIN_CACHE_TTL_HOURS", DEFAULT_PIN_CACHE_TTL_HOURS),
        resolve_timeout_seconds=_env_number(
            environ, "RESOLVE_TIMEOUT_SECONDS", DEFAULT_RESOLVE_TIMEOUT_SECONDS, minimum=0.1
        ),
        github_token=environ.get("GITHUB_TOKEN") or None,
        log_format=log_format,
    )


# ===================================================================
# ERROR TAXONOMY
# ===================================================================

class PrecheckError(Exception):
    """Base class for every error raised by the scanners."""


class ConfigError(PrecheckError):
    """Misconfiguration that aborts the whole invocation (exit code 2)."""


class ScanError(PrecheckError):
    """A single file could not be read; the batch continues without it."""


class ParseError(PrecheckError):
    """A `uses:` value does not have the owner/repo@ref shape."""


class NetworkError(PrecheckError):
    """A ref could not be resolved (timeout, offline, rate limited, not found)."""


class WriteError(PrecheckError):
    """A rewritten file could not be put in place."""


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'path'):
            log_data["path"] = record.path
        if hasattr(record, 'rule'):
            log_data["rule"] = record.rule
        if hasattr(record, 'ref'):
            log_data["ref"] = record.ref

        return json.dumps(log_data)


def setup_logging(log_format: str = "text", verbose: bool = False, quiet: bool = False) -> logging.Logger:
    """
    Setup logging with either text or JSON format.

    Logs go to stderr; stdout is reserved for the report so hooks and
    scripts can consume it.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if verbose:
        logger.setLevel(logging.DEBUG)
    elif quiet:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(os.environ.get("LOG_FORMAT", DEFAULT_LOG_FORMAT).strip().lower())


def log_banner(title: str, details: Mapping[str, Any]) -> None:
    """Startup banner; suppressed by --no-banner."""
    logger.info("=" * 70)
    logger.info(title)
    logger.info("=" * 70)
    for key, value in details.items():
        logger.info(f"{key}: {value}")
    logger.info("=" * 70)


# ===================================================================
# GIT SUBPROCESS HELPERS
# ===================================================================

class GitResult(NamedTuple):
    returncode: int
    stdout: bytes
    stderr: bytes


async def run_git(root: Path, *args: str, timeout: float = GIT_TIMEOUT_SECONDS) -> GitResult:
    """
    Run a git command in `root` and capture its output.

    Args:
        root: Working directory for the command
        *args: git arguments (without the leading "git")
        timeout: Seconds before the process is killed

    Returns:
        GitResult with the exit status and raw output

    Raises:
        ConfigError: if git is not installed
        ScanError: if the command does not finish within `timeout`
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise ConfigError("git executable not found on PATH. Install git and retry.") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ScanError(f"git {args[0] if args else ''} timed out after {timeout}s")

    return GitResult(proc.returncode, stdout, stderr)


async def find_repo_root(path: Path) -> Path:
    """
    Resolve the top level of the git work tree containing `path`.

    Raises:
        ConfigError: if `path` is missing or not inside a git work tree
    """
    if not path.is_dir():
        raise ConfigError(f"Repository path does not exist or is not a directory: {path}")

    result = await run_git(path, "rev-parse", "--show-toplevel")
    if result.returncode != 0:
        raise ConfigError(
            f"Not a git repository: {path}. Run the hook inside a git checkout or pass -C <repo>."
        )
    return Path(result.stdout.decode("utf-8", errors="replace").strip())


# ===================================================================
# ATOMIC FILE REPLACEMENT
# ===================================================================

def atomic_write(path: Path, data: bytes) -> None:
    """
    Replace `path` with `data` using a temp file + rename in the same directory.

    Either the old content or the complete new content is on disk at any
    moment; an interruption never leaves a partially written file. The
    original permission bits are carried over.

    Raises:
        WriteError: if the temp file cannot be created or the rename fails
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = None

    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    except OSError as e:
        raise WriteError(f"Cannot create temporary file next to {path}: {e}") from e

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise WriteError(f"Failed to atomically replace {path}: {e}") from e

    logger.debug(f"Atomic write complete: {path}")


# ===================================================================
# REMEDIATION GUIDANCE
# ===================================================================

class RemediationAdvice:
    """Provides remediation guidance for different secret types."""

    REMEDIATION_TEMPLATES = {
        "PRIVATE_KEY": {
            "severity": "CRITICAL",
            "immediate_actions": [
                "Generate a new keypair and retire this private key",
                "Replace the public key everywhere the old one was trusted",
                "Keep private keys out of the repository (*.pem, *.key, id_* in .gitignore)"
            ],
            "docs_url": "https://docs.github.com/en/authentication/connecting-to-github-with-ssh"
        },

        "AWS_ACCESS_KEY_ID": {
            "severity": "CRITICAL",
            "immediate_actions": [
                "Deactivate the access key in the AWS IAM console",
                "Review CloudTrail for use of the key, then create a replacement",
                "Load credentials from a profile, role or secrets manager instead"
            ],
            "docs_url": "https://docs.aws.amazon.com/IAM/latest/UserGuide/id_credentials_access-keys.html"
        },

        "GITHUB_TOKEN": {
            "severity": "CRITICAL",
            "immediate_actions": [
                "Revoke the token at https://github.com/settings/tokens",
                "Create a replacement with the minimum scopes and an expiry",
                "Read it from the environment or Actions secrets, never from source"
            ],
            "docs_url": "https://docs.github.com/en/authentication/keeping-your-account-and-data-secure/token-expiration-and-revocation"
        },

        "SLACK_TOKEN": {
            "severity": "HIGH",
            "immediate_actions": [
                "Regenerate the token or webhook in the Slack app settings",
                "Update integrations with the new value from a secret store"
            ],
            "docs_url": "https://api.slack.com/authentication/rotation"
        },

        "DATABASE_URI_CREDENTIALS": {
            "severity": "CRITICAL",
            "immediate_actions": [
                "Change the database password",
                "Build connection strings from environment variables at runtime"
            ],
            "docs_url": "https://www.postgresql.org/docs/current/sql-alterrole.html"
        },

        "GENERIC": {
            "severity": "HIGH",
            "immediate_actions": [
                "Rotate the credential with the issuing service",
                "Move it to an environment variable or secret manager",
                "If this is a false positive, add a pattern to the allowlist"
            ],
            "docs_url": "https://docs.github.com/en/code-security/secret-scanning"
        }
    }

    ALIASES = {
        "GITHUB_FINE_GRAINED_PAT": "GITHUB_TOKEN",
        "GHCR_PAT": "GITHUB_TOKEN",
        "SLACK_WEBHOOK": "SLACK_TOKEN",
    }

    @staticmethod
    def get_remediation(rule_id: str) -> Dict[str, Any]:
        """Get remediation advice for a rule id."""
        rule_id = RemediationAdvice.ALIASES.get(rule_id, rule_id)
        return RemediationAdvice.REMEDIATION_TEMPLATES.get(
            rule_id,
            RemediationAdvice.REMEDIATION_TEMPLATES["GENERIC"]
        )


# ===================================================================
# REPORT FORMATTING
# ===================================================================

REPORT_FORMATS = ("text", "json", "sarif")


class ReportFormatter:
    """
    Renders scan results and pin violations, and decides the exit code.

    This is the only place that maps results to the blocking (1) versus
    clean (0) outcome. Warnings logged during the run never affect it.
    """

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        report_format: str = "text",
        quiet: bool = False,
        redact: bool = False,
        allowlist_hint: str = DEFAULT_ALLOWLIST_FILE
    ):
        if report_format not in REPORT_FORMATS:
            raise ConfigError(f"Unknown report format: {report_format}")
        self.stream = stream if stream is not None else sys.stdout
        self.report_format = report_format
        self.quiet = quiet
        self.redact = redact
        self.allowlist_hint = allowlist_hint

    def _write(self, text: str = "") -> None:
        self.stream.write(text + "\n")

    # ---------------------------------------------------------------
    # Secret findings
    # ---------------------------------------------------------------

    def report_scan(self, result, command: str) -> int:
        """
        Render a ScanResult for `detect` / `protect`.

        Returns:
            EXIT_VIOLATIONS if any finding is present, else EXIT_CLEAN
        """
        findings = list(result.findings)

        if self.report_format == "json":
            self._write(json.dumps(self._scan_json(result, findings, command), indent=2))
        elif self.report_format == "sarif":
            self._write(json.dumps(self._scan_sarif(findings), indent=2))
        else:
            self._scan_text(result, findings, command)

        return EXIT_VIOLATIONS if findings else EXIT_CLEAN

    def _scan_text(self, result, findings: List[Any], command: str) -> None:
        if not findings:
            if not self.quiet:
                self._write(f"No secrets detected ({command}: {result.files_scanned} file(s) scanned).")
            return

        files = sorted({f.path for f in findings})
        self._write(
            f"Potential secrets detected ({command}: {len(findings)} finding(s) in {len(files)} file(s)):"
        )
        self._write()
        for finding in findings:
            self._write(
                f"  {finding.path}:{finding.line}:{finding.column}  {finding.rule_id}  "
                f"{finding.display_value(self.redact)}"
            )

        if not self.quiet:
            self._write()
            self._write("How to fix:")
            for rule_id in sorted({f.rule_id for f in findings}):
                advice = RemediationAdvice.get_remediation(rule_id)
                self._write(f"  {rule_id}: {advice['immediate_actions'][0]} ({advice['docs_url']})")
            self._write()
            self._write(
                f"Push blocked. Remove the values above, or add a regex to {self.allowlist_hint} "
                "if they are false positives."
            )

    def _scan_json(self, result, findings: List[Any], command: str) -> Dict[str, Any]:
        by_rule = Counter(f.rule_id for f in findings)
        return {
            "scan_metadata": {
                "command": command,
                "scanner_version": __version__,
                "files_scanned": result.files_scanned,
                "total_findings": len(findings),
                "suppressed": result.suppressed,
                "skipped_files": [{"path": path, "reason": reason} for path, reason in result.skipped],
            },
            "summary": {
                "by_rule": dict(sorted(by_rule.items())),
                "files": sorted({f.path for f in findings}),
            },
            "findings": [
                {
                    "path": f.path,
                    "line": f.line,
                    "column": f.column,
                    "rule": f.rule_id,
                    "match_preview": f.display_value(self.redact),
                    "hash": f.secret_hash,
                    "remediation": RemediationAdvice.get_remediation(f.rule_id),
                }
                for f in findings
            ],
        }

    def _scan_sarif(self, findings: List[Any]) -> Dict[str, Any]:
        """SARIF 2.1.0 document for code scanning upload."""
        rules = []
        for rule_id in sorted({f.rule_id for f in findings}):
            remediation = RemediationAdvice.get_remediation(rule_id)
            rules.append({
                "id": f"secret-scanner/{rule_id.lower().replace('_', '-')}",
                "name": rule_id,
                "shortDescription": {
                    "text": f"Potential {rule_id.replace('_', ' ')} detected"
                },
                "defaultConfiguration": {
                    "level": "error" if remediation['severity'] == 'CRITICAL' else "warning"
                },
                "help": {
                    "text": "\n".join(remediation['immediate_actions']),
                    "markdown": "## Remediation\n\n" +
                               "\n".join(f"- {action}" for action in remediation['immediate_actions']) +
                               f"\n\n[Documentation]({remediation['docs_url']})"
                },
                "properties": {
                    "tags": ["security", "secrets"],
                    "precision": "high"
                }
            })

        results = []
        for finding in findings:
            results.append({
                "ruleId": f"secret-scanner/{finding.rule_id.lower().replace('_', '-')}",
                "level": "error",
                "message": {
                    "text": f"Potential secret: {finding.rule_id}"
                },
                "locations": [{
                    "physicalLocation": {
                        "artifactLocation": {
                            "uri": finding.path
                        },
                        "region": {
                            "startLine": finding.line,
                            "startColumn": finding.column
                        }
                    }
                }],
                "partialFingerprints": {
                    "secretHash/v1": finding.secret_hash[:16]
                }
            })

        return {
            "$schema": "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json",
            "version": "2.1.0",
            "runs": [{
                "tool": {
                    "driver": {
                        "name": "prepush-scan secret-scanner",
                        "semanticVersion": __version__,
                        "rules": rules
                    }
                },
                "results": results
            }]
        }

    # ---------------------------------------------------------------
    # Pin violations
    # ---------------------------------------------------------------

    def report_pins(
        self,
        references: Iterable[Any],
        command: str,
        workflow_dir: str = DEFAULT_WORKFLOW_DIR,
        reasons: Optional[Mapping[Tuple[str, int], str]] = None,
        write_errors: Iterable[Tuple[str, str]] = (),
        rewritten: int = 0
    ) -> int:
        """
        Render pin status for `pincheck` / `autopin`.

        Args:
            references: every parsed reference in scope
            command: "pincheck" or "autopin"
            workflow_dir: directory shown in the suggested fix
            reasons: extra detail per (path, line), e.g. resolution failures
            write_errors: (path, message) for files that could not be rewritten
            rewritten: number of references rewritten by autopin

        Returns:
            EXIT_VIOLATIONS if anything is not PINNED or a write failed, else EXIT_CLEAN
        """
        references = list(references)
        reasons = reasons or {}
        write_errors = list(write_errors)
        violations = [r for r in references if r.status.name != "PINNED"]

        if self.report_format == "json":
            self._write(json.dumps({
                "command": command,
                "scanner_version": __version__,
                "summary": {
                    "references": len(references),
                    "pinned": len(references) - len(violations),
                    "unpinned": sum(1 for r in violations if r.status.name == "UNPINNED"),
                    "malformed": sum(1 for r in violations if r.status.name == "MALFORMED"),
                    "rewritten": rewritten,
                    "write_errors": len(write_errors),
                },
                "violations": [
                    {
                        "path": r.path,
                        "line": r.line,
                        "kind": r.kind.value,
                        "status": r.status.value,
                        "name": r.name,
                        "ref": r.ref,
                        "reason": reasons.get((r.path, r.line)) or r.reason,
                    }
                    for r in violations
                ],
                "write_errors": [{"path": path, "error": message} for path, message in write_errors],
            }, indent=2))
        else:
            self._pins_text(references, violations, command, workflow_dir, reasons, write_errors, rewritten)

        return EXIT_VIOLATIONS if violations or write_errors else EXIT_CLEAN

    def _pins_text(self, references, violations, command, workflow_dir, reasons, write_errors, rewritten):
        if rewritten and not self.quiet:
            self._write(f"Pinned {rewritten} reference(s).")

        for path, message in write_errors:
            self._write(f"  {path}: WRITE FAILED ({message})")

        if not violations:
            if not self.quiet and not write_errors:
                self._write(f"All {len(references)} reference(s) are pinned to immutable hashes.")
            return

        for ref in violations:
            shown = f"{ref.name}@{ref.ref}" if ref.ref else ref.raw
            detail = reasons.get((ref.path, ref.line)) or ref.reason
            line = f"  {ref.path}:{ref.line}: {ref.status.value} {shown}"
            if detail:
                line += f" ({detail})"
            self._write(line)

        files = len({r.path for r in violations})
        self._write(f"{len(violations)} violation(s) in {files} file(s).")
        if not self.quiet:
            if command == "pincheck":
                self._write(f"Fix: action-pinner autopin --dir {workflow_dir}")
            else:
                self._write("Fix the references above by hand or re-run autopin once the lookups succeed.")
