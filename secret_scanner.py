#!/usr/bin/env python3
"""
===================================================================
PRE-PUSH SECRET SCANNER
===================================================================

PURPOSE:
    Fast, low-noise credential detection for git hooks. Blocks a push or
    commit when tracked files (detect) or the staged change set (protect)
    contain something that looks like a live credential.

FEATURES:
    ✓ Two corpora: every tracked file, or only lines added in the index
    ✓ Independent, named detection rules (cloud keys, token prefixes,
      PEM private key headers, credentials in URIs, JWTs)
    ✓ Entropy-gated generic `key = "value"` heuristic
    ✓ Regex allowlist for known false positives
    ✓ Binary and oversized files skipped with a warning, never fatal
    ✓ Deterministic output ordering (path, line, column, rule)
    ✓ Text, JSON and SARIF reports; optional redaction

DETECTION METHODS:
    1. Provider-specific patterns (exact token formats)
    2. Shannon entropy for the generic assignment heuristic
    3. Placeholder denylist ("example", "changeme", "your_...")
    4. Allowlist regexes matched against the value and its line

LIMITATIONS:
    Lines are scanned one physical line at a time. A secret split across
    a line continuation is not detected.

USAGE:
    # Scan every tracked file (CI / manual audit)
    secret-scanner detect

    # Scan only what is about to be committed (pre-commit / pre-push hook)
    secret-scanner protect --staged --no-banner --redact

    # Machine-readable output
    secret-scanner detect --report-format sarif > secrets.sarif

CONFIGURATION:
    Set via environment variables (CLI flags take precedence):
    - MAX_FILE_SIZE_MB: Skip files larger than this (default: 10)
    - SECRET_ALLOWLIST_FILE: Allowlist path (default: .security-controls/secret-allowlist.txt)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import hashlib
import logging
import math
import re
import sys
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import aiofiles
from tqdm import tqdm

from scan_common import (
    DEFAULT_ALLOWLIST_FILE,
    EXIT_INTERRUPTED,
    EXIT_TOOL_ERROR,
    LOG_FORMATS,
    LOGGER_NAME,
    REPORT_FORMATS,
    ConfigError,
    ReportFormatter,
    ScanError,
    __version__,
    find_repo_root,
    load_config,
    log_banner,
    run_git,
    setup_logging,
)

logger = logging.getLogger(f"{LOGGER_NAME}.secrets")

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Directories never scanned (build output and vendored dependencies)
SKIP_DIRECTORIES = {"node_modules", "target", ".git"}

# Placeholder terms: values containing these are not reported by the
# generic heuristic
DENYLIST_TERMS = [
    "example", "changeme", "dummy", "redacted", "xxxxx",
    "testkey", "samplekey", "placeholder", "fake", "demo",
    "your_", "insert_", "replace_me", "goes_here", "goes-here"
]

# Values that are references to a secret rather than the secret itself
REFERENCE_MARKERS = ("process.env", "os.environ", "getenv", "secrets.", "env.", "vault:")

# Binary file extensions to skip (performance optimization)
BINARY_FILE_EXTENSIONS = {
    # Images
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.webp', '.tiff', '.psd',
    # Videos
    '.mp4', '.avi', '.mov', '.wmv', '.flv', '.mkv', '.webm', '.m4v',
    # Audio
    '.mp3', '.wav', '.flac', '.aac', '.ogg', '.wma', '.m4a',
    # Archives
    '.zip', '.tar', '.gz', '.bz2', '.7z', '.rar', '.xz', '.tgz',
    # Executables & Libraries
    '.exe', '.dll', '.so', '.dylib', '.bin', '.app', '.deb', '.rpm',
    # Compiled/Binary
    '.pyc', '.pyo', '.class', '.o', '.a', '.obj', '.lib',
    # Documents (binary formats)
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx', '.odt', '.ods',
    # Fonts
    '.ttf', '.otf', '.woff', '.woff2', '.eot',
    # Database
    '.db', '.sqlite', '.sqlite3', '.mdb',
    # Other
    '.iso', '.dmg', '.img', '.pickle', '.pkl', '.parquet',
}

# Binary detection
BINARY_SAMPLE_SIZE = 8192         # Bytes to read for binary detection (8KB)
BINARY_NON_TEXT_THRESHOLD = 0.30  # 30% non-text bytes threshold

# Generic assignment heuristic
GENERIC_MIN_LENGTH = 16
GENERIC_MIN_ENTROPY = 3.5         # bits per character
MIN_ENTROPY_CALC_LENGTH = 2

# Display
MAX_PREVIEW_LENGTH = 80


# ===================================================================
# DATA MODEL
# ===================================================================

class ScanMode(Enum):
    FULL = "full"
    STAGED = "staged"


@dataclass(frozen=True)
class ScanTarget:
    """Files selected for one invocation, in scan order."""
    root: Path
    mode: ScanMode
    paths: Tuple[str, ...]
    skipped: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Finding:
    """A single suspected secret."""
    path: str
    line: int
    column: int
    rule_id: str
    value: str = field(repr=False)
    secret_hash: str = field(repr=False, default="")

    def display_value(self, redact: bool = False) -> str:
        """Truncated (and optionally masked) value for reports."""
        value = self.value
        if redact:
            value = value[:4] + "*" * max(len(value) - 4, 4)
        if len(value) > MAX_PREVIEW_LENGTH:
            value = value[:MAX_PREVIEW_LENGTH] + "..."
        return value


@dataclass(frozen=True)
class ScanResult:
    findings: Tuple[Finding, ...]
    files_scanned: int
    suppressed: int = 0
    skipped: Tuple[Tuple[str, str], ...] = ()


# ===================================================================
# UTILITY FUNCTIONS
# ===================================================================

def shannon_entropy(data: str) -> float:
    """
    Calculate Shannon entropy of a string (bits per character).

    High entropy (>4.5) often indicates cryptographic material.
    Low entropy (<3.5) typically indicates human-readable text.
    """
    if not data or len(data) < MIN_ENTROPY_CALC_LENGTH:
        return 0.0

    counts = Counter(data)
    probs = [count / len(data) for count in counts.values()]
    return -sum(p * math.log2(p) for p in probs if p > 0)


def is_denylist_match(value: str) -> bool:
    """True if value contains a known placeholder/example term."""
    value_lower = value.lower()
    return any(term in value_lower for term in DENYLIST_TERMS)


def should_skip_path(path: str) -> bool:
    """True if any directory component of `path` is a skipped directory."""
    return any(part in SKIP_DIRECTORIES for part in Path(path).parts[:-1])


def calculate_secret_hash(value: str) -> str:
    """SHA256 of the raw value, used as a stable fingerprint in reports."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def is_binary_file(file_path: Path, sample_size: int = BINARY_SAMPLE_SIZE) -> bool:
    """
    Detect if a file is binary by checking the first chunk.

    Args:
        file_path: Path to the file to check
        sample_size: Number of bytes to sample (default: 8KB)

    Returns:
        True if file appears to be binary, False otherwise
    """
    try:
        with open(file_path, 'rb') as f:
            chunk = f.read(sample_size)
    except OSError as e:
        logger.debug(f"Cannot read file for binary check {file_path}: {e}")
        # Let the scan itself report the read failure
        return False

    if not chunk:
        return False

    # Null byte is a strong indicator of binary
    if b'\x00' in chunk:
        return True

    text_chars = bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7f})
    non_text_count = sum(1 for byte in chunk if byte not in text_chars)
    return (non_text_count / len(chunk)) > BINARY_NON_TEXT_THRESHOLD


def looks_like_generated_secret(value: str) -> bool:
    """Gate for the generic assignment rule: long, mixed, random-looking, not a placeholder."""
    if len(value) < GENERIC_MIN_LENGTH:
        return False
    lowered = value.lower()
    if any(marker in lowered for marker in REFERENCE_MARKERS):
        return False
    if is_denylist_match(value):
        return False
    if not (any(c.isalpha() for c in value) and any(c.isdigit() for c in value)):
        return False
    return shannon_entropy(value) >= GENERIC_MIN_ENTROPY


URI_PASSWORD_PLACEHOLDERS = {"password", "passwd", "pass", "pwd", "secret", "changeme", "xxx", "****"}


def is_real_uri_password(value: str) -> bool:
    if value.lower() in URI_PASSWORD_PLACEHOLDERS:
        return False
    if value.startswith(("$", "<", "{", "%")):
        return False
    return not is_denylist_match(value)


# ===================================================================
# DETECTION RULES
# ===================================================================

@dataclass(frozen=True)
class RawMatch:
    rule_id: str
    start: int
    end: int
    value: str
    generic: bool = False


@dataclass(frozen=True)
class SecretRule:
    """
    One named detector. `find(line)` returns zero or more raw matches.

    If `value_group` is set and participates in the match, that group is
    the reported value and span; otherwise the whole match is. A
    `validator` can veto individual matches.
    """
    rule_id: str
    description: str
    pattern: "re.Pattern[str]"
    generic: bool = False
    value_group: Optional[str] = None
    validator: Optional[Callable[[str], bool]] = None

    def find(self, line: str) -> List[RawMatch]:
        matches = []
        for match in self.pattern.finditer(line):
            group = 0
            if self.value_group and match.group(self.value_group) is not None:
                group = self.value_group
            value = match.group(group)
            if self.validator is not None and not self.validator(value):
                continue
            matches.append(RawMatch(self.rule_id, match.start(group), match.end(group), value, self.generic))
        return matches


GENERIC_KEYWORDS = (
    r'password|passwd|pwd|passphrase|secret|token|api[_-]?key|apikey|access[_-]?key'
    r'|auth[_-]?key|private[_-]?key|client[_-]?secret|credentials?'
)

DEFAULT_RULES: Tuple[SecretRule, ...] = (
    # Cloud providers
    SecretRule(
        "AWS_ACCESS_KEY_ID", "AWS access key id",
        re.compile(r'(?<![A-Z0-9])(?:A3T[A-Z0-9]|AKIA|ASIA|ABIA|ACCA|AGPA|AIDA|AROA|ANPA)[A-Z0-9]{16}(?![A-Z0-9])')
    ),
    SecretRule(
        "AWS_SECRET_ACCESS_KEY", "AWS secret access key assignment",
        re.compile(
            r'(?i)aws_?secret_?(?:access_?)?key["\']?\s*[:=]\s*["\']?(?P<val>[A-Za-z0-9/+=]{40})(?![A-Za-z0-9/+=])'
        ),
        value_group="val"
    ),
    SecretRule(
        "GOOGLE_API_KEY", "Google / Firebase API key",
        re.compile(r'\bAIza[0-9A-Za-z_\-]{35}(?![0-9A-Za-z_\-])')
    ),

    # Source hosting & package registries
    SecretRule(
        "GITHUB_TOKEN", "GitHub personal access / OAuth / app token",
        re.compile(r'\b(?:ghp|gho|ghu|ghr|ghs)_[0-9A-Za-z]{36,255}(?![0-9A-Za-z])')
    ),
    SecretRule(
        "GITHUB_FINE_GRAINED_PAT", "GitHub fine-grained personal access token",
        re.compile(r'\bgithub_pat_[0-9A-Za-z_]{22,255}\b')
    ),
    SecretRule(
        "GHCR_PAT", "GitHub Container Registry token",
        re.compile(r'\bghcr_pat_[0-9A-Za-z_]{22,255}\b')
    ),
    SecretRule(
        "GITLAB_PAT", "GitLab personal access token",
        re.compile(r'\bglpat-[0-9A-Za-z_\-]{20,}')
    ),
    SecretRule(
        "NPM_TOKEN", "npm access token",
        re.compile(r'\bnpm_[A-Za-z0-9]{36}\b')
    ),
    SecretRule(
        "DOCKERHUB_PAT", "Docker Hub personal access token",
        re.compile(r'\bdckr_pat_[A-Za-z0-9_\-]{27,}')
    ),

    # SaaS APIs
    SecretRule(
        "SLACK_TOKEN", "Slack token",
        re.compile(r'\bxox[bpsoarunv]-(?:[0-9A-Za-z]{1,13}-){1,4}[0-9A-Za-z]{6,64}\b')
    ),
    SecretRule(
        "SLACK_WEBHOOK", "Slack incoming webhook",
        re.compile(r'https://hooks\.slack\.com/services/T[0-9A-Za-z]{6,}/B[0-9A-Za-z]{6,}/[0-9A-Za-z]{20,}')
    ),
    SecretRule(
        "STRIPE_KEY", "Stripe live secret / restricted key",
        re.compile(r'\b(?:sk|rk)_live_[0-9A-Za-z]{24,}\b')
    ),
    SecretRule(
        "OPENAI_API_KEY", "OpenAI API key",
        re.compile(r'\bsk-(?:proj-[A-Za-z0-9_\-]{40,}|[A-Za-z0-9]{32,})(?![A-Za-z0-9_\-])')
    ),
    SecretRule(
        "ANTHROPIC_API_KEY", "Anthropic API key",
        re.compile(r'\bsk-ant-[a-z]+\d{2}-[A-Za-z0-9_\-]{80,}')
    ),

    # Cryptographic material
    SecretRule(
        "PRIVATE_KEY", "PEM / OpenSSH / PGP private key block header",
        re.compile(r'-----BEGIN[ A-Z0-9_-]{0,100}PRIVATE KEY(?: BLOCK)?-----')
    ),
    SecretRule(
        "JWT_TOKEN", "JSON Web Token",
        re.compile(r'\beyJ[A-Za-z0-9_\-+/=]{10,}\.eyJ[A-Za-z0-9_\-+/=]{10,}\.[A-Za-z0-9_\-+/=]{10,}')
    ),

    # Connection strings
    SecretRule(
        "DATABASE_URI_CREDENTIALS", "Password embedded in a database / broker URI",
        re.compile(
            r'\b(?:postgres(?:ql)?|mysql|mariadb|mongodb(?:\+srv)?|rediss?|amqps?)://'
            r'[^\s:/@]+:(?P<val>[^\s:/@]{3,})@[A-Za-z0-9.\-]+'
        ),
        value_group="val",
        validator=is_real_uri_password
    ),

    # Generic pattern (lowest precedence, see resolve_overlaps)
    SecretRule(
        "GENERIC_SECRET_ASSIGNMENT", "High-entropy value assigned to a secret-like key",
        re.compile(
            r'(?i)(?<![A-Za-z0-9])(?:[A-Za-z0-9]+[_.\-])*(?:' + GENERIC_KEYWORDS + r')(?:[_.\-][A-Za-z0-9]+){0,2}'
            r'["\']?\s*(?::=|=>|[:=])\s*(?P<quote>["\']?)(?P<val>[A-Za-z0-9/+_.=~\-]{16,})(?P=quote)'
        ),
        generic=True,
        value_group="val",
        validator=looks_like_generated_secret
    ),
)


def resolve_overlaps(matches: Iterable[RawMatch]) -> List[RawMatch]:
    """
    Collapse raw matches so each secret occurrence is reported once.

    Identical spans keep the smallest rule id; generic matches that
    overlap any specific match are dropped. The result does not depend on
    rule order.
    """
    specific: Dict[Tuple[int, int], RawMatch] = {}
    generic: Dict[Tuple[int, int], RawMatch] = {}
    for match in matches:
        bucket = generic if match.generic else specific
        key = (match.start, match.end)
        if key not in bucket or match.rule_id < bucket[key].rule_id:
            bucket[key] = match

    kept = list(specific.values())
    for match in generic.values():
        if not any(match.start < other.end and other.start < match.end for other in specific.values()):
            kept.append(match)

    return sorted(kept, key=lambda m: (m.start, m.rule_id))


# ===================================================================
# ALLOWLIST
# ===================================================================

@dataclass(frozen=True)
class AllowlistEntry:
    pattern: "re.Pattern[str]"
    source: str
    line: int


class Allowlist:
    """Regexes that mark otherwise-matching content as known safe."""

    def __init__(self, entries: Iterable[AllowlistEntry] = ()):
        self.entries: Tuple[AllowlistEntry, ...] = tuple(entries)

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def load(cls, path: Path, required: bool = False) -> "Allowlist":
        """
        Load one regex per line; blank lines and `#` comments are ignored.

        A line that is not a valid regex is skipped with a warning; the
        remaining lines still apply.

        Args:
            path: Allowlist file
            required: raise instead of returning an empty allowlist when
                the file is missing (explicitly configured paths)

        Raises:
            ConfigError: if the file is required and missing, or exists but
                cannot be read
        """
        if not path.exists() and not required:
            logger.debug(f"No allowlist at {path}")
            return cls()

        try:
            with open(path, 'r', encoding='utf-8') as f:
                lines = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(
                f"Cannot read allowlist {path}: {e}. Fix the path/permissions or drop --allowlist."
            ) from e

        entries = []
        for number, raw in enumerate(lines, start=1):
            text = raw.strip()
            if not text or text.startswith('#'):
                continue
            try:
                entries.append(AllowlistEntry(re.compile(text), str(path), number))
            except re.error as e:
                logger.warning(f"Ignoring invalid allowlist regex at {path}:{number}: {e}")

        logger.info(f"Loaded {len(entries)} allowlist pattern(s) from {path}")
        return cls(entries)

    def matches(self, text: str) -> bool:
        return any(entry.pattern.search(text) for entry in self.entries)


# ===================================================================
# FILE CORPUS SELECTION
# ===================================================================

def _split_z(output: bytes) -> List[str]:
    return [item.decode('utf-8', errors='surrogateescape') for item in output.split(b'\0') if item]


async def _tracked_files(root: Path, pathspec: Sequence[str]) -> Dict[str, bool]:
    result = await run_git(root, "ls-files", "-z", *pathspec)
    if result.returncode != 0:
        raise ConfigError(f"git ls-files failed: {result.stderr.decode('utf-8', errors='replace').strip()}")
    return {path: False for path in _split_z(result.stdout)}


async def _staged_files(root: Path, pathspec: Sequence[str]) -> Dict[str, bool]:
    """Staged additions/copies/modifications, mapped to their binary flag."""
    result = await run_git(
        root, "diff", "--cached", "--numstat", "-z", "--no-renames", "--diff-filter=ACM", *pathspec
    )
    if result.returncode != 0:
        raise ConfigError(f"git diff --cached failed: {result.stderr.decode('utf-8', errors='replace').strip()}")

    files = {}
    for record in _split_z(result.stdout):
        added, _deleted, path = record.split('\t', 2)
        files[path] = added == '-'
    return files


async def _staged_size(root: Path, path: str) -> int:
    result = await run_git(root, "cat-file", "-s", f":{path}")
    if result.returncode != 0:
        raise ScanError(f"cannot stat staged blob: {result.stderr.decode('utf-8', errors='replace').strip()}")
    return int(result.stdout.strip())


async def select_targets(
    root: Path,
    mode: ScanMode,
    paths: Optional[Sequence[str]] = None,
    max_file_size: int = 10 * 1024 * 1024
) -> ScanTarget:
    """
    Enumerate the files to inspect.

    Args:
        root: Any directory inside the repository
        mode: FULL (all tracked files) or STAGED (pending change set)
        paths: Optional git pathspecs restricting the selection
        max_file_size: Size ceiling in bytes; larger files are skipped with a warning

    Returns:
        ScanTarget with repo-relative, de-duplicated, sorted paths

    Raises:
        ConfigError: if `root` is not inside a git work tree
    """
    top = await find_repo_root(root)
    pathspec = ["--", *paths] if paths else []

    if mode is ScanMode.FULL:
        candidates = await _tracked_files(top, pathspec)
    else:
        candidates = await _staged_files(top, pathspec)

    selected: List[str] = []
    skipped: List[Tuple[str, str]] = []

    for rel in sorted(candidates):
        if should_skip_path(rel):
            logger.debug(f"Skipping excluded directory: {rel}")
            continue

        try:
            if mode is ScanMode.FULL:
                full = top / rel
                if full.is_symlink() or not full.is_file():
                    # Deleted from the work tree, submodule, or symlink
                    logger.debug(f"Skipping non-regular path: {rel}")
                    continue
                size = full.stat().st_size
            else:
                size = await _staged_size(top, rel)
        except (OSError, ScanError) as e:
            logger.warning(f"Skipping {rel}: {e}", extra={"path": rel})
            skipped.append((rel, str(e)))
            continue

        if size > max_file_size:
            logger.warning(
                f"Skipping {rel}: {size} bytes exceeds the {max_file_size} byte size ceiling",
                extra={"path": rel}
            )
            skipped.append((rel, "exceeds size ceiling"))
            continue

        binary = candidates[rel] or Path(rel).suffix.lower() in BINARY_FILE_EXTENSIONS
        if not binary and mode is ScanMode.FULL:
            binary = is_binary_file(top / rel)
        if binary:
            logger.debug(f"Skipping binary file: {rel}")
            skipped.append((rel, "binary"))
            continue

        selected.append(rel)

    logger.info(f"Selected {len(selected)} file(s) for {mode.value} scan")
    return ScanTarget(root=top, mode=mode, paths=tuple(selected), skipped=tuple(skipped))


HUNK_HEADER = re.compile(rb'^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@')


def parse_added_lines(diff: bytes) -> List[Tuple[int, bytes]]:
    """
    Extract (post-image line number, content) for every added line of a
    unified diff.
    """
    added: List[Tuple[int, bytes]] = []
    new_line: Optional[int] = None

    for raw in diff.split(b'\n'):
        header = HUNK_HEADER.match(raw)
        if header:
            new_line = int(header.group(1))
            continue
        if new_line is None:
            # File header (diff --git, index, ---, +++)
            continue
        if raw.startswith(b'+'):
            added.append((new_line, raw[1:].rstrip(b'\r')))
            new_line += 1
        elif raw.startswith(b' '):
            new_line += 1

    return added


async def staged_added_lines(root: Path, path: str) -> List[Tuple[int, bytes]]:
    result = await run_git(
        root, "diff", "--cached", "-U0", "--no-color", "--no-ext-diff", "--no-renames", "--", path
    )
    if result.returncode != 0:
        raise ScanError(f"git diff failed: {result.stderr.decode('utf-8', errors='replace').strip()}")
    return parse_added_lines(result.stdout)


async def read_target_lines(target: ScanTarget, path: str) -> List[Tuple[int, str]]:
    """
    Numbered text lines to scan for one selected path.

    FULL mode yields every line of the work-tree file; STAGED mode yields
    only the lines the staged change adds.

    Raises:
        ScanError: unreadable file or content that is not UTF-8 text
    """
    if target.mode is ScanMode.STAGED:
        numbered = await staged_added_lines(target.root, path)
        try:
            return [(number, content.decode('utf-8')) for number, content in numbered]
        except UnicodeDecodeError as e:
            raise ScanError(f"not valid UTF-8 text ({e.reason})") from e

    try:
        async with aiofiles.open(target.root / path, 'rb') as f:
            data = await f.read()
    except OSError as e:
        raise ScanError(f"cannot read file: {e.strerror or e}") from e

    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ScanError(f"not valid UTF-8 text ({e.reason})") from e

    return [(number, line.rstrip('\r')) for number, line in enumerate(text.split('\n'), start=1)]


# ===================================================================
# SCANNING
# ===================================================================

def scan_lines(
    path: str,
    lines: Iterable[Tuple[int, str]],
    allowlist: Allowlist,
    rules: Sequence[SecretRule] = DEFAULT_RULES
) -> Tuple[List[Finding], int]:
    """
    Apply the rule battery to numbered lines of one file.

    Returns:
        (findings in line/column order, number of allowlisted matches)
    """
    findings: List[Finding] = []
    suppressed = 0

    for number, line in lines:
        raw_matches = []
        for rule in rules:
            raw_matches.extend(rule.find(line))
        if not raw_matches:
            continue

        for match in resolve_overlaps(raw_matches):
            if allowlist.matches(match.value) or allowlist.matches(line):
                suppressed += 1
                logger.debug(
                    f"Suppressed {match.rule_id} at {path}:{number} (allowlisted)",
                    extra={"path": path, "rule": match.rule_id}
                )
                continue

            findings.append(Finding(
                path=path,
                line=number,
                column=match.start + 1,
                rule_id=match.rule_id,
                value=match.value,
                secret_hash=calculate_secret_hash(match.value)
            ))

    return findings, suppressed


async def scan_target_async(
    target: ScanTarget,
    allowlist: Allowlist,
    rules: Sequence[SecretRule] = DEFAULT_RULES,
    show_progress: bool = False
) -> ScanResult:
    """
    Scan every selected path, one file at a time, in target order.

    Unreadable or undecodable files are logged and skipped; they never
    abort the batch.
    """
    findings: List[Finding] = []
    skipped = list(target.skipped)
    suppressed = 0
    scanned = 0

    with tqdm(total=len(target.paths), desc="Scanning files", unit="file", disable=not show_progress) as pbar:
        for path in target.paths:
            try:
                lines = await read_target_lines(target, path)
            except ScanError as e:
                logger.warning(f"Skipping {path}: {e}", extra={"path": path})
                skipped.append((path, str(e)))
                pbar.update(1)
                continue

            file_findings, file_suppressed = scan_lines(path, lines, allowlist, rules)
            findings.extend(file_findings)
            suppressed += file_suppressed
            scanned += 1
            pbar.update(1)

    logger.info(f"Scan complete. {len(findings)} finding(s), {suppressed} allowlisted, {len(skipped)} skipped")
    return ScanResult(tuple(findings), scanned, suppressed, tuple(skipped))


def resolve_allowlist_path(root: Path, cli_value: Optional[str], env_value: Optional[str]) -> Tuple[Path, bool]:
    """Allowlist path and whether it must exist (explicitly configured paths must)."""
    if cli_value:
        return Path(cli_value).expanduser(), True
    if env_value:
        return Path(env_value).expanduser(), True
    return root / DEFAULT_ALLOWLIST_FILE, False


async def run_scan(
    repo: Path,
    mode: ScanMode,
    formatter: ReportFormatter,
    paths: Optional[Sequence[str]] = None,
    allowlist_file: Optional[str] = None,
    env_allowlist_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    show_progress: bool = False
) -> int:
    """Select, scan and report. Returns the process exit code."""
    target = await select_targets(repo, mode, paths=paths, max_file_size=max_file_size)

    allowlist_path, required = resolve_allowlist_path(target.root, allowlist_file, env_allowlist_file)
    allowlist = Allowlist.load(allowlist_path, required=required)

    result = await scan_target_async(target, allowlist, show_progress=show_progress)
    command = "detect" if mode is ScanMode.FULL else "protect"
    return formatter.report_scan(result, command)


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='secret-scanner',
        description='Pre-push secret scanner for git repositories',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES (Optional):
  MAX_FILE_SIZE_MB       Skip files larger than this in MB (default: 10)
  SECRET_ALLOWLIST_FILE  Allowlist of regexes (default: .security-controls/secret-allowlist.txt)
  LOG_FORMAT             text|json (default: text)

USAGE EXAMPLES:
  secret-scanner detect
  secret-scanner protect --staged --no-banner --redact
  secret-scanner detect --path src/ --report-format json

EXIT CODES:
  0   No secrets found
  1   Secrets found (block the push)
  2   Tool error (not a repository, unreadable allowlist, bad flags)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '-C', '--repo',
        default='.',
        metavar='PATH',
        help='Run as if started in PATH (default: current directory)'
    )
    common.add_argument(
        '--path',
        action='append',
        dest='paths',
        metavar='PATHSPEC',
        help='Restrict the scan to these paths (repeatable)'
    )
    common.add_argument(
        '--allowlist', '--config',
        dest='allowlist',
        metavar='FILE',
        help=f'Allowlist of regexes (default: {DEFAULT_ALLOWLIST_FILE})'
    )
    common.add_argument(
        '--max-file-size-mb',
        type=float,
        metavar='MB',
        help='Skip files larger than this (default: 10)'
    )
    common.add_argument(
        '--redact',
        action='store_true',
        help='Mask matched values in the report'
    )
    common.add_argument(
        '--report-format',
        choices=REPORT_FORMATS,
        default='text',
        help='Report format on stdout (default: text)'
    )
    common.add_argument(
        '--log-format',
        choices=LOG_FORMATS,
        help='Logging format on stderr (default: $LOG_FORMAT or text)'
    )
    common.add_argument('--no-banner', action='store_true', help='Do not print the startup banner')
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument('-q', '--quiet', action='store_true', help='Only print findings and errors')
    verbosity.add_argument('-v', '--verbose', action='store_true', help='Enable verbose debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser(
        'detect', parents=[common],
        help='Scan every tracked file'
    )
    protect = subparsers.add_parser(
        'protect', parents=[common],
        help='Scan only lines added in the staged change set'
    )
    protect.add_argument(
        '--staged',
        action='store_true',
        help='Scan the index (always on; accepted for hook compatibility)'
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    try:
        config = load_config()
    except ConfigError as e:
        setup_logging(args.log_format or "text")
        logger.error(f"Configuration error: {e}")
        return EXIT_TOOL_ERROR

    setup_logging(args.log_format or config.log_format, verbose=args.verbose, quiet=args.quiet)

    mode = ScanMode.FULL if args.command == 'detect' else ScanMode.STAGED
    max_file_size_mb = args.max_file_size_mb if args.max_file_size_mb is not None else config.max_file_size_mb
    if max_file_size_mb <= 0:
        logger.error("Configuration error: --max-file-size-mb must be positive")
        return EXIT_TOOL_ERROR

    if not args.no_banner:
        log_banner("PRE-PUSH SECRET SCANNER", {
            "Command": args.command,
            "Repository": Path(args.repo).resolve(),
            "Max file size": f"{max_file_size_mb:g} MB",
            "Version": __version__,
        })

    formatter = ReportFormatter(
        report_format=args.report_format,
        quiet=args.quiet,
        redact=args.redact,
        allowlist_hint=args.allowlist or config.allowlist_file or DEFAULT_ALLOWLIST_FILE
    )

    try:
        return asyncio.run(run_scan(
            Path(args.repo).resolve(),
            mode,
            formatter,
            paths=args.paths,
            allowlist_file=args.allowlist,
            env_allowlist_file=config.allowlist_file,
            max_file_size=int(max_file_size_mb * 1024 * 1024),
            show_progress=not args.quiet and sys.stderr.isatty()
        ))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_TOOL_ERROR
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_TOOL_ERROR


if __name__ == "__main__":
    sys.exit(main())
