#!/usr/bin/env python3
"""
===================================================================
CI WORKFLOW REFERENCE PINNER
===================================================================

PURPOSE:
    Supply-chain guard for GitHub Actions workflows. A tag such as
    `actions/checkout@v4` can be moved by whoever controls the upstream
    repository; a 40-character commit hash cannot.

    pincheck  Read-only. Fails when any external `uses:` reference (and,
              with --images, any container image) is not pinned to an
              immutable hash, or is malformed.
    autopin   Resolves each unpinned reference and rewrites it in place to
              `owner/repo@<sha> # <original ref>`, atomically per file.

FEATURES:
    ✓ Tolerant line parser (quotes, list items, trailing comments,
      block scalars such as `run: |` are skipped)
    ✓ Malformed references reported, never silently dropped
    ✓ Commit resolution via the GitHub API (PyGithub), annotated tags
      dereferenced
    ✓ Image digest resolution via the OCI distribution API (aiohttp)
    ✓ On-disk resolution cache with TTL
    ✓ Per-reference failure tolerance: one unresolvable ref never blocks
      the others
    ✓ Idempotent: a second autopin performs zero rewrites

USAGE:
    action-pinner pincheck --dir .github/workflows --quiet
    action-pinner autopin --dir .github/workflows --actions --images --quiet
    action-pinner autopin --dry-run -v

CONFIGURATION:
    Set via environment variables (CLI flags take precedence):
    - WORKFLOW_DIR: Workflow directory (default: .github/workflows)
    - PIN_CACHE_FILE: Resolution cache (default: $XDG_CACHE_HOME/prepush-scan/pin-cache.json)
    - PIN_CACHE_TTL_HOURS: Cache entry lifetime, 0 = forever (default: 168)
    - RESOLVE_TIMEOUT_SECONDS: Per-lookup timeout (default: 10)
    - GITHUB_TOKEN: Optional, raises the GitHub API rate limit
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import json
import logging
import math
import re
import sys
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiohttp
from github import Auth, Github, GithubException, RateLimitExceededException, UnknownObjectException
from tqdm import tqdm

from scan_common import (
    DEFAULT_PIN_CACHE_TTL_HOURS,
    DEFAULT_RESOLVE_TIMEOUT_SECONDS,
    EXIT_INTERRUPTED,
    EXIT_TOOL_ERROR,
    LOG_FORMATS,
    LOGGER_NAME,
    ConfigError,
    NetworkError,
    ParseError,
    ReportFormatter,
    WriteError,
    __version__,
    atomic_write,
    load_config,
    log_banner,
    setup_logging,
)

logger = logging.getLogger(f"{LOGGER_NAME}.pins")

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

WORKFLOW_SUFFIXES = (".yml", ".yaml")

GITHUB_API_MAX_RETRIES = 3
GITHUB_API_BACKOFF_BASE = 2.0

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
)

COMMIT_SHA_RE = re.compile(r'^[0-9a-fA-F]{40}$')
IMAGE_DIGEST_RE = re.compile(r'^sha256:[0-9a-f]{64}$')
REF_CHARS_RE = re.compile(r'^[A-Za-z0-9._/+\-]+$')

ACTION_NAME_RE = re.compile(r'^[A-Za-z0-9_.\-]+/[A-Za-z0-9_.\-]+(?:/[^\s@]+)?$')
IMAGE_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._\-/:]*$')

USES_LINE = re.compile(r'^(?P<lead>\s*(?:-\s+)?)uses\s*:(?P<rest>.*)$')
IMAGE_LINE = re.compile(r'^(?P<lead>\s*(?:-\s+)?)(?P<key>image|container)\s*:(?P<rest>.*)$')
BLOCK_SCALAR_LINE = re.compile(r'^(?P<lead>\s*(?:-\s+)?)[^\s#][^#]*?:\s*[|>][-+0-9]*\s*(?:#.*)?$')


# ===================================================================
# DATA MODEL
# ===================================================================

class RefKind(Enum):
    ACTION = "action"
    IMAGE = "image"


class PinStatus(Enum):
    PINNED = "PINNED"
    UNPINNED = "UNPINNED"
    MALFORMED = "MALFORMED"


def classify(ref: Optional[str]) -> PinStatus:
    """
    Pin status of a ref string.

    40 hex characters (commit) or `sha256:` + 64 hex (image digest) is
    PINNED; any other string of valid ref characters is UNPINNED; empty or
    invalid input is MALFORMED.
    """
    if not ref:
        return PinStatus.MALFORMED
    if COMMIT_SHA_RE.match(ref) or IMAGE_DIGEST_RE.match(ref):
        return PinStatus.PINNED
    if REF_CHARS_RE.match(ref):
        return PinStatus.UNPINNED
    return PinStatus.MALFORMED


@dataclass(frozen=True)
class ActionReference:
    """One external reference found in a workflow file."""
    path: str
    line: int
    kind: RefKind
    name: Optional[str]
    ref: Optional[str]
    comment: Optional[str] = None
    start: int = 0
    end: int = 0
    raw: str = ""
    reason: Optional[str] = None
    docker_scheme: bool = False

    @property
    def status(self) -> PinStatus:
        if self.reason is not None:
            return PinStatus.MALFORMED
        return classify(self.ref)

    @property
    def cache_key(self) -> str:
        if self.kind is RefKind.IMAGE:
            return f"docker://{self.name}:{self.ref}"
        return f"{repository_of(self.name)}@{self.ref}"


@dataclass(frozen=True)
class ResolvedPin:
    name: str
    ref: str
    hash: str
    resolved_at: str


@dataclass(frozen=True)
class ResolutionFailed:
    name: str
    ref: str
    reason: str


Resolution = Union[ResolvedPin, ResolutionFailed]


def repository_of(action_name: str) -> str:
    """`owner/repo/sub/path` -> `owner/repo`."""
    return "/".join(action_name.split("/")[:2])


# ===================================================================
# WORKFLOW PARSING
# ===================================================================

def split_value(line: str, offset: int) -> Tuple[str, int, int, Optional[str]]:
    """
    Extract a YAML scalar starting at `offset`.

    Returns:
        (value, start, end, comment) where start/end delimit the value in
        `line` (inside the quotes for quoted scalars)

    Raises:
        ParseError: for an unterminated quote
    """
    index = offset
    while index < len(line) and line[index] in " \t":
        index += 1

    if index < len(line) and line[index] in "'\"":
        quote = line[index]
        close = line.find(quote, index + 1)
        if close == -1:
            raise ParseError("unterminated quote")
        start, end = index + 1, close
        tail = line[close + 1:]
    else:
        hash_at = re.search(r'(?:^|\s)#', line[index:])
        stop = index + hash_at.start() if hash_at else len(line)
        start = index
        end = start + len(line[start:stop].rstrip())
        tail = line[end:]

    comment = None
    hash_pos = tail.find("#")
    if hash_pos != -1:
        comment = tail[hash_pos + 1:].strip()
    return line[start:end], start, end, comment


def parse_action_value(value: str) -> Tuple[str, str]:
    """
    Split `owner/repo[/path]@ref`.

    Raises:
        ParseError: describing why the value is not a pinnable reference
    """
    if "${{" in value:
        raise ParseError("expression cannot be pinned statically")
    if "@" not in value:
        raise ParseError("missing @ref")
    name, _, ref = value.partition("@")
    if not ACTION_NAME_RE.match(name):
        raise ParseError("expected owner/repo before @")
    if not ref:
        raise ParseError("empty ref")
    if classify(ref) is PinStatus.MALFORMED:
        raise ParseError("ref contains invalid characters")
    return name, ref


def parse_image_value(value: str) -> Tuple[str, str]:
    """
    Split `name[:tag][@sha256:digest]`. An untagged image means `latest`.

    Raises:
        ParseError: for an empty name or a malformed digest
    """
    name, _, digest = value.partition("@")
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    tag = None
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1:]

    if not name or not IMAGE_NAME_RE.match(name):
        raise ParseError("invalid image name")
    if digest:
        if not IMAGE_DIGEST_RE.match(digest):
            raise ParseError("malformed image digest")
        return name, digest
    if tag is not None and classify(tag) is not PinStatus.UNPINNED:
        raise ParseError("invalid image tag")
    return name, tag or "latest"


def _reference(path, number, kind, value, start, end, comment, docker_scheme=False, name=None, ref=None,
               reason=None) -> ActionReference:
    return ActionReference(
        path=path, line=number, kind=kind, name=name, ref=ref, comment=comment,
        start=start, end=end, raw=value, reason=reason, docker_scheme=docker_scheme
    )


def _parse_uses(path, number, line, match, include_images) -> Optional[ActionReference]:
    try:
        value, start, end, comment = split_value(line, match.start("rest"))
    except ParseError as e:
        return _reference(path, number, RefKind.ACTION, line.strip(), 0, 0, None, reason=str(e))

    if value.startswith(("./", "../")):
        return None

    if value.startswith("docker://"):
        if not include_images:
            return None
        try:
            name, ref = parse_image_value(value[len("docker://"):])
        except ParseError as e:
            return _reference(path, number, RefKind.IMAGE, value, start, end, comment, True, reason=str(e))
        return _reference(path, number, RefKind.IMAGE, value, start, end, comment, True, name=name, ref=ref)

    if not value:
        return _reference(path, number, RefKind.ACTION, value, start, end, comment, reason="empty uses value")

    try:
        name, ref = parse_action_value(value)
    except ParseError as e:
        return _reference(path, number, RefKind.ACTION, value, start, end, comment, reason=str(e))
    return _reference(path, number, RefKind.ACTION, value, start, end, comment, name=name, ref=ref)


def _parse_image(path, number, line, match) -> Optional[ActionReference]:
    try:
        value, start, end, comment = split_value(line, match.start("rest"))
    except ParseError as e:
        return _reference(path, number, RefKind.IMAGE, line.strip(), 0, 0, None, reason=str(e))

    if not value:
        # `container:` opening a mapping
        return None
    if "${{" in value:
        logger.debug(f"Skipping expression image at {path}:{number}: {value}")
        return None

    try:
        name, ref = parse_image_value(value)
    except ParseError as e:
        return _reference(path, number, RefKind.IMAGE, value, start, end, comment, reason=str(e))
    return _reference(path, number, RefKind.IMAGE, value, start, end, comment, name=name, ref=ref)


def parse_lines(path: str, lines: Sequence[str], include_images: bool = False) -> List[ActionReference]:
    """Parse the physical lines of one workflow file."""
    references: List[ActionReference] = []
    block_indent: Optional[int] = None

    for number, line in enumerate(lines, start=1):
        line = line.rstrip("\r")
        stripped = line.lstrip()
        indent = len(line) - len(stripped)

        if block_indent is not None:
            if not stripped or indent > block_indent:
                continue
            block_indent = None

        if not stripped or stripped.startswith("#"):
            continue

        block = BLOCK_SCALAR_LINE.match(line)
        if block:
            block_indent = len(block.group("lead"))
            continue

        uses = USES_LINE.match(line)
        if uses:
            reference = _parse_uses(path, number, line, uses, include_images)
            if reference is not None:
                references.append(reference)
            continue

        if include_images:
            image = IMAGE_LINE.match(line)
            if image:
                reference = _parse_image(path, number, line, image)
                if reference is not None:
                    references.append(reference)

    return references


def read_workflow(path: Path) -> str:
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read workflow file {path}: {e}") from e


def display_path(path: Path, root: Optional[Path] = None) -> str:
    if root is not None:
        try:
            return path.relative_to(root).as_posix()
        except ValueError:
            pass
    return str(path)


def parse_workflow(path: Path, include_images: bool = False, root: Optional[Path] = None) -> List[ActionReference]:
    """
    Extract every external reference from one workflow file.

    Args:
        path: Workflow file
        include_images: Also report `docker://`, `image:` and `container:` images
        root: Base directory for the reported path

    Raises:
        ConfigError: if the file cannot be read as UTF-8 text
    """
    text = read_workflow(path)
    return parse_lines(display_path(path, root), text.split("\n"), include_images)


def parse_files(files: Iterable[Path], include_images: bool = False,
                root: Optional[Path] = None) -> List[ActionReference]:
    """References of all files, ordered by file then line."""
    references = []
    for path in sorted(files):
        references.extend(parse_workflow(path, include_images, root))
    return references


def list_workflow_files(workflow_dir: Path) -> List[Path]:
    """
    `*.yml` / `*.yaml` files directly under `workflow_dir`, sorted.

    Raises:
        ConfigError: if the directory does not exist
    """
    if not workflow_dir.is_dir():
        raise ConfigError(
            f"Workflow directory not found: {workflow_dir}. Pass --dir or set WORKFLOW_DIR."
        )
    return sorted(p for p in workflow_dir.iterdir() if p.is_file() and p.suffix in WORKFLOW_SUFFIXES)


# ===================================================================
# RESOLUTION CACHE
# ===================================================================

class KeyValueStore:
    """Storage for resolved hashes keyed by `ActionReference.cache_key`."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def set(self, key: str, value: Dict[str, Any]) -> None:
        raise NotImplementedError

    def save(self) -> None:
        """Persist pending changes (no-op for in-memory stores)."""


class MemoryCache(KeyValueStore):

    def __init__(self, entries: Optional[Dict[str, Dict[str, Any]]] = None):
        self.entries = dict(entries or {})

    def get(self, key):
        return self.entries.get(key)

    def set(self, key, value):
        self.entries[key] = value


class JsonFileCache(KeyValueStore):
    """
    JSON file cache. A missing or corrupt file starts an empty cache; a
    failed save is logged and otherwise ignored since the cache only saves
    lookups.
    """

    def __init__(self, path: Path):
        self.path = path
        self.entries = self._load()
        self._dirty = False

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable pin cache {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring pin cache {self.path}: expected a JSON object")
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict) and isinstance(v.get("hash"), str)}

    def get(self, key):
        return self.entries.get(key)

    def set(self, key, value):
        self.entries[key] = value
        self._dirty = True

    def save(self) -> None:
        if not self._dirty:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(self.path, (json.dumps(self.entries, indent=2, sort_keys=True) + "\n").encode("utf-8"))
        except (OSError, WriteError) as e:
            logger.warning(f"Could not save pin cache {self.path}: {e}")
            return
        self._dirty = False
        logger.debug(f"Saved {len(self.entries)} cache entries to {self.path}")


# ===================================================================
# LOOKUP BACKENDS
# ===================================================================

async def github_api_call_with_backoff(func, *args, max_retries: int = GITHUB_API_MAX_RETRIES, **kwargs):
    """
    Execute a blocking GitHub API call in a worker thread, retrying
    transient failures with exponential backoff.

    Server errors (5xx) and connection errors are retried. Not-found and
    rate-limit responses are raised immediately: a hook cannot wait out a
    rate-limit window.

    Args:
        func: Synchronous PyGithub call
        *args: Positional arguments for func
        max_retries: Maximum number of attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call
    """
    for attempt in range(max_retries):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)

        except (RateLimitExceededException, UnknownObjectException):
            raise

        except GithubException as e:
            if e.status < 500 or attempt == max_retries - 1:
                raise
            wait_time = GITHUB_API_BACKOFF_BASE ** attempt
            logger.warning(f"GitHub API error {e.status} (attempt {attempt + 1}/{max_retries})")
            logger.info(f"Backing off for {wait_time:.1f}s")
            await asyncio.sleep(wait_time)

        except OSError as e:
            if attempt == max_retries - 1:
                raise
            wait_time = GITHUB_API_BACKOFF_BASE ** attempt
            logger.warning(f"GitHub API call failed (attempt {attempt + 1}/{max_retries}): {e}")
            await asyncio.sleep(wait_time)

    raise NetworkError(f"GitHub API call failed after {max_retries} attempts")


class GitHubCommitLookup:
    """Resolve `owner/repo` + ref to a commit SHA through the GitHub API."""

    def __init__(self, token: Optional[str] = None, timeout: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS,
                 client: Optional[Github] = None):
        if client is None:
            auth = Auth.Token(token) if token else None
            client = Github(auth=auth, timeout=max(1, math.ceil(timeout)), retry=None)
        self.client = client

    def _commit_sha(self, repository: str, ref: str) -> str:
        return self.client.get_repo(repository, lazy=True).get_commit(ref).sha

    async def __call__(self, repository: str, ref: str) -> str:
        try:
            return await github_api_call_with_backoff(self._commit_sha, repository, ref)
        except UnknownObjectException as e:
            raise NetworkError(f"{repository}@{ref} not found on GitHub") from e
        except RateLimitExceededException as e:
            raise NetworkError("GitHub API rate limit exceeded; set GITHUB_TOKEN to raise it") from e
        except GithubException as e:
            if e.status == 403 and "rate limit" in str(e).lower():
                raise NetworkError("GitHub API rate limit exceeded; set GITHUB_TOKEN to raise it") from e
            raise NetworkError(f"GitHub API error {e.status} for {repository}@{ref}") from e
        except OSError as e:
            raise NetworkError(f"cannot reach GitHub API: {e}") from e


def split_image_name(name: str) -> Tuple[str, str]:
    """
    Registry host and repository path for an image name.

        python             -> registry-1.docker.io, library/python
        ghcr.io/org/tool   -> ghcr.io, org/tool
        localhost:5000/app -> localhost:5000, app
    """
    first, _, rest = name.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, rest
    else:
        registry, repository = DOCKER_HUB_REGISTRY, name
    if registry in DOCKER_HUB_ALIASES:
        registry = DOCKER_HUB_REGISTRY
        if "/" not in repository:
            repository = f"library/{repository}"
    return registry, repository


CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryDigestLookup:
    """Resolve an image tag to its manifest digest through the OCI distribution API."""

    def __init__(self, timeout: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS):
        self.timeout = timeout

    async def _token(self, session: aiohttp.ClientSession, challenge: str) -> str:
        if not challenge.lower().startswith("bearer "):
            raise NetworkError(f"unsupported registry auth challenge: {challenge or 'none'}")
        params = dict(CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise NetworkError("registry auth challenge has no realm")
        async with session.get(realm, params=params) as response:
            if response.status != 200:
                raise NetworkError(f"registry token endpoint returned HTTP {response.status}")
            try:
                body = await response.json(content_type=None)
            except ValueError as e:
                raise NetworkError(f"registry token endpoint returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise NetworkError("registry token endpoint returned an unexpected body")
        token = body.get("token") or body.get("access_token")
        if not token:
            raise NetworkError("registry token endpoint returned no token")
        return token

    async def __call__(self, name: str, tag: str) -> str:
        registry, repository = split_image_name(name)
        url = f"https://{registry}/v2/{repository}/manifests/{tag}"
        headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.head(url, headers=headers) as response:
                    status, response_headers = response.status, response.headers

                if status == 401:
                    token = await self._token(session, response_headers.get("WWW-Authenticate", ""))
                    headers["Authorization"] = f"Bearer {token}"
                    async with session.head(url, headers=headers) as response:
                        status, response_headers = response.status, response.headers
        except aiohttp.ClientError as e:
            raise NetworkError(f"cannot reach registry {registry}: {e}") from e

        if status == 404:
            raise NetworkError(f"{name}:{tag} not found in {registry}")
        if status == 429:
            raise NetworkError(f"registry {registry} rate limit exceeded")
        if status != 200:
            raise NetworkError(f"registry {registry} returned HTTP {status}")

        digest = response_headers.get("Docker-Content-Digest")
        if not digest:
            raise NetworkError(f"registry {registry} returned no Docker-Content-Digest")
        return digest


# ===================================================================
# REF RESOLVER
# ===================================================================

Lookup = Callable[[str, str], Awaitable[str]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RefResolver:
    """
    Maps a symbolic ref to an immutable hash: cache first, then the
    lookup backend for the reference kind.

    `resolve()` never raises for lookup problems; it returns a
    ResolutionFailed describing them.
    """

    def __init__(
        self,
        cache: Optional[KeyValueStore] = None,
        github_lookup: Optional[Lookup] = None,
        registry_lookup: Optional[Lookup] = None,
        timeout: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS,
        ttl_hours: float = DEFAULT_PIN_CACHE_TTL_HOURS,
        github_token: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.cache = cache if cache is not None else MemoryCache()
        self.timeout = timeout
        self.ttl = timedelta(hours=ttl_hours) if ttl_hours > 0 else None
        self.clock = clock
        self._github_lookup = github_lookup
        self._registry_lookup = registry_lookup
        self._github_token = github_token

    @property
    def github_lookup(self) -> Lookup:
        if self._github_lookup is None:
            self._github_lookup = GitHubCommitLookup(self._github_token, self.timeout)
        return self._github_lookup

    @property
    def registry_lookup(self) -> Lookup:
        if self._registry_lookup is None:
            self._registry_lookup = RegistryDigestLookup(self.timeout)
        return self._registry_lookup

    def _fresh(self, entry: Dict[str, Any]) -> bool:
        if self.ttl is None:
            return True
        try:
            resolved_at = datetime.fromisoformat(entry["resolved_at"].replace("Z", "+00:00"))
        except (KeyError, AttributeError, ValueError):
            return False
        return self.clock() - resolved_at <= self.ttl

    async def resolve(self, reference: ActionReference) -> Resolution:
        key = reference.cache_key
        valid = COMMIT_SHA_RE if reference.kind is RefKind.ACTION else IMAGE_DIGEST_RE
        cached = self.cache.get(key)
        if cached is not None and self._fresh(cached):
            cached_hash = cached.get("hash")
            if isinstance(cached_hash, str) and valid.match(cached_hash):
                logger.debug(f"Cache hit: {key}", extra={"ref": key})
                return ResolvedPin(reference.name, reference.ref, cached_hash.lower(), cached.get("resolved_at", ""))
            logger.warning(f"Ignoring invalid cached hash for {key}: {cached_hash!r}", extra={"ref": key})

        if reference.kind is RefKind.ACTION:
            lookup, subject = self.github_lookup, repository_of(reference.name)
        else:
            lookup, subject = self.registry_lookup, reference.name

        try:
            resolved = await asyncio.wait_for(lookup(subject, reference.ref), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failed(reference, f"lookup timed out after {self.timeout:g}s")
        except NetworkError as e:
            return self._failed(reference, str(e))

        if not isinstance(resolved, str) or not valid.match(resolved):
            return self._failed(reference, f"unexpected hash from lookup: {resolved!r}")

        resolved = resolved.lower()
        resolved_at = self.clock().isoformat().replace("+00:00", "Z")
        self.cache.set(key, {"hash": resolved, "resolved_at": resolved_at})
        logger.info(f"Resolved {key} -> {resolved}", extra={"ref": key})
        return ResolvedPin(reference.name, reference.ref, resolved, resolved_at)

    def _failed(self, reference: ActionReference, reason: str) -> ResolutionFailed:
        logger.warning(
            f"Cannot resolve {reference.cache_key} ({reference.path}:{reference.line}): {reason}",
            extra={"path": reference.path, "ref": reference.cache_key}
        )
        return ResolutionFailed(reference.name, reference.ref, reason)


# ===================================================================
# REWRITING
# ===================================================================

def pinned_value(reference: ActionReference, pin: ResolvedPin) -> str:
    value = f"{reference.name}@{pin.hash}"
    if reference.docker_scheme:
        value = f"docker://{value}"
    return value


def rewrite_lines(lines: List[str], pins: Sequence[Tuple[ActionReference, ResolvedPin]]) -> int:
    """
    Apply pins to `lines` in place. Lines whose content no longer matches
    the parsed reference are left alone.

    Returns:
        Number of lines changed
    """
    changed = 0
    for reference, pin in pins:
        index = reference.line - 1
        if index >= len(lines):
            continue
        line = lines[index]
        eol = "\r" if line.endswith("\r") else ""
        body = line[:len(line) - len(eol)]

        if body[reference.start:reference.end] != reference.raw:
            logger.warning(
                f"{reference.path}:{reference.line} changed since it was parsed; not rewriting",
                extra={"path": reference.path}
            )
            continue

        new_body = body[:reference.start] + pinned_value(reference, pin) + body[reference.end:]
        if reference.comment is None:
            new_body = f"{new_body.rstrip()} # {reference.ref}"
        lines[index] = new_body + eol
        changed += 1
    return changed


def rewrite_file(path: Path, pins: Sequence[Tuple[ActionReference, ResolvedPin]], dry_run: bool = False) -> int:
    """
    Rewrite resolved references of one file and replace it atomically.

    Returns:
        Number of references rewritten (or that would be, with dry_run)

    Raises:
        WriteError: if the file cannot be read back or replaced
    """
    try:
        text = read_workflow(path)
    except ConfigError as e:
        raise WriteError(str(e)) from e

    lines = text.split("\n")
    changed = rewrite_lines(lines, pins)
    if not changed:
        return 0

    if dry_run:
        for reference, pin in pins:
            logger.info(f"Would pin {reference.path}:{reference.line} {reference.raw} -> {pinned_value(reference, pin)}")
        return changed

    atomic_write(path, "\n".join(lines).encode("utf-8"))
    logger.info(f"Rewrote {changed} reference(s) in {path}", extra={"path": str(path)})
    return changed


# ===================================================================
# COMMANDS
# ===================================================================

def _in_scope(references: Iterable[ActionReference], include_actions: bool,
              include_images: bool) -> List[ActionReference]:
    kinds = set()
    if include_actions:
        kinds.add(RefKind.ACTION)
    if include_images:
        kinds.add(RefKind.IMAGE)
    return [r for r in references if r.kind in kinds]


def pincheck(
    workflow_dir: Path,
    include_images: bool = False,
    root: Optional[Path] = None,
    formatter: Optional[ReportFormatter] = None
) -> int:
    """
    Report every reference that is not pinned to an immutable hash.

    Returns:
        Exit code (0 when every reference is PINNED)

    Raises:
        ConfigError: if the workflow directory is missing
    """
    formatter = formatter or ReportFormatter()
    files = list_workflow_files(workflow_dir)
    references = parse_files(files, include_images, root)
    logger.info(f"Checked {len(references)} reference(s) in {len(files)} workflow file(s)")
    return formatter.report_pins(references, "pincheck", workflow_dir=display_path(workflow_dir, root))


async def autopin(
    workflow_dir: Path,
    resolver: RefResolver,
    include_actions: bool = True,
    include_images: bool = False,
    dry_run: bool = False,
    root: Optional[Path] = None,
    formatter: Optional[ReportFormatter] = None,
    show_progress: bool = False
) -> int:
    """
    Resolve and rewrite every unpinned in-scope reference, then report
    what is still not pinned.

    Resolution is sequential; a failed lookup leaves that reference
    untouched and the rest of the run continues.

    Returns:
        Exit code (0 when every in-scope reference is PINNED afterwards)

    Raises:
        ConfigError: if the workflow directory is missing
    """
    formatter = formatter or ReportFormatter()
    files = list_workflow_files(workflow_dir)
    by_display = {display_path(p, root): p for p in files}

    references = _in_scope(parse_files(files, include_images, root), include_actions, include_images)
    candidates = [r for r in references if r.status is PinStatus.UNPINNED]
    logger.info(f"{len(candidates)} of {len(references)} reference(s) need pinning")

    pins: Dict[str, List[Tuple[ActionReference, ResolvedPin]]] = defaultdict(list)
    reasons: Dict[Tuple[str, int], str] = {}

    try:
        with tqdm(total=len(candidates), desc="Resolving refs", unit="ref", disable=not show_progress) as pbar:
            for reference in candidates:
                outcome = await resolver.resolve(reference)
                if isinstance(outcome, ResolutionFailed):
                    reasons[(reference.path, reference.line)] = f"unresolved: {outcome.reason}"
                else:
                    pins[reference.path].append((reference, outcome))
                pbar.update(1)
    finally:
        resolver.cache.save()

    rewritten = 0
    write_errors: List[Tuple[str, str]] = []
    for path in sorted(pins):
        try:
            rewritten += rewrite_file(by_display[path], pins[path], dry_run=dry_run)
        except WriteError as e:
            logger.error(f"Failed to rewrite {path}: {e}", extra={"path": path})
            write_errors.append((path, str(e)))

    if dry_run:
        logger.info(f"Dry run: {rewritten} reference(s) would be pinned")
        after = references
        rewritten = 0
    else:
        after = _in_scope(parse_files(files, include_images, root), include_actions, include_images)

    return formatter.report_pins(
        after,
        "autopin",
        workflow_dir=display_path(workflow_dir, root),
        reasons=reasons,
        write_errors=write_errors,
        rewritten=rewritten
    )


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='action-pinner',
        description='Verify and pin GitHub Actions workflow references to immutable hashes',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES (Optional):
  WORKFLOW_DIR             Workflow directory (default: .github/workflows)
  PIN_CACHE_FILE           Resolution cache file
  PIN_CACHE_TTL_HOURS      Cache entry lifetime in hours, 0 = forever (default: 168)
  RESOLVE_TIMEOUT_SECONDS  Per-lookup timeout (default: 10)
  GITHUB_TOKEN             GitHub token for API lookups (optional)
  LOG_FORMAT               text|json (default: text)

USAGE EXAMPLES:
  action-pinner pincheck --dir .github/workflows --quiet
  action-pinner autopin --actions --images
  action-pinner autopin --dry-run --no-cache -v

EXIT CODES:
  0   Every reference is pinned
  1   Unpinned, malformed or unresolvable references, or a failed rewrite
  2   Tool error (missing workflow directory, invalid settings)
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
        '--dir',
        metavar='DIR',
        help='Workflow directory relative to the repository (default: .github/workflows)'
    )
    common.add_argument(
        '--images',
        action='store_true',
        help='Include container image references'
    )
    common.add_argument(
        '--report-format',
        choices=('text', 'json'),
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
    verbosity.add_argument('-q', '--quiet', action='store_true', help='Only print violations and errors')
    verbosity.add_argument('-v', '--verbose', action='store_true', help='Enable verbose debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('pincheck', parents=[common], help='Report unpinned and malformed references')

    autopin_parser = subparsers.add_parser('autopin', parents=[common], help='Rewrite references to pinned hashes')
    autopin_parser.add_argument(
        '--actions',
        action='store_true',
        help='Pin action uses: references (default when --images is not given)'
    )
    autopin_parser.add_argument('--dry-run', action='store_true', help='Log rewrites without touching files')
    cache = autopin_parser.add_mutually_exclusive_group()
    cache.add_argument('--cache', metavar='FILE', help='Resolution cache file')
    cache.add_argument('--no-cache', action='store_true', help='Do not read or write the resolution cache')
    autopin_parser.add_argument(
        '--timeout',
        type=float,
        metavar='SECONDS',
        help='Per-lookup timeout (default: 10)'
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

    root = Path(args.repo).resolve()
    workflow_dir = root / (args.dir or config.workflow_dir)
    formatter = ReportFormatter(report_format=args.report_format, quiet=args.quiet)

    if not args.no_banner:
        log_banner("CI WORKFLOW REFERENCE PINNER", {
            "Command": args.command,
            "Workflow directory": workflow_dir,
            "Images": "included" if args.images else "excluded",
            "Version": __version__,
        })

    try:
        if not root.is_dir():
            raise ConfigError(f"Repository path does not exist or is not a directory: {root}")

        if args.command == 'pincheck':
            return pincheck(workflow_dir, include_images=args.images, root=root, formatter=formatter)

        timeout = args.timeout if args.timeout is not None else config.resolve_timeout_seconds
        if timeout <= 0:
            raise ConfigError("--timeout must be positive")

        if args.no_cache:
            cache = MemoryCache()
        else:
            cache = JsonFileCache(Path(args.cache).expanduser() if args.cache else config.pin_cache_file)

        resolver = RefResolver(
            cache=cache,
            timeout=timeout,
            ttl_hours=config.pin_cache_ttl_hours,
            github_token=config.github_token
        )
        include_actions = args.actions or not args.images

        return asyncio.run(autopin(
            workflow_dir,
            resolver,
            include_actions=include_actions,
            include_images=args.images,
            dry_run=args.dry_run,
            root=root,
            formatter=formatter,
            show_progress=not args.quiet and sys.stderr.isatty()
        ))

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_TOOL_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_TOOL_ERROR


if __name__ == "__main__":
    sys.exit(main())
