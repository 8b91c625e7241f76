#!/usr/bin/env python3
"""Shared utilities for push-guard.

This module provides the plumbing used by every push-guard component:
- Configuration loading (per repository, with fallback)
- Logging with rotation
- Dry-run mode support
- Regex search with timeout (ReDoS defense)
- Git subprocess helpers
- Hook/verdict message helpers

# Config resolution chain (3-step):
#   1. <repo>/.claude/push-guard/config.json (user custom)
#   2. $CLAUDE_PLUGIN_ROOT/assets/push-guard.default.json (plugin default)
#   3. Hardcoded _FALLBACK_CONFIG (emergency fallback)

Usage:
    from _push_guard_utils import (
        load_push_guard_config,
        log_push_guard,
        is_dry_run,
        run_git,
    )

Note on log_push_guard():
    - Silent fail on file write errors
    - This is intentional to avoid breaking hooks on logging issues

Design Principles:
    1. Security-First: Fail-close on anything that could skip an authorization check.
       Fail-open on non-critical errors (logging, config validation warnings)
    2. Explicit inputs: repository paths are always passed in, never read from env
    3. Robust Exception Handling: Never crash the hook lifecycle
"""

import json
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import regex

# ============================================================
# Constants
# ============================================================

DRY_RUN_ENV = "CLAUDE_HOOK_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

STATE_FILE_ENV = "PUSH_GUARD_STATE_FILE"
"""Environment variable overriding the state file location (tests, custom setups)."""

STATE_DIR_NAME = "push-guard"
STATE_FILE_NAME = "state.json"
LOG_FILE_NAME = "push-guard.log"

MAX_COMMAND_LENGTH = 100_000
"""Maximum command length before blocking.
Commands exceeding this are blocked (fail-closed)."""

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for regex operations to prevent ReDoS."""

GIT_LOCAL_TIMEOUT_SECONDS = 5
"""Timeout for local-only git queries (symbolic-ref, config, rev-parse)."""

NETWORK_FALLBACK_TIMEOUT_SECONDS = 5
"""Default connect/read budget for `git ls-remote`."""

WELL_KNOWN_PROTECTED_BRANCHES = ("main", "master", "trunk", "develop")
"""Last-resort protected set when the default branch cannot be resolved."""

# Exit codes
EXIT_ALLOW = 0
EXIT_BLOCKED = 1
EXIT_USAGE = 2
EXIT_STORE_ERROR = 3
HOOK_EXIT_BLOCK = 2
"""Hook exit code the agent runtime treats as a soft block (stderr fed back to the model)."""


# Hardcoded fallback config for when config.json is missing/corrupted
_FALLBACK_CONFIG: dict[str, Any] = {
    "protectedBranches": [],
    "protectedBranchPatterns": [],
    "fallbackProtectedBranches": list(WELL_KNOWN_PROTECTED_BRANCHES),
    "networkFallback": {
        "enabled": True,
        "timeoutSeconds": NETWORK_FALLBACK_TIMEOUT_SECONDS,
    },
    "hookBehavior": {"onError": "deny"},
}

_VALID_HOOK_ACTIONS = ("deny", "allow")


# ============================================================
# State Location
# ============================================================


def get_state_dir() -> Path:
    """Return the per-user data directory that holds the state file and log.

    Honors $PUSH_GUARD_STATE_FILE first (its parent directory is used).
    """
    override = os.environ.get(STATE_FILE_ENV, "")
    if override:
        return Path(override).expanduser().parent

    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
    elif sys.platform == "darwin":
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / STATE_DIR_NAME


def get_state_path() -> Path:
    """Return the path of the persisted branch state document."""
    override = os.environ.get(STATE_FILE_ENV, "")
    if override:
        return Path(override).expanduser()
    return get_state_dir() / STATE_FILE_NAME


def canonical_repo(path: str) -> str:
    """Canonicalize a repository path (absolute, user-expanded, symlinks resolved)."""
    return os.path.realpath(os.path.abspath(os.path.expanduser(path)))


# ============================================================
# Configuration
# ============================================================

_config_cache: dict[str, dict[str, Any]] = {}
_active_config_paths: dict[str, str | None] = {}


def _get_plugin_root() -> str:
    """Get the plugin root directory from environment variable.

    Returns:
        Plugin root directory path, or empty string if not set.
    """
    return os.environ.get("CLAUDE_PLUGIN_ROOT", "")


def _read_config_file(config_path: Path) -> dict[str, Any] | None:
    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        log_push_guard(
            "ERROR",
            f"[FALLBACK] Invalid JSON in {config_path}: {e}\n"
            "  Using next config source. Fix JSON syntax to restore it.",
        )
        return None
    except OSError as e:
        log_push_guard("ERROR", f"[FALLBACK] Failed to read {config_path}: {e}")
        return None

    if not isinstance(data, dict):
        log_push_guard("ERROR", f"[FALLBACK] Config root must be an object: {config_path}")
        return None

    for verr in validate_push_guard_config(data):
        log_push_guard("WARN", f"Config validation: {verr}")
    # Missing keys fall back to defaults, key by key
    return {**_FALLBACK_CONFIG, **data}


def load_push_guard_config(repo: str) -> dict[str, Any]:
    """Load the push-guard config for a repository, with caching and fallback.

    The config is cached per repository for the lifetime of the process.
    Since hooks run as separate processes, this is safe.

    Args:
        repo: Canonical repository path.

    Returns:
        Configuration dict. Never raises - returns the fallback on any error.
    """
    if repo in _config_cache:
        return _config_cache[repo]

    candidates: list[Path] = []
    if repo:
        candidates.append(Path(repo) / ".claude" / "push-guard" / "config.json")
    plugin_root = _get_plugin_root()
    if plugin_root:
        candidates.append(Path(plugin_root) / "assets" / "push-guard.default.json")

    for config_path in candidates:
        if not config_path.is_file():
            continue
        config = _read_config_file(config_path)
        if config is not None:
            _config_cache[repo] = config
            _active_config_paths[repo] = str(config_path)
            return config

    _config_cache[repo] = _FALLBACK_CONFIG
    _active_config_paths[repo] = None
    return _FALLBACK_CONFIG


def get_active_config_path(repo: str) -> str | None:
    """Path of the config file loaded for `repo`, or None for the hardcoded fallback."""
    if repo not in _config_cache:
        load_push_guard_config(repo)
    return _active_config_paths.get(repo)


def clear_config_cache() -> None:
    """Forget all cached configs (used by tests)."""
    _config_cache.clear()
    _active_config_paths.clear()


def get_hook_behavior(repo: str) -> dict[str, Any]:
    """Get hookBehavior section from config, with defaults applied."""
    config = load_push_guard_config(repo)
    defaults = {"onError": "deny"}
    behavior = config.get("hookBehavior", {})
    if not isinstance(behavior, dict):
        return defaults
    return {**defaults, **behavior}


def validate_push_guard_config(config: dict) -> list[str]:
    """Validate push-guard configuration.

    Performs structural and semantic validation:
    - List-valued keys hold strings
    - Regex patterns compile
    - networkFallback and hookBehavior values are sane

    Args:
        config: Parsed config dict.

    Returns:
        List of human-readable error strings (empty if valid).
    """
    errors: list[str] = []

    for key in ("protectedBranches", "fallbackProtectedBranches", "protectedBranchPatterns"):
        value = config.get(key, [])
        if not isinstance(value, list):
            errors.append(f"{key} must be a list")
            continue
        for i, item in enumerate(value):
            if not isinstance(item, str) or not item:
                errors.append(f"{key}[{i}] must be a non-empty string")

    patterns = config.get("protectedBranchPatterns", [])
    if isinstance(patterns, list):
        for i, pattern in enumerate(patterns):
            if not isinstance(pattern, str):
                continue
            try:
                regex.compile(pattern)
            except regex.error as e:
                errors.append(f"Invalid regex in protectedBranchPatterns[{i}]: {e}")

    network = config.get("networkFallback", {})
    if not isinstance(network, dict):
        errors.append("networkFallback must be an object")
    else:
        if "enabled" in network and not isinstance(network["enabled"], bool):
            errors.append("networkFallback.enabled must be a boolean")
        timeout = network.get("timeoutSeconds", NETWORK_FALLBACK_TIMEOUT_SECONDS)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("networkFallback.timeoutSeconds must be a positive number")

    behavior = config.get("hookBehavior", {})
    if not isinstance(behavior, dict):
        errors.append("hookBehavior must be an object")
    elif behavior.get("onError", "deny") not in _VALID_HOOK_ACTIONS:
        errors.append(
            f"hookBehavior.onError must be one of {_VALID_HOOK_ACTIONS}, "
            f"got {behavior.get('onError')!r}"
        )

    return errors


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, the hook logs what it WOULD do but never blocks,
    tracks or consumes authorizations.

    Enable by setting environment variable:
        CLAUDE_HOOK_DRY_RUN=1
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


class RegexTimeout(Exception):
    """A user-supplied pattern exceeded REGEX_TIMEOUT_SECONDS."""


def safe_regex_fullmatch(pattern: str, text: str, timeout: float = REGEX_TIMEOUT_SECONDS) -> bool:
    """Full-match `text` against a user-configured pattern with a timeout.

    Returns:
        True on match, False on no match or invalid pattern.

    Raises:
        RegexTimeout: matching did not finish in time. Callers decide which
            way to fail; for branch protection a timeout counts as a match.
    """
    try:
        return regex.fullmatch(pattern, text, timeout=timeout) is not None
    except TimeoutError as e:
        log_push_guard("WARN", f"Regex timeout ({timeout}s) for pattern: {pattern[:50]}...")
        raise RegexTimeout(pattern) from e
    except regex.error as e:
        log_push_guard("WARN", f"Invalid regex pattern '{pattern[:50]}...': {e}")
        return False


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Keeps exactly one backup (.log.1). Silent fail on any error.
    """
    try:
        if not log_file.exists():
            return
        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")
        # On Windows, we need to remove the target first if it exists
        if backup_file.exists():
            backup_file.unlink()
        log_file.rename(backup_file)
    except OSError:
        # Silent fail - rotation is non-critical
        pass


def log_push_guard(level: str, message: str) -> None:
    """Log a push-guard event to push-guard.log in the state directory.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Silent fail on any error - never breaks hook execution.

    Args:
        level: Log level (INFO, WARN, ERROR, BLOCK, ALLOW, TRACK, DRY-RUN)
        message: Message to log.
    """
    try:
        log_file = get_state_dir() / LOG_FILE_NAME
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs.

    Shows the start of the command (most relevant part) with ... suffix.
    """
    command = command.replace("\n", " ")
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


# ============================================================
# Git Integration
# ============================================================


class GitCommandError(Exception):
    """A git subprocess could not be run or exited non-zero."""


def _get_git_env(network: bool = False) -> dict:
    """Get environment for git subprocess with LC_ALL=C.

    Forces git to output messages in English so parsing does not depend on
    the system locale. Network calls additionally never prompt for
    credentials and only use transports git allows by default (no `ext::`
    or other remote helpers named in the remote URL).
    """
    env = os.environ.copy()
    env["LC_ALL"] = "C"
    if network:
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_PROTOCOL_FROM_USER"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def run_git(
    args: list[str],
    cwd: str,
    timeout: float = GIT_LOCAL_TIMEOUT_SECONDS,
    network: bool = False,
) -> str:
    """Run `git <args>` in `cwd` and return stripped stdout.

    Raises:
        GitCommandError: git missing, cwd missing, timeout, or non-zero exit.
    """
    if not os.path.isdir(cwd):
        raise GitCommandError(f"not a directory: {cwd}")
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            env=_get_git_env(network=network),
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise GitCommandError("git executable not found in PATH") from e
    except subprocess.TimeoutExpired as e:
        raise GitCommandError(f"git {args[0]} timed out after {timeout}s") from e
    except OSError as e:
        raise GitCommandError(f"git {args[0]} failed: {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()[:200]
        raise GitCommandError(f"git {args[0]} exited {result.returncode}: {stderr}")
    return result.stdout.strip()


def find_repo_root(start: str) -> str:
    """Return the canonical git top-level for `start`, or `start` itself."""
    try:
        toplevel = run_git(["rev-parse", "--show-toplevel"], cwd=start)
    except GitCommandError:
        return canonical_repo(start)
    return canonical_repo(toplevel or start)


# ============================================================
# Verdict Message Helpers
# ============================================================


def block_message(reasons: list[str]) -> str:
    """Render one stderr message for the agent from per-push reasons."""
    # Use text prefix instead of emoji for Windows cp949 compatibility
    if len(reasons) == 1:
        return f"[BLOCKED] {reasons[0]}"
    lines = ["[BLOCKED] push-guard blocked this command:"]
    lines.extend(f"  - {reason}" for reason in reasons)
    return "\n".join(lines)
