#!/usr/bin/env python3
"""Push Guardian Hook - PreToolUse entry point for Bash commands.

Reads the hook payload from stdin and renders one verdict for the whole
command line:
- Allow: exit 0, nothing printed
- Block: reason on stderr, exit 2 (the runtime feeds it back to the agent)

Fail-closed: malformed input, state store errors and crashes block,
unless hookBehavior.onError is "allow".

Dry-run (CLAUDE_HOOK_DRY_RUN=1): evaluates against an in-memory snapshot
of the state (nothing tracked, no token consumed), logs what it would do,
always exits 0.
"""

import json
import os
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _push_guard_utils import (
        EXIT_ALLOW,
        HOOK_EXIT_BLOCK,
        MAX_COMMAND_LENGTH,
        block_message,
        canonical_repo,
        find_repo_root,
        get_hook_behavior,
        is_dry_run,
        log_push_guard,
        truncate_command,
    )
    from branch_state import BranchStateStore
    from push_decision import DecisionEngine
except ImportError as e:
    # Fail-close: push-guard unavailable = block everything
    print(f"[BLOCKED] push-guard unavailable: {e}", file=sys.stderr)
    sys.exit(2)


def _block(reason: str) -> int:
    print(block_message([reason]), file=sys.stderr)
    return HOOK_EXIT_BLOCK


def _target(verdict) -> str:
    return f"{verdict.branch} on {verdict.remote} in {verdict.repo}"


def _resolve_start(payload: dict) -> tuple[str, str]:
    """Return (repo root, working directory) for the payload."""
    cwd = payload.get("cwd")
    if not isinstance(cwd, str) or not cwd:
        cwd = os.getcwd()
    cwd = canonical_repo(cwd)
    repo = find_repo_root(cwd) if os.path.isdir(cwd) else cwd
    return repo, cwd


def run_hook(raw_input: str) -> int:
    """Evaluate one hook payload and return the process exit code.

    Raises:
        StoreIOError: the state file is unusable (handled by main()).
    """
    # Parse input - FAIL-CLOSE on invalid JSON for security
    try:
        payload = json.loads(raw_input)
    except json.JSONDecodeError as e:
        log_push_guard("ERROR", f"Malformed JSON input: {e}")
        return _block("Invalid hook input (malformed JSON)")

    if not isinstance(payload, dict):
        log_push_guard("ERROR", "Hook input is not a JSON object")
        return _block("Invalid hook input (expected an object)")

    # Only process Bash commands
    if payload.get("tool_name") != "Bash":
        return EXIT_ALLOW

    tool_input = payload.get("tool_input")
    command = tool_input.get("command", "") if isinstance(tool_input, dict) else None
    if not isinstance(command, str):
        log_push_guard("ERROR", "Bash tool_input.command missing or not a string")
        return _block("Invalid hook input (no command)")
    if not command.strip():
        return EXIT_ALLOW

    cmd_preview = truncate_command(command)

    if len(command) > MAX_COMMAND_LENGTH:
        log_push_guard("BLOCK", f"Command too long ({len(command)} chars): {cmd_preview}")
        if is_dry_run():
            log_push_guard("DRY-RUN", "Would BLOCK")
            return EXIT_ALLOW
        return _block(f"Command too long to inspect ({len(command)} chars)")

    repo, cwd = _resolve_start(payload)

    store = BranchStateStore()
    if is_dry_run():
        store = store.snapshot()
    engine = DecisionEngine(store)
    decision = engine.evaluate_command(command, repo, cwd=cwd)

    if not decision.verdicts:
        return EXIT_ALLOW

    if decision.blocked:
        for verdict in decision.blocked:
            log_push_guard("BLOCK", f"{verdict.reason} ({_target(verdict)}): {cmd_preview}")
        if is_dry_run():
            log_push_guard("DRY-RUN", "Would BLOCK")
            return EXIT_ALLOW
        print(block_message(decision.reasons()), file=sys.stderr)
        return HOOK_EXIT_BLOCK

    for verdict in decision.verdicts:
        log_push_guard("ALLOW", f"{verdict.reason} ({_target(verdict)}): {cmd_preview}")
    return EXIT_ALLOW


def _error_exit_code(error: Exception, raw_input: str = "") -> int:
    """Apply hookBehavior.onError (default "deny" = fail-closed).

    The setting is read from the repository the payload points at, the
    same one the command was being evaluated in.
    """
    reason = f"push-guard error: {type(error).__name__}: {error}"
    try:
        payload = json.loads(raw_input) if raw_input else {}
        repo, _ = _resolve_start(payload if isinstance(payload, dict) else {})
        action = get_hook_behavior(repo).get("onError", "deny")
    except Exception:
        # If hookBehavior lookup itself fails, fall back to deny
        action = "deny"
    if action == "allow":
        log_push_guard("WARN", f"onError=allow, letting command through after: {reason}")
        return EXIT_ALLOW
    return _block(reason)


def main() -> None:
    raw_input = ""
    try:
        raw_input = sys.stdin.read()
        code = run_hook(raw_input)
    except Exception as e:
        log_push_guard("ERROR", f"Unhandled exception: {type(e).__name__}: {e}")
        code = _error_exit_code(e, raw_input)
    sys.exit(code)


if __name__ == "__main__":
    main()
