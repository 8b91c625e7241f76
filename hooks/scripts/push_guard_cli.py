#!/usr/bin/env python3
"""push-guard operator CLI.

Subcommands:
    check      Decide whether a push to one branch would be allowed
    track      Mark a branch as created by the agent
    authorize  Grant a one-time push authorization
    revoke     Remove a pending authorization
    list       Show tracked/authorized branches
    clean      Drop records for one repository, or for repositories that no longer exist

Exit codes: 0 ok/allowed, 1 blocked, 2 invalid arguments, 3 state store error.
"""

import argparse
import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

from _push_guard_utils import (  # noqa: E402
    EXIT_ALLOW,
    EXIT_BLOCKED,
    EXIT_STORE_ERROR,
    EXIT_USAGE,
    canonical_repo,
    log_push_guard,
)
from branch_state import BranchStateStore, StoreIOError  # noqa: E402
from push_decision import DecisionEngine  # noqa: E402
from push_parser import DEFAULT_REMOTE  # noqa: E402

__version__ = "0.1.0"


def _non_empty(value: str) -> str:
    if not value.strip():
        raise argparse.ArgumentTypeError("must not be empty")
    return value


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--repo", required=True, type=_non_empty, help="Repository path")
    parser.add_argument("--branch", required=True, type=_non_empty, help="Branch name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="push-guard",
        description="Git push authorization manager for agent shell hooks.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser(
        "check",
        help="Check if a push to a branch is allowed (exit 0 allow, 1 blocked)",
    )
    _add_target_args(check)
    check.add_argument("--remote", default=DEFAULT_REMOTE, type=_non_empty)
    check.add_argument("--force", action="store_true", help="Treat the push as a force push")
    check.add_argument("--delete", action="store_true", help="Treat the push as a remote branch deletion")
    check.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the verdict without consuming authorizations; always exit 0",
    )

    _add_target_args(sub.add_parser("track", help="Mark a branch as created by the agent"))
    _add_target_args(sub.add_parser("authorize", help="Grant one-time authorization to push to a branch"))
    _add_target_args(sub.add_parser("revoke", help="Revoke a previously granted authorization"))

    list_parser = sub.add_parser("list", help="List tracked and authorized branches")
    list_parser.add_argument("--repo", type=_non_empty, help="Only this repository")
    list_parser.add_argument("--json", action="store_true", help="Print a JSON array of records")

    clean = sub.add_parser("clean", help="Remove stored records")
    target = clean.add_mutually_exclusive_group(required=True)
    target.add_argument("--repo", type=_non_empty, help="Remove all records for this repository")
    target.add_argument(
        "--stale", action="store_true", help="Remove records of repositories that no longer exist"
    )
    return parser


# ============================================================
# Subcommands
# ============================================================


def do_check(args, store: BranchStateStore) -> int:
    repo = canonical_repo(args.repo)
    if args.dry_run:
        store = store.snapshot()
    verdict = DecisionEngine(store).check_branch(
        repo, args.remote, args.branch, force=args.force, deletion=args.delete
    )

    if args.dry_run:
        outcome = "allow" if verdict.allowed else "block"
        print(f"[DRY-RUN] would {outcome}: {verdict.describe()}")
        return EXIT_ALLOW

    if verdict.allowed:
        log_push_guard("ALLOW", f"check: {args.branch} on {args.remote} in {repo} ({verdict.reason})")
        return EXIT_ALLOW
    log_push_guard("BLOCK", f"check: {args.branch} on {args.remote} in {repo} ({verdict.reason})")
    print(f"BLOCKED: {verdict.describe()}", file=sys.stderr)
    return EXIT_BLOCKED


def do_track(args, store: BranchStateStore) -> int:
    repo = canonical_repo(args.repo)
    store.track(repo, args.branch)
    log_push_guard("TRACK", f"{args.branch} in {repo} (cli)")
    print(f"Tracking '{args.branch}' in '{repo}'", file=sys.stderr)
    return EXIT_ALLOW


def do_authorize(args, store: BranchStateStore) -> int:
    repo = canonical_repo(args.repo)
    store.authorize(repo, args.branch)
    log_push_guard("INFO", f"Authorized one push to {args.branch} in {repo}")
    print(f"Authorized push to '{args.branch}' in '{repo}'", file=sys.stderr)
    return EXIT_ALLOW


def do_revoke(args, store: BranchStateStore) -> int:
    repo = canonical_repo(args.repo)
    if store.revoke(repo, args.branch):
        log_push_guard("INFO", f"Revoked authorization for {args.branch} in {repo}")
        print(f"Revoked authorization for '{args.branch}' in '{repo}'", file=sys.stderr)
    else:
        print(f"No pending authorization for '{args.branch}' in '{repo}'", file=sys.stderr)
    return EXIT_ALLOW


def do_list(args, store: BranchStateStore) -> int:
    repo = canonical_repo(args.repo) if args.repo else None
    entries = store.list(repo)

    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return EXIT_ALLOW

    if repo is not None:
        print(f"Repo: {repo}")
    for entry in entries:
        tags = []
        if entry.tracked:
            tags.append("[claude]")
        if entry.authorized:
            tags.append("[authorized]")
        label = " ".join(tags)
        if repo is not None:
            print(f"  {label:<22} {entry.branch}")
        else:
            print(f"{label:<22} {entry.repo}  ::  {entry.branch}")
    return EXIT_ALLOW


def do_clean(args, store: BranchStateStore) -> int:
    if args.stale:
        removed = store.clean_stale()
        for repo in removed:
            log_push_guard("INFO", f"Removed stale repository {repo}")
        print(f"Removed {len(removed)} stale repositor{'y' if len(removed) == 1 else 'ies'}", file=sys.stderr)
        return EXIT_ALLOW

    repo = canonical_repo(args.repo)
    count = store.clean_repo(repo)
    log_push_guard("INFO", f"Removed {count} record(s) for {repo}")
    print(f"Removed {count} record(s) for '{repo}'", file=sys.stderr)
    return EXIT_ALLOW


_HANDLERS = {
    "check": do_check,
    "track": do_track,
    "authorize": do_authorize,
    "revoke": do_revoke,
    "list": do_list,
    "clean": do_clean,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # --help / --version exit 0; usage errors exit 2
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    try:
        return _HANDLERS[args.command](args, BranchStateStore())
    except StoreIOError as e:
        log_push_guard("ERROR", f"{args.command}: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR


if __name__ == "__main__":
    sys.exit(main())
