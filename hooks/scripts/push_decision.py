#!/usr/bin/env python3
"""Decision Engine - the only component that holds the authorization policy.

Per push destination:
1. Resolve the destination branch (implicit pushes ask git metadata)
2. Force push          -> needs a one-time authorization
3. Remote deletion     -> needs a one-time authorization
4. Protected branch    -> needs a one-time authorization
5. Tracked branch      -> allowed
6. Authorized branch   -> allowed (token consumed)
7. Anything else       -> blocked (foreign branch)

A whole command line is blocked if any push in it is blocked. Every push
is still evaluated so the report names every offender, and a token
consumed by an earlier push is gone for later ones.
"""

import os
from dataclasses import dataclass, field

from _push_guard_utils import (
    GitCommandError,
    canonical_repo,
    find_repo_root,
    log_push_guard,
    run_git,
    truncate_command,
)
from branch_state import BranchStateStore
from command_splitter import extract_substitutions, split_commands
from protected_branch import ProtectedBranchResolver
from push_parser import (
    DEFAULT_REMOTE,
    BranchCreated,
    DestinationSpec,
    DirectoryChange,
    Explicit,
    Implicit,
    NestedScript,
    Push,
    Refspec,
    StdinScript,
    classify,
)

BLOCK_UNRESOLVED = "cannot determine destination branch"
BLOCK_FORCE = "force push requires authorization"
BLOCK_DELETION = "branch deletion requires authorization"
BLOCK_PROTECTED = "protected branch requires authorization"
BLOCK_FOREIGN = "foreign branch requires authorization"

ALLOW_TRACKED = "tracked branch"
ALLOW_AUTHORIZED = "one-time authorization consumed"

MAX_NESTING_DEPTH = 3


# ============================================================
# Verdicts
# ============================================================


@dataclass(frozen=True)
class PushVerdict:
    allowed: bool
    reason: str
    repo: str
    remote: str
    branch: str | None
    command: str = ""
    confident: bool = True

    def describe(self) -> str:
        """One human-readable paragraph for the agent/operator."""
        target = f"'{self.branch}' on {self.remote}" if self.branch else f"push to {self.remote}"
        text = f"{target}: {self.reason}"
        if self.command:
            text += f" [{truncate_command(self.command)}]"
        if not self.allowed and self.branch:
            text += (
                f"\n    To allow a single push, the user can run: "
                f"push-guard authorize --repo '{self.repo}' --branch '{self.branch}'"
            )
        if not self.confident:
            text += "\n    (default branch could not be resolved; using the well-known protected set)"
        return text


@dataclass
class Decision:
    verdicts: list[PushVerdict] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return all(v.allowed for v in self.verdicts)

    @property
    def blocked(self) -> list[PushVerdict]:
        return [v for v in self.verdicts if not v.allowed]

    def reasons(self) -> list[str]:
        return [v.describe() for v in self.blocked]


# ============================================================
# Git Metadata
# ============================================================


class GitMetadata:
    """Current branch / upstream lookups for one repository (local git only)."""

    def __init__(self, repo: str):
        self.repo = repo

    def current_branch(self) -> str | None:
        try:
            return run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=self.repo) or None
        except GitCommandError:
            # Detached HEAD, not a repository, or git missing
            return None

    def upstream(self, branch: str) -> tuple[str, str] | None:
        """Return (remote, branch) of the configured upstream, or None."""
        try:
            remote = run_git(["config", "--get", f"branch.{branch}.remote"], cwd=self.repo)
            merge = run_git(["config", "--get", f"branch.{branch}.merge"], cwd=self.repo)
        except GitCommandError:
            return None
        if not remote or remote == "." or not merge.startswith("refs/heads/"):
            return None
        return remote, merge[len("refs/heads/") :]


# ============================================================
# Engine
# ============================================================


@dataclass
class _LineContext:
    """Shell state carried across the sub-commands of one command line."""

    cwd: str
    repo: str
    created: dict[str, str] = field(default_factory=dict)  # repo -> branch checked out by this line

    def child(self) -> "_LineContext":
        return _LineContext(self.cwd, self.repo, dict(self.created))


class DecisionEngine:
    def __init__(
        self,
        store: BranchStateStore,
        resolver: ProtectedBranchResolver | None = None,
        metadata_factory=GitMetadata,
    ):
        self.store = store
        self.resolver = resolver or ProtectedBranchResolver()
        self._metadata_factory = metadata_factory
        self._metadata: dict[str, GitMetadata] = {}

    def _metadata_for(self, repo: str):
        if repo not in self._metadata:
            self._metadata[repo] = self._metadata_factory(repo)
        return self._metadata[repo]

    # -- single destination ------------------------------------------------

    def check_branch(
        self,
        repo: str,
        remote: str,
        branch: str,
        force: bool = False,
        deletion: bool = False,
        command: str = "",
    ) -> PushVerdict:
        """Run the authorization state machine for one resolved destination."""

        def verdict(allowed: bool, reason: str, confident: bool = True) -> PushVerdict:
            return PushVerdict(allowed, reason, repo, remote, branch, command, confident)

        if not branch:
            return verdict(False, BLOCK_UNRESOLVED)

        if force:
            if self._consume(repo, branch):
                return verdict(True, ALLOW_AUTHORIZED)
            return verdict(False, BLOCK_FORCE)

        if deletion:
            if self._consume(repo, branch):
                return verdict(True, ALLOW_AUTHORIZED)
            return verdict(False, BLOCK_DELETION)

        protection = self.resolver.is_protected(repo, remote, branch)
        if protection.protected:
            if self._consume(repo, branch):
                return verdict(True, ALLOW_AUTHORIZED, protection.confident)
            return verdict(False, BLOCK_PROTECTED, protection.confident)

        if self.store.is_tracked(repo, branch):
            return verdict(True, ALLOW_TRACKED, protection.confident)

        if self._consume(repo, branch):
            return verdict(True, ALLOW_AUTHORIZED, protection.confident)

        return verdict(False, BLOCK_FOREIGN, protection.confident)

    def _consume(self, repo: str, branch: str) -> bool:
        if self.store.try_consume_authorization(repo, branch):
            log_push_guard("INFO", f"Consumed one-time authorization for {branch} in {repo}")
            return True
        return False

    # -- whole command line ------------------------------------------------

    def evaluate_command(self, command: str, repo: str, cwd: str | None = None) -> Decision:
        """Evaluate every push in a raw command line.

        Args:
            command: The full shell command line.
            repo: Repository the line starts in.
            cwd: Starting directory for relative `cd` / `-C` paths
                (defaults to `repo`).
        """
        repo = canonical_repo(repo)
        start = canonical_repo(cwd) if cwd else repo
        decision = Decision()
        self._evaluate_script(command, _LineContext(cwd=start, repo=repo), decision, depth=0)
        return decision

    def _evaluate_script(self, script: str, ctx: _LineContext, decision: Decision, depth: int) -> None:
        if depth > MAX_NESTING_DEPTH:
            decision.verdicts.append(
                PushVerdict(False, BLOCK_UNRESOLVED, ctx.repo, "?", None, script)
            )
            log_push_guard("WARN", f"Nesting too deep, failing closed: {truncate_command(script)}")
            return

        for sub in split_commands(script):
            # Substitutions run before the command that contains them
            for body in extract_substitutions(sub):
                self._evaluate_script(body, ctx.child(), decision, depth + 1)

            classification = classify(sub)

            if isinstance(classification, NestedScript):
                self._evaluate_script(classification.script, ctx.child(), decision, depth + 1)
            elif isinstance(classification, StdinScript):
                decision.verdicts.append(
                    PushVerdict(False, BLOCK_UNRESOLVED, ctx.repo, "?", None, sub)
                )
                log_push_guard("WARN", f"Shell reads its script from stdin: {truncate_command(sub)}")
            elif isinstance(classification, DirectoryChange):
                target = os.path.join(ctx.cwd, os.path.expanduser(classification.path))
                ctx.cwd = canonical_repo(target)
                ctx.repo = find_repo_root(ctx.cwd) if os.path.isdir(ctx.cwd) else ctx.cwd
            elif isinstance(classification, BranchCreated):
                self._track_created(classification, ctx)
            elif isinstance(classification, Push) and classification.arguments_unknown:
                repo = self._repo_for(ctx, classification.workdir)
                decision.verdicts.append(
                    PushVerdict(False, BLOCK_UNRESOLVED, repo, classification.remote, None, sub)
                )
                log_push_guard("WARN", f"Push arguments supplied at run time: {truncate_command(sub)}")
            elif isinstance(classification, Push):
                for destination in classification.destinations:
                    decision.verdicts.append(
                        self._evaluate_push(classification, destination, ctx, sub)
                    )

    def _track_created(self, created: BranchCreated, ctx: _LineContext) -> None:
        """Track a branch created on this line, unless its name is protected.

        The branch still becomes the line's current branch either way.
        """
        repo = self._repo_for(ctx, created.workdir)
        ctx.created[repo] = created.name
        if self.resolver.is_protected(repo, DEFAULT_REMOTE, created.name).protected:
            log_push_guard("WARN", f"Not tracking protected branch {created.name} in {repo}")
            return
        self.store.track(repo, created.name)
        log_push_guard("TRACK", f"Tracking {created.name} in {repo}")

    def _repo_for(self, ctx: _LineContext, workdir: str | None) -> str:
        if not workdir:
            return ctx.repo
        target = canonical_repo(os.path.join(ctx.cwd, os.path.expanduser(workdir)))
        return find_repo_root(target) if os.path.isdir(target) else target

    def _evaluate_push(
        self, push: Push, destination: DestinationSpec, ctx: _LineContext, command: str
    ) -> PushVerdict:
        repo = self._repo_for(ctx, push.workdir)
        remote = push.remote
        deletion = False

        if isinstance(destination, Explicit):
            branch = destination.branch
            deletion = destination.deletion
            if branch == "HEAD":
                branch = self._current_branch(ctx, repo)
        elif isinstance(destination, Refspec):
            branch = destination.branch
            if branch == "HEAD":
                branch = self._current_branch(ctx, repo)
        elif isinstance(destination, Implicit):
            remote, branch = self._resolve_implicit(push, ctx, repo)
        else:
            branch = None

        if push.ambiguous:
            log_push_guard("WARN", f"Ambiguous push parsed conservatively: {truncate_command(command)}")

        if not branch:
            return PushVerdict(False, BLOCK_UNRESOLVED, repo, remote, None, command)

        return self.check_branch(
            repo, remote, branch, force=push.force, deletion=deletion, command=command
        )

    def _current_branch(self, ctx: _LineContext, repo: str) -> str | None:
        if repo in ctx.created:
            return ctx.created[repo]
        return self._metadata_for(repo).current_branch()

    def _resolve_implicit(self, push: Push, ctx: _LineContext, repo: str) -> tuple[str, str | None]:
        """Destination of `git push [<remote>]`: the upstream, else the current branch."""
        if repo in ctx.created:
            # Created earlier on this line; a new branch has no upstream yet
            return push.remote, ctx.created[repo]

        metadata = self._metadata_for(repo)
        current = metadata.current_branch()
        if not current:
            return push.remote, None

        upstream = metadata.upstream(current)
        if upstream is not None:
            upstream_remote, upstream_branch = upstream
            if not push.remote_explicit or upstream_remote == push.remote:
                return upstream_remote, upstream_branch
        return push.remote, current
