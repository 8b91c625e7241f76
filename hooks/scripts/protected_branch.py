#!/usr/bin/env python3
"""Protected-Branch Resolver.

Determines a remote's default ("protected") branch:
1. Local: the remote's recorded symbolic HEAD (refs/remotes/<remote>/HEAD).
   Fast and offline, but absent when the clone never recorded it.
2. Network: `git ls-remote --symref <remote> HEAD`. Always accurate,
   bounded by networkFallback.timeoutSeconds.

Protection is evaluated per push and never cached in the branch store,
since a default branch can be renamed at any time.
"""

from dataclasses import dataclass

from _push_guard_utils import (
    NETWORK_FALLBACK_TIMEOUT_SECONDS,
    WELL_KNOWN_PROTECTED_BRANCHES,
    GitCommandError,
    RegexTimeout,
    load_push_guard_config,
    log_push_guard,
    run_git,
    safe_regex_fullmatch,
)


class ResolutionError(Exception):
    """Neither the local nor the network lookup produced a default branch."""


@dataclass(frozen=True)
class ProtectionResult:
    protected: bool
    confident: bool
    default_branch: str | None = None
    source: str = ""


class ProtectedBranchResolver:
    """Resolve and memoize default branches for one invocation.

    Memoization is per (repo, remote) and lives only as long as the
    resolver, i.e. one hook call or one CLI command.
    """

    def __init__(self, network: bool | None = None):
        # None = follow the repository's networkFallback.enabled setting
        self._network = network
        self._cache: dict[tuple[str, str], str | None] = {}

    def resolve(self, repo: str, remote: str) -> str:
        """Return the default branch of `remote` for `repo`.

        Raises:
            ResolutionError: both tiers failed.
        """
        key = (repo, remote)
        if key not in self._cache:
            self._cache[key] = self._lookup(repo, remote)
        branch = self._cache[key]
        if branch is None:
            raise ResolutionError(f"cannot resolve default branch of {remote!r} in {repo}")
        return branch

    def _lookup(self, repo: str, remote: str) -> str | None:
        branch = self.resolve_local(repo, remote)
        if branch:
            return branch

        config = load_push_guard_config(repo)
        network = config.get("networkFallback", {})
        if not isinstance(network, dict):
            network = {}
        enabled = self._network if self._network is not None else network.get("enabled", True)
        if not enabled:
            log_push_guard("INFO", f"Network fallback disabled; no local HEAD for {remote}")
            return None

        timeout = network.get("timeoutSeconds", NETWORK_FALLBACK_TIMEOUT_SECONDS)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            timeout = NETWORK_FALLBACK_TIMEOUT_SECONDS
        return self.resolve_remote(repo, remote, timeout)

    @staticmethod
    def resolve_local(repo: str, remote: str) -> str | None:
        """Tier 1: read refs/remotes/<remote>/HEAD without touching the network."""
        try:
            ref = run_git(["symbolic-ref", "--quiet", f"refs/remotes/{remote}/HEAD"], cwd=repo)
        except GitCommandError:
            return None
        prefix = f"refs/remotes/{remote}/"
        if ref.startswith(prefix) and len(ref) > len(prefix):
            return ref[len(prefix) :]
        return None

    @staticmethod
    def resolve_remote(repo: str, remote: str, timeout: float) -> str | None:
        """Tier 2: ask the remote itself which branch its HEAD points at.

        A timeout counts as a failed lookup, not a crash. A remote that
        git would read as an option (`--upload-pack=...`) is never passed
        on and counts as failed too.
        """
        if not remote or remote.startswith("-"):
            log_push_guard("WARN", f"Refusing to query option-like remote {remote!r}")
            return None
        try:
            output = run_git(
                ["ls-remote", "--symref", "--", remote, "HEAD"],
                cwd=repo,
                timeout=timeout,
                network=True,
            )
        except GitCommandError as e:
            log_push_guard("WARN", f"ls-remote for {remote} failed: {e}")
            return None

        # ref: refs/heads/main<TAB>HEAD
        for line in output.splitlines():
            if not line.startswith("ref:"):
                continue
            target, _, name = line[len("ref:") :].strip().partition("\t")
            if name.strip() == "HEAD" and target.startswith("refs/heads/"):
                return target[len("refs/heads/") :]
        return None

    def is_protected(self, repo: str, remote: str, branch: str) -> ProtectionResult:
        """Decide whether `branch` on `remote` is protected.

        Never raises: on total resolution failure the well-known set
        (fallbackProtectedBranches) is used and the result is marked
        not confident.
        """
        config = load_push_guard_config(repo)

        extra = _string_list(config.get("protectedBranches"))
        if branch in extra:
            return ProtectionResult(True, True, None, "config")
        if _matches_pattern(branch, _string_list(config.get("protectedBranchPatterns"))):
            return ProtectionResult(True, True, None, "pattern")

        try:
            default_branch = self.resolve(repo, remote)
        except ResolutionError as e:
            fallback = _string_list(config.get("fallbackProtectedBranches")) or list(
                WELL_KNOWN_PROTECTED_BRANCHES
            )
            log_push_guard("WARN", f"{e}; using well-known protected set {fallback}")
            return ProtectionResult(branch in fallback, False, None, "fallback")

        return ProtectionResult(branch == default_branch, True, default_branch, "remote-head")


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def _matches_pattern(branch: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        try:
            if safe_regex_fullmatch(pattern, branch):
                return True
        except RegexTimeout:
            # Fail closed: an unevaluated pattern protects the branch
            return True
    return False
