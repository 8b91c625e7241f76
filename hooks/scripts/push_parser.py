#!/usr/bin/env python3
"""Push Invocation Parser - classifies a single shell command.

A command is one of:
- NotRelevant: nothing push-guard cares about
- BranchCreated: `git checkout -b <name>` / `git switch -c <name>`
- Push: a `git push`, with its remote, destinations and force flag
- NestedScript: `bash -c '...'` / `eval ...` / `bash <<< '...'`, to be
  split and classified again
- StdinScript: a shell reading its commands from a pipe (`... | sh`)

The parser has no cross-command state; callers feed it one sub-command
at a time (see command_splitter.split_commands).

Ambiguity is resolved toward the restrictive reading: anything that looks
like it could force, delete or rewrite remote refs is reported as such, and
extra positional tokens become extra destinations that all get checked.
A push whose arguments come from `xargs`/`parallel` is flagged with
`arguments_unknown`.

Known limitations: git aliases (`git p` for push), script files
(`bash deploy.sh`) and dynamically computed command words (`$(echo git)
push`) are not expanded.
"""

import os
import re
import shlex
from dataclasses import dataclass, replace
from typing import Union

# ============================================================
# Classification Types
# ============================================================


@dataclass(frozen=True)
class Explicit:
    """A named destination branch (`git push origin feature`)."""

    branch: str
    deletion: bool = False


@dataclass(frozen=True)
class Refspec:
    """A `<local>:<remote_dest>` refspec."""

    local: str
    remote_dest: str

    @property
    def branch(self) -> str:
        return short_branch_name(self.remote_dest)


@dataclass(frozen=True)
class Implicit:
    """No refspec given; the destination comes from git metadata."""


DestinationSpec = Union[Explicit, Refspec, Implicit]


@dataclass(frozen=True)
class NotRelevant:
    pass


@dataclass(frozen=True)
class BranchCreated:
    name: str
    workdir: str | None = None


@dataclass(frozen=True)
class Push:
    remote: str
    destinations: tuple[DestinationSpec, ...] = (Implicit(),)
    force: bool = False
    remote_explicit: bool = True
    workdir: str | None = None
    ambiguous: bool = False
    arguments_unknown: bool = False

    @property
    def destination(self) -> DestinationSpec:
        return self.destinations[0]


@dataclass(frozen=True)
class NestedScript:
    """Shell text executed by a wrapper (`bash -c`, `eval`)."""

    script: str


@dataclass(frozen=True)
class StdinScript:
    """A shell whose commands arrive on stdin and cannot be inspected."""


@dataclass(frozen=True)
class DirectoryChange:
    """`cd <path>`; later sub-commands on the same line run there."""

    path: str


Classification = Union[NotRelevant, BranchCreated, Push, NestedScript, StdinScript, DirectoryChange]


# ============================================================
# Token Tables
# ============================================================

DEFAULT_REMOTE = "origin"

_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# 2>&1, >/dev/null, >>log, <in, &>out, <<EOF
_REDIRECT_RE = re.compile(r"^(?:\d+|&)?(?:>>?|<<?<?|>&|<&|&>>?)(?P<target>.*)$")
_HERE_STRING_RE = re.compile(r"^\d*<<<(?P<body>.*)$", re.DOTALL)
_HEREDOC_RE = re.compile(r"^\d*<<-?(?!<)")

_SHELL_KEYWORDS = frozenset({"{", "!", "if", "then", "else", "elif", "do", "while", "until"})

# wrapper -> short options that take a separate value
_WRAPPERS: dict[str, frozenset[str]] = {
    "sudo": frozenset({"-u", "-g", "-C", "-D", "-h", "-p", "-r", "-t", "-U"}),
    "doas": frozenset({"-u", "-C"}),
    "command": frozenset(),
    "builtin": frozenset(),
    "exec": frozenset({"-a"}),
    "nohup": frozenset(),
    "time": frozenset({"-f", "-o"}),
    "nice": frozenset({"-n"}),
    "env": frozenset({"-u", "-C", "-S"}),
    "timeout": frozenset({"-s", "-k"}),
    "xargs": frozenset(
        {"-a", "-d", "-E", "-I", "-L", "-n", "-P", "-s", "--arg-file", "--delimiter",
         "--max-args", "--max-chars", "--max-procs", "--process-slot-var"}
    ),
    "parallel": frozenset(
        {"-a", "-C", "-d", "-E", "-I", "-j", "-L", "-n", "-N", "-P", "-S", "-s", "--arg-file",
         "--colsep", "--delimiter", "--jobs", "--sshlogin"}
    ),
}

# Wrappers that append arguments read at run time
_ARGUMENT_FEEDERS = frozenset({"xargs", "parallel"})

_SHELLS = frozenset({"bash", "sh", "zsh", "dash", "ksh"})
_SHELL_LONG_VALUE_OPTIONS = frozenset({"--rcfile", "--init-file"})

_GIT_VALUE_OPTIONS = frozenset(
    {"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--super-prefix", "--config-env"}
)

_PUSH_FORCE_LONG = ("--force", "--force-with-lease")
_PUSH_BULK_LONG = ("--mirror", "--all", "--branches", "--prune")
_PUSH_VALUE_LONG = ("--repo", "--push-option", "--receive-pack", "--exec")
_PUSH_KNOWN_LONG = (
    "--delete",
    "--tags",
    "--follow-tags",
    "--no-follow-tags",
    "--atomic",
    "--no-atomic",
    "--set-upstream",
    "--verbose",
    "--quiet",
    "--progress",
    "--no-progress",
    "--porcelain",
    "--dry-run",
    "--verify",
    "--no-verify",
    "--thin",
    "--no-thin",
    "--signed",
    "--no-signed",
    "--recurse-submodules",
    "--no-recurse-submodules",
    "--force-if-includes",
    "--no-force-if-includes",
    "--no-force-with-lease",
    "--ipv4",
    "--ipv6",
)
_PUSH_KNOWN_SHORT = frozenset("uvqn46")


# ============================================================
# Tokenization
# ============================================================


def _tokenize(command: str) -> tuple[list[str], bool]:
    """Split a command into words.

    Returns:
        (tokens, ok) where ok is False when quoting was malformed and a
        lenient whitespace split was used instead.
    """
    try:
        return shlex.split(command, posix=True), True
    except ValueError:
        lenient = command.replace('"', " ").replace("'", " ")
        return lenient.split(), False


def _strip_redirections(tokens: list[str]) -> list[str]:
    """Drop redirection operators and their targets (`2>&1`, `> log`)."""
    kept: list[str] = []
    skip_next = False
    for tok in tokens:
        if skip_next:
            skip_next = False
            continue
        m = _REDIRECT_RE.match(tok)
        if m:
            if not m.group("target"):
                skip_next = True
            continue
        kept.append(tok)
    return kept


def _redirected_input(tokens: list[str]) -> tuple[list[str], bool]:
    """Find input fed to the command through redirections.

    Returns:
        (here_string_bodies, has_heredoc). A heredoc body sits on the
        following lines, which the splitter already yields as commands.
    """
    bodies: list[str] = []
    heredoc = False
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        i += 1
        m = _HERE_STRING_RE.match(tok)
        if m:
            body = m.group("body")
            if not body and i < len(tokens):
                body = tokens[i]
                i += 1
            if body.strip():
                bodies.append(body)
        elif _HEREDOC_RE.match(tok):
            heredoc = True
    return bodies, heredoc


def _strip_grouping(tokens: list[str]) -> list[str]:
    """Remove subshell parentheses glued to the first/last words.

    `(cd sub && git push)` splits into `(cd sub` and `git push)`; both
    halves must still parse.
    """
    if not tokens:
        return tokens
    tokens = list(tokens)
    tokens[0] = tokens[0].lstrip("(")
    last = tokens[-1]
    if last.count(")") > last.count("("):
        tokens[-1] = last.rstrip(")")
    return [t for t in tokens if t]


def _skip_prefixes(tokens: list[str]) -> tuple[list[str], bool]:
    """Skip env assignments, shell keywords and exec wrappers before the real command.

    Returns:
        (remaining tokens, fed) where fed is True when an `xargs`-style
        wrapper appends arguments the command line does not show.
    """
    fed = False
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok in _SHELL_KEYWORDS or _ENV_ASSIGNMENT_RE.match(tok):
            i += 1
            continue
        name = os.path.basename(tok)
        if name in _WRAPPERS:
            if name == "command" and any(t in ("-v", "-V") for t in tokens[i + 1 : i + 2]):
                # `command -v git` only looks the program up
                return [], fed
            if name in _ARGUMENT_FEEDERS:
                fed = True
            value_opts = _WRAPPERS[name]
            i += 1
            while i < len(tokens) and tokens[i].startswith("-"):
                opt = tokens[i]
                i += 2 if opt in value_opts else 1
            if name == "timeout" and i < len(tokens):
                i += 1  # duration
            continue
        break
    return tokens[i:], fed


def _is_git(word: str) -> bool:
    return os.path.basename(word) in ("git", "git.exe")


def short_branch_name(ref: str) -> str:
    """Strip the `refs/heads/` prefix from a ref name."""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/") :]
    return ref


# ============================================================
# Classification
# ============================================================


def classify(command: str) -> Classification:
    """Classify one shell command (no chaining operators).

    Args:
        command: A single sub-command as produced by split_commands().

    Returns:
        NotRelevant, BranchCreated, Push, NestedScript, StdinScript or
        DirectoryChange.
    """
    tokens, tokenized_ok = _tokenize(command)
    here_strings, heredoc = _redirected_input(tokens)
    tokens, fed = _skip_prefixes(_strip_grouping(_strip_redirections(tokens)))
    if not tokens:
        return NotRelevant()

    program = os.path.basename(tokens[0])

    if program in _SHELLS:
        return _classify_shell(tokens[1:], here_strings, heredoc)
    if program == "eval":
        script = " ".join(tokens[1:]).strip()
        return NestedScript(script) if script else NotRelevant()
    if program in ("cd", "pushd"):
        targets = [t for t in tokens[1:] if not t.startswith("-")]
        return DirectoryChange(targets[0] if targets else "~")

    if not _is_git(tokens[0]):
        return NotRelevant()

    subcommand, args, workdir = _split_git_globals(tokens[1:])
    if subcommand == "push":
        push = _parse_push(args, workdir, lenient=not tokenized_ok)
        return replace(push, arguments_unknown=True) if fed else push
    if subcommand in ("checkout", "switch"):
        name = _parse_branch_creation(subcommand, args)
        if name:
            return BranchCreated(name, workdir)
    return NotRelevant()


def _classify_shell(args: list[str], here_strings: list[str], heredoc: bool) -> Classification:
    """Classify `bash ...` by where its commands come from."""
    inline = False
    from_stdin = False
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--", "-"):
            i += 1
            break
        if arg in ("--version", "--help"):
            return NotRelevant()
        if arg.startswith("--"):
            i += 2 if arg in _SHELL_LONG_VALUE_OPTIONS else 1
            continue
        if len(arg) > 1 and arg[0] in "-+":
            cluster = arg[1:]
            if arg[0] == "-" and "c" in cluster:
                inline = True
            if arg[0] == "-" and "s" in cluster:
                from_stdin = True  # operands become $1, $2, ...
            i += 1
            if cluster[-1] in "oO":
                i += 1  # -o pipefail, -O extglob
            continue
        break

    operand = args[i] if i < len(args) else None
    if inline:
        # -c reads the first operand, wherever the option appeared
        return NestedScript(operand) if operand and operand.strip() else NotRelevant()
    if operand is not None and not from_stdin:
        # `bash script.sh` - the file body is out of reach
        return NotRelevant()
    if here_strings:
        return NestedScript("\n".join(here_strings))
    if heredoc:
        return NotRelevant()
    return StdinScript()


def _split_git_globals(args: list[str]) -> tuple[str | None, list[str], str | None]:
    """Separate git global options from the subcommand.

    Returns:
        (subcommand, subcommand_args, workdir) where workdir reflects
        `-C <path>` (cumulative) or `--git-dir`.
    """
    workdir: str | None = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            i += 1
            break
        name, eq, value = arg.partition("=")
        if name in _GIT_VALUE_OPTIONS:
            if not eq:
                value = args[i + 1] if i + 1 < len(args) else ""
                i += 2
            else:
                i += 1
            if name == "-C" and value:
                workdir = os.path.join(workdir, value) if workdir else value
            elif name == "--git-dir" and value:
                stripped = value.rstrip("/")
                workdir = os.path.dirname(stripped) if os.path.basename(stripped) == ".git" else stripped
            continue
        if arg.startswith("-c") and len(arg) > 2:
            i += 1
            continue
        if not arg.startswith("-"):
            break
        i += 1

    if i >= len(args):
        return None, [], workdir
    return args[i], args[i + 1 :], workdir


def _parse_branch_creation(subcommand: str, args: list[str]) -> str | None:
    """Return the branch created by `checkout -b` / `switch -c`, if any."""
    short_flag = "b" if subcommand == "checkout" else "c"
    long_flags = ("--orphan",) if subcommand == "checkout" else ("--create", "--orphan")

    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            return None
        name, eq, value = arg.partition("=")
        if name in long_flags:
            if eq:
                return value or None
            return args[i + 1] if i + 1 < len(args) else None
        if arg.startswith("-") and not arg.startswith("--") and len(arg) > 1:
            cluster = arg[1:]
            pos = cluster.find(short_flag)
            if pos != -1:
                rest = cluster[pos + 1 :]
                if rest:
                    return rest
                return args[i + 1] if i + 1 < len(args) else None
        i += 1
    return None


def _match_long(name: str, options: tuple[str, ...]) -> bool:
    """True if `name` equals or unambiguously abbreviates one of `options`.

    git's option parser accepts unique prefixes (`--forc` is `--force`),
    so any prefix counts here.
    """
    return any(opt == name or (len(name) > 2 and opt.startswith(name)) for opt in options)


def _parse_push(args: list[str], workdir: str | None, lenient: bool = False) -> Push:
    """Parse the arguments following `git push`.

    Args:
        args: Words after `push`.
        workdir: Directory given through git global options, if any.
        lenient: Words came from the fallback tokenizer (malformed quoting);
            the current branch is checked in addition to anything parsed.
    """
    ambiguous = lenient
    force = False
    deletion = False
    remote: str | None = None
    positionals: list[str] = []
    end_of_options = False

    i = 0
    while i < len(args):
        arg = args[i]
        i += 1

        if end_of_options or not arg.startswith("-") or arg == "-":
            positionals.append(arg)
            continue
        if arg == "--":
            end_of_options = True
            continue

        if arg.startswith("--"):
            name, eq, value = arg.partition("=")
            if name in _PUSH_VALUE_LONG or (name not in _PUSH_KNOWN_LONG and _match_long(name, _PUSH_VALUE_LONG)):
                if not eq:
                    value = args[i] if i < len(args) else ""
                    i += 1
                if _match_long(name, ("--repo",)) and value:
                    remote = value
                continue
            if name in _PUSH_FORCE_LONG or name in _PUSH_BULK_LONG:
                force = True
                continue
            if name == "--delete":
                deletion = True
                continue
            if name in _PUSH_KNOWN_LONG:
                continue
            # Unknown or abbreviated long option
            ambiguous = True
            if name.startswith("--force") or _match_long(name, _PUSH_FORCE_LONG + _PUSH_BULK_LONG):
                force = True
            if _match_long(name, ("--delete",)):
                deletion = True
            continue

        # Short option cluster: -fu, -vf, -o<value>
        cluster = arg[1:]
        for pos, ch in enumerate(cluster):
            if ch == "f":
                force = True
            elif ch == "d":
                deletion = True
            elif ch == "o":
                if pos == len(cluster) - 1:
                    i += 1  # value is the next word
                break
            elif ch not in _PUSH_KNOWN_SHORT:
                ambiguous = True
                if pos == 0 and cluster.startswith("f"):
                    force = True

    remote_explicit = True
    if remote is not None:
        refspecs = positionals
    elif positionals:
        remote, refspecs = positionals[0], positionals[1:]
    else:
        remote, refspecs, remote_explicit = DEFAULT_REMOTE, [], False

    destinations: list[DestinationSpec] = []
    for spec in refspecs:
        if spec.startswith("+"):
            force = True
            spec = spec[1:]
        dest, bulk = _parse_refspec(spec, deletion)
        if bulk:
            force = True
        if dest is not None:
            destinations.append(dest)

    if not destinations or (lenient and Implicit() not in destinations):
        destinations.append(Implicit())

    return Push(
        remote=remote,
        destinations=tuple(destinations),
        force=force,
        remote_explicit=remote_explicit,
        workdir=workdir,
        ambiguous=ambiguous,
    )


def _parse_refspec(spec: str, deletion: bool) -> tuple[DestinationSpec | None, bool]:
    """Parse one refspec.

    Returns:
        (destination, bulk) where bulk marks the `:` "matching" refspec,
        which updates every branch with a same-named counterpart.
    """
    if ":" not in spec:
        if not spec:
            return None, False
        return Explicit(short_branch_name(spec), deletion=deletion), False

    local, _, remote_dest = spec.rpartition(":")
    if not local and not remote_dest:
        return Implicit(), True
    if not local:
        # `:feature` deletes the remote branch
        return Explicit(short_branch_name(remote_dest), deletion=True), False
    if not remote_dest:
        # `feature:` has no destination; treat as removing that ref
        return Explicit(short_branch_name(local), deletion=True), False
    if deletion:
        return Explicit(short_branch_name(remote_dest), deletion=True), False
    return Refspec(local, remote_dest), False
