#!/usr/bin/env python3
"""Command Splitter - decomposes one shell command line into sub-commands.

Each sub-command is inspected independently by the push parser, so a
`git push` chained behind any shell operator is still seen.

Known limitation: ANSI-C quoting ($'...') and heredoc bodies are not
specially handled.
"""


def split_commands(command: str) -> list[str]:
    """Split compound command into sub-commands.

    Handles delimiters: ;  &&  ||  |  &  newline

    Does NOT split inside:
    - Single-quoted strings ('...')
    - Double-quoted strings ("...")
    - Command substitution ($(...))
    - Process substitution (<(...) or >(...))
    - Backtick substitution (`...`)
    - Backslash-escaped characters

    Malformed quoting never raises: an unterminated quote keeps the rest of
    the line in the current sub-command, which is still inspected.

    Args:
        command: The compound bash command to split.

    Returns:
        List of individual sub-commands (stripped, empty ones dropped).
    """
    sub_commands: list[str] = []
    current: list[str] = []
    depth = 0  # Track nesting: $(), <(), >()
    in_single_quote = False
    in_double_quote = False
    in_backtick = False
    i = 0

    def flush() -> None:
        sub_commands.append("".join(current).strip())
        current.clear()

    while i < len(command):
        c = command[i]

        # Backslash escape handling (outside single quotes): \; is literal
        if c == "\\" and not in_single_quote:
            current.append(c)
            if i + 1 < len(command):
                i += 1
                current.append(command[i])
            i += 1
            continue

        if c == "'" and not in_double_quote and not in_backtick and depth == 0:
            in_single_quote = not in_single_quote
            current.append(c)
            i += 1
            continue

        if c == '"' and not in_single_quote and not in_backtick and depth == 0:
            in_double_quote = not in_double_quote
            current.append(c)
            i += 1
            continue

        if in_single_quote or in_double_quote:
            current.append(c)
            i += 1
            continue

        if c == "`" and depth == 0:
            in_backtick = not in_backtick
            current.append(c)
            i += 1
            continue

        if in_backtick:
            current.append(c)
            i += 1
            continue

        # Track nesting depth for $(), <(), >()
        if c == "(" and (depth > 0 or (i > 0 and command[i - 1] in ("$", "<", ">"))):
            depth += 1
            current.append(c)
            i += 1
            continue
        if c == ")" and depth > 0:
            depth -= 1
            current.append(c)
            i += 1
            continue

        # Only split at top level (depth == 0)
        if depth == 0:
            nxt = command[i + 1] if i + 1 < len(command) else ""
            if c == ";":
                flush()
                i += 1
                continue
            if c == "&" and nxt == "&":
                flush()
                i += 2
                continue
            if c == "|" and nxt == "|":
                flush()
                i += 2
                continue
            if c == "|":
                flush()
                # |& pipes stderr too; the & is part of the operator
                i += 2 if nxt == "&" else 1
                continue
            if c == "&":
                prev = command[i - 1] if i > 0 else ""
                # &> and >& / <& / 2>&1 are redirections, not separators
                if nxt == ">" or prev in (">", "<"):
                    current.append(c)
                    i += 1
                    continue
                flush()
                i += 1
                continue
            if c == "\n":
                flush()
                i += 1
                continue

        current.append(c)
        i += 1

    flush()
    return [cmd for cmd in sub_commands if cmd]


def extract_substitutions(command: str) -> list[str]:
    """Return the bodies of $(...) and `...` substitutions in `command`.

    Substitutions run before the command that contains them, so a push
    hidden in `echo $(git push -f)` must be inspected too. Bodies inside
    single quotes are literal text and are skipped. Nested substitutions are
    returned as part of their parent body; callers recurse.

    Unterminated substitutions return the remaining text as the body.
    """
    bodies: list[str] = []
    in_single_quote = False
    i = 0
    n = len(command)

    while i < n:
        c = command[i]

        if c == "\\" and not in_single_quote:
            i += 2
            continue
        if c == "'":
            # Single quotes inside "..." are literal; track only the common case
            if in_single_quote or not _inside_double_quotes(command, i):
                in_single_quote = not in_single_quote
            i += 1
            continue
        if in_single_quote:
            i += 1
            continue

        if c == "$" and i + 1 < n and command[i + 1] == "(":
            # $(( arithmetic )) is not a command
            if i + 2 < n and command[i + 2] == "(":
                i += 3
                continue
            start = i + 2
            depth = 1
            j = start
            while j < n and depth:
                if command[j] == "\\":
                    j += 2
                    continue
                if command[j] == "(":
                    depth += 1
                elif command[j] == ")":
                    depth -= 1
                j += 1
            end = j - 1 if depth == 0 else n
            bodies.append(command[start:end].strip())
            i = j
            continue

        if c == "`":
            j = command.find("`", i + 1)
            end = j if j != -1 else n
            bodies.append(command[i + 1 : end].strip())
            i = end + 1
            continue

        i += 1

    return [body for body in bodies if body]


def _inside_double_quotes(command: str, pos: int) -> bool:
    """Check whether position `pos` sits inside a double-quoted string."""
    in_double = False
    in_single = False
    i = 0
    while i < pos:
        c = command[i]
        if c == "\\" and not in_single:
            i += 2
            continue
        if c == "'" and not in_double:
            in_single = not in_single
        elif c == '"' and not in_single:
            in_double = not in_double
        i += 1
    return in_double
