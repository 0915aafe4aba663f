"""Bash command decomposition for permission checks.

Splits compound shell commands into atomic commands and normalizes each
one so the same text is produced when a rule is saved and when it is
checked. The parser is quote and escape aware but deliberately small: it
only understands the operators that chain commands, subshell parentheses,
leading ``VAR=value`` assignments and output/input redirections.
"""
from __future__ import annotations

import re

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# As the executable, these get no prefix suggestion and hide the persistent approval option.
DANGEROUS_COMMANDS: frozenset[str] = frozenset({
    "rm", "mv", "chmod", "chown", "sh", "bash", "sudo", "dd",
    "apt", "apt-get", "yum", "dnf",
})

# executable -> subcommands that form a useful "<exe> <sub>" prefix.
_PREFIX_SUBCOMMANDS: dict[str, frozenset[str]] = {
    "npm": frozenset({"install", "i", "add", "remove", "test", "t", "build", "start", "dev"}),
    "git": frozenset({
        "commit", "push", "pull", "checkout", "add", "status", "diff",
        "branch", "merge", "rebase", "log", "fetch", "remote", "stash",
    }),
    "pip": frozenset({"install", "add", "remove", "test", "run"}),
    "cargo": frozenset({"build", "test", "run", "add", "check"}),
    "go": frozenset({"build", "test", "run", "get", "mod"}),
    "docker": frozenset({"run", "build", "ps", "exec", "up", "down"}),
    "kubectl": frozenset({"get", "describe", "apply", "logs"}),
    "terraform": frozenset({"plan", "apply", "destroy", "init"}),
}
for _alias in ("pnpm", "yarn", "deno", "bun"):
    _PREFIX_SUBCOMMANDS[_alias] = _PREFIX_SUBCOMMANDS["npm"]
for _alias in ("pip3", "poetry", "conda"):
    _PREFIX_SUBCOMMANDS[_alias] = _PREFIX_SUBCOMMANDS["pip"]
_PREFIX_SUBCOMMANDS["docker-compose"] = _PREFIX_SUBCOMMANDS["docker"]

_JS_RUNNERS = frozenset({"npm", "pnpm", "yarn", "deno", "bun"})


def _operator_length(command: str, i: int) -> int:
    char = command[i]
    nxt = command[i + 1] if i + 1 < len(command) else ""
    if char == "&" and nxt == "&":
        return 2
    if char == "|" and nxt in ("|", "&"):
        return 2
    if char in (";", "|"):
        return 1
    if char == "&" and nxt != ">":
        return 1
    return 0


def _backslashes_before(command: str, i: int) -> int:
    count = 0
    j = i - 1
    while j >= 0 and command[j] == "\\":
        count += 1
        j -= 1
    return count


def _find_split_spans(command: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of top-level chain/pipe/background operators."""
    spans: list[tuple[int, int]] = []
    in_single = in_double = escaped = False
    depth = 0
    i = 0
    while i < len(command):
        char = command[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif in_single or in_double:
            pass
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif depth <= 0:
            op_len = _operator_length(command, i)
            if op_len:
                escaped_op = (
                    i > 0
                    and command[i - 1] in "&|;"
                    and _backslashes_before(command, i - 1) % 2 == 1
                )
                if _backslashes_before(command, i) % 2 == 0 and not escaped_op:
                    spans.append((i, i + op_len))
                    i += op_len
                    continue
        i += 1
    return spans


def split_bash_command(command: str) -> list[str]:
    """Split a compound command into atomic commands.

    Splits on ``&&``, ``||``, ``|&``, ``;``, ``|`` and ``&`` (but not the
    ``&>`` redirection) outside quotes and parentheses, then recursively
    unwraps parts that are a whole ``( ... )`` subshell.
    """
    parts: list[str] = []
    last = 0
    for start, end in _find_split_spans(command):
        part = command[last:start].strip()
        if part:
            parts.append(part)
        last = end
    tail = command[last:].strip()
    if tail:
        parts.append(tail)

    result: list[str] = []
    for part in parts:
        stripped = strip_redirections(strip_env_vars(part))
        if stripped.startswith("(") and stripped.endswith(")"):
            inner = stripped[1:-1].strip()
            if inner:
                result.extend(split_bash_command(inner))
        else:
            result.append(part)
    return result


def _env_value_end(text: str, start: int) -> int | None:
    """Index just past an assignment value starting at ``start``.

    Returns None when a quoted value is unterminated and -1 when an
    unquoted value runs to the end of the string.
    """
    if start < len(text) and text[start] == "'":
        close = text.find("'", start + 1)
        return None if close == -1 else close + 1
    if start < len(text) and text[start] == '"':
        escaped = False
        for i in range(start + 1, len(text)):
            if escaped:
                escaped = False
            elif text[i] == "\\":
                escaped = True
            elif text[i] == '"':
                return i + 1
        return None
    match = re.search(r"\s", text)
    return -1 if match is None else match.start()


def strip_env_vars(command: str) -> str:
    """Remove leading ``NAME=value`` assignments (``A=1 make`` -> ``make``)."""
    result = command.strip()
    while True:
        match = _ENV_ASSIGNMENT.match(result)
        if match is None:
            break
        end = _env_value_end(result, match.end())
        if end is None:
            break
        if end == -1:
            return ""
        result = result[end:].strip()
    return result


def _skip_redirect_target(command: str, pos: int) -> int:
    """Return the index just past the redirection target word at ``pos``."""
    while pos < len(command) and command[pos].isspace():
        pos += 1
    in_single = in_double = escaped = False
    while pos < len(command):
        char = command[pos]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif not in_single and not in_double and char.isspace():
            break
        pos += 1
    return pos


def strip_redirections(command: str) -> str:
    """Remove redirections and collapse unquoted whitespace.

    ``echo "a  b" 2>/dev/null > out.txt`` -> ``echo "a  b"``. Handles
    ``>``, ``>>``, ``<``, ``<<``, ``<<-``, ``>&``, ``<&``, ``>|`` and a
    leading file descriptor digit or ``&``.
    """
    out: list[str] = []
    in_single = in_double = escaped = False
    i = 0
    n = len(command)
    while i < n:
        char = command[i]
        if escaped:
            out.append(char)
            escaped = False
        elif char == "\\":
            out.append(char)
            escaped = True
        elif char == "'" and not in_double:
            in_single = not in_single
            out.append(char)
        elif char == '"' and not in_single:
            in_double = not in_double
            out.append(char)
        elif in_single or in_double:
            out.append(char)
        elif char.isspace():
            if out and not out[-1].isspace():
                out.append(" ")
        elif char in "<>":
            if out and (out[-1].isdigit() or out[-1] == "&"):
                if len(out) == 1 or out[-2].isspace():
                    out.pop()
            end = i + 1
            nxt = command[end] if end < n else ""
            if nxt == char:
                end += 1
                if char == "<" and end < n and command[end] == "-":
                    end += 1
            elif nxt == "&" or (char == ">" and nxt == "|"):
                end += 1
            i = _skip_redirect_target(command, end)
            if out and not out[-1].isspace():
                out.append(" ")
            continue
        else:
            out.append(char)
        i += 1
    return "".join(out).strip()


def normalize_command(command: str) -> str:
    """Canonical form of one atomic command, used for saving and matching rules."""
    return strip_redirections(strip_env_vars(command))


def command_tokens(command: str) -> list[str]:
    normalized = normalize_command(command)
    return normalized.split() if normalized else []


def is_dangerous_command(command: str) -> bool:
    tokens = command_tokens(command)
    return bool(tokens) and tokens[0] in DANGEROUS_COMMANDS


def get_smart_prefix(command: str) -> str | None:
    """Suggest a reusable ``<exe> <sub>`` prefix for well-known developer tools.

    Only the first atomic command is considered. Dangerous executables and
    unknown tools get no prefix.
    """
    parts = split_bash_command(command)
    if not parts:
        return None
    stripped = normalize_command(parts[0])
    if stripped.startswith("sudo "):
        stripped = stripped[5:].strip()
    tokens = stripped.split()
    if not tokens:
        return None

    exe = tokens[0]
    sub = tokens[1] if len(tokens) > 1 else ""
    if exe in DANGEROUS_COMMANDS:
        return None

    if exe in ("python", "python3"):
        if tokens[1:4] == ["-m", "pip", "install"]:
            return f"{exe} -m pip install"
        return exe
    if exe in ("mvn", "gradle"):
        return f"{exe} {sub}" if sub and not sub.startswith("-") else exe
    if exe == "java":
        return "java -jar" if sub == "-jar" else "java"

    subcommands = _PREFIX_SUBCOMMANDS.get(exe)
    if subcommands is None:
        return None
    if sub in subcommands:
        return f"{exe} {sub}"
    if exe in _JS_RUNNERS and sub == "run" and len(tokens) > 2:
        return f"{exe} run {tokens[2]}"
    return exe
