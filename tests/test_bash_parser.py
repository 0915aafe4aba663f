"""Tests for compound command splitting and normalization."""

from __future__ import annotations

import pytest

from wavecore.engine.bash_parser import (
    get_smart_prefix,
    is_dangerous_command,
    normalize_command,
    split_bash_command,
    strip_env_vars,
    strip_redirections,
)


def test_split_on_chain_operators() -> None:
    assert split_bash_command("ls | grep foo; echo hi &") == ["ls", "grep foo", "echo hi"]
    assert split_bash_command("make && make test || echo failed") == [
        "make", "make test", "echo failed",
    ]


def test_split_ignores_operators_inside_quotes() -> None:
    assert split_bash_command("git add . && git commit -m 'a && b'") == [
        "git add .", "git commit -m 'a && b'",
    ]
    assert split_bash_command('echo "x | y"') == ['echo "x | y"']


def test_split_does_not_break_ampersand_redirect() -> None:
    assert split_bash_command("cat file &> out.log") == ["cat file &> out.log"]


def test_split_ignores_escaped_operator() -> None:
    assert split_bash_command(r"echo a \; echo b") == [r"echo a \; echo b"]


def test_split_unwraps_subshells() -> None:
    assert split_bash_command("(cd src && make) || echo fail") == [
        "cd src", "make", "echo fail",
    ]


def test_split_empty_command() -> None:
    assert split_bash_command("   ") == []


def test_strip_env_vars() -> None:
    assert strip_env_vars("FOO=1 BAR='x y' make test") == "make test"
    assert strip_env_vars('A="q \\" z" run') == "run"
    assert strip_env_vars("ONLY=1") == ""
    assert strip_env_vars("make FOO=1") == "make FOO=1"


def test_strip_redirections() -> None:
    assert strip_redirections('echo "a  b" 2>/dev/null > out.txt') == 'echo "a  b"'
    assert strip_redirections("sort < input.txt >> sorted.txt") == "sort"
    assert strip_redirections("cmd 2>&1") == "cmd"


def test_normalize_command_collapses_whitespace() -> None:
    assert normalize_command("A=1 npm   install  lodash") == "npm install lodash"


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("npm install lodash", "npm install"),
        ("git commit -m 'msg'", "git commit"),
        ("pnpm run lint --fix", "pnpm run lint"),
        ("python3 -m pip install requests", "python3 -m pip install"),
        ("python script.py", "python"),
        ("sudo git push origin main", "git push"),
        ("docker-compose up -d", "docker-compose up"),
        ("mvn clean install", "mvn clean"),
        ("java -jar app.jar", "java -jar"),
        ("cargo fmt", "cargo"),
        ("rm -rf build", None),
        ("frobnicate --all", None),
    ],
)
def test_smart_prefix(command: str, expected: str | None) -> None:
    assert get_smart_prefix(command) == expected


def test_dangerous_commands() -> None:
    assert is_dangerous_command("rm -rf /tmp/x")
    assert is_dangerous_command("FOO=1 sudo apt install vim")
    assert not is_dangerous_command("ls -la")
    assert not is_dangerous_command("")
