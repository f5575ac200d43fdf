"""Parsing and policy checks for shell command lines."""

import re
import shlex

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_PUNCTUATION = ";&|<>"
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "exec", "env"}
# Substitutions run arbitrary programs that the segment check cannot see.
_SUBSTITUTION_RE = re.compile(r"\$\(|`|<\(|>\(")


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control and redirection operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=_SHELL_PUNCTUATION)
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _is_redirection_token(token: str) -> bool:
    return bool(token) and set(token) <= set(_SHELL_PUNCTUATION) and ("<" in token or ">" in token)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str], skip_wrappers: bool = True) -> str:
    """Extract executable command token from a tokenized shell segment.

    With ``skip_wrappers`` off, a wrapper such as ``sudo`` is itself the
    command.
    """
    for token in tokens:
        token = str(token).strip()
        if not token:
            continue
        if skip_wrappers and token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token):
            continue
        return token
    return ""


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


def check_allowed_programs(command: str, allowed: list[str]) -> tuple[bool, str]:
    """Require every shell segment to start with one of the allowed programs.

    Line breaks and redirections are rejected outright.

    Returns:
        Tuple of (allowed, reason)
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return False, "Command is empty"
    allowed_names = {str(item).strip() for item in allowed if str(item).strip()}
    if "\n" in cleaned or "\r" in cleaned:
        return False, "Multi-line commands are not allowed"
    if _SUBSTITUTION_RE.search(cleaned):
        return False, "Command substitution is not allowed"
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return False, "Command is not parseable"
    if any(_is_redirection_token(token) for segment in segments for token in segment):
        return False, "Redirection is not allowed"
    base_commands = [_extract_segment_base_command(segment, skip_wrappers=False) for segment in segments]
    if not base_commands or not all(base_commands):
        return False, "Command is not parseable"
    first = base_commands[0].split("/")[-1]
    if first not in allowed_names:
        programs = ", ".join(f"'{name}'" for name in sorted(allowed_names))
        return False, f"Command must start with {programs}"
    for base_cmd in base_commands[1:]:
        if base_cmd.split("/")[-1] not in allowed_names:
            return False, f"Command not in allowed list: {base_cmd}"
    return True, ""
