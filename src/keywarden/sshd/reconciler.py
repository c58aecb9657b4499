"""
sshd_config reconciliation.

Brings a set of directive -> value pairs into effect in a line-oriented
sshd_config without disturbing anything else in the file.

The file is parsed into line records. For each desired directive the
*global section* (every line before the first ``Match``) is searched:

  ACTIVE_CORRECT  first active ``Key value`` already has the value -> no-op
  ACTIVE_WRONG    first active line has another value -> value replaced in place
  COMMENTED       no active line, but a ``#Key value`` line -> uncommented in place
  ABSENT          neither -> ``Key value`` inserted before the first ``Match``,
                  or appended at end of file when there is no Match block

Later active lines for the same key in the global section are disabled
with a leading ``#`` (sshd uses the first value it sees, so they would be
dead configuration at best). Lines inside Match blocks are never touched.

Reconciling an already-reconciled file leaves it byte-identical and does
not rewrite it.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

from ..exceptions import ConfigSyntaxError, InvalidConfiguration, InvalidDirectiveError
from ..keys.store import atomic_write
from .checker import SshdSyntaxChecker, SyntaxCheckResult

logger = logging.getLogger(__name__)

_KEYWORD = re.compile(r"[A-Za-z][A-Za-z0-9]*")
_ACTIVE = re.compile(r"^(\s*)([A-Za-z][A-Za-z0-9]*)(?:\s*=\s*|\s+)(.*?)\s*$")
_COMMENTED = re.compile(r"^#([A-Za-z][A-Za-z0-9]*)\s+(.*?)\s*$")
_NEEDS_QUOTES = re.compile(r"[\s#\"'\\]")


class DirectiveState(str, Enum):
    ACTIVE_CORRECT = "active_correct"
    ACTIVE_WRONG = "active_wrong"
    COMMENTED = "commented"
    ABSENT = "absent"


@dataclass
class ConfigLine:
    """One physical line: its text without the line ending, plus the ending."""
    text: str
    ending: str = "\n"

    @property
    def active_keyword(self) -> Optional[str]:
        if self.text.lstrip().startswith("#"):
            return None
        m = _ACTIVE.match(self.text)
        return m.group(2) if m else None

    @property
    def active_value(self) -> str:
        m = _ACTIVE.match(self.text)
        return m.group(3) if m else ""

    @property
    def commented_keyword(self) -> Optional[str]:
        m = _COMMENTED.match(self.text)
        return m.group(1) if m else None

    def is_match(self) -> bool:
        kw = self.active_keyword
        return kw is not None and kw.lower() == "match"

    def render(self) -> str:
        return self.text + self.ending


@dataclass
class ReconcileResult:
    """What a reconcile run found and did."""
    path: Path
    states: Dict[str, DirectiveState] = field(default_factory=dict)
    changed: bool = False
    disabled_duplicates: Dict[str, int] = field(default_factory=dict)
    validation_output: str = ""

    @property
    def changed_keys(self) -> List[str]:
        return [
            k for k, s in self.states.items()
            if s is not DirectiveState.ACTIVE_CORRECT or k in self.disabled_duplicates
        ]


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not _KEYWORD.fullmatch(key):
        raise InvalidDirectiveError(f"Invalid sshd_config keyword: {key!r}")
    return key


def render_value(value) -> str:
    """Render a directive value for sshd_config.

    Control characters (CR, LF, NUL, tab...) are rejected; values with
    whitespace, ``#``, quotes or backslashes are double-quoted with
    backslash escapes.
    """
    if isinstance(value, bool):
        value = "yes" if value else "no"
    value = str(value)
    if value == "":
        raise InvalidDirectiveError("sshd_config values must not be empty")
    if any(ord(c) < 0x20 or c == "\x7f" for c in value):
        raise InvalidDirectiveError(f"Control character in sshd_config value: {value!r}")
    if _NEEDS_QUOTES.search(value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def parse_lines(text: str) -> List[ConfigLine]:
    lines = []
    for raw in text.splitlines(keepends=True):
        body = raw.rstrip("\r\n")
        lines.append(ConfigLine(body, raw[len(body):]))
    return lines


def _global_end(lines: List[ConfigLine]) -> int:
    for i, line in enumerate(lines):
        if line.is_match():
            return i
    return len(lines)


def classify(lines: List[ConfigLine], key: str, rendered: str) -> Tuple[DirectiveState, Optional[int]]:
    """State of one directive and the index of its effective line."""
    wanted = key.lower()
    end = _global_end(lines)
    for i in range(end):
        kw = lines[i].active_keyword
        if kw is not None and kw.lower() == wanted:
            if lines[i].active_value == rendered:
                return DirectiveState.ACTIVE_CORRECT, i
            return DirectiveState.ACTIVE_WRONG, i
    for i in range(end):
        kw = lines[i].commented_keyword
        if kw is not None and kw.lower() == wanted:
            return DirectiveState.COMMENTED, i
    return DirectiveState.ABSENT, None


def _prepare(directives: Mapping[str, object]) -> List[Tuple[str, str]]:
    # Validate everything before touching the file
    return [(validate_key(k), render_value(v)) for k, v in directives.items()]


def apply_directives(
    text: str, directives: Mapping[str, object]
) -> Tuple[str, Dict[str, DirectiveState], Dict[str, int]]:
    """Reconcile ``text`` in memory.

    Returns the new text, the state each directive was found in, and the
    number of duplicate lines commented out per directive (only directives
    that had any).
    """
    lines = parse_lines(text)
    states: Dict[str, DirectiveState] = {}
    disabled: Dict[str, int] = {}

    for key, rendered in _prepare(directives):
        state, idx = classify(lines, key, rendered)
        states[key] = state
        desired = f"{key} {rendered}"

        if state is DirectiveState.ACTIVE_WRONG:
            indent = lines[idx].text[: len(lines[idx].text) - len(lines[idx].text.lstrip())]
            lines[idx].text = indent + desired
        elif state is DirectiveState.COMMENTED:
            lines[idx].text = desired
        elif state is DirectiveState.ABSENT:
            end = _global_end(lines)
            if end < len(lines):
                lines.insert(end, ConfigLine(desired))
                idx = end
            else:
                if lines and not lines[-1].ending:
                    lines[-1].ending = "\n"
                lines.append(ConfigLine(desired))
                idx = len(lines) - 1

        # Exactly one active line per key in the global section
        wanted = key.lower()
        for i in range(idx + 1, _global_end(lines)):
            kw = lines[i].active_keyword
            if kw is not None and kw.lower() == wanted:
                lines[i].text = "#" + lines[i].text
                disabled[key] = disabled.get(key, 0) + 1

    return "".join(line.render() for line in lines), states, disabled


class ConfigReconciler:
    """Reconcile and validate an sshd_config file.

    Args:
        checker: Syntax checker with ``check(path) -> SyntaxCheckResult``
            (default: ``sshd -t -f``).
    """

    def __init__(self, checker=None):
        self.checker = checker or SshdSyntaxChecker()

    def plan(self, path: Union[str, Path], directives: Mapping[str, object]) -> Dict[str, DirectiveState]:
        """Per-directive state, without writing anything."""
        lines = parse_lines(self._read(Path(path)))
        return {
            key: classify(lines, key, rendered)[0]
            for key, rendered in _prepare(directives)
        }

    def needs_changes(self, path: Union[str, Path], directives: Mapping[str, object]) -> bool:
        original = self._read(Path(path))
        return apply_directives(original, directives)[0] != original

    def reconcile(
        self,
        path: Union[str, Path],
        directives: Mapping[str, object],
        validate: bool = True,
    ) -> ReconcileResult:
        """Bring ``directives`` into effect in the file at ``path``.

        Raises:
            InvalidDirectiveError: a key or value is unsafe (file untouched).
            ConfigSyntaxError: the daemon rejected the resulting file. The
                file is left as written; restoring it is the caller's call.
        """
        path = Path(path)
        original = self._read(path)
        new_text, states, disabled = apply_directives(original, directives)
        result = ReconcileResult(path=path, states=states, disabled_duplicates=disabled)

        if new_text != original:
            mode = path.stat().st_mode & 0o777
            atomic_write(path, new_text, mode)
            result.changed = True
            logger.info(
                "Reconciled %s: %s", path,
                ", ".join(f"{k}={s.value}" for k, s in states.items()),
            )
        else:
            logger.info("%s already reconciled, not rewritten", path)

        if validate:
            result.validation_output = self.validate(path).output
        return result

    def validate(self, path: Union[str, Path]) -> SyntaxCheckResult:
        check = self.checker.check(Path(path))
        if not check.ok:
            raise ConfigSyntaxError(
                f"sshd rejected {path}: {check.output or 'no output'}",
                path=str(path),
                output=check.output,
            )
        return check

    @staticmethod
    def _read(path: Path) -> str:
        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            raise InvalidConfiguration(f"sshd_config not found at {path}")
