# Operator prompts
#
# The lifecycle never reads stdin itself; it asks a Prompter. The CLI
# passes a ConsolePrompter, or a ScriptedPrompter for --yes runs and tests.

import sys
from typing import List, Optional, Sequence


class Prompter:
    """Interface for operator checkpoints."""

    def confirm(self, prompt: str) -> bool:
        raise NotImplementedError

    def choose(self, prompt: str, options: Sequence[str], default: Optional[str] = None) -> str:
        raise NotImplementedError


class ConsolePrompter(Prompter):
    """Blocking prompts on the terminal (no timeout)."""

    def __init__(self, input_fn=input, stream=None):
        self._input = input_fn
        self._stream = stream or sys.stderr

    def _ask(self, text: str) -> Optional[str]:
        self._stream.write(text)
        self._stream.flush()
        try:
            return self._input().strip()
        except EOFError:
            return None

    def confirm(self, prompt: str) -> bool:
        while True:
            answer = self._ask(f"{prompt} [y/N]: ")
            if answer is None:
                return False
            answer = answer.lower()
            if answer in ("y", "yes"):
                return True
            if answer in ("", "n", "no"):
                return False
            self._stream.write("Please answer y or n.\n")

    def choose(self, prompt: str, options: Sequence[str], default: Optional[str] = None) -> str:
        if not options:
            raise ValueError("choose() needs at least one option")
        self._stream.write(prompt + "\n")
        for i, option in enumerate(options, 1):
            marker = " (default)" if option == default else ""
            self._stream.write(f"  {i}) {option}{marker}\n")
        while True:
            answer = self._ask("Select: ")
            if answer is None or (answer == "" and default is not None):
                if default is None:
                    raise EOFError("no selection made")
                return default
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            if answer in options:
                return answer
            self._stream.write(f"Enter a number between 1 and {len(options)}.\n")


class ScriptedPrompter(Prompter):
    """Answers prompts from pre-set values.

    Args:
        confirm_default: Answer for every confirm() once ``confirmations``
            is exhausted.
        confirmations: Answers consumed in order by confirm().
        choices: Answers consumed in order by choose(); when exhausted the
            call's ``default`` is used.
    """

    def __init__(
        self,
        confirm_default: bool = True,
        confirmations: Optional[List[bool]] = None,
        choices: Optional[List[str]] = None,
    ):
        self.confirm_default = confirm_default
        self._confirmations = list(confirmations or [])
        self._choices = list(choices or [])
        self.asked: List[str] = []

    def confirm(self, prompt: str) -> bool:
        self.asked.append(prompt)
        if self._confirmations:
            return self._confirmations.pop(0)
        return self.confirm_default

    def choose(self, prompt: str, options: Sequence[str], default: Optional[str] = None) -> str:
        self.asked.append(prompt)
        if self._choices:
            answer = self._choices.pop(0)
            if answer not in options:
                raise ValueError(f"Scripted choice {answer!r} is not one of {list(options)}")
            return answer
        if default is None:
            raise ValueError(f"No scripted answer for: {prompt}")
        return default
