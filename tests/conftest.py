from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

import pytest

from interpreter import InputCancelled, Interpreter, RunOutcome


class Console:
    """Scripted input provider and recording output sink."""

    def __init__(self, inputs: Iterable[str] = ()) -> None:
        self.inputs: List[str] = list(inputs)
        self.prompts: List[Optional[str]] = []
        self.lines: List[Tuple[str, str]] = []

    def read(self, prompt: Optional[str]) -> str:
        self.prompts.append(prompt)
        if not self.inputs:
            raise InputCancelled()
        return self.inputs.pop(0)

    def write(self, text: str, kind: str) -> None:
        self.lines.append((text, kind))

    def texts(self, kind: str) -> List[str]:
        return [text for text, k in self.lines if k == kind]


@pytest.fixture
def console() -> Console:
    return Console()


@pytest.fixture
def make_interpreter():
    def _make(inputs: Iterable[str] = (), **kwargs) -> Tuple[Interpreter, Console]:
        console = Console(inputs)
        interpreter = Interpreter(input_provider=console.read, output_sink=console.write, **kwargs)
        return interpreter, console

    return _make


@pytest.fixture
def run_program(make_interpreter):
    def _run(source: str, *, inputs: Iterable[str] = (), **kwargs) -> RunOutcome:
        interpreter, _ = make_interpreter(inputs, **kwargs)
        return interpreter.run(source)

    return _run
