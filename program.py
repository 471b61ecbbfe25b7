"""Structural passes over pseudocode source.

A program goes through four passes before anything runs:

1. ``preprocess`` splits the text into :class:`Line` records, stripping
   comments while keeping every line's index stable.
2. ``classify`` turns each line into exactly one statement form.
3. ``resolve_blocks`` pairs IF/ELSE/END IF and REPEAT/END REPEAT.
4. ``build_procedure_table`` collects PROCEDURE ... END PROCEDURE pairs.

Expression text inside statements is left unparsed here; the interpreter
parses it when the statement first executes.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from lexer import APParseError

TAB_WIDTH = 4

KIND_IF = "IF"
KIND_TIMES = "TIMES"
KIND_UNTIL = "UNTIL"

RESERVED_WORDS = frozenset({
    "AND",
    "DISPLAY",
    "ELSE",
    "END",
    "FALSE",
    "IF",
    "MOD",
    "NOT",
    "OR",
    "PROCEDURE",
    "REPEAT",
    "RETURN",
    "SET",
    "THEN",
    "TIMES",
    "TRUE",
    "UNTIL",
})

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_ARROW = r"(?:←|<-)"

_DISPLAY = re.compile(r"^DISPLAY\s*\((.*)\)$", re.IGNORECASE)
_INDEX_ASSIGN = re.compile(rf"^(?:SET\s+)?({_NAME})\s*\[(.*)\]\s*{_ARROW}\s*(.*)$", re.IGNORECASE)
_ASSIGN = re.compile(rf"^(?:SET\s+)?({_NAME})\s*{_ARROW}\s*(.*)$", re.IGNORECASE)
_IF = re.compile(r"^IF\b\s*(.*?)(?:\s*\bTHEN)?$", re.IGNORECASE)
_ELSE = re.compile(r"^ELSE$", re.IGNORECASE)
_END_IF = re.compile(r"^END\s*IF$", re.IGNORECASE)
_REPEAT_UNTIL = re.compile(r"^REPEAT\s+UNTIL\b\s*(.*)$", re.IGNORECASE)
_REPEAT_TIMES = re.compile(r"^REPEAT\s+(.+?)\s+TIMES$", re.IGNORECASE)
_END_REPEAT = re.compile(r"^END\s*REPEAT$", re.IGNORECASE)
_PROCEDURE = re.compile(r"^PROCEDURE\b", re.IGNORECASE)
_PROCEDURE_HEADER = re.compile(rf"^PROCEDURE\s+({_NAME})\s*\((.*)\)$", re.IGNORECASE)
_END_PROCEDURE = re.compile(r"^END\s*PROCEDURE$", re.IGNORECASE)
_RETURN = re.compile(r"^RETURN\b\s*(.*)$", re.IGNORECASE)
_CALL = re.compile(rf"^({_NAME})\s*\((.*)\)$")
_PARAM = re.compile(rf"^{_NAME}$")


@dataclass(frozen=True)
class Line:
    index: int
    raw_text: str
    text: str

    @property
    def number(self) -> int:
        return self.index + 1


@dataclass
class Statement:
    line: Line


@dataclass
class BlankStatement(Statement):
    pass


@dataclass
class DisplayStatement(Statement):
    expression: str


@dataclass
class Assignment(Statement):
    target: str
    index: Optional[str]
    expression: str


@dataclass
class IfStatement(Statement):
    condition: str


@dataclass
class ElseStatement(Statement):
    pass


@dataclass
class EndIfStatement(Statement):
    pass


@dataclass
class RepeatTimesStatement(Statement):
    count: str


@dataclass
class RepeatUntilStatement(Statement):
    condition: str


@dataclass
class EndRepeatStatement(Statement):
    pass


@dataclass
class ProcedureStatement(Statement):
    pass


@dataclass
class EndProcedureStatement(Statement):
    pass


@dataclass
class ReturnStatement(Statement):
    expression: Optional[str]


@dataclass
class CallStatement(Statement):
    name: str
    expression: str


@dataclass
class UnknownStatement(Statement):
    pass


@dataclass
class BlockInfo:
    kind: str
    opening: int
    else_index: Optional[int] = None
    end_index: Optional[int] = None


@dataclass
class BlockTable:
    blocks: Dict[int, BlockInfo] = field(default_factory=dict)
    # ELSE and END lines mapped back to the index of their opening line.
    owners: Dict[int, int] = field(default_factory=dict)

    def for_opening(self, index: int) -> BlockInfo:
        return self.blocks[index]

    def for_closing(self, index: int) -> BlockInfo:
        return self.blocks[self.owners[index]]


@dataclass
class ProcedureDef:
    name: str
    params: List[str]
    body_start: int
    body_end: int
    header_index: int
    end_index: int


@dataclass
class Program:
    lines: List[Line]
    statements: List[Statement]
    blocks: BlockTable
    procedures: Dict[str, ProcedureDef]
    procedures_by_header: Dict[int, ProcedureDef]


def strip_comment(text: str) -> str:
    """Cut ``text`` at the first ``#`` or ``//`` that is not inside quotes."""
    closing: Optional[str] = None
    escaped = False
    for i, ch in enumerate(text):
        if closing is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch in closing:
                closing = None
            continue
        if ch in "\"“”":
            closing = "\"“”"
        elif ch in "'‘’":
            closing = "'‘’"
        elif ch == "#" or text.startswith("//", i):
            return text[:i]
    return text


def preprocess(source: str) -> List[Line]:
    lines: List[Line] = []
    for index, raw in enumerate(re.split(r"\r?\n", source)):
        text = strip_comment(raw).replace("\t", " " * TAB_WIDTH).strip()
        lines.append(Line(index=index, raw_text=raw, text=text))
    return lines


def classify(line: Line) -> Statement:
    text = line.text
    if not text:
        return BlankStatement(line)
    match = _DISPLAY.match(text)
    if match:
        return DisplayStatement(line, expression=match.group(1))
    match = _IF.match(text)
    if match:
        return IfStatement(line, condition=match.group(1))
    if _ELSE.match(text):
        return ElseStatement(line)
    if _END_IF.match(text):
        return EndIfStatement(line)
    match = _REPEAT_UNTIL.match(text)
    if match:
        return RepeatUntilStatement(line, condition=match.group(1))
    match = _REPEAT_TIMES.match(text)
    if match:
        return RepeatTimesStatement(line, count=match.group(1))
    if _END_REPEAT.match(text):
        return EndRepeatStatement(line)
    if _PROCEDURE.match(text):
        return ProcedureStatement(line)
    if _END_PROCEDURE.match(text):
        return EndProcedureStatement(line)
    match = _RETURN.match(text)
    if match:
        return ReturnStatement(line, expression=match.group(1) or None)
    match = _INDEX_ASSIGN.match(text)
    if match and match.group(1).upper() not in RESERVED_WORDS:
        return Assignment(line, target=match.group(1), index=match.group(2), expression=match.group(3))
    match = _ASSIGN.match(text)
    if match and match.group(1).upper() not in RESERVED_WORDS:
        return Assignment(line, target=match.group(1), index=None, expression=match.group(2))
    match = _CALL.match(text)
    if match and match.group(1).upper() not in RESERVED_WORDS:
        return CallStatement(line, name=match.group(1), expression=text)
    return UnknownStatement(line)


def _describe_block(info: BlockInfo) -> str:
    if info.kind == KIND_IF:
        return f"IF on line {info.opening + 1}"
    return f"REPEAT on line {info.opening + 1}"


def resolve_blocks(statements: List[Statement]) -> BlockTable:
    table = BlockTable()
    stack: List[BlockInfo] = []
    for statement in statements:
        index = statement.line.index
        number = statement.line.number
        if isinstance(statement, IfStatement):
            stack.append(BlockInfo(kind=KIND_IF, opening=index))
        elif isinstance(statement, (RepeatTimesStatement, RepeatUntilStatement)):
            kind = KIND_TIMES if isinstance(statement, RepeatTimesStatement) else KIND_UNTIL
            stack.append(BlockInfo(kind=kind, opening=index))
        elif isinstance(statement, ElseStatement):
            if not stack:
                raise APParseError("ELSE without matching IF", line=number)
            top = stack[-1]
            if top.kind != KIND_IF:
                raise APParseError(f"ELSE does not match the open {_describe_block(top)}", line=number)
            if top.else_index is not None:
                raise APParseError(
                    f"IF on line {top.opening + 1} already has an ELSE on line {top.else_index + 1}",
                    line=number,
                )
            top.else_index = index
            table.owners[index] = top.opening
        elif isinstance(statement, EndIfStatement):
            if not stack:
                raise APParseError("END IF without matching IF", line=number)
            if stack[-1].kind != KIND_IF:
                raise APParseError(f"END IF does not match the open {_describe_block(stack[-1])}", line=number)
            top = stack.pop()
            top.end_index = index
            table.owners[index] = top.opening
            table.blocks[top.opening] = top
        elif isinstance(statement, EndRepeatStatement):
            if not stack:
                raise APParseError("END REPEAT without matching REPEAT", line=number)
            if stack[-1].kind == KIND_IF:
                raise APParseError(f"END REPEAT does not match the open {_describe_block(stack[-1])}", line=number)
            top = stack.pop()
            top.end_index = index
            table.owners[index] = top.opening
            table.blocks[top.opening] = top
        elif isinstance(statement, (ProcedureStatement, EndProcedureStatement)):
            # Blocks may not straddle a procedure boundary.
            if stack:
                keyword = "PROCEDURE" if isinstance(statement, ProcedureStatement) else "END PROCEDURE"
                raise APParseError(f"{keyword} reached while {_describe_block(stack[-1])} is still open", line=number)
    if stack:
        top = stack[-1]
        closer = "END IF" if top.kind == KIND_IF else "END REPEAT"
        raise APParseError(f"{_describe_block(top)} is never closed by {closer}", line=top.opening + 1)
    return table


def _parse_params(text: str, number: int) -> List[str]:
    if not text.strip():
        return []
    params: List[str] = []
    for raw in text.split(","):
        name = raw.strip()
        if not _PARAM.match(name) or name.upper() in RESERVED_WORDS:
            raise APParseError(f"Invalid parameter name '{name}'", line=number)
        if name in params:
            raise APParseError(f"Duplicate parameter '{name}'", line=number)
        params.append(name)
    return params


def build_procedure_table(
    statements: List[Statement],
    *,
    builtin_names: Iterable[str] = (),
) -> Dict[str, ProcedureDef]:
    reserved_builtins = set(builtin_names)
    procedures: Dict[str, ProcedureDef] = {}
    open_name: Optional[str] = None
    open_params: List[str] = []
    open_index = 0
    for statement in statements:
        number = statement.line.number
        if isinstance(statement, ProcedureStatement):
            if open_name is not None:
                raise APParseError(
                    f"PROCEDURE cannot be nested inside PROCEDURE {open_name} (line {open_index + 1})",
                    line=number,
                )
            match = _PROCEDURE_HEADER.match(statement.line.text)
            if not match:
                raise APParseError("Bad PROCEDURE syntax; expected PROCEDURE name(param, ...)", line=number)
            name = match.group(1)
            if name.upper() in RESERVED_WORDS or name in reserved_builtins:
                raise APParseError(f"'{name}' is reserved and cannot name a procedure", line=number)
            if name in procedures:
                existing = procedures[name]
                raise APParseError(
                    f"Procedure '{name}' is already defined on line {existing.header_index + 1}",
                    line=number,
                )
            open_name = name
            open_params = _parse_params(match.group(2), number)
            open_index = statement.line.index
        elif isinstance(statement, EndProcedureStatement):
            if open_name is None:
                raise APParseError("END PROCEDURE without matching PROCEDURE", line=number)
            end_index = statement.line.index
            procedures[open_name] = ProcedureDef(
                name=open_name,
                params=open_params,
                body_start=open_index + 1,
                body_end=end_index - 1,
                header_index=open_index,
                end_index=end_index,
            )
            open_name = None
    if open_name is not None:
        raise APParseError(f"PROCEDURE {open_name} is never closed by END PROCEDURE", line=open_index + 1)
    return procedures


def load_program(source: str, *, builtin_names: Iterable[str] = ()) -> Program:
    lines = preprocess(source)
    statements = [classify(line) for line in lines]
    blocks = resolve_blocks(statements)
    procedures = build_procedure_table(statements, builtin_names=builtin_names)
    return Program(
        lines=lines,
        statements=statements,
        blocks=blocks,
        procedures=procedures,
        procedures_by_header={proc.header_index: proc for proc in procedures.values()},
    )
