import pytest

from lexer import APParseError
from program import (
    KIND_IF,
    KIND_TIMES,
    KIND_UNTIL,
    Assignment,
    BlankStatement,
    CallStatement,
    DisplayStatement,
    ElseStatement,
    EndIfStatement,
    EndRepeatStatement,
    IfStatement,
    Line,
    RepeatTimesStatement,
    RepeatUntilStatement,
    ReturnStatement,
    UnknownStatement,
    classify,
    load_program,
    preprocess,
    strip_comment,
)


def _classify(text):
    return classify(Line(index=0, raw_text=text, text=text))


def test_preprocess_keeps_every_line():
    lines = preprocess("a ← 1\r\n\n   # comment only\nDISPLAY(a)")
    assert [line.text for line in lines] == ["a ← 1", "", "", "DISPLAY(a)"]
    assert [line.number for line in lines] == [1, 2, 3, 4]


def test_comments_outside_strings_are_stripped():
    assert strip_comment('DISPLAY("a # b") # note') == 'DISPLAY("a # b") '
    assert strip_comment("x ← 1 // trailing") == "x ← 1 "
    assert strip_comment("DISPLAY('http://x')") == "DISPLAY('http://x')"


def test_escaped_quote_does_not_end_string_before_comment():
    assert strip_comment('DISPLAY("a\\"b") # c') == 'DISPLAY("a\\"b") '
    assert strip_comment("DISPLAY('it\\'s // here') // c") == "DISPLAY('it\\'s // here') "


def test_tabs_are_expanded_and_trimmed():
    assert preprocess("\tDISPLAY(1)\t")[0].text == "DISPLAY(1)"


@pytest.mark.parametrize(
    "text, kind",
    [
        ("", BlankStatement),
        ('DISPLAY("hi")', DisplayStatement),
        ("display (x)", DisplayStatement),
        ("IF x > 1 THEN", IfStatement),
        ("ELSE", ElseStatement),
        ("end if", EndIfStatement),
        ("REPEAT 3 TIMES", RepeatTimesStatement),
        ("REPEAT UNTIL x ≥ 3", RepeatUntilStatement),
        ("END REPEAT", EndRepeatStatement),
        ("RETURN x + 1", ReturnStatement),
        ('greet("TBA")', CallStatement),
        ("this is not code", UnknownStatement),
    ],
)
def test_classify_forms(text, kind):
    assert isinstance(_classify(text), kind)


def test_if_condition_drops_then():
    assert _classify("IF x > 1 THEN").condition == "x > 1"
    assert _classify("IF (a = b)").condition == "(a = b)"


def test_repeat_count_text():
    assert _classify("REPEAT n + 1 TIMES").count == "n + 1"


def test_assignment_forms():
    plain = _classify("SET total ← total + 1")
    assert isinstance(plain, Assignment)
    assert (plain.target, plain.index, plain.expression) == ("total", None, "total + 1")
    arrow = _classify("x <- 5")
    assert (arrow.target, arrow.expression) == ("x", "5")
    indexed = _classify("xs[i + 1] ← 0")
    assert (indexed.target, indexed.index, indexed.expression) == ("xs", "i + 1", "0")


def test_bare_return():
    assert _classify("RETURN").expression is None


def test_reserved_word_is_not_an_assignment_target():
    assert isinstance(_classify("DISPLAY ← 1"), UnknownStatement)


def test_blocks_resolve_to_jump_targets():
    source = "\n".join([
        "IF a",          # 0
        "REPEAT 2 TIMES",  # 1
        "END REPEAT",    # 2
        "ELSE",          # 3
        "REPEAT UNTIL b",  # 4
        "END REPEAT",    # 5
        "END IF",        # 6
    ])
    blocks = load_program(source).blocks
    assert blocks.for_opening(0).kind == KIND_IF
    assert blocks.for_opening(0).else_index == 3
    assert blocks.for_opening(0).end_index == 6
    assert blocks.for_opening(1).kind == KIND_TIMES
    assert blocks.for_opening(1).end_index == 2
    assert blocks.for_opening(4).kind == KIND_UNTIL
    assert blocks.for_closing(5).opening == 4
    assert blocks.for_closing(3).opening == 0
    assert len(blocks.blocks) == 3


@pytest.mark.parametrize(
    "source, line",
    [
        ("ELSE", 1),
        ("END IF", 1),
        ("x ← 1\nEND REPEAT", 2),
        ("IF a\nEND REPEAT", 2),
        ("REPEAT 2 TIMES\nEND IF", 2),
        ("IF a\nELSE\nELSE\nEND IF", 3),
        ("x ← 1\nIF a\nDISPLAY(1)", 2),
        ("REPEAT UNTIL a\nPROCEDURE f()\nEND PROCEDURE\nEND REPEAT", 2),
    ],
)
def test_block_errors_report_line(source, line):
    with pytest.raises(APParseError) as info:
        load_program(source)
    assert info.value.line == line


def test_procedure_table():
    source = "\n".join([
        "PROCEDURE add(a, b)",
        "RETURN a + b",
        "END PROCEDURE",
        "PROCEDURE hello()",
        "END PROCEDURE",
    ])
    program = load_program(source)
    add = program.procedures["add"]
    assert add.params == ["a", "b"]
    assert (add.body_start, add.body_end) == (1, 1)
    assert (add.header_index, add.end_index) == (0, 2)
    assert program.procedures["hello"].params == []
    assert program.procedures_by_header[3].name == "hello"


@pytest.mark.parametrize(
    "source, line, fragment",
    [
        ("PROCEDURE f()\nPROCEDURE g()\nEND PROCEDURE\nEND PROCEDURE", 2, "nested"),
        ("END PROCEDURE", 1, "without matching"),
        ("PROCEDURE f()\nDISPLAY(1)", 1, "never closed"),
        ("PROCEDURE f\nEND PROCEDURE", 1, "Bad PROCEDURE"),
        ("PROCEDURE f(a, a)\nEND PROCEDURE", 1, "Duplicate parameter"),
        ("PROCEDURE f(1x)\nEND PROCEDURE", 1, "Invalid parameter"),
        ("PROCEDURE f()\nEND PROCEDURE\nPROCEDURE f()\nEND PROCEDURE", 3, "already defined"),
        ("PROCEDURE LENGTH(x)\nEND PROCEDURE", 1, "reserved"),
    ],
)
def test_procedure_errors(source, line, fragment):
    with pytest.raises(APParseError) as info:
        load_program(source, builtin_names=["LENGTH"])
    assert info.value.line == line
    assert fragment in info.value.message
