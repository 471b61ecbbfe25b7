from __future__ import annotations
from dataclasses import dataclass
from typing import List, Union

from lexer import ExpressionError, Lexer, Token


@dataclass
class Expression:
    column: int


@dataclass
class Literal(Expression):
    value: Union[float, str, bool]
    literal_type: str


@dataclass
class ListLiteral(Expression):
    items: List[Expression]


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class IndexExpression(Expression):
    base: Expression
    index: Expression


@dataclass
class CallExpression(Expression):
    name: str
    args: List[Expression]


@dataclass
class UnaryOp(Expression):
    op: str
    operand: Expression


@dataclass
class BinaryOp(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class LogicalOp(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class Comparison(Expression):
    # a < b <= c holds operands [a, b, c] and operators ["<", "<="].
    operands: List[Expression]
    operators: List[str]


def parse_expression(text: str) -> Expression:
    return Parser(Lexer(text).tokenize()).parse()


_TOKEN_NAMES = {"LPAREN": "'('", "RPAREN": "')'", "LBRACKET": "'['", "RBRACKET": "']'"}


def _describe(token: Token) -> str:
    if token.type == "EOF":
        return "end of expression"
    if token.type == "STRING":
        return f'string "{token.value}"'
    return f"'{token.value}'"


class Parser:
    """Recursive-descent parser for one expression.

    Precedence, loosest first: OR, AND, NOT, comparisons, + -, * / % MOD,
    unary sign, indexing, primaries.
    """

    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.index = 0

    def parse(self) -> Expression:
        if self._peek().type == "EOF":
            raise ExpressionError("Expected an expression", rule="PARSE")
        expr = self._parse_or()
        token = self._peek()
        if token.type != "EOF":
            raise ExpressionError(f"Unexpected {_describe(token)} at column {token.column}", rule="PARSE")
        return expr

    def _parse_or(self) -> Expression:
        left = self._parse_and()
        while self._peek().type == "OR":
            token = self._consume("OR")
            right = self._parse_and()
            left = LogicalOp(column=token.column, op="OR", left=left, right=right)
        return left

    def _parse_and(self) -> Expression:
        left = self._parse_not()
        while self._peek().type == "AND":
            token = self._consume("AND")
            right = self._parse_not()
            left = LogicalOp(column=token.column, op="AND", left=left, right=right)
        return left

    def _parse_not(self) -> Expression:
        if self._peek().type == "NOT":
            token = self._consume("NOT")
            return UnaryOp(column=token.column, op="NOT", operand=self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Expression:
        first = self._parse_additive()
        operands: List[Expression] = [first]
        operators: List[str] = []
        while self._peek().type == "COMPARE":
            operators.append(self._consume("COMPARE").value)
            operands.append(self._parse_additive())
        if not operators:
            return first
        return Comparison(column=first.column, operands=operands, operators=operators)

    def _parse_additive(self) -> Expression:
        left = self._parse_multiplicative()
        while self._peek().type in ("PLUS", "MINUS"):
            token = self.tokens[self.index]
            self.index += 1
            right = self._parse_multiplicative()
            left = BinaryOp(column=token.column, op=token.value, left=left, right=right)
        return left

    def _parse_multiplicative(self) -> Expression:
        left = self._parse_unary()
        while self._peek().type in ("STAR", "SLASH", "PERCENT", "MOD"):
            token = self.tokens[self.index]
            self.index += 1
            op = "%" if token.type == "MOD" else token.value
            right = self._parse_unary()
            left = BinaryOp(column=token.column, op=op, left=left, right=right)
        return left

    def _parse_unary(self) -> Expression:
        token = self._peek()
        if token.type in ("MINUS", "PLUS"):
            self.index += 1
            return UnaryOp(column=token.column, op=token.value, operand=self._parse_unary())
        if token.type == "NOT":
            self.index += 1
            return UnaryOp(column=token.column, op="NOT", operand=self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        while self._peek().type == "LBRACKET":
            lbracket = self._consume("LBRACKET")
            index = self._parse_or()
            self._consume("RBRACKET")
            expr = IndexExpression(column=lbracket.column, base=expr, index=index)
        return expr

    def _parse_primary(self) -> Expression:
        token = self._peek()
        if token.type == "NUMBER":
            self.index += 1
            return Literal(column=token.column, value=float(token.value), literal_type="NUM")
        if token.type == "STRING":
            self.index += 1
            return Literal(column=token.column, value=token.value, literal_type="STR")
        if token.type in ("TRUE", "FALSE"):
            self.index += 1
            return Literal(column=token.column, value=token.type == "TRUE", literal_type="BOOL")
        if token.type == "IDENT":
            self.index += 1
            if self._match("LPAREN"):
                return CallExpression(column=token.column, name=token.value, args=self._parse_arguments("RPAREN"))
            return Identifier(column=token.column, name=token.value)
        if token.type == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_or()
            self._consume("RPAREN")
            return expr
        if token.type == "LBRACKET":
            self._consume("LBRACKET")
            return ListLiteral(column=token.column, items=self._parse_arguments("RBRACKET"))
        raise ExpressionError(f"Unexpected {_describe(token)} at column {token.column}", rule="PARSE")

    def _parse_arguments(self, closing: str) -> List[Expression]:
        items: List[Expression] = []
        if self._peek().type != closing:
            while True:
                items.append(self._parse_or())
                if not self._match("COMMA"):
                    break
        self._consume(closing)
        return items

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise ExpressionError(
                f"Expected {_TOKEN_NAMES.get(token_type, token_type)} but found {_describe(token)} at column {token.column}",
                rule="PARSE",
            )
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]
