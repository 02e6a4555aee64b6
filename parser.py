from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from lexer import KEYWORDS, Lexer, MetalSyntaxError, SourceLocation, Token
from symbols import (
    TYPE_NAMES,
    TYPE_SYM,
    FuncDeclaration,
    SymbolTable,
    TypeMismatch,
    VarDeclaration,
    WrongNumArgs,
)


TYPE_STRING = "string"


@dataclass(frozen=True)
class Node:
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False, kw_only=True)


# ---- Derived symbols ----

class DerivedSymbol(Node):
    pass


@dataclass(frozen=True)
class Read(DerivedSymbol):
    pass


@dataclass(frozen=True)
class Literal(DerivedSymbol):
    symbol: str


@dataclass(frozen=True)
class Var(DerivedSymbol):
    name: str


# ---- Boolean expressions ----

class Bexp(Node):
    pass


@dataclass(frozen=True)
class BoolLiteral(Bexp):
    value: bool


@dataclass(frozen=True)
class Not(Bexp):
    operand: Bexp


@dataclass(frozen=True)
class And(Bexp):
    left: Bexp
    right: Bexp


@dataclass(frozen=True)
class Or(Bexp):
    left: Bexp
    right: Bexp


@dataclass(frozen=True)
class Eq(Bexp):
    left: DerivedSymbol
    right: DerivedSymbol


@dataclass(frozen=True)
class Le(Bexp):
    left: DerivedSymbol
    right: DerivedSymbol


@dataclass(frozen=True)
class Ne(Bexp):
    left: DerivedSymbol
    right: DerivedSymbol


TRUE = BoolLiteral(True)
FALSE = BoolLiteral(False)


# ---- Statements ----

class Statement(Node):
    pass


@dataclass(frozen=True)
class MoveLeft(Statement):
    pass


@dataclass(frozen=True)
class MoveRight(Statement):
    pass


@dataclass(frozen=True)
class Write(Statement):
    symbol: DerivedSymbol


@dataclass(frozen=True)
class Accept(Statement):
    pass


@dataclass(frozen=True)
class Reject(Statement):
    pass


@dataclass(frozen=True)
class IfBranch:
    condition: Bexp
    body: Statement


@dataclass(frozen=True)
class If(Statement):
    condition: Bexp
    then: Statement
    elifs: Tuple[IfBranch, ...] = ()
    otherwise: Optional[Statement] = None

    def clauses(self) -> List[IfBranch]:
        """All branches in evaluation order; ``else`` becomes a trailing ``True`` clause."""
        branches = [IfBranch(self.condition, self.then), *self.elifs]
        if self.otherwise is not None:
            branches.append(IfBranch(TRUE, self.otherwise))
        return branches


@dataclass(frozen=True)
class While(Statement):
    condition: Bexp
    body: Statement


@dataclass(frozen=True)
class VarDecl(Statement):
    name: str
    symbol: DerivedSymbol


@dataclass(frozen=True)
class Param:
    name: str
    type: str = TYPE_SYM


@dataclass(frozen=True)
class FuncDecl(Statement):
    name: str
    params: Tuple[Param, ...]
    body: Statement


@dataclass(frozen=True)
class Call(Statement):
    name: str
    args: Tuple[DerivedSymbol, ...] = ()


@dataclass(frozen=True)
class Comp(Statement):
    first: Statement
    second: Statement


@dataclass(frozen=True)
class PrintRead(Statement):
    pass


@dataclass(frozen=True)
class PrintStr(Statement):
    text: str


@dataclass(frozen=True)
class Program(Node):
    imports: Tuple[str, ...]
    body: Optional[Statement]


def sequence(statements: Sequence[Statement]) -> Optional[Statement]:
    """Joins statements into a right-nested ``Comp`` chain."""
    if not statements:
        return None
    result = statements[-1]
    for statement in reversed(statements[:-1]):
        result = Comp(statement, result, location=statement.location)
    return result


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        symbols: Optional[SymbolTable] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.symbols = symbols if symbols is not None else SymbolTable()
        self.index = 0

    def parse(self) -> Program:
        start = self._peek()
        imports = self.parse_imports()
        statements = self._parse_statements(stop_tokens={"EOF"})
        self._consume("EOF")
        return Program(tuple(imports), sequence(statements), location=self._location_from_token(start))

    def parse_imports(self) -> List[str]:
        imports: List[str] = []
        self._consume_newlines()
        while self._peek().type == "IMPORT":
            self._consume("IMPORT")
            token = self._peek()
            if token.type not in ("IDENT", "STRING"):
                raise MetalSyntaxError(
                    f"Expected a module name after import but found {token.type}",
                    location=self._location_from_token(token),
                )
            self.index += 1
            imports.append(token.value)
            self._expect_statement_end({"EOF"})
            self._consume_newlines()
        return imports

    def _parse_statements(self, stop_tokens: Iterable[str]) -> List[Statement]:
        stop_tokens = set(stop_tokens)
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            if self._match("NEWLINE"):
                continue
            statements.append(self._parse_statement())
            self._expect_statement_end(stop_tokens)
        return statements

    def _expect_statement_end(self, stop_tokens: Iterable[str]) -> None:
        token = self._peek()
        if token.type == "NEWLINE" or token.type in stop_tokens:
            return
        raise MetalSyntaxError(
            f"Expected end of statement but found {self._describe(token)}",
            location=self._location_from_token(token),
        )

    def _parse_statement(self) -> Statement:
        token = self._peek()
        location = self._location_from_token(token)
        if self._match("LEFT"):
            return MoveLeft(location=location)
        if self._match("RIGHT"):
            return MoveRight(location=location)
        if self._match("ACCEPT"):
            return Accept(location=location)
        if self._match("REJECT"):
            return Reject(location=location)
        if self._match("WRITE"):
            return Write(self._parse_derived_symbol(), location=location)
        if token.type == "PRINT":
            return self._parse_print()
        if token.type == "LET":
            return self._parse_var_decl()
        if token.type in ("FUNC", "PROC"):
            return self._parse_func()
        if token.type == "IF":
            return self._parse_if()
        if token.type == "WHILE":
            return self._parse_while()
        if token.type == "IDENT":
            return self._parse_call()
        raise MetalSyntaxError(f"Unexpected {self._describe(token)} at start of statement", location=location)

    def _parse_print(self) -> Statement:
        keyword = self._consume("PRINT")
        location = self._location_from_token(keyword)
        if self._peek().type == "STRING":
            return PrintStr(self._consume("STRING").value, location=location)
        return PrintRead(location=location)

    def _parse_var_decl(self) -> VarDecl:
        keyword = self._consume("LET")
        name_token = self._consume_name()
        self._consume("EQUALS")
        # The value is resolved before the name is bound, so ``let x = x`` reads an outer x.
        symbol = self._parse_derived_symbol()
        location = self._location_from_token(keyword)
        self.symbols.declare_var(name_token.value, TYPE_SYM, location=self._location_from_token(name_token))
        return VarDecl(name_token.value, symbol, location=location)

    def _parse_func(self) -> FuncDecl:
        keyword = self._peek()
        self.index += 1
        name_token = self._consume_name()
        location = self._location_from_token(keyword)
        params: List[Param] = []
        while self._peek().type == "IDENT":
            params.append(self._parse_param())
        # Declared before the body so that the body may call itself.
        self.symbols.declare_func(
            name_token.value,
            [param.type for param in params],
            location=self._location_from_token(name_token),
        )
        with self.symbols.scope():
            for param in params:
                self.symbols.declare_var(param.name, param.type, location=location)
            body = self._parse_block(new_scope=False)
        return FuncDecl(name_token.value, tuple(params), body, location=location)

    def _parse_param(self) -> Param:
        name_token = self._consume_name()
        if not self._match("COLON"):
            return Param(name_token.value)
        type_token = self._peek()
        if type_token.type != "IDENT" or type_token.value not in TYPE_NAMES:
            raise MetalSyntaxError(
                f"Unknown type '{type_token.value}'", location=self._location_from_token(type_token)
            )
        self.index += 1
        return Param(name_token.value, type_token.value)

    def _parse_if(self) -> If:
        keyword = self._consume("IF")
        condition = self._parse_bexp()
        then = self._parse_block()
        elifs: List[IfBranch] = []
        otherwise: Optional[Statement] = None
        while self._match_else():
            self._consume_newlines()
            if self._match("IF"):
                cond = self._parse_bexp()
                elifs.append(IfBranch(cond, self._parse_block()))
                continue
            otherwise = self._parse_block()
            break
        return If(condition, then, tuple(elifs), otherwise, location=self._location_from_token(keyword))

    def _match_else(self) -> bool:
        # ``else`` may start on the line after the closing brace.
        saved = self.index
        self._consume_newlines()
        if self._match("ELSE"):
            return True
        self.index = saved
        return False

    def _parse_while(self) -> While:
        keyword = self._consume("WHILE")
        condition = self._parse_bexp()
        body = self._parse_block()
        return While(condition, body, location=self._location_from_token(keyword))

    def _parse_call(self) -> Call:
        name_token = self._consume("IDENT")
        name = name_token.value
        location = self._location_from_token(name_token)
        declaration = self.symbols.lookup(name, location=location)
        if not isinstance(declaration, FuncDeclaration):
            raise TypeMismatch(name, "function", declaration.describe(), location=location)

        supplied: List[Tuple[DerivedSymbol, str, Token]] = []
        while self._peek().type not in ("NEWLINE", "EOF", "RBRACE"):
            supplied.append(self._parse_call_arg())

        expected = declaration.param_types
        if len(supplied) != len(expected):
            raise WrongNumArgs(name, len(expected), len(supplied), location=location)
        for position, ((_arg, actual, token), expected_type) in enumerate(zip(supplied, expected), start=1):
            if actual != expected_type:
                raise TypeMismatch(
                    f"{name} argument {position}",
                    expected_type,
                    actual,
                    location=self._location_from_token(token),
                )
        return Call(name, tuple(arg for arg, _type, _token in supplied), location=location)

    def _parse_call_arg(self) -> Tuple[DerivedSymbol, str, Token]:
        token = self._peek()
        if token.type == "STRING":
            self.index += 1
            return Literal(token.value, location=self._location_from_token(token)), TYPE_STRING, token
        if self._match("LPAREN"):
            symbol, type_name = self._parse_typed_symbol()
            self._consume("RPAREN")
            return symbol, type_name, token
        symbol, type_name = self._parse_typed_symbol()
        return symbol, type_name, token

    def _parse_block(self, new_scope: bool = True) -> Statement:
        opening = self._peek()
        if opening.type != "LBRACE":
            raise MetalSyntaxError(
                f"Expected '{{' to start block but found {self._describe(opening)}",
                location=self._location_from_token(opening),
            )
        self.index += 1
        if new_scope:
            with self.symbols.scope():
                statements = self._parse_statements(stop_tokens={"RBRACE", "EOF"})
        else:
            statements = self._parse_statements(stop_tokens={"RBRACE", "EOF"})
        self._consume("RBRACE")
        body = sequence(statements)
        if body is None:
            raise MetalSyntaxError("Blocks must contain at least one statement", location=self._location_from_token(opening))
        return body

    # ---- Boolean expressions ----

    def _parse_bexp(self) -> Bexp:
        # 'and' and 'or' share one precedence level and associate to the left.
        expr = self._parse_bexp_term()
        while self._peek().type in ("AND", "OR"):
            operator = self._peek()
            self.index += 1
            right = self._parse_bexp_term()
            location = self._location_from_token(operator)
            if operator.type == "AND":
                expr = And(expr, right, location=location)
            else:
                expr = Or(expr, right, location=location)
        return expr

    def _parse_bexp_term(self) -> Bexp:
        token = self._peek()
        location = self._location_from_token(token)
        if self._match("NOT"):
            return Not(self._parse_bexp_term(), location=location)
        if self._match("TRUE"):
            return BoolLiteral(True, location=location)
        if self._match("FALSE"):
            return BoolLiteral(False, location=location)
        if self._match("LPAREN"):
            expr = self._parse_bexp()
            self._consume("RPAREN")
            return expr
        left = self._parse_derived_symbol()
        operator = self._peek()
        if operator.type not in ("EQ", "LE", "NE"):
            raise MetalSyntaxError(
                f"Expected '==', '<=' or '!=' but found {self._describe(operator)}",
                location=self._location_from_token(operator),
            )
        self.index += 1
        right = self._parse_derived_symbol()
        if operator.type == "EQ":
            return Eq(left, right, location=location)
        if operator.type == "LE":
            return Le(left, right, location=location)
        return Ne(left, right, location=location)

    # ---- Derived symbols ----

    def _parse_derived_symbol(self) -> DerivedSymbol:
        symbol, type_name = self._parse_typed_symbol()
        if type_name != TYPE_SYM:
            raise TypeMismatch(getattr(symbol, "name", str(symbol)), TYPE_SYM, type_name, location=symbol.location)
        return symbol

    def _parse_typed_symbol(self) -> Tuple[DerivedSymbol, str]:
        token = self._peek()
        location = self._location_from_token(token)
        if self._match("READ"):
            return Read(location=location), TYPE_SYM
        if self._match("SPACE"):
            return Literal(" ", location=location), TYPE_SYM
        if self._match("SYMBOL"):
            return Literal(token.value, location=location), TYPE_SYM
        if token.type == "IDENT":
            self.index += 1
            declaration = self.symbols.lookup(token.value, location=location)
            if not isinstance(declaration, VarDeclaration):
                raise TypeMismatch(token.value, TYPE_SYM, declaration.describe(), location=location)
            return Var(token.value, location=location), declaration.type
        if token.value in KEYWORDS:
            raise MetalSyntaxError(f"Keyword '{token.value}' cannot be used as a symbol", location=location)
        raise MetalSyntaxError(f"Expected a tape symbol but found {self._describe(token)}", location=location)

    # ---- Token helpers ----

    def _consume_name(self) -> Token:
        token = self._peek()
        if token.type != "IDENT":
            if token.value in KEYWORDS:
                raise MetalSyntaxError(
                    f"Keyword '{token.value}' cannot be an identifier", location=self._location_from_token(token)
                )
            raise MetalSyntaxError(
                f"Expected identifier but found {self._describe(token)}", location=self._location_from_token(token)
            )
        if not token.value[0].islower():
            raise MetalSyntaxError(
                f"Identifier '{token.value}' must start with a lowercase letter",
                location=self._location_from_token(token),
            )
        self.index += 1
        return token

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise MetalSyntaxError(
                f"Expected token {token_type} but found {self._describe(token)}",
                location=self._location_from_token(token),
            )
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _consume_newlines(self) -> None:
        while self._match("NEWLINE"):
            continue

    def _peek(self) -> Token:
        return self.tokens[self.index]

    @staticmethod
    def _describe(token: Token) -> str:
        if token.type in ("NEWLINE", "EOF"):
            return token.type
        return f"{token.type} '{token.value}'"

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse(
    source: str,
    symbols: Optional[SymbolTable] = None,
    filename: str = "<string>",
) -> Tuple[Program, SymbolTable]:
    """Parses ``source`` against a copy of ``symbols`` and returns the program with the updated table.

    The caller's table is never modified, so a failed parse leaves it as it was.
    """
    table = symbols.copy() if symbols is not None else SymbolTable()
    tokens = Lexer(source, filename).tokenize()
    program = Parser(tokens, filename, source.splitlines(), symbols=table).parse()
    return program, table


def read_imports(source: str, filename: str = "<string>") -> List[str]:
    """Returns the names listed by the ``import`` lines at the top of ``source``."""
    tokens = Lexer(source, filename).tokenize()
    return Parser(tokens, filename, source.splitlines()).parse_imports()
