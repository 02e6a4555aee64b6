"""Compile-time symbol table.

The parser threads one ``SymbolTable`` through a parse. Every nested construct
(``if``/``while`` branches and function bodies) runs inside its own scope, and
leaving a scope discards whatever was declared in it.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from lexer import MetalParseError, SourceLocation


TYPE_SYM = "Sym"

TYPE_NAMES = {TYPE_SYM}


class DuplicateDeclaration(MetalParseError):
    def __init__(self, name: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(f"'{name}' is already declared in this scope", location=location)
        self.name = name


class UndeclaredIdentifier(MetalParseError):
    def __init__(self, name: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(f"'{name}' has not been declared", location=location)
        self.name = name


class TypeMismatch(MetalParseError):
    def __init__(
        self,
        name: str,
        expected: str,
        actual: str,
        *,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(f"Type mismatch for '{name}': expected {expected} but got {actual}", location=location)
        self.name = name
        self.expected = expected
        self.actual = actual


class WrongNumArgs(MetalParseError):
    def __init__(
        self,
        name: str,
        declared: int,
        supplied: int,
        *,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(
            f"Function {name} expects {declared} arguments but received {supplied}", location=location
        )
        self.name = name
        self.declared = declared
        self.supplied = supplied


@dataclass(frozen=True)
class VarDeclaration:
    type: str

    def describe(self) -> str:
        return self.type


@dataclass(frozen=True)
class FuncDeclaration:
    param_types: Tuple[str, ...]

    def describe(self) -> str:
        return "function"


@dataclass(frozen=True)
class StructDeclaration:
    members: Tuple[str, ...]

    def describe(self) -> str:
        return "struct"


Declaration = Union[VarDeclaration, FuncDeclaration, StructDeclaration]


class SymbolTable:
    def __init__(self, scopes: Optional[List[Dict[str, Declaration]]] = None) -> None:
        self.scopes: List[Dict[str, Declaration]] = scopes if scopes is not None else [{}]

    @classmethod
    def from_declarations(cls, declarations: Dict[str, Declaration]) -> "SymbolTable":
        return cls([dict(declarations)])

    @property
    def depth(self) -> int:
        return len(self.scopes)

    def copy(self) -> "SymbolTable":
        # Declarations are frozen, so copying the scope dicts is enough.
        return SymbolTable([dict(scope) for scope in self.scopes])

    def is_declared_here(self, name: str) -> bool:
        return name in self.scopes[-1]

    def _declare(self, name: str, declaration: Declaration, location: Optional[SourceLocation]) -> None:
        if self.is_declared_here(name):
            raise DuplicateDeclaration(name, location=location)
        self.scopes[-1][name] = declaration

    def declare_var(self, name: str, type_name: str = TYPE_SYM, *, location: Optional[SourceLocation] = None) -> None:
        self._declare(name, VarDeclaration(type_name), location)

    def declare_func(
        self,
        name: str,
        param_types: Sequence[str],
        *,
        location: Optional[SourceLocation] = None,
    ) -> None:
        self._declare(name, FuncDeclaration(tuple(param_types)), location)

    def declare_struct(
        self,
        name: str,
        members: Sequence[str],
        *,
        location: Optional[SourceLocation] = None,
    ) -> None:
        self._declare(name, StructDeclaration(tuple(members)), location)

    def lookup(self, name: str, *, location: Optional[SourceLocation] = None) -> Declaration:
        for scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        raise UndeclaredIdentifier(name, location=location)

    def get_optional(self, name: str) -> Optional[Declaration]:
        for scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        return None

    def enter_scope(self) -> None:
        self.scopes.append({})

    def exit_scope(self) -> None:
        if len(self.scopes) == 1:
            raise MetalParseError("Cannot exit the global scope")
        self.scopes.pop()

    @contextmanager
    def scope(self) -> Iterator["SymbolTable"]:
        self.enter_scope()
        try:
            yield self
        finally:
            self.exit_scope()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SymbolTable) and other.scopes == self.scopes

    def __repr__(self) -> str:
        return f"SymbolTable({self.scopes!r})"
