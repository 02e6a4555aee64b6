"""Multi-file composition.

Files are parsed in import order against one shared symbol table, so a file
sees every declaration made by the files it imports. The parsed bodies are
joined with ``Comp`` and the whole program ends with an implicit ``accept``.
"""

from __future__ import annotations
import os
from typing import List, Optional, Sequence, Set, Tuple

from lexer import MetalParseError, SourceLocation
from parser import Accept, Statement, parse, read_imports, sequence
from symbols import SymbolTable


SOURCE_SUFFIX = ".mtl"


class LoadError(MetalParseError):
    def __init__(self, message: str, path: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message, location=location)
        self.path = path


def fold_files(symbols: Optional[SymbolTable], files: Sequence[Tuple[str, str]]) -> Statement:
    """Parses ``(name, source)`` pairs in order and joins them into one program ending in ``accept``."""
    table = symbols if symbols is not None else SymbolTable()
    bodies: List[Statement] = []
    for name, source in files:
        program, table = parse(source, table, filename=name)
        if program.body is not None:
            bodies.append(program.body)
    bodies.append(Accept())
    result = sequence(bodies)
    assert result is not None
    return result


def resolve_import(name: str, importer: str) -> str:
    path = name if name.endswith(SOURCE_SUFFIX) else name + SOURCE_SUFFIX
    return os.path.abspath(os.path.join(os.path.dirname(importer), path))


def _read_source(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        raise LoadError(f"Failed to read {path}: {exc}", path)


def collect_files(path: str) -> List[Tuple[str, str]]:
    """Returns ``(path, source)`` for ``path`` and everything it imports, dependencies first.

    Each file appears once even when imported from several places.
    """
    ordered: List[Tuple[str, str]] = []
    done: Set[str] = set()
    visiting: List[str] = []

    def visit(file_path: str) -> None:
        if file_path in done:
            return
        if file_path in visiting:
            cycle = " -> ".join(visiting[visiting.index(file_path):] + [file_path])
            raise LoadError(f"Import cycle: {cycle}", file_path)
        visiting.append(file_path)
        source = _read_source(file_path)
        for name in read_imports(source, file_path):
            visit(resolve_import(name, file_path))
        visiting.pop()
        done.add(file_path)
        ordered.append((file_path, source))

    visit(os.path.abspath(path))
    return ordered


def load_program(path: str, symbols: Optional[SymbolTable] = None) -> Statement:
    return fold_files(symbols, collect_files(path))
