"""
Pytest fixtures shared by the Metal test suite.
"""

import pytest

from interpreter import Configuration, evaluate
from parser import parse


@pytest.fixture
def run_program():
    """Parse ``source`` and evaluate it on a tape holding ``tape`` with the head at ``head``."""
    def _run(source, tape="", head=0, **kwargs):
        program, _symbols = parse(source)
        return evaluate(program.body, Configuration.initial(tape, head), **kwargs)
    return _run


@pytest.fixture
def parse_body():
    """Parse ``source`` and return only the statement tree."""
    def _parse(source, symbols=None):
        program, _symbols = parse(source, symbols)
        return program.body
    return _parse


@pytest.fixture
def abc():
    """The ``"abc"`` tape with the head on ``b``."""
    return Configuration.initial("abc", 1)
