"""
Tests for statement evaluation, environments and tracebacks.
"""

import json
import sys

import pytest

from interpreter import (
    STATUS_ACCEPT,
    STATUS_REJECT,
    STATUS_RUNNING,
    CallArityError,
    CallDepthExceeded,
    Configuration,
    Environment,
    Interpreter,
    MetalRuntimeError,
    TracebackFormatter,
    UndefFunc,
    UndefVar,
    evaluate,
    with_overlay,
)
from parser import (
    FALSE,
    TRUE,
    And,
    Call,
    Comp,
    Eq,
    FuncDecl,
    Le,
    Literal,
    MoveLeft,
    MoveRight,
    Ne,
    Or,
    Param,
    PrintStr,
    Var,
    Write,
    parse,
)
from symbols import SymbolTable, VarDeclaration
from tape import Tape


class TestScenarios:

    def test_move_right_then_left(self, run_program):
        machine = run_program("right\nleft", "abc", 1)
        assert machine.status == STATUS_RUNNING
        assert machine.config.head == 1
        assert machine.config.tape == Tape.from_string("abc", 1)

    def test_write(self, run_program):
        machine = run_program("write '2'", "abc", 1)
        assert machine.config.tape.contents == "a2c"

    @pytest.mark.parametrize("condition, expected", [("True", "a1c"), ("False", "a2c")])
    def test_if_else(self, run_program, condition, expected):
        machine = run_program(f"if {condition} {{ write '1' }} else {{ write '2' }}", "abc", 1)
        assert machine.config.tape.contents == expected

    def test_scan_for_marker(self, run_program):
        machine = run_program("while not (read == '#') { right }", "Ab5#", 0)
        assert machine.config.head == 3

    def test_variable_in_condition(self, run_program):
        machine = run_program("let x = '1'\nif x == '1' { write '#' }", "abc", 0)
        assert machine.config.tape.contents == "#bc"

    def test_undeclared_function_is_an_error(self, abc):
        machine = evaluate(Call("f"), abc)
        assert machine.failed
        assert isinstance(machine.error, UndefFunc)
        assert machine.error.name == "f"


class TestHalting:
    """Accept and reject absorb every later statement"""

    def test_statements_after_accept_are_ignored(self, run_program):
        machine = run_program("accept\nright\nwrite 'x'", "abc", 1)
        assert machine.accepted
        assert machine.config.head == 1
        assert machine.config.tape.contents == "abc"

    def test_reject_is_final(self, run_program):
        machine = run_program("reject\naccept", "abc", 1)
        assert machine.rejected
        assert machine.status == STATUS_REJECT

    def test_accept_inside_loop(self, run_program):
        source = "while True {\n  right\n  if read == 'c' { accept }\n}"
        machine = run_program(source, "abc", 0)
        assert machine.accepted
        assert machine.config.head == 2

    def test_accept_inside_function(self, run_program):
        machine = run_program("func f { accept }\nf\nright", "abc", 1)
        assert machine.accepted
        assert machine.config.head == 1

    def test_composition_is_associative(self, abc):
        a, b, c = MoveRight(), Write(Literal("x")), MoveLeft()
        left = evaluate(Comp(Comp(a, b), c), abc)
        right = evaluate(Comp(a, Comp(b, c)), abc)
        assert left.config.tape == right.config.tape
        assert left.status == right.status

    def test_empty_program(self, abc):
        machine = evaluate(None, abc)
        assert machine.status == STATUS_RUNNING
        assert machine.config == abc


class TestScoping:

    def test_block_bindings_are_discarded(self, run_program):
        source = "let x = 'a'\nif True {\n  let x = 'b'\n  write x\n  right\n}\nwrite x"
        machine = run_program(source)
        assert machine.config.tape.contents == "ba"

    def test_parameter_overlay_is_removed_after_call(self, run_program):
        source = "let x = 'a'\nfunc f x {\n  write x\n  right\n}\nf '1'\nwrite x"
        machine = run_program(source)
        assert machine.config.tape.contents == "1a"

    def test_function_declared_in_block_is_dropped(self, abc):
        inner = FuncDecl("g", (), MoveLeft())
        body = Comp(FuncDecl("f", (), Comp(inner, Call("g"))), Comp(Call("f"), Call("g")))
        machine = evaluate(body, abc)
        assert isinstance(machine.error, UndefFunc)
        assert machine.error.name == "g"

    def test_arguments_use_caller_bindings(self, run_program):
        machine = run_program("func f a { write a }\nlet y = 'q'\nf y")
        assert machine.config.tape.contents == "q"

    def test_arguments_read_tape_at_call_time(self, run_program):
        machine = run_program("func f a {\n  right\n  write a\n}\nf read", "ab", 0)
        assert machine.config.tape.contents == "aa"

    def test_body_sees_enclosing_bindings(self, run_program):
        machine = run_program("let c = 'z'\nfunc f { write c }\nf")
        assert machine.config.tape.contents == "z"

    def test_recursion(self, run_program):
        source = "func seek {\n  if read != '#' {\n    right\n    seek\n  }\n}\nseek"
        machine = run_program(source, "abc#", 0)
        assert machine.config.head == 3

    def test_deep_recursion(self, run_program):
        source = "func seek {\n  if read != '#' {\n    right\n    seek\n  }\n}\nseek"
        limit = sys.getrecursionlimit()
        machine = run_program(source, "a" * 1500 + "#", 0)
        assert not machine.failed
        assert machine.config.head == 1500
        assert sys.getrecursionlimit() == limit

    def test_loop_body_shadowing_is_undone(self, run_program):
        source = "let x = 'a'\nwhile read != '#' {\n  let x = 'b'\n  write x\n  right\n}\nwrite x"
        machine = run_program(source, "..#", 0)
        assert machine.config.tape.contents == "bba"
        assert machine.config.env.lookup_var("x") == "a"
        assert machine.config.env.depth == 1

    def test_loop_body_binding_is_gone_after_loop(self):
        symbols = SymbolTable.from_declarations({"y": VarDeclaration("Sym")})
        program, _symbols = parse("while read != '#' {\n  let y = 'b'\n  right\n}\nwrite y", symbols)
        machine = evaluate(program.body, Configuration.initial(".#", 0))
        assert isinstance(machine.error, UndefVar)
        assert machine.error.name == "y"
        assert machine.config.head == 1


class TestRuntimeErrors:

    def test_wrong_number_of_arguments(self, abc):
        body = Comp(FuncDecl("f", (Param("a"),), MoveLeft()), Call("f"))
        machine = evaluate(body, abc)
        assert isinstance(machine.error, CallArityError)
        assert machine.error.kind == "WrongNumArgs"

    def test_undefined_variable(self, abc):
        machine = evaluate(Write(Var("x")), abc)
        assert isinstance(machine.error, UndefVar)
        assert machine.error.name == "x"

    def test_error_stops_the_chain(self, abc):
        seen = []
        body = Comp(PrintStr("before"), Comp(Write(Var("x")), PrintStr("after")))
        machine = evaluate(body, abc, output_sink=seen.append)
        assert machine.failed
        assert seen == ["before"]
        assert machine.output == ("before",)

    def test_unbounded_recursion(self, run_program):
        machine = run_program("func f { f }\nf")
        assert machine.failed
        assert isinstance(machine.error, CallDepthExceeded)

    def test_bad_write_is_reported_as_internal(self, abc):
        machine = evaluate(Write(Literal("xy")), abc)
        assert machine.failed
        assert machine.error.kind == "internal"


class TestOutput:

    def test_print_string_and_cell(self, run_program):
        seen = []
        machine = run_program('print "start"\nright\nprint', "xy", 0, output_sink=seen.append)
        assert machine.output == ("start", "y")
        assert seen == ["start", "y"]

    def test_no_output_after_halt(self, run_program):
        seen = []
        machine = run_program('print "a"\naccept\nprint "b"', output_sink=seen.append)
        assert machine.output == ("a",)
        assert seen == ["a"]


class TestConditions:

    def test_short_circuit(self, abc):
        interpreter = Interpreter()
        undefined = Eq(Var("missing"), Literal("a"))
        assert interpreter.condition_value(And(FALSE, undefined), abc) is False
        assert interpreter.condition_value(Or(TRUE, undefined), abc) is True
        with pytest.raises(UndefVar):
            interpreter.condition_value(Or(FALSE, undefined), abc)

    @pytest.mark.parametrize("left, right, expected", [
        ("a", "b", True),
        ("a", "a", True),
        ("b", "a", False),
        ("Z", "a", True),
    ])
    def test_less_or_equal(self, abc, left, right, expected):
        assert Interpreter().condition_value(Le(Literal(left), Literal(right)), abc) is expected

    def test_not_equal(self, abc):
        interpreter = Interpreter()
        assert interpreter.condition_value(Ne(Literal("a"), Literal("b")), abc) is True
        assert interpreter.condition_value(Ne(Literal("a"), Literal("a")), abc) is False

    def test_first_true_branch_wins(self, run_program):
        source = (
            "if False { write '1' } else if True { write '2' } "
            "else if True { write '3' } else { write '4' }"
        )
        assert run_program(source, "abc", 1).config.tape.contents == "a2c"

    def test_no_branch_taken(self, run_program):
        machine = run_program("if False { write '1' }", "abc", 1)
        assert machine.config.tape.contents == "abc"


class TestTapeEdges:

    def test_head_moves_below_zero(self, run_program):
        machine = run_program("left\nleft\nwrite 'x'", "ab", 0)
        assert machine.config.head == -2
        assert machine.config.tape.span() == (-2, "x ab")

    def test_long_straight_line_program(self, run_program):
        machine = run_program("right\n" * 5000)
        assert machine.config.head == 5000

    def test_long_loop(self, run_program):
        machine = run_program("while read != '#' { right }", "a" * 3000 + "#", 0)
        assert machine.config.head == 3000


class TestEnvironment:

    def test_add_returns_new_environment(self):
        env = Environment()
        extended = env.add_var("x", "a")
        assert env.lookup_var("x") is None
        assert extended.lookup_var("x") == "a"

    def test_inner_frame_shadows(self):
        env = Environment().add_var("x", "a").push({"x": "b"})
        assert env.lookup_var("x") == "b"
        assert env.depth == 2
        assert env.pop().lookup_var("x") == "a"
        assert env.snapshot() == {"x": "'b'"}

    def test_cannot_pop_global_frame(self):
        with pytest.raises(MetalRuntimeError):
            Environment().pop()

    def test_with_overlay_restores_bindings(self):
        config = Configuration.initial("abc", 1).with_env(Environment().add_var("x", "a"))

        def body(inner):
            return inner.write(inner.env.lookup_var("x")).accept()

        result = with_overlay(config, {"x": "q"}, body)
        assert result.tape.read(1) == "q"
        assert result.status == STATUS_ACCEPT
        assert result.env.lookup_var("x") == "a"


class TestConfiguration:

    def test_halted_configuration_ignores_changes(self, abc):
        halted = abc.accept()
        assert halted.right() is halted
        assert halted.write("x") is halted
        assert halted.emit("hi") is halted
        assert halted.reject().status == STATUS_ACCEPT

    def test_initial(self):
        config = Configuration.initial("abc", 2)
        assert config.read() == "c"
        assert not config.halted


class TestStateLogging:

    def test_verbose_keeps_entries(self, abc):
        program, _symbols = parse("let x = 'a'\nright")
        interpreter = Interpreter(verbose=True)
        interpreter.run(program.body, abc)
        entries = interpreter.logger.entries
        assert [entry.rule for entry in entries] == ["VarDecl", "MoveRight"]
        assert entries[1].env_snapshot == {"x": "'a'"}
        assert entries[1].state_id == "s_000001"

    def test_quiet_keeps_only_last_entry(self, abc):
        program, _symbols = parse("right\nright\nleft")
        interpreter = Interpreter()
        interpreter.run(program.body, abc)
        assert interpreter.logger.entries == []
        assert interpreter.logger.last_entry.step_index == 2


    def test_quiet_mode_forgets_returned_calls(self):
        program, _symbols = parse("func f { right }\nwhile read != '#' { f }")
        interpreter = Interpreter()
        machine = interpreter.run(program.body, Configuration.initial(" " * 500 + "#", 0))
        assert machine.config.head == 500
        assert len(interpreter.logger.frame_last_entry) == 1


class TestTraceback:

    def failing_run(self, source):
        symbols = SymbolTable.from_declarations({"x": VarDeclaration("Sym")})
        program, _symbols = parse(source, symbols, filename="prog.mtl")
        interpreter = Interpreter(filename="prog.mtl")
        machine = interpreter.run(program.body, Configuration.initial("ab"))
        assert machine.failed
        return interpreter, machine

    def test_text_traceback(self):
        interpreter, machine = self.failing_run("right\nwrite x")
        text = TracebackFormatter(interpreter).format_text(machine.error, verbose=False)
        lines = text.splitlines()
        assert lines[0] == "Traceback (most recent call last):"
        assert lines[1:] == [
            "  prog.mtl:2:1 in <top-level>",
            "    write x",
            "    step 1 (Write)",
            "Machine: head at 1, tape 'ab' from 0",
            "UndefVar: Undefined variable 'x' (kind: UndefVar)",
        ]
        assert machine.error.step_index == 1

    def test_traceback_lists_call_frames(self):
        interpreter, machine = self.failing_run("func f { write x }\nf")
        text = TracebackFormatter(interpreter).format_text(machine.error, verbose=False)
        assert "prog.mtl:2:1 in <top-level>" in text
        assert "prog.mtl:1:10 in f" in text

    def test_verbose_traceback_shows_bindings(self):
        symbols = SymbolTable.from_declarations({"x": VarDeclaration("Sym")})
        program, _symbols = parse("let y = 'q'\nwrite x", symbols)
        interpreter = Interpreter(verbose=True)
        machine = interpreter.run(program.body, Configuration())
        text = TracebackFormatter(interpreter).format_text(machine.error, verbose=True)
        assert "    bindings: y='q'" in text.splitlines()

    def test_json_traceback(self):
        interpreter, machine = self.failing_run("func f { write x }\nf")
        data = json.loads(TracebackFormatter(interpreter).to_json(machine.error))
        assert data["error"]["kind"] == "UndefVar"
        assert data["error"]["failing_step_index"] == 2
        assert data["machine"] == {"head": 0, "tape_start": 0, "tape": "ab"}
        assert data["omitted_frames"] == 0
        assert [frame["name"] for frame in data["traceback"]] == ["<top-level>", "f"]
        assert data["traceback"][1]["rule"] == "Write"
        assert data["traceback"][1]["location"]["line"] == 1

    def test_failed_machine_has_top_level_bindings(self):
        _interpreter, machine = self.failing_run("func f { write x }\nf")
        env = machine.config.env
        assert env.depth == 1
        assert env.lookup_func("f") is not None

    def test_deep_traceback_is_truncated(self):
        program, _symbols = parse("func f { f }\nf")
        interpreter = Interpreter()
        machine = interpreter.run(program.body, Configuration())
        formatter = TracebackFormatter(interpreter)
        assert "earlier calls omitted" in formatter.format_text(machine.error, verbose=False)
        data = json.loads(formatter.to_json(machine.error))
        assert data["omitted_frames"] > 0
        assert len(data["traceback"]) == TracebackFormatter.MAX_FRAMES
        assert machine.config.env.depth == 1
