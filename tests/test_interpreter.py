import json
import unittest

from canvas import TurtleCanvas
from evaluator import TYPE_BOOL, TYPE_INT, Value
from hooks import HookRegistry, LogoHookError
from interpreter import MAX_LOOP_ITERATIONS, TOP_LEVEL, Interpreter, LogoRuntimeError, TracebackFormatter
from lexer import LogoError, LogoSyntaxError


def build(source, **kwargs):
    canvas = TurtleCanvas(200, 200)
    return Interpreter(source=source, canvas=canvas, filename="prog.logo", **kwargs)


def run(source, **kwargs):
    interpreter = build(source, **kwargs)
    interpreter.run()
    return interpreter


def variable(interpreter, name):
    return interpreter.variables.get_optional(name)


class BaseCase(unittest.TestCase):

    def assertRuntimeError(self, source, fragment, **kwargs):
        interpreter = build(source, **kwargs)
        with self.assertRaises(LogoRuntimeError) as caught:
            interpreter.run()
        self.assertIn(fragment, caught.exception.message)
        return interpreter, caught.exception

    def assertSyntaxError(self, source, fragment):
        with self.assertRaises(LogoSyntaxError) as caught:
            run(source)
        self.assertIn(fragment, str(caught.exception))


class LanguageProperties(BaseCase):
    """ The headline behaviours of the language. """

    def test_forward_then_back_returns_home(self):
        for pen in ("PENUP", "PENDOWN"):
            with self.subTest(pen):
                it = run(pen + '\nSETHEADING "33\nFORWARD "25\nBACK "25')
                self.assertEqual((100, 100, 33), (it.canvas.x, it.canvas.y, it.canvas.heading))

    def test_pen_color_round_trips_through_query(self):
        for index in (0, 7, 15):
            with self.subTest(index):
                it = run(f'SETPENCOLOR "{index}\nMAKE "c COLOR')
                self.assertEqual(Value(TYPE_INT, index), variable(it, "c"))

    def test_pen_color_out_of_range(self):
        for index in (16, -1):
            with self.subTest(index):
                _it, error = self.assertRuntimeError(f'SETPENCOLOR "{index}', f"Invalid color {index}")
                self.assertEqual("SETPENCOLOR", error.rewrite_rule)

    def test_make_then_addassign(self):
        it = run('MAKE "x "5\nADDASSIGN "x "3\nFORWARD :x')
        self.assertEqual(Value(TYPE_INT, 8), variable(it, "x"))
        self.assertEqual(92, it.canvas.y)

    def test_if_true_moves_and_draws_only_with_pen_down(self):
        drawn = run('PENDOWN\nIF EQ "TRUE "TRUE [ FORWARD "10 ]')
        self.assertEqual(90, drawn.canvas.y)
        self.assertEqual(1, len(drawn.canvas.surface.segments))
        moved = run('IF EQ "TRUE "TRUE [ FORWARD "10 ]')
        self.assertEqual(90, moved.canvas.y)
        self.assertEqual([], moved.canvas.surface.segments)

    def test_if_false_skips_the_block(self):
        it = run('IF NE "1 "1 [ FORWARD "10 ]')
        self.assertEqual(100, it.canvas.y)

    def test_one_line_procedure(self):
        it = run('TO DOUBLE :n FORWARD :n FORWARD :n END\nDOUBLE "7')
        self.assertEqual((100, 86), (it.canvas.x, it.canvas.y))
        self.assertEqual(["DOUBLE"], it.procedures.names())

    def test_procedure_arity_is_checked(self):
        for call, received in (("DOUBLE", 0), ('DOUBLE "1 "2', 2)):
            with self.subTest(call):
                self.assertRuntimeError(
                    'TO DOUBLE :n FORWARD :n FORWARD :n END\n' + call,
                    f"Invalid number of arguments: DOUBLE expects 1 but received {received}",
                )

    def test_runaway_loop_stops_at_the_cap(self):
        it = run('MAKE "i "0\nWHILE LT :i "1000000 [ ADDASSIGN "i "1 ]')
        self.assertEqual(Value(TYPE_INT, MAX_LOOP_ITERATIONS), variable(it, "i"))
        rules = [step.rule for step in it.log.entries]
        self.assertEqual("WHILE_CAP", rules[-1])

    def test_underflow_at_statement_level(self):
        self.assertRuntimeError('FORWARD + "3', "Stack underflow")


class Statements(BaseCase):

    def test_several_commands_share_a_line(self):
        it = run('PENDOWN FORWARD "10 RIGHT "5')
        self.assertEqual((105, 90), (it.canvas.x, it.canvas.y))
        self.assertEqual(2, len(it.canvas.surface.segments))

    def test_comments_are_ignored(self):
        it = run('// FORWARD "50\nFORWARD "1 // and more\n//FORWARD "9')
        self.assertEqual(99, it.canvas.y)

    def test_comments_inside_procedures_and_blocks(self):
        it = run('TO P\n// draw it, END of header\nFORWARD "1\nEND\nP\nIF "TRUE [\n  // ] not yet\n  FORWARD "2\n]')
        self.assertEqual(97, it.canvas.y)

    def test_positioning_and_queries(self):
        it = run('SETX "7\nSETY "9\nMAKE "p + XCOR YCOR\nSETHEADING "450\nMAKE "h HEADING\nTURN "-100')
        self.assertEqual(Value(TYPE_INT, 16), variable(it, "p"))
        self.assertEqual(Value(TYPE_INT, 90), variable(it, "h"))
        self.assertEqual(350, it.canvas.heading)

    def test_booleans_can_be_stored(self):
        it = run('MAKE "ok AND "TRUE LT "1 "2\nIF :ok [ FORWARD "3 ]')
        self.assertEqual(Value(TYPE_BOOL, True), variable(it, "ok"))
        self.assertEqual(97, it.canvas.y)

    def test_nested_loops(self):
        it = run(
            'MAKE "i "0\n'
            'MAKE "total "0\n'
            'WHILE LT :i "3 [\n'
            '  MAKE "j "0\n'
            '  WHILE LT :j "4 [\n'
            '    ADDASSIGN "total "1\n'
            '    ADDASSIGN "j "1\n'
            '  ]\n'
            '  ADDASSIGN "i "1\n'
            ']\n'
        )
        self.assertEqual(Value(TYPE_INT, 12), variable(it, "total"))

    def test_loop_cap_is_configurable(self):
        it = run('MAKE "i "0\nWHILE "TRUE [ ADDASSIGN "i "1 ]', max_loop_iterations=5)
        self.assertEqual(Value(TYPE_INT, 5), variable(it, "i"))
        it = run('MAKE "i "0\nWHILE "TRUE [ ADDASSIGN "i "1 ]', max_loop_iterations=0)
        self.assertEqual(Value(TYPE_INT, 0), variable(it, "i"))
        with self.assertRaises(ValueError):
            build("", max_loop_iterations=-1)

    def test_bare_numbers_are_not_values(self):
        self.assertRuntimeError('FORWARD 10', "FORWARD expects 1 value but got 0")

    def test_command_arity_and_types(self):
        self.assertRuntimeError('PENUP "1', "PENUP expects 0 values but got 1")
        self.assertRuntimeError('FORWARD "1 "2', "FORWARD expects 1 value but got 2")
        self.assertRuntimeError('FORWARD "TRUE', "FORWARD expects an integer but got BOOL 'TRUE'")
        self.assertRuntimeError('IF "5 [ PENUP ]', "IF expects TRUE or FALSE but got INT '5'")
        self.assertRuntimeError('WHILE "x [ PENUP ]', "WHILE expects TRUE or FALSE")
        self.assertRuntimeError('MAKE "5 "1', "MAKE expects a name but got INT '5'")
        self.assertRuntimeError('MAKE "x', "MAKE expects 2 values but got 1")

    def test_addassign_needs_an_existing_integer(self):
        self.assertRuntimeError('ADDASSIGN "nope "1', "Variable not found: 'nope'")
        self.assertRuntimeError('MAKE "w "hello\nADDASSIGN "w "1', "ADDASSIGN expects an integer but got WORD 'hello'")

    def test_undefined_variable(self):
        _it, error = self.assertRuntimeError('FORWARD :ghost', "Undefined variable 'ghost'")
        self.assertEqual("VAR", error.rewrite_rule)

    def test_syntax_errors(self):
        self.assertSyntaxError('END', "END without matching TO")
        self.assertSyntaxError('IF EQ "1 "1 FORWARD "1 ]', "IF expects a [ block ]")
        self.assertSyntaxError('WHILE "TRUE [ PENUP', "Unterminated statement")
        self.assertSyntaxError('TO BOX\nFORWARD "1', "Unterminated statement")
        self.assertSyntaxError('TO\nEND', "TO expects a procedure name")
        self.assertSyntaxError('TO :x\nEND', "Invalid procedure name ':x'")
        self.assertSyntaxError('TO P : \nEND', "Empty parameter name")

    def test_syntax_errors_abort_before_later_statements(self):
        interpreter = build('FORWARD "5\nIF "TRUE [ PENUP')
        with self.assertRaises(LogoSyntaxError):
            interpreter.run()
        self.assertEqual(95, interpreter.canvas.y)


class Procedures(BaseCase):

    def test_recursive_spiral(self):
        it = run(
            'TO SPIRAL :len\n'
            'IF GT :len "0 [\n'
            '  FORWARD :len\n'
            '  TURN "90\n'
            '  SPIRAL - :len "10\n'
            ']\n'
            'END\n'
            'PENDOWN\n'
            'SPIRAL "30\n'
        )
        self.assertEqual((120, 80, 270), (it.canvas.x, it.canvas.y, it.canvas.heading))
        self.assertEqual(3, len(it.canvas.surface.segments))

    def test_mutual_recursion(self):
        it = run(
            'TO EVEN :n\n'
            'IF EQ :n "0 [ MAKE "result "TRUE ]\n'
            'IF GT :n "0 [ ODD - :n "1 ]\n'
            'END\n'
            'TO ODD :n\n'
            'IF EQ :n "0 [ MAKE "result "FALSE ]\n'
            'IF GT :n "0 [ EVEN - :n "1 ]\n'
            'END\n'
            'EVEN "5\n'
        )
        self.assertEqual(Value(TYPE_BOOL, False), variable(it, "result"))

    def test_arguments_shadow_variables_and_vanish_afterwards(self):
        it = run('MAKE "n "1\nTO SHOW :n\nMAKE "seen :n\nEND\nSHOW "9\nMAKE "after :n')
        self.assertEqual(Value(TYPE_INT, 9), variable(it, "seen"))
        self.assertEqual(Value(TYPE_INT, 1), variable(it, "after"))
        self.assertRuntimeError('TO P :a\nEND\nP "1\nFORWARD :a', "Undefined variable 'a'")

    def test_procedures_write_the_shared_variables(self):
        it = run('TO SETG\nMAKE "g "3\nEND\nSETG\nADDASSIGN "g "1')
        self.assertEqual(Value(TYPE_INT, 4), variable(it, "g"))

    def test_loop_blocks_see_the_callers_arguments(self):
        it = run(
            'TO STEPS :count\n'
            'MAKE "k "0\n'
            'WHILE LT :k :count [ FORWARD "2 ADDASSIGN "k "1 ]\n'
            'END\n'
            'STEPS "4\n'
        )
        self.assertEqual(92, it.canvas.y)

    def test_word_arguments(self):
        it = run('TO STORE "name :value\nMAKE :name :value\nEND\nSTORE "x "11')
        self.assertEqual(Value(TYPE_INT, 11), variable(it, "x"))

    def test_redefinition_replaces(self):
        it = run('TO P\nSETX "1\nEND\nTO P\nSETX "2\nEND\nP')
        self.assertEqual(2, it.canvas.x)
        self.assertEqual(["P"], it.procedures.names())

    def test_calls_resolve_when_executed(self):
        self.assertRuntimeError('LATER\nTO LATER\nEND', "Unknown procedure 'LATER'")
        it = run('TO FIRST\nSECOND\nEND\nTO SECOND\nSETY "3\nEND\nFIRST')
        self.assertEqual(3, it.canvas.y)

    def test_name_conflicts(self):
        for name in ("FORWARD", "MAKE", "XCOR", "EQ"):
            with self.subTest(name):
                self.assertRuntimeError(f'TO {name}\nEND', f"Procedure name '{name}' conflicts with a built-in")
        self.assertRuntimeError('TO P :a :a\nEND', "Duplicate parameter name in TO P")

    def test_unbounded_recursion_is_reported(self):
        _it, error = self.assertRuntimeError('TO DOWN\nDOWN\nEND\nDOWN', "Maximum recursion depth exceeded")
        self.assertEqual("CALL", error.rewrite_rule)


class Diagnostics(BaseCase):

    def test_error_inside_procedure_points_at_its_line(self):
        it, error = self.assertRuntimeError('TO BAD\nFORWARD :missing\nEND\nBAD', "Undefined variable 'missing'")
        self.assertEqual((2, 1), (error.location.line, error.location.column))
        self.assertEqual("FORWARD :missing", error.location.statement)
        self.assertEqual([TOP_LEVEL, "BAD"], [frame.name for frame in it.call_stack])
        text = TracebackFormatter(it).format_text(error, verbose=False)
        self.assertIn('File "prog.logo", line 4, in <top-level>', text)
        self.assertIn('File "prog.logo", line 2, in BAD', text)
        self.assertTrue(text.endswith("LogoRuntimeError: Undefined variable 'missing' (rule: VAR)"))

    def test_error_inside_block_points_at_its_line(self):
        _it, error = self.assertRuntimeError('PENDOWN\nIF EQ "1 "1 [\n  SETPENCOLOR "99\n]', "Invalid color 99")
        self.assertEqual((3, 3), (error.location.line, error.location.column))

    def test_step_log_records_the_turtle(self):
        it = run('PENDOWN\nTO P\nFORWARD "4\nEND\nP\nSETPENCOLOR "3')
        self.assertEqual(["PENDOWN", "TO", "CALL", "FORWARD", "SETPENCOLOR"], [step.rule for step in it.log.entries])
        self.assertEqual([0, 1, 2, 3, 4], [step.index for step in it.log.entries])
        self.assertEqual({"procedure": "P"}, it.log.entries[2].detail)
        first, _to, _call, forward, color = it.log.entries
        self.assertFalse(first.turtle.pen_down)
        self.assertTrue(forward.turtle.pen_down)
        self.assertEqual((100, 100), (forward.turtle.x, forward.turtle.y))
        self.assertEqual((100, 96, 0), (color.turtle.x, color.turtle.y, color.turtle.color))
        self.assertNotEqual(first.frame_id, forward.frame_id)
        self.assertIsNone(first.variables)
        self.assertEqual([], it.call_stack)

    def test_traceback_shows_arguments_and_turtle(self):
        source = 'PENDOWN\nSETPENCOLOR "2\nTO WALK :n\nFORWARD :n\nSETPENCOLOR "99\nEND\nWALK "10'
        it, error = self.assertRuntimeError(source, "Invalid color 99")
        self.assertEqual(5, error.step_index)
        text = TracebackFormatter(it).format_text(error, verbose=False)
        self.assertIn('File "prog.logo", line 7, in <top-level>', text)
        self.assertIn("    step 3, turtle x=100 y=100 heading=0 pen=down color=2", text)
        self.assertIn('File "prog.logo", line 5, in WALK :n=INT:10', text)
        self.assertIn("    step 5, turtle x=100 y=90 heading=0 pen=down color=2", text)
        self.assertIn("Turtle at failure: x=100 y=90 heading=0 pen=down color=2", text)
        self.assertNotIn("variables:", text)

    def test_verbose_traceback_shows_variables(self):
        source = 'MAKE "x "5\nTO P :a\nFORWARD "1 "2\nEND\nP "3'
        it, error = self.assertRuntimeError(source, "FORWARD expects 1 value but got 2", verbose=True)
        self.assertEqual(3, error.step_index)
        text = TracebackFormatter(it).format_text(error, verbose=True)
        self.assertIn("in P :a=INT:3", text)
        self.assertIn("    variables: x=INT:5", text)

    def test_json_traceback(self):
        it, error = self.assertRuntimeError('TO P :a\nFORWARD "TRUE\nEND\nP "3', "FORWARD expects an integer")
        data = json.loads(TracebackFormatter(it).to_json(error))
        self.assertEqual("LogoRuntimeError", data["error"]["type"])
        self.assertEqual(2, data["error"]["step"])
        self.assertEqual("FORWARD", data["error"]["rule"])
        self.assertEqual([TOP_LEVEL, "P"], [frame["name"] for frame in data["traceback"]])
        inner = data["traceback"][1]
        self.assertEqual({"a": "INT:3"}, inner["arguments"])
        self.assertEqual(2, inner["location"]["line"])
        self.assertEqual("FORWARD", inner["rule"])
        self.assertEqual({"x": 100, "y": 100, "heading": 0, "pen_down": False, "color": 0}, inner["turtle"])

    def test_unexpected_python_errors_are_wrapped(self):
        class BrokenCanvas(TurtleCanvas):
            def pen_up(self):
                raise ZeroDivisionError("boom")

        interpreter = Interpreter(source="PENUP", canvas=BrokenCanvas(10, 10))
        with self.assertRaises(LogoRuntimeError) as caught:
            interpreter.run()
        self.assertIn("Internal interpreter error: boom", caught.exception.message)
        self.assertEqual(1, caught.exception.location.line)

    def test_session_survives_a_failed_entry(self):
        it = build("")
        it.execute('MAKE "k "2')
        with self.assertRaises(LogoRuntimeError):
            it.execute('TO BAD\nFORWARD :nope\nEND\nBAD')
        self.assertEqual(2, len(it.call_stack))
        it.execute('FORWARD :k')
        self.assertEqual(98, it.canvas.y)
        self.assertEqual([], it.call_stack)


class Hooks(BaseCase):

    def test_event_order(self):
        hooks = HookRegistry()
        seen = []
        for event in ("program_start", "before_statement", "after_statement", "program_end"):
            hooks.on(event, lambda *args, event=event: seen.append(event))
        run('PENUP', hooks=hooks)
        self.assertEqual(["program_start", "before_statement", "after_statement", "program_end"], seen)

    def test_after_call_reports_arguments(self):
        hooks = HookRegistry()
        calls = []
        hooks.on("after_call", lambda interp, name, arguments, location: calls.append((name, arguments["n"].value)))
        run('TO DOUBLE :n FORWARD :n FORWARD :n END\nDOUBLE "7\nDOUBLE "2', hooks=hooks)
        self.assertEqual([("DOUBLE", 7), ("DOUBLE", 2)], calls)

    def test_priority_orders_handlers(self):
        hooks = HookRegistry()
        seen = []
        hooks.on("program_start", lambda interp: seen.append("low"), priority=1)
        hooks.on("program_start", lambda interp: seen.append("high"), priority=5)
        hooks.on("program_start", lambda interp: seen.append("low again"), priority=1)
        run('', hooks=hooks)
        self.assertEqual(["high", "low", "low again"], seen)

    def test_on_error_sees_the_failure(self):
        hooks = HookRegistry()
        errors = []
        hooks.on("on_error", lambda interp, error: errors.append(error))
        with self.assertRaises(LogoSyntaxError):
            run('END', hooks=hooks)
        self.assertIsInstance(errors[0], LogoSyntaxError)

    def test_step_rules_fire_every_n_steps(self):
        hooks = HookRegistry()
        fired = []
        hooks.every(2, lambda interp, step: fired.append((step.rule, step.turtle.x)))
        run('PENDOWN\nFORWARD "1\nRIGHT "1\nBACK "1', hooks=hooks)
        self.assertEqual([("PENDOWN", 100), ("RIGHT", 100)], fired)

    def test_failing_hooks_become_runtime_errors(self):
        hooks = HookRegistry()

        def explode(interp, statement):
            raise ValueError("bad hook")

        hooks.on("before_statement", explode)
        with self.assertRaises(LogoRuntimeError) as caught:
            run('PENUP', hooks=hooks)
        self.assertEqual("EXT", caught.exception.rewrite_rule)
        self.assertIn("Hook for 'before_statement' failed: bad hook", caught.exception.message)

    def test_registry_rejects_bad_registrations(self):
        registry = HookRegistry()
        with self.assertRaises(LogoHookError) as caught:
            registry.on("whenever", lambda: None)
        self.assertIsInstance(caught.exception, LogoError)
        with self.assertRaises(LogoHookError):
            registry.every(0, lambda interp, step: None)


if __name__ == '__main__':
    unittest.main()
