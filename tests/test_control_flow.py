import pytest

from arexx.arexx_runtime import Interpreter, EngineConfig


async def run_arexx(src: str, args=None, host=None, config=None):
    return await Interpreter(host, args, config or EngineConfig()).execute(src)


def assert_ok(res, output=None):
    assert res.success, f"expected success, got error: {res.error}"
    if output is not None:
        assert res.output == output, f"expected {output!r}, got {res.output!r}"


def assert_error(res, contains: str | None = None):
    assert not res.success, f"expected error, got success with output {res.output!r}"
    if contains:
        msg = res.error or ""
        assert contains in msg, f"error message did not contain {contains!r}: {msg!r}"


# --- DO forms ---

@pytest.mark.asyncio
async def test_do_count_repeats_body():
    res = await run_arexx('DO 3\nSAY "x"\nEND')
    assert_ok(res, ["x", "x", "x"])


@pytest.mark.asyncio
async def test_do_count_that_is_not_a_number_runs_zero_times():
    res = await run_arexx('DO "lots"\nSAY "x"\nEND\nSAY "done"')
    assert_ok(res, ["done"])


@pytest.mark.asyncio
async def test_do_forever_until_leave():
    src = """
    DO FOREVER
      SAY "once"
      LEAVE
    END
    SAY "after"
    """
    res = await run_arexx(src)
    assert_ok(res, ["once", "after"])


@pytest.mark.asyncio
async def test_bare_do_loops_until_break():
    res = await run_arexx('DO\nSAY "x"\nBREAK\nEND')
    assert_ok(res, ["x"])


@pytest.mark.asyncio
async def test_do_while_checks_before_each_pass():
    src = """
    X = "go"
    DO WHILE X = "go"
      SAY X
      X = "stop"
    END
    DO WHILE X = "go"
      SAY "never"
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["go"])


@pytest.mark.asyncio
async def test_do_until_checks_after_each_pass():
    res = await run_arexx('DO UNTIL 1 = 1\nSAY "ran"\nEND')
    assert_ok(res, ["ran"])


@pytest.mark.asyncio
async def test_do_with_negative_step_counts_down():
    res = await run_arexx("DO I = 3 TO 1 BY -1\nSAY I\nEND")
    assert_ok(res, ["3", "2", "1"])


@pytest.mark.asyncio
async def test_do_with_fractional_step():
    res = await run_arexx("DO I = 0 TO 1 BY 0.5\nSAY I\nEND")
    assert_ok(res, ["0", "0.5", "1"])


@pytest.mark.asyncio
async def test_do_step_zero_is_a_shape_error():
    res = await run_arexx("DO I = 1 TO 3 BY 0\nSAY I\nEND")
    assert_error(res, "ShapeError")
    assert res.error_kind == "shape"


@pytest.mark.asyncio
async def test_loop_variable_keeps_last_assigned_value():
    res = await run_arexx("DO I = 1 TO 3\nEND\nSAY I")
    assert_ok(res, ["3"])


@pytest.mark.asyncio
async def test_malformed_counted_do_is_a_shape_error():
    res = await run_arexx("DO I = 1 UNTIL 3\nEND")
    assert_error(res, "Invalid DO loop syntax")


@pytest.mark.asyncio
async def test_do_without_end_is_a_shape_error():
    res = await run_arexx("DO 3\nSAY 1")
    assert_error(res, "DO without matching END")


@pytest.mark.asyncio
async def test_iterate_skips_rest_of_pass():
    src = """
    DO I = 1 TO 3
      IF I = 2 THEN ITERATE
      SAY I
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["1", "3"])


@pytest.mark.asyncio
async def test_leave_only_exits_the_innermost_loop():
    src = """
    DO I = 1 TO 2
      DO J = 1 TO 5
        IF J = 2 THEN LEAVE
        SAY I || "-" || J
      END
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["1-1", "2-1"])


@pytest.mark.asyncio
async def test_long_loops_complete():
    res = await run_arexx("DO I = 1 TO 1000\nEND\nSAY I")
    assert_ok(res, ["1000"])


@pytest.mark.asyncio
async def test_break_outside_loop_is_a_shape_error():
    res = await run_arexx('SAY "a"\nBREAK\nSAY "b"')
    assert_error(res, "outside of a DO loop")
    assert res.output == ["a"]


# --- SELECT ---

@pytest.mark.asyncio
async def test_select_runs_first_matching_inline_when():
    src = """
    X = 2
    SELECT
      WHEN X = 1 THEN SAY "one"
      WHEN X = 2 THEN SAY "two"
      WHEN X > 1 THEN SAY "more"
      OTHERWISE SAY "other"
    END
    SAY "end"
    """
    res = await run_arexx(src)
    assert_ok(res, ["two", "end"])


@pytest.mark.asyncio
async def test_select_falls_back_to_otherwise_block():
    src = """
    SELECT
      WHEN X = 1
        SAY "a"
        SAY "b"
      OTHERWISE
        SAY "c"
        SAY "d"
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["c", "d"])


@pytest.mark.asyncio
async def test_select_without_match_or_otherwise_does_nothing():
    res = await run_arexx('SELECT\nWHEN 1 = 2 THEN SAY "no"\nEND\nSAY "ok"')
    assert_ok(res, ["ok"])


@pytest.mark.asyncio
async def test_select_ignores_clauses_of_nested_blocks():
    src = """
    X = 1
    SELECT
      WHEN X = 1 THEN
        SELECT
          WHEN X = 2 THEN SAY "inner two"
          OTHERWISE SAY "inner other"
        END
        DO 2
          SAY "loop"
        END
      OTHERWISE
        SAY "outer other"
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["inner other", "loop", "loop"])


@pytest.mark.asyncio
async def test_leave_inside_select_exits_enclosing_loop():
    src = """
    DO I = 1 TO 5
      SELECT
        WHEN I = 3 THEN LEAVE
        OTHERWISE SAY I
      END
    END
    """
    res = await run_arexx(src)
    assert_ok(res, ["1", "2"])


@pytest.mark.asyncio
async def test_stray_end_is_a_shape_error():
    res = await run_arexx('SAY "a"\nEND')
    assert_error(res, "END without matching DO/SELECT")


# --- SIGNAL ---

@pytest.mark.asyncio
async def test_signal_jumps_forward_to_label():
    src = """
    SAY "a"
    SIGNAL SKIP
    SAY "b"
    skip:
    SAY "c"
    """
    res = await run_arexx(src)
    assert_ok(res, ["a", "c"])


@pytest.mark.asyncio
async def test_signal_can_jump_backwards():
    src = """
    N = "first"
    AGAIN:
    SAY N
    IF N = "second" THEN SIGNAL DONE
    N = "second"
    SIGNAL AGAIN
    DONE:
    """
    res = await run_arexx(src)
    assert_ok(res, ["first", "second"])


@pytest.mark.asyncio
async def test_signal_escapes_nested_loops():
    src = """
    DO FOREVER
      DO FOREVER
        SIGNAL OUT
      END
    END
    OUT:
    SAY "out"
    """
    res = await run_arexx(src)
    assert_ok(res, ["out"])


@pytest.mark.asyncio
async def test_signal_out_of_procedure_unwinds_its_scope():
    src = """
    PROCEDURE P()
      LOCAL = 1
      SIGNAL HANDLER
    END
    CALL P()
    SAY "not reached"
    HANDLER:
    SAY "handled"
    """
    interp = Interpreter(config=EngineConfig())
    res = await interp.execute(src)
    assert_ok(res, ["handled"])
    assert interp.evaluator.scopes.depth == 1
    assert "LOCAL" not in res.variables


@pytest.mark.asyncio
async def test_signal_to_unknown_label_is_unknown_symbol():
    res = await run_arexx("SIGNAL NOWHERE")
    assert_error(res, "SIGNAL label not found")
    assert res.error_kind == "unknown-symbol"


@pytest.mark.asyncio
async def test_duplicate_label_uses_the_later_one():
    src = "SIGNAL L\nL:\nSAY 'first'\nEXIT\nL:\nSAY 'second'"
    res = await run_arexx(src)
    assert_ok(res, ["second"])


# --- RETURN / EXIT / misc statements ---

@pytest.mark.asyncio
async def test_top_level_return_ends_run_with_value():
    res = await run_arexx('SAY "a"\nRETURN "done"\nSAY "b"')
    assert_ok(res, ["a"])
    assert res.value == "done"


@pytest.mark.asyncio
async def test_exit_inside_procedure_ends_whole_run():
    src = """
    PROCEDURE QUIT()
      EXIT 3
    END
    DO 5
      CALL QUIT()
      SAY "never"
    END
    """
    res = await run_arexx(src)
    assert_ok(res, [])
    assert res.value == 3


@pytest.mark.asyncio
async def test_nop_does_nothing():
    res = await run_arexx("NOP\nSAY 1")
    assert_ok(res, ["1"])


@pytest.mark.asyncio
async def test_interpret_runs_a_computed_statement():
    res = await run_arexx("CMD = 'SAY \"hi\"'\nINTERPRET CMD")
    assert_ok(res, ["hi"])


@pytest.mark.asyncio
async def test_interpret_of_block_keyword_is_a_shape_error():
    res = await run_arexx("INTERPRET 'DO 3'")
    assert_error(res, "cannot be used as a single statement")


@pytest.mark.asyncio
async def test_if_condition_truthiness():
    res = await run_arexx('FLAG = 1\nIF FLAG THEN SAY "on"\nNONE = ""\nIF NONE THEN SAY "off"')
    assert_ok(res, ["on"])


@pytest.mark.asyncio
async def test_unrecognized_statement_is_a_shape_error():
    res = await run_arexx('SAY 1\n\n// comment\nHELLO THERE')
    assert_error(res, "Unrecognized statement: HELLO THERE")
    assert res.error_line == 4
    assert res.format_error().startswith("Error on line 4: ShapeError:")


@pytest.mark.asyncio
async def test_trace_on_emits_line_trace_side_effects():
    res = await run_arexx("TRACE ON\nSAY 1\nTRACE OFF\nSAY 2")
    assert_ok(res, ["1", "2"])
    traces = [e["message"] for e in res.side_effects if e["topics"] == ["trace"]]
    assert traces[0] == "[TRACE] Tracing enabled"
    assert "[TRACE] Line 2: SAY 1" in traces
    assert not any("SAY 2" in t for t in traces)


@pytest.mark.asyncio
async def test_trace_from_config():
    res = await run_arexx("SAY 1", config=EngineConfig(trace=True))
    assert {"topics": ["trace"], "message": "[TRACE] Line 1: SAY 1"} in res.side_effects


@pytest.mark.asyncio
async def test_options_are_recorded_without_changing_results():
    interp = Interpreter(config=EngineConfig())
    res = await interp.execute("OPTIONS RESULTS\nSAY 'x'")
    assert_ok(res, ["x"])
    assert "RESULTS" in interp.evaluator.options


@pytest.mark.asyncio
async def test_say_output_goes_to_stdout_side_effects():
    res = await run_arexx('SAY "a"\nSAY "b"')
    stdout = [e["message"] for e in res.side_effects if e["topics"] == ["stdout"]]
    assert stdout == ["a", "b"]
