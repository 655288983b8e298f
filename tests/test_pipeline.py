import pytest

from pipeline import OnError, Pipeline, Step


def test_steps_share_context_and_run_in_order():
    order = []

    def first(ctx):
        order.append("first")
        ctx["value"] = 41

    def second(ctx):
        order.append("second")
        ctx["value"] += 1

    result = Pipeline("demo", [Step("first", first), Step("second", second)]).run()
    assert order == ["first", "second"]
    assert result.context["value"] == 42
    assert result.completed_steps == ["first", "second"]
    assert result.warnings == []


def test_continue_step_failure_becomes_warning():
    ran = []

    def flaky(ctx):
        raise RuntimeError("restart failed")

    steps = [
        Step("flaky", flaky, OnError.CONTINUE),
        Step("after", lambda ctx: ran.append(True)),
    ]
    result = Pipeline("demo", steps).run()
    assert ran == [True]
    assert result.warnings == ["flaky: restart failed"]


def test_abort_step_failure_stops_and_raises():
    ran = []

    def broken(ctx):
        raise ValueError("archive corrupt")

    steps = [Step("broken", broken), Step("after", lambda ctx: ran.append(True))]
    context = {}
    with pytest.raises(ValueError):
        Pipeline("demo", steps).run(context)
    assert ran == []
