import pytest

from hooks import APHookError, HookRegistry, StepContext


def test_unknown_event_is_rejected():
    with pytest.raises(APHookError, match="Unknown event"):
        HookRegistry().on_event("before_everything", lambda *a: None)


def test_step_rule_interval_must_be_positive():
    with pytest.raises(APHookError):
        HookRegistry().every_n_steps(0, lambda interp, ctx: None)


def test_step_rules_fire_every_n():
    hooks = HookRegistry()
    seen = []
    hooks.every_n_steps(3, lambda interp, ctx: seen.append(ctx.step_index))
    for index in range(7):
        hooks.after_step(None, StepContext(step_index=index, rule="DisplayStatement", location=None, extra=None))
    assert seen == [0, 3, 6]


def test_decorator_registration():
    hooks = HookRegistry()

    @hooks.on_event("on_error")
    def report(interp, error):
        pass

    assert hooks.handlers("on_error") == ["report"]
