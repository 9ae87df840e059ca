import io
import sys
import textwrap

import pytest

from extensions import (
    BFExtensionError,
    ExtensionAPI,
    HookRegistry,
    RuntimeServices,
    StepContext,
    load_runtime_services,
)
from interpreter import Brainfuck, ExecuteMode
from lexer import BFRuntimeError


def make_bf(services):
    out = io.BytesIO()
    return Brainfuck(stdin=io.BytesIO(), stdout=out, services=services), out


def test_events_run_in_priority_order():
    calls = []
    registry = HookRegistry()
    registry.on_event("program_start", lambda *a: calls.append("low"), priority=0, ext_name="a")
    registry.on_event("program_start", lambda *a: calls.append("high"), priority=5, ext_name="b")
    registry.emit("program_start")
    assert calls == ["high", "low"]


def test_unknown_event_is_rejected():
    with pytest.raises(BFExtensionError):
        HookRegistry().on_event("before_statement", lambda: None, priority=0, ext_name="x")


def test_step_rule_must_be_positive():
    with pytest.raises(BFExtensionError):
        HookRegistry().add_step_rule(name="r", every_n=0, handler=lambda i, c: None, ext_name="x")


@pytest.mark.parametrize("mode", [ExecuteMode.NORMAL, ExecuteMode.COMPILED])
def test_lifecycle_events_and_step_rules(mode):
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="watcher")
    seen = []
    contexts = []

    @ext.on_event("program_start")
    def start(interpreter, state):
        seen.append(("start", state.head))

    @ext.on_event("program_end")
    def end(interpreter, state):
        seen.append(("end", state.tape.to_bytes()[:2]))

    @ext.every_n_steps(2)
    def every_other(interpreter, ctx):
        contexts.append(ctx)

    bf, _ = make_bf(services)
    bf.load_string("+>++")
    bf.execute(heap_size=4, mode=mode)

    assert seen == [("start", 0), ("end", b"\x01\x02")]
    assert all(isinstance(ctx, StepContext) for ctx in contexts)
    assert contexts[0].step_index == 0
    assert contexts[0].op == "ADD"


def test_on_error_event():
    services = RuntimeServices()
    errors = []
    ExtensionAPI(services=services, ext_name="watcher").on_event("on_error", lambda bf, error: errors.append(error))
    bf, _ = make_bf(services)
    bf.load_string("<")
    with pytest.raises(BFRuntimeError):
        bf.execute(heap_size=1)
    assert len(errors) == 1


def test_failing_step_rule_is_wrapped():
    services = RuntimeServices()

    def boom(interpreter, ctx):
        raise ValueError("nope")

    ExtensionAPI(services=services, ext_name="watcher").every_n_steps(1, boom)
    bf, _ = make_bf(services)
    bf.load_string("+")
    with pytest.raises(BFRuntimeError, match="Extension step rule failed") as info:
        bf.execute()
    assert info.value.rewrite_rule == "EXT"


@pytest.mark.parametrize("mode", [ExecuteMode.NORMAL, ExecuteMode.COMPILED])
def test_failing_step_rule_reports_its_own_step(mode):
    services = RuntimeServices()

    @ExtensionAPI(services=services, ext_name="watcher").every_n_steps(1)
    def fail_on_third(interpreter, ctx):
        if ctx.step_index == 2:
            raise ValueError("third step")

    bf, _ = make_bf(services)
    bf.load_string("+>+>+")
    with pytest.raises(BFRuntimeError, match="third step") as info:
        bf.execute(heap_size=8, mode=mode)
    assert info.value.step_index == 2
    assert info.value.rewrite_rule == "EXT"


def test_step_rule_runtime_error_keeps_step_index():
    services = RuntimeServices()

    def stop(interpreter, ctx):
        if ctx.step_index == 1:
            raise BFRuntimeError("stopped by rule")

    ExtensionAPI(services=services, ext_name="watcher").every_n_steps(1, stop)
    bf, _ = make_bf(services)
    bf.load_string("++")
    with pytest.raises(BFRuntimeError, match="stopped by rule") as info:
        bf.execute()
    assert info.value.step_index == 1


def test_load_runtime_services(tmp_path):
    path = tmp_path / "counter.py"
    path.write_text(
        textwrap.dedent(
            """
            BF_EXTENSION_NAME = "counter"
            STARTS = []

            def bf_register(ext):
                ext.metadata(name="counter", version="1.2.3")
                ext.on_event("program_start", lambda bf, state: STARTS.append(state))
            """
        )
    )
    services = load_runtime_services([str(path)])
    assert services.metadata[0].name == "counter"
    assert services.metadata[0].version == "1.2.3"


def test_extension_without_register(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n")
    with pytest.raises(BFExtensionError, match="bf_register"):
        load_runtime_services([str(path)])


def test_extension_api_mismatch(tmp_path):
    path = tmp_path / "future.py"
    path.write_text("BF_EXTENSION_API_VERSION = 99\ndef bf_register(ext):\n    pass\n")
    with pytest.raises(BFExtensionError, match="requires API 99"):
        load_runtime_services([str(path)])


def test_missing_extension(tmp_path):
    with pytest.raises(BFExtensionError, match="not found"):
        load_runtime_services([str(tmp_path / "nope.py")])


def test_extension_import_failure(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("raise RuntimeError('cannot start')\n")
    with pytest.raises(BFExtensionError, match="failed to import: cannot start"):
        load_runtime_services([str(path)])
    assert str(tmp_path) not in sys.path


def test_extension_imports_sibling_module(tmp_path):
    (tmp_path / "bf_helper_consts.py").write_text("LABEL = 'sibling'\n")
    path = tmp_path / "uses_helper.py"
    path.write_text(
        "import bf_helper_consts\n"
        "def bf_register(ext):\n"
        "    ext.metadata(name=bf_helper_consts.LABEL)\n"
    )
    services = load_runtime_services([str(path)])
    assert services.metadata[0].name == "sibling"


def test_decorator_and_direct_registration_return_handler():
    services = RuntimeServices()
    api = ExtensionAPI(services=services, ext_name="watcher")

    def handler(interpreter, state):
        pass

    assert api.on_event("program_end", handler) is handler
    assert api.on_event("program_start", priority=3)(handler) is handler
    assert api.every_n_steps(5)(handler) is handler
    assert services.hook_registry.has_step_rules
