import pytest

from hadesscript import Interpreter, Lifetime
from hadesscript.hades_datatypes import (
    HadesNameError, HadesScopeError, Level, to_builtin,
)
from hadesscript.hades_interpreter import ExecutionContext, VariableStore


def make_interpreter(**kwargs):
    out = []
    return Interpreter(output=out.append, **kwargs), out


def run(src, **kwargs):
    interp, out = make_interpreter(**kwargs)
    result = interp.execute(src, zone="main")
    return interp, result


def test_declare_and_read():
    interp, result = run("""
        var $a = 1, $b = 'two', $c
        global $g = [1, 2]
        const $k = 3
    """)
    assert result is True
    assert interp.get_variable("a") == 1
    assert interp.get_variable("b") == "two"
    assert interp.get_variable("c") is None
    assert interp.variables["g"].lifetime is Lifetime.GLOBAL
    assert interp.variables["k"].lifetime is Lifetime.CONST


def test_redeclaration_is_a_warning_and_keeps_value():
    interp, result = run("var $a = 1\nvar $a = 2")
    assert result is True
    assert interp.get_variable("a") == 1
    assert "WARNING: Cannot redeclare variable $a in main on line 2" in interp.messages


def test_declaring_a_subvalue_is_rejected():
    interp, _ = make_interpreter()
    with pytest.raises(HadesNameError) as exc:
        interp.variables.declare("a.b", 1)
    assert exc.value.level == Level.WARNING


def test_constant_cannot_be_set():
    interp, result = run("const $c = 1\nset $c = 2")
    assert result is True
    assert interp.get_variable("c") == 1
    assert "WARNING: Cannot set constant $c in main on line 2" in interp.messages


def test_constant_check_happens_before_evaluation():
    # The right-hand side would fail; the constant guard fires first.
    interp, result = run("const $c = 1\nset $c = 1 / 0")
    assert result is True
    assert interp.get_variable("c") == 1


def test_set_implicitly_declares_a_local():
    interp, _ = run("set $n = 4")
    assert interp.get_variable("n") == 4
    assert interp.variables["n"].lifetime is Lifetime.LOCAL


def test_dotted_paths_read_and_write():
    interp, _ = run("""
        var $a = [x: [y: 1], list: [10, 20]]
        set $a.x.y = 2
        set $a.z = 3
        set $a.list.1 = 21
        set $a.new.deep = 'd'
    """)
    assert to_builtin(interp.get_variable("a")) == {
        "x": {"y": 2}, "list": [10, 21], "z": 3, "new": {"deep": "d"},
    }
    assert interp.get_variable("a.list.0") == 10


def test_undefined_variable_read_is_an_error():
    interp, _ = make_interpreter()
    with pytest.raises(HadesNameError) as exc:
        interp.execute("var $a = 1\necho $nope", zone="main")
    assert str(exc.value) == "hades: Undefined variable $nope in main on line 2"


def test_undefined_key_is_a_notice():
    interp, out = make_interpreter()
    interp.execute("var $a = [1]\necho $a.5", zone="main")
    assert out == [""]
    assert "NOTICE: Undefined key '5' in $a.5 in main on line 2" in interp.messages


def test_reading_a_key_of_a_scalar_is_a_notice():
    interp, _ = run("var $a = 1\nvar $b = $a.x")
    assert interp.get_variable("b") is None
    assert any(m.startswith("NOTICE: Undefined key 'x'") for m in interp.messages)


def test_writing_through_a_scalar_is_a_warning():
    interp, result = run("var $a = 1\nset $a.b = 2")
    assert result is True
    assert interp.get_variable("a") == 1
    assert any(m.startswith("WARNING: Cannot use a scalar value as a collection") for m in interp.messages)


def test_invalid_key_segment_is_a_warning():
    interp, result = run("var $a = [1]\nset $a.1x = 2\nvar $b = $a..0")
    assert result is True
    assert to_builtin(interp.get_variable("a")) == [1]
    assert interp.get_variable("b") is None
    assert "WARNING: Invalid key name '1x' for variable $a in main on line 2" in interp.messages
    assert "WARNING: Invalid key name '' for variable $a in main on line 3" in interp.messages


def test_compound_assignment():
    interp, _ = run("""
        var $i = 1, $l = [1], $s = 'banana'
        set $i + 2
        set $i * 3
        set $i - 1
        set $i / 4
        set $l + 2
        set $l + [3, 4]
        set $s - 'an'
    """)
    assert interp.get_variable("i") == 2
    assert to_builtin(interp.get_variable("l")) == [1, 2, 3, 4]
    assert interp.get_variable("s") == "ba"


def test_assignment_copies_collections():
    interp, _ = run("""
        var $a = [1]
        var $b = $a
        set $b.0 = 9
    """)
    assert to_builtin(interp.get_variable("a")) == [1]
    assert to_builtin(interp.get_variable("b")) == [9]


def test_host_values_are_converted():
    interp, _ = make_interpreter()
    interp.set_variable("data", {"items": [1, 2], "name": "x"})
    assert interp.evaluate_formula("$data.items.1 + 1") == 3


def test_stash_and_restore_locals():
    store = VariableStore(ExecutionContext())
    store.declare("a", 1)
    store.declare("g", 2, Lifetime.GLOBAL)
    stash = store.stash_locals()
    assert "a" not in store
    assert "g" in store
    store.declare("a", 99)
    store.declare("b", 5)
    store.restore_locals(stash)
    assert store.get("a") == 1
    assert "b" not in store
    assert store.get("g") == 2


def test_check_writable():
    store = VariableStore(ExecutionContext())
    store.declare("c", 1, Lifetime.CONST)
    with pytest.raises(HadesScopeError):
        store.check_writable("c.x")
    store.check_writable("other")


def test_stash_can_shadow_non_local_names():
    store = VariableStore(ExecutionContext())
    store.declare("g", 2, Lifetime.GLOBAL)
    store.declare("h", 3, Lifetime.GLOBAL)
    stash = store.stash_locals(["g"])
    assert "g" not in store
    assert "h" in store
    store.declare("g", 99)
    store.restore_locals(stash)
    assert store.get("g") == 2
    assert store.variables["g"].lifetime is Lifetime.GLOBAL


def test_zero_padded_path_segments_are_string_keys():
    interp, _ = make_interpreter()
    interp.execute("""
        var $c = []
        set $c.7 = 'a'
        set $c.007 = 'b'
    """, zone="main")
    assert to_builtin(interp.get_variable("c")) == {7: "a", "007": "b"}
    assert interp.get_variable("c.007") == "b"
    assert interp.get_variable("c.7") == "a"
