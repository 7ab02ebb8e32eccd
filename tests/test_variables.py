from stepflow.engine.variables import VariableStore


def test_overrides_take_precedence():
    store = VariableStore.seeded({"base": "http://flow", "user": "a"}, {"base": "http://cli"})
    assert store.as_dict() == {"base": "http://cli", "user": "a"}


def test_missing_values_read_as_empty():
    store = VariableStore()
    assert store.get("nope") == ""
    assert not store.has("nope")
    assert "nope" not in store


def test_last_write_wins_and_values_are_strings():
    store = VariableStore({"n": "1"})
    store.set("n", 2)
    assert store.get("n") == "2"
    assert list(store) == ["n"]


def test_as_dict_is_a_copy():
    store = VariableStore({"a": "1"})
    snapshot = store.as_dict()
    snapshot["a"] = "changed"
    assert store.get("a") == "1"
