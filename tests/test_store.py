import pytest

from vmarchive.services.configstore import (
    ConfigStore,
    FileNotSetError,
    Group,
    NotRegularFileError,
    ParseError,
    load_store,
)

SAMPLE = """\
# generation chain
[meta]
\tmoref = vm-42
\tname = "web 01 "
[generation "0"]
\tstatus = succeeded
\ttimestamp = Tue Nov 14 22:13:20 2023
this line is ignored
[index "timestamp_ms-generation"]
\t1700000000000 = 0
"""


def test_group_ordering_is_by_arity_then_names():
    groups = [
        Group("index", "disk"),
        Group("meta"),
        Group(),
        Group("generation", "1"),
        Group("generation", "0"),
        Group("disk"),
    ]
    assert sorted(groups) == [
        Group(),
        Group("disk"),
        Group("meta"),
        Group("generation", "0"),
        Group("generation", "1"),
        Group("index", "disk"),
    ]


def test_group_ordering_is_strict():
    a, b = Group("a"), Group("a", "x")
    assert a < b and not b < a and a != b
    assert not a < Group("a")


def test_group_validation():
    with pytest.raises(ValueError):
        Group("two words")
    with pytest.raises(ValueError):
        Group(None, "orphan")
    assert str(Group("disk", "0")) == '[disk "0"]'


def test_loads_and_get():
    store = ConfigStore()
    store.loads(SAMPLE)
    assert store.get(Group("meta"), "moref") == "vm-42"
    assert store.get(Group("meta"), "name") == "web 01 "
    assert store.get(Group("generation", "0"), "timestamp") == "Tue Nov 14 22:13:20 2023"
    assert store.get_long(Group("index", "timestamp_ms-generation"), "1700000000000") == 0
    assert store.get(Group("meta"), "missing") is None
    assert store.get_int(Group("meta"), "missing") == -1


def test_dumps_format():
    store = ConfigStore()
    store.put(Group("meta"), "name", "web 01 ")
    store.put(Group("meta"), "is_clean", True)
    store.put(Group("generation", "0"), "status", "succeeded")
    assert store.dumps() == (
        "[meta]\n"
        "\tis_clean = true\n"
        '\tname = "web 01 "\n'
        '[generation "0"]\n'
        "\tstatus = succeeded\n"
    )


def test_dumps_then_loads_preserves_content():
    store = ConfigStore()
    store.loads(SAMPLE)
    store.put(Group("meta"), "note", 'say "hi"')
    store.put(Group("meta"), "empty", "")

    copy = ConfigStore()
    copy.loads(store.dumps())
    assert copy == store


def test_key_that_looks_like_a_group_survives_reload():
    store = ConfigStore()
    store.put(Group("index", "moref_name"), "[lab] web01", "vm-1")
    store.put(Group("index", "moref_name"), "web02", "vm-2")

    copy = ConfigStore()
    copy.loads(store.dumps())
    assert copy.groups() == [Group("index", "moref_name")]
    assert copy.get(Group("index", "moref_name"), "[lab] web01") == "vm-1"
    assert copy == store


def test_unrepresentable_values_are_refused():
    store = ConfigStore()
    with pytest.raises(ValueError):
        store.put(Group("vsphere"), "password", "secret\\")
    with pytest.raises(ValueError):
        store.merge(Group("vsphere"), [("note", "two\nlines")])
    assert not store.has_group(Group("vsphere"))


def test_line_with_broken_value_is_skipped():
    store = ConfigStore()
    store.loads('[vsphere]\n\tpassword = "secret\\"\n\tuser = admin\n')
    assert store.get(Group("vsphere"), "password") is None
    assert store.get(Group("vsphere"), "user") == "admin"


def test_entry_before_group_is_rejected():
    with pytest.raises(ParseError):
        ConfigStore().loads("key = value\n[meta]\n")


def test_path_is_kept_out_of_the_file(tmp_path):
    path = tmp_path / "a.profile"
    store = ConfigStore(path)
    store.put(Group("meta"), "moref", "vm-1")
    store.write()

    assert "path_myself" not in path.read_text()
    loaded = load_store(path)
    assert loaded.path == path
    assert loaded.get(Group("meta"), "moref") == "vm-1"


def test_write_leaves_no_temporary_files(tmp_path):
    store = ConfigStore(tmp_path / "a.profile")
    store.put(Group("meta"), "k", "v")
    store.write()
    store.write()
    assert [p.name for p in tmp_path.iterdir()] == ["a.profile"]


def test_file_errors(tmp_path):
    with pytest.raises(FileNotSetError):
        ConfigStore().write()
    with pytest.raises(FileNotSetError):
        ConfigStore().read()
    with pytest.raises(FileNotFoundError):
        ConfigStore().read(tmp_path / "missing.profile")
    with pytest.raises(NotRegularFileError):
        ConfigStore().read(tmp_path)


def test_group_helpers():
    store = ConfigStore()
    store.put(Group("disk", "1"), "uuid", "b")
    store.put(Group("disk", "0"), "uuid", "a")
    store.put(Group("meta"), "k", "v")
    assert store.groups("disk") == [Group("disk", "0"), Group("disk", "1")]
    assert Group("meta") in store

    store.merge(Group("meta"), [("k", "w"), ("j", "x")])
    assert [tuple(e) for e in store.get_all(Group("meta"))] == [("j", "x"), ("k", "w")]
    store.replace_all(Group("meta"), [("only", "1")])
    assert [e.key for e in store.get_all(Group("meta"))] == ["only"]

    assert store.delete(Group("meta"), "only")
    assert not store.delete(Group("meta"), "only")
    assert store.delete_group(Group("disk", "1"))
    assert not store.has_group(Group("disk", "1"))


def test_clear_keeps_path(tmp_path):
    store = ConfigStore(tmp_path / "x.profile")
    store.put(Group("meta"), "k", "v")
    store.clear()
    assert store.groups() == []
    assert store.path == tmp_path / "x.profile"
