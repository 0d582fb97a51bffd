import json
import os

import pytest

from jaxbgen.constants import FINGERPRINT_FORMAT
from jaxbgen.fingerprint import FingerprintTracker, compute_fingerprint, expand_inputs
from jaxbgen.options import CompilerOptions

TOOL = "xjc 4.0.5"


def _generate(unit, files=("a/Catalog.java", "a/ObjectFactory.java")):
    out = unit.output_path()
    for rel in files:
        path = out / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("class X {}", encoding="utf-8")
    return list(files)


@pytest.fixture
def tracker(tmp_path):
    return FingerprintTracker(tmp_path / "state")


@pytest.fixture
def committed(tracker, make_unit):
    unit = make_unit("catalog")
    fingerprint = tracker.compute(unit, TOOL)
    tracker.commit(unit, fingerprint, _generate(unit))
    return unit


def test_unit_without_record_is_dirty(tracker, make_unit):
    check = tracker.check(make_unit("catalog"), TOOL)
    assert check.dirty
    assert check.reason == "no previous record"
    assert check.fingerprint is not None


def test_unchanged_unit_is_clean(tracker, committed):
    assert not tracker.is_dirty(committed, TOOL)
    assert tracker.check(committed, TOOL).reason == "up-to-date"


def test_fingerprint_is_deterministic(tracker, make_unit, project_dir):
    unit = make_unit("catalog")
    (project_dir / "schemas" / "extra.xsd").write_text("<xs:schema/>", encoding="utf-8")
    forward = unit.copy(schemas=["schemas/catalog.xsd", "schemas/extra.xsd"])
    backward = unit.copy(schemas=["schemas/extra.xsd", "schemas/catalog.xsd"])
    assert compute_fingerprint(forward, TOOL).digest == compute_fingerprint(backward, TOOL).digest
    assert compute_fingerprint(forward, TOOL) == compute_fingerprint(forward, TOOL)


def test_content_change_is_detected_even_with_same_mtime(tracker, committed):
    schema = committed.schema_paths()[0]
    stat = schema.stat()
    schema.write_text("<xs:schema><!-- edited --></xs:schema>", encoding="utf-8")
    os.utime(schema, ns=(stat.st_atime_ns, stat.st_mtime_ns))
    check = tracker.check(committed, TOOL)
    assert check.dirty
    assert check.reason == "inputs or options changed"


def test_option_change_is_detected(tracker, committed):
    changed = committed.copy(options=CompilerOptions(header=False))
    assert tracker.is_dirty(changed, TOOL)


def test_package_change_is_detected(tracker, committed):
    assert tracker.is_dirty(committed.copy(package_name="com.example"), TOOL)


def test_tool_version_change_is_detected(tracker, committed):
    check = tracker.check(committed, "xjc 4.0.6")
    assert check.dirty
    assert check.reason == "tool version changed (xjc 4.0.5 -> xjc 4.0.6)"


def test_binding_file_change_is_detected(tracker, make_unit, project_dir):
    binding = project_dir / "catalog.xjb"
    binding.write_text("<jaxb:bindings/>", encoding="utf-8")
    unit = make_unit("catalog", bindings=["catalog.xjb"])
    tracker.commit(unit, tracker.compute(unit, TOOL), _generate(unit))
    assert not tracker.is_dirty(unit, TOOL)
    binding.write_text("<jaxb:bindings version='3.0'/>", encoding="utf-8")
    assert tracker.is_dirty(unit, TOOL)


def test_missing_generated_file_makes_unit_dirty(tracker, committed):
    (committed.output_path() / "a" / "ObjectFactory.java").unlink()
    check = tracker.check(committed, TOOL)
    assert check.dirty
    assert check.reason == "generated file missing: a/ObjectFactory.java"


def test_missing_input_makes_unit_dirty(tracker, committed):
    committed.schema_paths()[0].unlink()
    check = tracker.check(committed, TOOL)
    assert check.dirty
    assert check.reason.startswith("input missing or unreadable")
    assert check.fingerprint is None


def test_compute_raises_for_missing_input(tracker, make_unit):
    unit = make_unit("catalog")
    unit.schema_paths()[0].unlink()
    with pytest.raises(OSError):
        tracker.compute(unit, TOOL)


def test_record_is_written_atomically(tracker, committed):
    path = tracker.record_path("catalog")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["format"] == FINGERPRINT_FORMAT
    assert data["unit"] == "catalog"
    assert data["outputs"] == ["a/Catalog.java", "a/ObjectFactory.java"]
    assert [p.name for p in path.parent.iterdir()] == ["catalog.json"]


def test_unreadable_record_counts_as_missing(tracker, committed):
    tracker.record_path("catalog").write_text("{not json", encoding="utf-8")
    assert tracker.check(committed, TOOL).reason == "no previous record"


def test_record_from_other_format_counts_as_missing(tracker, committed):
    path = tracker.record_path("catalog")
    data = json.loads(path.read_text(encoding="utf-8"))
    data["format"] = FINGERPRINT_FORMAT + 1
    path.write_text(json.dumps(data), encoding="utf-8")
    assert tracker.is_dirty(committed, TOOL)


def test_forget_and_forget_all(tracker, committed, make_unit):
    other = make_unit("other")
    tracker.commit(other, tracker.compute(other, TOOL), [])
    assert tracker.forget("catalog") is True
    assert tracker.forget("catalog") is False
    assert tracker.is_dirty(committed, TOOL)
    assert tracker.forget_all() == ["other"]
    assert tracker.forget_all() == []


def test_expand_inputs_walks_directories_in_sorted_order(tmp_path):
    root = tmp_path / "xsd"
    (root / "b").mkdir(parents=True)
    (root / "b" / "z.xsd").write_text("z", encoding="utf-8")
    (root / "a.xsd").write_text("a", encoding="utf-8")
    single = tmp_path / "single.xsd"
    single.write_text("s", encoding="utf-8")
    files = expand_inputs([single, root])
    assert files == sorted(files, key=lambda p: p.as_posix())
    assert {p.name for p in files} == {"a.xsd", "z.xsd", "single.xsd"}
