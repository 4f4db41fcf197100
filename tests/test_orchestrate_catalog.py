import shlex
import sys
from pathlib import Path

import pytest

from roboharness.orchestrate.catalog import (
    ENVIRONMENTS,
    TASKS,
    CatalogError,
    CommandCatalog,
    StaticCatalog,
    build_catalog,
    read_catalog_file,
    resolve_environment,
    resolve_environments,
    task_actions,
    validate_robot,
    write_catalog_file,
)


CATALOG = {
    "robots": {"arm": {"dof": 6}},
    "tasks": {
        "pick": {"actions": ["move_next", "grasp"]},
        "swap": {"actions": ["grasp"], "scene_count": 2},
    },
    "environments": {
        "office": {
            "1": {"start_pose": [0.0, 1.5, 0.0], "map_path": "maps/office_1.yaml"},
            "3": {"start_pose": "2 2 0"},
        },
        "house": {2: {}},
    },
}


def test_static_catalog_looks_up_variants():
    catalog = StaticCatalog(CATALOG)
    assert catalog.get(ENVIRONMENTS, "office", variant="1")["map_path"] == "maps/office_1.yaml"
    assert catalog.get(ENVIRONMENTS, "house", variant="2") == {}
    assert catalog.get(TASKS, "pick")["actions"] == ["move_next", "grasp"]


def test_static_catalog_missing_entry():
    catalog = StaticCatalog(CATALOG)
    with pytest.raises(CatalogError, match="office:9"):
        catalog.get(ENVIRONMENTS, "office", variant="9")
    with pytest.raises(CatalogError):
        catalog.get(TASKS, "fly")


def test_resolve_environment_uses_first_variant_metadata():
    spec = resolve_environment(StaticCatalog(CATALOG), "office:1:3")
    assert spec.variants == ("1", "3")
    assert spec.start_pose == (0.0, 1.5, 0.0)
    assert spec.map_path == Path("maps/office_1.yaml")


def test_resolve_environment_parses_string_pose():
    spec = resolve_environment(StaticCatalog(CATALOG), "office:3")
    assert spec.start_pose == (2.0, 2.0, 0.0)
    assert spec.map_path is None


def test_resolve_environments_checks_scene_count():
    catalog = StaticCatalog(CATALOG)
    assert [env.identifier for env in resolve_environments(catalog, ["office:1", "house:2"], task="pick")] == [
        "office:1",
        "house:2",
    ]
    with pytest.raises(CatalogError, match="requires 2"):
        resolve_environments(catalog, ["office:1"], task="swap")
    assert resolve_environments(catalog, ["office:1:3"], task="swap")[0].variants == ("1", "3")


def test_task_actions_and_robot_validation():
    catalog = StaticCatalog(CATALOG)
    assert task_actions(catalog, "pick") == ["move_next", "grasp"]
    assert task_actions(catalog, None) == []
    validate_robot(catalog, "arm")
    validate_robot(catalog, None)
    with pytest.raises(CatalogError):
        validate_robot(catalog, "drone")


def test_build_catalog_prefers_inline_entries():
    assert isinstance(build_catalog(inline=CATALOG, command="unused"), StaticCatalog)
    assert isinstance(build_catalog(inline=None, command="lookup {kind} {name}"), CommandCatalog)


def _lookup_script(tmp_path: Path) -> str:
    script = tmp_path / "lookup.py"
    script.write_text(
        "import sys\n"
        "args = sys.argv[1:]\n"
        "kind, name = args[0], args[1]\n"
        "if name == 'missing':\n"
        "    print('no such entry', file=sys.stderr)\n"
        "    sys.exit(2)\n"
        "variant = args[3] if len(args) > 3 else ''\n"
        "print('kind: ' + kind)\n"
        "print('name: ' + name)\n"
        "print('variant: \"' + variant + '\"')\n"
        "print('start_pose: [1, 2, 3]')\n",
        encoding="utf-8",
    )
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{kind}} {{name}}"


def test_command_catalog_parses_yaml_and_caches(tmp_path: Path):
    catalog = CommandCatalog(_lookup_script(tmp_path))
    entry = catalog.get(ENVIRONMENTS, "office", variant="4")
    assert entry["kind"] == "environments"
    assert entry["variant"] == "4"
    assert entry["start_pose"] == [1, 2, 3]
    assert catalog.get(ENVIRONMENTS, "office", variant="4") is entry


def test_command_catalog_reports_lookup_failure(tmp_path: Path):
    catalog = CommandCatalog(_lookup_script(tmp_path))
    with pytest.raises(CatalogError, match="no such entry"):
        catalog.get(TASKS, "missing")


def test_command_catalog_reports_missing_command():
    catalog = CommandCatalog("definitely-not-a-roboharness-command {kind} {name}")
    with pytest.raises(CatalogError):
        catalog.get(TASKS, "pick")


def test_catalog_file_serves_the_same_entries(tmp_path: Path):
    entries = {"examples": {"demo": {"directory": "examples/demo"}}, ENVIRONMENTS: {"office": {1: {"map_path": "o.yaml"}}}}
    path = write_catalog_file(entries, tmp_path / "nested" / "catalog.yaml")
    catalog = StaticCatalog(read_catalog_file(path))
    assert catalog.get("examples", "demo")["directory"] == "examples/demo"
    assert catalog.get(ENVIRONMENTS, "office", variant="1")["map_path"] == "o.yaml"


def test_read_catalog_file_rejects_non_mapping(tmp_path: Path):
    path = tmp_path / "catalog.yaml"
    path.write_text("- office\n", encoding="utf-8")
    with pytest.raises(CatalogError, match="must contain a mapping"):
        read_catalog_file(path)
    with pytest.raises(CatalogError, match="Cannot read"):
        read_catalog_file(tmp_path / "missing.yaml")
