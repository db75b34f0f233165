import json
import os
import pytest

from loom.loom_datatypes import DependencyResolutionError, Version
from loom.loom_discovery import (
    ManifestDependencyDiscovery, NoDependencies, PackageReference, load_manifest, parse_manifest,
)

YAML_MANIFEST = """\
packages:
  Newtonsoft:
    version: "13.0"
    modules:
      - name: newtonsoft
        path: lib/newtonsoft
    native:
      - native/libnewton.so
    scripts:
      - scripts/newton.pys
  Helpers:
    version: "2.1"
    dependencies: [Newtonsoft]
    modules:
      - name: helpers
        version: "2.1.5"
        path: lib/helpers.py
      - lib/helpers_extra.py
"""


def write_manifest(folder, text=YAML_MANIFEST, name="loom.deps.yaml"):
    path = folder / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_manifest_paths_resolve_against_manifest_folder(tmp_path):
    index = load_manifest(write_manifest(tmp_path))

    newton = index["newtonsoft"]
    assert newton.version == Version.parse("13")
    [module] = newton.descriptor.modules
    assert module.path == str(tmp_path / "lib" / "newtonsoft")
    assert module.version == Version.parse("13.0")
    assert newton.descriptor.native_assets == (str(tmp_path / "native" / "libnewton.so"),)
    assert newton.descriptor.scripts == (str(tmp_path / "scripts" / "newton.pys"),)


def test_module_entries_default_name_and_version_from_package(tmp_path):
    index = load_manifest(write_manifest(tmp_path))

    helpers, extra = index["helpers"].descriptor.modules
    assert (helpers.name, helpers.version) == ("helpers", Version.parse("2.1.5"))
    assert (extra.name, extra.version) == ("Helpers", Version.parse("2.1"))
    assert index["helpers"].dependencies == ("Newtonsoft",)


def test_json_and_toml_manifests_share_the_yaml_shape(tmp_path):
    data = {"packages": {"a": {"version": "1.0", "modules": [{"name": "a", "path": "a.py"}]}}}
    json_index = load_manifest(write_manifest(tmp_path, json.dumps(data), "deps.json"))
    toml_text = '[packages.a]\nversion = "1.0"\nmodules = [{name = "a", path = "a.py"}]\n'
    toml_index = load_manifest(write_manifest(tmp_path, toml_text, "deps.toml"))

    assert json_index["a"].descriptor == toml_index["a"].descriptor


def test_xml_manifest(tmp_path):
    xml = """<manifest><packages>
      <package name="Newtonsoft" version="13.0">
        <module name="newtonsoft" path="lib/newtonsoft"/>
        <native>native/libnewton.so</native>
      </package>
      <package name="Helpers" version="2.1">
        <dependency>Newtonsoft</dependency>
        <module name="helpers" version="2.1.5" path="lib/helpers.py"/>
        <module name="helpers_extra" path="lib/helpers_extra.py"/>
        <script>scripts/h.pys</script>
      </package>
    </packages></manifest>"""
    index = load_manifest(write_manifest(tmp_path, xml, "deps.xml"))

    assert sorted(index) == ["helpers", "newtonsoft"]
    assert index["helpers"].dependencies == ("Newtonsoft",)
    assert [m.name for m in index["helpers"].descriptor.modules] == ["helpers", "helpers_extra"]
    assert index["newtonsoft"].descriptor.native_assets == (str(tmp_path / "native" / "libnewton.so"),)


@pytest.mark.parametrize(
    "data",
    [
        None,
        [],
        {"packages": []},
        {"packages": {"a": {"version": "not-a-version"}}},
        {"packages": {"a": {"modules": [{"name": "a"}]}}},
    ],
)
def test_invalid_manifests_are_rejected(data, tmp_path):
    with pytest.raises(DependencyResolutionError):
        parse_manifest(data, str(tmp_path))


def test_malformed_manifest_file(tmp_path):
    with pytest.raises(DependencyResolutionError):
        load_manifest(write_manifest(tmp_path, "packages: [", "loom.deps.yaml"))


@pytest.mark.parametrize(
    "literal,name,version",
    [
        ("pkg:Newtonsoft", "Newtonsoft", None),
        ("pkg: Newtonsoft , 13.0", "Newtonsoft", "13.0"),
        ("PKG:yaml,6", "yaml", "6"),
    ],
)
def test_package_reference_parse(literal, name, version):
    ref = PackageReference.parse(literal)
    assert ref.name == name
    assert ref.version == (Version.parse(version) if version else None)


@pytest.mark.parametrize("literal", ["pkg:", "pkg:a, banana"])
def test_bad_package_references(literal):
    with pytest.raises(DependencyResolutionError):
        PackageReference.parse(literal)


def test_discover_follows_package_dependencies(tmp_path):
    write_manifest(tmp_path)
    discovery = ManifestDependencyDiscovery()

    descriptors = discovery.discover(str(tmp_path), '#r "pkg:helpers"\nprint(1)\n')

    assert [d.name for d in descriptors] == ["Helpers", "Newtonsoft"]


def test_discover_lists_each_package_once(tmp_path):
    write_manifest(tmp_path)
    text = '#r "pkg:Newtonsoft"\n#r "pkg:Helpers"\n#r "pkg:newtonsoft"\n'

    descriptors = ManifestDependencyDiscovery().discover(str(tmp_path), text)

    assert [d.name for d in descriptors] == ["Newtonsoft", "Helpers"]


def test_discover_rejects_unknown_package(tmp_path):
    write_manifest(tmp_path)
    with pytest.raises(DependencyResolutionError) as excinfo:
        ManifestDependencyDiscovery().discover(str(tmp_path), '#r "pkg:Missing"\n')
    assert excinfo.value.name == "Missing"


def test_discover_rejects_version_above_manifest(tmp_path):
    write_manifest(tmp_path)
    with pytest.raises(DependencyResolutionError, match="requested"):
        ManifestDependencyDiscovery().discover(str(tmp_path), '#r "pkg:Newtonsoft, 14.0"\n')


def test_discover_accepts_version_at_or_below_manifest(tmp_path):
    write_manifest(tmp_path)
    descriptors = ManifestDependencyDiscovery().discover(str(tmp_path), '#r "pkg:Newtonsoft, 12.0.1"\n')
    assert [d.name for d in descriptors] == ["Newtonsoft"]


def test_package_reference_without_manifest(tmp_path):
    with pytest.raises(DependencyResolutionError, match="no dependency manifest"):
        ManifestDependencyDiscovery().discover(str(tmp_path), '#r "pkg:Newtonsoft"\n')


def test_custom_manifest_name(tmp_path):
    write_manifest(tmp_path, name="deps.yml")
    descriptors = ManifestDependencyDiscovery("deps.yml").discover(str(tmp_path), '#r "pkg:Newtonsoft"\n')
    assert len(descriptors) == 1


def test_file_references_become_zero_version_modules(tmp_path):
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "tools.py").write_text("", encoding="utf-8")
    (tmp_path / "pkgdir").mkdir()

    descriptors = ManifestDependencyDiscovery().discover(
        str(tmp_path), '#r "lib/tools.py"\n#r "pkgdir"\n'
    )

    tools, pkgdir = (d.modules[0] for d in descriptors)
    assert (tools.name, tools.version, tools.path) == ("tools", Version.parse("0"), str(tmp_path / "lib" / "tools.py"))
    assert pkgdir.name == "pkgdir"
    assert os.path.isdir(pkgdir.path)


def test_missing_file_reference(tmp_path):
    with pytest.raises(DependencyResolutionError, match="not found"):
        ManifestDependencyDiscovery().discover(str(tmp_path), '#r "lib/absent.py"\n')


def test_scripts_without_references_need_no_manifest(tmp_path):
    assert ManifestDependencyDiscovery().discover(str(tmp_path), "print('hi')\n") == []
    assert NoDependencies().discover(str(tmp_path), '#r "pkg:anything"\n') == []
