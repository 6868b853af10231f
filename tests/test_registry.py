"""
libdock - Tests: registry.py
============================
Cubre: invariante de referencias, IDs de proyecto estables, persistencia y
detección de corrupción.

Ejecutar:
    pytest tests/test_registry.py -v
"""

import json
import pytest
from datetime import datetime, timedelta

from libdock.errors import LockTimeoutError, NotFoundError, RegistryCorruptError
from libdock.lock_manager import FileLock
from libdock.registry import Dependency, Library, Registry
from libdock.transaction import Transaction


def _add_lib(registry, name, rev, size=10):
    return registry.add_library(Library(lib_name=name, revision=rev, path=f"{name}/{rev}", size=size))


def _assert_invariant(registry):
    """referenced_by == proyectos que declaran la dependencia, para toda librería"""
    for key, library in registry.libraries.items():
        expected = sorted(pid for pid, p in registry.projects.items() if key in p.dependency_keys())
        assert library.referenced_by == expected, key
    assert registry.check_consistency() == []


class TestKeys:

    def test_library_key_roundtrip_with_colon_in_name(self):
        key = Registry.get_library_key("boost:asio", "1.84")
        assert Registry.parse_library_key(key) == ("boost:asio", "1.84")

    @pytest.mark.parametrize("key", ["sin-separador", ":1.0", "zlib:"])
    def test_invalid_keys(self, key):
        with pytest.raises(ValueError):
            Registry.parse_library_key(key)

    @pytest.mark.registry
    def test_project_id_ignores_trailing_separator(self, temp_dir):
        path = str(temp_dir / "app")
        assert Registry.hash_path(path) == Registry.hash_path(path + "/")
        assert len(Registry.hash_path(path)) == 16

    def test_project_id_differs_per_path(self, temp_dir):
        assert Registry.hash_path(str(temp_dir / "a")) != Registry.hash_path(str(temp_dir / "b"))


class TestReferences:

    @pytest.mark.registry
    @pytest.mark.critical
    def test_set_dependencies_keeps_invariant(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        _add_lib(registry, "openssl", "3.0")
        a = registry.add_project(str(temp_dir / "a"))
        b = registry.add_project(str(temp_dir / "b"))

        registry.set_dependencies(a.id, [Dependency("zlib", "1.3", "3rdparty/zlib"),
                                         Dependency("openssl", "3.0", "3rdparty/openssl")])
        registry.set_dependencies(b.id, [Dependency("zlib", "1.3", "deps/zlib")])
        _assert_invariant(registry)
        assert registry.get_library("zlib:1.3").referenced_by == sorted([a.id, b.id])

        registry.set_dependencies(a.id, [Dependency("zlib", "1.3", "3rdparty/zlib")])
        _assert_invariant(registry)
        assert registry.get_library("openssl:3.0").referenced_by == []
        assert registry.get_library("openssl:3.0").unlinked_at is not None

    @pytest.mark.registry
    def test_duplicate_dependencies_collapse(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"))
        registry.set_dependencies(project.id, [Dependency("zlib", "1.3", "x"),
                                               Dependency("zlib", "1.3", "y")])
        assert [d.linked_path for d in project.dependencies] == ["x"]
        _assert_invariant(registry)

    def test_unregistered_library_rejected(self, registry, temp_dir):
        project = registry.add_project(str(temp_dir / "a"))
        with pytest.raises(NotFoundError):
            registry.set_dependencies(project.id, [Dependency("zlib", "1.3", "x")])

    @pytest.mark.registry
    @pytest.mark.critical
    def test_remove_project_drops_edges(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"))
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))

        registry.remove_project(project.id)
        assert registry.get_library("zlib:1.3").referenced_by == []
        _assert_invariant(registry)

    def test_remove_dependency(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"))
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))

        assert registry.remove_dependency(project.id, "zlib", "1.3") is True
        assert registry.remove_dependency(project.id, "zlib", "1.3") is False
        _assert_invariant(registry)

    def test_remove_library_drops_dangling_edges(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"))
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))

        registry.remove_library("zlib:1.3")
        assert project.dependencies == []
        _assert_invariant(registry)

    def test_clean_stale_projects(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        alive = temp_dir / "alive"
        alive.mkdir()
        kept = registry.add_project(str(alive))
        gone = registry.add_project(str(temp_dir / "gone"))
        registry.add_dependency(gone.id, Dependency("zlib", "1.3", "x"))

        assert registry.clean_stale_projects() == [gone.id]
        assert list(registry.projects) == [kept.id]
        assert registry.get_unreferenced_libraries()[0].key == "zlib:1.3"

    def test_rebuild_references_fixes_drift(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"))
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))
        registry.get_library("zlib:1.3").referenced_by = ["fantasma"]

        assert registry.check_consistency() != []
        assert registry.rebuild_references() == 1
        _assert_invariant(registry)


class TestQueries:

    def test_unused_libraries_respects_days(self, registry):
        old = _add_lib(registry, "old", "1")
        _add_lib(registry, "new", "1")
        old.unlinked_at = (datetime.now() - timedelta(days=40)).isoformat()

        assert [lib.key for lib in registry.get_unused_libraries(30)] == ["old:1"]

    def test_space_stats(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3", size=100)
        _add_lib(registry, "openssl", "3.0", size=50)
        project = registry.add_project(str(temp_dir / "a"))
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))

        stats = registry.get_space_stats()
        assert stats["total_size"] == 150
        assert stats["referenced_size"] == 100
        assert stats["unreferenced_size"] == 50
        assert stats["unreferenced_count"] == 1
        assert registry.get_project_size(project.id) == 100


class TestPersistence:

    @pytest.mark.registry
    def test_save_and_load(self, registry, temp_dir):
        _add_lib(registry, "zlib", "1.3")
        project = registry.add_project(str(temp_dir / "a"), platforms=["ubuntu"])
        registry.add_dependency(project.id, Dependency("zlib", "1.3", "x"))
        registry.save()

        loaded = Registry(str(registry.registry_file)).load()
        assert loaded.get_project(project.id).platforms == ["ubuntu"]
        assert loaded.get_library("zlib:1.3").referenced_by == [project.id]
        _assert_invariant(loaded)

    def test_missing_file_is_empty(self, registry):
        registry.load()
        assert registry.projects == {}
        assert registry.libraries == {}

    @pytest.mark.registry
    @pytest.mark.critical
    def test_corrupt_file_raises(self, registry):
        registry.registry_file.write_text("{ roto")
        with pytest.raises(RegistryCorruptError):
            registry.load()

    def test_invalid_structure_raises(self, registry):
        registry.registry_file.write_text(json.dumps({"version": "1.0", "projects": []}))
        with pytest.raises(RegistryCorruptError):
            registry.load()

    @pytest.mark.registry
    @pytest.mark.lock
    def test_load_waits_for_file_lock(self, registry):
        _add_lib(registry, "zlib", "1.3")
        registry.save()

        writer = FileLock(registry.registry_file)
        writer.acquire()
        try:
            with pytest.raises(LockTimeoutError):
                Registry(str(registry.registry_file)).load()
        finally:
            writer.release()
        assert "zlib:1.3" in Registry(str(registry.registry_file)).load().libraries

    @pytest.mark.registry
    @pytest.mark.transaction
    def test_save_in_transaction_is_reversible(self, registry, dock_home):
        _add_lib(registry, "zlib", "1.3")
        registry.save()
        before = registry.registry_file.read_text()

        tx = Transaction("test", home=str(dock_home)).begin()
        _add_lib(registry, "openssl", "3.0")
        registry.save(tx)
        assert "openssl" in registry.registry_file.read_text()

        assert tx.rollback() == []
        assert registry.registry_file.read_text() == before
