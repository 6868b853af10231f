"""
libdock - Test Fixtures
=======================
Fixtures compartidos para el test suite.

Uso: pytest ejecuta este archivo automáticamente antes de cada test.
"""

import sys
import json
import shutil
import tempfile
import pytest
from pathlib import Path


# ============================================================================
# Configuración de paths
# ============================================================================

# Permite ejecutar los tests sin instalar el paquete
REPO_ROOT = Path(__file__).parent.parent
SRC_DIR = REPO_ROOT / "src"

sys.path.insert(0, str(SRC_DIR))


# ============================================================================
# Fixtures de entorno
# ============================================================================

@pytest.fixture
def temp_dir():
    """Directorio temporal para tests."""
    d = tempfile.mkdtemp(prefix="libdock_test_")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(autouse=True)
def allow_temp_paths(monkeypatch):
    """
    Los directorios temporales viven en /tmp o /var, que están en la lista
    de destinos prohibidos; se quitan para que init/migrate los acepten.
    """
    import libdock.paths
    allowed = [p for p in libdock.paths.FORBIDDEN_PATHS_UNIX if p not in ('/tmp', '/var')]
    monkeypatch.setattr(libdock.paths, "FORBIDDEN_PATHS_UNIX", allowed)


@pytest.fixture(autouse=True)
def reset_transaction_state():
    """Estado de proceso (transacción activa, señal diferida) limpio por test."""
    from libdock import transaction
    transaction.clear_interrupt()
    transaction._set_active(None)
    yield
    transaction.clear_interrupt()
    transaction._set_active(None)


@pytest.fixture
def dock_home(temp_dir, monkeypatch):
    """Directorio de estado aislado vía LIBDOCK_HOME."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setenv("LIBDOCK_HOME", str(home))
    return home


@pytest.fixture
def store_root(temp_dir):
    return temp_dir / "store"


# ============================================================================
# Fixtures de componentes libdock
# ============================================================================

@pytest.fixture
def dock(dock_home, store_root):
    """Dock inicializado con el store en store_root."""
    from libdock.dock import Dock
    d = Dock(str(dock_home))
    d.init(str(store_root))
    return d


@pytest.fixture
def store(store_root):
    from libdock.store import Store
    s = Store(str(store_root))
    s.ensure_root()
    return s


@pytest.fixture
def registry(dock_home):
    from libdock.registry import Registry
    return Registry(str(dock_home / "registry.json"))


@pytest.fixture
def make_library(temp_dir):
    """
    Factory de directorios de librería de ejemplo.

    Uso: make_library("zlib", files={"zlib.h": "..."}) -> Path
    """
    counter = {"n": 0}

    def _make(name: str = "lib", files=None, parent: Path = None) -> Path:
        counter["n"] += 1
        root = parent or (temp_dir / "sources" / f"{name}-{counter['n']}")
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {"include/" + name + ".h": f"// {name}\n"}).items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return root

    return _make


@pytest.fixture
def make_project(temp_dir):
    """
    Factory de proyectos con manifiesto libdock.json.

    Uso: make_project("app", [{"name": "zlib", "revision": "1.3", "source": "..."}])
    """
    def _make(name: str, dependencies, platforms=None) -> Path:
        project = temp_dir / "projects" / name
        project.mkdir(parents=True, exist_ok=True)
        manifest = {"dependencies": dependencies}
        if platforms is not None:
            manifest["platforms"] = platforms
        (project / "libdock.json").write_text(json.dumps(manifest))
        return project

    return _make
