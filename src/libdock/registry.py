#!/usr/bin/env python3
"""
libdock - Registry
==================
Grafo persistido proyecto <-> librería usado para el conteo de referencias.

Invariante: ``Library.referenced_by`` es exactamente el conjunto de
proyectos cuya lista de dependencias contiene esa clave. Todos los
mutadores actualizan ambos lados; ninguno persiste por sí mismo, hace
falta ``save()`` al final de la operación.
"""

import os
import hashlib
import logging
from pathlib import Path
from datetime import datetime, timedelta
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError, RegistryCorruptError
from .fs_utils import atomic_write_json, read_json
from .lock_manager import with_file_lock
from .paths import canonicalize, get_registry_path, resolve_path
from .schemas import validate_document
from .transaction import Transaction

logger = logging.getLogger('LIBDOCK.Registry')

REGISTRY_VERSION = "1.0"


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class Dependency:
    """Arista proyecto -> librería"""
    lib_name: str
    revision: str
    linked_path: str

    @property
    def key(self) -> str:
        return Registry.get_library_key(self.lib_name, self.revision)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Dependency':
        return cls(**data)


@dataclass
class Project:
    """Directorio consumidor registrado"""
    path: str
    last_linked: Optional[str] = None
    platforms: List[str] = field(default_factory=list)
    dependencies: List[Dependency] = field(default_factory=list)

    @property
    def id(self) -> str:
        return Registry.hash_path(self.path)

    def dependency_keys(self) -> List[str]:
        return [d.key for d in self.dependencies]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "last_linked": self.last_linked,
            "platforms": list(self.platforms),
            "dependencies": [d.to_dict() for d in self.dependencies],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        return cls(
            path=data["path"],
            last_linked=data.get("last_linked"),
            platforms=list(data.get("platforms", [])),
            dependencies=[Dependency.from_dict(d) for d in data.get("dependencies", [])],
        )


@dataclass
class Library:
    """Versión almacenada de una librería"""
    lib_name: str
    revision: str
    path: str
    size: int = 0
    referenced_by: List[str] = field(default_factory=list)
    created_at: Optional[str] = None
    last_access: Optional[str] = None
    unlinked_at: Optional[str] = None

    @property
    def key(self) -> str:
        return Registry.get_library_key(self.lib_name, self.revision)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Library':
        return cls(**data)


class Registry:
    """Grafo en memoria + persistencia en registry.json"""

    def __init__(self, path: Optional[str] = None):
        self.registry_file = Path(path or get_registry_path())
        self.projects: Dict[str, Project] = {}
        self.libraries: Dict[str, Library] = {}

    # ========================================================================
    # Claves
    # ========================================================================

    @staticmethod
    def hash_path(path: str) -> str:
        """ID estable de proyecto: hash de la ruta canónica"""
        return hashlib.sha256(canonicalize(path).encode('utf-8')).hexdigest()[:16]

    @staticmethod
    def get_library_key(lib_name: str, revision: str) -> str:
        return f"{lib_name}:{revision}"

    @staticmethod
    def parse_library_key(key: str) -> Tuple[str, str]:
        """Divide por el último ':'"""
        lib_name, sep, revision = key.rpartition(':')
        if not sep or not lib_name or not revision:
            raise ValueError(f"Clave de librería inválida: {key}")
        return lib_name, revision

    # ========================================================================
    # Persistencia
    # ========================================================================

    def load(self) -> 'Registry':
        """
        Carga el grafo bajo el file lock de registry.json. Archivo ausente =
        grafo vacío.

        Raises:
            RegistryCorruptError: Si el archivo no se puede interpretar
        """
        self.projects = {}
        self.libraries = {}
        if not self.registry_file.exists():
            return self

        try:
            data = with_file_lock(self.registry_file, lambda: read_json(self.registry_file))
        except FileNotFoundError:
            return self
        except ValueError as e:
            raise RegistryCorruptError(f"registry.json corrupto ({self.registry_file}): {e}")

        errors = validate_document(data, "registry")
        if errors:
            raise RegistryCorruptError(f"registry.json inválido: {'; '.join(errors[:5])}")

        for project_id, project_data in data["projects"].items():
            self.projects[project_id] = Project.from_dict(project_data)
        for key, library_data in data["libraries"].items():
            self.libraries[key] = Library.from_dict(library_data)

        logger.debug(f"Registry cargado: {len(self.projects)} proyectos, {len(self.libraries)} librerías")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": REGISTRY_VERSION,
            "projects": {pid: p.to_dict() for pid, p in sorted(self.projects.items())},
            "libraries": {key: lib.to_dict() for key, lib in sorted(self.libraries.items())},
        }

    def save(self, tx: Optional[Transaction] = None) -> None:
        """
        Escribe el grafo completo bajo el file lock de registry.json.

        Con ``tx`` se registra antes un paso registry_mutation con una
        copia del documento anterior.
        """
        def _write() -> None:
            if tx is not None:
                tx.snapshot_document(self.registry_file)
            atomic_write_json(self.registry_file, self.to_dict())

        with_file_lock(self.registry_file, _write)
        logger.info(f"Registry guardado: {len(self.projects)} proyectos, {len(self.libraries)} librerías")

    # ========================================================================
    # Referencias
    # ========================================================================

    def _ref(self, key: str, project_id: str) -> None:
        library = self.libraries.get(key)
        if library is None:
            raise NotFoundError(f"Librería no registrada: {key}")
        if project_id not in library.referenced_by:
            library.referenced_by.append(project_id)
            library.referenced_by.sort()
        library.unlinked_at = None
        library.last_access = _now()

    def _unref(self, key: str, project_id: str) -> None:
        library = self.libraries.get(key)
        if library is None or project_id not in library.referenced_by:
            return
        library.referenced_by.remove(project_id)
        if not library.referenced_by:
            library.unlinked_at = _now()

    # ========================================================================
    # Proyectos
    # ========================================================================

    def add_project(self, path: str, platforms: Optional[List[str]] = None) -> Project:
        """Registra (o actualiza) el proyecto de ``path``"""
        project_id = self.hash_path(path)
        project = self.projects.get(project_id)
        if project is None:
            project = Project(path=resolve_path(path))
            self.projects[project_id] = project
            logger.info(f"Proyecto registrado: {project.path} ({project_id})")
        if platforms is not None:
            project.platforms = list(platforms)
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    def get_project_by_path(self, path: str) -> Optional[Project]:
        return self.projects.get(self.hash_path(path))

    def remove_project(self, project_id: str) -> Optional[Project]:
        """Elimina el proyecto y todas sus aristas"""
        project = self.projects.pop(project_id, None)
        if project is None:
            return None
        for dep in project.dependencies:
            self._unref(dep.key, project_id)
        logger.info(f"Proyecto eliminado del registry: {project.path}")
        return project

    def list_projects(self) -> List[Project]:
        return sorted(self.projects.values(), key=lambda p: p.path)

    def set_dependencies(self, project_id: str, dependencies: List[Dependency]) -> Project:
        """
        Reemplaza la lista de dependencias del proyecto.

        Entradas repetidas para la misma clave se descartan (gana la primera).

        Raises:
            NotFoundError: Proyecto o librería no registrados
        """
        project = self.projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Proyecto no registrado: {project_id}")

        unique: List[Dependency] = []
        seen = set()
        for dep in dependencies:
            if dep.key in seen:
                continue
            if dep.key not in self.libraries:
                raise NotFoundError(f"Librería no registrada: {dep.key}")
            seen.add(dep.key)
            unique.append(dep)

        for key in set(project.dependency_keys()) - seen:
            self._unref(key, project_id)
        project.dependencies = unique
        for key in seen:
            self._ref(key, project_id)
        project.last_linked = _now()
        return project

    def add_dependency(self, project_id: str, dependency: Dependency) -> None:
        project = self.projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Proyecto no registrado: {project_id}")
        self._ref(dependency.key, project_id)
        for i, existing in enumerate(project.dependencies):
            if existing.key == dependency.key:
                project.dependencies[i] = dependency
                return
        project.dependencies.append(dependency)

    def remove_dependency(self, project_id: str, lib_name: str, revision: str) -> bool:
        project = self.projects.get(project_id)
        if project is None:
            return False
        key = self.get_library_key(lib_name, revision)
        before = len(project.dependencies)
        project.dependencies = [d for d in project.dependencies if d.key != key]
        self._unref(key, project_id)
        return len(project.dependencies) != before

    def clean_stale_projects(self) -> List[str]:
        """
        Elimina proyectos cuyo directorio ya no existe.

        Returns:
            IDs de los proyectos eliminados
        """
        stale = [pid for pid, p in self.projects.items() if not os.path.isdir(p.path)]
        for project_id in stale:
            self.remove_project(project_id)
        if stale:
            logger.info(f"Proyectos obsoletos eliminados: {len(stale)}")
        return stale

    # ========================================================================
    # Librerías
    # ========================================================================

    def add_library(self, library: Library) -> Library:
        """Registra una librería; si ya existe actualiza tamaño y ruta"""
        existing = self.libraries.get(library.key)
        if existing is not None:
            existing.size = library.size
            existing.path = library.path
            return existing
        now = _now()
        library.created_at = library.created_at or now
        library.last_access = library.last_access or now
        if not library.referenced_by and library.unlinked_at is None:
            library.unlinked_at = now
        self.libraries[library.key] = library
        return library

    def get_library(self, key: str) -> Optional[Library]:
        return self.libraries.get(key)

    def remove_library(self, key: str) -> Optional[Library]:
        """Elimina el registro; las aristas que aún lo apunten se descartan"""
        library = self.libraries.pop(key, None)
        if library is None:
            return None
        for project_id in library.referenced_by:
            project = self.projects.get(project_id)
            if project is not None:
                logger.warning(f"{key} seguía referenciada por {project.path}; arista descartada")
                project.dependencies = [d for d in project.dependencies if d.key != key]
        return library

    def touch_library(self, key: str) -> None:
        library = self.libraries.get(key)
        if library is not None:
            library.last_access = _now()

    def list_libraries(self) -> List[Library]:
        return [self.libraries[k] for k in sorted(self.libraries)]

    def get_unreferenced_libraries(self) -> List[Library]:
        return [lib for lib in self.list_libraries() if not lib.referenced_by]

    def get_unused_libraries(self, days: int) -> List[Library]:
        """Sin referencias desde hace más de ``days`` días"""
        cutoff = datetime.now() - timedelta(days=days)
        result = []
        for library in self.get_unreferenced_libraries():
            since = library.unlinked_at or library.created_at
            if since is None or datetime.fromisoformat(since) < cutoff:
                result.append(library)
        return result

    def get_project_size(self, project_id: str) -> int:
        project = self.projects.get(project_id)
        if project is None:
            return 0
        return sum(self.libraries[k].size for k in project.dependency_keys() if k in self.libraries)

    def get_space_stats(self) -> Dict[str, int]:
        unreferenced = self.get_unreferenced_libraries()
        total = sum(lib.size for lib in self.libraries.values())
        unreferenced_size = sum(lib.size for lib in unreferenced)
        return {
            "total_libraries": len(self.libraries),
            "total_projects": len(self.projects),
            "total_size": total,
            "referenced_size": total - unreferenced_size,
            "unreferenced_size": unreferenced_size,
            "unreferenced_count": len(unreferenced),
        }

    # ========================================================================
    # Consistencia
    # ========================================================================

    def check_consistency(self) -> List[str]:
        """Diferencias entre las dependencias de los proyectos y referenced_by"""
        issues = []
        for project_id, project in self.projects.items():
            for key in project.dependency_keys():
                library = self.libraries.get(key)
                if library is None:
                    issues.append(f"{project.path} depende de {key}, que no está registrada")
                elif project_id not in library.referenced_by:
                    issues.append(f"{key} no lista a {project.path} en referenced_by")
        for key, library in self.libraries.items():
            for project_id in library.referenced_by:
                project = self.projects.get(project_id)
                if project is None:
                    issues.append(f"{key} referenciada por proyecto inexistente {project_id}")
                elif key not in project.dependency_keys():
                    issues.append(f"{key} lista a {project.path} sin dependencia correspondiente")
        return issues

    def rebuild_references(self) -> int:
        """
        Reconstruye referenced_by a partir de las dependencias.

        Returns:
            Número de librerías corregidas
        """
        expected: Dict[str, List[str]] = {key: [] for key in self.libraries}
        for project_id, project in self.projects.items():
            project.dependencies = [d for d in project.dependencies if d.key in self.libraries]
            for key in project.dependency_keys():
                expected[key].append(project_id)

        fixed = 0
        for key, library in self.libraries.items():
            refs = sorted(set(expected[key]))
            if refs != library.referenced_by:
                library.referenced_by = refs
                if not refs and library.unlinked_at is None:
                    library.unlinked_at = _now()
                fixed += 1
        return fixed
