#!/usr/bin/env python3
"""
libdock - Store
===============
Árbol de librerías inmutables ``<root>/<lib>/<revision>/...``.

La materialización es stage-then-rename: la copia se hace en
``<root>/.staging/<uuid>`` y se renombra al slot final, así una caída
durante la copia solo deja un temporal huérfano, nunca una entrada a
medio escribir. Las entradas que empiezan por ``.`` (staging, papelera)
no son librerías.
"""

import os
import uuid
import shutil
import logging
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Union

from .errors import AlreadyExistsError, NotFoundError
from .fs_utils import ProgressCallback, copy_tree, get_dir_size, remove_path
from .paths import resolve_path
from .transaction import Step, Transaction

logger = logging.getLogger('LIBDOCK.Store')

STAGING_DIR_NAME = ".staging"
TRASH_DIR_NAME = ".trash"


def get_library_path(root: Union[str, Path], lib_name: str, revision: str) -> str:
    """Ruta del slot de una librería (sin I/O)"""
    return os.path.join(str(root), lib_name, revision)


def validate_component(value: str, what: str) -> None:
    """
    Un nombre o revisión debe ser un único componente de ruta visible.

    Raises:
        ValueError: Si contiene separadores, es vacío, '.'/'..' u oculto
    """
    if not value or value in ('.', '..') or value.startswith('.'):
        raise ValueError(f"{what} inválido: {value!r}")
    if '/' in value or '\\' in value or '\x00' in value:
        raise ValueError(f"{what} no puede contener separadores: {value!r}")


@dataclass
class StoredLibrary:
    """Librería presente en disco"""
    lib_name: str
    revision: str
    size: int
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Store:
    """Operaciones sobre el directorio del store"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(resolve_path(str(root)))
        self.staging_dir = self.root / STAGING_DIR_NAME
        self.trash_dir = self.root / TRASH_DIR_NAME

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def library_path(self, lib_name: str, revision: str) -> Path:
        return Path(get_library_path(self.root, lib_name, revision))

    def relative_path(self, lib_name: str, revision: str) -> str:
        """Ruta relativa a la raíz, tal como se guarda en el registry"""
        return f"{lib_name}/{revision}"

    def exists(self, lib_name: str, revision: str) -> bool:
        return self.library_path(lib_name, revision).is_dir()

    def get_size(self, lib_name: str, revision: str) -> int:
        path = self.library_path(lib_name, revision)
        if not path.is_dir():
            raise NotFoundError(f"{lib_name}@{revision} no está en el store")
        return get_dir_size(path)

    def add(self, lib_name: str, revision: str, source_dir: Union[str, Path],
            tx: Optional[Transaction] = None,
            on_progress: Optional[ProgressCallback] = None) -> int:
        """
        Materializa una librería copiando ``source_dir``.

        Args:
            lib_name: Nombre de la librería
            revision: Revisión (commit, tag...)
            source_dir: Directorio ya materializado
            tx: Transacción en curso (registra file_copy)
            on_progress: callback(bytes_copiados, bytes_totales)

        Returns:
            Tamaño en bytes de la librería almacenada

        Raises:
            AlreadyExistsError: Si el slot ya existe
            NotFoundError: Si ``source_dir`` no es un directorio
        """
        validate_component(lib_name, "Nombre de librería")
        validate_component(revision, "Revisión")

        source = Path(source_dir)
        if not source.is_dir():
            raise NotFoundError(f"Directorio origen no encontrado: {source}")

        target = self.library_path(lib_name, revision)
        if os.path.lexists(target):
            raise AlreadyExistsError(f"{lib_name}@{revision} ya está en el store")

        staging = self.staging_dir / uuid.uuid4().hex
        if tx is not None:
            tx.add_step(Step.file_copy(str(target), staging=str(staging)))

        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            copy_tree(source, staging, on_progress)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        size = get_dir_size(target)
        logger.info(f"Librería almacenada: {lib_name}@{revision} ({size} bytes)")
        return size

    def remove(self, lib_name: str, revision: str, tx: Optional[Transaction] = None) -> int:
        """
        Elimina el slot de una librería.

        Con ``tx`` el slot se mueve a la papelera del store (reversible);
        la transacción lo purga al confirmar.

        Returns:
            Bytes liberados

        Raises:
            NotFoundError: Si la librería no está en el store
        """
        target = self.library_path(lib_name, revision)
        if not target.is_dir() or os.path.islink(target):
            raise NotFoundError(f"{lib_name}@{revision} no está en el store")

        size = get_dir_size(target)
        if tx is not None:
            backup = self.trash_dir / tx.transaction_id / uuid.uuid4().hex
            tx.remove_with_backup(target, backup)
        else:
            shutil.rmtree(target)

        self._prune_empty(target.parent)
        logger.info(f"Librería eliminada: {lib_name}@{revision} ({size} bytes)")
        return size

    def _prune_empty(self, lib_dir: Path) -> None:
        if lib_dir == self.root or not lib_dir.is_dir():
            return
        try:
            if not any(lib_dir.iterdir()):
                lib_dir.rmdir()
        except OSError as e:
            logger.debug(f"No se pudo podar {lib_dir}: {e}")

    def list_libraries(self) -> List[StoredLibrary]:
        """Todas las librerías presentes, recorriendo la raíz"""
        if not self.root.is_dir():
            return []

        result = []
        for lib_entry in sorted(os.scandir(self.root), key=lambda e: e.name):
            if lib_entry.name.startswith('.') or not lib_entry.is_dir(follow_symlinks=False):
                continue
            for rev_entry in sorted(os.scandir(lib_entry.path), key=lambda e: e.name):
                if rev_entry.name.startswith('.') or not rev_entry.is_dir(follow_symlinks=False):
                    continue
                result.append(StoredLibrary(
                    lib_name=lib_entry.name,
                    revision=rev_entry.name,
                    size=get_dir_size(rev_entry.path),
                    path=rev_entry.path,
                ))
        return result

    def get_total_size(self) -> int:
        return sum(lib.size for lib in self.list_libraries())

    def list_leftovers(self) -> List[str]:
        """Temporales de staging y papelera que quedaron de operaciones caídas"""
        leftovers = []
        for area in (self.staging_dir, self.trash_dir):
            if area.is_dir():
                leftovers.extend(str(p) for p in sorted(area.iterdir()))
        return leftovers

    def clean_staging(self) -> List[str]:
        """
        Elimina staging y papelera. Solo es seguro sin transacción pendiente,
        porque la papelera guarda los respaldos de sus pasos file_delete.
        """
        removed = self.list_leftovers()
        for path in removed:
            remove_path(path)
        for area in (self.staging_dir, self.trash_dir):
            if area.is_dir() and not any(area.iterdir()):
                area.rmdir()
        if removed:
            logger.info(f"Temporales eliminados: {len(removed)}")
        return removed
