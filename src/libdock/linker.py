#!/usr/bin/env python3
"""
libdock - Linker
================
Crea, elimina y valida los symlinks de un proyecto hacia el store.

Invariante de seguridad: nunca se borra ni se sobrescribe algo que no sea
un symlink. ``unlink`` sobre un directorio real falla sin tocarlo.
"""

import os
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .errors import AlreadyExistsError, NotASymlinkError, NotFoundError
from .paths import is_windows, paths_equal

logger = logging.getLogger('LIBDOCK.Linker')

PathLike = Union[str, Path]


class PathStatus(Enum):
    """Estado de la ruta donde debería estar un enlace"""
    LINKED = "linked"
    WRONG_LINK = "wrong_link"
    BROKEN_LINK = "broken_link"
    DIRECTORY = "directory"
    OTHER = "other"
    MISSING = "missing"


def _is_junction(p: str) -> bool:
    isjunction = getattr(os.path, 'isjunction', None)
    return bool(isjunction and isjunction(p))


def is_symlink(path: PathLike) -> bool:
    """True para symlinks (y junctions en Windows), sin seguirlos"""
    p = str(path)
    return os.path.islink(p) or _is_junction(p)


def read_link(path: PathLike) -> Optional[str]:
    """Destino absoluto de un enlace, o None si no es un enlace"""
    p = str(path)
    if not is_symlink(p):
        return None
    target = os.readlink(p)
    if is_windows() and target.startswith('\\\\?\\'):
        target = target[4:]
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(p), target)
    return os.path.normpath(target)


def _create_dir_link(target: str, link_path: str) -> None:
    if not is_windows():
        os.symlink(target, link_path, target_is_directory=True)
        return
    try:
        os.symlink(target, link_path, target_is_directory=True)
    except OSError:
        # Sin privilegios de symlink: junction
        import _winapi
        _winapi.CreateJunction(target, link_path)


def link(target: PathLike, link_path: PathLike) -> None:
    """
    Crea ``link_path`` -> ``target``, creando directorios padre.

    Raises:
        AlreadyExistsError: Si ya existe cualquier entrada en ``link_path``
    """
    lp = str(link_path)
    if os.path.lexists(lp):
        if is_symlink(lp):
            raise AlreadyExistsError(f"Ya existe un enlace en {lp}")
        raise AlreadyExistsError(f"{lp} existe y no es un enlace; no se sobrescribe")

    Path(lp).parent.mkdir(parents=True, exist_ok=True)
    _create_dir_link(str(target), lp)
    logger.debug(f"Enlace creado: {lp} -> {target}")


def unlink(link_path: PathLike) -> None:
    """
    Elimina solo la entrada del enlace.

    Raises:
        NotFoundError: Si no existe nada en ``link_path``
        NotASymlinkError: Si ``link_path`` no es un enlace
    """
    lp = str(link_path)
    if not os.path.lexists(lp):
        raise NotFoundError(f"No existe: {lp}")
    if not is_symlink(lp):
        raise NotASymlinkError(f"{lp} no es un enlace; no se elimina")

    if _is_junction(lp):
        os.rmdir(lp)
    else:
        os.unlink(lp)
    logger.debug(f"Enlace eliminado: {lp}")


def is_valid_link(path: PathLike) -> bool:
    """Enlace cuyo destino existe"""
    return is_symlink(path) and os.path.exists(str(path))


def is_correct_link(path: PathLike, expected_target: PathLike) -> bool:
    target = read_link(path)
    return target is not None and paths_equal(target, str(expected_target))


def get_path_status(path: PathLike, expected_target: Optional[PathLike] = None) -> PathStatus:
    """Clasifica ``path`` respecto del destino esperado"""
    p = str(path)
    if is_symlink(p):
        if not os.path.exists(p):
            return PathStatus.BROKEN_LINK
        if expected_target is not None and not is_correct_link(p, expected_target):
            return PathStatus.WRONG_LINK
        return PathStatus.LINKED
    if os.path.isdir(p):
        return PathStatus.DIRECTORY
    if os.path.lexists(p):
        # Archivo u otra entrada que no es directorio
        return PathStatus.OTHER
    return PathStatus.MISSING
