#!/usr/bin/env python3
"""
libdock - Utilidades de sistema de archivos
===========================================
Escritura atómica de JSON (temp único + fsync + os.replace), tamaños de
directorio, copia con progreso y espacio libre en disco.
"""

import os
import errno
import json
import uuid
import shutil
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

import psutil

logger = logging.getLogger('LIBDOCK.FsUtils')

PathLike = Union[str, Path]
ProgressCallback = Callable[[int, int], None]


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Escribe JSON de forma atómica (temp único + os.replace)"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_name(f"{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
    try:
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, path)
    finally:
        try:
            if temp_file.exists():
                temp_file.unlink()
        except OSError:
            pass


def read_json(path: PathLike) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def get_dir_size(path: PathLike) -> int:
    """Suma de tamaños (lstat) bajo ``path`` sin seguir symlinks"""
    total = 0
    for root, dirs, files in os.walk(path, followlinks=False):
        for name in files + [d for d in dirs if os.path.islink(os.path.join(root, d))]:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                continue
    return total


def remove_path(path: PathLike) -> bool:
    """
    Elimina un symlink, archivo o directorio.

    Un symlink se elimina como entrada, nunca se recorre su destino.

    Returns:
        True si había algo que eliminar
    """
    p = str(path)
    if os.path.islink(p) or os.path.isfile(p):
        os.unlink(p)
        return True
    if os.path.isdir(p):
        shutil.rmtree(p)
        return True
    return False


def clear_dir(path: PathLike) -> None:
    """Vacía un directorio conservándolo"""
    for entry in os.scandir(path):
        remove_path(entry.path)


def move_path(src: PathLike, dst: PathLike) -> None:
    """Renombra; entre dispositivos distintos recurre a copia + borrado"""
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.debug(f"Rename entre dispositivos, copiando: {src} -> {dst}")
        shutil.move(str(src), str(dst))


def copy_tree(src: PathLike, dst: PathLike,
              on_progress: Optional[ProgressCallback] = None) -> int:
    """
    Copia un árbol preservando symlinks internos.

    Args:
        src: Directorio origen
        dst: Directorio destino (se crea; puede existir vacío)
        on_progress: callback(bytes_copiados, bytes_totales)

    Returns:
        Bytes copiados
    """
    total = get_dir_size(src) if on_progress else 0
    copied = 0

    def _copy(s: str, d: str) -> str:
        nonlocal copied
        result = shutil.copy2(s, d, follow_symlinks=False)
        copied += os.lstat(s).st_size
        if on_progress:
            on_progress(copied, total)
        return result

    shutil.copytree(str(src), str(dst), symlinks=True, copy_function=_copy, dirs_exist_ok=True)
    return copied


def get_free_space(path: PathLike) -> int:
    """Bytes libres en el volumen que contendría ``path``"""
    existing = Path(path)
    while not existing.exists() and existing.parent != existing:
        existing = existing.parent
    return psutil.disk_usage(str(existing)).free


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{int(size)} {unit}" if unit == 'B' else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
