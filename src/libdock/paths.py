#!/usr/bin/env python3
"""
libdock - Utilidades de rutas
=============================
Expansión/contracción de ``~``, ubicación del directorio de configuración,
canonicalización de rutas y verificación de destinos peligrosos.

Layout del directorio de configuración (``$LIBDOCK_HOME`` o ``~/.libdock``):

    config.json                 configuración
    registry.json               grafo proyecto <-> librería
    libdock.lock                centinela del lock global
    transactions/pending.json   marcador de transacción en curso
"""

import os
import sys
from typing import Optional, Tuple

from .errors import UnsafePathError

HOME_ENV_VAR = "LIBDOCK_HOME"
DEFAULT_DIR_NAME = ".libdock"

CONFIG_FILE_NAME = "config.json"
REGISTRY_FILE_NAME = "registry.json"
GLOBAL_LOCK_FILE_NAME = "libdock.lock"
TRANSACTIONS_DIR_NAME = "transactions"

FORBIDDEN_PATHS_UNIX = ['/etc', '/usr', '/bin', '/sbin', '/var', '/tmp', '/root', '/System']
FORBIDDEN_PATHS_WIN = [
    'C:\\Windows',
    'C:\\Program Files',
    'C:\\Program Files (x86)',
    'C:\\ProgramData',
]


def is_windows() -> bool:
    return sys.platform.startswith('win')


def is_case_insensitive() -> bool:
    """Windows y macOS (APFS por defecto) no distinguen mayúsculas"""
    return is_windows() or sys.platform == 'darwin'


def get_home_dir() -> str:
    return os.path.expanduser('~')


# ============================================================================
# Directorio de configuración
# ============================================================================

def get_config_dir() -> str:
    """Directorio de estado de libdock (respeta LIBDOCK_HOME)"""
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return resolve_path(override)
    return os.path.join(get_home_dir(), DEFAULT_DIR_NAME)


def get_config_path(home: Optional[str] = None) -> str:
    return os.path.join(home or get_config_dir(), CONFIG_FILE_NAME)


def get_registry_path(home: Optional[str] = None) -> str:
    return os.path.join(home or get_config_dir(), REGISTRY_FILE_NAME)


def get_transactions_dir(home: Optional[str] = None) -> str:
    return os.path.join(home or get_config_dir(), TRANSACTIONS_DIR_NAME)


def get_global_lock_path(home: Optional[str] = None) -> str:
    return os.path.join(home or get_config_dir(), GLOBAL_LOCK_FILE_NAME)


# ============================================================================
# Expansión y canonicalización
# ============================================================================

def expand_home(p: str) -> str:
    """Expande ``~`` inicial al directorio home"""
    if p == '~':
        return get_home_dir()
    if p.startswith('~/') or p.startswith('~\\'):
        return os.path.join(get_home_dir(), p[2:])
    return p


def shrink_home(p: str) -> str:
    """Inversa de expand_home: reemplaza el home por ``~`` para persistir"""
    home = get_home_dir()
    if p == home:
        return '~'
    if p.startswith(home + os.sep):
        return '~' + p[len(home):]
    return p


def resolve_path(p: str) -> str:
    """Ruta absoluta normalizada con ``~`` expandido"""
    return os.path.normpath(os.path.abspath(expand_home(p)))


def canonicalize(p: str) -> str:
    """
    Forma canónica de una ruta para comparación y hashing.

    Absoluta, sin separadores finales, con separadores normalizados y en
    minúsculas en plataformas que no distinguen mayúsculas.
    """
    resolved = resolve_path(p)
    drive, tail = os.path.splitdrive(resolved)
    tail = tail.replace('\\', '/') if is_windows() else tail
    if len(tail) > 1:
        tail = tail.rstrip('/\\')
    canonical = drive + tail
    if is_windows():
        canonical = os.path.normcase(canonical)
    elif is_case_insensitive():
        canonical = canonical.lower()
    return canonical


def paths_equal(a: str, b: str) -> bool:
    return canonicalize(a) == canonicalize(b)


def is_subpath(child: str, parent: str) -> bool:
    """True si ``child`` está estrictamente dentro de ``parent``"""
    c, p = canonicalize(child), canonicalize(parent)
    if c == p:
        return False
    prefix = p if p.endswith(('/', '\\')) else p + ('\\' if is_windows() else '/')
    return c.startswith(prefix)


# ============================================================================
# Seguridad de destinos
# ============================================================================

def is_path_safe(p: str, current_store: Optional[str] = None) -> Tuple[bool, str]:
    """
    Verifica que una ruta sea un destino aceptable para el store.

    Rechaza la raíz del sistema, directorios de sistema (y su contenido),
    el propio home y la ruta actual del store o cualquier ruta dentro de él.

    Returns:
        (es_segura, motivo)
    """
    if not p or '\x00' in p:
        return False, "Ruta vacía o con caracteres nulos"

    target = canonicalize(p)
    drive, tail = os.path.splitdrive(target)
    if tail in ('/', '\\', ''):
        return False, f"No se puede usar la raíz del sistema: {p}"

    forbidden_paths = FORBIDDEN_PATHS_WIN if is_windows() else FORBIDDEN_PATHS_UNIX
    for forbidden in forbidden_paths:
        if paths_equal(target, forbidden) or is_subpath(target, forbidden):
            return False, f"No se puede usar un directorio de sistema: {forbidden}"

    if paths_equal(target, get_home_dir()):
        return False, "No se puede usar el directorio home directamente"

    if current_store:
        if paths_equal(target, current_store):
            return False, "El destino es la ruta actual del store"
        if is_subpath(target, current_store):
            return False, "El destino está dentro del store actual"

    return True, ""


def ensure_path_safe(p: str, current_store: Optional[str] = None) -> str:
    """
    Igual que is_path_safe pero lanza excepción.

    Returns:
        Ruta absoluta resuelta

    Raises:
        UnsafePathError: Si la ruta no es segura
    """
    safe, reason = is_path_safe(p, current_store)
    if not safe:
        raise UnsafePathError(reason)
    return resolve_path(p)
