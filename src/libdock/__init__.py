"""
libdock - Store centralizado de librerías
=========================================
Un único store deduplicado de versiones de librerías de terceros; los
proyectos las consumen mediante symlinks en lugar de copias privadas.

Módulos principales:
- store: árbol ``<root>/<lib>/<revision>`` con materialización stage-then-rename
- registry: grafo proyecto <-> librería con conteo de referencias
- transaction: log durable de pasos reversibles con recuperación
- lock_manager: file lock y lock global entre procesos (portalocker + psutil)
- linker: symlinks que nunca sobrescriben ni borran directorios reales
- dock: operaciones compuestas (link, unlink, clean, migrate, verify, repair)

REQUISITO: pip install portalocker psutil jsonschema click tabulate
"""

__version__ = "1.0.0"

from .errors import (
    LibDockError, UnsafePathError, InsufficientSpaceError, LockTimeoutError,
    NotFoundError, AlreadyExistsError, NotASymlinkError, ConflictError,
    PartialRollbackError, ExitCode,
)
from .lock_manager import FileLock, GlobalLock, LockInfo, with_file_lock, with_global_lock
from .transaction import Step, StepKind, Transaction, TransactionPhase, recover_pending
from .store import Store, StoredLibrary, get_library_path
from .registry import Registry, Project, Library, Dependency
from .config import Config, ConfigManager
from .dock import Dock

__all__ = [
    'LibDockError', 'UnsafePathError', 'InsufficientSpaceError', 'LockTimeoutError',
    'NotFoundError', 'AlreadyExistsError', 'NotASymlinkError', 'ConflictError',
    'PartialRollbackError', 'ExitCode',
    'FileLock', 'GlobalLock', 'LockInfo', 'with_file_lock', 'with_global_lock',
    'Step', 'StepKind', 'Transaction', 'TransactionPhase', 'recover_pending',
    'Store', 'StoredLibrary', 'get_library_path',
    'Registry', 'Project', 'Library', 'Dependency',
    'Config', 'ConfigManager',
    'Dock',
]
