#!/usr/bin/env python3
"""
libdock - Errores y códigos de salida
=====================================
Taxonomía de excepciones compartida por store, registry, linker,
transacciones y locks.

Cada excepción lleva su propio ``exit_code`` para que el CLI pueda
terminar el proceso con el código adecuado sin conocer cada caso.
"""

from enum import IntEnum
from typing import List, Optional


class ExitCode(IntEnum):
    """Códigos de salida del proceso (compatibles con sysexits.h)"""
    SUCCESS = 0
    GENERAL_ERROR = 1
    MISUSE = 2
    NOT_INITIALIZED = 10
    LOCK_HELD = 11
    DATAERR = 65
    IOERR = 74
    CONFIG = 78
    SIGINT = 130
    SIGTERM = 143


class LibDockError(Exception):
    """Error base de libdock"""
    exit_code = ExitCode.GENERAL_ERROR


class UnsafePathError(LibDockError):
    """El destino de migración no pasa la lista de seguridad"""
    pass


class InsufficientSpaceError(LibDockError):
    """Espacio libre insuficiente en el destino"""
    exit_code = ExitCode.IOERR

    def __init__(self, required: int, available: int, path: str):
        self.required = required
        self.available = available
        self.path = path
        super().__init__(
            f"Espacio insuficiente en {path}: se requieren {required} bytes, "
            f"disponibles {available} bytes"
        )


class LockTimeoutError(LibDockError):
    """No se pudo adquirir el lock tras los reintentos"""
    exit_code = ExitCode.LOCK_HELD


class NotFoundError(LibDockError):
    """Entrada inexistente en store, registry o disco"""
    pass


class AlreadyExistsError(LibDockError):
    """La ruta o el slot ya está ocupado"""
    pass


class NotASymlinkError(LibDockError):
    """Se intentó operar como enlace sobre algo que no es un symlink"""
    pass


class ConflictError(LibDockError):
    """Ya existe una transacción pendiente"""
    pass


class PartialRollbackError(LibDockError):
    """Uno o más pasos no pudieron deshacerse durante el rollback"""

    def __init__(self, errors: List[str], transaction_id: Optional[str] = None):
        self.errors = list(errors)
        self.transaction_id = transaction_id
        super().__init__(
            f"Rollback incompleto de {transaction_id or 'transacción'}: "
            f"{len(self.errors)} paso(s) fallaron. Ejecute 'libdock repair'."
        )


class RegistryCorruptError(LibDockError):
    """El documento del registry no se puede interpretar"""
    exit_code = ExitCode.DATAERR


class ManifestError(LibDockError):
    """Manifiesto de dependencias inválido"""
    exit_code = ExitCode.DATAERR


class ConfigError(LibDockError):
    """Configuración inválida"""
    exit_code = ExitCode.CONFIG


class NotInitializedError(LibDockError):
    """libdock no ha sido inicializado"""
    exit_code = ExitCode.NOT_INITIALIZED

    def __init__(self, message: str = "libdock no está inicializado. Ejecute 'libdock init'."):
        super().__init__(message)


class OperationInterrupted(LibDockError):
    """Señal recibida: la operación se deshace en el siguiente paso"""

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_code = 128 + int(signum)
        super().__init__(f"Operación interrumpida por señal {int(signum)}")
