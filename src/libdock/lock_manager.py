#!/usr/bin/env python3
"""
libdock - Lock Manager
======================
Exclusión mutua entre procesos independientes que comparten un store.

Implementa:
- FileLock: lock sobre un archivo con marcador JSON (``<archivo>.lock``)
- Reclamo de locks abandonados (antigüedad > stale o proceso muerto)
- Reintentos acotados con backoff lineal
- GlobalLock: el mismo primitivo sobre un centinela fijo del store
- Mutex cross-platform con portalocker para que check+write sea atómico
- Identidad de proceso con psutil (pid + create_time, evita PID reuse)

REQUISITO: pip install portalocker psutil
"""

import os
import time
import uuid
import socket
import logging
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, TypeVar, Union

import portalocker
import psutil

from .errors import LockTimeoutError
from .fs_utils import atomic_write_json, read_json
from .paths import get_global_lock_path

logger = logging.getLogger('LIBDOCK.LockManager')

T = TypeVar('T')


@dataclass
class LockInfo:
    """Contenido del marcador de lock"""
    owner_id: str
    pid: int
    process_start_time: Optional[float]
    hostname: str
    acquired_at: str
    operation: str

    def age_seconds(self) -> float:
        return (datetime.now() - datetime.fromisoformat(self.acquired_at)).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LockInfo':
        return cls(**data)


# ============================================================================
# Identidad de procesos
# ============================================================================

def get_process_start_time(pid: int) -> Optional[float]:
    """create_time del proceso, o None si no se puede obtener"""
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def is_process_alive(pid: int, start_time: Optional[float] = None) -> bool:
    """
    Verifica si un proceso sigue vivo.

    Si se conoce ``start_time`` se compara con el create_time actual:
    un PID reciclado por otro proceso cuenta como muerto.
    """
    if not psutil.pid_exists(pid):
        return False
    if start_time is None:
        return True
    try:
        current_start = psutil.Process(pid).create_time()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return abs(current_start - start_time) < 1.0


# ============================================================================
# File lock
# ============================================================================

class FileLock:
    """
    Lock exclusivo sobre un archivo entre procesos.

    El marcador ``<path>.lock`` contiene un LockInfo. Crear el marcador y
    comprobar el existente ocurre dentro de un mutex de portalocker, de modo
    que dos procesos nunca creen el marcador a la vez.
    """

    DEFAULT_RETRIES = 3
    DEFAULT_STALE_SECONDS = 10.0
    DEFAULT_RETRY_WAIT = 0.1
    MUTEX_TIMEOUT_SECONDS = 5.0

    def __init__(self, path: Union[str, Path],
                 retries: Optional[int] = None,
                 stale_seconds: Optional[float] = None,
                 retry_wait: Optional[float] = None,
                 operation: str = "unknown",
                 lock_file: Optional[Union[str, Path]] = None):
        self.path = Path(path)
        self.lock_file = Path(lock_file) if lock_file else self.path.with_name(self.path.name + ".lock")
        self.mutex_file = self.lock_file.with_name(self.lock_file.name + ".mutex")
        self.retries = self.DEFAULT_RETRIES if retries is None else retries
        self.stale_seconds = self.DEFAULT_STALE_SECONDS if stale_seconds is None else stale_seconds
        self.retry_wait = self.DEFAULT_RETRY_WAIT if retry_wait is None else retry_wait
        self.operation = operation

        self._owner_id: Optional[str] = None
        self._last_refresh = 0.0

    @property
    def is_held(self) -> bool:
        return self._owner_id is not None

    @contextmanager
    def _mutex(self):
        """Sección crítica cross-platform sobre ``<marcador>.mutex``"""
        self.mutex_file.parent.mkdir(parents=True, exist_ok=True)
        # 'a+' crea el archivo si no existe
        with portalocker.Lock(str(self.mutex_file), mode="a+", timeout=self.MUTEX_TIMEOUT_SECONDS):
            yield

    def _read_lock(self) -> Optional[LockInfo]:
        if not self.lock_file.exists():
            return None
        try:
            return LockInfo.from_dict(read_json(self.lock_file))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            # Marcador ilegible: se trata como abandonado
            logger.warning(f"Marcador de lock corrupto en {self.lock_file}: {e}")
            return None

    def _is_stale(self, info: LockInfo) -> bool:
        if info.age_seconds() > self.stale_seconds:
            return True
        if info.hostname == socket.gethostname():
            return not is_process_alive(info.pid, info.process_start_time)
        return False

    def _try_acquire(self) -> bool:
        with self._mutex():
            current = self._read_lock()
            if current is not None:
                if not self._is_stale(current):
                    return False
                logger.warning(
                    f"Reclamando lock abandonado {self.lock_file} "
                    f"(PID {current.pid}, operación {current.operation})"
                )

            pid = os.getpid()
            info = LockInfo(
                owner_id=str(uuid.uuid4()),
                pid=pid,
                process_start_time=get_process_start_time(pid),
                hostname=socket.gethostname(),
                acquired_at=datetime.now().isoformat(),
                operation=self.operation,
            )
            atomic_write_json(self.lock_file, info.to_dict())
            self._owner_id = info.owner_id
            self._last_refresh = time.monotonic()
            return True

    def acquire(self) -> None:
        """
        Adquiere el lock con reintentos acotados.

        Raises:
            LockTimeoutError: Si no se obtiene tras ``retries`` reintentos
        """
        for attempt in range(self.retries + 1):
            try:
                if self._try_acquire():
                    logger.debug(f"Lock adquirido: {self.lock_file}")
                    return
            except portalocker.exceptions.LockException as e:
                logger.debug(f"Mutex ocupado en {self.mutex_file}: {e}")

            if attempt < self.retries:
                time.sleep(self.retry_wait * (attempt + 1))

        holder = self._read_lock()
        detail = f" (en uso por PID {holder.pid}, operación {holder.operation})" if holder else ""
        raise LockTimeoutError(
            f"No se pudo adquirir el lock {self.lock_file} tras {self.retries + 1} intento(s){detail}"
        )

    def release(self) -> None:
        """
        Libera el lock si sigue siendo nuestro.

        Un marcador ya ausente se considera liberado; cualquier otro fallo
        se registra como warning y no se propaga.
        """
        if self._owner_id is None:
            return
        try:
            with self._mutex():
                current = self._read_lock()
                if current is None:
                    logger.debug(f"Lock ya liberado: {self.lock_file}")
                elif current.owner_id != self._owner_id:
                    logger.warning(f"Lock {self.lock_file} reclamado por otro proceso (PID {current.pid})")
                else:
                    self.lock_file.unlink()
        except FileNotFoundError:
            logger.debug(f"Lock ya liberado: {self.lock_file}")
        except (OSError, portalocker.exceptions.LockException) as e:
            logger.warning(f"No se pudo liberar lock {self.lock_file}: {e}")
        finally:
            self._owner_id = None

    def refresh(self, force: bool = False) -> None:
        """
        Renueva ``acquired_at`` para que un lock retenido durante una
        operación larga no se considere abandonado.

        Sin ``force`` se limita a una escritura cada stale/3 segundos.
        """
        if self._owner_id is None:
            return
        now = time.monotonic()
        if not force and now - self._last_refresh < self.stale_seconds / 3:
            return
        with self._mutex():
            current = self._read_lock()
            if current is None or current.owner_id != self._owner_id:
                logger.warning(f"Lock {self.lock_file} perdido durante la operación")
                return
            current.acquired_at = datetime.now().isoformat()
            atomic_write_json(self.lock_file, current.to_dict())
        self._last_refresh = now

    def get_holder(self) -> Optional[LockInfo]:
        """LockInfo del poseedor actual, o None si libre o abandonado"""
        current = self._read_lock()
        if current is None or self._is_stale(current):
            return None
        return current

    @contextmanager
    def lock_context(self):
        """
        Context manager: libera solo si se llegó a adquirir, en cualquier
        salida (retorno, excepción o SystemExit).
        """
        acquired = False
        try:
            self.acquire()
            acquired = True
            yield self
        finally:
            if acquired:
                self.release()


def with_file_lock(path: Union[str, Path], fn: Callable[[], T],
                   retries: Optional[int] = None,
                   stale_seconds: Optional[float] = None,
                   retry_wait: Optional[float] = None) -> T:
    """Ejecuta ``fn`` bajo FileLock sobre ``path``"""
    lock = FileLock(path, retries=retries, stale_seconds=stale_seconds, retry_wait=retry_wait)
    with lock.lock_context():
        return fn()


# ============================================================================
# Global lock
# ============================================================================

class GlobalLock(FileLock):
    """
    Lock de todo el store para comandos compuestos (link, clean, migrate...).

    Sin reintentos por defecto: si otro comando está en curso se falla de
    inmediato en lugar de esperar detrás de una migración larga.
    """

    DEFAULT_RETRIES = 0
    DEFAULT_STALE_SECONDS = 30.0

    def __init__(self, home: Optional[str] = None, operation: str = "unknown",
                 retries: Optional[int] = None, stale_seconds: Optional[float] = None):
        sentinel = Path(get_global_lock_path(home))
        super().__init__(
            sentinel,
            retries=retries,
            stale_seconds=stale_seconds,
            operation=operation,
            lock_file=sentinel,
        )


def with_global_lock(fn: Callable[[], T], home: Optional[str] = None,
                     operation: str = "unknown") -> T:
    """Ejecuta ``fn`` bajo el lock global del store"""
    with GlobalLock(home, operation=operation).lock_context():
        return fn()
