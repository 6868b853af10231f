#!/usr/bin/env python3
"""
libdock - Transaction Log
=========================
Registro durable de operaciones compuestas con recuperación ante caídas.

Implementa:
- Marcador único ``transactions/pending.json`` (a lo sumo una transacción
  pendiente en todo el store)
- Cada paso se persiste (fsync) ANTES de aplicar su efecto
- Rollback best-effort en orden inverso: un paso que no se puede deshacer
  se anota y se sigue con los demás
- Recuperación al arrancar (``recover_pending``) y desde los handlers de señales
- Interrupción diferida: una señal recibida con una transacción activa se
  atiende en el siguiente límite entre pasos

Máquina de estados: PENDING -> COMMITTED | PENDING -> ROLLED_BACK.

Política de rollback parcial: si algún inverso falla el marcador se
CONSERVA con ``rollback_errors``; el siguiente comando reintenta la
recuperación y ``libdock repair --discard-transaction`` lo descarta tras
una revisión manual.
"""

import os
import shutil
import uuid
import logging
from enum import Enum
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, List, Optional, Union

from . import linker
from .errors import ConflictError, OperationInterrupted, PartialRollbackError
from .fs_utils import atomic_write_json, clear_dir, move_path, read_json, remove_path
from .lock_manager import get_process_start_time, is_process_alive, with_file_lock
from .paths import get_config_dir, get_transactions_dir
from .schemas import validate_document

logger = logging.getLogger('LIBDOCK.Transaction')

MARKER_FILE_NAME = "pending.json"


class TransactionPhase(Enum):
    """Fases de una transacción"""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class StepKind(Enum):
    """Tipos de paso reversibles"""
    FILE_COPY = "file_copy"
    FILE_DELETE = "file_delete"
    SYMLINK_CREATE = "symlink_create"
    SYMLINK_REMOVE = "symlink_remove"
    REGISTRY_MUTATION = "registry_mutation"
    CONFIG_MUTATION = "config_mutation"


@dataclass
class Step:
    """
    Un paso reversible.

    Campos según el tipo:
      file_copy          target=copia creada, source=staging opcional,
                         existed=el directorio destino ya existía
      file_delete        target=ruta eliminada, backup=dónde se movió
      symlink_create     target=enlace, source=destino del enlace
      symlink_remove     target=enlace, source=destino previo
      registry_mutation  target=documento, backup=copia previa, existed
      config_mutation    target=documento, key, value=valor previo, existed
    """
    kind: str
    target: str
    source: Optional[str] = None
    backup: Optional[str] = None
    key: Optional[str] = None
    value: Any = None
    existed: bool = False

    @classmethod
    def file_copy(cls, target: str, staging: Optional[str] = None, existed: bool = False) -> 'Step':
        return cls(StepKind.FILE_COPY.value, str(target),
                   source=str(staging) if staging else None, existed=existed)

    @classmethod
    def file_delete(cls, target: str, backup: str) -> 'Step':
        return cls(StepKind.FILE_DELETE.value, str(target), backup=str(backup))

    @classmethod
    def symlink_create(cls, link_path: str, target: str) -> 'Step':
        return cls(StepKind.SYMLINK_CREATE.value, str(link_path), source=str(target))

    @classmethod
    def symlink_remove(cls, link_path: str, previous_target: str) -> 'Step':
        return cls(StepKind.SYMLINK_REMOVE.value, str(link_path), source=str(previous_target))

    @classmethod
    def registry_mutation(cls, document: str, backup: Optional[str], existed: bool) -> 'Step':
        return cls(StepKind.REGISTRY_MUTATION.value, str(document),
                   backup=str(backup) if backup else None, existed=existed)

    @classmethod
    def config_mutation(cls, document: str, key: str, previous: Any, existed: bool) -> 'Step':
        return cls(StepKind.CONFIG_MUTATION.value, str(document), key=key, value=previous, existed=existed)

    def describe(self) -> str:
        if self.key:
            return f"{self.kind} {self.target} [{self.key}]"
        return f"{self.kind} {self.target}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        return cls(**data)


@dataclass
class TransactionState:
    """Contenido persistido del marcador"""
    transaction_id: str
    description: str
    phase: str
    started_at: str
    pid: int
    process_start_time: Optional[float]
    steps: List[Dict[str, Any]] = field(default_factory=list)
    rollback_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionState':
        return cls(**data)


# ============================================================================
# Estado de proceso: transacción activa e interrupción diferida
# ============================================================================

_active_transaction: Optional['Transaction'] = None
_interrupt_signum: Optional[int] = None


def get_active_transaction() -> Optional['Transaction']:
    return _active_transaction


def _set_active(tx: Optional['Transaction']) -> None:
    global _active_transaction
    _active_transaction = tx


def request_interrupt(signum: int) -> None:
    """Pide que la transacción activa no empiece el siguiente paso"""
    global _interrupt_signum
    _interrupt_signum = int(signum)


def pending_interrupt() -> Optional[int]:
    return _interrupt_signum


def clear_interrupt() -> None:
    global _interrupt_signum
    _interrupt_signum = None


# ============================================================================
# Inversos
# ============================================================================

def _undo_file_copy(step: Step) -> None:
    if step.source and os.path.lexists(step.source):
        remove_path(step.source)
    if not os.path.lexists(step.target):
        return
    if step.existed and os.path.isdir(step.target) and not linker.is_symlink(step.target):
        clear_dir(step.target)
    else:
        remove_path(step.target)


def _undo_file_delete(step: Step) -> None:
    if step.backup and os.path.lexists(step.backup):
        if os.path.lexists(step.target):
            raise RuntimeError(f"{step.target} está ocupado; respaldo conservado en {step.backup}")
        move_path(step.backup, step.target)
        return
    if not os.path.lexists(step.target):
        raise RuntimeError(f"Respaldo perdido para {step.target}")


def _undo_symlink_create(step: Step) -> None:
    if linker.is_symlink(step.target) and linker.is_correct_link(step.target, step.source):
        linker.unlink(step.target)


def _undo_symlink_remove(step: Step) -> None:
    if not os.path.lexists(step.target):
        linker.link(step.source, step.target)
    elif not linker.is_correct_link(step.target, step.source):
        raise RuntimeError(f"{step.target} está ocupado; no se puede restaurar el enlace a {step.source}")


def _undo_registry_mutation(step: Step) -> None:
    def _restore() -> None:
        if step.existed:
            if not step.backup or not os.path.exists(step.backup):
                raise RuntimeError(f"Copia previa de {step.target} no encontrada")
            atomic_write_json(step.target, read_json(step.backup))
        elif os.path.exists(step.target):
            os.unlink(step.target)

    with_file_lock(step.target, _restore)


def _undo_config_mutation(step: Step) -> None:
    def _restore() -> None:
        data = read_json(step.target)
        if step.existed:
            data[step.key] = step.value
        else:
            data.pop(step.key, None)
        atomic_write_json(step.target, data)

    with_file_lock(step.target, _restore)


_UNDO: Dict[str, Callable[[Step], None]] = {
    StepKind.FILE_COPY.value: _undo_file_copy,
    StepKind.FILE_DELETE.value: _undo_file_delete,
    StepKind.SYMLINK_CREATE.value: _undo_symlink_create,
    StepKind.SYMLINK_REMOVE.value: _undo_symlink_remove,
    StepKind.REGISTRY_MUTATION.value: _undo_registry_mutation,
    StepKind.CONFIG_MUTATION.value: _undo_config_mutation,
}


# ============================================================================
# Transaction
# ============================================================================

class Transaction:
    """
    Transacción sobre store + registry + config.

    Uso típico (con el lock global adquirido):

        tx = Transaction("link", home).begin()
        tx.add_step(Step.symlink_create(link_path, target))
        linker.link(target, link_path)
        ...
        tx.commit()        # o tx.rollback() ante un error
    """

    def __init__(self, description: str = "", home: Optional[str] = None,
                 heartbeat: Optional[Callable[[], None]] = None):
        self.home = home or get_config_dir()
        self.description = description
        self.tx_dir = Path(get_transactions_dir(self.home))
        self.marker_file = self.tx_dir / MARKER_FILE_NAME
        self.state: Optional[TransactionState] = None
        self._heartbeat = heartbeat

    @property
    def transaction_id(self) -> Optional[str]:
        return self.state.transaction_id if self.state else None

    @property
    def phase(self) -> Optional[TransactionPhase]:
        return TransactionPhase(self.state.phase) if self.state else None

    @property
    def steps(self) -> List[Step]:
        return [Step.from_dict(s) for s in self.state.steps] if self.state else []

    @property
    def backup_dir(self) -> Path:
        return self.tx_dir / self.transaction_id

    def _save_state(self) -> None:
        atomic_write_json(self.marker_file, self.state.to_dict())

    def _clear_marker(self) -> None:
        try:
            self.marker_file.unlink()
        except FileNotFoundError:
            pass

    def _require_pending(self) -> None:
        if self.state is None or self.state.phase != TransactionPhase.PENDING.value:
            raise RuntimeError("La transacción no está en curso")

    def begin(self) -> 'Transaction':
        """
        Crea el marcador de forma exclusiva.

        Raises:
            ConflictError: Si ya hay una transacción pendiente
        """
        self.tx_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.marker_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise ConflictError(
                "Hay una transacción pendiente; debe recuperarse antes de continuar "
                "(ejecute 'libdock repair')"
            )
        os.close(fd)

        pid = os.getpid()
        self.state = TransactionState(
            transaction_id=f"tx-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}",
            description=self.description,
            phase=TransactionPhase.PENDING.value,
            started_at=datetime.now().isoformat(),
            pid=pid,
            process_start_time=get_process_start_time(pid),
        )
        self._save_state()
        _set_active(self)
        logger.info(f"Transacción iniciada: {self.transaction_id} - {self.description}")
        return self

    def add_step(self, step: Step) -> Step:
        """
        Persiste el paso antes de que el llamador aplique su efecto.

        Raises:
            OperationInterrupted: Si llegó una señal; el paso no se registra
        """
        self._require_pending()
        signum = pending_interrupt()
        if signum is not None:
            raise OperationInterrupted(signum)

        self.state.steps.append(step.to_dict())
        self._save_state()
        logger.debug(f"[{self.transaction_id}] paso {len(self.state.steps)}: {step.describe()}")
        if self._heartbeat is not None:
            self._heartbeat()
        return step

    # ------------------------------------------------------------------
    # Ayudantes para pasos con respaldo
    # ------------------------------------------------------------------

    def snapshot_document(self, document: Union[str, Path]) -> Step:
        """Copia el documento actual al directorio de la transacción y registra registry_mutation"""
        self._require_pending()
        document = Path(document)
        existed = document.exists()
        backup = None
        if existed:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            backup = self.backup_dir / f"{len(self.state.steps):03d}-{document.name}"
            shutil.copy2(document, backup)
        return self.add_step(Step.registry_mutation(str(document), str(backup) if backup else None, existed))

    def sibling_backup_path(self, path: Union[str, Path]) -> str:
        """Ruta de respaldo junto a ``path`` (mismo volumen, rename barato)"""
        p = Path(path)
        return str(p.with_name(f"{p.name}.libdock-{self.transaction_id}"))

    def remove_with_backup(self, target: Union[str, Path], backup: Union[str, Path]) -> None:
        """Borrado reversible: registra file_delete y mueve ``target`` a ``backup``"""
        self.add_step(Step.file_delete(str(target), str(backup)))
        move_path(target, backup)

    # ------------------------------------------------------------------
    # Cierre
    # ------------------------------------------------------------------

    def _purge_backups(self) -> None:
        for step in self.steps:
            if step.kind != StepKind.FILE_DELETE.value or not step.backup:
                continue
            try:
                remove_path(step.backup)
                parent = Path(step.backup).parent
                if parent.name == self.transaction_id and not any(parent.iterdir()):
                    parent.rmdir()
            except OSError as e:
                logger.warning(f"No se pudo eliminar respaldo {step.backup}: {e}")
        if self.backup_dir.exists():
            shutil.rmtree(self.backup_dir, ignore_errors=True)

    def commit(self) -> None:
        """Confirma: purga respaldos y elimina el marcador"""
        self._require_pending()
        self.state.phase = TransactionPhase.COMMITTED.value
        self._purge_backups()
        self._clear_marker()
        _set_active(None)
        logger.info(f"Transacción confirmada: {self.transaction_id} ({len(self.state.steps)} pasos)")

    def rollback(self) -> List[str]:
        """
        Deshace los pasos en orden inverso, best-effort.

        Returns:
            Mensajes de los pasos que no se pudieron deshacer (vacía = éxito)
        """
        self._require_pending()
        steps = self.steps
        logger.warning(f"Iniciando rollback de {self.transaction_id} ({len(steps)} pasos)")

        errors = []
        for index in range(len(steps) - 1, -1, -1):
            step = steps[index]
            undo = _UNDO.get(step.kind)
            try:
                if undo is None:
                    raise RuntimeError(f"Tipo de paso desconocido: {step.kind}")
                undo(step)
            except Exception as e:
                message = f"paso {index + 1} ({step.describe()}): {e}"
                logger.error(f"Rollback falló en {message}")
                errors.append(message)

        if errors:
            self.state.rollback_errors = errors
            self._save_state()
            logger.error(
                f"Rollback incompleto de {self.transaction_id}: marcador conservado "
                f"para intervención manual"
            )
        else:
            self.state.phase = TransactionPhase.ROLLED_BACK.value
            if self.backup_dir.exists():
                shutil.rmtree(self.backup_dir, ignore_errors=True)
            self._clear_marker()
            logger.info(f"Rollback completado: {self.transaction_id}")

        _set_active(None)
        return errors

    def detach(self) -> None:
        """Deja de ser la transacción activa sin tocar el marcador"""
        if _active_transaction is self:
            _set_active(None)

    def discard(self) -> None:
        """Elimina el marcador sin deshacer nada (tras revisión manual)"""
        logger.warning(f"Descartando transacción {self.transaction_id} sin rollback")
        self._purge_backups()
        self._clear_marker()
        if _active_transaction is self:
            _set_active(None)

    def is_orphaned(self) -> bool:
        """
        True si ningún proceso vivo es dueño de la transacción.

        En el propio proceso, solo si no es la transacción activa.
        """
        if self.state is None or self.state.pid <= 0:
            return True
        if self.state.pid == os.getpid():
            active = get_active_transaction()
            return active is None or active.transaction_id != self.transaction_id
        return not is_process_alive(self.state.pid, self.state.process_start_time)

    @classmethod
    def find_pending(cls, home: Optional[str] = None) -> Optional['Transaction']:
        """
        Busca el marcador de transacción pendiente.

        Un marcador vacío o ilegible corresponde a una caída justo después
        de crearlo (antes del primer paso): se devuelve como transacción
        sin pasos.

        Raises:
            ConflictError: Si el marcador tiene estructura inválida
        """
        tx = cls(home=home)
        if not tx.marker_file.exists():
            return None

        try:
            data = read_json(tx.marker_file)
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning(f"Marcador de transacción ilegible: {tx.marker_file}")
            data = None

        if data is None:
            tx.state = TransactionState(
                transaction_id="tx-desconocida",
                description="marcador ilegible",
                phase=TransactionPhase.PENDING.value,
                started_at=datetime.now().isoformat(),
                pid=0,
                process_start_time=None,
            )
            return tx

        errors = validate_document(data, "transaction")
        if errors:
            raise ConflictError(
                f"Marcador de transacción inválido ({'; '.join(errors)}); "
                f"revise {tx.marker_file} y ejecute 'libdock repair --discard-transaction'"
            )
        tx.state = TransactionState.from_dict(data)
        tx.description = tx.state.description
        return tx


def recover_pending(home: Optional[str] = None) -> Optional[str]:
    """
    Deshace una transacción huérfana. Llamar con el lock global adquirido.

    Returns:
        ID de la transacción recuperada, o None si no había ninguna

    Raises:
        ConflictError: Si su dueño sigue vivo
        PartialRollbackError: Si algún paso no se pudo deshacer
    """
    tx = Transaction.find_pending(home)
    if tx is None:
        return None
    if not tx.is_orphaned():
        raise ConflictError(
            f"La transacción {tx.transaction_id} sigue en curso (PID {tx.state.pid})"
        )

    logger.warning(f"Recuperando transacción pendiente {tx.transaction_id} ({tx.description})")
    errors = tx.rollback()
    if errors:
        raise PartialRollbackError(errors, tx.transaction_id)
    return tx.transaction_id
