#!/usr/bin/env python3
"""
libdock - Dock
==============
Coordinador de operaciones compuestas sobre store + registry + config.

Todo comando que muta sigue la misma disciplina:

    lock global -> recuperar transacción huérfana -> cargar registry
    -> begin -> pasos (cada uno registrado antes de aplicarse)
    -> registry.save(tx) -> commit   (o rollback ante error/señal)

Los comandos de solo lectura (status, projects, verify, clean --dry-run)
no toman el lock global; solo ``recover_on_entry`` lo toma, y solo si hay
una transacción huérfana que deshacer.
"""

import os
import shutil
import logging
from pathlib import Path
from datetime import datetime
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from . import linker
from .config import Config, ConfigManager, default_store_path
from .errors import (
    AlreadyExistsError, InsufficientSpaceError, LibDockError,
    LockTimeoutError, ManifestError, NotFoundError, OperationInterrupted,
    PartialRollbackError, RegistryCorruptError,
)
from .fs_utils import copy_tree, get_free_space, read_json
from .linker import PathStatus
from .lock_manager import GlobalLock
from .paths import (
    ensure_path_safe, get_config_dir, get_registry_path, paths_equal,
    resolve_path, shrink_home,
)
from .platforms import normalize_platforms
from .registry import Dependency, Library, Registry
from .schemas import validate_document
from .store import Store, get_library_path
from .transaction import Step, Transaction, recover_pending

logger = logging.getLogger('LIBDOCK.Dock')

MANIFEST_FILE_NAME = "libdock.json"
DEFAULT_LINK_DIR = "3rdparty"


# ============================================================================
# Manifiesto
# ============================================================================

@dataclass
class ManifestEntry:
    name: str
    revision: str
    path: str
    source: Optional[str] = None


@dataclass
class Manifest:
    platforms: List[str] = field(default_factory=list)
    dependencies: List[ManifestEntry] = field(default_factory=list)


def load_manifest(path: str) -> Manifest:
    """
    Lee y valida un manifiesto ``libdock.json``.

    Raises:
        ManifestError: Archivo ausente, ilegible o inválido
    """
    if not os.path.isfile(path):
        raise ManifestError(f"Manifiesto no encontrado: {path}")
    try:
        data = read_json(path)
    except ValueError as e:
        raise ManifestError(f"Manifiesto ilegible {path}: {e}")

    errors = validate_document(data, "manifest")
    if errors:
        raise ManifestError(f"Manifiesto inválido: {'; '.join(errors)}")

    entries = []
    seen_paths = set()
    for item in data["dependencies"]:
        rel = item.get("path") or f"{DEFAULT_LINK_DIR}/{item['name']}"
        if os.path.isabs(rel) or '..' in Path(rel).parts:
            raise ManifestError(f"Ruta de enlace fuera del proyecto: {rel}")
        normalized = os.path.normpath(rel)
        if normalized in seen_paths:
            raise ManifestError(f"Ruta de enlace repetida: {rel}")
        seen_paths.add(normalized)
        entries.append(ManifestEntry(item["name"], item["revision"], rel, item.get("source")))

    return Manifest(platforms=list(data.get("platforms", [])), dependencies=entries)


# ============================================================================
# Resultados
# ============================================================================

@dataclass
class LinkResult:
    project_id: str
    project_path: str
    linked: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    absorbed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


@dataclass
class UnlinkResult:
    project_path: str
    removed: List[str] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass
class CleanResult:
    dry_run: bool
    strategy: str
    stale_projects: List[str] = field(default_factory=list)
    candidates: List[Library] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    freed: int = 0


@dataclass
class MigrateResult:
    old_path: str
    new_path: str
    changed: bool
    total_size: int = 0
    relinked: int = 0
    old_removed: bool = False


@dataclass
class VerifyReport:
    missing_projects: List[str] = field(default_factory=list)
    dangling_links: List[str] = field(default_factory=list)
    wrong_links: List[str] = field(default_factory=list)
    missing_links: List[str] = field(default_factory=list)
    orphan_libraries: List[str] = field(default_factory=list)
    missing_libraries: List[str] = field(default_factory=list)
    reference_drift: List[str] = field(default_factory=list)
    leftovers: List[str] = field(default_factory=list)
    pending_transaction: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return not any((
            self.missing_projects, self.dangling_links, self.wrong_links,
            self.orphan_libraries, self.missing_libraries, self.reference_drift,
            self.leftovers, self.pending_transaction,
        ))


@dataclass
class RepairResult:
    dry_run: bool
    actions: List[str] = field(default_factory=list)


@dataclass
class StatusReport:
    store_path: str
    store_exists: bool
    total_size: int
    library_count: int
    project_count: int
    unreferenced_count: int
    unreferenced_size: int
    pending_transaction: Optional[str]
    lock_holder: Optional[str]


@dataclass
class ProjectSummary:
    project_id: str
    path: str
    exists: bool
    dependency_count: int
    platforms: List[str]
    last_linked: Optional[str]
    size: int


@dataclass
class DoctorCheck:
    name: str
    ok: bool
    detail: str


# ============================================================================
# Dock
# ============================================================================

class Dock:
    """
    Operaciones de alto nivel de libdock.

    Características:
    - Lock global durante toda la operación (incluida la copia de migrate)
    - Recuperación de transacciones huérfanas antes de cada mutación
    - Rollback automático ante error o señal
    """

    def __init__(self, home: Optional[str] = None):
        self.home = home or get_config_dir()
        self.config_manager = ConfigManager(self.home)
        self.registry = Registry(get_registry_path(self.home))
        self._lock: Optional[GlobalLock] = None

    # ------------------------------------------------------------------
    # Infraestructura
    # ------------------------------------------------------------------

    @property
    def config(self) -> Config:
        return self.config_manager.require()

    @property
    def store(self) -> Store:
        return Store(self.config.store_root)

    def _refresh_lock(self, *_args) -> None:
        if self._lock is not None:
            self._lock.refresh()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[GlobalLock]:
        lock = GlobalLock(self.home, operation=operation)
        with lock.lock_context():
            self._lock = lock
            try:
                yield lock
            finally:
                self._lock = None

    @contextmanager
    def _operation(self, operation: str) -> Iterator[Transaction]:
        """Lock global + recuperación + transacción con rollback automático"""
        with self._locked(operation) as lock:
            recovered = recover_pending(self.home)
            if recovered:
                logger.warning(f"Transacción {recovered} recuperada antes de '{operation}'")
            self.registry.load()

            tx = Transaction(operation, home=self.home, heartbeat=lock.refresh).begin()
            try:
                yield tx
            except (Exception, KeyboardInterrupt) as exc:
                logger.error(f"'{operation}' falló ({exc}); deshaciendo cambios")
                errors = tx.rollback()
                if errors:
                    raise PartialRollbackError(errors, tx.transaction_id) from exc
                raise
            except BaseException:
                # Salida no controlada: el marcador queda para la recuperación
                tx.detach()
                raise
            tx.commit()

    def recover(self) -> Optional[str]:
        """Recupera una transacción huérfana (bajo lock global)"""
        with self._locked("recover"):
            return recover_pending(self.home)

    def recover_on_entry(self) -> Optional[str]:
        """
        Recuperación al arrancar cualquier comando, incluidos los de lectura.

        Si la transacción pendiente tiene dueño vivo, o el lock global está
        en uso, no se toca nada: los reportes la muestran como pendiente.

        Returns:
            ID de la transacción recuperada, o None
        """
        pending = Transaction.find_pending(self.home)
        if pending is None or not pending.is_orphaned():
            return None
        try:
            with self._locked("recover"):
                recovered = recover_pending(self.home)
        except LockTimeoutError as e:
            logger.warning(f"Transacción {pending.transaction_id} pendiente; no se recupera ahora: {e}")
            return None
        if recovered:
            logger.warning(f"Transacción {recovered} recuperada al iniciar")
        return recovered

    # ------------------------------------------------------------------
    # init
    # ------------------------------------------------------------------

    def init(self, store_path: Optional[str] = None) -> Config:
        """
        Crea el store y config.json.

        Raises:
            AlreadyExistsError: Si ya está inicializado
            UnsafePathError: Si la ruta no es segura
        """
        target = ensure_path_safe(store_path or default_store_path(self.home))
        with self._locked("init"):
            if self.config_manager.exists():
                raise AlreadyExistsError(
                    f"libdock ya está inicializado ({self.config_manager.config_file})"
                )
            Store(target).ensure_root()
            config = Config(store_path=shrink_home(target), initialized=datetime.now().isoformat())
            self.config_manager.save(config)
        logger.info(f"libdock inicializado: store en {target}")
        return config

    # ------------------------------------------------------------------
    # link / unlink
    # ------------------------------------------------------------------

    def link_project(self, project_path: str, manifest_path: Optional[str] = None) -> LinkResult:
        """
        Enlaza las dependencias declaradas en el manifiesto del proyecto.

        Por dependencia: si está en el store se crea o corrige el enlace; si
        no, se absorbe el directorio real del proyecto o se copia desde
        ``source``; si no hay de dónde tomarla se informa como faltante.
        """
        project_path = resolve_path(project_path)
        if not os.path.isdir(project_path):
            raise NotFoundError(f"Proyecto no encontrado: {project_path}")

        manifest = load_manifest(manifest_path or os.path.join(project_path, MANIFEST_FILE_NAME))
        try:
            platforms = normalize_platforms(manifest.platforms)
        except ValueError as e:
            raise ManifestError(str(e))

        store = self.store
        store.ensure_root()
        result = LinkResult(project_id=Registry.hash_path(project_path), project_path=project_path)

        with self._operation("link") as tx:
            project = self.registry.add_project(project_path, platforms)
            dependencies = []
            for entry in manifest.dependencies:
                key = Registry.get_library_key(entry.name, entry.revision)
                link_path = os.path.join(project_path, entry.path)

                if not store.exists(entry.name, entry.revision):
                    if not self._materialize(tx, store, entry, project_path, link_path, result):
                        result.missing.append(key)
                        continue
                elif key not in self.registry.libraries:
                    self._register(store, entry.name, entry.revision)

                target = str(store.library_path(entry.name, entry.revision))
                if self._ensure_link(tx, link_path, target):
                    result.linked.append(key)
                else:
                    result.unchanged.append(key)
                self.registry.touch_library(key)
                dependencies.append(Dependency(entry.name, entry.revision, entry.path))

            self.registry.set_dependencies(project.id, dependencies)
            self.registry.save(tx)

        logger.info(
            f"Proyecto enlazado {project_path}: {len(result.linked)} nuevos, "
            f"{len(result.unchanged)} sin cambios, {len(result.missing)} faltantes"
        )
        return result

    def _register(self, store: Store, lib_name: str, revision: str, size: Optional[int] = None) -> Library:
        if size is None:
            size = store.get_size(lib_name, revision)
        return self.registry.add_library(Library(
            lib_name=lib_name,
            revision=revision,
            path=store.relative_path(lib_name, revision),
            size=size,
        ))

    def _materialize(self, tx: Transaction, store: Store, entry: ManifestEntry,
                     project_path: str, link_path: str, result: LinkResult) -> bool:
        """Trae al store una dependencia ausente. False si no hay origen."""
        key = Registry.get_library_key(entry.name, entry.revision)
        local_is_real = os.path.isdir(link_path) and not linker.is_symlink(link_path)

        if local_is_real:
            size = store.add(entry.name, entry.revision, link_path, tx=tx, on_progress=self._refresh_lock)
            result.absorbed.append(key)
        elif entry.source:
            source = entry.source if os.path.isabs(entry.source) else os.path.join(project_path, entry.source)
            size = store.add(entry.name, entry.revision, resolve_path(source), tx=tx,
                             on_progress=self._refresh_lock)
            result.added.append(key)
        else:
            return False

        self._register(store, entry.name, entry.revision, size)
        return True

    def _ensure_link(self, tx: Transaction, link_path: str, target: str) -> bool:
        """Deja ``link_path`` apuntando a ``target``. True si hubo cambios."""
        status = linker.get_path_status(link_path, target)
        if status == PathStatus.LINKED:
            return False
        if status == PathStatus.OTHER:
            raise AlreadyExistsError(f"{link_path} existe y no es un directorio; no se sustituye por un enlace")

        if status in (PathStatus.WRONG_LINK, PathStatus.BROKEN_LINK):
            tx.add_step(Step.symlink_remove(link_path, linker.read_link(link_path)))
            linker.unlink(link_path)
        elif status == PathStatus.DIRECTORY:
            # Copia local real (ya absorbida o duplicada del store)
            tx.remove_with_backup(link_path, tx.sibling_backup_path(link_path))

        tx.add_step(Step.symlink_create(link_path, target))
        linker.link(target, link_path)
        return True

    def unlink_project(self, project_path: str, restore: bool = False) -> UnlinkResult:
        """
        Quita los enlaces del proyecto y lo elimina del registry.

        Con ``restore`` cada enlace se sustituye por una copia real de la
        librería.
        """
        project_path = resolve_path(project_path)
        result = UnlinkResult(project_path=project_path)

        with self._operation("unlink") as tx:
            project = self.registry.get_project_by_path(project_path)
            if project is None:
                raise NotFoundError(f"Proyecto no registrado: {project_path}")

            for dep in project.dependencies:
                link_path = os.path.join(project.path, dep.linked_path)
                if not linker.is_symlink(link_path):
                    result.skipped.append(link_path)
                    continue

                previous = linker.read_link(link_path)
                if restore and os.path.isdir(previous):
                    temp_copy = f"{link_path}.libdock-restore"
                    tx.add_step(Step.file_copy(temp_copy))
                    copy_tree(previous, temp_copy, on_progress=self._refresh_lock)
                    tx.add_step(Step.symlink_remove(link_path, previous))
                    linker.unlink(link_path)
                    tx.add_step(Step.file_copy(link_path))
                    os.rename(temp_copy, link_path)
                    result.restored.append(link_path)
                else:
                    tx.add_step(Step.symlink_remove(link_path, previous))
                    linker.unlink(link_path)
                    result.removed.append(link_path)

            self.registry.remove_project(project.id)
            self.registry.save(tx)

        return result

    # ------------------------------------------------------------------
    # clean
    # ------------------------------------------------------------------

    def _clean_candidates(self, strategy: str, unused_days: int) -> List[Library]:
        if strategy == "unused":
            return self.registry.get_unused_libraries(unused_days)
        if strategy == "manual":
            return []
        return self.registry.get_unreferenced_libraries()

    def clean(self, dry_run: bool = False, strategy: Optional[str] = None) -> CleanResult:
        """
        Elimina librerías sin referencias (tras barrer proyectos obsoletos).

        En dry-run no se toca disco ni registry persistido. Un fallo al
        eliminar una librería no detiene las demás; se acumula en
        ``failures``.
        """
        config = self.config
        strategy = strategy or config.clean_strategy

        if dry_run:
            self.registry.load()
            result = CleanResult(dry_run=True, strategy=strategy)
            result.stale_projects = self.registry.clean_stale_projects()
            result.candidates = self._clean_candidates(strategy, config.unused_days)
            result.freed = sum(lib.size for lib in result.candidates)
            return result

        store = Store(config.store_root)
        result = CleanResult(dry_run=False, strategy=strategy)
        with self._operation("clean") as tx:
            result.stale_projects = self.registry.clean_stale_projects()
            result.candidates = self._clean_candidates(strategy, config.unused_days)

            for library in result.candidates:
                try:
                    store.remove(library.lib_name, library.revision, tx=tx)
                    result.freed += library.size
                except NotFoundError:
                    logger.warning(f"{library.key} ya no estaba en disco; se elimina del registry")
                except OperationInterrupted:
                    raise
                except (LibDockError, OSError) as e:
                    result.failures.append(f"{library.key}: {e}")
                    continue
                self.registry.remove_library(library.key)
                result.removed.append(library.key)

            self.registry.save(tx)

        if result.failures:
            logger.warning(f"clean: {len(result.failures)} librería(s) no se pudieron eliminar")
        return result

    # ------------------------------------------------------------------
    # migrate
    # ------------------------------------------------------------------

    def migrate(self, new_path: str, keep_old: bool = False) -> MigrateResult:
        """
        Mueve el store a ``new_path`` y reapunta todos los enlaces.

        Las comprobaciones (seguridad, espacio, destino vacío) ocurren antes
        de cualquier mutación. El store antiguo se elimina solo después del
        commit.

        Raises:
            UnsafePathError: Destino no permitido
            InsufficientSpaceError: Espacio libre menor que el tamaño del store
            AlreadyExistsError: El destino existe y no está vacío
        """
        config = self.config
        old_root = config.store_root
        target = resolve_path(new_path)
        result = MigrateResult(old_path=old_root, new_path=target, changed=False)

        if paths_equal(target, old_root):
            logger.warning("El destino coincide con el store actual; nada que migrar")
            return result

        ensure_path_safe(target, old_root)
        if os.path.lexists(target) and (not os.path.isdir(target) or os.listdir(target)):
            raise AlreadyExistsError(f"El destino existe y no está vacío: {target}")

        old_store = Store(old_root)
        with self._operation("migrate") as tx:
            result.total_size = old_store.get_total_size()
            available = get_free_space(target)
            if available < result.total_size:
                raise InsufficientSpaceError(result.total_size, available, target)

            # El paso cubre el ancestro más alto que se va a crear
            created_root = target
            while not os.path.lexists(os.path.dirname(created_root)):
                created_root = os.path.dirname(created_root)
            tx.add_step(Step.file_copy(created_root, existed=os.path.isdir(target)))
            os.makedirs(target, exist_ok=True)
            if old_store.root.is_dir():
                for entry in sorted(os.scandir(old_store.root), key=lambda e: e.name):
                    if entry.name.startswith('.'):
                        continue
                    copy_tree(entry.path, os.path.join(target, entry.name), on_progress=self._refresh_lock)

            for project in self.registry.list_projects():
                for dep in project.dependencies:
                    link_path = os.path.join(project.path, dep.linked_path)
                    if not linker.is_symlink(link_path):
                        continue
                    new_target = get_library_path(target, dep.lib_name, dep.revision)
                    tx.add_step(Step.symlink_remove(link_path, linker.read_link(link_path)))
                    linker.unlink(link_path)
                    tx.add_step(Step.symlink_create(link_path, new_target))
                    linker.link(new_target, link_path)
                    result.relinked += 1

            self.config_manager.set_value("store_path", shrink_home(target), tx=tx)

        result.changed = True
        if not keep_old and old_store.root.is_dir():
            try:
                shutil.rmtree(old_store.root)
                result.old_removed = True
            except OSError as e:
                logger.warning(f"No se pudo eliminar el store antiguo {old_root}: {e}")
        logger.info(f"Store migrado: {old_root} -> {target} ({result.relinked} enlaces)")
        return result

    # ------------------------------------------------------------------
    # verify / repair
    # ------------------------------------------------------------------

    def verify(self) -> VerifyReport:
        """Diagnóstico de solo lectura de store, registry y enlaces"""
        store = self.store
        self.registry.load()
        report = VerifyReport()

        pending = Transaction.find_pending(self.home)
        if pending is not None:
            report.pending_transaction = pending.transaction_id

        for project in self.registry.list_projects():
            if not os.path.isdir(project.path):
                report.missing_projects.append(project.path)
                continue
            for dep in project.dependencies:
                link_path = os.path.join(project.path, dep.linked_path)
                expected = str(store.library_path(dep.lib_name, dep.revision))
                status = linker.get_path_status(link_path, expected)
                if status == PathStatus.BROKEN_LINK:
                    report.dangling_links.append(link_path)
                elif status == PathStatus.WRONG_LINK:
                    report.wrong_links.append(link_path)
                elif status == PathStatus.MISSING:
                    report.missing_links.append(link_path)

        on_disk = {Registry.get_library_key(lib.lib_name, lib.revision) for lib in store.list_libraries()}
        registered = set(self.registry.libraries)
        report.orphan_libraries = sorted(on_disk - registered)
        report.missing_libraries = sorted(registered - on_disk)
        report.reference_drift = self.registry.check_consistency()
        report.leftovers = store.list_leftovers()
        return report

    def repair(self, dry_run: bool = False, prune: bool = False,
               discard_transaction: bool = False) -> RepairResult:
        """
        Corrige lo que reporta verify.

        - proyectos inexistentes: se eliminan del registry
        - enlaces rotos: se eliminan (solo symlinks) junto con su dependencia
        - librerías huérfanas en disco: se registran, o se borran con ``prune``
        - librerías registradas que faltan en disco: se eliminan del registry
        - referenced_by desincronizado: se reconstruye
        - staging y papelera: se vacían tras el commit
        """
        result = RepairResult(dry_run=dry_run)

        if discard_transaction:
            with self._locked("repair"):
                pending = Transaction.find_pending(self.home)
                if pending is not None:
                    if not dry_run:
                        pending.discard()
                    result.actions.append(f"Transacción descartada: {pending.transaction_id}")

        if dry_run:
            report = self.verify()
            if report.pending_transaction and not discard_transaction:
                result.actions.append(f"Recuperar transacción {report.pending_transaction}")
            result.actions += [f"Eliminar proyecto inexistente {p}" for p in report.missing_projects]
            result.actions += [f"Eliminar enlace roto {p}" for p in report.dangling_links]
            verb = "Eliminar" if prune else "Registrar"
            result.actions += [f"{verb} librería huérfana {k}" for k in report.orphan_libraries]
            result.actions += [f"Olvidar librería ausente {k}" for k in report.missing_libraries]
            if report.reference_drift:
                result.actions.append(f"Reconstruir referencias ({len(report.reference_drift)} diferencias)")
            result.actions += [f"Eliminar temporal {p}" for p in report.leftovers]
            return result

        store = self.store
        with self._operation("repair") as tx:
            for project_id in self.registry.clean_stale_projects():
                result.actions.append(f"Proyecto inexistente eliminado: {project_id}")

            for project in self.registry.list_projects():
                for dep in list(project.dependencies):
                    link_path = os.path.join(project.path, dep.linked_path)
                    if linker.get_path_status(link_path) != PathStatus.BROKEN_LINK:
                        continue
                    tx.add_step(Step.symlink_remove(link_path, linker.read_link(link_path)))
                    linker.unlink(link_path)
                    self.registry.remove_dependency(project.id, dep.lib_name, dep.revision)
                    result.actions.append(f"Enlace roto eliminado: {link_path}")

            stored = {Registry.get_library_key(lib.lib_name, lib.revision): lib
                      for lib in store.list_libraries()}
            for key in sorted(set(stored) - set(self.registry.libraries)):
                lib = stored[key]
                if prune:
                    store.remove(lib.lib_name, lib.revision, tx=tx)
                    result.actions.append(f"Librería huérfana eliminada: {key}")
                else:
                    self._register(store, lib.lib_name, lib.revision, lib.size)
                    result.actions.append(f"Librería huérfana registrada: {key}")

            for key in sorted(set(self.registry.libraries) - set(stored)):
                self.registry.remove_library(key)
                result.actions.append(f"Librería ausente olvidada: {key}")

            fixed = self.registry.rebuild_references()
            if fixed:
                result.actions.append(f"Referencias reconstruidas: {fixed}")

            self.registry.save(tx)

        for path in store.clean_staging():
            result.actions.append(f"Temporal eliminado: {path}")
        return result

    # ------------------------------------------------------------------
    # status / projects / doctor
    # ------------------------------------------------------------------

    def status(self) -> StatusReport:
        config = self.config
        store = Store(config.store_root)
        self.registry.load()
        stats = self.registry.get_space_stats()

        pending = Transaction.find_pending(self.home)
        holder = GlobalLock(self.home).get_holder()
        return StatusReport(
            store_path=config.store_root,
            store_exists=store.root.is_dir(),
            total_size=store.get_total_size(),
            library_count=stats["total_libraries"],
            project_count=stats["total_projects"],
            unreferenced_count=stats["unreferenced_count"],
            unreferenced_size=stats["unreferenced_size"],
            pending_transaction=pending.transaction_id if pending else None,
            lock_holder=f"PID {holder.pid} ({holder.operation})" if holder else None,
        )

    def list_projects(self) -> List[ProjectSummary]:
        self.registry.load()
        return [
            ProjectSummary(
                project_id=project.id,
                path=project.path,
                exists=os.path.isdir(project.path),
                dependency_count=len(project.dependencies),
                platforms=list(project.platforms),
                last_linked=project.last_linked,
                size=self.registry.get_project_size(project.id),
            )
            for project in self.registry.list_projects()
        ]

    def doctor(self) -> List[DoctorCheck]:
        """Comprobaciones de entorno; nunca lanza por un fallo individual"""
        checks = [DoctorCheck("Directorio de estado", os.path.isdir(self.home), self.home)]

        config = None
        try:
            config = self.config_manager.require()
            checks.append(DoctorCheck("config.json", True, str(self.config_manager.config_file)))
        except LibDockError as e:
            checks.append(DoctorCheck("config.json", False, str(e)))

        if config is not None:
            root = config.store_root
            writable = os.path.isdir(root) and os.access(root, os.W_OK)
            checks.append(DoctorCheck("Store", writable, root))
            try:
                checks.append(DoctorCheck("Espacio libre", True, f"{get_free_space(root)} bytes"))
            except OSError as e:
                checks.append(DoctorCheck("Espacio libre", False, str(e)))

        try:
            self.registry.load()
            checks.append(DoctorCheck("registry.json", True, f"{len(self.registry.projects)} proyectos"))
        except RegistryCorruptError as e:
            checks.append(DoctorCheck("registry.json", False, str(e)))

        try:
            pending = Transaction.find_pending(self.home)
            checks.append(DoctorCheck(
                "Transacciones", pending is None,
                f"pendiente: {pending.transaction_id}" if pending else "ninguna pendiente",
            ))
        except LibDockError as e:
            checks.append(DoctorCheck("Transacciones", False, str(e)))

        holder = GlobalLock(self.home).get_holder()
        checks.append(DoctorCheck(
            "Lock global", True,
            f"en uso por PID {holder.pid} ({holder.operation})" if holder else "libre",
        ))
        return checks
