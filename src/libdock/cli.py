#!/usr/bin/env python3
"""libdock - CLI principal"""

import json
import logging
import traceback
from dataclasses import asdict
from typing import Callable

import click
from tabulate import tabulate

from . import __version__
from .config import coerce_value
from .dock import Dock
from .errors import ExitCode, LibDockError, OperationInterrupted, PartialRollbackError
from .fs_utils import format_size
from .signals import ShutdownHandler, exit_code_for
from .transaction import clear_interrupt, pending_interrupt

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(debug: bool = False, level_name: str = "warning") -> None:
    level = logging.DEBUG if debug else getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('LIBDOCK').setLevel(level)


def _run(ctx: click.Context, action: Callable[[Dock], None], recover: bool = True) -> None:
    """
    Ejecuta un comando con handlers de señales y mapeo de errores a códigos
    de salida.

    Con ``recover`` se deshace antes cualquier transacción huérfana; repair
    y doctor lo omiten porque ellos mismos tratan la transacción pendiente.
    """
    debug = ctx.obj.get('debug', False)
    dock = Dock()
    handler = ShutdownHandler(dock.home)
    clear_interrupt()
    handler.install()

    try:
        if recover:
            dock.recover_on_entry()
        action(dock)
    except click.exceptions.Exit:
        raise
    except PartialRollbackError as e:
        click.echo(f"❌ {e}", err=True)
        for error in e.errors:
            click.echo(f"   - {error}", err=True)
        cause = e.__cause__
        ctx.exit(cause.exit_code if isinstance(cause, OperationInterrupted) else int(e.exit_code))
    except OperationInterrupted as e:
        click.echo(f"⚠️  {e}; cambios deshechos", err=True)
        ctx.exit(e.exit_code)
    except LibDockError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(int(e.exit_code))
    except Exception as e:
        if debug:
            click.echo(traceback.format_exc(), err=True)
            click.echo(f"❌ Error inesperado: {e}", err=True)
        else:
            click.echo("❌ Error inesperado. Ejecute 'libdock doctor' o repita con --debug.", err=True)
        ctx.exit(int(ExitCode.GENERAL_ERROR))
    finally:
        handler.uninstall()

    signum = pending_interrupt()
    if signum is not None:
        ctx.exit(exit_code_for(signum))


@click.group()
@click.version_option(__version__, prog_name="libdock")
@click.option('--debug', is_flag=True, help="Muestra logs y trazas completas")
@click.pass_context
def cli(ctx, debug):
    """libdock - store centralizado de librerías enlazadas por symlinks"""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    level = "warning"
    try:
        config = Dock().config_manager.load()
        if config is not None:
            level = config.log_level
    except LibDockError:
        pass
    configure_logging(debug, level)


@cli.command()
@click.argument('store_path', required=False)
@click.pass_context
def init(ctx, store_path):
    """Inicializa libdock con el store en STORE_PATH"""
    def action(dock: Dock) -> None:
        config = dock.init(store_path)
        click.echo("🚀 libdock inicializado")
        click.echo(f"   Store: {config.store_root}")
    _run(ctx, action)


@cli.command()
@click.argument('project', default='.', type=click.Path(file_okay=False))
@click.option('--manifest', type=click.Path(dir_okay=False), help="Manifiesto (por defecto PROJECT/libdock.json)")
@click.pass_context
def link(ctx, project, manifest):
    """Enlaza las dependencias de PROJECT al store"""
    def action(dock: Dock) -> None:
        result = dock.link_project(project, manifest)
        click.echo(f"🔗 {result.project_path}")
        for key in result.absorbed:
            click.echo(f"   📥 absorbida: {key}")
        for key in result.added:
            click.echo(f"   ➕ añadida: {key}")
        for key in result.linked:
            click.echo(f"   ✅ enlazada: {key}")
        for key in result.missing:
            click.echo(f"   ⚠️  faltante: {key}")
        click.echo(f"   {len(result.unchanged)} sin cambios")
    _run(ctx, action)


@cli.command()
@click.argument('project', default='.', type=click.Path(file_okay=False))
@click.option('--restore', is_flag=True, help="Sustituye cada enlace por una copia real")
@click.pass_context
def unlink(ctx, project, restore):
    """Quita los enlaces de PROJECT y lo elimina del registry"""
    def action(dock: Dock) -> None:
        result = dock.unlink_project(project, restore=restore)
        click.echo(f"✂️  {result.project_path}")
        click.echo(f"   {len(result.removed)} enlaces eliminados, {len(result.restored)} restaurados")
        for path in result.skipped:
            click.echo(f"   ⚠️  omitido (no es enlace): {path}")
    _run(ctx, action)


@cli.command()
@click.pass_context
def status(ctx):
    """Muestra el estado del store"""
    def action(dock: Dock) -> None:
        report = dock.status()
        rows = [
            ["Store", report.store_path + ("" if report.store_exists else " (no existe)")],
            ["Tamaño total", format_size(report.total_size)],
            ["Librerías", report.library_count],
            ["Proyectos", report.project_count],
            ["Sin referencias", f"{report.unreferenced_count} ({format_size(report.unreferenced_size)})"],
            ["Transacción pendiente", report.pending_transaction or "ninguna"],
            ["Lock global", report.lock_holder or "libre"],
        ]
        click.echo(tabulate(rows, headers=["Métrica", "Valor"], tablefmt="grid"))
    _run(ctx, action)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help="Salida JSON")
@click.pass_context
def projects(ctx, as_json):
    """Lista los proyectos registrados"""
    def action(dock: Dock) -> None:
        summaries = dock.list_projects()
        if as_json:
            click.echo(json.dumps([asdict(s) for s in summaries], indent=2, ensure_ascii=False))
            return
        if not summaries:
            click.echo("No hay proyectos registrados")
            return
        rows = [
            [s.path if s.exists else f"{s.path} (no existe)", s.dependency_count,
             ", ".join(s.platforms) or "-", format_size(s.size), s.last_linked or "-"]
            for s in summaries
        ]
        click.echo(tabulate(rows, headers=["Proyecto", "Deps", "Plataformas", "Tamaño", "Último link"],
                            tablefmt="grid"))
    _run(ctx, action)


@cli.command()
@click.option('--dry-run', is_flag=True, help="Solo muestra qué se eliminaría")
@click.option('--force', is_flag=True, help="Elimina sin confirmación")
@click.option('--strategy', type=click.Choice(["unreferenced", "unused", "manual"]), default=None)
@click.pass_context
def clean(ctx, dry_run, force, strategy):
    """Elimina librerías sin referencias"""
    def action(dock: Dock) -> None:
        result = dock.clean(dry_run=dry_run or not force, strategy=strategy)
        if result.dry_run:
            if not result.candidates:
                click.echo("✅ Nada que limpiar")
                return
            rows = [[lib.key, format_size(lib.size)] for lib in result.candidates]
            click.echo(tabulate(rows, headers=["Librería", "Tamaño"], tablefmt="grid"))
            click.echo(f"Se liberarían {format_size(result.freed)}")
            if not dry_run:
                click.echo("Use --force para eliminar")
            return
        for key in result.removed:
            click.echo(f"   🗑️  {key}")
        for failure in result.failures:
            click.echo(f"   ❌ {failure}", err=True)
        click.echo(f"✅ Liberados {format_size(result.freed)} ({len(result.removed)} librerías)")
        if result.failures:
            ctx.exit(int(ExitCode.GENERAL_ERROR))
    _run(ctx, action)


@cli.command()
@click.argument('new_path')
@click.option('--keep-old', is_flag=True, help="Conserva el store anterior")
@click.pass_context
def migrate(ctx, new_path, keep_old):
    """Mueve el store a NEW_PATH y reapunta todos los enlaces"""
    def action(dock: Dock) -> None:
        result = dock.migrate(new_path, keep_old=keep_old)
        if not result.changed:
            click.echo("⚠️  El destino coincide con el store actual")
            return
        click.echo(f"✅ Store migrado a {result.new_path}")
        click.echo(f"   {format_size(result.total_size)} copiados, {result.relinked} enlaces actualizados")
        if not keep_old and not result.old_removed:
            click.echo(f"   ⚠️  No se pudo eliminar {result.old_path}")
    _run(ctx, action)


@cli.command()
@click.pass_context
def verify(ctx):
    """Verifica la integridad de store, registry y enlaces"""
    def action(dock: Dock) -> None:
        report = dock.verify()
        sections = [
            ("Transacción pendiente", [report.pending_transaction] if report.pending_transaction else []),
            ("Proyectos inexistentes", report.missing_projects),
            ("Enlaces rotos", report.dangling_links),
            ("Enlaces incorrectos", report.wrong_links),
            ("Enlaces ausentes", report.missing_links),
            ("Librerías huérfanas", report.orphan_libraries),
            ("Librerías ausentes", report.missing_libraries),
            ("Referencias desincronizadas", report.reference_drift),
            ("Temporales", report.leftovers),
        ]
        for title, items in sections:
            if items:
                click.echo(f"⚠️  {title}:")
                for item in items:
                    click.echo(f"   - {item}")
        if report.is_valid:
            click.echo("✅ Todo correcto")
        else:
            click.echo("Ejecute 'libdock repair' para corregir")
            ctx.exit(int(ExitCode.GENERAL_ERROR))
    _run(ctx, action)


@cli.command()
@click.option('--dry-run', is_flag=True, help="Solo muestra las acciones")
@click.option('--prune', is_flag=True, help="Elimina librerías huérfanas en vez de registrarlas")
@click.option('--discard-transaction', is_flag=True, help="Descarta la transacción pendiente sin rollback")
@click.pass_context
def repair(ctx, dry_run, prune, discard_transaction):
    """Corrige los problemas que detecta verify"""
    def action(dock: Dock) -> None:
        result = dock.repair(dry_run=dry_run, prune=prune, discard_transaction=discard_transaction)
        if not result.actions:
            click.echo("✅ Nada que reparar")
            return
        prefix = "   (dry-run) " if result.dry_run else "   🔧 "
        for item in result.actions:
            click.echo(prefix + item)
    _run(ctx, action, recover=False)


@cli.command()
@click.pass_context
def doctor(ctx):
    """Diagnóstico del entorno"""
    def action(dock: Dock) -> None:
        checks = dock.doctor()
        rows = [["✅" if c.ok else "❌", c.name, c.detail] for c in checks]
        click.echo(tabulate(rows, headers=["", "Comprobación", "Detalle"], tablefmt="grid"))
        if not all(c.ok for c in checks):
            ctx.exit(int(ExitCode.GENERAL_ERROR))
    _run(ctx, action, recover=False)


@cli.group()
def config():
    """Consulta o modifica la configuración"""
    pass


@config.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key):
    """Muestra el valor de KEY"""
    def action(dock: Dock) -> None:
        click.echo(dock.config_manager.get_value(key))
    _run(ctx, action)


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    """Cambia KEY a VALUE"""
    def action(dock: Dock) -> None:
        previous = dock.config_manager.set_value(key, coerce_value(key, value))
        click.echo(f"✅ {key}: {previous} -> {value}")
    _run(ctx, action)


@config.command('list')
@click.pass_context
def config_list(ctx):
    """Lista toda la configuración"""
    def action(dock: Dock) -> None:
        click.echo(tabulate(dock.config_manager.list_values(), headers=["Clave", "Valor"], tablefmt="grid"))
    _run(ctx, action)


if __name__ == '__main__':
    cli()
