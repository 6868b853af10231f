#!/usr/bin/env python3
"""
libdock - Señales
=================
Rutina de apagado idempotente para SIGINT/SIGTERM.

- Si hay una transacción activa en este proceso, la señal se difiere: el
  siguiente ``add_step`` lanza OperationInterrupted y la operación se
  deshace por su camino normal. Un paso ya iniciado nunca se corta.
- Si no la hay, se busca una transacción pendiente propia o huérfana, se
  deshace y el proceso termina con 130 (SIGINT) o 143 (SIGTERM).
- Un segundo aviso durante el apagado no hace nada.
"""

import sys
import signal
import logging
from typing import Any, Dict, Optional

import click

from .errors import ExitCode
from .transaction import Transaction, get_active_transaction, request_interrupt

logger = logging.getLogger('LIBDOCK.Signals')

EXIT_CODES = {
    signal.SIGINT: ExitCode.SIGINT,
    signal.SIGTERM: ExitCode.SIGTERM,
}


def exit_code_for(signum: int) -> int:
    return int(EXIT_CODES.get(signum, 128 + int(signum)))


class ShutdownHandler:
    """Handler de señales con latch de un solo disparo"""

    def __init__(self, home: Optional[str] = None):
        self.home = home
        self._triggered = False
        self._previous: Dict[int, Any] = {}

    @property
    def triggered(self) -> bool:
        return self._triggered

    def install(self) -> None:
        for signum in EXIT_CODES:
            self._previous[signum] = signal.signal(signum, self.handle)

    def uninstall(self) -> None:
        for signum, previous in self._previous.items():
            if previous is not None:
                signal.signal(signum, previous)
        self._previous = {}

    def handle(self, signum: int, frame=None) -> None:
        if self._triggered:
            return
        self._triggered = True

        if get_active_transaction() is not None:
            click.echo("\n⚠️  Interrupción recibida; deshaciendo la operación en curso...", err=True)
            request_interrupt(signum)
            return

        sys.exit(self.run_shutdown(signum))

    def run_shutdown(self, signum: int) -> int:
        """
        Deshace una transacción pendiente que no pertenezca a otro proceso
        vivo e informa los pasos que fallaron.

        Returns:
            Código de salida para la señal
        """
        tx = Transaction.find_pending(self.home)
        if tx is not None and tx.is_orphaned():
            errors = tx.rollback()
            if errors:
                click.echo(f"❌ Rollback incompleto de {tx.transaction_id}:", err=True)
                for error in errors:
                    click.echo(f"   - {error}", err=True)
                click.echo("   Ejecute 'libdock repair' para revisar el estado.", err=True)
            else:
                click.echo(f"↩️  Transacción {tx.transaction_id} deshecha", err=True)
        elif tx is not None:
            logger.info(f"Transacción {tx.transaction_id} pertenece a otro proceso; no se toca")
        return exit_code_for(signum)
