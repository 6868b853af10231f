"""
libdock - Tests: signals.py
===========================
Cubre: códigos de salida por señal, latch de un solo disparo, interrupción
diferida con transacción activa y rollback de transacciones huérfanas.

Ejecutar:
    pytest tests/test_signals.py -v
"""

import signal
import pytest

from libdock import transaction
from libdock.signals import ShutdownHandler, exit_code_for
from libdock.transaction import Step, Transaction


class TestExitCodes:

    def test_known_signals(self):
        assert exit_code_for(signal.SIGINT) == 130
        assert exit_code_for(signal.SIGTERM) == 143

    def test_other_signal(self):
        assert exit_code_for(signal.SIGHUP) == 128 + int(signal.SIGHUP)


class TestShutdownHandler:

    @pytest.mark.critical
    def test_active_transaction_defers(self, dock_home):
        tx = Transaction("link", home=str(dock_home)).begin()
        handler = ShutdownHandler(str(dock_home))

        handler.handle(signal.SIGINT)
        assert handler.triggered
        assert transaction.pending_interrupt() == signal.SIGINT
        # El marcador sigue ahí: la operación lo deshará en su siguiente paso
        assert tx.marker_file.exists()

    def test_second_signal_is_ignored(self, dock_home):
        Transaction("link", home=str(dock_home)).begin()
        handler = ShutdownHandler(str(dock_home))
        handler.handle(signal.SIGINT)
        handler.handle(signal.SIGTERM)
        assert transaction.pending_interrupt() == signal.SIGINT

    def test_idle_process_exits(self, dock_home):
        handler = ShutdownHandler(str(dock_home))
        with pytest.raises(SystemExit) as exc_info:
            handler.handle(signal.SIGTERM)
        assert exc_info.value.code == 143

    @pytest.mark.critical
    def test_run_shutdown_rolls_back_orphan(self, dock_home, temp_dir):
        copied = temp_dir / "copied"
        tx = Transaction("migrate", home=str(dock_home)).begin()
        tx.add_step(Step.file_copy(str(copied)))
        copied.mkdir()
        tx.detach()

        assert ShutdownHandler(str(dock_home)).run_shutdown(signal.SIGINT) == 130
        assert not copied.exists()
        assert Transaction.find_pending(str(dock_home)) is None

    def test_run_shutdown_leaves_live_transaction(self, dock_home):
        tx = Transaction("link", home=str(dock_home)).begin()
        assert ShutdownHandler(str(dock_home)).run_shutdown(signal.SIGTERM) == 143
        assert tx.marker_file.exists()

    def test_install_and_uninstall(self, dock_home):
        original = signal.getsignal(signal.SIGTERM)
        handler = ShutdownHandler(str(dock_home))
        handler.install()
        try:
            assert signal.getsignal(signal.SIGTERM) == handler.handle
        finally:
            handler.uninstall()
        assert signal.getsignal(signal.SIGTERM) == original
