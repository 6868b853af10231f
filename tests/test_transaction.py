"""
libdock - Tests: transaction.py
===============================
Cubre: marcador único, rollback en orden inverso, rollback parcial,
interrupción diferida y recuperación de transacciones huérfanas.

Ejecutar:
    pytest tests/test_transaction.py -v
    pytest tests/test_transaction.py -m critical -v
"""

import os
import json
import signal
import pytest

from libdock import linker, transaction
from libdock.config import Config, ConfigManager
from libdock.errors import ConflictError, OperationInterrupted, PartialRollbackError
from libdock.transaction import (
    Step, StepKind, Transaction, TransactionPhase, recover_pending,
)


@pytest.fixture
def tx(dock_home):
    t = Transaction("test", home=str(dock_home)).begin()
    yield t
    transaction._set_active(None)


class TestLifecycle:

    @pytest.mark.transaction
    def test_begin_creates_marker(self, tx):
        data = json.loads(tx.marker_file.read_text())
        assert data["transaction_id"] == tx.transaction_id
        assert data["phase"] == "pending"
        assert data["pid"] == os.getpid()
        assert transaction.get_active_transaction() is tx

    @pytest.mark.transaction
    @pytest.mark.critical
    def test_second_begin_conflicts(self, tx, dock_home):
        with pytest.raises(ConflictError):
            Transaction("otra", home=str(dock_home)).begin()

    @pytest.mark.transaction
    def test_steps_are_persisted_before_effect(self, tx, temp_dir):
        tx.add_step(Step.file_copy(str(temp_dir / "x")))
        data = json.loads(tx.marker_file.read_text())
        assert [s["kind"] for s in data["steps"]] == ["file_copy"]
        assert not (temp_dir / "x").exists()

    @pytest.mark.transaction
    def test_commit_removes_marker_and_backups(self, tx, temp_dir):
        victim = temp_dir / "victim"
        victim.mkdir()
        backup = tx.sibling_backup_path(victim)
        tx.remove_with_backup(victim, backup)

        tx.commit()
        assert tx.phase == TransactionPhase.COMMITTED
        assert not tx.marker_file.exists()
        assert not os.path.exists(backup)
        assert transaction.get_active_transaction() is None

    def test_commit_twice_fails(self, tx):
        tx.commit()
        with pytest.raises(RuntimeError):
            tx.commit()

    def test_heartbeat_called_per_step(self, dock_home, temp_dir):
        beats = []
        t = Transaction("hb", home=str(dock_home), heartbeat=lambda: beats.append(1)).begin()
        t.add_step(Step.file_copy(str(temp_dir / "a")))
        t.add_step(Step.file_copy(str(temp_dir / "b")))
        assert len(beats) == 2
        t.commit()


class TestRollback:

    @pytest.mark.transaction
    @pytest.mark.critical
    def test_rollback_in_reverse_order(self, tx, temp_dir):
        """symlink_remove + symlink_create: el enlace vuelve a su destino original."""
        old_target = temp_dir / "old"
        new_target = temp_dir / "new"
        old_target.mkdir()
        new_target.mkdir()
        link_path = temp_dir / "app" / "lib"
        linker.link(old_target, link_path)

        tx.add_step(Step.symlink_remove(str(link_path), str(old_target)))
        linker.unlink(link_path)
        tx.add_step(Step.symlink_create(str(link_path), str(new_target)))
        linker.link(new_target, link_path)

        assert tx.rollback() == []
        assert linker.read_link(link_path) == str(old_target)
        assert not tx.marker_file.exists()

    @pytest.mark.transaction
    def test_rollback_file_copy_and_delete(self, tx, temp_dir):
        copied = temp_dir / "copied"
        tx.add_step(Step.file_copy(str(copied)))
        copied.mkdir()
        (copied / "f").write_text("x")

        deleted = temp_dir / "deleted"
        deleted.mkdir()
        (deleted / "keep").write_text("y")
        tx.remove_with_backup(deleted, tx.sibling_backup_path(deleted))

        assert tx.rollback() == []
        assert not copied.exists()
        assert (deleted / "keep").read_text() == "y"

    @pytest.mark.transaction
    def test_rollback_file_copy_into_existing_dir_keeps_dir(self, tx, temp_dir):
        target = temp_dir / "existing"
        target.mkdir()
        tx.add_step(Step.file_copy(str(target), existed=True))
        (target / "new").write_text("z")

        assert tx.rollback() == []
        assert target.is_dir()
        assert list(target.iterdir()) == []

    @pytest.mark.transaction
    def test_rollback_of_step_never_applied(self, tx, temp_dir):
        """Caída entre registrar y aplicar: el inverso es un no-op."""
        tx.add_step(Step.file_copy(str(temp_dir / "never")))
        tx.add_step(Step.symlink_create(str(temp_dir / "nolink"), str(temp_dir / "x")))
        assert tx.rollback() == []

    @pytest.mark.transaction
    def test_rollback_config_mutation(self, tx, dock_home):
        manager = ConfigManager(str(dock_home))
        manager.save(Config(store_path="/opt/store"))
        manager.set_value("unused_days", 90, tx=tx)
        assert manager.get_value("unused_days") == 90

        assert tx.rollback() == []
        assert manager.get_value("unused_days") == 30

    @pytest.mark.transaction
    @pytest.mark.critical
    def test_partial_rollback_keeps_marker(self, tx, temp_dir):
        ok = temp_dir / "ok"
        tx.add_step(Step.file_copy(str(ok)))
        ok.mkdir()

        occupied = temp_dir / "occupied"
        occupied.mkdir()
        backup = tx.sibling_backup_path(occupied)
        tx.remove_with_backup(occupied, backup)
        # Otro proceso ocupó la ruta: el respaldo no puede volver
        occupied.mkdir()

        errors = tx.rollback()
        assert len(errors) == 1
        assert "file_delete" in errors[0]
        # Los demás pasos sí se deshicieron
        assert not ok.exists()
        assert os.path.isdir(backup)

        data = json.loads(tx.marker_file.read_text())
        assert data["phase"] == "pending"
        assert data["rollback_errors"] == errors
        assert transaction.get_active_transaction() is None

    def test_unknown_step_kind_reported(self, tx):
        tx.state.steps.append({"kind": "teleport", "target": "/x", "source": None, "backup": None,
                               "key": None, "value": None, "existed": False})
        errors = tx.rollback()
        assert errors and "teleport" in errors[0]


class TestInterrupt:

    @pytest.mark.transaction
    @pytest.mark.critical
    def test_pending_interrupt_blocks_next_step(self, tx, temp_dir):
        tx.add_step(Step.file_copy(str(temp_dir / "a")))
        transaction.request_interrupt(signal.SIGINT)

        with pytest.raises(OperationInterrupted) as exc_info:
            tx.add_step(Step.file_copy(str(temp_dir / "b")))
        assert exc_info.value.exit_code == 130
        assert len(tx.steps) == 1

    def test_sigterm_exit_code(self):
        assert OperationInterrupted(signal.SIGTERM).exit_code == 143


class TestRecovery:

    @pytest.mark.transaction
    def test_no_pending(self, dock_home):
        assert Transaction.find_pending(str(dock_home)) is None
        assert recover_pending(str(dock_home)) is None

    @pytest.mark.transaction
    def test_active_transaction_is_not_orphaned(self, tx, dock_home):
        found = Transaction.find_pending(str(dock_home))
        assert found.transaction_id == tx.transaction_id
        assert not found.is_orphaned()
        with pytest.raises(ConflictError):
            recover_pending(str(dock_home))

    @pytest.mark.transaction
    @pytest.mark.critical
    def test_detached_transaction_is_recovered(self, tx, dock_home, temp_dir):
        copied = temp_dir / "copied"
        tx.add_step(Step.file_copy(str(copied)))
        copied.mkdir()
        tx.detach()

        assert recover_pending(str(dock_home)) == tx.transaction_id
        assert not copied.exists()
        assert not tx.marker_file.exists()

    @pytest.mark.transaction
    def test_dead_owner_is_recovered(self, tx, dock_home):
        data = json.loads(tx.marker_file.read_text())
        data["pid"] = os.getppid()
        data["process_start_time"] = 12345.0
        tx.marker_file.write_text(json.dumps(data))
        transaction._set_active(None)

        assert recover_pending(str(dock_home)) == tx.transaction_id

    @pytest.mark.transaction
    def test_partial_recovery_raises(self, tx, dock_home, temp_dir):
        occupied = temp_dir / "occupied"
        occupied.mkdir()
        tx.remove_with_backup(occupied, tx.sibling_backup_path(occupied))
        occupied.mkdir()
        tx.detach()

        with pytest.raises(PartialRollbackError) as exc_info:
            recover_pending(str(dock_home))
        assert exc_info.value.transaction_id == tx.transaction_id
        assert tx.marker_file.exists()

    def test_empty_marker_recovered_as_empty_transaction(self, dock_home):
        marker = dock_home / "transactions" / "pending.json"
        marker.parent.mkdir(parents=True)
        marker.write_text("")

        found = Transaction.find_pending(str(dock_home))
        assert found.steps == []
        assert found.is_orphaned()
        assert recover_pending(str(dock_home)) == "tx-desconocida"
        assert not marker.exists()

    def test_invalid_marker_conflicts(self, dock_home):
        marker = dock_home / "transactions" / "pending.json"
        marker.parent.mkdir(parents=True)
        marker.write_text(json.dumps({"steps": "no"}))
        with pytest.raises(ConflictError):
            Transaction.find_pending(str(dock_home))

    def test_discard_drops_marker(self, tx, dock_home):
        tx.detach()
        found = Transaction.find_pending(str(dock_home))
        found.discard()
        assert Transaction.find_pending(str(dock_home)) is None

    def test_step_kinds_serialize(self):
        step = Step.config_mutation("/c.json", "log_level", "info", True)
        assert Step.from_dict(step.to_dict()) == step
        assert step.kind == StepKind.CONFIG_MUTATION.value
