from __future__ import annotations

from pathlib import Path
import shutil
from unittest.mock import Mock

import pytest

from package_upgrade_guard.backup import BackupManager, BackupStageError, _sanitize_filesystem_component
from package_upgrade_guard.config import AppConfig
from package_upgrade_guard.host import LocalHost


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def _backup_manager(host: LocalHost, config: AppConfig, *, transaction_id: str = "txn-1") -> BackupManager:
    return BackupManager(host=host, backup_root=config.backup_root, transaction_id=transaction_id)


def test_make_backup_then_restore_reproduces_files_and_activation(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin(
        "alpha",
        files={"lib/core.py": b"print('v1')\n", "assets/logo.bin": bytes(range(256))},
    )
    host.activate("plugin", plugin_id, network=True)
    original = _snapshot(config.plugins_dir / "alpha")
    manager = _backup_manager(host, config)

    record = manager.make_backup(plugin_id)
    host.config.host_state_path.write_text("{}\n", encoding="utf-8")
    host.clear_activation_cache()
    result = manager.restore_backup()

    assert record.was_active is True
    assert record.was_active_network is True
    assert result.ok
    assert result.restored == (plugin_id,)
    assert _snapshot(config.plugins_dir / "alpha") == original
    assert host.is_active("plugin", plugin_id)
    assert host.is_active_network("plugin", plugin_id)
    assert not config.backup_root.exists()


def test_restore_replaces_partially_upgraded_directory(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha", files={"lib/core.py": b"v1"})
    manager = _backup_manager(host, config)
    manager.make_backup(plugin_id)

    (config.plugins_dir / "alpha" / "lib" / "core.py").write_bytes(b"half-written v2")
    (config.plugins_dir / "alpha" / "lib" / "new_module.py").write_bytes(b"v2 only")

    result = manager.restore_backup()

    assert result.ok
    assert (config.plugins_dir / "alpha" / "lib" / "core.py").read_bytes() == b"v1"
    assert not (config.plugins_dir / "alpha" / "lib" / "new_module.py").exists()


def test_restore_recreates_package_removed_by_failed_upgrade(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha", version="1.0")
    manager = _backup_manager(host, config)
    manager.make_backup(plugin_id)
    shutil.rmtree(config.plugins_dir / "alpha")

    result = manager.restore_backup()

    assert result.ok
    assert host.package_version("plugin", plugin_id) == "1.0"
    assert not host.is_active("plugin", plugin_id)


def test_make_backup_stages_themes_under_their_own_category(host: LocalHost, config: AppConfig, content) -> None:
    theme_id = content.write_theme("twentyten")

    record = _backup_manager(host, config).make_backup(theme_id, "theme")

    assert record.category == "themes"
    assert record.backup_path == config.backup_root / "txn-1" / "themes" / "twentyten"
    assert (record.backup_path / "theme.pkg").is_file()


def test_make_backup_with_dot_slug_is_refused(host: LocalHost, config: AppConfig) -> None:
    (config.plugins_dir / "hello.pkg").write_text("version: '1.0'\n", encoding="utf-8")
    manager = _backup_manager(host, config)

    with pytest.raises(BackupStageError, match="precondition stage failed"):
        manager.make_backup("hello.pkg")

    assert manager.records == []
    assert not config.backup_root.exists()


def test_make_backup_without_content_root_raises_content_root_stage(config: AppConfig) -> None:
    host = Mock()
    host.package_root.return_value = None

    with pytest.raises(BackupStageError) as error:
        BackupManager(host=host, backup_root=config.backup_root).make_backup("alpha/alpha.pkg")

    assert error.value.stage == "content_root"


def test_make_backup_with_missing_package_directory_raises_copy_stage(host: LocalHost, config: AppConfig) -> None:
    with pytest.raises(BackupStageError) as error:
        _backup_manager(host, config).make_backup("ghost/ghost.pkg")

    assert error.value.stage == "copy"


def test_make_backup_when_staging_directory_cannot_be_created_raises_mkdir_stage(
    host: LocalHost,
    config: AppConfig,
    content,
) -> None:
    plugin_id = content.write_plugin("alpha")
    config.backup_root.write_text("a file where the backup root should be", encoding="utf-8")

    with pytest.raises(BackupStageError) as error:
        _backup_manager(host, config).make_backup(plugin_id)

    assert error.value.stage == "mkdir"


def test_make_backup_replaces_stale_copy_at_destination(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha")
    stale = config.backup_root / "txn-1" / "plugins" / "alpha"
    stale.mkdir(parents=True)
    (stale / "stale.txt").write_text("left over from an older run", encoding="utf-8")

    record = _backup_manager(host, config).make_backup(plugin_id)

    assert not (record.backup_path / "stale.txt").exists()
    assert (record.backup_path / "alpha.pkg").is_file()


def test_managers_with_different_transactions_do_not_share_staging(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha")
    first = _backup_manager(host, config, transaction_id="txn-a")
    second = _backup_manager(host, config, transaction_id="txn-b")

    first.make_backup(plugin_id)
    second.make_backup(plugin_id)
    assert second.cleanup() is None

    assert (config.backup_root / "txn-a" / "plugins" / "alpha" / "alpha.pkg").is_file()
    assert not (config.backup_root / "txn-b").exists()


def test_restore_restores_every_record_and_aggregates_errors(host: LocalHost, config: AppConfig, content) -> None:
    alpha_id = content.write_plugin("alpha")
    beta_id = content.write_plugin("beta")
    manager = _backup_manager(host, config)
    manager.make_backup(alpha_id)
    manager.make_backup(beta_id)
    shutil.rmtree(config.backup_root / "txn-1" / "plugins" / "alpha")
    shutil.rmtree(config.plugins_dir / "beta")

    result = manager.restore_backup()

    assert result.status == "failed"
    assert result.restored == (beta_id,)
    assert len(result.errors) == 1
    assert "no staged copy of alpha" in result.errors[0]
    assert (config.plugins_dir / "beta" / "beta.pkg").is_file()
    assert not config.backup_root.exists()


def test_restore_reports_reactivation_failures_without_raising(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha")
    host.activate("plugin", plugin_id)
    manager = _backup_manager(host, config)
    manager.make_backup(plugin_id)
    host.activate = Mock(side_effect=RuntimeError("activation registry offline"))  # type: ignore[method-assign]

    result = manager.restore_backup()

    assert result.status == "failed"
    assert result.restored == (plugin_id,)
    assert result.errors == (f"could not reactivate {plugin_id}: activation registry offline",)


def test_cleanup_is_idempotent_and_safe_without_backup(host: LocalHost, config: AppConfig, content) -> None:
    untouched = _backup_manager(host, config, transaction_id="never-used")
    assert untouched.cleanup() is None
    assert untouched.cleanup() is None

    plugin_id = content.write_plugin("alpha")
    manager = _backup_manager(host, config)
    manager.make_backup(plugin_id)

    assert manager.cleanup() is None
    assert manager.cleanup() is None
    assert manager.records == []
    assert not config.backup_root.exists()


def test_cleanup_failure_is_returned_as_message(
    host: LocalHost,
    config: AppConfig,
    content,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    manager = _backup_manager(host, config)
    manager.make_backup(content.write_plugin("alpha"))

    def _fail(path: Path) -> None:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("package_upgrade_guard.backup.shutil.rmtree", _fail)

    message = manager.cleanup()

    assert message is not None
    assert message.startswith("cleanup stage failed")
    assert "Permission denied" in message


def test_from_records_rebuilds_manager_for_later_restore(host: LocalHost, config: AppConfig, content) -> None:
    plugin_id = content.write_plugin("alpha")
    original = _backup_manager(host, config, transaction_id="txn-crashed")
    record = original.make_backup(plugin_id)
    shutil.rmtree(config.plugins_dir / "alpha")

    rebuilt = BackupManager.from_records(
        host=host,
        backup_root=config.backup_root,
        transaction_id="txn-crashed",
        records=[record],
    )

    assert rebuilt.restore_backup().ok
    assert (config.plugins_dir / "alpha" / "alpha.pkg").is_file()


def test_sanitize_filesystem_component_replaces_unsupported_chars() -> None:
    assert _sanitize_filesystem_component("20260101/abc:def") == "20260101_abc_def"
