import os

import pytest

from wp_backup.archive import create_archive
from wp_backup.restore import RestoreOptions, RestoreOrchestrator, RestorePhase
from wp_backup.status import StatusReporter

from conftest import FIXED_TIME, FakeRunner

STAMP = "20240101-000000"


def _tree(root):
    result = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            with open(path, "rb") as fh:
                result[os.path.relpath(path, root)] = fh.read()
    return result


def make_db_backup(backup_dir, stamp=STAMP, dumps=("blog.sql",)):
    source = backup_dir.parent / "staging" / f"db-{stamp}" / "DB"
    source.mkdir(parents=True)
    for dump in dumps:
        (source / dump).write_text("-- dump\n")
    return create_archive(source, backup_dir / stamp / f"DB-{stamp}.zip", "zip", arcname="DB")


def make_files_backup(backup_dir, tree, stamp=STAMP, fmt="tar.gz", root="Files"):
    return create_archive(tree, backup_dir / stamp / f"Files-{stamp}.{fmt}", fmt, arcname=root)


@pytest.fixture
def snapshot_site(tmp_path, site):
    """A copy of the site as it was when the backup was taken."""
    backed_up = tmp_path / "backed-up-site"
    backed_up.mkdir()
    (backed_up / "wp-config.php").write_text("<?php define('DB_NAME', 'restored');\n")
    (backed_up / "wp-content").mkdir()
    (backed_up / "wp-content" / "theme.css").write_text("body {}")
    return backed_up


@pytest.fixture
def restore_reporter(workspace):
    return StatusReporter("Restore", workspace.status_file("restore"), hostname="test-host")


def _restore(config, reporter, workspace, runner, **options):
    orchestrator = RestoreOrchestrator(
        config,
        reporter,
        workspace,
        options=RestoreOptions(**options),
        runner=runner,
        clock=lambda: FIXED_TIME,
        prompt=lambda _: "",
        output=lambda _: None,
    )
    return orchestrator, orchestrator.run()


def _temp_dirs(home):
    return [path for path in home.iterdir() if path.name.startswith("temp_restore_")]


class TestRestoreFromDirectory:
    def test_restores_database_and_mirrors_files(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        make_db_backup(backup_dir)
        make_files_backup(backup_dir, snapshot_site)
        before = _tree(site)

        orchestrator, result = _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir)

        assert result.success
        assert orchestrator.phase is RestorePhase.DONE
        imports = runner.called("import")
        assert len(imports) == 1
        assert imports[0][imports[0].index("import") + 1].endswith("blog.sql")
        assert _tree(site) == _tree(snapshot_site)
        assert result.snapshot_dir == workspace.home / f"current_files_backup_{STAMP}"
        assert _tree(result.snapshot_dir) == before
        assert _temp_dirs(workspace.home) == []
        assert restore_reporter.read_status().phase == "SUCCESS"

    def test_restoring_twice_gives_identical_tree(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        make_files_backup(backup_dir, snapshot_site, fmt="zip")
        config = make_config()

        _restore(config, restore_reporter, workspace, runner, source=backup_dir)
        first = _tree(site)
        _restore(config, restore_reporter, workspace, runner, source=backup_dir)

        assert _tree(site) == first == _tree(snapshot_site)

    @pytest.mark.parametrize("fmt", ["zip", "tar.gz"])
    def test_linked_directory_comes_back_as_a_link(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, fmt
    ):
        media = site / "wp-content" / "media"
        os.symlink("uploads", media)
        make_files_backup(backup_dir, site, fmt=fmt)
        media.unlink()
        media.mkdir()

        _, result = _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir)

        assert result.success
        assert media.is_symlink()
        assert os.readlink(media) == "uploads"

    def test_files_only_on_database_only_directory_is_a_no_op(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site
    ):
        make_db_backup(backup_dir)
        before = _tree(site)

        _, result = _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir, files_only=True)

        assert result.success
        assert result.restored == []
        assert runner.calls == []
        assert _tree(site) == before
        record = restore_reporter.read_status()
        assert record.phase == "SUCCESS"
        assert record.message.startswith("Nothing to restore")

    def test_dry_run_changes_nothing(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        make_db_backup(backup_dir)
        make_files_backup(backup_dir, snapshot_site)
        before = _tree(site)
        home_before = sorted(path.name for path in workspace.home.iterdir())

        _, result = _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir, dry_run=True)

        assert result.success
        assert runner.calls == []
        assert _tree(site) == before
        assert sorted(path.name for path in workspace.home.iterdir()) == home_before


class TestExplicitFile:
    def test_database_file_skips_files(self, make_config, restore_reporter, workspace, runner, backup_dir, site):
        archive = make_db_backup(backup_dir)
        before = _tree(site)

        _, result = _restore(make_config(), restore_reporter, workspace, runner, source=archive)

        assert result.files_artifact is None
        assert len(runner.called("import")) == 1
        assert _tree(site) == before

    def test_files_file_skips_database(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        archive = make_files_backup(backup_dir, snapshot_site, fmt="tar")

        _restore(make_config(), restore_reporter, workspace, runner, source=archive)

        assert runner.called("import") == []
        assert _tree(site) == _tree(snapshot_site)

    def test_unclassifiable_file(self, make_config, restore_reporter, workspace, runner, tmp_path):
        archive = tmp_path / "site-backup.zip"
        archive.write_bytes(b"")
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=archive)
        assert "Cannot determine backup type" in restore_reporter.read_status().message

    def test_unsupported_extension(self, make_config, restore_reporter, workspace, runner, tmp_path):
        archive = tmp_path / f"DB-{STAMP}.rar"
        archive.write_bytes(b"rar")
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=archive)
        assert "Unsupported archive format" in restore_reporter.read_status().message

    def test_missing_source(self, make_config, restore_reporter, workspace, runner, tmp_path):
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=tmp_path / "nope")
        assert "not found" in restore_reporter.read_status().message


class TestArchiveLayout:
    def test_missing_files_root_leaves_live_tree_untouched(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        make_files_backup(backup_dir, snapshot_site, root="html")
        before = _tree(site)

        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir)

        assert _tree(site) == before
        assert not (workspace.home / f"current_files_backup_{STAMP}").exists()
        assert _temp_dirs(workspace.home) == []
        record = restore_reporter.read_status()
        assert record.phase == "FAILURE"
        assert "Files directory not found" in record.message

    def test_several_dumps_are_ambiguous(self, make_config, restore_reporter, workspace, runner, backup_dir):
        make_db_backup(backup_dir, dumps=("blog.sql", "old.sql"))
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir)
        assert "more than one SQL file" in restore_reporter.read_status().message
        assert runner.called("import") == []

    def test_archive_without_dump(self, make_config, restore_reporter, workspace, runner, backup_dir):
        make_db_backup(backup_dir, dumps=("readme.txt",))
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, runner, source=backup_dir)
        assert "No SQL file" in restore_reporter.read_status().message

    def test_import_failure_still_cleans_up(self, make_config, restore_reporter, workspace, backup_dir):
        make_db_backup(backup_dir)
        with pytest.raises(SystemExit):
            _restore(make_config(), restore_reporter, workspace, FakeRunner(fail_on="import"), source=backup_dir)
        assert "RESTORE_DB" in restore_reporter.read_status().message
        assert _temp_dirs(workspace.home) == []

    def test_interrupt_cleans_up_and_propagates(self, make_config, restore_reporter, workspace, backup_dir):
        make_db_backup(backup_dir)

        def interrupted(args, **kwargs):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            _restore(make_config(), restore_reporter, workspace, interrupted, source=backup_dir)
        assert _temp_dirs(workspace.home) == []
        assert restore_reporter.read_status().phase == "FAILURE"

    def test_interrupt_sends_failure_notification(self, make_config, workspace, backup_dir):
        class Recorder:
            name = "recorder"

            def __init__(self):
                self.subjects = []

            def send(self, subject, body, attachment=None):
                self.subjects.append(subject)

        recorder = Recorder()
        reporter = StatusReporter(
            "Restore", workspace.status_file("restore"), notifiers=[recorder], hostname="test-host"
        )
        make_db_backup(backup_dir)

        def interrupted(args, **kwargs):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            _restore(make_config(), reporter, workspace, interrupted, source=backup_dir)
        assert recorder.subjects == ["[FAILURE] Restore Process on test-host"]


class TestInteractiveSelection:
    def _orchestrator(self, config, reporter, workspace, runner, answers, lines):
        replies = iter(answers)
        return RestoreOrchestrator(
            config,
            reporter,
            workspace,
            options=RestoreOptions(),
            runner=runner,
            clock=lambda: FIXED_TIME,
            prompt=lambda _: next(replies),
            output=lines.append,
        )

    def test_merged_numbered_list(
        self, make_config, restore_reporter, workspace, runner, backup_dir, site, snapshot_site
    ):
        make_db_backup(backup_dir, stamp="20240101-000000")
        make_db_backup(backup_dir, stamp="20240102-000000")
        make_files_backup(backup_dir, snapshot_site, stamp="20240102-000000")
        lines = []

        orchestrator = self._orchestrator(make_config(), restore_reporter, workspace, runner, ["1", "2"], lines)
        result = orchestrator.run()

        assert lines == [
            "Available local backups:",
            "[0] DB: DB-20240102-000000.zip",
            "[1] DB: DB-20240101-000000.zip",
            "[2] Files: Files-20240102-000000.tar.gz",
        ]
        assert result.db_artifact.name == "DB-20240101-000000.zip"
        assert result.files_artifact.name == "Files-20240102-000000.tar.gz"

    def test_empty_answer_skips_type(self, make_config, restore_reporter, workspace, runner, backup_dir, site):
        make_db_backup(backup_dir)
        make_files_backup(backup_dir, site)

        result = self._orchestrator(make_config(), restore_reporter, workspace, runner, ["0", ""], []).run()

        assert result.files_artifact is None
        assert result.restored == [result.db_artifact.kind]

    @pytest.mark.parametrize("answers", [["5"], ["x"], ["1"]])
    def test_bad_index(self, make_config, restore_reporter, workspace, runner, backup_dir, site, answers):
        make_db_backup(backup_dir)
        make_files_backup(backup_dir, site)
        with pytest.raises(SystemExit):
            self._orchestrator(make_config(), restore_reporter, workspace, runner, answers, []).run()
        assert "Invalid database backup selection" in restore_reporter.read_status().message

    def test_missing_backup_directory(self, make_config, restore_reporter, workspace, runner, tmp_path):
        config = make_config(local_backup_dir=tmp_path / "no-backups")
        with pytest.raises(SystemExit):
            self._orchestrator(config, restore_reporter, workspace, runner, [], []).run()
        assert "Local backup directory" in restore_reporter.read_status().message
