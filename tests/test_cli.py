"""Unit tests for modqueue.cli — command parsing and execution against a SQLite store."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import modqueue.cli as cli_mod
from modqueue.db.models import ModerationTask, ReportGroup
from modqueue.db.session import close_all_sessions, init_queue_db, transaction_scope


def seed(tmp_path, *tasks):
    """Insert (group_key, status, priority) tasks into the CLI's store."""
    factory = init_queue_db(f"sqlite:///{tmp_path / 'cli.db'}", create_tables=True)
    created = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    with transaction_scope(factory) as session:
        for group_key, status, priority in tasks:
            session.add(ReportGroup(
                group_key=group_key,
                reported_item_id=group_key.split("_", 1)[-1],
                reported_item_type="post",
                total_reports=2,
                highest_reason_score=50,
                last_report_at=created,
            ))
            task = ModerationTask(
                id=f"userReport-{group_key}",
                task_type="userReport",
                task_id=group_key,
                original_path=f"report_groups/{group_key}",
                status=status,
                priority=priority,
                summary="2 reports for post",
                created_at=created,
                last_updated_at=created,
            )
            if status == "checkedOut":
                task.checkout_user_id = "admin-1"
                task.checkout_user_display_name = "Ada"
                task.checked_out_at = created
                task.expires_at = created + timedelta(minutes=60)
            session.add(task)
    close_all_sessions()


class TestCLIParsing:
    def test_module_has_expected_commands(self):
        for name in ("cmd_init", "cmd_recalculate", "cmd_sweep", "cmd_stats", "cmd_logs", "cmd_validate", "cmd_health"):
            assert hasattr(cli_mod, name)

    def test_no_command_prints_help(self, capsys):
        assert cli_mod.main([]) == 0
        assert "usage: modqueue" in capsys.readouterr().out

    def test_unknown_command_exits(self):
        with pytest.raises(SystemExit):
            cli_mod.main(["frobnicate"])


class TestConfigLoading:
    def test_missing_config_file(self, tmp_path, capsys):
        missing = tmp_path / "nope.yaml"
        assert cli_mod.main(["--config", str(missing), "validate"]) == 1
        assert "[ERROR] Config file not found" in capsys.readouterr().out

    def test_invalid_config(self, config_file, capsys):
        path = config_file("leasing:\n  max_attempts: 0\n")
        assert cli_mod.main(["--config", path, "validate"]) == 1
        assert "[ERROR] Invalid configuration" in capsys.readouterr().out


class TestCmdValidate:
    def test_valid(self, config_file, capsys):
        assert cli_mod.main(["--config", config_file(), "validate"]) == 0
        out = capsys.readouterr().out
        assert "[OK] Config valid (TestQueue 2.0.0, dev)" in out
        assert "[OK] Queue userReport" in out
        assert "Configuration valid!" in out

    def test_bad_cron(self, config_file, capsys):
        path = config_file("sweep:\n  cron: '*/5 * *'\n")
        assert cli_mod.main(["--config", path, "validate"]) == 1
        out = capsys.readouterr().out
        assert "[ERROR] sweep.cron" in out
        assert "1 error(s) found." in out


class TestCmdInit:
    def test_creates_tables(self, config_file, tmp_path, capsys):
        assert cli_mod.main(["--config", config_file(), "init"]) == 0
        out = capsys.readouterr().out
        assert "[OK] Tables created (dev)" in out
        assert "[OK] Queues: userReport" in out
        assert (tmp_path / "cli.db").exists()

    def test_idempotent(self, config_file):
        path = config_file()
        assert cli_mod.main(["--config", path, "init"]) == 0
        assert cli_mod.main(["--config", path, "init"]) == 0


class TestCmdStats:
    def test_empty_store(self, config_file, capsys):
        path = config_file()
        cli_mod.main(["--config", path, "init"])
        capsys.readouterr()

        assert cli_mod.main(["--config", path, "stats"]) == 0
        assert "No tasks." in capsys.readouterr().out

    def test_counts_and_pending(self, config_file, tmp_path, capsys):
        path = config_file()
        seed(tmp_path, ("post_1", "pending", 62), ("post_2", "pending", 5), ("post_3", "checkedOut", 19))

        assert cli_mod.main(["--config", path, "stats", "--pending", "1"]) == 0
        out = capsys.readouterr().out
        assert "userReport: pending=2, checkedOut=1, completed=0" in out
        assert "Next 1 pending:" in out
        assert "userReport-post_1" in out
        assert "userReport-post_2" not in out


class TestMaintenanceCommands:
    def test_sweep(self, config_file, tmp_path, capsys):
        path = config_file()
        seed(tmp_path, ("post_1", "checkedOut", 10), ("post_2", "pending", 10))

        assert cli_mod.main(["--config", path, "sweep"]) == 0
        assert "[OK] Released 1 expired lease(s)" in capsys.readouterr().out

    def test_recalculate(self, config_file, tmp_path, capsys):
        path = config_file()
        seed(tmp_path, ("post_1", "pending", 0), ("post_2", "checkedOut", 0))

        assert cli_mod.main(["--config", path, "recalculate"]) == 0
        assert "[OK] Updated 1 task(s), 0 error(s)" in capsys.readouterr().out

        factory = init_queue_db(f"sqlite:///{tmp_path / 'cli.db'}")
        with transaction_scope(factory) as session:
            assert session.get(ModerationTask, "userReport-post_1").priority == pytest.approx(62.0)
            assert session.get(ModerationTask, "userReport-post_2").priority == 0
        close_all_sessions()

    def test_commands_write_job_logs(self, config_file, tmp_path):
        path = config_file()
        seed(tmp_path)
        cli_mod.main(["--config", path, "sweep"])
        assert list(Path(tmp_path / "logs" / "jobs" / "execution").glob("*.jsonl"))


class TestCmdLogs:
    def test_shows_job_runs(self, config_file, tmp_path, capsys):
        path = config_file()
        seed(tmp_path, ("post_1", "checkedOut", 10))
        cli_mod.main(["--config", path, "sweep"])
        capsys.readouterr()

        assert cli_mod.main(["--config", path, "logs", "jobs"]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["event"] == "job_completed"
        assert entry["job"] == "modqueue.release_expired_leases"
        assert entry["result"] == {"released": 1}

    def test_filters(self, config_file, tmp_path, capsys):
        path = config_file()
        seed(tmp_path)
        cli_mod.main(["--config", path, "sweep"])
        capsys.readouterr()

        assert cli_mod.main(["--config", path, "logs", "jobs", "--event", "job_failed"]) == 0
        assert "No log entries." in capsys.readouterr().out

    def test_empty(self, config_file, capsys):
        assert cli_mod.main(["--config", config_file(), "logs", "leases"]) == 0
        assert "No log entries." in capsys.readouterr().out

    def test_unknown_category(self, config_file, capsys):
        assert cli_mod.main(["--config", config_file(), "logs", "jobs", "--category", "security"]) == 1
        assert "[ERROR] No 'security' logs for jobs" in capsys.readouterr().out

    def test_unknown_object_type(self, config_file):
        with pytest.raises(SystemExit):
            cli_mod.main(["--config", config_file(), "logs", "widgets"])


class TestCmdHealth:
    def test_all_ok(self, config_file, monkeypatch, capsys):
        monkeypatch.setattr("modqueue.process.scheduler.check_broker", lambda url: True)
        assert cli_mod.main(["--config", config_file(), "health"]) == 0
        out = capsys.readouterr().out
        assert "[OK] Database" in out
        assert "[OK] Broker redis://localhost:6379/0" in out

    def test_broker_down(self, config_file, monkeypatch, capsys):
        monkeypatch.setattr("modqueue.process.scheduler.check_broker", lambda url: False)
        assert cli_mod.main(["--config", config_file(), "health"]) == 1
        assert "[ERROR] Broker" in capsys.readouterr().out
