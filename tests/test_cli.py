"""Tests for the command line entry point."""

import io

import pytest

from collector import main as cli
from collector.core import SyncState, SyncSummary


def make_summary(**kwargs):
    defaults = dict(
        sync_run_id="run-1",
        git_repos_processed=2,
        git_repos_synced=1,
        commits_found=3,
        workspaces_processed=1,
        workspaces_synced=1,
        sessions_found=2,
        entries_found=5,
        state=SyncState.DONE,
    )
    defaults.update(kwargs)
    return SyncSummary(**defaults)


class TestArgumentParsing:
    """Test CLI flags."""

    def test_repeated_source_dirs(self):
        args = cli.build_parser().parse_args(["-s", "/a", "--source-dir", "/b", "-v", "--dry-run"])
        assert args.source_dirs == ["/a", "/b"]
        assert args.verbose is True
        assert args.dry_run is True

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.source_dirs == []
        assert args.verbose is False
        assert args.dry_run is False

    def test_help_exits_cleanly(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args(["--help"])
        assert exc_info.value.code == 0
        assert "SERVER_URL" in capsys.readouterr().out


class TestSummaryOutput:
    """Test the printed run summary."""

    def test_clean_run(self):
        out = io.StringIO()
        cli.print_summary(make_summary(), out)
        text = out.getvalue()

        assert "Sync Run ID: run-1" in text
        assert "Dry Run: No" in text
        assert "  With Changes: 1" in text
        assert "  New Commits: 3" in text
        assert "  Workspaces Processed: 1" in text
        assert "  New Entries: 5" in text
        assert text.rstrip().endswith("Sync complete.")
        assert "Errors:" not in text

    def test_errors_listed(self):
        out = io.StringIO()
        cli.print_summary(make_summary(dry_run=True, errors=["Git repo /x: boom"]), out)
        text = out.getvalue()

        assert "Dry Run: Yes" in text
        assert "Errors:\n  - Git repo /x: boom" in text
        assert "complete." not in text


class TestMain:
    """Test exit codes."""

    @pytest.fixture
    def configured(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SERVER_URL", "http://localhost:3000")
        monkeypatch.setenv("API_KEY", "secret")
        return monkeypatch

    def test_missing_configuration(self, monkeypatch, tmp_path, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SERVER_URL", raising=False)
        monkeypatch.delenv("API_KEY", raising=False)

        assert cli.main([]) == 1
        assert "Missing required environment variables" in capsys.readouterr().err

    def test_clean_run_exits_zero(self, configured, capsys):
        received = {}

        async def fake_run_sync(settings, source_dirs, dry_run, verbose):
            received.update(source_dirs=source_dirs, dry_run=dry_run, verbose=verbose)
            return make_summary(dry_run=dry_run)

        configured.setattr(cli, "run_sync", fake_run_sync)

        assert cli.main(["-s", "/src", "--dry-run"]) == 0
        assert received == {"source_dirs": ["/src"], "dry_run": True, "verbose": False}
        assert "Dry run complete." in capsys.readouterr().out

    def test_recorded_errors_exit_one(self, configured):
        async def fake_run_sync(settings, source_dirs, dry_run, verbose):
            return make_summary(errors=["Sync submission failed: API Error 500: oops"])

        configured.setattr(cli, "run_sync", fake_run_sync)

        assert cli.main([]) == 1

    def test_fatal_error_exits_one(self, configured, capsys):
        async def fake_run_sync(settings, source_dirs, dry_run, verbose):
            raise PermissionError("cannot write collector id")

        configured.setattr(cli, "run_sync", fake_run_sync)

        assert cli.main([]) == 1
        assert "Fatal error: cannot write collector id" in capsys.readouterr().err
