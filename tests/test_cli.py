"""
Tests for the command-line entry point.
"""

import json

import pytest

from leadenrich import __version__, app
from leadenrich.database import dispose_engines


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a throwaway database and report directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LEADENRICH_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("LEADENRICH_REPORT_DIR", str(tmp_path / "reports"))
    monkeypatch.setenv("LEADENRICH_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("LEADENRICH_PROVIDER_BASE_URL", raising=False)
    yield tmp_path
    dispose_engines()


@pytest.fixture
def fake_invoker(monkeypatch, make_provider):
    """Replace the HTTP provider with the in-memory one."""
    provider = make_provider()

    def _build(**kwargs):
        provider.name = kwargs["name"]
        return provider

    monkeypatch.setattr(app, "HttpProviderInvoker", _build)
    monkeypatch.setenv("LEADENRICH_PROVIDER_BASE_URL", "https://provider.example/v1/skiptrace")
    return provider


class TestMain:
    """Test top-level argument handling."""

    def test_version(self, capsys):
        """--version prints the package version."""
        app.main(["--version"])
        assert capsys.readouterr().out.strip() == __version__

    def test_no_command_prints_help(self, capsys):
        """Without a command the usage is shown."""
        app.main([])
        assert "usage: leadenrich" in capsys.readouterr().out

    def test_domain_errors_exit_with_class(self, cli_env):
        """Classified errors become a readable exit message."""
        with pytest.raises(SystemExit) as exc:
            app.main(["run-status", "--run-id", "missing"])
        assert str(exc.value).startswith("RunNotFoundError:")

    def test_missing_provider_url(self, cli_env):
        """enrich refuses to run without a provider endpoint."""
        with pytest.raises(SystemExit) as exc:
            app.main(["enrich", "--subject-id", "lead-1", "--street", "1 Elm", "--zip", "60601"])
        assert str(exc.value).startswith("ConfigurationError:")

    def test_invalid_subject(self, cli_env):
        """enrich validates the subject before anything else."""
        with pytest.raises(SystemExit) as exc:
            app.main(["enrich", "--subject-id", "lead-1", "--first-name", "Ana"])
        assert str(exc.value).startswith("InvalidInputError:")


class TestSubscriptionsCommands:
    """Test webhook subscription management."""

    def test_subscribe_and_list(self, cli_env, capsys):
        """A new subscription is listed."""
        app.main(["subscribe", "--event-type", "enrichment.completed", "--url", "https://a.example/hook"])
        out = capsys.readouterr().out
        assert "Subscription: " in out
        sub_id = out.split("Subscription: ")[1].split()[0]

        app.main(["subscriptions"])
        out = capsys.readouterr().out
        assert "Found 1 subscriptions" in out
        assert sub_id in out

        app.main(["deactivate", "--subscription-id", sub_id])
        capsys.readouterr()
        app.main(["subscriptions", "--active-only"])
        assert "No subscriptions." in capsys.readouterr().out

    def test_deactivate_unknown(self, cli_env):
        """Deactivating an unknown subscription exits with an error."""
        with pytest.raises(SystemExit):
            app.main(["deactivate", "--subscription-id", "nope"])


class TestEventCommands:
    """Test call summaries and delivery history."""

    def test_call_summary_emitted_once(self, cli_env, capsys):
        """A second summary for the same call SID is suppressed."""
        args = ["call-summary", "--call-sid", "CA123", "--summary", "Left voicemail", "--delivery-wait", "5"]
        app.main(args)
        assert "[emitted]" in capsys.readouterr().out
        app.main(args)
        assert "[already-emitted]" in capsys.readouterr().out
        app.main(args + ["--force"])
        assert "[emitted]" in capsys.readouterr().out

    def test_deliveries_empty(self, cli_env, capsys):
        """History on an empty database is an empty page."""
        app.main(["deliveries", "--limit", "10"])
        data = json.loads(capsys.readouterr().out)
        assert data["data"] == []
        assert data["meta"]["totalCount"] == 0
        assert data["meta"]["pagination"]["limit"] == 10

    def test_deliveries_bad_timestamp(self, cli_env):
        """Malformed --since values are rejected."""
        with pytest.raises(SystemExit):
            app.main(["deliveries", "--since", "yesterday"])


class TestBackfillCommands:
    """Test backfill through the CLI."""

    def test_backfill_then_status_and_report(self, cli_env, fake_invoker, capsys):
        """A run completes, and its status and report can be read back."""
        records = cli_env / "leads.jsonl"
        records.write_text(
            "\n".join(
                json.dumps({"subject_id": f"lead-{i}", "street": f"{i} Main St", "zip": "60601"}) for i in range(3)
            )
        )

        app.main(["backfill", "--run-id", "nightly", "--input", str(records), "--delivery-wait", "5"])
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "completed"
        assert report["processed"] == 3
        assert fake_invoker.call_count == 3
        assert (cli_env / "reports" / "nightly.json").exists()

        app.main(["run-status", "--run-id", "nightly"])
        status = json.loads(capsys.readouterr().out)
        assert status["status"] == "completed"
        assert status["processedCount"] == 3

        app.main(["run-report", "--run-id", "nightly"])
        assert json.loads(capsys.readouterr().out)["run_id"] == "nightly"

    def test_run_report_falls_back_to_report_file(self, cli_env, capsys):
        """A report file is shown for a run the database no longer knows."""
        (cli_env / "reports").mkdir(exist_ok=True)
        (cli_env / "reports" / "archived.json").write_text(json.dumps({"run_id": "archived", "status": "completed"}))
        app.main(["run-report", "--run-id", "archived"])
        assert json.loads(capsys.readouterr().out)["status"] == "completed"

    def test_run_report_unknown_run(self, cli_env):
        """Without a row or a report file the run is unknown."""
        with pytest.raises(SystemExit) as exc:
            app.main(["run-report", "--run-id", "never-ran"])
        assert str(exc.value).startswith("RunNotFoundError:")

    def test_backfill_missing_input(self, cli_env, fake_invoker):
        """A missing records file exits before any work."""
        with pytest.raises(SystemExit):
            app.main(["backfill", "--run-id", "r", "--input", str(cli_env / "nope.csv")])
        assert fake_invoker.call_count == 0

    def test_cleanup_command(self, cli_env, capsys):
        """cleanup reports what it removed."""
        app.main(["cleanup", "--days", "30"])
        out = capsys.readouterr().out
        assert "Cache rows: before=0 removed=0 after=0" in out
        assert "Stale run locks released: 0" in out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
