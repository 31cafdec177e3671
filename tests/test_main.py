"""Tests for the worker command line and HTTP app."""

import json

import pytest
from conftest import make_settings
from fastapi.testclient import TestClient

from voicenote_pipeline.main import build_pipeline, create_app, main, parse_args


@pytest.fixture(autouse=True)
def memory_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PIPELINE_QUEUE_DRIVER", "memory")
    monkeypatch.setenv("PIPELINE_BLOB_ROOT", str(tmp_path))


class TestParseArgs:
    def test_run_defaults(self):
        args = parse_args(["run"])
        assert (args.command, args.host, args.port, args.no_http) == ("run", "0.0.0.0", 8090, False)

    def test_run_options(self):
        args = parse_args(["run", "--port", "9000", "--no-http"])
        assert args.port == 9000
        assert args.no_http

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestMain:
    def test_health_command(self, capsys):
        assert main(["health"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "healthy"
        assert report["queue_driver"] == "memory"
        assert report["broker"]["status"] == "ok"

    def test_invalid_configuration(self, monkeypatch, capsys):
        monkeypatch.setenv("PIPELINE_QUEUE_DRIVER", "kafka")

        assert main(["health"]) == 2
        assert "Invalid configuration" in capsys.readouterr().err


class TestApp:
    def test_stats_and_health(self, tmp_path):
        settings = make_settings(blob_root=str(tmp_path))
        pipeline = build_pipeline(settings)
        manager = pipeline.create_worker_manager()
        client = TestClient(create_app(settings, pipeline, manager))

        stats = client.get("/stats").json()
        assert set(stats) == {"transcribe", "summarize"}
        assert stats["transcribe"]["queue"]["waiting"] == 0
        assert stats["summarize"]["pool"]["concurrency"] == 3

        # Pools are not started, so the worker check fails.
        health = client.get("/health")
        assert health.status_code == 503
        assert health.json()["checks"]["broker"]["status"] == "ok"
        assert health.json()["checks"]["workers"] == {"status": "failing"}
