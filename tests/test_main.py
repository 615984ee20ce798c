import json

from daebug.config import load_settings
from daebug.main import main

REQUEST = "# page Session\n\n### 🗣️agent to page at 10:00:00\n\n```js\n6 * 7\n```\n"


def _run_status(tmp_path, capsys):
    main(
        [
            "--config",
            str(tmp_path / "missing.toml"),
            "--logging",
            str(tmp_path / "missing.yaml"),
            "status",
            "--root",
            str(tmp_path),
        ]
    )
    return json.loads(capsys.readouterr().out)


def test_status_summarises_logs(tmp_path, capsys):
    logs = tmp_path / "daebug"
    logs.mkdir()
    (logs / "page.md").write_text(REQUEST, encoding="utf-8")
    (logs / "broken.md").write_text("```js\nnever closed\n", encoding="utf-8")

    summary = {entry["page"]: entry for entry in _run_status(tmp_path, capsys)}

    assert summary["page"]["requests"] == 1
    assert summary["page"]["unanswered"] == 1
    assert "error" in summary["broken"]


def test_status_with_no_logs(tmp_path, capsys):
    assert _run_status(tmp_path, capsys) == []


def test_load_settings_from_toml_and_env(tmp_path, monkeypatch):
    config = tmp_path / "settings.toml"
    config.write_text(
        '[app]\nroot = "logs"\nport = 9000\n\n[jobs]\ntimeout_seconds = 5\n\n[watcher]\nenabled = false\n',
        encoding="utf-8",
    )
    monkeypatch.delenv("DAEBUG_ROOT", raising=False)
    monkeypatch.setenv("DAEBUG_PORT", "9100")

    settings = load_settings(config)

    assert str(settings.root) == "logs"
    assert settings.port == 9100
    assert settings.job_timeout_seconds == 5.0
    assert settings.watch is False
    assert settings.page_ttl_seconds == 3600.0
