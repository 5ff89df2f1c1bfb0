import json
import logging
import sys
from types import SimpleNamespace

import pytest

from catalogue_rec import cli
from catalogue_rec.database import Database, InferenceStore, SQLiteMovieRepository
from catalogue_rec.errors import AuditWriteError


@pytest.fixture
def cli_db(monkeypatch, tmp_path):
    """Point the CLI at a temp database and close it afterwards."""
    database = Database(tmp_path / "cli.db")
    database.init_schema()
    monkeypatch.setattr(cli, "_database", database)
    yield database
    database.close()


def _catalogue_file(tmp_path, records):
    path = tmp_path / "movies.json"
    path.write_text(json.dumps({"movies": records}))
    return path


def test_validate_movie_id():
    assert cli._validate_movie_id(" tt0110413 ") == "tt0110413"
    with pytest.raises(ValueError):
        cli._validate_movie_id("1; DROP TABLE movies")
    with pytest.raises(ValueError):
        cli._validate_movie_id("  ")


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_sections(args):
        called["command"] = args.command
        called["movie_id"] = args.movie_id

    monkeypatch.setattr(cli, "cmd_sections", fake_sections)
    monkeypatch.setattr(sys, "argv", ["prog", "sections", "m1"])

    cli.main()

    assert called == {"command": "sections", "movie_id": "m1"}


def test_send_notification_uses_webhook(monkeypatch):
    payload = {}

    def fake_post(url, json, timeout):
        payload.update({"url": url, "json": json, "timeout": timeout})

    dummy_httpx = SimpleNamespace(post=fake_post)
    monkeypatch.setitem(sys.modules, "httpx", dummy_httpx)
    monkeypatch.setattr(cli, "NOTIFICATION_WEBHOOK_URL", "https://hook.test")

    cli.send_notification("batch done")

    assert payload["url"] == "https://hook.test"
    assert payload["json"]["content"] == "batch done"
    assert payload["timeout"] == 10


def test_send_notification_without_webhook_is_noop(monkeypatch):
    def fail_post(*args, **kwargs):
        raise AssertionError("should not post")

    monkeypatch.setitem(sys.modules, "httpx", SimpleNamespace(post=fail_post))
    monkeypatch.setattr(cli, "NOTIFICATION_WEBHOOK_URL", "")

    cli.send_notification("ignored")


def test_import_skips_invalid_records(cli_db, tmp_path):
    path = _catalogue_file(tmp_path, [
        {"id": "m1", "title": "One", "director": "D", "genres": ["Drama"]},
        {"title": "No id"},
    ])

    cli.cmd_import(SimpleNamespace(file=path))

    repo = SQLiteMovieRepository(cli_db)
    assert repo.get_movie("m1").director == "D"


def test_batch_infer_writes_audit_rows_and_notifies(cli_db, tmp_path, monkeypatch):
    records = [{"id": "s", "title": "Source", "director": "D", "lead_actor": "H", "poster_url": "p"}]
    records += [
        {"id": f"c{i}", "title": f"C{i}", "director": "D", "lead_actor": "H", "composer": "M", "poster_url": "p"}
        for i in range(3)
    ]
    cli.cmd_import(SimpleNamespace(file=_catalogue_file(tmp_path, records)))

    messages = []
    monkeypatch.setattr(cli, "send_notification", messages.append)

    cli.cmd_batch_infer(SimpleNamespace(field="composer", limit=10, write=True, batch_id="batch-7"))

    entries = InferenceStore(cli_db).list_audit_entries()
    assert [(e["entity_id"], e["inferred_value"], e["batch_id"]) for e in entries] == [("s", "M", "batch-7")]
    assert len(InferenceStore(cli_db).list_relations("s")) == 1
    assert messages and "batch-7" in messages[0]


def test_batch_infer_dry_run_writes_nothing(cli_db, tmp_path, monkeypatch):
    records = [{"id": "s", "title": "Source", "director": "D", "lead_actor": "H"}]
    records += [
        {"id": f"c{i}", "title": f"C{i}", "director": "D", "lead_actor": "H", "composer": "M"}
        for i in range(3)
    ]
    cli.cmd_import(SimpleNamespace(file=_catalogue_file(tmp_path, records)))
    monkeypatch.setattr(cli, "send_notification", lambda message: None)

    cli.cmd_batch_infer(SimpleNamespace(field="composer", limit=10, write=False, batch_id=None))

    assert InferenceStore(cli_db).list_audit_entries() == []


def test_review_command_updates_status(cli_db, tmp_path, caplog):
    records = [{"id": "s", "title": "Source", "director": "D", "lead_actor": "H"}]
    records += [
        {"id": f"c{i}", "title": f"C{i}", "director": "D", "lead_actor": "H", "composer": "M"}
        for i in range(3)
    ]
    cli.cmd_import(SimpleNamespace(file=_catalogue_file(tmp_path, records)))
    cli.cmd_infer(SimpleNamespace(movie_id="s", field="composer", write=True, no_relation=True, json=False))

    audit_id = InferenceStore(cli_db).list_audit_entries()[0]["id"]
    cli.cmd_review(SimpleNamespace(audit_id=audit_id, decision="approve", reviewer="editor"))

    entry = InferenceStore(cli_db).list_audit_entries()[0]
    assert entry["status"] == "approved"
    assert InferenceStore(cli_db).list_relations("s") == []


def test_infer_write_failure_is_logged_with_committed_audit_id(cli_db, tmp_path, monkeypatch, caplog):
    records = [{"id": "s", "title": "Source", "director": "D", "lead_actor": "H"}]
    records += [
        {"id": f"c{i}", "title": f"C{i}", "director": "D", "lead_actor": "H", "composer": "M"}
        for i in range(3)
    ]
    cli.cmd_import(SimpleNamespace(file=_catalogue_file(tmp_path, records)))

    class FailingWriter:
        def __init__(self, store):
            pass

        def record(self, movie, result, create_relation=True):
            raise AuditWriteError("disk I/O error", audit_id=5)

    monkeypatch.setattr(cli, "InferenceWriter", FailingWriter)

    with caplog.at_level(logging.ERROR):
        cli.cmd_infer(SimpleNamespace(movie_id="s", field="composer", write=True, no_relation=False, json=False))

    assert "Failed to record inferences for s: disk I/O error" in caplog.text
    assert "Audit #5 was recorded but its relation was not" in caplog.text
