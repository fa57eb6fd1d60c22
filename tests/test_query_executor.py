"""Query executor, transaction wrapper and SQL logging."""
from __future__ import annotations

import logging
import threading
import time

import pytest

from models import (
    DatabaseError,
    count_clues,
    create_clue,
    create_user,
    db_query,
    get_backend,
    list_all_clues,
    transaction,
)


def test_sqlite_backend_rewrites_placeholders(app_context):
    assert get_backend() == "sqlite"

    result = db_query("SELECT %s AS value, %s AS label", (3, "three"))

    assert result.rows == [{"value": 3, "label": "three"}]


def test_rowcount_reports_affected_rows(app_context):
    create_clue("Rope")
    create_clue("Revolver")

    result = db_query("UPDATE clues SET name = name || '!' WHERE name LIKE %s", ("R%",))

    assert result.rowcount == 2
    assert result.rows == []


def test_driver_errors_are_reraised(app_context):
    with pytest.raises(DatabaseError):
        db_query("SELECT * FROM no_such_table")


def test_statements_are_logged_with_parameters(app_context, caplog):
    caplog.set_level(logging.INFO, logger="models")

    db_query("SELECT id FROM clues WHERE name = %s", ("Wrench",))

    messages = [record.getMessage() for record in caplog.records if record.name == "models"]
    assert any("SELECT id FROM clues WHERE name = ?" in message and "Wrench" in message for message in messages)


def test_password_hashes_never_reach_the_log(app_context, caplog):
    caplog.set_level(logging.INFO, logger="models")
    fake_hash = "$2b$10$abcdefghijklmnopqrstuuCdefghijklmnopqrstuvwxyz01234"

    create_user(username="ada", password_hash=fake_hash)
    db_query("SELECT %s AS hashed", (fake_hash,))

    assert fake_hash not in caplog.text
    assert "[redacted]" in caplog.text


def test_sql_logging_can_be_disabled(app_context, caplog, monkeypatch):
    monkeypatch.setenv("SQL_LOG_ENABLED", "false")
    caplog.set_level(logging.INFO, logger="models")

    db_query("SELECT 1 AS one")

    assert not [record for record in caplog.records if record.name == "models"]


def test_transaction_rolls_back_every_statement(app_context):
    with pytest.raises(RuntimeError):
        with transaction():
            create_clue("Rope")
            create_clue("Candlestick")
            raise RuntimeError("boom")

    assert count_clues() == 0


def test_transaction_commits_on_success(app_context):
    with transaction():
        create_clue("Rope")
        create_clue("Candlestick")

    assert count_clues() == 2


def test_nested_transactions_commit_with_the_outermost(app_context):
    with pytest.raises(RuntimeError):
        with transaction():
            with transaction():
                create_clue("Wrench")
            create_clue("Lead pipe")
            raise RuntimeError("outer failure")

    assert count_clues() == 0


def test_failed_statement_inside_transaction_rolls_back_earlier_writes(app_context):
    with pytest.raises(DatabaseError):
        with transaction():
            create_clue("Poison")
            create_clue("Poison")

    assert count_clues() == 0


def test_other_threads_do_not_join_an_open_transaction(app_context):
    inside_transaction = threading.Event()
    writer_started = threading.Event()
    failures: list[BaseException] = []

    def failing_request():
        try:
            with transaction():
                create_clue("Rope")
                inside_transaction.set()
                writer_started.wait(timeout=5)
                time.sleep(0.1)
                raise RuntimeError("request failed")
        except RuntimeError as exc:
            failures.append(exc)

    def concurrent_request():
        inside_transaction.wait(timeout=5)
        writer_started.set()
        create_clue("Magnifying glass")

    threads = [threading.Thread(target=failing_request), threading.Thread(target=concurrent_request)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(failures) == 1
    assert [clue["name"] for clue in list_all_clues()] == ["Magnifying glass"]
