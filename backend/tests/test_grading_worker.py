from __future__ import annotations

import json

from autograder.grading_queue import GradingQueue, QueueStatus

from helpers import make_job
from scripts import grading_worker


def test_process_command_grades_queue(grading_settings, capsys) -> None:
    queue_id = GradingQueue(grading_settings).enqueue(make_job())

    assert grading_worker.main(["process", "--limit", "5"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["claimed"] == 1
    assert summary["completed"] == 1
    assert GradingQueue(grading_settings).get(queue_id).status == QueueStatus.DONE


def test_cleanup_command_reports_disabled_retention(grading_settings, capsys) -> None:
    assert grading_worker.main(["cleanup"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["cutoff"] is None
    assert report["queue_items"] == 0


def test_worker_failure_returns_non_zero(grading_settings, monkeypatch) -> None:
    def explode(*_args, **_kwargs):
        raise RuntimeError("database gone")

    monkeypatch.setattr(grading_worker, "cleanup_old_data", explode)
    assert grading_worker.main(["cleanup"]) == 1
