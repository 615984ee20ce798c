import threading

from daebug.errors import INVALID_TRANSITION, NOT_FOUND
from daebug.orchestrator.dispatcher import Dispatcher, ReaperSettings, format_result
from daebug.orchestrator.jobs import JobState
from daebug.orchestrator.registry import PageState
from daebug.parse.markdown import find_requests, parse_document
from daebug.storage.layout import LogLayout

REQUEST = "# page Session\n\n### 🗣️agent to page at 10:00:00\n\n```js\n6 * 7\n```\n"


def _dispatcher(tmp_path, **reaper):
    return Dispatcher(layout=LogLayout(tmp_path), reaper=ReaperSettings(**reaper))


def _write_log(dispatcher, text, page="page"):
    path = dispatcher.layout.page_file(page)
    path.write_text(text, encoding="utf-8")
    return path


def test_poll_without_work_returns_nulls(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    response = dispatcher.poll("page", "http://localhost:3000/")
    assert response.as_dict() == {"code": None, "job_id": None}
    assert dispatcher.pages.get("page").url == "http://localhost:3000/"
    assert "[page](daebug/page.md)" in dispatcher.layout.index.read_text(encoding="utf-8")


def test_request_poll_result_round_trip(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    assert job is not None

    response = dispatcher.poll("page", "http://x")
    assert response.job_id == job.job_id
    assert response.code.strip() == "6 * 7"
    assert dispatcher.pages.get("page").state is PageState.EXECUTING

    again = dispatcher.poll("page", "http://x")
    assert again.job_id == job.job_id

    outcome = dispatcher.submit_result(job.job_id, True, 42)
    assert outcome.ok
    assert dispatcher.jobs.get(job.job_id).state is JobState.FINISHED
    assert dispatcher.pages.get("page").state is PageState.IDLE
    text = path.read_text(encoding="utf-8")
    assert "42" in text
    [request] = find_requests(parse_document(text), "page")
    assert request.has_footer is True


def test_duplicate_result_is_rejected(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")
    assert dispatcher.submit_result(job.job_id, True, 1).ok

    duplicate = dispatcher.submit_result(job.job_id, True, 2)

    assert duplicate.error == INVALID_TRANSITION
    assert path.read_text(encoding="utf-8").count("#### 👍page to agent") == 1


def test_failed_result_marks_page_failed(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")

    assert dispatcher.submit_result(job.job_id, False, error="TypeError: boom").ok

    assert dispatcher.jobs.get(job.job_id).state is JobState.FAILED
    assert dispatcher.pages.get("page").state is PageState.FAILED
    assert "TypeError: boom" in path.read_text(encoding="utf-8")


def test_result_for_unknown_job(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    outcome = dispatcher.submit_result("job-0-0000", True, 1)
    assert outcome.error == NOT_FOUND
    assert dispatcher.metrics.get("results_unknown_job") == 1


def test_rescan_creates_one_job_per_request(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    _write_log(dispatcher, REQUEST)
    assert dispatcher.rescan("page") is not None
    assert dispatcher.rescan("page") is None
    assert len(dispatcher.jobs.list()) == 1


def test_request_saved_during_a_job_runs_next(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    first = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")

    with path.open("a", encoding="utf-8") as handle:
        handle.write("\n### 🗣️agent to page at 10:00:05\n\n```js\ndocument.title\n```\n")
    assert dispatcher.rescan("page") is None

    dispatcher.submit_result(first.job_id, True, 42)

    queued = dispatcher.jobs.active_for_page("page")
    assert queued is not None
    assert "document.title" in queued.code
    assert dispatcher.poll("page", "http://x").job_id == queued.job_id


def test_parse_error_keeps_last_good_document(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, "# page Session\n\nnotes\n")
    assert dispatcher.rescan("page") is None

    path.write_text("# page Session\n\nnotes\n\n```js\nunfinished(\n", encoding="utf-8")
    assert dispatcher.rescan("page") is None
    assert dispatcher.metrics.get("parse_failures") == 1

    path.write_text("# page Session\n\nnotes\n\n```js\nfinished()\n```\n", encoding="utf-8")
    job = dispatcher.rescan("page")
    assert job is not None
    assert "finished()" in job.code


def test_expire_writes_timeout_reply(tmp_path):
    dispatcher = _dispatcher(tmp_path, job_timeout=1.0)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")

    summary = dispatcher.expire(now=job.started_at + 5.0)

    assert summary["timed_out"] == 1
    assert dispatcher.jobs.get(job.job_id).state is JobState.TIMEOUT
    assert dispatcher.pages.get("page").state is PageState.IDLE
    text = path.read_text(encoding="utf-8")
    assert "#### 🚫page to agent" in text
    assert "job timed out after 1000ms" in text
    assert dispatcher.submit_result(job.job_id, True, 1).error == INVALID_TRANSITION


def test_expire_evicts_stale_pages(tmp_path):
    dispatcher = _dispatcher(tmp_path, page_ttl=10.0)
    dispatcher.poll("page", "http://x")
    seen = dispatcher.pages.get("page").last_seen

    summary = dispatcher.expire(now=seen + 60.0)

    assert summary["evicted"] == 1
    assert dispatcher.pages.get("page") is None
    assert "No pages connected yet" in dispatcher.layout.index.read_text(encoding="utf-8")


def test_format_result():
    assert format_result(True, {"a": 1}) == '{\n  "a": 1\n}'
    assert format_result(True, None) == "null"
    assert format_result(False, error="boom") == "boom"
    assert format_result(False) == ""


def test_sweep_during_reply_write_does_not_answer_twice(tmp_path, monkeypatch):
    dispatcher = _dispatcher(tmp_path, job_timeout=1.0)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")
    original = dispatcher.writer.write_reply
    sweeps = []

    def write_with_sweep(*args, **kwargs):
        sweeps.append(dispatcher.expire(now=job.started_at + 5.0))
        return original(*args, **kwargs)

    monkeypatch.setattr(dispatcher.writer, "write_reply", write_with_sweep)
    assert dispatcher.submit_result(job.job_id, True, 42).ok

    assert sweeps[0]["timed_out"] == 0
    assert dispatcher.jobs.get(job.job_id).state is JobState.FINISHED
    text = path.read_text(encoding="utf-8")
    assert text.count("#### ") == 1
    assert len(find_requests(parse_document(text), "page")) == 1


def test_timeout_reply_skips_missing_request(tmp_path):
    dispatcher = _dispatcher(tmp_path, job_timeout=1.0)
    path = _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")
    path.write_text("# page Session\n\nrewritten\n", encoding="utf-8")

    assert dispatcher.expire(now=job.started_at + 5.0)["timed_out"] == 1
    assert path.read_text(encoding="utf-8") == "# page Session\n\nrewritten\n"


def test_display_name_and_slug_share_jobs(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(
        dispatcher,
        "# Demo Page Session\n\n### 🗣️agent to demo-page at 10:00:00\n\n```js\n1 + 1\n```\n",
        page="Demo Page",
    )
    job = dispatcher.rescan("demo-page")
    assert job is not None

    assert dispatcher.poll("Demo Page", "http://x").job_id == job.job_id
    assert dispatcher.pages.get("Demo Page").state is PageState.EXECUTING
    assert dispatcher.submit_result(job.job_id, True, 2).ok
    assert dispatcher.pages.get("Demo Page").state is PageState.IDLE
    [request] = find_requests(parse_document(path.read_text(encoding="utf-8")), "demo-page")
    assert request.has_footer is True


def test_code_in_test_results_is_not_run(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    dispatcher.writer.update_test_results("page", "failing snippet:\n\n```js\nexpect(add(1, 2)).toBe(4)\n```")
    assert dispatcher.rescan("page") is None
    assert dispatcher.jobs.list() == []


def test_identical_request_saved_during_a_job_runs_next(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    first = dispatcher.rescan("page")
    dispatcher.poll("page", "http://x")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("\n### 🗣️agent to page at 10:00:00\n\n```js\n6 * 7\n```\n")
    assert dispatcher.rescan("page") is None

    assert dispatcher.submit_result(first.job_id, True, 42).ok
    queued = dispatcher.jobs.active_for_page("page")
    assert queued is not None
    assert queued.anchor == 1

    dispatcher.poll("page", "http://x")
    assert dispatcher.submit_result(queued.job_id, True, 43).ok
    earlier, later = find_requests(parse_document(path.read_text(encoding="utf-8")), "page")
    assert earlier.has_footer is True
    assert later.has_footer is True


def test_rescan_reads_the_file_under_the_page_lock(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, "# page Session\n\nnotes\n")
    results = []
    with dispatcher._rescan_locks.hold("page"):
        worker = threading.Thread(target=lambda: results.append(dispatcher.rescan("page")))
        worker.start()
        worker.join(0.2)
        assert worker.is_alive()
        path.write_text(REQUEST, encoding="utf-8")
    worker.join(5)
    [job] = results
    assert job is not None
    assert job.code.strip() == "6 * 7"


def test_worker_timeout_note_is_appended(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    path = _write_log(dispatcher, REQUEST)
    assert dispatcher.report_worker_timeout("page", 5000).error == NOT_FOUND

    dispatcher.poll("page", "http://x")
    assert dispatcher.report_worker_timeout("page", 5000).ok
    text = path.read_text(encoding="utf-8")
    assert "### 🗣️System at " in text
    assert "Worker unresponsive for 5000ms, restarting..." in text


def test_expire_drops_requests_nobody_polls_for(tmp_path):
    dispatcher = _dispatcher(tmp_path, page_ttl=10.0)
    _write_log(dispatcher, REQUEST)
    job = dispatcher.rescan("page")

    assert dispatcher.expire(now=job.started_at + 5.0)["dropped"] == 0
    summary = dispatcher.expire(now=job.started_at + 11.0)

    assert summary["dropped"] == 1
    assert dispatcher.jobs.get(job.job_id) is None
    assert dispatcher.metrics.get("jobs_dropped") == 1


def test_evicted_page_loses_its_queued_requests(tmp_path):
    dispatcher = _dispatcher(tmp_path, page_ttl=10.0)
    dispatcher.poll("page", "http://x")
    seen = dispatcher.pages.get("page").last_seen
    job = dispatcher.jobs.create("page", "agent", "1", now=seen + 55.0)

    summary = dispatcher.expire(now=seen + 60.0)

    assert summary["evicted"] == 1
    assert summary["dropped"] == 1
    assert dispatcher.jobs.get(job.job_id) is None
