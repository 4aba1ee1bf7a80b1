import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import requests

from burnin.app.settings import MesSettings
from burnin.services.mes_reporter import MesReporter


class DummySession:
    def __init__(self, status_code=200, error=None):
        self.status_code = status_code
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append(("POST", url, json))
        if self.error:
            raise self.error
        return SimpleNamespace(status_code=self.status_code, text="")

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs.get("json")))
        if self.error:
            raise self.error
        return SimpleNamespace(status_code=self.status_code, text='{"ok": true}')


def finished_run(make_run, state="success", **process):
    run = make_run(**process)
    run.current_state = state
    run.end_time = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return run


def reporter(engine, store, session, **settings):
    data = {"url": "http://mes.local/report"}
    data.update(settings)
    return MesReporter(engine, store, settings=MesSettings(**data), session=session)


def test_payload_carries_result_and_measurements(engine, store, make_run):
    store.publish("dev1", {"temperature": 65.5})
    run = finished_run(make_run)

    payload = reporter(engine, store, DummySession()).build_payload(run)

    assert payload == {
        "workstation_id": "ws-1",
        "process_name": "Burn-in",
        "result": "success",
        "timestamp": "2024-05-01T12:00:00+00:00",
        "measurements": {"dev1.temperature": 65.5},
    }


def test_http_report_posts_json(engine, store, make_run):
    session = DummySession()
    run = finished_run(make_run, state="fail")

    delivered = asyncio.run(reporter(engine, store, session).report(run))

    assert delivered is True
    [(method, url, body)] = session.calls
    assert (method, url) == ("POST", "http://mes.local/report")
    assert body["result"] == "fail"


def test_non_200_is_logged_not_raised(engine, store, make_run):
    run = finished_run(make_run)

    delivered = asyncio.run(reporter(engine, store, DummySession(status_code=503)).report(run))

    assert delivered is False
    assert run.current_state == "success"
    assert any("HTTP 503" in entry["message"] for entry in run.log_entries())


def test_connection_error_is_logged(engine, store, make_run):
    run = finished_run(make_run)
    session = DummySession(error=requests.ConnectionError("refused"))

    assert asyncio.run(reporter(engine, store, session).report(run)) is False
    assert any(entry["level"] == "error" for entry in run.log_entries())


def test_process_url_overrides_settings(engine, store, make_run):
    session = DummySession()
    run = finished_run(make_run, mes={"url": "http://other/mes"})

    asyncio.run(reporter(engine, store, session).report(run))

    assert session.calls[0][1] == "http://other/mes"


def test_report_script_receives_payload_and_http(engine, store, make_run):
    session = DummySession()
    script = (
        "resp = http.post('http://mes.local/custom', json={'id': report['workstation_id'], 'r': report['result']})\n"
        "system.log('mes status', resp.status_code)\n"
    )
    run = finished_run(make_run, mes={"script": script})

    delivered = asyncio.run(reporter(engine, store, session).report(run))

    assert delivered is True
    assert session.calls == [("POST", "http://mes.local/custom", {"id": "ws-1", "r": "success"})]
    assert "mes status 200" in [entry["message"] for entry in run.log_entries()]


def test_failing_report_script_never_touches_run_state(engine, store, make_run):
    run = finished_run(make_run, state="end", mes={"script": "raise ValueError('mes down')"})

    delivered = asyncio.run(reporter(engine, store, DummySession()).report(run))

    assert delivered is False
    assert run.current_state == "end"
    assert any("mes down" in entry["message"] for entry in run.log_entries())


def test_disabled_reporting_is_skipped(engine, store, make_run):
    session = DummySession()
    run = finished_run(make_run)

    assert asyncio.run(reporter(engine, store, session, enabled=False).report(run)) is False
    assert session.calls == []


def test_missing_endpoint_is_logged(engine, store, make_run):
    run = finished_run(make_run)
    assert asyncio.run(reporter(engine, store, DummySession(), url=None).report(run)) is False
    assert any("no endpoint" in entry["message"] for entry in run.log_entries())
