import json
import logging

import anyio
import pytest
from fastapi.testclient import TestClient

from fakes import ScriptedGenerator, kinds, parse_sse
from workflow_stream.api.main import create_app
from workflow_stream.pipeline import PLAN, Pipeline
from workflow_stream.settings import Settings

CORS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "Content-Type, Authorization",
    "access-control-allow-methods": "POST, OPTIONS",
}


def _client(gen=None, **settings):
    gen = gen or ScriptedGenerator()
    app = create_app(settings=Settings(heartbeat_sec=0, **settings), pipeline=Pipeline(generator=gen))
    return TestClient(app), gen


def test_preflight_returns_cors_headers_only():
    client, gen = _client()
    resp = client.options("/api/stream")

    assert resp.status_code == 204
    assert resp.content == b""
    for name, value in CORS.items():
        assert resp.headers[name] == value
    assert "content-type" not in resp.headers
    assert gen.calls == []


@pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE"])
def test_other_methods_are_rejected_without_streaming(method):
    client, gen = _client()
    resp = client.request(method, "/api/stream")

    assert resp.status_code == 405
    assert resp.text == "Method Not Allowed"
    assert resp.headers["content-type"].startswith("text/plain")
    assert gen.calls == []


def test_post_streams_full_event_sequence():
    client, gen = _client()
    resp = client.post("/api/stream", json={"prompt": "Write a haiku about autumn"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "text/event-stream; charset=utf-8"
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert resp.headers["x-accel-buffering"] == "no"
    for name, value in CORS.items():
        assert resp.headers[name] == value

    events = parse_sse(resp.text)
    names = kinds(events)
    assert names[0] == "ready"
    assert names[-2:] == ["final", "done"]
    assert names.count("ready") == names.count("final") == names.count("done") == 1
    assert "error" not in names

    final = events[-2][1]
    assert final["result"] == "3: output"
    assert [step for step in final["steps"]] == ["plan", "act", "reflect"]
    assert len(gen.calls) == 3
    assert "Write a haiku about autumn" in gen.calls[0]


def test_frames_use_exact_wire_shape():
    client, _ = _client()
    resp = client.post("/api/stream", json={"prompt": "p"})

    assert resp.text.startswith('event: ready\ndata: {"ok": true}\n\n')
    assert resp.text.endswith('event: done\ndata: {"ok": true}\n\n')


def test_generation_failure_on_second_stage():
    gen = ScriptedGenerator(fail_on=2, error=RuntimeError("model exploded"))
    client, _ = _client(gen)
    resp = client.post("/api/stream", json={"prompt": "p"})

    assert resp.status_code == 200
    events = parse_sse(resp.text)
    names = kinds(events)
    assert names[0] == "ready"
    assert names[-2:] == ["error", "done"]
    assert "final" not in names
    assert "model exploded" in events[-2][1]["message"]
    assert events[-2][1]["name"] == "RuntimeError"


@pytest.mark.parametrize(
    "content",
    [b"not json", b"", b"[1, 2, 3]", b'{"prompt": null}', b'{"prompt": 5}'],
)
def test_malformed_body_means_empty_prompt(content):
    client, gen = _client()
    resp = client.post("/api/stream", content=content, headers={"content-type": "application/json"})

    assert resp.status_code == 200
    assert kinds(parse_sse(resp.text))[-2:] == ["final", "done"]
    assert gen.calls[0] == PLAN.instruction("")
    workflow_start = parse_sse(resp.text)[1][1]
    assert workflow_start["payload"] == {"prompt": ""}


def test_unconfigured_model_reports_error_event():
    app = create_app(settings=Settings(heartbeat_sec=0))
    resp = TestClient(app).post("/api/stream", json={"prompt": "p"})

    events = parse_sse(resp.text)
    assert kinds(events)[0] == "ready"
    assert kinds(events)[-2:] == ["error", "done"]
    assert events[-2][1]["name"] == "GenerationNotConfiguredError"


def test_health():
    client, _ = _client()
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["service"] == "workflow-stream-service"


def test_http_logging_writes_one_json_line(caplog):
    caplog.set_level(logging.INFO, logger="api.http")
    client, _ = _client(http_log=True)
    client.post("/api/stream", json={"prompt": "p", "token": "s3cret"})

    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "api.http"]
    assert len(records) == 1
    record = records[0]
    assert record["method"] == "POST"
    assert record["path"] == "/api/stream"
    assert record["status"] == 200
    assert record["request"]["body"] == {"prompt": "p", "token": "***"}
    assert record["response"]["body"].startswith("event: ready")


class SlowGenerator:
    async def generate(self, instruction):
        await anyio.sleep(0.2)
        return "slow output"


def test_heartbeat_comments_are_interleaved_but_ignored():
    app = create_app(settings=Settings(heartbeat_sec=0.05), pipeline=Pipeline(generator=SlowGenerator()))
    resp = TestClient(app).post("/api/stream", json={"prompt": "p"})

    assert ": hb " in resp.text
    assert kinds(parse_sse(resp.text))[-2:] == ["final", "done"]


class PlanThenBlockGenerator:
    """Answers the first stage, then waits until cancelled."""

    def __init__(self):
        self.calls = []
        self.cancelled = False

    async def generate(self, instruction):
        self.calls.append(instruction)
        if len(self.calls) == 1:
            return "plan output"
        try:
            await anyio.sleep_forever()
        except anyio.get_cancelled_exc_class():
            self.cancelled = True
            raise


def _http_scope():
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/stream",
        "raw_path": b"/api/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json")],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }


def _drive_asgi(app, on_second_chunk):
    """Serve one POST over raw ASGI; `on_second_chunk(gone)` decides what the client does next."""
    body_chunks = []

    async def main():
        gone = anyio.Event()
        request_sent = False

        async def receive():
            nonlocal request_sent
            if not request_sent:
                request_sent = True
                return {"type": "http.request", "body": b'{"prompt": "p"}', "more_body": False}
            await gone.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] != "http.response.body":
                return
            body_chunks.append(message.get("body", b""))
            if len(body_chunks) == 2:
                await on_second_chunk(gone)

        with anyio.fail_after(5):
            await app(_http_scope(), receive, send)

    anyio.run(main)
    return body_chunks


def test_client_disconnect_during_write_cancels_run_without_error(caplog):
    caplog.set_level(logging.ERROR)
    gen = PlanThenBlockGenerator()
    app = create_app(settings=Settings(heartbeat_sec=0), pipeline=Pipeline(generator=gen))

    async def stall_then_disconnect(gone):
        while len(gen.calls) < 2:
            await anyio.sleep(0.01)
        gone.set()
        await anyio.sleep_forever()

    chunks = _drive_asgi(app, stall_then_disconnect)

    assert chunks[0].startswith(b"event: ready")
    assert gen.cancelled is True
    assert not [r for r in caplog.records if "internal_error" in r.getMessage()]


def test_broken_socket_during_write_cancels_run_without_error(caplog):
    caplog.set_level(logging.ERROR)
    gen = PlanThenBlockGenerator()
    app = create_app(settings=Settings(heartbeat_sec=0.05), pipeline=Pipeline(generator=gen))

    async def broken_pipe(gone):
        while len(gen.calls) < 2:
            await anyio.sleep(0.01)
        raise OSError("broken pipe")

    chunks = _drive_asgi(app, broken_pipe)

    assert len(chunks) == 2
    assert gen.cancelled is True
    assert not [r for r in caplog.records if "internal_error" in r.getMessage()]
