"""
Tests for the access-log middleware.

Verifies:
1. Records are rendered on completion and emitted on the next loop iteration
2. Immediate mode logs at entry, before any response exists
3. Exactly one record per exchange, even when finish and close both fire
4. Skip policy suppresses records in both modes
5. Configuration errors surface at the first render
6. The wrapped app's behavior and exceptions are untouched
"""

import asyncio
import re
import time

import httpx
import pytest
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from request_logger.capture import Signal
from request_logger.core.exceptions import InvalidOptionsError, UnknownTokenError
from request_logger.emitter import DEFAULT_EVENT_TYPE, LWESEmitter
from request_logger.middleware.logging_middleware import RequestLoggerMiddleware


# ─── Helpers ──────────────────────────────────────────────


async def homepage(request):
    return PlainTextResponse("hello, world", headers={"X-Sent": "yes"})


async def created(request):
    return PlainTextResponse("made", status_code=201)


def _starlette_app() -> Starlette:
    return Starlette(routes=[Route("/", homepage), Route("/items", created, methods=["POST"])])


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def _raw_app(status=200, body=b"ok", headers=()):
    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": status, "headers": list(headers)})
        await send({"type": "http.response.body", "body": body})

    return app


async def _receive():
    return {"type": "http.request", "body": b"", "more_body": False}


async def _run(middleware, scope):
    sent = []

    async def send(message):
        sent.append(message)

    await middleware(scope, _receive, send)
    return sent


async def _flush():
    await asyncio.sleep(0)


# ─── Rendering Through a Real App ─────────────────────────


class TestRendering:
    @pytest.mark.asyncio
    async def test_method_url_status(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(), format=[":method", ":url", ":status"], emitter=emitter
        )
        async with _client(app) as client:
            resp = await client.get("/")
        await _flush()

        assert resp.status_code == 200
        assert emitter.records == [{"method": "GET", "url": "/", "status": "200"}]
        assert list(emitter.records[0]) == ["method", "url", "status"]

    @pytest.mark.asyncio
    async def test_default_format(self, emitter):
        app = RequestLoggerMiddleware(_starlette_app(), emitter=emitter)
        async with _client(app) as client:
            await client.get("/", headers={"User-Agent": "pytest"})
        await _flush()

        record = emitter.records[0]
        assert list(record) == [
            "remote_addr",
            "date",
            "method",
            "url",
            "http_version",
            "status",
            "response_content_length",
            "referrer",
            "user_agent",
            "response_time",
        ]
        assert record["remote_addr"] == "127.0.0.1"
        assert record["method"] == "GET"
        assert record["http_version"] == "1.1"
        assert record["response_content_length"] == "12"
        assert record["referrer"] == "-"
        assert record["user_agent"] == "pytest"

    @pytest.mark.asyncio
    async def test_event_shape(self, emitter):
        app = RequestLoggerMiddleware(_starlette_app(), format="tiny", emitter=emitter)
        async with _client(app) as client:
            await client.post("/items")
        await _flush()

        assert emitter.events == [
            {
                "type": DEFAULT_EVENT_TYPE,
                "attributes": {
                    "method": "POST",
                    "url": "/items",
                    "status": "201",
                    "response_content_length": "4",
                    "response_time": emitter.records[0]["response_time"],
                },
            }
        ]

    @pytest.mark.asyncio
    async def test_custom_event_type(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(), format="tiny", emitter=emitter, lwes={"type": "Web::Access"}
        )
        async with _client(app) as client:
            await client.get("/")
        await _flush()

        assert emitter.events[0]["type"] == "Web::Access"

    @pytest.mark.asyncio
    async def test_request_and_response_headers(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(),
            format=[":request[x-from-string]", ":response[x-sent]"],
            emitter=emitter,
        )
        async with _client(app) as client:
            await client.get("/", headers={"X-From-String": "me"})
        await _flush()

        assert emitter.records == [{"request_x_from_string": "me", "response_x_sent": "yes"}]

    @pytest.mark.asyncio
    async def test_response_time_bounded_by_wall_clock(self, emitter):
        app = RequestLoggerMiddleware(_starlette_app(), format=[":response-time"], emitter=emitter)
        async with _client(app) as client:
            started = time.perf_counter()
            await client.get("/")
            elapsed_ms = (time.perf_counter() - started) * 1000
        await _flush()

        value = emitter.records[0]["response_time"]
        assert re.fullmatch(r"\d+\.\d{3}", value)
        assert 0 <= float(value) <= elapsed_ms + 1.0

    @pytest.mark.asyncio
    async def test_custom_renderer_function(self, emitter):
        def render(tokens, request, response):
            return {"method": request.method, "status": str(response.status_code)}

        app = RequestLoggerMiddleware(_starlette_app(), format=render, emitter=emitter)
        async with _client(app) as client:
            await client.get("/")
        await _flush()

        assert emitter.records == [{"method": "GET", "status": "200"}]

    @pytest.mark.asyncio
    async def test_renderer_returning_none_suppresses(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(), format=lambda tokens, req, res: None, emitter=emitter
        )
        async with _client(app) as client:
            await client.get("/")
        await _flush()

        assert emitter.events == []

    @pytest.mark.asyncio
    async def test_url_served_under_root_path(self, emitter, make_scope):
        middleware = RequestLoggerMiddleware(_raw_app(), format=[":url"], emitter=emitter)
        await _run(middleware, make_scope(path="/api/users", root_path="/api"))
        await _flush()

        assert emitter.records == [{"url": "/api/users"}]


# ─── Timing & Completion ──────────────────────────────────


class TestCompletion:
    @pytest.mark.asyncio
    async def test_emission_deferred_to_next_iteration(self, emitter, make_scope):
        middleware = RequestLoggerMiddleware(_raw_app(), format=[":status"], emitter=emitter)
        await _run(middleware, make_scope())

        assert emitter.events == []
        await _flush()
        assert emitter.records == [{"status": "200"}]

    @pytest.mark.asyncio
    async def test_finish_then_disconnect_logs_once(self, emitter, make_scope):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"bye"})
            await receive()

        async def receive():
            return {"type": "http.disconnect"}

        middleware = RequestLoggerMiddleware(app, format=[":status"], emitter=emitter)

        async def send(message):
            pass

        await middleware(make_scope(), receive, send)
        await _flush()

        assert emitter.records == [{"status": "200"}]

    @pytest.mark.asyncio
    async def test_client_disconnect_before_response(self, emitter, make_scope):
        async def app(scope, receive, send):
            message = await receive()
            assert message["type"] == "http.disconnect"

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            raise AssertionError("nothing should be sent")

        middleware = RequestLoggerMiddleware(app, format=[":method", ":status"], emitter=emitter)
        await middleware(make_scope(), receive, send)
        await _flush()

        assert emitter.records == [{"method": "GET", "status": "-"}]

    @pytest.mark.asyncio
    async def test_streaming_logs_after_last_chunk(self, emitter, make_scope):
        seen_before_last = []

        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"a", "more_body": True})
            await asyncio.sleep(0)
            seen_before_last.extend(emitter.events)
            await send({"type": "http.response.body", "body": b"b"})

        middleware = RequestLoggerMiddleware(app, format=[":status"], emitter=emitter)
        await _run(middleware, make_scope())
        await _flush()

        assert seen_before_last == []
        assert emitter.records == [{"status": "200"}]

    @pytest.mark.asyncio
    async def test_app_exception_logs_and_propagates(self, emitter, make_scope):
        async def app(scope, receive, send):
            raise RuntimeError("boom")

        middleware = RequestLoggerMiddleware(app, format=[":url", ":status"], emitter=emitter)
        with pytest.raises(RuntimeError, match="boom"):
            await _run(middleware, make_scope(path="/broken"))
        await _flush()

        assert emitter.records == [{"url": "/broken", "status": "-"}]

    @pytest.mark.asyncio
    async def test_remote_addr_after_peer_torn_down(self, emitter, make_scope):
        async def app(scope, receive, send):
            scope["client"] = None
            await _raw_app()(scope, receive, send)

        middleware = RequestLoggerMiddleware(app, format=[":remote-addr"], emitter=emitter)
        await _run(middleware, make_scope(client=("198.51.100.4", 4000)))
        await _flush()

        assert emitter.records == [{"remote_addr": "198.51.100.4"}]

    @pytest.mark.asyncio
    async def test_listeners_cleared_when_exchange_ends(self, emitter, make_scope):
        views = []

        def skip(req, res):
            views.append(res)
            return False

        async def app(scope, receive, send):
            # Start line only; the app never finishes the body
            await send({"type": "http.response.start", "status": 204, "headers": []})

        middleware = RequestLoggerMiddleware(app, format=[":status"], skip=skip, emitter=emitter)
        await _run(middleware, make_scope())
        await _flush()

        assert emitter.records == [{"status": "204"}]
        assert views[0].listener_count(Signal.FINISH) == 0
        assert views[0].listener_count(Signal.CLOSE) == 0


# ─── Immediate Mode ───────────────────────────────────────


class TestImmediate:
    @pytest.mark.asyncio
    async def test_logs_before_response(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(),
            format=[":method", ":status", ":response-time"],
            immediate=True,
            emitter=emitter,
        )
        async with _client(app) as client:
            resp = await client.get("/")
        await _flush()

        assert resp.status_code == 200
        assert emitter.records == [{"method": "GET", "status": "-", "response_time": "-"}]

    @pytest.mark.asyncio
    async def test_never_refires_on_completion(self, emitter, make_scope):
        async def app(scope, receive, send):
            await _raw_app()(scope, receive, send)
            await receive()

        async def receive():
            return {"type": "http.disconnect"}

        async def send(message):
            pass

        middleware = RequestLoggerMiddleware(app, format=[":method"], immediate=True, emitter=emitter)
        await middleware(make_scope(), receive, send)
        await _flush()

        assert len(emitter.events) == 1


# ─── Skip Policy ──────────────────────────────────────────


class TestSkip:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("immediate", [False, True])
    @pytest.mark.parametrize("fmt", ["default", "tiny", [":method"]])
    async def test_skip_suppresses(self, emitter, immediate, fmt):
        app = RequestLoggerMiddleware(
            _starlette_app(),
            format=fmt,
            immediate=immediate,
            skip=lambda req, res: True,
            emitter=emitter,
        )
        async with _client(app) as client:
            resp = await client.get("/")
        await _flush()

        assert resp.status_code == 200
        assert emitter.events == []

    @pytest.mark.asyncio
    async def test_skip_sees_final_response(self, emitter):
        app = RequestLoggerMiddleware(
            _starlette_app(),
            format=[":url"],
            skip=lambda req, res: res.status_code < 400,
            emitter=emitter,
        )
        async with _client(app) as client:
            await client.get("/")
            await client.get("/missing")
        await _flush()

        assert emitter.records == [{"url": "/missing"}]

    @pytest.mark.asyncio
    async def test_skip_exception_propagates(self, emitter, make_scope):
        def skip(req, res):
            raise ValueError("bad policy")

        middleware = RequestLoggerMiddleware(
            _raw_app(), format=[":method"], immediate=True, skip=skip, emitter=emitter
        )
        with pytest.raises(ValueError, match="bad policy"):
            await _run(middleware, make_scope())


# ─── Configuration ────────────────────────────────────────


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_unknown_token_fails_on_first_request(self, emitter, make_scope):
        middleware = RequestLoggerMiddleware(
            _raw_app(), format=[":no-such-token"], immediate=True, emitter=emitter
        )
        with pytest.raises(UnknownTokenError):
            await _run(middleware, make_scope())

    def test_renderer_resolved_once(self, emitter):
        middleware = RequestLoggerMiddleware(_raw_app(), format="short", emitter=emitter)
        assert middleware.renderer.fields[0] == "remote_addr"
        assert middleware.renderer is RequestLoggerMiddleware(
            _raw_app(), format="short", emitter=emitter
        ).renderer

    def test_builds_lwes_emitter_by_default(self):
        middleware = RequestLoggerMiddleware(
            _raw_app(), lwes={"address": "224.1.1.11", "port": 9191, "ttl": 5}
        )
        assert isinstance(middleware.emitter, LWESEmitter)
        assert middleware.emitter.options.port == 9191
        assert middleware.emitter.options.ttl == 5
        assert middleware.event_type == DEFAULT_EVENT_TYPE

    def test_invalid_lwes_options(self):
        with pytest.raises(InvalidOptionsError):
            RequestLoggerMiddleware(_raw_app(), lwes={"port": 0})

    @pytest.mark.asyncio
    async def test_non_http_scope_passes_through(self, emitter):
        calls = []

        async def app(scope, receive, send):
            calls.append(scope["type"])

        middleware = RequestLoggerMiddleware(app, emitter=emitter)
        await middleware({"type": "lifespan"}, _receive, None)
        await _flush()

        assert calls == ["lifespan"]
        assert emitter.events == []
