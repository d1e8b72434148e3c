from livequiz.client.events import EventEmitter


async def test_sync_and_async_handlers():
    events = EventEmitter()
    seen = []

    async def later(data):
        seen.append(("async", data["n"]))

    events.on("ping", lambda data: seen.append(("sync", data["n"])))
    events.on("ping", later)

    assert await events.emit("ping", {"n": 1}) == 2
    assert seen == [("sync", 1), ("async", 1)]


async def test_failing_handler_does_not_block_others(caplog):
    events = EventEmitter()
    seen = []

    def broken(data):
        raise RuntimeError("boom")

    events.on("ping", broken)
    events.on("ping", seen.append)

    assert await events.emit("ping", {"n": 1}) == 1
    assert seen == [{"n": 1}]
    assert "Handler for 'ping' failed" in caplog.text


async def test_off_removes_handlers():
    events = EventEmitter()
    seen = []
    handler = events.on("ping", seen.append)
    events.on("pong", seen.append)

    events.off("ping", handler)
    events.off("pong")

    assert await events.emit("ping") == 0
    assert await events.emit("pong") == 0
    assert seen == []


async def test_emit_without_data_passes_empty_dict():
    events = EventEmitter()
    seen = []
    events.on("ping", seen.append)
    await events.emit("ping")
    assert seen == [{}]
