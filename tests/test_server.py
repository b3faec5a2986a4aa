import asyncio
import json

import pytest
import websockets

from devreload.protocol import Failure, Update
from devreload.server import DevServer, EMBED_SCRIPT
from devreload.watch import ConfigError, WatchRule


async def http_get(port, path):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n\r\n".encode())
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, body


async def recv(ws):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=5))


def reload_url(server):
    return f"ws://127.0.0.1:{server.port}/__reload"


@pytest.mark.asyncio
async def test_serves_index_with_embed_script(site):
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        status, body = await http_get(server.port, "/")
    assert status == 200
    assert body == b"<html><head>" + EMBED_SCRIPT + b"</head><body>home</body></html>"


@pytest.mark.asyncio
async def test_missing_file_over_http(site):
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        status, body = await http_get(server.port, "/nope.js")
    assert status == 404
    assert body == b"404 Not Found /nope.js"


@pytest.mark.asyncio
async def test_error_fan_out_replay_and_update(site):
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)) as first, \
                websockets.connect(reload_url(server)) as second:
            while len(server.hub.clients) < 2:
                await asyncio.sleep(0.01)

            await server.hub.record_and_broadcast(Failure("SyntaxError: ..."))
            assert await recv(first) == ["error", "SyntaxError: ..."]
            assert await recv(second) == ["error", "SyntaxError: ..."]

            async with websockets.connect(reload_url(server)) as third:
                assert await recv(third) == ["error", "SyntaxError: ..."]

            await server.hub.record_and_broadcast(Update("/src/app.js"))
            assert await recv(first) == ["update", "/src/app.js"]
            assert await recv(second) == ["update", "/src/app.js"]
            assert server.hub.last_error is None


@pytest.mark.asyncio
async def test_closed_connection_leaves_the_hub(site):
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)):
            while not server.hub.clients:
                await asyncio.sleep(0.01)
        for _ in range(100):
            if not server.hub.clients:
                break
            await asyncio.sleep(0.01)
        assert not server.hub.clients


@pytest.mark.asyncio
async def test_peer_can_publish_messages(site):
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)) as page, \
                websockets.connect(reload_url(server)) as tool:
            await tool.send('["refresh", "ignored"]')
            await tool.send("not json")
            await tool.send('["error", "from tool"]')
            assert await recv(page) == ["error", "from tool"]
            assert server.hub.last_error == Failure("from tool")


@pytest.mark.asyncio
async def test_change_without_command_reloads_pages(site, tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    rule = WatchRule(f"{src}/**/*.js")
    async with DevServer(site, [rule], host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)) as page:
            await asyncio.sleep(0.5)
            (src / "app.js").write_text("console.log('hi')")
            message = await asyncio.wait_for(page.recv(), timeout=10)
    assert json.loads(message) == ["update", str(src / "app.js")]


@pytest.mark.asyncio
async def test_missing_base_directory_fails_at_start(site, tmp_path):
    rule = WatchRule(f"{tmp_path}/missing/**/*.js")
    server = DevServer(site, [rule], host="127.0.0.1", port=0)
    with pytest.raises(ConfigError):
        await server.start()
    assert server.server is None


@pytest.mark.asyncio
async def test_failing_command_reaches_pages_as_error(site, tmp_path):
    rule = WatchRule(f"{tmp_path}/src/**/*.js", "echo 'SyntaxError: bad' >&2; exit 1")
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)) as page:
            while not server.hub.clients:
                await asyncio.sleep(0.01)
            server.on_change(rule, str(tmp_path / "src" / "app.js"))
            assert await recv(page) == ["error", "SyntaxError: bad\n"]
            assert server.hub.last_error == Failure("SyntaxError: bad\n")


@pytest.mark.asyncio
async def test_silent_rule_build_broadcasts_nothing(site, tmp_path):
    rule = WatchRule(f"{tmp_path}/src/**/*.js", "echo oops >&2; exit 1", silent=True)
    async with DevServer(site, host="127.0.0.1", port=0) as server:
        async with websockets.connect(reload_url(server)) as page:
            while not server.hub.clients:
                await asyncio.sleep(0.01)
            await server.build(rule, str(tmp_path / "src" / "app.js"))
            assert server.hub.last_error is None

            await server.hub.record_and_broadcast(Update("/src/next.js"))
            assert await recv(page) == ["update", "/src/next.js"]
