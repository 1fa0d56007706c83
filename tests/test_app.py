import asyncio
from dataclasses import replace

import aiohttp
import pytest

from mdm_dispatcher.app import DispatcherApp
from mdm_dispatcher.core.models import CommandStatus


@pytest.mark.asyncio
async def test_app_serves_commands_and_shuts_down(
    make_config, fake_gateway, wait_for, unused_tcp_port
):
    config = make_config()
    config.server = replace(config.server, port=unused_tcp_port)
    gateway = fake_gateway()
    app = DispatcherApp(config, gateway=gateway)

    task = asyncio.create_task(app.run())
    await wait_for(lambda: app.dispatcher is not None and app.dispatcher.running)
    base_url = f"http://127.0.0.1:{unused_tcp_port}"

    # The HTTP site starts after the dispatcher; retry until it is listening.
    async with aiohttp.ClientSession() as session:
        for _ in range(100):
            try:
                async with session.get(f"{base_url}/healthz") as response:
                    health = await response.json()
                break
            except aiohttp.ClientConnectionError:
                await asyncio.sleep(0.01)
        else:
            pytest.fail("HTTP server did not start")

        body = {"deviceToken": "TOK1", "payload": {"CommandUUID": "C-1"}}
        async with session.post(f"{base_url}/command", json=body) as response:
            assert response.status == 202

    assert health["status"] == "ok"
    await wait_for(lambda: app.dispatcher.history.find("C-1") is not None)

    app.request_shutdown()
    await asyncio.wait_for(task, timeout=5)

    assert app.dispatcher.history.find("C-1").status == CommandStatus.ACCEPTED
    assert app.dispatcher.running is False
    assert gateway.closed is True

    snapshot = await app.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["api"]["healthy"] is False
    assert components["dispatcher"]["detail"] == "shutdown"
    assert components["gateway"]["healthy"] is False


@pytest.mark.asyncio
async def test_app_stops_services_when_port_is_taken(
    make_config, fake_gateway, unused_tcp_port
):
    blocker = await asyncio.start_server(
        lambda reader, writer: None, "127.0.0.1", unused_tcp_port
    )
    config = make_config()
    config.server = replace(config.server, port=unused_tcp_port)
    gateway = fake_gateway()
    app = DispatcherApp(config, gateway=gateway)

    try:
        with pytest.raises(OSError):
            await app.run()
    finally:
        blocker.close()
        await blocker.wait_closed()

    assert gateway.closed is True
    assert app.dispatcher.running is False
