import asyncio

import pytest

from walletrpc import process
from walletrpc.remote import EndpointName, RemoteCallError


@pytest.fixture
def options(tmp_path):
    return {
        'debug': True,
        'thread_pool_workers': 2,
        'health_check_interval': 60,
        'log_format': 'json',
        'log_level': 'info',
        'log_messages': True,
        'hub_address': [f'ipc://{tmp_path / "hub.sock"}'],
    }


@pytest.fixture
async def app(options):
    async with process.Application('test', options) as app:
        await app.make_hub()
        yield app


def test_resolve_address():
    assert process.resolve_address('tcp://*:6100') == 'tcp://127.0.0.1:6100'
    assert process.resolve_address('tcp://*:6100', peer='localhost') == 'tcp://localhost:6100'
    assert process.resolve_address('tcp://10.0.0.2:6100') == 'tcp://10.0.0.2:6100'
    assert process.resolve_address('ipc:///tmp/hub.sock') == 'ipc:///tmp/hub.sock'


def test_get_connection():
    assert process.get_connection(['tcp://*:6100']) == 'tcp://127.0.0.1:6100'
    assert process.get_connection(['tcp://*:6100', 'ipc:///tmp/hub.sock']) == 'ipc:///tmp/hub.sock'
    with pytest.raises(ValueError):
        process.get_connection([])


@pytest.mark.asyncio
async def test_spin(mocker):
    callback = mocker.AsyncMock()
    task = asyncio.create_task(process.spin(callback, 1, interval=0.01, key='value'))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert callback.await_count >= 3
    callback.assert_awaited_with(1, key='value')


@pytest.mark.slow
@pytest.mark.asyncio
async def test_app_endpoints(app):
    runtime = await app.make_runtime()
    assert runtime.node.identity == b'test'
    server = await app.make_endpoint(runtime, 'background', 'popup', context='background')
    server.register('math.add', lambda a, b: a + b)
    client = await app.make_endpoint(runtime, EndpointName.POPUP, EndpointName.BACKGROUND)
    assert client.node.context != server.node.context
    assert client.log_messages
    assert await asyncio.wait_for(client.call('math.add', 2, 3), 2) == 5
    with pytest.raises(RemoteCallError):
        await asyncio.wait_for(client.call('math.subtract', 2, 3), 2)


@pytest.mark.asyncio
async def test_app_health(app):
    task = app.report_health()
    await asyncio.sleep(0.01)
    assert not task.done()
    task.cancel()
    assert app.executor._max_workers == 2
    assert asyncio.get_running_loop().get_debug()
