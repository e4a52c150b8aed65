import asyncio

import pytest

from walletrpc import log
from walletrpc.remote import make_request
from walletrpc.tools import monitor
from walletrpc.transport import Runtime, RuntimeNode


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture
def app(mocker):
    return mocker.Mock(options={'log_messages': True}, logger=mocker.AsyncMock())


@pytest.mark.asyncio
async def test_watch_declines_and_logs(app):
    runtime = Runtime()
    async with RuntimeNode(runtime, context='monitor') as node, RuntimeNode(runtime) as sender:
        task = asyncio.create_task(monitor.watch(node, app))
        try:
            request = make_request(3, 'account.lock', [], source='popup', destination='background')
            assert await asyncio.wait_for(sender.send(request), 1) is None
            assert await asyncio.wait_for(sender.send('not a mapping'), 1) is None
        finally:
            task.cancel()
    app.logger.ainfo.assert_awaited_once_with(
        'Runtime message',
        type='request',
        method='account.lock',
        message_id=3,
        source='popup',
        destination='background',
    )
    app.logger.adebug.assert_awaited_once_with('Runtime message payload', message=request)
    app.logger.awarning.assert_awaited_once_with(
        'Runtime message is not a mapping',
        message='not a mapping',
    )
