import asyncio

import pytest

from walletrpc import log, remote
from walletrpc.remote import (
    Endpoint,
    EndpointName,
    RemoteCallError,
    RequestTracker,
    make_reply,
    make_request,
)
from walletrpc.transport import DataCloneError, Runtime, RuntimeNode, Window, WindowNode


class MockHandler(remote.Handler):
    @remote.route
    def echo(self, *args):
        return list(args)

    @remote.route('math.add')
    async def add(self, a: int, b: int) -> int:
        return a + b

    @remote.route
    def fail(self):
        raise ValueError('vault is locked')

    @remote.route
    def fail_silently(self):
        raise KeyError

    @remote.route
    def unclonable(self):
        return object()

    @remote.route
    async def slow(self, delay: float, value):
        await asyncio.sleep(delay)
        return value

    def not_routed(self):
        return 'hidden'


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture
async def endpoints():
    runtime = Runtime()
    background = Endpoint(
        RuntimeNode(runtime, context='background'),
        source=EndpointName.BACKGROUND,
        destination=EndpointName.POPUP,
        log_messages=True,
    )
    background.register_handler(MockHandler())
    popup = Endpoint(
        RuntimeNode(runtime, context='popup'),
        source='popup',
        destination='background',
    )
    async with background, popup:
        yield popup, background


def test_handler_routes():
    handler = MockHandler()
    assert set(handler.routes) == {
        'echo',
        'math.add',
        'fail',
        'fail_silently',
        'unclonable',
        'slow',
    }
    assert handler.routes['echo'](1) == [1]


def test_is_error_descriptor():
    assert remote.is_error_descriptor({'error': 'vault is locked'})
    assert not remote.is_error_descriptor({'error': 'vault is locked', 'code': 1})
    assert not remote.is_error_descriptor({'error': 1})
    assert not remote.is_error_descriptor('error')


def test_validate_message():
    request = make_request(1, 'echo', (1,), source='popup', destination='background')
    assert remote.validate_message(request) is remote.MessageType.REQUEST
    reply = make_reply(request, None)
    assert remote.validate_message(reply) is remote.MessageType.REPLY
    assert reply['source'] == 'background' and reply['destination'] == 'popup'
    malformed = [
        None,
        [],
        {'type': 'notification'},
        {**request, 'id': True},
        {**request, 'id': 1.5},
        {**request, 'args': 'hunter2'},
        {**request, 'method': None},
        {**request, 'source': None},
        {key: value for key, value in reply.items() if key != 'value'},
    ]
    for message in malformed:
        with pytest.raises(ValueError):
            remote.validate_message(message)


@pytest.mark.asyncio
async def test_call(endpoints):
    popup, background = endpoints
    assert await popup.call('echo', 1, 'a', None) == [1, 'a', None]
    assert await popup.call('math.add', 1, 2) == 3
    assert len(popup.requests) == 0
    assert len(background.requests) == 0


@pytest.mark.asyncio
async def test_handler_error(endpoints):
    popup, _ = endpoints
    with pytest.raises(RemoteCallError, match='vault is locked'):
        await popup.call('fail')
    with pytest.raises(RemoteCallError) as excinfo:
        await popup.call('fail_silently')
    assert str(excinfo.value) == 'KeyError'
    with pytest.raises(RemoteCallError, match='cannot be cloned'):
        await popup.call('unclonable')
    assert len(popup.requests) == 0
    assert await popup.call('echo', 'still alive') == ['still alive']


@pytest.mark.asyncio
async def test_method_not_found(endpoints):
    popup, _ = endpoints
    with pytest.raises(RemoteCallError, match='method not found: account.unlock'):
        await popup.call('account.unlock', 'hunter2')


@pytest.mark.asyncio
async def test_error_lookalike_is_a_value(endpoints):
    popup, background = endpoints
    background.register('lookalike', lambda: {'error': 'not really', 'code': 1})
    assert await popup.call('lookalike') == {'error': 'not really', 'code': 1}


@pytest.mark.asyncio
async def test_concurrent_calls(endpoints):
    popup, _ = endpoints
    results = await asyncio.gather(
        popup.call('slow', 0.05, 'first'),
        popup.call('slow', 0, 'second'),
        popup.call('math.add', 2, 3),
    )
    assert results == ['first', 'second', 5]
    assert len(popup.requests) == 0


@pytest.mark.asyncio
async def test_last_registration_wins(endpoints):
    popup, background = endpoints
    background.register('echo', lambda *args: 'replaced')
    assert await popup.call('echo', 1) == 'replaced'
    with pytest.raises(ValueError):
        background.register('echo', 'not callable')
    assert await popup.call('echo', 1) == 'replaced'


@pytest.mark.asyncio
async def test_unknown_reply_ignored(endpoints):
    popup, _ = endpoints
    pending = asyncio.create_task(popup.call('slow', 0.05, 'value'))
    await asyncio.sleep(0.01)
    assert len(popup.requests) == 1
    (message_id,) = popup.requests.futures
    request = make_request(message_id + 1, 'slow', [], source='popup', destination='background')
    assert await popup.handle_message(make_reply(request, 'spoofed')) is None
    assert len(popup.requests) == 1
    assert await pending == 'value'
    assert len(popup.requests) == 0


@pytest.mark.asyncio
async def test_duplicate_reply_ignored():
    log.configure(level='debug')
    page = Endpoint(
        WindowNode(Window()),
        source='page',
        destination='background',
        log_messages=True,
    )
    with page.requests.new_request() as (message_id, result):
        request = make_request(message_id, 'echo', [1], source='page', destination='background')
        reply = make_reply(request, [1])
        assert await page.handle_message(reply) is None
        assert await page.handle_message(reply) is None
        assert await result == [1]
    with page.requests.new_request() as (message_id, result):
        result.cancel()
        request = make_request(message_id, 'echo', [], source='page', destination='background')
        assert await page.handle_message(make_reply(request, [])) is None
        assert await page.handle_message(make_reply(request, [])) is None
    assert len(page.requests) == 0


@pytest.mark.asyncio
async def test_duplicate_reply_through_window(mocker):
    log.configure(level='debug')
    handler = mocker.Mock()
    asyncio.get_running_loop().set_exception_handler(handler)
    window = Window()
    server = Endpoint(WindowNode(window), source='background', destination='page')
    server.register('echo', lambda *args: list(args))
    page = Endpoint(
        WindowNode(window),
        source='page',
        destination='background',
        log_messages=True,
    )
    async with server, page, WindowNode(window) as observer:
        assert await asyncio.wait_for(page.call('echo', 1), 1) == [1]
        replies = []
        while not observer.recv_queue.empty():
            message, _ = observer.recv_queue.get_nowait()
            if message['type'] == 'reply':
                replies.append(message)
        (reply,) = replies
        await observer.send(reply)
        await asyncio.sleep(0.05)
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_malformed_messages_ignored(endpoints):
    popup, background = endpoints
    request = make_request(1, 'echo', [1], source='popup', destination='background')
    malformed = [None, 'hello', {}, {'type': 'request'}, {**request, 'args': 'x'}]
    for message in malformed:
        assert await background.handle_message(message) is None
    assert await popup.call('echo', 1) == [1]


@pytest.mark.asyncio
async def test_only_addressed_messages_processed(endpoints):
    _, background = endpoints
    request = make_request(1, 'echo', [1], source='popup', destination='background')
    assert await background.handle_message(request) == {
        'type': 'reply',
        'id': 1,
        'value': [1],
        'source': 'background',
        'destination': 'popup',
    }
    for source, destination in [('page', 'background'), ('popup', 'popup'), ('background', 'popup')]:
        message = {**request, 'source': source, 'destination': destination}
        assert await background.handle_message(message) is None


@pytest.mark.asyncio
async def test_call_timeout(endpoints):
    popup, _ = endpoints
    lonely = Endpoint(RuntimeNode(Runtime()), source='popup', destination='background')
    async with lonely:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(lonely.call('echo'), 0.05)
        assert len(lonely.requests) == 0
    with pytest.raises(DataCloneError):
        await popup.call('echo', object())
    assert len(popup.requests) == 0


@pytest.mark.asyncio
async def test_broadcast(endpoints):
    popup, background = endpoints
    received = []
    popup.register('popup.updateState', received.append)
    first = background.broadcast('popup.updateState', {'isUnlocked': False})
    second = background.broadcast('popup.updateState', {'isUnlocked': True})
    await asyncio.wait_for(asyncio.gather(first, second), 1)
    assert received == [{'isUnlocked': False}, {'isUnlocked': True}]
    assert len(background.requests) == 0
    with pytest.raises(DataCloneError):
        background.broadcast('popup.updateState', object())


@pytest.mark.asyncio
async def test_window_endpoints():
    window = Window()
    server = Endpoint(WindowNode(window), source='background', destination='page')
    server.register_handler(MockHandler())
    client = Endpoint(WindowNode(window), source='page', destination='background')
    async with server, client:
        slow = asyncio.create_task(client.call('slow', 0.05, 'first'))
        fast = asyncio.create_task(client.call('slow', 0, 'second'))
        done, _ = await asyncio.wait({slow, fast}, return_when=asyncio.FIRST_COMPLETED)
        assert done == {fast}
        assert await fast == 'second'
        assert await slow == 'first'
        with pytest.raises(RemoteCallError, match='vault is locked'):
            await asyncio.wait_for(client.call('fail'), 1)
        assert len(client.requests) == 0


@pytest.mark.asyncio
async def test_request_tracker():
    tracker = RequestTracker(lower=0, upper=0)
    with tracker.new_request() as (request_id, future):
        assert request_id == 0
        with pytest.raises(ValueError):
            tracker.generate_uid()
        with pytest.raises(ValueError):
            with tracker.new_request(0):
                pass
        tracker.register_response(request_id, 'done')
        assert await future == 'done'
        with pytest.raises(KeyError):
            tracker.register_response(request_id, 'again')
    assert len(tracker) == 0
    with tracker.new_request(5) as (_, future):
        tracker.register_response(5, RemoteCallError('failed'))
        with pytest.raises(RemoteCallError):
            await future
