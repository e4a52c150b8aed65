import asyncio

import pytest

from walletrpc import log
from walletrpc.transport import (
    DataCloneError,
    Runtime,
    RuntimeNode,
    Window,
    WindowNode,
    first_response,
    structured_clone,
)


@pytest.fixture(autouse=True)
def logger():
    log.configure()


async def answer(node, reply):
    while True:
        message, responder = await node.recv()
        node.respond(responder, reply(message))


def test_structured_clone():
    payload = {'args': (1, 'a', None), 'nested': {'values': [1.5]}}
    clone = structured_clone(payload)
    assert clone == {'args': [1, 'a', None], 'nested': {'values': [1.5]}}
    clone['nested']['values'].append(2)
    assert payload['nested']['values'] == [1.5]
    with pytest.raises(DataCloneError):
        structured_clone({'callback': lambda: None})
    with pytest.raises(DataCloneError):
        structured_clone({1, 2})


@pytest.mark.asyncio
async def test_first_response():
    loop = asyncio.get_running_loop()
    failed, declined, answered = (loop.create_future() for _ in range(3))
    failed.set_exception(RuntimeError('listener crashed'))
    declined.set_result(None)
    loop.call_soon(answered.set_result, 'ok')
    assert await first_response([failed, declined, None, answered]) == 'ok'
    assert await first_response([]) is None
    assert await first_response([None]) is None


@pytest.mark.asyncio
async def test_window_post_message():
    window = Window()
    async with WindowNode(window) as page, WindowNode(window) as relay:
        message = {'type': 'request', 'args': [1]}
        assert await page.send(message) is None
        message['args'].append(2)
        for node in (page, relay):
            received, responder = await asyncio.wait_for(node.recv(), 1)
            assert received == {'type': 'request', 'args': [1]}
            assert responder is None
        with pytest.raises(ValueError):
            window.post_message(message, 'https://example.com')
        with pytest.raises(DataCloneError):
            await page.send({'args': [object()]})
    assert page.closed and relay.closed
    assert not window.listeners
    with pytest.raises(ValueError):
        await page.send(message)


@pytest.mark.asyncio
async def test_window_respond():
    window = Window()
    async with WindowNode(window) as node:
        node.respond(None, None)
        assert node.recv_queue.empty()
        node.respond(None, {'type': 'reply'})
        received, _ = node.recv_queue.get_nowait()
        assert received == {'type': 'reply'}
        assert node.send_count == 1


@pytest.mark.asyncio
async def test_runtime_send_message():
    runtime = Runtime()
    sender = RuntimeNode(runtime, context='popup')
    sibling = RuntimeNode(runtime, context='popup')
    decliner = RuntimeNode(runtime, context='content')
    responder = RuntimeNode(runtime, context='background')
    async with sender, sibling, decliner, responder:
        tasks = [
            asyncio.create_task(answer(sibling, lambda message: 'sibling')),
            asyncio.create_task(answer(decliner, lambda message: None)),
            asyncio.create_task(answer(responder, lambda message: {'echo': message})),
        ]
        try:
            response = await asyncio.wait_for(sender.send({'n': (1, 2)}), 1)
            assert response == {'echo': {'n': [1, 2]}}
            assert sibling.recv_count == 0
            assert responder.recv_count == 1
        finally:
            for task in tasks:
                task.cancel()


@pytest.mark.asyncio
async def test_runtime_all_declined():
    runtime = Runtime()
    sender, decliner = RuntimeNode(runtime), RuntimeNode(runtime)
    assert sender.context != decliner.context
    async with sender:
        assert await asyncio.wait_for(sender.send({'n': 1}), 1) is None
        async with decliner:
            task = asyncio.create_task(answer(decliner, lambda message: None))
            try:
                assert await asyncio.wait_for(sender.send({'n': 2}), 1) is None
            finally:
                task.cancel()


@pytest.mark.asyncio
async def test_runtime_close_declines_queued():
    runtime = Runtime()
    sender, listener = RuntimeNode(runtime), RuntimeNode(runtime)
    async with sender:
        async with listener:
            send_task = asyncio.create_task(sender.send({'n': 1}))
            await asyncio.sleep(0)
            assert listener.recv_queue.qsize() == 1
        assert listener.recv_queue.empty()
        assert await asyncio.wait_for(send_task, 1) is None
    with pytest.raises(ValueError):
        await sender.send({'n': 2})


@pytest.mark.asyncio
async def test_runtime_queue_full():
    runtime = Runtime()
    sender, listener = RuntimeNode(runtime), RuntimeNode(runtime)
    async with sender, listener:
        for _ in range(listener.recv_queue.maxsize):
            assert listener.deliver({}) is not None
        assert listener.deliver({}) is None
