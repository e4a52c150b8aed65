import asyncio

import cbor2
import pytest
import zmq

from walletrpc import log
from walletrpc.hub import Frame, HubError, RuntimeHub, SocketNode, SocketRuntime
from walletrpc.remote import Endpoint, RemoteCallError, make_request
from walletrpc.transport import RuntimeNode


@pytest.fixture(autouse=True)
def logger():
    log.configure()


async def poll(predicate, timeout: float = 2, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, 'condition not met in time'
        await asyncio.sleep(interval)


@pytest.fixture
def address(tmp_path):
    return f'ipc://{tmp_path / "hub.sock"}'


@pytest.fixture
async def hub(address):
    async with RuntimeHub.bind([address]) as hub:
        yield hub


@pytest.mark.asyncio
async def test_socket_checks():
    with pytest.raises(HubError):
        RuntimeHub(SocketNode(zmq.DEALER))
    with pytest.raises(HubError):
        SocketRuntime(SocketNode(zmq.ROUTER))
    with pytest.raises(HubError):
        await SocketNode(zmq.DEALER).send([b''])


@pytest.mark.slow
@pytest.mark.asyncio
async def test_call_through_hub(hub, address):
    async with SocketRuntime.connect(address, b'background') as background_runtime, \
            SocketRuntime.connect(address, b'popup') as popup_runtime:
        server = Endpoint(
            RuntimeNode(background_runtime, context='background'),
            source='background',
            destination='popup',
        )
        server.register('math.add', lambda a, b: a + b)
        client = Endpoint(
            RuntimeNode(popup_runtime, context='popup'),
            source='popup',
            destination='background',
        )
        async with server, client:
            await poll(lambda: hub.peers == {b'background', b'popup'})
            assert await asyncio.wait_for(client.call('math.add', 1, 2), 2) == 3
            with pytest.raises(RemoteCallError, match='method not found'):
                await asyncio.wait_for(client.call('account.unlock'), 2)
            request = make_request(1, 'isConnected', [], source='popup', destination='page')
            response = popup_runtime.send_message(request, sender=client.node)
            assert await asyncio.wait_for(response, 2) is None
            received = []
            client.register('popup.updateState', received.append)
            await asyncio.wait_for(server.broadcast('popup.updateState', {'isUnlocked': True}), 2)
            assert received == [{'isUnlocked': True}]
            assert not popup_runtime.calls


@pytest.mark.slow
@pytest.mark.asyncio
async def test_local_delivery(hub, address):
    async with SocketRuntime.connect(address) as runtime:
        server = Endpoint(RuntimeNode(runtime), source='background', destination='popup')
        server.register('echo', lambda *args: list(args))
        client = Endpoint(RuntimeNode(runtime), source='popup', destination='background')
        async with server, client:
            assert await asyncio.wait_for(client.call('echo', 'local'), 2) == ['local']


@pytest.mark.slow
@pytest.mark.asyncio
async def test_hub_drops_malformed_frames(hub, address):
    async with SocketNode(zmq.DEALER, connections=frozenset({address})) as peer:
        await poll(lambda: len(hub.peers) == 1)
        await peer.send([b'unknown', b'frame'])
        await peer.send([Frame.SEND.value, b'1'])
        await peer.send([Frame.SEND.value, b'7', cbor2.dumps(['popup', {}])])
        frames, _ = await asyncio.wait_for(peer.recv(), 2)
        assert frames == [Frame.FANOUT.value, b'7', b'0']
        await peer.send([Frame.LEAVE.value])
        await poll(lambda: not hub.peers)
