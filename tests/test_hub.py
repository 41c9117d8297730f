import asyncio

from dashops.ws.hub import ALL_OPERATIONS, OperationHub


class RecordingSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


def test_broadcast_reaches_operation_and_firehose_subscribers() -> None:
    hub = OperationHub()
    install = RecordingSocket()
    firehose = RecordingSocket()
    other = RecordingSocket()

    async def scenario():
        await hub.connect(install, "software:7/install")
        await hub.connect(firehose)
        await hub.connect(other, "agents:a1/run")
        return await hub.broadcast("software:7/install", {"phase": "polling"})

    delivered = asyncio.run(scenario())
    assert delivered == 2
    assert install.accepted and firehose.accepted
    assert install.sent == [{"phase": "polling"}]
    assert firehose.sent == [{"phase": "polling"}]
    assert other.sent == []


def test_failed_sends_drop_the_socket_everywhere() -> None:
    hub = OperationHub()
    broken = RecordingSocket(broken=True)
    healthy = RecordingSocket()

    async def scenario():
        await hub.connect(broken, "software:7/install")
        await hub.connect(broken)
        await hub.connect(healthy)
        first = await hub.broadcast("software:7/install", {"n": 1})
        second = await hub.broadcast("software:7/install", {"n": 2})
        return first, second

    first, second = asyncio.run(scenario())
    assert (first, second) == (1, 1)
    assert hub.subscribers("software:7/install") == {healthy}
    assert healthy.sent == [{"n": 1}, {"n": 2}]


def test_disconnect_removes_empty_channels() -> None:
    hub = OperationHub()
    socket = RecordingSocket()

    async def scenario():
        await hub.connect(socket, "equipment:eq-1/connect")
        hub.disconnect(socket, "equipment:eq-1/connect")
        hub.disconnect(socket, ALL_OPERATIONS)
        return await hub.broadcast("equipment:eq-1/connect", {"phase": "idle"})

    assert asyncio.run(scenario()) == 0
    assert hub.subscribers("equipment:eq-1/connect") == set()
