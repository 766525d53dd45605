import asyncio
import pytest
from starlette.websockets import WebSocketDisconnect
from config import settings
from conftest import BrokenConnection, RecordingConnection, join
from routers.realtime import _pump
from services.broadcast import BroadcastHub, QueueConnection
from services.broadcast import hub as shared_hub


def test_publish_reaches_every_subscriber():
    hub = BroadcastHub()
    a, b = RecordingConnection(), RecordingConnection()
    hub.subscribe(a)
    hub.subscribe(b)

    assert hub.publish("turn_ended", {"campaign_id": 1, "participant_id": None}) == 2
    assert a.messages == b.messages == [{"type": "turn_ended", "payload": {"campaign_id": 1, "participant_id": None}}]

    hub.unsubscribe(b)
    assert hub.publish("turn_ended", {"campaign_id": 1}) == 1
    assert len(b.messages) == 1


def test_failed_connection_is_dropped():
    hub = BroadcastHub()
    good = RecordingConnection()
    hub.subscribe(good)
    hub.subscribe(BrokenConnection())

    assert hub.publish("npc_action", {"campaign_id": 3, "action": "waves"}) == 1
    assert hub.connection_count == 1
    assert hub.publish("npc_action", {"campaign_id": 3, "action": "waves again"}) == 1
    assert len(good.messages) == 2


def test_unknown_event_type_is_rejected():
    hub = BroadcastHub()
    with pytest.raises(ValueError):
        hub.publish("chat_message", {"campaign_id": 1})


def test_websocket_receives_events_and_pongs(client, db, campaign):
    cid = campaign["campaign"]["id"]
    with client.websocket_connect(f"/v1/ws?key={settings.ENGINE_KEY}") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        mira = join(client, db, cid, 2, "Mira")
        message = ws.receive_json()
        assert message["type"] == "participant_joined"
        assert message["payload"]["campaign_id"] == cid
        assert message["payload"]["participant"]["id"] == mira["id"]


def test_websocket_rejects_bad_key(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/ws?key=wrong") as ws:
            ws.receive_json()


class FailingSocket:
    def __init__(self):
        self.attempts = 0

    async def send_json(self, message):
        self.attempts += 1
        raise RuntimeError("client went away")


def test_pump_unsubscribes_when_send_fails():
    socket = FailingSocket()
    before = shared_hub.connection_count

    async def run():
        connection = QueueConnection(asyncio.get_running_loop())
        shared_hub.subscribe(connection)
        connection.queue.put_nowait({"type": "turn_ended", "payload": {"campaign_id": 1}})
        await asyncio.wait_for(_pump(socket, connection), timeout=5)

    asyncio.run(run())
    assert socket.attempts == 1
    assert shared_hub.connection_count == before
