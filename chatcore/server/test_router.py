import asyncio
import unittest

from chatcore.server.hub import EventRouter
from chatcore.server.models import Connection
from chatcore.server.presence import PresenceRegistry
from chatcore.server.rooms import RoomTracker
from chatcore.server.test_support import drain


class BrokenQueue:
    async def put(self, item):
        raise RuntimeError("transport gone")


class TestEventRouter(unittest.TestCase):
    def setUp(self):
        self.presence = PresenceRegistry()
        self.rooms = RoomTracker()
        self.router = EventRouter(self.presence, self.rooms)

    def _live(self, user_id, connection_id):
        conn = Connection(connection_id=connection_id, user_id=user_id)
        self.router.attach(conn)
        self.presence.register(user_id, connection_id)
        return conn

    def test_emit_to_user_reaches_every_device(self):
        phone = self._live('u1', 'c1')
        laptop = self._live('u1', 'c2')

        delivered = asyncio.run(self.router.emit_to_user('u1', 'newMessage', {'text': 'hi'}))

        self.assertEqual(delivered, 2)
        for conn in (phone, laptop):
            self.assertEqual(drain(conn), [{'event': 'newMessage', 'data': {'text': 'hi'}}])

    def test_emit_to_offline_user_is_noop(self):
        delivered = asyncio.run(self.router.emit_to_user('ghost', 'newMessage', {}))
        self.assertEqual(delivered, 0)

    def test_emit_to_user_excludes_origin(self):
        phone = self._live('u1', 'c1')
        laptop = self._live('u1', 'c2')
        asyncio.run(self.router.emit_to_user('u1', 'messageDeleted', {'messageId': 'm1'},
                                             exclude_connection_id='c1'))
        self.assertEqual(drain(phone), [])
        self.assertEqual(len(drain(laptop)), 1)

    def test_emit_to_room(self):
        a = self._live('u1', 'c1')
        b = self._live('u2', 'c2')
        self._live('u3', 'c3')
        self.rooms.join('g1', 'c1')
        self.rooms.join('g1', 'c2')

        delivered = asyncio.run(self.router.emit_to_room('g1', 'newGroupMessage', {'n': 1},
                                                         exclude_connection_id='c1'))
        self.assertEqual(delivered, 1)
        self.assertEqual(drain(a), [])
        self.assertEqual(drain(b), [{'event': 'newGroupMessage', 'data': {'n': 1}}])

    def test_events_from_one_call_sequence_arrive_in_order(self):
        conn = self._live('u1', 'c1')

        async def burst():
            for i in range(5):
                await self.router.emit_to_user('u1', 'tick', {'i': i})

        asyncio.run(burst())
        self.assertEqual([env['data']['i'] for env in drain(conn)], [0, 1, 2, 3, 4])

    def test_failing_connection_is_skipped(self):
        broken = self._live('u1', 'c1')
        broken.outbox = BrokenQueue()
        ok = self._live('u1', 'c2')

        delivered = asyncio.run(self.router.emit_to_user('u1', 'newMessage', {}))
        self.assertEqual(delivered, 1)
        self.assertEqual(len(drain(ok)), 1)

    def test_detached_connection_receives_nothing(self):
        self._live('u1', 'c1')
        self.router.detach('c1')
        self.assertFalse(asyncio.run(self.router.emit_to_connection('c1', 'x', {})))


if __name__ == '__main__':
    unittest.main()
