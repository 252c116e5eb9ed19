import asyncio
import unittest
from unittest import mock

from chatcore.server.models import OwnerRef
from chatcore.server.test_support import Stack, drain, events_of


class TestEventHandlers(unittest.TestCase):
    def setUp(self):
        self.stack = Stack()
        self.dispatch = self.stack.events.dispatch

    def tearDown(self):
        self.stack.cleanup()

    def test_new_message_acks_origin_and_reaches_other_devices(self):
        async def scenario():
            a, b = await self.stack.user('ann'), await self.stack.user('bob')
            phone, laptop = await self.stack.connect(a), await self.stack.connect(a)
            conn_b = await self.stack.connect(b)
            await self.dispatch(phone, 'newMessage', {
                'receiverEmail': b.email, 'message': {'message_id': 'm1', 'text': 'hi'}})
            return a, b, drain(phone), drain(laptop), drain(conn_b)

        a, b, phone, laptop, received = asyncio.run(scenario())
        conversation = OwnerRef.conversation(a.user_id, b.user_id).owner_id
        self.assertEqual(phone, [{'event': 'messageSent',
                                  'data': {'success': True, 'conversationId': conversation,
                                           'messageId': 'm1'}}])
        self.assertEqual([env['event'] for env in laptop], ['newMessage'])
        self.assertEqual(received[0]['event'], 'newMessage')
        self.assertEqual(received[0]['data']['senderEmail'], a.email)
        self.assertEqual(received[0]['data']['content'], {'type': 'text', 'text': 'hi'})

    def test_group_message_reaches_joined_members(self):
        async def scenario():
            a, b, c = await self.stack.user('ann'), await self.stack.user('bob'), await self.stack.user('cat')
            group = await self.stack.groups.create(a.user_id, 'Team', [b.user_id])
            conns = [await self.stack.connect(u) for u in (a, b, c)]
            for conn in conns:
                await self.dispatch(conn, 'joinGroup', {'groupId': group.group_id})
            await self.dispatch(conns[0], 'groupMessage', {
                'groupId': group.group_id, 'message': {'message_id': 'g1', 'text': 'morning'}})
            return group, [drain(conn) for conn in conns]

        group, (sent, received, outsider) = asyncio.run(scenario())
        self.assertEqual([env['event'] for env in sent], ['groupMessageSent'])
        self.assertEqual(received[0]['event'], 'newGroupMessage')
        self.assertEqual(received[0]['data']['groupId'], group.group_id)
        self.assertEqual(received[0]['data']['message']['message_id'], 'g1')
        self.assertEqual(len(outsider), 1)
        self.assertEqual(outsider[0]['event'], 'error')
        self.assertEqual(outsider[0]['data']['code'], 'forbidden')
        self.assertEqual(outsider[0]['data']['event'], 'joinGroup')

    def test_typing_and_read_receipts_are_relayed(self):
        async def scenario():
            a, b = await self.stack.user('ann'), await self.stack.user('bob')
            conn_a, conn_b = await self.stack.connect(a), await self.stack.connect(b)
            await self.dispatch(conn_a, 'typingStart', {'receiverId': b.user_id})
            await self.dispatch(conn_a, 'typingStop', {'receiverEmail': b.email})
            await self.dispatch(conn_a, 'newMessage', {
                'receiverId': b.user_id, 'message': {'message_id': 'm1', 'text': 'hi'}})
            at_b = drain(conn_b)
            drain(conn_a)
            await self.dispatch(conn_b, 'messageRead', {'messageId': 'm1', 'senderId': a.user_id})
            await self.dispatch(conn_a, 'messageRead', {'messageId': 'm1'})
            stored = await self.stack.conversations.get(OwnerRef.conversation(a.user_id, b.user_id).owner_id)
            return a, b, drain(conn_a), at_b, stored

        a, b, at_a, at_b, stored = asyncio.run(scenario())
        self.assertEqual([env['event'] for env in at_b], ['typingStart', 'typingStop', 'newMessage'])
        self.assertEqual(at_b[0]['data'], {'senderEmail': a.email, 'senderId': a.user_id})
        self.assertEqual(at_a[0], {'event': 'messageRead',
                                   'data': {'messageId': 'm1', 'conversationId': stored.conversation_id,
                                            'readerId': b.user_id, 'readerEmail': b.email}})
        self.assertEqual(at_a[1]['event'], 'error')
        self.assertEqual(at_a[1]['data']['code'], 'forbidden')
        self.assertEqual(stored.messages[0].status, 'read')

    def test_message_mutations_are_confirmed(self):
        async def scenario():
            a, b = await self.stack.user('ann'), await self.stack.user('bob')
            conn_a, conn_b = await self.stack.connect(a), await self.stack.connect(b)
            await self.dispatch(conn_a, 'newMessage', {
                'receiverId': b.user_id, 'message': {'message_id': 'm1', 'text': 'hi'}})
            drain(conn_a)
            drain(conn_b)

            await self.dispatch(conn_b, 'messageReaction',
                                {'messageId': 'm1', 'reaction': '+1', 'receiverId': a.user_id})
            reaction = (drain(conn_a), drain(conn_b))
            await self.dispatch(conn_a, 'messageRecalled', {'messageId': 'm1'})
            recall = (drain(conn_a), drain(conn_b))
            await self.dispatch(conn_b, 'messageDeleted', {'messageId': 'm1'})
            delete = (drain(conn_a), drain(conn_b))
            return reaction, recall, delete

        reaction, recall, delete = asyncio.run(scenario())
        self.assertEqual([env['event'] for env in reaction[0]], ['messageReaction'])
        self.assertEqual(reaction[1][0]['event'], 'messageReactionConfirmed')
        self.assertTrue(reaction[1][0]['data']['active'])
        self.assertEqual([env['event'] for env in recall[0]], ['messageRecallConfirmed'])
        self.assertEqual([env['event'] for env in recall[1]], ['messageRecalled'])
        self.assertEqual(delete[0], [])
        self.assertEqual([env['event'] for env in delete[1]], ['messageDeleteConfirmed'])

    def test_user_status_replies_with_friend_statuses(self):
        async def scenario():
            a, b, c = await self.stack.user('ann'), await self.stack.user('bob'), await self.stack.user('cat')
            await self.stack.befriend(a, b)
            await self.stack.befriend(a, c)
            conn_a, conn_b = await self.stack.connect(a), await self.stack.connect(b)
            drain(conn_b)
            await self.dispatch(conn_a, 'userStatus', {'online': True})
            return b, c, events_of(conn_a, 'initialFriendStatuses'), events_of(conn_b, 'friendStatusUpdate')

        b, c, initial, updates = asyncio.run(scenario())
        self.assertEqual(initial, [{'statuses': {b.user_id: True, c.user_id: False}}])
        self.assertEqual(len(updates), 1)
        self.assertTrue(updates[0]['online'])

    def test_call_signalling(self):
        async def scenario():
            a, b, c = await self.stack.user('ann'), await self.stack.user('bob'), await self.stack.user('cat')
            conn_a, conn_b = await self.stack.connect(a), await self.stack.connect(b)
            await self.dispatch(conn_a, 'call-user', {'toUserId': c.user_id})
            offline = drain(conn_a)
            await self.dispatch(conn_a, 'call-user', {'toUserId': b.user_id})
            incoming = drain(conn_b)
            await self.dispatch(conn_b, 'call-accepted', {'fromUserId': a.user_id})
            accepted = drain(conn_a)

            conn_c = await self.stack.connect(c)
            room_id = f"{a.user_id}_{b.user_id}"
            await self.dispatch(conn_c, 'call-ended', {'roomId': room_id})
            intruder = drain(conn_c)
            await self.dispatch(conn_b, 'call-ended', {'roomId': room_id})
            return a, b, room_id, offline, incoming, accepted, intruder, drain(conn_a)

        a, b, room_id, offline, incoming, accepted, intruder, ended = asyncio.run(scenario())
        self.assertEqual(offline[0]['event'], 'error')
        self.assertEqual(offline[0]['data']['code'], 'not_found')
        self.assertEqual(incoming, [{'event': 'incoming-call',
                                     'data': {'fromUserId': a.user_id, 'toUserId': b.user_id}}])
        self.assertEqual(accepted, [{'event': 'call-accepted',
                                     'data': {'fromUserId': a.user_id, 'toUserId': b.user_id}}])
        self.assertEqual(intruder[0]['data']['code'], 'forbidden')
        self.assertEqual(ended, [{'event': 'call-ended', 'data': {'roomId': room_id}}])

    def test_failures_become_error_events(self):
        async def scenario():
            a, b = await self.stack.user('ann'), await self.stack.user('bob')
            conn_a = await self.stack.connect(a)
            await self.dispatch(conn_a, 'teleport', {})
            await self.dispatch(conn_a, 'newMessage', {'receiverId': b.user_id, 'message': 'oops'})
            with mock.patch.object(self.stack.coordinator, 'append',
                                   mock.AsyncMock(side_effect=RuntimeError('disk on fire'))):
                await self.dispatch(conn_a, 'newMessage', {
                    'receiverId': b.user_id, 'message': {'message_id': 'm1', 'text': 'hi'}})

            pending = self.stack.connections.accept()
            await self.dispatch(pending, 'newMessage', {'receiverId': b.user_id})
            return events_of(conn_a, 'error'), drain(pending)

        errors, pending = asyncio.run(scenario())
        self.assertEqual([e['code'] for e in errors], ['validation_failed', 'validation_failed', 'internal'])
        self.assertEqual(errors[0]['event'], 'teleport')
        self.assertEqual(errors[2]['message'], 'Internal server error')
        self.assertEqual(pending, [])


if __name__ == '__main__':
    unittest.main()
