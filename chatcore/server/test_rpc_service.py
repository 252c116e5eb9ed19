import asyncio
import base64
import unittest
from collections import namedtuple
from unittest import mock

import grpc

from chatcore.server.service import build_handler
from chatcore.server.test_support import AbortCalled, FakeContext, Stack

HandlerCallDetails = namedtuple('HandlerCallDetails', ['method', 'invocation_metadata'])


class TestRPCService(unittest.TestCase):
    def setUp(self):
        self.stack = Stack()
        self.service = self.stack.service

    def tearDown(self):
        self.stack.cleanup()

    async def _login(self, name):
        user = await self.stack.user(name)
        return user, FakeContext(self.stack.tokens.issue(user))

    def test_register_and_login(self):
        async def call():
            registered = await self.service.RegisterUser(
                {'email': 'Ann@Example.com', 'display_name': 'Ann'}, FakeContext())
            with self.assertRaises(AbortCalled) as dup:
                await self.service.RegisterUser({'email': 'ann@example.com', 'display_name': 'A'},
                                                FakeContext())
            login = await self.service.LoginUser({'email': 'ann@example.com'}, FakeContext())
            unknown = await self.service.LoginUser({'email': 'nobody@example.com'}, FakeContext())
            return registered, dup.exception, login, unknown

        registered, dup, login, unknown = asyncio.run(call())
        self.assertEqual(registered['user']['email'], 'ann@example.com')
        self.assertIs(dup.code, grpc.StatusCode.ALREADY_EXISTS)
        self.assertTrue(login['success'])
        self.assertEqual(self.stack.tokens.decode(login['token'])['sub'], registered['user']['user_id'])
        self.assertFalse(unknown['success'])
        self.assertIn('nobody@example.com', unknown['error_message'])

    def test_calls_require_a_valid_token(self):
        async def call():
            with self.assertRaises(AbortCalled) as missing:
                await self.service.ListUserGroups({}, FakeContext())
            with self.assertRaises(AbortCalled) as garbage:
                await self.service.ListUserGroups({}, FakeContext('garbage'))
            return missing.exception, garbage.exception

        for error in asyncio.run(call()):
            self.assertIs(error.code, grpc.StatusCode.UNAUTHENTICATED)

    def test_list_user_groups_rpc(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            await self.service.CreateGroup({'name': 'One', 'member_ids': [b.user_id]}, ctx_a)
            await self.service.CreateGroup({'name': 'Two'}, ctx_b)
            await self.service.CreateGroup({'name': 'Three'}, ctx_a)
            return await self.service.ListUserGroups({}, ctx_b)

        resp = asyncio.run(call())
        self.assertEqual(sorted(g['name'] for g in resp['groups']), ['One', 'Two'])

    def test_group_admin_errors_map_to_status(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            created = await self.service.CreateGroup({'name': 'Team', 'member_ids': [b.user_id]}, ctx_a)
            group_id = created['group']['group_id']
            with self.assertRaises(AbortCalled) as denied:
                await self.service.RemoveMember({'group_id': group_id, 'member_id': a.user_id}, ctx_b)
            with self.assertRaises(AbortCalled) as missing:
                await self.service.AddDeputy({'group_id': group_id}, ctx_a)
            role = await self.service.SetMemberRole(
                {'group_id': group_id, 'member_id': b.user_id, 'role': 'deputy'}, ctx_a)
            left = await self.service.LeaveGroup({'group_id': group_id}, ctx_a)
            return a, b, denied.exception, missing.exception, role, left

        a, b, denied, missing, role, left = asyncio.run(call())
        self.assertIs(denied.code, grpc.StatusCode.PERMISSION_DENIED)
        self.assertIs(missing.code, grpc.StatusCode.INVALID_ARGUMENT)
        self.assertEqual(role['group']['deputy_ids'], [b.user_id])
        self.assertFalse(left['deleted'])
        self.assertEqual(left['group']['admin_ids'], [b.user_id])

    def test_send_list_and_forward_messages(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            empty = await self.service.ListMessages({'receiver_id': b.user_id}, ctx_a)
            await self.service.SendMessage({'receiver_email': b.email,
                                            'message': {'message_id': 'm1', 'text': 'hi'}}, ctx_a)
            await self.service.DeleteMessage({'message_id': 'm1'}, ctx_b)
            seen_a = await self.service.ListMessages({'receiver_id': b.user_id}, ctx_a)
            seen_b = await self.service.ListMessages({'receiver_id': a.user_id}, ctx_b)

            group = await self.service.CreateGroup({'name': 'Team'}, ctx_a)
            group_id = group['group']['group_id']
            forwarded = await self.service.ForwardMessage(
                {'message_id': 'm1', 'target_group_id': group_id}, ctx_a)
            in_group = await self.service.ListMessages({'group_id': group_id}, ctx_a)
            return empty, seen_a, seen_b, forwarded, in_group

        empty, seen_a, seen_b, forwarded, in_group = asyncio.run(call())
        self.assertEqual(empty['messages'], [])
        self.assertEqual([m['message_id'] for m in seen_a['messages']], ['m1'])
        self.assertEqual(seen_b['messages'], [])
        self.assertEqual(forwarded['message']['forwarded_from']['original_message_id'], 'm1')
        self.assertEqual([m['message_id'] for m in in_group['messages']],
                         [forwarded['message']['message_id']])

    def test_recall_outside_window_is_failed_precondition(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, _ = await self._login('bob')
            await self.service.SendMessage({'receiver_id': b.user_id,
                                            'message': {'message_id': 'm1', 'text': 'oops'}}, ctx_a)
            self.stack.clock.advance(121)
            with self.assertRaises(AbortCalled) as late:
                await self.service.RecallMessage({'message_id': 'm1'}, ctx_a)
            return late.exception

        self.assertIs(asyncio.run(call()).code, grpc.StatusCode.FAILED_PRECONDITION)

    def test_upload_and_get_file(self):
        payload = b'%PDF-1.4 fake'

        async def call():
            a, ctx_a = await self._login('ann')
            uploaded = await self.service.UploadFile(
                {'data_b64': base64.b64encode(payload).decode('ascii'), 'filename': 'report.pdf',
                 'content_type': 'application/pdf'}, ctx_a)
            fetched = await self.service.GetFile({'url': uploaded['url']}, ctx_a)
            with self.assertRaises(AbortCalled) as bad:
                await self.service.UploadFile({'data_b64': '***'}, ctx_a)
            return uploaded, fetched, bad.exception

        uploaded, fetched, bad = asyncio.run(call())
        self.assertTrue(uploaded['url'].startswith('http://files.test/files/'))
        self.assertTrue(uploaded['url'].endswith('.pdf'))
        self.assertEqual(uploaded['size'], len(payload))
        self.assertEqual(base64.b64decode(fetched['data_b64']), payload)
        self.assertEqual(fetched['content_type'], 'application/pdf')
        self.assertIs(bad.code, grpc.StatusCode.INVALID_ARGUMENT)

    def test_friend_rpcs(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            await self.service.SendFriendRequest({'email': b.email}, ctx_a)
            responded = await self.service.RespondFriendRequest({'user_id': a.user_id, 'accept': True}, ctx_b)
            listed = await self.service.ListFriends({}, ctx_a)
            unfriended = await self.service.Unfriend({'user_id': b.user_id}, ctx_a)
            return b, responded, listed, unfriended

        b, responded, listed, unfriended = asyncio.run(call())
        self.assertTrue(responded['friends'])
        self.assertEqual([f['user_id'] for f in listed['friends']], [b.user_id])
        self.assertEqual(unfriended, {'success': True, 'purged': 0})

    def test_open_stream(self):
        async def call():
            a, _ = await self._login('ann')
            b, _ = await self._login('bob')
            token = self.stack.tokens.issue(a)

            async def requests():
                yield {'event': 'authenticate', 'data': {'token': token}}
                yield {'event': 'newMessage',
                       'data': {'receiverId': b.user_id, 'message': {'message_id': 'm1', 'text': 'hi'}}}

            received = [env async for env in self.service.OpenStream(requests(), FakeContext())]
            return a, received

        a, received = asyncio.run(call())
        self.assertEqual([env['event'] for env in received], ['authenticated', 'messageSent'])
        self.assertEqual(received[0]['data']['user']['user_id'], a.user_id)
        self.assertFalse(self.stack.presence.is_online(a.user_id))
        self.assertEqual(self.stack.connections.connections, {})

    def test_open_stream_rejects_missing_handshake(self):
        async def call():
            async def requests():
                yield {'event': 'newMessage', 'data': {}}

            async def bad_token():
                yield {'event': 'authenticate', 'data': {'token': 'nope'}}

            errors = []
            for stream in (requests(), bad_token()):
                with self.assertRaises(AbortCalled) as aborted:
                    async for _ in self.service.OpenStream(stream, FakeContext()):
                        pass
                errors.append(aborted.exception.code)
            return errors

        self.assertEqual(asyncio.run(call()), [grpc.StatusCode.UNAUTHENTICATED] * 2)
        self.assertEqual(self.stack.connections.connections, {})

    def test_open_stream_closes_connection_on_bad_or_cancelled_handshake(self):
        async def call():
            async def token_not_in_object():
                yield {'event': 'authenticate', 'data': 'not-an-object'}

            with self.assertRaises(AbortCalled) as aborted:
                async for _ in self.service.OpenStream(token_not_in_object(), FakeContext()):
                    pass

            a, _ = await self._login('ann')
            token = self.stack.tokens.issue(a)

            async def handshake():
                yield {'event': 'authenticate', 'data': {'token': token}}

            with mock.patch.object(self.stack.tokens, 'authenticate', side_effect=asyncio.CancelledError):
                with self.assertRaises(asyncio.CancelledError):
                    async for _ in self.service.OpenStream(handshake(), FakeContext()):
                        pass
            return aborted.exception

        self.assertIs(asyncio.run(call()).code, grpc.StatusCode.UNAUTHENTICATED)
        self.assertEqual(self.stack.connections.connections, {})

    def test_mark_message_read(self):
        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            await self.service.SendMessage({'receiver_id': b.user_id,
                                            'message': {'message_id': 'm1', 'text': 'hi'}}, ctx_a)
            with self.assertRaises(AbortCalled) as not_receiver:
                await self.service.MarkMessageRead({'message_id': 'm1'}, ctx_a)
            read = await self.service.MarkMessageRead({'message_id': 'm1', 'receiver_id': a.user_id}, ctx_b)
            listed = await self.service.ListMessages({'receiver_id': b.user_id}, ctx_a)
            return not_receiver.exception, read, listed

        not_receiver, read, listed = asyncio.run(call())
        self.assertIs(not_receiver.code, grpc.StatusCode.PERMISSION_DENIED)
        self.assertEqual(read['message']['status'], 'read')
        self.assertEqual(listed['messages'][0]['status'], 'read')

    def test_profile_rpcs(self):
        png = b'\x89PNG\r\n\x1a\n fake image'

        async def call():
            a, ctx_a = await self._login('ann')
            b, ctx_b = await self._login('bob')
            mine = await self.service.GetProfile({}, ctx_a)
            by_email = await self.service.GetProfile({'email': b.email}, ctx_a)
            renamed = await self.service.UpdateProfile({'display_name': 'Annie'}, ctx_a)
            pictured = await self.service.UpdateProfile(
                {'avatar_b64': base64.b64encode(png).decode('ascii'), 'avatar_content_type': 'image/png',
                 'avatar_filename': 'me.png'}, ctx_a)
            errors = []
            for request in ({'display_name': '  '},
                            {'avatar_b64': base64.b64encode(b'text').decode('ascii'),
                             'avatar_content_type': 'text/plain'}):
                with self.assertRaises(AbortCalled) as bad:
                    await self.service.UpdateProfile(request, ctx_a)
                errors.append(bad.exception.code)
            with self.assertRaises(AbortCalled) as missing:
                await self.service.GetProfile({'user_id': 'nobody'}, ctx_b)
            seen_by_b = await self.service.GetProfile({'user_id': a.user_id}, ctx_b)
            return a, b, mine, by_email, renamed, pictured, errors, missing.exception, seen_by_b

        a, b, mine, by_email, renamed, pictured, errors, missing, seen_by_b = asyncio.run(call())
        self.assertEqual(mine['user'], {'user_id': a.user_id, 'email': a.email,
                                        'display_name': 'Ann', 'avatar': 'default-avatar.png'})
        self.assertEqual(by_email['user']['user_id'], b.user_id)
        self.assertEqual(renamed['user']['display_name'], 'Annie')
        self.assertTrue(pictured['user']['avatar'].startswith('http://files.test/files/'))
        self.assertTrue(pictured['user']['avatar'].endswith('.png'))
        self.assertEqual(errors, [grpc.StatusCode.INVALID_ARGUMENT] * 2)
        self.assertIs(missing.code, grpc.StatusCode.NOT_FOUND)
        self.assertEqual(seen_by_b['user']['display_name'], 'Annie')
        self.assertEqual(seen_by_b['user']['avatar'], pictured['user']['avatar'])

    def test_build_handler_routes_every_method(self):
        handler = build_handler(self.service)
        send = handler.service(HandlerCallDetails('/chatcore.ChatService/SendMessage', ()))
        stream = handler.service(HandlerCallDetails('/chatcore.ChatService/OpenStream', ()))
        self.assertIsNotNone(send.unary_unary)
        self.assertIsNotNone(stream.stream_stream)
        self.assertIsNone(handler.service(HandlerCallDetails('/chatcore.ChatService/Nope', ())))
        self.assertEqual(send.request_deserializer(b'{"a":1}'), {'a': 1})


if __name__ == '__main__':
    unittest.main()
