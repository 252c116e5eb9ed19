import asyncio
import unittest

from chatcore.server.errors import Forbidden, NotFound, ValidationFailed
from chatcore.server.models import SystemContent
from chatcore.server.test_support import Stack, drain


class TestGroupService(unittest.TestCase):
    def setUp(self):
        self.stack = Stack()
        self.groups = self.stack.groups

    def tearDown(self):
        self.stack.cleanup()

    async def _team(self):
        a, b, c = await self.stack.user('ann'), await self.stack.user('bob'), await self.stack.user('cat')
        group = await self.groups.create(a.user_id, 'Team', [b.user_id])
        return a, b, c, group

    def test_create(self):
        async def scenario():
            a, b, c, group = await self._team()
            with self.assertRaises(ValidationFailed):
                await self.groups.create(a.user_id, '  ')
            with self.assertRaises(NotFound):
                await self.groups.create(a.user_id, 'X', ['ghost'])
            return a, b, group, await self.groups.list_for_user(b.user_id)

        a, b, group, listed = asyncio.run(scenario())
        self.assertEqual(group.member_ids, {a.user_id, b.user_id})
        self.assertEqual(group.admin_ids, {a.user_id})
        self.assertEqual(group.creator_id, a.user_id)
        self.assertEqual([g.group_id for g in listed], [group.group_id])

    def test_add_members_respects_invite_setting(self):
        async def scenario():
            a, b, c, group = await self._team()
            with self.assertRaises(Forbidden):
                await self.groups.add_members(b.user_id, group.group_id, [c.user_id])
            await self.groups.toggle_member_invite(a.user_id, group.group_id, True)
            updated = await self.groups.add_members(b.user_id, group.group_id, [c.user_id])
            stored = await self.stack.groups_repo.get(group.group_id)
            return c, updated, stored

        c, updated, stored = asyncio.run(scenario())
        self.assertIn(c.user_id, updated.member_ids)
        notice = stored.messages[-1]
        self.assertEqual(notice.sender_id, 'system')
        self.assertEqual(notice.content, SystemContent('join', 'Cat'))

    def test_remove_member_rules(self):
        async def scenario():
            a, b, c, group = await self._team()
            await self.groups.add_members(a.user_id, group.group_id, [c.user_id])
            await self.groups.add_deputy(a.user_id, group.group_id, c.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.remove_member(b.user_id, group.group_id, c.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.remove_member(a.user_id, group.group_id, a.user_id)

            conn_c = await self.stack.connect(c)
            await self.stack.connections.join_room(conn_c, group.group_id)
            drain(conn_c)
            updated = await self.groups.remove_member(a.user_id, group.group_id, c.user_id)
            return c, group, updated, conn_c

        c, group, updated, conn_c = asyncio.run(scenario())
        self.assertNotIn(c.user_id, updated.member_ids)
        self.assertNotIn(c.user_id, updated.deputy_ids)
        self.assertEqual(conn_c.rooms, set())
        self.assertEqual(self.stack.rooms.members_of(group.group_id), frozenset())
        self.assertEqual([env['data']['type'] for env in drain(conn_c)], ['memberRemoved'])

    def test_admin_cannot_remove_another_admin(self):
        async def scenario():
            a, b, c, group = await self._team()
            await self.groups.add_members(a.user_id, group.group_id, [c.user_id])
            await self.groups.add_admin(a.user_id, group.group_id, c.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.remove_member(c.user_id, group.group_id, a.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.remove_member(a.user_id, group.group_id, c.user_id)

        asyncio.run(scenario())

    def test_last_admin_leaving_hands_off(self):
        async def scenario():
            a, b, c, group = await self._team()
            await self.groups.add_members(a.user_id, group.group_id, [c.user_id])
            await self.groups.add_deputy(a.user_id, group.group_id, c.user_id)
            return b, c, await self.groups.leave(a.user_id, group.group_id)

        b, c, group = asyncio.run(scenario())
        self.assertEqual(group.admin_ids, {c.user_id})
        self.assertEqual(group.deputy_ids, set())
        self.assertEqual(group.creator_id, c.user_id)
        self.assertEqual(group.member_ids, {b.user_id, c.user_id})

    def test_last_member_leaving_deletes_group(self):
        async def scenario():
            a = await self.stack.user('ann')
            group = await self.groups.create(a.user_id, 'Solo')
            left = await self.groups.leave(a.user_id, group.group_id)
            return left, await self.stack.groups_repo.get(group.group_id)

        left, stored = asyncio.run(scenario())
        self.assertIsNone(left)
        self.assertIsNone(stored)

    def test_admin_roles(self):
        async def scenario():
            a, b, c, group = await self._team()
            await self.groups.add_members(a.user_id, group.group_id, [c.user_id])
            await self.groups.add_admin(a.user_id, group.group_id, b.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.remove_admin(b.user_id, group.group_id, a.user_id)
            with self.assertRaises(ValidationFailed):
                await self.groups.add_deputy(a.user_id, group.group_id, b.user_id)
            with self.assertRaises(Forbidden):
                await self.groups.add_deputy(c.user_id, group.group_id, c.user_id)
            after_remove = await self.groups.remove_admin(a.user_id, group.group_id, b.user_id)
            transferred = await self.groups.transfer_sole_admin(a.user_id, group.group_id, c.user_id)
            return a, b, c, after_remove, transferred

        a, b, c, after_remove, transferred = asyncio.run(scenario())
        self.assertEqual(after_remove.admin_ids, {a.user_id})
        self.assertEqual(transferred.admin_ids, {c.user_id})
        self.assertEqual(transferred.creator_id, a.user_id)

    def test_set_member_role(self):
        async def scenario():
            a, b, c, group = await self._team()
            deputy = await self.groups.set_member_role(a.user_id, group.group_id, b.user_id, 'deputy')
            admin = await self.groups.set_member_role(a.user_id, group.group_id, b.user_id, 'admin')
            member = await self.groups.set_member_role(a.user_id, group.group_id, b.user_id, 'member')
            with self.assertRaises(ValidationFailed):
                await self.groups.set_member_role(a.user_id, group.group_id, b.user_id, 'owner')
            with self.assertRaises(Forbidden):
                await self.groups.set_member_role(a.user_id, group.group_id, a.user_id, 'member')
            return b, deputy, admin, member

        b, deputy, admin, member = asyncio.run(scenario())
        self.assertEqual(deputy.role_of(b.user_id), 'deputy')
        self.assertEqual(admin.role_of(b.user_id), 'admin')
        self.assertNotIn(b.user_id, admin.deputy_ids)
        self.assertEqual(member.role_of(b.user_id), 'member')

    def test_update_info_and_delete(self):
        async def scenario():
            a, b, c, group = await self._team()
            conn_b = await self.stack.connect(b)
            await self.stack.connections.join_room(conn_b, group.group_id)
            with self.assertRaises(Forbidden):
                await self.groups.update_info(b.user_id, group.group_id, name='Mine')
            renamed = await self.groups.update_info(a.user_id, group.group_id, name='Renamed',
                                                    avatar='http://img/x.png')
            drain(conn_b)
            with self.assertRaises(Forbidden):
                await self.groups.delete(b.user_id, group.group_id)
            await self.groups.delete(a.user_id, group.group_id)
            return group, renamed, conn_b, await self.stack.groups_repo.get(group.group_id)

        group, renamed, conn_b, stored = asyncio.run(scenario())
        self.assertEqual(renamed.name, 'Renamed')
        self.assertEqual(renamed.avatar, 'http://img/x.png')
        self.assertIsNone(stored)
        self.assertEqual([env['data']['type'] for env in drain(conn_b)], ['deleted'])
        self.assertEqual(conn_b.rooms, set())

    def test_members_listing(self):
        async def scenario():
            a, b, c, group = await self._team()
            with self.assertRaises(Forbidden):
                await self.groups.members(c.user_id, group.group_id)
            return a, await self.groups.members(b.user_id, group.group_id)

        a, members = asyncio.run(scenario())
        roles = {m['user_id']: m['role'] for m in members}
        self.assertEqual(roles[a.user_id], 'admin')
        self.assertEqual(sorted(roles.values()), ['admin', 'member'])


if __name__ == '__main__':
    unittest.main()
