import unittest

from chatsync.groups import GroupDirectory
from chatsync.models import REQUEST_RECEIVED, REQUEST_SENT, FriendRequest, Friendship, Group
from chatsync.relationships import RelationshipStateMachine

BOB = "bob@example.com"
CAROL = "carol@example.com"


def received(counterpart: str) -> FriendRequest:
    return FriendRequest(direction=REQUEST_RECEIVED, counterpart=counterpart, display_name=counterpart.title())


class RelationshipStateMachineTests(unittest.TestCase):
    def setUp(self):
        self.machine = RelationshipStateMachine()
        self.notified = []
        self.machine.add_listener(self.notified.append)

    def test_send_request_is_unique_per_counterpart(self):
        self.assertIsNotNone(self.machine.send_request(BOB))
        self.assertIsNone(self.machine.send_request(BOB))
        self.assertEqual([req.counterpart for req in self.machine.sent_requests()], [BOB])

    def test_send_request_to_friend_is_rejected(self):
        self.machine.apply_friend_added(Friendship(counterpart=BOB))
        self.assertIsNone(self.machine.send_request(BOB))

    def test_operations_without_prerequisite_are_rejected(self):
        self.assertIsNone(self.machine.withdraw_request(BOB))
        self.assertIsNone(self.machine.respond_to_request(BOB, True))
        self.assertIsNone(self.machine.unfriend(BOB))
        self.assertEqual(self.notified, [])

    def test_rollback_restores_prior_state_exactly(self):
        self.machine.apply_request_received(received(BOB))
        prior = self.machine.state_of(BOB)

        mutation = self.machine.respond_to_request(BOB, accept=True)
        self.assertIsNotNone(self.machine.friend(BOB))
        self.assertEqual(self.machine.received_requests(), [])

        self.assertTrue(self.machine.rollback(mutation))
        self.assertEqual(self.machine.state_of(BOB), prior)

    def test_rollback_after_failed_send_request(self):
        mutation = self.machine.send_request(BOB)

        self.assertTrue(self.machine.rollback_request_sent(mutation))
        self.assertEqual(self.machine.sent_requests(), [])

    def test_confirm_keeps_applied_state(self):
        mutation = self.machine.send_request(BOB)

        self.assertTrue(self.machine.confirm_request_sent(mutation))
        self.assertEqual(self.machine.state_of(BOB).sent.direction, REQUEST_SENT)

    def test_stale_rollback_after_socket_delta_is_ignored(self):
        mutation = self.machine.send_request(BOB)
        self.machine.apply_request_responded(BOB, accepted=True)

        self.assertFalse(self.machine.rollback(mutation))
        self.assertIsNotNone(self.machine.friend(BOB))

    def test_presence_never_creates_a_friend(self):
        self.assertFalse(self.machine.apply_presence(CAROL, True))
        self.assertIsNone(self.machine.friend(CAROL))

    def test_presence_survives_rollback(self):
        self.machine.apply_friend_added(Friendship(counterpart=BOB))
        mutation = self.machine.unfriend(BOB)
        self.machine.rollback(mutation)

        self.assertTrue(self.machine.apply_presence(BOB, True))
        self.assertTrue(self.machine.friend(BOB).online)

    def test_friend_added_and_unfriended_are_idempotent(self):
        friend = Friendship(counterpart=BOB, display_name="Bob")
        self.assertTrue(self.machine.apply_friend_added(friend))
        self.assertFalse(self.machine.apply_friend_added(friend))
        self.assertEqual(len(self.machine.friends()), 1)

        self.assertTrue(self.machine.apply_unfriended(BOB))
        self.assertFalse(self.machine.apply_unfriended(BOB))
        self.assertEqual(self.machine.friends(), [])

    def test_friend_added_clears_pending_requests(self):
        self.machine.send_request(BOB)
        self.machine.apply_friend_added(Friendship(counterpart=BOB))

        self.assertEqual(self.machine.sent_requests(), [])
        self.assertEqual(self.machine.state_of(BOB).friendship.counterpart, BOB)

    def test_received_request_for_existing_friend_is_ignored(self):
        self.machine.apply_friend_added(Friendship(counterpart=BOB))
        self.assertFalse(self.machine.apply_request_received(received(BOB)))

    def test_withdrawn_request_disappears(self):
        self.machine.apply_request_received(received(BOB))
        self.assertTrue(self.machine.apply_request_withdrawn(BOB))
        self.assertFalse(self.machine.apply_request_withdrawn(BOB))
        self.assertEqual(self.machine.received_requests(), [])

    def test_declined_response_only_drops_sent_request(self):
        self.machine.send_request(BOB, display_name="Bob")
        self.assertTrue(self.machine.apply_request_responded(BOB, accepted=False))
        self.assertEqual(self.machine.sent_requests(), [])
        self.assertIsNone(self.machine.friend(BOB))

    def test_snapshot_replaces_everything(self):
        self.machine.send_request(CAROL)
        self.machine.load_snapshot([Friendship(counterpart=BOB)], [], [received(CAROL)])

        self.assertEqual([f.counterpart for f in self.machine.friends()], [BOB])
        self.assertEqual(self.machine.sent_requests(), [])
        self.assertEqual([r.counterpart for r in self.machine.received_requests()], [CAROL])
        self.assertIn(BOB, self.notified)
        self.assertIn(CAROL, self.notified)

    def test_snapshot_makes_inflight_mutation_stale(self):
        mutation = self.machine.send_request(BOB)
        self.machine.load_snapshot([], [], [])

        self.assertFalse(self.machine.rollback(mutation))


class GroupDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.groups = GroupDirectory("me@example.com")
        self.group = Group(group_id="g1", name="Team", members=("me@example.com", BOB), admins=(BOB,))
        self.groups.load([self.group])

    def test_member_left_removes_member_and_admin_role(self):
        self.assertTrue(self.groups.apply_member_left("g1", BOB))
        self.assertEqual(self.groups.get("g1").members, ("me@example.com",))
        self.assertEqual(self.groups.get("g1").admins, ())
        self.assertFalse(self.groups.apply_member_left("g1", BOB))

    def test_self_leaving_removes_group(self):
        self.assertTrue(self.groups.apply_member_left("g1", "me@example.com"))
        self.assertIsNone(self.groups.get("g1"))

    def test_rename_rollback_restores_prior_name(self):
        self.groups.apply_renamed("g1", "Renamed")
        mutation = self.groups.tag("g1", self.group)

        self.assertTrue(self.groups.rollback(mutation))
        self.assertEqual(self.groups.get("g1").name, "Team")

    def test_rollback_after_later_change_is_ignored(self):
        self.groups.apply_renamed("g1", "Renamed")
        mutation = self.groups.tag("g1", self.group)
        self.groups.apply_avatar("g1", "https://cdn.test/a.png")

        self.assertFalse(self.groups.rollback(mutation))
        self.assertEqual(self.groups.get("g1").name, "Renamed")

    def test_unknown_group_events_are_noops(self):
        self.assertFalse(self.groups.apply_renamed("nope", "x"))
        self.assertFalse(self.groups.apply_avatar("nope", "x"))
        self.assertFalse(self.groups.apply_member_left("nope", BOB))
        self.assertFalse(self.groups.remove("nope"))
