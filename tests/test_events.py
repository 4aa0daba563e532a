import unittest

from chatsync.config import ClientConfig
from chatsync.identity import Identity
from chatsync.models import RECALLED_PLACEHOLDER, REQUEST_RECEIVED, FriendRequest, Friendship
from chatsync.session import ChatSession

from .backend_util import message_payload

ME = "me@example.com"
BOB = "bob@example.com"
CAROL = "carol@example.com"


class ReducerTests(unittest.TestCase):
    def setUp(self):
        self.session = ChatSession(Identity(email=ME, token=""), ClientConfig())
        self.session.attach()
        self.hub = self.session.hub

    def dispatch(self, event, body):
        return self.hub.dispatch(event, body)

    def ids(self, conversation_id):
        return [entry.message_id for entry in self.session.message_log(conversation_id)]

    def test_attach_is_idempotent(self):
        count = self.hub.subscriber_count()
        self.session.attach()
        self.assertEqual(self.hub.subscriber_count(), count)

    def test_duplicate_new_message_counts_once(self):
        payload = message_payload("m1", BOB, ME, "hi", 100)
        self.dispatch("newMessage", payload)
        self.dispatch("newMessage", {"message": dict(payload)})

        self.assertEqual(self.ids(BOB), ["m1"])
        self.assertEqual(self.session.conversations.get(BOB).unread, 1)

    def test_malformed_message_is_discarded(self):
        with self.assertLogs("chatsync.hub", level="WARNING"):
            delivered = self.dispatch("newMessage", {"senderEmail": BOB, "content": "no id"})

        self.assertEqual(delivered, 0)
        self.assertEqual(self.session.conversation_list(), [])

    def test_new_message_clears_sender_typing(self):
        self.dispatch("typingStart", {"senderEmail": BOB, "receiverEmail": ME})
        self.assertTrue(self.session.typing.is_typing(BOB, BOB))

        self.dispatch("newMessage", message_payload("m1", BOB, ME, "hi", 100))

        self.assertFalse(self.session.typing.is_typing(BOB, BOB))

    def test_group_typing_is_scoped_to_group(self):
        self.dispatch("typingStart", {"senderEmail": BOB, "groupId": "g1"})
        self.assertEqual(self.session.typing.typing_in("g1"), [BOB])
        self.dispatch("typingStop", {"senderEmail": BOB, "groupId": "g1"})
        self.assertEqual(self.session.typing.typing_in("g1"), [])

    def test_group_message_and_bare_id_recall(self):
        self.dispatch("groupCreated", {"group": {"groupId": "g1", "name": "Team", "members": [ME, BOB]}})
        self.dispatch(
            "newGroupMessage",
            {"groupId": "g1", "message": message_payload("m1", BOB, "", "hello team", 100)},
        )
        self.assertEqual(self.ids("g1"), ["m1"])

        self.dispatch("groupMessageRecalled", "m1")

        self.assertEqual(self.session.message_log("g1")[0].content, RECALLED_PLACEHOLDER)
        self.assertEqual(self.session.conversations.get("g1").last_preview, RECALLED_PLACEHOLDER)

    def test_group_reaction_uses_sender_id(self):
        self.dispatch("newGroupMessage", {"groupId": "g1", **message_payload("m1", BOB, "", "hi", 100)})
        self.dispatch("groupMessageReaction", {"messageId": "m1", "senderId": CAROL, "reaction": "love"})

        self.assertEqual(self.session.message_log("g1")[0].reactions[0].sender, CAROL)

    def test_deleting_last_message_updates_summary(self):
        self.dispatch("newMessage", message_payload("m1", BOB, ME, "first", 100))
        self.dispatch("newMessage", message_payload("m2", BOB, ME, "second", 200))

        self.dispatch("messageDeleted", {"messageId": "m2"})
        self.dispatch("messageDeleted", {"messageId": "m2"})

        summary = self.session.conversations.get(BOB)
        self.assertEqual(summary.last_preview, "first")
        self.assertEqual(summary.unread, 1)

    def test_message_read_updates_unread(self):
        self.dispatch("newMessage", message_payload("m1", ME, BOB, "mine", 100))
        self.dispatch("newMessage", message_payload("m2", BOB, ME, "theirs", 200))

        self.dispatch("messageRead", {"messageId": "m2"})

        self.assertEqual(self.session.conversations.get(BOB).unread, 0)

    def test_events_for_unknown_ids_change_nothing(self):
        self.dispatch("messageRecalled", {"messageId": "nope"})
        self.dispatch("messageReaction", {"messageId": "nope", "senderEmail": BOB, "reaction": "like"})
        self.dispatch("messageRead", {"messageId": "nope"})

        self.assertEqual(self.session.conversation_list(), [])

    def test_friend_request_lifecycle(self):
        self.dispatch("friendRequestUpdate", {"senderEmail": BOB, "receiverEmail": ME, "fullName": "Bob"})
        self.assertEqual(
            self.session.relationships.received_requests(),
            [FriendRequest(direction=REQUEST_RECEIVED, counterpart=BOB, display_name="Bob")],
        )

        self.dispatch("friendRequestWithdrawn", {"senderEmail": BOB, "receiverEmail": ME})
        self.assertEqual(self.session.relationships.received_requests(), [])

    def test_accepted_response_adds_friend(self):
        self.session.relationships.send_request(CAROL, "Carol")

        self.dispatch("friendRequestResponded", {"senderEmail": ME, "receiverEmail": CAROL, "accepted": True})

        self.assertEqual(self.session.relationships.sent_requests(), [])
        self.assertEqual(self.session.relationships.friend(CAROL).display_name, "Carol")
        self.assertIsNotNone(self.session.conversations.get(CAROL))

    def test_response_without_flag_is_malformed(self):
        self.session.relationships.send_request(CAROL)
        with self.assertLogs("chatsync.hub", level="WARNING"):
            self.dispatch("friendRequestResponded", {"receiverEmail": CAROL})
        self.assertEqual(len(self.session.relationships.sent_requests()), 1)

    def test_friend_added_unfriended_and_presence(self):
        self.dispatch("friendAdded", {"friend": {"email": BOB, "fullName": "Bob"}})
        self.dispatch("userStatus", {"email": BOB, "status": "online"})
        self.assertEqual(self.session.relationships.friend(BOB), Friendship(BOB, "Bob", "", True))
        self.assertTrue(self.session.conversations.get(BOB).online)

        self.dispatch("unfriended", {"email": ME, "friendEmail": BOB})
        self.assertIsNone(self.session.relationships.friend(BOB))

    def test_presence_for_stranger_is_ignored(self):
        self.dispatch("userStatus", {"email": CAROL, "online": True})
        self.assertEqual(self.session.relationships.friends(), [])

    def test_group_metadata_events(self):
        self.dispatch("addedToGroup", {"groupId": "g1", "name": "Team", "members": [ME, BOB]})
        self.dispatch("groupNameChanged", {"groupId": "g1", "newName": "Crew"})
        self.dispatch("groupAvatarChanged", {"groupId": "g1", "newAvatar": "https://cdn.test/c.png"})
        self.dispatch("memberLeft", {"groupId": "g1", "userId": BOB})

        group = self.session.groups.get("g1")
        self.assertEqual(group.name, "Crew")
        self.assertEqual(group.avatar, "https://cdn.test/c.png")
        self.assertEqual(group.members, (ME,))
        self.assertEqual(self.session.conversations.get("g1").display_name, "Crew")

        self.dispatch("memberLeft", {"groupId": "g1", "userId": ME})
        self.assertIsNone(self.session.groups.get("g1"))
        self.assertIsNone(self.session.conversations.get("g1"))

    def test_group_deleted_removes_group_and_conversation(self):
        self.dispatch("groupCreated", {"groupId": "g1", "name": "Team", "members": [ME, BOB]})

        self.dispatch("groupDeleted", {"groupId": "g1"})
        self.dispatch("groupDeleted", {"groupId": "g1"})

        self.assertIsNone(self.session.groups.get("g1"))
        self.assertIsNone(self.session.conversations.get("g1"))
