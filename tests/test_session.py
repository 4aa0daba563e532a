import tempfile
import time
import unittest
from pathlib import Path

from aiohttp.test_utils import TestServer

from chatsync.actions import STATE_CONFIRMED, STATE_FAILED, STATE_REJECTED
from chatsync.config import ClientConfig
from chatsync.models import KIND_IMAGE, LOCAL_FAILED, LOCAL_PENDING, RECALLED_PLACEHOLDER
from chatsync.session import ChatSession

from .backend_util import SELF_EMAIL, FakeBackend, make_token, message_payload, wait_for

BOB = "bob@example.com"
CAROL = "carol@example.com"
DAVE = "dave@example.com"


def now_ms() -> int:
    return int(time.time() * 1000)


class ChatSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeBackend()
        self.backend.friends = [{"email": BOB, "fullName": "Bob"}, {"email": CAROL, "fullName": "Carol"}]
        self.backend.groups = [{"groupId": "g1", "name": "Team", "members": [SELF_EMAIL, BOB]}]
        self.server = TestServer(self.backend.app())
        await self.server.start_server()
        config = ClientConfig(
            api_base_url=str(self.server.make_url("")),
            socket_url=str(self.server.make_url("/ws")),
            reconnect_attempts=3,
            reconnect_delay_s=0.01,
            reconnect_delay_max_s=0.05,
            request_timeout_s=2.0,
        )
        self.session = ChatSession.from_token(make_token(), config)
        self.notices = []
        self.session.on_notice(self.notices.append)

    async def asyncTearDown(self):
        await self.session.close()
        await self.server.close()

    def frames(self, event):
        return [frame["body"] for frame in self.backend.frames if frame["t"] == event]

    def log_ids(self, conversation_id):
        return [entry.message_id for entry in self.session.message_log(conversation_id)]

    async def test_start_loads_snapshot_and_builds_conversation_list(self):
        self.backend.received = [{"email": DAVE, "fullName": "Dave"}]
        self.backend.summaries = [
            {
                "email": CAROL,
                "fullName": "Carol",
                "lastMessage": {"senderEmail": CAROL, "content": "hey", "timestamp": 1000, "status": "sent"},
            }
        ]

        self.assertTrue(await self.session.start())

        summaries = self.session.conversation_list()
        self.assertEqual([s.conversation_id for s in summaries], [CAROL, BOB, "g1"])
        self.assertEqual(summaries[0].last_preview, "hey")
        self.assertEqual(summaries[0].unread, 1)
        self.assertEqual([r.counterpart for r in self.session.relationships.received_requests()], [DAVE])
        self.assertTrue(self.session.is_group("g1"))

    async def test_start_offline_still_usable(self):
        self.backend.reject_handshake = True
        self.session.transport.config.reconnect_attempts = 0

        self.assertFalse(await self.session.start())
        self.assertEqual(len(self.session.conversation_list()), 3)

    async def test_send_shows_pending_then_confirms_once(self):
        await self.session.start()

        future = self.session.send_message(BOB, "hello")
        entry = self.session.message_log(BOB)[0]
        self.assertEqual(entry.local_state, LOCAL_PENDING)

        outcome = await future

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertEqual(self.log_ids(BOB), ["srv1"])
        self.assertEqual(self.session.conversation_list()[0].conversation_id, BOB)
        await wait_for(lambda: self.frames("newMessage"))
        self.assertEqual(self.frames("newMessage")[0]["receiverEmail"], BOB)

        # Server echo of the same message arrives after the acknowledgment.
        await self.backend.push("newMessage", message_payload("srv1", SELF_EMAIL, BOB, "hello", now_ms(), clientId=entry.message_id))
        await self.backend.push("typingStart", {"senderEmail": BOB, "receiverEmail": SELF_EMAIL})
        await wait_for(lambda: self.session.typing.is_typing(BOB, BOB))
        self.assertEqual(self.log_ids(BOB), ["srv1"])

    async def test_echo_before_acknowledgment_is_collapsed(self):
        self.backend.echo_client_id = False
        await self.session.start()

        future = self.session.send_message(BOB, "hello")
        self.session.hub.dispatch("newMessage", message_payload("srv1", SELF_EMAIL, BOB, "hello", now_ms()))
        self.assertEqual(self.log_ids(BOB), ["srv1"])

        await future
        self.assertEqual(self.log_ids(BOB), ["srv1"])

    async def test_failed_send_is_flagged_with_notice_and_retry_works(self):
        await self.session.start()
        self.backend.fail("POST", "/messages/send", "NOT_FRIENDS", status=403)

        outcome = await self.session.send_message(BOB, "hello")

        self.assertEqual(outcome.state, STATE_FAILED)
        failed = self.session.message_log(BOB)[0]
        self.assertEqual(failed.local_state, LOCAL_FAILED)
        self.assertEqual(len(self.notices), 1)
        self.assertEqual(self.notices[0].code, "NOT_FRIENDS")
        self.assertEqual(self.notices[0].message, "Message could not be sent")

        self.backend.failures.clear()
        outcome = await self.session.retry_message(failed.message_id)

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertEqual(len(self.session.message_log(BOB)), 1)
        self.assertFalse(self.session.message_log(BOB)[0].is_local)

    async def test_discard_failed_removes_entry(self):
        await self.session.start()
        self.backend.fail("POST", "/messages/send")
        await self.session.send_message(BOB, "hello")
        local_id = self.session.message_log(BOB)[0].message_id

        self.assertTrue(self.session.discard_failed(local_id))
        self.assertEqual(self.session.message_log(BOB), [])
        self.assertIsNone(self.session.conversations.get(BOB).last_message_ms)

    async def test_group_send_posts_to_group_and_mirrors_event(self):
        await self.session.start()

        outcome = await self.session.send_message("g1", "hi team")

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertEqual(self.backend.requests_to("POST", "/groups/g1/messages")[0]["content"], "hi team")
        await wait_for(lambda: self.frames("newGroupMessage"))
        self.assertEqual(self.frames("newGroupMessage")[0]["groupId"], "g1")

    async def test_send_file_uploads_then_sends(self):
        await self.session.start()

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "cat.png"
            path.write_bytes(b"meow")
            future = self.session.send_file(BOB, path)
            self.assertEqual(self.session.message_log(BOB)[0].content, "cat.png")
            outcome = await future

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        entry = self.session.message_log(BOB)[0]
        self.assertEqual(entry.content, "https://files.test/cat.png")
        self.assertEqual(entry.kind, KIND_IMAGE)
        sent = self.backend.requests_to("POST", "/messages/send")[0]
        self.assertEqual(sent["metadata"]["fileName"], "cat.png")

    async def test_send_file_with_missing_path_is_flagged_failed(self):
        await self.session.start()

        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("chatsync.actions", level="ERROR"):
                outcome = await self.session.send_file(BOB, Path(tmp) / "missing.png")

        self.assertEqual(outcome.state, STATE_FAILED)
        self.assertEqual(self.session.message_log(BOB)[0].local_state, LOCAL_FAILED)
        self.assertEqual([notice.code for notice in self.notices], ["CLIENT_ERROR"])
        self.assertEqual(self.backend.requests_to("POST", "/messages/send"), [])

    async def test_inbound_message_then_mark_conversation_read(self):
        await self.session.start()
        await self.backend.push("newMessage", message_payload("m1", BOB, SELF_EMAIL, "hi", now_ms()))
        await self.backend.push("newMessage", message_payload("m2", BOB, SELF_EMAIL, "there", now_ms() + 1))
        await wait_for(lambda: self.session.conversations.unread(BOB) == 2)

        outcomes = [await future for future in self.session.mark_conversation_read(BOB)]

        self.assertTrue(all(outcome.state == STATE_CONFIRMED for outcome in outcomes))
        self.assertEqual(self.session.conversations.get(BOB).unread, 0)
        self.assertEqual(len(self.backend.requests_to("PUT", "/messages/read/m1")), 1)
        await wait_for(lambda: len(self.frames("messageRead")) == 2)

    async def test_unparseable_push_does_not_stop_later_pushes(self):
        await self.session.start()

        with self.assertLogs("chatsync.hub", level="WARNING"):
            await self.backend.push("newMessage", message_payload("m1", BOB, SELF_EMAIL, "bad", float("inf")))
            await self.backend.push("newMessage", message_payload("m2", BOB, SELF_EMAIL, "good", now_ms()))
            await wait_for(lambda: self.log_ids(BOB) == ["m2"])

        self.assertEqual(self.session.transport.state, "connected")
        self.assertEqual(len(self.backend.tokens), 1)

    async def test_recall_failure_restores_message(self):
        await self.session.start()
        await self.session.send_message(BOB, "oops")
        self.backend.fail("PUT", "/messages/recall/srv1", "TOO_LATE")

        future = self.session.recall("srv1")
        self.assertEqual(self.session.message_log(BOB)[0].content, RECALLED_PLACEHOLDER)
        outcome = await future

        self.assertEqual(outcome.state, STATE_FAILED)
        entry = self.session.message_log(BOB)[0]
        self.assertEqual(entry.content, "oops")
        self.assertFalse(entry.recalled)
        self.assertEqual(self.session.conversations.get(BOB).last_preview, "oops")

    async def test_recall_of_someone_elses_message_is_rejected(self):
        await self.session.start()
        await self.backend.push("newMessage", message_payload("m1", BOB, SELF_EMAIL, "hi", now_ms()))
        await wait_for(lambda: self.log_ids(BOB) == ["m1"])

        outcome = await self.session.recall("m1")

        self.assertEqual(outcome.state, STATE_REJECTED)
        self.assertEqual(self.backend.requests_to("PUT", "/messages/recall/m1"), [])

    async def test_delete_and_react_mirror_events(self):
        await self.session.start()
        await self.backend.push("newMessage", message_payload("m1", BOB, SELF_EMAIL, "hi", now_ms()))
        await wait_for(lambda: self.log_ids(BOB) == ["m1"])

        self.assertEqual((await self.session.react("m1", "like")).state, STATE_CONFIRMED)
        self.assertEqual((await self.session.delete("m1")).state, STATE_CONFIRMED)

        self.assertEqual(self.log_ids(BOB), [])
        await wait_for(lambda: self.frames("messageDeleted"))
        self.assertEqual(self.frames("messageReaction")[0]["reaction"], "like")

    async def test_reconnect_resync_picks_up_missed_friend_request(self):
        await self.session.start()
        self.backend.received = [{"email": DAVE, "fullName": "Dave"}]

        await self.backend.drop_sockets()

        await wait_for(lambda: [r.counterpart for r in self.session.relationships.received_requests()] == [DAVE])

    async def test_friend_request_failure_rolls_back(self):
        await self.session.start()
        self.backend.fail("POST", "/friend-request/send", "ALREADY_SENT")

        outcome = await self.session.send_friend_request(DAVE)

        self.assertEqual(outcome.state, STATE_FAILED)
        self.assertEqual(self.session.relationships.sent_requests(), [])
        self.assertEqual(self.notices[0].message, "Friend request could not be sent")

    async def test_accepting_request_adds_friend_and_mirrors_event(self):
        self.backend.received = [{"email": DAVE, "fullName": "Dave"}]
        await self.session.start()

        outcome = await self.session.respond_to_friend_request(DAVE, accept=True)

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertEqual(self.session.relationships.friend(DAVE).display_name, "Dave")
        self.assertIn(DAVE, [s.conversation_id for s in self.session.conversation_list()])
        await wait_for(lambda: self.frames("friendRequestResponded"))
        self.assertEqual(
            self.frames("friendRequestResponded")[0],
            {"senderEmail": DAVE, "receiverEmail": SELF_EMAIL, "accepted": True},
        )

    async def test_unfriend_updates_conversation_list(self):
        await self.session.start()

        outcome = await self.session.unfriend(CAROL)

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertNotIn(CAROL, [s.conversation_id for s in self.session.conversation_list()])

    async def test_rename_group_rolls_back_on_failure(self):
        await self.session.start()
        self.backend.fail("PUT", "/groups/g1", "NOT_ADMIN", status=403)

        future = self.session.rename_group("g1", "New name")
        self.assertEqual(self.session.conversations.get("g1").display_name, "New name")
        outcome = await future

        self.assertEqual(outcome.state, STATE_FAILED)
        self.assertEqual(self.session.groups.get("g1").name, "Team")
        self.assertEqual(self.session.conversations.get("g1").display_name, "Team")

    async def test_change_group_avatar_mirrors_event(self):
        await self.session.start()

        outcome = await self.session.change_group_avatar("g1", "https://cdn.test/team.png")

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        await wait_for(lambda: self.frames("groupAvatarChanged"))
        self.assertEqual(
            self.frames("groupAvatarChanged")[0], {"groupId": "g1", "newAvatar": "https://cdn.test/team.png"}
        )

    async def test_leave_group_removes_conversation_and_mirrors_event(self):
        await self.session.start()

        future = self.session.leave_group("g1")
        self.assertIsNone(self.session.conversations.get("g1"))
        outcome = await future

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertIsNone(self.session.groups.get("g1"))
        self.assertEqual(len(self.backend.requests_to("POST", "/groups/g1/leave")), 1)
        await wait_for(lambda: self.frames("memberLeft"))
        self.assertEqual(self.frames("memberLeft")[0], {"groupId": "g1", "userId": SELF_EMAIL})

    async def test_leave_group_failure_restores_group(self):
        await self.session.start()
        self.backend.fail("POST", "/groups/g1/leave", "LAST_ADMIN", status=409)

        outcome = await self.session.leave_group("g1")

        self.assertEqual(outcome.state, STATE_FAILED)
        self.assertEqual(self.session.groups.get("g1").name, "Team")
        self.assertEqual(self.session.conversations.get("g1").display_name, "Team")
        self.assertEqual(self.notices[0].message, "Could not leave the group")

    async def test_delete_group_requires_admin(self):
        await self.session.start()

        outcome = await self.session.delete_group("g1")

        self.assertEqual(outcome.state, STATE_REJECTED)
        self.assertIsNotNone(self.session.groups.get("g1"))
        self.assertEqual(self.backend.requests_to("DELETE", "/groups/g1"), [])

    async def test_admin_deletes_group(self):
        self.backend.groups = [
            {"groupId": "g1", "name": "Team", "members": [{"email": SELF_EMAIL, "role": "admin"}, {"email": BOB}]}
        ]
        await self.session.start()

        outcome = await self.session.delete_group("g1")

        self.assertEqual(outcome.state, STATE_CONFIRMED)
        self.assertIsNone(self.session.conversations.get("g1"))
        self.assertEqual(len(self.backend.requests_to("DELETE", "/groups/g1")), 1)
        await wait_for(lambda: self.frames("groupDeleted"))

    async def test_member_left_refreshes_member_list(self):
        self.backend.members["g1"] = [{"email": SELF_EMAIL, "role": "admin"}, {"email": CAROL, "role": "member"}]
        await self.session.start()

        await self.backend.push("memberLeft", {"groupId": "g1", "userId": BOB})
        await wait_for(lambda: self.session.groups.get("g1").members == (SELF_EMAIL, CAROL))

        self.assertEqual(self.session.groups.get("g1").admins, (SELF_EMAIL,))
        self.assertEqual(len(self.backend.requests_to("GET", "/groups/g1/members")), 1)

    async def test_added_to_group_without_members_fetches_them(self):
        self.backend.members["g2"] = [{"email": DAVE, "role": "admin"}, {"email": SELF_EMAIL, "role": "member"}]
        await self.session.start()

        await self.backend.push("addedToGroup", {"groupId": "g2", "name": "Book club"})
        await wait_for(lambda: self.session.groups.get("g2") is not None)
        await wait_for(lambda: self.session.groups.get("g2").members == (DAVE, SELF_EMAIL))

        self.assertEqual(self.session.conversations.get("g2").display_name, "Book club")

    async def test_keystrokes_emit_one_typing_start(self):
        await self.session.start()

        for _ in range(5):
            self.session.keystroke(BOB)
        self.session.stop_typing(BOB)

        await wait_for(lambda: self.frames("typingStop"))
        self.assertEqual(self.frames("typingStart"), [{"senderEmail": SELF_EMAIL, "receiverEmail": BOB}])

    async def test_open_conversation_loads_history(self):
        self.backend.histories[BOB] = [
            message_payload("h2", BOB, SELF_EMAIL, "second", 2000),
            message_payload("h1", SELF_EMAIL, BOB, "first", 1000),
        ]
        await self.session.start()

        messages = await self.session.open_conversation(BOB)

        self.assertEqual([m.message_id for m in messages], ["h1", "h2"])
        self.assertEqual(self.session.conversations.get(BOB).last_preview, "second")

    async def test_close_clears_everything(self):
        await self.session.start()
        await self.session.send_message(BOB, "hello")

        await self.session.close()

        self.assertEqual(self.session.conversation_list(), [])
        self.assertEqual(self.session.message_log(BOB), [])
        self.assertEqual(self.session.relationships.friends(), [])
        self.assertEqual(self.session.hub.subscriber_count(), 0)
