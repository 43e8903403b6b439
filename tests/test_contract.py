import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from shared.constants import ErrorCode, MAX_MESSAGE_BYTE_LEN
from shared.models import Account, ChatMessage
from wire_protocol.contract import (AccountStore, ChatHub, MessageQueue, ServerSession,
                                    is_valid_password)
from wire_protocol.protocol import (Accepted, AccountInfo, AddFriend, AddInvitation,
                                    ChangePassword, Connected, Disconnected, Login, Message,
                                    Rejected, RemoveFriend, RemoveInvitation, WireProtocol)

INVALID_OPERATION = [Rejected(ErrorCode.INVALID_OPERATION)]


class SessionTestCase(unittest.TestCase):
    def setUp(self):
        self.hub = ChatHub()
        self.store = self.hub.store
        self.queue = self.hub.queue

    def open_session(self):
        pushed = []
        session = ServerSession(self.hub, push=pushed.append)
        session.pushed = pushed
        return session

    def register(self, password="abcd"):
        """Open a session and claim the offered ID. Returns (session, user_id)."""
        session = self.open_session()
        user_id = session.greet().user_id
        replies = session.handle(Login(user_id, password))
        self.assertEqual(replies[0], Accepted())
        return session, user_id

    def login(self, user_id, password="abcd"):
        session = self.open_session()
        session.greet()
        return session, session.handle(Login(user_id, password))


class TestAccountStore(unittest.TestCase):
    def test_reserved_ids_are_unique(self):
        store = AccountStore()
        ids = {store.reserve_id() for _ in range(100)}
        self.assertEqual(len(ids), 100)

    def test_create_needs_reservation(self):
        store = AccountStore()
        self.assertIsNone(store.create(99, "abcd"))
        user_id = store.reserve_id()
        self.assertEqual(store.create(user_id, "abcd"), Account(user_id, "abcd"))
        self.assertFalse(store.is_reserved(user_id))
        # Claiming the same ID twice fails
        self.assertIsNone(store.create(user_id, "abcd"))

    def test_release_reservation(self):
        store = AccountStore()
        user_id = store.reserve_id()
        store.release_reservation(user_id)
        self.assertFalse(store.is_reserved(user_id))
        self.assertIsNone(store.create(user_id, "abcd"))
        # IDs are not handed out again
        self.assertNotEqual(store.reserve_id(), user_id)

    def test_snapshot_is_detached(self):
        store = AccountStore()
        user_id = store.reserve_id()
        store.create(user_id, "abcd")
        snapshot = store.snapshot(user_id)
        with store.locked(user_id) as account:
            account.add_invitation(5)
        self.assertEqual(snapshot.invitations, set())
        self.assertEqual(store.get(user_id).invitations, {5})


class TestMessageQueue(unittest.TestCase):
    def setUp(self):
        self.queue = MessageQueue()
        self.messages = [ChatMessage(1, 2, f"message {i}") for i in range(3)]
        for message in self.messages:
            self.queue.push(message)

    def test_oldest_first_one_at_a_time(self):
        self.assertEqual(self.queue.next_for_delivery(2), self.messages[0])
        self.assertIsNone(self.queue.next_for_delivery(2))
        self.assertEqual(self.queue.acknowledge(2), self.messages[0])
        self.assertEqual(self.queue.next_for_delivery(2), self.messages[1])

    def test_release_keeps_message(self):
        self.queue.next_for_delivery(2)
        self.assertTrue(self.queue.release(2))
        self.assertIsNone(self.queue.in_flight(2))
        self.assertEqual(self.queue.pending(2), self.messages)
        self.assertEqual(self.queue.next_for_delivery(2), self.messages[0])

    def test_acknowledge_without_delivery(self):
        self.assertIsNone(self.queue.acknowledge(2))
        self.assertEqual(self.queue.pending(2), self.messages)

    def test_drains(self):
        for message in self.messages:
            self.assertEqual(self.queue.next_for_delivery(2), message)
            self.queue.acknowledge(2)
        self.assertEqual(self.queue.pending(2), [])
        self.assertIsNone(self.queue.next_for_delivery(2))

    def test_recipients_are_independent(self):
        other = ChatMessage(1, 3, "other")
        self.queue.push(other)
        self.queue.next_for_delivery(2)
        self.assertEqual(self.queue.next_for_delivery(3), other)


class TestHandshake(SessionTestCase):
    def test_greet_offers_fresh_ids(self):
        first = self.open_session().greet()
        second = self.open_session().greet()
        self.assertIsInstance(first, Connected)
        self.assertNotEqual(first.user_id, second.user_id)

    def test_register_with_offered_id(self):
        session = self.open_session()
        offered = session.greet().user_id
        replies = session.handle(Login(offered, "abcd"))
        self.assertEqual(replies, [Accepted(), AccountInfo(Account(offered, "abcd"))])
        self.assertTrue(session.authenticated)
        self.assertTrue(self.store.exists(offered))

    def test_login_existing_account(self):
        first, user_id = self.register("secret")
        first.close()
        session, replies = self.login(user_id, "secret")
        self.assertEqual(replies, [Accepted(), AccountInfo(Account(user_id, "secret"))])

    def test_wrong_password(self):
        first, user_id = self.register("secret")
        first.close()
        session, replies = self.login(user_id, "wrong")
        self.assertEqual(replies, [Rejected(ErrorCode.BAD_LOGIN_DATA)])
        self.assertFalse(session.authenticated)

    def test_unknown_id(self):
        session = self.open_session()
        offered = session.greet().user_id
        self.assertEqual(session.handle(Login(offered + 100, "abcd")),
                         [Rejected(ErrorCode.INVALID_USER_ID)])

    def test_cannot_claim_someone_elses_offer(self):
        other = self.open_session()
        other_offer = other.greet().user_id
        session = self.open_session()
        session.greet()
        self.assertEqual(session.handle(Login(other_offer, "abcd")),
                         [Rejected(ErrorCode.INVALID_USER_ID)])

    def test_short_password_on_register(self):
        session = self.open_session()
        offered = session.greet().user_id
        self.assertEqual(session.handle(Login(offered, "abc")), [Rejected(ErrorCode.BAD_LOGIN_DATA)])
        self.assertFalse(self.store.exists(offered))

    def test_second_login_on_same_connection(self):
        session, user_id = self.register()
        self.assertEqual(session.handle(Login(user_id, "abcd")), INVALID_OPERATION)

    def test_one_session_per_account(self):
        session, user_id = self.register()
        other, replies = self.login(user_id)
        self.assertEqual(replies, INVALID_OPERATION)

    def test_requests_before_login(self):
        session = self.open_session()
        session.greet()
        for comm in (AddFriend(1), RemoveFriend(1), AddInvitation(1), RemoveInvitation(1),
                     ChangePassword("abcd", "efgh"), Message(ChatMessage(1, 2, "hi"))):
            with self.subTest(comm=comm):
                self.assertEqual(session.handle(comm), INVALID_OPERATION)

    def test_server_only_variants_are_rejected(self):
        session, user_id = self.register()
        for comm in (AccountInfo(Account(user_id, "abcd")), Connected(5), Rejected(ErrorCode.UNKNOWN)):
            with self.subTest(comm=comm):
                self.assertEqual(session.handle(comm), INVALID_OPERATION)

    def test_malformed_frames_are_rejected(self):
        session, _ = self.register()
        for frame in (b'', bytes([200]) + b'\x00' * 511, b'\x02\x01'):
            with self.subTest(frame=frame):
                self.assertEqual(session.handle_frame(frame), INVALID_OPERATION)

    def test_handle_frame_decodes(self):
        session = self.open_session()
        offered = session.greet().user_id
        replies = session.handle_frame(WireProtocol.pack_frame(Login(offered, "abcd")))
        self.assertEqual(replies[0], Accepted())

    def test_disconnect_closes_session(self):
        session, user_id = self.register()
        self.assertEqual(session.handle(Disconnected(user_id)), [])
        self.assertTrue(session.closed)
        self.assertIsNone(self.hub.session(user_id))
        self.assertEqual(session.handle(AddFriend(3)), [])

    def test_unclaimed_offers_are_given_back(self):
        offered = []
        for _ in range(1000):
            session = self.open_session()
            offered.append(session.greet().user_id)
            session.close()
        self.assertFalse(any(self.store.is_reserved(user_id) for user_id in offered))

        session = self.open_session()
        session.greet()
        self.assertEqual(session.handle(Login(offered[0], "abcd")), [Rejected(ErrorCode.INVALID_USER_ID)])

    def test_offer_given_back_on_login_to_existing_account(self):
        first, user_id = self.register()
        first.close()
        session = self.open_session()
        offered = session.greet().user_id
        self.assertTrue(self.store.is_reserved(offered))
        self.assertEqual(session.handle(Login(user_id, "abcd"))[0], Accepted())
        self.assertFalse(self.store.is_reserved(offered))
        self.assertFalse(self.store.exists(offered))

    def test_offer_kept_after_failed_login(self):
        first, user_id = self.register()
        session = self.open_session()
        offered = session.greet().user_id
        self.assertEqual(session.handle(Login(user_id, "wrong")), [Rejected(ErrorCode.BAD_LOGIN_DATA)])
        self.assertTrue(self.store.is_reserved(offered))
        self.assertEqual(session.handle(Login(offered, "abcd"))[0], Accepted())

    def test_unsolicited_accepted_is_ignored(self):
        session, _ = self.register()
        self.assertEqual(session.handle(Accepted()), [])


class TestAccountRequests(SessionTestCase):
    def test_change_password(self):
        session, user_id = self.register("abcd")
        self.assertEqual(session.handle(ChangePassword("efgh", "abcd")), [Accepted()])
        self.assertEqual(self.store.get(user_id).password, "efgh")

    def test_change_password_wrong_old(self):
        session, user_id = self.register("abcd")
        self.assertEqual(session.handle(ChangePassword("efgh", "nope")),
                         [Rejected(ErrorCode.INVALID_PASSWORD)])
        self.assertEqual(self.store.get(user_id).password, "abcd")

    def test_change_password_too_short(self):
        session, user_id = self.register("abcd")
        self.assertEqual(session.handle(ChangePassword("ab", "abcd")),
                         [Rejected(ErrorCode.INVALID_PASSWORD)])
        self.assertEqual(self.store.get(user_id).password, "abcd")

    def test_password_policy(self):
        self.assertTrue(is_valid_password("abcd"))
        self.assertTrue(is_valid_password("ąęść"))
        self.assertFalse(is_valid_password("abc"))
        self.assertFalse(is_valid_password("x" * 31))


class TestSocialRequests(SessionTestCase):
    def setUp(self):
        super().setUp()
        self.alice, self.alice_id = self.register()
        self.bob, self.bob_id = self.register()

    def test_invite_and_accept(self):
        self.assertEqual(self.alice.handle(AddInvitation(self.bob_id)), [Accepted()])
        self.assertEqual(self.store.get(self.bob_id).invitations, {self.alice_id})

        self.assertEqual(self.bob.handle(AddFriend(self.alice_id)), [Accepted()])
        bob = self.store.get(self.bob_id)
        alice = self.store.get(self.alice_id)
        self.assertEqual(bob.friends, {self.alice_id})
        self.assertEqual(alice.friends, {self.bob_id})
        self.assertEqual(bob.invitations, set())
        self.assertEqual(alice.invitations, set())

    def test_accept_without_invitation(self):
        self.assertEqual(self.bob.handle(AddFriend(self.alice_id)), INVALID_OPERATION)
        self.assertEqual(self.store.get(self.bob_id).friends, set())

    def test_invite_twice(self):
        self.alice.handle(AddInvitation(self.bob_id))
        self.assertEqual(self.alice.handle(AddInvitation(self.bob_id)), INVALID_OPERATION)

    def test_invite_back_is_refused(self):
        self.alice.handle(AddInvitation(self.bob_id))
        self.assertEqual(self.bob.handle(AddInvitation(self.alice_id)), INVALID_OPERATION)

    def test_invite_unknown_or_self(self):
        self.assertEqual(self.alice.handle(AddInvitation(9999)), [Rejected(ErrorCode.INVALID_USER_ID)])
        self.assertEqual(self.alice.handle(AddInvitation(self.alice_id)), INVALID_OPERATION)

    def test_decline(self):
        self.alice.handle(AddInvitation(self.bob_id))
        self.assertEqual(self.bob.handle(RemoveInvitation(self.alice_id)), [Accepted()])
        self.assertEqual(self.store.get(self.bob_id).invitations, set())
        self.assertEqual(self.bob.handle(RemoveInvitation(self.alice_id)), INVALID_OPERATION)

    def test_remove_friend_on_both_sides(self):
        self.alice.handle(AddInvitation(self.bob_id))
        self.bob.handle(AddFriend(self.alice_id))
        self.assertEqual(self.alice.handle(RemoveFriend(self.bob_id)), [Accepted()])
        self.assertEqual(self.store.get(self.alice_id).friends, set())
        self.assertEqual(self.store.get(self.bob_id).friends, set())
        self.assertEqual(self.alice.handle(RemoveFriend(self.bob_id)), INVALID_OPERATION)

    def test_account_info_reflects_graph(self):
        self.alice.handle(AddInvitation(self.bob_id))
        self.bob.close()
        _, replies = self.login(self.bob_id)
        self.assertEqual(replies[1], AccountInfo(Account(self.bob_id, "abcd", invitations={self.alice_id})))


class TestStoreAndForward(SessionTestCase):
    def setUp(self):
        super().setUp()
        self.alice, self.alice_id = self.register()
        self.bob, self.bob_id = self.register()

    def send(self, content):
        message = ChatMessage(self.alice_id, self.bob_id, content)
        self.assertEqual(self.alice.handle(Message(message)), [Accepted()])
        return message

    def test_offline_messages_replayed_oldest_first(self):
        self.bob.close()
        messages = [self.send(f"message {i}") for i in range(3)]
        self.assertEqual(self.queue.pending(self.bob_id), messages)

        bob, replies = self.login(self.bob_id)
        self.assertEqual(replies[:2], [Accepted(), AccountInfo(Account(self.bob_id, "abcd"))])
        self.assertEqual(replies[2:], [Message(messages[0])])

        self.assertEqual(bob.handle(Accepted()), [Message(messages[1])])
        self.assertEqual(bob.handle(Accepted()), [Message(messages[2])])
        self.assertEqual(bob.handle(Accepted()), [])
        self.assertEqual(self.queue.pending(self.bob_id), [])

    def test_unacknowledged_message_survives_disconnect(self):
        self.bob.close()
        messages = [self.send("first"), self.send("second")]

        bob, replies = self.login(self.bob_id)
        self.assertEqual(replies[-1], Message(messages[0]))
        bob.handle(Accepted())
        # "second" is in flight; the connection drops before it is acknowledged
        bob.close()
        self.assertEqual(self.queue.pending(self.bob_id), [messages[1]])
        self.assertIsNone(self.queue.in_flight(self.bob_id))

        bob, replies = self.login(self.bob_id)
        self.assertEqual(replies[-1], Message(messages[1]))

    def test_online_recipient_gets_push(self):
        first = self.send("first")
        self.assertEqual(self.bob.pushed, [Message(first)])

        second = self.send("second")
        # Withheld until the first is acknowledged
        self.assertEqual(self.bob.pushed, [Message(first)])
        self.assertEqual(self.bob.handle(Accepted()), [Message(second)])
        self.assertEqual(self.bob.handle(Accepted()), [])
        self.assertEqual(self.queue.pending(self.bob_id), [])

    def test_forged_sender(self):
        forged = ChatMessage(self.bob_id, self.alice_id, "not from alice")
        self.assertEqual(self.alice.handle(Message(forged)), INVALID_OPERATION)

    def test_unknown_recipient(self):
        message = ChatMessage(self.alice_id, 9999, "hello?")
        self.assertEqual(self.alice.handle(Message(message)), [Rejected(ErrorCode.INVALID_USER_ID)])

    def test_content_too_long(self):
        message = ChatMessage(self.alice_id, self.bob_id, "x" * (MAX_MESSAGE_BYTE_LEN + 1))
        self.assertEqual(self.alice.handle(Message(message)), INVALID_OPERATION)
        self.assertEqual(self.queue.pending(self.bob_id), [])


class ClosingQueue(MessageQueue):
    """Closes the recipient's session right before a message is taken for it."""

    def __init__(self):
        super().__init__()
        self.close_first = {}

    def next_for_delivery(self, recipient):
        session = self.close_first.pop(recipient, None)
        if session is not None:
            session.close()
        return super().next_for_delivery(recipient)


class PausingQueue(MessageQueue):
    """Holds next_for_delivery until resumed, once armed."""

    def __init__(self):
        super().__init__()
        self.armed = False
        self.entered = threading.Event()
        self.resume = threading.Event()

    def next_for_delivery(self, recipient):
        if self.armed:
            self.armed = False
            self.entered.set()
            self.resume.wait(5)
        return super().next_for_delivery(recipient)


class TestDeliveryDuringClose(SessionTestCase):
    def make_hub(self, queue):
        self.hub = ChatHub(queue=queue)
        self.store = self.hub.store
        self.queue = queue
        self.alice, self.alice_id = self.register()
        self.bob, self.bob_id = self.register()

    def assert_replayed_on_login(self, message):
        self.assertIsNone(self.queue.in_flight(self.bob_id))
        self.assertEqual(self.queue.pending(self.bob_id), [message])
        bob, replies = self.login(self.bob_id)
        self.assertEqual(replies[-1], Message(message))

    def test_close_while_message_is_taken(self):
        self.make_hub(ClosingQueue())
        self.queue.close_first[self.bob_id] = self.bob

        message = ChatMessage(self.alice_id, self.bob_id, "hi")
        self.assertEqual(self.alice.handle(Message(message)), [Accepted()])
        self.assertTrue(self.bob.closed)
        self.assertEqual(self.bob.pushed, [])
        self.assert_replayed_on_login(message)

    def test_close_from_another_thread(self):
        self.make_hub(PausingQueue())
        message = ChatMessage(self.alice_id, self.bob_id, "hi")
        self.queue.armed = True

        sender = threading.Thread(target=self.alice.handle, args=(Message(message),))
        sender.start()
        self.assertTrue(self.queue.entered.wait(5))
        closer = threading.Thread(target=self.bob.close)
        closer.start()
        # close() waits for the delivery in progress
        closer.join(0.2)
        self.queue.resume.set()
        sender.join(5)
        closer.join(5)

        self.assertTrue(self.bob.closed)
        self.assert_replayed_on_login(message)


if __name__ == '__main__':
    unittest.main()
