"""
Server side of the talk protocol.

Sequencing rules:
- Every socket that has not logged in is offered a fresh ID with Connected.
  The client answers with Login, either for an existing account or to claim
  the offered ID as a new one.
- Every state changing request is answered by exactly one Accepted or one
  Rejected. A successful Login is followed by the account (AccountInfo).
- Messages are stored per recipient and replayed oldest first, one at a
  time. The next one is held back until the recipient answers Accepted.
  A message is only removed from the queue by that acknowledgement.
"""

import dataclasses
import logging
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, List, Optional, Set

from shared.constants import (ErrorCode, MAX_MESSAGE_BYTE_LEN, MAX_PASS_BYTE_LEN,
                              MIN_PASS_CHAR_LEN)
from shared.models import Account, ChatMessage
from wire_protocol.errors import SerializeError
from wire_protocol.protocol import (Accepted, AccountInfo, AddFriend, AddInvitation,
                                    ChangePassword, Comm, Connected, Disconnected, Login,
                                    Message, Rejected, RemoveFriend, RemoveInvitation,
                                    WireProtocol)

logger = logging.getLogger(__name__)


def is_valid_password(password: str) -> bool:
    """Passwords need MIN_PASS_CHAR_LEN characters and must fit the wire region."""
    return len(password) >= MIN_PASS_CHAR_LEN and len(password.encode('utf-8')) <= MAX_PASS_BYTE_LEN


class AccountStore:
    """
    In-memory accounts keyed by ID.

    Each account has its own lock; mutate an account only inside
    ``with store.locked(user_id) as account``.
    """

    def __init__(self, first_id: int = 1):
        self._accounts: Dict[int, Account] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._reserved: Set[int] = set()
        self._next_id = first_id
        self._lock = threading.Lock()

    def reserve_id(self) -> int:
        """Hand out an ID nobody owns yet, to be claimed by a Login."""
        with self._lock:
            user_id = self._next_id
            self._next_id += 1
            self._reserved.add(user_id)
            return user_id

    def release_reservation(self, user_id: int):
        """Give back an ID offered to a connection that did not claim it."""
        with self._lock:
            self._reserved.discard(user_id)

    def is_reserved(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._reserved

    def create(self, user_id: int, password: str) -> Optional[Account]:
        """Create an account for a reserved ID. Returns None if the ID was not reserved."""
        with self._lock:
            if user_id not in self._reserved:
                return None
            self._reserved.remove(user_id)
            account = Account(user_id, password)
            self._accounts[user_id] = account
            self._locks[user_id] = threading.Lock()
            return account

    def exists(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._accounts

    def get(self, user_id: int) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(user_id)

    @contextmanager
    def locked(self, user_id: int) -> Iterator[Account]:
        """Hold the account's lock for the duration of the block."""
        with self._lock:
            account = self._accounts[user_id]
            lock = self._locks[user_id]
        with lock:
            yield account

    def snapshot(self, user_id: int) -> Account:
        """Copy of an account that later mutations do not touch."""
        with self.locked(user_id) as account:
            return dataclasses.replace(account, friends=set(account.friends),
                                       invitations=set(account.invitations))


class MessageQueue:
    """Store-and-forward queue: pending messages per recipient, at most one in flight."""

    def __init__(self):
        self._pending: Dict[int, Deque[ChatMessage]] = defaultdict(deque)
        self._in_flight: Dict[int, ChatMessage] = {}
        self._lock = threading.Lock()

    def push(self, message: ChatMessage):
        with self._lock:
            self._pending[message.recipient].append(message)
        logger.info(f"Queued message {message.sender} -> {message.recipient}")

    def pending(self, recipient: int) -> List[ChatMessage]:
        """Messages not yet acknowledged by recipient, oldest first (in-flight one included)."""
        with self._lock:
            return list(self._pending.get(recipient, ()))

    def in_flight(self, recipient: int) -> Optional[ChatMessage]:
        with self._lock:
            return self._in_flight.get(recipient)

    def next_for_delivery(self, recipient: int) -> Optional[ChatMessage]:
        """Oldest pending message, marked in flight. None while another is unacknowledged."""
        with self._lock:
            if recipient in self._in_flight:
                return None
            queue = self._pending.get(recipient)
            if not queue:
                return None
            message = queue[0]
            self._in_flight[recipient] = message
            return message

    def acknowledge(self, recipient: int) -> Optional[ChatMessage]:
        """Drop the in-flight message for recipient. Returns it, or None if nothing was in flight."""
        with self._lock:
            message = self._in_flight.pop(recipient, None)
            if message is None:
                return None
            queue = self._pending[recipient]
            queue.popleft()
            if not queue:
                del self._pending[recipient]
        logger.info(f"Message {message.sender} -> {recipient} acknowledged")
        return message

    def release(self, recipient: int) -> bool:
        """Return the in-flight message to the head of the queue for a later retry."""
        with self._lock:
            return self._in_flight.pop(recipient, None) is not None


class ChatHub:
    """Shared server state: accounts, the message queue and the sessions logged in right now."""

    def __init__(self, store: Optional[AccountStore] = None, queue: Optional[MessageQueue] = None):
        self.store = store if store is not None else AccountStore()
        self.queue = queue if queue is not None else MessageQueue()
        self._sessions: Dict[int, 'ServerSession'] = {}
        self._lock = threading.Lock()

    def attach(self, user_id: int, session: 'ServerSession') -> bool:
        """Register a logged in session. Only one session per account at a time."""
        with self._lock:
            if user_id in self._sessions:
                return False
            self._sessions[user_id] = session
            return True

    def detach(self, user_id: int, session: 'ServerSession'):
        with self._lock:
            if self._sessions.get(user_id) is session:
                del self._sessions[user_id]

    def session(self, user_id: int) -> Optional['ServerSession']:
        with self._lock:
            return self._sessions.get(user_id)

    def notify(self, recipient: int):
        """Start delivery to recipient if it is online and not waiting on an acknowledgement."""
        session = self.session(recipient)
        if session is not None:
            session.deliver_pending()


class ServerSession:
    """
    Protocol state of a single connection.

    ``handle`` returns the replies for the requester. Messages delivered
    because someone else sent them are written through ``push``.
    """

    def __init__(self, hub: ChatHub, push: Optional[Callable[[Comm], None]] = None):
        self.hub = hub
        self.store = hub.store
        self.queue = hub.queue
        self.push = push if push is not None else (lambda comm: None)
        self.offered_id: Optional[int] = None
        self.user_id: Optional[int] = None
        self.closed = False
        # Held while closing and while marking a message in flight for this session
        self._delivery_lock = threading.RLock()

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def greet(self) -> Connected:
        """The Connected offer sent to a fresh socket."""
        self.offered_id = self.store.reserve_id()
        return Connected(self.offered_id)

    def handle_frame(self, buffer) -> List[Comm]:
        """Decode a raw buffer and handle it. Malformed input is rejected, never raised."""
        try:
            comm = WireProtocol.decode(buffer)
        except SerializeError as e:
            logger.warning(f"Could not decode request from {self._who()}: {e}")
            return [Rejected(ErrorCode.INVALID_OPERATION)]
        return self.handle(comm)

    def handle(self, comm: Comm) -> List[Comm]:
        if self.closed:
            return []
        if isinstance(comm, Login):
            return self._login(comm)
        elif isinstance(comm, Disconnected):
            self.close()
            return []
        elif isinstance(comm, Accepted):
            return self._acknowledge()
        elif isinstance(comm, (Connected, Rejected, AccountInfo)):
            # Server to client only
            return self._reject(comm, ErrorCode.INVALID_OPERATION)
        elif not self.authenticated:
            return self._reject(comm, ErrorCode.INVALID_OPERATION)
        elif isinstance(comm, ChangePassword):
            return self._change_password(comm)
        elif isinstance(comm, Message):
            return self._send_message(comm.message)
        elif isinstance(comm, AddInvitation):
            return self._add_invitation(comm.user_id)
        elif isinstance(comm, RemoveInvitation):
            return self._social(comm, self.user_id, lambda account: account.remove_invitation(comm.user_id))
        elif isinstance(comm, AddFriend):
            return self._add_friend(comm.user_id)
        elif isinstance(comm, RemoveFriend):
            return self._remove_friend(comm.user_id)
        return self._reject(comm, ErrorCode.INVALID_OPERATION)

    def deliver_pending(self):
        """Push the next pending message, if nothing is waiting on an acknowledgement."""
        comm = self._next_delivery()
        if comm is not None:
            self.push(comm)

    def close(self):
        """Forget the connection. An unacknowledged message stays queued for the next login."""
        with self._delivery_lock:
            if self.closed:
                return
            self.closed = True
            if self.offered_id is not None:
                self.store.release_reservation(self.offered_id)
            if self.user_id is not None:
                if self.queue.release(self.user_id):
                    logger.info(f"Delivery to {self.user_id} interrupted, message kept for retry")
                self.hub.detach(self.user_id, self)
        logger.info(f"Session for {self._who()} closed")

    def _who(self) -> str:
        if self.user_id is not None:
            return f"user {self.user_id}"
        return "unauthenticated client"

    def _reject(self, comm: Comm, error: ErrorCode) -> List[Comm]:
        logger.info(f"Rejected {comm.comm_type.name} from {self._who()}: {error.name}")
        return [Rejected(error)]

    def _next_delivery(self) -> Optional[Message]:
        with self._delivery_lock:
            if self.closed or self.user_id is None:
                return None
            message = self.queue.next_for_delivery(self.user_id)
            if message is None:
                return None
            if self.closed:
                # Closed from this same thread while the message was being taken
                self.queue.release(self.user_id)
                return None
        logger.info(f"Delivering message {message.sender} -> {message.recipient}")
        return Message(message)

    def _login(self, comm: Login) -> List[Comm]:
        if self.authenticated:
            return self._reject(comm, ErrorCode.INVALID_OPERATION)

        if self.store.exists(comm.user_id):
            with self.store.locked(comm.user_id) as account:
                password_ok = account.password == comm.password
            if not password_ok:
                return self._reject(comm, ErrorCode.BAD_LOGIN_DATA)
        elif comm.user_id == self.offered_id:
            if not is_valid_password(comm.password):
                return self._reject(comm, ErrorCode.BAD_LOGIN_DATA)
            if self.store.create(comm.user_id, comm.password) is None:
                return self._reject(comm, ErrorCode.INVALID_USER_ID)
            logger.info(f"Created account {comm.user_id}")
        else:
            return self._reject(comm, ErrorCode.INVALID_USER_ID)

        if not self.hub.attach(comm.user_id, self):
            logger.warning(f"User {comm.user_id} is already logged in elsewhere")
            return self._reject(comm, ErrorCode.INVALID_OPERATION)

        self.user_id = comm.user_id
        if self.offered_id != self.user_id:
            self.store.release_reservation(self.offered_id)
        logger.info(f"User {self.user_id} logged in")
        replies = [Accepted(), AccountInfo(self.store.snapshot(self.user_id))]
        delivery = self._next_delivery()
        if delivery is not None:
            replies.append(delivery)
        return replies

    def _acknowledge(self) -> List[Comm]:
        if self.user_id is None or self.queue.acknowledge(self.user_id) is None:
            logger.debug(f"Ignoring Accepted from {self._who()} with nothing in flight")
            return []
        delivery = self._next_delivery()
        return [delivery] if delivery is not None else []

    def _change_password(self, comm: ChangePassword) -> List[Comm]:
        if not is_valid_password(comm.new_password):
            return self._reject(comm, ErrorCode.INVALID_PASSWORD)
        with self.store.locked(self.user_id) as account:
            changed = account.change_password(comm.new_password, comm.old_password)
        if not changed:
            return self._reject(comm, ErrorCode.INVALID_PASSWORD)
        return [Accepted()]

    def _send_message(self, message: ChatMessage) -> List[Comm]:
        if message.sender != self.user_id:
            return self._reject(Message(message), ErrorCode.INVALID_OPERATION)
        if len(message.content.encode('utf-8')) > MAX_MESSAGE_BYTE_LEN:
            return self._reject(Message(message), ErrorCode.INVALID_OPERATION)
        if not self.store.exists(message.recipient):
            return self._reject(Message(message), ErrorCode.INVALID_USER_ID)
        self.queue.push(message)
        self.hub.notify(message.recipient)
        return [Accepted()]

    def _social(self, comm: Comm, owner: int, operation: Callable[[Account], bool]) -> List[Comm]:
        """Run one social graph operation on owner's account under its lock."""
        with self.store.locked(owner) as account:
            done = operation(account)
        if not done:
            return self._reject(comm, ErrorCode.INVALID_OPERATION)
        return [Accepted()]

    def _add_invitation(self, target: int) -> List[Comm]:
        # Invite target: the invitation is stored on the target's account
        comm = AddInvitation(target)
        if not self.store.exists(target):
            return self._reject(comm, ErrorCode.INVALID_USER_ID)
        if target == self.user_id:
            return self._reject(comm, ErrorCode.INVALID_OPERATION)
        with self.store.locked(self.user_id) as account:
            already_related = account.has_friend(target) or account.has_invitation(target)
        if already_related:
            return self._reject(comm, ErrorCode.INVALID_OPERATION)
        inviter = self.user_id
        return self._social(comm, target, lambda account: account.add_invitation(inviter))

    def _add_friend(self, inviter: int) -> List[Comm]:
        # Accept inviter's invitation, then record the friendship on the inviter's side too
        replies = self._social(AddFriend(inviter), self.user_id, lambda account: account.add_friend(inviter))
        if isinstance(replies[0], Accepted) and self.store.exists(inviter):
            with self.store.locked(inviter) as account:
                account.add_invitation(self.user_id)
                account.add_friend(self.user_id)
        return replies

    def _remove_friend(self, friend: int) -> List[Comm]:
        replies = self._social(RemoveFriend(friend), self.user_id, lambda account: account.remove_friend(friend))
        if isinstance(replies[0], Accepted) and self.store.exists(friend):
            with self.store.locked(friend) as account:
                account.remove_friend(self.user_id)
        return replies
