"""Command-line client for the talk chat server."""

import argparse
import logging
import queue
import socket
import threading
from typing import Callable, List, Optional

from shared.config import load_config
from shared.models import Account, ChatMessage
from wire_protocol.errors import SerializeError
from wire_protocol.protocol import (Accepted, AccountInfo, AddFriend, AddInvitation,
                                    ChangePassword, Comm, Connected, Disconnected, Login,
                                    Message, Rejected, RemoveFriend, RemoveInvitation,
                                    WireProtocol)
from wire_protocol.server import recv_exact

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ChatClient:
    def __init__(self, host: str = None, port: int = None, timeout: float = 5.0):
        config = load_config('client')
        self.host = host if host is not None else config['host']
        self.port = port if port is not None else config['port']
        self.timeout = timeout
        self.socket: Optional[socket.socket] = None
        self.connected = False
        self.offered_id: Optional[int] = None
        self.user_id: Optional[int] = None
        self.account: Optional[Account] = None
        self.last_error = None
        self.inbox: List[ChatMessage] = []
        self.on_message: Optional[Callable[[ChatMessage], None]] = None
        self.replies: "queue.Queue[Comm]" = queue.Queue()
        self.send_lock = threading.Lock()
        self.listener: Optional[threading.Thread] = None

    def connect(self) -> int:
        """Connect to the server and return the account ID it offers for registration."""
        self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self.socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        greeting = WireProtocol.decode(self.read_frame())
        if not isinstance(greeting, Connected):
            self.close()
            raise ConnectionError(f"Expected Connected from server, got {greeting!r}")
        self.offered_id = greeting.user_id
        self.socket.settimeout(None)
        self.connected = True
        self.listener = threading.Thread(target=self.listen_for_messages, daemon=True)
        self.listener.start()
        return self.offered_id

    def _socket(self) -> socket.socket:
        sock = self.socket
        if sock is None:
            raise ConnectionError("Not connected")
        return sock

    def read_frame(self) -> bytes:
        frame = recv_exact(self._socket(), WireProtocol.FRAME_SIZE)
        if not frame:
            raise ConnectionError("Server closed the connection")
        return frame

    def send(self, comm: Comm):
        with self.send_lock:
            self._socket().sendall(WireProtocol.pack_frame(comm))

    def listen_for_messages(self):
        """Read frames from the server; acknowledge messages, queue everything else as replies."""
        try:
            while self.connected:
                try:
                    comm = WireProtocol.decode(self.read_frame())
                except SerializeError as e:
                    logger.warning(f"Ignoring malformed frame from server: {e}")
                    continue

                if isinstance(comm, Message):
                    self.inbox.append(comm.message)
                    self.send(Accepted())
                    if self.on_message:
                        self.on_message(comm.message)
                else:
                    self.replies.put(comm)
        except (ConnectionError, OSError) as e:
            if self.connected:
                logger.info(f"Connection to server lost: {e}")
        finally:
            self.connected = False

    def request(self, comm: Comm) -> Comm:
        """Send a request and wait for the server's answer.

        Replies still queued from an earlier request that timed out are
        dropped first, so they are not taken for the answer to this one.
        """
        self.drain_replies()
        self.send(comm)
        return self.replies.get(timeout=self.timeout)

    def drain_replies(self) -> List[Comm]:
        stale = []
        while True:
            try:
                stale.append(self.replies.get_nowait())
            except queue.Empty:
                break
        for reply in stale:
            logger.warning(f"Dropping late reply {reply.comm_type.name}")
        return stale

    def _expect_accepted(self, comm: Comm) -> bool:
        reply = self.request(comm)
        if isinstance(reply, Rejected):
            self.last_error = reply.error
            logger.info(f"{comm.comm_type.name} rejected: {reply.error.name}")
            return False
        return isinstance(reply, Accepted)

    def login(self, user_id: int, password: str) -> bool:
        if not self._expect_accepted(Login(user_id, password)):
            return False
        reply = self.replies.get(timeout=self.timeout)
        if isinstance(reply, AccountInfo):
            self.account = reply.account
        self.user_id = user_id
        return True

    def register(self, password: str) -> bool:
        """Claim the ID offered on connect as a new account."""
        return self.login(self.offered_id, password)

    def change_password(self, new_password: str, old_password: str) -> bool:
        return self._expect_accepted(ChangePassword(new_password, old_password))

    def send_message(self, recipient: int, content: str) -> bool:
        return self._expect_accepted(Message(ChatMessage(self.user_id, recipient, content)))

    def add_invitation(self, user_id: int) -> bool:
        return self._expect_accepted(AddInvitation(user_id))

    def remove_invitation(self, user_id: int) -> bool:
        return self._expect_accepted(RemoveInvitation(user_id))

    def add_friend(self, user_id: int) -> bool:
        return self._expect_accepted(AddFriend(user_id))

    def remove_friend(self, user_id: int) -> bool:
        return self._expect_accepted(RemoveFriend(user_id))

    def disconnect(self):
        if self.connected:
            try:
                self.send(Disconnected(self.user_id if self.user_id is not None else self.offered_id))
            except OSError:
                pass
        self.close()

    def close(self):
        self.connected = False
        sock, self.socket = self.socket, None
        if sock:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()


HELP = """Commands:
  register <password>         create an account with the offered ID
  login <id> <password>
  msg <id> <text>             send a message
  invite <id> | accept <id> | decline <id> | unfriend <id>
  passwd <new> <old>
  whoami
  quit"""


def print_message(message: ChatMessage):
    print(f"\n[{message.sent_at:%Y-%m-%d %H:%M:%S}] {message.sender}: {message.content}")


def run_command(client: ChatClient, line: str) -> bool:
    """Run one REPL command. Returns False when the user wants to quit."""
    parts = line.split(maxsplit=2)
    if not parts:
        return True
    command, args = parts[0], parts[1:]
    try:
        if command == 'quit':
            return False
        elif command == 'register':
            ok = client.register(args[0])
        elif command == 'login':
            ok = client.login(int(args[0]), args[1])
        elif command == 'msg':
            ok = client.send_message(int(args[0]), args[1])
        elif command == 'invite':
            ok = client.add_invitation(int(args[0]))
        elif command == 'accept':
            ok = client.add_friend(int(args[0]))
        elif command == 'decline':
            ok = client.remove_invitation(int(args[0]))
        elif command == 'unfriend':
            ok = client.remove_friend(int(args[0]))
        elif command == 'passwd':
            ok = client.change_password(args[0], args[1])
        elif command == 'whoami':
            print(f"user {client.user_id}, account {client.account}")
            return True
        else:
            print(HELP)
            return True
    except (IndexError, ValueError):
        print(HELP)
        return True
    except queue.Empty:
        print("No answer from server")
        return True
    print("OK" if ok else f"Failed: {client.last_error.name if client.last_error is not None else 'no answer'}")
    return True


def main(argv=None):
    config = load_config('client')
    parser = argparse.ArgumentParser(description="Talk chat client")
    parser.add_argument("--host", default=config['host'], help="Server host")
    parser.add_argument("--port", type=int, default=config['port'], help="Server port")
    args = parser.parse_args(argv)

    client = ChatClient(args.host, args.port)
    client.on_message = print_message
    try:
        offered = client.connect()
    except OSError as e:
        logger.error(f"Failed to connect to server: {e}")
        return 1

    print(f"Connected. Your new account ID would be {offered}.")
    print(HELP)
    try:
        while client.connected:
            if not run_command(client, input("> ")):
                break
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        client.disconnect()
    return 0


if __name__ == '__main__':
    main()
