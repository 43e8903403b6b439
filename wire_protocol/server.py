import argparse
import logging
import socket
import threading
from typing import Optional, Set

from shared.config import load_config
from wire_protocol.contract import AccountStore, ChatHub, MessageQueue, ServerSession
from wire_protocol.protocol import Comm, WireProtocol

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def recv_exact(sock: socket.socket, length: int) -> bytes:
    """Receive exactly length bytes. Returns b'' if the peer closed the connection first."""
    data = b""
    while len(data) < length:
        chunk = sock.recv(length - len(data))
        if not chunk:
            return b""
        data += chunk
    return data


class Connection:
    """A client socket plus the lock that keeps replies and pushed messages from interleaving."""

    def __init__(self, sock: socket.socket, address):
        self.sock = sock
        self.address = address
        self.send_lock = threading.Lock()

    def send(self, comm: Comm):
        frame = WireProtocol.pack_frame(comm)
        with self.send_lock:
            self.sock.sendall(frame)

    def push(self, comm: Comm):
        """Send from another client's thread; a dead socket is noticed by its own reader."""
        try:
            self.send(comm)
        except OSError as e:
            logger.warning(f"Failed to push {comm.comm_type.name} to {self.address}: {e}")


class ChatServer:
    def __init__(self, host: str = None, port: int = None,
                 store: Optional[AccountStore] = None, queue: Optional[MessageQueue] = None):
        config = load_config('server')
        self.host = host if host is not None else config['host']
        self.port = port if port is not None else config['port']
        self.hub = ChatHub(store, queue)
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.connections: Set[Connection] = set()
        self.lock = threading.Lock()
        self.running = False

    def bind(self):
        """Bind and listen. Port 0 picks a free port, which is then stored in self.port."""
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(5)
        self.port = self.server_socket.getsockname()[1]
        self.running = True

    def start(self):
        """Start the chat server and serve until stop() is called."""
        if not self.running:
            self.bind()
        logger.info(f"Server listening on {self.host}:{self.port}")

        while self.running:
            try:
                client_socket, address = self.server_socket.accept()
            except OSError:
                if self.running:
                    logger.exception("Failed to accept connection")
                break
            logger.info(f"New connection from {address}")
            threading.Thread(target=self.handle_client, args=(client_socket, address), daemon=True).start()

    def handle_client(self, client_socket: socket.socket, address):
        """Handle communication with a connected client."""
        client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        connection = Connection(client_socket, address)
        session = ServerSession(self.hub, push=connection.push)
        with self.lock:
            self.connections.add(connection)

        try:
            connection.send(session.greet())
            while not session.closed:
                frame = recv_exact(client_socket, WireProtocol.FRAME_SIZE)
                if not frame:
                    logger.info(f"Client {address} disconnected")
                    break
                for reply in session.handle_frame(frame):
                    connection.send(reply)
        except OSError as e:
            logger.error(f"Connection error with {address}: {e}")
        finally:
            session.close()
            with self.lock:
                self.connections.discard(connection)
            client_socket.close()
            logger.info(f"Closed connection from {address}")

    def stop(self):
        """Stop the server and close all connections."""
        self.running = False
        with self.lock:
            connections = list(self.connections)
        for connection in connections:
            try:
                connection.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            connection.sock.close()
        try:
            # Wakes up a thread blocked in accept()
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server_socket.close()


def main(argv=None):
    config = load_config('server')
    parser = argparse.ArgumentParser(description="Talk chat server")
    parser.add_argument("--host", default=config['host'], help="Address to listen on")
    parser.add_argument("--port", type=int, default=config['port'], help="Port to listen on")
    args = parser.parse_args(argv)

    server = ChatServer(args.host, args.port)
    try:
        server.start()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")
    finally:
        server.stop()


if __name__ == '__main__':
    main()
