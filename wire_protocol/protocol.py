from enum import IntEnum
from dataclasses import dataclass, field, replace
from typing import ClassVar, Union

from shared.constants import ErrorCode, MAX_PASS_BYTE_LEN, NET_BUFF_SIZE, USER_ID_SIZE
from shared.models import Account, ChatMessage
from wire_protocol.entities import (ACCOUNT_MIN_SIZE, ERROR_CODE_SIZE, MESSAGE_MIN_SIZE,
                                    EntityCodec)
from wire_protocol.errors import EncodeOverflow, NotEnoughData, UnknownSignature


class CommType(IntEnum):
    # Session
    CONNECTED = 0
    DISCONNECTED = 1
    LOGIN = 2

    # Responses
    ACCEPTED = 3
    REJECTED = 4

    # Account operations
    ACCOUNT = 5
    CHANGE_PASSWORD = 6

    # Messaging
    MESSAGE = 7

    # Social graph operations
    ADD_INVITATION = 8
    REMOVE_INVITATION = 9
    ADD_FRIEND = 10
    REMOVE_FRIEND = 11


@dataclass(frozen=True)
class Connected:
    """Sent by the server to a socket that has not logged in yet, offering a fresh account ID."""
    user_id: int
    comm_type: ClassVar[CommType] = CommType.CONNECTED


@dataclass(frozen=True)
class Disconnected:
    """Sent by the client when it leaves."""
    user_id: int
    comm_type: ClassVar[CommType] = CommType.DISCONNECTED


@dataclass(frozen=True)
class Login:
    """Authenticate as an existing account or claim the offered ID as a new one."""
    user_id: int
    password: str = field(repr=False)
    comm_type: ClassVar[CommType] = CommType.LOGIN


@dataclass(frozen=True)
class Accepted:
    """Confirms a request, or acknowledges a delivered message."""
    comm_type: ClassVar[CommType] = CommType.ACCEPTED


@dataclass(frozen=True)
class Rejected:
    error: ErrorCode
    comm_type: ClassVar[CommType] = CommType.REJECTED


@dataclass(frozen=True)
class AccountInfo:
    """
    The logged in user's account. Only ever sent by the server, right after login.

    Holds its own copy of the account, so later changes to the account passed
    in do not show up here. Not hashable, as Account is mutable.
    """
    account: Account
    comm_type: ClassVar[CommType] = CommType.ACCOUNT
    __hash__ = None

    def __post_init__(self):
        copy = replace(self.account, friends=set(self.account.friends),
                       invitations=set(self.account.invitations))
        object.__setattr__(self, 'account', copy)


@dataclass(frozen=True)
class ChangePassword:
    new_password: str = field(repr=False)
    old_password: str = field(repr=False)
    comm_type: ClassVar[CommType] = CommType.CHANGE_PASSWORD


@dataclass(frozen=True)
class Message:
    """A chat message, client to server when sending and server to client when delivering."""
    message: ChatMessage
    comm_type: ClassVar[CommType] = CommType.MESSAGE


@dataclass(frozen=True)
class AddInvitation:
    user_id: int
    comm_type: ClassVar[CommType] = CommType.ADD_INVITATION


@dataclass(frozen=True)
class RemoveInvitation:
    user_id: int
    comm_type: ClassVar[CommType] = CommType.REMOVE_INVITATION


@dataclass(frozen=True)
class AddFriend:
    user_id: int
    comm_type: ClassVar[CommType] = CommType.ADD_FRIEND


@dataclass(frozen=True)
class RemoveFriend:
    user_id: int
    comm_type: ClassVar[CommType] = CommType.REMOVE_FRIEND


Comm = Union[Connected, Disconnected, Login, Accepted, Rejected, AccountInfo, ChangePassword,
             Message, AddInvitation, RemoveInvitation, AddFriend, RemoveFriend]

# Variants whose whole payload is a single account ID
ID_COMMS = {
    CommType.CONNECTED: Connected,
    CommType.DISCONNECTED: Disconnected,
    CommType.ADD_INVITATION: AddInvitation,
    CommType.REMOVE_INVITATION: RemoveInvitation,
    CommType.ADD_FRIEND: AddFriend,
    CommType.REMOVE_FRIEND: RemoveFriend,
}


class WireProtocol:
    """
    Wire Protocol Format:

    Every envelope fits in one NET_BUFF_SIZE (512 byte) buffer:
    - Tag (1 byte): CommType of the envelope
    - Payload: depends on the tag, starts at offset 1

    Payloads:
    - CONNECTED, DISCONNECTED, ADD/REMOVE_INVITATION, ADD/REMOVE_FRIEND:
      [user_id:8]
    - LOGIN: [user_id:8][password:30]
    - ACCEPTED: empty
    - REJECTED: [error_code:1]
    - ACCOUNT: account record, see entities.py
    - CHANGE_PASSWORD: [new_password:30][old_password:30]
    - MESSAGE: chat message record, see entities.py

    Integers are little-endian. Passwords are null padded regions.
    """

    TAG_SIZE = 1
    FRAME_SIZE = NET_BUFF_SIZE

    # Smallest buffer each variant can be read from or written to
    MIN_FRAME_SIZE = {
        CommType.CONNECTED: 1 + USER_ID_SIZE,
        CommType.DISCONNECTED: 1 + USER_ID_SIZE,
        CommType.LOGIN: 1 + USER_ID_SIZE + MAX_PASS_BYTE_LEN,
        CommType.ACCEPTED: 1,
        CommType.REJECTED: 1 + ERROR_CODE_SIZE,
        CommType.ACCOUNT: 1 + ACCOUNT_MIN_SIZE,
        CommType.CHANGE_PASSWORD: 1 + 2 * MAX_PASS_BYTE_LEN,
        CommType.MESSAGE: 1 + MESSAGE_MIN_SIZE,
        CommType.ADD_INVITATION: 1 + USER_ID_SIZE,
        CommType.REMOVE_INVITATION: 1 + USER_ID_SIZE,
        CommType.ADD_FRIEND: 1 + USER_ID_SIZE,
        CommType.REMOVE_FRIEND: 1 + USER_ID_SIZE,
    }

    @staticmethod
    def pack_payload(comm: Comm) -> bytes:
        """Pack the payload that follows the tag byte"""
        if isinstance(comm, (Connected, Disconnected, AddInvitation, RemoveInvitation,
                             AddFriend, RemoveFriend)):
            return EntityCodec.pack_id(comm.user_id)
        elif isinstance(comm, Login):
            return EntityCodec.pack_id(comm.user_id) + EntityCodec.pack_region(comm.password, MAX_PASS_BYTE_LEN)
        elif isinstance(comm, Accepted):
            return b''
        elif isinstance(comm, Rejected):
            return EntityCodec.pack_error(comm.error)
        elif isinstance(comm, AccountInfo):
            return EntityCodec.pack_account(comm.account)
        elif isinstance(comm, ChangePassword):
            return (EntityCodec.pack_region(comm.new_password, MAX_PASS_BYTE_LEN) +
                    EntityCodec.pack_region(comm.old_password, MAX_PASS_BYTE_LEN))
        elif isinstance(comm, Message):
            return EntityCodec.pack_message(comm.message)
        raise TypeError(f"{type(comm).__name__} is not a Comm variant")

    @staticmethod
    def encode(comm: Comm) -> bytes:
        """
        Encode an envelope into its frame, without trailing padding.

        Raises:
            EncodeOverflow: If a field exceeds its region or the frame
                exceeds NET_BUFF_SIZE
            MalformedString: If a string holds a null character
        """
        frame = bytes([comm.comm_type.value]) + WireProtocol.pack_payload(comm)
        if len(frame) > WireProtocol.FRAME_SIZE:
            raise EncodeOverflow(f"{comm.comm_type.name} needs {len(frame)} bytes, "
                                 f"the network buffer holds {WireProtocol.FRAME_SIZE}")
        return frame

    @staticmethod
    def encode_into(comm: Comm, buffer) -> int:
        """
        Write an envelope into a writable buffer and return the number of bytes written.

        The frame is built and measured first, so on failure the buffer is
        left untouched.

        Raises:
            NotEnoughData: If the buffer is smaller than the variant's fixed size
            EncodeOverflow: If the variable part (contacts, content) does not
                fit the buffer
        """
        minimum = WireProtocol.MIN_FRAME_SIZE[comm.comm_type]
        if len(buffer) < minimum:
            raise NotEnoughData(f"{comm.comm_type.name} needs at least {minimum} bytes, buffer has {len(buffer)}")
        frame = WireProtocol.encode(comm)
        if len(frame) > len(buffer):
            raise EncodeOverflow(f"{comm.comm_type.name} needs {len(frame)} bytes, buffer has {len(buffer)}")
        buffer[:len(frame)] = frame
        return len(frame)

    @staticmethod
    def pack_frame(comm: Comm) -> bytes:
        """Encode an envelope padded with zeros to exactly NET_BUFF_SIZE bytes"""
        return WireProtocol.encode(comm).ljust(WireProtocol.FRAME_SIZE, b'\x00')

    @staticmethod
    def decode(buffer) -> Comm:
        """
        Decode an envelope from a buffer.

        Raises:
            UnknownSignature: If the tag byte is not a CommType
            NotEnoughData: If the buffer is empty or shorter than the variant
            MalformedString: If a string region is not valid UTF-8
        """
        if len(buffer) < WireProtocol.TAG_SIZE:
            raise NotEnoughData("Empty buffer")

        tag = buffer[0]
        try:
            comm_type = CommType(tag)
        except ValueError:
            raise UnknownSignature(tag)

        minimum = WireProtocol.MIN_FRAME_SIZE[comm_type]
        if len(buffer) < minimum:
            raise NotEnoughData(f"{comm_type.name} needs at least {minimum} bytes, got {len(buffer)}")

        offset = WireProtocol.TAG_SIZE
        if comm_type in ID_COMMS:
            user_id, _ = EntityCodec.unpack_id(buffer, offset)
            return ID_COMMS[comm_type](user_id)

        elif comm_type == CommType.LOGIN:
            user_id, offset = EntityCodec.unpack_id(buffer, offset)
            password, _ = EntityCodec.unpack_region(buffer, offset, MAX_PASS_BYTE_LEN)
            return Login(user_id, password)

        elif comm_type == CommType.ACCEPTED:
            return Accepted()

        elif comm_type == CommType.REJECTED:
            error, _ = EntityCodec.unpack_error(buffer, offset)
            return Rejected(error)

        elif comm_type == CommType.ACCOUNT:
            account, _ = EntityCodec.unpack_account(buffer, offset)
            return AccountInfo(account)

        elif comm_type == CommType.CHANGE_PASSWORD:
            new_password, offset = EntityCodec.unpack_region(buffer, offset, MAX_PASS_BYTE_LEN)
            old_password, _ = EntityCodec.unpack_region(buffer, offset, MAX_PASS_BYTE_LEN)
            return ChangePassword(new_password, old_password)

        # CommType.MESSAGE is the only one left
        message, _ = EntityCodec.unpack_message(buffer, offset)
        return Message(message)
