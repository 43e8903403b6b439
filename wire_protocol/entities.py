"""
Byte layouts of the entities carried inside an envelope.

Layouts (all integers little-endian, whatever the host byte order):

    Account:     [id:8][password:30][friend_count:1][invitation_count:1]
                 [friend_id:8]*friend_count [invitation_id:8]*invitation_count
    ChatMessage: [from:8][to:8][sent_at:8][content:rest of buffer]
    ErrorCode:   [ordinal:1]

Strings live in regions. A password region is MAX_PASS_BYTE_LEN bytes, null
padded. Message content takes the rest of the buffer and ends at the first
null byte or at the end of the buffer.
"""

import struct
from datetime import datetime, timedelta, timezone
from typing import Iterable, Tuple

from shared.constants import ErrorCode, MAX_CONTACTS, MAX_PASS_BYTE_LEN, USER_ID_SIZE
from shared.models import Account, ChatMessage
from wire_protocol.errors import (EncodeOverflow, MalformedString, NotEnoughData,
                                  SerializeError, UnknownSignature)

ID_FORMAT = '<Q'
COUNTS_FORMAT = '<BB'
TIMESTAMP_FORMAT = '<Q'
TIMESTAMP_SIZE = struct.calcsize(TIMESTAMP_FORMAT)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MILLISECOND = timedelta(milliseconds=1)

# id + password region + both counts
ACCOUNT_MIN_SIZE = USER_ID_SIZE + MAX_PASS_BYTE_LEN + struct.calcsize(COUNTS_FORMAT)
# from + to + sent_at, content may be empty
MESSAGE_MIN_SIZE = 2 * USER_ID_SIZE + TIMESTAMP_SIZE
ERROR_CODE_SIZE = 1


class EntityCodec:
    """Packs entities into bytes and reads them back from a buffer.

    Every unpack_* method takes the buffer and an offset and returns the
    decoded value together with the offset just past it.
    """

    @staticmethod
    def _require(data: bytes, offset: int, size: int, what: str):
        if len(data) - offset < size:
            raise NotEnoughData(f"{what} needs {size} bytes, {max(len(data) - offset, 0)} available")

    @staticmethod
    def pack_id(user_id: int) -> bytes:
        """Pack an account ID as an 8-byte unsigned integer"""
        try:
            return struct.pack(ID_FORMAT, user_id)
        except struct.error as e:
            raise EncodeOverflow(f"Account ID {user_id!r} does not fit in {USER_ID_SIZE} bytes") from e

    @staticmethod
    def unpack_id(data: bytes, offset: int = 0) -> Tuple[int, int]:
        """Unpack an account ID and return it with the new offset"""
        EntityCodec._require(data, offset, USER_ID_SIZE, "Account ID")
        user_id = struct.unpack_from(ID_FORMAT, data, offset)[0]
        return user_id, offset + USER_ID_SIZE

    @staticmethod
    def encode_text(text: str) -> bytes:
        """UTF-8 bytes of a string that has to survive null termination."""
        if '\x00' in text:
            raise MalformedString("Strings sent on the wire cannot contain a null character")
        return text.encode('utf-8')

    @staticmethod
    def decode_text(raw: bytes) -> str:
        """Text up to the first null byte of a region."""
        raw = raw.split(b'\x00', 1)[0]
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedString(f"Region is not valid UTF-8: {e}") from e

    @staticmethod
    def pack_region(text: str, size: int) -> bytes:
        """Pack a string into a null padded region of exactly size bytes"""
        encoded = EntityCodec.encode_text(text)
        if len(encoded) > size:
            raise EncodeOverflow(f"String of {len(encoded)} bytes does not fit a {size} byte region")
        return encoded.ljust(size, b'\x00')

    @staticmethod
    def unpack_region(data: bytes, offset: int, size: int) -> Tuple[str, int]:
        """Unpack a null padded region, never reading past its end"""
        EntityCodec._require(data, offset, size, "String region")
        text = EntityCodec.decode_text(bytes(data[offset:offset + size]))
        return text, offset + size

    @staticmethod
    def pack_error(code: ErrorCode) -> bytes:
        """Pack an error code. UNKNOWN only stands in for unreadable codes on receipt, it is never sent."""
        try:
            code = ErrorCode(code)
        except ValueError:
            raise UnknownSignature(code)
        if code == ErrorCode.UNKNOWN:
            raise SerializeError("ErrorCode.UNKNOWN is a receive-side fallback and cannot be sent")
        return bytes([code.value])

    @staticmethod
    def unpack_error(data: bytes, offset: int = 0) -> Tuple[ErrorCode, int]:
        """Unpack an error code; ordinals past the enum are rejected, not coerced"""
        EntityCodec._require(data, offset, ERROR_CODE_SIZE, "Error code")
        ordinal = data[offset]
        try:
            code = ErrorCode(ordinal)
        except ValueError:
            raise UnknownSignature(ordinal)
        return code, offset + ERROR_CODE_SIZE

    @staticmethod
    def _pack_ids(ids: Iterable[int]) -> bytes:
        return b''.join(EntityCodec.pack_id(user_id) for user_id in sorted(ids))

    @staticmethod
    def pack_account(account: Account) -> bytes:
        """
        Pack an account record.

        Contact IDs are written in ascending order so the same account always
        produces the same bytes.

        Raises:
            EncodeOverflow: If the password does not fit its region or a
                contact set holds more IDs than a count byte can describe
        """
        for name, ids in (('friends', account.friends), ('invitations', account.invitations)):
            if len(ids) > MAX_CONTACTS:
                raise EncodeOverflow(f"Account {account.id} has {len(ids)} {name}, at most {MAX_CONTACTS} can be sent")

        result = bytearray()
        result.extend(EntityCodec.pack_id(account.id))
        result.extend(EntityCodec.pack_region(account.password, MAX_PASS_BYTE_LEN))
        result.extend(struct.pack(COUNTS_FORMAT, len(account.friends), len(account.invitations)))
        result.extend(EntityCodec._pack_ids(account.friends))
        result.extend(EntityCodec._pack_ids(account.invitations))
        return bytes(result)

    @staticmethod
    def unpack_account(data: bytes, offset: int = 0) -> Tuple[Account, int]:
        """
        Unpack an account record.

        Both counts are checked against the bytes left in the buffer before
        any contact ID is read.

        Raises:
            NotEnoughData: If the buffer ends before the record does
            SerializeError: If an ID is listed both as friend and invitation
        """
        EntityCodec._require(data, offset, ACCOUNT_MIN_SIZE, "Account")
        user_id, offset = EntityCodec.unpack_id(data, offset)
        password, offset = EntityCodec.unpack_region(data, offset, MAX_PASS_BYTE_LEN)
        friend_count, invitation_count = struct.unpack_from(COUNTS_FORMAT, data, offset)
        offset += struct.calcsize(COUNTS_FORMAT)

        EntityCodec._require(data, offset, (friend_count + invitation_count) * USER_ID_SIZE, "Contact list")
        friends = set()
        for _ in range(friend_count):
            contact_id, offset = EntityCodec.unpack_id(data, offset)
            friends.add(contact_id)
        invitations = set()
        for _ in range(invitation_count):
            contact_id, offset = EntityCodec.unpack_id(data, offset)
            invitations.add(contact_id)

        if friends & invitations:
            raise SerializeError(
                f"Account {user_id} lists {sorted(friends & invitations)} as both friend and invitation")

        return Account(user_id, password, friends, invitations), offset

    @staticmethod
    def pack_timestamp(sent_at: datetime) -> bytes:
        """Pack a time as unsigned milliseconds since the Unix epoch.

        Only times that decode back to an equal value are accepted: they must
        carry a timezone and have no precision below the millisecond.
        """
        if sent_at.tzinfo is None:
            raise EncodeOverflow(f"Timestamp {sent_at.isoformat()} has no timezone")
        if sent_at.microsecond % 1000:
            raise EncodeOverflow(f"Timestamp {sent_at.isoformat()} is finer than a millisecond")
        millis = (sent_at - EPOCH) // MILLISECOND
        try:
            return struct.pack(TIMESTAMP_FORMAT, millis)
        except struct.error as e:
            raise EncodeOverflow(f"Timestamp {sent_at.isoformat()} cannot be sent") from e

    @staticmethod
    def unpack_timestamp(data: bytes, offset: int = 0) -> Tuple[datetime, int]:
        EntityCodec._require(data, offset, TIMESTAMP_SIZE, "Timestamp")
        millis = struct.unpack_from(TIMESTAMP_FORMAT, data, offset)[0]
        try:
            sent_at = EPOCH + millis * MILLISECOND
        except OverflowError as e:
            raise SerializeError(f"Timestamp {millis} is out of range") from e
        return sent_at, offset + TIMESTAMP_SIZE

    @staticmethod
    def pack_message(message: ChatMessage) -> bytes:
        """Pack a chat message. Content is not padded, it runs to the end of the frame."""
        result = bytearray()
        result.extend(EntityCodec.pack_id(message.sender))
        result.extend(EntityCodec.pack_id(message.recipient))
        result.extend(EntityCodec.pack_timestamp(message.sent_at))
        result.extend(EntityCodec.encode_text(message.content))
        return bytes(result)

    @staticmethod
    def unpack_message(data: bytes, offset: int = 0) -> Tuple[ChatMessage, int]:
        """Unpack a chat message whose content fills the rest of the buffer"""
        EntityCodec._require(data, offset, MESSAGE_MIN_SIZE, "Message")
        sender, offset = EntityCodec.unpack_id(data, offset)
        recipient, offset = EntityCodec.unpack_id(data, offset)
        sent_at, offset = EntityCodec.unpack_timestamp(data, offset)
        content = EntityCodec.decode_text(bytes(data[offset:]))
        return ChatMessage(sender, recipient, content, sent_at), len(data)
