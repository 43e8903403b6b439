"""Entities transported between the talk client and server."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Set


def utc_now() -> datetime:
    """Current UTC time, truncated to the millisecond precision used on the wire."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


@dataclass
class Account:
    """
    A user's identity, credentials and social graph.

    An ID is never both a friend and a pending invitation. The methods below
    keep that true; they are not thread-safe, so the owner of an account must
    serialize mutations.
    """
    id: int
    password: str
    friends: Set[int] = field(default_factory=set)
    invitations: Set[int] = field(default_factory=set)

    def change_password(self, new_password: str, current_password: str) -> bool:
        """Replace the password if current_password matches. Returns whether it changed."""
        if self.password != current_password:
            return False
        self.password = new_password
        return True

    def has_friend(self, user_id: int) -> bool:
        return user_id in self.friends

    def has_invitation(self, user_id: int) -> bool:
        return user_id in self.invitations

    def add_invitation(self, user_id: int) -> bool:
        """Record a pending invitation from user_id unless it is already known."""
        if user_id in self.friends or user_id in self.invitations:
            return False
        self.invitations.add(user_id)
        return True

    def remove_invitation(self, user_id: int) -> bool:
        if user_id not in self.invitations:
            return False
        self.invitations.remove(user_id)
        return True

    def add_friend(self, user_id: int) -> bool:
        """Accept a pending invitation, moving user_id into friends."""
        if user_id not in self.invitations:
            return False
        self.invitations.remove(user_id)
        self.friends.add(user_id)
        return True

    def remove_friend(self, user_id: int) -> bool:
        if user_id not in self.friends:
            return False
        self.friends.remove(user_id)
        return True


@dataclass(frozen=True)
class ChatMessage:
    """
    A message from one account to another.

    Attributes:
        sender: Account ID of the author
        recipient: Account ID of the addressee
        content: UTF-8 text of the message
        sent_at: When the message was written (UTC)
    """
    sender: int
    recipient: int
    content: str
    sent_at: datetime = field(default_factory=utc_now)
