"""Errors raised while reading or writing wire buffers. They are never transmitted."""


class SerializeError(ValueError):
    """Base class for every codec failure."""


class UnknownSignature(SerializeError):
    """An envelope tag or enum ordinal outside the defined range was read."""

    def __init__(self, signature: int):
        super().__init__(f"{signature} is not a valid signature")
        self.signature = signature


class NotEnoughData(SerializeError):
    """The buffer is too small to hold the data being read or written."""


class EncodeOverflow(SerializeError):
    """A value does not fit the wire capacity reserved for it."""


class MalformedString(SerializeError):
    """A string region is not valid UTF-8, or a value cannot be null terminated."""
