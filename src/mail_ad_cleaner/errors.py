"""Exceptions raised by the mailbox adapter and classification gateway."""


class MailboxError(Exception):
    """Base class for mailbox adapter failures."""


class MailboxConnectionError(MailboxError, ConnectionError):
    """Transport or authentication failure. Fatal to the run."""


class NotConnectedError(MailboxError):
    """A session operation was called before connect() succeeded."""


class LocationError(MailboxError):
    """Creating, deleting or opening a folder/label failed."""


class LabelError(MailboxError):
    """Applying a label, keyword or move to a message failed."""


class DeletionError(MailboxError):
    """Flagging or expunging a message failed.

    The message may be left flagged as deleted but not yet expunged.
    """


class ClassificationFailure(Exception):
    """The classifier reply was missing, malformed or the call failed.

    Never leaves the classification gateway.
    """
