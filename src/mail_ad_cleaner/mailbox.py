"""IMAP mailbox adapter.

One operation set over two mailbox models:

- ``FolderMailbox``: generic IMAP, a message lives in exactly one folder and
  filing it means moving it.
- ``LabelMailbox``: Gmail over IMAP, a message carries any number of labels
  (``X-GM-LABELS``) and is searched with Gmail's own query syntax
  (``X-GM-RAW``). Filing a message only tags it.

The variant is chosen once by ``create_mailbox()`` from the settings.
"""

from __future__ import annotations

import imaplib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email import message_from_bytes
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import Callable

from .config import PROVIDER_GMAIL, Settings
from .constants import (
    ALREADY_EXISTS_MARKERS,
    DEFAULT_IMAP_PORT,
    DELETED_FLAG,
    FETCH_HEADER_SECTION,
    FETCH_TEXT_SECTION,
    GMAIL_PREFIX,
    GMAIL_SYSTEM_MAILBOXES,
    INBOX,
    PROCESSED_LABEL,
    REQUIRED_LABEL_LOCATIONS,
)
from .errors import (
    DeletionError,
    LabelError,
    LocationError,
    MailboxConnectionError,
    MailboxError,
    NotConnectedError,
)
from .models import FetchCriteria, Message

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, int, bool], imaplib.IMAP4]

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$')
_MESSAGE_START_RE = re.compile(rb"^\d+ \(")
_LITERAL_SECTION_RE = re.compile(rb"BODY\[([^\]]*)\](?:<\d+>)? \{\d+\}$")
_UID_RE = re.compile(rb"\bUID (\d+)")
_FLAGS_RE = re.compile(rb"\bFLAGS \(([^)]*)\)")
_GM_LABELS_RE = re.compile(rb'\bX-GM-LABELS \(((?:[^()"]|"(?:[^"\\]|\\.)*")*)\)')
_ATOM_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|([^\s()]+)')


def _default_connection(host: str, port: int, tls: bool) -> imaplib.IMAP4:
    if tls:
        return imaplib.IMAP4_SSL(host, port)
    return imaplib.IMAP4(host, port)


def _quote(value: str) -> str:
    """Quote a mailbox name or search string for the IMAP wire."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def _imap_date(day: datetime) -> str:
    """RFC 3501 date (``18-Oct-2026``), independent of the process locale."""
    return f"{day.day:02d}-{_MONTHS[day.month - 1]}-{day.year}"


def _response_text(data) -> str:
    chunks = []
    for item in data or []:
        if isinstance(item, tuple):
            item = item[0]
        if isinstance(item, bytes):
            chunks.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            chunks.append(str(item))
    return " ".join(chunks).strip() or "no details from server"


def _is_already_exists(reason: str) -> bool:
    reason = reason.lower()
    return any(marker in reason for marker in ALREADY_EXISTS_MARKERS)


def _parse_list_entry(entry) -> tuple[str, str, str] | None:
    """Parse one LIST response line into (flags, delimiter, name)."""
    if isinstance(entry, tuple):
        # Name sent as a literal: (b'(\\HasNoChildren) "/" {12}', b'Odd "name"')
        head, literal = entry[0], entry[1]
        match = _LIST_RE.match(head.decode("utf-8", errors="replace"))
        if not match:
            return None
        name = literal.decode("utf-8", errors="replace")
    elif isinstance(entry, bytes):
        match = _LIST_RE.match(entry.decode("utf-8", errors="replace"))
        if not match:
            return None
        name = _unquote(match.group("name"))
    else:
        return None
    delimiter = match.group("delimiter")
    delimiter = "" if delimiter == "NIL" else _unquote(delimiter)
    return match.group("flags"), delimiter, name


def _decode_header_value(value: str | None) -> str:
    """Decode MIME-encoded header words (``=?UTF-8?B?...?=``)."""
    if not value:
        return ""
    fragments = []
    for fragment, encoding in decode_header(value):
        if isinstance(fragment, bytes):
            try:
                fragments.append(fragment.decode(encoding or "utf-8", errors="replace"))
            except LookupError:
                fragments.append(fragment.decode("utf-8", errors="replace"))
        else:
            fragments.append(fragment)
    return "".join(fragments).replace("\r\n", "").replace("\n", "").strip()


def _parse_date(value: str | None) -> datetime:
    """Parse a Date header; missing or unparsable dates count as now (age 0)."""
    now = datetime.now(timezone.utc)
    if not value:
        return now
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparsable Date header {value!r}, using now")
        return now
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decode_payload(part) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _extract_bodies(header: bytes, text: bytes) -> tuple[str, str]:
    """Rebuild the message from fetched headers + body and pull out plain and HTML text."""
    msg = message_from_bytes(header.rstrip(b"\r\n") + b"\r\n\r\n" + text)
    plain = ""
    html = ""
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart() or "attachment" in part.get("Content-Disposition", ""):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain += _decode_payload(part)
        elif content_type == "text/html":
            html += _decode_payload(part)
    return plain, html


@dataclass
class _FetchedParts:
    """Everything the server sent for one message in a FETCH response."""

    attributes: bytes = b""
    header: bytes = b""
    text: bytes = b""


def _accumulate_fetch(data) -> list[_FetchedParts]:
    """Group a raw ``UID FETCH`` response into one record per message.

    imaplib hands back a flat list mixing ``(prefix, literal)`` tuples and
    bare ``bytes`` continuations; a new message starts at ``<seq> (``.
    """
    messages: list[_FetchedParts] = []
    current: _FetchedParts | None = None
    for item in data or []:
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix, literal = item[0], item[1]
        else:
            prefix, literal = item, None
        if _MESSAGE_START_RE.match(prefix):
            current = _FetchedParts()
            messages.append(current)
        if current is None:
            continue
        current.attributes += prefix + b" "
        if literal is None:
            continue
        section = _LITERAL_SECTION_RE.search(prefix)
        name = section.group(1).upper() if section else b""
        if name.startswith(b"HEADER"):
            current.header = literal
        elif name == b"TEXT":
            current.text = literal
    return messages


def _parse_atoms(raw: bytes) -> list[str]:
    text = raw.decode("utf-8", errors="replace")
    atoms = []
    for quoted, bare in _ATOM_RE.findall(text):
        atoms.append(re.sub(r"\\(.)", r"\1", quoted) if quoted else bare)
    return atoms


class Mailbox:
    """Provider-agnostic mailbox session over a single IMAP connection.

    Not safe for concurrent use: callers issue one operation at a time.
    Subclasses supply the folder or label semantics.
    """

    location_kind = "folder"

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = DEFAULT_IMAP_PORT,
        tls: bool = True,
        connection_factory: ConnectionFactory | None = None,
    ):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.tls = tls
        self._connection_factory = connection_factory or _default_connection
        self._conn: imaplib.IMAP4 | None = None
        self._selected: str | None = None
        self._capabilities: frozenset[str] = frozenset()

    # === Session ===

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def connect(self) -> None:
        """Open and authenticate the session. No-op when already connected."""
        if self._conn is not None:
            return
        logger.info(f"Connecting to {self.host}:{self.port} as {self.user}")
        conn = None
        try:
            conn = self._connection_factory(self.host, self.port, self.tls)
            conn.login(self.user, self.password)
            capabilities = self._read_capabilities(conn)
        except (OSError, imaplib.IMAP4.error) as exc:
            if conn is not None:
                self._logout(conn)
            raise MailboxConnectionError(
                f"Could not connect to {self.host}:{self.port}: {exc}"
            ) from exc
        self._conn = conn
        self._selected = None
        self._capabilities = capabilities
        logger.info("IMAP connection ready")
        logger.debug(f"Server capabilities: {' '.join(sorted(capabilities))}")

    @staticmethod
    def _read_capabilities(conn: imaplib.IMAP4) -> frozenset[str]:
        """Capabilities as advertised after login.

        imaplib only records the pre-authentication list, which often lacks
        MOVE and UIDPLUS.
        """
        typ, data = conn.capability()
        if typ == "OK":
            words = b" ".join(item for item in data or [] if isinstance(item, bytes)).split()
            if words:
                return frozenset(word.decode("ascii", errors="replace").upper() for word in words)
        return frozenset(str(cap).upper() for cap in getattr(conn, "capabilities", ()) or ())

    def disconnect(self) -> None:
        """Close the session. No-op when not connected."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        self._selected = None
        self._logout(conn)
        logger.info("IMAP connection closed")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    @staticmethod
    def _logout(conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except (OSError, imaplib.IMAP4.error) as exc:
            logger.warning(f"IMAP logout failed: {exc}")

    def _call(self, error_cls: type[MailboxError], context: str, method: str, *args) -> list:
        """Run one IMAP command, mapping failures onto the adapter's exceptions."""
        if self._conn is None:
            raise NotConnectedError("Not connected to IMAP server")
        try:
            typ, data = getattr(self._conn, method)(*args)
        except imaplib.IMAP4.abort as exc:
            self._conn = None
            self._selected = None
            raise MailboxConnectionError(f"{context}: connection lost: {exc}") from exc
        except OSError as exc:
            self._conn = None
            self._selected = None
            raise MailboxConnectionError(f"{context}: connection lost: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise error_cls(f"{context} failed: {exc}") from exc
        if typ != "OK":
            raise error_cls(f"{context} failed: {_response_text(data)}")
        return data

    def _select(self, location: str, error_cls: type[MailboxError], force: bool = False) -> None:
        mailbox = self._mailbox_name(location)
        if not force and self._selected == mailbox:
            return
        self._selected = None
        self._call(error_cls, f"Opening {location!r}", "select", _quote(mailbox))
        self._selected = mailbox

    def _expunge(self, message_id: str, error_cls: type[MailboxError], context: str) -> None:
        if "UIDPLUS" in self._capabilities:
            self._call(error_cls, context, "uid", "EXPUNGE", message_id)
        else:
            self._call(error_cls, context, "expunge")

    # === Locations ===

    def _mailbox_name(self, location: str) -> str:
        """IMAP mailbox name for a location."""
        return "INBOX" if location.upper() == "INBOX" else location

    def _normalize_location(self, name: str, delimiter: str) -> str:
        name = name.strip()
        while name and (name.endswith("/") or (delimiter and name.endswith(delimiter))):
            name = name[:-1]
        return name

    def _complete_locations(self, names: list[str]) -> list[str]:
        return names

    def list_locations(self) -> list[str]:
        """Names of all selectable folders/labels, deduplicated and normalized."""
        data = self._call(LocationError, f"Listing {self.location_kind}s", "list")
        names: list[str] = []
        for entry in data or []:
            parsed = _parse_list_entry(entry)
            if parsed is None:
                continue
            flags, delimiter, raw_name = parsed
            if "\\noselect" in flags.lower():
                continue
            name = self._normalize_location(raw_name, delimiter)
            if name and name not in names:
                names.append(name)
        return self._complete_locations(names)

    def ensure_location_exists(self, name: str) -> None:
        """Create the folder/label unless it is already there."""
        if name in self.list_locations():
            logger.debug(f"{self.location_kind.capitalize()} {name!r} already exists")
            return
        try:
            self._call(LocationError, f"Creating {self.location_kind} {name!r}", "create",
                       _quote(self._mailbox_name(name)))
        except LocationError as exc:
            # Someone else created it between LIST and CREATE.
            if _is_already_exists(str(exc)):
                logger.info(f"{self.location_kind.capitalize()} {name!r} already exists")
                return
            raise
        logger.info(f"Created {self.location_kind} {name!r}")

    def delete_location(self, name: str) -> None:
        """Remove a folder/label. Messages in it are left to the server's rules."""
        mailbox = self._mailbox_name(name)
        if self._selected == mailbox:
            self._selected = None
        self._call(LocationError, f"Deleting {self.location_kind} {name!r}", "delete", _quote(mailbox))
        logger.info(f"Deleted {self.location_kind} {name!r}")

    # === Search & fetch ===

    def _search_keys(self, criteria: FetchCriteria) -> list[str]:
        raise NotImplementedError

    def _fetch_items(self) -> str:
        return f"(UID FLAGS {FETCH_HEADER_SECTION} {FETCH_TEXT_SECTION})"

    def _message_labels(self, parts: _FetchedParts) -> list[str]:
        match = _FLAGS_RE.search(parts.attributes)
        return _parse_atoms(match.group(1)) if match else []

    def search(self, criteria: FetchCriteria, location: str = INBOX) -> list[str]:
        """UIDs of the messages in ``location`` matching ``criteria``."""
        self._select(location, LocationError, force=True)
        keys = self._search_keys(criteria)
        logger.debug(f"Searching {location!r}: {' '.join(keys)}")
        data = self._call(MailboxError, f"Searching {location!r}", "uid", "SEARCH", *keys)
        uids: list[str] = []
        for chunk in data or []:
            if isinstance(chunk, bytes):
                uids.extend(uid.decode() for uid in chunk.split())
        return uids

    def fetch(self, criteria: FetchCriteria, location: str = INBOX) -> list[Message]:
        """Search, keep the newest ``batch_size`` UIDs, then pull headers, body and labels in one FETCH."""
        uids = self.search(criteria, location)
        if not uids:
            logger.info(f"No messages found in {location}")
            return []
        logger.info(f"Found {len(uids)} messages in {location}")
        # UIDs ascend with arrival.
        batch = sorted(uids, key=int)[-criteria.batch_size:]
        data = self._call(
            MailboxError,
            f"Fetching {len(batch)} messages from {location!r}",
            "uid",
            "FETCH",
            ",".join(batch),
            self._fetch_items(),
        )
        messages = []
        for parts in _accumulate_fetch(data):
            message = self._build_message(parts, location)
            if message is not None:
                messages.append(message)
        return messages

    def _build_message(self, parts: _FetchedParts, location: str) -> Message | None:
        uid = _UID_RE.search(parts.attributes)
        if not uid:
            logger.warning("Skipping FETCH response without a UID")
            return None
        headers = message_from_bytes(parts.header)
        plain, html = _extract_bodies(parts.header, parts.text)
        return Message(
            id=uid.group(1).decode(),
            subject=_decode_header_value(headers.get("Subject")),
            sender=_decode_header_value(headers.get("From")),
            recipient=_decode_header_value(headers.get("To")),
            date=_parse_date(headers.get("Date")),
            body=plain or parts.text.decode("utf-8", errors="replace"),
            text=plain,
            html=html,
            labels=self._message_labels(parts),
            location=location,
        )

    # === Filing & deletion ===

    def add_label(self, message_id: str, label: str, location: str = INBOX) -> None:
        raise NotImplementedError

    def move_to(self, message_id: str, destination: str, location: str = INBOX) -> None:
        raise NotImplementedError

    def delete_permanently(self, message_id: str, location: str) -> None:
        """Flag the message deleted, then expunge it. Not reversible.

        On ``DeletionError`` the message may still be present, flagged.
        """
        self._select(location, DeletionError)
        context = f"Deleting message {message_id} from {location!r}"
        self._call(DeletionError, context, "uid", "STORE", message_id, "+FLAGS", f"({DELETED_FLAG})")
        self._expunge(message_id, DeletionError, context)
        logger.debug(f"Deleted message {message_id} from {location}")


class FolderMailbox(Mailbox):
    """Generic IMAP: one folder per message, filing moves it."""

    location_kind = "folder"

    def _search_keys(self, criteria: FetchCriteria) -> list[str]:
        keys: list[str] = []
        if criteria.max_age_days:
            since = datetime.now() - timedelta(days=criteria.max_age_days)
            keys += ["SINCE", _imap_date(since)]
        if criteria.include_read and not criteria.include_unread:
            keys.append("SEEN")
        elif not criteria.include_read:
            keys.append("UNSEEN")
        return keys or ["ALL"]

    def add_label(self, message_id: str, label: str, location: str = INBOX) -> None:
        """Set ``label`` as an IMAP keyword flag on the message."""
        self._select(location, LabelError)
        self._call(LabelError, f"Flagging message {message_id} with {label!r}",
                   "uid", "STORE", message_id, "+FLAGS", f"({label})")

    def move_to(self, message_id: str, destination: str, location: str = INBOX) -> None:
        """Physically move the message, with COPY + delete when MOVE is unsupported."""
        self._select(location, LabelError)
        target = _quote(self._mailbox_name(destination))
        context = f"Moving message {message_id} to {destination!r}"
        if "MOVE" in self._capabilities:
            self._call(LabelError, context, "uid", "MOVE", message_id, target)
            return
        self._call(LabelError, context, "uid", "COPY", message_id, target)
        self._call(LabelError, context, "uid", "STORE", message_id, "+FLAGS", f"({DELETED_FLAG})")
        self._expunge(message_id, LabelError, context)


class LabelMailbox(Mailbox):
    """Gmail over IMAP: labels overlay messages that never move."""

    location_kind = "label"

    def _mailbox_name(self, location: str) -> str:
        if location.upper() == "INBOX":
            return "INBOX"
        return GMAIL_SYSTEM_MAILBOXES.get(location, location)

    def _normalize_location(self, name: str, delimiter: str) -> str:
        name = super()._normalize_location(name, delimiter)
        if name.upper() == "INBOX":
            return INBOX
        for label, mailbox in GMAIL_SYSTEM_MAILBOXES.items():
            if name == mailbox:
                return label
        if name.startswith(GMAIL_PREFIX):
            name = name[len(GMAIL_PREFIX):]
        return name

    def _complete_locations(self, names: list[str]) -> list[str]:
        # Downstream code treats a missing system label as an anomaly.
        return names + [name for name in REQUIRED_LABEL_LOCATIONS if name not in names]

    def _search_keys(self, criteria: FetchCriteria) -> list[str]:
        terms: list[str] = []
        if criteria.exclude_processed:
            terms.append(f"-label:{PROCESSED_LABEL}")
        if criteria.max_age_days:
            after = datetime.now() - timedelta(days=criteria.max_age_days)
            terms.append(f"after:{after:%Y/%m/%d}")
        if not terms:
            return ["ALL"]
        return ["X-GM-RAW", _quote(" ".join(terms))]

    def _fetch_items(self) -> str:
        return f"(UID FLAGS X-GM-LABELS {FETCH_HEADER_SECTION} {FETCH_TEXT_SECTION})"

    def _message_labels(self, parts: _FetchedParts) -> list[str]:
        match = _GM_LABELS_RE.search(parts.attributes)
        return _parse_atoms(match.group(1)) if match else []

    def add_label(self, message_id: str, label: str, location: str = INBOX) -> None:
        """Tag the message with a Gmail label."""
        self._select(location, LabelError)
        self._call(LabelError, f"Adding label {label!r} to message {message_id}",
                   "uid", "STORE", message_id, "+X-GM-LABELS", f"({_quote(label)})")

    def move_to(self, message_id: str, destination: str, location: str = INBOX) -> None:
        """Gmail messages are filed by tagging, never moved."""
        self.add_label(message_id, destination, location)


def create_mailbox(settings: Settings, connection_factory: ConnectionFactory | None = None) -> Mailbox:
    """Build the mailbox variant matching the configured provider."""
    cls = LabelMailbox if settings.provider == PROVIDER_GMAIL else FolderMailbox
    return cls(
        host=settings.imap_host,
        user=settings.email_user,
        password=settings.email_password,
        port=settings.imap_port,
        tls=settings.imap_tls,
        connection_factory=connection_factory,
    )
