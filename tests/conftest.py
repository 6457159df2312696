"""Shared fixtures for tests."""

from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Callable

import pytest

from mail_ad_cleaner.classifier import ClassificationGateway
from mail_ad_cleaner.errors import DeletionError, LabelError
from mail_ad_cleaner.mailbox import FolderMailbox, LabelMailbox
from mail_ad_cleaner.models import FetchCriteria, Message


# === Fake imaplib connection ===

class FakeImapConnection:
    """Stands in for imaplib.IMAP4: records commands, replays canned responses."""

    def __init__(self, capabilities=("IMAP4REV1", "UIDPLUS", "MOVE"), greeting_capabilities=("IMAP4REV1",)):
        # imaplib fills `capabilities` from the greeting; CAPABILITY reports the post-login set.
        self.capabilities = greeting_capabilities
        self.authenticated_capabilities = capabilities
        self.calls: list[tuple] = []
        self.responses: dict[str, tuple[str, list]] = {}
        self.errors: dict[str, Exception] = {}
        self.logged_out = False

    def _respond(self, key: str, *args):
        self.calls.append((key, *args))
        if key in self.errors:
            raise self.errors[key]
        return self.responses.get(key, ("OK", [None]))

    def commands(self) -> list[str]:
        return [call[0] for call in self.calls]

    def login(self, user, password):
        return self._respond("LOGIN", user, password)

    def capability(self):
        if "CAPABILITY" not in self.responses:
            self.responses["CAPABILITY"] = ("OK", [" ".join(self.authenticated_capabilities).encode()])
        return self._respond("CAPABILITY")

    def logout(self):
        self.logged_out = True
        return ("BYE", [b"Logging out"])

    def list(self):
        return self._respond("LIST")

    def create(self, mailbox):
        return self._respond("CREATE", mailbox)

    def delete(self, mailbox):
        return self._respond("DELETE", mailbox)

    def select(self, mailbox, readonly=False):
        return self._respond("SELECT", mailbox)

    def expunge(self):
        return self._respond("EXPUNGE")

    def uid(self, command, *args):
        return self._respond(f"UID {command.upper()}", *args)


@pytest.fixture
def fake_conn() -> FakeImapConnection:
    return FakeImapConnection()


@pytest.fixture
def folder_mailbox(fake_conn) -> FolderMailbox:
    return FolderMailbox(
        host="imap.example.com",
        user="user@example.com",
        password="secret",
        connection_factory=lambda host, port, tls: fake_conn,
    )


@pytest.fixture
def label_mailbox(fake_conn) -> LabelMailbox:
    return LabelMailbox(
        host="imap.gmail.com",
        user="user@gmail.com",
        password="app-password",
        connection_factory=lambda host, port, tls: fake_conn,
    )


def fetch_item(seq: int, uid: int, header: bytes, text: bytes, attrs: bytes = b"FLAGS ()") -> list:
    """One message as imaplib returns it from UID FETCH."""
    head = (
        f"{seq} (UID {uid} ".encode() + attrs
        + b" BODY[HEADER.FIELDS (FROM TO SUBJECT DATE CONTENT-TYPE CONTENT-TRANSFER-ENCODING)] {"
        + str(len(header)).encode() + b"}"
    )
    return [(head, header), (b" BODY[TEXT] {" + str(len(text)).encode() + b"}", text), b")"]


# === In-memory label-semantics mailbox ===

def make_message(
    msg_id: str,
    subject: str,
    sender: str,
    age_days: int = 1,
    body: str = "",
    labels: list[str] | None = None,
) -> Message:
    return Message(
        id=msg_id,
        subject=subject,
        sender=sender,
        date=datetime.now(timezone.utc) - timedelta(days=age_days, hours=1),
        body=body,
        labels=labels if labels is not None else ["Inbox"],
    )


class MemoryMailbox:
    """Gmail-like mailbox kept in memory: locations are labels on a message."""

    location_kind = "label"

    def __init__(self, messages: list[Message]):
        self.messages = {m.id: m for m in messages}
        self.locations = {"Inbox", "Sent", "Drafts", "Trash", "Spam"}
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.deleted: list[str] = []
        self.label_calls: list[tuple[str, str]] = []
        self.fail_labels: set[tuple[str, str]] = set()
        self.fail_deletes: set[str] = set()
        self.fetch_error: Exception | None = None

    def connect(self):
        self.connect_calls += 1

    def disconnect(self):
        self.disconnect_calls += 1

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def ensure_location_exists(self, name: str):
        self.locations.add(name)

    def list_locations(self):
        return sorted(self.locations)

    def fetch(self, criteria: FetchCriteria, location: str = "Inbox") -> list[Message]:
        if self.fetch_error is not None:
            raise self.fetch_error
        found = []
        for message in self.messages.values():
            if not message.has_label(location):
                continue
            if criteria.exclude_processed and message.has_label("Processed"):
                continue
            if criteria.max_age_days and message.age_in_days > criteria.max_age_days:
                continue
            found.append(copy.deepcopy(message))
        return found[: criteria.batch_size]

    def add_label(self, message_id: str, label: str, location: str = "Inbox"):
        self.label_calls.append((message_id, label))
        if (message_id, label) in self.fail_labels:
            raise LabelError(f"Adding label {label!r} to message {message_id} failed")
        message = self.messages[message_id]
        if label not in message.labels:
            message.labels.append(label)

    def move_to(self, message_id: str, destination: str, location: str = "Inbox"):
        self.add_label(message_id, destination, location)

    def delete_permanently(self, message_id: str, location: str):
        if message_id in self.fail_deletes:
            raise DeletionError(f"Deleting message {message_id} failed")
        self.deleted.append(message_id)
        del self.messages[message_id]

    def labels_of(self, message_id: str) -> set[str]:
        return set(self.messages[message_id].labels)


# === Fake OpenAI client ===

def completion(content: str | None):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, reply: Callable[[str], str | None]):
        self._reply = reply
        self.requests: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield so that a whole window is in flight at once.
            await asyncio.sleep(0)
            user_content = kwargs["messages"][-1]["content"]
            reply = self._reply(user_content)
            if isinstance(reply, Exception):
                raise reply
            return completion(reply)
        finally:
            self.in_flight -= 1


class FakeOpenAI:
    def __init__(self, reply: Callable[[str], str | None]):
        self.completions = FakeCompletions(reply)
        self.chat = SimpleNamespace(completions=self.completions)


def advertising_reply(content: str) -> str:
    """Scripted classifier: promotional subjects are advertising."""
    promotional = any(word in content for word in ("OFF", "Sale", "Deal"))
    if promotional:
        return json.dumps({"isAdvertising": True, "confidence": 0.95, "reason": "Promotional offer"})
    return json.dumps({"isAdvertising": False, "confidence": 0.9, "reason": "Personal correspondence"})


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI(advertising_reply)


@pytest.fixture
def gateway(fake_openai) -> ClassificationGateway:
    return ClassificationGateway(fake_openai, model="test-model", pacing_seconds=0)


@pytest.fixture
def ad_message() -> Message:
    return make_message(
        "101",
        "50% OFF - Limited Time Offer!",
        "marketing@store.com",
        body="We are excited to offer you 50% off all items. Click here to shop now!",
    )


@pytest.fixture
def personal_message() -> Message:
    return make_message(
        "102",
        "Meeting Tomorrow at 2 PM",
        "colleague@company.com",
        body="Just a reminder about our team meeting tomorrow at 2 PM.",
    )
