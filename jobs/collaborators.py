"""
collaborators.py
-----------------
Contracts for the systems the batch controller talks to, plus reference
implementations.

    MessageSource: search(query, max_results) -> ordered message ids
                   fetch(message_id)          -> InboundMessage
    RecordStore:   upsert_email_record / create_transaction / create_subscription,
                   each idempotent under retry for the same inputs.

The search order must be stable for a given query: cursor-based resumption
indexes into it.
"""

import base64
import json
import logging
import os
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Tuple

from core.exceptions import MessageSourceNotConnectedError, ProcessingFailure
from core.models import ErrorType, InboundMessage, as_aware, from_iso
from jobs.models import SearchQuery

logger = logging.getLogger(__name__)


_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"[ \t\r\f\v]+")
_SNIPPET_LENGTH = 200


# =============================================================================
# MESSAGE SOURCE
# =============================================================================

class MessageSource(ABC):
    """A mailbox the controller can search and fetch from."""

    @abstractmethod
    def search(self, query: SearchQuery, max_results: int) -> List[str]:
        """Returns up to `max_results` message ids in a stable order."""
        ...

    @abstractmethod
    def fetch(self, message_id: str) -> InboundMessage:
        """
        Raises:
            ProcessingFailure: If the message cannot be fetched.
        """
        ...


def extract_body(payload: Dict[str, Any]) -> str:
    """
    Decodes a provider-style MIME payload (base64url part bodies).

    Prefers text/plain anywhere in the part tree, then tag-stripped
    text/html. Returns "" when neither is present.
    """
    plain_text, html_text = "", ""

    def walk(part: Dict[str, Any]) -> None:
        nonlocal plain_text, html_text
        data = (part.get("body") or {}).get("data")
        if data:
            decoded = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="ignore")
            mime_type = part.get("mimeType", "")
            if mime_type == "text/html":
                html_text = html_text or decoded
            else:
                plain_text = plain_text or decoded
        for child in part.get("parts") or []:
            walk(child)

    walk(payload)
    if plain_text:
        return plain_text
    return _WHITESPACE.sub(" ", _HTML_TAG.sub(" ", html_text)).strip()


_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(message: InboundMessage) -> Tuple[datetime, str]:
    return (as_aware(message.received_at) or _EARLIEST, message.id)


def _in_window(message: InboundMessage, query: SearchQuery) -> bool:
    if query.start is None and query.end is None:
        return True
    received_at = as_aware(message.received_at)
    if received_at is None:
        return False
    if query.start is not None and received_at < as_aware(query.start):
        return False
    if query.end is not None and received_at > as_aware(query.end):
        return False
    return True


class InMemoryMessageSource(MessageSource):
    """
    Holds messages in memory. Search order is (received_at, id), oldest first.

    `fail_fetch` maps message ids to the ErrorType their fetch raises, for
    exercising per-message failure paths.
    """

    def __init__(self, messages: List[InboundMessage], fail_fetch: Dict[str, ErrorType] | None = None):
        self._messages: Dict[str, InboundMessage] = {m.id: m for m in messages}
        self.fail_fetch = dict(fail_fetch or {})
        self.search_calls = 0
        self.fetch_calls = 0

    def search(self, query: SearchQuery, max_results: int) -> List[str]:
        self.search_calls += 1
        matching = sorted((m for m in self._messages.values() if _in_window(m, query)), key=_sort_key)
        return [m.id for m in matching[:max_results]]

    def all_messages(self) -> List[InboundMessage]:
        """Every held message, in search order."""
        return sorted(self._messages.values(), key=_sort_key)

    def fetch(self, message_id: str) -> InboundMessage:
        self.fetch_calls += 1
        if message_id in self.fail_fetch:
            raise ProcessingFailure(f"Fetch failed for message {message_id}", self.fail_fetch[message_id])
        message = self._messages.get(message_id)
        if message is None:
            raise ProcessingFailure(f"Message not found: {message_id}", ErrorType.UPSTREAM_API_ERROR)
        return message


class JsonMessageSource(InMemoryMessageSource):
    """
    Reads an exported mailbox: a JSON list of objects with id, subject,
    sender, received_at (ISO 8601) and either `body` or a MIME `payload`.
    """

    def __init__(self, path: str):
        with open(path, "r", encoding="utf-8") as f:
            rows = json.load(f)
        super().__init__([self._to_message(row) for row in rows])
        self.path = path
        logger.info(f"Loaded {len(rows):,} messages from {path}")

    @staticmethod
    def _to_message(row: Dict[str, Any]) -> InboundMessage:
        snippet = row.get("snippet", "")
        body = row.get("body")
        if body is None and row.get("payload"):
            body = extract_body(row["payload"])
        body = body or snippet[:_SNIPPET_LENGTH]
        return InboundMessage(
            id=str(row["id"]),
            subject=row.get("subject", ""),
            sender=row.get("sender") or row.get("from", ""),
            received_at=from_iso(row.get("received_at")),
            body=body,
            snippet=snippet,
        )


SourceResolver = Callable[[str], MessageSource | None]


def resolve_source(resolver: SourceResolver, user_id: str) -> MessageSource:
    """
    Raises:
        MessageSourceNotConnectedError: If the user has no connected source.
    """
    source = resolver(user_id)
    if source is None:
        raise MessageSourceNotConnectedError(user_id)
    return source


# =============================================================================
# RECORD STORE
# =============================================================================

class RecordStore(ABC):
    """Persistence for extracted records."""

    @abstractmethod
    def upsert_email_record(self, account_id: str, message_id: str, fields: Dict[str, Any]) -> str:
        """Keyed by (account_id, message_id). Returns the email record id."""
        ...

    @abstractmethod
    def create_transaction(self, fields: Dict[str, Any]) -> str:
        """Keyed by fields["email_record_id"]. Returns the transaction id."""
        ...

    @abstractmethod
    def create_subscription(self, fields: Dict[str, Any]) -> str:
        """Deduped by (user_id, service_name, amount). Returns the subscription id."""
        ...


def _subscription_key(fields: Dict[str, Any]) -> Tuple[str, str, Decimal]:
    return (fields["user_id"], fields["service_name"], Decimal(str(fields["amount"])))


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe reference store. `writes` counts calls that created a new
    row, so tests can assert that retries and duplicate triggers wrote
    nothing twice.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.email_records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[Tuple[str, str, Decimal], Dict[str, Any]] = {}
        self.writes = {"email_records": 0, "transactions": 0, "subscriptions": 0}

    def upsert_email_record(self, account_id: str, message_id: str, fields: Dict[str, Any]) -> str:
        key = (account_id, message_id)
        with self._lock:
            existing = self.email_records.get(key)
            if existing is not None:
                existing.update(fields)
                return existing["id"]
            record = {"id": str(uuid.uuid4()), "account_id": account_id, "message_id": message_id, **fields}
            self.email_records[key] = record
            self.writes["email_records"] += 1
            return record["id"]

    def create_transaction(self, fields: Dict[str, Any]) -> str:
        key = fields["email_record_id"]
        with self._lock:
            existing = self.transactions.get(key)
            if existing is not None:
                return existing["id"]
            row = {"id": str(uuid.uuid4()), **fields}
            self.transactions[key] = row
            self.writes["transactions"] += 1
            return row["id"]

    def create_subscription(self, fields: Dict[str, Any]) -> str:
        key = _subscription_key(fields)
        with self._lock:
            existing = self.subscriptions.get(key)
            if existing is not None:
                return existing["id"]
            row = {"id": str(uuid.uuid4()), **fields}
            self.subscriptions[key] = row
            self.writes["subscriptions"] += 1
            return row["id"]


class FileRecordStore(InMemoryRecordStore):
    """
    JSON-file record store for the CLI, so auto-saved records and their
    dedupe keys survive between invocations.

    Same keys as the in-memory store. The file is rewritten through a temp
    file and os.replace after every call. The lock is per process.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if os.path.exists(path):
            self._load()

    def upsert_email_record(self, account_id: str, message_id: str, fields: Dict[str, Any]) -> str:
        record_id = super().upsert_email_record(account_id, message_id, fields)
        self._flush()
        return record_id

    def create_transaction(self, fields: Dict[str, Any]) -> str:
        transaction_id = super().create_transaction(fields)
        self._flush()
        return transaction_id

    def create_subscription(self, fields: Dict[str, Any]) -> str:
        subscription_id = super().create_subscription(fields)
        self._flush()
        return subscription_id

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for row in data.get("email_records", []):
            self.email_records[(row["account_id"], row["message_id"])] = row
        for row in data.get("transactions", []):
            self.transactions[row["email_record_id"]] = row
        for row in data.get("subscriptions", []):
            self.subscriptions[_subscription_key(row)] = row
        logger.info(
            f"Loaded {len(self.email_records):,} email records, {len(self.transactions):,} transactions "
            f"and {len(self.subscriptions):,} subscriptions from {self.path}"
        )

    def _flush(self) -> None:
        with self._lock:
            data = {
                "email_records": list(self.email_records.values()),
                "transactions": list(self.transactions.values()),
                "subscriptions": list(self.subscriptions.values()),
            }
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, self.path)
