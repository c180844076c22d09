"""
Inbox watcher for job notification emails.

One IMAP connection, two triggers for the same check:
- IDLE push (EXISTS/RECENT) when the server supports it
- the polling interval, which doubles as the IDLE timeout

A message is marked read only after its job was handled successfully, when it
is a known duplicate or a non-job mail, or when its retry budget is spent.
"""
from __future__ import annotations

import asyncio
import enum
import imaplib
import logging
import re
import select
import time
from dataclasses import dataclass
from datetime import datetime
from email import message_from_bytes
from email.header import decode_header, make_header
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.config import Settings
from core.dedup import ProcessedJobSet
from core.models import JobRecord
from core.subject_parser import is_non_job_subject, parse_subject

log = logging.getLogger("worker.mailbox")

RECONNECT_BASE_SECONDS = 5.0
RECONNECT_MAX_SECONDS = 60.0
IMAP_TIMEOUT_SECONDS = 30

JobHandler = Callable[[JobRecord], Awaitable[Mapping[str, Any]]]


def decode_subject(raw: Optional[str]) -> str:
    """Decode RFC 2047 words and unfold continuation lines into one line."""
    if not raw:
        return ""
    unfolded = re.sub(r"\r?\n[ \t]+", " ", raw)
    try:
        decoded = str(make_header(decode_header(unfolded)))
    except (UnicodeDecodeError, LookupError, ValueError):
        decoded = unfolded
    return " ".join(decoded.split())


@dataclass(frozen=True)
class MailMessage:
    uid: str
    subject: str
    received_at: Optional[datetime] = None


class ImapMailbox:
    """Blocking imaplib transport; every call runs in a worker thread."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[imaplib.IMAP4_SSL] = None
        self._idling = False

    def connect(self) -> None:
        conn = imaplib.IMAP4_SSL(self.settings.imap_host, self.settings.imap_port, timeout=IMAP_TIMEOUT_SECONDS)
        conn.login(self.settings.email_address, self.settings.email_password)
        status, _ = conn.select("INBOX")
        if status != "OK":
            conn.logout()
            raise imaplib.IMAP4.error("Cannot select INBOX")
        self._conn = conn

    @property
    def conn(self) -> imaplib.IMAP4_SSL:
        if self._conn is None:
            raise imaplib.IMAP4.abort("Mailbox is not connected")
        return self._conn

    @property
    def supports_idle(self) -> bool:
        return "IDLE" in self.conn.capabilities

    def search_unseen(self, sender_domain: str) -> List[str]:
        status, data = self.conn.uid("SEARCH", None, "UNSEEN", "FROM", f'"{sender_domain}"')
        if status != "OK":
            raise imaplib.IMAP4.error(f"UNSEEN search failed: {status}")
        return [uid.decode() for uid in (data[0] or b"").split()]

    def fetch_message(self, uid: str) -> MailMessage:
        status, data = self.conn.uid("FETCH", uid, "(INTERNALDATE BODY.PEEK[HEADER.FIELDS (SUBJECT)])")
        if status != "OK" or not data or not isinstance(data[0], tuple):
            raise imaplib.IMAP4.error(f"FETCH failed for uid {uid}")
        meta, header = data[0]
        subject = decode_subject(message_from_bytes(header).get("Subject"))

        received_at = None
        parsed = imaplib.Internaldate2tuple(meta)
        if parsed is not None:
            received_at = datetime.fromtimestamp(time.mktime(parsed))
        return MailMessage(uid=uid, subject=subject, received_at=received_at)

    def mark_read(self, uid: str) -> None:
        status, _ = self.conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"STORE \\Seen failed for uid {uid}")

    def wait_for_push(self, timeout: float) -> bool:
        """
        Block in IDLE for up to `timeout` seconds.
        True when the server reported new mail; False on timeout or without IDLE.
        """
        if not self.supports_idle:
            time.sleep(timeout)
            return False

        conn = self.conn
        tag = conn._new_tag()
        conn.send(tag + b" IDLE\r\n")
        if not conn.readline().startswith(b"+"):
            raise imaplib.IMAP4.error("Server refused IDLE")

        self._idling = True
        pushed = False
        deadline = time.monotonic() + timeout
        try:
            while not pushed:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._readable(remaining):
                    break
                line = conn.readline()
                if not line:
                    raise imaplib.IMAP4.abort("Connection closed during IDLE")
                pushed = b"EXISTS" in line or b"RECENT" in line
        finally:
            self._idling = False
            conn.send(b"DONE\r\n")
            while True:
                line = conn.readline()
                if not line:
                    raise imaplib.IMAP4.abort("Connection closed while leaving IDLE")
                if line.startswith(tag):
                    break
        return pushed

    def _readable(self, timeout: float) -> bool:
        sock = self.conn.socket()
        if sock.pending():
            return True
        ready, _, _ = select.select([sock], [], [], timeout)
        return bool(ready)

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            if self._idling:
                # LOGOUT would queue behind IDLE
                self._conn.shutdown()
            else:
                self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            log.debug("IMAP logout failed", extra={"error": str(e)})
        finally:
            self._conn = None


class WatcherState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CHECKING = "checking"


_TRANSITIONS = {
    WatcherState.DISCONNECTED: {WatcherState.CONNECTING},
    WatcherState.CONNECTING: {WatcherState.READY, WatcherState.DISCONNECTED},
    WatcherState.READY: {WatcherState.CHECKING, WatcherState.DISCONNECTED},
    WatcherState.CHECKING: {WatcherState.READY, WatcherState.DISCONNECTED},
}

_TRANSPORT_ERRORS = (imaplib.IMAP4.abort, OSError)


def handler_succeeded(result: Optional[Mapping[str, Any]]) -> bool:
    if not result:
        return False
    return bool((result.get("results") or {}).get("successful"))


class MailboxWatcher:
    def __init__(
        self,
        settings: Settings,
        processed: ProcessedJobSet,
        mailbox_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.settings = settings
        self.processed = processed
        self._factory = mailbox_factory or (lambda: ImapMailbox(settings))
        self._mailbox = None
        self._state = WatcherState.DISCONNECTED
        self._checking = False
        self._running = False
        self._retries: Dict[str, int] = {}
        self.reconnect_delay = RECONNECT_BASE_SECONDS
        self.last_check_at: Optional[datetime] = None

    # ------------------------------ state ------------------------------

    @property
    def state(self) -> WatcherState:
        return self._state

    def _set_state(self, new: WatcherState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal watcher transition {self._state.value} -> {new.value}")
        log.debug("Watcher state", extra={"from": self._state.value, "to": new.value})
        self._state = new

    def is_connected(self) -> bool:
        return self._state in (WatcherState.READY, WatcherState.CHECKING)

    def retry_count(self, uid: str) -> int:
        return self._retries.get(uid, 0)

    # ---------------------------- connection ---------------------------

    async def connect(self) -> bool:
        self._set_state(WatcherState.CONNECTING)
        mailbox = self._factory()
        try:
            await asyncio.to_thread(mailbox.connect)
        except (imaplib.IMAP4.error, OSError) as e:
            log.warning("IMAP connection failed", extra={"error": str(e), "host": self.settings.imap_host})
            self._set_state(WatcherState.DISCONNECTED)
            return False
        self._mailbox = mailbox
        self._set_state(WatcherState.READY)
        log.info("Connected to mailbox", extra={"host": self.settings.imap_host, "user": self.settings.email_address})
        return True

    async def reconnect(self) -> bool:
        """Connect with exponential backoff until it works or the watcher is stopped."""
        while self._running:
            if await self.connect():
                self.reconnect_delay = RECONNECT_BASE_SECONDS
                return True
            log.info("Reconnecting to mailbox", extra={"delay": self.reconnect_delay})
            await asyncio.sleep(self.reconnect_delay)
            self.reconnect_delay = min(self.reconnect_delay * 2, RECONNECT_MAX_SECONDS)
        return False

    async def _drop_connection(self) -> None:
        mailbox, self._mailbox = self._mailbox, None
        if self._state is not WatcherState.DISCONNECTED:
            self._set_state(WatcherState.DISCONNECTED)
        if mailbox is not None:
            await asyncio.to_thread(mailbox.close)

    # ------------------------------ check ------------------------------

    async def check_for_new_emails(self, handler: JobHandler) -> int:
        """Process every unseen mail from the job sender. Returns how many were marked read."""
        if self._checking:
            log.debug("Check already running, skipping trigger")
            return 0
        if self._state is not WatcherState.READY:
            log.warning("Mailbox not ready, skipping check", extra={"state": self._state.value})
            return 0

        self._checking = True
        self._set_state(WatcherState.CHECKING)
        marked = 0
        mailbox = self._mailbox
        try:
            uids = await asyncio.to_thread(mailbox.search_unseen, self.settings.sender_domain)
            # mail read elsewhere no longer needs a retry counter
            for stale in set(self._retries) - set(uids):
                del self._retries[stale]
            if uids:
                log.info("Unseen job mails", extra={"count": len(uids)})
            for uid in uids:
                if await self._process(mailbox, uid, handler):
                    await asyncio.to_thread(mailbox.mark_read, uid)
                    self._retries.pop(uid, None)
                    marked += 1
            if self._state is WatcherState.CHECKING:
                self._set_state(WatcherState.READY)
        except (imaplib.IMAP4.error, OSError) as e:
            log.warning("Mailbox connection lost during check", extra={"error": str(e)})
            await self._drop_connection()
        finally:
            self._checking = False
            self.last_check_at = datetime.now()
        return marked

    async def _process(self, mailbox, uid: str, handler: JobHandler) -> bool:
        """Returns True when the message should be marked read."""
        try:
            message = await asyncio.to_thread(mailbox.fetch_message, uid)
            log.info("Processing mail", extra={"uid": uid, "subject": message.subject[:150]})

            if is_non_job_subject(message.subject):
                log.info("Not a job mail, marking read", extra={"uid": uid})
                return True

            job = parse_subject(message.subject, message.received_at)
            if job is None:
                return self._spend_retry(uid, "Could not parse job details")

            if self.processed.has(job.key):
                log.info("Job already processed, skipping", extra={"job_key": job.key})
                return True

            result = await handler(job)
            if handler_succeeded(result):
                self.processed.add(job.key)
                return True
            if result and result.get("queued"):
                log.info("Job queued behind the running one", extra={"job_key": job.key})
                return False
            return self._spend_retry(uid, "Job handler reported failure")
        except _TRANSPORT_ERRORS:
            raise
        except Exception:
            log.exception("Error processing mail", extra={"uid": uid})
            return self._spend_retry(uid, "Processing raised")

    def _spend_retry(self, uid: str, reason: str) -> bool:
        attempts = self._retries.get(uid, 0) + 1
        if attempts >= self.settings.max_email_retries:
            log.warning(f"{reason}; retry budget spent, marking read", extra={"uid": uid, "attempts": attempts})
            return True
        self._retries[uid] = attempts
        log.info(f"{reason}; leaving unread", extra={"uid": uid, "attempts": attempts})
        return False

    # ------------------------------- loop ------------------------------

    async def run(self, handler: JobHandler) -> None:
        self._running = True
        log.info("Mailbox watcher started", extra={"poll_seconds": self.settings.poll_interval_seconds})
        while self._running:
            if not self.is_connected() and not await self.reconnect():
                break
            await self.check_for_new_emails(handler)
            if not self._running or self._mailbox is None:
                continue
            try:
                pushed = await asyncio.to_thread(self._mailbox.wait_for_push, self.settings.poll_interval_seconds)
            except (imaplib.IMAP4.error, OSError) as e:
                log.warning("IDLE wait failed", extra={"error": str(e)})
                await self._drop_connection()
                continue
            if pushed:
                log.info("New mail pushed by server")
        log.info("Mailbox watcher stopped")

    async def stop(self) -> None:
        self._running = False
        await self._drop_connection()
