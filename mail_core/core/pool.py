"""
Connection pool manager.

Keeps at most one authenticated MailboxSession (store + relay connection)
per mailbox owner and lends it to one operation at a time. Each owner has
its own lock, held from acquire() until release() or invalidate(), so:

- concurrent acquire() calls for an owner with no session wait for the one
  in-flight handshake instead of starting their own
- operations from different callers on one owner's session are serialized
- different owners never wait on each other

Idle sessions are closed by a background sweeper thread.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from mail_core import config
from mail_core.auth.credentials import CredentialVault, OAuthTokenRefresher
from mail_core.models import HealthState, MailboxSession
from mail_core.network.imap_client import ImapClient
from mail_core.network.smtp_client import SmtpClient
from mail_core.utils.errors import (
    AuthenticationError,
    InvalidArgument,
    MailConnectionError,
    MailServiceError,
)


logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], MailboxSession]


class MailboxConnector:
    """
    Creates authenticated sessions from the credential vault.

    Called by the pool with an owner id; refreshes an expiring OAuth token
    first, then logs in to the store and the relay.
    """

    def __init__(
        self,
        vault: CredentialVault,
        token_refresher: Optional[OAuthTokenRefresher] = None,
        imap_timeout: float = config.IMAP_TIMEOUT,
        smtp_timeout: float = config.SMTP_TIMEOUT,
        refresh_margin: float = config.TOKEN_REFRESH_MARGIN_SECONDS,
        store_factory: Callable = ImapClient,
        relay_factory: Callable = SmtpClient
    ):
        self.vault = vault
        self.token_refresher = token_refresher
        self.imap_timeout = imap_timeout
        self.smtp_timeout = smtp_timeout
        self.refresh_margin = refresh_margin
        self.store_factory = store_factory
        self.relay_factory = relay_factory

    def __call__(self, owner_id: str) -> MailboxSession:
        credentials = self.vault.get(owner_id)

        token_bundle = credentials.token_bundle
        if token_bundle and token_bundle.expires_within(self.refresh_margin):
            if self.token_refresher is None:
                raise AuthenticationError(f"Access token for {owner_id} expired and cannot be refreshed")
            logger.info("Refreshing access token for %s", owner_id)
            credentials.token_bundle = self.token_refresher.refresh(token_bundle)
            self.vault.update_token(owner_id, credentials.token_bundle)

        store = self.store_factory(credentials, timeout=self.imap_timeout)
        relay = self.relay_factory(credentials, timeout=self.smtp_timeout)
        store.login()
        try:
            relay.login()
        except MailServiceError:
            store.close()
            raise

        return MailboxSession(
            owner_id=owner_id,
            store=store,
            relay=relay,
            address=credentials.email_address,
            display_name=credentials.display_name,
        )


@dataclass(slots=True, eq=False)
class _OwnerSlot:
    lock: threading.Lock
    session: Optional[MailboxSession] = None
    leased: Optional[MailboxSession] = None


class ConnectionPool:
    """Owner-scoped pool of MailboxSessions."""

    def __init__(
        self,
        connector: SessionFactory,
        idle_timeout: float = config.SESSION_IDLE_TIMEOUT_SECONDS,
        sweep_interval: float = config.SESSION_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the pool.

        Args:
            connector: Callable creating an authenticated session for an owner.
            idle_timeout: Seconds of inactivity after which a session is closed.
            sweep_interval: Seconds between background idle sweeps.
            clock: Monotonic time source (injectable for tests).
        """
        self._connector = connector
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._slots: Dict[str, _OwnerSlot] = {}
        self._slots_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._closed = False

    def _slot(self, owner_id: str) -> _OwnerSlot:
        with self._slots_lock:
            slot = self._slots.get(owner_id)
            if slot is None:
                slot = _OwnerSlot(lock=threading.Lock())
                self._slots[owner_id] = slot
            return slot

    def acquire(self, owner_id: str, timeout: Optional[float] = None) -> MailboxSession:
        """
        Lend the owner's session, creating and authenticating one if none is
        pooled or the pooled one is degraded or closed.

        Blocks while another operation holds the owner's session. The caller
        must hand the session back with release() or invalidate().

        Args:
            owner_id: The mailbox owner.
            timeout: Optional seconds to wait for the owner's session.

        Raises:
            AuthenticationError: If the store or relay rejects the credentials.
            MailConnectionError: On network failure, a closed pool, or timeout.
        """
        if self._closed:
            raise MailConnectionError("Connection pool is closed")

        slot = self._slot(owner_id)
        if not slot.lock.acquire(timeout=-1 if timeout is None else timeout):
            raise MailConnectionError(f"Timed out waiting for the session of {owner_id}")

        try:
            session = slot.session
            if session is None or session.health is not HealthState.HEALTHY:
                if session is not None:
                    logger.info("Replacing %s session for %s", session.health.value, owner_id)
                    session.close()
                    slot.session = None
                session = self._connector(owner_id)
                slot.session = session
                logger.info("Created mailbox session for %s", owner_id)
            session.touch(self._clock())
            slot.leased = session
            return session
        except BaseException:
            slot.lock.release()
            raise

    def _leased_slot(self, session: MailboxSession) -> _OwnerSlot:
        with self._slots_lock:
            slot = self._slots.get(session.owner_id)
        if slot is None or slot.leased is not session:
            raise InvalidArgument(f"Session for {session.owner_id} is not currently leased")
        return slot

    def release(self, session: MailboxSession) -> None:
        """Return a leased session to the pool without closing it."""
        slot = self._leased_slot(session)
        session.touch(self._clock())
        slot.leased = None
        slot.lock.release()

    def invalidate(self, session: MailboxSession) -> None:
        """Close a leased session and remove it from the pool."""
        slot = self._leased_slot(session)
        session.close()
        if slot.session is session:
            slot.session = None
        slot.leased = None
        slot.lock.release()
        logger.info("Invalidated mailbox session for %s", session.owner_id)

    @contextmanager
    def session(self, owner_id: str) -> Iterator[MailboxSession]:
        """
        Lend the owner's session for the duration of a with-block.

        An AuthenticationError invalidates the session. A MailConnectionError
        marks it degraded, so the next acquire() replaces it. Any error is
        re-raised.
        """
        session = self.acquire(owner_id)
        try:
            yield session
        except AuthenticationError:
            self.invalidate(session)
            raise
        except MailConnectionError:
            session.mark_degraded()
            self.release(session)
            raise
        except BaseException:
            self.release(session)
            raise
        else:
            self.release(session)

    def has_session(self, owner_id: str) -> bool:
        with self._slots_lock:
            slot = self._slots.get(owner_id)
        return slot is not None and slot.session is not None

    def discard(self, owner_id: str) -> None:
        """Close and forget an owner's session (explicit logout)."""
        with self._slots_lock:
            slot = self._slots.get(owner_id)
        if slot is None:
            return
        with slot.lock:
            if slot.session is not None:
                slot.session.close()
                slot.session = None
                logger.info("Closed mailbox session for %s on logout", owner_id)

    def sweep_idle(self) -> int:
        """
        Close sessions idle longer than the idle timeout, and sessions that
        are no longer healthy. Sessions currently lent out are skipped.

        Returns:
            The number of sessions closed.
        """
        now = self._clock()
        with self._slots_lock:
            slots = list(self._slots.items())

        closed = 0
        for owner_id, slot in slots:
            if not slot.lock.acquire(blocking=False):
                continue
            try:
                session = slot.session
                if session is None:
                    continue
                if session.health is not HealthState.HEALTHY or now - session.last_activity >= self.idle_timeout:
                    session.close()
                    slot.session = None
                    closed += 1
                    logger.info("Closed idle mailbox session for %s", owner_id)
            finally:
                slot.lock.release()
        return closed

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep_idle()
            except Exception:
                logger.exception("Idle session sweep failed")

    def start_sweeper(self) -> None:
        """Start the background idle sweep thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="mail-session-sweeper", daemon=True)
        self._sweeper.start()
        logger.debug("Session sweeper started (interval=%ss, idle timeout=%ss)",
                     self.sweep_interval, self.idle_timeout)

    def stop_sweeper(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval + 1)
            self._sweeper = None

    def close_all(self) -> None:
        """Stop the sweeper and close every pooled session."""
        self.stop_sweeper()
        self._closed = True
        with self._slots_lock:
            slots = list(self._slots.items())
        for owner_id, slot in slots:
            session = slot.session
            if session is not None:
                if slot.leased is session:
                    logger.warning("Closing session for %s while it is in use", owner_id)
                session.close()
                slot.session = None
        logger.info("Connection pool closed (%d owner slot(s))", len(slots))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all()
        return False
