"""
SessionManager — one gateway + engine per account.

Sessions are never shared between accounts: each account gets its own
ExchangeAdapter (its own credentials) and its own MartingaleEngine (its
own registry).  The persisted TradingAccount row only lets a session be
re-established after a restart; the new engine starts with an empty
registry, ladders are never resumed implicitly.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from voltex.config import Settings
from voltex.models.database import TradingAccount
from voltex.services.errors import NotConnected, SessionBusy
from voltex.services.execution import (
    ConnectedAccount,
    ExchangeAdapter,
    ExchangeCredentials,
    ExchangeId,
    build_exchange_adapter,
)
from voltex.services.martingale_engine import MartingaleEngine
from voltex.services.trade_journal import TradeJournal

logger = logging.getLogger(__name__)


@dataclass
class TradingSession:
    account_id: str
    exchange: ExchangeId
    gateway: ExchangeAdapter
    engine: MartingaleEngine
    connected_at: datetime = field(default_factory=datetime.utcnow)


class SessionManager:

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        journal: Optional[TradeJournal] = None,
        adapter_factory: Callable[[ExchangeId, Settings], ExchangeAdapter] = build_exchange_adapter,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._journal = journal
        self._adapter_factory = adapter_factory
        self._sessions: Dict[str, TradingSession] = {}
        self._lock = threading.Lock()
        self._account_locks: Dict[str, threading.Lock] = {}

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = self._account_locks[account_id] = threading.Lock()
            return lock

    # ── Connect / lookup ────────────────────────────────────────────────

    def connect(self, account_id: str, credentials: ExchangeCredentials) -> ConnectedAccount:
        """Build, verify and bind a gateway for ``account_id``.

        Reconnecting to the same exchange keeps the engine (and its
        registry); switching exchanges with tracked strategies is refused.
        """
        with self._account_lock(account_id):
            account = self._connect_locked(account_id, credentials)
        self._persist_connection(account_id, credentials)
        return account

    def _connect_locked(self, account_id: str, credentials: ExchangeCredentials) -> ConnectedAccount:
        with self._lock:
            existing = self._sessions.get(account_id)

        if existing is not None and existing.exchange != credentials.exchange \
                and len(existing.engine.status()) > 0:
            raise SessionBusy(
                f"Stop active strategies on {existing.exchange.value} "
                f"before switching to {credentials.exchange.value}"
            )

        engine = existing.engine if existing is not None else MartingaleEngine(
            account_id, journal=self._journal, settings=self._settings,
        )
        gateway = self._adapter_factory(credentials.exchange, self._settings)
        account = engine.connect_gateway(gateway, credentials)

        with self._lock:
            self._sessions[account_id] = TradingSession(
                account_id=account_id,
                exchange=credentials.exchange,
                gateway=gateway,
                engine=engine,
            )
        logger.info(f"✅ {credentials.exchange.value} connected for account {account_id}")
        return account

    def get(self, account_id: str) -> TradingSession:
        """Live session for ``account_id``, rehydrated from the DB if needed."""
        with self._lock:
            session = self._sessions.get(account_id)
        if session is not None:
            return session

        with self._account_lock(account_id):
            with self._lock:
                session = self._sessions.get(account_id)
            if session is not None:
                return session

            credentials = self._stored_credentials(account_id)
            if credentials is None:
                raise NotConnected(f"Exchange not connected for account {account_id}")
            logger.info(f"🔁 Rehydrating {credentials.exchange.value} session for account {account_id}")
            self._connect_locked(account_id, credentials)
            with self._lock:
                return self._sessions[account_id]

    def sessions(self) -> List[TradingSession]:
        with self._lock:
            return list(self._sessions.values())

    # ── Persistence ─────────────────────────────────────────────────────

    def _stored_credentials(self, account_id: str) -> Optional[ExchangeCredentials]:
        db = self._session_factory()
        try:
            row = db.query(TradingAccount).filter(TradingAccount.account_id == account_id).first()
            if row is None or not row.connected or not row.api_key or not row.exchange:
                return None
            return ExchangeCredentials(
                exchange=ExchangeId(row.exchange),
                api_key=row.api_key,
                api_secret=row.api_secret or "",
                passphrase=row.passphrase,
            )
        finally:
            db.close()

    def _persist_connection(self, account_id: str, credentials: ExchangeCredentials) -> None:
        db = self._session_factory()
        try:
            row = db.query(TradingAccount).filter(TradingAccount.account_id == account_id).first()
            if row is None:
                row = TradingAccount(account_id=account_id)
                db.add(row)
            row.exchange = credentials.exchange.value
            row.api_key = credentials.api_key
            row.api_secret = credentials.api_secret
            if credentials.exchange.requires_passphrase:
                row.passphrase = credentials.passphrase
            row.connected = True
            row.last_connected = datetime.utcnow()
            db.commit()
        finally:
            db.close()

    def record_trading_state(
        self,
        account_id: str,
        *,
        active: bool,
        pair: Optional[str] = None,
        strategy: Optional[str] = None,
    ) -> None:
        db = self._session_factory()
        try:
            row = db.query(TradingAccount).filter(TradingAccount.account_id == account_id).first()
            if row is None:
                return
            row.is_active = active
            if pair is not None:
                row.trading_pair = pair
            if strategy is not None:
                row.strategy = strategy
            row.last_trade_time = datetime.utcnow()
            db.commit()
        finally:
            db.close()

    def account_record(self, account_id: str) -> Optional[Dict]:
        db = self._session_factory()
        try:
            row = db.query(TradingAccount).filter(TradingAccount.account_id == account_id).first()
            if row is None:
                return None
            return {
                "exchange": row.exchange,
                "connected": bool(row.connected),
                "isActive": bool(row.is_active),
                "tradingPair": row.trading_pair,
                "strategy": row.strategy,
                "lastConnected": row.last_connected.isoformat() if row.last_connected else None,
                "lastTradeTime": row.last_trade_time.isoformat() if row.last_trade_time else None,
            }
        finally:
            db.close()
