"""
TradeJournal — persists every order the engine submits.

Snapshot only: the engine never reads the journal back to rebuild ladder
state.  A journal write failure is logged and swallowed, because by the
time it runs the exchange has already acted; surfacing it as an order
failure would misreport what happened on the exchange.
"""
import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from voltex.models.database import Trade

logger = logging.getLogger(__name__)


class TradeJournal:

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _write(self, trade: Trade) -> Optional[int]:
        db = self._session_factory()
        try:
            db.add(trade)
            db.commit()
            return trade.id
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(f"Trade journal write failed for {trade.symbol}: {exc}")
            return None
        finally:
            db.close()

    def record_order(
        self, *,
        account_id: str,
        exchange: str,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        order_id: Optional[str],
        strategy: str,
        level: int,
        leverage: int,
        status: str = "filled",
        fees: float = 0.0,
        error: Optional[str] = None,
    ) -> Optional[int]:
        margin = quantity * price / leverage if leverage and price else 0.0
        return self._write(Trade(
            account_id=account_id,
            exchange=exchange,
            symbol=symbol,
            side=side,
            trade_type="open",
            quantity=quantity,
            price=price,
            order_id=order_id,
            strategy=strategy,
            martingale_level=level,
            status=status,
            leverage=leverage,
            margin=margin,
            fees=fees,
            error=error,
        ))

    def record_close(
        self, *,
        account_id: str,
        exchange: str,
        symbol: str,
        quantity: float,
        price: float,
        order_id: Optional[str],
        pnl: float,
        fees: float = 0.0,
        strategy: Optional[str] = None,
        level: Optional[int] = None,
    ) -> Optional[int]:
        return self._write(Trade(
            account_id=account_id,
            exchange=exchange,
            symbol=symbol,
            side="close",
            trade_type="close",
            quantity=quantity,
            price=price,
            order_id=order_id,
            strategy=strategy,
            martingale_level=level,
            status="closed",
            pnl=pnl,
            fees=fees,
        ))

    def list_trades(self, account_id: str, limit: int = 50) -> List[Dict]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Trade)
                .filter(Trade.account_id == account_id)
                .order_by(Trade.timestamp.desc(), Trade.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "id": t.id,
                    "symbol": t.symbol,
                    "side": t.side,
                    "trade_type": t.trade_type,
                    "quantity": t.quantity,
                    "price": t.price,
                    "order_id": t.order_id,
                    "exchange": t.exchange,
                    "strategy": t.strategy,
                    "martingale_level": t.martingale_level,
                    "status": t.status,
                    "leverage": t.leverage,
                    "margin": t.margin,
                    "pnl": t.pnl,
                    "fees": t.fees,
                    "error": t.error,
                    "timestamp": t.timestamp.isoformat() if t.timestamp else None,
                }
                for t in rows
            ]
        finally:
            db.close()
