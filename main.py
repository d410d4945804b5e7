"""
Main FastAPI application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional
from datetime import datetime
import logging
import asyncio
import fcntl
import sys
import os
import atexit
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel

from voltex.config import Settings
from voltex.database import SessionLocal, init_db
from voltex.services.errors import TradingError
from voltex.services.execution import ExchangeCredentials, ExchangeId
from voltex.services.loss_monitor import LossMonitor
from voltex.services.session_manager import SessionManager
from voltex.services.strategies import STRATEGIES, SUPPORTED_PAIRS
from voltex.services.trade_journal import TradeJournal

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Initialize services
settings = Settings.from_env()
journal = TradeJournal(SessionLocal)
session_manager = SessionManager(settings, SessionLocal, journal=journal)
loss_monitor = LossMonitor(session_manager, settings)

# Scheduler for background tasks
scheduler = AsyncIOScheduler()


# Pydantic models for API
class ConnectRequest(BaseModel):
    exchange: str
    api_key: str
    secret: str
    passphrase: Optional[str] = None


class StartRequest(BaseModel):
    pair: str
    strategy: str


class PairRequest(BaseModel):
    pair: Optional[str] = None


# ── Lifespan ────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup → yield → shutdown."""
    logger.info("Starting Voltex martingale engine...")
    init_db()

    if settings.loss_monitor_enabled:
        scheduler.add_job(run_loss_monitor, 'interval',
                          seconds=settings.loss_monitor_interval_s, id='loss_monitor')
        scheduler.start()
        logger.info(f"Application started — loss monitor every {settings.loss_monitor_interval_s}s")
    else:
        logger.info("Application started — loss monitor disabled")

    yield

    logger.info("Shutting down...")
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(title="Voltex Profits - Martingale Engine", version="1.0.0", lifespan=lifespan)


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _validate_pair(pair: str) -> str:
    if pair not in SUPPORTED_PAIRS:
        raise HTTPException(status_code=400, detail=f"Invalid trading pair: {pair}")
    return pair


# ── Scheduled jobs ──────────────────────────────────────────────────────

async def run_loss_monitor():
    """Sweep active strategies for loss / take-profit triggers."""
    def _sync_check():
        try:
            return loss_monitor.check()
        except Exception as e:
            logger.error(f"Loss monitor error: {e}", exc_info=True)
            return None

    report = await asyncio.to_thread(_sync_check)
    if report and (report.losses or report.wins or report.errors):
        logger.info(
            f"Loss monitor — escalated {report.losses}, reset {report.wins}, errors {report.errors}"
        )


# API Endpoints

@app.get("/")
def read_root():
    return {
        "message": "Voltex Profits API is running!",
        "version": "1.0.0",
        "execution_mode": settings.execution_mode,
    }


@app.get("/api/health")
def health_check():
    """Check API and service health"""
    return {
        "status": "ok",
        "execution_mode": settings.execution_mode,
        "sessions": len(session_manager.sessions()),
        "loss_monitor": loss_monitor.health_check() if settings.loss_monitor_enabled else None,
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/api/strategies")
def get_strategies():
    """List available martingale strategies"""
    return [
        {
            "key": s.key,
            "name": s.name,
            "description": s.description,
            "style": s.style,
            "leverage": s.leverage,
            "capital_base_fraction": s.capital_base_fraction,
            "max_levels": s.max_levels,
            "multipliers": list(s.multipliers),
        }
        for s in STRATEGIES.values()
    ]


@app.post("/api/accounts/{account_id}/connect")
def connect_exchange(account_id: str, req: ConnectRequest):
    """Verify exchange credentials and bind a gateway session to the account"""
    try:
        exchange = ExchangeId(req.exchange.lower())
    except ValueError:
        supported = ", ".join(e.value for e in ExchangeId)
        raise HTTPException(status_code=400, detail=f"Invalid exchange. Supported: {supported}")
    if not req.api_key or not req.secret:
        raise HTTPException(status_code=400, detail="Exchange, API key, and secret are required")
    if exchange.requires_passphrase and not req.passphrase:
        raise HTTPException(status_code=400,
                            detail=f"Passphrase is required for {exchange.value.upper()} exchange")

    credentials = ExchangeCredentials(
        exchange=exchange,
        api_key=req.api_key,
        api_secret=req.secret,
        passphrase=req.passphrase,
    )
    account = session_manager.connect(account_id, credentials)
    return {
        "success": True,
        "exchange": account.exchange,
        "mode": account.mode,
        "balance": account.balance,
        "message": f"{exchange.value.upper()} connected successfully! Balance: ${account.balance:.2f}",
    }


@app.post("/api/accounts/{account_id}/start")
def start_trading(account_id: str, req: StartRequest):
    """Start a martingale strategy on a pair (places the level-1 order)"""
    pair = _validate_pair(req.pair)
    if req.strategy not in STRATEGIES:
        raise HTTPException(status_code=400,
                            detail=f"Invalid strategy. Use {' or '.join(STRATEGIES)}")

    session = session_manager.get(account_id)
    placement = session.engine.start(pair, req.strategy)
    session_manager.record_trading_state(account_id, active=True, pair=pair, strategy=req.strategy)

    return {
        "success": True,
        "exchange": session.exchange.value,
        **placement.to_dict(),
        "message": f"{STRATEGIES[req.strategy].name} strategy started for {pair} on {session.exchange.value.upper()}",
    }


@app.post("/api/accounts/{account_id}/advance")
def advance_ladder(account_id: str, req: PairRequest):
    """Explicit loss signal: escalate the pair's ladder one level"""
    if not req.pair:
        raise HTTPException(status_code=400, detail="Trading pair is required")
    session = session_manager.get(account_id)
    placement = session.engine.advance_on_loss(req.pair)
    return {"success": True, **placement.to_dict()}


@app.post("/api/accounts/{account_id}/stop")
def stop_trading(account_id: str, req: Optional[PairRequest] = None):
    """Stop one pair, or every strategy when no pair is given, closing positions"""
    session = session_manager.get(account_id)
    if req is not None and req.pair:
        result = session.engine.stop(req.pair)
    else:
        result = session.engine.stop_all()
    session_manager.record_trading_state(account_id, active=session.engine.is_trading())
    return result.to_dict()


@app.post("/api/accounts/{account_id}/emergency-stop")
def emergency_stop(account_id: str):
    """EMERGENCY: close all positions for the account immediately"""
    logger.warning(f"🚨 EMERGENCY STOP requested for account {account_id}")
    session = session_manager.get(account_id)
    result = session.engine.emergency_stop()
    session_manager.record_trading_state(account_id, active=False)
    return result.to_dict()


@app.get("/api/accounts/{account_id}/status")
def trading_status(account_id: str, pair: Optional[str] = None):
    """Trading flag, strategy state(s) and the persisted account record"""
    session = session_manager.get(account_id)
    engine = session.engine
    if pair:
        state = engine.status(pair)
        strategies = {pair: state.to_dict()} if state else {}
    else:
        strategies = {sym: st.to_dict() for sym, st in engine.status().items()}

    return {
        "success": True,
        "isTrading": engine.is_trading(),
        "exchange": session.exchange.value,
        "mode": session.gateway.mode,
        "strategies": strategies,
        "account": session_manager.account_record(account_id),
    }


@app.get("/api/accounts/{account_id}/balance")
def get_balance(account_id: str):
    session = session_manager.get(account_id)
    return {
        "success": True,
        "balance": session.engine.get_balance(),
        "currency": "USDT",
        "exchange": session.exchange.value,
    }


@app.get("/api/accounts/{account_id}/positions")
def get_positions(account_id: str):
    session = session_manager.get(account_id)
    positions = session.engine.get_positions()
    return {
        "success": True,
        "positions": [
            {
                "symbol": p.symbol,
                "side": p.side,
                "size": p.size,
                "entryPrice": p.entry_price,
                "markPrice": p.mark_price,
                "unrealizedPnl": p.unrealized_pnl,
                "leverage": p.leverage,
                "margin": p.margin,
                "liquidationPrice": p.liquidation_price,
            }
            for p in positions
        ],
    }


@app.get("/api/accounts/{account_id}/trades")
def get_trades(account_id: str, limit: int = 50):
    """Journal rows for the account, newest first"""
    limit = max(1, min(limit, 500))
    return {"success": True, "trades": journal.list_trades(account_id, limit=limit)}


_lock_file = None

def _acquire_instance_lock():
    """Ensure only ONE engine process runs at a time using an OS-level file lock.

    Strategy state is in-memory; two processes would each hold their own
    registry for the same accounts.
    """
    global _lock_file
    lock_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".server.lock")
    _lock_file = open(lock_path, "w")
    try:
        fcntl.flock(_lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        _lock_file.write(str(os.getpid()))
        _lock_file.flush()
        atexit.register(_release_instance_lock)
    except OSError:
        print(f"ERROR: Another server instance is already running. "
              f"Kill it first or delete {lock_path}")
        sys.exit(1)

def _release_instance_lock():
    global _lock_file
    if _lock_file:
        try:
            fcntl.flock(_lock_file, fcntl.LOCK_UN)
            _lock_file.close()
        except OSError:
            pass


if __name__ == "__main__":
    import uvicorn
    _acquire_instance_lock()
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
