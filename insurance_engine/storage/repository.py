"""
Persistence for contracts, state logs, pairs and entity locks.

ORM models live here so Base.metadata holds every table once this module is
imported. SqlContractStore maps rows to domain dataclasses; callers never see
ORM objects.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func

from insurance_engine.domain.models import (
    Contract,
    ContractState,
    InvalidReason,
    Pair,
    PeriodUnit,
    QuoteUnit,
    Side,
    StateLogEntry,
)
from insurance_engine.exceptions import ContractNotFound
from insurance_engine.storage.db import Base, Database

PRICE = Numeric(precision=28, scale=8)

_DERIVED_COLUMNS = (
    "p_open", "p_liquidation", "q_claim", "p_refund", "p_cancel",
    "leverage", "hedge", "system_capital",
)


# ORM Models
class ContractModel(Base):
    """ORM model for insurance contracts."""
    __tablename__ = "contracts"
    __table_args__ = (
        Index('idx_contract_state', 'state'),
        Index('idx_contract_user_created', 'user_id', 'created_at'),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    wallet_address = Column(String, nullable=False)
    asset = Column(String, nullable=False)
    unit = Column(String, nullable=False)

    margin = Column(PRICE, nullable=False)
    q_covered = Column(PRICE, nullable=False)
    p_claim = Column(PRICE, nullable=False)
    period = Column(Integer, nullable=False)
    period_unit = Column(String, nullable=False)
    period_change_ratio = Column(PRICE, nullable=False)

    side = Column(String, nullable=False)
    state = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    invalid_reason = Column(String, nullable=True)
    tx_hash = Column(String, nullable=True)
    p_close = Column(PRICE, nullable=True)

    p_open = Column(PRICE, nullable=True)
    p_liquidation = Column(PRICE, nullable=True)
    q_claim = Column(PRICE, nullable=True)
    p_refund = Column(PRICE, nullable=True)
    p_cancel = Column(PRICE, nullable=True)
    leverage = Column(PRICE, nullable=True)
    hedge = Column(PRICE, nullable=True)
    system_capital = Column(PRICE, nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)


class ContractStateLogModel(Base):
    """Append-only transition log, one row per transition."""
    __tablename__ = "contract_state_logs"
    __table_args__ = (
        Index('idx_state_log_contract', 'contract_id', 'seq'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    state = Column(String, nullable=False)
    time = Column(DateTime(timezone=True), nullable=False)
    tx_hash = Column(String, nullable=True)
    error = Column(String, nullable=True)


class PairModel(Base):
    """Tradable pair and its change-ratio tables (decimal strings)."""
    __tablename__ = "pairs"

    symbol = Column(String, primary_key=True)
    asset = Column(String, nullable=False)
    unit = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_maintain = Column(Boolean, nullable=False, default=False)
    day_change_ratios = Column(JSON, nullable=False, default=list)
    hour_change_ratios = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class EntityLockModel(Base):
    """Advisory lock rows for SqlLockRegistry."""
    __tablename__ = "entity_locks"

    key = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _to_log_entry(model: ContractStateLogModel) -> StateLogEntry:
    return StateLogEntry(
        state=ContractState(model.state),
        time=_utc(model.time),
        tx_hash=model.tx_hash,
        error=model.error,
    )


def _to_contract(model: ContractModel, logs: List[ContractStateLogModel]) -> Contract:
    contract = Contract(
        id=model.id,
        user_id=model.user_id,
        wallet_address=model.wallet_address,
        asset=model.asset,
        unit=QuoteUnit(model.unit),
        margin=_dec(model.margin),
        q_covered=_dec(model.q_covered),
        p_claim=_dec(model.p_claim),
        period=model.period,
        period_unit=PeriodUnit(model.period_unit),
        period_change_ratio=_dec(model.period_change_ratio),
        side=Side(model.side),
        state=ContractState(model.state),
        created_at=_utc(model.created_at),
        updated_at=_utc(model.updated_at),
        closed_at=_utc(model.closed_at),
        invalid_reason=InvalidReason(model.invalid_reason) if model.invalid_reason else None,
        tx_hash=model.tx_hash,
        p_close=_dec(model.p_close),
        expired_at=_utc(model.expired_at),
        state_logs=[_to_log_entry(log) for log in logs],
    )
    for name in _DERIVED_COLUMNS:
        setattr(contract, name, _dec(getattr(model, name)))
    return contract


def _to_pair(model: PairModel) -> Pair:
    return Pair(
        symbol=model.symbol,
        asset=model.asset,
        unit=QuoteUnit(model.unit),
        is_active=model.is_active,
        is_maintain=model.is_maintain,
        day_change_ratios=[Decimal(str(r)) for r in (model.day_change_ratios or [])],
        hour_change_ratios=[Decimal(str(r)) for r in (model.hour_change_ratios or [])],
    )


class SqlContractStore:
    """SQLAlchemy-backed ContractStore."""

    def __init__(self, db: Database):
        self.db = db

    def _load(self, session, model: ContractModel) -> Contract:
        logs = session.query(ContractStateLogModel).filter(
            ContractStateLogModel.contract_id == model.id
        ).order_by(ContractStateLogModel.seq).all()
        return _to_contract(model, logs)

    # ----- contracts -----

    def create(self, contract: Contract) -> Contract:
        now = datetime.now(timezone.utc)
        with self.db.get_session() as session:
            model = ContractModel(
                id=contract.id,
                user_id=contract.user_id,
                wallet_address=contract.wallet_address.lower(),
                asset=contract.asset,
                unit=contract.unit.value,
                margin=contract.margin,
                q_covered=contract.q_covered,
                p_claim=contract.p_claim,
                period=contract.period,
                period_unit=contract.period_unit.value,
                period_change_ratio=contract.period_change_ratio,
                side=contract.side.value,
                state=contract.state.value,
                created_at=contract.created_at or now,
                updated_at=contract.updated_at or now,
                closed_at=contract.closed_at,
                invalid_reason=_column_value(contract.invalid_reason),
                tx_hash=contract.tx_hash,
                p_close=contract.p_close,
                expired_at=contract.expired_at,
            )
            for name in _DERIVED_COLUMNS:
                setattr(model, name, getattr(contract, name))
            session.add(model)
            for seq, entry in enumerate(contract.state_logs, start=1):
                session.add(self._log_model(contract.id, seq, entry))
            session.flush()
            return self._load(session, model)

    def get(self, contract_id: str) -> Optional[Contract]:
        with self.db.get_session() as session:
            model = session.get(ContractModel, contract_id)
            return self._load(session, model) if model else None

    def get_for_user(self, user_id: str, contract_id: str) -> Optional[Contract]:
        with self.db.get_session() as session:
            model = session.query(ContractModel).filter(
                ContractModel.id == contract_id,
                ContractModel.user_id == user_id,
            ).first()
            return self._load(session, model) if model else None

    def list_by_state(self, state: ContractState) -> List[Contract]:
        with self.db.get_session() as session:
            models = session.query(ContractModel).filter(
                ContractModel.state == state.value
            ).order_by(ContractModel.created_at).all()
            return [self._load(session, m) for m in models]

    def update_fields(self, contract_id: str, **fields: Any) -> Contract:
        """Atomic single-row update; updated_at is always refreshed."""
        if "state_logs" in fields or "id" in fields:
            raise ValueError("update_fields cannot change id or state_logs")

        with self.db.get_session() as session:
            model = session.get(ContractModel, contract_id)
            if model is None:
                raise ContractNotFound(f"Contract {contract_id} not found")
            for name, value in fields.items():
                if not hasattr(ContractModel, name):
                    raise ValueError(f"Unknown contract field: {name}")
                setattr(model, name, _column_value(value))
            model.updated_at = datetime.now(timezone.utc)
            session.flush()
            return self._load(session, model)

    @staticmethod
    def _log_model(contract_id: str, seq: int, entry: StateLogEntry) -> ContractStateLogModel:
        return ContractStateLogModel(
            contract_id=contract_id,
            seq=seq,
            state=entry.state.value,
            time=entry.time,
            tx_hash=entry.tx_hash,
            error=entry.error,
        )

    def append_state_log(self, contract_id: str, entry: StateLogEntry) -> None:
        with self.db.get_session() as session:
            if session.get(ContractModel, contract_id) is None:
                raise ContractNotFound(f"Contract {contract_id} not found")
            last_seq = session.query(func.max(ContractStateLogModel.seq)).filter(
                ContractStateLogModel.contract_id == contract_id
            ).scalar() or 0
            session.add(self._log_model(contract_id, last_seq + 1, entry))

    def _filtered(self, session, user_id: str, state: Optional[ContractState], is_closed: Optional[bool]):
        query = session.query(ContractModel).filter(ContractModel.user_id == user_id)
        if state is not None:
            query = query.filter(ContractModel.state == state.value)
        if is_closed is True:
            query = query.filter(ContractModel.closed_at.isnot(None))
        elif is_closed is False:
            query = query.filter(ContractModel.closed_at.is_(None))
        return query

    def find(
        self,
        user_id: str,
        state: Optional[ContractState] = None,
        is_closed: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Contract]:
        with self.db.get_session() as session:
            models = self._filtered(session, user_id, state, is_closed).order_by(
                ContractModel.created_at.desc()
            ).offset(skip).limit(limit).all()
            return [self._load(session, m) for m in models]

    def count(self, user_id: str, state: Optional[ContractState] = None, is_closed: Optional[bool] = None) -> int:
        with self.db.get_session() as session:
            return self._filtered(session, user_id, state, is_closed).count()

    def stats(self) -> Dict[str, Any]:
        """
        Aggregate figures over all contracts.

        total_payback counts q_claim for claims and margin for refunds.
        Pool figures cover AVAILABLE contracts; pending figures cover the
        waiting states.
        """
        zero = Decimal("0")
        result = {
            "total_users": 0,
            "total_contracts": 0,
            "total_q_covered": zero,
            "total_payback": zero,
            "claim_pool": zero,
            "margin_pool": zero,
            "claim_pending": zero,
            "refund_pending": zero,
        }
        users = set()

        with self.db.get_session() as session:
            rows = session.query(
                ContractModel.user_id,
                ContractModel.state,
                ContractModel.q_covered,
                ContractModel.q_claim,
                ContractModel.margin,
            ).all()

        for user_id, state, q_covered, q_claim, margin in rows:
            q_covered, q_claim, margin = _dec(q_covered), _dec(q_claim) or zero, _dec(margin)
            users.add(user_id)
            if state == ContractState.INVALID.value:
                continue
            result["total_contracts"] += 1
            result["total_q_covered"] += q_covered
            if state in (ContractState.CLAIM_WAITING.value, ContractState.CLAIMED.value):
                result["total_payback"] += q_claim
            elif state in (ContractState.REFUND_WAITING.value, ContractState.REFUNDED.value):
                result["total_payback"] += margin

            if state == ContractState.AVAILABLE.value:
                result["claim_pool"] += q_claim
                result["margin_pool"] += margin
            elif state == ContractState.CLAIM_WAITING.value:
                result["claim_pending"] += q_claim
            elif state == ContractState.REFUND_WAITING.value:
                result["refund_pending"] += margin

        result["total_users"] = len(users)
        return result

    # ----- pairs -----

    def save_pair(self, pair: Pair) -> None:
        """Insert or replace a pair row."""
        with self.db.get_session() as session:
            model = session.get(PairModel, pair.symbol) or PairModel(symbol=pair.symbol)
            model.asset = pair.asset
            model.unit = pair.unit.value
            model.is_active = pair.is_active
            model.is_maintain = pair.is_maintain
            model.day_change_ratios = [str(r) for r in pair.day_change_ratios]
            model.hour_change_ratios = [str(r) for r in pair.hour_change_ratios]
            model.updated_at = datetime.now(timezone.utc)
            session.merge(model)

    def get_pair(self, symbol: str) -> Optional[Pair]:
        with self.db.get_session() as session:
            model = session.get(PairModel, symbol)
            return _to_pair(model) if model else None

    def list_active_pairs(self) -> List[Pair]:
        with self.db.get_session() as session:
            models = session.query(PairModel).filter(
                PairModel.is_active.is_(True)
            ).order_by(PairModel.symbol).all()
            return [_to_pair(m) for m in models]

    def upsert_pair_ratios(self, symbol: str, day_change_ratios: List[Decimal]) -> None:
        with self.db.get_session() as session:
            model = session.get(PairModel, symbol)
            if model is None:
                raise ValueError(f"Unknown pair: {symbol}")
            model.day_change_ratios = [str(r) for r in day_change_ratios]
            model.updated_at = datetime.now(timezone.utc)
