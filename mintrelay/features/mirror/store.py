"""
mintrelay/features/mirror/store.py

Off-chain mirror of on-chain facts.

The mirror is eventually consistent: it is queried for analytics, outage
fallback and the reconciler's second counter, and is never authoritative
over quota. Every database failure surfaces as MirrorUnavailableError.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mintrelay.core.database import (
    collections,
    drop_claims,
    drops,
    get_db_session,
    mint_records,
    subscription_mirror,
)
from mintrelay.core.errors import MirrorUnavailableError
from mintrelay.models.collection import Collection
from mintrelay.models.drop import Drop, DropStatus, RegistrationState
from mintrelay.models.plan import Plan
from mintrelay.models.subscription import Subscription
from mintrelay.features.plans.registry import plan_config

logger = logging.getLogger("mintrelay.mirror")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def mirror_operation(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.warning("mirror.unavailable", extra={"event_type": fn.__name__, "error_code": "mirror_unavailable"})
            raise MirrorUnavailableError(f"Mirror store unavailable during {fn.__name__}") from exc
    return wrapper


def _drop_from_row(row) -> Drop:
    return Drop(
        id=row.id,
        title=row.title,
        claim_code=row.claim_code,
        metadata_uri=row.metadata_uri,
        max_claims=row.max_claims,
        start_time=_utc(row.start_time),
        end_time=_utc(row.end_time),
        status=DropStatus(row.status),
        contract_address=row.contract_address,
        registration_state=RegistrationState(row.registration_state),
        registration_tx_hash=row.registration_tx_hash,
        deploy_tx_hash=row.deploy_tx_hash,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


class MirrorStore:
    """Read/write access to the mirror tables."""

    def __init__(self, session_factory: Callable = get_db_session):
        self._session = session_factory

    # ------------------------------------------------------------------
    # Mint records
    # ------------------------------------------------------------------

    @mirror_operation
    def record_mint(
        self,
        wallet: str,
        *,
        kind: str = "mint",
        collection_address: Optional[str] = None,
        token_uri: Optional[str] = None,
        tx_hash: Optional[str] = None,
        status: str = "confirmed",
        created_at: Optional[datetime] = None,
    ) -> str:
        """Upsert a mint record; the same tx is recorded once per kind."""
        record_id = f"{tx_hash}:{kind}" if tx_hash else str(uuid4())
        try:
            with self._session() as session:
                session.execute(
                    insert(mint_records).values(
                        id=record_id,
                        wallet=wallet.lower(),
                        kind=kind,
                        collection_address=collection_address,
                        token_uri=token_uri,
                        tx_hash=tx_hash,
                        status=status,
                        created_at=created_at or _now(),
                    )
                )
        except IntegrityError:
            logger.info("mirror.mint_already_recorded", extra={"tx_hash": tx_hash})
        return record_id

    @mirror_operation
    def count_mints(
        self,
        wallet: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kind: str = "mint",
    ) -> int:
        conditions = [mint_records.c.wallet == wallet.lower(), mint_records.c.kind == kind]
        if start is not None:
            conditions.append(mint_records.c.created_at >= start)
        if end is not None:
            conditions.append(mint_records.c.created_at < end)
        with self._session() as session:
            result = session.execute(select(func.count()).select_from(mint_records).where(and_(*conditions)))
            return int(result.scalar() or 0)

    @mirror_operation
    def list_mints(self, wallet: str, start: Optional[datetime] = None, end: Optional[datetime] = None, limit: int = 100) -> List[dict]:
        conditions = [mint_records.c.wallet == wallet.lower()]
        if start is not None:
            conditions.append(mint_records.c.created_at >= start)
        if end is not None:
            conditions.append(mint_records.c.created_at < end)
        with self._session() as session:
            rows = session.execute(
                select(mint_records).where(and_(*conditions)).order_by(mint_records.c.created_at.desc()).limit(limit)
            ).fetchall()
        return [
            {
                "id": row.id,
                "wallet": row.wallet,
                "kind": row.kind,
                "collection_address": row.collection_address,
                "token_uri": row.token_uri,
                "tx_hash": row.tx_hash,
                "status": row.status,
                "created_at": _utc(row.created_at),
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Subscription snapshots
    # ------------------------------------------------------------------

    @mirror_operation
    def upsert_subscription(self, subscription, tx_hash: Optional[str] = None) -> None:
        key = subscription.wallet.lower()
        values = {
            "plan": subscription.plan.value,
            "expires_at": subscription.expires_at,
            "auto_renew": subscription.auto_renew,
            "minted_this_period": subscription.minted_this_period,
            "updated_at": _now(),
        }
        if tx_hash:
            values["last_tx_hash"] = tx_hash
        with self._session() as session:
            existing = session.execute(
                select(subscription_mirror.c.wallet).where(subscription_mirror.c.wallet == key)
            ).fetchone()
            if existing:
                session.execute(update(subscription_mirror).where(subscription_mirror.c.wallet == key).values(**values))
            else:
                session.execute(insert(subscription_mirror).values(wallet=key, **values))

    @mirror_operation
    def get_subscription_snapshot(self, wallet: str) -> Optional[Subscription]:
        with self._session() as session:
            row = session.execute(
                select(subscription_mirror).where(subscription_mirror.c.wallet == wallet.lower())
            ).fetchone()
        if not row:
            return None
        plan = Plan(row.plan)
        return Subscription(
            wallet=row.wallet,
            plan=plan,
            expires_at=_utc(row.expires_at),
            minted_this_period=row.minted_this_period,
            monthly_quota=plan_config(plan).monthly_quota,
            auto_renew=bool(row.auto_renew),
        )

    @mirror_operation
    def list_mirrored_wallets(self) -> List[str]:
        with self._session() as session:
            subscribed = {r[0] for r in session.execute(select(subscription_mirror.c.wallet)).fetchall()}
            minted = {r[0] for r in session.execute(select(mint_records.c.wallet).distinct()).fetchall()}
        return sorted(subscribed | minted)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    @mirror_operation
    def record_collection(self, collection: Collection) -> None:
        try:
            with self._session() as session:
                session.execute(
                    insert(collections).values(
                        address=collection.address.lower(),
                        owner=collection.owner.lower(),
                        name=collection.name,
                        symbol=collection.symbol,
                        royalty_bps=collection.royalty_bps,
                        tx_hash=collection.tx_hash,
                        created_at=collection.created_at or _now(),
                    )
                )
        except IntegrityError:
            logger.info("mirror.collection_already_recorded", extra={"tx_hash": collection.tx_hash})

    @mirror_operation
    def get_collection(self, address: str) -> Optional[Collection]:
        with self._session() as session:
            row = session.execute(select(collections).where(collections.c.address == address.lower())).fetchone()
        if not row:
            return None
        return Collection(
            address=row.address,
            owner=row.owner,
            name=row.name,
            symbol=row.symbol,
            royalty_bps=row.royalty_bps,
            tx_hash=row.tx_hash,
            created_at=_utc(row.created_at),
        )

    @mirror_operation
    def list_collections(self, owner: str) -> List[Collection]:
        with self._session() as session:
            rows = session.execute(
                select(collections).where(collections.c.owner == owner.lower()).order_by(collections.c.created_at)
            ).fetchall()
        return [
            Collection(
                address=row.address,
                owner=row.owner,
                name=row.name,
                symbol=row.symbol,
                royalty_bps=row.royalty_bps,
                tx_hash=row.tx_hash,
                created_at=_utc(row.created_at),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Drops
    # ------------------------------------------------------------------

    @mirror_operation
    def upsert_drop(self, drop: Drop) -> Drop:
        values = {
            "title": drop.title,
            "claim_code": drop.claim_code.lower(),
            "metadata_uri": drop.metadata_uri,
            "max_claims": drop.max_claims,
            "start_time": drop.start_time,
            "end_time": drop.end_time,
            "status": drop.status.value,
            "contract_address": drop.contract_address,
            "registration_state": drop.registration_state.value,
            "registration_tx_hash": drop.registration_tx_hash,
            "deploy_tx_hash": drop.deploy_tx_hash,
            "updated_at": _now(),
        }
        with self._session() as session:
            existing = session.execute(select(drops.c.id).where(drops.c.id == drop.id)).fetchone()
            if existing:
                session.execute(update(drops).where(drops.c.id == drop.id).values(**values))
            else:
                session.execute(insert(drops).values(id=drop.id, created_at=drop.created_at or _now(), **values))
        return self.get_drop(drop.id)

    @mirror_operation
    def get_drop(self, drop_id: str) -> Optional[Drop]:
        with self._session() as session:
            row = session.execute(select(drops).where(drops.c.id == drop_id)).fetchone()
        return _drop_from_row(row) if row else None

    @mirror_operation
    def get_drop_by_code(self, claim_code: str) -> Optional[Drop]:
        code = (claim_code or "").strip().lower()
        with self._session() as session:
            row = session.execute(select(drops).where(drops.c.claim_code == code)).fetchone()
        return _drop_from_row(row) if row else None

    @mirror_operation
    def set_drop_status(self, drop_id: str, status: DropStatus, contract_address: Optional[str] = None) -> None:
        values = {"status": status.value, "updated_at": _now()}
        if contract_address:
            values["contract_address"] = contract_address
        with self._session() as session:
            session.execute(update(drops).where(drops.c.id == drop_id).values(**values))

    @mirror_operation
    def set_drop_deploy_tx(self, drop_id: str, tx_hash: Optional[str]) -> None:
        with self._session() as session:
            session.execute(update(drops).where(drops.c.id == drop_id).values(deploy_tx_hash=tx_hash, updated_at=_now()))

    @mirror_operation
    def begin_registration(self, drop_id: str) -> bool:
        """Compare-and-set unregistered -> registering. True when this caller won."""
        with self._session() as session:
            result = session.execute(
                update(drops)
                .where(and_(drops.c.id == drop_id, drops.c.registration_state == RegistrationState.UNREGISTERED.value))
                .values(registration_state=RegistrationState.REGISTERING.value, registration_tx_hash=None, updated_at=_now())
            )
            return result.rowcount == 1

    @mirror_operation
    def set_registration_tx(self, drop_id: str, tx_hash: str) -> None:
        with self._session() as session:
            session.execute(
                update(drops)
                .where(and_(drops.c.id == drop_id, drops.c.registration_state == RegistrationState.REGISTERING.value))
                .values(registration_tx_hash=tx_hash, updated_at=_now())
            )

    @mirror_operation
    def finish_registration(self, drop_id: str, tx_hash: Optional[str] = None) -> None:
        values = {"registration_state": RegistrationState.REGISTERED.value, "updated_at": _now()}
        if tx_hash:
            values["registration_tx_hash"] = tx_hash
        with self._session() as session:
            session.execute(update(drops).where(drops.c.id == drop_id).values(**values))

    @mirror_operation
    def reset_registration(self, drop_id: str) -> None:
        with self._session() as session:
            session.execute(
                update(drops)
                .where(and_(drops.c.id == drop_id, drops.c.registration_state == RegistrationState.REGISTERING.value))
                .values(
                    registration_state=RegistrationState.UNREGISTERED.value,
                    registration_tx_hash=None,
                    updated_at=_now(),
                )
            )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    @mirror_operation
    def record_claim(self, drop_id: str, wallet: str, tx_hash: Optional[str] = None) -> bool:
        """False when the wallet had already claimed this drop."""
        try:
            with self._session() as session:
                session.execute(
                    insert(drop_claims).values(drop_id=drop_id, wallet=wallet.lower(), tx_hash=tx_hash, created_at=_now())
                )
        except IntegrityError:
            return False
        return True

    @mirror_operation
    def has_claimed(self, drop_id: str, wallet: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(drop_claims.c.id).where(and_(drop_claims.c.drop_id == drop_id, drop_claims.c.wallet == wallet.lower()))
            ).fetchone()
        return row is not None

    @mirror_operation
    def count_claims(self, drop_id: str) -> int:
        with self._session() as session:
            result = session.execute(select(func.count()).select_from(drop_claims).where(drop_claims.c.drop_id == drop_id))
            return int(result.scalar() or 0)

    @mirror_operation
    def attach_claim_tx(self, drop_id: str, wallet: str, tx_hash: str) -> None:
        with self._session() as session:
            session.execute(
                update(drop_claims)
                .where(and_(drop_claims.c.drop_id == drop_id, drop_claims.c.wallet == wallet.lower()))
                .values(tx_hash=tx_hash)
            )

    @mirror_operation
    def release_claim(self, drop_id: str, wallet: str) -> None:
        """Drop a claim reservation whose mint did not happen."""
        with self._session() as session:
            session.execute(
                delete(drop_claims).where(
                    and_(
                        drop_claims.c.drop_id == drop_id,
                        drop_claims.c.wallet == wallet.lower(),
                    )
                )
            )
