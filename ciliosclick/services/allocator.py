"""
User Allocator: hands pre-provisioned accounts to buyers and takes them back.

Features:
- Select-and-flip in one conditional UPDATE (FOR UPDATE SKIP LOCKED on PostgreSQL)
- Idempotency keyed on the Hotmart transaction id
- Bounded retry on transient storage errors
- Administrative suspend/restore, batch seeding and pool statistics
"""
import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from ciliosclick.core.config import get_settings
from ciliosclick.core.crypto import (
    PasswordHasher,
    generate_temporary_password,
    get_password_hasher,
)
from ciliosclick.core.database import execute_with_retry
from ciliosclick.core.exceptions import (
    AccountNotFoundError,
    AllocationNotFoundError,
    ConfigurationError,
    InvalidStatusTransitionError,
    PoolExhaustedError,
    SeedConflictError,
)
from ciliosclick.core.logging import get_logger
from ciliosclick.core.prometheus_metrics import allocations_total, pool_accounts, releases_total
from ciliosclick.core.validators import (
    sanitize_string,
    validate_email,
    validate_transaction_id,
    validate_username_prefix,
)
from ciliosclick.models.accounts import (
    AccountStatusEnum,
    AllocationRecord,
    PreProvisionedAccount,
    utcnow,
)

settings = get_settings()
logger = get_logger(__name__)

AVAILABLE = AccountStatusEnum.AVAILABLE.value
OCCUPIED = AccountStatusEnum.OCCUPIED.value
SUSPENDED = AccountStatusEnum.SUSPENDED.value


@dataclass
class AllocationResult:
    """Account bound to a transaction."""
    allocation_id: uuid.UUID
    account_id: uuid.UUID
    username: str
    login_email: str
    transaction_id: str
    buyer_email: str
    buyer_name: Optional[str]
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    duplicate: bool = False
    # Only set on a fresh allocation; never persisted in clear
    temporary_password: Optional[str] = field(default=None, repr=False)


@dataclass
class ReleaseResult:
    allocation_id: uuid.UUID
    account_id: uuid.UUID
    username: str
    transaction_id: str
    released_at: datetime
    account_status: str


@dataclass
class PoolStats:
    available: int = 0
    occupied: int = 0
    suspended: int = 0
    open_allocations: int = 0
    low_watermark: int = 0

    @property
    def total(self) -> int:
        return self.available + self.occupied + self.suspended

    @property
    def is_low(self) -> bool:
        return self.available < self.low_watermark


@dataclass
class SeedResult:
    created: int
    first_username: Optional[str]
    last_username: Optional[str]


class UserAllocator:
    """
    Pool of pre-provisioned accounts.

    Every public operation opens its own short transaction through the
    session factory; the email notification and any other slow work happen
    outside of it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        password_hasher: Optional[PasswordHasher] = None,
        allocation_order: Optional[str] = None,
        validity_days: Optional[int] = -1,
        low_watermark: Optional[int] = None,
        password_length: Optional[int] = None,
    ):
        """
        Initialize allocator.

        Args:
            session_factory: async_sessionmaker bound to the pool database
            password_hasher: Hasher for temporary passwords (default scrypt hasher)
            allocation_order: oldest_first, newest_first or username
            validity_days: Days until an allocation expires; None disables
                expiry, -1 uses ALLOCATION_VALIDITY_DAYS
            low_watermark: Warn when fewer available accounts remain
            password_length: Length of generated temporary passwords
        """
        self._session_factory = session_factory
        self._hasher = password_hasher or get_password_hasher()
        self.allocation_order = allocation_order or settings.POOL_ALLOCATION_ORDER
        self.validity_days = settings.ALLOCATION_VALIDITY_DAYS if validity_days == -1 else validity_days
        self.low_watermark = settings.POOL_LOW_WATERMARK if low_watermark is None else low_watermark
        self.password_length = password_length or settings.TEMP_PASSWORD_LENGTH

        if self.allocation_order not in ("oldest_first", "newest_first", "username"):
            raise ConfigurationError(
                f"Unknown allocation order: {self.allocation_order}",
                setting="POOL_ALLOCATION_ORDER",
            )

    # Allocation

    async def allocate(
        self,
        buyer_email: str,
        buyer_name: Optional[str],
        transaction_id: str,
        event: str,
        notification_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AllocationResult:
        """
        Bind one available account to a purchase.

        A transaction id that already has an allocation gets that allocation
        back with duplicate=True, even if it was released since.

        Raises:
            PoolExhaustedError: No available account
            StorageUnavailableError: Transient storage errors outlived the retries
        """
        buyer_email = validate_email(buyer_email, "buyer_email")
        transaction_id = validate_transaction_id(transaction_id)
        buyer_name = sanitize_string(buyer_name, max_length=255)
        notification_id = sanitize_string(notification_id, max_length=255)
        note = sanitize_string(note)

        async def lookup() -> Optional[AllocationResult]:
            return await self._find_existing(transaction_id)

        existing = await execute_with_retry(lookup, operation_name="allocate")
        if existing is not None:
            allocations_total.labels(result="duplicate").inc()
            return existing

        # Only fresh claims pay for scrypt; it runs off the event loop, before
        # any transaction opens
        password = generate_temporary_password(self.password_length)
        password_hash = await asyncio.to_thread(self._hasher.hash, password)

        async def attempt() -> AllocationResult:
            return await self._allocate_once(
                buyer_email=buyer_email,
                buyer_name=buyer_name,
                transaction_id=transaction_id,
                event=event,
                notification_id=notification_id,
                note=note,
                password=password,
                password_hash=password_hash,
            )

        try:
            result = await execute_with_retry(attempt, operation_name="allocate")
        except PoolExhaustedError:
            allocations_total.labels(result="exhausted").inc()
            raise

        allocations_total.labels(result="duplicate" if result.duplicate else "allocated").inc()
        return result

    async def _allocate_once(
        self,
        buyer_email: str,
        buyer_name: Optional[str],
        transaction_id: str,
        event: str,
        notification_id: Optional[str],
        note: Optional[str],
        password: str,
        password_hash: str,
    ) -> AllocationResult:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    existing = await self._get_allocation_by_transaction(session, transaction_id)
                    if existing is not None:
                        return await self._duplicate_result(session, existing)

                    claimed = (await session.execute(self._claim_statement(password_hash))).first()
                    if claimed is None:
                        logger.critical(
                            f"Account pool exhausted, cannot allocate transaction {transaction_id}",
                            extra={"transaction_id": transaction_id, "event": event},
                        )
                        raise PoolExhaustedError(transaction_id)

                    account_id, username, login_email = claimed
                    assigned_at = utcnow()
                    record = AllocationRecord(
                        pre_user_id=account_id,
                        buyer_email=buyer_email,
                        buyer_name=buyer_name,
                        transaction_id=transaction_id,
                        notification_id=notification_id,
                        event=event,
                        assigned_at=assigned_at,
                        expires_at=self._expiry(assigned_at),
                        note=note,
                    )
                    session.add(record)
                    await session.flush()
                    allocation_id = record.id

                    available_left = await self._count_status(session, AVAILABLE)

            except IntegrityError:
                # A concurrent delivery of the same transaction committed first;
                # our account flip was rolled back with the failed insert.
                logger.info(
                    f"Concurrent allocation for transaction {transaction_id}, returning existing",
                    extra={"transaction_id": transaction_id},
                )
                async with session.begin():
                    existing = await self._get_allocation_by_transaction(session, transaction_id)
                    if existing is None:
                        raise
                    return await self._duplicate_result(session, existing)

        logger.info(
            f"Allocated account {username} to transaction {transaction_id}",
            extra={
                "transaction_id": transaction_id,
                "account_id": str(account_id),
                "username": username,
                "event": event,
            },
        )
        pool_accounts.labels(status=AVAILABLE).set(available_left)
        if available_left < self.low_watermark:
            logger.warning(
                f"Account pool running low: {available_left} available "
                f"(watermark {self.low_watermark})",
                extra={"available": available_left, "low_watermark": self.low_watermark},
            )

        return AllocationResult(
            allocation_id=allocation_id,
            account_id=account_id,
            username=username,
            login_email=login_email,
            transaction_id=transaction_id,
            buyer_email=buyer_email,
            buyer_name=buyer_name,
            assigned_at=assigned_at,
            expires_at=self._expiry(assigned_at),
            duplicate=False,
            temporary_password=password,
        )

    def _claim_statement(self, password_hash: str):
        """
        UPDATE ... WHERE id = (first available, locked) AND status = 'available'.

        The subquery skips rows locked by concurrent claimers; the outer
        status check makes the flip a compare-and-swap on backends without
        row locks.
        """
        candidate = aliased(PreProvisionedAccount, name="candidate")
        orders = {
            "oldest_first": (candidate.created_at.asc(), candidate.username.asc()),
            "newest_first": (candidate.created_at.desc(), candidate.username.asc()),
            "username": (candidate.username.asc(),),
        }
        candidate_id = (
            select(candidate.id)
            .where(candidate.status == AVAILABLE)
            .order_by(*orders[self.allocation_order])
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        return (
            update(PreProvisionedAccount)
            .where(
                PreProvisionedAccount.id == candidate_id,
                PreProvisionedAccount.status == AVAILABLE,
            )
            .values(status=OCCUPIED, password_hash=password_hash, updated_at=utcnow())
            .returning(
                PreProvisionedAccount.id,
                PreProvisionedAccount.username,
                PreProvisionedAccount.email,
            )
            .execution_options(synchronize_session=False)
        )

    def _expiry(self, assigned_at: datetime) -> Optional[datetime]:
        if not self.validity_days:
            return None
        return assigned_at + timedelta(days=self.validity_days)

    async def _find_existing(self, transaction_id: str) -> Optional[AllocationResult]:
        async with self._session_factory() as session:
            existing = await self._get_allocation_by_transaction(session, transaction_id)
            if existing is None:
                return None
            return await self._duplicate_result(session, existing)

    async def _get_allocation_by_transaction(
        self, session: AsyncSession, transaction_id: str
    ) -> Optional[AllocationRecord]:
        result = await session.execute(
            select(AllocationRecord).where(AllocationRecord.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def _duplicate_result(
        self, session: AsyncSession, record: AllocationRecord
    ) -> AllocationResult:
        account = await session.get(PreProvisionedAccount, record.pre_user_id)
        logger.info(
            f"Transaction {record.transaction_id} already allocated to {account.username}",
            extra={"transaction_id": record.transaction_id, "account_id": str(account.id)},
        )
        return AllocationResult(
            allocation_id=record.id,
            account_id=account.id,
            username=account.username,
            login_email=account.email,
            transaction_id=record.transaction_id,
            buyer_email=record.buyer_email,
            buyer_name=record.buyer_name,
            assigned_at=record.assigned_at,
            expires_at=record.expires_at,
            released_at=record.released_at,
            duplicate=True,
        )

    # Release

    async def release(
        self,
        buyer_email: Optional[str],
        transaction_id: str,
        event: Optional[str] = None,
    ) -> ReleaseResult:
        """
        Close the open allocation of a transaction and free its account.

        Raises:
            AllocationNotFoundError: No open allocation (never allocated or already released)
            StorageUnavailableError: Transient storage errors outlived the retries
        """
        transaction_id = validate_transaction_id(transaction_id)

        async def attempt() -> ReleaseResult:
            return await self._release_once(buyer_email, transaction_id, event)

        try:
            result = await execute_with_retry(attempt, operation_name="release")
        except AllocationNotFoundError:
            releases_total.labels(result="not_found").inc()
            raise

        releases_total.labels(result="released").inc()
        return result

    async def _release_once(
        self,
        buyer_email: Optional[str],
        transaction_id: str,
        event: Optional[str],
    ) -> ReleaseResult:
        released_at = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                closed = (await session.execute(
                    update(AllocationRecord)
                    .where(
                        AllocationRecord.transaction_id == transaction_id,
                        AllocationRecord.released_at.is_(None),
                    )
                    .values(released_at=released_at, release_event=event)
                    .returning(
                        AllocationRecord.id,
                        AllocationRecord.pre_user_id,
                        AllocationRecord.buyer_email,
                    )
                    .execution_options(synchronize_session=False)
                )).first()

                if closed is None:
                    logger.info(
                        f"No open allocation for transaction {transaction_id}",
                        extra={"transaction_id": transaction_id, "event": event},
                    )
                    raise AllocationNotFoundError(transaction_id)

                allocation_id, account_id, recorded_email = closed
                if buyer_email and recorded_email.lower() != buyer_email.strip().lower():
                    logger.warning(
                        f"Release for transaction {transaction_id} names a different buyer",
                        extra={"transaction_id": transaction_id},
                    )

                # Suspended accounts stay suspended
                await session.execute(
                    update(PreProvisionedAccount)
                    .where(
                        PreProvisionedAccount.id == account_id,
                        PreProvisionedAccount.status == OCCUPIED,
                    )
                    .values(status=AVAILABLE, password_hash=None, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

                account = (await session.execute(
                    select(PreProvisionedAccount)
                    .where(PreProvisionedAccount.id == account_id)
                    .execution_options(populate_existing=True)
                )).scalar_one()

        logger.info(
            f"Released account {account.username} from transaction {transaction_id}",
            extra={
                "transaction_id": transaction_id,
                "account_id": str(account_id),
                "account_status": account.status,
                "event": event,
            },
        )
        return ReleaseResult(
            allocation_id=allocation_id,
            account_id=account_id,
            username=account.username,
            transaction_id=transaction_id,
            released_at=released_at,
            account_status=account.status,
        )

    # Administration

    async def suspend(self, account_id: uuid.UUID) -> PreProvisionedAccount:
        """Administrative override: take an account out of circulation."""
        async def attempt() -> PreProvisionedAccount:
            async with self._session_factory() as session:
                async with session.begin():
                    account = await self._get_account_for_update(session, account_id)
                    if account.status == SUSPENDED:
                        raise InvalidStatusTransitionError(account_id, account.status, SUSPENDED)
                    account.status = SUSPENDED
                    account.updated_at = utcnow()
                return account

        account = await execute_with_retry(attempt, operation_name="suspend")
        logger.warning(
            f"Account {account.username} suspended",
            extra={"account_id": str(account_id)},
        )
        return account

    async def restore(self, account_id: uuid.UUID) -> PreProvisionedAccount:
        """
        Lift a suspension.

        An account whose allocation is still open goes back to occupied;
        otherwise it rejoins the pool as available.
        """
        async def attempt() -> PreProvisionedAccount:
            async with self._session_factory() as session:
                async with session.begin():
                    account = await self._get_account_for_update(session, account_id)
                    if account.status != SUSPENDED:
                        raise InvalidStatusTransitionError(account_id, account.status, AVAILABLE)

                    open_allocation = await session.scalar(
                        select(func.count())
                        .select_from(AllocationRecord)
                        .where(
                            AllocationRecord.pre_user_id == account_id,
                            AllocationRecord.released_at.is_(None),
                        )
                    )
                    account.status = OCCUPIED if open_allocation else AVAILABLE
                    account.updated_at = utcnow()
                return account

        account = await execute_with_retry(attempt, operation_name="restore")
        logger.info(
            f"Account {account.username} restored to {account.status}",
            extra={"account_id": str(account_id), "account_status": account.status},
        )
        return account

    async def _get_account_for_update(
        self, session: AsyncSession, account_id: uuid.UUID
    ) -> PreProvisionedAccount:
        account = (await session.execute(
            select(PreProvisionedAccount)
            .where(PreProvisionedAccount.id == account_id)
            .with_for_update()
        )).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def seed_accounts(
        self,
        count: int,
        prefix: Optional[str] = None,
        email_domain: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> SeedResult:
        """
        Create `count` available accounts named <prefix>0001, <prefix>0002, ...

        Numbering continues after the highest existing username with the same
        prefix, so seeding can be repeated as the pool drains.
        """
        if count < 1:
            raise ValueError("count must be positive")

        prefix = validate_username_prefix(prefix or settings.POOL_USERNAME_PREFIX)
        email_domain = (email_domain or settings.POOL_EMAIL_DOMAIN).lstrip("@")
        batch_size = batch_size or settings.POOL_SEED_BATCH_SIZE

        async def attempt() -> List[str]:
            return await self._seed_once(count, prefix, email_domain, batch_size)

        attempts = settings.DB_RETRY_ATTEMPTS
        for conflict in range(attempts):
            try:
                usernames = await execute_with_retry(attempt, operation_name="seed_accounts")
                break
            except IntegrityError as e:
                # A concurrent seed took the same numbers; nothing was inserted
                logger.warning(
                    f"Username collision while seeding prefix {prefix} "
                    f"(attempt {conflict + 1}/{attempts}), renumbering",
                    extra={"prefix": prefix},
                )
                if conflict == attempts - 1:
                    raise SeedConflictError(prefix) from e

        logger.info(
            f"Seeded {count} accounts ({usernames[0]}..{usernames[-1]})",
            extra={"seeded": count, "prefix": prefix},
        )
        return SeedResult(created=count, first_username=usernames[0], last_username=usernames[-1])

    async def _seed_once(
        self,
        count: int,
        prefix: str,
        email_domain: str,
        batch_size: int,
    ) -> List[str]:
        async with self._session_factory() as session:
            async with session.begin():
                start = await self._next_sequence(session, prefix)
                usernames = [f"{prefix}{n:04d}" for n in range(start, start + count)]

                for offset in range(0, count, batch_size):
                    now = utcnow()
                    rows = [
                        {
                            "id": uuid.uuid4(),
                            "username": username,
                            "email": f"{username}@{email_domain}",
                            "status": AVAILABLE,
                            "created_at": now,
                            "updated_at": now,
                        }
                        for username in usernames[offset:offset + batch_size]
                    ]
                    await session.execute(insert(PreProvisionedAccount), rows)
                    logger.debug(f"Seeded batch of {len(rows)} accounts")
        return usernames

    async def _next_sequence(self, session: AsyncSession, prefix: str) -> int:
        result = await session.execute(
            select(PreProvisionedAccount.username).where(
                PreProvisionedAccount.username.like(f"{prefix}%")
            )
        )
        pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        highest = 0
        for (username,) in result.all():
            match = pattern.match(username)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    async def pool_stats(self) -> PoolStats:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(PreProvisionedAccount.status, func.count())
                .group_by(PreProvisionedAccount.status)
            )
            counts: Dict[str, int] = {status: count for status, count in rows.all()}
            open_allocations = await session.scalar(
                select(func.count())
                .select_from(AllocationRecord)
                .where(AllocationRecord.released_at.is_(None))
            )

        for account_status in AccountStatusEnum:
            pool_accounts.labels(status=account_status.value).set(counts.get(account_status.value, 0))

        return PoolStats(
            available=counts.get(AVAILABLE, 0),
            occupied=counts.get(OCCUPIED, 0),
            suspended=counts.get(SUSPENDED, 0),
            open_allocations=open_allocations or 0,
            low_watermark=self.low_watermark,
        )

    async def list_accounts(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[PreProvisionedAccount], int]:
        """List accounts, optionally filtered by status. Returns (page, total)."""
        query = select(PreProvisionedAccount)
        count_query = select(func.count()).select_from(PreProvisionedAccount)
        if status:
            query = query.where(PreProvisionedAccount.status == status)
            count_query = count_query.where(PreProvisionedAccount.status == status)

        async with self._session_factory() as session:
            total = await session.scalar(count_query)
            result = await session.execute(
                query.order_by(PreProvisionedAccount.username).limit(limit).offset(offset)
            )
            return list(result.scalars().all()), total or 0

    async def list_allocations(
        self,
        active_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Tuple[AllocationRecord, str]], int]:
        """List allocations newest first with the account username. Returns (page, total)."""
        query = (
            select(AllocationRecord, PreProvisionedAccount.username)
            .join(PreProvisionedAccount, AllocationRecord.pre_user_id == PreProvisionedAccount.id)
        )
        count_query = select(func.count()).select_from(AllocationRecord)
        if active_only:
            query = query.where(AllocationRecord.released_at.is_(None))
            count_query = count_query.where(AllocationRecord.released_at.is_(None))

        async with self._session_factory() as session:
            total = await session.scalar(count_query)
            result = await session.execute(
                query.order_by(AllocationRecord.assigned_at.desc()).limit(limit).offset(offset)
            )
            return [(record, username) for record, username in result.all()], total or 0

    async def _count_status(self, session: AsyncSession, status: str) -> int:
        return await session.scalar(
            select(func.count())
            .select_from(PreProvisionedAccount)
            .where(PreProvisionedAccount.status == status)
        ) or 0
