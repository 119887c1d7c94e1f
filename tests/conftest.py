"""Test configuration and fixtures.

Supports parallel execution via pytest-xdist (pytest -n auto).
Each worker gets its own Postgres schema. Within a worker, tables are created
once per session and each test runs inside a rolled-back transaction (fast).
"""

import asyncio
import json
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
import sqlalchemy
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from escrow_engine.config import settings
from escrow_engine.database import Base, get_db
from escrow_engine.main import app
from escrow_engine.models.actor import Actor
from escrow_engine.models.milestone import Milestone
from escrow_engine.models.payment import Payment, PaymentType
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.redis import get_redis
from escrow_engine.schemas.checklist import parse_checklist
from escrow_engine.schemas.milestone import MilestonePlanItem
from escrow_engine.schemas.offer import OfferAccepted
from escrow_engine.services import milestones as ledger
from escrow_engine.services import payments as payment_service
from escrow_engine.services import state_machine
from escrow_engine.services.authorizer import ActorRef, RoleAuthorizer
from escrow_engine.services.offers import handle_offer_accepted
from escrow_engine.utils.crypto import generate_keypair, signed_headers


# ---------------------------------------------------------------------------
# Per-worker database isolation (for pytest-xdist)
# ---------------------------------------------------------------------------

def _worker_schema(worker_id: str) -> str:
    """Each xdist worker gets its own Postgres schema for isolation."""
    if worker_id == "master":
        return "public"
    return f"test_{worker_id}"


def _worker_redis_db(worker_id: str) -> int:
    if worker_id == "master":
        return 0
    return int(worker_id.replace("gw", "")) + 1


@pytest.fixture(scope="session")
def worker_id(request: pytest.FixtureRequest) -> str:
    if hasattr(request.config, "workerinput"):
        return request.config.workerinput["workerid"]
    return "master"


def _drop_enum_types_sql(schema: str) -> str:
    qualifier = f"{schema}." if schema != "public" else ""
    return (
        "DO $$ DECLARE r RECORD; "
        "BEGIN FOR r IN (SELECT typname FROM pg_type t JOIN pg_namespace n ON t.typnamespace = n.oid "
        f"WHERE n.nspname = '{schema}' AND t.typtype = 'e') "
        f"LOOP EXECUTE 'DROP TYPE IF EXISTS {qualifier}' || quote_ident(r.typname) || ' CASCADE'; "
        "END LOOP; END $$;"
    )


async def _setup_schema(schema: str) -> None:
    """Create the worker schema and its tables."""
    engine_auto = create_async_engine(
        settings.test_database_url, isolation_level="AUTOCOMMIT"
    )
    async with engine_auto.connect() as conn:
        if schema != "public":
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))
            await conn.execute(text(f'CREATE SCHEMA "{schema}"'))
    await engine_auto.dispose()

    engine = create_async_engine(
        settings.test_database_url,
        connect_args={"server_settings": {"search_path": schema}},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(_drop_enum_types_sql(schema)))
        await conn.execute(text("DROP TABLE IF EXISTS alembic_version"))
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


async def _teardown_schema(schema: str) -> None:
    """Drop the worker schema, or empty the public one."""
    if schema != "public":
        engine = create_async_engine(
            settings.test_database_url, isolation_level="AUTOCOMMIT"
        )
        async with engine.connect() as conn:
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))
        await engine.dispose()
        return

    engine = create_async_engine(settings.test_database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(_drop_enum_types_sql(schema)))
        await conn.execute(text("DROP TABLE IF EXISTS alembic_version"))
    await engine.dispose()


@pytest.fixture(scope="session")
def _worker_db_setup(worker_id: str) -> tuple[str, str]:
    """Create per-worker schema and tables once per session (sync wrapper).

    Returns (async_db_url, schema_name).
    """
    schema = _worker_schema(worker_id)
    asyncio.run(_setup_schema(schema))

    yield settings.test_database_url, schema

    asyncio.run(_teardown_schema(schema))


# ---------------------------------------------------------------------------
# Per-test fixtures: transaction rollback isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "flutterwave_secret_key", "")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def _worker_engine(_worker_db_setup: tuple[str, str]) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine for this worker's test DB (created per-test, cheap)."""
    url, schema = _worker_db_setup
    engine = create_async_engine(
        url,
        connect_args={"server_settings": {"search_path": schema}},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def _worker_redis(worker_id: str) -> AsyncGenerator[aioredis.Redis, None]:
    """Per-worker Redis connection using separate DB numbers."""
    base_url = settings.redis_url.rsplit("/", 1)[0]
    db_num = _worker_redis_db(worker_id)
    redis_client = aioredis.from_url(f"{base_url}/{db_num}")
    await redis_client.flushdb()
    yield redis_client
    await redis_client.flushdb()
    await redis_client.aclose()


@pytest_asyncio.fixture
async def db_session(
    _worker_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession, None]:
    """Per-test session wrapped in a transaction that rolls back after the test.

    Services that call session.commit() commit the inner SAVEPOINT, not the
    outer transaction, so data is still rolled back at the end.
    """
    async with _worker_engine.connect() as conn:
        txn = await conn.begin()
        await conn.begin_nested()

        session = AsyncSession(bind=conn, expire_on_commit=False)

        @sqlalchemy.event.listens_for(session.sync_session, "after_transaction_end")
        def reopen_nested(session_sync, transaction):  # type: ignore[no-untyped-def]
            if conn.closed:
                return
            if not conn.in_nested_transaction():
                conn.sync_connection.begin_nested()  # type: ignore[union-attr]

        yield session

        await session.close()
        await txn.rollback()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    _worker_redis: aioredis.Redis,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield _worker_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    # Flush rate limit keys for this test
    async for key in _worker_redis.scan_iter("escrow:ratelimit:*"):
        await _worker_redis.delete(key)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def authorizer(db_session: AsyncSession) -> RoleAuthorizer:
    return RoleAuthorizer(db_session)


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@dataclass
class Party:
    """An actor row plus the private key that signs its requests."""
    actor_id: uuid.UUID
    private_key: str

    @property
    def ref(self) -> ActorRef:
        return ActorRef.user(self.actor_id)


MakeActor = Callable[..., Awaitable[Party]]


@pytest_asyncio.fixture
async def make_actor(db_session: AsyncSession) -> MakeActor:
    """Factory: insert an actor with the given roles and KYC tier."""

    async def _make(
        name: str = "Test Actor",
        roles: list[str] | None = None,
        kyc_tier: int = 2,
    ) -> Party:
        private_key, public_key = generate_keypair()
        actor = Actor(
            actor_id=uuid.uuid4(),
            public_key=public_key,
            display_name=name,
            email=f"{uuid.uuid4().hex[:8]}@example.com",
            roles=roles or [],
            kyc_tier=kyc_tier,
        )
        db_session.add(actor)
        await db_session.commit()
        return Party(actor_id=actor.actor_id, private_key=private_key)

    return _make


@pytest_asyncio.fixture
async def buyer(make_actor: MakeActor) -> Party:
    return await make_actor("Ama Buyer")


@pytest_asyncio.fixture
async def seller(make_actor: MakeActor) -> Party:
    return await make_actor("Kofi Seller")


@pytest_asyncio.fixture
async def admin(make_actor: MakeActor) -> Party:
    return await make_actor("Platform Admin", roles=["admin"])


@pytest_asyncio.fixture
async def mediator(make_actor: MakeActor) -> Party:
    return await make_actor("Support Mediator", roles=["support"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def encode_body(body: bytes | dict | list | None) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode()


def make_auth_headers(
    party: Party,
    method: str,
    path: str,
    body: bytes | dict | list | None = None,
) -> dict[str, str]:
    """Build signed auth headers for a request."""
    return signed_headers(party.actor_id, party.private_key, method, path, encode_body(body))


async def signed_request(
    client: AsyncClient,
    party: Party,
    method: str,
    path: str,
    body: dict | list | None = None,
):
    """Send a signed request. The body is sent as the exact bytes that were signed."""
    content = encode_body(body)
    headers = make_auth_headers(party, method, path, content)
    if body is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=content, headers=headers)


def make_offer(
    buyer: Party,
    seller: Party,
    agreed_price: int = 10_000_000,
    milestones: list[dict] | None = None,
    verification_level: int = 1,
) -> dict:
    """Factory for an offer-accepted payload."""
    data = {
        "offer_id": str(uuid.uuid4()),
        "listing_id": str(uuid.uuid4()),
        "buyer_id": str(buyer.actor_id),
        "seller_id": str(seller.actor_id),
        "agreed_price": agreed_price,
        "verification_level": verification_level,
    }
    if milestones is not None:
        data["milestones"] = milestones
    return data


async def create_transaction(
    db: AsyncSession,
    buyer: Party,
    seller: Party,
    agreed_price: int = 10_000_000,
    milestones: list[dict] | None = None,
) -> EscrowTransaction:
    event = OfferAccepted.model_validate(make_offer(buyer, seller, agreed_price, milestones))
    transaction, _, _ = await handle_offer_accepted(db, event, buyer.ref)
    return transaction


async def start_funding(db: AsyncSession, transaction: EscrowTransaction, buyer: Party) -> Payment:
    return await payment_service.initiate(
        db,
        buyer.ref,
        transaction.agreed_price,
        PaymentType.FUNDING,
        transaction_id=transaction.transaction_id,
    )


async def fund(db: AsyncSession, transaction: EscrowTransaction, buyer: Party) -> Payment:
    payment = await start_funding(db, transaction, buyer)
    await payment_service.reconcile(db, payment.provider_reference, "successful")
    return payment


async def start_verification(
    db: AsyncSession, transaction: EscrowTransaction, buyer: Party
) -> EscrowTransaction:
    """Fund the transaction and open its verification period."""
    await fund(db, transaction, buyer)
    return await state_machine.transition(
        db, transaction.transaction_id, TransactionStatus.VERIFICATION_PERIOD, buyer.ref, None
    )


async def elapse_verification_period(db: AsyncSession, transaction: EscrowTransaction) -> None:
    """Backdate the verification start past the minimum period."""
    locked = await state_machine.lock_transaction(db, transaction.transaction_id)
    locked.verification_started_at = locked.verification_started_at - timedelta(
        days=settings.verification_period_days, minutes=1
    )
    await db.commit()


async def complete_checklists(db: AsyncSession, transaction: EscrowTransaction, party: Party) -> None:
    for milestone in await ledger.list_milestones(db, transaction.transaction_id):
        checklist = parse_checklist(milestone.checklist)
        if checklist is None or checklist.is_complete():
            continue
        filled = checklist.model_copy(update={name: True for name in checklist.unchecked()})
        await ledger.update_checklist(db, milestone.milestone_id, filled, party.ref, None)


async def approve_all(
    db: AsyncSession, transaction: EscrowTransaction, buyer: Party, seller: Party
) -> list[Milestone]:
    """Fill any checklists, then have both parties approve every milestone."""
    await complete_checklists(db, transaction, buyer)
    milestones = await ledger.list_milestones(db, transaction.transaction_id)
    for milestone in milestones:
        await ledger.approve(db, milestone.milestone_id, buyer.ref)
        await ledger.approve(db, milestone.milestone_id, seller.ref)
    return await ledger.list_milestones(db, transaction.transaction_id)


def plan(*amounts: int, flagged: tuple[int, ...] = ()) -> list[dict]:
    """Simple milestone plan: one milestone per amount; ``flagged`` are positions needing admin sign-off."""
    return [
        MilestonePlanItem(
            name=f"Step {i + 1}",
            amount=amount,
            requires_admin_approval=i in flagged,
        ).model_dump(mode="json")
        for i, amount in enumerate(amounts)
    ]
