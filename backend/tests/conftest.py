"""
FleetVerify - Test Configuration and Fixtures
"""
import os
import json
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional
import pytest
import httpx
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from faker import Faker

# Set testing environment
os.environ['TESTING'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///./test.db'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['LOG_FILE'] = ''
os.environ['WEBHOOK_SECRET'] = ''
os.environ['VEHICLE_GATEWAY_URL'] = ''

from app.main import app
from app.core.database import Base, get_db
from app.core.security import create_access_token
from app.core.types import utcnow
from app.models.user import User
from app.models.vehicle import Vehicle
from app.models.verification import RECORD_MODELS, VerificationStatus
from app.api.v1.endpoints.verification import get_gateway_client
from app.services.upstream_gateway import UpstreamGatewayClient

fake = Faker()

GATEWAY_URL = 'https://gateway.test/lookup'

# Test database setup
TEST_DATABASE_URL = 'sqlite+aiosqlite:///./test.db'
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class GatewayScript:
    """
    Scripted stand-in for the vehicle data gateway.

    Outcomes are queued per service; the last outcome repeats once the queue
    is down to one. An outcome is a dict (200 JSON), an httpx.Response, or an
    exception raised as a transport failure.
    """

    def __init__(self):
        self.outcomes: Dict[str, List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def queue(self, service: str, *outcomes: Any) -> 'GatewayScript':
        self.outcomes.setdefault(service, []).extend(outcomes)
        return self

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def calls_for(self, service: str) -> List[Dict[str, Any]]:
        return [p for p in self.payloads if p.get('service') == service]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        service = json.loads(request.content).get('service')
        queued = self.outcomes.get(service)
        if not queued:
            return httpx.Response(500, json={'error': f'no scripted response for {service}'})

        outcome = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json=outcome)


@pytest.fixture(scope='function')
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test"""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def gateway_script() -> GatewayScript:
    return GatewayScript()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays requested by the gateway client"""
    return []


@pytest.fixture
def gateway(gateway_script: GatewayScript, sleeps: List[float]) -> UpstreamGatewayClient:
    """Gateway client wired to the scripted transport, with instant backoff"""
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return UpstreamGatewayClient(
        base_url=GATEWAY_URL,
        proxy_token='proxy-token-test',
        api_key='api-key-test',
        transport=httpx.MockTransport(gateway_script.handler),
        sleep=record_sleep,
    )


@pytest.fixture
async def client(db_session: AsyncSession, gateway: UpstreamGatewayClient) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database and gateway overrides"""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user"""
    user = User(
        email=fake.email(),
        full_name=fake.name(),
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def test_vehicle(db_session: AsyncSession, test_user: User) -> Vehicle:
    """A fleet vehicle with no verification data yet"""
    vehicle = Vehicle(user_id=test_user.id, number='KA01AB1234')
    db_session.add(vehicle)
    await db_session.commit()
    await db_session.refresh(vehicle)
    return vehicle


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    """Generate authentication headers for test user"""
    token = create_access_token({'sub': str(test_user.id), 'email': test_user.email})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def make_record(db_session: AsyncSession):
    """Insert a verification record of a given age"""
    async def _make(
        service: str,
        user_id: str,
        vehicle_number: str = 'KA01AB1234',
        status: VerificationStatus = VerificationStatus.COMPLETED,
        data: Optional[Dict[str, Any]] = None,
        age: timedelta = timedelta(0),
        request_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        created = utcnow() - age
        record = RECORD_MODELS[service](
            user_id=user_id,
            vehicle_number=vehicle_number,
            status=status,
            verification_data=data,
            request_id=request_id,
            error_message=error_message,
            created_at=created,
            updated_at=created,
        )
        db_session.add(record)
        await db_session.commit()
        await db_session.refresh(record)
        return record

    return _make
