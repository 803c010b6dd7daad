import os
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Generator, Iterator, List, Optional

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the kebilo package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ['KEBILO_DATABASE_URL'] = 'sqlite+pysqlite:///:memory:'
os.environ['SESSION_SECRET'] = 'test-session-secret-0123456789abcdef'
os.environ['JWT_SECRET'] = 'test-intake-secret-0123456789abcdef'
os.environ['PYTHON_API_JWT_SECRET'] = 'test-bridge-secret-0123456789abcdef'
os.environ['ENCRYPTION_SECRET'] = 'test-encryption-secret'
os.environ['PYTHON_API_URL'] = 'http://docs.test'
os.environ['STRIPE_SECRET_KEY'] = 'sk_test_kebilo'
os.environ['STRIPE_WEBHOOK_SECRET'] = 'whsec_test_kebilo'
os.environ['PROGRESS_SERVICE_TOKEN'] = 'progress-token'
os.environ['GOOGLE_WORKSPACE_DOMAIN'] = 'doclatch.com'
os.environ['USE_OFFLINE_MODEL'] = '1'
os.environ.pop('OPENAI_API_KEY', None)
os.environ.pop('AZURE_OPENAI_API_KEY', None)


def _env_flag(name: str) -> bool:
    return os.getenv(name, '0').lower() in {'1', 'true', 'yes'}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=_env_flag('RUN_PG_TESTS'),
        dest='run_postgres',
        help='Execute tests marked with @pytest.mark.postgres that require PostgreSQL.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Re-read settings from the environment for every test."""

    from kebilo.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    from kebilo import main
    from kebilo.db import get_session
    from kebilo.db.models import Base

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    def _session_dependency() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    main.app.dependency_overrides[get_session] = _session_dependency
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        main.app.dependency_overrides.pop(get_session, None)
        engine.dispose()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def client(in_memory_db: DatabaseContext) -> TestClient:
    from kebilo import main

    return TestClient(main.app)


@pytest.fixture(scope='function')
def make_user(db_session: Session) -> Callable[..., object]:
    """Factory creating committed users; returns the ORM object."""

    from kebilo.auth import register_user

    counter = {'n': 0}

    def _make(role: str = 'Physician', physician_id: Optional[str] = None, **overrides):
        counter['n'] += 1
        user = register_user(
            db_session,
            email=overrides.pop('email', f"user{counter['n']}@clinic.test"),
            password=overrides.pop('password', 'secret123'),
            first_name=overrides.pop('first_name', 'Test'),
            last_name=overrides.pop('last_name', f"User{counter['n']}"),
            role=role,
            physician_id=physician_id,
        )
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def physician(make_user):
    return make_user('Physician', first_name='Avery', last_name='Stone')


@pytest.fixture(scope='function')
def staff(make_user, physician):
    return make_user('Staff', physician_id=physician.id, first_name='Jordan', last_name='Reyes')


def auth_headers(user) -> Dict[str, str]:
    from kebilo.auth import create_session_token

    return {'Authorization': f'Bearer {create_session_token(user)}'}


@pytest.fixture(scope='function')
def physician_headers(physician) -> Dict[str, str]:
    return auth_headers(physician)


@pytest.fixture(scope='function')
def staff_headers(staff) -> Dict[str, str]:
    return auth_headers(staff)


@pytest.fixture(scope='function')
def headers_for() -> Callable[[object], Dict[str, str]]:
    return auth_headers
