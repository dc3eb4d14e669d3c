import os
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine

# Force test database before importing app (which resolves config at import time)
os.environ["TRANSCODE_DATABASE_URL"] = "sqlite:///./test_api.db"

from transcode_service.api import main  # noqa: E402
from transcode_service.errors import DispatchError  # noqa: E402
from transcode_service.jobs import JobStore, WorkerDispatcher, init_schema  # noqa: E402
from transcode_service.jobs.db_models import Base  # noqa: E402


class RecordingDispatcher(WorkerDispatcher):
    """Dispatcher double: records requests instead of spawning workers."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests = []

    def dispatch(self, request):
        if self.fail:
            raise DispatchError(request.job_id, "No such file or directory: 'python'")
        self.requests.append(request)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope="function")
async def client(dispatcher):
    # Create tables via synchronous SQLAlchemy
    engine = create_engine("sqlite:///./test_api.db")
    Base.metadata.create_all(engine)
    engine.dispose()

    # Connect the async job store used by the app
    await main.job_store.connect()
    original = main.orchestrator.dispatcher
    main.orchestrator.dispatcher = dispatcher

    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clean up: drop all tables and disconnect
    main.orchestrator.dispatcher = original
    engine = create_engine("sqlite:///./test_api.db")
    Base.metadata.drop_all(engine)
    engine.dispose()
    await main.job_store.disconnect()


@pytest.fixture(scope="function")
async def store(tmp_path):
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    init_schema(url)
    job_store = JobStore(url)
    await job_store.connect()
    yield job_store
    await job_store.disconnect()
