import io
from typing import Callable, Dict, List

import pytest
from PIL import Image
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from ridehub.database import Store, init_db, make_engine
from ridehub.errors import BlobUploadError
from ridehub.identity import Identity
from ridehub.models import DriverStatus, User, UserRole, new_id


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def file_store(tmp_path):
    # threads need real separate connections, so races run against a file
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    yield Store(engine, max_attempts=50)
    engine.dispose()


def _adder(store: Store) -> Callable[..., Identity]:
    def add(role: UserRole = UserRole.PASSENGER, points: int = 0, name: str = "", **extra) -> Identity:
        label = name or role.value.lower()
        # emails are unique, so default ones carry a fresh suffix
        email = extra.pop("email", f"{label}-{new_id()[:8]}@example.com")
        phone = extra.pop("phone", "85290000000")

        def unit(session):
            user = User(
                name=name or f"{label}-user",
                email=email,
                phone=phone,
                role=role,
                points=points,
                **extra,
            )
            if role == UserRole.DRIVER and user.driver_status is None:
                user.driver_status = DriverStatus.APPROVED
            session.add(user)
            return user
        return Identity.of(store.run_transaction(unit))
    return add


@pytest.fixture
def add_user(store):
    return _adder(store)


@pytest.fixture
def add_file_user(file_store):
    return _adder(file_store)


@pytest.fixture
def super_admin(add_user):
    return add_user(UserRole.ADMIN_SUPER, name="boss")


class ManualScheduler:
    """Holds background jobs until the test runs them."""

    def __init__(self) -> None:
        self.jobs: List[Callable[[], None]] = []

    def __call__(self, job: Callable[[], None]) -> None:
        self.jobs.append(job)

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            job()


class MemoryBlobStore:
    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.blobs[path] = data
        return f"https://blobs.test/{path}"


class BrokenBlobStore:
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        raise BlobUploadError("storage offline")


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def broken_blobs():
    return BrokenBlobStore()


def image_bytes(width: int = 1600, height: int = 1200, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def photo():
    return image_bytes()


@pytest.fixture
def make_image():
    return image_bytes
