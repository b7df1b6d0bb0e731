"""Pytest configuration for the lifecycle test suite."""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("SWEEP_WORKERS", "1")
    os.environ.setdefault("CELERY_BROKER_URL", "memory://")
    os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
    os.environ.setdefault("USER", "test-user")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from lifecycle.stages import (  # noqa: E402
    BandBillingStatus,
    MemberRole,
    MemberStatus,
    TaskStatus,
)
from models import (  # noqa: E402
    Band,
    ChecklistItem,
    Member,
    Project,
    Task,
    User,
)
from services.database import create_schema  # noqa: E402

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory backed by a temp file."""
    engine = create_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}")
    create_schema(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


class FixedClock:
    """Deterministic clock that tests advance explicitly."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


class RecordingEmailClient:
    """Email client stub that records sends instead of delivering them."""

    enabled = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def send_specific_email(self, template: str, to: str, context: dict) -> bool:
        self.sent.append((template, to, dict(context)))
        return True


@pytest.fixture()
def email_client() -> RecordingEmailClient:
    return RecordingEmailClient()


class Seeder:
    """Insert users, bands and members for lifecycle tests."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._user_count = 0

    def user(self, *, name: str | None = None, is_platform_admin: bool = False) -> int:
        self._user_count += 1
        with self._session_factory() as session:
            user = User(
                email=f"user{self._user_count}@example.com",
                name=name or f"User {self._user_count}",
                is_platform_admin=is_platform_admin,
                created_at=NOW - timedelta(days=365),
            )
            session.add(user)
            session.commit()
            return user.id

    def band(
        self,
        *,
        name: str = "The Testers",
        billing_status: BandBillingStatus = BandBillingStatus.ACTIVE,
        billing_owner_id: int | None = None,
        provider_subscription_id: str | None = None,
        **fields,
    ) -> int:
        with self._session_factory() as session:
            band = Band(
                name=name,
                billing_status=billing_status.value,
                billing_owner_id=billing_owner_id,
                provider_subscription_id=provider_subscription_id,
                created_at=NOW - timedelta(days=180),
                **fields,
            )
            session.add(band)
            session.commit()
            return band.id

    def member(
        self,
        band_id: int,
        user_id: int | None = None,
        *,
        role: MemberRole = MemberRole.MEMBER,
        status: MemberStatus = MemberStatus.ACTIVE,
        is_treasurer: bool = False,
        activated_at: datetime | None = None,
    ) -> int:
        user_id = user_id or self.user()
        with self._session_factory() as session:
            session.add(
                Member(
                    band_id=band_id,
                    user_id=user_id,
                    role=role.value,
                    status=status.value,
                    is_treasurer=is_treasurer,
                    activated_at=activated_at or NOW - timedelta(days=90),
                    created_at=NOW - timedelta(days=90),
                )
            )
            session.commit()
        return user_id

    def task(
        self,
        band_id: int,
        *,
        assignee_id: int | None,
        status: TaskStatus = TaskStatus.TODO,
        **fields,
    ) -> int:
        with self._session_factory() as session:
            project = Project(band_id=band_id, name="Spring tour", completed_tasks=0)
            session.add(project)
            session.flush()
            task = Task(
                band_id=band_id,
                project_id=project.id,
                title="Book the venue",
                assignee_id=assignee_id,
                status=status.value,
                **fields,
            )
            session.add(task)
            session.commit()
            return task.id

    def checklist_item(self, task_id: int, *, assignee_id: int | None, **fields) -> int:
        with self._session_factory() as session:
            item = ChecklistItem(
                task_id=task_id,
                description="Print the setlist",
                assignee_id=assignee_id,
                **fields,
            )
            session.add(item)
            session.commit()
            return item.id


@pytest.fixture()
def seed(sqlite_session_factory: sessionmaker) -> Seeder:
    return Seeder(sqlite_session_factory)
