"""Shared test fixtures."""

from __future__ import annotations

import itertools
import uuid
from datetime import datetime

import pytest

from openindiana_up.constants import STATUS_STOPPED
from openindiana_up.database import VirtualMachine, create_session_factory
from openindiana_up.models import LaunchConfig
from openindiana_up.repository import SqlalchemyVMRepository


@pytest.fixture(autouse=True)
def isolated_user_config(monkeypatch, tmp_path):
    """Never read the developer's real defaults file or binary override."""
    monkeypatch.setattr("openindiana_up.config.USER_CONFIG_PATH", tmp_path / "no-config.yaml")
    monkeypatch.delenv("OIUP_QEMU_BINARY", raising=False)


@pytest.fixture
def launch_config() -> LaunchConfig:
    return LaunchConfig(
        cpu="host",
        cpus=2,
        memory="2G",
        disk_format="raw",
        disk_size="20G",
        enable_kvm=True,
        qemu_binary="qemu-system-x86_64",
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "state" / "state.sqlite"


@pytest.fixture
def db_session(db_path):
    session = create_session_factory(db_path)()
    yield session
    session.close()


@pytest.fixture
def repo(db_session) -> SqlalchemyVMRepository:
    return SqlalchemyVMRepository(db_session)


@pytest.fixture
def make_vm(repo):
    """Insert a VirtualMachine record with sensible defaults."""
    counter = itertools.count(1)

    def _make(**overrides) -> VirtualMachine:
        n = next(counter)
        fields = dict(
            id=uuid.uuid4().hex,
            name=f"test-vm-{n}",
            mac_address=f"52:54:00:00:00:{n:02x}",
            cpu="host",
            cpus=2,
            memory="2G",
            disk_size="20G",
            disk_format="raw",
            status=STATUS_STOPPED,
            pid=None,
            created_at=datetime(2025, 1, 1, 12, 0, n),
        )
        fields.update(overrides)
        return repo.create(VirtualMachine(**fields))

    return _make
